"""KS-2 / KS-3 form payloads assembled from an act and its project."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .. import orm_models
from ..schemas import (
    ConstructionObject,
    ContractInfo,
    Ks2Form,
    Ks2Totals,
    Ks2Work,
    Ks3Form,
    Ks3Totals,
    Ks3Work,
    Organization,
    ReportingPeriod,
    Signatory,
)
from .acts import map_signatory
from .periods import line_key, load_period_splits
from .scope import get_act, resolve_tenant_id

ZERO = Decimal("0.00")

SIGNATORY_ORDER = {
    orm_models.SignatoryRole.CONTRACTOR_CHIEF.value: 1,
    orm_models.SignatoryRole.CONTRACTOR_ACCOUNTANT.value: 2,
    orm_models.SignatoryRole.CUSTOMER_CHIEF.value: 3,
    orm_models.SignatoryRole.CUSTOMER_INSPECTOR.value: 4,
    orm_models.SignatoryRole.TECHNICAL_SUPERVISOR.value: 5,
}


def resolve(act_value: Any, project_value: Any = None, default: Any = "") -> Any:
    """Pick the value printed on a form.

    Precedence: the act's own field, then the project's field, then ``default``.
    ``None`` and blank strings count as unset.
    """
    for candidate in (act_value, project_value):
        if candidate is None:
            continue
        if isinstance(candidate, str):
            stripped = candidate.strip()
            if stripped:
                return stripped
            continue
        return candidate
    return default


def _ordered_signatories(act: orm_models.WorkCompletionActORM) -> List[Signatory]:
    ordered = sorted(
        act.signatories,
        key=lambda signatory: (SIGNATORY_ORDER.get(signatory.role, 99), signatory.sort_order or 0),
    )
    return [map_signatory(signatory) for signatory in ordered]


def _header(act: orm_models.WorkCompletionActORM) -> Dict[str, Any]:
    project: Optional[orm_models.ProjectORM] = act.project
    object_name = resolve(project.object_name, project.name) if project else ""
    return {
        "actId": act.id,
        "actNumber": act.act_number,
        "actDate": act.act_date,
        "actType": act.act_type,
        "contractor": Organization(
            name=resolve(act.contractor_name, project.contractor if project else None),
            inn=resolve(act.contractor_inn),
            kpp=resolve(act.contractor_kpp),
            ogrn=resolve(act.contractor_ogrn),
            address=resolve(act.contractor_address),
        ),
        "customer": Organization(
            name=resolve(act.customer_name, project.client if project else None),
            inn=resolve(act.customer_inn),
            kpp=resolve(act.customer_kpp),
            ogrn=resolve(act.customer_ogrn),
            address=resolve(act.customer_address),
        ),
        "contract": ContractInfo(
            number=resolve(act.contract_number, project.contract_number if project else None),
            date=resolve(act.contract_date, None, None),
            subject=resolve(act.contract_subject),
        ),
        "constructionObject": ConstructionObject(
            name=resolve(act.construction_object, object_name),
            address=resolve(act.construction_address, project.address if project else None),
            okpd=resolve(act.construction_okpd),
        ),
        "period": ReportingPeriod(from_=act.period_from, to=act.period_to),
        "signatories": _ordered_signatories(act),
        "notes": resolve(act.notes),
    }


def build_ks2_payload(act: orm_models.WorkCompletionActORM) -> Ks2Form:
    works = [
        Ks2Work(
            lineNumber=index,
            positionNumber=item.position_number or 0,
            workCode=item.work_code or "",
            workName=item.work_name,
            unit=item.unit or "",
            section=item.section,
            quantity=item.actual_quantity or Decimal("0"),
            unitPrice=item.unit_price or ZERO,
            totalPrice=item.total_price or ZERO,
        )
        for index, item in enumerate(act.items, start=1)
    ]
    totals = Ks2Totals(
        amount=sum((work.totalPrice for work in works), ZERO),
        quantity=sum((work.quantity for work in works), Decimal("0")),
        workCount=len(works),
    )
    return Ks2Form(**_header(act), works=works, totals=totals)


def build_ks3_payload(session: Session, act: orm_models.WorkCompletionActORM) -> Ks3Form:
    splits = load_period_splits(session, act)
    works: List[Ks3Work] = []
    seen: set[str] = set()
    for item in act.items:
        key = line_key(item)
        if key in seen:
            continue
        seen.add(key)
        split = splits[key]
        works.append(
            Ks3Work(
                lineNumber=len(works) + 1,
                workCode=item.work_code or "",
                workName=item.work_name,
                unit=item.unit or "",
                amountYtd=split.ytd,
                amountPriorPeriods=split.prior_periods,
                amountCurrent=split.current,
            )
        )
    totals = Ks3Totals(
        amountYtd=sum((work.amountYtd for work in works), ZERO),
        amountPriorPeriods=sum((work.amountPriorPeriods for work in works), ZERO),
        amountCurrent=sum((work.amountCurrent for work in works), ZERO),
    )
    return Ks3Form(**_header(act), reportingYear=act.act_date.year, works=works, totals=totals)


def get_ks2_form(session: Session, act_id: str, *, tenant_id: str | None = None) -> Ks2Form:
    tenant = resolve_tenant_id(session, tenant_id)
    return build_ks2_payload(get_act(session, act_id, tenant))


def get_ks3_form(session: Session, act_id: str, *, tenant_id: str | None = None) -> Ks3Form:
    tenant = resolve_tenant_id(session, tenant_id)
    act = get_act(session, act_id, tenant)
    return build_ks3_payload(session, act)

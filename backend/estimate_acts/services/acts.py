from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import orm_models
from ..formatting import quantize_money, to_decimal
from ..schemas import (
    ActDetail,
    ActDetailsUpdate,
    ActGenerateRequest,
    ActGenerateResponse,
    ActItem,
    ActSection,
    ActSummary,
    Signatory,
    SignatoryIn,
)
from .errors import ConflictError, NoCompletedWorksError, ServiceError, ValidationError
from .scope import get_act, get_estimate, get_project, resolve_tenant_id

logger = logging.getLogger(__name__)

ActType = orm_models.ActType

ACT_NUMBER_PREFIXES: Dict[str, str] = {
    ActType.CLIENT.value: "CL",
    ActType.SPECIALIST.value: "SP",
}
GENERATE_BOTH = "both"
VALID_GENERATE_TYPES = (ActType.CLIENT.value, ActType.SPECIALIST.value, GENERATE_BOTH)
VALID_STATUSES = tuple(status.value for status in orm_models.ActStatus)
SIGNATORY_ROLES = tuple(role.value for role in orm_models.SignatoryRole)
NO_SECTION = "Без раздела"
COUNTER_MAX_ATTEMPTS = 10

DETAIL_FIELDS: Dict[str, str] = {
    "contractorName": "contractor_name",
    "contractorInn": "contractor_inn",
    "contractorKpp": "contractor_kpp",
    "contractorOgrn": "contractor_ogrn",
    "contractorAddress": "contractor_address",
    "customerName": "customer_name",
    "customerInn": "customer_inn",
    "customerKpp": "customer_kpp",
    "customerOgrn": "customer_ogrn",
    "customerAddress": "customer_address",
    "contractNumber": "contract_number",
    "contractDate": "contract_date",
    "contractSubject": "contract_subject",
    "constructionObject": "construction_object",
    "constructionAddress": "construction_address",
    "constructionOkpd": "construction_okpd",
    "formType": "form_type",
    "notes": "notes",
}


@dataclass
class _EligibleLine:
    record: orm_models.WorkCompletionORM
    item: orm_models.EstimateItemORM
    quantity: Decimal
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return quantize_money(self.quantity * self.unit_price)


# === Mapping ================================================================

def _map_summary(act: orm_models.WorkCompletionActORM) -> ActSummary:
    return ActSummary(
        id=act.id,
        actNumber=act.act_number,
        actType=act.act_type,
        actDate=act.act_date,
        periodFrom=act.period_from,
        periodTo=act.period_to,
        totalAmount=act.total_amount or Decimal("0"),
        totalQuantity=act.total_quantity or Decimal("0"),
        workCount=act.work_count or 0,
        status=act.status,
        createdAt=act.created_at,
    )


def _map_item(item: orm_models.WorkCompletionActItemORM) -> ActItem:
    return ActItem(
        id=item.id,
        estimateItemId=item.estimate_item_id,
        workCode=item.work_code,
        workName=item.work_name,
        unit=item.unit,
        section=item.section,
        subsection=item.subsection,
        plannedQuantity=item.planned_quantity or Decimal("0"),
        actualQuantity=item.actual_quantity or Decimal("0"),
        unitPrice=item.unit_price or Decimal("0"),
        totalPrice=item.total_price or Decimal("0"),
        positionNumber=item.position_number or 0,
        lineNumber=item.line_number or 0,
    )


def map_signatory(signatory: orm_models.ActSignatoryORM) -> Signatory:
    return Signatory(
        role=signatory.role,
        fullName=signatory.full_name,
        position=signatory.position,
        basisDocument=signatory.basis_document,
    )


def group_items_by_section(items: Iterable[ActItem]) -> List[ActSection]:
    groups: Dict[str, List[ActItem]] = {}
    for item in items:
        groups.setdefault(item.section or NO_SECTION, []).append(item)
    return [
        ActSection(
            section=section,
            items=section_items,
            sectionTotal=sum((entry.totalPrice for entry in section_items), Decimal("0.00")),
        )
        for section, section_items in groups.items()
    ]


def _map_detail(act: orm_models.WorkCompletionActORM) -> ActDetail:
    items = [_map_item(item) for item in act.items]
    summary = _map_summary(act)
    return ActDetail(
        **summary.model_dump(),
        estimateId=act.estimate_id,
        projectId=act.project_id,
        notes=act.notes,
        formType=act.form_type,
        contractorName=act.contractor_name,
        customerName=act.customer_name,
        contractNumber=act.contract_number,
        contractDate=act.contract_date,
        contractSubject=act.contract_subject,
        constructionObject=act.construction_object,
        constructionAddress=act.construction_address,
        constructionOkpd=act.construction_okpd,
        items=items,
        groupedItems=group_items_by_section(items),
        signatories=[map_signatory(signatory) for signatory in act.signatories],
    )


# === Numbering ==============================================================

def format_act_number(act_type: str, year: int, sequence: int) -> str:
    return f"ACT-{ACT_NUMBER_PREFIXES[act_type]}-{year}-{sequence:03d}"


def next_act_sequence(session: Session, tenant_id: str, act_type: str, year: int) -> int:
    """Reserve the next number of the (tenant, kind, year) counter.

    Compare-and-swap on the counter row: the UPDATE only succeeds against the
    value that was read, so concurrent generators never receive the same number.
    Numbers are not recycled when acts are deleted.
    """
    counter = orm_models.ActNumberCounterORM
    scope = (
        counter.tenant_id == tenant_id,
        counter.act_type == act_type,
        counter.year == year,
    )
    for attempt in range(1, COUNTER_MAX_ATTEMPTS + 1):
        current = session.execute(select(counter.value).where(*scope)).scalar_one_or_none()
        if current is None:
            try:
                with session.begin_nested():
                    session.execute(
                        insert(counter).values(tenant_id=tenant_id, act_type=act_type, year=year, value=1)
                    )
                return 1
            except IntegrityError:
                logger.warning("Act counter %s/%s/%s created concurrently, retrying", tenant_id, act_type, year)
                continue
        result = session.execute(
            update(counter)
            .where(*scope, counter.value == current)
            .values(value=current + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return current + 1
        logger.warning("Act counter contention for %s/%s/%s (attempt %s)", tenant_id, act_type, year, attempt)
    raise ConflictError("Не удалось получить номер акта, повторите попытку", {"actType": act_type, "year": year})


# === Generation =============================================================

def _unit_price(act_type: str, item: orm_models.EstimateItemORM, base_price: Optional[Decimal]) -> Decimal:
    if act_type == ActType.SPECIALIST.value and base_price is not None:
        return to_decimal(base_price) or Decimal("0")
    return to_decimal(item.unit_price) or Decimal("0")


def _eligible_lines(session: Session, estimate_id: str, act_type: str, tenant_id: str) -> List[_EligibleLine]:
    """Completed lines with a positive reported quantity, snapshotted as reported."""
    completion = orm_models.WorkCompletionORM
    estimate_item = orm_models.EstimateItemORM
    rows = session.execute(
        select(completion, estimate_item, orm_models.WorkORM.base_price)
        .join(estimate_item, estimate_item.id == completion.estimate_item_id)
        .outerjoin(orm_models.WorkORM, orm_models.WorkORM.id == estimate_item.work_id)
        .where(completion.estimate_id == estimate_id)
        .where(completion.tenant_id == tenant_id)
        .where(completion.completed.is_(True))
        .where(completion.actual_quantity > 0)
    ).all()

    lines: List[_EligibleLine] = []
    for record, item, base_price in rows:
        lines.append(
            _EligibleLine(
                record=record,
                item=item,
                quantity=to_decimal(record.actual_quantity) or Decimal("0"),
                unit_price=_unit_price(act_type, item, base_price),
            )
        )
    lines.sort(key=lambda line: (line.item.section or "", line.item.subsection or "", line.item.position_number or 0, line.item.id))
    return lines


def _create_act(
    session: Session,
    *,
    tenant_id: str,
    estimate: orm_models.EstimateORM,
    project: orm_models.ProjectORM,
    act_type: str,
    act_date: date,
    period_from: Optional[date],
    period_to: Optional[date],
    user_id: Optional[str],
) -> orm_models.WorkCompletionActORM:
    lines = _eligible_lines(session, estimate.id, act_type, tenant_id)
    if not lines:
        raise NoCompletedWorksError(details={"actType": act_type})

    sequence = next_act_sequence(session, tenant_id, act_type, act_date.year)
    act = orm_models.WorkCompletionActORM(
        tenant_id=tenant_id,
        estimate_id=estimate.id,
        project_id=project.id,
        act_type=act_type,
        act_number=format_act_number(act_type, act_date.year, sequence),
        sequence_number=sequence,
        act_date=act_date,
        period_from=period_from,
        period_to=period_to,
        status=orm_models.ActStatus.DRAFT.value,
        created_by=user_id,
    )
    for index, line in enumerate(lines, start=1):
        act.items.append(
            orm_models.WorkCompletionActItemORM(
                tenant_id=tenant_id,
                estimate_item_id=line.item.id,
                work_code=line.item.code,
                work_name=line.item.name,
                unit=line.item.unit,
                section=line.item.section,
                subsection=line.item.subsection,
                planned_quantity=line.item.quantity or Decimal("0"),
                actual_quantity=line.quantity,
                unit_price=quantize_money(line.unit_price),
                total_price=line.total,
                position_number=line.item.position_number or 0,
                line_number=index,
            )
        )
    act.total_amount = sum((line.total for line in lines), Decimal("0.00"))
    act.total_quantity = sum((line.quantity for line in lines), Decimal("0"))
    act.work_count = len(lines)
    session.add(act)
    session.flush()

    for line in lines:
        line.record.last_act = act
    session.flush()
    logger.info(
        "Generated %s act %s for estimate %s: %s lines, total %s",
        act_type,
        act.act_number,
        estimate.id,
        act.work_count,
        act.total_amount,
    )
    return act


def generate_acts(
    session: Session,
    payload: ActGenerateRequest,
    *,
    tenant_id: str | None = None,
    user_id: str | None = None,
) -> ActGenerateResponse:
    """Generate a client act, a specialist act or both.

    Each act is written inside its own SAVEPOINT. For ``both`` the client act is
    committed before the specialist act is attempted, so the two kinds succeed
    or fail independently and failures are reported per kind.
    """
    tenant = resolve_tenant_id(session, tenant_id)
    if not payload.estimateId:
        raise ValidationError("ID сметы обязателен", {"field": "estimateId"})
    if not payload.projectId:
        raise ValidationError("ID проекта обязателен", {"field": "projectId"})
    if payload.actType not in VALID_GENERATE_TYPES:
        raise ValidationError("Тип акта должен быть: client, specialist или both", {"field": "actType"})

    estimate = get_estimate(session, payload.estimateId, tenant)
    project = get_project(session, payload.projectId, tenant)
    if estimate.project_id and estimate.project_id != project.id:
        raise ValidationError("Смета не относится к указанному проекту", {"field": "projectId"})

    act_date = payload.actDate or date.today()
    period_to = payload.periodTo or act_date
    if payload.periodFrom and payload.periodFrom > period_to:
        raise ValidationError("Начало периода позже его окончания", {"field": "periodFrom"})

    kinds = [ActType.CLIENT.value, ActType.SPECIALIST.value] if payload.actType == GENERATE_BOTH else [payload.actType]
    independent = len(kinds) > 1

    generated: Dict[str, orm_models.WorkCompletionActORM] = {}
    failures: Dict[str, dict] = {}
    first_error: Optional[ServiceError] = None
    for kind in kinds:
        try:
            with session.begin_nested():
                act = _create_act(
                    session,
                    tenant_id=tenant,
                    estimate=estimate,
                    project=project,
                    act_type=kind,
                    act_date=act_date,
                    period_from=payload.periodFrom,
                    period_to=period_to,
                    user_id=user_id,
                )
        except ServiceError as error:
            if not independent:
                raise
            failures[kind] = error.to_dict()
            first_error = first_error or error
            continue
        if independent:
            session.commit()
        generated[kind] = act

    if not generated and first_error is not None:
        raise first_error

    message = "Акты успешно сформированы" if len(generated) > 1 else "Акт успешно сформирован"
    client_act = generated.get(ActType.CLIENT.value)
    specialist_act = generated.get(ActType.SPECIALIST.value)
    return ActGenerateResponse(
        message=message,
        clientAct=_map_summary(client_act) if client_act else None,
        specialistAct=_map_summary(specialist_act) if specialist_act else None,
        failures=failures,
    )


# === Queries and maintenance ================================================

def list_acts(
    session: Session,
    estimate_id: str,
    act_type: str | None = None,
    *,
    tenant_id: str | None = None,
) -> List[ActSummary]:
    tenant = resolve_tenant_id(session, tenant_id)
    get_estimate(session, estimate_id, tenant)
    act = orm_models.WorkCompletionActORM
    stmt = select(act).where(act.estimate_id == estimate_id).where(act.tenant_id == tenant)
    if act_type:
        if act_type not in ACT_NUMBER_PREFIXES:
            raise ValidationError("Тип акта должен быть: client или specialist", {"field": "actType"})
        stmt = stmt.where(act.act_type == act_type)
    stmt = stmt.order_by(act.act_date.desc(), act.created_at.desc(), act.sequence_number.desc())
    return [_map_summary(record) for record in session.execute(stmt).scalars()]


def get_act_detail(session: Session, act_id: str, *, tenant_id: str | None = None) -> ActDetail:
    tenant = resolve_tenant_id(session, tenant_id)
    return _map_detail(get_act(session, act_id, tenant))


def delete_act(session: Session, act_id: str, *, tenant_id: str | None = None) -> str:
    """Hard-delete an act; returns the id of its estimate."""
    tenant = resolve_tenant_id(session, tenant_id)
    act = get_act(session, act_id, tenant)
    estimate_id = act.estimate_id
    billed = session.execute(
        select(orm_models.WorkCompletionORM).where(orm_models.WorkCompletionORM.last_act_id == act.id)
    ).scalars()
    for record in billed:
        record.last_act = None
    session.delete(act)
    session.flush()
    logger.info("Deleted act %s (%s) of estimate %s", act.act_number, act.act_type, estimate_id)
    return estimate_id


def update_act_status(
    session: Session,
    act_id: str,
    status: str | None,
    *,
    tenant_id: str | None = None,
) -> ActSummary:
    tenant = resolve_tenant_id(session, tenant_id)
    if status not in VALID_STATUSES:
        raise ValidationError("Недопустимый статус", {"field": "status", "allowed": list(VALID_STATUSES)})
    act = get_act(session, act_id, tenant)
    act.status = status
    session.flush()
    return _map_summary(act)


def update_act_details(
    session: Session,
    act_id: str,
    payload: ActDetailsUpdate,
    *,
    tenant_id: str | None = None,
) -> ActDetail:
    """Change only the fields present in ``payload``; ``null`` keeps the stored value."""
    tenant = resolve_tenant_id(session, tenant_id)
    act = get_act(session, act_id, tenant)
    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip() or None
        if key == "formType" and value is None:
            continue
        setattr(act, DETAIL_FIELDS[key], value)
    session.flush()
    return _map_detail(act)


def replace_signatories(
    session: Session,
    act_id: str,
    signatories: Iterable[SignatoryIn],
    *,
    tenant_id: str | None = None,
) -> List[Signatory]:
    tenant = resolve_tenant_id(session, tenant_id)
    act = get_act(session, act_id, tenant)
    signatories = list(signatories)
    for index, entry in enumerate(signatories):
        if entry.role not in SIGNATORY_ROLES:
            raise ValidationError(
                "Недопустимая роль подписанта",
                {"index": index, "field": "role", "allowed": list(SIGNATORY_ROLES)},
            )
        if not entry.fullName:
            raise ValidationError("ФИО подписанта обязательно", {"index": index, "field": "fullName"})

    act.signatories.clear()
    session.flush()
    for index, entry in enumerate(signatories):
        act.signatories.append(
            orm_models.ActSignatoryORM(
                tenant_id=tenant,
                role=entry.role,
                full_name=entry.fullName,
                position=entry.position,
                basis_document=entry.basisDocument,
                sort_order=index,
            )
        )
    session.flush()
    return [map_signatory(signatory) for signatory in act.signatories]

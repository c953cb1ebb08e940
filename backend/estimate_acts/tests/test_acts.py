from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from estimate_acts.orm_models import (
    ActNumberCounterORM,
    WorkCompletionActItemORM,
    WorkCompletionActORM,
)
from estimate_acts.schemas import ActDetailsUpdate, ActGenerateRequest, SignatoryIn, WorkCompletionUpsert
from estimate_acts.services import acts as acts_service
from estimate_acts.services.acts import (
    delete_act,
    format_act_number,
    generate_acts,
    get_act_detail,
    list_acts,
    next_act_sequence,
    replace_signatories,
    update_act_details,
    update_act_status,
)
from estimate_acts.services.completions import list_completions, upsert_completion
from estimate_acts.services.errors import ConflictError, NoCompletedWorksError, NotFoundError, ValidationError

TENANT_ID = "tenant-a"

ACT_DATE = date(2024, 3, 31)


def _complete(session, item_id: str, quantity, *, estimate_id: str = "est-1", completed: bool = True):
    return upsert_completion(
        session,
        estimate_id,
        WorkCompletionUpsert(estimateItemId=item_id, completed=completed, actualQuantity=Decimal(str(quantity))),
    )


def _generate(session, act_type: str, *, act_date: date = ACT_DATE, **overrides):
    payload = ActGenerateRequest(
        estimateId=overrides.pop("estimate_id", "est-1"),
        projectId=overrides.pop("project_id", "proj-1"),
        actType=act_type,
        actDate=act_date,
        periodFrom=overrides.pop("period_from", date(act_date.year, act_date.month, 1)),
        periodTo=overrides.pop("period_to", act_date),
    )
    return generate_acts(session, payload, user_id="user-1")


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture()
def completed_ctx(session, estimate_ctx):
    _complete(session, "item-1-1", 10)
    _complete(session, "item-1-2", 5)
    _complete(session, "item-1-3", 2)
    return estimate_ctx


def test_generate_client_act_totals(session, completed_ctx):
    result = _generate(session, "client")

    act = result.clientAct
    assert result.specialistAct is None
    assert act.actNumber == "ACT-CL-2024-001"
    assert act.status == "draft"
    assert act.workCount == 3
    assert act.totalAmount == Decimal("5000.00")
    assert act.totalQuantity == Decimal("17")

    detail = get_act_detail(session, act.id)
    assert sum(item.totalPrice for item in detail.items) == detail.totalAmount
    assert [item.lineNumber for item in detail.items] == [1, 2, 3]


def test_specialist_act_uses_catalog_base_price(session, completed_ctx):
    act = _generate(session, "specialist").specialistAct

    detail = get_act_detail(session, act.id)
    prices = {item.estimateItemId: item.unitPrice for item in detail.items}
    assert act.actNumber == "ACT-SP-2024-001"
    assert prices["item-1-1"] == Decimal("80.00")
    assert prices["item-1-2"] == Decimal("200.00")
    assert act.totalAmount == Decimal("4800.00")


def test_no_completed_works_writes_nothing(session, estimate_ctx):
    _complete(session, "item-1-1", 10, completed=False)
    _complete(session, "item-1-2", 0)

    with pytest.raises(NoCompletedWorksError) as exc:
        _generate(session, "client")

    assert exc.value.code == "no_completed_works"
    assert _count(session, WorkCompletionActORM) == 0
    assert _count(session, WorkCompletionActItemORM) == 0
    assert _count(session, ActNumberCounterORM) == 0


def test_generation_sets_last_act_reference(session, completed_ctx):
    act = _generate(session, "client").clientAct

    completions = list_completions(session, "est-1")
    assert {entry.lastActId for entry in completions} == {act.id}
    assert {entry.lastActNumber for entry in completions} == {"ACT-CL-2024-001"}


def test_second_act_snapshots_current_quantities(session, completed_ctx):
    first = _generate(session, "client").clientAct
    _complete(session, "item-1-1", 15)

    second = _generate(session, "client", act_date=date(2024, 4, 30)).clientAct

    detail = get_act_detail(session, second.id)
    quantities = {item.estimateItemId: item.actualQuantity for item in detail.items}
    assert second.actNumber == "ACT-CL-2024-002"
    assert quantities == {"item-1-1": Decimal("15"), "item-1-2": Decimal("5"), "item-1-3": Decimal("2")}
    assert second.totalAmount == Decimal("5500.00")
    assert get_act_detail(session, first.id).totalAmount == Decimal("5000.00")


def test_repeated_generation_over_unchanged_completions(session, completed_ctx):
    first = _generate(session, "client").clientAct
    second = _generate(session, "client").clientAct

    assert second.actNumber == "ACT-CL-2024-002"
    assert second.totalAmount == first.totalAmount
    assert list_completions(session, "est-1")[0].lastActId == second.id


def test_numbers_are_not_reused_after_delete(session, completed_ctx):
    first = _generate(session, "client").clientAct
    estimate_id = delete_act(session, first.id)
    assert estimate_id == "est-1"

    second = _generate(session, "client").clientAct

    assert second.actNumber == "ACT-CL-2024-002"
    assert list_completions(session, "est-1")[0].lastActId == second.id


def test_numbering_restarts_each_year_and_kind(session):
    assert next_act_sequence(session, TENANT_ID, "client", 2024) == 1
    assert next_act_sequence(session, TENANT_ID, "client", 2024) == 2
    assert next_act_sequence(session, TENANT_ID, "specialist", 2024) == 1
    assert next_act_sequence(session, TENANT_ID, "client", 2025) == 1
    assert next_act_sequence(session, "tenant-b", "client", 2024) == 1
    assert format_act_number("specialist", 2025, 12) == "ACT-SP-2025-012"


def test_generate_both_kinds(session, completed_ctx):
    result = _generate(session, "both")

    assert result.clientAct.actNumber == "ACT-CL-2024-001"
    assert result.specialistAct.actNumber == "ACT-SP-2024-001"
    assert result.failures == {}
    assert result.message == "Акты успешно сформированы"


def _counter_conflict_for(kinds):
    def fake(session, tenant_id, act_type, year):
        if act_type in kinds:
            raise ConflictError("Не удалось получить номер акта, повторите попытку", {"actType": act_type})
        return next_act_sequence(session, tenant_id, act_type, year)

    return fake


def test_generate_both_reports_failed_kind(session, completed_ctx, monkeypatch):
    monkeypatch.setattr(acts_service, "next_act_sequence", _counter_conflict_for({"specialist"}))

    result = _generate(session, "both")

    assert result.clientAct is not None
    assert result.specialistAct is None
    assert result.failures["specialist"]["code"] == "conflict"
    assert _count(session, WorkCompletionActORM) == 1


def test_generate_both_raises_first_failure_when_nothing_generated(session, completed_ctx, monkeypatch):
    monkeypatch.setattr(acts_service, "next_act_sequence", _counter_conflict_for({"client", "specialist"}))

    with pytest.raises(ConflictError) as exc:
        _generate(session, "both")

    assert exc.value.details == {"actType": "client"}
    assert _count(session, WorkCompletionActORM) == 0


def test_generate_both_without_completions_raises_no_completed_works(session, estimate_ctx):
    with pytest.raises(NoCompletedWorksError):
        _generate(session, "both")


def test_period_end_defaults_to_act_date(session, completed_ctx):
    act = _generate(session, "client", period_to=None).clientAct

    detail = get_act_detail(session, act.id)
    assert detail.periodTo == ACT_DATE


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"act_type": "monthly"}, ValidationError),
        ({"estimate_id": ""}, ValidationError),
        ({"estimate_id": "est-missing"}, NotFoundError),
        ({"project_id": "proj-missing"}, NotFoundError),
        ({"period_from": date(2024, 4, 1), "period_to": date(2024, 3, 1)}, ValidationError),
        ({"period_from": date(2024, 4, 1), "period_to": None}, ValidationError),
    ],
)
def test_generate_validates_request(session, completed_ctx, overrides, error):
    overrides = dict(overrides)
    act_type = overrides.pop("act_type", "client")
    with pytest.raises(error):
        _generate(session, act_type, **overrides)
    assert _count(session, WorkCompletionActORM) == 0


def test_generate_rejects_project_of_other_estimate(session, completed_ctx, make_estimate):
    make_estimate(suffix="2")
    with pytest.raises(ValidationError):
        _generate(session, "client", project_id="proj-2")


def test_list_acts_filters_by_type(session, completed_ctx):
    _generate(session, "both")

    assert len(list_acts(session, "est-1")) == 2
    [client] = list_acts(session, "est-1", "client")
    assert client.actType == "client"
    with pytest.raises(ValidationError):
        list_acts(session, "est-1", "both")


def test_act_detail_groups_items_by_section(session, completed_ctx):
    act = _generate(session, "client").clientAct

    detail = get_act_detail(session, act.id)

    sections = {group.section: group for group in detail.groupedItems}
    assert set(sections) == {"Земляные работы", "Без раздела"}
    assert sections["Земляные работы"].sectionTotal == Decimal("2000.00")
    assert sections["Без раздела"].sectionTotal == Decimal("3000.00")


def test_update_status(session, completed_ctx):
    act = _generate(session, "client").clientAct

    assert update_act_status(session, act.id, "approved").status == "approved"
    with pytest.raises(ValidationError):
        update_act_status(session, act.id, "archived")
    with pytest.raises(NotFoundError):
        update_act_status(session, "act-missing", "paid")


def test_update_details_changes_only_given_fields(session, completed_ctx):
    act = _generate(session, "client").clientAct
    update_act_details(
        session,
        act.id,
        ActDetailsUpdate(customerName="АО «Инвест»", contractNumber="77-П", notes="первичный"),
    )

    detail = update_act_details(session, act.id, ActDetailsUpdate(contractNumber=None, notes="  "))

    assert detail.customerName == "АО «Инвест»"
    assert detail.contractNumber == "77-П"
    assert detail.notes is None


def test_replace_signatories(session, completed_ctx):
    act = _generate(session, "client").clientAct
    replace_signatories(
        session,
        act.id,
        [SignatoryIn(role="contractor_chief", fullName="Иванов И.И.", position="Директор")],
    )

    signatories = replace_signatories(
        session,
        act.id,
        [
            SignatoryIn(role="customer_chief", fullName="Петров П.П."),
            SignatoryIn(role="contractor_chief", fullName="Сидоров С.С.", position="Генеральный директор"),
        ],
    )

    assert [entry.fullName for entry in signatories] == ["Петров П.П.", "Сидоров С.С."]
    assert len(get_act_detail(session, act.id).signatories) == 2


def test_replace_signatories_validates_every_entry(session, completed_ctx):
    act = _generate(session, "client").clientAct
    with pytest.raises(ValidationError) as exc:
        replace_signatories(
            session,
            act.id,
            [SignatoryIn(role="customer_chief", fullName="Петров П.П."), SignatoryIn(role="director", fullName="Х")],
        )
    assert exc.value.details["index"] == 1
    with pytest.raises(ValidationError):
        replace_signatories(session, act.id, [SignatoryIn(role="customer_chief", fullName=" ")])


def test_act_items_are_immutable(session, completed_ctx):
    act = _generate(session, "client").clientAct
    item = session.execute(
        select(WorkCompletionActItemORM).where(WorkCompletionActItemORM.act_id == act.id)
    ).scalars().first()

    item.actual_quantity = Decimal("999")
    with pytest.raises(ValueError):
        session.flush()

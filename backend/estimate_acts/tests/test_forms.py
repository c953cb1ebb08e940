from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from estimate_acts.schemas import ActDetailsUpdate, ActGenerateRequest, SignatoryIn, WorkCompletionUpsert
from estimate_acts.services.acts import generate_acts, replace_signatories, update_act_details
from estimate_acts.services.completions import upsert_completion
from estimate_acts.services.errors import NotFoundError
from estimate_acts.services.forms import get_ks2_form, resolve


@pytest.mark.parametrize(
    "act_value, project_value, default, expected",
    [
        ("ООО «Альфа»", "ООО «Бета»", "", "ООО «Альфа»"),
        ("   ", "ООО «Бета»", "", "ООО «Бета»"),
        (None, None, "—", "—"),
        (None, "", "", ""),
        (date(2024, 1, 1), None, None, date(2024, 1, 1)),
    ],
)
def test_resolve_precedence(act_value, project_value, default, expected):
    assert resolve(act_value, project_value, default) == expected


@pytest.fixture()
def act_id(session, estimate_ctx):
    for item_id, quantity in (("item-1-1", "10"), ("item-1-3", "2")):
        upsert_completion(
            session,
            "est-1",
            WorkCompletionUpsert(estimateItemId=item_id, completed=True, actualQuantity=Decimal(quantity)),
        )
    payload = ActGenerateRequest(
        estimateId="est-1",
        projectId="proj-1",
        actType="client",
        actDate=date(2024, 3, 31),
        periodFrom=date(2024, 3, 1),
    )
    return generate_acts(session, payload).clientAct.id


def test_ks2_form_falls_back_to_project(session, act_id):
    form = get_ks2_form(session, act_id)

    assert form.okud == "0322005"
    assert form.actNumber == "ACT-CL-2024-001"
    assert form.contractor.name == "ООО «Подрядчик»"
    assert form.customer.name == "ООО «Заказчик»"
    assert form.contract.number == "15/24"
    assert form.constructionObject.name == "Корпус 1"
    assert form.constructionObject.address == "г. Казань, ул. Новая, 5"
    assert form.period.from_ == date(2024, 3, 1)
    assert form.period.to == date(2024, 3, 31)
    assert form.totals.amount == Decimal("4000.00")
    assert form.totals.workCount == 2
    assert [work.lineNumber for work in form.works] == [1, 2]


def test_ks2_form_prefers_act_details(session, act_id):
    update_act_details(
        session,
        act_id,
        ActDetailsUpdate(contractorName="ООО «СтройМонтаж»", contractorInn="1655123456", contractNumber="ДП-3"),
    )

    form = get_ks2_form(session, act_id)

    assert form.contractor.name == "ООО «СтройМонтаж»"
    assert form.contractor.inn == "1655123456"
    assert form.contract.number == "ДП-3"
    assert form.customer.name == "ООО «Заказчик»"


def test_ks2_form_orders_signatories_by_role(session, act_id):
    replace_signatories(
        session,
        act_id,
        [
            SignatoryIn(role="technical_supervisor", fullName="Козлов К.К."),
            SignatoryIn(role="customer_chief", fullName="Петров П.П."),
            SignatoryIn(role="contractor_chief", fullName="Иванов И.И."),
        ],
    )

    form = get_ks2_form(session, act_id)

    assert [entry.role for entry in form.signatories] == ["contractor_chief", "customer_chief", "technical_supervisor"]


def test_ks2_form_payload_uses_from_alias(session, act_id):
    payload = get_ks2_form(session, act_id).model_dump(mode="json", by_alias=True)

    assert payload["period"] == {"from": "2024-03-01", "to": "2024-03-31"}
    assert payload["totals"]["amount"] == 4000.0


def test_unknown_act(session, estimate_ctx):
    with pytest.raises(NotFoundError):
        get_ks2_form(session, "act-missing")

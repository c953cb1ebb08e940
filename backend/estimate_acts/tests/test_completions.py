from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from estimate_acts.orm_models import WorkCompletionORM
from estimate_acts.schemas import WorkCompletionUpsert
from estimate_acts.services.completions import (
    batch_upsert_completions,
    export_completions_csv,
    import_completions_csv,
    list_completions,
    remove_completion,
    upsert_completion,
)
from estimate_acts.services.errors import NotFoundError, ValidationError


def _count_records(session) -> int:
    return session.execute(select(func.count()).select_from(WorkCompletionORM)).scalar_one()


def test_upsert_creates_record_with_default_total(session, estimate_ctx):
    completion = upsert_completion(
        session,
        "est-1",
        WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=Decimal("12.5")),
        user_id="user-1",
    )

    assert completion.completed is True
    assert completion.actualQuantity == Decimal("12.5")
    assert completion.actualTotal == Decimal("1250.00")
    assert completion.completionDate is not None


def test_upsert_is_idempotent(session, estimate_ctx):
    payload = WorkCompletionUpsert(estimateItemId="item-1-2", completed=True, actualQuantity=Decimal("5"))
    first = upsert_completion(session, "est-1", payload)
    second = upsert_completion(session, "est-1", payload)

    assert _count_records(session) == 1
    assert second.id == first.id
    assert second.completionDate == first.completionDate
    assert second.updatedAt == first.updatedAt


def test_uncompleting_clears_completion_date(session, estimate_ctx):
    upsert_completion(session, "est-1", WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=1))
    cleared = upsert_completion(
        session, "est-1", WorkCompletionUpsert(estimateItemId="item-1-1", completed=False, actualQuantity=1)
    )

    assert cleared.completed is False
    assert cleared.completionDate is None


def test_upsert_rejects_negative_quantity(session, estimate_ctx):
    with pytest.raises(ValidationError) as exc:
        upsert_completion(
            session, "est-1", WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=-1)
        )
    assert exc.value.details["field"] == "actualQuantity"
    assert _count_records(session) == 0


def test_upsert_rejects_item_from_another_estimate(session, estimate_ctx, make_estimate):
    make_estimate(suffix="2")
    with pytest.raises(NotFoundError):
        upsert_completion(session, "est-1", WorkCompletionUpsert(estimateItemId="item-2-1", completed=True))


def test_batch_with_invalid_entry_persists_nothing(session, make_estimate):
    make_estimate(line_count=7)
    payloads = [
        WorkCompletionUpsert(estimateItemId=f"item-1-x{index:02d}", completed=True, actualQuantity=Decimal("1"))
        for index in range(1, 8)
    ]
    payloads.insert(4, WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=Decimal("-3")))
    payloads.append(WorkCompletionUpsert(estimateItemId="item-1-2", completed=True, actualQuantity=Decimal("2")))
    payloads.append(WorkCompletionUpsert(estimateItemId="item-1-3", completed=True, actualQuantity=Decimal("2")))
    assert len(payloads) == 10

    with pytest.raises(ValidationError) as exc:
        batch_upsert_completions(session, "est-1", payloads)

    assert exc.value.details["index"] == 4
    assert _count_records(session) == 0


def test_batch_rejects_duplicate_items(session, estimate_ctx):
    payloads = [
        WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=1),
        WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=2),
    ]
    with pytest.raises(ValidationError):
        batch_upsert_completions(session, "est-1", payloads)
    assert _count_records(session) == 0


def test_batch_applies_all_entries(session, estimate_ctx):
    payloads = [
        WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=10),
        WorkCompletionUpsert(estimateItemId="item-1-2", completed=True, actualQuantity=4, actualTotal=Decimal("999")),
    ]
    completions = batch_upsert_completions(session, "est-1", payloads)

    assert [entry.estimateItemId for entry in completions] == ["item-1-1", "item-1-2"]
    assert completions[1].actualTotal == Decimal("999.00")
    assert len(list_completions(session, "est-1")) == 2


def test_remove_completion(session, estimate_ctx):
    upsert_completion(session, "est-1", WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=1))
    remove_completion(session, "est-1", "item-1-1")
    assert _count_records(session) == 0

    with pytest.raises(NotFoundError):
        remove_completion(session, "est-1", "item-1-1")


def test_list_completions_is_tenant_scoped(session, estimate_ctx, make_estimate):
    make_estimate(suffix="9", tenant_id="tenant-b")
    with pytest.raises(NotFoundError):
        list_completions(session, "est-9")


def test_export_completions_csv(session, estimate_ctx):
    upsert_completion(
        session,
        "est-1",
        WorkCompletionUpsert(estimateItemId="item-1-1", completed=True, actualQuantity=Decimal("12.5"), notes="секция А"),
    )

    lines = export_completions_csv(session, "est-1").splitlines()

    assert lines[0] == "Наименование работ;Кол-во;Дата;Заметки"
    name, quantity, completed_on, notes = lines[1].split(";")
    assert name == "Разработка грунта экскаватором"
    assert quantity == "12,5"
    assert len(completed_on) == 10
    assert notes == "секция А"


def test_import_completions_csv(session, estimate_ctx):
    content = (
        "\ufeffНаименование работ;Кол-во;Дата;Заметки\n"
        "Обратная засыпка пазух;7,5;15.03.2024;по факту\n"
        "Несуществующая работа;1;;\n"
    )

    result = import_completions_csv(session, "est-1", content, user_id="user-1")

    assert result.successCount == 1
    assert result.errorCount == 1
    assert result.errors[0].workName == "Несуществующая работа"
    [completion] = list_completions(session, "est-1")
    assert completion.estimateItemId == "item-1-2"
    assert completion.actualQuantity == Decimal("7.5")
    assert completion.completionDate.date().isoformat() == "2024-03-15"
    assert completion.notes == "по факту"


def test_import_rejects_malformed_quantity(session, estimate_ctx):
    content = "Наименование работ;Кол-во;Дата;Заметки\nОбратная засыпка пазух;много;;\n"
    with pytest.raises(ValidationError) as exc:
        import_completions_csv(session, "est-1", content)
    assert exc.value.details["errors"][0]["line"] == 2
    assert _count_records(session) == 0

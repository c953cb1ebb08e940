from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from .. import orm_models
from ..formatting import format_date, quantize_money, to_decimal
from ..schemas import (
    CompletionImportError,
    CompletionImportResult,
    WorkCompletion,
    WorkCompletionUpsert,
)
from .errors import NotFoundError, ServiceError, ValidationError
from .scope import get_estimate, resolve_tenant_id

logger = logging.getLogger(__name__)

CSV_DELIMITER = ";"
CSV_HEADER = ("Наименование работ", "Кол-во", "Дата", "Заметки")


def _map_completion(record: orm_models.WorkCompletionORM) -> WorkCompletion:
    last_act = record.last_act
    return WorkCompletion(
        id=record.id,
        estimateId=record.estimate_id,
        estimateItemId=record.estimate_item_id,
        completed=bool(record.completed),
        actualQuantity=record.actual_quantity or Decimal("0"),
        actualTotal=record.actual_total or Decimal("0"),
        completionDate=record.completion_date,
        notes=record.notes,
        lastActId=record.last_act_id,
        lastActNumber=last_act.act_number if last_act else None,
        lastActType=last_act.act_type if last_act else None,
        createdAt=record.created_at,
        updatedAt=record.updated_at,
    )


def _get_estimate_item(
    session: Session,
    estimate_id: str,
    estimate_item_id: str,
    tenant_id: str,
) -> orm_models.EstimateItemORM:
    item = session.execute(
        select(orm_models.EstimateItemORM)
        .where(orm_models.EstimateItemORM.id == estimate_item_id)
        .where(orm_models.EstimateItemORM.estimate_id == estimate_id)
        .where(orm_models.EstimateItemORM.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if item is None:
        raise NotFoundError("Позиция сметы не найдена", {"estimateItemId": estimate_item_id})
    return item


def _find_record(
    session: Session,
    estimate_id: str,
    estimate_item_id: str,
    tenant_id: str,
) -> Optional[orm_models.WorkCompletionORM]:
    return session.execute(
        select(orm_models.WorkCompletionORM)
        .where(orm_models.WorkCompletionORM.estimate_id == estimate_id)
        .where(orm_models.WorkCompletionORM.estimate_item_id == estimate_item_id)
        .where(orm_models.WorkCompletionORM.tenant_id == tenant_id)
    ).scalar_one_or_none()


def _validate_payload(
    session: Session,
    estimate_id: str,
    payload: WorkCompletionUpsert,
    tenant_id: str,
) -> orm_models.EstimateItemORM:
    if not payload.estimateItemId:
        raise ValidationError("ID позиции сметы обязателен", {"field": "estimateItemId"})
    if payload.actualQuantity < 0:
        raise ValidationError(
            "Фактическое количество не может быть отрицательным",
            {"field": "actualQuantity", "estimateItemId": payload.estimateItemId},
        )
    if payload.actualTotal is not None and payload.actualTotal < 0:
        raise ValidationError(
            "Фактическая сумма не может быть отрицательной",
            {"field": "actualTotal", "estimateItemId": payload.estimateItemId},
        )
    return _get_estimate_item(session, estimate_id, payload.estimateItemId, tenant_id)


def _apply_payload(
    session: Session,
    estimate_id: str,
    item: orm_models.EstimateItemORM,
    payload: WorkCompletionUpsert,
    *,
    tenant_id: str,
    user_id: Optional[str],
    completion_date: Optional[datetime] = None,
) -> orm_models.WorkCompletionORM:
    record = _find_record(session, estimate_id, item.id, tenant_id)
    if record is None:
        record = orm_models.WorkCompletionORM(
            tenant_id=tenant_id,
            estimate_id=estimate_id,
            estimate_item_id=item.id,
            created_by=user_id,
        )
        session.add(record)
    was_completed = bool(record.completed)

    actual_total = payload.actualTotal
    if actual_total is None:
        actual_total = payload.actualQuantity * (item.unit_price or Decimal("0"))

    record.completed = payload.completed
    record.actual_quantity = payload.actualQuantity
    record.actual_total = quantize_money(actual_total)
    record.notes = payload.notes
    record.updated_by = user_id

    if payload.completed and not was_completed:
        record.completion_date = completion_date or datetime.utcnow()
    elif payload.completed and completion_date is not None:
        record.completion_date = completion_date
    elif not payload.completed:
        record.completion_date = None
    return record


# === Public API =============================================================

def list_completions(session: Session, estimate_id: str, *, tenant_id: str | None = None) -> List[WorkCompletion]:
    tenant = resolve_tenant_id(session, tenant_id)
    get_estimate(session, estimate_id, tenant)
    records = (
        session.execute(
            select(orm_models.WorkCompletionORM)
            .options(joinedload(orm_models.WorkCompletionORM.last_act))
            .where(orm_models.WorkCompletionORM.estimate_id == estimate_id)
            .where(orm_models.WorkCompletionORM.tenant_id == tenant)
            .order_by(orm_models.WorkCompletionORM.created_at, orm_models.WorkCompletionORM.id)
        )
        .scalars()
        .all()
    )
    return [_map_completion(record) for record in records]


def upsert_completion(
    session: Session,
    estimate_id: str,
    payload: WorkCompletionUpsert,
    *,
    tenant_id: str | None = None,
    user_id: str | None = None,
) -> WorkCompletion:
    tenant = resolve_tenant_id(session, tenant_id)
    get_estimate(session, estimate_id, tenant)
    item = _validate_payload(session, estimate_id, payload, tenant)
    record = _apply_payload(session, estimate_id, item, payload, tenant_id=tenant, user_id=user_id)
    session.flush()
    return _map_completion(record)


def batch_upsert_completions(
    session: Session,
    estimate_id: str,
    payloads: Iterable[WorkCompletionUpsert],
    *,
    tenant_id: str | None = None,
    user_id: str | None = None,
) -> List[WorkCompletion]:
    """Upsert all ``payloads`` or none of them.

    Every entry is validated before the first write; the writes themselves run
    inside a SAVEPOINT so a database failure also leaves nothing behind.
    """
    tenant = resolve_tenant_id(session, tenant_id)
    get_estimate(session, estimate_id, tenant)
    payloads = list(payloads)
    if not payloads:
        raise ValidationError("Список выполненных работ пуст", {"field": "completions"})

    seen: set[str] = set()
    validated: list[tuple[orm_models.EstimateItemORM, WorkCompletionUpsert]] = []
    for index, payload in enumerate(payloads):
        if payload.estimateItemId in seen:
            raise ValidationError(
                "Позиция сметы указана в пакете несколько раз",
                {"index": index, "estimateItemId": payload.estimateItemId},
            )
        seen.add(payload.estimateItemId)
        try:
            item = _validate_payload(session, estimate_id, payload, tenant)
        except ServiceError as error:
            error.details = {**(error.details or {}), "index": index}
            raise
        validated.append((item, payload))

    with session.begin_nested():
        records = [
            _apply_payload(session, estimate_id, item, payload, tenant_id=tenant, user_id=user_id)
            for item, payload in validated
        ]
        session.flush()
    return [_map_completion(record) for record in records]


def remove_completion(
    session: Session,
    estimate_id: str,
    estimate_item_id: str,
    *,
    tenant_id: str | None = None,
) -> None:
    tenant = resolve_tenant_id(session, tenant_id)
    get_estimate(session, estimate_id, tenant)
    record = _find_record(session, estimate_id, estimate_item_id, tenant)
    if record is None:
        raise NotFoundError("Запись о выполнении не найдена", {"estimateItemId": estimate_item_id})
    session.delete(record)
    session.flush()


# === CSV exchange ===========================================================

def _format_quantity_plain(value: Decimal | None) -> str:
    if value is None:
        return "0"
    normalized = value.normalize()
    text = f"{normalized:f}"
    return text.replace(".", ",")


def _parse_russian_date(value: str) -> Optional[datetime]:
    parts = value.strip().split(".")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(part) for part in parts)
        return datetime(year, month, day)
    except ValueError:
        return None


def export_completions_csv(session: Session, estimate_id: str, *, tenant_id: str | None = None) -> str:
    tenant = resolve_tenant_id(session, tenant_id)
    get_estimate(session, estimate_id, tenant)
    rows = session.execute(
        select(orm_models.WorkCompletionORM, orm_models.EstimateItemORM)
        .join(
            orm_models.EstimateItemORM,
            orm_models.EstimateItemORM.id == orm_models.WorkCompletionORM.estimate_item_id,
        )
        .where(orm_models.WorkCompletionORM.estimate_id == estimate_id)
        .where(orm_models.WorkCompletionORM.tenant_id == tenant)
        .order_by(orm_models.EstimateItemORM.position_number)
    ).all()

    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=CSV_DELIMITER, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record, item in rows:
        writer.writerow(
            [
                item.name,
                _format_quantity_plain(record.actual_quantity),
                format_date(record.completion_date),
                record.notes or "",
            ]
        )
    return buffer.getvalue()


def import_completions_csv(
    session: Session,
    estimate_id: str,
    content: str,
    *,
    tenant_id: str | None = None,
    user_id: str | None = None,
) -> CompletionImportResult:
    """Mark estimate lines completed from a ``;``-separated CSV.

    Lines are matched by name. Malformed rows reject the whole file; rows that
    name an unknown work are reported and skipped.
    """
    tenant = resolve_tenant_id(session, tenant_id)
    estimate = get_estimate(session, estimate_id, tenant)

    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")), delimiter=CSV_DELIMITER)
    if reader.fieldnames:
        reader.fieldnames = [name.strip() for name in reader.fieldnames]
    if not reader.fieldnames or CSV_HEADER[0] not in reader.fieldnames:
        raise ValidationError("Ошибки в CSV", {"errors": [{"line": 1, "message": "Нет колонки «Наименование работ»"}]})

    parsed: list[tuple[int, str, Decimal, Optional[datetime], Optional[str]]] = []
    row_errors: list[dict] = []
    for line_number, row in enumerate(reader, start=2):
        if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
            continue
        name = (row.get(CSV_HEADER[0]) or "").strip()
        if not name:
            row_errors.append({"line": line_number, "message": "Отсутствует Наименование работ"})
            continue
        quantity = to_decimal(row.get(CSV_HEADER[1]) or "0")
        if quantity is None or quantity < 0:
            row_errors.append({"line": line_number, "message": "Некорректное количество"})
            continue
        raw_date = (row.get(CSV_HEADER[2]) or "").strip()
        completion_date = _parse_russian_date(raw_date) if raw_date else None
        notes = (row.get(CSV_HEADER[3]) or "").strip() or None
        parsed.append((line_number, name, quantity, completion_date, notes))

    if row_errors:
        raise ValidationError("Ошибки в CSV", {"errors": row_errors})
    if not parsed:
        raise ValidationError("Файл пуст")

    items_by_name: Dict[str, orm_models.EstimateItemORM] = {}
    for item in estimate.items:
        items_by_name.setdefault(item.name, item)

    imported = 0
    errors: list[CompletionImportError] = []
    for line_number, name, quantity, completion_date, notes in parsed:
        item = items_by_name.get(name)
        if item is None:
            logger.warning("CSV import: work %r not found in estimate %s", name, estimate_id)
            errors.append(CompletionImportError(workName=name, line=line_number, error="Работа не найдена в смете"))
            continue
        payload = WorkCompletionUpsert(
            estimateItemId=item.id,
            completed=True,
            actualQuantity=quantity,
            notes=notes,
        )
        _apply_payload(
            session,
            estimate_id,
            item,
            payload,
            tenant_id=tenant,
            user_id=user_id,
            completion_date=completion_date,
        )
        session.flush()
        imported += 1

    return CompletionImportResult(successCount=imported, errorCount=len(errors), errors=errors)

"""Year-to-date, prior-period and current-period split of act amounts.

The split for an act is derived only from persisted acts: every act of the same
tenant and estimate dated in the same calendar year, client and specialist
alike, contributes its line amounts in ``(act_date, created_at)`` order, up to
and including the act being reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .. import orm_models
from ..formatting import quantize_money

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class LedgerEntry:
    """Amounts an act attributes to each work line, keyed by line id."""

    act_id: str
    act_date: date
    created_at: datetime
    amounts: Mapping[str, Decimal] = field(default_factory=dict)

    @property
    def order_key(self) -> tuple[date, datetime, str]:
        return (self.act_date, self.created_at, self.act_id)


@dataclass(frozen=True)
class PeriodSplit:
    current: Decimal
    ytd: Decimal

    @property
    def prior_periods(self) -> Decimal:
        return self.ytd - self.current

    @property
    def since_project_start(self) -> Decimal:
        return self.prior_periods

    @property
    def since_year_start(self) -> Decimal:
        return self.ytd - self.current


def split_periods(current: LedgerEntry, history: Iterable[LedgerEntry]) -> Dict[str, PeriodSplit]:
    """Split every line of ``current`` into YTD / prior / current amounts.

    ``history`` may contain any acts; only those in the same calendar year that
    sort at or before ``current`` are accumulated. ``current`` itself is always
    counted once whether or not it is present in ``history``.
    """
    year = current.act_date.year
    ytd: Dict[str, Decimal] = {key: ZERO for key in current.amounts}
    for entry in history:
        if entry.act_id == current.act_id:
            continue
        if entry.act_date.year != year or entry.order_key > current.order_key:
            continue
        for key, amount in entry.amounts.items():
            if key in ytd:
                ytd[key] += quantize_money(amount)

    result: Dict[str, PeriodSplit] = {}
    for key, amount in current.amounts.items():
        current_amount = quantize_money(amount)
        result[key] = PeriodSplit(current=current_amount, ytd=ytd[key] + current_amount)
    return result


def line_key(item: orm_models.WorkCompletionActItemORM) -> str:
    # Snapshots whose source line was deleted fall back to the item itself.
    return item.estimate_item_id or f"act-item:{item.id}"


def ledger_entry(act: orm_models.WorkCompletionActORM) -> LedgerEntry:
    amounts: Dict[str, Decimal] = {}
    for item in act.items:
        key = line_key(item)
        amounts[key] = amounts.get(key, ZERO) + quantize_money(item.total_price)
    return LedgerEntry(
        act_id=act.id,
        act_date=act.act_date,
        created_at=act.created_at,
        amounts=amounts,
    )


def load_period_splits(session: Session, act: orm_models.WorkCompletionActORM) -> Dict[str, PeriodSplit]:
    """Re-derive the split for ``act`` from the acts stored in the database."""
    year = act.act_date.year
    stmt = (
        select(orm_models.WorkCompletionActORM)
        .options(selectinload(orm_models.WorkCompletionActORM.items))
        .where(
            orm_models.WorkCompletionActORM.tenant_id == act.tenant_id,
            orm_models.WorkCompletionActORM.estimate_id == act.estimate_id,
            orm_models.WorkCompletionActORM.act_date >= date(year, 1, 1),
            orm_models.WorkCompletionActORM.act_date <= act.act_date,
        )
    )
    history = [ledger_entry(record) for record in session.execute(stmt).scalars()]
    return split_periods(ledger_entry(act), history)

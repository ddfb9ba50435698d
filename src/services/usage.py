from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.models import GroupMembership, LLMModel, UsageRecord

logger = logging.getLogger(__name__)

TOKEN_FIELDS = (
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "reasoning_tokens",
    "cached_tokens",
)
COST_FIELDS = ("input_cost", "output_cost", "total_cost")
GROUP_BY_COLUMNS = {
    "user_id": UsageRecord.user_id,
    "model_id": UsageRecord.model_id,
    "run_id": UsageRecord.run_id,
}
_MILLION = Decimal(1_000_000)


def _aggregate_columns() -> list:
    columns = [
        func.coalesce(func.sum(getattr(UsageRecord, field)), 0).label(field)
        for field in TOKEN_FIELDS
    ]
    columns.extend(
        func.sum(getattr(UsageRecord, field)).label(field) for field in COST_FIELDS
    )
    columns.append(func.count(UsageRecord.id).label("call_count"))
    return columns


def _apply_window(stmt, start: datetime | None, end: datetime | None):
    if start is not None:
        stmt = stmt.where(UsageRecord.created_at >= start)
    if end is not None:
        stmt = stmt.where(UsageRecord.created_at < end)
    return stmt


def _row_totals(row) -> dict[str, Any]:
    mapping = row._mapping
    totals: dict[str, Any] = {field: int(mapping[field] or 0) for field in TOKEN_FIELDS}
    for field in COST_FIELDS:
        value = mapping[field]
        totals[field] = Decimal(str(value)) if value is not None else None
    totals["call_count"] = int(mapping["call_count"] or 0)
    return totals


def empty_totals() -> dict[str, Any]:
    totals: dict[str, Any] = {field: 0 for field in TOKEN_FIELDS}
    totals.update({field: None for field in COST_FIELDS})
    totals["call_count"] = 0
    return totals


def instance_totals(
    session: Session, *, start: datetime | None = None, end: datetime | None = None
) -> dict[str, Any]:
    stmt = _apply_window(select(*_aggregate_columns()), start, end)
    return _row_totals(session.execute(stmt).one())


def usage_summary(
    session: Session,
    *,
    group_by: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict[str, Any]]:
    if group_by not in GROUP_BY_COLUMNS:
        raise ValueError(f"Unsupported usage grouping: {group_by}")
    column = GROUP_BY_COLUMNS[group_by]
    stmt = _apply_window(
        select(column.label("key"), *_aggregate_columns()).group_by(column), start, end
    )
    rows = []
    for row in session.execute(stmt):
        totals = _row_totals(row)
        totals[group_by] = row._mapping["key"]
        rows.append(totals)
    rows.sort(key=lambda item: item["total_tokens"], reverse=True)
    return rows


def _as_day(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)


def daily_totals(
    session: Session, *, start: datetime | None = None, end: datetime | None = None
) -> list[dict[str, Any]]:
    day = func.date(UsageRecord.created_at)
    stmt = _apply_window(
        select(day.label("day"), *_aggregate_columns()).group_by(day).order_by(day),
        start,
        end,
    )
    results = []
    for row in session.execute(stmt):
        totals = _row_totals(row)
        totals["date"] = _as_day(row._mapping["day"])
        results.append(totals)
    return results


def usage_by_groups(
    session: Session,
    group_ids: Iterable[int],
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[int, dict[str, Any]]:
    ids = [int(group_id) for group_id in group_ids]
    if not ids:
        return {}
    stmt = (
        select(GroupMembership.group_id.label("key"), *_aggregate_columns())
        .select_from(UsageRecord)
        .join(GroupMembership, GroupMembership.user_id == UsageRecord.user_id)
        .where(GroupMembership.group_id.in_(ids))
        .group_by(GroupMembership.group_id)
    )
    stmt = _apply_window(stmt, start, end)
    return {
        int(row._mapping["key"]): _row_totals(row) for row in session.execute(stmt)
    }


def _cost(tokens: int, per_million: Decimal | None) -> Decimal | None:
    if per_million is None:
        return None
    return Decimal(tokens) * Decimal(per_million) / _MILLION


def record_usage(
    session: Session,
    *,
    user_id: int | None,
    model: LLMModel | None = None,
    run_id: int | None = None,
    input_tokens: int = 0,
    output_tokens: int = 0,
    reasoning_tokens: int = 0,
    cached_tokens: int = 0,
    input_cost: Decimal | None = None,
    output_cost: Decimal | None = None,
) -> UsageRecord:
    if input_cost is None and model is not None:
        input_cost = _cost(input_tokens, model.input_cost_per_million)
    if output_cost is None and model is not None:
        output_cost = _cost(output_tokens, model.output_cost_per_million)
    total_cost = None
    if input_cost is not None or output_cost is not None:
        total_cost = (input_cost or Decimal(0)) + (output_cost or Decimal(0))
    record = UsageRecord.create(
        session,
        user_id=user_id,
        model_id=model.id if model is not None else None,
        run_id=run_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        reasoning_tokens=reasoning_tokens,
        cached_tokens=cached_tokens,
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=total_cost,
    )
    logger.debug(
        "Recorded usage user=%s model=%s tokens=%s",
        user_id,
        record.model_id,
        record.total_tokens,
    )
    return record

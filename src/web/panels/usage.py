from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.db import utcnow
from core.models import LLMModel, User
from services import groups, usage
from web.panels.formatting import (
    bar_width,
    format_cost,
    format_number,
    format_percentage,
    token_share,
)

PERIOD_DAYS: dict[str, int | None] = {"7d": 7, "30d": 30, "90d": 90, "all": None}
DEFAULT_PERIOD = "30d"


def normalize_period(period: Any) -> str:
    text = str(period or "").strip()
    return text if text in PERIOD_DAYS else DEFAULT_PERIOD


def period_start(period: str, now: datetime | None = None) -> datetime | None:
    days = PERIOD_DAYS[normalize_period(period)]
    if days is None:
        return None
    return (now or utcnow()) - timedelta(days=days)


def _decorate(row: dict[str, Any]) -> dict[str, Any]:
    row = dict(row)
    row["cache_hit_rate"] = format_percentage(row["cached_tokens"], row["input_tokens"])
    for field in usage.COST_FIELDS:
        row[f"{field}_display"] = format_cost(row[field])
    for field in usage.TOKEN_FIELDS:
        row[f"{field}_display"] = format_number(row[field])
    return row


def _with_shares(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    totals = [row["total_tokens"] for row in rows]
    for row in rows:
        row["bar_width"] = bar_width(row["total_tokens"], totals)
        row["token_share"] = token_share(row["total_tokens"], totals)
    return rows


def _names(session: Session, model, ids: set[Any], label: Callable[[Any], str]) -> dict[Any, str]:
    ids = {item for item in ids if item is not None}
    if not ids:
        return {}
    rows = session.execute(select(model).where(model.id.in_(ids))).scalars()
    return {row.id: label(row) for row in rows}


def load_usage(
    session: Session, period: Any = DEFAULT_PERIOD, *, now: datetime | None = None
) -> dict[str, Any]:
    """Usage snapshot for the admin usage tab.

    Every call recomputes from the ledger. Rows keep raw numbers and add
    ``*_display`` strings plus ``bar_width``/``token_share`` percentages.
    """
    period = normalize_period(period)
    start = period_start(period, now)

    instance = _decorate(usage.instance_totals(session, start=start))

    by_model = [_decorate(row) for row in usage.usage_summary(session, group_by="model_id", start=start)]
    model_names = _names(
        session, LLMModel, {row["model_id"] for row in by_model}, lambda model: model.name
    )
    for row in by_model:
        row["model_name"] = model_names.get(row["model_id"], "Unknown")

    by_user = [_decorate(row) for row in usage.usage_summary(session, group_by="user_id", start=start)]
    user_names = _names(
        session, User, {row["user_id"] for row in by_user}, lambda user: user.display_name
    )
    for row in by_user:
        row["user_name"] = user_names.get(row["user_id"], "Unknown")

    daily = [_decorate(row) for row in usage.daily_totals(session, start=start)]

    all_groups = groups.list_all_groups(session)
    group_totals = usage.usage_by_groups(session, [group.id for group in all_groups], start=start)
    group_usage = []
    for group in all_groups:
        row = _decorate(group_totals.get(group.id) or usage.empty_totals())
        row.update({"group_id": group.id, "group_name": group.name})
        group_usage.append(row)
    group_usage.sort(key=lambda row: row["total_tokens"], reverse=True)

    return {
        "period": period,
        "instance": instance,
        "by_model": _with_shares(by_model),
        "by_user": _with_shares(by_user),
        "daily": _with_shares(daily),
        "group_usage": _with_shares(group_usage),
    }

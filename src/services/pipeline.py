"""Dashboard queries for the RAG ingest pipeline.

Everything here is scoped either to one user (``scope="user"``) or to the
whole instance (``scope="all"``).
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.builtins import find_builtin_source
from core.db import utcnow
from core.models import Chunk, DataSource, Document, EmbeddingRequest, IngestJob
from core.refs import Builtin, parse_optional_ref

SCOPES = ("user", "all")
WINDOWS = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def safe_rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 1)


def _count(session: Session, stmt) -> int:
    return int(session.execute(stmt).scalar_one() or 0)


def _scoped(stmt, column, user_id: int, scope: str):
    if scope == "user":
        return stmt.where(column == user_id)
    return stmt


def aggregate_stats(session: Session, user_id: int, *, scope: str = "user") -> dict[str, int]:
    def jobs(state: str) -> int:
        stmt = select(func.count(IngestJob.id)).where(IngestJob.state == state)
        return _count(session, _scoped(stmt, IngestJob.user_id, user_id, scope))

    def embeds(status: str | None) -> int:
        stmt = select(func.count(EmbeddingRequest.id))
        if status is not None:
            stmt = stmt.where(EmbeddingRequest.status == status)
        return _count(session, _scoped(stmt, EmbeddingRequest.user_id, user_id, scope))

    chunk_stmt = select(func.count(Chunk.id)).join(Document, Document.id == Chunk.document_id)
    return {
        "source_count": _count(
            session,
            _scoped(select(func.count(DataSource.id)), DataSource.user_id, user_id, scope),
        ),
        "document_count": _count(
            session,
            _scoped(select(func.count(Document.id)), Document.user_id, user_id, scope),
        ),
        "chunk_count": _count(
            session, _scoped(chunk_stmt, Document.user_id, user_id, scope)
        ),
        "jobs_ok": jobs("completed"),
        "jobs_failed": jobs("discarded"),
        "embed_requests": embeds(None),
        "embed_errors": embeds("error"),
    }


def windowed_rates(
    session: Session,
    user_id: int,
    *,
    scope: str = "user",
    now: datetime | None = None,
) -> dict[str, dict[str, float]]:
    now = now or utcnow()
    rates: dict[str, dict[str, float]] = {}
    for window, span in WINDOWS.items():
        cutoff = now - span
        job_base = _scoped(
            select(func.count(IngestJob.id)).where(IngestJob.created_at >= cutoff),
            IngestJob.user_id,
            user_id,
            scope,
        )
        total = _count(session, job_base)
        failed = _count(session, job_base.where(IngestJob.state == "discarded"))
        retried = _count(session, job_base.where(IngestJob.attempt > 1))
        embed_base = _scoped(
            select(func.count(EmbeddingRequest.id)).where(
                EmbeddingRequest.created_at >= cutoff
            ),
            EmbeddingRequest.user_id,
            user_id,
            scope,
        )
        embed_total = _count(session, embed_base)
        embed_failed = _count(session, embed_base.where(EmbeddingRequest.status == "error"))
        rates[window] = {
            "job_failure_rate": safe_rate(failed, total),
            "job_retry_rate": safe_rate(retried, total),
            "embed_failure_rate": safe_rate(embed_failed, embed_total),
        }
    return rates


def _source_name(session: Session, key: str) -> str:
    ref = parse_optional_ref(key)
    if isinstance(ref, Builtin):
        builtin = find_builtin_source(ref)
        return builtin.name if builtin else key
    if ref is not None:
        source = session.get(DataSource, ref.id)
        if source is not None:
            return source.name
    return "Unknown"


def chunks_per_source(
    session: Session, user_id: int, *, scope: str = "user"
) -> list[dict[str, Any]]:
    stmt = (
        select(Document.source_ref, func.count(Chunk.id).label("chunk_count"))
        .select_from(Chunk)
        .join(Document, Document.id == Chunk.document_id)
        .group_by(Document.source_ref)
        .order_by(func.count(Chunk.id).desc())
    )
    stmt = _scoped(stmt, Document.user_id, user_id, scope)
    return [
        {"source_name": _source_name(session, key), "chunk_count": int(count)}
        for key, count in session.execute(stmt)
    ]


def list_jobs(
    session: Session,
    user_id: int,
    *,
    scope: str = "user",
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    search: str | None = None,
) -> dict[str, Any]:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    stmt = _scoped(select(IngestJob), IngestJob.user_id, user_id, scope)
    term = str(search or "").strip()
    if term:
        stmt = stmt.where(IngestJob.url.ilike(f"%{term}%"))
    total = _count(session, select(func.count()).select_from(stmt.subquery()))
    jobs = list(
        session.execute(
            stmt.order_by(IngestJob.created_at.desc(), IngestJob.id.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).scalars()
    )
    return {
        "jobs": jobs,
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": max(math.ceil(total / page_size), 1),
    }

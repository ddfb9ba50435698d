from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from core.builtins import BUILTIN_SOURCES, BuiltinSource, find_builtin_source
from core.models import Chunk, DataSource, Document
from core.refs import Builtin, Persisted, ResourceRef
from services.errors import Conflict, NotFound, Validator

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass
class DocumentPage:
    documents: list[Document]
    page: int
    page_size: int
    total: int
    total_pages: int


def list_sources(session: Session, user_id: int) -> list[BuiltinSource | DataSource]:
    persisted = session.execute(
        select(DataSource).where(DataSource.user_id == user_id).order_by(DataSource.name)
    ).scalars()
    return [*BUILTIN_SOURCES, *persisted]


def source_ref(source: BuiltinSource | DataSource) -> ResourceRef:
    if isinstance(source, BuiltinSource):
        return source.ref
    return Persisted(source.id)


def get_source(
    session: Session, ref: ResourceRef, user_id: int
) -> BuiltinSource | DataSource:
    if isinstance(ref, Builtin):
        builtin = find_builtin_source(ref)
        if builtin is None:
            raise NotFound("Source", ref.key)
        return builtin
    source = session.get(DataSource, ref.id)
    if source is None or source.user_id != user_id:
        raise NotFound("Source", ref.id)
    return source


def create_source(session: Session, attrs: dict[str, Any]) -> DataSource:
    validator = Validator()
    validator.required("name", attrs.get("name"))
    validator.required("user_id", attrs.get("user_id"))
    validator.check()
    source = DataSource.create(
        session,
        name=str(attrs["name"]).strip(),
        source_type=str(attrs.get("source_type") or "manual"),
        description=attrs.get("description") or None,
        user_id=attrs["user_id"],
    )
    logger.info("Created data source %s", source.id)
    return source


def delete_source(session: Session, ref: ResourceRef, user_id: int) -> None:
    if isinstance(ref, Builtin):
        raise Conflict("cannot_delete_builtin", "Built-in sources cannot be deleted")
    source = get_source(session, ref, user_id)
    session.execute(
        Document.__table__.delete().where(Document.source_ref == ref.key)
    )
    session.delete(source)
    session.flush()
    logger.info("Deleted data source %s", ref.key)


def document_count(session: Session, ref: ResourceRef) -> int:
    return int(
        session.execute(
            select(func.count(Document.id)).where(Document.source_ref == ref.key)
        ).scalar_one()
    )


def document_counts(session: Session, refs: list[ResourceRef]) -> dict[str, int]:
    keys = [ref.key for ref in refs]
    if not keys:
        return {}
    rows = session.execute(
        select(Document.source_ref, func.count(Document.id))
        .where(Document.source_ref.in_(keys))
        .group_by(Document.source_ref)
    )
    counts = {key: 0 for key in keys}
    counts.update({key: int(count) for key, count in rows})
    return counts


def _slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug or "document"


def create_document(
    session: Session, ref: ResourceRef, user_id: int, attrs: dict[str, Any]
) -> Document:
    get_source(session, ref, user_id)
    validator = Validator()
    validator.required("title", attrs.get("title"))
    validator.check()
    parent_id = attrs.get("parent_document_id")
    if parent_id is not None:
        parent = get_document(session, parent_id, user_id)
        if parent.source_ref != ref.key:
            raise Conflict("parent_elsewhere", "Parent page belongs to another source")
    title = str(attrs["title"]).strip()
    document = Document.create(
        session,
        source_ref=ref.key,
        title=title,
        content=attrs.get("content") or "",
        slug=attrs.get("slug") or _slugify(title),
        parent_document_id=attrs.get("parent_document_id"),
        user_id=user_id,
    )
    logger.info("Created document %s in source %s", document.id, ref.key)
    return document


def list_documents_paginated(
    session: Session,
    ref: ResourceRef,
    user_id: int,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    search: str | None = None,
) -> DocumentPage:
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    stmt = select(Document).where(
        Document.source_ref == ref.key, Document.user_id == user_id
    )
    term = str(search or "").strip()
    if term:
        pattern = f"%{term}%"
        stmt = stmt.where(
            or_(Document.title.ilike(pattern), Document.content.ilike(pattern))
        )
    total = int(
        session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
    )
    documents = list(
        session.execute(
            stmt.order_by(Document.updated_at.desc(), Document.id.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).scalars()
    )
    return DocumentPage(
        documents=documents,
        page=page,
        page_size=page_size,
        total=total,
        total_pages=max(math.ceil(total / page_size), 1),
    )


def get_document(session: Session, document_id: int, user_id: int) -> Document:
    document = session.get(Document, document_id)
    if document is None or document.user_id != user_id:
        raise NotFound("Document", document_id)
    return document


def list_children(session: Session, document: Document) -> list[Document]:
    return list(
        session.execute(
            select(Document)
            .where(Document.parent_document_id == document.id)
            .order_by(Document.title, Document.id)
        ).scalars()
    )


def update_document(
    session: Session, document_id: int, user_id: int, attrs: dict[str, Any]
) -> Document:
    document = get_document(session, document_id, user_id)
    validator = Validator()
    validator.required("title", attrs.get("title", document.title))
    validator.check()
    if "title" in attrs:
        document.title = str(attrs["title"]).strip()
        document.slug = _slugify(document.title)
    if "content" in attrs:
        document.content = attrs.get("content") or ""
    session.flush()
    logger.info("Updated document %s", document.id)
    return document


def delete_document(session: Session, document_id: int, user_id: int) -> int | None:
    """Delete a document and its descendants; returns the parent id, if any."""
    document = get_document(session, document_id, user_id)
    parent_id = document.parent_document_id
    doomed = [document]
    frontier = [document]
    while frontier:
        children = [child for parent in frontier for child in list_children(session, parent)]
        doomed.extend(children)
        frontier = children
    ids = [item.id for item in doomed]
    session.execute(Chunk.__table__.delete().where(Chunk.document_id.in_(ids)))
    session.execute(Document.__table__.delete().where(Document.id.in_(ids)))
    for item in doomed:
        session.expunge(item)
    logger.info("Deleted document %s with %s descendant(s)", document_id, len(doomed) - 1)
    return parent_id

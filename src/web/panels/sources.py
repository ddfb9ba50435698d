from __future__ import annotations

import logging
from typing import Any

from core.refs import parse_ref
from services import data_sources
from services.errors import Conflict, NotFound, ServiceError, ValidationFailed
from web.panels.dispatcher import EventContext, Outcome
from web.panels.forms import clean_text, format_errors, parse_int, string_form
from web.panels.panel import Panel
from web.panels.payloads import document_detail_payload, document_payload, source_payload
from web.panels.router import LoadContext, TabSpec
from web.panels.state import Existing, New, Notice

logger = logging.getLogger(__name__)

SOURCE_FORM_FIELDS = ("name", "description")
WIKI_FORM_FIELDS = ("title", "content", "parent_id")


def _load_sources(ctx: LoadContext) -> dict[str, Any]:
    sources = data_sources.list_sources(ctx.session, ctx.user_id)
    counts = data_sources.document_counts(
        ctx.session, [data_sources.source_ref(source) for source in sources]
    )
    return {
        "sources": [
            source_payload(source, counts.get(data_sources.source_ref(source).key, 0))
            for source in sources
        ]
    }


def _load_source_show(ctx: LoadContext) -> dict[str, Any]:
    try:
        ref = parse_ref(ctx.param("id"))
    except ValueError:
        raise NotFound("Source", ctx.param("id")) from None
    source = data_sources.get_source(ctx.session, ref, ctx.user_id)
    search = clean_text(ctx.param("search"))
    page = data_sources.list_documents_paginated(
        ctx.session,
        ref,
        ctx.user_id,
        page=max(parse_int(ctx.param("page"), 1) or 1, 1),
        search=search,
    )
    return {
        "source": source_payload(source, data_sources.document_count(ctx.session, ref)),
        "documents": [document_payload(document) for document in page.documents],
        "page": page.page,
        "page_size": page.page_size,
        "total": page.total,
        "total_pages": page.total_pages,
        "search": search or "",
    }


def _load_document_show(ctx: LoadContext) -> dict[str, Any]:
    raw = ctx.param("id")
    document_id = parse_int(raw)
    if document_id is None:
        raise NotFound("Document", raw)
    document = data_sources.get_document(ctx.session, document_id, ctx.user_id)
    ref = parse_ref(document.source_ref)
    source = data_sources.get_source(ctx.session, ref, ctx.user_id)
    parent = None
    if document.parent_document_id is not None:
        parent = document_payload(
            data_sources.get_document(ctx.session, document.parent_document_id, ctx.user_id)
        )
    return {
        "source": source_payload(source, data_sources.document_count(ctx.session, ref)),
        "document": document_detail_payload(document),
        "parent": parent,
        "children": [
            document_payload(child)
            for child in data_sources.list_children(ctx.session, document)
        ],
    }


def source_search(ctx: EventContext) -> Outcome:
    return ctx.navigate(
        "source_show",
        id=ctx.view.params.get("id"),
        search=clean_text(ctx.param("search")) or "",
    )


def source_page(ctx: EventContext) -> Outcome:
    return ctx.navigate(
        "source_show",
        id=ctx.view.params.get("id"),
        search=ctx.view.data.get("search", ""),
        page=max(parse_int(ctx.param("page"), 1) or 1, 1),
    )


def new_source(ctx: EventContext) -> Outcome:
    return ctx.update(
        ctx.view.start_editing("source", New(), form=string_form({}, SOURCE_FORM_FIELDS))
    )


def close_source_form(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("source"))


def save_source(ctx: EventContext) -> Outcome:
    try:
        source = data_sources.create_source(
            ctx.session,
            {
                "name": clean_text(ctx.params.get("name")),
                "description": clean_text(ctx.params.get("description")),
                "user_id": ctx.user_id,
            },
        )
    except ValidationFailed as exc:
        form = string_form(ctx.params, SOURCE_FORM_FIELDS)
        return ctx.update(ctx.view.keep_form("source", form), Notice.error(format_errors(exc)))
    return ctx.navigate("source_show", Notice.info("Source created"), id=source.id)


def delete_source(ctx: EventContext) -> Outcome:
    try:
        ref = parse_ref(ctx.param("id"))
    except ValueError:
        return ctx.update(ctx.view, Notice.error("Source not found"))
    try:
        data_sources.delete_source(ctx.session, ref, ctx.user_id)
    except (Conflict, NotFound) as exc:
        return ctx.update(ctx.view, Notice.error(str(exc)))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Could not delete source"))
    return ctx.navigate("sources", Notice.info("Source deleted"))


# ---------------------------------------------------------------------------
# Wiki pages
# ---------------------------------------------------------------------------


def _current_document_id(ctx: EventContext) -> int | None:
    if ctx.view.tab != "document_show":
        return None
    return parse_int(ctx.view.params.get("id"))


def show_wiki_form(ctx: EventContext) -> Outcome:
    if "source" not in ctx.view.data:
        return ctx.unchanged()
    parent_id = parse_int(ctx.param("parent_id"))
    form = {"title": "", "content": "", "parent_id": "" if parent_id is None else str(parent_id)}
    return ctx.update(ctx.view.start_editing("wiki", New(), form=form))


def close_wiki_form(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("wiki"))


def _wiki_failed(ctx: EventContext, exc: ServiceError, fallback: str) -> Outcome:
    if isinstance(exc, ValidationFailed):
        message = format_errors(exc)
    else:
        logger.info("Wiki change by user %s failed: %s", ctx.user_id, exc)
        message = fallback
    form = string_form(ctx.params, WIKI_FORM_FIELDS)
    return ctx.update(ctx.view.keep_form("wiki", form), Notice.error(message))


def create_wiki_page(ctx: EventContext) -> Outcome:
    source = ctx.view.data.get("source")
    target = ctx.view.editing.get("wiki")
    if source is None or not isinstance(target, New):
        return ctx.unchanged()
    form = ctx.view.forms.get("wiki", {})
    try:
        document = data_sources.create_document(
            ctx.session,
            parse_ref(source["id"]),
            ctx.user_id,
            {
                "title": clean_text(ctx.params.get("title")),
                "content": ctx.params.get("content") or "",
                "parent_document_id": parse_int(form.get("parent_id")),
            },
        )
    except ServiceError as exc:
        return _wiki_failed(ctx, exc, "Failed to create page")
    return ctx.navigate("document_show", Notice.info("Page created"), id=document.id)


def edit_wiki_page(ctx: EventContext) -> Outcome:
    document = ctx.view.data.get("document")
    if document is None:
        return ctx.unchanged()
    form = {"title": document["title"], "content": document["content"], "parent_id": ""}
    return ctx.update(ctx.view.start_editing("wiki", Existing(document["id"]), form=form))


def cancel_wiki_edit(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("wiki"))


def update_wiki_page(ctx: EventContext) -> Outcome:
    target = ctx.view.editing.get("wiki")
    if not isinstance(target, Existing):
        return ctx.unchanged()
    try:
        data_sources.update_document(
            ctx.session,
            target.id,
            ctx.user_id,
            {"title": clean_text(ctx.params.get("title")), "content": ctx.params.get("content")},
        )
    except ServiceError as exc:
        return _wiki_failed(ctx, exc, "Failed to update page")
    return ctx.navigate("document_show", Notice.info("Page updated"), id=target.id)


def delete_wiki_page(ctx: EventContext) -> Outcome:
    document_id = _current_document_id(ctx)
    source = ctx.view.data.get("source")
    if document_id is None or source is None:
        return ctx.unchanged()
    try:
        parent_id = data_sources.delete_document(ctx.session, document_id, ctx.user_id)
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Failed to delete page"))
    if parent_id is not None:
        return ctx.navigate("document_show", Notice.info("Page deleted"), id=parent_id)
    return ctx.navigate("source_show", Notice.info("Page deleted"), id=source["url_id"])


SOURCES_TABS = [
    TabSpec("sources", _load_sources),
    TabSpec("source_show", _load_source_show, fallback="sources"),
    TabSpec("document_show", _load_document_show, fallback="sources"),
]

SOURCES_HANDLERS = {
    "source_search": source_search,
    "source_page": source_page,
    "new_source": new_source,
    "close_source_form": close_source_form,
    "save_source": save_source,
    "delete_source": delete_source,
    "show_wiki_form": show_wiki_form,
    "close_wiki_form": close_wiki_form,
    "create_wiki_page": create_wiki_page,
    "edit_wiki_page": edit_wiki_page,
    "cancel_wiki_edit": cancel_wiki_edit,
    "update_wiki_page": update_wiki_page,
    "delete_wiki_page": delete_wiki_page,
}

panel = Panel.build("sources", SOURCES_TABS, SOURCES_HANDLERS, default_tab="sources")

from __future__ import annotations

import unittest

import support

from sqlalchemy import func, select

from core.db import session_scope
from core.models import Document
from core.refs import Builtin, Persisted
from services import data_sources
from web.panels import sources
from web.panels.state import Existing, New, Notice

PANEL = sources.panel


class SourcesPanelTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.create_principal("reader@example.com")
        with session_scope() as session:
            source = data_sources.create_source(
                session, {"name": "Handbook", "user_id": self.user.user_id}
            )
            self.source_id = source.id
            ref = Persisted(source.id)
            for index in range(25):
                title = "Needle in a haystack" if index == 3 else f"Page {index}"
                data_sources.create_document(
                    session, ref, self.user.user_id, {"title": title, "content": "text"}
                )
            data_sources.create_document(
                session, Builtin("wiki"), self.user.user_id, {"title": "Welcome"}
            )

    def test_list_puts_builtins_first_with_counts(self) -> None:
        state, _ = PANEL.enter("sources", self.user)
        listed = [(item["id"], item["builtin"]) for item in state.view.data["sources"]]
        self.assertEqual([("builtin:wiki", True), (str(self.source_id), False)], listed)
        counts = [item["document_count"] for item in state.view.data["sources"]]
        self.assertEqual([1, 25], counts)

    def test_builtin_source_opens_by_url_id(self) -> None:
        state, notice = PANEL.enter("source_show", self.user, {"id": "builtin-wiki"})
        self.assertIsNone(notice)
        self.assertEqual("Wiki", state.view.data["source"]["name"])
        self.assertEqual(["welcome"], [doc["slug"] for doc in state.view.data["documents"]])

    def test_documents_page_and_search(self) -> None:
        state, _ = PANEL.enter("source_show", self.user, {"id": str(self.source_id)})
        self.assertEqual(20, len(state.view.data["documents"]))
        self.assertEqual(2, state.view.data["total_pages"])

        state, _ = PANEL.handle("source_page", {"page": "2"}, state, self.user)
        self.assertEqual(2, state.view.data["page"])
        self.assertEqual(5, len(state.view.data["documents"]))

        state, _ = PANEL.handle("source_search", {"search": " needle "}, state, self.user)
        self.assertEqual("needle", state.view.data["search"])
        self.assertEqual(1, state.view.data["total"])
        self.assertEqual(1, state.view.data["page"])

    def test_unknown_source_redirects_to_list(self) -> None:
        state, notice = PANEL.enter("source_show", self.user, {"id": "builtin:nope"})
        self.assertEqual("sources", state.tab)
        self.assertEqual(Notice.error("Source not found"), notice)

    def test_builtin_sources_cannot_be_deleted(self) -> None:
        state, _ = PANEL.enter("sources", self.user)
        same, notice = PANEL.handle("delete_source", {"id": "builtin:wiki"}, state, self.user)
        self.assertEqual(Notice.error("Built-in sources cannot be deleted"), notice)
        self.assertEqual(state.view, same.view)

    def test_delete_removes_source_and_documents(self) -> None:
        state, _ = PANEL.enter("source_show", self.user, {"id": str(self.source_id)})
        state, notice = PANEL.handle(
            "delete_source", {"id": str(self.source_id)}, state, self.user
        )
        self.assertEqual(Notice.info("Source deleted"), notice)
        self.assertEqual("sources", state.tab)
        self.assertEqual(1, len(state.view.data["sources"]))
        with session_scope() as session:
            remaining = session.execute(select(func.count(Document.id))).scalar_one()
        self.assertEqual(1, remaining)

    def test_new_source_form_validates_and_creates(self) -> None:
        state, _ = PANEL.enter("sources", self.user)
        state, _ = PANEL.handle("new_source", {}, state, self.user)
        self.assertEqual(New(), state.view.editing["source"])

        failed, notice = PANEL.handle(
            "save_source", {"name": " ", "description": "notes"}, state, self.user
        )
        self.assertEqual(Notice.error("name: can't be blank"), notice)
        self.assertEqual("notes", failed.view.forms["source"]["description"])

        created, notice = PANEL.handle("save_source", {"name": "Runbooks"}, failed, self.user)
        self.assertEqual(Notice.info("Source created"), notice)
        self.assertEqual("source_show", created.tab)
        self.assertEqual("Runbooks", created.view.data["source"]["name"])
        self.assertEqual(0, created.view.data["total"])


class WikiPageTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.create_principal("writer@example.com")

    def handle(self, event, params, state):
        return PANEL.handle(event, params, state, self.user)

    def create_page(self, title: str, parent_id=None):
        state, _ = PANEL.enter("source_show", self.user, {"id": "builtin-wiki"})
        params = {} if parent_id is None else {"parent_id": str(parent_id)}
        state, _ = self.handle("show_wiki_form", params, state)
        return self.handle("create_wiki_page", {"title": title, "content": f"# {title}"}, state)

    def test_create_page_opens_it(self) -> None:
        state, notice = self.create_page("Onboarding")
        self.assertEqual(Notice.info("Page created"), notice)
        self.assertEqual("document_show", state.tab)
        self.assertEqual("Onboarding", state.view.data["document"]["title"])
        self.assertEqual("# Onboarding", state.view.data["document"]["content"])
        self.assertEqual("builtin:wiki", state.view.data["document"]["source_ref"])
        self.assertIsNone(state.view.data["parent"])
        self.assertNotIn("wiki", state.view.editing)

    def test_blank_title_keeps_the_form(self) -> None:
        state, _ = PANEL.enter("source_show", self.user, {"id": "builtin-wiki"})
        state, _ = self.handle("show_wiki_form", {}, state)
        failed, notice = self.handle("create_wiki_page", {"title": "", "content": "draft"}, state)
        self.assertEqual(Notice.error("title: can't be blank"), notice)
        self.assertEqual(New(), failed.view.editing["wiki"])
        self.assertEqual("draft", failed.view.forms["wiki"]["content"])

    def test_child_pages_nest_under_their_parent(self) -> None:
        parent, _ = self.create_page("Guides")
        parent_id = parent.view.data["document"]["id"]

        child, _ = self.create_page("Setup", parent_id=parent_id)
        self.assertEqual(parent_id, child.view.data["document"]["parent_document_id"])
        self.assertEqual("Guides", child.view.data["parent"]["title"])

        reopened, _ = PANEL.enter("document_show", self.user, {"id": str(parent_id)})
        self.assertEqual(["Setup"], [doc["title"] for doc in reopened.view.data["children"]])

    def test_parent_from_another_source_is_rejected(self) -> None:
        with session_scope() as session:
            source = data_sources.create_source(
                session, {"name": "Handbook", "user_id": self.user.user_id}
            )
            foreign = data_sources.create_document(
                session, Persisted(source.id), self.user.user_id, {"title": "Elsewhere"}
            ).id
        state, notice = self.create_page("Stray", parent_id=foreign)
        self.assertEqual(Notice.error("Failed to create page"), notice)
        self.assertEqual("source_show", state.tab)

    def test_edit_and_update_page(self) -> None:
        state, _ = self.create_page("Draft")
        state, _ = self.handle("edit_wiki_page", {}, state)
        page_id = state.view.data["document"]["id"]
        self.assertEqual(Existing(page_id), state.view.editing["wiki"])
        self.assertEqual("Draft", state.view.forms["wiki"]["title"])

        cancelled, _ = self.handle("cancel_wiki_edit", {}, state)
        self.assertNotIn("wiki", cancelled.view.editing)

        updated, notice = self.handle(
            "update_wiki_page", {"title": "Final Notes", "content": "done"}, state
        )
        self.assertEqual(Notice.info("Page updated"), notice)
        self.assertEqual("Final Notes", updated.view.data["document"]["title"])
        self.assertEqual("final-notes", updated.view.data["document"]["slug"])
        self.assertEqual("done", updated.view.data["document"]["content"])
        self.assertNotIn("wiki", updated.view.editing)

    def test_deleting_a_child_returns_to_the_parent(self) -> None:
        parent, _ = self.create_page("Guides")
        parent_id = parent.view.data["document"]["id"]
        child, _ = self.create_page("Setup", parent_id=parent_id)

        state, notice = self.handle("delete_wiki_page", {}, child)

        self.assertEqual(Notice.info("Page deleted"), notice)
        self.assertEqual("document_show", state.tab)
        self.assertEqual(parent_id, state.view.data["document"]["id"])
        self.assertEqual([], state.view.data["children"])

    def test_deleting_a_top_level_page_removes_its_subtree(self) -> None:
        parent, _ = self.create_page("Guides")
        parent_id = parent.view.data["document"]["id"]
        self.create_page("Setup", parent_id=parent_id)
        parent, _ = PANEL.enter("document_show", self.user, {"id": str(parent_id)})

        state, notice = self.handle("delete_wiki_page", {}, parent)

        self.assertEqual(Notice.info("Page deleted"), notice)
        self.assertEqual("source_show", state.tab)
        self.assertEqual("builtin:wiki", state.view.data["source"]["id"])
        with session_scope() as session:
            remaining = session.execute(select(func.count(Document.id))).scalar_one()
        self.assertEqual(0, remaining)

    def test_pages_of_other_users_are_not_found(self) -> None:
        page, _ = self.create_page("Private")
        stranger = self.create_principal("stranger@example.com")
        state, notice = PANEL.enter(
            "document_show", stranger, {"id": str(page.view.data["document"]["id"])}
        )
        self.assertEqual("sources", state.tab)
        self.assertEqual(Notice.error("Document not found"), notice)


if __name__ == "__main__":
    unittest.main()

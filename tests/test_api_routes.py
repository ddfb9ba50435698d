from __future__ import annotations

import unittest

import support

from core.db import session_scope
from core.models import User
from web.app import create_app
from web.panels.sessions import store


class ApiRouteTests(support.DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.app = create_app()
        self.app.config["TESTING"] = True
        self.client = self.app.test_client()
        self.addCleanup(store.clear)

    def login(self, email: str, *, admin: bool = False):
        self.create_principal(email, admin=admin)
        response = self.client.post(
            "/auth/login", json={"email": email, "password": support.TEST_PASSWORD}
        )
        self.assertEqual(200, response.status_code)
        return response.get_json()["user"]

    def test_health(self) -> None:
        self.assertEqual({"ok": True}, self.client.get("/health").get_json())
        self.assertEqual(200, self.client.get("/api/health").status_code)

    def test_unknown_route_returns_json_error(self) -> None:
        response = self.client.get("/no-such-route")
        self.assertEqual(404, response.status_code)
        self.assertIn("error", response.get_json())

    def test_panels_require_authentication(self) -> None:
        response = self.client.get("/panels/profile")
        self.assertEqual(401, response.status_code)
        self.assertEqual({"error": "Authentication required."}, response.get_json())
        response = self.client.post("/panels/profile/events/change_password", json={})
        self.assertEqual(401, response.status_code)

    def test_login_rejects_bad_credentials(self) -> None:
        self.create_principal("someone@example.com")
        response = self.client.post(
            "/auth/login", json={"email": "someone@example.com", "password": "wrong password"}
        )
        self.assertEqual(401, response.status_code)
        response = self.client.post("/auth/login", json={"email": ""})
        self.assertEqual(400, response.status_code)

    def test_login_then_enter_profile(self) -> None:
        user = self.login("member@example.com")
        self.assertEqual("member@example.com", user["email"])

        body = self.client.get("/panels/profile").get_json()
        self.assertEqual("profile", body["panel"])
        self.assertEqual("info", body["tab"])
        self.assertEqual("member@example.com", body["data"]["user"]["email"])
        self.assertIsNone(body["notice"])
        self.assertNotIn("redirect", body)

        prefixed = self.client.get("/api/panels/profile/password")
        self.assertEqual(200, prefixed.status_code)
        self.assertEqual("password", prefixed.get_json()["tab"])

        me = self.client.get("/auth/me").get_json()
        self.assertEqual(user["id"], me["user"]["id"])

    def test_unknown_panel_is_404(self) -> None:
        self.login("member@example.com")
        response = self.client.get("/panels/nope")
        self.assertEqual(404, response.status_code)
        self.assertEqual({"error": "Unknown panel 'nope'."}, response.get_json())

    def test_admin_tab_redirects_non_admin(self) -> None:
        self.login("member@example.com")
        body = self.client.get("/panels/profile/admin_users").get_json()
        self.assertEqual("info", body["tab"])
        self.assertEqual({"panel": "profile", "tab": "info"}, body["redirect"])
        self.assertNotIn("users", body["data"])

    def test_event_updates_panel_state(self) -> None:
        self.login("member@example.com")
        self.client.get("/panels/profile/password")
        response = self.client.post(
            "/panels/profile/events/change_password",
            json={
                "current_password": support.TEST_PASSWORD,
                "new_password": "a much longer secret",
                "new_password_confirmation": "a different secret!",
            },
        )
        body = response.get_json()
        self.assertEqual("password", body["tab"])
        self.assertEqual({"kind": "error", "message": "Passwords do not match"}, body["notice"])

    def test_demoted_admin_cannot_toggle_registration(self) -> None:
        admin = self.login("root@example.com", admin=True)
        body = self.client.get("/panels/profile/admin_servers").get_json()
        self.assertTrue(body["data"]["registration_open"])

        with session_scope() as session:
            session.get(User, admin["id"]).role = "user"

        response = self.client.post("/panels/profile/events/toggle_registration", json={})
        body = response.get_json()
        self.assertEqual(200, response.status_code)
        self.assertEqual("admin_servers", body["tab"])
        self.assertTrue(body["data"]["registration_open"])
        self.assertIsNone(body["notice"])

    def test_admin_toggles_registration(self) -> None:
        self.login("root@example.com", admin=True)
        self.client.get("/panels/profile/admin_servers")
        body = self.client.post(
            "/panels/profile/events/toggle_registration", json={}
        ).get_json()
        self.assertFalse(body["data"]["registration_open"])

    def test_logout_ends_the_session(self) -> None:
        self.login("member@example.com")
        self.assertEqual({"ok": True}, self.client.post("/auth/logout").get_json())
        self.assertEqual(401, self.client.get("/auth/me").status_code)
        self.assertEqual(0, len(store))


if __name__ == "__main__":
    unittest.main()

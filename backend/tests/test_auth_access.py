import shutil
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path
import sys
from types import SimpleNamespace
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import jwt
from fastapi import HTTPException, Response

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


def bearer(user) -> SimpleNamespace:
    return SimpleNamespace(headers={"authorization": f"Bearer {main.issue_token(user)}"}, cookies={})


class AuthAccessTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.original_uploads_dir = main.UPLOADS_DIR
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.temp_root = Path(cls.tempdir.name)
        cls.test_db_path = cls.temp_root / "test.db"
        cls.test_uploads_dir = cls.temp_root / "uploads"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        main.UPLOADS_DIR = cls.original_uploads_dir
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        shutil.rmtree(self.test_uploads_dir, ignore_errors=True)
        self.test_uploads_dir.mkdir(parents=True, exist_ok=True)
        main.DB_PATH = self.test_db_path
        main.UPLOADS_DIR = self.test_uploads_dir
        main.init_db()
        with main.get_db() as conn:
            self.agency_id = main.insert_agency(
                conn, name="Summit Insurance", admin_email="owner@summit.test", plan_type="basic"
            )
            self.agent_id = main.insert_user(
                conn,
                email="agent@summit.test",
                first_name="Avery",
                last_name="Agent",
                role="agent",
                agency_id=self.agency_id,
                password="AgentPass123!",
                must_change_password=False,
            )
            conn.commit()

    def agent_row(self):
        with main.get_db() as conn:
            return main.fetch_user(conn, self.agent_id)

    def test_login_returns_token_cookies_and_agent_portal(self) -> None:
        response = Response()
        auth = main.login_with_password(
            main.AuthLoginIn(email="Agent@Summit.test ", password="AgentPass123!"),
            response=response,
        )

        self.assertEqual(auth.user.email, "agent@summit.test")
        self.assertEqual(auth.user.role, "agent")
        self.assertEqual(auth.redirect, "/agent/")
        claims = main.decode_token(auth.token)
        self.assertEqual(claims["sub"], self.agent_id)
        self.assertEqual(claims["agency_id"], self.agency_id)
        cookies = [value.decode() for key, value in response.raw_headers if key == b"set-cookie"]
        self.assertTrue(any(cookie.startswith("auth_token=") and "HttpOnly" in cookie for cookie in cookies))
        self.assertTrue(any(cookie.startswith("user_role=agent") for cookie in cookies))
        self.assertIsNotNone(self.agent_row()["last_login_at"])

    def test_repeated_failures_throttle_login(self) -> None:
        for _ in range(main.LOGIN_MAX_FAILURES):
            with self.assertRaises(HTTPException) as ctx:
                main.login_with_password(
                    main.AuthLoginIn(email="agent@summit.test", password="wrong-password"),
                    response=Response(),
                )
            self.assertEqual(ctx.exception.status_code, 401)

        with self.assertRaises(HTTPException) as ctx:
            main.login_with_password(
                main.AuthLoginIn(email="agent@summit.test", password="AgentPass123!"),
                response=Response(),
            )
        self.assertEqual(ctx.exception.status_code, 429)

    def test_inactive_agency_blocks_login_and_existing_tokens(self) -> None:
        request = bearer(self.agent_row())
        with main.get_db() as conn:
            conn.execute("UPDATE Agency SET is_active = 0 WHERE id = ?", (self.agency_id,))
            conn.commit()

        with self.assertRaises(HTTPException) as ctx:
            main.login_with_password(
                main.AuthLoginIn(email="agent@summit.test", password="AgentPass123!"),
                response=Response(),
            )
        self.assertEqual(ctx.exception.status_code, 403)
        with self.assertRaises(HTTPException) as ctx:
            main.get_auth_me(request)
        self.assertEqual(ctx.exception.detail, "Agency is inactive")

    def test_me_reports_scope_and_portals(self) -> None:
        me = main.get_auth_me(bearer(self.agent_row()))

        self.assertEqual(me["user"].id, self.agent_id)
        self.assertEqual(me["agency"]["name"], "Summit Insurance")
        self.assertEqual(me["permissions"]["data_scope"], "SELF_ONLY")
        self.assertEqual(me["permissions"]["portals"], ["/agent", "/leaderboard"])

    def test_token_from_cookie_and_rejected_tokens(self) -> None:
        token = main.issue_token(self.agent_row())
        cookie_request = SimpleNamespace(headers={}, cookies={"auth_token": token})
        self.assertEqual(main.get_auth_me(cookie_request)["user"].email, "agent@summit.test")

        with self.assertRaises(HTTPException) as ctx:
            main.get_auth_me(SimpleNamespace(headers={}, cookies={}))
        self.assertEqual(ctx.exception.status_code, 401)

        with self.assertRaises(HTTPException) as ctx:
            main.get_auth_me(SimpleNamespace(headers={"authorization": "Bearer not-a-jwt"}, cookies={}))
        self.assertEqual(ctx.exception.detail, "Invalid token")

        past = main.utc_now() - timedelta(hours=1)
        expired = jwt.encode(
            {"sub": self.agent_id, "iat": past - timedelta(hours=8), "exp": past},
            main.JWT_SECRET,
            algorithm=main.JWT_ALGORITHM,
        )
        with self.assertRaises(HTTPException) as ctx:
            main.get_auth_me(SimpleNamespace(headers={"authorization": f"Bearer {expired}"}, cookies={}))
        self.assertEqual(ctx.exception.detail, "Token expired")

    def test_portal_guard_redirects_to_home_portal(self) -> None:
        request = bearer(self.agent_row())

        denied = main.portal_guard(request, portal="/admin/users")
        allowed = main.portal_guard(request, portal="/leaderboard")

        self.assertFalse(denied.allowed)
        self.assertEqual(denied.redirect, "/agent/")
        self.assertTrue(allowed.allowed)
        self.assertIsNone(allowed.redirect)

    def test_role_checks(self) -> None:
        with main.get_db() as conn:
            with self.assertRaises(HTTPException) as ctx:
                main.require_role(conn, bearer(self.agent_row()), {"admin"})
            self.assertEqual(ctx.exception.status_code, 403)
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE role = 'super_admin'")
            super_admin = cur.fetchone()
            self.assertEqual(main.require_role(conn, bearer(super_admin), {"admin"})["id"], super_admin["id"])

        self.assertEqual(main.normalize_role("Customer Service"), "customer_service")
        self.assertEqual(main.normalize_role("super-admin"), "super_admin")
        self.assertTrue(main.role_at_least("admin", "manager"))
        self.assertFalse(main.role_at_least("agent", "customer_service"))

    def test_scope_filter_per_role(self) -> None:
        base = {"id": "u-1", "agency_id": "a-1"}

        self.assertEqual(main.build_scope_filter({**base, "role": "super_admin"}), ("1 = 1", []))
        self.assertEqual(main.build_scope_filter({**base, "role": "manager"}), ("agency_id = ?", ["a-1"]))
        self.assertEqual(
            main.build_scope_filter({**base, "role": "agent"}, "s.agency_id", "s.agent_id"),
            ("(s.agency_id = ? AND s.agent_id = ?)", ["a-1", "u-1"]),
        )
        self.assertEqual(main.build_scope_filter({"id": "u-2", "agency_id": None, "role": "admin"}), ("1 = 0", []))
        self.assertEqual(main.build_scope_filter({**base, "role": "broker"}), ("1 = 0", []))

    def test_default_super_admin_is_seeded_once(self) -> None:
        main.init_db()
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE email = ?", (main.DEFAULT_SUPER_ADMIN_EMAIL,))
            rows = cur.fetchall()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["role"], "super_admin")
        self.assertEqual(rows[0]["must_change_password"], 1)

    def test_password_reset_link_sets_new_password_once(self) -> None:
        with patch.object(main, "resend_configured", return_value=False), patch.object(
            main, "ALLOW_DEV_RESET_LINK_FALLBACK", True
        ), patch.object(main, "send_resend_email") as send:
            result = main.request_password_reset(main.PasswordResetRequestIn(email="agent@summit.test"))
        send.assert_not_called()
        token = parse_qs(urlparse(result["dev_link"]).query)["token"][0]

        with self.assertRaises(HTTPException) as ctx:
            main.reset_password(main.PasswordResetIn(token=token, new_password="simplepassword"))
        self.assertEqual(ctx.exception.status_code, 400)

        self.assertEqual(
            main.reset_password(main.PasswordResetIn(token=token, new_password="Fresh!Pass42"))["status"],
            "ok",
        )
        auth = main.login_with_password(
            main.AuthLoginIn(email="agent@summit.test", password="Fresh!Pass42"),
            response=Response(),
        )
        self.assertEqual(auth.user.id, self.agent_id)

        with self.assertRaises(HTTPException) as ctx:
            main.reset_password(main.PasswordResetIn(token=token, new_password="Another!Pass42"))
        self.assertEqual(ctx.exception.detail, "Reset link is invalid or expired.")

    def test_unknown_email_reset_request_looks_the_same(self) -> None:
        with patch.object(main, "resend_configured", return_value=True), patch.object(
            main, "send_resend_email"
        ) as send:
            result = main.request_password_reset(main.PasswordResetRequestIn(email="nobody@summit.test"))
        self.assertEqual(result, {"status": "ok"})
        send.assert_not_called()

        with patch.object(main, "resend_configured", return_value=False), patch.object(
            main, "ALLOW_DEV_RESET_LINK_FALLBACK", True
        ):
            known = main.request_password_reset(main.PasswordResetRequestIn(email="agent@summit.test"))
            unknown = main.request_password_reset(main.PasswordResetRequestIn(email="nobody@summit.test"))
        self.assertEqual(set(known), set(unknown))
        self.assertIn("dev_link", unknown)

    def test_failed_reset_email_never_returns_the_link(self) -> None:
        with patch.object(main, "resend_configured", return_value=True), patch.object(
            main, "ALLOW_DEV_RESET_LINK_FALLBACK", True
        ), patch.object(
            main, "send_resend_email", side_effect=HTTPException(status_code=502, detail="down")
        ) as send:
            result = main.request_password_reset(main.PasswordResetRequestIn(email="agent@summit.test"))
        send.assert_called_once()
        self.assertEqual(result, {"status": "ok"})
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) AS cnt FROM PasswordReset WHERE user_id = ?", (self.agent_id,))
            self.assertEqual(cur.fetchone()["cnt"], 1)

    def test_change_password_requires_current_password(self) -> None:
        request = bearer(self.agent_row())
        with self.assertRaises(HTTPException) as ctx:
            main.change_password(
                main.ChangePasswordIn(current_password="nope", new_password="NewAgentPass1!"), request
            )
        self.assertEqual(ctx.exception.detail, "Current password is incorrect")

        main.change_password(
            main.ChangePasswordIn(current_password="AgentPass123!", new_password="NewAgentPass1!"), request
        )
        with main.get_db() as conn:
            row = main.fetch_user(conn, self.agent_id)
            cur = conn.cursor()
            cur.execute("SELECT action FROM AuditLog WHERE resource_id = ?", (self.agent_id,))
            actions = [r["action"] for r in cur.fetchall()]
        self.assertTrue(main.verify_password("NewAgentPass1!", row["password_salt"], row["password_hash"]))
        self.assertIn("password_changed", actions)


if __name__ == "__main__":
    unittest.main()

import io
import shutil
import tempfile
import unittest
from pathlib import Path
import sys
from types import SimpleNamespace

from fastapi import HTTPException, Response, UploadFile

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


def bearer(user) -> SimpleNamespace:
    return SimpleNamespace(headers={"authorization": f"Bearer {main.issue_token(user)}"}, cookies={})


class AgencyAndUserAdminTests(unittest.TestCase):
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
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE role = 'super_admin'")
            self.super_admin = cur.fetchone()

    def super_request(self) -> SimpleNamespace:
        return bearer(self.super_admin)

    def create_agency(self, name: str = "Harbor Health Agency", **extra) -> main.AgencyOut:
        payload = main.AgencyIn(
            name=name,
            admin_email=extra.pop("admin_email", "owner@harbor.test"),
            plan_type=extra.pop("plan_type", "basic"),
            admin_first_name="Hana",
            admin_last_name="Harbor",
            admin_password=extra.pop("admin_password", "OwnerPass123!"),
            **extra,
        )
        return main.create_agency(payload, self.super_request())

    def admin_request(self, email: str = "owner@harbor.test") -> SimpleNamespace:
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM User WHERE email = ?", (email,))
            return bearer(cur.fetchone())

    def test_create_agency_applies_plan_and_seeds_admin(self) -> None:
        agency = self.create_agency(plan_type="Professional")

        self.assertEqual(agency.plan_type, "professional")
        self.assertEqual(agency.max_users, 50)
        self.assertEqual(agency.monthly_cost, 199.0)
        self.assertEqual(agency.webhook_slug, "harbor-health-agency")
        self.assertTrue(agency.webhook_url.endswith("/api/convoso-webhook/harbor-health-agency"))
        self.assertEqual(agency.user_count, 1)

        auth = main.login_with_password(
            main.AuthLoginIn(email="owner@harbor.test", password="OwnerPass123!"), response=Response()
        )
        self.assertEqual(auth.user.role, "admin")
        self.assertEqual(auth.user.agency_id, agency.id)
        self.assertEqual(auth.redirect, "/admin/")

    def test_duplicate_agency_name_conflicts_and_slug_stays_unique(self) -> None:
        self.create_agency("Peak Partners", admin_email="one@peak.test")
        with self.assertRaises(HTTPException) as ctx:
            self.create_agency("peak partners", admin_email="two@peak.test")
        self.assertEqual(ctx.exception.status_code, 409)

        second = self.create_agency("Peak Partners!", admin_email="three@peak.test")
        self.assertNotEqual(second.webhook_slug, "peak-partners")
        self.assertTrue(second.webhook_slug.startswith("peak-partners"))

    def test_only_super_admin_manages_agencies(self) -> None:
        self.create_agency()
        with self.assertRaises(HTTPException) as ctx:
            main.list_agencies(self.admin_request())
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(len(main.list_agencies(self.super_request())), 1)

    def test_deactivation_cascades_and_reactivation_spares_removed_users(self) -> None:
        agency = self.create_agency()
        admin = self.admin_request()
        kept = main.create_user(
            main.UserIn(email="kept@harbor.test", first_name="Kai", role="agent", password="KeptPass123!"), admin
        )
        removed = main.create_user(
            main.UserIn(email="gone@harbor.test", first_name="Gus", role="agent", password="GonePass123!"), admin
        )
        main.delete_user(removed.id, admin)

        result = main.deactivate_agency(agency.id, self.super_request())
        self.assertEqual(result["users_deactivated"], 2)
        with self.assertRaises(HTTPException) as ctx:
            main.login_with_password(
                main.AuthLoginIn(email="kept@harbor.test", password="KeptPass123!"), response=Response()
            )
        self.assertEqual(ctx.exception.status_code, 403)

        main.update_agency(agency.id, main.AgencyUpdate(is_active=True), self.super_request())
        with main.get_db() as conn:
            self.assertEqual(main.fetch_user(conn, kept.id)["is_active"], 1)
            self.assertEqual(main.fetch_user(conn, removed.id)["is_active"], 0)

    def test_admin_creates_user_with_temporary_password(self) -> None:
        agency = self.create_agency()
        created = main.create_user(
            main.UserIn(email="New.Agent@Harbor.test", first_name="Nia", last_name="Agent", role="Agent"),
            self.admin_request(),
        )

        self.assertEqual(created.email, "new.agent@harbor.test")
        self.assertEqual(created.agency_id, agency.id)
        self.assertTrue(created.must_change_password)
        self.assertRegex(created.temporary_password, r"^Tmp[A-Za-z0-9]{10}7!$")
        auth = main.login_with_password(
            main.AuthLoginIn(email="new.agent@harbor.test", password=created.temporary_password),
            response=Response(),
        )
        self.assertTrue(auth.user.must_change_password)

        with self.assertRaises(HTTPException) as ctx:
            main.create_user(
                main.UserIn(email="new.agent@harbor.test", first_name="Dup", role="agent"), self.admin_request()
            )
        self.assertEqual(ctx.exception.status_code, 409)

    def test_admin_cannot_create_super_admin_or_touch_other_agencies(self) -> None:
        self.create_agency()
        other = self.create_agency("Other Agency", admin_email="owner@other.test")
        with self.assertRaises(HTTPException) as ctx:
            main.create_user(
                main.UserIn(email="boss@harbor.test", first_name="Boss", role="super_admin"),
                self.admin_request(),
            )
        self.assertEqual(ctx.exception.status_code, 403)

        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM User WHERE agency_id = ?", (other.id,))
            other_admin_id = cur.fetchone()["id"]
        with self.assertRaises(HTTPException) as ctx:
            main.update_user(other_admin_id, main.UserUpdate(first_name="Hijack"), self.admin_request())
        self.assertEqual(ctx.exception.status_code, 404)

    def test_plan_user_limit_is_enforced(self) -> None:
        self.create_agency()
        admin = self.admin_request()
        for index in range(main.PLAN_LIMITS["basic"]["max_users"] - 1):
            main.create_user(
                main.UserIn(email=f"agent{index}@harbor.test", first_name=f"Agent{index}", role="agent"), admin
            )
        with self.assertRaises(HTTPException) as ctx:
            main.create_user(main.UserIn(email="extra@harbor.test", first_name="Extra", role="agent"), admin)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("user limit", ctx.exception.detail)

    def test_admin_cannot_deactivate_self(self) -> None:
        self.create_agency()
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM User WHERE email = 'owner@harbor.test'")
            admin_id = cur.fetchone()["id"]
        with self.assertRaises(HTTPException) as ctx:
            main.delete_user(admin_id, self.admin_request())
        self.assertEqual(ctx.exception.status_code, 400)

    def test_bulk_upload_reports_created_and_failed_rows(self) -> None:
        self.create_agency()
        content = (
            "Name,Email,Role,Agent_Code,License_Number\n"
            "Riley Stone,riley@harbor.test,agent,A-100,LIC-1\n"
            "Sam Reed,sam@harbor.test,Customer Service,,\n"
            ",missing@harbor.test,agent,,\n"
            "Dup Code,dup@harbor.test,agent,A-100,\n"
            "Bad Role,badrole@harbor.test,super_admin,,\n"
            "Not Email,not-an-email,agent,,\n"
            "Owner Again,owner@harbor.test,agent,,\n"
        ).encode("utf-8")
        upload = UploadFile(filename="team.csv", file=io.BytesIO(content))

        result = main.bulk_upload_users(self.admin_request(), file=upload)

        self.assertEqual(result.summary, {"total": 7, "created": 2, "failed": 5})
        created = {item["email"]: item for item in result.results["created"]}
        self.assertEqual(created["sam@harbor.test"]["role"], "customer_service")
        errors = {item["row"]: item["error"] for item in result.results["errors"]}
        self.assertEqual(errors[4], "Email and name are required")
        self.assertEqual(errors[5], "Agent code already exists")
        self.assertIn("Invalid role", errors[6])
        self.assertEqual(errors[7], "Invalid email address")
        self.assertEqual(errors[8], "Email already exists")
        self.assertEqual(list(self.test_uploads_dir.joinpath("bulk").iterdir()), [])

        with main.get_db() as conn:
            riley = conn.execute("SELECT * FROM User WHERE email = 'riley@harbor.test'").fetchone()
            audit = conn.execute("SELECT * FROM AuditLog WHERE action = 'bulk_upload'").fetchone()
        self.assertEqual(riley["first_name"], "Riley")
        self.assertEqual(riley["last_name"], "Stone")
        self.assertEqual(riley["must_change_password"], 1)
        self.assertIsNotNone(audit)

    def test_super_admin_lists_users_across_agencies(self) -> None:
        self.create_agency()
        self.create_agency("Other Agency", admin_email="owner@other.test")

        everyone = main.list_all_users(self.super_request(), role="admin")
        scoped = main.list_users(self.admin_request())

        self.assertEqual({u.email for u in everyone}, {"owner@harbor.test", "owner@other.test"})
        self.assertEqual([u.email for u in scoped], ["owner@harbor.test"])

    def test_reactivating_user_respects_plan_user_limit(self) -> None:
        self.create_agency()
        admin = self.admin_request()
        parked = main.create_user(main.UserIn(email="parked@harbor.test", first_name="Pat", role="agent"), admin)
        main.delete_user(parked.id, admin)
        for index in range(main.PLAN_LIMITS["basic"]["max_users"] - 1):
            main.create_user(
                main.UserIn(email=f"agent{index}@harbor.test", first_name=f"Agent{index}", role="agent"), admin
            )

        with self.assertRaises(HTTPException) as ctx:
            main.update_user(parked.id, main.UserUpdate(is_active=True), admin)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("user limit", ctx.exception.detail)
        with main.get_db() as conn:
            self.assertEqual(main.fetch_user(conn, parked.id)["is_active"], 0)

        # Edits to an already active user are not capacity checked.
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM User WHERE email = 'agent0@harbor.test'")
            active_id = cur.fetchone()["id"]
        updated = main.update_user(active_id, main.UserUpdate(is_active=True, first_name="Still"), admin)
        self.assertEqual(updated.first_name, "Still")

    def test_admin_edits_allowed_settings_of_own_agency(self) -> None:
        agency = self.create_agency()
        other = self.create_agency("Other Agency", admin_email="owner@other.test")
        payload = main.AgencySettingsUpdate(
            name="Harbor Health Group", contact_phone=" 555-0100 ", commission_split=65, pay_period="Biweekly"
        )

        updated = main.update_own_agency(payload, self.admin_request())

        self.assertEqual(updated.id, agency.id)
        self.assertEqual(updated.name, "Harbor Health Group")
        self.assertEqual(updated.contact_phone, "555-0100")
        self.assertEqual(updated.commission_split, 65)
        self.assertEqual(updated.pay_period, "biweekly")
        self.assertEqual(updated.plan_type, "basic")
        with main.get_db() as conn:
            self.assertEqual(main.fetch_agency(conn, other.id)["name"], "Other Agency")
            cur = conn.cursor()
            cur.execute("SELECT details FROM AuditLog WHERE action = 'agency_settings_updated'")
            self.assertIn("pay_period", cur.fetchone()["details"])

    def test_agency_settings_ignore_plan_fields_and_reject_bad_values(self) -> None:
        self.create_agency()
        self.create_agency("Other Agency", admin_email="owner@other.test")
        admin = self.admin_request()

        main.update_own_agency(main.AgencySettingsUpdate.parse_obj({"plan_type": "enterprise", "max_users": 999}), admin)
        current = main.get_own_agency(admin)
        self.assertEqual(current.plan_type, "basic")
        self.assertEqual(current.max_users, main.PLAN_LIMITS["basic"]["max_users"])

        for payload, status in (
            (main.AgencySettingsUpdate(name="other agency"), 409),
            (main.AgencySettingsUpdate(name="   "), 400),
            (main.AgencySettingsUpdate(commission_split=140), 400),
            (main.AgencySettingsUpdate(pay_period="daily"), 400),
        ):
            with self.assertRaises(HTTPException) as ctx:
                main.update_own_agency(payload, admin)
            self.assertEqual(ctx.exception.status_code, status)

    def test_only_agency_admins_edit_agency_settings(self) -> None:
        self.create_agency()
        admin = self.admin_request()
        main.create_user(
            main.UserIn(email="lead@harbor.test", first_name="Lee", role="manager", password="LeadPass123!"), admin
        )
        main.create_user(
            main.UserIn(email="rep@harbor.test", first_name="Rey", role="agent", password="RepPass123!"), admin
        )
        for email in ("lead@harbor.test", "rep@harbor.test"):
            with self.assertRaises(HTTPException) as ctx:
                main.update_own_agency(main.AgencySettingsUpdate(name="Takeover"), self.admin_request(email))
            self.assertEqual(ctx.exception.status_code, 403)
            with self.assertRaises(HTTPException) as ctx:
                main.disable_leaderboard_settings(self.admin_request(email))
            self.assertEqual(ctx.exception.status_code, 403)

    def test_leaderboard_opt_out_hides_agency_from_global_board(self) -> None:
        harbor = self.create_agency()
        other = self.create_agency("Other Agency", admin_email="owner@other.test")
        with main.get_db() as conn:
            cur = conn.cursor()
            for agency in (harbor, other):
                cur.execute("SELECT id FROM User WHERE agency_id = ?", (agency.id,))
                main.create_sale_record(
                    conn, agency_id=agency.id, agent_id=cur.fetchone()["id"], customer_id=None, product=None, premium=400.0
                )
            conn.commit()
        admin = self.admin_request()
        self.assertEqual(main.get_leaderboard_settings(admin), {"agency_id": harbor.id, "enabled": True})
        self.assertEqual(main.get_global_leaderboard(admin)["metrics"]["offices"], 2)

        with self.assertRaises(HTTPException) as ctx:
            main.update_leaderboard_settings(main.LeaderboardSettingsIn(), admin)
        self.assertEqual(ctx.exception.status_code, 400)

        result = main.update_leaderboard_settings(main.LeaderboardSettingsIn(enabled=False), admin)
        self.assertFalse(result["enabled"])
        board = main.get_global_leaderboard(admin)
        self.assertEqual(board["metrics"]["offices"], 1)
        self.assertEqual({item["agency_name"] for item in board["rankings"]}, {"Other Agency"})
        with main.get_db() as conn:
            self.assertEqual(main.fetch_agency(conn, other.id)["participate_global_leaderboard"], 1)

        main.update_leaderboard_settings(main.LeaderboardSettingsIn(enabled=True), admin)
        self.assertEqual(main.get_global_leaderboard(admin)["metrics"]["offices"], 2)
        main.disable_leaderboard_settings(admin)
        self.assertFalse(main.get_leaderboard_settings(admin)["enabled"])


if __name__ == "__main__":
    unittest.main()

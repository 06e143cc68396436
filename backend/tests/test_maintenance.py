import io
import json
import shutil
import tempfile
import unittest
import uuid
from contextlib import redirect_stdout
from pathlib import Path
import sys

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402
import maintenance  # noqa: E402


class MaintenanceTests(unittest.TestCase):
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
                conn, name="Old Harbor", admin_email="admin@harbor.test", plan_type="basic"
            )
            self.target_id = main.insert_agency(
                conn, name="New Harbor", admin_email="admin@newharbor.test", plan_type="professional"
            )
            self.admin_id = self.add_user(conn, "admin@harbor.test", "admin")
            self.agent_id = self.add_user(conn, "agent@harbor.test", "agent")
            conn.commit()

    def add_user(self, conn, email: str, role: str) -> str:
        return main.insert_user(
            conn,
            email=email,
            first_name="Hal",
            last_name="Harbor",
            role=role,
            agency_id=self.agency_id,
            password="HarborPass1!",
            must_change_password=False,
        )

    def user(self, user_id: str):
        with main.get_db() as conn:
            return main.fetch_user(conn, user_id)

    def test_inventory_counts_rows(self) -> None:
        counts = maintenance.inventory()

        self.assertEqual(counts["Agency"], 2)
        self.assertEqual(counts["Sale"], 0)
        self.assertIn("StripeEvent", counts)

    def test_normalize_roles_dry_run_and_apply(self) -> None:
        with main.get_db() as conn:
            conn.execute("UPDATE User SET role = 'Customer Service' WHERE id = ?", (self.agent_id,))
            conn.execute("UPDATE User SET role = 'Janitor' WHERE id = ?", (self.admin_id,))
            conn.commit()

        preview = maintenance.normalize_roles(dry_run=True)
        self.assertEqual(preview, [{"email": "agent@harbor.test", "from": "Customer Service", "to": "customer_service"}])
        self.assertEqual(self.user(self.agent_id)["role"], "Customer Service")

        maintenance.normalize_roles()
        self.assertEqual(self.user(self.agent_id)["role"], "customer_service")
        self.assertEqual(self.user(self.admin_id)["role"], "Janitor")

    def test_find_orphans(self) -> None:
        ghost_agency = str(uuid.uuid4())
        with main.get_db() as conn:
            conn.execute("UPDATE User SET agency_id = ? WHERE id = ?", (ghost_agency, self.agent_id))
            conn.commit()

        orphans = maintenance.find_orphans()

        self.assertEqual([row["email"] for row in orphans], ["agent@harbor.test"])
        self.assertEqual(orphans[0]["agency_id"], ghost_agency)

    def test_reassign_users(self) -> None:
        with self.assertRaises(SystemExit):
            maintenance.reassign_users(self.agency_id, "missing-agency")

        moved = maintenance.reassign_users(self.agency_id, self.target_id)

        self.assertEqual(moved, 2)
        self.assertEqual(self.user(self.agent_id)["agency_id"], self.target_id)

    def test_set_password(self) -> None:
        with main.get_db() as conn:
            conn.execute("UPDATE User SET must_change_password = 1 WHERE id = ?", (self.agent_id,))
            conn.commit()

        maintenance.set_password("AGENT@harbor.test", "FreshStart99!")

        user = self.user(self.agent_id)
        self.assertTrue(main.verify_password("FreshStart99!", user["password_salt"], user["password_hash"]))
        self.assertEqual(user["must_change_password"], 0)
        with self.assertRaises(SystemExit):
            maintenance.set_password("nobody@harbor.test", "FreshStart99!")

    def test_deactivate_agency(self) -> None:
        users = maintenance.deactivate_agency(self.agency_id)

        self.assertEqual(users, 2)
        self.assertEqual(self.user(self.admin_id)["is_active"], 0)
        with main.get_db() as conn:
            audit = conn.execute("SELECT * FROM AuditLog WHERE action = 'agency_deactivated'").fetchone()
        self.assertEqual(audit["resource_id"], self.agency_id)
        with self.assertRaises(SystemExit):
            maintenance.deactivate_agency("missing-agency")

    def test_run_dispatches_commands(self) -> None:
        result = maintenance.run(maintenance.parse_args(["normalize-roles", "--dry-run"]))
        self.assertEqual(result, {"changed": [], "dry_run": True})

        result = maintenance.run(
            maintenance.parse_args(["reassign-users", "--from-agency", self.agency_id, "--to-agency", self.target_id])
        )
        self.assertEqual(result, {"moved": 2})

    def test_cli_prints_json_and_reports_bad_passwords(self) -> None:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            maintenance.cli(["--db-path", str(self.test_db_path), "find-orphans"])
        self.assertEqual(json.loads(buffer.getvalue()), {"orphans": []})

        with self.assertRaises(SystemExit):
            maintenance.cli(["set-password", "--email", "agent@harbor.test", "--password", "short"])


if __name__ == "__main__":
    unittest.main()

import asyncio
import csv
import io
import shutil
import tempfile
import unittest
import uuid
from pathlib import Path
import sys
from types import SimpleNamespace

import openpyxl
from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


def bearer(user) -> SimpleNamespace:
    return SimpleNamespace(headers={"authorization": f"Bearer {main.issue_token(user)}"}, cookies={})


def read_body(response) -> bytes:
    async def collect() -> bytes:
        chunks = []
        async for chunk in response.body_iterator:
            chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
        return b"".join(chunks)

    return asyncio.run(collect())


class CommissionRuleTests(unittest.TestCase):
    def test_default_structures_are_valid(self) -> None:
        self.assertIsNone(main.validate_commission_structures(main.DEFAULT_COMMISSION_STRUCTURES))

    def test_validation_messages(self) -> None:
        cases = [
            ({}, "Commission structures are required"),
            ({"flat": {"rate": 10}}, "Structure 'flat' is missing type"),
            ({"flat": {"type": "percentage", "rate": 120}}, "Structure 'flat' has invalid rate (must be 0-100)"),
            ({"tiers": {"type": "tiered", "tiers": []}}, "Structure 'tiers' must have at least one tier"),
            (
                {"tiers": {"type": "tiered", "tiers": [{"min": -1, "rate": 10}]}},
                "Structure 'tiers' has invalid tier minimum",
            ),
            (
                {"prod": {"type": "product", "rates": {"life": "high"}}},
                "Structure 'prod' has invalid rate for product 'life' (must be 0-100)",
            ),
            (
                {"mix": {"type": "hybrid", "base_rate": 50, "bonus_rate": 60, "bonus_threshold": -5}},
                "Structure 'mix' has invalid bonus_threshold",
            ),
            ({"odd": {"type": "mystery"}}, "Structure 'odd' has invalid type 'mystery'"),
        ]
        for structures, message in cases:
            with self.subTest(message=message):
                self.assertEqual(main.validate_commission_structures(structures), message)

    def test_calculate_commission_per_structure_type(self) -> None:
        structures = main.DEFAULT_COMMISSION_STRUCTURES

        self.assertEqual(main.calculate_commission(1000, None, 0, structures["flat_percentage"]), 800.0)
        self.assertEqual(main.calculate_commission(1000, None, 5000, structures["tiered"]), 700.0)
        self.assertEqual(main.calculate_commission(1000, None, 30000, structures["tiered"]), 800.0)
        self.assertEqual(main.calculate_commission(1000, "life", 0, structures["product_based"]), 850.0)
        self.assertEqual(main.calculate_commission(1000, "boat", 0, structures["product_based"]), 750.0)
        self.assertEqual(main.calculate_commission(1000, None, 19999, structures["hybrid"]), 600.0)
        self.assertEqual(main.calculate_commission(1000, None, 20000, structures["hybrid"]), 850.0)

    def test_tier_gap_pays_nothing(self) -> None:
        structure = {"type": "tiered", "tiers": [{"min": 100, "max": 200, "rate": 10}]}
        self.assertEqual(main.calculate_commission(500, None, 50, structure), 0.0)

    def test_weekly_export_rows_net_out_chargebacks(self) -> None:
        sales = [
            {"agent_id": "a-2", "premium": 200.0, "monthly_recurring": 0},
            {"agent_id": "a-2", "premium": 50.0, "monthly_recurring": None},
        ]
        rows = main.build_weekly_export(sales, {"a-1": -30.0, "a-2": -10.0}, {"a-2": "Bea Agent"})

        self.assertEqual([row["agentId"] for row in rows], ["a-1", "a-2"])
        self.assertEqual(rows[0]["netCommission"], -30.0)
        self.assertEqual(rows[0]["totalSales"], 0)
        self.assertEqual(rows[1]["totalSales"], 2)
        self.assertEqual(rows[1]["totalCommission"], 75.0)
        self.assertEqual(rows[1]["netCommission"], 65.0)
        self.assertEqual(rows[1]["agentName"], "Bea Agent")


class CommissionRouteTests(unittest.TestCase):
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
                conn, name="Ridge Insurance", admin_email="admin@ridge.test", plan_type="professional"
            )
            self.admin_id = self.add_user(conn, "admin@ridge.test", "Ari", "Admin", "admin")
            self.manager_id = self.add_user(conn, "manager@ridge.test", "Max", "Manager", "manager")
            self.agent_id = self.add_user(conn, "agent@ridge.test", "Bea", "Agent", "agent")
            self.second_agent_id = self.add_user(conn, "second@ridge.test", "Cal", "Closer", "agent")
            conn.commit()
        self.admin = self.request_for(self.admin_id)
        self.manager = self.request_for(self.manager_id)
        self.agent = self.request_for(self.agent_id)
        self.product = main.create_product(
            main.ProductIn(name="Ridge Health", product_type="health", commission_rate=10.0), self.admin
        )
        self.customer = main.create_customer(main.CustomerIn(first_name="Dana", last_name="Doe"), self.admin)

    def add_user(self, conn, email: str, first_name: str, last_name: str, role: str) -> str:
        return main.insert_user(
            conn,
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            agency_id=self.agency_id,
            password="RidgePass123!",
            must_change_password=False,
        )

    def request_for(self, user_id: str) -> SimpleNamespace:
        with main.get_db() as conn:
            return bearer(main.fetch_user(conn, user_id))

    def sell(self, premium: float, sale_date: str, agent_id=None, monthly_recurring=None) -> main.SaleOut:
        return main.create_sale(
            main.SaleIn(
                customer_id=self.customer["id"],
                product_id=self.product.id,
                premium=premium,
                monthly_recurring=monthly_recurring,
                sale_date=sale_date,
                agent_id=agent_id or self.agent_id,
            ),
            self.admin,
        )

    def add_chargeback(self, agent_id: str, amount: float, pay_period: str) -> None:
        with main.get_db() as conn:
            conn.execute(
                """
                INSERT INTO PolicyCancellation (
                    id, agency_id, agent_id, cancellation_type, chargeback_amount, pay_period_applied, created_at
                ) VALUES (?, ?, ?, 'CHARGEBACK', ?, ?, ?)
                """,
                (str(uuid.uuid4()), self.agency_id, agent_id, amount, pay_period, main.now_iso()),
            )
            conn.commit()

    def test_agent_sees_own_commissions_with_summary(self) -> None:
        self.sell(200.0, "2026-03-10")
        self.sell(100.0, "2026-03-11")
        self.sell(500.0, "2026-03-11", agent_id=self.second_agent_id)

        result = main.list_commissions(self.agent)

        self.assertEqual(len(result["commissions"]), 2)
        self.assertEqual(result["summary"]["total"], 30.0)
        self.assertEqual(result["summary"]["pending"], 30.0)
        self.assertEqual(result["summary"]["average_commission"], 15.0)

    def test_group_by_month_and_product(self) -> None:
        self.sell(200.0, "2026-02-10")
        self.sell(100.0, "2026-03-11")

        by_month = main.list_commissions(self.admin, group_by="month")
        by_product = main.list_commissions(self.admin, group_by="product")

        self.assertEqual([g["period"] for g in by_month["grouped"]], ["2026-03", "2026-02"])
        self.assertEqual(by_month["grouped"][1]["total_commission"], 20.0)
        self.assertEqual(by_product["grouped"][0]["product_name"], "Ridge Health")
        self.assertEqual(by_product["grouped"][0]["count"], 2)

    def test_marking_commission_paid_sets_paid_date(self) -> None:
        sale = self.sell(200.0, "2026-03-10")
        with self.assertRaises(HTTPException) as ctx:
            main.update_commission_status(sale.id, main.CommissionStatusIn(commission_status="bogus"), self.admin)
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(HTTPException) as ctx:
            main.update_commission_status(sale.id, main.CommissionStatusIn(commission_status="paid"), self.agent)
        self.assertEqual(ctx.exception.status_code, 403)

        row = main.update_commission_status(sale.id, main.CommissionStatusIn(commission_status="Paid"), self.admin)

        self.assertEqual(row["commission_status"], "paid")
        self.assertEqual(row["commission_paid_date"], main.today_utc().isoformat())

    def test_adjustment_must_match_sale_agent(self) -> None:
        sale = self.sell(200.0, "2026-03-10", agent_id=self.second_agent_id)
        with self.assertRaises(HTTPException) as ctx:
            main.create_commission_adjustment(
                main.CommissionAdjustmentIn(agent_id=self.agent_id, amount=25.0, adjustment_type="bonus"),
                self.manager,
            )
        self.assertEqual(ctx.exception.status_code, 403)
        with self.assertRaises(HTTPException) as ctx:
            main.create_commission_adjustment(
                main.CommissionAdjustmentIn(
                    agent_id=self.agent_id, amount=25.0, adjustment_type="bonus", sale_id=sale.id
                ),
                self.admin,
            )
        self.assertEqual(ctx.exception.detail, "Sale does not belong to this agent")

        main.create_commission_adjustment(
            main.CommissionAdjustmentIn(agent_id=self.agent_id, amount=25.0, adjustment_type="bonus"), self.admin
        )
        self.assertEqual(main.list_commissions(self.agent)["summary"]["total_adjustments"], 25.0)

    def test_settings_default_then_saved_and_pruned(self) -> None:
        defaults = main.get_commission_settings(self.manager)
        self.assertTrue(defaults["is_default"])
        self.assertEqual(defaults["active_structure"], "flat_percentage")
        self.assertEqual(len(defaults["agents"]), 2)

        with self.assertRaises(HTTPException) as ctx:
            main.save_commission_settings(
                main.CommissionSettingsIn(structures={"flat": {"type": "percentage", "rate": 10}}, active_structure="x"),
                self.admin,
            )
        self.assertEqual(ctx.exception.status_code, 400)

        saved = main.save_commission_settings(
            main.CommissionSettingsIn(
                structures={
                    "flat": {"type": "percentage", "rate": 40},
                    "bonus": {"type": "hybrid", "base_rate": 50, "bonus_rate": 70, "bonus_threshold": 1000},
                },
                active_structure="flat",
            ),
            self.admin,
        )
        self.assertFalse(saved["is_default"])
        preview = main.preview_commission(main.CommissionCalculateIn(amount=250.0), self.manager)
        self.assertEqual(preview, {"structure_key": "flat", "structure_type": "percentage", "amount": 250.0, "commission": 100.0})

        pruned = main.delete_commission_structure("flat", self.admin)
        self.assertEqual(pruned["active_structure"], "bonus")
        with self.assertRaises(HTTPException) as ctx:
            main.delete_commission_structure("flat", self.admin)
        self.assertEqual(ctx.exception.status_code, 404)
        with main.get_db() as conn:
            actions = [row["action"] for row in conn.execute("SELECT action FROM AuditLog").fetchall()]
        self.assertIn("commission_settings_updated", actions)
        self.assertIn("commission_structure_deleted", actions)

    def test_override_lifecycle(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            main.create_commission_override(
                main.CommissionOverrideIn(agent_id=self.agent_id, override_type="bonus", override_value=5),
                self.admin,
            )
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(HTTPException) as ctx:
            main.create_commission_override(
                main.CommissionOverrideIn(
                    agent_id=self.agent_id,
                    override_type="fixed_rate",
                    override_value=30,
                    effective_date="2026-05-01",
                    expiry_date="2026-04-01",
                ),
                self.admin,
            )
        self.assertEqual(ctx.exception.detail, "expiry_date must be after effective_date")

        first = main.create_commission_override(
            main.CommissionOverrideIn(agent_id=self.agent_id, override_type="fixed_rate", override_value=30),
            self.admin,
        )
        main.create_commission_override(
            main.CommissionOverrideIn(
                agent_id=self.second_agent_id, override_type="percentage_increase", override_value=5
            ),
            self.admin,
        )
        main.update_commission_override(first["id"], main.CommissionOverrideUpdate(is_active=False), self.admin)

        listed = main.list_commission_overrides(self.manager)
        self.assertEqual(listed["summary"], {"total": 2, "active": 1, "agents_with_overrides": 2})
        self.assertEqual(len(main.list_commission_overrides(self.manager, active_only=True)["overrides"]), 1)

        self.assertEqual(main.delete_commission_override(first["id"], self.admin), {"status": "deleted"})
        self.assertEqual(main.list_commission_overrides(self.admin)["summary"]["total"], 1)

    def test_commission_summary_nets_chargebacks(self) -> None:
        paid = self.sell(300.0, "2026-03-10")
        self.sell(100.0, "2026-03-12")
        main.update_commission_status(paid.id, main.CommissionStatusIn(commission_status="paid"), self.admin)
        self.add_chargeback(self.agent_id, -12.0, "2026-03-15")
        self.add_chargeback(self.second_agent_id, -5.0, "2026-03-22")

        summary = main.commission_summary(self.manager, start_date="2026-03-01", end_date="2026-03-31")

        rows = {row["agent_id"]: row for row in summary["agents"]}
        self.assertEqual(rows[self.agent_id]["paid"], 30.0)
        self.assertEqual(rows[self.agent_id]["pending"], 10.0)
        self.assertEqual(rows[self.agent_id]["chargebacks"], -12.0)
        self.assertEqual(rows[self.agent_id]["net"], 28.0)
        self.assertEqual(rows[self.second_agent_id]["net"], -5.0)
        self.assertEqual(summary["totals"]["net"], 23.0)

    def test_payroll_report_and_csv(self) -> None:
        self.sell(200.0, "2026-03-10")
        self.sell(400.0, "2026-03-11", agent_id=self.second_agent_id)
        self.sell(999.0, "2026-04-02")

        report = main.get_payroll(self.manager, start_date="2026-03-01", end_date="2026-03-31")

        self.assertEqual(report["summary"]["total_agents"], 2)
        self.assertEqual(report["summary"]["total_commissions"], 60.0)
        self.assertEqual(report["payroll"][0]["agent_name"], "Cal Closer")
        self.assertEqual(report["payroll"][0]["commission_percentage"], 10.0)
        self.assertEqual(report["filters"]["agent_id"], None)

        with self.assertRaises(HTTPException) as ctx:
            main.get_payroll(self.manager, start_date="2026-03-31", end_date="2026-03-01")
        self.assertEqual(ctx.exception.status_code, 400)

        response = main.get_payroll(
            self.manager, start_date="2026-03-01", end_date="2026-03-31", agent_id=self.agent_id, export_format="csv"
        )
        self.assertIn("payroll-2026-03-01-to-2026-03-31.csv", response.headers["content-disposition"])
        rows = list(csv.reader(io.StringIO(read_body(response).decode("utf-8"))))
        self.assertEqual(rows[0], main.PAYROLL_CSV_HEADERS)
        self.assertEqual(rows[1], ["Bea Agent", "agent@ridge.test", "", "1", "200.00", "20.00", "10.0%"])

    def test_weekly_export_formats(self) -> None:
        self.sell(200.0, "2026-03-10", monthly_recurring=100.0)
        self.sell(300.0, "2026-03-03")
        self.add_chargeback(self.agent_id, -20.0, "2026-03-08")

        with self.assertRaises(HTTPException) as ctx:
            main.export_weekly_payroll(self.admin, end_date="2026-03-14", format="pdf")
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(HTTPException) as ctx:
            main.export_weekly_payroll(self.manager, end_date="2026-03-14", format="json")
        self.assertEqual(ctx.exception.status_code, 403)

        data = main.export_weekly_payroll(self.admin, end_date="2026-03-12", format="json")
        self.assertEqual(data["period"], {"start_date": "2026-03-08", "end_date": "2026-03-14"})
        self.assertEqual(len(data["rows"]), 1)
        row = data["rows"][0]
        self.assertEqual(row["agentName"], "Bea Agent")
        self.assertEqual(row["totalSales"], 1)
        self.assertEqual(row["totalCommission"], 30.0)
        self.assertEqual(row["netCommission"], 10.0)

        response = main.export_weekly_payroll(self.admin, end_date="2026-03-14", format="csv")
        lines = read_body(response).decode("utf-8").splitlines()
        self.assertEqual(lines[0], ",".join(main.WEEKLY_EXPORT_HEADERS))
        self.assertIn("payroll-week-2026-03-08.csv", response.headers["content-disposition"])

        workbook_response = main.export_weekly_payroll(self.admin, end_date="2026-03-14", format="XLSX")
        workbook = openpyxl.load_workbook(io.BytesIO(read_body(workbook_response)))
        sheet = workbook["Payroll"]
        self.assertEqual([cell.value for cell in sheet[1]], main.WEEKLY_EXPORT_HEADERS)
        self.assertEqual(sheet.cell(row=2, column=6).value, 10.0)


if __name__ == "__main__":
    unittest.main()

import shutil
import tempfile
import unittest
import uuid
from datetime import date, timedelta
from pathlib import Path
import sys
from types import SimpleNamespace

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402


def bearer(user) -> SimpleNamespace:
    return SimpleNamespace(headers={"authorization": f"Bearer {main.issue_token(user)}"}, cookies={})


SAMPLE_EMAIL = (
    "Dear John Smith,\n"
    "Policy Number: POL-12345\n"
    "Your coverage effective 01/15/2026 was cancelled on 03/20/2026.\n"
    "Monthly premium: $250.00\n"
)


class CancellationParsingTests(unittest.TestCase):
    def test_parse_extracts_fields(self) -> None:
        parsed = main.parse_cancellation_email(SAMPLE_EMAIL)

        self.assertEqual(parsed["customer_name"], "John Smith")
        self.assertEqual(parsed["policy_number"], "POL-12345")
        self.assertEqual(parsed["effective_date"], "2026-01-15")
        self.assertEqual(parsed["cancellation_date"], "2026-03-20")
        self.assertEqual(parsed["premium"], 250.0)
        self.assertEqual(parsed["original_commission"], 75.0)

    def test_parse_falls_back_when_fields_are_missing(self) -> None:
        parsed = main.parse_cancellation_email("Policy cancelled at the member's request.")

        self.assertEqual(parsed["customer_name"], "Unknown Customer")
        self.assertEqual(parsed["policy_number"], "Unknown Policy")
        self.assertIsNone(parsed["effective_date"])
        self.assertEqual(parsed["premium"], main.DEFAULT_CANCELLATION_PREMIUM)

    def test_premium_outside_plausible_range_is_skipped(self) -> None:
        parsed = main.parse_cancellation_email("Customer: Ann Lee\nAmount: $5000\nMonthly cost $129.50")
        self.assertEqual(parsed["customer_name"], "Ann Lee")
        self.assertEqual(parsed["premium"], 129.5)

    def test_extract_dates_reads_all_formats(self) -> None:
        found = main.extract_dates("Started March 3, 2026, renewed 2026-04-01 and ended 5/2/26")
        self.assertEqual(found, [date(2026, 3, 3), date(2026, 4, 1), date(2026, 5, 2)])

    def test_long_running_policy_without_sale_is_chargeback(self) -> None:
        parsed = main.parse_cancellation_email(SAMPLE_EMAIL)

        result = main.classify_cancellation(parsed, today=date(2026, 3, 18))

        self.assertEqual(result["type"], "CHARGEBACK")
        self.assertEqual(result["days_in_force"], 64)
        self.assertEqual(result["amount"], -75.0)
        self.assertEqual(result["pay_period_applied"], "2026-03-22")

    def test_short_policy_without_sale_is_cancellation(self) -> None:
        parsed = main.parse_cancellation_email(
            "Name: Rae Park\nPolicy #: H-77812\nEffective 03/01/2026, cancelled 03/20/2026"
        )

        result = main.classify_cancellation(parsed, today=date(2026, 3, 20))

        self.assertEqual(result["type"], "CANCELLATION")
        self.assertEqual(result["amount"], 0.0)
        self.assertIsNone(result["pay_period_applied"])

    def test_sale_payout_status_decides_classification(self) -> None:
        parsed = main.parse_cancellation_email("Policy: P-1\nEffective 03/01/2026, cancelled 03/05/2026")
        paid = {"commission_status": "paid", "commission_amount": 40.0, "effective_date": None, "sale_date": None}
        pending = dict(paid, commission_status="pending")

        charged = main.classify_cancellation(parsed, paid, today=date(2026, 3, 5))
        skipped = main.classify_cancellation(parsed, pending, today=date(2026, 3, 5))

        self.assertEqual(charged["type"], "CHARGEBACK")
        self.assertEqual(charged["amount"], -40.0)
        self.assertEqual(charged["pay_period_applied"], "2026-03-08")
        self.assertEqual(skipped["type"], "CANCELLATION")
        self.assertEqual(skipped["original_commission"], 40.0)

    def test_single_date_uses_sale_effective_date(self) -> None:
        parsed = main.parse_cancellation_email("Policy: P-9\nCancelled 04/10/2026")
        sale = {"commission_status": "pending", "commission_amount": 0, "effective_date": "2026-03-01", "sale_date": "2026-02-20"}

        result = main.classify_cancellation(parsed, sale, today=date(2026, 4, 10))

        self.assertEqual(result["effective_date"], "2026-03-01")
        self.assertEqual(result["days_in_force"], 40)


class CancellationRouteTests(unittest.TestCase):
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
                conn, name="Coastal Cover", admin_email="admin@coastal.test", plan_type="basic"
            )
            self.admin_id = self.add_user(conn, "admin@coastal.test", "admin")
            self.agent_id = self.add_user(conn, "agent@coastal.test", "agent")
            self.service_id = self.add_user(conn, "help@coastal.test", "customer_service")
            conn.commit()
        self.admin = self.request_for(self.admin_id)
        self.agent = self.request_for(self.agent_id)
        product = main.create_product(main.ProductIn(name="Coastal Dental", commission_rate=20.0), self.admin)
        customer = main.create_customer(main.CustomerIn(first_name="Lena", last_name="Shore"), self.agent)
        self.sale = main.create_sale(
            main.SaleIn(
                customer_id=customer["id"],
                product_id=product.id,
                premium=300.0,
                policy_number="CC-40021",
                sale_date="2026-01-05",
                effective_date="2026-01-05",
            ),
            self.agent,
        )

    def add_user(self, conn, email: str, role: str) -> str:
        return main.insert_user(
            conn,
            email=email,
            first_name=role.title(),
            last_name="Coastal",
            role=role,
            agency_id=self.agency_id,
            password="CoastPass123!",
            must_change_password=False,
        )

    def request_for(self, user_id: str) -> SimpleNamespace:
        with main.get_db() as conn:
            return bearer(main.fetch_user(conn, user_id))

    def email_for(self, policy_number: str) -> str:
        today = main.today_utc()
        effective = today - timedelta(days=10)
        return (
            f"Customer: Lena Shore\nPolicy Number: {policy_number}\n"
            f"Effective {effective.isoformat()} cancelled {today.isoformat()}\nPremium: $300.00"
        )

    def test_empty_email_is_rejected(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            main.process_cancellation(main.CancellationIn(email_content="   "), self.agent)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_paid_sale_becomes_chargeback(self) -> None:
        main.update_commission_status(self.sale.id, main.CommissionStatusIn(commission_status="paid"), self.admin)

        result = main.process_cancellation(main.CancellationIn(email_content=self.email_for("CC-40021")), self.agent)

        self.assertEqual(result["sale_id"], self.sale.id)
        self.assertEqual(result["type"], "CHARGEBACK")
        self.assertEqual(result["amount"], -60.0)
        with main.get_db() as conn:
            sale = main.fetch_row(conn, "Sale", self.sale.id, "Sale")
            audit = conn.execute("SELECT * FROM AuditLog WHERE action = 'policy_cancelled'").fetchone()
        self.assertEqual(sale["status"], "cancelled")
        self.assertEqual(sale["commission_status"], "charged_back")
        self.assertEqual(audit["severity"], "warning")

    def test_unpaid_sale_shows_in_agent_cancellations(self) -> None:
        result = main.process_cancellation(main.CancellationIn(email_content=self.email_for("CC-40021")), self.agent)

        self.assertEqual(result["type"], "CANCELLATION")
        with main.get_db() as conn:
            sale = main.fetch_row(conn, "Sale", self.sale.id, "Sale")
        self.assertEqual(sale["status"], "cancelled")
        self.assertEqual(sale["commission_status"], "pending")

        listed = main.get_agent_cancellations(self.agent)
        self.assertEqual(listed["count"], 1)
        self.assertEqual(listed["items"][0]["policy_number"], "CC-40021")
        self.assertEqual(main.get_agent_cancellations(self.agent, timeframe="lastweek")["count"], 0)

    def test_unmatched_policy_from_service_desk_has_no_agent(self) -> None:
        service = self.request_for(self.service_id)

        result = main.process_cancellation(main.CancellationIn(email_content=self.email_for("ZZ-99999")), service)

        self.assertIsNone(result["sale_id"])
        with main.get_db() as conn:
            row = main.fetch_row(conn, "PolicyCancellation", result["id"], "Cancellation")
        self.assertEqual(row["agency_id"], self.agency_id)
        self.assertIsNone(row["agent_id"])

    def test_agent_chargebacks_follow_pay_period(self) -> None:
        this_week, _ = main.week_range("thisweek")
        with main.get_db() as conn:
            for amount, period in ((-45.0, this_week), (-10.0, this_week - timedelta(days=7))):
                conn.execute(
                    """
                    INSERT INTO PolicyCancellation (
                        id, agency_id, agent_id, cancellation_type, chargeback_amount, pay_period_applied, created_at
                    ) VALUES (?, ?, ?, 'CHARGEBACK', ?, ?, ?)
                    """,
                    (str(uuid.uuid4()), self.agency_id, self.agent_id, amount, period.isoformat(), main.now_iso()),
                )
            conn.commit()

        current = main.get_agent_chargebacks(self.agent)
        previous = main.get_agent_chargebacks(self.agent, pay_period="lastweek")

        self.assertEqual(current["total_amount"], -45.0)
        self.assertEqual(previous["total_amount"], -10.0)
        self.assertEqual(main.get_agent_chargebacks(self.admin)["count"], 1)


if __name__ == "__main__":
    unittest.main()

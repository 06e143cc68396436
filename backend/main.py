from __future__ import annotations

import csv
import hashlib
import hmac
import io
import json
import logging
import os
import re
import secrets
import shutil
import sqlite3
import string
import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib import error as urlerror
from urllib import request as urlrequest

import jwt
import openpyxl
import stripe
import xlrd
from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

BASE_DIR = Path(__file__).resolve().parent
db_path_raw = os.getenv("DB_PATH", str(BASE_DIR / "app.db"))
DB_PATH = Path(db_path_raw).expanduser()
if not DB_PATH.is_absolute():
    DB_PATH = (BASE_DIR / DB_PATH).resolve()
else:
    DB_PATH = DB_PATH.resolve()

uploads_dir_raw = os.getenv("UPLOADS_DIR", str(BASE_DIR.parent / "uploads"))
UPLOADS_DIR = Path(uploads_dir_raw).expanduser()
if not UPLOADS_DIR.is_absolute():
    UPLOADS_DIR = (BASE_DIR.parent / UPLOADS_DIR).resolve()
else:
    UPLOADS_DIR = UPLOADS_DIR.resolve()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("syncedup")

AUTH_COOKIE_SECURE = os.getenv("AUTH_COOKIE_SECURE", "false").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}
AUTH_COOKIE_SAMESITE = os.getenv("AUTH_COOKIE_SAMESITE", "lax").strip().lower()
if AUTH_COOKIE_SAMESITE not in {"lax", "strict", "none"}:
    AUTH_COOKIE_SAMESITE = "lax"
AUTH_COOKIE_DOMAIN = os.getenv("AUTH_COOKIE_DOMAIN", "").strip() or None

JWT_SECRET = os.getenv("JWT_SECRET", "").strip()
if not JWT_SECRET:
    JWT_SECRET = secrets.token_urlsafe(48)
    logger.warning("JWT_SECRET is not set; tokens will not survive a restart")
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = int(os.getenv("JWT_EXPIRY_HOURS", "8"))

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY

DEFAULT_SUPER_ADMIN_EMAIL = (
    os.getenv("DEFAULT_SUPER_ADMIN_EMAIL", "admin@syncedupsolutions.com").strip().lower()
)
DEFAULT_SUPER_ADMIN_PASSWORD = os.getenv("DEFAULT_SUPER_ADMIN_PASSWORD", "ChangeMe123!").strip()

PUBLIC_API_BASE_URL = os.getenv("PUBLIC_API_BASE_URL", "http://localhost:8000").rstrip("/")

UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

AUTH_COOKIE_NAME = "auth_token"
ROLE_COOKIE_NAME = "user_role"
PASSWORD_RESET_MINUTES = 60
LOGIN_MAX_FAILURES = 5
LOGIN_WINDOW_MINUTES = 15
PASSWORD_MIN_LENGTH = 8
PASSWORD_COMPLEXITY_RE = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ALLOWED_USER_ROLES = {"super_admin", "admin", "manager", "agent", "customer_service"}
ROLE_RANK = {
    "agent": 1,
    "customer_service": 2,
    "manager": 3,
    "admin": 4,
    "super_admin": 5,
}
ROLE_DATA_SCOPE = {
    "super_admin": "ALL_AGENCIES",
    "admin": "AGENCY_ONLY",
    "manager": "AGENCY_ONLY",
    "agent": "SELF_ONLY",
    "customer_service": "AGENCY_CUSTOMERS_ONLY",
}
PORTALS = ["/super-admin", "/admin", "/manager", "/agent", "/customer-service", "/leaderboard"]
PORTAL_ACCESS = {
    "super_admin": set(PORTALS),
    "admin": {"/admin", "/manager", "/agent", "/customer-service", "/leaderboard"},
    "manager": {"/manager", "/agent", "/leaderboard"},
    "agent": {"/agent", "/leaderboard"},
    "customer_service": {"/customer-service", "/leaderboard"},
}
ROLE_HOME_PORTAL = {
    "super_admin": "/super-admin/",
    "admin": "/admin/",
    "manager": "/manager/",
    "customer_service": "/customer-service/",
    "agent": "/agent/",
}

PLAN_LIMITS = {
    "basic": {"max_users": 10, "monthly_cost": 99.0},
    "professional": {"max_users": 50, "monthly_cost": 199.0},
    "enterprise": {"max_users": 200, "monthly_cost": 399.0},
}
DEFAULT_COMMISSION_SPLIT = 20.0
DEFAULT_PAY_PERIOD = "weekly"
PAY_PERIODS = {"weekly", "biweekly", "semimonthly", "monthly"}

DEFAULT_BASE_PREMIUM = 149.99
DEFAULT_QUOTE_COMMISSION_RATE = 30.0
DEFAULT_SALE_COMMISSION_RATE = 80.0
DEFAULT_AGENT_PAYROLL_RATE = 5.0
WEEKLY_EXPORT_COMMISSION_RATE = 0.30
CHARGEBACK_COMMISSION_RATE = 0.30
CHARGEBACK_DAYS_THRESHOLD = 45
DEFAULT_CANCELLATION_PREMIUM = 383.38
STATE_MULTIPLIERS = {"CA": 1.2, "NY": 1.15, "TX": 0.95, "FL": 1.0, "IL": 1.05}
NONSMOKER_DISCOUNT = 0.10
BUNDLE_DISCOUNT = 0.05
MINIMUM_PREMIUM_FACTOR = 0.7

AGENT_SALES_GOAL = 15000.0
AGENT_POLICIES_GOAL = 12
LICENSE_EXPIRING_DAYS = 30
LICENSE_DASHBOARD_DAYS = 60
LICENSE_STATUSES = {"Active", "Expired", "Pending", "Suspended"}
LICENSE_SORT_FIELDS = {"expiration_date", "issue_date", "state", "license_type", "status", "created_at"}

COMMISSION_STRUCTURE_TYPES = {"percentage", "tiered", "product", "hybrid"}
OVERRIDE_TYPES = {"percentage_increase", "percentage_decrease", "fixed_rate"}
DEFAULT_COMMISSION_STRUCTURES: Dict[str, Dict[str, Any]] = {
    "flat_percentage": {
        "type": "percentage",
        "name": "Flat Percentage",
        "rate": 80,
    },
    "tiered": {
        "type": "tiered",
        "name": "Tiered Commission",
        "tiers": [
            {"min": 0, "max": 10000, "rate": 70},
            {"min": 10001, "max": 25000, "rate": 75},
            {"min": 25001, "max": None, "rate": 80},
        ],
    },
    "product_based": {
        "type": "product",
        "name": "Product-Based Rates",
        "rates": {
            "auto": 75,
            "home": 80,
            "life": 85,
            "business": 70,
            "health": 75,
            "dental": 70,
            "vision": 65,
            "default": 75,
        },
    },
    "hybrid": {
        "type": "hybrid",
        "name": "Hybrid Model",
        "base_rate": 60,
        "bonus_threshold": 20000,
        "bonus_rate": 85,
    },
}
DEFAULT_ACTIVE_STRUCTURE = "flat_percentage"

app = FastAPI(title="SyncedUp Insurance Portal API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOW_ORIGIN_REGEX = os.getenv("ALLOWED_ORIGIN_REGEX", "").strip() or None
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    *EXTRA_ALLOWED_ORIGINS,
]))
_allow_dev_reset_default = FRONTEND_BASE_URL.startswith("http://localhost") or FRONTEND_BASE_URL.startswith(
    "http://127.0.0.1"
)
ALLOW_DEV_RESET_LINK_FALLBACK = os.getenv(
    "ALLOW_DEV_RESET_LINK_FALLBACK",
    "true" if _allow_dev_reset_default else "false",
).strip().lower() in {"1", "true", "yes", "on"}

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Database helpers
# ----------------------

def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_iso() -> str:
    return utc_now().isoformat()


def today_utc() -> date:
    return utc_now().date()


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def require_date(value: Optional[str], field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    parsed = parse_date(value)
    if not parsed:
        raise HTTPException(status_code=400, detail=f"{field} must be a YYYY-MM-DD date")
    return parsed.isoformat()


def ensure_columns(conn: sqlite3.Connection, table: str, columns: Dict[str, str]) -> None:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    existing = {row["name"] for row in cur.fetchall()}
    for name, ddl in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def init_db() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Agency(
                id TEXT PRIMARY KEY,
                name TEXT UNIQUE,
                code TEXT,
                webhook_slug TEXT UNIQUE,
                admin_email TEXT,
                contact_phone TEXT,
                plan_type TEXT,
                max_users INTEGER,
                monthly_cost REAL,
                is_active INTEGER DEFAULT 1,
                subscription_status TEXT,
                subscription_tier TEXT,
                stripe_customer_id TEXT,
                stripe_subscription_id TEXT,
                commission_split REAL,
                pay_period TEXT,
                participate_global_leaderboard INTEGER DEFAULT 1,
                convoso_webhook_secret TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS User(
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE,
                first_name TEXT,
                last_name TEXT,
                role TEXT,
                agency_id TEXT,
                agent_code TEXT,
                license_number TEXT,
                commission_rate REAL,
                phone TEXT,
                is_active INTEGER DEFAULT 1,
                must_change_password INTEGER DEFAULT 0,
                password_salt TEXT,
                password_hash TEXT,
                last_login_at TEXT,
                deactivated_at TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PasswordReset(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                token_hash TEXT,
                expires_at TEXT,
                used_at TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS LoginAttempt(
                id TEXT PRIMARY KEY,
                email TEXT,
                succeeded INTEGER,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Product(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                name TEXT,
                carrier TEXT,
                product_type TEXT,
                premium REAL,
                commission_rate REAL,
                deductible REAL,
                max_out_of_pocket REAL,
                copay_primary REAL,
                copay_specialist REAL,
                prescription_coverage INTEGER DEFAULT 0,
                dental_included INTEGER DEFAULT 0,
                vision_included INTEGER DEFAULT 0,
                is_active INTEGER DEFAULT 1,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Customer(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                member_id TEXT,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                phone TEXT,
                date_of_birth TEXT,
                state TEXT,
                product_type TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Quote(
                id TEXT PRIMARY KEY,
                quote_number TEXT,
                agency_id TEXT,
                agent_id TEXT,
                customer_id TEXT,
                product_id TEXT,
                premium REAL,
                coverage_amount REAL,
                deductible REAL,
                status TEXT,
                notes TEXT,
                valid_until TEXT,
                sale_id TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Sale(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                customer_id TEXT,
                product_id TEXT,
                quote_id TEXT,
                policy_number TEXT,
                premium REAL,
                monthly_recurring REAL,
                commission_rate REAL,
                commission_amount REAL,
                commission_status TEXT,
                commission_paid_date TEXT,
                status TEXT,
                sale_date TEXT,
                effective_date TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CommissionAdjustment(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                sale_id TEXT,
                amount REAL,
                adjustment_type TEXT,
                reason TEXT,
                status TEXT,
                created_by TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CommissionSettings(
                agency_id TEXT PRIMARY KEY,
                structures TEXT,
                active_structure TEXT,
                updated_by TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CommissionOverride(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                product_id TEXT,
                override_type TEXT,
                override_value REAL,
                effective_date TEXT,
                expiry_date TEXT,
                reason TEXT,
                notes TEXT,
                is_active INTEGER DEFAULT 1,
                created_by TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PolicyCancellation(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                sale_id TEXT,
                customer_name TEXT,
                policy_number TEXT,
                effective_date TEXT,
                cancellation_date TEXT,
                days_in_force INTEGER,
                premium REAL,
                original_commission REAL,
                chargeback_amount REAL,
                cancellation_type TEXT,
                reason TEXT,
                pay_period_applied TEXT,
                email_content TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS License(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                state TEXT,
                license_type TEXT,
                license_number TEXT,
                status TEXT,
                issue_date TEXT,
                expiration_date TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ConvosoLead(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                lead_id TEXT,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                phone TEXT,
                address TEXT,
                city TEXT,
                state TEXT,
                zip_code TEXT,
                status TEXT,
                lead_score INTEGER,
                priority TEXT,
                temperature TEXT,
                last_disposition TEXT,
                campaign_id TEXT,
                list_id TEXT,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(agency_id, lead_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ConvosoCall(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                lead_id TEXT,
                call_id TEXT,
                convoso_agent_id TEXT,
                agent_name TEXT,
                disposition TEXT,
                duration INTEGER,
                recording_url TEXT,
                call_time TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS WebhookEvent(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                source TEXT,
                event_type TEXT,
                payload TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS StripeEvent(
                event_id TEXT PRIMARY KEY,
                event_type TEXT,
                processed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS SupportTicket(
                id TEXT PRIMARY KEY,
                ticket_number TEXT,
                agency_id TEXT,
                created_by TEXT,
                subject TEXT,
                description TEXT,
                category TEXT,
                priority TEXT,
                status TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ServiceCase(
                id TEXT PRIMARY KEY,
                case_number TEXT,
                agency_id TEXT,
                customer_id TEXT,
                assigned_to TEXT,
                subject TEXT,
                description TEXT,
                priority TEXT,
                status TEXT,
                resolved_at TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Goal(
                id TEXT PRIMARY KEY,
                agency_id TEXT,
                agent_id TEXT,
                created_by TEXT,
                title TEXT,
                metric_type TEXT,
                target_value REAL,
                start_date TEXT,
                target_date TEXT,
                status TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS AuditLog(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                user_email TEXT,
                agency_id TEXT,
                action TEXT,
                resource_type TEXT,
                resource_id TEXT,
                details TEXT,
                severity TEXT,
                created_at TEXT
            )
            """
        )

        # Columns added after the first schema release.
        ensure_columns(
            conn,
            "User",
            {
                "must_change_password": "INTEGER DEFAULT 0",
                "last_login_at": "TEXT",
                "deactivated_at": "TEXT",
            },
        )
        ensure_columns(
            conn,
            "Agency",
            {
                "participate_global_leaderboard": "INTEGER DEFAULT 1",
                "convoso_webhook_secret": "TEXT",
            },
        )
        ensure_columns(conn, "Sale", {"monthly_recurring": "REAL", "commission_paid_date": "TEXT"})
        conn.commit()
        ensure_default_super_admin(conn)


def ensure_default_super_admin(conn: sqlite3.Connection) -> None:
    email = DEFAULT_SUPER_ADMIN_EMAIL
    if not email:
        return
    cur = conn.cursor()
    cur.execute("SELECT id FROM User WHERE email = ?", (email,))
    if cur.fetchone():
        return
    salt, password_hash = create_password_credentials(DEFAULT_SUPER_ADMIN_PASSWORD)
    now = now_iso()
    cur.execute(
        """
        INSERT INTO User (
            id, email, first_name, last_name, role, agency_id, is_active, must_change_password,
            password_salt, password_hash, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            email,
            "Super",
            "Admin",
            "super_admin",
            None,
            1,
            1,
            salt,
            password_hash,
            now,
            now,
        ),
    )
    conn.commit()
    logger.info("Seeded default super admin %s", email)


# ----------------------
# Models
# ----------------------

class AuthLoginIn(BaseModel):
    email: str
    password: str


class UserOut(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = ""
    last_name: Optional[str] = ""
    role: str
    agency_id: Optional[str] = None
    agent_code: Optional[str] = None
    license_number: Optional[str] = None
    commission_rate: Optional[float] = None
    phone: Optional[str] = ""
    is_active: bool = True
    must_change_password: bool = False
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


class AuthLoginOut(BaseModel):
    token: str
    user: UserOut
    redirect: str


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


class PasswordResetRequestIn(BaseModel):
    email: str


class PasswordResetIn(BaseModel):
    token: str
    new_password: str


class PortalGuardOut(BaseModel):
    allowed: bool
    role: str
    redirect: Optional[str] = None


class AgencyIn(BaseModel):
    name: str
    admin_email: str
    plan_type: str = "basic"
    contact_phone: Optional[str] = ""
    commission_split: Optional[float] = None
    pay_period: Optional[str] = None
    participate_global_leaderboard: bool = True
    convoso_webhook_secret: Optional[str] = None
    admin_first_name: Optional[str] = ""
    admin_last_name: Optional[str] = ""
    admin_password: Optional[str] = None


class AgencyUpdate(BaseModel):
    name: Optional[str] = None
    admin_email: Optional[str] = None
    contact_phone: Optional[str] = None
    plan_type: Optional[str] = None
    is_active: Optional[bool] = None
    commission_split: Optional[float] = None
    pay_period: Optional[str] = None
    participate_global_leaderboard: Optional[bool] = None
    convoso_webhook_secret: Optional[str] = None


class AgencySettingsUpdate(BaseModel):
    name: Optional[str] = None
    contact_phone: Optional[str] = None
    commission_split: Optional[float] = None
    pay_period: Optional[str] = None


class LeaderboardSettingsIn(BaseModel):
    enabled: Optional[bool] = None


class AgencyOut(BaseModel):
    id: str
    name: str
    code: Optional[str] = None
    webhook_slug: Optional[str] = None
    admin_email: Optional[str] = None
    contact_phone: Optional[str] = ""
    plan_type: Optional[str] = None
    max_users: Optional[int] = None
    monthly_cost: Optional[float] = None
    is_active: bool = True
    subscription_status: Optional[str] = None
    subscription_tier: Optional[str] = None
    commission_split: Optional[float] = None
    pay_period: Optional[str] = None
    participate_global_leaderboard: bool = True
    webhook_url: Optional[str] = None
    user_count: Optional[int] = None
    created_at: Optional[str] = None


class UserIn(BaseModel):
    email: str
    first_name: str
    last_name: str = ""
    role: str = "agent"
    agency_id: Optional[str] = None
    agent_code: Optional[str] = None
    license_number: Optional[str] = None
    commission_rate: Optional[float] = None
    phone: Optional[str] = ""
    password: Optional[str] = None


class UserUpdate(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    agent_code: Optional[str] = None
    license_number: Optional[str] = None
    commission_rate: Optional[float] = None
    phone: Optional[str] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None


class UserCreateOut(UserOut):
    temporary_password: Optional[str] = None


class CustomerIn(BaseModel):
    first_name: str
    last_name: str = ""
    member_id: Optional[str] = None
    email: Optional[str] = ""
    phone: Optional[str] = ""
    date_of_birth: Optional[str] = None
    state: Optional[str] = ""
    product_type: Optional[str] = None
    agent_id: Optional[str] = None


class BulkUploadOut(BaseModel):
    summary: Dict[str, int]
    results: Dict[str, List[Dict[str, Any]]]


class ProductIn(BaseModel):
    name: str
    carrier: Optional[str] = ""
    product_type: Optional[str] = "health"
    premium: Optional[float] = None
    commission_rate: Optional[float] = None
    deductible: Optional[float] = None
    max_out_of_pocket: Optional[float] = None
    copay_primary: Optional[float] = None
    copay_specialist: Optional[float] = None
    prescription_coverage: bool = False
    dental_included: bool = False
    vision_included: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    carrier: Optional[str] = None
    product_type: Optional[str] = None
    premium: Optional[float] = None
    commission_rate: Optional[float] = None
    deductible: Optional[float] = None
    max_out_of_pocket: Optional[float] = None
    copay_primary: Optional[float] = None
    copay_specialist: Optional[float] = None
    prescription_coverage: Optional[bool] = None
    dental_included: Optional[bool] = None
    vision_included: Optional[bool] = None
    is_active: Optional[bool] = None


class ProductOut(ProductIn):
    id: str
    agency_id: Optional[str] = None
    is_active: bool = True


class QuoteCustomerIn(BaseModel):
    name: Optional[str] = None
    age: Optional[int] = None
    state: Optional[str] = None
    nonsmoker: bool = False


class QuoteCoverageIn(BaseModel):
    bundle_discount: bool = False


class QuotePriceIn(BaseModel):
    product_ids: List[str] = []
    customer: QuoteCustomerIn = QuoteCustomerIn()
    coverage: QuoteCoverageIn = QuoteCoverageIn()


class QuoteIn(BaseModel):
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    premium: Optional[float] = None
    coverage_amount: Optional[float] = None
    deductible: Optional[float] = None
    status: str = "pending"
    notes: Optional[str] = ""
    valid_until: Optional[str] = None
    agent_id: Optional[str] = None
    convert_to_sale: bool = False


class QuoteUpdate(BaseModel):
    premium: Optional[float] = None
    coverage_amount: Optional[float] = None
    deductible: Optional[float] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    valid_until: Optional[str] = None
    convert_to_sale: Optional[bool] = None


class QuoteOut(BaseModel):
    id: str
    quote_number: Optional[str] = None
    agency_id: Optional[str] = None
    agent_id: Optional[str] = None
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    premium: Optional[float] = None
    coverage_amount: Optional[float] = None
    deductible: Optional[float] = None
    status: Optional[str] = None
    notes: Optional[str] = ""
    valid_until: Optional[str] = None
    sale_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SaleIn(BaseModel):
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    premium: Optional[float] = None
    monthly_recurring: Optional[float] = None
    policy_number: Optional[str] = None
    sale_date: Optional[str] = None
    effective_date: Optional[str] = None
    agent_id: Optional[str] = None
    quote_id: Optional[str] = None
    status: str = "active"


class SaleUpdate(BaseModel):
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    premium: Optional[float] = None
    monthly_recurring: Optional[float] = None
    policy_number: Optional[str] = None
    sale_date: Optional[str] = None
    effective_date: Optional[str] = None
    status: Optional[str] = None


class SaleOut(BaseModel):
    id: str
    agency_id: Optional[str] = None
    agent_id: Optional[str] = None
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    quote_id: Optional[str] = None
    policy_number: Optional[str] = None
    premium: Optional[float] = None
    monthly_recurring: Optional[float] = None
    commission_rate: Optional[float] = None
    commission_amount: Optional[float] = None
    commission_status: Optional[str] = None
    commission_paid_date: Optional[str] = None
    status: Optional[str] = None
    sale_date: Optional[str] = None
    effective_date: Optional[str] = None
    created_at: Optional[str] = None


class CommissionAdjustmentIn(BaseModel):
    agent_id: Optional[str] = None
    amount: Optional[float] = None
    adjustment_type: Optional[str] = None
    reason: Optional[str] = ""
    sale_id: Optional[str] = None


class CommissionStatusIn(BaseModel):
    commission_status: str


class CommissionSettingsIn(BaseModel):
    structures: Dict[str, Dict[str, Any]]
    active_structure: Optional[str] = None


class CommissionCalculateIn(BaseModel):
    amount: float
    product_type: Optional[str] = None
    agent_sales: float = 0.0
    structure_key: Optional[str] = None


class CommissionOverrideIn(BaseModel):
    agent_id: Optional[str] = None
    product_id: Optional[str] = None
    override_type: Optional[str] = None
    override_value: Optional[float] = None
    effective_date: Optional[str] = None
    expiry_date: Optional[str] = None
    reason: Optional[str] = ""
    notes: Optional[str] = ""
    is_active: bool = True


class CommissionOverrideUpdate(BaseModel):
    product_id: Optional[str] = None
    override_type: Optional[str] = None
    override_value: Optional[float] = None
    effective_date: Optional[str] = None
    expiry_date: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class CancellationIn(BaseModel):
    email_content: Optional[str] = ""


class LicenseIn(BaseModel):
    agent_id: str
    state: str
    license_type: str
    license_number: str
    status: str = "Active"
    issue_date: Optional[str] = None
    expiration_date: Optional[str] = None


class LicenseUpdate(BaseModel):
    state: Optional[str] = None
    license_type: Optional[str] = None
    license_number: Optional[str] = None
    status: Optional[str] = None
    issue_date: Optional[str] = None
    expiration_date: Optional[str] = None


class LicenseOut(LicenseIn):
    id: str
    agency_id: Optional[str] = None
    agent_name: Optional[str] = None
    created_at: Optional[str] = None


class GoalIn(BaseModel):
    title: str
    metric_type: str = "sales"
    target_value: float
    target_date: str
    start_date: Optional[str] = None
    agent_id: Optional[str] = None


class GoalUpdate(BaseModel):
    title: Optional[str] = None
    metric_type: Optional[str] = None
    target_value: Optional[float] = None
    target_date: Optional[str] = None
    start_date: Optional[str] = None
    status: Optional[str] = None


class MemberSearchIn(BaseModel):
    member_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    product_type: Optional[str] = None


class ServiceCaseIn(BaseModel):
    customer_id: Optional[str] = None
    subject: str
    description: Optional[str] = ""
    priority: str = "medium"


class ServiceCaseUpdate(BaseModel):
    subject: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    assigned_to: Optional[str] = None


class SupportTicketIn(BaseModel):
    subject: str
    description: Optional[str] = ""
    category: Optional[str] = "general"
    priority: str = "medium"


class SupportTicketUpdate(BaseModel):
    status: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None


# ----------------------
# Utility functions
# ----------------------

def fetch_row(conn: sqlite3.Connection, table: str, row_id: str, label: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


def fetch_user(conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
    return fetch_row(conn, "User", user_id, "User")


def fetch_agency(conn: sqlite3.Connection, agency_id: str) -> sqlite3.Row:
    return fetch_row(conn, "Agency", agency_id, "Agency")


def to_user_out(row: sqlite3.Row) -> UserOut:
    data = dict(row)
    data["phone"] = data.get("phone") or ""
    data["first_name"] = data.get("first_name") or ""
    data["last_name"] = data.get("last_name") or ""
    data["role"] = normalize_role(data.get("role"))
    return UserOut(**data)


def display_name(row: Any) -> str:
    if not row:
        return ""
    name = f"{row['first_name'] or ''} {row['last_name'] or ''}".strip()
    return name or (row["email"] or "")


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    ).hex()


def create_password_credentials(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    return salt, hash_password(password, salt)


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not password or not salt or not expected_hash:
        return False
    actual_hash = hash_password(password, salt)
    return secrets.compare_digest(actual_hash, expected_hash)


def generate_temporary_password() -> str:
    # Always satisfies the reset complexity rule.
    alphabet = string.ascii_letters + string.digits
    body = "".join(secrets.choice(alphabet) for _ in range(10))
    return f"Tmp{body}7!"


def normalize_user_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or not EMAIL_RE.match(value):
        raise HTTPException(status_code=400, detail="A valid email is required")
    return value


def normalize_role(role: Optional[str]) -> str:
    return re.sub(r"[\s-]+", "_", (role or "").strip().lower())


def normalize_user_role(role: Optional[str]) -> str:
    value = normalize_role(role)
    if value not in ALLOWED_USER_ROLES:
        allowed = ", ".join(sorted(ALLOWED_USER_ROLES))
        raise HTTPException(status_code=400, detail=f"Role must be one of: {allowed}")
    return value


def require_valid_password(password: Optional[str], *, required: bool) -> Optional[str]:
    value = (password or "").strip()
    if not value:
        if required:
            raise HTTPException(status_code=400, detail="Password is required")
        return None
    if len(value) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
        )
    return value


def require_complex_password(password: Optional[str]) -> str:
    value = require_valid_password(password, required=True)
    if not PASSWORD_COMPLEXITY_RE.match(value):
        raise HTTPException(
            status_code=400,
            detail=(
                "Password must contain an uppercase letter, a lowercase letter, "
                "a number and a special character (@$!%*?&)"
            ),
        )
    return value


def data_scope_for_role(role: Optional[str]) -> str:
    return ROLE_DATA_SCOPE.get(normalize_role(role), "NONE")


def can_access_portal(role: Optional[str], portal: str) -> bool:
    normalized = "/" + (portal or "").strip().strip("/").split("/")[0]
    return normalized in PORTAL_ACCESS.get(normalize_role(role), set())


def portal_for_role(role: Optional[str]) -> str:
    return ROLE_HOME_PORTAL.get(normalize_role(role), "/agent/")


def role_at_least(role: Optional[str], minimum: str) -> bool:
    return ROLE_RANK.get(normalize_role(role), 0) >= ROLE_RANK[minimum]


def build_scope_filter(
    user: Any,
    agency_field: str = "agency_id",
    agent_field: str = "agent_id",
) -> tuple[str, List[Any]]:
    scope = data_scope_for_role(user["role"])
    if scope == "ALL_AGENCIES":
        return "1 = 1", []
    agency_id = user["agency_id"]
    if not agency_id:
        return "1 = 0", []
    if scope in {"AGENCY_ONLY", "AGENCY_CUSTOMERS_ONLY"}:
        return f"{agency_field} = ?", [agency_id]
    if scope == "SELF_ONLY":
        return f"({agency_field} = ? AND {agent_field} = ?)", [agency_id, user["id"]]
    return "1 = 0", []


def row_in_scope(user: Any, row: Any, agent_field: str = "agent_id") -> bool:
    scope = data_scope_for_role(user["role"])
    if scope == "ALL_AGENCIES":
        return True
    if not user["agency_id"] or row["agency_id"] != user["agency_id"]:
        return False
    if scope == "SELF_ONLY":
        return row[agent_field] == user["id"]
    return scope in {"AGENCY_ONLY", "AGENCY_CUSTOMERS_ONLY"}


def fetch_scoped(
    conn: sqlite3.Connection, user: Any, table: str, row_id: str, label: str
) -> sqlite3.Row:
    row = fetch_row(conn, table, row_id, label)
    if not row_in_scope(user, row):
        # Out-of-scope rows look missing to the caller.
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return row


def resolve_agency_for_write(user: Any, requested_agency_id: Optional[str]) -> str:
    if normalize_role(user["role"]) == "super_admin":
        agency_id = requested_agency_id or user["agency_id"]
        if not agency_id:
            raise HTTPException(status_code=400, detail="agency_id is required")
        return agency_id
    if not user["agency_id"]:
        raise HTTPException(status_code=403, detail="User is not assigned to an agency")
    return user["agency_id"]


def scoped_agency_id(user: Any) -> Optional[str]:
    """Agency to filter reads by. None (every agency) is only returned for super admins."""
    if normalize_role(user["role"]) == "super_admin":
        return None
    return resolve_agency_for_write(user, None)


def issue_token(user: Any) -> str:
    now = utc_now()
    payload = {
        "sub": user["id"],
        "email": user["email"],
        "role": normalize_role(user["role"]),
        "agency_id": user["agency_id"],
        "iat": now,
        "exp": now + timedelta(hours=JWT_EXPIRY_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_request_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get(AUTH_COOKIE_NAME) or None


def require_user(conn: sqlite3.Connection, request: Request) -> sqlite3.Row:
    token = get_request_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    claims = decode_token(token)
    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE id = ?", (claims.get("sub"),))
    user = cur.fetchone()
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not user["is_active"]:
        raise HTTPException(status_code=403, detail="Account is inactive")
    if user["agency_id"]:
        cur.execute("SELECT is_active FROM Agency WHERE id = ?", (user["agency_id"],))
        agency = cur.fetchone()
        if agency and not agency["is_active"]:
            raise HTTPException(status_code=403, detail="Agency is inactive")
    return user


def require_role(
    conn: sqlite3.Connection, request: Request, allowed_roles: set[str]
) -> sqlite3.Row:
    user = require_user(conn, request)
    role = normalize_role(user["role"])
    if role != "super_admin" and role not in allowed_roles:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user


def set_auth_cookies(response: Response, token: str, role: str) -> None:
    max_age = JWT_EXPIRY_HOURS * 3600
    response.set_cookie(
        AUTH_COOKIE_NAME,
        token,
        httponly=True,
        samesite=AUTH_COOKIE_SAMESITE,
        secure=AUTH_COOKIE_SECURE,
        max_age=max_age,
        domain=AUTH_COOKIE_DOMAIN,
        path="/",
    )
    response.set_cookie(
        ROLE_COOKIE_NAME,
        role,
        httponly=False,
        samesite=AUTH_COOKIE_SAMESITE,
        secure=AUTH_COOKIE_SECURE,
        max_age=max_age,
        domain=AUTH_COOKIE_DOMAIN,
        path="/",
    )


def recent_login_failures(conn: sqlite3.Connection, email: str) -> int:
    since = (utc_now() - timedelta(minutes=LOGIN_WINDOW_MINUTES)).isoformat()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT COUNT(*) AS cnt FROM LoginAttempt
        WHERE email = ? AND succeeded = 0 AND created_at > ?
        """,
        (email, since),
    )
    return cur.fetchone()["cnt"]


def record_login_attempt(conn: sqlite3.Connection, email: str, succeeded: bool) -> None:
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO LoginAttempt (id, email, succeeded, created_at) VALUES (?, ?, ?, ?)",
        (str(uuid.uuid4()), email, 1 if succeeded else 0, now_iso()),
    )
    conn.commit()


def resend_configured() -> bool:
    return bool(os.getenv("RESEND_API_KEY", "").strip() and os.getenv("RESEND_FROM_EMAIL", "").strip())


def send_resend_email(to_email: str, subject: str, html: str) -> bool:
    api_key = os.getenv("RESEND_API_KEY", "").strip()
    from_email = os.getenv("RESEND_FROM_EMAIL", "").strip()
    if not api_key or not from_email:
        return False
    payload = {
        "from": from_email,
        "to": [to_email],
        "subject": subject,
        "html": html,
    }
    req = urlrequest.Request(
        "https://api.resend.com/emails",
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urlrequest.urlopen(req, timeout=10) as resp:
            if resp.status >= 300:
                raise HTTPException(status_code=502, detail="Failed to send email.")
    except urlerror.HTTPError as exc:
        message = "Failed to send email."
        try:
            body = json.loads(exc.read().decode("utf-8") or "{}")
            message = body.get("message") or message
        except (ValueError, OSError):
            pass
        raise HTTPException(status_code=502, detail=message)
    except (urlerror.URLError, OSError):
        raise HTTPException(status_code=502, detail="Failed to send email.")
    return True


def record_audit(
    conn: sqlite3.Connection,
    user: Any,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    severity: str = "info",
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AuditLog (
            id, user_id, user_email, agency_id, action, resource_type, resource_id,
            details, severity, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            user["id"] if user else None,
            user["email"] if user else None,
            user["agency_id"] if user else None,
            action,
            resource_type,
            resource_id,
            json.dumps(details or {}),
            severity,
            now_iso(),
        ),
    )


def paginate(limit: Optional[int], offset: Optional[int], default_limit: int = 50) -> tuple[int, int]:
    safe_limit = default_limit if limit is None else max(1, min(int(limit), 500))
    safe_offset = 0 if offset is None else max(0, int(offset))
    return safe_limit, safe_offset


def money(value: Any) -> float:
    return round(float(value or 0), 2)


# ----------------------
# Dates and pay periods
# ----------------------

def week_window_ending(end_date: Optional[date] = None) -> tuple[date, date]:
    """Return the Sunday through Saturday pay week that contains ``end_date``."""
    end = end_date or today_utc()
    start = end - timedelta(days=(end.weekday() + 1) % 7)
    return start, start + timedelta(days=6)


def week_range(timeframe: Optional[str], today: Optional[date] = None) -> tuple[date, date]:
    start, end = week_window_ending(today or today_utc())
    if (timeframe or "").strip().lower() == "lastweek":
        return start - timedelta(days=7), end - timedelta(days=7)
    return start, end


def month_range(today: Optional[date] = None) -> tuple[date, date]:
    current = today or today_utc()
    first = current.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return first, next_first - timedelta(days=1)


def previous_month_range(today: Optional[date] = None) -> tuple[date, date]:
    first, _ = month_range(today)
    return month_range(first - timedelta(days=1))


def next_month_first(today: Optional[date] = None) -> date:
    _, last = month_range(today)
    return last + timedelta(days=1)


PERIOD_DAYS = {"week": 7, "month": 30, "quarter": 90, "year": 365}


def period_range(timeframe: Optional[str], today: Optional[date] = None) -> tuple[date, date, date, date]:
    """Current and previous windows of equal length ending today."""
    days = PERIOD_DAYS.get((timeframe or "month").strip().lower(), 30)
    end = today or today_utc()
    start = end - timedelta(days=days - 1)
    prev_end = start - timedelta(days=1)
    prev_start = prev_end - timedelta(days=days - 1)
    return start, end, prev_start, prev_end


def growth_rate(current: float, previous: float) -> float:
    if not previous:
        return 100.0 if current else 0.0
    return round((current - previous) / previous * 100, 1)


# ----------------------
# Quote pricing
# ----------------------

def age_multiplier(age: int) -> float:
    if age < 25:
        return 1.2
    if age < 35:
        return 0.95
    if age < 45:
        return 1.0
    if age < 55:
        return 1.1
    return 1.3


def product_benefits(product: Any) -> List[str]:
    benefits = []
    if product["prescription_coverage"]:
        benefits.append("Prescription drug coverage included")
    if product["dental_included"]:
        benefits.append("Dental coverage included")
    if product["vision_included"]:
        benefits.append("Vision coverage included")
    if (product["deductible"] or 1000) <= 1000:
        benefits.append("Low deductible plan")
    if product["product_type"] == "health" and (product["copay_primary"] or 25) <= 25:
        benefits.append("Affordable primary care visits")
    return benefits


def product_limitations(product: Any) -> List[str]:
    limitations = []
    if product["product_type"] == "health" or "HMO" in (product["name"] or ""):
        limitations.append("Network restrictions may apply")
        limitations.append("Pre-authorization required for specialist visits")
    if (product["deductible"] or 0) > 2000:
        limitations.append("High deductible must be met before coverage begins")
    if not product["dental_included"]:
        limitations.append("Dental coverage not included")
    if not product["vision_included"]:
        limitations.append("Vision coverage not included")
    return limitations


def price_quote(
    product: Any,
    age: int,
    state: str,
    *,
    nonsmoker: bool = False,
    bundle_discount: bool = False,
) -> Dict[str, Any]:
    base_premium = float(product["premium"] or DEFAULT_BASE_PREMIUM)
    state_multiplier = STATE_MULTIPLIERS.get((state or "").strip().upper(), 1.0)
    adjusted = base_premium * age_multiplier(age) * state_multiplier

    discounts: List[Dict[str, Any]] = []
    if nonsmoker:
        discounts.append({"type": "Non-smoker discount", "amount": money(adjusted * NONSMOKER_DISCOUNT)})
    if bundle_discount:
        discounts.append({"type": "Multi-product bundle", "amount": money(adjusted * BUNDLE_DISCOUNT)})
    total_discount = adjusted * (NONSMOKER_DISCOUNT if nonsmoker else 0) + adjusted * (
        BUNDLE_DISCOUNT if bundle_discount else 0
    )

    monthly = max(adjusted - total_discount, base_premium * MINIMUM_PREMIUM_FACTOR)
    annual = monthly * 12
    rate = float(product["commission_rate"] or DEFAULT_QUOTE_COMMISSION_RATE)
    return {
        "product_id": product["id"],
        "product_name": product["name"],
        "carrier": product["carrier"],
        "monthly_premium": money(monthly),
        "annual_premium": money(annual),
        "commission_rate": rate,
        "commission_amount": money(annual * rate / 100),
        "deductible": product["deductible"],
        "max_out_of_pocket": product["max_out_of_pocket"],
        "copay_primary": product["copay_primary"],
        "copay_specialist": product["copay_specialist"],
        "discounts": discounts,
        "benefits": product_benefits(product),
        "limitations": product_limitations(product),
    }


def generate_quote_number() -> str:
    stamp = str(int(utc_now().timestamp() * 1000))[-8:]
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"QT-{stamp}-{suffix}"


def generate_policy_number() -> str:
    return f"POL-{int(utc_now().timestamp() * 1000)}{secrets.randbelow(100):02d}"


# ----------------------
# Commission rules
# ----------------------

def is_valid_rate(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return 0 <= value <= 100


def validate_commission_structures(structures: Any) -> Optional[str]:
    if not isinstance(structures, dict) or not structures:
        return "Commission structures are required"
    for key, structure in structures.items():
        if not isinstance(structure, dict) or not structure.get("type"):
            return f"Structure '{key}' is missing type"
        kind = structure["type"]
        if kind == "percentage":
            if not is_valid_rate(structure.get("rate")):
                return f"Structure '{key}' has invalid rate (must be 0-100)"
        elif kind == "tiered":
            tiers = structure.get("tiers")
            if not isinstance(tiers, list) or not tiers:
                return f"Structure '{key}' must have at least one tier"
            for tier in tiers:
                if not isinstance(tier, dict) or not is_valid_rate(tier.get("rate")):
                    return f"Structure '{key}' has invalid tier rate (must be 0-100)"
                minimum = tier.get("min")
                if isinstance(minimum, bool) or not isinstance(minimum, (int, float)) or minimum < 0:
                    return f"Structure '{key}' has invalid tier minimum"
        elif kind == "product":
            rates = structure.get("rates")
            if not isinstance(rates, dict) or not rates:
                return f"Structure '{key}' must have rates object"
            for product_type, rate in rates.items():
                if not is_valid_rate(rate):
                    return f"Structure '{key}' has invalid rate for product '{product_type}' (must be 0-100)"
        elif kind == "hybrid":
            if not is_valid_rate(structure.get("base_rate")):
                return f"Structure '{key}' has invalid base_rate (must be 0-100)"
            if not is_valid_rate(structure.get("bonus_rate")):
                return f"Structure '{key}' has invalid bonus_rate (must be 0-100)"
            threshold = structure.get("bonus_threshold")
            if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
                return f"Structure '{key}' has invalid bonus_threshold"
        else:
            return f"Structure '{key}' has invalid type '{kind}'"
    return None


def calculate_commission(
    amount: float, product_type: Optional[str], agent_sales: float, structure: Dict[str, Any]
) -> float:
    kind = structure.get("type")
    if kind == "percentage":
        return money(amount * structure["rate"] / 100)
    if kind == "tiered":
        for tier in structure["tiers"]:
            upper = tier.get("max")
            if agent_sales >= tier["min"] and (upper is None or agent_sales <= upper):
                return money(amount * tier["rate"] / 100)
        return 0.0
    if kind == "product":
        rates = structure["rates"]
        rate = rates.get(product_type or "") or rates.get("default") or 0
        return money(amount * rate / 100)
    if kind == "hybrid":
        if agent_sales >= structure["bonus_threshold"]:
            return money(amount * structure["bonus_rate"] / 100)
        return money(amount * structure["base_rate"] / 100)
    return 0.0


def apply_override(base_rate: float, override: Any) -> float:
    kind = override["override_type"]
    value = float(override["override_value"] or 0)
    if kind == "fixed_rate":
        rate = value
    elif kind == "percentage_increase":
        rate = base_rate + value
    elif kind == "percentage_decrease":
        rate = base_rate - value
    else:
        rate = base_rate
    return max(0.0, min(100.0, rate))


def find_active_override(
    conn: sqlite3.Connection,
    agent_id: Optional[str],
    product_id: Optional[str],
    on_date: str,
) -> Optional[sqlite3.Row]:
    if not agent_id:
        return None
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM CommissionOverride
        WHERE agent_id = ? AND is_active = 1
          AND (product_id IS NULL OR product_id = '' OR product_id = ?)
          AND (effective_date IS NULL OR effective_date <= ?)
          AND (expiry_date IS NULL OR expiry_date >= ?)
        ORDER BY CASE WHEN product_id = ? THEN 0 ELSE 1 END, created_at DESC
        LIMIT 1
        """,
        (agent_id, product_id, on_date, on_date, product_id),
    )
    return cur.fetchone()


def resolve_commission_rate(
    conn: sqlite3.Connection,
    agent_id: Optional[str],
    product: Optional[Any],
    on_date: str,
) -> float:
    base_rate = DEFAULT_SALE_COMMISSION_RATE
    if product is not None and product["commission_rate"] is not None:
        base_rate = float(product["commission_rate"])
    override = find_active_override(conn, agent_id, product["id"] if product is not None else None, on_date)
    if override:
        return apply_override(base_rate, override)
    return base_rate


def load_commission_settings(conn: sqlite3.Connection, agency_id: str) -> Dict[str, Any]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM CommissionSettings WHERE agency_id = ?", (agency_id,))
    row = cur.fetchone()
    if not row:
        return {
            "structures": json.loads(json.dumps(DEFAULT_COMMISSION_STRUCTURES)),
            "active_structure": DEFAULT_ACTIVE_STRUCTURE,
            "is_default": True,
            "updated_at": None,
        }
    return {
        "structures": json.loads(row["structures"] or "{}"),
        "active_structure": row["active_structure"],
        "is_default": False,
        "updated_at": row["updated_at"],
    }


# ----------------------
# Cancellations and chargebacks
# ----------------------

MONTH_NAMES = (
    "january|february|march|april|may|june|july|august|september|october|november|december"
    "|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec"
)
NAME_PATTERNS = [
    re.compile(r"(?i:customer|name|client|insured)\s*:\s*([A-Za-z][A-Za-z .'-]*)"),
    re.compile(r"(?i:dear)\s+([A-Za-z][A-Za-z .'-]*)"),
    re.compile(r"(?i:mr|mrs|ms|dr)[.\s]+([A-Za-z][A-Za-z .'-]*)"),
]
POLICY_PATTERNS = [
    re.compile(r"(?i:policy|pol)(?:\s*(?i:number|no\.?|#))?\s*[:#]?\s*([A-Za-z0-9][A-Za-z0-9-]*)"),
    re.compile(r"(?i:member|membership)\s+(?i:id|number)\s*[:#]?\s*([A-Za-z0-9][A-Za-z0-9-]*)"),
]
NUMERIC_DATE_RE = re.compile(r"(?<!\d)(\d{1,2})[/-](\d{1,2})[/-](\d{4}|\d{2})(?!\d)")
ISO_DATE_RE = re.compile(r"(?<!\d)(\d{4})[/-](\d{1,2})[/-](\d{1,2})(?!\d)")
NAMED_DATE_RE = re.compile(rf"\b({MONTH_NAMES})\.?\s+(\d{{1,2}}),?\s+(\d{{4}})\b", re.IGNORECASE)
PREMIUM_PATTERNS = [
    re.compile(r"(?i:premium|amount|monthly|cost|price)\s*:?\s*\$?\s*(\d[\d,]*(?:\.\d+)?)"),
    re.compile(r"\$\s*(\d[\d,]*(?:\.\d+)?)"),
]


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_dates(text: str) -> List[date]:
    found: List[date] = []
    for match in ISO_DATE_RE.finditer(text):
        value = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if value:
            found.append(value)
    for match in NUMERIC_DATE_RE.finditer(text):
        year = int(match.group(3))
        if year < 100:
            year += 2000
        value = _safe_date(year, int(match.group(1)), int(match.group(2)))
        if value:
            found.append(value)
    for match in NAMED_DATE_RE.finditer(text):
        month_key = match.group(1).lower()[:3]
        month = [m[:3] for m in MONTH_NAMES.split("|")[:12]].index(month_key) + 1
        value = _safe_date(int(match.group(3)), month, int(match.group(2)))
        if value:
            found.append(value)
    return sorted(found)


def parse_cancellation_email(text: str) -> Dict[str, Any]:
    customer_name = "Unknown Customer"
    for pattern in NAME_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip(" .'-"):
            customer_name = match.group(1).strip(" .'-")
            break

    policy_number = "Unknown Policy"
    for pattern in POLICY_PATTERNS:
        # Skip words like "Policy cancelled"; real identifiers carry a digit.
        candidate = next(
            (m.group(1) for m in pattern.finditer(text) if any(ch.isdigit() for ch in m.group(1))),
            None,
        )
        if candidate:
            policy_number = candidate
            break

    dates = extract_dates(text)

    premium = None
    for pattern in PREMIUM_PATTERNS:
        for match in pattern.finditer(text):
            try:
                amount = float(match.group(1).replace(",", ""))
            except ValueError:
                continue
            if 50 < amount < 1000:
                premium = amount
                break
        if premium is not None:
            break
    if premium is None:
        premium = DEFAULT_CANCELLATION_PREMIUM

    return {
        "customer_name": customer_name,
        "policy_number": policy_number,
        "effective_date": dates[0].isoformat() if dates else None,
        "cancellation_date": dates[-1].isoformat() if dates else None,
        "premium": premium,
        "original_commission": money(premium * CHARGEBACK_COMMISSION_RATE),
    }


def classify_cancellation(
    parsed: Dict[str, Any],
    sale: Optional[Any] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    current = today or today_utc()
    cancellation_date = parse_date(parsed.get("cancellation_date")) or current
    effective_date = parse_date(parsed.get("effective_date"))
    if parsed.get("effective_date") == parsed.get("cancellation_date") and sale is not None:
        effective_date = parse_date(sale["effective_date"]) or parse_date(sale["sale_date"]) or effective_date
    effective_date = effective_date or cancellation_date
    days_in_force = max(0, (cancellation_date - effective_date).days)

    original_commission = parsed["original_commission"]
    if sale is not None and sale["commission_amount"]:
        original_commission = money(sale["commission_amount"])

    if sale is not None:
        paid_out = (sale["commission_status"] or "").lower() == "paid"
    else:
        paid_out = days_in_force > CHARGEBACK_DAYS_THRESHOLD

    if paid_out:
        next_week_start = week_window_ending(current)[0] + timedelta(days=7)
        return {
            "type": "CHARGEBACK",
            "is_chargeback": True,
            "amount": -original_commission,
            "original_commission": original_commission,
            "days_in_force": days_in_force,
            "effective_date": effective_date.isoformat(),
            "cancellation_date": cancellation_date.isoformat(),
            "pay_period_applied": next_week_start.isoformat(),
            "reason": (
                f"Member cancelled after agent was paid out ({days_in_force} days in force). "
                "Full commission will be deducted from next check."
            ),
        }
    return {
        "type": "CANCELLATION",
        "is_chargeback": False,
        "amount": 0.0,
        "original_commission": original_commission,
        "days_in_force": days_in_force,
        "effective_date": effective_date.isoformat(),
        "cancellation_date": cancellation_date.isoformat(),
        "pay_period_applied": None,
        "reason": (
            f"Member cancelled before agent payout ({days_in_force} days in force). "
            "Agent never received commission for this sale."
        ),
    }


# ----------------------
# License compliance
# ----------------------

def license_summary(licenses: List[Any], today: Optional[date] = None) -> Dict[str, Any]:
    current = today or today_utc()
    soon = current + timedelta(days=LICENSE_EXPIRING_DAYS)
    total = len(licenses)
    active = expired = expiring_soon = compliant = 0
    agents = set()
    states = set()
    for lic in licenses:
        expiration = parse_date(lic["expiration_date"])
        is_expired = bool(expiration and expiration < current)
        if lic["status"] == "Active":
            active += 1
            if not is_expired:
                compliant += 1
        if is_expired:
            expired += 1
        elif expiration and expiration <= soon:
            expiring_soon += 1
        if lic["agent_id"]:
            agents.add(lic["agent_id"])
        if lic["state"]:
            states.add(lic["state"])
    compliance_rate = round(compliant / total * 100, 1) if total else 100.0
    return {
        "total": total,
        "active": active,
        "expired": expired,
        "expiring_soon": expiring_soon,
        "compliance_rate": compliance_rate,
        "agents_with_licenses": len(agents),
        "state_count": len(states),
    }


def license_dashboard(
    licenses: List[Any],
    agent_names: Dict[str, str],
    today: Optional[date] = None,
) -> Dict[str, Any]:
    current = today or today_utc()
    summary = license_summary(licenses, current)

    upcoming = []
    horizon = current + timedelta(days=LICENSE_DASHBOARD_DAYS)
    for lic in licenses:
        expiration = parse_date(lic["expiration_date"])
        if expiration and current <= expiration <= horizon:
            upcoming.append(
                {
                    "id": lic["id"],
                    "agent_id": lic["agent_id"],
                    "agent_name": agent_names.get(lic["agent_id"], ""),
                    "state": lic["state"],
                    "license_type": lic["license_type"],
                    "license_number": lic["license_number"],
                    "expiration_date": expiration.isoformat(),
                    "days_until_expiry": (expiration - current).days,
                }
            )
    upcoming.sort(key=lambda item: item["days_until_expiry"])

    alerts = []
    if summary["expired"]:
        alerts.append(
            {
                "type": "expired",
                "severity": "high",
                "message": f"{summary['expired']} license(s) have expired",
                "action_url": "/admin/licenses?status=expired",
            }
        )
    if summary["expiring_soon"]:
        alerts.append(
            {
                "type": "expiring",
                "severity": "medium",
                "message": f"{summary['expiring_soon']} license(s) expire within {LICENSE_EXPIRING_DAYS} days",
                "action_url": "/admin/licenses?expiring=30",
            }
        )
    if summary["compliance_rate"] < 90:
        alerts.append(
            {
                "type": "compliance",
                "severity": "high" if summary["compliance_rate"] < 70 else "medium",
                "message": f"Compliance rate is {summary['compliance_rate']}%",
                "action_url": "/admin/licenses",
            }
        )

    per_agent: Dict[str, Dict[str, Any]] = {}
    soon = current + timedelta(days=LICENSE_EXPIRING_DAYS)
    for lic in licenses:
        entry = per_agent.setdefault(
            lic["agent_id"],
            {
                "agent_id": lic["agent_id"],
                "agent_name": agent_names.get(lic["agent_id"], ""),
                "total": 0,
                "expired": 0,
                "expiring": 0,
            },
        )
        entry["total"] += 1
        expiration = parse_date(lic["expiration_date"])
        if expiration and expiration < current:
            entry["expired"] += 1
        elif expiration and expiration <= soon:
            entry["expiring"] += 1
    issues = []
    for entry in per_agent.values():
        if not entry["expired"] and not entry["expiring"]:
            continue
        entry["compliance_score"] = round((entry["total"] - entry["expired"]) / entry["total"] * 100, 1)
        issues.append(entry)
    issues.sort(key=lambda item: item["compliance_score"])

    return {
        "summary": summary,
        "expiring_licenses": upcoming[:10],
        "alerts": alerts,
        "compliance_issues": issues[:5],
    }


# ----------------------
# Convoso webhook helpers
# ----------------------

CONVOSO_EVENT_ALIASES = {"call_completed": "call_disposition", "lead_updated": "lead_update"}
CONVOSO_LEAD_FIELDS = {
    "first_name": "first_name",
    "last_name": "last_name",
    "email": "email",
    "phone_number": "phone",
    "address1": "address",
    "city": "city",
    "state": "state",
    "status": "status",
    "disposition": "last_disposition",
    "campaign_id": "campaign_id",
    "list_id": "list_id",
}


def detect_convoso_event(payload: Dict[str, Any]) -> str:
    explicit = (payload.get("event_type") or "").strip()
    if explicit:
        return CONVOSO_EVENT_ALIASES.get(explicit, explicit)
    if any(payload.get(key) for key in ("call_id", "disposition", "duration", "call_duration")):
        return "call_disposition"
    if any(payload.get(key) for key in ("lead_id", "id", "leadId")):
        if any(payload.get(key) for key in ("first_name", "last_name", "phone_number", "email")):
            return "lead_update"
        if any(payload.get(key) for key in ("status", "list_id", "campaign_id")):
            return "lead_update"
    if payload.get("agent_id") or payload.get("user_id"):
        if any(payload.get(key) for key in ("agent_status", "status_label", "queue_name")):
            return "agent_status"
    if payload.get("campaign_id") and (payload.get("campaign_status") or payload.get("campaign_name")):
        return "campaign_status"
    if any(payload.get(key) for key in ("phone_number", "email", "first_name", "last_name")):
        return "lead_update"
    return "unknown"


def lead_temperature(score: int) -> str:
    if score > 80:
        return "hot"
    if score > 60:
        return "warm"
    return "cold"


def lead_priority(score: int) -> str:
    if score > 80:
        return "high"
    if score > 60:
        return "medium"
    return "low"


def convoso_lead_id(payload: Dict[str, Any]) -> Optional[str]:
    value = payload.get("lead_id") or payload.get("id") or payload.get("leadId")
    return str(value) if value not in (None, "") else None


def normalize_convoso_lead(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map Convoso lead fields onto ConvosoLead columns, keeping only what was sent."""
    lead: Dict[str, Any] = {}
    for source, column in CONVOSO_LEAD_FIELDS.items():
        value = payload.get(source)
        if value not in (None, ""):
            lead[column] = str(value)
    zip_code = payload.get("postal_code") or payload.get("zip_code")
    if zip_code:
        lead["zip_code"] = str(zip_code)
    raw_score = payload.get("lead_score") or payload.get("score")
    if raw_score not in (None, ""):
        try:
            score = int(float(raw_score))
        except (TypeError, ValueError):
            score = 50
        lead["lead_score"] = score
        lead["priority"] = lead_priority(score)
        lead["temperature"] = lead_temperature(score)
    return lead


def verify_convoso_signature(secret: str, body: bytes, header: Optional[str]) -> bool:
    if not header:
        return False
    provided = header.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


# ----------------------
# Agency helpers
# ----------------------

def generate_agency_code(name: str) -> str:
    base = re.sub(r"[^A-Z0-9]", "", (name or "").upper())[:10]
    return f"{base}{secrets.randbelow(100):02d}"


def slugify_webhook(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-") or "agency"


def unique_webhook_slug(conn: sqlite3.Connection, name: str, exclude_id: Optional[str] = None) -> str:
    base = slugify_webhook(name)
    cur = conn.cursor()
    candidate = base
    suffix = 2
    while True:
        cur.execute(
            "SELECT id FROM Agency WHERE webhook_slug = ? AND id IS NOT ?",
            (candidate, exclude_id),
        )
        if not cur.fetchone():
            return candidate
        candidate = f"{base}-{suffix}"
        suffix += 1


def webhook_url_for(slug: Optional[str]) -> Optional[str]:
    if not slug:
        return None
    return f"{PUBLIC_API_BASE_URL}/api/convoso-webhook/{slug}"


def to_agency_out(row: sqlite3.Row, user_count: Optional[int] = None) -> AgencyOut:
    data = dict(row)
    data["webhook_url"] = webhook_url_for(data.get("webhook_slug"))
    data["contact_phone"] = data.get("contact_phone") or ""
    data["user_count"] = user_count
    return AgencyOut(**data)


def count_agency_users(conn: sqlite3.Connection, agency_id: str) -> int:
    cur = conn.cursor()
    cur.execute(
        "SELECT COUNT(*) AS cnt FROM User WHERE agency_id = ? AND is_active = 1",
        (agency_id,),
    )
    return cur.fetchone()["cnt"]


def deactivate_agency_users(conn: sqlite3.Connection, agency_id: str) -> int:
    cur = conn.cursor()
    now = now_iso()
    cur.execute(
        """
        UPDATE User SET is_active = 0, updated_at = ?
        WHERE agency_id = ? AND is_active = 1
        """,
        (now, agency_id),
    )
    return cur.rowcount


def reactivate_agency_users(conn: sqlite3.Connection, agency_id: str) -> int:
    # Users deactivated one by one by an admin keep their deactivated_at stamp.
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE User SET is_active = 1, updated_at = ?
        WHERE agency_id = ? AND is_active = 0 AND deactivated_at IS NULL
        """,
        (now_iso(), agency_id),
    )
    return cur.rowcount


# ----------------------
# Spreadsheets and exports
# ----------------------

def load_upload_rows(path: Path) -> tuple[List[str], List[Dict[str, Any]]]:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        with path.open("r", encoding="utf-8-sig", errors="ignore") as f:
            sample = f.read(2048)
            f.seek(0)
            delimiter = ","
            try:
                delimiter = csv.Sniffer().sniff(sample, delimiters=",;\t").delimiter
            except csv.Error:
                delimiter = ","
            reader = csv.DictReader(f, delimiter=delimiter)
            if not reader.fieldnames:
                raise HTTPException(status_code=400, detail="Upload has no header row")
            headers = [name.strip().lower() for name in reader.fieldnames]
            rows = [
                {headers[idx]: (value or "") for idx, value in enumerate(row.values()) if idx < len(headers)}
                for row in reader
            ]
            return headers, rows
    if suffix == ".xlsx":
        wb = openpyxl.load_workbook(path, data_only=True)
        ws = wb.active
        rows_iter = list(ws.iter_rows(values_only=True))
        if not rows_iter:
            raise HTTPException(status_code=400, detail="Upload has no rows")
        headers = [str(cell).strip().lower() if cell is not None else "" for cell in rows_iter[0]]
        if not any(headers):
            raise HTTPException(status_code=400, detail="Upload has no header row")
        rows = []
        for row in rows_iter[1:]:
            row_dict: Dict[str, Any] = {}
            for idx, header in enumerate(headers):
                if header == "":
                    continue
                value = row[idx] if idx < len(row) else ""
                row_dict[header] = "" if value is None else str(value)
            rows.append(row_dict)
        return headers, rows
    if suffix == ".xls":
        book = xlrd.open_workbook(path)
        sheet = book.sheet_by_index(0)
        if sheet.nrows == 0:
            raise HTTPException(status_code=400, detail="Upload has no rows")
        headers = [str(cell.value).strip().lower() for cell in sheet.row(0)]
        if not any(headers):
            raise HTTPException(status_code=400, detail="Upload has no header row")
        rows = []
        for r in range(1, sheet.nrows):
            row_dict = {}
            for c, header in enumerate(headers):
                if header == "":
                    continue
                value = sheet.cell_value(r, c)
                row_dict[header] = "" if value is None else str(value)
            rows.append(row_dict)
        return headers, rows
    raise HTTPException(
        status_code=400,
        detail="Unsupported file type. Please upload a .csv or .xls/.xlsx file.",
    )


def rows_to_csv(headers: List[str], rows: List[List[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue()


def rows_to_xlsx(title: str, headers: List[str], rows: List[List[Any]]) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = title[:31]
    ws.append(headers)
    for row in rows:
        ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def attachment_response(content: Any, media_type: str, filename: str) -> StreamingResponse:
    payload = content.encode("utf-8") if isinstance(content, str) else content
    return StreamingResponse(
        io.BytesIO(payload),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ----------------------
# Payroll aggregation
# ----------------------

def build_payroll_report(
    sales: List[Any],
    agents: Dict[str, Any],
    start: date,
    end: date,
) -> Dict[str, Any]:
    grouped: Dict[str, Dict[str, Any]] = {}
    for sale in sales:
        agent_id = sale["agent_id"]
        agent = agents.get(agent_id)
        premium = float(sale["premium"] or 0)
        commission = sale["commission_amount"]
        if commission is None:
            rate = DEFAULT_AGENT_PAYROLL_RATE
            if agent is not None and agent["commission_rate"]:
                rate = float(agent["commission_rate"])
            commission = premium * rate / 100
        entry = grouped.setdefault(
            agent_id,
            {
                "agent_id": agent_id,
                "agent_name": display_name(agent) if agent is not None else "Unknown Agent",
                "email": agent["email"] if agent is not None else "",
                "license_number": (agent["license_number"] if agent is not None else "") or "",
                "total_sales": 0,
                "total_premium": 0.0,
                "total_commission": 0.0,
                "sales_detail": [],
            },
        )
        entry["total_sales"] += 1
        entry["total_premium"] += premium
        entry["total_commission"] += float(commission)
        entry["sales_detail"].append(
            {
                "sale_id": sale["id"],
                "policy_number": sale["policy_number"],
                "sale_date": sale["sale_date"],
                "premium": money(premium),
                "commission": money(commission),
                "commission_status": sale["commission_status"],
            }
        )

    payroll = []
    for entry in grouped.values():
        total_premium = entry["total_premium"]
        entry["total_premium"] = money(total_premium)
        entry["total_commission"] = money(entry["total_commission"])
        entry["average_sale"] = money(total_premium / entry["total_sales"]) if entry["total_sales"] else 0.0
        entry["commission_percentage"] = (
            round(entry["total_commission"] / total_premium * 100, 2) if total_premium else 0.0
        )
        payroll.append(entry)
    payroll.sort(key=lambda item: item["total_commission"], reverse=True)

    return {
        "payroll": payroll,
        "summary": {
            "total_agents": len(payroll),
            "total_sales": sum(item["total_sales"] for item in payroll),
            "total_premium": money(sum(item["total_premium"] for item in payroll)),
            "total_commissions": money(sum(item["total_commission"] for item in payroll)),
            "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
            "generated_at": now_iso(),
        },
    }


def build_weekly_export(
    sales: List[Any],
    chargebacks: Dict[str, float],
    agent_names: Dict[str, str],
) -> List[Dict[str, Any]]:
    totals: Dict[str, Dict[str, Any]] = {}
    for sale in sales:
        basis = sale["monthly_recurring"] or sale["premium"]
        entry = totals.setdefault(
            sale["agent_id"],
            {"agentId": sale["agent_id"], "totalSales": 0, "totalCommission": 0.0},
        )
        entry["totalSales"] += 1
        entry["totalCommission"] += float(basis or 0) * WEEKLY_EXPORT_COMMISSION_RATE
    for agent_id in chargebacks:
        totals.setdefault(agent_id, {"agentId": agent_id, "totalSales": 0, "totalCommission": 0.0})

    rows = []
    for agent_id, entry in totals.items():
        charged = money(chargebacks.get(agent_id, 0.0))
        rows.append(
            {
                "agentId": agent_id,
                "agentName": agent_names.get(agent_id, ""),
                "totalSales": entry["totalSales"],
                "totalCommission": money(entry["totalCommission"]),
                "chargebacks": charged,
                "netCommission": money(entry["totalCommission"] + charged),
            }
        )
    rows.sort(key=lambda item: item["agentId"] or "")
    return rows


def aggregate_agent_totals(sales: List[Any]) -> Dict[str, Dict[str, Any]]:
    totals: Dict[str, Dict[str, Any]] = {}
    for sale in sales:
        entry = totals.setdefault(
            sale["agent_id"],
            {"agent_id": sale["agent_id"], "premium": 0.0, "commission": 0.0, "policies": 0},
        )
        entry["premium"] += float(sale["premium"] or 0)
        entry["commission"] += float(sale["commission_amount"] or 0)
        entry["policies"] += 1
    for entry in totals.values():
        entry["premium"] = money(entry["premium"])
        entry["commission"] = money(entry["commission"])
    return totals


def fetch_sales_between(
    conn: sqlite3.Connection,
    start: date,
    end: date,
    agency_id: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> List[sqlite3.Row]:
    clauses = ["sale_date >= ?", "sale_date <= ?", "COALESCE(status, 'active') != 'cancelled'"]
    params: List[Any] = [start.isoformat(), end.isoformat()]
    if agency_id:
        clauses.append("agency_id = ?")
        params.append(agency_id)
    if agent_id:
        clauses.append("agent_id = ?")
        params.append(agent_id)
    cur = conn.cursor()
    cur.execute(f"SELECT * FROM Sale WHERE {' AND '.join(clauses)} ORDER BY sale_date DESC", params)
    return cur.fetchall()


def agents_by_id(conn: sqlite3.Connection, agency_id: Optional[str]) -> Dict[str, sqlite3.Row]:
    cur = conn.cursor()
    if agency_id:
        cur.execute("SELECT * FROM User WHERE agency_id = ?", (agency_id,))
    else:
        cur.execute("SELECT * FROM User")
    return {row["id"]: row for row in cur.fetchall()}


# ----------------------
# API routes
# ----------------------

@app.on_event("startup")
async def startup_event() -> None:
    init_db()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/auth/login", response_model=AuthLoginOut)
def login_with_password(payload: AuthLoginIn, response: Response) -> AuthLoginOut:
    email = (payload.email or "").strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    with get_db() as conn:
        if recent_login_failures(conn, email) >= LOGIN_MAX_FAILURES:
            logger.warning("Login throttled for %s", email)
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_WINDOW_MINUTES} minutes.",
            )
        cur = conn.cursor()
        cur.execute("SELECT * FROM User WHERE email = ?", (email,))
        user = cur.fetchone()
        if not user or not verify_password(
            payload.password,
            user["password_salt"],
            user["password_hash"],
        ):
            record_login_attempt(conn, email, False)
            logger.warning("Failed login for %s", email)
            raise HTTPException(status_code=401, detail="Invalid email or password.")
        if not user["is_active"]:
            raise HTTPException(status_code=403, detail="Account is inactive")
        if user["agency_id"]:
            cur.execute("SELECT is_active FROM Agency WHERE id = ?", (user["agency_id"],))
            agency = cur.fetchone()
            if agency and not agency["is_active"]:
                raise HTTPException(status_code=403, detail="Agency is inactive")

        role = normalize_role(user["role"])
        if role not in ALLOWED_USER_ROLES:
            raise HTTPException(status_code=403, detail="Account role is not permitted to sign in")
        record_login_attempt(conn, email, True)
        cur.execute("UPDATE User SET last_login_at = ? WHERE id = ?", (now_iso(), user["id"]))
        conn.commit()
        cur.execute("SELECT * FROM User WHERE id = ?", (user["id"],))
        user = cur.fetchone()

    token = issue_token(user)
    set_auth_cookies(response, token, role)
    logger.info("User %s signed in as %s", email, role)
    return AuthLoginOut(token=token, user=to_user_out(user), redirect=portal_for_role(role))


@app.get("/api/auth/me")
def get_auth_me(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_user(conn, request)
        agency = None
        if user["agency_id"]:
            cur = conn.cursor()
            cur.execute("SELECT * FROM Agency WHERE id = ?", (user["agency_id"],))
            row = cur.fetchone()
            if row:
                agency = {"id": row["id"], "name": row["name"], "plan_type": row["plan_type"]}
    role = normalize_role(user["role"])
    return {
        "user": to_user_out(user),
        "agency": agency,
        "redirect": portal_for_role(role),
        "permissions": {
            "data_scope": data_scope_for_role(role),
            "portals": sorted(PORTAL_ACCESS.get(role, set())),
        },
    }


@app.post("/api/auth/logout")
def logout(response: Response) -> Dict[str, str]:
    response.delete_cookie(AUTH_COOKIE_NAME, path="/", domain=AUTH_COOKIE_DOMAIN)
    response.delete_cookie(ROLE_COOKIE_NAME, path="/", domain=AUTH_COOKIE_DOMAIN)
    return {"status": "ok"}


@app.post("/api/auth/change-password")
def change_password(payload: ChangePasswordIn, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_user(conn, request)
        if not verify_password(payload.current_password, user["password_salt"], user["password_hash"]):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
        new_password = require_valid_password(payload.new_password, required=True)
        if new_password == payload.current_password:
            raise HTTPException(status_code=400, detail="New password must be different")
        salt, password_hash = create_password_credentials(new_password)
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE User
            SET password_salt = ?, password_hash = ?, must_change_password = 0, updated_at = ?
            WHERE id = ?
            """,
            (salt, password_hash, now_iso(), user["id"]),
        )
        record_audit(conn, user, "password_changed", "user", user["id"])
        conn.commit()
    return {"status": "ok"}


@app.post("/api/auth/request-password-reset")
def request_password_reset(payload: PasswordResetRequestIn) -> Dict[str, str]:
    email = (payload.email or "").strip().lower()
    result = {"status": "ok"}
    if not email:
        return result
    # Only a server without email delivery hands the link back, and it does so for every address.
    dev_mode = ALLOW_DEV_RESET_LINK_FALLBACK and not resend_configured()
    token = secrets.token_urlsafe(32)
    link = f"{FRONTEND_BASE_URL}/reset-password?token={token}"
    if dev_mode:
        result["dev_link"] = link
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM User WHERE email = ? AND is_active = 1", (email,))
        user = cur.fetchone()
        if not user:
            return result
        expires_at = (utc_now() + timedelta(minutes=PASSWORD_RESET_MINUTES)).isoformat()
        cur.execute(
            """
            INSERT INTO PasswordReset (id, user_id, token_hash, expires_at, used_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (str(uuid.uuid4()), user["id"], sha256_hex(token), expires_at, None, now_iso()),
        )
        conn.commit()

    if dev_mode:
        return result
    try:
        send_resend_email(
            email,
            "Reset your SyncedUp password",
            f"<p>Use this link to reset your password:</p><p><a href=\"{link}\">{link}</a></p>"
            f"<p>This link expires in {PASSWORD_RESET_MINUTES} minutes.</p>",
        )
    except HTTPException as exc:
        logger.warning("Password reset email to %s failed: %s", email, exc.detail)
    return result


@app.post("/api/auth/reset-password")
def reset_password(payload: PasswordResetIn) -> Dict[str, str]:
    if not payload.token:
        raise HTTPException(status_code=400, detail="Token is required")
    new_password = require_complex_password(payload.new_password)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM PasswordReset
            WHERE token_hash = ? AND used_at IS NULL AND expires_at > ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (sha256_hex(payload.token), now_iso()),
        )
        reset = cur.fetchone()
        if not reset:
            raise HTTPException(status_code=400, detail="Reset link is invalid or expired.")
        user = fetch_user(conn, reset["user_id"])
        salt, password_hash = create_password_credentials(new_password)
        now = now_iso()
        cur.execute(
            """
            UPDATE User
            SET password_salt = ?, password_hash = ?, must_change_password = 0, updated_at = ?
            WHERE id = ?
            """,
            (salt, password_hash, now, user["id"]),
        )
        cur.execute("UPDATE PasswordReset SET used_at = ? WHERE id = ?", (now, reset["id"]))
        record_audit(conn, user, "password_reset", "user", user["id"])
        conn.commit()
    return {"status": "ok"}


@app.get("/api/portal-guard", response_model=PortalGuardOut)
def portal_guard(request: Request, portal: str) -> PortalGuardOut:
    with get_db() as conn:
        user = require_user(conn, request)
    role = normalize_role(user["role"])
    allowed = can_access_portal(role, portal)
    return PortalGuardOut(
        allowed=allowed,
        role=role,
        redirect=None if allowed else portal_for_role(role),
    )


@app.get("/api/super-admin/agencies", response_model=List[AgencyOut])
def list_agencies(request: Request, include_inactive: bool = True) -> List[AgencyOut]:
    with get_db() as conn:
        require_role(conn, request, {"super_admin"})
        cur = conn.cursor()
        query = "SELECT * FROM Agency"
        if not include_inactive:
            query += " WHERE is_active = 1"
        cur.execute(query + " ORDER BY name ASC")
        rows = cur.fetchall()
        return [to_agency_out(row, count_agency_users(conn, row["id"])) for row in rows]


def insert_agency(
    conn: sqlite3.Connection,
    *,
    name: str,
    admin_email: str,
    plan_type: str,
    contact_phone: str = "",
    subscription_status: str = "trialing",
    commission_split: Optional[float] = None,
    pay_period: Optional[str] = None,
    participate_global_leaderboard: bool = True,
    convoso_webhook_secret: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
) -> str:
    agency_id = str(uuid.uuid4())
    now = now_iso()
    limits = PLAN_LIMITS[plan_type]
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Agency (
            id, name, code, webhook_slug, admin_email, contact_phone, plan_type, max_users,
            monthly_cost, is_active, subscription_status, subscription_tier, stripe_customer_id,
            stripe_subscription_id, commission_split, pay_period, participate_global_leaderboard,
            convoso_webhook_secret, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            agency_id,
            name,
            generate_agency_code(name),
            unique_webhook_slug(conn, name),
            admin_email,
            contact_phone,
            plan_type,
            limits["max_users"],
            limits["monthly_cost"],
            1,
            subscription_status,
            plan_type,
            stripe_customer_id,
            stripe_subscription_id,
            DEFAULT_COMMISSION_SPLIT if commission_split is None else commission_split,
            pay_period or DEFAULT_PAY_PERIOD,
            1 if participate_global_leaderboard else 0,
            convoso_webhook_secret,
            now,
            now,
        ),
    )
    return agency_id


def seed_agency_admin(
    conn: sqlite3.Connection,
    agency_id: str,
    email: str,
    first_name: str = "",
    last_name: str = "",
    password: Optional[str] = None,
) -> Optional[str]:
    """Create the agency's first admin unless the email already has an account."""
    cur = conn.cursor()
    cur.execute("SELECT id FROM User WHERE email = ?", (email,))
    if cur.fetchone():
        return None
    return insert_user(
        conn,
        email=email,
        first_name=first_name or "Agency",
        last_name=last_name or "Admin",
        role="admin",
        agency_id=agency_id,
        password=password or generate_temporary_password(),
        must_change_password=not password,
    )


@app.post("/api/super-admin/agencies", response_model=AgencyOut)
def create_agency(payload: AgencyIn, request: Request) -> AgencyOut:
    name = (payload.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Agency name is required")
    admin_email = normalize_user_email(payload.admin_email)
    plan_type = (payload.plan_type or "").strip().lower()
    if plan_type not in PLAN_LIMITS:
        allowed = ", ".join(sorted(PLAN_LIMITS))
        raise HTTPException(status_code=400, detail=f"Plan type must be one of: {allowed}")
    admin_password = require_valid_password(payload.admin_password, required=False)

    with get_db() as conn:
        actor = require_role(conn, request, {"super_admin"})
        cur = conn.cursor()
        cur.execute("SELECT id FROM Agency WHERE LOWER(name) = ?", (name.lower(),))
        if cur.fetchone():
            raise HTTPException(status_code=409, detail="An agency with this name already exists")

        agency_id = insert_agency(
            conn,
            name=name,
            admin_email=admin_email,
            plan_type=plan_type,
            contact_phone=(payload.contact_phone or "").strip(),
            commission_split=payload.commission_split,
            pay_period=payload.pay_period,
            participate_global_leaderboard=payload.participate_global_leaderboard,
            convoso_webhook_secret=payload.convoso_webhook_secret,
        )
        seed_agency_admin(
            conn,
            agency_id,
            admin_email,
            (payload.admin_first_name or "").strip(),
            (payload.admin_last_name or "").strip(),
            admin_password,
        )
        record_audit(conn, actor, "agency_created", "agency", agency_id, {"name": name, "plan_type": plan_type})
        conn.commit()
        logger.info("Created agency %s (%s)", name, plan_type)
        row = fetch_agency(conn, agency_id)
        return to_agency_out(row, count_agency_users(conn, agency_id))


@app.patch("/api/super-admin/agencies/{agency_id}", response_model=AgencyOut)
def update_agency(agency_id: str, payload: AgencyUpdate, request: Request) -> AgencyOut:
    with get_db() as conn:
        actor = require_role(conn, request, {"super_admin"})
        agency = fetch_agency(conn, agency_id)
        updates = payload.dict(exclude_unset=True)
        data = dict(agency)
        cur = conn.cursor()
        for key, value in updates.items():
            if isinstance(value, str):
                value = value.strip()
            if key == "name":
                if not value:
                    raise HTTPException(status_code=400, detail="Agency name is required")
                cur.execute(
                    "SELECT id FROM Agency WHERE LOWER(name) = ? AND id != ?",
                    (value.lower(), agency_id),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="An agency with this name already exists")
            if key == "admin_email" and value:
                value = normalize_user_email(value)
            if key == "plan_type":
                value = (value or "").lower()
                if value not in PLAN_LIMITS:
                    allowed = ", ".join(sorted(PLAN_LIMITS))
                    raise HTTPException(status_code=400, detail=f"Plan type must be one of: {allowed}")
                data["max_users"] = PLAN_LIMITS[value]["max_users"]
                data["monthly_cost"] = PLAN_LIMITS[value]["monthly_cost"]
            if isinstance(value, bool):
                value = 1 if value else 0
            data[key] = value
        data["updated_at"] = now_iso()
        cur.execute(
            """
            UPDATE Agency
            SET name = ?, admin_email = ?, contact_phone = ?, plan_type = ?, max_users = ?, monthly_cost = ?,
                is_active = ?, commission_split = ?, pay_period = ?, participate_global_leaderboard = ?,
                convoso_webhook_secret = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                data["name"],
                data["admin_email"],
                data["contact_phone"],
                data["plan_type"],
                data["max_users"],
                data["monthly_cost"],
                data["is_active"],
                data["commission_split"],
                data["pay_period"],
                data["participate_global_leaderboard"],
                data["convoso_webhook_secret"],
                data["updated_at"],
                agency_id,
            ),
        )
        if "is_active" in updates:
            if updates["is_active"]:
                reactivate_agency_users(conn, agency_id)
            else:
                deactivate_agency_users(conn, agency_id)
        record_audit(conn, actor, "agency_updated", "agency", agency_id, {"fields": sorted(updates)})
        conn.commit()
        row = fetch_agency(conn, agency_id)
        return to_agency_out(row, count_agency_users(conn, agency_id))


@app.delete("/api/super-admin/agencies/{agency_id}")
def deactivate_agency(agency_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        actor = require_role(conn, request, {"super_admin"})
        fetch_agency(conn, agency_id)
        cur = conn.cursor()
        cur.execute(
            "UPDATE Agency SET is_active = 0, updated_at = ? WHERE id = ?",
            (now_iso(), agency_id),
        )
        users = deactivate_agency_users(conn, agency_id)
        record_audit(
            conn, actor, "agency_deactivated", "agency", agency_id, {"users_deactivated": users}, "warning"
        )
        conn.commit()
    logger.info("Deactivated agency %s and %s users", agency_id, users)
    return {"status": "deactivated", "users_deactivated": users}


@app.get("/api/admin/agency", response_model=AgencyOut)
def get_own_agency(request: Request) -> AgencyOut:
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        if not user["agency_id"]:
            raise HTTPException(status_code=404, detail="Agency not found")
        row = fetch_agency(conn, user["agency_id"])
        return to_agency_out(row, count_agency_users(conn, row["id"]))


@app.put("/api/admin/agency", response_model=AgencyOut)
def update_own_agency(payload: AgencySettingsUpdate, request: Request) -> AgencyOut:
    """Agency admins edit their own settings; plan, billing and activation stay with super admins."""
    updates = payload.dict(exclude_unset=True)
    if "name" in updates:
        updates["name"] = (updates["name"] or "").strip()
        if not updates["name"]:
            raise HTTPException(status_code=400, detail="Agency name is required")
    if "contact_phone" in updates:
        updates["contact_phone"] = (updates["contact_phone"] or "").strip()
    if "commission_split" in updates and not is_valid_rate(updates["commission_split"]):
        raise HTTPException(status_code=400, detail="commission_split must be between 0 and 100")
    if "pay_period" in updates:
        updates["pay_period"] = (updates["pay_period"] or "").strip().lower()
        if updates["pay_period"] not in PAY_PERIODS:
            allowed = ", ".join(sorted(PAY_PERIODS))
            raise HTTPException(status_code=400, detail=f"pay_period must be one of: {allowed}")

    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        agency_id = resolve_agency_for_write(user, None)
        fetch_agency(conn, agency_id)
        cur = conn.cursor()
        if "name" in updates:
            cur.execute(
                "SELECT id FROM Agency WHERE LOWER(name) = ? AND id != ?",
                (updates["name"].lower(), agency_id),
            )
            if cur.fetchone():
                raise HTTPException(status_code=409, detail="An agency with this name already exists")
        if updates:
            set_agency_billing(conn, agency_id, **updates)
            record_audit(conn, user, "agency_settings_updated", "agency", agency_id, {"fields": sorted(updates)})
            conn.commit()
        row = fetch_agency(conn, agency_id)
        return to_agency_out(row, count_agency_users(conn, agency_id))


@app.get("/api/admin/leaderboard-settings")
def get_leaderboard_settings(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        agency = fetch_agency(conn, resolve_agency_for_write(user, None))
    return {"agency_id": agency["id"], "enabled": bool(agency["participate_global_leaderboard"])}


def set_leaderboard_participation(request: Request, enabled: bool) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        agency_id = resolve_agency_for_write(user, None)
        fetch_agency(conn, agency_id)
        set_agency_billing(conn, agency_id, participate_global_leaderboard=1 if enabled else 0)
        record_audit(conn, user, "leaderboard_settings_updated", "agency", agency_id, {"enabled": enabled})
        conn.commit()
    return {"agency_id": agency_id, "enabled": enabled}


@app.put("/api/admin/leaderboard-settings")
def update_leaderboard_settings(payload: LeaderboardSettingsIn, request: Request) -> Dict[str, Any]:
    if payload.enabled is None:
        raise HTTPException(status_code=400, detail="enabled must be a boolean")
    return set_leaderboard_participation(request, payload.enabled)


@app.delete("/api/admin/leaderboard-settings")
def disable_leaderboard_settings(request: Request) -> Dict[str, Any]:
    return set_leaderboard_participation(request, False)


def ensure_agency_capacity(conn: sqlite3.Connection, agency_id: str, adding: int = 1) -> None:
    agency = fetch_agency(conn, agency_id)
    if agency["max_users"] and count_agency_users(conn, agency_id) + adding > agency["max_users"]:
        raise HTTPException(
            status_code=400,
            detail=f"Agency has reached its user limit of {agency['max_users']}",
        )


def insert_user(
    conn: sqlite3.Connection,
    *,
    email: str,
    first_name: str,
    last_name: str,
    role: str,
    agency_id: Optional[str],
    password: str,
    must_change_password: bool,
    agent_code: Optional[str] = None,
    license_number: Optional[str] = None,
    commission_rate: Optional[float] = None,
    phone: Optional[str] = "",
) -> str:
    user_id = str(uuid.uuid4())
    now = now_iso()
    salt, password_hash = create_password_credentials(password)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO User (
            id, email, first_name, last_name, role, agency_id, agent_code, license_number,
            commission_rate, phone, is_active, must_change_password, password_salt, password_hash,
            created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            email,
            first_name,
            last_name,
            role,
            agency_id,
            agent_code or None,
            license_number or None,
            commission_rate,
            phone or "",
            1,
            1 if must_change_password else 0,
            salt,
            password_hash,
            now,
            now,
        ),
    )
    return user_id


def fetch_agency_user(conn: sqlite3.Connection, actor: Any, user_id: str) -> sqlite3.Row:
    target = fetch_user(conn, user_id)
    if normalize_role(actor["role"]) != "super_admin" and target["agency_id"] != actor["agency_id"]:
        raise HTTPException(status_code=404, detail="User not found")
    return target


@app.get("/api/admin/users", response_model=List[UserOut])
def list_users(
    request: Request,
    role: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
) -> List[UserOut]:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin", "manager"})
        scope_clause, params = build_scope_filter(actor)
        clauses = [scope_clause]
        if role:
            clauses.append("role = ?")
            params.append(normalize_role(role))
        if search:
            clauses.append("(LOWER(email) LIKE ? OR LOWER(first_name) LIKE ? OR LOWER(last_name) LIKE ?)")
            term = f"%{search.strip().lower()}%"
            params.extend([term, term, term])
        if not include_inactive:
            clauses.append("is_active = 1")
        cur = conn.cursor()
        cur.execute(
            f"SELECT * FROM User WHERE {' AND '.join(clauses)} ORDER BY last_name ASC, first_name ASC",
            params,
        )
        rows = cur.fetchall()
    return [to_user_out(row) for row in rows]


@app.post("/api/admin/users", response_model=UserCreateOut)
def create_user(payload: UserIn, request: Request) -> UserCreateOut:
    email = normalize_user_email(payload.email)
    role = normalize_user_role(payload.role)
    raw_password = require_valid_password(payload.password, required=False)
    if not (payload.first_name or "").strip():
        raise HTTPException(status_code=400, detail="First name is required")
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        actor_role = normalize_role(actor["role"])
        if role == "super_admin":
            if actor_role != "super_admin":
                raise HTTPException(status_code=403, detail="Only super admins can create super admin accounts")
            agency_id = None
        else:
            agency_id = resolve_agency_for_write(actor, payload.agency_id)
            ensure_agency_capacity(conn, agency_id)
        temporary = None if raw_password else generate_temporary_password()
        try:
            user_id = insert_user(
                conn,
                email=email,
                first_name=payload.first_name.strip(),
                last_name=(payload.last_name or "").strip(),
                role=role,
                agency_id=agency_id,
                password=raw_password or temporary,
                must_change_password=temporary is not None,
                agent_code=(payload.agent_code or "").strip(),
                license_number=(payload.license_number or "").strip(),
                commission_rate=payload.commission_rate,
                phone=(payload.phone or "").strip(),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="Email already exists")
        record_audit(conn, actor, "user_created", "user", user_id, {"email": email, "role": role})
        conn.commit()
        row = fetch_user(conn, user_id)
    out = to_user_out(row)
    return UserCreateOut(**out.dict(), temporary_password=temporary)


@app.patch("/api/admin/users/{user_id}", response_model=UserOut)
def update_user(user_id: str, payload: UserUpdate, request: Request) -> UserOut:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        target = fetch_agency_user(conn, actor, user_id)
        updates = payload.dict(exclude_unset=True)
        data = dict(target)
        for key, value in updates.items():
            if isinstance(value, str):
                value = value.strip()
            if key == "email":
                value = normalize_user_email(value)
            if key == "role":
                value = normalize_user_role(value)
                if value == "super_admin" and normalize_role(actor["role"]) != "super_admin":
                    raise HTTPException(status_code=403, detail="Only super admins can grant super admin")
            if key == "is_active":
                if value is False and user_id == actor["id"]:
                    raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
                if value and not target["is_active"] and target["agency_id"]:
                    ensure_agency_capacity(conn, target["agency_id"])
                data["deactivated_at"] = None if value else now_iso()
                value = 1 if value else 0
            data[key] = value
        if "password" in updates:
            password_value = require_valid_password(updates.get("password"), required=True)
            data["password_salt"], data["password_hash"] = create_password_credentials(password_value)
        data["updated_at"] = now_iso()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE User
                SET email = ?, first_name = ?, last_name = ?, role = ?, agent_code = ?, license_number = ?,
                    commission_rate = ?, phone = ?, is_active = ?, deactivated_at = ?,
                    password_salt = ?, password_hash = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    data["email"],
                    data["first_name"],
                    data["last_name"],
                    data["role"],
                    data["agent_code"],
                    data["license_number"],
                    data["commission_rate"],
                    data.get("phone", ""),
                    data["is_active"],
                    data["deactivated_at"],
                    data["password_salt"],
                    data["password_hash"],
                    data["updated_at"],
                    user_id,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="Email already exists")
        changed = sorted(key for key in updates if key != "password")
        record_audit(conn, actor, "user_updated", "user", user_id, {"fields": changed})
        conn.commit()
        row = fetch_user(conn, user_id)
    return to_user_out(row)


@app.delete("/api/admin/users/{user_id}")
def delete_user(user_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        if user_id == actor["id"]:
            raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
        fetch_agency_user(conn, actor, user_id)
        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            "UPDATE User SET is_active = 0, deactivated_at = ?, updated_at = ? WHERE id = ?",
            (now, now, user_id),
        )
        record_audit(conn, actor, "user_deactivated", "user", user_id, severity="warning")
        conn.commit()
    return {"status": "deactivated"}


@app.post("/api/admin/users/{user_id}/reset-password")
def admin_reset_user_password(user_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        target = fetch_agency_user(conn, actor, user_id)
        temporary = generate_temporary_password()
        salt, password_hash = create_password_credentials(temporary)
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE User
            SET password_salt = ?, password_hash = ?, must_change_password = 1, updated_at = ?
            WHERE id = ?
            """,
            (salt, password_hash, now_iso(), user_id),
        )
        record_audit(conn, actor, "password_reset", "user", user_id, {"email": target["email"]}, "warning")
        conn.commit()
    return {"status": "ok", "temporary_password": temporary}


@app.post("/api/admin/users/bulk-upload", response_model=BulkUploadOut)
def bulk_upload_users(
    request: Request,
    file: UploadFile = File(...),
    agency_id: Optional[str] = None,
) -> BulkUploadOut:
    filename = Path(file.filename or "upload.csv").name
    upload_dir = UPLOADS_DIR / "bulk"
    upload_dir.mkdir(parents=True, exist_ok=True)
    stored_path = upload_dir / f"{uuid.uuid4()}-{filename}"

    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        agency_id = resolve_agency_for_write(actor, agency_id)
        agency = fetch_agency(conn, agency_id)
        with stored_path.open("wb") as f:
            shutil.copyfileobj(file.file, f)
        try:
            _, rows = load_upload_rows(stored_path)
        finally:
            stored_path.unlink(missing_ok=True)

        cur = conn.cursor()
        created: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        seen_emails: set[str] = set()
        seen_codes: set[str] = set()
        active_count = count_agency_users(conn, agency_id)
        for index, row in enumerate(rows, start=2):
            email = (row.get("email") or "").strip().lower()
            name = (row.get("name") or row.get("full_name") or "").strip()
            agent_code = (row.get("agent_code") or "").strip()
            if not email or not name:
                errors.append({"row": index, "email": email, "error": "Email and name are required"})
                continue
            if not EMAIL_RE.match(email):
                errors.append({"row": index, "email": email, "error": "Invalid email address"})
                continue
            role = normalize_role(row.get("role") or "agent")
            if role not in ALLOWED_USER_ROLES or role == "super_admin":
                errors.append({"row": index, "email": email, "error": f"Invalid role '{row.get('role')}'"})
                continue
            cur.execute("SELECT id FROM User WHERE email = ?", (email,))
            if email in seen_emails or cur.fetchone():
                errors.append({"row": index, "email": email, "error": "Email already exists"})
                continue
            if agent_code:
                cur.execute(
                    "SELECT id FROM User WHERE agent_code = ? AND agency_id = ?",
                    (agent_code, agency_id),
                )
                if agent_code in seen_codes or cur.fetchone():
                    errors.append({"row": index, "email": email, "error": "Agent code already exists"})
                    continue
            if agency["max_users"] and active_count >= agency["max_users"]:
                errors.append({"row": index, "email": email, "error": "Agency user limit reached"})
                continue
            first_name, _, last_name = name.partition(" ")
            temporary = generate_temporary_password()
            user_id = insert_user(
                conn,
                email=email,
                first_name=first_name,
                last_name=last_name.strip(),
                role=role,
                agency_id=agency_id,
                password=temporary,
                must_change_password=True,
                agent_code=agent_code,
                license_number=(row.get("license_number") or "").strip(),
                phone=(row.get("phone") or "").strip(),
            )
            seen_emails.add(email)
            if agent_code:
                seen_codes.add(agent_code)
            active_count += 1
            created.append(
                {
                    "row": index,
                    "id": user_id,
                    "email": email,
                    "name": name,
                    "role": role,
                    "temporary_password": temporary,
                }
            )
        record_audit(
            conn,
            actor,
            "bulk_upload",
            "user",
            None,
            {"filename": filename, "created": len(created), "failed": len(errors)},
        )
        conn.commit()
    logger.info("Bulk upload %s: %s created, %s failed", filename, len(created), len(errors))
    return BulkUploadOut(
        summary={"total": len(rows), "created": len(created), "failed": len(errors)},
        results={"created": created, "errors": errors},
    )


@app.get("/api/super-admin/users", response_model=List[UserOut])
def list_all_users(
    request: Request,
    agency_id: Optional[str] = None,
    role: Optional[str] = None,
    search: Optional[str] = None,
) -> List[UserOut]:
    with get_db() as conn:
        require_role(conn, request, {"super_admin"})
        clauses = ["1 = 1"]
        params: List[Any] = []
        if agency_id:
            clauses.append("agency_id = ?")
            params.append(agency_id)
        if role:
            clauses.append("role = ?")
            params.append(normalize_role(role))
        if search:
            term = f"%{search.strip().lower()}%"
            clauses.append("(LOWER(email) LIKE ? OR LOWER(first_name) LIKE ? OR LOWER(last_name) LIKE ?)")
            params.extend([term, term, term])
        cur = conn.cursor()
        cur.execute(
            f"SELECT * FROM User WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
            params,
        )
        rows = cur.fetchall()
    return [to_user_out(row) for row in rows]


@app.get("/api/products", response_model=List[ProductOut])
def list_products(request: Request, include_inactive: bool = False) -> List[ProductOut]:
    with get_db() as conn:
        user = require_user(conn, request)
        # Every role in an agency sells from the agency catalog.
        if normalize_role(user["role"]) == "super_admin":
            scope_clause, params = "1 = 1", []
        else:
            scope_clause, params = "agency_id = ?", [user["agency_id"]]
        if not include_inactive:
            scope_clause += " AND is_active = 1"
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM Product WHERE {scope_clause} ORDER BY name ASC", params)
        rows = cur.fetchall()
    return [ProductOut(**dict(row)) for row in rows]


@app.post("/api/products", response_model=ProductOut)
def create_product(payload: ProductIn, request: Request, agency_id: Optional[str] = None) -> ProductOut:
    if not (payload.name or "").strip():
        raise HTTPException(status_code=400, detail="Product name is required")
    for field in ("premium", "commission_rate"):
        value = getattr(payload, field)
        if value is not None and value < 0:
            raise HTTPException(status_code=400, detail=f"{field} cannot be negative")
    if payload.commission_rate is not None and payload.commission_rate > 100:
        raise HTTPException(status_code=400, detail="commission_rate must be between 0 and 100")
    product_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        actor = require_role(conn, request, {"admin", "manager"})
        target_agency = resolve_agency_for_write(actor, agency_id)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Product (
                id, agency_id, name, carrier, product_type, premium, commission_rate, deductible,
                max_out_of_pocket, copay_primary, copay_specialist, prescription_coverage,
                dental_included, vision_included, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                product_id,
                target_agency,
                payload.name.strip(),
                (payload.carrier or "").strip(),
                (payload.product_type or "health").strip().lower(),
                payload.premium,
                payload.commission_rate,
                payload.deductible,
                payload.max_out_of_pocket,
                payload.copay_primary,
                payload.copay_specialist,
                1 if payload.prescription_coverage else 0,
                1 if payload.dental_included else 0,
                1 if payload.vision_included else 0,
                1,
                now,
                now,
            ),
        )
        conn.commit()
        row = fetch_row(conn, "Product", product_id, "Product")
    return ProductOut(**dict(row))


def fetch_agency_product(conn: sqlite3.Connection, user: Any, product_id: str) -> sqlite3.Row:
    product = fetch_row(conn, "Product", product_id, "Product")
    if normalize_role(user["role"]) != "super_admin" and product["agency_id"] != user["agency_id"]:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.patch("/api/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, payload: ProductUpdate, request: Request) -> ProductOut:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin", "manager"})
        product = fetch_agency_product(conn, actor, product_id)
        updates = payload.dict(exclude_unset=True)
        if "commission_rate" in updates and updates["commission_rate"] is not None:
            if not is_valid_rate(updates["commission_rate"]):
                raise HTTPException(status_code=400, detail="commission_rate must be between 0 and 100")
        data = dict(product)
        for key, value in updates.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, str):
                value = value.strip()
            data[key] = value
        data["updated_at"] = now_iso()
        columns = [key for key in updates] + ["updated_at"]
        cur = conn.cursor()
        cur.execute(
            f"UPDATE Product SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [data[col] for col in columns] + [product_id],
        )
        conn.commit()
        row = fetch_row(conn, "Product", product_id, "Product")
    return ProductOut(**dict(row))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        fetch_agency_product(conn, actor, product_id)
        cur = conn.cursor()
        cur.execute(
            "UPDATE Product SET is_active = 0, updated_at = ? WHERE id = ?",
            (now_iso(), product_id),
        )
        conn.commit()
    return {"status": "deactivated"}


@app.get("/api/customers")
def list_customers(
    request: Request,
    search: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Dict[str, Any]:
    safe_limit, safe_offset = paginate(limit, offset)
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin", "customer_service"})
        scope_clause, params = build_scope_filter(user)
        clauses = [scope_clause]
        if search:
            term = f"%{search.strip().lower()}%"
            clauses.append(
                "(LOWER(first_name) LIKE ? OR LOWER(last_name) LIKE ? OR LOWER(email) LIKE ? OR member_id LIKE ?)"
            )
            params.extend([term, term, term, term])
        where = " AND ".join(clauses)
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) AS cnt FROM Customer WHERE {where}", params)
        total = cur.fetchone()["cnt"]
        cur.execute(
            f"SELECT * FROM Customer WHERE {where} ORDER BY last_name ASC, first_name ASC LIMIT ? OFFSET ?",
            params + [safe_limit, safe_offset],
        )
        rows = [dict(row) for row in cur.fetchall()]
    return {"customers": rows, "pagination": {"total": total, "limit": safe_limit, "offset": safe_offset}}


@app.post("/api/customers")
def create_customer(payload: CustomerIn, request: Request) -> Dict[str, Any]:
    if not (payload.first_name or "").strip():
        raise HTTPException(status_code=400, detail="First name is required")
    customer_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin", "customer_service"})
        agency_id = resolve_agency_for_write(user, None)
        agent_id = user["id"] if normalize_role(user["role"]) == "agent" else payload.agent_id
        member_id = (payload.member_id or "").strip() or f"M{secrets.randbelow(10**8):08d}"
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Customer (
                id, agency_id, agent_id, member_id, first_name, last_name, email, phone,
                date_of_birth, state, product_type, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                customer_id,
                agency_id,
                agent_id,
                member_id,
                payload.first_name.strip(),
                (payload.last_name or "").strip(),
                (payload.email or "").strip().lower(),
                (payload.phone or "").strip(),
                require_date(payload.date_of_birth, "date_of_birth"),
                (payload.state or "").strip().upper(),
                payload.product_type,
                now,
                now,
            ),
        )
        conn.commit()
        row = fetch_row(conn, "Customer", customer_id, "Customer")
    return dict(row)


@app.post("/api/quotes/price")
def price_quotes(payload: QuotePriceIn, request: Request) -> Dict[str, Any]:
    if not payload.product_ids:
        raise HTTPException(status_code=400, detail="At least one product ID is required")
    if payload.customer.age is None or not (payload.customer.state or "").strip():
        raise HTTPException(status_code=400, detail="Customer age and state are required")
    with get_db() as conn:
        user = require_user(conn, request)
        placeholders = ", ".join("?" for _ in payload.product_ids)
        params: List[Any] = list(payload.product_ids)
        query = f"SELECT * FROM Product WHERE id IN ({placeholders}) AND is_active = 1"
        if normalize_role(user["role"]) != "super_admin":
            query += " AND agency_id = ?"
            params.append(user["agency_id"])
        cur = conn.cursor()
        cur.execute(query, params)
        products = cur.fetchall()
    if not products:
        raise HTTPException(status_code=404, detail="No products found for the given IDs")

    today = today_utc()
    quotes = [
        price_quote(
            product,
            payload.customer.age,
            payload.customer.state,
            nonsmoker=payload.customer.nonsmoker,
            bundle_discount=payload.coverage.bundle_discount,
        )
        for product in products
    ]
    return {
        "quote_number": generate_quote_number(),
        "quotes": quotes,
        "customer": payload.customer.dict(),
        "effective_date": next_month_first(today).isoformat(),
        "expiration_date": (today + timedelta(days=30)).isoformat(),
        "total_estimated_commission": money(sum(q["commission_amount"] for q in quotes)),
    }


def create_sale_record(
    conn: sqlite3.Connection,
    *,
    agency_id: str,
    agent_id: str,
    customer_id: Optional[str],
    product: Optional[Any],
    premium: float,
    monthly_recurring: Optional[float] = None,
    policy_number: Optional[str] = None,
    sale_date: Optional[str] = None,
    effective_date: Optional[str] = None,
    quote_id: Optional[str] = None,
    status: str = "active",
) -> str:
    sale_id = str(uuid.uuid4())
    now = now_iso()
    sold_on = sale_date or today_utc().isoformat()
    rate = resolve_commission_rate(conn, agent_id, product, sold_on)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Sale (
            id, agency_id, agent_id, customer_id, product_id, quote_id, policy_number, premium,
            monthly_recurring, commission_rate, commission_amount, commission_status, commission_paid_date,
            status, sale_date, effective_date, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            sale_id,
            agency_id,
            agent_id,
            customer_id,
            product["id"] if product is not None else None,
            quote_id,
            policy_number or generate_policy_number(),
            premium,
            monthly_recurring,
            rate,
            money(premium * rate / 100),
            "pending",
            None,
            status,
            sold_on,
            effective_date or sold_on,
            now,
            now,
        ),
    )
    return sale_id


def resolve_sale_agent(conn: sqlite3.Connection, user: Any, requested_agent_id: Optional[str], agency_id: str) -> str:
    if normalize_role(user["role"]) == "agent" or not requested_agent_id:
        return user["id"]
    agent = fetch_user(conn, requested_agent_id)
    if agent["agency_id"] != agency_id:
        raise HTTPException(status_code=400, detail="Agent does not belong to this agency")
    return agent["id"]


@app.get("/api/quotes")
def list_quotes(
    request: Request,
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Dict[str, Any]:
    safe_limit, safe_offset = paginate(limit, offset)
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        scope_clause, params = build_scope_filter(user, "q.agency_id", "q.agent_id")
        clauses = [scope_clause]
        if status:
            clauses.append("q.status = ?")
            params.append(status)
        if start_date:
            clauses.append("substr(q.created_at, 1, 10) >= ?")
            params.append(require_date(start_date, "start_date"))
        if end_date:
            clauses.append("substr(q.created_at, 1, 10) <= ?")
            params.append(require_date(end_date, "end_date"))
        where = " AND ".join(clauses)
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) AS cnt FROM Quote q WHERE {where}", params)
        total = cur.fetchone()["cnt"]
        cur.execute(
            f"""
            SELECT q.*, p.name AS product_name, c.first_name AS customer_first_name,
                   c.last_name AS customer_last_name
            FROM Quote q
            LEFT JOIN Product p ON p.id = q.product_id
            LEFT JOIN Customer c ON c.id = q.customer_id
            WHERE {where}
            ORDER BY q.created_at DESC
            LIMIT ? OFFSET ?
            """,
            params + [safe_limit, safe_offset],
        )
        rows = [dict(row) for row in cur.fetchall()]
    return {"quotes": rows, "pagination": {"total": total, "limit": safe_limit, "offset": safe_offset}}


@app.post("/api/quotes", response_model=QuoteOut)
def create_quote(payload: QuoteIn, request: Request) -> QuoteOut:
    if not payload.customer_id or not payload.product_id or payload.premium is None:
        raise HTTPException(status_code=400, detail="customer_id, product_id and premium are required")
    if payload.premium < 0:
        raise HTTPException(status_code=400, detail="premium cannot be negative")
    quote_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        product = fetch_agency_product(conn, user, payload.product_id)
        agency_id = product["agency_id"]
        customer = fetch_row(conn, "Customer", payload.customer_id, "Customer")
        if customer["agency_id"] != agency_id:
            raise HTTPException(status_code=404, detail="Customer not found")
        agent_id = resolve_sale_agent(conn, user, payload.agent_id, agency_id)
        status = "converted" if payload.convert_to_sale else (payload.status or "pending")
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Quote (
                id, quote_number, agency_id, agent_id, customer_id, product_id, premium,
                coverage_amount, deductible, status, notes, valid_until, sale_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                quote_id,
                generate_quote_number(),
                agency_id,
                agent_id,
                payload.customer_id,
                payload.product_id,
                payload.premium,
                payload.coverage_amount,
                payload.deductible,
                status,
                (payload.notes or "").strip(),
                require_date(payload.valid_until, "valid_until")
                or (today_utc() + timedelta(days=30)).isoformat(),
                None,
                now,
                now,
            ),
        )
        if payload.convert_to_sale:
            sale_id = create_sale_record(
                conn,
                agency_id=agency_id,
                agent_id=agent_id,
                customer_id=payload.customer_id,
                product=product,
                premium=payload.premium,
                monthly_recurring=payload.premium,
                quote_id=quote_id,
            )
            cur.execute("UPDATE Quote SET sale_id = ? WHERE id = ?", (sale_id, quote_id))
        conn.commit()
        row = fetch_row(conn, "Quote", quote_id, "Quote")
    return QuoteOut(**dict(row))


@app.put("/api/quotes/{quote_id}", response_model=QuoteOut)
def update_quote(quote_id: str, payload: QuoteUpdate, request: Request) -> QuoteOut:
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        quote = fetch_scoped(conn, user, "Quote", quote_id, "Quote")
        updates = payload.dict(exclude_unset=True)
        convert = bool(updates.pop("convert_to_sale", False))
        if quote["status"] == "converted" and updates.get("status", "converted") != "converted":
            raise HTTPException(status_code=400, detail="Converted quotes cannot change status")
        if "valid_until" in updates:
            updates["valid_until"] = require_date(updates["valid_until"], "valid_until")
        if updates.get("premium") is not None and updates["premium"] < 0:
            raise HTTPException(status_code=400, detail="premium cannot be negative")
        data = dict(quote)
        data.update(updates)
        cur = conn.cursor()
        if convert and data.get("status") == "accepted" and not quote["sale_id"]:
            product = fetch_row(conn, "Product", quote["product_id"], "Product")
            sale_id = create_sale_record(
                conn,
                agency_id=quote["agency_id"],
                agent_id=quote["agent_id"],
                customer_id=quote["customer_id"],
                product=product,
                premium=float(data["premium"] or 0),
                monthly_recurring=data["premium"],
                quote_id=quote_id,
            )
            data["sale_id"] = sale_id
            data["status"] = "converted"
            updates["sale_id"] = sale_id
            updates["status"] = "converted"
        data["updated_at"] = now_iso()
        columns = list(updates) + ["updated_at"]
        cur.execute(
            f"UPDATE Quote SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [data[col] for col in columns] + [quote_id],
        )
        conn.commit()
        row = fetch_row(conn, "Quote", quote_id, "Quote")
    return QuoteOut(**dict(row))


@app.delete("/api/quotes/{quote_id}")
def cancel_quote(quote_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        fetch_scoped(conn, user, "Quote", quote_id, "Quote")
        cur = conn.cursor()
        cur.execute(
            "UPDATE Quote SET status = 'cancelled', updated_at = ? WHERE id = ?",
            (now_iso(), quote_id),
        )
        conn.commit()
    return {"status": "cancelled"}


@app.get("/api/sales")
def list_sales(
    request: Request,
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    agent_id: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Dict[str, Any]:
    safe_limit, safe_offset = paginate(limit, offset)
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        scope_clause, params = build_scope_filter(user, "s.agency_id", "s.agent_id")
        clauses = [scope_clause]
        if status:
            clauses.append("s.status = ?")
            params.append(status)
        if start_date:
            clauses.append("s.sale_date >= ?")
            params.append(require_date(start_date, "start_date"))
        if end_date:
            clauses.append("s.sale_date <= ?")
            params.append(require_date(end_date, "end_date"))
        if agent_id:
            clauses.append("s.agent_id = ?")
            params.append(agent_id)
        where = " AND ".join(clauses)
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) AS cnt FROM Sale s WHERE {where}", params)
        total = cur.fetchone()["cnt"]
        cur.execute(
            f"""
            SELECT s.*, p.name AS product_name, p.product_type
            FROM Sale s
            LEFT JOIN Product p ON p.id = s.product_id
            WHERE {where}
            ORDER BY s.sale_date DESC, s.created_at DESC
            LIMIT ? OFFSET ?
            """,
            params + [safe_limit, safe_offset],
        )
        rows = [dict(row) for row in cur.fetchall()]
    return {"sales": rows, "pagination": {"total": total, "limit": safe_limit, "offset": safe_offset}}


@app.post("/api/sales", response_model=SaleOut)
def create_sale(payload: SaleIn, request: Request) -> SaleOut:
    if not payload.customer_id or not payload.product_id or payload.premium is None:
        raise HTTPException(status_code=400, detail="customer_id, product_id and premium are required")
    if payload.premium < 0:
        raise HTTPException(status_code=400, detail="premium cannot be negative")
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        product = fetch_agency_product(conn, user, payload.product_id)
        agency_id = product["agency_id"]
        customer = fetch_row(conn, "Customer", payload.customer_id, "Customer")
        if customer["agency_id"] != agency_id:
            raise HTTPException(status_code=404, detail="Customer not found")
        agent_id = resolve_sale_agent(conn, user, payload.agent_id, agency_id)
        sale_id = create_sale_record(
            conn,
            agency_id=agency_id,
            agent_id=agent_id,
            customer_id=payload.customer_id,
            product=product,
            premium=payload.premium,
            monthly_recurring=payload.monthly_recurring,
            policy_number=(payload.policy_number or "").strip() or None,
            sale_date=require_date(payload.sale_date, "sale_date"),
            effective_date=require_date(payload.effective_date, "effective_date"),
            quote_id=payload.quote_id,
            status=payload.status or "active",
        )
        conn.commit()
        row = fetch_row(conn, "Sale", sale_id, "Sale")
    return SaleOut(**dict(row))


@app.put("/api/sales/{sale_id}", response_model=SaleOut)
def update_sale(sale_id: str, payload: SaleUpdate, request: Request) -> SaleOut:
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        sale = fetch_scoped(conn, user, "Sale", sale_id, "Sale")
        updates = payload.dict(exclude_unset=True)
        for field in ("sale_date", "effective_date"):
            if field in updates:
                updates[field] = require_date(updates[field], field)
        if updates.get("premium") is not None and updates["premium"] < 0:
            raise HTTPException(status_code=400, detail="premium cannot be negative")
        if "customer_id" in updates:
            customer = fetch_row(conn, "Customer", updates["customer_id"], "Customer")
            if customer["agency_id"] != sale["agency_id"] or not row_in_scope(user, customer):
                raise HTTPException(status_code=404, detail="Customer not found")
        product = None
        if updates.get("product_id") and updates["product_id"] != sale["product_id"]:
            product = fetch_agency_product(conn, user, updates["product_id"])
            if product["agency_id"] != sale["agency_id"]:
                raise HTTPException(status_code=404, detail="Product not found")
        data = dict(sale)
        data.update(updates)
        if product is not None:
            # Overrides are matched per product, so a product swap re-resolves the rate.
            updates["commission_rate"] = resolve_commission_rate(conn, data["agent_id"], product, data["sale_date"])
            data["commission_rate"] = updates["commission_rate"]
        if "premium" in updates or product is not None:
            updates["commission_amount"] = money(float(data["premium"] or 0) * float(data["commission_rate"] or 0) / 100)
            data["commission_amount"] = updates["commission_amount"]
        data["updated_at"] = now_iso()
        columns = list(updates) + ["updated_at"]
        cur = conn.cursor()
        cur.execute(
            f"UPDATE Sale SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [data[col] for col in columns] + [sale_id],
        )
        conn.commit()
        row = fetch_row(conn, "Sale", sale_id, "Sale")
    return SaleOut(**dict(row))


@app.delete("/api/sales/{sale_id}")
def cancel_sale(sale_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        fetch_scoped(conn, user, "Sale", sale_id, "Sale")
        cur = conn.cursor()
        cur.execute(
            "UPDATE Sale SET status = 'cancelled', updated_at = ? WHERE id = ?",
            (now_iso(), sale_id),
        )
        conn.commit()
    return {"status": "cancelled"}


COMMISSION_STATUSES = {"pending", "approved", "paid", "charged_back", "cancelled"}


@app.get("/api/commissions")
def list_commissions(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    status: Optional[str] = None,
    group_by: Optional[str] = None,
) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        scope_clause, params = build_scope_filter(user, "s.agency_id", "s.agent_id")
        clauses = [scope_clause]
        if start_date:
            clauses.append("s.sale_date >= ?")
            params.append(require_date(start_date, "start_date"))
        if end_date:
            clauses.append("s.sale_date <= ?")
            params.append(require_date(end_date, "end_date"))
        if status:
            clauses.append("s.commission_status = ?")
            params.append(status)
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT s.*, p.name AS product_name, p.product_type
            FROM Sale s
            LEFT JOIN Product p ON p.id = s.product_id
            WHERE {' AND '.join(clauses)}
            ORDER BY s.sale_date DESC
            """,
            params,
        )
        sales = [dict(row) for row in cur.fetchall()]
        adj_clause, adj_params = build_scope_filter(user)
        cur.execute(
            f"SELECT * FROM CommissionAdjustment WHERE {adj_clause} ORDER BY created_at DESC",
            adj_params,
        )
        adjustments = [dict(row) for row in cur.fetchall()]

    total = sum(float(s["commission_amount"] or 0) for s in sales)
    summary = {
        "total": money(total),
        "pending": money(sum(float(s["commission_amount"] or 0) for s in sales if s["commission_status"] == "pending")),
        "paid": money(sum(float(s["commission_amount"] or 0) for s in sales if s["commission_status"] == "paid")),
        "total_sales": len(sales),
        "average_commission": money(total / len(sales)) if sales else 0.0,
        "total_adjustments": money(sum(float(a["amount"] or 0) for a in adjustments)),
    }

    if group_by == "month":
        groups: Dict[str, Dict[str, Any]] = {}
        for sale in sales:
            period = (sale["sale_date"] or "")[:7]
            entry = groups.setdefault(period, {"period": period, "total_commission": 0.0, "total_premium": 0.0, "count": 0})
            entry["total_commission"] += float(sale["commission_amount"] or 0)
            entry["total_premium"] += float(sale["premium"] or 0)
            entry["count"] += 1
        grouped = sorted(groups.values(), key=lambda item: item["period"], reverse=True)
        for entry in grouped:
            entry["total_commission"] = money(entry["total_commission"])
            entry["total_premium"] = money(entry["total_premium"])
        return {"grouped": grouped, "group_by": "month", "summary": summary}
    if group_by == "product":
        groups = {}
        for sale in sales:
            key = sale["product_id"] or "unknown"
            entry = groups.setdefault(
                key,
                {
                    "product_id": sale["product_id"],
                    "product_name": sale["product_name"] or "Unknown Product",
                    "total_commission": 0.0,
                    "count": 0,
                },
            )
            entry["total_commission"] += float(sale["commission_amount"] or 0)
            entry["count"] += 1
        grouped = sorted(groups.values(), key=lambda item: item["total_commission"], reverse=True)
        for entry in grouped:
            entry["total_commission"] = money(entry["total_commission"])
        return {"grouped": grouped, "group_by": "product", "summary": summary}
    return {"commissions": sales, "adjustments": adjustments, "summary": summary}


@app.post("/api/commissions/adjustments")
def create_commission_adjustment(payload: CommissionAdjustmentIn, request: Request) -> Dict[str, Any]:
    if not payload.agent_id or payload.amount is None or not payload.adjustment_type:
        raise HTTPException(status_code=400, detail="agent_id, amount and adjustment_type are required")
    adjustment_id = str(uuid.uuid4())
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        agent = fetch_agency_user(conn, actor, payload.agent_id)
        if payload.sale_id:
            sale = fetch_row(conn, "Sale", payload.sale_id, "Sale")
            if sale["agent_id"] != agent["id"]:
                raise HTTPException(status_code=400, detail="Sale does not belong to this agent")
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO CommissionAdjustment (
                id, agency_id, agent_id, sale_id, amount, adjustment_type, reason, status, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                adjustment_id,
                agent["agency_id"],
                agent["id"],
                payload.sale_id,
                payload.amount,
                payload.adjustment_type.strip(),
                (payload.reason or "").strip(),
                "pending",
                actor["id"],
                now_iso(),
            ),
        )
        record_audit(
            conn,
            actor,
            "commission_adjusted",
            "commission",
            adjustment_id,
            {"agent_id": agent["id"], "amount": payload.amount},
        )
        conn.commit()
        row = fetch_row(conn, "CommissionAdjustment", adjustment_id, "Adjustment")
    return dict(row)


@app.put("/api/commissions/{sale_id}")
def update_commission_status(sale_id: str, payload: CommissionStatusIn, request: Request) -> Dict[str, Any]:
    status = (payload.commission_status or "").strip().lower()
    if status not in COMMISSION_STATUSES:
        allowed = ", ".join(sorted(COMMISSION_STATUSES))
        raise HTTPException(status_code=400, detail=f"commission_status must be one of: {allowed}")
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        fetch_scoped(conn, user, "Sale", sale_id, "Sale")
        paid_date = today_utc().isoformat() if status == "paid" else None
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE Sale SET commission_status = ?, commission_paid_date = ?, updated_at = ?
            WHERE id = ?
            """,
            (status, paid_date, now_iso(), sale_id),
        )
        conn.commit()
        row = fetch_row(conn, "Sale", sale_id, "Sale")
    return dict(row)


@app.get("/api/admin/commission-settings")
def get_commission_settings(request: Request, agency_id: Optional[str] = None) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        target_agency = resolve_agency_for_write(user, agency_id)
        settings = load_commission_settings(conn, target_agency)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id, first_name, last_name, email, commission_rate FROM User
            WHERE agency_id = ? AND role = 'agent' AND is_active = 1
            ORDER BY last_name ASC
            """,
            (target_agency,),
        )
        agents = [dict(row) for row in cur.fetchall()]
    return {**settings, "agency_id": target_agency, "agents": agents}


@app.put("/api/admin/commission-settings")
def save_commission_settings(
    payload: CommissionSettingsIn, request: Request, agency_id: Optional[str] = None
) -> Dict[str, Any]:
    error = validate_commission_structures(payload.structures)
    if error:
        raise HTTPException(status_code=400, detail=error)
    active = payload.active_structure or next(iter(payload.structures))
    if active not in payload.structures:
        raise HTTPException(status_code=400, detail=f"Active structure '{active}' is not defined")
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        target_agency = resolve_agency_for_write(user, agency_id)
        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO CommissionSettings (agency_id, structures, active_structure, updated_by, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(agency_id) DO UPDATE SET
                structures = excluded.structures,
                active_structure = excluded.active_structure,
                updated_by = excluded.updated_by,
                updated_at = excluded.updated_at
            """,
            (target_agency, json.dumps(payload.structures), active, user["id"], now),
        )
        record_audit(
            conn,
            user,
            "commission_settings_updated",
            "commission_settings",
            target_agency,
            {"structures": sorted(payload.structures), "active_structure": active},
        )
        conn.commit()
        settings = load_commission_settings(conn, target_agency)
    return {**settings, "agency_id": target_agency}


@app.delete("/api/admin/commission-settings/{structure_type}")
def delete_commission_structure(
    structure_type: str, request: Request, agency_id: Optional[str] = None
) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        target_agency = resolve_agency_for_write(user, agency_id)
        cur = conn.cursor()
        cur.execute("SELECT * FROM CommissionSettings WHERE agency_id = ?", (target_agency,))
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Commission settings not found")
        structures = json.loads(row["structures"] or "{}")
        if structure_type not in structures:
            raise HTTPException(status_code=404, detail="Commission structure not found")
        structures.pop(structure_type)
        active = row["active_structure"]
        if active == structure_type:
            active = next(iter(structures), None)
        cur.execute(
            """
            UPDATE CommissionSettings SET structures = ?, active_structure = ?, updated_by = ?, updated_at = ?
            WHERE agency_id = ?
            """,
            (json.dumps(structures), active, user["id"], now_iso(), target_agency),
        )
        record_audit(
            conn, user, "commission_structure_deleted", "commission_settings", target_agency, {"structure": structure_type}
        )
        conn.commit()
        settings = load_commission_settings(conn, target_agency)
    return {**settings, "agency_id": target_agency}


@app.post("/api/admin/commission-settings/calculate")
def preview_commission(
    payload: CommissionCalculateIn, request: Request, agency_id: Optional[str] = None
) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        target_agency = resolve_agency_for_write(user, agency_id)
        settings = load_commission_settings(conn, target_agency)
    key = payload.structure_key or settings["active_structure"]
    structure = settings["structures"].get(key or "")
    if not structure:
        raise HTTPException(status_code=404, detail="Commission structure not found")
    commission = calculate_commission(payload.amount, payload.product_type, payload.agent_sales, structure)
    return {"structure_key": key, "structure_type": structure["type"], "amount": payload.amount, "commission": commission}


def validate_override_fields(override_type: Optional[str], override_value: Optional[float]) -> None:
    if override_type not in OVERRIDE_TYPES:
        allowed = ", ".join(sorted(OVERRIDE_TYPES))
        raise HTTPException(status_code=400, detail=f"override_type must be one of: {allowed}")
    if override_value is None or not is_valid_rate(override_value):
        raise HTTPException(status_code=400, detail="override_value must be between 0 and 100")


@app.get("/api/admin/commission-overrides")
def list_commission_overrides(
    request: Request,
    agent_id: Optional[str] = None,
    active_only: bool = False,
) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        scope_clause, params = build_scope_filter(user, "o.agency_id", "o.agent_id")
        clauses = [scope_clause]
        if agent_id:
            clauses.append("o.agent_id = ?")
            params.append(agent_id)
        if active_only:
            clauses.append("o.is_active = 1")
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT o.*, u.first_name AS agent_first_name, u.last_name AS agent_last_name,
                   p.name AS product_name
            FROM CommissionOverride o
            LEFT JOIN User u ON u.id = o.agent_id
            LEFT JOIN Product p ON p.id = o.product_id
            WHERE {' AND '.join(clauses)}
            ORDER BY o.created_at DESC
            """,
            params,
        )
        overrides = [dict(row) for row in cur.fetchall()]
    return {
        "overrides": overrides,
        "summary": {
            "total": len(overrides),
            "active": sum(1 for o in overrides if o["is_active"]),
            "agents_with_overrides": len({o["agent_id"] for o in overrides}),
        },
    }


@app.post("/api/admin/commission-overrides")
def create_commission_override(payload: CommissionOverrideIn, request: Request) -> Dict[str, Any]:
    if not payload.agent_id or not payload.override_type or payload.override_value is None:
        raise HTTPException(status_code=400, detail="agent_id, override_type and override_value are required")
    validate_override_fields(payload.override_type, payload.override_value)
    effective_date = require_date(payload.effective_date, "effective_date") or today_utc().isoformat()
    expiry_date = require_date(payload.expiry_date, "expiry_date")
    if expiry_date and expiry_date < effective_date:
        raise HTTPException(status_code=400, detail="expiry_date must be after effective_date")
    override_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        agent = fetch_agency_user(conn, actor, payload.agent_id)
        if payload.product_id:
            fetch_agency_product(conn, actor, payload.product_id)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO CommissionOverride (
                id, agency_id, agent_id, product_id, override_type, override_value, effective_date,
                expiry_date, reason, notes, is_active, created_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                override_id,
                agent["agency_id"],
                agent["id"],
                payload.product_id or None,
                payload.override_type,
                payload.override_value,
                effective_date,
                expiry_date,
                (payload.reason or "").strip(),
                (payload.notes or "").strip(),
                1 if payload.is_active else 0,
                actor["id"],
                now,
                now,
            ),
        )
        record_audit(
            conn,
            actor,
            "commission_override_created",
            "commission_override",
            override_id,
            {"agent_id": agent["id"], "type": payload.override_type, "value": payload.override_value},
        )
        conn.commit()
        row = fetch_row(conn, "CommissionOverride", override_id, "Override")
    return dict(row)


@app.patch("/api/admin/commission-overrides/{override_id}")
def update_commission_override(
    override_id: str, payload: CommissionOverrideUpdate, request: Request
) -> Dict[str, Any]:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        override = fetch_scoped(conn, actor, "CommissionOverride", override_id, "Override")
        updates = payload.dict(exclude_unset=True)
        data = dict(override)
        data.update(updates)
        validate_override_fields(data["override_type"], data["override_value"])
        for field in ("effective_date", "expiry_date"):
            if field in updates:
                updates[field] = require_date(updates[field], field)
                data[field] = updates[field]
        if "is_active" in updates:
            updates["is_active"] = 1 if updates["is_active"] else 0
            data["is_active"] = updates["is_active"]
        if updates.get("product_id"):
            fetch_agency_product(conn, actor, updates["product_id"])
        data["updated_at"] = now_iso()
        columns = list(updates) + ["updated_at"]
        cur = conn.cursor()
        cur.execute(
            f"UPDATE CommissionOverride SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [data[col] for col in columns] + [override_id],
        )
        conn.commit()
        row = fetch_row(conn, "CommissionOverride", override_id, "Override")
    return dict(row)


@app.delete("/api/admin/commission-overrides/{override_id}")
def delete_commission_override(override_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        actor = require_role(conn, request, {"admin"})
        fetch_scoped(conn, actor, "CommissionOverride", override_id, "Override")
        cur = conn.cursor()
        cur.execute("DELETE FROM CommissionOverride WHERE id = ?", (override_id,))
        record_audit(conn, actor, "commission_override_deleted", "commission_override", override_id)
        conn.commit()
    return {"status": "deleted"}


def chargebacks_by_agent(
    conn: sqlite3.Connection, start: date, end: date, agency_id: Optional[str] = None
) -> Dict[str, float]:
    clauses = ["cancellation_type = 'CHARGEBACK'", "pay_period_applied >= ?", "pay_period_applied <= ?"]
    params: List[Any] = [start.isoformat(), end.isoformat()]
    if agency_id:
        clauses.append("agency_id = ?")
        params.append(agency_id)
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT agent_id, SUM(chargeback_amount) AS total FROM PolicyCancellation
        WHERE {' AND '.join(clauses)}
        GROUP BY agent_id
        """,
        params,
    )
    return {row["agent_id"]: float(row["total"] or 0) for row in cur.fetchall()}


@app.get("/api/admin/commission-summary")
def commission_summary(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Dict[str, Any]:
    first, last = month_range()
    start = parse_date(require_date(start_date, "start_date")) or first
    end = parse_date(require_date(end_date, "end_date")) or last
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        agency_id = scoped_agency_id(user)
        sales = fetch_sales_between(conn, start, end, agency_id)
        charged = chargebacks_by_agent(conn, start, end, agency_id)
        agents = agents_by_id(conn, agency_id)

    per_agent: Dict[str, Dict[str, Any]] = {}
    for sale in sales:
        entry = per_agent.setdefault(
            sale["agent_id"],
            {
                "agent_id": sale["agent_id"],
                "agent_name": display_name(agents.get(sale["agent_id"])),
                "paid": 0.0,
                "pending": 0.0,
                "sales": 0,
            },
        )
        amount = float(sale["commission_amount"] or 0)
        if sale["commission_status"] == "paid":
            entry["paid"] += amount
        elif sale["commission_status"] in {"pending", "approved"}:
            entry["pending"] += amount
        entry["sales"] += 1
    for agent_id in charged:
        per_agent.setdefault(
            agent_id,
            {
                "agent_id": agent_id,
                "agent_name": display_name(agents.get(agent_id)),
                "paid": 0.0,
                "pending": 0.0,
                "sales": 0,
            },
        )
    rows = []
    for agent_id, entry in per_agent.items():
        entry["chargebacks"] = money(charged.get(agent_id, 0.0))
        entry["paid"] = money(entry["paid"])
        entry["pending"] = money(entry["pending"])
        entry["net"] = money(entry["paid"] + entry["pending"] + entry["chargebacks"])
        rows.append(entry)
    rows.sort(key=lambda item: item["net"], reverse=True)
    return {
        "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
        "agents": rows,
        "totals": {
            "paid": money(sum(r["paid"] for r in rows)),
            "pending": money(sum(r["pending"] for r in rows)),
            "chargebacks": money(sum(r["chargebacks"] for r in rows)),
            "net": money(sum(r["net"] for r in rows)),
        },
    }


PAYROLL_CSV_HEADERS = [
    "Agent Name",
    "Email",
    "License Number",
    "Total Sales",
    "Total Premium",
    "Total Commission",
    "Commission Rate",
]
WEEKLY_EXPORT_HEADERS = ["Agent ID", "Agent Name", "Total Sales", "Total Commission", "Chargebacks", "Net Commission"]


@app.get("/api/admin/payroll")
def get_payroll(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    agent_id: Optional[str] = None,
    export_format: str = "json",
):
    first, last = month_range()
    start = parse_date(require_date(start_date, "start_date")) or first
    end = parse_date(require_date(end_date, "end_date")) or last
    if end < start:
        raise HTTPException(status_code=400, detail="end_date must be after start_date")
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        agency_id = scoped_agency_id(user)
        sales = fetch_sales_between(conn, start, end, agency_id, agent_id)
        agents = agents_by_id(conn, agency_id)
    report = build_payroll_report(sales, agents, start, end)
    report["filters"] = {
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "agent_id": agent_id,
    }

    if export_format == "csv":
        rows = [
            [
                item["agent_name"],
                item["email"],
                item["license_number"],
                item["total_sales"],
                f"{item['total_premium']:.2f}",
                f"{item['total_commission']:.2f}",
                f"{item['commission_percentage']}%",
            ]
            for item in report["payroll"]
        ]
        filename = f"payroll-{start.isoformat()}-to-{end.isoformat()}.csv"
        return attachment_response(rows_to_csv(PAYROLL_CSV_HEADERS, rows), "text/csv", filename)
    return report


@app.get("/api/payroll/export")
def export_weekly_payroll(
    request: Request,
    end_date: Optional[str] = None,
    format: str = "csv",
):
    export_format = (format or "csv").strip().lower()
    if export_format not in {"csv", "json", "xlsx"}:
        raise HTTPException(status_code=400, detail="format must be one of: csv, json, xlsx")
    start, end = week_window_ending(parse_date(require_date(end_date, "end_date")))
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        agency_id = scoped_agency_id(user)
        sales = fetch_sales_between(conn, start, end, agency_id)
        charged = chargebacks_by_agent(conn, start, end, agency_id)
        agent_names = {agent_id: display_name(row) for agent_id, row in agents_by_id(conn, agency_id).items()}
    rows = build_weekly_export(sales, charged, agent_names)
    logger.info("Weekly payroll export %s to %s: %s agent rows", start, end, len(rows))

    if export_format == "json":
        return {
            "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
            "rows": rows,
        }
    table = [
        [
            row["agentId"],
            row["agentName"],
            row["totalSales"],
            row["totalCommission"],
            row["chargebacks"],
            row["netCommission"],
        ]
        for row in rows
    ]
    stem = f"payroll-week-{start.isoformat()}"
    if export_format == "xlsx":
        return attachment_response(
            rows_to_xlsx("Payroll", WEEKLY_EXPORT_HEADERS, table),
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            f"{stem}.xlsx",
        )
    return attachment_response(rows_to_csv(WEEKLY_EXPORT_HEADERS, table), "text/csv", f"{stem}.csv")


# ----------------------
# Cancellations and chargebacks
# ----------------------

def find_sale_by_policy(conn: sqlite3.Connection, user: Any, policy_number: str) -> Optional[sqlite3.Row]:
    if not policy_number or policy_number == "Unknown Policy":
        return None
    scope_clause, params = build_scope_filter(user)
    cur = conn.cursor()
    cur.execute(
        f"SELECT * FROM Sale WHERE policy_number = ? AND {scope_clause} ORDER BY sale_date DESC LIMIT 1",
        [policy_number] + params,
    )
    return cur.fetchone()


@app.post("/api/cancellations/process")
def process_cancellation(payload: CancellationIn, request: Request) -> Dict[str, Any]:
    content = (payload.email_content or "").strip()
    if not content:
        raise HTTPException(status_code=400, detail="email_content is required")
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager", "customer_service", "agent"})
        parsed = parse_cancellation_email(content)
        sale = find_sale_by_policy(conn, user, parsed["policy_number"])
        result = classify_cancellation(parsed, sale)
        if sale is not None:
            agency_id, agent_id = sale["agency_id"], sale["agent_id"]
        else:
            agency_id = user["agency_id"]
            agent_id = user["id"] if normalize_role(user["role"]) == "agent" else None
        cancellation_id = str(uuid.uuid4())
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO PolicyCancellation (
                id, agency_id, agent_id, sale_id, customer_name, policy_number, effective_date,
                cancellation_date, days_in_force, premium, original_commission, chargeback_amount,
                cancellation_type, reason, pay_period_applied, email_content, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                cancellation_id,
                agency_id,
                agent_id,
                sale["id"] if sale is not None else None,
                parsed["customer_name"],
                parsed["policy_number"],
                result["effective_date"],
                result["cancellation_date"],
                result["days_in_force"],
                parsed["premium"],
                result["original_commission"],
                result["amount"],
                result["type"],
                result["reason"],
                result["pay_period_applied"],
                content,
                now_iso(),
            ),
        )
        if sale is not None:
            commission_status = "charged_back" if result["is_chargeback"] else sale["commission_status"]
            cur.execute(
                "UPDATE Sale SET status = 'cancelled', commission_status = ?, updated_at = ? WHERE id = ?",
                (commission_status, now_iso(), sale["id"]),
            )
        record_audit(
            conn,
            user,
            "policy_cancelled",
            "cancellation",
            cancellation_id,
            {"policy_number": parsed["policy_number"], "type": result["type"], "amount": result["amount"]},
            severity="warning" if result["is_chargeback"] else "info",
        )
        conn.commit()
    logger.info("Processed %s for policy %s", result["type"], parsed["policy_number"])
    return {
        "id": cancellation_id,
        "sale_id": sale["id"] if sale is not None else None,
        "customer_name": parsed["customer_name"],
        "policy_number": parsed["policy_number"],
        "premium": parsed["premium"],
        **result,
    }


def list_agent_cancellations(
    request: Request, cancellation_type: str, date_field: str, window: tuple[date, date]
) -> Dict[str, Any]:
    start, end = window
    with get_db() as conn:
        user = require_role(conn, request, {"agent", "manager", "admin"})
        scope_clause, params = build_scope_filter(user)
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT * FROM PolicyCancellation
            WHERE {scope_clause} AND cancellation_type = ? AND {date_field} >= ? AND {date_field} <= ?
            ORDER BY {date_field} DESC
            """,
            params + [cancellation_type, start.isoformat(), end.isoformat()],
        )
        rows = [dict(row) for row in cur.fetchall()]
    return {
        "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
        "items": rows,
        "count": len(rows),
        "total_amount": money(sum(float(row["chargeback_amount"] or 0) for row in rows)),
    }


@app.get("/api/agent/cancellations")
def get_agent_cancellations(request: Request, timeframe: Optional[str] = "thisweek") -> Dict[str, Any]:
    return list_agent_cancellations(request, "CANCELLATION", "cancellation_date", week_range(timeframe))


@app.get("/api/agent/chargebacks")
def get_agent_chargebacks(request: Request, pay_period: Optional[str] = "thisweek") -> Dict[str, Any]:
    return list_agent_cancellations(request, "CHARGEBACK", "pay_period_applied", week_range(pay_period))


# ----------------------
# Licenses and compliance
# ----------------------

def validate_license_fields(data: Dict[str, Any]) -> None:
    if data.get("status") and data["status"] not in LICENSE_STATUSES:
        allowed = ", ".join(sorted(LICENSE_STATUSES))
        raise HTTPException(status_code=400, detail=f"status must be one of: {allowed}")
    for field in ("issue_date", "expiration_date"):
        if field in data:
            data[field] = require_date(data[field], field)
    if data.get("state"):
        data["state"] = data["state"].strip().upper()
    issued, expires = data.get("issue_date"), data.get("expiration_date")
    if issued and expires and expires < issued:
        raise HTTPException(status_code=400, detail="expiration_date must be after issue_date")


def to_license_out(row: Any) -> LicenseOut:
    data = dict(row)
    first_name = data.pop("agent_first_name", None) or ""
    last_name = data.pop("agent_last_name", None) or ""
    data["agent_name"] = f"{first_name} {last_name}".strip()
    return LicenseOut(**data)


def fetch_scope_licenses(conn: sqlite3.Connection, user: Any) -> List[sqlite3.Row]:
    scope_clause, params = build_scope_filter(user)
    cur = conn.cursor()
    cur.execute(f"SELECT * FROM License WHERE {scope_clause}", params)
    return cur.fetchall()


@app.get("/api/admin/licenses")
def list_licenses(
    request: Request,
    search: Optional[str] = None,
    state: Optional[str] = None,
    license_type: Optional[str] = None,
    status: Optional[str] = None,
    agent_id: Optional[str] = None,
    sort_by: str = "expiration_date",
    sort_order: str = "asc",
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Dict[str, Any]:
    if sort_by not in LICENSE_SORT_FIELDS:
        sort_by = "expiration_date"
    direction = "DESC" if (sort_order or "").lower() == "desc" else "ASC"
    safe_limit, safe_offset = paginate(limit, offset)
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        scope_clause, params = build_scope_filter(user, "l.agency_id", "l.agent_id")
        clauses = [scope_clause]
        if search:
            term = f"%{search.strip().lower()}%"
            clauses.append(
                "(LOWER(l.license_number) LIKE ? OR LOWER(u.first_name) LIKE ? OR LOWER(u.last_name) LIKE ?)"
            )
            params.extend([term, term, term])
        if state:
            clauses.append("l.state = ?")
            params.append(state.strip().upper())
        if license_type:
            clauses.append("l.license_type = ?")
            params.append(license_type)
        if status:
            clauses.append("l.status = ?")
            params.append(status)
        if agent_id:
            clauses.append("l.agent_id = ?")
            params.append(agent_id)
        where = " AND ".join(clauses)
        cur = conn.cursor()
        cur.execute(
            f"SELECT COUNT(*) AS cnt FROM License l LEFT JOIN User u ON u.id = l.agent_id WHERE {where}",
            params,
        )
        total = cur.fetchone()["cnt"]
        cur.execute(
            f"""
            SELECT l.*, u.first_name AS agent_first_name, u.last_name AS agent_last_name
            FROM License l
            LEFT JOIN User u ON u.id = l.agent_id
            WHERE {where}
            ORDER BY l.{sort_by} {direction}
            LIMIT ? OFFSET ?
            """,
            params + [safe_limit, safe_offset],
        )
        licenses = [to_license_out(row) for row in cur.fetchall()]
    return {"licenses": licenses, "pagination": {"total": total, "limit": safe_limit, "offset": safe_offset}}


@app.get("/api/admin/licenses/summary")
def get_license_summary(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        licenses = fetch_scope_licenses(conn, user)
    return license_summary(licenses)


@app.get("/api/admin/licenses/expiring")
def list_expiring_licenses(request: Request, days: int = LICENSE_EXPIRING_DAYS) -> Dict[str, Any]:
    today = today_utc()
    horizon = today + timedelta(days=max(0, days))
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        scope_clause, params = build_scope_filter(user, "l.agency_id", "l.agent_id")
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT l.*, u.first_name AS agent_first_name, u.last_name AS agent_last_name
            FROM License l
            LEFT JOIN User u ON u.id = l.agent_id
            WHERE {scope_clause} AND l.expiration_date >= ? AND l.expiration_date <= ?
            ORDER BY l.expiration_date ASC
            """,
            params + [today.isoformat(), horizon.isoformat()],
        )
        rows = cur.fetchall()
    licenses = []
    for row in rows:
        item = to_license_out(row).dict()
        item["days_until_expiry"] = (parse_date(row["expiration_date"]) - today).days
        licenses.append(item)
    return {"days": days, "licenses": licenses, "count": len(licenses)}


@app.get("/api/admin/dashboard-licenses")
def get_license_dashboard(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        licenses = fetch_scope_licenses(conn, user)
        agency_id = scoped_agency_id(user)
        names = {agent_id: display_name(row) for agent_id, row in agents_by_id(conn, agency_id).items()}
    return license_dashboard(licenses, names)


@app.post("/api/admin/licenses", response_model=LicenseOut)
def create_license(payload: LicenseIn, request: Request) -> LicenseOut:
    data = payload.dict()
    for field in ("state", "license_type", "license_number"):
        if not (data.get(field) or "").strip():
            raise HTTPException(status_code=400, detail=f"{field} is required")
    validate_license_fields(data)
    license_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        agent = fetch_agency_user(conn, user, payload.agent_id)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO License (
                id, agency_id, agent_id, state, license_type, license_number, status,
                issue_date, expiration_date, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                license_id,
                agent["agency_id"],
                agent["id"],
                data["state"],
                data["license_type"].strip(),
                data["license_number"].strip(),
                data["status"],
                data["issue_date"],
                data["expiration_date"],
                now,
                now,
            ),
        )
        record_audit(conn, user, "license_created", "license", license_id, {"agent_id": agent["id"]})
        conn.commit()
        row = fetch_row(conn, "License", license_id, "License")
    return LicenseOut(**dict(row), agent_name=display_name(agent))


@app.patch("/api/admin/licenses/{license_id}", response_model=LicenseOut)
def update_license(license_id: str, payload: LicenseUpdate, request: Request) -> LicenseOut:
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        existing = fetch_scoped(conn, user, "License", license_id, "License")
        updates = payload.dict(exclude_unset=True)
        validate_license_fields(updates)
        merged = dict(existing)
        merged.update(updates)
        if merged["issue_date"] and merged["expiration_date"] and merged["expiration_date"] < merged["issue_date"]:
            raise HTTPException(status_code=400, detail="expiration_date must be after issue_date")
        merged["updated_at"] = now_iso()
        columns = list(updates) + ["updated_at"]
        cur = conn.cursor()
        cur.execute(
            f"UPDATE License SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [merged[col] for col in columns] + [license_id],
        )
        conn.commit()
        row = fetch_row(conn, "License", license_id, "License")
        agent = fetch_user(conn, row["agent_id"])
    return LicenseOut(**dict(row), agent_name=display_name(agent))


@app.delete("/api/admin/licenses/{license_id}")
def delete_license(license_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        fetch_scoped(conn, user, "License", license_id, "License")
        cur = conn.cursor()
        cur.execute("DELETE FROM License WHERE id = ?", (license_id,))
        record_audit(conn, user, "license_deleted", "license", license_id)
        conn.commit()
    return {"status": "deleted"}


@app.get("/api/super-admin/compliance")
def get_platform_compliance(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        require_role(conn, request, {"super_admin"})
        cur = conn.cursor()
        cur.execute("SELECT id, name, is_active FROM Agency ORDER BY name ASC")
        agencies = cur.fetchall()
        cur.execute("SELECT * FROM License")
        licenses = cur.fetchall()
    by_agency: Dict[str, List[Any]] = {}
    for lic in licenses:
        by_agency.setdefault(lic["agency_id"], []).append(lic)
    results = []
    for agency in agencies:
        summary = license_summary(by_agency.get(agency["id"], []))
        results.append(
            {"agency_id": agency["id"], "agency_name": agency["name"], "is_active": bool(agency["is_active"]), **summary}
        )
    results.sort(key=lambda item: item["compliance_rate"])
    return {"agencies": results, "platform": license_summary(licenses)}


# ----------------------
# Dashboards and goals
# ----------------------

def sum_premium(sales: List[Any]) -> float:
    return money(sum(float(sale["premium"] or 0) for sale in sales))


def sum_commission(sales: List[Any]) -> float:
    return money(sum(float(sale["commission_amount"] or 0) for sale in sales))


def goal_progress(conn: sqlite3.Connection, goal: Any, today: Optional[date] = None) -> Dict[str, Any]:
    current = today or today_utc()
    start = parse_date(goal["start_date"]) or parse_date((goal["created_at"] or "")[:10]) or current
    target = parse_date(goal["target_date"]) or current
    sales = fetch_sales_between(conn, start, target, goal["agency_id"], goal["agent_id"])
    if goal["metric_type"] == "policies":
        achieved = float(len(sales))
    else:
        achieved = sum_premium(sales)
    target_value = float(goal["target_value"] or 0)
    percentage = min(100.0, round(achieved / target_value * 100, 1)) if target_value else 0.0
    data = dict(goal)
    data.update(
        {
            "current_value": achieved,
            "progress_percentage": percentage,
            "days_remaining": max(0, (target - current).days),
        }
    )
    return data


@app.get("/api/admin/dashboard")
def get_admin_dashboard(request: Request) -> Dict[str, Any]:
    month_start, month_end = month_range()
    with get_db() as conn:
        user = require_role(conn, request, {"admin"})
        agency_id = scoped_agency_id(user)
        cur = conn.cursor()
        agency_clause = "agency_id = ?" if agency_id else "1 = 1"
        agency_params = [agency_id] if agency_id else []
        cur.execute(
            f"SELECT COUNT(*) AS cnt FROM User WHERE {agency_clause} AND role = 'agent' AND is_active = 1",
            agency_params,
        )
        active_agents = cur.fetchone()["cnt"]
        sales = fetch_sales_between(conn, month_start, month_end, agency_id)
        cur.execute(
            f"""
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'converted' OR sale_id IS NOT NULL THEN 1 ELSE 0 END) AS converted
            FROM Quote WHERE {agency_clause} AND created_at >= ?
            """,
            agency_params + [month_start.isoformat()],
        )
        quote_row = cur.fetchone()
        cur.execute(
            f"SELECT COUNT(*) AS cnt FROM SupportTicket WHERE {agency_clause} AND status IN ('open', 'in_progress')",
            agency_params,
        )
        open_tickets = cur.fetchone()["cnt"]
        licenses = fetch_scope_licenses(conn, user)
    total_quotes = quote_row["total"] or 0
    converted = quote_row["converted"] or 0
    return {
        "agency_id": agency_id,
        "active_agents": active_agents,
        "month_to_date": {
            "premium": sum_premium(sales),
            "commission": sum_commission(sales),
            "policies": len(sales),
        },
        "quotes": {
            "total": total_quotes,
            "converted": converted,
            "conversion_rate": round(converted / total_quotes * 100, 1) if total_quotes else 0.0,
        },
        "open_support_tickets": open_tickets,
        "licenses": license_summary(licenses),
    }


@app.get("/api/manager/dashboard")
def get_manager_dashboard(request: Request, timeframe: str = "month") -> Dict[str, Any]:
    start, end, prev_start, prev_end = period_range(timeframe)
    today = today_utc()
    with get_db() as conn:
        user = require_role(conn, request, {"manager", "admin"})
        agency_id = resolve_agency_for_write(user, None)
        sales = fetch_sales_between(conn, start, end, agency_id)
        previous = fetch_sales_between(conn, prev_start, prev_end, agency_id)
        agents = agents_by_id(conn, agency_id)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM Goal WHERE agency_id = ? AND COALESCE(status, 'active') = 'active' AND target_date >= ?
            ORDER BY target_date ASC LIMIT 5
            """,
            (agency_id, today.isoformat()),
        )
        goals = [goal_progress(conn, goal, today) for goal in cur.fetchall()]
        cur.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN temperature = 'hot' THEN 1 ELSE 0 END) AS hot,
                   SUM(CASE WHEN temperature = 'warm' THEN 1 ELSE 0 END) AS warm,
                   SUM(CASE WHEN temperature = 'cold' THEN 1 ELSE 0 END) AS cold,
                   SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END) AS new_in_period
            FROM ConvosoLead WHERE agency_id = ?
            """,
            (start.isoformat(), agency_id),
        )
        leads = cur.fetchone()
        cur.execute(
            """
            SELECT COUNT(*) AS cnt FROM License
            WHERE agency_id = ? AND expiration_date >= ? AND expiration_date <= ?
            """,
            (agency_id, today.isoformat(), (today + timedelta(days=LICENSE_EXPIRING_DAYS)).isoformat()),
        )
        expiring = cur.fetchone()["cnt"]

    total_premium = sum_premium(sales)
    previous_premium = sum_premium(previous)
    team = []
    for agent_id, totals in aggregate_agent_totals(sales).items():
        team.append({**totals, "agent_name": display_name(agents.get(agent_id))})
    team.sort(key=lambda item: item["premium"], reverse=True)
    recent = [
        {
            "id": sale["id"],
            "agent_name": display_name(agents.get(sale["agent_id"])),
            "policy_number": sale["policy_number"],
            "premium": money(sale["premium"]),
            "sale_date": sale["sale_date"],
        }
        for sale in sales[:10]
    ]
    alerts = []
    if expiring:
        alerts.append(
            {
                "type": "license_expiring",
                "severity": "medium",
                "message": f"{expiring} license(s) expire within {LICENSE_EXPIRING_DAYS} days",
            }
        )
    active_agents = sum(1 for row in agents.values() if row["role"] == "agent" and row["is_active"])
    return {
        "timeframe": timeframe,
        "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
        "overview": {
            "total_premium": total_premium,
            "total_sales": len(sales),
            "average_premium": money(total_premium / len(sales)) if sales else 0.0,
            "growth_rate": growth_rate(total_premium, previous_premium),
            "previous_premium": previous_premium,
        },
        "team_performance": team[:5],
        "recent_sales": recent,
        "upcoming_goals": goals,
        "lead_summary": {
            "total": leads["total"] or 0,
            "hot": leads["hot"] or 0,
            "warm": leads["warm"] or 0,
            "cold": leads["cold"] or 0,
            "new_in_period": leads["new_in_period"] or 0,
        },
        "alerts": alerts,
        "quick_stats": {
            "active_agents": active_agents,
            "agents_with_sales": len(team),
            "total_commission": sum_commission(sales),
        },
    }


@app.get("/api/agent/dashboard")
def get_agent_dashboard(request: Request) -> Dict[str, Any]:
    month_start, month_end = month_range()
    last_start, last_end = previous_month_range()
    with get_db() as conn:
        user = require_role(conn, request, {"agent"})
        agency_id = scoped_agency_id(user)
        agency_sales = fetch_sales_between(conn, month_start, month_end, agency_id)
        last_month = fetch_sales_between(conn, last_start, last_end, agency_id, user["id"])
        agents = agents_by_id(conn, agency_id)

    mine = [sale for sale in agency_sales if sale["agent_id"] == user["id"]]
    premium = sum_premium(mine)
    commission = sum_commission(mine)
    ranked = sorted(aggregate_agent_totals(agency_sales).values(), key=lambda item: item["commission"], reverse=True)
    rank = next((index + 1 for index, item in enumerate(ranked) if item["agent_id"] == user["id"]), None)
    leaderboard = [
        {**item, "rank": index + 1, "agent_name": display_name(agents.get(item["agent_id"]))}
        for index, item in enumerate(ranked[:5])
    ]
    last_premium = sum_premium(last_month)
    return {
        "agent": to_user_out(user),
        "month_to_date": {"premium": premium, "commission": commission, "policies": len(mine)},
        "rank": rank,
        "total_agents": len(ranked),
        "goals": {
            "sales_goal": AGENT_SALES_GOAL,
            "sales_progress": min(100.0, round(premium / AGENT_SALES_GOAL * 100, 1)),
            "policies_goal": AGENT_POLICIES_GOAL,
            "policies_progress": min(100.0, round(len(mine) / AGENT_POLICIES_GOAL * 100, 1)),
        },
        "recent_sales": [dict(sale) for sale in mine[:5]],
        "leaderboard": leaderboard,
        "last_month": {
            "premium": last_premium,
            "commission": sum_commission(last_month),
            "policies": len(last_month),
            "premium_change": growth_rate(premium, last_premium),
        },
    }


GOAL_METRICS = {"sales", "policies"}
GOAL_STATUSES = {"active", "completed", "cancelled"}


@app.get("/api/manager/goals")
def list_goals(request: Request, status: Optional[str] = None) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, {"manager", "admin"})
        agency_id = resolve_agency_for_write(user, None)
        clauses = ["agency_id = ?"]
        params: List[Any] = [agency_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM Goal WHERE {' AND '.join(clauses)} ORDER BY target_date ASC", params)
        goals = [goal_progress(conn, goal) for goal in cur.fetchall()]
    return {"goals": goals}


@app.post("/api/manager/goals")
def create_goal(payload: GoalIn, request: Request) -> Dict[str, Any]:
    if not payload.title.strip():
        raise HTTPException(status_code=400, detail="title is required")
    if payload.metric_type not in GOAL_METRICS:
        raise HTTPException(status_code=400, detail="metric_type must be sales or policies")
    if payload.target_value <= 0:
        raise HTTPException(status_code=400, detail="target_value must be positive")
    target_date = require_date(payload.target_date, "target_date")
    start_date = require_date(payload.start_date, "start_date") or today_utc().isoformat()
    goal_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        user = require_role(conn, request, {"manager", "admin"})
        agency_id = resolve_agency_for_write(user, None)
        if payload.agent_id:
            fetch_agency_user(conn, user, payload.agent_id)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Goal (
                id, agency_id, agent_id, created_by, title, metric_type, target_value,
                start_date, target_date, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                goal_id,
                agency_id,
                payload.agent_id,
                user["id"],
                payload.title.strip(),
                payload.metric_type,
                payload.target_value,
                start_date,
                target_date,
                "active",
                now,
                now,
            ),
        )
        conn.commit()
        goal = fetch_row(conn, "Goal", goal_id, "Goal")
        return goal_progress(conn, goal)


def fetch_agency_goal(conn: sqlite3.Connection, user: Any, goal_id: str) -> sqlite3.Row:
    goal = fetch_row(conn, "Goal", goal_id, "Goal")
    if normalize_role(user["role"]) != "super_admin" and goal["agency_id"] != user["agency_id"]:
        raise HTTPException(status_code=404, detail="Goal not found")
    return goal


@app.patch("/api/manager/goals/{goal_id}")
def update_goal(goal_id: str, payload: GoalUpdate, request: Request) -> Dict[str, Any]:
    updates = payload.dict(exclude_unset=True)
    if "metric_type" in updates and updates["metric_type"] not in GOAL_METRICS:
        raise HTTPException(status_code=400, detail="metric_type must be sales or policies")
    if "status" in updates and updates["status"] not in GOAL_STATUSES:
        raise HTTPException(status_code=400, detail="status must be active, completed or cancelled")
    if updates.get("target_value") is not None and updates["target_value"] <= 0:
        raise HTTPException(status_code=400, detail="target_value must be positive")
    for field in ("start_date", "target_date"):
        if field in updates:
            updates[field] = require_date(updates[field], field)
    with get_db() as conn:
        user = require_role(conn, request, {"manager", "admin"})
        goal = fetch_agency_goal(conn, user, goal_id)
        data = dict(goal)
        data.update(updates)
        data["updated_at"] = now_iso()
        columns = list(updates) + ["updated_at"]
        cur = conn.cursor()
        cur.execute(
            f"UPDATE Goal SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [data[col] for col in columns] + [goal_id],
        )
        conn.commit()
        return goal_progress(conn, fetch_row(conn, "Goal", goal_id, "Goal"))


@app.delete("/api/manager/goals/{goal_id}")
def delete_goal(goal_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_role(conn, request, {"manager", "admin"})
        fetch_agency_goal(conn, user, goal_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM Goal WHERE id = ?", (goal_id,))
        conn.commit()
    return {"status": "deleted"}


@app.get("/api/leaderboard/global")
def get_global_leaderboard(request: Request, timeframe: str = "month") -> Dict[str, Any]:
    start, end, _, _ = period_range(timeframe)
    with get_db() as conn:
        require_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT s.agent_id, u.first_name, u.last_name, u.email, a.id AS agency_id, a.name AS agency_name,
                   SUM(s.premium) AS premium, SUM(s.commission_amount) AS commission, COUNT(*) AS policies
            FROM Sale s
            JOIN User u ON u.id = s.agent_id
            JOIN Agency a ON a.id = s.agency_id
            WHERE a.is_active = 1 AND COALESCE(a.participate_global_leaderboard, 1) = 1
              AND u.is_active = 1 AND COALESCE(s.status, 'active') != 'cancelled'
              AND s.sale_date >= ? AND s.sale_date <= ?
            GROUP BY s.agent_id
            ORDER BY premium DESC
            """,
            (start.isoformat(), end.isoformat()),
        )
        rows = cur.fetchall()
    rankings = [
        {
            "rank": index + 1,
            "agent_id": row["agent_id"],
            "agent_name": display_name(row),
            "agency_name": row["agency_name"],
            "premium": money(row["premium"]),
            "commission": money(row["commission"]),
            "policies": row["policies"],
        }
        for index, row in enumerate(rows)
    ]
    return {
        "timeframe": timeframe,
        "metrics": {
            "active_agents": len(rankings),
            "total_premium": money(sum(item["premium"] for item in rankings)),
            "total_commission": money(sum(item["commission"] for item in rankings)),
            "offices": len({row["agency_id"] for row in rows}),
        },
        "rankings": rankings,
        "top_three": rankings[:3],
    }


@app.get("/api/super-admin/financial-stats")
def get_financial_stats(request: Request) -> Dict[str, Any]:
    month_start, month_end = month_range()
    last_start, last_end = previous_month_range()
    with get_db() as conn:
        require_role(conn, request, {"super_admin"})
        cur = conn.cursor()
        cur.execute(
            """
            SELECT COUNT(*) AS cnt, COALESCE(SUM(monthly_cost), 0) AS mrr
            FROM Agency WHERE is_active = 1
            """
        )
        agencies = cur.fetchone()
        cur.execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN commission_status = 'paid' THEN commission_amount ELSE 0 END), 0) AS paid,
                COALESCE(SUM(CASE WHEN commission_status IN ('pending', 'approved')
                    THEN commission_amount ELSE 0 END), 0) AS pending
            FROM Sale WHERE COALESCE(status, 'active') != 'cancelled'
            """
        )
        commissions = cur.fetchone()
        current = fetch_sales_between(conn, month_start, month_end)
        previous = fetch_sales_between(conn, last_start, last_end)
    monthly_revenue = money(agencies["mrr"])
    current_premium = sum_premium(current)
    previous_premium = sum_premium(previous)
    return {
        "active_agencies": agencies["cnt"],
        "monthly_revenue": monthly_revenue,
        "total_revenue": money(monthly_revenue * 12),
        "commissions_paid": money(commissions["paid"]),
        "commissions_pending": money(commissions["pending"]),
        "premium": {
            "current_month": current_premium,
            "previous_month": previous_premium,
            "growth_rate": growth_rate(current_premium, previous_premium),
        },
    }


# ----------------------
# Customer service
# ----------------------

CASE_PRIORITIES = {"low", "medium", "high", "urgent"}
CASE_STATUSES = {"open", "in_progress", "escalated", "resolved", "closed"}
SERVICE_ROLES = {"customer_service", "manager", "admin"}
MEMBER_SEARCH_LIMIT = 50


def generate_case_number() -> str:
    return "CS-" + "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))


def to_base36(value: int) -> str:
    digits = string.digits + string.ascii_uppercase
    if value == 0:
        return "0"
    out = []
    while value:
        value, remainder = divmod(value, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))


def generate_ticket_number() -> str:
    stamp = to_base36(int(utc_now().timestamp() * 1000))
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(3))
    return f"TKT-{stamp}-{suffix}"


@app.post("/api/customer-service/member-search")
def search_members(payload: MemberSearchIn, request: Request) -> Dict[str, Any]:
    criteria = {
        "member_id": payload.member_id,
        "first_name": payload.first_name,
        "last_name": payload.last_name,
        "phone": payload.phone,
        "email": payload.email,
    }
    if not any((value or "").strip() for value in criteria.values()) and not payload.product_type:
        raise HTTPException(status_code=400, detail="At least one search field is required")
    with get_db() as conn:
        user = require_role(conn, request, SERVICE_ROLES)
        scope_clause, params = build_scope_filter(user)
        clauses = [scope_clause]
        for column, value in criteria.items():
            term = (value or "").strip().lower()
            if term:
                clauses.append(f"LOWER({column}) LIKE ?")
                params.append(f"%{term}%")
        if payload.product_type:
            clauses.append("product_type = ?")
            params.append(payload.product_type)
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT * FROM Customer WHERE {' AND '.join(clauses)}
            ORDER BY last_name ASC, first_name ASC LIMIT ?
            """,
            params + [MEMBER_SEARCH_LIMIT],
        )
        members = [dict(row) for row in cur.fetchall()]
    return {"members": members, "count": len(members)}


@app.get("/api/customer-service/frequent-members")
def get_frequent_members(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_role(conn, request, SERVICE_ROLES)
        scope_clause, params = build_scope_filter(user, "c.agency_id")
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT c.*, COUNT(sc.id) AS case_count, MAX(sc.created_at) AS last_case_at
            FROM Customer c
            JOIN ServiceCase sc ON sc.customer_id = c.id
            WHERE {scope_clause}
            GROUP BY c.id
            ORDER BY case_count DESC, last_case_at DESC
            LIMIT 6
            """,
            params,
        )
        members = [dict(row) for row in cur.fetchall()]
    return {"members": members}


@app.post("/api/customer-service/cases")
def create_service_case(payload: ServiceCaseIn, request: Request) -> Dict[str, Any]:
    if not payload.subject.strip():
        raise HTTPException(status_code=400, detail="subject is required")
    if payload.priority not in CASE_PRIORITIES:
        raise HTTPException(status_code=400, detail="priority must be one of: high, low, medium, urgent")
    case_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        user = require_role(conn, request, SERVICE_ROLES)
        agency_id = resolve_agency_for_write(user, None)
        if payload.customer_id:
            customer = fetch_row(conn, "Customer", payload.customer_id, "Customer")
            if customer["agency_id"] != agency_id:
                raise HTTPException(status_code=404, detail="Customer not found")
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO ServiceCase (
                id, case_number, agency_id, customer_id, assigned_to, subject, description,
                priority, status, resolved_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                case_id,
                generate_case_number(),
                agency_id,
                payload.customer_id,
                user["id"],
                payload.subject.strip(),
                (payload.description or "").strip(),
                payload.priority,
                "open",
                None,
                now,
                now,
            ),
        )
        conn.commit()
        row = fetch_row(conn, "ServiceCase", case_id, "Case")
    return dict(row)


@app.patch("/api/customer-service/cases/{case_id}")
def update_service_case(case_id: str, payload: ServiceCaseUpdate, request: Request) -> Dict[str, Any]:
    updates = payload.dict(exclude_unset=True)
    if "priority" in updates and updates["priority"] not in CASE_PRIORITIES:
        raise HTTPException(status_code=400, detail="priority must be one of: high, low, medium, urgent")
    if "status" in updates and updates["status"] not in CASE_STATUSES:
        allowed = ", ".join(sorted(CASE_STATUSES))
        raise HTTPException(status_code=400, detail=f"status must be one of: {allowed}")
    with get_db() as conn:
        user = require_role(conn, request, SERVICE_ROLES)
        case = fetch_row(conn, "ServiceCase", case_id, "Case")
        if normalize_role(user["role"]) != "super_admin" and case["agency_id"] != user["agency_id"]:
            raise HTTPException(status_code=404, detail="Case not found")
        if updates.get("assigned_to"):
            fetch_agency_user(conn, user, updates["assigned_to"])
        if "status" in updates:
            resolved = updates["status"] in {"resolved", "closed"}
            updates["resolved_at"] = (case["resolved_at"] or now_iso()) if resolved else None
        data = dict(case)
        data.update(updates)
        data["updated_at"] = now_iso()
        columns = list(updates) + ["updated_at"]
        cur = conn.cursor()
        cur.execute(
            f"UPDATE ServiceCase SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [data[col] for col in columns] + [case_id],
        )
        conn.commit()
        row = fetch_row(conn, "ServiceCase", case_id, "Case")
    return dict(row)


@app.get("/api/customer-service/stats")
def get_customer_service_stats(request: Request) -> Dict[str, Any]:
    today = today_utc().isoformat()
    with get_db() as conn:
        user = require_role(conn, request, SERVICE_ROLES)
        scope_clause, params = build_scope_filter(user)
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM ServiceCase WHERE {scope_clause} ORDER BY updated_at DESC", params)
        cases = [dict(row) for row in cur.fetchall()]
        cur.execute(f"SELECT COUNT(*) AS cnt FROM Customer WHERE {scope_clause}", params)
        total_members = cur.fetchone()["cnt"]

    todays = [case for case in cases if (case["created_at"] or "").startswith(today)]
    active = [case for case in cases if case["status"] in {"open", "in_progress"}]
    resolved = [case for case in cases if case["status"] in {"resolved", "closed"}]
    return {
        "stats": {
            "today_cases": len(todays),
            "active_cases": len(active),
            "total_members": total_members,
            "resolved_today": sum(1 for case in resolved if (case["resolved_at"] or "").startswith(today)),
            "escalated": sum(1 for case in cases if case["status"] == "escalated"),
            "resolution_rate": round(len(resolved) / len(cases) * 100, 1) if cases else 0.0,
        },
        "recent_activity": cases[:10],
        "high_priority": [case for case in active if case["priority"] in {"high", "urgent"}][:10],
        "todays_cases": todays,
    }


# ----------------------
# Support tickets
# ----------------------

TICKET_STATUSES = {"open", "in_progress", "resolved", "closed"}


@app.get("/api/support/tickets")
def list_support_tickets(
    request: Request,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Dict[str, Any]:
    safe_limit, safe_offset = paginate(limit, offset)
    with get_db() as conn:
        user = require_user(conn, request)
        if normalize_role(user["role"]) == "super_admin":
            clauses, params = ["1 = 1"], []
        elif user["agency_id"]:
            clauses, params = ["agency_id = ?"], [user["agency_id"]]
        else:
            clauses, params = ["created_by = ?"], [user["id"]]
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = " AND ".join(clauses)
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) AS cnt FROM SupportTicket WHERE {where}", params)
        total = cur.fetchone()["cnt"]
        cur.execute(
            f"SELECT * FROM SupportTicket WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params + [safe_limit, safe_offset],
        )
        tickets = [dict(row) for row in cur.fetchall()]
    return {"tickets": tickets, "pagination": {"total": total, "limit": safe_limit, "offset": safe_offset}}


@app.post("/api/support/tickets")
def create_support_ticket(payload: SupportTicketIn, request: Request) -> Dict[str, Any]:
    if not payload.subject.strip():
        raise HTTPException(status_code=400, detail="subject is required")
    if payload.priority not in CASE_PRIORITIES:
        raise HTTPException(status_code=400, detail="priority must be one of: high, low, medium, urgent")
    ticket_id = str(uuid.uuid4())
    now = now_iso()
    with get_db() as conn:
        user = require_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO SupportTicket (
                id, ticket_number, agency_id, created_by, subject, description, category,
                priority, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ticket_id,
                generate_ticket_number(),
                user["agency_id"],
                user["id"],
                payload.subject.strip(),
                (payload.description or "").strip(),
                payload.category or "general",
                payload.priority,
                "open",
                now,
                now,
            ),
        )
        conn.commit()
        row = fetch_row(conn, "SupportTicket", ticket_id, "Ticket")
    logger.info("Support ticket %s opened by %s", row["ticket_number"], user["email"])
    return dict(row)


@app.patch("/api/support/tickets/{ticket_id}")
def update_support_ticket(ticket_id: str, payload: SupportTicketUpdate, request: Request) -> Dict[str, Any]:
    updates = payload.dict(exclude_unset=True)
    if "status" in updates and updates["status"] not in TICKET_STATUSES:
        allowed = ", ".join(sorted(TICKET_STATUSES))
        raise HTTPException(status_code=400, detail=f"status must be one of: {allowed}")
    if "priority" in updates and updates["priority"] not in CASE_PRIORITIES:
        raise HTTPException(status_code=400, detail="priority must be one of: high, low, medium, urgent")
    with get_db() as conn:
        user = require_user(conn, request)
        ticket = fetch_row(conn, "SupportTicket", ticket_id, "Ticket")
        role = normalize_role(user["role"])
        if role != "super_admin":
            same_agency = user["agency_id"] and ticket["agency_id"] == user["agency_id"]
            if not same_agency and ticket["created_by"] != user["id"]:
                raise HTTPException(status_code=404, detail="Ticket not found")
            if "status" in updates and not role_at_least(role, "manager") and ticket["created_by"] != user["id"]:
                raise HTTPException(status_code=403, detail="Insufficient permissions")
        data = dict(ticket)
        data.update(updates)
        data["updated_at"] = now_iso()
        columns = list(updates) + ["updated_at"]
        cur = conn.cursor()
        cur.execute(
            f"UPDATE SupportTicket SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
            [data[col] for col in columns] + [ticket_id],
        )
        conn.commit()
        row = fetch_row(conn, "SupportTicket", ticket_id, "Ticket")
    return dict(row)


# ----------------------
# Convoso webhook
# ----------------------

def record_webhook_event(
    conn: sqlite3.Connection, agency_id: Optional[str], source: str, event_type: str, payload: Dict[str, Any]
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO WebhookEvent (id, agency_id, source, event_type, payload, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), agency_id, source, event_type, json.dumps(payload, default=str), now_iso()),
    )


def upsert_convoso_lead(conn: sqlite3.Connection, agency_id: str, payload: Dict[str, Any]) -> str:
    lead_id = convoso_lead_id(payload)
    if not lead_id:
        raise HTTPException(status_code=400, detail="lead_id is required for lead updates")
    fields = normalize_convoso_lead(payload)
    now = now_iso()
    cur = conn.cursor()
    cur.execute("SELECT id FROM ConvosoLead WHERE agency_id = ? AND lead_id = ?", (agency_id, lead_id))
    existing = cur.fetchone()
    if existing:
        if fields:
            columns = list(fields) + ["updated_at"]
            values = [fields[col] for col in fields] + [now]
            cur.execute(
                f"UPDATE ConvosoLead SET {', '.join(f'{col} = ?' for col in columns)} WHERE id = ?",
                values + [existing["id"]],
            )
        return "updated"
    fields.setdefault("lead_score", 50)
    fields.setdefault("priority", lead_priority(fields["lead_score"]))
    fields.setdefault("temperature", lead_temperature(fields["lead_score"]))
    columns = ["id", "agency_id", "lead_id"] + list(fields) + ["created_at", "updated_at"]
    values = [str(uuid.uuid4()), agency_id, lead_id] + [fields[col] for col in fields] + [now, now]
    cur.execute(
        f"INSERT INTO ConvosoLead ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        values,
    )
    return "created"


def record_convoso_call(conn: sqlite3.Connection, agency_id: str, payload: Dict[str, Any]) -> None:
    lead_id = convoso_lead_id(payload)
    disposition = payload.get("disposition") or payload.get("status_name") or ""
    raw_duration = payload.get("duration") or payload.get("call_duration") or 0
    try:
        duration = int(float(raw_duration))
    except (TypeError, ValueError):
        duration = 0
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO ConvosoCall (
            id, agency_id, lead_id, call_id, convoso_agent_id, agent_name, disposition, duration,
            recording_url, call_time, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            agency_id,
            lead_id,
            str(payload.get("call_id") or ""),
            str(payload.get("agent_id") or payload.get("user_id") or ""),
            payload.get("agent_name") or payload.get("user_name") or "",
            disposition,
            duration,
            payload.get("recording_url") or "",
            payload.get("call_date") or payload.get("call_time") or now,
            now,
        ),
    )
    if lead_id and disposition:
        cur.execute(
            "UPDATE ConvosoLead SET last_disposition = ?, updated_at = ? WHERE agency_id = ? AND lead_id = ?",
            (disposition, now, agency_id, lead_id),
        )


def handle_convoso_webhook(slug: str, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if payload.get("test") is True:
        return {"success": True, "message": "Test webhook received", "event_type": "test"}

    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM Agency WHERE webhook_slug = ? AND is_active = 1", (slug,))
        agency = cur.fetchone()
        if not agency:
            raise HTTPException(status_code=404, detail="Agency not found")
        secret = agency["convoso_webhook_secret"]
        if secret and not verify_convoso_signature(secret, body, signature):
            logger.warning("Rejected Convoso webhook for %s: bad signature", slug)
            raise HTTPException(status_code=401, detail="Invalid signature")

        event_type = detect_convoso_event(payload)
        if event_type == "call_disposition":
            record_convoso_call(conn, agency["id"], payload)
            message = "Call recorded"
        elif event_type == "lead_update":
            message = f"Lead {upsert_convoso_lead(conn, agency['id'], payload)}"
        else:
            record_webhook_event(conn, agency["id"], "convoso", event_type, payload)
            message = "Event logged"
        conn.commit()
    logger.info("Convoso %s for agency %s: %s", event_type, agency["id"], message)
    return {"success": True, "message": message, "event_type": event_type}


@app.post("/api/convoso-webhook/{slug}")
async def convoso_webhook(slug: str, request: Request) -> Dict[str, Any]:
    body = await request.body()
    # sqlite work runs off the event loop.
    return await run_in_threadpool(handle_convoso_webhook, slug, body, request.headers.get("x-convoso-signature"))


@app.get("/api/admin/convoso/leads")
def list_convoso_leads(
    request: Request,
    status: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> Dict[str, Any]:
    safe_limit, safe_offset = paginate(limit, offset)
    with get_db() as conn:
        user = require_role(conn, request, {"admin", "manager"})
        agency_id = resolve_agency_for_write(user, None)
        clauses = ["agency_id = ?"]
        params: List[Any] = [agency_id]
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = " AND ".join(clauses)
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) AS cnt FROM ConvosoLead WHERE {where}", params)
        total = cur.fetchone()["cnt"]
        cur.execute(
            f"SELECT * FROM ConvosoLead WHERE {where} ORDER BY updated_at DESC LIMIT ? OFFSET ?",
            params + [safe_limit, safe_offset],
        )
        leads = [dict(row) for row in cur.fetchall()]
    return {"leads": leads, "pagination": {"total": total, "limit": safe_limit, "offset": safe_offset}}


# ----------------------
# Stripe billing
# ----------------------

def find_agency_for_subscription(conn: sqlite3.Connection, subscription: Dict[str, Any]) -> Optional[sqlite3.Row]:
    metadata = subscription.get("metadata") or {}
    cur = conn.cursor()
    if metadata.get("agency_id"):
        cur.execute("SELECT * FROM Agency WHERE id = ?", (metadata["agency_id"],))
        row = cur.fetchone()
        if row:
            return row
    if subscription.get("id"):
        cur.execute("SELECT * FROM Agency WHERE stripe_subscription_id = ?", (subscription["id"],))
        row = cur.fetchone()
        if row:
            return row
    if subscription.get("customer"):
        cur.execute("SELECT * FROM Agency WHERE stripe_customer_id = ?", (subscription["customer"],))
        return cur.fetchone()
    return None


def set_agency_billing(conn: sqlite3.Connection, agency_id: str, **fields: Any) -> None:
    fields["updated_at"] = now_iso()
    cur = conn.cursor()
    cur.execute(
        f"UPDATE Agency SET {', '.join(f'{col} = ?' for col in fields)} WHERE id = ?",
        list(fields.values()) + [agency_id],
    )


def subscription_tier(subscription: Dict[str, Any]) -> str:
    tier = ((subscription.get("metadata") or {}).get("plan_id") or "professional").strip().lower()
    return tier if tier in PLAN_LIMITS else "professional"


def handle_subscription_created(conn: sqlite3.Connection, subscription: Dict[str, Any]) -> None:
    agency = find_agency_for_subscription(conn, subscription)
    if not agency:
        logger.warning("Subscription %s has no matching agency", subscription.get("id"))
        return
    set_agency_billing(
        conn,
        agency["id"],
        stripe_subscription_id=subscription.get("id"),
        stripe_customer_id=subscription.get("customer") or agency["stripe_customer_id"],
        subscription_status=subscription.get("status"),
        subscription_tier=subscription_tier(subscription),
    )


def handle_subscription_updated(conn: sqlite3.Connection, subscription: Dict[str, Any]) -> None:
    agency = find_agency_for_subscription(conn, subscription)
    if not agency:
        logger.warning("Subscription %s has no matching agency", subscription.get("id"))
        return
    status = subscription.get("status")
    set_agency_billing(conn, agency["id"], subscription_status=status, subscription_tier=subscription_tier(subscription))
    if status == "canceled":
        set_agency_billing(conn, agency["id"], is_active=0)
        deactivate_agency_users(conn, agency["id"])


def handle_subscription_deleted(conn: sqlite3.Connection, subscription: Dict[str, Any]) -> None:
    agency = find_agency_for_subscription(conn, subscription)
    if not agency:
        logger.warning("Subscription %s has no matching agency", subscription.get("id"))
        return
    set_agency_billing(conn, agency["id"], is_active=0, subscription_status="canceled")
    users = deactivate_agency_users(conn, agency["id"])
    logger.info("Subscription deleted: deactivated agency %s and %s users", agency["id"], users)


def agency_for_invoice(conn: sqlite3.Connection, invoice: Dict[str, Any]) -> Optional[sqlite3.Row]:
    return find_agency_for_subscription(
        conn,
        {
            "id": invoice.get("subscription"),
            "customer": invoice.get("customer"),
            "metadata": (invoice.get("subscription_details") or {}).get("metadata") or {},
        },
    )


def handle_payment_succeeded(conn: sqlite3.Connection, invoice: Dict[str, Any]) -> None:
    agency = agency_for_invoice(conn, invoice)
    if not agency:
        return
    set_agency_billing(conn, agency["id"], is_active=1, subscription_status="active")
    reactivate_agency_users(conn, agency["id"])


def handle_payment_failed(conn: sqlite3.Connection, invoice: Dict[str, Any]) -> None:
    agency = agency_for_invoice(conn, invoice)
    if not agency:
        return
    set_agency_billing(conn, agency["id"], subscription_status="past_due")
    if agency["admin_email"]:
        html = (
            f"<p>We could not process the latest payment for {agency['name']}.</p>"
            "<p>Please update your billing details to keep your portal active.</p>"
        )
        try:
            send_resend_email(agency["admin_email"], "Payment failed for your SyncedUp subscription", html)
        except HTTPException as exc:
            logger.warning("Payment failure email to %s failed: %s", agency["admin_email"], exc.detail)


def handle_checkout_completed(conn: sqlite3.Connection, session: Dict[str, Any]) -> None:
    if session.get("mode") != "subscription" or not session.get("subscription"):
        return
    subscription = stripe.Subscription.retrieve(session["subscription"])
    metadata = session.get("metadata") or {}
    details = session.get("customer_details") or {}
    raw_email = (metadata.get("admin_email") or details.get("email") or "").strip().lower()
    email = raw_email if EMAIL_RE.match(raw_email) else ""
    name = (metadata.get("agency_name") or details.get("name") or "").strip() or (email or "New Agency")
    plan_type = subscription_tier({"metadata": {**dict(subscription.metadata or {}), **metadata}})

    cur = conn.cursor()
    cur.execute("SELECT id FROM Agency WHERE LOWER(name) = ?", (name.lower(),))
    if cur.fetchone():
        name = f"{name} {secrets.randbelow(10000):04d}"
    agency_id = insert_agency(
        conn,
        name=name,
        admin_email=email,
        plan_type=plan_type,
        contact_phone=details.get("phone") or "",
        subscription_status=subscription.status or "active",
        stripe_customer_id=session.get("customer"),
        stripe_subscription_id=subscription.id,
    )
    if email:
        seed_agency_admin(
            conn, agency_id, email, metadata.get("admin_first_name", ""), metadata.get("admin_last_name", "")
        )
    stripe.Subscription.modify(subscription.id, metadata={"agency_id": agency_id, "plan_id": plan_type})
    logger.info("Checkout created agency %s (%s)", agency_id, plan_type)


STRIPE_HANDLERS = {
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
    "checkout.session.completed": handle_checkout_completed,
}


def process_stripe_event(event: Dict[str, Any]) -> Dict[str, Any]:
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM StripeEvent WHERE event_id = ?", (event["id"],))
        if cur.fetchone():
            logger.info("Skipping duplicate Stripe event %s", event["id"])
            return {"status": "duplicate"}
        handler = STRIPE_HANDLERS.get(event["type"])
        if handler:
            handler(conn, event["data"]["object"])
        else:
            logger.debug("Ignoring Stripe event type %s", event["type"])
        cur.execute(
            "INSERT INTO StripeEvent (event_id, event_type, processed_at) VALUES (?, ?, ?)",
            (event["id"], event["type"], now_iso()),
        )
        conn.commit()
    return {"received": True}


@app.post("/api/stripe-webhook")
async def stripe_webhook(request: Request) -> Dict[str, Any]:
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    try:
        stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    # Handlers read plain dicts rather than StripeObject instances.
    return await run_in_threadpool(process_stripe_event, json.loads(payload))


# ----------------------
# Audit log
# ----------------------

@app.get("/api/super-admin/audit-logs")
def list_audit_logs(
    request: Request,
    action: Optional[str] = None,
    user_id: Optional[str] = None,
    agency_id: Optional[str] = None,
    severity: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    safe_limit, _ = paginate(limit, 0)
    safe_page = max(1, page)
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in (("action", action), ("user_id", user_id), ("agency_id", agency_id), ("severity", severity)):
        if value:
            clauses.append(f"{column} = ?")
            params.append(value)
    if start_date:
        clauses.append("created_at >= ?")
        params.append(require_date(start_date, "start_date"))
    if end_date:
        # Inclusive of the whole end day.
        clauses.append("created_at < ?")
        params.append((parse_date(require_date(end_date, "end_date")) + timedelta(days=1)).isoformat())
    where = " AND ".join(clauses) or "1 = 1"
    with get_db() as conn:
        require_role(conn, request, {"super_admin"})
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) AS cnt FROM AuditLog WHERE {where}", params)
        total = cur.fetchone()["cnt"]
        cur.execute(
            f"SELECT * FROM AuditLog WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            params + [safe_limit, (safe_page - 1) * safe_limit],
        )
        logs = []
        for row in cur.fetchall():
            item = dict(row)
            item["details"] = json.loads(item["details"] or "{}")
            logs.append(item)
    return {
        "logs": logs,
        "pagination": {
            "page": safe_page,
            "limit": safe_limit,
            "total": total,
            "pages": (total + safe_limit - 1) // safe_limit,
        },
    }

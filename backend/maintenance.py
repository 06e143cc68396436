#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

BACKEND_DIR = Path(__file__).resolve().parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402
from fastapi import HTTPException  # noqa: E402


INVENTORY_TABLES = [
    "Agency",
    "User",
    "Product",
    "Customer",
    "Quote",
    "Sale",
    "CommissionAdjustment",
    "CommissionOverride",
    "PolicyCancellation",
    "License",
    "ConvosoLead",
    "ConvosoCall",
    "WebhookEvent",
    "StripeEvent",
    "SupportTicket",
    "ServiceCase",
    "Goal",
    "AuditLog",
]


def inventory() -> Dict[str, int]:
    counts: Dict[str, int] = {}
    with main.get_db() as conn:
        cur = conn.cursor()
        for table in INVENTORY_TABLES:
            cur.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
            counts[table] = cur.fetchone()["cnt"]
    return counts


def normalize_roles(dry_run: bool = False) -> List[Dict[str, str]]:
    """Rewrite role strings like "Super Admin" or "customer-service" to their canonical form."""
    changes = []
    with main.get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id, email, role FROM User")
        for row in cur.fetchall():
            canonical = main.normalize_role(row["role"])
            if canonical == row["role"]:
                continue
            if canonical not in main.ALLOWED_USER_ROLES:
                main.logger.warning("Leaving unknown role %r on %s", row["role"], row["email"])
                continue
            changes.append({"email": row["email"], "from": row["role"], "to": canonical})
            if not dry_run:
                cur.execute(
                    "UPDATE User SET role = ?, updated_at = ? WHERE id = ?",
                    (canonical, main.now_iso(), row["id"]),
                )
        conn.commit()
    return changes


def find_orphans() -> List[Dict[str, Any]]:
    with main.get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT u.id, u.email, u.role, u.agency_id FROM User u
            LEFT JOIN Agency a ON a.id = u.agency_id
            WHERE u.agency_id IS NOT NULL AND u.agency_id != '' AND a.id IS NULL
            ORDER BY u.email ASC
            """
        )
        return [dict(row) for row in cur.fetchall()]


def reassign_users(from_agency: str, to_agency: str) -> int:
    with main.get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id FROM Agency WHERE id = ?", (to_agency,))
        if not cur.fetchone():
            raise SystemExit(f"Agency {to_agency} does not exist")
        cur.execute(
            "UPDATE User SET agency_id = ?, updated_at = ? WHERE agency_id = ?",
            (to_agency, main.now_iso(), from_agency),
        )
        moved = cur.rowcount
        conn.commit()
    return moved


def set_password(email: str, password: str) -> None:
    # Tokens are stateless JWTs; existing sessions run until they expire.
    normalized = main.normalize_user_email(email)
    value = main.require_valid_password(password, required=True)
    salt, password_hash = main.create_password_credentials(value)
    with main.get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE User SET password_salt = ?, password_hash = ?, must_change_password = 0, updated_at = ?
            WHERE email = ?
            """,
            (salt, password_hash, main.now_iso(), normalized),
        )
        if not cur.rowcount:
            raise SystemExit(f"No user with email {normalized}")
        conn.commit()


def deactivate_agency(agency_id: str) -> int:
    with main.get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            "UPDATE Agency SET is_active = 0, updated_at = ? WHERE id = ?",
            (main.now_iso(), agency_id),
        )
        if not cur.rowcount:
            raise SystemExit(f"Agency {agency_id} does not exist")
        users = main.deactivate_agency_users(conn, agency_id)
        main.record_audit(
            conn,
            None,
            "agency_deactivated",
            "agency",
            agency_id,
            {"users_deactivated": users, "source": "cli"},
            "warning",
        )
        conn.commit()
    return users


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Maintenance tasks for the portal database.")
    p.add_argument("--db-path", type=Path, default=None, help="Override DB_PATH")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("inventory", help="Print row counts per table")

    roles = sub.add_parser("normalize-roles", help="Rewrite non-canonical role strings")
    roles.add_argument("--dry-run", action="store_true")

    sub.add_parser("find-orphans", help="List users whose agency no longer exists")

    reassign = sub.add_parser("reassign-users", help="Move every user from one agency to another")
    reassign.add_argument("--from-agency", required=True)
    reassign.add_argument("--to-agency", required=True)

    password = sub.add_parser("set-password", help="Set a user's password")
    password.add_argument("--email", required=True)
    password.add_argument("--password", required=True)

    deactivate = sub.add_parser("deactivate-agency", help="Deactivate an agency and its users")
    deactivate.add_argument("--agency-id", required=True)
    return p.parse_args(argv)


def run(args: argparse.Namespace) -> Any:
    if args.db_path:
        main.DB_PATH = args.db_path
    main.init_db()
    if args.command == "inventory":
        return inventory()
    if args.command == "normalize-roles":
        return {"changed": normalize_roles(args.dry_run), "dry_run": args.dry_run}
    if args.command == "find-orphans":
        return {"orphans": find_orphans()}
    if args.command == "reassign-users":
        return {"moved": reassign_users(args.from_agency, args.to_agency)}
    if args.command == "set-password":
        set_password(args.email, args.password)
        return {"status": "updated", "email": args.email}
    if args.command == "deactivate-agency":
        return {"status": "deactivated", "users_deactivated": deactivate_agency(args.agency_id)}
    raise SystemExit(f"Unknown command {args.command}")


def cli(argv: Optional[List[str]] = None) -> None:
    try:
        result = run(parse_args(argv))
    except HTTPException as exc:
        raise SystemExit(exc.detail)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    cli()

from __future__ import annotations

import calendar
from datetime import date
from typing import Optional

from .audit import write_audit_log
from .config import settings
from .db import get_conn
from .errors import DuplicateKey, InvalidState, NotFound, PreconditionFailed
from .jsonlog import json_log
from .models import PeriodIn, parse_input
from .references import require_user, user_exists
from .validation import parse_id

_PERIOD_COLS = "id, year, month, status, locked_at, locked_by, created_at, updated_at"


def period_label(row: dict) -> str:
    return f"{int(row['year']):04d}-{int(row['month']):02d}"


def period_bounds(row: dict) -> tuple[date, date]:
    year, month = int(row["year"]), int(row["month"])
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def fetch_period(cur, period_id, *, lock: str = "") -> Optional[dict]:
    # lock: "", "FOR SHARE" (gate reads) or "FOR UPDATE" (status change).
    cur.execute(f"SELECT {_PERIOD_COLS} FROM periods WHERE id = %s {lock}", (period_id,))
    return cur.fetchone()


def assert_period_open(cur, period_id) -> dict:
    """
    Gate for writes that target a period. Share-locks the row so a concurrent
    lock_period waits for this transaction (and then sees its draft journal).
    """
    row = fetch_period(cur, period_id, lock="FOR SHARE")
    if not row:
        raise NotFound("period not found", code="period_not_found")
    if row["status"] != "OPEN":
        raise InvalidState(f"accounting period {period_label(row)} is locked", code="period_locked")
    return row


def create_period(year: int, month: int, user_id=None) -> dict:
    data = parse_input(PeriodIn, {"year": year, "month": month})
    uid = parse_id(user_id, "user_id") if user_id is not None else None
    label = f"{data.year:04d}-{data.month:02d}"
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                require_user(cur, uid)
                cur.execute(
                    f"""
                    INSERT INTO periods (id, year, month, status)
                    VALUES (gen_random_uuid(), %s, %s, 'OPEN')
                    ON CONFLICT (year, month) DO NOTHING
                    RETURNING {_PERIOD_COLS}
                    """,
                    (data.year, data.month),
                )
                row = cur.fetchone()
                if not row:
                    raise DuplicateKey(f"period {label} already exists", code="duplicate_period")
                write_audit_log(cur, uid, "period.create", "period", row["id"], {"year": data.year, "month": data.month})
                return row


def get_current_period() -> Optional[dict]:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_PERIOD_COLS}
                FROM periods
                WHERE status = 'OPEN'
                ORDER BY year DESC, month DESC
                LIMIT 1
                """
            )
            return cur.fetchone()


def get_period(year: int, month: int) -> Optional[dict]:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {_PERIOD_COLS} FROM periods WHERE year = %s AND month = %s",
                (int(year), int(month)),
            )
            return cur.fetchone()


def get_period_by_id(period_id) -> Optional[dict]:
    pid = parse_id(period_id, "period_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            return fetch_period(cur, pid)


def list_periods() -> list:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_PERIOD_COLS} FROM periods ORDER BY year ASC, month ASC")
            return cur.fetchall()


def _close_errors(cur, period: dict) -> list:
    errors = []
    if period["status"] == "LOCKED":
        errors.append("period is already locked")

    cur.execute(
        "SELECT COUNT(*) AS c FROM journals WHERE period_id = %s AND status = 'DRAFT'",
        (period["id"],),
    )
    drafts = int(cur.fetchone()["c"])
    if drafts > 0:
        errors.append(f"period contains {drafts} draft journal(s)")

    if settings.close_requires_locked_fx:
        start, end = period_bounds(period)
        cur.execute(
            """
            SELECT COUNT(*) AS c
            FROM fx_rates
            WHERE rate_date BETWEEN %s AND %s
              AND is_locked = false
            """,
            (start, end),
        )
        unlocked = int(cur.fetchone()["c"])
        if unlocked > 0:
            errors.append(f"{unlocked} fx rate(s) in period are not locked")
    return errors


def validate_close(period_id) -> dict:
    pid = parse_id(period_id, "period_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            period = fetch_period(cur, pid)
            if not period:
                return {"can_close": False, "errors": ["period not found"]}
            errors = _close_errors(cur, period)
    return {"can_close": not errors, "errors": errors}


def lock_period(period_id, locked_by) -> dict:
    pid = parse_id(period_id, "period_id")
    uid = parse_id(locked_by, "locked_by")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                period = fetch_period(cur, pid, lock="FOR UPDATE")
                if not period:
                    raise NotFound("period not found", code="period_not_found")
                if not user_exists(cur, uid):
                    raise NotFound("user not found", code="user_not_found")

                label = period_label(period)
                errors = _close_errors(cur, period)
                if errors:
                    json_log("info", "period.lock_rejected", period_id=pid, period=label, errors=errors)
                    if period["status"] == "LOCKED":
                        raise InvalidState(f"period {label} is already locked", code="already_locked", errors=errors)
                    raise PreconditionFailed(
                        f"cannot close period {label}: " + "; ".join(errors),
                        code="cannot_close",
                        errors=errors,
                    )

                cur.execute(
                    f"""
                    UPDATE periods
                    SET status = 'LOCKED',
                        locked_at = now(),
                        locked_by = %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_PERIOD_COLS}
                    """,
                    (uid, pid),
                )
                row = cur.fetchone()
                write_audit_log(cur, uid, "period.lock", "period", pid, {"period": label})

    json_log("info", "period.locked", period_id=pid, period=label, locked_by=uid)
    return row

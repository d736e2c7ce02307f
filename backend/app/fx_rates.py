from __future__ import annotations

from datetime import date
from typing import Optional

from .audit import write_audit_log
from .db import get_conn
from .errors import InvalidState, NotFound, PreconditionFailed, ValidationFailed
from .jsonlog import json_log
from .models import FxRateCorrectionIn, FxRateIn, parse_input
from .references import require_user
from .validation import parse_id

_RATE_COLS = "id, rate_date, usd_to_pkr_rate, is_locked, locked_at, locked_by, created_at, updated_at"


def _rate_on_or_before(cur, rate_date: date, *, for_share: bool = False) -> Optional[dict]:
    # Exact match is just the newest row with rate_date <= the requested day.
    cur.execute(
        f"""
        SELECT {_RATE_COLS}
        FROM fx_rates
        WHERE rate_date <= %s
        ORDER BY rate_date DESC
        LIMIT 1
        {'FOR SHARE' if for_share else ''}
        """,
        (rate_date,),
    )
    return cur.fetchone()


def require_rate(cur, rate_date: date, *, for_share: bool = True) -> dict:
    """
    Rate effective on `rate_date` for a conversion happening inside the caller's
    transaction. By default the row is share-locked so it cannot be re-set or
    locked with a different value before the caller commits.
    """
    row = _rate_on_or_before(cur, rate_date, for_share=for_share)
    if not row:
        raise PreconditionFailed(
            f"no fx rate available on or before {rate_date.isoformat()}",
            code="no_fx_rate",
        )
    return row


def set_rate(rate_date: date, usd_to_pkr_rate, user_id=None) -> dict:
    """
    Insert or update the USD->PKR rate for a day. A locked day can never change;
    the upsert only touches unlocked rows so the check and the write are one statement.
    """
    data = parse_input(FxRateIn, {"rate_date": rate_date, "usd_to_pkr_rate": usd_to_pkr_rate})
    rate = data.usd_to_pkr_rate
    uid = parse_id(user_id, "user_id") if user_id is not None else None

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                require_user(cur, uid)
                cur.execute(
                    f"""
                    INSERT INTO fx_rates (id, rate_date, usd_to_pkr_rate)
                    VALUES (gen_random_uuid(), %s, %s)
                    ON CONFLICT (rate_date) DO UPDATE
                    SET usd_to_pkr_rate = EXCLUDED.usd_to_pkr_rate,
                        updated_at = now()
                    WHERE fx_rates.is_locked = false
                    RETURNING {_RATE_COLS}
                    """,
                    (data.rate_date, rate),
                )
                row = cur.fetchone()
                if not row:
                    json_log("info", "fx.rate.set_rejected", rate_date=data.rate_date, reason="locked")
                    raise InvalidState(
                        f"fx rate for {data.rate_date.isoformat()} is locked",
                        code="rate_locked",
                    )
                write_audit_log(
                    cur,
                    uid,
                    "fx.rate.set",
                    "fx_rate",
                    row["id"],
                    {"rate_date": str(data.rate_date), "usd_to_pkr_rate": str(rate)},
                )

    json_log("info", "fx.rate.set", rate_id=row["id"], rate_date=row["rate_date"], usd_to_pkr_rate=row["usd_to_pkr_rate"])
    return row


def get_rate(rate_date: date) -> Optional[dict]:
    with get_conn() as conn:
        with conn.cursor() as cur:
            return _rate_on_or_before(cur, rate_date)


def get_rate_by_id(rate_id) -> Optional[dict]:
    rid = parse_id(rate_id, "rate_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_RATE_COLS} FROM fx_rates WHERE id = %s", (rid,))
            return cur.fetchone()


def get_rates_in_range(from_date: date, to_date: date) -> list:
    if from_date > to_date:
        raise ValidationFailed("to_date cannot be before from_date", code="invalid_input")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_RATE_COLS}
                FROM fx_rates
                WHERE rate_date BETWEEN %s AND %s
                ORDER BY rate_date DESC
                """,
                (from_date, to_date),
            )
            return cur.fetchall()


def lock_rate(rate_id, user_id=None, usd_to_pkr_rate=None) -> dict:
    """
    One-way lock. When `usd_to_pkr_rate` is given the value is corrected and
    locked in the same transaction.
    """
    rid = parse_id(rate_id, "rate_id")
    uid = parse_id(user_id, "user_id") if user_id is not None else None
    new_rate = None
    if usd_to_pkr_rate is not None:
        new_rate = parse_input(FxRateCorrectionIn, {"usd_to_pkr_rate": usd_to_pkr_rate}).usd_to_pkr_rate

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_RATE_COLS} FROM fx_rates WHERE id = %s FOR UPDATE", (rid,))
                current = cur.fetchone()
                if not current:
                    raise NotFound("fx rate not found", code="rate_not_found")
                if current["is_locked"]:
                    raise InvalidState(
                        f"fx rate for {current['rate_date'].isoformat()} is already locked",
                        code="already_locked",
                    )
                require_user(cur, uid)
                cur.execute(
                    f"""
                    UPDATE fx_rates
                    SET usd_to_pkr_rate = COALESCE(%s, usd_to_pkr_rate),
                        is_locked = true,
                        locked_at = now(),
                        locked_by = %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_RATE_COLS}
                    """,
                    (new_rate, uid, rid),
                )
                row = cur.fetchone()
                write_audit_log(
                    cur,
                    uid,
                    "fx.rate.lock",
                    "fx_rate",
                    rid,
                    {
                        "rate_date": str(row["rate_date"]),
                        "usd_to_pkr_rate": str(row["usd_to_pkr_rate"]),
                        "previous_rate": str(current["usd_to_pkr_rate"]),
                    },
                )

    json_log("info", "fx.rate.locked", rate_id=rid, rate_date=row["rate_date"], usd_to_pkr_rate=row["usd_to_pkr_rate"])
    return row


def get_current_rate(today: Optional[date] = None) -> dict:
    """Latest rate dated today or earlier. Future-dated rates never count as current."""
    as_of = today or date.today()
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = _rate_on_or_before(cur, as_of)
    if not row:
        raise PreconditionFailed("no fx rate available", code="no_rate_available")
    return row

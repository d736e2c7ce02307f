from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from .audit import write_audit_log
from .config import settings
from .db import get_conn
from .errors import InvalidState, NotFound
from .fx_rates import require_rate
from .jsonlog import json_log
from .models import CapitalMovementFilters, CapitalMovementIn, parse_input
from .money import d, q_amount, to_base
from .references import partner_exists, require_user, user_exists
from .validation import parse_id

_MOVEMENT_COLS = (
    "id, partner_id, movement_type, amount, currency, amount_base, fx_rate, "
    "description, transaction_date, journal_id, created_by, created_at"
)


def create_movement(data) -> dict:
    """
    Record a partner contribution or draw. Non-base amounts are converted with
    the FX rate effective on the transaction date, read in the same transaction
    as the insert.
    """
    data = parse_input(CapitalMovementIn, data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if not partner_exists(cur, data.partner_id):
                    raise NotFound("partner not found", code="partner_not_found")
                if not user_exists(cur, data.created_by):
                    raise NotFound("user not found", code="user_not_found")

                fx_rate = None
                if data.currency != settings.base_currency:
                    fx_rate = d(require_rate(cur, data.transaction_date)["usd_to_pkr_rate"])
                amount_base = to_base(data.amount, data.currency, fx_rate)

                cur.execute(
                    f"""
                    INSERT INTO capital_movements
                      (id, partner_id, movement_type, amount, currency, amount_base, fx_rate,
                       description, transaction_date, created_by)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_MOVEMENT_COLS}
                    """,
                    (
                        data.partner_id,
                        data.movement_type,
                        data.amount,
                        data.currency,
                        amount_base,
                        fx_rate,
                        data.description,
                        data.transaction_date,
                        data.created_by,
                    ),
                )
                row = cur.fetchone()
                write_audit_log(
                    cur,
                    data.created_by,
                    "capital.movement.create",
                    "capital_movement",
                    row["id"],
                    {
                        "partner_id": data.partner_id,
                        "movement_type": data.movement_type,
                        "amount": row["amount"],
                        "currency": data.currency,
                        "amount_base": row["amount_base"],
                    },
                )

    json_log(
        "info",
        "capital.movement.created",
        movement_id=row["id"],
        partner_id=row["partner_id"],
        movement_type=row["movement_type"],
        amount=row["amount"],
        currency=row["currency"],
        amount_base=row["amount_base"],
    )
    return row


def link_journal(movement_id, journal_id, user_id=None) -> dict:
    mid = parse_id(movement_id, "movement_id")
    jid = parse_id(journal_id, "journal_id")
    uid = parse_id(user_id, "user_id") if user_id is not None else None
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_MOVEMENT_COLS} FROM capital_movements WHERE id = %s FOR UPDATE", (mid,))
                movement = cur.fetchone()
                if not movement:
                    raise NotFound("capital movement not found", code="movement_not_found")
                cur.execute("SELECT id FROM journals WHERE id = %s", (jid,))
                if not cur.fetchone():
                    raise NotFound("journal not found", code="journal_not_found")
                require_user(cur, uid)

                linked = movement.get("journal_id")
                if linked:
                    if str(linked) == jid:
                        return movement
                    raise InvalidState("capital movement is already linked to another journal", code="already_linked")

                cur.execute(
                    f"""
                    UPDATE capital_movements
                    SET journal_id = %s
                    WHERE id = %s
                    RETURNING {_MOVEMENT_COLS}
                    """,
                    (jid, mid),
                )
                row = cur.fetchone()
                write_audit_log(cur, uid, "capital.movement.link", "capital_movement", mid, {"journal_id": jid})
                return row


def list_movements(filters=None) -> list:
    f = parse_input(CapitalMovementFilters, filters or {})
    with get_conn() as conn:
        with conn.cursor() as cur:
            sql = f"SELECT {_MOVEMENT_COLS} FROM capital_movements WHERE 1=1"
            params: list = []
            if f.partner_id:
                sql += " AND partner_id = %s"
                params.append(f.partner_id)
            if f.movement_type:
                sql += " AND movement_type = %s"
                params.append(f.movement_type)
            if f.from_date:
                sql += " AND transaction_date >= %s"
                params.append(f.from_date)
            if f.to_date:
                sql += " AND transaction_date <= %s"
                params.append(f.to_date)
            sql += " ORDER BY transaction_date DESC, created_at DESC"
            cur.execute(sql, params)
            return cur.fetchall()


def list_partner_movements(partner_id) -> list:
    return list_movements({"partner_id": partner_id})


def get_partner_balance(partner_id, as_of: Optional[date] = None, today: Optional[date] = None) -> dict:
    """
    Net capital per currency (contributions minus draws), optionally as of a
    date, plus the PKR total with USD converted at the rate effective on
    `as_of` (or today).
    """
    pid = parse_id(partner_id, "partner_id")
    rate_day = as_of or today or date.today()
    with get_conn() as conn:
        with conn.cursor() as cur:
            if not partner_exists(cur, pid):
                raise NotFound("partner not found", code="partner_not_found")

            sql = """
                SELECT currency,
                       COALESCE(SUM(CASE WHEN movement_type = 'CONTRIBUTION' THEN amount ELSE -amount END), 0) AS net
                FROM capital_movements
                WHERE partner_id = %s
            """
            params: list = [pid]
            if as_of:
                sql += " AND transaction_date <= %s"
                params.append(as_of)
            sql += " GROUP BY currency"
            cur.execute(sql, params)
            nets = {r["currency"]: d(r["net"]) for r in cur.fetchall()}

            usd_balance = q_amount(nets.get("USD", Decimal("0")))
            pkr_balance = q_amount(nets.get(settings.base_currency, Decimal("0")))
            fx_rate = None
            usd_in_pkr = Decimal("0")
            if usd_balance != 0:
                fx_rate = d(require_rate(cur, rate_day, for_share=False)["usd_to_pkr_rate"])
                usd_in_pkr = to_base(usd_balance, "USD", fx_rate)

    return {
        "partner_id": pid,
        "as_of": as_of,
        "usd_balance": usd_balance,
        "pkr_balance": pkr_balance,
        "fx_rate": fx_rate,
        "total_balance_pkr": q_amount(pkr_balance + usd_in_pkr),
    }

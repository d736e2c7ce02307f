from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from .audit import write_audit_log
from .config import settings
from .db import get_conn
from .errors import InvalidState, NotFound, PreconditionFailed, ValidationFailed
from .fx_rates import require_rate
from .jsonlog import json_log
from .models import JournalFilters, JournalIn, JournalLineIn, parse_input
from .money import base_amounts, d, fmt2, is_balanced
from .periods import assert_period_open, fetch_period
from .references import employee_exists, get_account, partner_exists, require_user, user_exists
from .validation import parse_id

_JOURNAL_COLS = (
    "id, reference, description, transaction_date, period_id, status, "
    "posted_at, posted_by, created_by, created_at, updated_at"
)
_LINE_COLS = (
    "id, journal_id, account_id, description, debit_amount, credit_amount, "
    "debit_amount_base, credit_amount_base, fx_rate, partner_id, employee_id, created_at"
)


def _fetch_journal(cur, journal_id, *, for_update: bool = False) -> Optional[dict]:
    cur.execute(
        f"SELECT {_JOURNAL_COLS} FROM journals WHERE id = %s {'FOR UPDATE' if for_update else ''}",
        (journal_id,),
    )
    return cur.fetchone()


def _fetch_lines(cur, journal_id) -> list:
    cur.execute(
        f"""
        SELECT {_LINE_COLS}
        FROM journal_lines
        WHERE journal_id = %s
        ORDER BY created_at, id
        """,
        (journal_id,),
    )
    return cur.fetchall()


def check_lines(lines: Iterable[dict], tolerance: Optional[Decimal] = None) -> list:
    """
    Double-entry rules for a set of journal lines. Every rule is evaluated so
    the caller gets the full list of problems, except an empty journal, which
    is reported on its own.
    """
    lines = list(lines)
    if not lines:
        return ["Journal has no lines"]

    errors = []
    total_debit = Decimal("0")
    total_credit = Decimal("0")
    total_debit_base = Decimal("0")
    total_credit_base = Decimal("0")
    for line in lines:
        debit = d(line.get("debit_amount"))
        credit = d(line.get("credit_amount"))
        total_debit += debit
        total_credit += credit
        total_debit_base += d(line.get("debit_amount_base"))
        total_credit_base += d(line.get("credit_amount_base"))

        if debit != 0 and credit != 0:
            errors.append(f"Line {line.get('id')}: cannot have both debit and credit amounts")
        elif debit == 0 and credit == 0:
            errors.append(f"Line {line.get('id')}: must have either a debit or a credit amount")

    if not is_balanced(total_debit, total_credit, tolerance):
        errors.append(f"Debits ({fmt2(total_debit)}) do not equal credits ({fmt2(total_credit)})")
    if not is_balanced(total_debit_base, total_credit_base, tolerance):
        errors.append(
            f"Base currency debits ({fmt2(total_debit_base)}) do not equal "
            f"base currency credits ({fmt2(total_credit_base)})"
        )
    return errors


def create_journal(data) -> dict:
    data = parse_input(JournalIn, data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                assert_period_open(cur, data.period_id)
                if not user_exists(cur, data.created_by):
                    raise NotFound("user not found", code="user_not_found")

                cur.execute(
                    f"""
                    INSERT INTO journals
                      (id, reference, description, transaction_date, period_id, status, created_by)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, 'DRAFT', %s)
                    RETURNING {_JOURNAL_COLS}
                    """,
                    (data.reference, data.description, data.transaction_date, data.period_id, data.created_by),
                )
                row = cur.fetchone()
                write_audit_log(
                    cur,
                    data.created_by,
                    "journal.create",
                    "journal",
                    row["id"],
                    {"reference": data.reference, "period_id": data.period_id},
                )
                return row


def _line_base_amounts(cur, journal: dict, account: dict, data: JournalLineIn):
    # Amounts arrive already rounded by JournalLineIn.
    fx_rate = data.fx_rate
    if data.debit_amount_base is not None:
        return data.debit_amount_base, data.credit_amount_base, fx_rate

    currency = account["currency"]
    if currency == settings.base_currency:
        return data.debit_amount, data.credit_amount, fx_rate
    if fx_rate is None:
        fx_rate = d(require_rate(cur, journal["transaction_date"])["usd_to_pkr_rate"])
    debit_base, credit_base = base_amounts(data.debit_amount, data.credit_amount, currency, fx_rate)
    return debit_base, credit_base, fx_rate


def add_line(journal_id, data) -> dict:
    """
    Append a line to a DRAFT journal. Lines may leave the journal unbalanced;
    balance is only enforced at post time.
    """
    jid = parse_id(journal_id, "journal_id")
    data = parse_input(JournalLineIn, data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                journal = _fetch_journal(cur, jid, for_update=True)
                if not journal:
                    raise NotFound("journal not found", code="journal_not_found")
                if journal["status"] == "POSTED":
                    raise InvalidState("cannot modify posted journal", code="journal_posted")

                account = get_account(cur, data.account_id)
                if not account:
                    raise NotFound("account not found", code="account_not_found")
                if data.partner_id and not partner_exists(cur, data.partner_id):
                    raise NotFound("partner not found", code="partner_not_found")
                if data.employee_id and not employee_exists(cur, data.employee_id):
                    raise NotFound("employee not found", code="employee_not_found")
                require_user(cur, data.user_id)

                debit_base, credit_base, fx_rate = _line_base_amounts(cur, journal, account, data)
                cur.execute(
                    f"""
                    INSERT INTO journal_lines
                      (id, journal_id, account_id, description, debit_amount, credit_amount,
                       debit_amount_base, credit_amount_base, fx_rate, partner_id, employee_id)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_LINE_COLS}
                    """,
                    (
                        jid,
                        data.account_id,
                        data.description,
                        data.debit_amount,
                        data.credit_amount,
                        debit_base,
                        credit_base,
                        fx_rate,
                        data.partner_id,
                        data.employee_id,
                    ),
                )
                row = cur.fetchone()
                write_audit_log(
                    cur,
                    data.user_id,
                    "journal.line.add",
                    "journal",
                    jid,
                    {
                        "line_id": row["id"],
                        "account_id": data.account_id,
                        "debit_amount": row["debit_amount"],
                        "credit_amount": row["credit_amount"],
                        "debit_amount_base": row["debit_amount_base"],
                        "credit_amount_base": row["credit_amount_base"],
                    },
                )
                return row


def delete_line(line_id, user_id=None) -> bool:
    lid = parse_id(line_id, "line_id")
    uid = parse_id(user_id, "user_id") if user_id is not None else None
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, journal_id FROM journal_lines WHERE id = %s", (lid,))
                line = cur.fetchone()
                if not line:
                    raise NotFound("journal line not found", code="line_not_found")
                journal = _fetch_journal(cur, line["journal_id"], for_update=True)
                if not journal:
                    raise NotFound("journal not found", code="journal_not_found")
                if journal["status"] == "POSTED":
                    raise InvalidState("cannot delete line from posted journal", code="journal_posted")
                require_user(cur, uid)

                cur.execute("DELETE FROM journal_lines WHERE id = %s", (lid,))
                write_audit_log(cur, uid, "journal.line.delete", "journal", journal["id"], {"line_id": lid})
    return True


def validate_journal(journal_id) -> dict:
    jid = parse_id(journal_id, "journal_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            if not _fetch_journal(cur, jid):
                raise NotFound("journal not found", code="journal_not_found")
            lines = _fetch_lines(cur, jid)
    errors = check_lines(lines)
    return {"is_valid": not errors, "errors": errors}


def post_journal(journal_id, posted_by) -> dict:
    """
    DRAFT -> POSTED. The single commit point after which a journal is immutable.

    The journal row is locked for update and its period row share-locked for the
    whole check-then-act sequence, so two concurrent posts cannot both succeed and
    a period cannot be locked underneath a post in flight.
    """
    jid = parse_id(journal_id, "journal_id")
    uid = parse_id(posted_by, "posted_by")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                journal = _fetch_journal(cur, jid, for_update=True)
                if not journal:
                    raise NotFound("journal not found", code="journal_not_found")
                if journal["status"] == "POSTED":
                    raise InvalidState("journal already posted", code="already_posted")

                period = fetch_period(cur, journal["period_id"], lock="FOR SHARE")
                if not period or period["status"] != "OPEN":
                    raise PreconditionFailed("cannot post journal in locked period", code="period_locked")

                errors = check_lines(_fetch_lines(cur, jid))
                if errors:
                    json_log("info", "journal.post_rejected", journal_id=jid, errors=errors)
                    raise ValidationFailed(
                        "journal validation failed: " + "; ".join(errors),
                        code="validation_failed",
                        errors=errors,
                    )

                if not user_exists(cur, uid):
                    raise NotFound("user not found", code="user_not_found")

                cur.execute(
                    f"""
                    UPDATE journals
                    SET status = 'POSTED',
                        posted_at = now(),
                        posted_by = %s,
                        updated_at = now()
                    WHERE id = %s AND status = 'DRAFT'
                    RETURNING {_JOURNAL_COLS}
                    """,
                    (uid, jid),
                )
                row = cur.fetchone()
                write_audit_log(cur, uid, "journal.post", "journal", jid, {"reference": row["reference"]})

    json_log("info", "journal.posted", journal_id=jid, reference=row["reference"], posted_by=uid)
    return row


def get_journal(journal_id) -> Optional[dict]:
    jid = parse_id(journal_id, "journal_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            journal = _fetch_journal(cur, jid)
            if not journal:
                return None
            return {**journal, "lines": _fetch_lines(cur, jid)}


def list_journals(filters=None) -> list:
    f = parse_input(JournalFilters, filters or {})
    with get_conn() as conn:
        with conn.cursor() as cur:
            sql = f"SELECT {_JOURNAL_COLS} FROM journals WHERE 1=1"
            params: list = []
            if f.period_id:
                sql += " AND period_id = %s"
                params.append(f.period_id)
            if f.status:
                sql += " AND status = %s"
                params.append(f.status)
            if f.from_date:
                sql += " AND transaction_date >= %s"
                params.append(f.from_date)
            if f.to_date:
                sql += " AND transaction_date <= %s"
                params.append(f.to_date)
            sql += " ORDER BY transaction_date DESC, created_at DESC"
            cur.execute(sql, params)
            return cur.fetchall()

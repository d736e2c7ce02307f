import copy
import os
import re
import sys
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


_FILTER_RE = re.compile(r"AND (\w+) (=|>=|<=) %s")
_OPS = {
    "=": lambda a, b: a == b,
    ">=": lambda a, b: a >= b,
    "<=": lambda a, b: a <= b,
}


def _norm(sql) -> str:
    return " ".join(str(sql or "").split())


class FakeLedgerDb:
    """
    Tiny in-memory stand-in for the Postgres tables the ledger touches.
    Only understands the statements the ledger modules actually issue.
    """

    TABLES = (
        "accounts",
        "partners",
        "employees",
        "users",
        "fx_rates",
        "periods",
        "journals",
        "journal_lines",
        "capital_movements",
        "audit_logs",
    )

    def __init__(self):
        self.tables = {t: {} for t in self.TABLES}
        self._seq = 0
        self.statements: list[str] = []

    # -- helpers -----------------------------------------------------------
    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def _now(self) -> datetime:
        self._seq += 1
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._seq)

    def snapshot(self):
        return copy.deepcopy((self.tables, self._seq))

    def restore(self, snap):
        self.tables, self._seq = snap

    def rows(self, table):
        return list(self.tables[table].values())

    # -- seeding -----------------------------------------------------------
    def add_user(self, name="Finance User"):
        uid = self._new_id()
        self.tables["users"][uid] = {"id": uid, "email": f"{uid}@example.com", "name": name, "is_active": True}
        return uid

    def add_partner(self, name="Partner"):
        pid = self._new_id()
        self.tables["partners"][pid] = {"id": pid, "name": name}
        return pid

    def add_employee(self, name="Employee"):
        eid = self._new_id()
        self.tables["employees"][eid] = {"id": eid, "name": name}
        return eid

    def add_account(self, code="1000", currency="PKR", account_type="ASSET"):
        aid = self._new_id()
        self.tables["accounts"][aid] = {
            "id": aid,
            "code": code,
            "name": f"Account {code}",
            "account_type": account_type,
            "currency": currency,
            "is_active": True,
        }
        return aid

    def add_period(self, year=2024, month=1, status="OPEN"):
        pid = self._new_id()
        now = self._now()
        self.tables["periods"][pid] = {
            "id": pid,
            "year": year,
            "month": month,
            "status": status,
            "locked_at": now if status == "LOCKED" else None,
            "locked_by": None,
            "created_at": now,
            "updated_at": now,
        }
        return pid

    def add_rate(self, rate_date, rate, is_locked=False):
        rid = self._new_id()
        now = self._now()
        self.tables["fx_rates"][rid] = {
            "id": rid,
            "rate_date": rate_date,
            "usd_to_pkr_rate": Decimal(str(rate)),
            "is_locked": is_locked,
            "locked_at": now if is_locked else None,
            "locked_by": None,
            "created_at": now,
            "updated_at": now,
        }
        return rid

    def add_journal(self, period_id, created_by, status="DRAFT", transaction_date=date(2024, 1, 15), reference="JV-1"):
        jid = self._new_id()
        now = self._now()
        self.tables["journals"][jid] = {
            "id": jid,
            "reference": reference,
            "description": "seeded",
            "transaction_date": transaction_date,
            "period_id": period_id,
            "status": status,
            "posted_at": now if status == "POSTED" else None,
            "posted_by": created_by if status == "POSTED" else None,
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
        }
        return jid

    def add_line(self, journal_id, account_id, debit="0", credit="0", debit_base=None, credit_base=None):
        lid = self._new_id()
        self.tables["journal_lines"][lid] = {
            "id": lid,
            "journal_id": journal_id,
            "account_id": account_id,
            "description": "",
            "debit_amount": Decimal(str(debit)),
            "credit_amount": Decimal(str(credit)),
            "debit_amount_base": Decimal(str(debit if debit_base is None else debit_base)),
            "credit_amount_base": Decimal(str(credit if credit_base is None else credit_base)),
            "fx_rate": None,
            "partner_id": None,
            "employee_id": None,
            "created_at": self._now(),
        }
        return lid

    def add_movement(self, partner_id, created_by, movement_type, amount, currency, transaction_date, fx_rate=None, journal_id=None):
        mid = self._new_id()
        amount = Decimal(str(amount))
        rate = Decimal(str(fx_rate)) if fx_rate is not None else None
        self.tables["capital_movements"][mid] = {
            "id": mid,
            "partner_id": partner_id,
            "movement_type": movement_type,
            "amount": amount,
            "currency": currency,
            "amount_base": amount * rate if rate is not None else amount,
            "fx_rate": rate,
            "description": "seeded",
            "transaction_date": transaction_date,
            "journal_id": journal_id,
            "created_by": created_by,
            "created_at": self._now(),
        }
        return mid

    # -- statement dispatch ------------------------------------------------
    def execute(self, sql, params=None):
        text = _norm(sql)
        params = list(params or [])
        self.statements.append(text)

        m = re.match(r"SELECT 1 FROM (\w+) WHERE id = %s$", text)
        if m:
            row = self.tables[m.group(1)].get(params[0])
            return [{"?column?": 1}] if row else []

        if text.startswith("INSERT INTO audit_logs"):
            user_id, action, entity_type, entity_id, details = params
            aid = self._new_id()
            self.tables["audit_logs"][aid] = {
                "id": aid,
                "user_id": user_id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": str(entity_id) if entity_id is not None else None,
                "details": details,
                "created_at": self._now(),
            }
            return []
        if "FROM audit_logs" in text:
            rows = self._filter(self.rows("audit_logs"), text, params[:-1])
            rows.sort(key=lambda r: r["created_at"], reverse=True)
            return rows[: params[-1]]

        if "FROM accounts WHERE id = %s" in text:
            row = self.tables["accounts"].get(params[0])
            return [dict(row)] if row else []

        if text.startswith("INSERT INTO fx_rates"):
            return self._upsert_rate(*params)
        if text.startswith("UPDATE fx_rates"):
            new_rate, uid, rid = params
            row = self.tables["fx_rates"][rid]
            if new_rate is not None:
                row["usd_to_pkr_rate"] = new_rate
            row.update(is_locked=True, locked_at=self._now(), locked_by=uid, updated_at=self._now())
            return [dict(row)]
        if "FROM fx_rates WHERE rate_date <= %s" in text:
            rows = [r for r in self.rows("fx_rates") if r["rate_date"] <= params[0]]
            rows.sort(key=lambda r: r["rate_date"], reverse=True)
            return [dict(r) for r in rows[:1]]
        if text.startswith("SELECT COUNT(*) AS c FROM fx_rates"):
            start, end = params
            c = sum(1 for r in self.rows("fx_rates") if start <= r["rate_date"] <= end and not r["is_locked"])
            return [{"c": c}]
        if "FROM fx_rates WHERE rate_date BETWEEN %s AND %s" in text:
            start, end = params
            rows = [dict(r) for r in self.rows("fx_rates") if start <= r["rate_date"] <= end]
            rows.sort(key=lambda r: r["rate_date"], reverse=True)
            return rows
        if "FROM fx_rates WHERE id = %s" in text:
            row = self.tables["fx_rates"].get(params[0])
            return [dict(row)] if row else []

        if text.startswith("INSERT INTO periods"):
            year, month = params
            if any(p["year"] == year and p["month"] == month for p in self.rows("periods")):
                return []
            pid = self.add_period(year, month)
            return [dict(self.tables["periods"][pid])]
        if text.startswith("UPDATE periods"):
            uid, pid = params
            row = self.tables["periods"][pid]
            row.update(status="LOCKED", locked_at=self._now(), locked_by=uid, updated_at=self._now())
            return [dict(row)]
        if "FROM periods WHERE id = %s" in text:
            row = self.tables["periods"].get(params[0])
            return [dict(row)] if row else []
        if "FROM periods WHERE status = 'OPEN'" in text:
            rows = [r for r in self.rows("periods") if r["status"] == "OPEN"]
            rows.sort(key=lambda r: (r["year"], r["month"]), reverse=True)
            return [dict(r) for r in rows[:1]]
        if "FROM periods WHERE year = %s AND month = %s" in text:
            return [dict(r) for r in self.rows("periods") if r["year"] == params[0] and r["month"] == params[1]]
        if "FROM periods ORDER BY year ASC, month ASC" in text:
            rows = sorted(self.rows("periods"), key=lambda r: (r["year"], r["month"]))
            return [dict(r) for r in rows]

        if text.startswith("SELECT COUNT(*) AS c FROM journals"):
            c = sum(1 for j in self.rows("journals") if j["period_id"] == params[0] and j["status"] == "DRAFT")
            return [{"c": c}]
        if text.startswith("INSERT INTO journals"):
            reference, description, transaction_date, period_id, created_by = params
            jid = self.add_journal(period_id, created_by, transaction_date=transaction_date, reference=reference)
            self.tables["journals"][jid]["description"] = description
            return [dict(self.tables["journals"][jid])]
        if text.startswith("UPDATE journals"):
            uid, jid = params
            row = self.tables["journals"].get(jid)
            if not row or row["status"] != "DRAFT":
                return []
            row.update(status="POSTED", posted_at=self._now(), posted_by=uid, updated_at=self._now())
            return [dict(row)]
        if text.startswith("SELECT id FROM journals WHERE id = %s"):
            return [{"id": params[0]}] if params[0] in self.tables["journals"] else []
        if "FROM journals WHERE id = %s" in text:
            row = self.tables["journals"].get(params[0])
            return [dict(row)] if row else []
        if "FROM journals WHERE 1=1" in text:
            rows = self._filter(self.rows("journals"), text, params)
            rows.sort(key=lambda r: (r["transaction_date"], r["created_at"]), reverse=True)
            return rows

        if text.startswith("INSERT INTO journal_lines"):
            (jid, account_id, description, debit, credit, debit_base, credit_base, fx_rate, partner_id, employee_id) = params
            lid = self.add_line(jid, account_id, debit, credit, debit_base, credit_base)
            self.tables["journal_lines"][lid].update(
                description=description, fx_rate=fx_rate, partner_id=partner_id, employee_id=employee_id
            )
            return [dict(self.tables["journal_lines"][lid])]
        if text.startswith("DELETE FROM journal_lines"):
            self.tables["journal_lines"].pop(params[0], None)
            return []
        if text.startswith("SELECT id, journal_id FROM journal_lines WHERE id = %s"):
            row = self.tables["journal_lines"].get(params[0])
            return [{"id": row["id"], "journal_id": row["journal_id"]}] if row else []
        if "FROM journal_lines WHERE journal_id = %s" in text:
            rows = [dict(r) for r in self.rows("journal_lines") if r["journal_id"] == params[0]]
            rows.sort(key=lambda r: (r["created_at"], r["id"]))
            return rows

        if text.startswith("INSERT INTO capital_movements"):
            (partner_id, movement_type, amount, currency, amount_base, fx_rate, description, transaction_date, created_by) = params
            mid = self.add_movement(partner_id, created_by, movement_type, amount, currency, transaction_date)
            self.tables["capital_movements"][mid].update(amount_base=amount_base, fx_rate=fx_rate, description=description)
            return [dict(self.tables["capital_movements"][mid])]
        if text.startswith("UPDATE capital_movements"):
            jid, mid = params
            row = self.tables["capital_movements"][mid]
            row["journal_id"] = jid
            return [dict(row)]
        if "FROM capital_movements WHERE id = %s" in text:
            row = self.tables["capital_movements"].get(params[0])
            return [dict(row)] if row else []
        if text.startswith("SELECT currency, COALESCE(SUM("):
            partner_id = params[0]
            as_of = params[1] if len(params) > 1 else None
            nets = {}
            for r in self.rows("capital_movements"):
                if r["partner_id"] != partner_id:
                    continue
                if as_of is not None and r["transaction_date"] > as_of:
                    continue
                sign = 1 if r["movement_type"] == "CONTRIBUTION" else -1
                nets[r["currency"]] = nets.get(r["currency"], Decimal("0")) + sign * r["amount"]
            return [{"currency": c, "net": n} for c, n in nets.items()]
        if "FROM capital_movements WHERE 1=1" in text:
            rows = self._filter(self.rows("capital_movements"), text, params)
            rows.sort(key=lambda r: (r["transaction_date"], r["created_at"]), reverse=True)
            return rows

        raise AssertionError(f"unexpected SQL in fake ledger db: {text}")

    def _filter(self, rows, text, params):
        clauses = _FILTER_RE.findall(text)
        assert len(clauses) == len(params), f"filter/param mismatch: {text} {params}"
        out = []
        for r in rows:
            if all(_OPS[op](r[col], val) for (col, op), val in zip(clauses, params)):
                out.append(dict(r))
        return out

    def _upsert_rate(self, rate_date, rate):
        for row in self.rows("fx_rates"):
            if row["rate_date"] == rate_date:
                if row["is_locked"]:
                    return []
                row.update(usd_to_pkr_rate=rate, updated_at=self._now())
                return [dict(row)]
        rid = self.add_rate(rate_date, rate)
        return [dict(self.tables["fx_rates"][rid])]


class _FakeCursor:
    def __init__(self, db: FakeLedgerDb):
        self._db = db
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self._rows = self._db.execute(sql, params)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class _FakeConn:
    def __init__(self, db: FakeLedgerDb):
        self._db = db

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        snap = self._db.snapshot()
        try:
            yield self
        except BaseException:
            self._db.restore(snap)
            raise

    def cursor(self):
        return _FakeCursor(self._db)


@pytest.fixture
def ledger_db(monkeypatch):
    from backend.app import audit, capital, fx_rates, journals, periods

    db = FakeLedgerDb()
    conn = _FakeConn(db)
    for mod in (audit, capital, fx_rates, journals, periods):
        monkeypatch.setattr(mod, "get_conn", lambda: conn)
    return db


@pytest.fixture
def user_id(ledger_db):
    return ledger_db.add_user()

#!/usr/bin/env python3
"""
Ledger integrity checks (v1).

Verifies the invariants the posting/locking workflow is supposed to guarantee:
- Posted journals have lines and balance in transaction and base currency
- Posted journal lines carry exactly one of debit/credit
- Locked periods contain no draft journals
- Non-base capital movements match amount x fx_rate in base currency

This is intentionally read-only and safe to run against production DBs.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass


# Allow running from repo root without installing as a package.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.config import settings  # noqa: E402
from backend.app.db import close_pool, get_conn  # noqa: E402
from backend.app.money import d, q_amount  # noqa: E402


@dataclass
class Finding:
    kind: str
    id: str
    ref: str
    message: str


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--limit", type=int, default=200, help="Rows per check (default: 200)")
    return p.parse_args()


def check_posted_journal_balance(limit: int) -> list[Finding]:
    findings: list[Finding] = []
    tol = settings.balance_tolerance
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT j.id,
                       j.reference,
                       j.transaction_date,
                       COUNT(l.id) AS line_count,
                       COALESCE(SUM(l.debit_amount - l.credit_amount), 0) AS delta,
                       COALESCE(SUM(l.debit_amount_base - l.credit_amount_base), 0) AS delta_base
                FROM journals j
                LEFT JOIN journal_lines l ON l.journal_id = j.id
                WHERE j.status = 'POSTED'
                GROUP BY j.id, j.reference, j.transaction_date
                HAVING COUNT(l.id) = 0
                    OR ABS(COALESCE(SUM(l.debit_amount - l.credit_amount), 0)) > %s
                    OR ABS(COALESCE(SUM(l.debit_amount_base - l.credit_amount_base), 0)) > %s
                ORDER BY j.transaction_date DESC, j.reference DESC
                LIMIT %s
                """,
                (tol, tol, limit),
            )
            for r in cur.fetchall():
                if int(r["line_count"]) == 0:
                    message = f"posted journal has no lines ({r['transaction_date']})"
                else:
                    message = (
                        f"unbalanced: delta={d(r['delta'])} delta base={d(r['delta_base'])} "
                        f"on {r['transaction_date']}"
                    )
                findings.append(
                    Finding(kind="posted_journal_unbalanced", id=str(r["id"]), ref=str(r["reference"] or r["id"]), message=message)
                )
    return findings


def check_posted_line_shape(limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT l.id, j.reference, l.debit_amount, l.credit_amount
                FROM journal_lines l
                JOIN journals j ON j.id = l.journal_id
                WHERE j.status = 'POSTED'
                  AND ((l.debit_amount <> 0 AND l.credit_amount <> 0)
                    OR (l.debit_amount = 0 AND l.credit_amount = 0))
                ORDER BY j.transaction_date DESC
                LIMIT %s
                """,
                (limit,),
            )
            for r in cur.fetchall():
                findings.append(
                    Finding(
                        kind="posted_line_shape",
                        id=str(r["id"]),
                        ref=str(r["reference"]),
                        message=f"line has debit={d(r['debit_amount'])} credit={d(r['credit_amount'])}",
                    )
                )
    return findings


def check_locked_period_drafts(limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.year, p.month, COUNT(j.id) AS drafts
                FROM periods p
                JOIN journals j ON j.period_id = p.id AND j.status = 'DRAFT'
                WHERE p.status = 'LOCKED'
                GROUP BY p.id, p.year, p.month
                ORDER BY p.year DESC, p.month DESC
                LIMIT %s
                """,
                (limit,),
            )
            for r in cur.fetchall():
                findings.append(
                    Finding(
                        kind="locked_period_has_drafts",
                        id=str(r["id"]),
                        ref=f"{int(r['year']):04d}-{int(r['month']):02d}",
                        message=f"locked period contains {int(r['drafts'])} draft journal(s)",
                    )
                )
    return findings


def check_capital_movement_conversion(limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, transaction_date, amount, currency, amount_base, fx_rate
                FROM capital_movements
                WHERE currency <> %s
                ORDER BY transaction_date DESC
                LIMIT %s
                """,
                (settings.base_currency, limit),
            )
            for r in cur.fetchall():
                if r["fx_rate"] is None:
                    findings.append(
                        Finding(kind="capital_movement_missing_rate", id=str(r["id"]), ref=str(r["transaction_date"]), message="no fx_rate recorded")
                    )
                    continue
                expected = q_amount(d(r["amount"]) * d(r["fx_rate"]))
                got = d(r["amount_base"])
                if abs(got - expected) > settings.balance_tolerance:
                    findings.append(
                        Finding(
                            kind="capital_movement_base_mismatch",
                            id=str(r["id"]),
                            ref=str(r["transaction_date"]),
                            message=f"amount_base={got} expected={expected} ({r['amount']} {r['currency']} @ {r['fx_rate']})",
                        )
                    )
    return findings


def main() -> int:
    args = _parse_args()
    limit = max(1, min(int(args.limit or 200), 5000))

    findings: list[Finding] = []
    try:
        findings.extend(check_posted_journal_balance(limit))
        findings.extend(check_posted_line_shape(limit))
        findings.extend(check_locked_period_drafts(limit))
        findings.extend(check_capital_movement_conversion(limit))
    finally:
        close_pool()

    if not findings:
        print(f"OK: no integrity issues found ({settings.env}).")
        return 0

    print(f"Found {len(findings)} issue(s) ({settings.env}):")
    for f in findings[:200]:
        print(f"- {f.kind}: {f.ref} ({f.id}) -> {f.message}")
    if len(findings) > 200:
        print(f"... plus {len(findings) - 200} more")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())

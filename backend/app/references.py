from __future__ import annotations

from typing import Optional

from .errors import NotFound

# Read-only lookups against the tables owned by the master-data side
# (accounts/partners/employees/users). All run on the caller's cursor so they
# share its transaction.

_EXISTS_SQL = {
    "partners": "SELECT 1 FROM partners WHERE id = %s",
    "employees": "SELECT 1 FROM employees WHERE id = %s",
    "users": "SELECT 1 FROM users WHERE id = %s",
}


def _exists(cur, table: str, entity_id) -> bool:
    if entity_id is None:
        return False
    cur.execute(_EXISTS_SQL[table], (entity_id,))
    return cur.fetchone() is not None


def partner_exists(cur, partner_id) -> bool:
    return _exists(cur, "partners", partner_id)


def employee_exists(cur, employee_id) -> bool:
    return _exists(cur, "employees", employee_id)


def user_exists(cur, user_id) -> bool:
    return _exists(cur, "users", user_id)


def require_user(cur, user_id) -> None:
    # None means no acting user was given; anything else must exist.
    if user_id is not None and not user_exists(cur, user_id):
        raise NotFound("user not found", code="user_not_found")


def get_account(cur, account_id) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, code, name, account_type, currency, is_active
        FROM accounts
        WHERE id = %s
        """,
        (account_id,),
    )
    return cur.fetchone()

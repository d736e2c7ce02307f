from __future__ import annotations

import json
from typing import Optional

from .db import get_conn


def write_audit_log(cur, user_id, action: str, entity_type: str, entity_id, details: Optional[dict] = None) -> None:
    cur.execute(
        """
        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb)
        """,
        (user_id, action, entity_type, entity_id, json.dumps(details or {}, default=str)),
    )


def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id=None,
    user_id=None,
    action: Optional[str] = None,
    limit: int = 50,
) -> list:
    """
    Audit trail, newest first. Every filter is optional; limit is clamped to 1..500.
    """
    limit = max(1, min(int(limit or 50), 500))
    with get_conn() as conn:
        with conn.cursor() as cur:
            sql = """
                SELECT id, user_id, action, entity_type, entity_id, details, created_at
                FROM audit_logs
                WHERE 1=1
            """
            params: list = []
            if entity_type:
                sql += " AND entity_type = %s"
                params.append(entity_type)
            if entity_id:
                sql += " AND entity_id = %s"
                params.append(str(entity_id))
            if user_id:
                sql += " AND user_id = %s"
                params.append(str(user_id))
            if action:
                sql += " AND action = %s"
                params.append(action)
            sql += " ORDER BY created_at DESC LIMIT %s"
            params.append(limit)
            cur.execute(sql, params)
            return cur.fetchall()

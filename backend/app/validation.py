from __future__ import annotations

import uuid
from typing import Annotated, Literal

from pydantic import BeforeValidator

from .errors import ValidationFailed


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_uuid_str(v):
    if v is None:
        return v
    # Raises ValueError on garbage, which pydantic reports as a field error.
    return str(uuid.UUID(str(v).strip()))


# Canonical codes mirror Postgres enums in `backend/db/migrations/001_init.sql`.
CurrencyCode = Annotated[Literal["USD", "PKR"], BeforeValidator(_to_upper_str)]
JournalStatus = Annotated[Literal["DRAFT", "POSTED"], BeforeValidator(_to_upper_str)]
PeriodStatus = Annotated[Literal["OPEN", "LOCKED"], BeforeValidator(_to_upper_str)]
MovementType = Annotated[Literal["CONTRIBUTION", "DRAW"], BeforeValidator(_to_upper_str)]

# Row ids come back from psycopg as uuid.UUID; callers may pass either form.
EntityId = Annotated[str, BeforeValidator(_to_uuid_str)]


def parse_id(value, field: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        raise ValidationFailed(f"{field} is required", code="invalid_input")
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        raise ValidationFailed(f"{field} must be a valid UUID", code="invalid_input")

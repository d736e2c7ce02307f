from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ValidationFailed
from .money import q_amount, q_rate
from .validation import CurrencyCode, EntityId, JournalStatus, MovementType

M = TypeVar("M", bound=BaseModel)


def parse_input(model: Type[M], data) -> M:
    """Accept a model instance or a plain mapping; reject bad input as ValidationFailed."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as ex:
        errors = []
        for e in ex.errors():
            loc = ".".join(str(p) for p in e.get("loc") or ()) or "input"
            errors.append(f"{loc}: {e.get('msg')}")
        raise ValidationFailed("invalid input", code="invalid_input", errors=errors) from ex


class JournalIn(BaseModel):
    reference: str = Field(min_length=1, max_length=64)
    description: str = Field(min_length=1)
    transaction_date: date
    period_id: EntityId
    created_by: EntityId

    @field_validator("reference", "description", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class JournalLineIn(BaseModel):
    account_id: EntityId
    description: str = ""
    debit_amount: Decimal = Decimal("0.00")
    credit_amount: Decimal = Decimal("0.00")
    # Both omitted => derived from the account currency (and fx_rate for USD accounts).
    debit_amount_base: Optional[Decimal] = None
    credit_amount_base: Optional[Decimal] = None
    fx_rate: Optional[Decimal] = None
    partner_id: Optional[EntityId] = None
    employee_id: Optional[EntityId] = None
    user_id: Optional[EntityId] = None

    @field_validator("debit_amount", "credit_amount", "debit_amount_base", "credit_amount_base")
    @classmethod
    def _amount_2dp(cls, v):
        # Stored at 0.01; base amounts are derived from the rounded value.
        if v is None:
            return v
        if v < 0:
            raise ValueError("amounts must be >= 0")
        q = q_amount(v)
        if v > 0 and q == 0:
            raise ValueError("amounts must be at least 0.01 when given")
        return q

    @field_validator("fx_rate")
    @classmethod
    def _positive_rate(cls, v):
        if v is None:
            return v
        q = q_rate(v)
        if q <= 0:
            raise ValueError("fx_rate must be > 0")
        return q

    @model_validator(mode="after")
    def _base_pair(self):
        if (self.debit_amount_base is None) != (self.credit_amount_base is None):
            raise ValueError("debit_amount_base and credit_amount_base must be given together")
        return self


class JournalFilters(BaseModel):
    period_id: Optional[EntityId] = None
    status: Optional[JournalStatus] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class FxRateCorrectionIn(BaseModel):
    usd_to_pkr_rate: Decimal = Field(gt=0)

    @field_validator("usd_to_pkr_rate")
    @classmethod
    def _rate_4dp(cls, v):
        q = q_rate(v)
        if q <= 0:
            raise ValueError("usd_to_pkr_rate must be > 0 at 4 decimal places")
        return q


class FxRateIn(FxRateCorrectionIn):
    rate_date: date


class PeriodIn(BaseModel):
    year: int = Field(ge=1900, le=9999)
    month: int = Field(ge=1, le=12)


class CapitalMovementIn(BaseModel):
    partner_id: EntityId
    movement_type: MovementType
    amount: Decimal = Field(gt=0)
    currency: CurrencyCode
    description: str = Field(min_length=1)
    transaction_date: date
    created_by: EntityId

    @field_validator("amount")
    @classmethod
    def _amount_2dp(cls, v):
        q = q_amount(v)
        if q <= 0:
            raise ValueError("amount must be at least 0.01")
        return q


class CapitalMovementFilters(BaseModel):
    partner_id: Optional[EntityId] = None
    movement_type: Optional[MovementType] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None

import os
from decimal import Decimal, InvalidOperation


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _decimal(self, raw: str, *, default: Decimal) -> Decimal:
        try:
            v = Decimal((raw or "").strip())
        except InvalidOperation:
            return default
        return v if v >= 0 else default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/partnerledger')
        # Base (reporting) currency is fixed; every cross-currency amount lands in PKR.
        self.base_currency = "PKR"
        self.balance_tolerance = self._decimal(
            os.getenv("LEDGER_BALANCE_TOLERANCE", ""),
            default=Decimal("0.01"),
        )
        self.close_requires_locked_fx = _truthy(os.getenv("PERIOD_CLOSE_REQUIRE_LOCKED_FX", ""))
        self.log_level = (os.getenv("LOG_LEVEL", "info").strip().lower() or "info")

settings = Settings()

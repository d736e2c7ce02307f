from __future__ import annotations

from typing import Iterable, List, Optional


class LedgerError(Exception):
    """
    Business-rule rejection raised by the ledger core.

    Carries an HTTP-shaped `status_code` + `detail` so a transport layer can map it
    the same way it maps `HTTPException`. Store/connection faults are *not*
    LedgerErrors; they propagate as `psycopg.Error` subclasses.
    """

    status_code = 400

    def __init__(self, detail: str, *, code: Optional[str] = None, errors: Optional[Iterable[str]] = None):
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.errors: List[str] = list(errors or [])

    def to_dict(self) -> dict:
        out = {"detail": self.detail}
        if self.code:
            out["code"] = self.code
        if self.errors:
            out["errors"] = list(self.errors)
        return out


class NotFound(LedgerError):
    status_code = 404


class InvalidState(LedgerError):
    status_code = 409


class ValidationFailed(LedgerError):
    status_code = 422


class PreconditionFailed(LedgerError):
    status_code = 400


class DuplicateKey(LedgerError):
    status_code = 409

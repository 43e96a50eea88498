from __future__ import annotations

from typing import Any


class LedgerError(ValueError):
    status_code = 400
    code = 'LEDGER_ERROR'

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {'error': self.code, 'message': self.message, 'details': self.details}


class LedgerValidationError(LedgerError):
    status_code = 400
    code = 'VALIDATION_ERROR'

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if field:
            details.setdefault('field', field)
        super().__init__(message, code=code, details=details)
        self.field = field


class LedgerNotFoundError(LedgerError):
    status_code = 404
    code = 'NOT_FOUND'


class LedgerConflictError(LedgerError):
    status_code = 409
    code = 'CONFLICT'


class LedgerIntegrityError(LedgerError):
    """Stored ledger state disagrees with its own movements; needs an operator backfill."""

    status_code = 409
    code = 'LEDGER_INTEGRITY'

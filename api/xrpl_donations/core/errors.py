"""Error taxonomy shared by the settlement and pricing core.

Every error is an :class:`HTTPException`, so routers let them propagate and
FastAPI renders the status code. ``retryable`` tells callers whether the same
request may succeed later without changes.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException


class ServiceError(HTTPException):
    code = "internal_error"
    default_status = 500
    default_detail = "Internal error"
    retryable = False

    def __init__(self, detail: Optional[str] = None, *, status_code: Optional[int] = None):
        super().__init__(
            status_code=status_code or self.default_status,
            detail=detail or self.default_detail,
        )

    def __str__(self) -> str:
        return str(self.detail)


class InvalidInput(ServiceError):
    code = "invalid_input"
    default_status = 400
    default_detail = "Invalid input"


class InvalidAddress(InvalidInput):
    code = "invalid_address"
    default_detail = "Invalid XRPL address"


class InvalidSequence(InvalidInput):
    code = "invalid_sequence"
    default_detail = "Sequence must be an unsigned 32-bit integer"


class InvalidRate(InvalidInput):
    code = "invalid_rate"
    default_detail = "Exchange rate must be positive"


class Unauthenticated(ServiceError):
    code = "unauthenticated"
    default_status = 401
    default_detail = "Invalid authentication credentials"


class NotFound(ServiceError):
    code = "not_found"
    default_status = 404
    default_detail = "Not found"


class Conflict(ServiceError):
    code = "conflict"
    default_status = 409
    default_detail = "Request is already in a terminal state"


class Expired(ServiceError):
    code = "expired"
    default_status = 410
    default_detail = "Request expired"


class Cancelled(ServiceError):
    code = "cancelled"
    default_status = 410
    default_detail = "Request cancelled"


class LedgerQueryFailed(ServiceError):
    code = "ledger_query_failed"
    default_status = 502
    default_detail = "XRPL query failed"
    retryable = True

    def __init__(self, query: str, reason: str = ""):
        self.query = query
        self.reason = reason
        detail = f"XRPL {query} failed"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)


class ProviderUnavailable(ServiceError):
    code = "provider_unavailable"
    default_status = 503
    default_detail = "Signing provider unavailable"
    retryable = True


class RateUnavailable(ServiceError):
    code = "rate_unavailable"
    default_status = 503
    default_detail = "Exchange rate unavailable"

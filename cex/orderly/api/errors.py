"""
Orderly API Error Classification
================================

Maps venue error codes to typed exceptions carrying a `retryable` flag, so
retry policy can be decided from the error value alone.

Reference:
- https://orderly.network/docs/build-on-omnichain/evm-api/error-codes
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class OrderlyErrorCode(IntEnum):
    UNKNOWN = -1000
    INVALID_SIGNATURE = -1001
    UNAUTHORIZED = -1002
    TOO_MANY_REQUEST = -1003
    UNKNOWN_PARAM = -1004
    INVALID_PARAM = -1005
    RESOURCE_NOT_FOUND = -1006
    DUPLICATE_REQUEST = -1007
    QUANTITY_TOO_HIGH = -1008
    CAN_NOT_WITHDRAWAL = -1009
    RPC_NOT_CONNECT = -1011
    RPC_REJECT = -1012
    RISK_TOO_HIGH = -1101
    MIN_NOTIONAL = -1102
    PRICE_FILTER = -1103
    SIZE_FILTER = -1104
    PERCENTAGE_FILTER = -1105
    LIQUIDATION_REQUEST_RATIO_TOO_SMALL = -1201
    LIQUIDATION_STATUS_ERROR = -1202


@dataclass(frozen=True)
class ErrorCodeInfo:
    name: str
    http_status: int
    description: str


ERROR_CODE_MAP: dict[int, ErrorCodeInfo] = {
    -1000: ErrorCodeInfo("UNKNOWN", 500, "Unknown error or data doesn't exist"),
    -1001: ErrorCodeInfo("INVALID_SIGNATURE", 401, "API key/secret in wrong format"),
    -1002: ErrorCodeInfo("UNAUTHORIZED", 401, "Invalid, expired, revoked credentials or lack permissions"),
    -1003: ErrorCodeInfo("TOO_MANY_REQUEST", 429, "Rate limit exceeded"),
    -1004: ErrorCodeInfo("UNKNOWN_PARAM", 400, "Unknown parameter sent"),
    -1005: ErrorCodeInfo("INVALID_PARAM", 400, "Improperly formatted parameters"),
    -1006: ErrorCodeInfo("RESOURCE_NOT_FOUND", 400, "Data not found in server"),
    -1007: ErrorCodeInfo("DUPLICATE_REQUEST", 409, "Data already exists or duplicate request"),
    -1008: ErrorCodeInfo("QUANTITY_TOO_HIGH", 400, "Settlement quantity exceeds limits"),
    -1009: ErrorCodeInfo("CAN_NOT_WITHDRAWAL", 400, "Withdrawal blocked; arrears must be settled"),
    -1011: ErrorCodeInfo("RPC_NOT_CONNECT", 400, "Internal network failure"),
    -1012: ErrorCodeInfo("RPC_REJECT", 400, "Order rejected (liquidation or internal error)"),
    -1101: ErrorCodeInfo("RISK_TOO_HIGH", 400, "Excessive risk from order size/leverage/margin"),
    -1102: ErrorCodeInfo("MIN_NOTIONAL", 400, "Order value (price * size) too small"),
    -1103: ErrorCodeInfo("PRICE_FILTER", 400, "Price violates scope/range requirements"),
    -1104: ErrorCodeInfo("SIZE_FILTER", 400, "Quantity doesn't conform to step-size"),
    -1105: ErrorCodeInfo("PERCENTAGE_FILTER", 400, "Price deviates excessively from mid-market"),
    -1201: ErrorCodeInfo("LIQUIDATION_REQUEST_RATIO_TOO_SMALL", 400, "Liquidation ratio requirements unmet"),
    -1202: ErrorCodeInfo("LIQUIDATION_STATUS_ERROR", 400, "Liquidation unnecessary or invalid ID"),
}

NON_RETRYABLE_CODES: frozenset[int] = frozenset(
    {
        OrderlyErrorCode.INVALID_SIGNATURE,
        OrderlyErrorCode.UNAUTHORIZED,
        OrderlyErrorCode.INVALID_PARAM,
        OrderlyErrorCode.UNKNOWN_PARAM,
        OrderlyErrorCode.DUPLICATE_REQUEST,
    }
)

# Local code for failures that never reached the venue (timeouts, resets, bad JSON).
TRANSPORT_ERROR_CODE = 0

CLOCK_SYNC_HINT = "Check your system clock and sync with NTP."


class OrderlyApiError(Exception):
    """Base exception for venue errors.

    Attributes:
        code: Venue error code (negative), or 0 for transport failures
        message: Human readable message
        http_status: HTTP status if a response was received
        retryable: Whether re-issuing the same request can succeed
        attempts: Number of attempts made before this error surfaced
    """

    def __init__(
        self,
        code: int,
        message: str,
        *,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(f"[Orderly {code}] {message}")
        self.code = code
        self.message = message
        self.http_status = http_status
        self.retryable = is_retryable_error(code) if retryable is None else retryable
        self.attempts = attempts

    @property
    def exhausted(self) -> bool:
        """True when the error survived retries rather than being terminal."""
        return self.retryable and self.attempts > 1


class InvalidSignatureError(OrderlyApiError):
    pass


class UnauthorizedError(OrderlyApiError):
    """Invalid, expired or revoked key, or missing scope."""


class RateLimitedError(OrderlyApiError):
    pass


class BadParameterError(OrderlyApiError):
    pass


class UnknownParameterError(OrderlyApiError):
    pass


class DuplicateRequestError(OrderlyApiError):
    """The venue already applied this request. Callers treat it as success-once."""


class ClockSkewError(OrderlyApiError):
    """Local clock disagrees with the venue. Never retried."""

    def __init__(self, message: str, *, http_status: Optional[int] = None, attempts: int = 1) -> None:
        if CLOCK_SYNC_HINT not in message:
            message = f"{message}. {CLOCK_SYNC_HINT}"
        super().__init__(
            OrderlyErrorCode.UNAUTHORIZED,
            message,
            http_status=http_status,
            retryable=False,
            attempts=attempts,
        )


_ERROR_CLASSES: dict[int, type[OrderlyApiError]] = {
    OrderlyErrorCode.INVALID_SIGNATURE: InvalidSignatureError,
    OrderlyErrorCode.UNAUTHORIZED: UnauthorizedError,
    OrderlyErrorCode.TOO_MANY_REQUEST: RateLimitedError,
    OrderlyErrorCode.INVALID_PARAM: BadParameterError,
    OrderlyErrorCode.UNKNOWN_PARAM: UnknownParameterError,
    OrderlyErrorCode.DUPLICATE_REQUEST: DuplicateRequestError,
}


def is_retryable_error(code: int) -> bool:
    return code not in NON_RETRYABLE_CODES


def is_clock_skew_error(code: int, message: str) -> bool:
    lowered = (message or "").lower()
    return code == OrderlyErrorCode.UNAUTHORIZED and ("timestamp" in lowered or "expired" in lowered)


def create_orderly_error(
    code: int,
    message: str,
    *,
    http_status: Optional[int] = None,
    attempts: int = 1,
) -> OrderlyApiError:
    """Build the typed error for a venue error code.

    Unauthorized errors mentioning timestamp/expiry become ClockSkewError.
    """
    if is_clock_skew_error(code, message):
        return ClockSkewError(message, http_status=http_status, attempts=attempts)

    info = ERROR_CODE_MAP.get(code)
    if info is not None:
        message = f"{info.name}: {message}. {info.description}"
        http_status = http_status or info.http_status

    error_cls = _ERROR_CLASSES.get(code, OrderlyApiError)
    return error_cls(code, message, http_status=http_status, attempts=attempts)


def transport_error(message: str, *, http_status: Optional[int] = None) -> OrderlyApiError:
    """Error for failures without a venue error body. Always retryable."""
    return OrderlyApiError(TRANSPORT_ERROR_CODE, message, http_status=http_status, retryable=True)

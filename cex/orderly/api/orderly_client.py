"""
Orderly API Client - REST API Implementation
============================================

REST client for the Orderly EVM API built on requests.

Features:
- Public endpoints (broker list, accounts, registration nonce, key info)
- Wallet-signed endpoints (register account, add key, withdraw, settle PnL)
- Ed25519-signed private endpoints (orders, nonces, broker credit)
- Bounded retry with exponential backoff; retry decisions are made from the
  classified error alone (see `should_retry`)

Usage:
    from cex.orderly.api.orderly_client import OrderlyClient

    client = OrderlyClient("https://api-evm.orderly.org")
    brokers = client.get_broker_list()
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Type, TypeVar
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, ValidationError

from cex.orderly.api.auth import RequestSigner, compact_json
from cex.orderly.api.errors import OrderlyApiError, create_orderly_error, transport_error
from cex.orderly.api.models import (
    AccountList,
    AddedKey,
    BrokerList,
    CreditAccepted,
    Envelope,
    KeyInfo,
    NonceResponse,
    OrderAccepted,
    RegisteredAccount,
    RegistrationNonce,
    SettleAccepted,
    WithdrawAccepted,
)
from cex.orderly.api.wallet import SignedMessage

logger = logging.getLogger(__name__)

MAINNET_API_URL = "https://api-evm.orderly.org"
TESTNET_API_URL = "https://testnet-api-evm.orderly.org"

SENSITIVE_HEADERS = frozenset({"orderly-signature", "orderly-key", "authorization"})

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class ApiResult:
    """Outcome of a single HTTP attempt: payload data or a classified error."""

    data: Any = None
    error: Optional[OrderlyApiError] = None
    http_status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, data: Any, *, http_status: Optional[int] = None) -> "ApiResult":
        return cls(data=data, http_status=http_status)

    @classmethod
    def failure(cls, error: OrderlyApiError) -> "ApiResult":
        return cls(error=error, http_status=error.http_status)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt + 1` (attempt is 0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def should_retry(result: ApiResult, attempt: int, max_retries: int) -> bool:
    """
    Decide whether to re-issue a request.

    Args:
        result: Outcome of the attempt that just finished
        attempt: 0-based index of that attempt
        max_retries: Retries allowed after the first attempt
    """
    if result.ok:
        return False
    if attempt >= max_retries:
        return False
    return bool(result.error.retryable)


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        key: "[REDACTED]" if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def _path_with_query(path: str, params: Optional[Dict[str, Any]]) -> str:
    if not params:
        return path
    clean = {key: value for key, value in params.items() if value is not None}
    if not clean:
        return path
    return f"{path}?{urlencode(clean)}"


class OrderlyClient:
    """
    Orderly EVM REST client.

    A default signer can be given for an operator account; calls made on
    behalf of end users pass their own `RequestSigner`.
    """

    def __init__(
        self,
        base_url: str = MAINNET_API_URL,
        *,
        signer: Optional[RequestSigner] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    # ==================== Transport ====================

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
        *,
        signer: Optional[RequestSigner] = None,
    ) -> Any:
        """
        Issue a request with bounded retry.

        Returns:
            The envelope's `data` payload

        Raises:
            OrderlyApiError: Non-retryable error, or the last error once
                retries are exhausted (`attempts` tells which)
        """
        method = method.upper()
        full_path = _path_with_query(path, params)
        active_signer = signer or self.signer
        if authenticated and active_signer is None:
            raise ValueError(f"Authentication required for {method} {path}")

        max_retries = self.retry_policy.max_retries
        attempt = 0
        while True:
            result = self._attempt(method, full_path, body, active_signer if authenticated else None)
            if result.ok:
                return result.data

            error = result.error
            error.attempts = attempt + 1
            if not should_retry(result, attempt, max_retries):
                if error.retryable:
                    logger.error("Orderly %s %s failed after %d attempts: %s", method, path, attempt + 1, error)
                raise error

            delay = self.retry_policy.delay_for(attempt)
            logger.warning(
                "Orderly %s %s failed (code=%s); retrying in %.1fs (attempt %d/%d)",
                method,
                path,
                error.code,
                delay,
                attempt + 1,
                max_retries,
            )
            self._sleep(delay)
            attempt += 1

    def _attempt(
        self,
        method: str,
        full_path: str,
        body: Any,
        signer: Optional[RequestSigner],
    ) -> ApiResult:
        if signer is not None:
            headers = signer.build_headers(method, full_path, body)
        else:
            headers = {"Content-Type": "application/json"}

        data = None
        if body is not None and method not in ("GET", "DELETE"):
            data = compact_json(body).encode("utf-8")

        logger.debug("Orderly request %s %s headers=%s", method, full_path, redact_headers(headers))
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{full_path}",
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            return ApiResult.failure(transport_error(f"{type(exc).__name__}: {exc}"))

        status = response.status_code
        try:
            envelope = Envelope.model_validate(response.json())
        except (ValueError, ValidationError):
            return ApiResult.failure(transport_error(f"HTTP {status}: unparseable response body", http_status=status))

        logger.debug("Orderly response %s %s status=%s success=%s", method, full_path, status, envelope.success)

        if envelope.success and status < 400:
            return ApiResult.success(envelope.data, http_status=status)
        if envelope.code is not None:
            return ApiResult.failure(create_orderly_error(envelope.code, envelope.message or "", http_status=status))
        return ApiResult.failure(transport_error(f"HTTP {status}: {envelope.message or 'request failed'}", http_status=status))

    @staticmethod
    def _parse(model: Type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data if data is not None else {})
        except ValidationError as exc:
            raise transport_error(f"Unexpected {model.__name__} payload: {exc.error_count()} validation errors") from exc

    # ==================== Public API Methods ====================

    def get_broker_list(self, broker_id: Optional[str] = None) -> BrokerList:
        """GET /v1/public/broker/name"""
        data = self.request("GET", "/v1/public/broker/name", params={"broker_id": broker_id})
        return self._parse(BrokerList, data)

    def get_all_accounts(self, address: str, broker_id: str) -> AccountList:
        """GET /v1/get_all_accounts"""
        data = self.request("GET", "/v1/get_all_accounts", params={"address": address, "broker_id": broker_id})
        return self._parse(AccountList, data)

    def get_registration_nonce(self) -> str:
        """GET /v1/registration_nonce. Valid for 2 minutes, single use."""
        data = self.request("GET", "/v1/registration_nonce")
        return self._parse(RegistrationNonce, data).registration_nonce

    def get_orderly_key(self, account_id: str, orderly_key: str) -> KeyInfo:
        """GET /v1/get_orderly_key"""
        data = self.request(
            "GET",
            "/v1/get_orderly_key",
            params={"account_id": account_id, "orderly_key": orderly_key},
        )
        return self._parse(KeyInfo, data)

    # ==================== Wallet-Signed Methods ====================

    def register_account(self, signed: SignedMessage) -> RegisteredAccount:
        """POST /v1/register_account"""
        data = self.request("POST", "/v1/register_account", body=signed.to_request())
        return self._parse(RegisteredAccount, data)

    def add_orderly_key(self, signed: SignedMessage) -> AddedKey:
        """POST /v1/orderly_key"""
        data = self.request("POST", "/v1/orderly_key", body=signed.to_request())
        if data is None:
            data = {"orderly_key": getattr(signed.message, "orderlyKey", "")}
        return self._parse(AddedKey, data)

    # ==================== Authenticated API Methods ====================

    def get_withdraw_nonce(self, *, signer: Optional[RequestSigner] = None) -> int:
        """GET /v1/withdraw_nonce"""
        data = self.request("GET", "/v1/withdraw_nonce", authenticated=True, signer=signer)
        return self._parse(NonceResponse, data).value

    def withdraw_request(
        self,
        signed: SignedMessage,
        *,
        verifying_contract: str,
        signer: Optional[RequestSigner] = None,
    ) -> WithdrawAccepted:
        """POST /v1/withdraw_request"""
        body = signed.to_request()
        body["verifyingContract"] = verifying_contract
        data = self.request("POST", "/v1/withdraw_request", body=body, authenticated=True, signer=signer)
        return self._parse(WithdrawAccepted, data)

    def get_settle_nonce(self, *, signer: Optional[RequestSigner] = None) -> int:
        """GET /v1/settle_nonce"""
        data = self.request("GET", "/v1/settle_nonce", authenticated=True, signer=signer)
        return self._parse(NonceResponse, data).value

    def settle_pnl(self, signed: SignedMessage, *, signer: Optional[RequestSigner] = None) -> SettleAccepted:
        """POST /v1/settle_pnl"""
        data = self.request("POST", "/v1/settle_pnl", body=signed.to_request(), authenticated=True, signer=signer)
        return self._parse(SettleAccepted, data)

    def create_order(
        self,
        *,
        symbol: str,
        side: str,
        order_type: str,
        quantity: Decimal,
        price: Optional[Decimal] = None,
        client_order_id: Optional[str] = None,
        signer: Optional[RequestSigner] = None,
    ) -> OrderAccepted:
        """
        POST /v1/order (requires 'trading' scope).

        Args:
            symbol: Orderly symbol (e.g., 'PERP_ETH_USDC')
            side: 'BUY' or 'SELL'
            order_type: 'LIMIT', 'MARKET', 'IOC', 'FOK', 'POST_ONLY', 'ASK', 'BID'
            quantity: Order quantity in base units
            price: Required for LIMIT-style orders
        """
        if order_type.upper() in ("LIMIT", "POST_ONLY", "IOC", "FOK") and price is None:
            raise ValueError(f"{order_type} orders require price")

        body: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "order_type": order_type.upper(),
            "order_quantity": float(quantity),
        }
        if price is not None:
            body["order_price"] = float(price)
        if client_order_id:
            body["client_order_id"] = client_order_id

        data = self.request("POST", "/v1/order", body=body, authenticated=True, signer=signer)
        return self._parse(OrderAccepted, data)

    def credit_account(
        self,
        account_id: str,
        amount: Decimal,
        *,
        token: str = "USDC",
        signer: Optional[RequestSigner] = None,
    ) -> CreditAccepted:
        """
        POST /v1/broker/credit

        Mirrors an internal ledger credit onto the venue account. The amount
        is sent as a decimal string so no precision is lost in transit.
        """
        body = {"account_id": account_id, "token": token, "amount": str(amount)}
        data = self.request("POST", "/v1/broker/credit", body=body, authenticated=True, signer=signer)
        return self._parse(CreditAccepted, data)

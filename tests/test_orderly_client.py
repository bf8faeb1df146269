"""Tests for the Orderly REST client (mocked HTTP session)."""

import json
from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from cex.orderly.api.auth import RequestSigner
from cex.orderly.api.errors import (
    ClockSkewError,
    DuplicateRequestError,
    OrderlyApiError,
    create_orderly_error,
    transport_error,
)
from cex.orderly.api.orderly_client import (
    ApiResult,
    OrderlyClient,
    RetryPolicy,
    redact_headers,
    should_retry,
)

ACCOUNT_ID = "0x" + "ab" * 32


def _response(payload, status: int = 200) -> Mock:
    response = Mock()
    response.status_code = status
    response.json.return_value = payload
    return response


def _ok(data) -> Mock:
    return _response({"success": True, "data": data, "timestamp": 1})


def _fail(code: int, message: str, status: int = 400) -> Mock:
    return _response({"success": False, "code": code, "message": message}, status)


@pytest.fixture
def session() -> Mock:
    return Mock(spec=requests.Session)


@pytest.fixture
def sleep() -> Mock:
    return Mock()


@pytest.fixture
def client(session: Mock, sleep: Mock) -> OrderlyClient:
    return OrderlyClient("https://api.test/", session=session, sleep=sleep)


@pytest.fixture
def signer() -> RequestSigner:
    return RequestSigner.from_private_key_hex("02" * 32, account_id=ACCOUNT_ID)


class TestShouldRetry:
    def test_success_never_retried(self) -> None:
        assert not should_retry(ApiResult.success({}), 0, 3)

    def test_retryable_error_within_budget(self) -> None:
        result = ApiResult.failure(create_orderly_error(-1003, "slow"))
        assert should_retry(result, 0, 3)
        assert should_retry(result, 2, 3)
        assert not should_retry(result, 3, 3)

    def test_non_retryable_error(self) -> None:
        result = ApiResult.failure(create_orderly_error(-1005, "bad"))
        assert not should_retry(result, 0, 3)

    def test_transport_error_retried(self) -> None:
        assert should_retry(ApiResult.failure(transport_error("timeout")), 1, 3)


def test_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy()
    assert [policy.delay_for(i) for i in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_public_get_builds_query_and_parses(client: OrderlyClient, session: Mock) -> None:
    session.request.return_value = _ok({"rows": [{"broker_id": "woofi_dex", "broker_name": "WOOFi"}]})

    brokers = client.get_broker_list(broker_id="woofi_dex")

    assert brokers.rows[0].broker_id == "woofi_dex"
    method, url = session.request.call_args.args
    assert method == "GET"
    assert url == "https://api.test/v1/public/broker/name?broker_id=woofi_dex"
    assert session.request.call_args.kwargs["data"] is None


def test_none_params_are_dropped(client: OrderlyClient, session: Mock) -> None:
    session.request.return_value = _ok({"rows": []})
    client.get_broker_list()
    assert session.request.call_args.args[1] == "https://api.test/v1/public/broker/name"


def test_retries_then_succeeds(client: OrderlyClient, session: Mock, sleep: Mock) -> None:
    session.request.side_effect = [
        requests.ConnectionError("reset"),
        _fail(-1003, "too many", 429),
        _ok({"registration_nonce": "42"}),
    ]

    assert client.get_registration_nonce() == "42"
    assert session.request.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]


def test_retries_exhausted_raises_last_error(client: OrderlyClient, session: Mock, sleep: Mock) -> None:
    session.request.return_value = _fail(-1003, "too many", 429)

    with pytest.raises(OrderlyApiError) as exc_info:
        client.get_registration_nonce()

    assert session.request.call_count == 4
    assert exc_info.value.attempts == 4
    assert exc_info.value.exhausted
    assert sleep.call_count == 3


def test_non_retryable_error_raised_immediately(client: OrderlyClient, session: Mock, sleep: Mock) -> None:
    session.request.return_value = _fail(-1005, "bad param")

    with pytest.raises(OrderlyApiError) as exc_info:
        client.get_registration_nonce()

    assert session.request.call_count == 1
    assert exc_info.value.attempts == 1
    assert not exc_info.value.exhausted
    sleep.assert_not_called()


def test_clock_skew_not_retried(client: OrderlyClient, session: Mock, signer: RequestSigner) -> None:
    session.request.return_value = _fail(-1002, "timestamp expired", 401)

    with pytest.raises(ClockSkewError):
        client.get_withdraw_nonce(signer=signer)

    assert session.request.call_count == 1


def test_unparseable_body_is_transport_error(client: OrderlyClient, session: Mock) -> None:
    bad = Mock(status_code=502)
    bad.json.side_effect = ValueError("no json")
    session.request.side_effect = [bad, _ok({"registration_nonce": "7"})]

    assert client.get_registration_nonce() == "7"


def test_authenticated_request_requires_signer(client: OrderlyClient) -> None:
    with pytest.raises(ValueError):
        client.get_withdraw_nonce()


def test_authenticated_post_signs_exact_body(
    client: OrderlyClient, session: Mock, signer: RequestSigner
) -> None:
    session.request.return_value = _ok({"id": 1, "account_id": ACCOUNT_ID, "amount": "12.5"})

    client.credit_account(ACCOUNT_ID, Decimal("12.5"), signer=signer)

    kwargs = session.request.call_args.kwargs
    body = kwargs["data"].decode("utf-8")
    assert json.loads(body) == {"account_id": ACCOUNT_ID, "token": "USDC", "amount": "12.5"}
    assert " " not in body
    headers = kwargs["headers"]
    assert headers["orderly-account-id"] == ACCOUNT_ID
    expected = signer.sign("POST", "/v1/broker/credit", json.loads(body), int(headers["orderly-timestamp"]))
    assert headers["orderly-signature"] == expected


def test_duplicate_credit_surfaces_typed_error(
    client: OrderlyClient, session: Mock, signer: RequestSigner
) -> None:
    session.request.return_value = _fail(-1007, "already credited", 409)

    with pytest.raises(DuplicateRequestError):
        client.credit_account(ACCOUNT_ID, Decimal("1"), signer=signer)
    assert session.request.call_count == 1


def test_limit_order_requires_price(client: OrderlyClient, signer: RequestSigner) -> None:
    with pytest.raises(ValueError):
        client.create_order(
            symbol="PERP_ETH_USDC", side="buy", order_type="LIMIT", quantity=Decimal("1"), signer=signer
        )


def test_redact_headers_hides_secrets() -> None:
    redacted = redact_headers({"orderly-signature": "sig", "orderly-key": "k", "orderly-timestamp": "1"})
    assert redacted == {"orderly-signature": "[REDACTED]", "orderly-key": "[REDACTED]", "orderly-timestamp": "1"}

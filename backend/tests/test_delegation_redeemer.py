"""Tests for HttpDelegationRedeemer response handling and error classification."""

import json

import httpx
import pytest

from delegated_billing.services.delegation_redeemer import (
    HttpDelegationRedeemer,
    RedemptionError,
    RedemptionErrorKind,
    classify_error,
)

PAYLOAD = {"delegate": "0xplatform", "signature": "0xsig"}


def _redeemer(handler, **kwargs):  # type: ignore[no-untyped-def]
    return HttpDelegationRedeemer(
        base_url="http://delegation.test/",
        api_key=kwargs.pop("api_key", "secret"),
        timeout=kwargs.pop("timeout", 10),
        transport=httpx.MockTransport(handler),
    )


def _respond(status_code, body):  # type: ignore[no-untyped-def]
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    return handler


class TestClassifyError:
    def test_code_wins_over_message(self):
        kind = classify_error("delegation_revoked", "insufficient funds", RedemptionErrorKind.TRANSIENT)
        assert kind is RedemptionErrorKind.DELEGATION_REVOKED

    def test_message_hints(self):
        default = RedemptionErrorKind.INVALID_DELEGATION
        assert (
            classify_error(None, "Insufficient balance", default)
            is RedemptionErrorKind.INSUFFICIENT_FUNDS
        )
        assert classify_error(None, "RPC timed out", default) is RedemptionErrorKind.TRANSIENT
        assert classify_error("weird", "???", default) is default

    def test_only_transient_is_retryable(self):
        assert RedemptionErrorKind.TRANSIENT.retryable
        assert not RedemptionErrorKind.INSUFFICIENT_FUNDS.retryable
        assert not RedemptionError(RedemptionErrorKind.DELEGATION_REVOKED, "x").retryable


class TestRedeem:
    @pytest.mark.asyncio
    async def test_success_posts_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            seen["headers"] = request.headers
            return httpx.Response(200, json={"success": True, "transaction_hash": "0xabc"})

        result = await _redeemer(handler).redeem(PAYLOAD)

        assert result.transaction_hash == "0xabc"
        assert seen["url"] == "http://delegation.test/api/v1/delegations/redeem"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"delegation": PAYLOAD}
        assert "Idempotency-Key" not in seen["headers"]

    @pytest.mark.asyncio
    async def test_sends_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.headers.get("Idempotency-Key")
            return httpx.Response(200, json={"transaction_hash": "0x1"})

        await _redeemer(handler).redeem(PAYLOAD, idempotency_key="attempt-1")

        assert seen["key"] == "attempt-1"

    @pytest.mark.asyncio
    async def test_camel_case_hash(self):
        result = await _redeemer(_respond(200, {"transactionHash": "0xdef"})).redeem(PAYLOAD)
        assert result.transaction_hash == "0xdef"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"transaction_hash": "0x1"})

        await _redeemer(handler, api_key="").redeem(PAYLOAD)

        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_success_without_hash_is_transient(self):
        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(_respond(200, {"success": True})).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_reported_failure_is_classified(self):
        body = {"success": False, "error": {"code": "insufficient_funds", "message": "low"}}
        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(_respond(200, body)).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.INSUFFICIENT_FUNDS
        assert exc_info.value.message == "low"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_server_errors_are_transient(self, status_code):
        body = {"error": "invalid signature"}
        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(_respond(status_code, body)).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_client_error_is_classified(self):
        body = {"code": "delegation_revoked", "error": "Delegation disabled by delegator"}
        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(_respond(400, body)).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.DELEGATION_REVOKED

    @pytest.mark.asyncio
    async def test_numeric_error_code_is_classified_by_message(self):
        body = {"error": {"code": 4001, "message": "insufficient funds"}}
        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(_respond(400, body)).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.INSUFFICIENT_FUNDS
        assert exc_info.value.message == "insufficient funds"

    @pytest.mark.asyncio
    async def test_non_text_error_codes_fall_back_to_default(self):
        body = {"success": False, "code": {"nested": True}, "message": "rejected"}
        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(_respond(200, body)).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_unexplained_client_error_is_invalid(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, text="unprocessable")

        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(handler).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.INVALID_DELEGATION
        assert exc_info.value.message == "unprocessable"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(handler, timeout=10).redeem(PAYLOAD, timeout=2)
        assert exc_info.value.kind is RedemptionErrorKind.TRANSIENT
        assert "2" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RedemptionError) as exc_info:
            await _redeemer(handler).redeem(PAYLOAD)
        assert exc_info.value.kind is RedemptionErrorKind.TRANSIENT

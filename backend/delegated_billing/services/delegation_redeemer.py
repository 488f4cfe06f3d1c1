"""Delegation redemption: executes a customer's signed delegation on-chain.

The billing core never looks inside a delegation payload. It hands the payload
to a ``DelegationRedeemer`` and gets back either a transaction hash or a
``RedemptionError`` whose ``kind`` says whether the failure is worth retrying.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from delegated_billing.core.config import settings

logger = logging.getLogger(__name__)


class RedemptionErrorKind(str, Enum):
    TRANSIENT = "transient"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DELEGATION_REVOKED = "delegation_revoked"
    INVALID_DELEGATION = "invalid_delegation"

    @property
    def retryable(self) -> bool:
        return self is RedemptionErrorKind.TRANSIENT


class RedemptionError(Exception):
    """A redemption that did not settle."""

    def __init__(self, kind: RedemptionErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self) -> str:
        return f"RedemptionError(kind={self.kind.value!r}, message={self.message!r})"


@dataclass
class RedemptionResult:
    """Settlement reference for a successful redemption."""

    transaction_hash: str


class DelegationRedeemer(ABC):
    """Abstract redemption capability."""

    @abstractmethod
    async def redeem(
        self,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
        idempotency_key: str | None = None,
    ) -> RedemptionResult:
        """Redeem ``payload`` and return its transaction hash.

        Redeemers must settle at most once per ``idempotency_key``.

        Raises:
            RedemptionError: If the redemption did not settle.
        """
        pass  # pragma: no cover


_ERROR_CODES = {
    "insufficient_funds": RedemptionErrorKind.INSUFFICIENT_FUNDS,
    "insufficient_balance": RedemptionErrorKind.INSUFFICIENT_FUNDS,
    "delegation_revoked": RedemptionErrorKind.DELEGATION_REVOKED,
    "delegation_disabled": RedemptionErrorKind.DELEGATION_REVOKED,
    "invalid_delegation": RedemptionErrorKind.INVALID_DELEGATION,
    "invalid_signature": RedemptionErrorKind.INVALID_DELEGATION,
    "delegation_expired": RedemptionErrorKind.INVALID_DELEGATION,
}

# Checked in order against the lower-cased error message
_MESSAGE_HINTS: list[tuple[tuple[str, ...], RedemptionErrorKind]] = [
    (("insufficient",), RedemptionErrorKind.INSUFFICIENT_FUNDS),
    (("revoked", "disabled"), RedemptionErrorKind.DELEGATION_REVOKED),
    (("invalid", "expired", "signature"), RedemptionErrorKind.INVALID_DELEGATION),
    (("timeout", "timed out", "unavailable", "network", "nonce"), RedemptionErrorKind.TRANSIENT),
]


def classify_error(code: str | None, message: str, default: RedemptionErrorKind) -> RedemptionErrorKind:
    """Map a delegation server error to a ``RedemptionErrorKind``.

    The structured ``code`` wins; the message is only inspected when the code
    is missing or unknown.
    """
    if code:
        kind = _ERROR_CODES.get(code.strip().lower())
        if kind is not None:
            return kind
    lowered = message.lower()
    for hints, kind in _MESSAGE_HINTS:
        if any(hint in lowered for hint in hints):
            return kind
    return default


def _code_text(code: Any) -> str | None:
    # Servers send codes as strings or numbers
    if code is None or isinstance(code, (dict, list)):
        return None
    return str(code)


def _error_fields(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:500] or f"HTTP {response.status_code}"
    if not isinstance(body, dict):
        return None, str(body)[:500]
    error = body.get("error")
    if isinstance(error, dict):
        return _code_text(error.get("code")), str(error.get("message") or "")
    if isinstance(error, str):
        return _code_text(body.get("code")), error
    message = body.get("message") or body.get("error_message") or ""
    return _code_text(body.get("code")), str(message)


class HttpDelegationRedeemer(DelegationRedeemer):
    """Redeems delegations through the delegation server's HTTP API."""

    REDEEM_PATH = "/api/v1/delegations/redeem"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.DELEGATION_SERVER_URL).rstrip("/")
        self.api_key = settings.DELEGATION_SERVER_API_KEY if api_key is None else api_key
        self.timeout = timeout or settings.DELEGATION_REDEEM_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def redeem(
        self,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
        idempotency_key: str | None = None,
    ) -> RedemptionResult:
        effective_timeout = min(self.timeout, timeout) if timeout else self.timeout
        url = f"{self.base_url}{self.REDEEM_PATH}"
        try:
            async with httpx.AsyncClient(
                timeout=effective_timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    json={"delegation": payload},
                    headers=self._headers(idempotency_key),
                )
        except httpx.TimeoutException as exc:
            raise RedemptionError(
                RedemptionErrorKind.TRANSIENT,
                f"Delegation redemption timed out after {effective_timeout}s",
            ) from exc
        except httpx.HTTPError as exc:
            raise RedemptionError(
                RedemptionErrorKind.TRANSIENT, f"Delegation server unreachable: {exc}"
            ) from exc

        if response.status_code == 429 or response.status_code >= 500:
            code, message = _error_fields(response)
            raise RedemptionError(
                RedemptionErrorKind.TRANSIENT,
                message or f"Delegation server returned HTTP {response.status_code}",
            )

        if response.status_code >= 400:
            code, message = _error_fields(response)
            kind = classify_error(code, message, RedemptionErrorKind.INVALID_DELEGATION)
            raise RedemptionError(
                kind, message or f"Delegation server returned HTTP {response.status_code}"
            )

        return self._parse_success(response)

    def _parse_success(self, response: httpx.Response) -> RedemptionResult:
        try:
            body = response.json()
        except ValueError as exc:
            raise RedemptionError(
                RedemptionErrorKind.TRANSIENT, "Delegation server returned a non-JSON response"
            ) from exc

        if isinstance(body, dict) and body.get("success") is False:
            code, message = _error_fields(response)
            kind = classify_error(code, message, RedemptionErrorKind.TRANSIENT)
            raise RedemptionError(kind, message or "Delegation redemption failed")

        tx_hash = None
        if isinstance(body, dict):
            tx_hash = body.get("transaction_hash") or body.get("transactionHash")
        if not tx_hash:
            raise RedemptionError(
                RedemptionErrorKind.TRANSIENT,
                "Delegation server reported success without a transaction hash",
            )
        logger.info("Delegation redeemed: %s", tx_hash)
        return RedemptionResult(transaction_hash=str(tx_hash))

"""Payment gateway contract and an HTTP implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol

import httpx

from contentpilot.core.config import get_settings


class PaymentDeclinedError(RuntimeError):
    """The payment was refused; retrying the same charge will not help."""


class PaymentGatewayError(RuntimeError):
    """Transient gateway failure (timeout, 5xx, transport error)."""


@dataclass(frozen=True)
class ChargeResult:
    transaction_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    def charge(
        self,
        *,
        user_id: str,
        plan_id: str,
        amount: int,
        currency: str,
        payment_ref: Optional[str],
        idempotency_key: str,
    ) -> ChargeResult:
        raise NotImplementedError


class HttpPaymentGateway:
    """Charges through a JSON `POST {base_url}/charges` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 20,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key.strip()
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _assert_ready(self) -> None:
        if not self._base_url:
            raise PaymentGatewayError("payment_gateway_url_missing")
        if not self._api_key:
            raise PaymentGatewayError("payment_gateway_api_key_missing")

    def charge(
        self,
        *,
        user_id: str,
        plan_id: str,
        amount: int,
        currency: str,
        payment_ref: Optional[str],
        idempotency_key: str,
    ) -> ChargeResult:
        self._assert_ready()
        url = f"{self._base_url}/charges"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Idempotency-Key": idempotency_key,
        }
        body = {
            "user_id": user_id,
            "plan_id": plan_id,
            "amount": amount,
            "currency": currency,
            "payment_ref": payment_ref,
        }

        try:
            if self._client is not None:
                response = self._client.post(url, json=body, headers=headers)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"payment_gateway_transport_error: {exc}") from exc

        if response.status_code >= 500 or response.status_code in {408, 429}:
            raise PaymentGatewayError(f"payment_gateway_unavailable status={response.status_code}")
        if response.status_code < 200 or response.status_code >= 300:
            raise PaymentDeclinedError(_decline_reason(response))

        try:
            payload = response.json()
        except ValueError as exc:
            raise PaymentGatewayError("payment_gateway_invalid_json_response") from exc
        if not isinstance(payload, dict):
            raise PaymentGatewayError("payment_gateway_invalid_payload")

        transaction_id = str(payload.get("transaction_id") or payload.get("id") or "").strip()
        if not transaction_id:
            raise PaymentGatewayError("payment_gateway_missing_transaction_id")
        return ChargeResult(transaction_id=transaction_id, payload=payload)


def _decline_reason(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        reason = payload.get("reason") or payload.get("error") or payload.get("message")
        if reason:
            return str(reason)[:240]
    detail = response.text.strip()
    if len(detail) > 240:
        detail = detail[:240] + "..."
    return detail or f"payment_declined status={response.status_code}"


@lru_cache(maxsize=1)
def get_payment_gateway() -> HttpPaymentGateway:
    settings = get_settings()
    return HttpPaymentGateway(
        base_url=settings.payment_gateway_url,
        api_key=settings.payment_gateway_api_key,
        timeout_seconds=settings.payment_gateway_timeout_seconds,
    )

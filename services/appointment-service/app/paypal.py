"""
PayPal Orders v2 adapter.

Only what the booking flow needs: open an order for a reservation, capture
it, and read it back. Provider failures become ``PaymentProviderError``;
"already captured" is reported as a successful capture.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from dateutil import parser as dateparser

from .config import Settings
from .errors import ConfigError, PaymentProviderError

logger = logging.getLogger(__name__)

ALREADY_CAPTURED_ISSUE = "ORDER_ALREADY_CAPTURED"
APPROVAL_RELS = ("payer-action", "approve")


class AlreadyCaptured(Exception):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} already captured")
        self.order_id = order_id


@dataclass(frozen=True)
class OrderHandle:
    order_id: str
    approval_url: str


@dataclass(frozen=True)
class CaptureResult:
    status: str
    payer_id: str | None = None
    transaction_id: str | None = None
    captured_at: datetime | None = None
    reference_id: str | None = None
    already_captured: bool = False

    @property
    def completed(self) -> bool:
        return self.status == "COMPLETED"


class TokenCache:
    def __init__(self) -> None:
        self._token: str | None = None
        self._expires_at: datetime | None = None

    def get(self) -> str | None:
        if self._token and self._expires_at:
            if datetime.now(timezone.utc) < self._expires_at - timedelta(seconds=60):
                return self._token
        return None

    def set(self, token: str, expires_in: int) -> None:
        self._token = token
        self._expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)


def _issues(body: Any) -> list[str]:
    if not isinstance(body, dict):
        return []
    return [d.get("issue") for d in body.get("details") or [] if isinstance(d, dict)]


def _parse_capture(order: dict, already_captured: bool = False) -> CaptureResult:
    unit = (order.get("purchase_units") or [{}])[0]
    captures = (unit.get("payments") or {}).get("captures") or []
    capture = captures[0] if captures else {}

    captured_at = None
    if capture.get("create_time"):
        captured_at = dateparser.isoparse(capture["create_time"])

    return CaptureResult(
        status=order.get("status") or "UNKNOWN",
        payer_id=(order.get("payer") or {}).get("payer_id"),
        transaction_id=capture.get("id"),
        captured_at=captured_at,
        reference_id=unit.get("reference_id"),
        already_captured=already_captured,
    )


class PayPalClient:
    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None):
        self.settings = settings
        self._token_cache = TokenCache()
        timeout = settings.paypal_timeout_seconds
        self.http = http or httpx.AsyncClient(
            base_url=settings.paypal_base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    def ensure_configured(self) -> None:
        if not self.settings.paypal_configured:
            raise ConfigError(
                "PayPal is not configured. Please contact support.", "PAYPAL_NOT_CONFIGURED"
            )

    async def _get_token(self) -> str:
        cached = self._token_cache.get()
        if cached:
            return cached

        self.ensure_configured()
        try:
            resp = await self.http.post(
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(
                    self.settings.paypal_client_id,
                    self.settings.paypal_client_secret.get_secret_value(),
                ),
            )
        except httpx.HTTPError as exc:
            raise PaymentProviderError(f"PayPal auth request failed: {exc}", "PAYPAL_AUTH_ERROR") from exc

        if resp.status_code >= 400:
            raise PaymentProviderError(
                "PayPal rejected client credentials", "PAYPAL_AUTH_ERROR", http_status=resp.status_code
            )

        try:
            data = resp.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", 300))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise PaymentProviderError(
                "PayPal returned an unreadable token response", "PAYPAL_AUTH_ERROR"
            ) from exc

        self._token_cache.set(token, expires_in)
        return token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        headers: dict[str, str] | None = None,
        order_id: str | None = None,
    ) -> dict:
        token = await self._get_token()
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if headers:
            request_headers.update(headers)

        try:
            resp = await self.http.request(method, path, json=json, headers=request_headers)
        except httpx.TimeoutException as exc:
            raise PaymentProviderError(f"PayPal request to {path} timed out", "PAYPAL_TIMEOUT") from exc
        except httpx.HTTPError as exc:
            raise PaymentProviderError(f"PayPal request failed: {exc}", "PAYPAL_UNAVAILABLE") from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            if resp.status_code == 422 and ALREADY_CAPTURED_ISSUE in _issues(body):
                raise AlreadyCaptured(order_id or "")
            debug_id = body.get("debug_id") if isinstance(body, dict) else None
            logger.warning(
                "PayPal %s %s -> %s issues=%s debug_id=%s",
                method, path, resp.status_code, _issues(body), debug_id,
            )
            raise PaymentProviderError(
                f"PayPal API error ({resp.status_code})",
                "PAYPAL_API_ERROR",
                http_status=resp.status_code,
            )

        return body or {}

    async def create_order(
        self,
        reservation_id: str,
        amount: str,
        currency: str,
        return_url: str,
        cancel_url: str,
        description: str,
    ) -> OrderHandle:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reservation_id,
                    "custom_id": reservation_id,
                    "description": description,
                    "amount": {
                        "currency_code": currency,
                        "value": amount,
                        "breakdown": {"item_total": {"currency_code": currency, "value": amount}},
                    },
                    "items": [
                        {
                            "name": "Meeting Booking",
                            "description": description,
                            "quantity": "1",
                            "unit_amount": {"currency_code": currency, "value": amount},
                        }
                    ],
                }
            ],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                        "brand_name": self.settings.paypal_brand_name,
                        "locale": "en-US",
                        "landing_page": "LOGIN",
                        "user_action": "PAY_NOW",
                        "return_url": return_url,
                        "cancel_url": cancel_url,
                    }
                }
            },
        }
        # a retried create for the same reservation returns the same order
        order = await self._request(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": reservation_id},
        )

        approval_url = None
        links = {link.get("rel"): link.get("href") for link in order.get("links") or []}
        for rel in APPROVAL_RELS:
            if links.get(rel):
                approval_url = links[rel]
                break

        if not order.get("id") or not approval_url:
            raise PaymentProviderError(
                "Failed to get PayPal approval URL", "PAYPAL_APPROVAL_URL_ERROR"
            )

        logger.info("Created PayPal order %s for reservation %s", order["id"], reservation_id)
        return OrderHandle(order_id=order["id"], approval_url=approval_url)

    async def get_order(self, order_id: str) -> dict:
        return await self._request("GET", f"/v2/checkout/orders/{order_id}", order_id=order_id)

    async def capture(self, order_id: str) -> CaptureResult:
        try:
            order = await self._request(
                "POST", f"/v2/checkout/orders/{order_id}/capture", json={}, order_id=order_id
            )
        except AlreadyCaptured:
            logger.info("PayPal order %s was already captured, reading it back", order_id)
            order = await self.get_order(order_id)
            return _parse_capture(order, already_captured=True)

        return _parse_capture(order)

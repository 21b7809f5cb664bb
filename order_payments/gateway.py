"""
Typed client for the payment processor's REST API.

Only the five operations below are used by the rest of the service; callers
never see the processor's JSON shapes, only `PaymentSnapshot`,
`RefundSnapshot` and `PreferenceResult`.
"""

import asyncio
import logging
from typing import Any, Optional, Sequence
from uuid import uuid4

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from order_payments.config import GatewayConfig
from order_payments.errors import (
    GatewayUnavailable,
    InvalidRequest,
    InvalidState,
    PaymentNotFound,
)
from order_payments.schemas import (
    LineItem,
    PaymentSnapshot,
    PreferenceResult,
    RefundSnapshot,
    ReturnUrls,
)

logger = logging.getLogger(__name__)

# One call plus at most two retries
MAX_ATTEMPTS = 3

# Words in a 400 body that mean "the payment is not in a state for this"
STATE_ERROR_HINTS = ("status", "state", "captur", "cancel", "authoriz")


def _to_amount(value: Any) -> int:
    if value is None:
        return 0
    return int(round(float(value)))


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _is_state_error(status_code: int, body: Any) -> bool:
    if status_code != 400:
        return False
    if isinstance(body, dict):
        body = " ".join(str(body.get(field) or "") for field in ("message", "error", "cause"))
    text = str(body).lower()
    return any(hint in text for hint in STATE_ERROR_HINTS)


def to_snapshot(data: dict) -> PaymentSnapshot:
    return PaymentSnapshot(
        id=str(data["id"]),
        status=data.get("status") or "unknown",
        status_detail=data.get("status_detail"),
        amount=_to_amount(data.get("transaction_amount")),
        currency=data.get("currency_id"),
        external_reference=data.get("external_reference"),
        captured=bool(data.get("captured", False)),
        refunded_amount=_to_amount(data.get("transaction_amount_refunded")),
    )


class PaymentGatewayClient:
    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        wait=None,
    ):
        self.config = config
        self._wait = wait if wait is not None else wait_exponential(multiplier=0.5)
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Authorization": f"Bearer {config.access_token}",
                "Content-Type": "application/json",
            },
            timeout=config.request_timeout,
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    # ── Operations ───────────────────────────────────

    async def create_authorization_preference(
        self,
        order,
        line_items: Sequence[LineItem],
        return_urls: ReturnUrls,
    ) -> PreferenceResult:
        preference = {
            "items": [
                {
                    "id": item.id,
                    "title": item.title or item.id,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "currency_id": order.currency or self.config.currency,
                }
                for item in line_items
            ],
            "payment_methods": {
                "excluded_payment_methods": [],
                "excluded_payment_types": [],
                "installments": 1,
            },
            "back_urls": return_urls.model_dump(),
            "auto_return": "approved",
            "external_reference": order.id,
            "capture": False,
            "metadata": {
                "order_id": order.id,
                "payment_type": "authorization_hold",
            },
        }
        if self.config.notification_url:
            preference["notification_url"] = self.config.notification_url

        logger.info("Creating authorization preference for order %s", order.id)
        response = await self._request(
            "POST", "/checkout/preferences", payload=preference, idempotency_key=str(uuid4())
        )
        self._raise_for_client_error(response)
        data = response.json()
        return PreferenceResult(
            preference_id=str(data["id"]),
            checkout_url=data.get("init_point") or data["sandbox_init_point"],
        )

    async def get_payment(self, external_payment_id: str) -> PaymentSnapshot:
        response = await self._request("GET", f"/v1/payments/{external_payment_id}")
        self._raise_for_client_error(response, payment_id=external_payment_id)
        return to_snapshot(response.json())

    async def capture_payment(self, external_payment_id: str, amount: int) -> PaymentSnapshot:
        logger.info("Capturing payment %s for %s", external_payment_id, amount)
        response = await self._request(
            "PUT",
            f"/v1/payments/{external_payment_id}",
            payload={"capture": True, "transaction_amount": amount},
            idempotency_key=str(uuid4()),
        )
        self._raise_for_client_error(response, payment_id=external_payment_id, state_change=True)
        snapshot = to_snapshot(response.json())
        if snapshot.status != "approved" or not snapshot.captured:
            raise InvalidState(
                f"Payment {external_payment_id} was not captured, processor status is {snapshot.status}",
                body=snapshot.model_dump(),
            )
        return snapshot

    async def cancel_payment(self, external_payment_id: str) -> PaymentSnapshot:
        logger.info("Cancelling payment %s", external_payment_id)
        response = await self._request(
            "PUT",
            f"/v1/payments/{external_payment_id}",
            payload={"status": "cancelled"},
            idempotency_key=str(uuid4()),
        )
        self._raise_for_client_error(response, payment_id=external_payment_id, state_change=True)
        snapshot = to_snapshot(response.json())
        if snapshot.status != "cancelled":
            raise InvalidState(
                f"Payment {external_payment_id} was not cancelled, processor status is {snapshot.status}",
                body=snapshot.model_dump(),
            )
        return snapshot

    async def refund_payment(
        self,
        external_payment_id: str,
        amount: Optional[int] = None,
        captured_amount: Optional[int] = None,
    ) -> RefundSnapshot:
        """Refund a captured payment. Omitting `amount` refunds it in full."""
        payload = {}
        if amount is not None:
            if amount <= 0:
                raise InvalidRequest(f"Refund amount must be positive, got {amount}")
            if captured_amount is not None and amount > captured_amount:
                raise InvalidRequest(
                    f"Refund amount {amount} exceeds captured amount {captured_amount}"
                )
            payload["amount"] = amount

        logger.info("Refunding payment %s (amount=%s)", external_payment_id, amount)
        response = await self._request(
            "POST",
            f"/v1/payments/{external_payment_id}/refunds",
            payload=payload,
            idempotency_key=str(uuid4()),
        )
        self._raise_for_client_error(response, payment_id=external_payment_id)
        data = response.json()
        return RefundSnapshot(
            refund_id=str(data["id"]),
            payment_id=str(data.get("payment_id") or external_payment_id),
            amount=_to_amount(data.get("amount", amount)),
            status=data.get("status"),
        )

    # ── Transport ────────────────────────────────────

    async def _request(self, method: str, path: str, payload=None, idempotency_key=None) -> httpx.Response:
        headers = {}
        if idempotency_key:
            # Same key on every retry of this operation
            headers["X-Idempotency-Key"] = idempotency_key
        try:
            return await asyncio.wait_for(
                self._send_with_retry(method, path, payload, headers),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayUnavailable(
                f"{method} {path} did not complete within {self.config.request_timeout}s"
            ) from exc

    async def _send_with_retry(self, method, path, payload, headers) -> httpx.Response:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=self._wait,
            retry=retry_if_exception_type(GatewayUnavailable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying %s %s (attempt %d)", method, path, attempt.retry_state.attempt_number)
                return await self._send(method, path, payload, headers)

    async def _send(self, method, path, payload, headers) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=payload, headers=headers)
        except httpx.TransportError as exc:
            # TimeoutException is a TransportError too
            raise GatewayUnavailable(f"{method} {path} failed: {exc!r}") from exc
        if response.status_code >= 500:
            body = _body(response)
            logger.error("Processor error on %s %s: %s %s", method, path, response.status_code, body)
            raise GatewayUnavailable(
                f"{method} {path} returned {response.status_code}", body=body
            )
        return response

    @staticmethod
    def _raise_for_client_error(response: httpx.Response, payment_id: str = None, state_change: bool = False):
        if response.status_code < 400:
            return
        body = _body(response)
        if payment_id is not None and response.status_code == 404:
            raise PaymentNotFound(f"Payment {payment_id} not found", body=body)
        if state_change and (response.status_code == 409 or _is_state_error(response.status_code, body)):
            raise InvalidState(
                f"Payment {payment_id} is not in an authorized state", body=body
            )
        logger.warning("Processor rejected request: %s %s", response.status_code, body)
        raise InvalidRequest(f"Processor rejected request with {response.status_code}", body=body)

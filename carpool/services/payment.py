"""
PSP payment adapter.

Holds are Stripe-style manual-capture payment intents: `authorize` places the
hold, `capture` converts it into a charge, `refund` voids an uncaptured hold
or refunds a captured charge, `charge_separate` is an immediate one-off charge
used for cancellation penalties.

Every call carries an idempotency key derived from (request id, operation),
so retrying after a timeout can never move money twice.

With no `psp_api_key` configured the adapter runs the stub path, which always
succeeds (local development).
"""
import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Protocol

import httpx

from carpool.config import get_settings
from carpool.errors import PaymentProcessorUnavailable

logger = logging.getLogger(__name__)
settings = get_settings()


class PSPError(Exception):
    """Transient PSP failure; the call may be retried with the same key."""


class PSPDeclined(Exception):
    """The PSP rejected the call outright; retrying will not help."""


class PaymentProcessor(Protocol):
    async def authorize(self, amount: Decimal, payer_token: str, idempotency_key: str) -> str: ...

    async def capture(self, authorization_id: str, idempotency_key: str) -> str: ...

    async def refund(self, reference: str, idempotency_key: str) -> str: ...

    async def charge_separate(self, amount: Decimal, payer_token: str, idempotency_key: str) -> str: ...


def idempotency_key(request_id: str, operation: str) -> str:
    return f"{request_id}:{operation}"


def _to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class HttpPaymentProcessor:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ):
        self.base_url = base_url or settings.psp_base_url
        self.api_key = settings.psp_api_key if api_key is None else api_key
        self.timeout = timeout or settings.psp_timeout_seconds
        self.max_attempts = max_attempts or settings.psp_max_attempts

    async def authorize(self, amount: Decimal, payer_token: str, idempotency_key: str) -> str:
        body = await self._request(
            "/payment_intents",
            {
                "amount": _to_cents(amount),
                "currency": settings.currency,
                "payment_method": payer_token,
                "confirm": "true",
                "capture_method": "manual",  # authorize now, capture later
            },
            idempotency_key,
            stub_prefix="pi",
        )
        logger.info("PSP hold placed: ref=%s amount=%s", body["id"], amount)
        return body["id"]

    async def capture(self, authorization_id: str, idempotency_key: str) -> str:
        body = await self._request(
            f"/payment_intents/{authorization_id}/capture", {}, idempotency_key, stub_prefix="ch"
        )
        receipt = body.get("latest_charge") or body["id"]
        logger.info("PSP capture success: auth=%s receipt=%s", authorization_id, receipt)
        return receipt

    async def refund(self, reference: str, idempotency_key: str) -> str:
        if reference.startswith("pi"):
            # Uncaptured hold: cancelling the intent releases it.
            body = await self._request(
                f"/payment_intents/{reference}/cancel", {}, idempotency_key, stub_prefix="pi"
            )
        else:
            body = await self._request("/refunds", {"charge": reference}, idempotency_key, stub_prefix="re")
        logger.info("PSP refund success: ref=%s confirmation=%s", reference, body["id"])
        return body["id"]

    async def charge_separate(self, amount: Decimal, payer_token: str, idempotency_key: str) -> str:
        body = await self._request(
            "/payment_intents",
            {
                "amount": _to_cents(amount),
                "currency": settings.currency,
                "payment_method": payer_token,
                "confirm": "true",
            },
            idempotency_key,
            stub_prefix="ch",
        )
        logger.info("PSP separate charge success: ref=%s amount=%s", body["id"], amount)
        return body["id"]

    async def _request(self, path: str, data: dict, idempotency_key: str, stub_prefix: str) -> dict:
        """
        Sends one call to the PSP with up to `max_attempts` tries (exponential backoff).
        Raises PaymentProcessorUnavailable once the attempts are spent or the PSP declines.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._call_psp(path, data, idempotency_key, stub_prefix)
            except PSPDeclined as e:
                logger.error("PSP declined %s: %s", path, e)
                raise PaymentProcessorUnavailable(f"Payment declined: {e}") from e
            except PSPError as e:
                if attempt == self.max_attempts:
                    logger.error("PSP call %s failed after %d attempts: %s", path, attempt, e)
                    raise PaymentProcessorUnavailable(str(e)) from e
                wait = 2 ** attempt
                logger.warning("PSP call %s failed (attempt %d), retrying in %ss: %s", path, attempt, wait, e)
                await asyncio.sleep(wait)

        raise PaymentProcessorUnavailable("PSP unreachable")

    async def _call_psp(self, path: str, data: dict, idempotency_key: str, stub_prefix: str) -> dict:
        if not self.api_key:
            # Stub: always succeeds
            return {"id": f"{stub_prefix}_stub_{uuid.uuid4().hex[:16]}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}{path}",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Idempotency-Key": idempotency_key,
                    },
                    data=data,
                )
        except httpx.HTTPError as exc:
            raise PSPError(f"transport error: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
        if resp.status_code >= 400:
            raise PSPDeclined(f"PSP error {resp.status_code}: {resp.text}")
        return resp.json()


_processor: PaymentProcessor | None = None


def get_payment_processor() -> PaymentProcessor:
    global _processor
    if _processor is None:
        _processor = HttpPaymentProcessor()
    return _processor

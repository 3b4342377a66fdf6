"""Payment processor clients used for escrow holds

Every call carries an idempotency key. A processor must return the original
result when it sees a key again, which is what makes retry after a timeout
safe.
"""

import logging
import uuid
from typing import Any

import stripe
from pydantic import BaseModel

from instantphoto.config import settings

logger = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    """Processor rejected or failed a call"""

    transient = False


class ProcessorDeclined(PaymentProcessorError):
    """Card declined or request invalid; retrying will not help"""


class ProcessorTimeout(PaymentProcessorError):
    """No usable response; the call may or may not have taken effect"""

    transient = True


class ProcessorResult(BaseModel):
    reference: str
    status: str
    amount: int


class PaymentProcessor:
    """authorize / capture / refund / void contract"""

    name = "base"

    async def authorize(
        self,
        amount: int,
        payment_method: str | None,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorResult:
        raise NotImplementedError

    async def capture(self, reference: str, idempotency_key: str, amount: int | None = None) -> ProcessorResult:
        raise NotImplementedError

    async def refund(self, reference: str, amount: int, idempotency_key: str) -> ProcessorResult:
        raise NotImplementedError

    async def void(self, reference: str, idempotency_key: str) -> ProcessorResult:
        raise NotImplementedError


class StripePaymentProcessor(PaymentProcessor):
    """Manual-capture PaymentIntents"""

    name = "stripe"

    def __init__(self):
        # Configure Stripe
        stripe.api_key = settings.stripe_secret_key
        self.stripe_client = stripe

    def _call(self, operation: str, fn, *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except stripe.CardError as e:
            logger.info(f"Stripe {operation} declined: {e.user_message or e}")
            raise ProcessorDeclined(str(e.user_message or e)) from e
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning(f"Stripe {operation} did not complete: {e}")
            raise ProcessorTimeout(str(e)) from e
        except stripe.APIError as e:
            logger.warning(f"Stripe {operation} server error: {e}")
            raise ProcessorTimeout(str(e)) from e
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe {operation} rejected: {e}")
            raise ProcessorDeclined(str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise PaymentProcessorError(str(e)) from e

    async def authorize(
        self,
        amount: int,
        payment_method: str | None,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorResult:
        if not payment_method:
            raise ProcessorDeclined("No payment method on file")

        intent = self._call(
            "authorize",
            self.stripe_client.PaymentIntent.create,
            amount=amount,
            currency=settings.payment_currency,
            payment_method=payment_method,
            capture_method="manual",
            confirm=True,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        if intent.status != "requires_capture":
            raise ProcessorDeclined(f"PaymentIntent {intent.id} is {intent.status}, expected requires_capture")
        return ProcessorResult(reference=intent.id, status=intent.status, amount=intent.amount)

    async def capture(self, reference: str, idempotency_key: str, amount: int | None = None) -> ProcessorResult:
        params: dict[str, Any] = {"idempotency_key": idempotency_key}
        if amount is not None:
            params["amount_to_capture"] = amount
        intent = self._call("capture", self.stripe_client.PaymentIntent.capture, reference, **params)
        return ProcessorResult(reference=intent.id, status=intent.status, amount=intent.amount_received)

    async def refund(self, reference: str, amount: int, idempotency_key: str) -> ProcessorResult:
        refund = self._call(
            "refund",
            self.stripe_client.Refund.create,
            payment_intent=reference,
            amount=amount,
            idempotency_key=idempotency_key,
        )
        return ProcessorResult(reference=refund.id, status=refund.status, amount=refund.amount)

    async def void(self, reference: str, idempotency_key: str) -> ProcessorResult:
        intent = self._call(
            "void",
            self.stripe_client.PaymentIntent.cancel,
            reference,
            idempotency_key=idempotency_key,
        )
        return ProcessorResult(reference=intent.id, status=intent.status, amount=intent.amount)


class SandboxPaymentProcessor(PaymentProcessor):
    """
    In-memory processor for development and tests

    Behaves like the real one where it matters: results are cached per
    idempotency key, and every effect that moves money is appended to
    `ledger` exactly once.
    """

    name = "sandbox"
    DECLINED_METHODS = {"pm_card_chargeDeclined", "pm_card_visa_chargeDeclined"}

    def __init__(self):
        self.holds: dict[str, dict[str, Any]] = {}
        self.ledger: list[dict[str, Any]] = []
        self._results: dict[str, ProcessorResult] = {}

    def _replay(self, idempotency_key: str) -> ProcessorResult | None:
        result = self._results.get(idempotency_key)
        if result is not None:
            logger.debug(f"Sandbox replaying result for {idempotency_key}")
        return result

    def _hold(self, reference: str) -> dict[str, Any]:
        hold = self.holds.get(reference)
        if hold is None:
            raise ProcessorDeclined(f"Unknown authorization {reference}")
        return hold

    def _record(self, idempotency_key: str, operation: str, reference: str, amount: int, status: str) -> ProcessorResult:
        self.ledger.append({
            "operation": operation,
            "reference": reference,
            "amount": amount,
            "idempotency_key": idempotency_key,
        })
        result = ProcessorResult(reference=reference, status=status, amount=amount)
        self._results[idempotency_key] = result
        return result

    async def authorize(
        self,
        amount: int,
        payment_method: str | None,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorResult:
        cached = self._replay(idempotency_key)
        if cached is not None:
            return cached
        if payment_method in self.DECLINED_METHODS:
            raise ProcessorDeclined("Your card was declined.")

        reference = f"sandbox_pi_{uuid.uuid4().hex[:16]}"
        self.holds[reference] = {"amount": amount, "captured": 0, "refunded": 0, "status": "requires_capture"}
        logger.info(f"Sandbox authorized {amount} as {reference}")
        return self._record(idempotency_key, "authorize", reference, amount, "requires_capture")

    async def capture(self, reference: str, idempotency_key: str, amount: int | None = None) -> ProcessorResult:
        cached = self._replay(idempotency_key)
        if cached is not None:
            return cached
        hold = self._hold(reference)
        if hold["status"] != "requires_capture":
            raise ProcessorDeclined(f"Authorization {reference} is {hold['status']}")
        amount = hold["amount"] if amount is None else amount
        if amount > hold["amount"]:
            raise ProcessorDeclined("Capture exceeds authorized amount")
        hold.update(captured=amount, status="succeeded")
        return self._record(idempotency_key, "capture", reference, amount, "succeeded")

    async def refund(self, reference: str, amount: int, idempotency_key: str) -> ProcessorResult:
        cached = self._replay(idempotency_key)
        if cached is not None:
            return cached
        hold = self._hold(reference)
        if hold["status"] != "succeeded" or hold["refunded"] + amount > hold["captured"]:
            raise ProcessorDeclined(f"Cannot refund {amount} on {reference}")
        hold["refunded"] += amount
        return self._record(idempotency_key, "refund", reference, amount, "succeeded")

    async def void(self, reference: str, idempotency_key: str) -> ProcessorResult:
        cached = self._replay(idempotency_key)
        if cached is not None:
            return cached
        hold = self._hold(reference)
        if hold["status"] != "requires_capture":
            raise ProcessorDeclined(f"Authorization {reference} is {hold['status']}")
        hold["status"] = "canceled"
        return self._record(idempotency_key, "void", reference, hold["amount"], "canceled")

    def effects(self, operation: str, reference: str | None = None) -> list[dict[str, Any]]:
        return [
            entry for entry in self.ledger
            if entry["operation"] == operation and (reference is None or entry["reference"] == reference)
        ]


def create_payment_processor() -> PaymentProcessor:
    """Stripe when configured, otherwise the sandbox (refused in production)"""
    if settings.is_payments_configured():
        return StripePaymentProcessor()
    if settings.app_env == "production":
        raise RuntimeError("Payments are not configured for production")
    logger.warning("Stripe not configured, using sandbox payment processor")
    return SandboxPaymentProcessor()

"""
Payment Gateway Adapter — the engine's only view of the payment provider.

Plan references come in two shapes:
  - RecurringPlan: a provider-managed recurring plan (Stripe ``sub_...``);
    billing, retries and cancellation go through the provider
  - SinglePayment: a one-off payment reference standing in for a plan;
    everything lifecycle-related is handled locally

The engine only ever sees the tagged variant. Raw references from the
database or from webhooks are classified once, by ``parse_plan_ref``.
"""

from __future__ import annotations
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Union

import stripe

from services.errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)


# ── Plan references ────────────────────────────────────────

@dataclass(frozen=True)
class RecurringPlan:
    id: str


@dataclass(frozen=True)
class SinglePayment:
    id: str


PlanRef = Union[RecurringPlan, SinglePayment]


def parse_plan_ref(raw: str) -> PlanRef:
    """Classify a raw provider reference. Only ``sub_`` ids are recurring plans."""
    if raw.startswith("sub_"):
        return RecurringPlan(raw)
    return SinglePayment(raw)


def plan_ref_for(subscription) -> PlanRef:
    if subscription.plan_kind == "recurring":
        return RecurringPlan(subscription.external_ref)
    return SinglePayment(subscription.external_ref)


def plan_kind_of(ref: PlanRef) -> str:
    return "recurring" if isinstance(ref, RecurringPlan) else "single_payment"


# ── Gateway data ───────────────────────────────────────────

EVENT_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_SUBSCRIPTION_UPDATED = "subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "subscription.deleted"

STRIPE_INTERVALS = {
    "daily": "day",
    "weekly": "week",
    "monthly": "month",
}

FAILURE_REASONS = {
    "card_declined": "Card declined",
    "insufficient_funds": "Insufficient funds",
    "expired_card": "Card expired",
    "incorrect_cvc": "Incorrect CVC",
    "processing_error": "Processing error",
    "incorrect_number": "Invalid card number",
}
DEFAULT_FAILURE_REASON = "Payment could not be processed"


@dataclass
class PlanSpec:
    customer_id: str
    product_name: str
    amount: float
    currency: str
    interval: str
    billing_anchor: datetime
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class PlanRegistration:
    plan_ref: PlanRef
    period_start: datetime | None = None
    period_end: datetime | None = None


@dataclass
class InvoicePayment:
    status: str
    invoice_id: str


@dataclass
class InvoiceSummary:
    invoice_id: str
    payment_ref: str | None
    line_period_starts: list[datetime] = field(default_factory=list)


@dataclass
class GatewayEvent:
    id: str
    type: str
    plan_ref: str | None = None
    payment_ref: str | None = None
    failure_reason: str | None = None
    status: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    cancel_at_period_end: bool = False


class PaymentGateway(Protocol):
    async def create_customer(self, email: str, name: str, metadata: dict[str, str]) -> str: ...

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None: ...

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None: ...

    async def create_recurring_plan(self, spec: PlanSpec) -> PlanRegistration: ...

    async def cancel_plan(self, plan_ref: PlanRef, immediate: bool, comment: str | None = None) -> None: ...

    async def pay_open_invoice(self, plan_ref: PlanRef) -> InvoicePayment | None: ...

    async def list_invoices(self, plan_ref: PlanRef) -> list[InvoiceSummary]: ...

    async def refund(
        self,
        payment_ref: str,
        amount: float,
        reason: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> str: ...

    def parse_event(self, payload: bytes, signature: str | None) -> GatewayEvent: ...


# ── Helpers ────────────────────────────────────────────────

def _from_timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _ref_id(value: Any) -> str | None:
    """Expandable fields arrive either as an id or as the expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _to_cents(amount: float) -> int:
    return int(round(amount * 100))


def extract_failure_reason(invoice: dict[str, Any]) -> str:
    """
    Human-readable reason for a failed invoice payment.

    Looks at the payment intent's last error first, then the charge.
    """
    payment_intent = invoice.get("payment_intent")
    if isinstance(payment_intent, dict):
        last_error = payment_intent.get("last_payment_error")
        if last_error:
            code = last_error.get("code")
            if code in FAILURE_REASONS:
                return FAILURE_REASONS[code]
            return last_error.get("message") or code or "Payment failed"

    charge = invoice.get("charge")
    if isinstance(charge, dict):
        if charge.get("failure_message"):
            return charge["failure_message"]
        if charge.get("failure_code"):
            return charge["failure_code"]

    return DEFAULT_FAILURE_REASON


def _normalize_event(raw: dict[str, Any]) -> GatewayEvent:
    event_type = raw.get("type", "")
    obj = raw.get("data", {}).get("object", {}) or {}

    if event_type.startswith("customer.subscription."):
        event_type = event_type.removeprefix("customer.")

    event = GatewayEvent(id=raw.get("id", ""), type=event_type)

    if event_type in (EVENT_PAYMENT_SUCCEEDED, EVENT_PAYMENT_FAILED):
        event.plan_ref = _ref_id(obj.get("subscription"))
        event.payment_ref = _ref_id(obj.get("payment_intent"))
        event.status = obj.get("status")
        if event_type == EVENT_PAYMENT_FAILED:
            event.failure_reason = extract_failure_reason(obj)
    elif event_type in (EVENT_SUBSCRIPTION_UPDATED, EVENT_SUBSCRIPTION_DELETED):
        event.plan_ref = obj.get("id")
        event.status = obj.get("status")
        event.period_start = _from_timestamp(obj.get("current_period_start"))
        event.period_end = _from_timestamp(obj.get("current_period_end"))
        event.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))

    return event


# ── Stripe implementation ──────────────────────────────────

class StripeGateway:
    """
    PaymentGateway on the Stripe SDK.

    The SDK is synchronous; every call runs in a worker thread and is bounded
    by ``timeout`` seconds. Stripe and timeout failures surface as GatewayError.
    """

    def __init__(
        self,
        api_key: str | None,
        webhook_secret: str | None,
        currency: str = "gbp",
        timeout: float = 15.0,
    ):
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.timeout = timeout

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.error("Stripe call %s timed out after %.1fs", fn.__qualname__, self.timeout)
            raise GatewayError("Payment provider timed out", code="gateway_timeout") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe call %s failed: %s", fn.__qualname__, exc)
            raise GatewayError(
                exc.user_message or str(exc),
                code=exc.code or "gateway_error",
            ) from exc

    async def create_customer(self, email: str, name: str, metadata: dict[str, str]) -> str:
        customer = await self._call(
            stripe.Customer.create, email=email, name=name, metadata=metadata
        )
        logger.info("Created Stripe customer %s for %s", customer.id, email)
        return customer.id

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        await self._call(stripe.PaymentMethod.attach, payment_method_id, customer=customer_id)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        await self._call(
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    async def create_recurring_plan(self, spec: PlanSpec) -> PlanRegistration:
        product = await self._call(
            stripe.Product.create, name=spec.product_name, metadata=spec.metadata
        )
        price = await self._call(
            stripe.Price.create,
            product=product.id,
            unit_amount=_to_cents(spec.amount),
            currency=spec.currency,
            recurring={"interval": STRIPE_INTERVALS[spec.interval], "interval_count": 1},
            metadata=spec.metadata,
        )
        anchor = spec.billing_anchor.replace(tzinfo=timezone.utc)
        subscription = await self._call(
            stripe.Subscription.create,
            customer=spec.customer_id,
            items=[{"price": price.id}],
            billing_cycle_anchor=int(anchor.timestamp()),
            proration_behavior="none",
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            metadata=spec.metadata,
        )
        logger.info(
            "Created Stripe subscription %s (%s) for customer %s",
            subscription.id, spec.interval, spec.customer_id,
        )
        return PlanRegistration(
            plan_ref=RecurringPlan(subscription.id),
            period_start=_from_timestamp(subscription.get("current_period_start")),
            period_end=_from_timestamp(subscription.get("current_period_end")),
        )

    async def cancel_plan(self, plan_ref: PlanRef, immediate: bool, comment: str | None = None) -> None:
        if not isinstance(plan_ref, RecurringPlan):
            return
        if immediate:
            params = {"cancellation_details": {"comment": comment}} if comment else {}
            await self._call(stripe.Subscription.cancel, plan_ref.id, **params)
        else:
            await self._call(stripe.Subscription.modify, plan_ref.id, cancel_at_period_end=True)
        logger.info("Cancelled Stripe subscription %s (immediate=%s)", plan_ref.id, immediate)

    async def pay_open_invoice(self, plan_ref: PlanRef) -> InvoicePayment | None:
        if not isinstance(plan_ref, RecurringPlan):
            return None
        invoices = await self._call(
            stripe.Invoice.list, subscription=plan_ref.id, status="open", limit=1
        )
        if not invoices.data:
            logger.info("No open invoice for Stripe subscription %s", plan_ref.id)
            return None
        paid = await self._call(stripe.Invoice.pay, invoices.data[0].id)
        return InvoicePayment(status=paid.status, invoice_id=paid.id)

    async def list_invoices(self, plan_ref: PlanRef) -> list[InvoiceSummary]:
        if not isinstance(plan_ref, RecurringPlan):
            return []
        invoices = await self._call(stripe.Invoice.list, subscription=plan_ref.id, limit=50)
        summaries = []
        for invoice in invoices.data:
            starts = []
            for line in invoice.get("lines", {}).get("data", []):
                start = _from_timestamp((line.get("period") or {}).get("start"))
                if start is not None:
                    starts.append(start)
            summaries.append(
                InvoiceSummary(
                    invoice_id=invoice.id,
                    payment_ref=_ref_id(invoice.get("payment_intent")),
                    line_period_starts=starts,
                )
            )
        return summaries

    async def refund(
        self,
        payment_ref: str,
        amount: float,
        reason: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> str:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        refund = await self._call(
            stripe.Refund.create,
            payment_intent=payment_ref,
            amount=_to_cents(amount),
            # Stripe only accepts its own reason codes; the free text goes in metadata
            reason="requested_by_customer",
            metadata={**metadata, "cancellation_reason": reason[:500]},
            **options,
        )
        logger.info("Refunded %.2f on %s (%s)", amount, payment_ref, refund.id)
        return refund.id

    def parse_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        """Verify the webhook signature and normalize the event."""
        if not self.webhook_secret:
            raise GatewayError("Webhook secret is not configured", code="webhook_not_configured")
        try:
            stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise ValidationError("Invalid webhook signature", code="invalid_signature") from exc
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload", code="invalid_payload") from exc
        return _normalize_event(json.loads(payload))

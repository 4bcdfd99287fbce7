"""
Subscription Lifecycle Engine — recurring bookings driven by payment events.

State machine over Subscription.status:

    active ──payment failed──► past_due ──payment succeeded / retry paid──► active
                                  │
                                  └──3rd consecutive failure──► canceled
    active ──customer cancels (immediate)──► canceled

Triggers:
  - Gateway webhooks: payment succeeded / failed, subscription updated / deleted
  - Daily retry sweep: pay the open invoice of past_due subscriptions
  - Daily pending sweep: materialize occurrences deferred past the look-ahead window
  - Customer requests: create, cancel, refund a single occurrence

Subscription writes all go through services.optimistic.update_subscription.
Every public operation commits its own unit of work; notifications are sent
after the commit.
"""

import logging
import uuid
from dataclasses import dataclass, field as dataclass_field
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, settings as default_settings
from db.database import utcnow
from models.booking import Booking
from models.field import Field
from models.payment import Payment, Payout, Transaction
from models.subscription import Subscription
from models.user import User
from services import notifications
from services.availability import is_available
from services.booking_generator import generate
from services.cadence import INTERVALS, next_occurrence
from services.errors import (
    GatewayError,
    InvariantViolation,
    NotFoundError,
    SlotConflictError,
    ValidationError,
)
from services.notifications import Notifier
from services.optimistic import load_subscription, update_subscription
from services.payment_gateway import (
    DEFAULT_FAILURE_REASON,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    GatewayEvent,
    PaymentGateway,
    PlanRef,
    PlanSpec,
    RecurringPlan,
    SinglePayment,
    parse_plan_ref,
    plan_kind_of,
    plan_ref_for,
)
from services.pricing import calculate_slot_price, commission_split
from services.time_of_day import slot_window

logger = logging.getLogger(__name__)

TERMINAL_BOOKING_STATUSES = ("cancelled", "completed")
INVOICE_MATCH_WINDOW = timedelta(hours=24)


# ── Date helpers ───────────────────────────────────────────

def _display(day: date) -> str:
    return day.strftime("%d %b %Y")


# ── Results ────────────────────────────────────────────────

@dataclass
class SubscriptionCreated:
    subscription: Subscription
    bookings: list[Booking] = dataclass_field(default_factory=list)


@dataclass
class RefundResult:
    booking_id: uuid.UUID
    refund_amount: float
    payment_ref: str | None
    refund_ref: str | None


class SubscriptionService:
    def __init__(
        self,
        gateway: PaymentGateway,
        notifier: Notifier,
        settings: Settings = default_settings,
    ):
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        field_id: uuid.UUID,
        interval: str,
        time_slots: list[str],
        start_date: date,
        number_of_dogs: int = 1,
        payment_method_id: str | None = None,
        single_payment_ref: str | None = None,
        now: datetime | None = None,
    ) -> SubscriptionCreated:
        """
        Register a recurring booking and book its first occurrence.

        With ``single_payment_ref`` the subscription is tied to an existing
        one-off payment and no plan is registered at the gateway.

        Raises:
            ValidationError: bad interval, slots, dog count or start date
            NotFoundError: unknown user or field
            SlotConflictError: a requested slot is taken on the start date
            GatewayError: plan registration failed; nothing is persisted
        """
        now = now or utcnow()
        today = now.date()

        if interval not in INTERVALS:
            raise ValidationError(f"Invalid interval {interval!r}", details={"allowed": list(INTERVALS)})
        if not time_slots:
            raise ValidationError("At least one time slot is required")
        if number_of_dogs < 1:
            raise ValidationError("number_of_dogs must be at least 1")
        if start_date < today:
            raise ValidationError("Start date is in the past")
        if start_date > today + timedelta(days=self.settings.max_advance_booking_days):
            raise ValidationError(
                f"Start date is more than {self.settings.max_advance_booking_days} days ahead"
            )

        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        field = await db.get(Field, field_id)
        if field is None or not field.is_active:
            raise NotFoundError(f"Field {field_id} not found")

        # Price every slot and make sure the first occurrence can actually be booked
        total_price = 0.0
        for slot_label in time_slots:
            try:
                start, end = slot_window(slot_label, field.session_minutes)
            except ValueError as exc:
                raise ValidationError(f"Invalid time slot {slot_label!r}") from exc
            availability = await is_available(
                db, field.id, start_date, start, end, holder_id=user.id, now=now
            )
            if not availability.available:
                raise SlotConflictError(
                    availability.reason or f"Slot {slot_label} is not available",
                    details={"slot": slot_label, "conflict_type": availability.conflict_type},
                )
            price = calculate_slot_price(
                field.price_per_unit, field.booking_duration, start.minutes, end.minutes, number_of_dogs
            )
            total_price += price.total_price
        total_price = round(total_price, 2)

        try:
            if single_payment_ref:
                plan_ref: PlanRef = SinglePayment(single_payment_ref)
                customer_id = user.gateway_customer_id
                period_start = period_end = None
            else:
                customer_id = await self._ensure_customer(user, payment_method_id)
                registration = await self.gateway.create_recurring_plan(
                    PlanSpec(
                        customer_id=customer_id,
                        product_name=f"{field.name} - {', '.join(time_slots)}",
                        amount=total_price,
                        currency=self.settings.currency,
                        interval=interval,
                        billing_anchor=datetime.combine(next_occurrence(start_date, interval), time()),
                        metadata={
                            "user_id": str(user.id),
                            "field_id": str(field.id),
                            "interval": interval,
                            "time_slots": ", ".join(time_slots),
                            "number_of_dogs": str(number_of_dogs),
                            "first_booking_date": start_date.isoformat(),
                        },
                    )
                )
                plan_ref = registration.plan_ref
                period_start, period_end = registration.period_start, registration.period_end
        except GatewayError:
            await db.rollback()
            logger.error("Plan registration failed for user %s on field %s", user_id, field_id)
            raise

        subscription = Subscription(
            user_id=user.id,
            field_id=field.id,
            plan_kind=plan_kind_of(plan_ref),
            external_ref=plan_ref.id,
            gateway_customer_id=customer_id,
            interval=interval,
            time_slots=list(time_slots),
            number_of_dogs=number_of_dogs,
            total_price=total_price,
            anchor_date=start_date,
            current_period_start=period_start,
            current_period_end=period_end,
            status="active",
            payment_retry_count=0,
        )
        db.add(subscription)
        await db.flush()

        payment_ref = plan_ref.id if isinstance(plan_ref, SinglePayment) else None
        bookings = await generate(db, subscription.id, start_date, payment_ref=payment_ref, now=now)
        subscription = await load_subscription(db, subscription.id)
        await db.commit()

        logger.info(
            "Subscription %s created: %s %s on field %s (%s)",
            subscription.id, interval, time_slots, field.id, plan_ref,
        )

        slots = ", ".join(time_slots)
        await self._notify(
            user.id,
            notifications.RECURRING_BOOKING_CREATED,
            "Recurring Booking Confirmed",
            f"Your {interval} booking at {field.name} ({slots}) starts on {_display(start_date)}.",
            {"subscription_id": str(subscription.id), "first_booking_date": start_date.isoformat()},
        )
        if field.owner_id:
            await self._notify(
                field.owner_id,
                notifications.RECURRING_BOOKING_CREATED,
                "New Recurring Booking",
                f"{user.full_name} booked {field.name} {interval} at {slots} from {_display(start_date)}.",
                {"subscription_id": str(subscription.id), "user_id": str(user.id)},
            )

        return SubscriptionCreated(subscription=subscription, bookings=bookings or [])

    async def _ensure_customer(self, user: User, payment_method_id: str | None) -> str:
        customer_id = user.gateway_customer_id
        if not customer_id:
            customer_id = await self.gateway.create_customer(
                user.email, user.full_name, {"user_id": str(user.id)}
            )
            user.gateway_customer_id = customer_id
        if payment_method_id:
            await self.gateway.attach_payment_method(customer_id, payment_method_id)
            await self.gateway.set_default_payment_method(customer_id, payment_method_id)
        return customer_id

    # ------------------------------------------------------------------
    # Gateway events
    # ------------------------------------------------------------------

    async def handle_event(self, db: AsyncSession, event: GatewayEvent, now: datetime | None = None) -> None:
        """Route a normalized gateway event to its handler."""
        if event.type not in (
            EVENT_PAYMENT_SUCCEEDED,
            EVENT_PAYMENT_FAILED,
            EVENT_SUBSCRIPTION_UPDATED,
            EVENT_SUBSCRIPTION_DELETED,
        ):
            logger.info("Ignoring gateway event %s of type %s", event.id, event.type)
            return
        if not event.plan_ref:
            logger.info("Gateway event %s (%s) carries no plan reference", event.id, event.type)
            return

        subscription = await self._find_by_plan_ref(db, parse_plan_ref(event.plan_ref))
        if subscription is None:
            logger.warning(
                "Gateway event %s (%s) for unknown plan %s", event.id, event.type, event.plan_ref
            )
            return

        logger.info("Handling %s for subscription %s", event.type, subscription.id)
        if event.type == EVENT_PAYMENT_SUCCEEDED:
            await self.on_payment_succeeded(db, subscription.id, payment_ref=event.payment_ref, now=now)
        elif event.type == EVENT_PAYMENT_FAILED:
            await self.on_payment_failed(db, subscription.id, failure_reason=event.failure_reason, now=now)
        elif event.type == EVENT_SUBSCRIPTION_UPDATED:
            await self.on_subscription_updated(db, subscription.id, event, now=now)
        else:
            await self.on_subscription_deleted(db, subscription.id, now=now)

    async def _find_by_plan_ref(self, db: AsyncSession, plan_ref: PlanRef) -> Subscription | None:
        return (
            await db.execute(
                select(Subscription).where(
                    Subscription.external_ref == plan_ref.id,
                    Subscription.plan_kind == plan_kind_of(plan_ref),
                )
            )
        ).scalar_one_or_none()

    async def on_payment_succeeded(
        self,
        db: AsyncSession,
        subscription_id: uuid.UUID,
        payment_ref: str | None = None,
        now: datetime | None = None,
    ) -> list[Booking] | None:
        """
        A billing cycle was paid: recover from past_due and book the next occurrence.

        Occurrences beyond the look-ahead window are deferred to
        ``pending_occurrence_date`` and picked up by create_pending_occurrences.
        """
        now = now or utcnow()
        today = now.date()

        def mark_paid(s: Subscription) -> dict[str, Any] | None:
            if s.status == "canceled":
                return None
            values: dict[str, Any] = {"last_payment_attempt_at": now}
            if s.status == "past_due" or s.payment_retry_count > 0:
                values.update(status="active", payment_retry_count=0, next_retry_at=None, failure_reason=None)
            return values

        subscription = await update_subscription(db, subscription_id, mark_paid)
        if subscription.status == "canceled":
            logger.info("Payment succeeded for canceled subscription %s; ignored", subscription_id)
            await db.commit()
            return None

        base = subscription.last_booking_date or subscription.anchor_date
        next_date = next_occurrence(base, subscription.interval)
        horizon = today + timedelta(days=self.settings.max_advance_booking_days)
        field = await db.get(Field, subscription.field_id)
        field_name = field.name if field else "the field"
        slots = ", ".join(subscription.time_slots or [])

        if next_date > horizon:
            await update_subscription(db, subscription_id, lambda s: {"pending_occurrence_date": next_date})
            await db.commit()
            logger.info(
                "Subscription %s: next occurrence %s is beyond the %d-day window; deferred",
                subscription_id, next_date, self.settings.max_advance_booking_days,
            )
            await self._notify(
                subscription.user_id,
                notifications.RECURRING_BOOKING_PENDING,
                "Recurring Booking Scheduled",
                f"Your {subscription.interval} booking payment was successful. The booking will be "
                f"created automatically closer to {_display(next_date)} at {slots}.",
                {
                    "subscription_id": str(subscription_id),
                    "next_booking_date": next_date.isoformat(),
                    "field_name": field_name,
                },
            )
            return None

        bookings = await generate(db, subscription_id, next_date, payment_ref=payment_ref, now=now)
        await db.commit()

        await self._notify(
            subscription.user_id,
            notifications.RECURRING_BOOKING_CHARGED,
            "Recurring Booking Renewed",
            f"Your {subscription.interval} booking has been renewed. "
            f"Next booking: {_display(next_date)} at {slots}.",
            {"subscription_id": str(subscription_id), "next_booking_date": next_date.isoformat()},
        )
        if bookings and field and field.owner_id:
            await self._notify(
                field.owner_id,
                notifications.RECURRING_BOOKING_CREATED,
                "Recurring Booking Created",
                f"A recurring booking at {field_name} was created for {_display(next_date)} at {slots}.",
                {
                    "subscription_id": str(subscription_id),
                    "booking_ids": [str(b.id) for b in bookings],
                },
            )
        return bookings

    async def on_payment_failed(
        self,
        db: AsyncSession,
        subscription_id: uuid.UUID,
        failure_reason: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Count a failed charge. The MAX_PAYMENT_RETRIES-th consecutive failure
        cancels the subscription; anything earlier schedules a retry.
        """
        now = now or utcnow()
        reason = failure_reason or DEFAULT_FAILURE_REASON
        max_retries = self.settings.max_payment_retries

        outcome = {"terminal": False}

        def record_failure(s: Subscription) -> dict[str, Any] | None:
            outcome["terminal"] = False
            if s.status == "canceled":
                return None
            count = s.payment_retry_count + 1
            if count > max_retries:
                logger.error(
                    "Subscription %s would reach %d failed payments (max %d) while %s",
                    s.id, count, max_retries, s.status,
                )
                raise InvariantViolation(
                    "Payment retry count would exceed the maximum",
                    details={"subscription_id": str(s.id), "retry_count": count, "max": max_retries},
                )
            values: dict[str, Any] = {
                "payment_retry_count": count,
                "last_payment_attempt_at": now,
                "failure_reason": reason,
            }
            if count >= max_retries:
                outcome["terminal"] = True
                values.update(
                    status="canceled",
                    next_retry_at=None,
                    canceled_at=now,
                    cancellation_reason=(
                        f"Auto-cancelled after {count} failed payment attempts. Last failure: {reason}"
                    ),
                )
            else:
                values.update(
                    status="past_due",
                    next_retry_at=now + timedelta(hours=self.settings.payment_retry_delay_hours),
                )
            return values

        subscription = await update_subscription(db, subscription_id, record_failure)
        if outcome["terminal"]:
            await self._cancel_after_failures(db, subscription, reason, now)
            return subscription
        if subscription.status == "canceled":
            logger.info("Payment failed for canceled subscription %s; ignored", subscription_id)
            await db.commit()
            return subscription

        await db.commit()
        remaining = max_retries - subscription.payment_retry_count
        logger.info(
            "Payment failed for subscription %s (%d/%d): %s; retry at %s",
            subscription_id, subscription.payment_retry_count, max_retries, reason,
            subscription.next_retry_at,
        )
        await self._notify(
            subscription.user_id,
            notifications.PAYMENT_FAILED,
            "Payment Failed",
            f"Your recurring booking payment failed ({reason}). We will retry in "
            f"{self.settings.payment_retry_delay_hours} hours. {remaining} "
            f"attempt{'' if remaining == 1 else 's'} remaining before your subscription is cancelled.",
            {
                "subscription_id": str(subscription_id),
                "retry_count": subscription.payment_retry_count,
                "remaining_attempts": remaining,
                "next_retry_at": subscription.next_retry_at.isoformat() if subscription.next_retry_at else None,
                "failure_reason": reason,
            },
        )
        return subscription

    async def _cancel_after_failures(
        self, db: AsyncSession, subscription: Subscription, reason: str, now: datetime
    ) -> None:
        cancelled = await self._cancel_future_bookings(
            db, subscription.id, "Subscription cancelled due to payment failure", now
        )
        await db.commit()
        logger.warning(
            "Subscription %s cancelled after %d failed payments; %d future bookings cancelled",
            subscription.id, subscription.payment_retry_count, cancelled,
        )

        await self._cancel_plan_best_effort(
            plan_ref_for(subscription), immediate=True, comment=subscription.cancellation_reason
        )

        field = await db.get(Field, subscription.field_id)
        field_name = field.name if field else "the field"
        await self._notify(
            subscription.user_id,
            notifications.SUBSCRIPTION_CANCELLED_PAYMENT_FAILURE,
            "Subscription Cancelled",
            f"Your recurring booking for {field_name} has been cancelled after "
            f"{subscription.payment_retry_count} failed payment attempts. Please update your "
            f"payment method and create a new recurring booking.",
            {
                "subscription_id": str(subscription.id),
                "field_id": str(subscription.field_id),
                "total_attempts": subscription.payment_retry_count,
                "failure_reason": reason,
                "cancelled_bookings": cancelled,
            },
        )
        if field and field.owner_id:
            await self._notify(
                field.owner_id,
                notifications.RECURRING_BOOKING_CANCELLED,
                "Recurring Booking Cancelled",
                f"A recurring booking for {field_name} has been cancelled due to payment failure.",
                {"subscription_id": str(subscription.id), "user_id": str(subscription.user_id)},
            )

    async def on_subscription_updated(
        self,
        db: AsyncSession,
        subscription_id: uuid.UUID,
        event: GatewayEvent,
        now: datetime | None = None,
    ) -> Subscription:
        """Mirror the gateway's period bounds and cancel-at-period-end flag."""
        if event.status == "canceled":
            return await self.on_subscription_deleted(db, subscription_id, now=now)

        def sync(s: Subscription) -> dict[str, Any] | None:
            if s.status == "canceled":
                return None
            values: dict[str, Any] = {"cancel_at_period_end": event.cancel_at_period_end}
            if event.period_start:
                values["current_period_start"] = event.period_start
            if event.period_end:
                values["current_period_end"] = event.period_end
            return values

        subscription = await update_subscription(db, subscription_id, sync)
        await db.commit()
        return subscription

    async def on_subscription_deleted(
        self,
        db: AsyncSession,
        subscription_id: uuid.UUID,
        now: datetime | None = None,
    ) -> Subscription:
        """The gateway ended the plan: cancel locally and drop future bookings."""
        now = now or utcnow()
        transitioned = False

        def terminate(s: Subscription) -> dict[str, Any] | None:
            nonlocal transitioned
            if s.status == "canceled":
                return None
            transitioned = True
            return {"status": "canceled", "canceled_at": now, "next_retry_at": None}

        subscription = await update_subscription(db, subscription_id, terminate)
        if not transitioned:
            await db.commit()
            return subscription

        cancelled = await self._cancel_future_bookings(
            db, subscription_id, "Subscription ended by the payment provider", now
        )
        await db.commit()
        logger.info(
            "Subscription %s deleted at the gateway; %d future bookings cancelled",
            subscription_id, cancelled,
        )
        await self._notify(
            subscription.user_id,
            notifications.SUBSCRIPTION_CANCELED,
            "Recurring Booking Cancelled",
            "Your recurring booking has been cancelled.",
            {"subscription_id": str(subscription_id)},
        )
        return subscription

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def retry_failed_payments(self, db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
        """
        Daily out-of-band retry of past_due subscriptions.

        Only recurring plans have an invoice to pay. Per-item failures are
        logged and left for the next payment-failed event or sweep.
        """
        now = now or utcnow()
        counts = {"checked": 0, "recovered": 0, "unpaid": 0, "skipped": 0, "errors": 0}

        due_ids = (
            await db.execute(
                select(Subscription.id).where(
                    Subscription.status == "past_due",
                    Subscription.next_retry_at <= now,
                    Subscription.payment_retry_count < self.settings.max_payment_retries,
                )
            )
        ).scalars().all()

        for subscription_id in due_ids:
            counts["checked"] += 1
            try:
                subscription = await load_subscription(db, subscription_id)
                plan_ref = plan_ref_for(subscription)
                if not isinstance(plan_ref, RecurringPlan):
                    logger.info("Subscription %s is a single payment; retry skipped", subscription_id)
                    counts["skipped"] += 1
                    continue

                payment = await self.gateway.pay_open_invoice(plan_ref)
                if payment is None or payment.status != "paid":
                    logger.info(
                        "Retry for subscription %s did not settle (%s)",
                        subscription_id, payment.status if payment else "no open invoice",
                    )
                    counts["unpaid"] += 1
                    continue

                def recover(s: Subscription) -> dict[str, Any] | None:
                    if s.status != "past_due":
                        return None
                    return {
                        "status": "active",
                        "payment_retry_count": 0,
                        "next_retry_at": None,
                        "failure_reason": None,
                        "last_payment_attempt_at": now,
                    }

                subscription = await update_subscription(db, subscription_id, recover)
                await db.commit()
                counts["recovered"] += 1
                logger.info("Payment retry succeeded for subscription %s", subscription_id)
                await self._notify(
                    subscription.user_id,
                    notifications.PAYMENT_RETRY_SUCCESS,
                    "Payment Successful",
                    "Your recurring booking payment has been processed successfully. "
                    "Your subscription is now active.",
                    {"subscription_id": str(subscription_id), "invoice_id": payment.invoice_id},
                )
            except Exception:
                logger.exception("Payment retry failed for subscription %s", subscription_id)
                await db.rollback()
                counts["errors"] += 1

        logger.info("Payment retry sweep: %s", counts)
        return counts

    async def create_pending_occurrences(
        self, db: AsyncSession, now: datetime | None = None
    ) -> dict[str, int]:
        """Book deferred occurrences that have come inside the look-ahead window."""
        now = now or utcnow()
        today = now.date()
        horizon = today + timedelta(days=self.settings.max_advance_booking_days)
        counts = {"checked": 0, "created": 0, "skipped": 0, "errors": 0}

        pending_ids = (
            await db.execute(
                select(Subscription.id).where(
                    Subscription.status == "active",
                    Subscription.pending_occurrence_date.is_not(None),
                    Subscription.pending_occurrence_date <= horizon,
                )
            )
        ).scalars().all()

        for subscription_id in pending_ids:
            counts["checked"] += 1
            try:
                subscription = await load_subscription(db, subscription_id)
                day = subscription.pending_occurrence_date

                def clear(s: Subscription) -> dict[str, Any] | None:
                    if s.pending_occurrence_date != day:
                        return None
                    return {"pending_occurrence_date": None}

                if day < today:
                    logger.warning(
                        "Pending occurrence %s for subscription %s has already passed; dropped",
                        day, subscription_id,
                    )
                    await update_subscription(db, subscription_id, clear)
                    await db.commit()
                    counts["skipped"] += 1
                    continue

                bookings = await generate(db, subscription_id, day, now=now)
                await update_subscription(db, subscription_id, clear)
                await db.commit()

                if not bookings:
                    counts["skipped"] += 1
                    continue
                counts["created"] += 1
                await self._notify(
                    subscription.user_id,
                    notifications.RECURRING_BOOKING_CREATED,
                    "Recurring Booking Created",
                    f"Your {subscription.interval} booking for {_display(day)} has been created.",
                    {
                        "subscription_id": str(subscription_id),
                        "booking_ids": [str(b.id) for b in bookings],
                    },
                )
            except Exception:
                logger.exception("Could not create pending occurrence for subscription %s", subscription_id)
                await db.rollback()
                counts["errors"] += 1

        logger.info("Pending occurrence sweep: %s", counts)
        return counts

    # ------------------------------------------------------------------
    # Customer requests
    # ------------------------------------------------------------------

    async def refund_occurrence(
        self,
        db: AsyncSession,
        booking_id: uuid.UUID,
        reason: str,
        now: datetime | None = None,
    ) -> RefundResult:
        """
        Refund and cancel one booking of a subscription.

        The parent subscription is left exactly as it was; no
        subscription-level notification is sent.

        The booking is claimed with a conditional update before the gateway
        is called, so two concurrent requests produce one gateway refund. If
        the gateway call fails the claim is undone.
        """
        now = now or utcnow()
        booking = await db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.status in TERMINAL_BOOKING_STATUSES or booking.payment_status == "refunded":
            raise InvariantViolation(
                f"Booking {booking_id} is {booking.status} and cannot be refunded",
                details={"status": booking.status, "payment_status": booking.payment_status},
            )

        subscription = (
            await db.get(Subscription, booking.subscription_id) if booking.subscription_id else None
        )
        plan_ref = plan_ref_for(subscription) if subscription else None
        payment = (
            await db.execute(select(Payment).where(Payment.booking_id == booking.id))
        ).scalar_one_or_none()

        payment_ref = booking.payment_ref or (payment.payment_ref if payment else None)
        if payment_ref is None and isinstance(plan_ref, RecurringPlan):
            payment_ref = await self._find_invoice_payment(plan_ref, booking.date)
        if payment_ref is None:
            logger.error(
                "No payment reference for booking %s (subscription %s, plan %s, date %s)",
                booking.id, booking.subscription_id, plan_ref.id if plan_ref else None, booking.date,
            )
            raise InvariantViolation(
                "No payment reference found for this booking",
                details={
                    "booking_id": str(booking.id),
                    "subscription_id": str(booking.subscription_id) if booking.subscription_id else None,
                },
            )

        # Claim the booking before touching the gateway; a concurrent refund loses here
        previous_status = booking.status
        claimed = await db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status.notin_(TERMINAL_BOOKING_STATUSES))
            .values(status="cancelled", cancelled_at=now, cancellation_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await db.rollback()
            raise InvariantViolation(
                f"Booking {booking_id} was cancelled by another request",
                details={"booking_id": str(booking_id)},
            )
        await db.commit()

        amount = booking.total_price or (subscription.total_price if subscription else 0.0)
        refund_ref = None
        if amount > 0:
            try:
                refund_ref = await self.gateway.refund(
                    payment_ref,
                    amount,
                    reason,
                    {
                        "booking_id": str(booking.id),
                        "subscription_id": str(booking.subscription_id or ""),
                        "user_id": str(booking.user_id),
                    },
                    idempotency_key=f"refund-{booking.id}",
                )
            except Exception:
                await db.execute(
                    update(Booking)
                    .where(Booking.id == booking.id)
                    .values(status=previous_status, cancelled_at=None, cancellation_reason=None)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                raise

        booking = (
            await db.execute(
                select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
            )
        ).scalar_one()
        booking.payment_status = "refunded" if refund_ref else "cancelled"

        if payment is None:
            payment = Payment(booking_id=booking.id, user_id=booking.user_id, amount=amount)
            db.add(payment)
        payment.currency = self.settings.currency
        payment.payment_ref = payment_ref
        payment.status = "refunded" if refund_ref else "completed"
        if refund_ref:
            payment.refund_ref = refund_ref
            payment.refund_amount = amount
            payment.refund_reason = reason
        payment.processed_at = now

        cancelled_payouts = await self._cancel_payouts_for(db, booking, reason)

        if refund_ref:
            commission_rate = self.settings.platform_commission_rate
            platform_fee, owner_amount = commission_split(amount, commission_rate)
            db.add(
                Transaction(
                    booking_id=booking.id,
                    user_id=booking.user_id,
                    type="REFUND",
                    status="COMPLETED",
                    amount=-amount,
                    net_amount=-owner_amount,
                    platform_fee=-platform_fee,
                    commission_rate=commission_rate,
                    payment_ref=payment_ref,
                    refund_ref=refund_ref,
                    description=f"Refund for booking #{booking.booking_number}: {reason}",
                )
            )

        await db.commit()
        logger.info(
            "Booking #%s refunded (%.2f, ref=%s, payouts cancelled=%d)",
            booking.booking_number, amount if refund_ref else 0.0, refund_ref, cancelled_payouts,
        )
        return RefundResult(
            booking_id=booking.id,
            refund_amount=amount if refund_ref else 0.0,
            payment_ref=payment_ref,
            refund_ref=refund_ref,
        )

    async def _find_invoice_payment(self, plan_ref: RecurringPlan, booking_date: date) -> str | None:
        """
        Best guess at which invoice paid for a booking.

        First invoice with a line period starting within 24h of the booking
        date, else the first invoice that has any payment at all.
        """
        invoices = await self.gateway.list_invoices(plan_ref)
        target = datetime.combine(booking_date, time())
        for invoice in invoices:
            if not invoice.payment_ref:
                continue
            for start in invoice.line_period_starts:
                period_day = datetime.combine(start.date(), time())
                if abs(period_day - target) <= INVOICE_MATCH_WINDOW:
                    return invoice.payment_ref
        for invoice in invoices:
            if invoice.payment_ref:
                logger.info(
                    "Booking on %s matched no invoice period; falling back to invoice %s",
                    booking_date, invoice.invoice_id,
                )
                return invoice.payment_ref
        return None

    async def _cancel_payouts_for(self, db: AsyncSession, booking: Booking, reason: str) -> int:
        field = await db.get(Field, booking.field_id)
        if field is None or field.owner_id is None:
            return 0
        payouts = (
            await db.execute(
                select(Payout).where(Payout.owner_id == field.owner_id, Payout.status != "canceled")
            )
        ).scalars().all()
        count = 0
        for payout in payouts:
            if str(booking.id) in (payout.booking_ids or []):
                payout.status = "canceled"
                payout.description = f"Canceled: booking #{booking.booking_number} refunded ({reason})"
                count += 1
        return count

    async def cancel_subscription(
        self,
        db: AsyncSession,
        subscription_id: uuid.UUID,
        immediate: bool = False,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """
        Customer cancellation.

        Gateway errors are logged and local cancellation goes ahead anyway.
        Future bookings are cancelled in both modes.
        """
        now = now or utcnow()
        subscription = await load_subscription(db, subscription_id)
        if subscription.status == "canceled":
            logger.info("Subscription %s already canceled", subscription_id)
            return subscription

        await self._cancel_plan_best_effort(plan_ref_for(subscription), immediate=immediate, comment=reason)

        def mark_cancelled(s: Subscription) -> dict[str, Any] | None:
            if s.status == "canceled":
                return None
            values: dict[str, Any] = {
                "cancel_at_period_end": not immediate,
                "cancellation_reason": reason or "Cancelled by customer",
            }
            if immediate:
                values.update(status="canceled", canceled_at=now, next_retry_at=None)
            return values

        subscription = await update_subscription(db, subscription_id, mark_cancelled)
        cancelled = await self._cancel_future_bookings(
            db, subscription_id, "Subscription cancelled by user", now
        )
        await db.commit()
        logger.info(
            "Subscription %s cancelled (immediate=%s); %d future bookings cancelled",
            subscription_id, immediate, cancelled,
        )

        await self._notify(
            subscription.user_id,
            notifications.SUBSCRIPTION_CANCELED,
            "Recurring Booking Cancelled",
            "Your recurring booking has been cancelled."
            if immediate
            else "Your recurring booking will end at the close of the current billing period.",
            {"subscription_id": str(subscription_id), "immediate": immediate, "cancelled_bookings": cancelled},
        )
        return subscription

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    async def _cancel_plan_best_effort(self, plan_ref: PlanRef, immediate: bool, comment: str | None) -> None:
        if not isinstance(plan_ref, RecurringPlan):
            logger.info("Plan %s is a single payment; cancelled locally only", plan_ref.id)
            return
        try:
            await self.gateway.cancel_plan(plan_ref, immediate=immediate, comment=comment)
        except GatewayError as e:
            logger.error("Gateway cancellation of %s failed, continuing locally: %s", plan_ref.id, e.message)

    async def _cancel_future_bookings(
        self, db: AsyncSession, subscription_id: uuid.UUID, reason: str, now: datetime
    ) -> int:
        result = await db.execute(
            update(Booking)
            .where(
                Booking.subscription_id == subscription_id,
                Booking.date >= now.date(),
                Booking.status.notin_(TERMINAL_BOOKING_STATUSES),
            )
            .values(status="cancelled", cancelled_at=now, cancellation_reason=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _notify(
        self,
        user_id: uuid.UUID,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.notifier.notify(user_id, type, title, message, data)
        except Exception:
            logger.exception("Notifier raised for user %s (%s)", user_id, type)

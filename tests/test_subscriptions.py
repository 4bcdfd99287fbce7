"""Tests for the subscription lifecycle engine."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import asyncio
import uuid
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.orm.attributes import set_committed_value

from conftest import NOW, TODAY
from models.booking import Booking
from models.payment import Payment, Payout, Transaction
from models.subscription import Subscription
from services import notifications, optimistic, slot_locks
from services.availability import is_available
from services.errors import (
    ConcurrentUpdateError,
    GatewayError,
    InvariantViolation,
    NotFoundError,
    SlotConflictError,
    ValidationError,
)
from services.optimistic import update_subscription
from services.payment_gateway import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_UPDATED,
    GatewayEvent,
    InvoicePayment,
    InvoiceSummary,
    RecurringPlan,
)
from services.cadence import add_months
from services.time_of_day import TimeOfDay

TEN = TimeOfDay.parse("10:00AM")
ELEVEN = TimeOfDay.parse("11:00AM")


async def _fresh(db, model, id_):
    return (
        await db.execute(
            select(model).where(model.id == id_).execution_options(populate_existing=True)
        )
    ).scalar_one()


async def _subscription_bookings(db, subscription_id):
    return (
        await db.execute(
            select(Booking)
            .where(Booking.subscription_id == subscription_id)
            .order_by(Booking.date)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()


@pytest.mark.asyncio
async def test_subscription_bookings_are_never_lazy_loaded(db, make_subscription, make_booking):
    subscription = await make_subscription()
    await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)
    stored = await _fresh(db, Subscription, subscription.id)
    with pytest.raises(InvalidRequestError):
        stored.bookings


# ── Create ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_weekly_blocks_other_customers(
    db, service, gateway, notifier, customer, other_customer, owner, field
):
    start = TODAY + timedelta(days=2)
    created = await service.create_subscription(
        db,
        user_id=customer.id,
        field_id=field.id,
        interval="weekly",
        time_slots=["10:00AM - 10:55AM"],
        start_date=start,
        payment_method_id="pm_card",
        now=NOW,
    )

    subscription = created.subscription
    assert subscription.status == "active"
    assert subscription.plan_kind == "recurring"
    assert subscription.external_ref == "sub_test1"
    assert subscription.total_price == 10.0
    assert subscription.last_booking_date == start
    assert len(created.bookings) == 1

    spec = gateway.called("create_recurring_plan")[0]["spec"]
    assert spec.interval == "weekly"
    assert spec.billing_anchor == datetime.combine(start + timedelta(days=7), datetime.min.time())
    assert gateway.called("attach_payment_method")[0]["payment_method_id"] == "pm_card"

    # First occurrence is booked, so the slot cannot be locked by anyone else
    attempt = await slot_locks.acquire(db, field.id, start, TEN, ELEVEN, other_customer.id, now=NOW)
    assert not attempt.ok
    assert attempt.conflict_holder_id == customer.id

    # Later occurrences are protected by the subscription itself
    later = await is_available(
        db, field.id, start + timedelta(days=14), TEN, ELEVEN, holder_id=other_customer.id, now=NOW
    )
    assert later.conflict_type == "recurring"

    assert notifier.for_user(customer.id) == [notifications.RECURRING_BOOKING_CREATED]
    assert notifier.for_user(owner.id) == [notifications.RECURRING_BOOKING_CREATED]


@pytest.mark.asyncio
async def test_create_with_single_payment_skips_gateway(db, service, gateway, customer, field):
    created = await service.create_subscription(
        db,
        user_id=customer.id,
        field_id=field.id,
        interval="monthly",
        time_slots=["10:00AM"],
        start_date=TODAY,
        single_payment_ref="pi_once",
        now=NOW,
    )
    assert created.subscription.plan_kind == "single_payment"
    assert created.subscription.external_ref == "pi_once"
    assert created.bookings[0].payment_ref == "pi_once"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_create_rolls_back_when_gateway_fails(db, service, gateway, notifier, customer, field):
    gateway.fail_with["create_recurring_plan"] = GatewayError("card network down")

    with pytest.raises(GatewayError):
        await service.create_subscription(
            db,
            user_id=customer.id,
            field_id=field.id,
            interval="weekly",
            time_slots=["10:00AM"],
            start_date=TODAY,
            now=NOW,
        )

    assert (await db.execute(select(func.count()).select_from(Subscription))).scalar_one() == 0
    assert (await db.execute(select(func.count()).select_from(Booking))).scalar_one() == 0
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_create_rejects_taken_slot(db, service, gateway, customer, other_customer, field, make_booking):
    await make_booking(TODAY, "10:00AM", user_id=other_customer.id)

    with pytest.raises(SlotConflictError):
        await service.create_subscription(
            db,
            user_id=customer.id,
            field_id=field.id,
            interval="weekly",
            time_slots=["10:00AM"],
            start_date=TODAY,
            now=NOW,
        )
    assert gateway.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"interval": "yearly"},
        {"time_slots": []},
        {"time_slots": ["teatime"]},
        {"number_of_dogs": 0},
        {"start_date": TODAY - timedelta(days=1)},
        {"start_date": TODAY + timedelta(days=31)},
    ],
)
async def test_create_validation(db, service, customer, field, overrides):
    kwargs = dict(
        user_id=customer.id,
        field_id=field.id,
        interval="weekly",
        time_slots=["10:00AM"],
        start_date=TODAY,
        now=NOW,
    )
    kwargs.update(overrides)
    with pytest.raises(ValidationError):
        await service.create_subscription(db, **kwargs)


@pytest.mark.asyncio
async def test_create_unknown_field(db, service, customer):
    with pytest.raises(NotFoundError):
        await service.create_subscription(
            db,
            user_id=customer.id,
            field_id=uuid.uuid4(),
            interval="weekly",
            time_slots=["10:00AM"],
            start_date=TODAY,
            now=NOW,
        )


# ── Payment failures ───────────────────────────────────────

@pytest.mark.asyncio
async def test_three_failures_cancel_subscription(
    db, service, gateway, notifier, customer, owner, make_subscription, make_booking
):
    subscription = await make_subscription()
    past = await make_booking(TODAY - timedelta(days=7), subscription_id=subscription.id)
    future = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)

    first = await service.on_payment_failed(db, subscription.id, "Card declined", now=NOW)
    assert first.status == "past_due"
    assert first.payment_retry_count == 1
    assert first.next_retry_at == NOW + timedelta(hours=24)
    assert notifier.sent[-1]["data"]["remaining_attempts"] == 2

    await service.on_payment_failed(db, subscription.id, "Card declined", now=NOW + timedelta(days=1))
    final = await service.on_payment_failed(
        db, subscription.id, "Insufficient funds", now=NOW + timedelta(days=2)
    )

    assert final.status == "canceled"
    assert final.payment_retry_count == 3
    assert final.next_retry_at is None
    assert "Insufficient funds" in final.cancellation_reason
    assert gateway.called("cancel_plan") == [
        {"plan_ref": RecurringPlan(subscription.external_ref), "immediate": True}
    ]

    assert (await _fresh(db, Booking, future.id)).status == "cancelled"
    assert (await _fresh(db, Booking, past.id)).status == "confirmed"

    assert notifier.for_user(customer.id) == [
        notifications.PAYMENT_FAILED,
        notifications.PAYMENT_FAILED,
        notifications.SUBSCRIPTION_CANCELLED_PAYMENT_FAILURE,
    ]
    assert notifier.for_user(owner.id) == [notifications.RECURRING_BOOKING_CANCELLED]


@pytest.mark.asyncio
async def test_failure_after_cancel_is_ignored(db, service, notifier, make_subscription):
    subscription = await make_subscription(status="canceled", payment_retry_count=3)
    result = await service.on_payment_failed(db, subscription.id, "Card declined", now=NOW)
    assert result.status == "canceled"
    assert result.payment_retry_count == 3
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_retry_count_never_exceeds_maximum(db, service, make_subscription):
    subscription = await make_subscription(status="past_due", payment_retry_count=3)
    with pytest.raises(InvariantViolation):
        await service.on_payment_failed(db, subscription.id, now=NOW)


@pytest.mark.asyncio
async def test_failed_gateway_cancel_still_cancels_locally(db, service, gateway, make_subscription):
    gateway.fail_with["cancel_plan"] = GatewayError("timeout")
    subscription = await make_subscription(status="past_due", payment_retry_count=2)

    result = await service.on_payment_failed(db, subscription.id, now=NOW)
    assert result.status == "canceled"
    assert result.failure_reason == "Payment could not be processed"


# ── Payment success ────────────────────────────────────────

@pytest.mark.asyncio
async def test_success_recovers_and_books_next_occurrence(
    db, service, notifier, customer, owner, make_subscription
):
    subscription = await make_subscription(
        status="past_due", payment_retry_count=2, next_retry_at=NOW, failure_reason="Card declined"
    )

    bookings = await service.on_payment_succeeded(db, subscription.id, payment_ref="pi_renewal", now=NOW)

    assert len(bookings) == 1
    assert bookings[0].date == TODAY + timedelta(days=7)
    assert bookings[0].payment_ref == "pi_renewal"
    refreshed = await _fresh(db, Subscription, subscription.id)
    assert refreshed.status == "active"
    assert refreshed.payment_retry_count == 0
    assert refreshed.next_retry_at is None
    assert refreshed.failure_reason is None
    assert refreshed.last_booking_date == TODAY + timedelta(days=7)
    assert notifier.for_user(customer.id) == [notifications.RECURRING_BOOKING_CHARGED]
    assert notifier.for_user(owner.id) == [notifications.RECURRING_BOOKING_CREATED]


@pytest.mark.asyncio
async def test_far_occurrence_is_deferred_then_created(db, service, notifier, customer, make_subscription):
    last = TODAY + timedelta(days=14)
    subscription = await make_subscription(interval="monthly", last_booking_date=last)
    expected = add_months(last, 1)
    assert (expected - TODAY).days == 45

    assert await service.on_payment_succeeded(db, subscription.id, now=NOW) is None
    refreshed = await _fresh(db, Subscription, subscription.id)
    assert refreshed.pending_occurrence_date == expected
    assert await _subscription_bookings(db, subscription.id) == []
    assert notifier.for_user(customer.id) == [notifications.RECURRING_BOOKING_PENDING]
    assert notifier.sent[-1]["data"]["next_booking_date"] == expected.isoformat()

    # Too early: still outside the window
    counts = await service.create_pending_occurrences(db, now=NOW + timedelta(days=5))
    assert counts["checked"] == 0

    counts = await service.create_pending_occurrences(db, now=NOW + timedelta(days=20))
    assert counts == {"checked": 1, "created": 1, "skipped": 0, "errors": 0}
    bookings = await _subscription_bookings(db, subscription.id)
    assert [b.date for b in bookings] == [expected]
    refreshed = await _fresh(db, Subscription, subscription.id)
    assert refreshed.pending_occurrence_date is None
    assert refreshed.last_booking_date == expected


@pytest.mark.asyncio
async def test_stale_pending_occurrence_dropped(db, service, make_subscription):
    subscription = await make_subscription(pending_occurrence_date=TODAY - timedelta(days=1))
    counts = await service.create_pending_occurrences(db, now=NOW)
    assert counts["skipped"] == 1
    assert (await _fresh(db, Subscription, subscription.id)).pending_occurrence_date is None
    assert await _subscription_bookings(db, subscription.id) == []


@pytest.mark.asyncio
async def test_success_on_canceled_subscription_ignored(db, service, notifier, make_subscription):
    subscription = await make_subscription(status="canceled")
    assert await service.on_payment_succeeded(db, subscription.id, now=NOW) is None
    assert notifier.sent == []


# ── Gateway events ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_handle_event_routes_by_plan_ref(db, service, make_subscription):
    subscription = await make_subscription(external_ref="sub_routed")
    event = GatewayEvent(id="evt_1", type=EVENT_PAYMENT_FAILED, plan_ref="sub_routed", failure_reason="Card expired")

    await service.handle_event(db, event, now=NOW)
    refreshed = await _fresh(db, Subscription, subscription.id)
    assert refreshed.status == "past_due"
    assert refreshed.failure_reason == "Card expired"


@pytest.mark.asyncio
async def test_handle_event_ignores_unknown_types_and_plans(db, service, notifier, make_subscription):
    subscription = await make_subscription(external_ref="sub_known")
    start_version = subscription.version
    await service.handle_event(db, GatewayEvent(id="evt_2", type="charge.dispute.created", plan_ref="sub_known"))
    await service.handle_event(db, GatewayEvent(id="evt_3", type=EVENT_PAYMENT_SUCCEEDED, plan_ref="sub_unknown"))
    await service.handle_event(db, GatewayEvent(id="evt_4", type=EVENT_PAYMENT_SUCCEEDED))

    refreshed = await _fresh(db, Subscription, subscription.id)
    assert refreshed.version == start_version
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_subscription_updated_syncs_period(db, service, make_subscription):
    subscription = await make_subscription()
    period_end = NOW + timedelta(days=7)
    event = GatewayEvent(
        id="evt_5",
        type=EVENT_SUBSCRIPTION_UPDATED,
        plan_ref=subscription.external_ref,
        status="active",
        period_start=NOW,
        period_end=period_end,
        cancel_at_period_end=True,
    )
    await service.handle_event(db, event, now=NOW)

    refreshed = await _fresh(db, Subscription, subscription.id)
    assert refreshed.cancel_at_period_end is True
    assert refreshed.current_period_end == period_end
    assert refreshed.status == "active"


@pytest.mark.asyncio
async def test_subscription_updated_to_canceled_terminates(
    db, service, notifier, customer, make_subscription, make_booking
):
    subscription = await make_subscription()
    future = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)
    event = GatewayEvent(
        id="evt_6", type=EVENT_SUBSCRIPTION_UPDATED, plan_ref=subscription.external_ref, status="canceled"
    )
    await service.handle_event(db, event, now=NOW)

    assert (await _fresh(db, Subscription, subscription.id)).status == "canceled"
    assert (await _fresh(db, Booking, future.id)).status == "cancelled"
    assert notifier.for_user(customer.id) == [notifications.SUBSCRIPTION_CANCELED]


# ── Retry sweep ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_retry_sweep_recovers_due_subscriptions(db, service, gateway, notifier, customer, make_subscription):
    due = await make_subscription(status="past_due", payment_retry_count=1, next_retry_at=NOW - timedelta(minutes=1))
    later = await make_subscription(status="past_due", payment_retry_count=1, next_retry_at=NOW + timedelta(hours=1))

    counts = await service.retry_failed_payments(db, now=NOW)

    assert counts == {"checked": 1, "recovered": 1, "unpaid": 0, "skipped": 0, "errors": 0}
    assert (await _fresh(db, Subscription, due.id)).status == "active"
    assert (await _fresh(db, Subscription, later.id)).status == "past_due"
    assert gateway.called("pay_open_invoice") == [{"plan_ref": RecurringPlan(due.external_ref)}]
    assert notifier.for_user(customer.id) == [notifications.PAYMENT_RETRY_SUCCESS]


@pytest.mark.asyncio
async def test_retry_sweep_unpaid_leaves_past_due(db, service, gateway, make_subscription):
    gateway.pay_result = InvoicePayment(status="open", invoice_id="in_open")
    subscription = await make_subscription(status="past_due", payment_retry_count=1, next_retry_at=NOW)

    counts = await service.retry_failed_payments(db, now=NOW)
    assert counts["unpaid"] == 1
    refreshed = await _fresh(db, Subscription, subscription.id)
    assert refreshed.status == "past_due"
    assert refreshed.payment_retry_count == 1


@pytest.mark.asyncio
async def test_retry_sweep_isolates_errors(db, service, gateway, make_subscription):
    gateway.fail_with["pay_open_invoice"] = GatewayError("timeout")
    await make_subscription(status="past_due", payment_retry_count=1, next_retry_at=NOW)
    await make_subscription(status="past_due", payment_retry_count=2, next_retry_at=NOW)

    counts = await service.retry_failed_payments(db, now=NOW)
    assert counts["checked"] == 2
    assert counts["errors"] == 2


# ── Single-payment plans ───────────────────────────────────

@pytest.mark.asyncio
async def test_single_payment_never_reaches_gateway_lifecycle(db, service, gateway, make_subscription):
    subscription = await make_subscription(
        plan_kind="single_payment", external_ref="pi_single", status="past_due",
        payment_retry_count=1, next_retry_at=NOW,
    )

    counts = await service.retry_failed_payments(db, now=NOW)
    assert counts["skipped"] == 1
    await service.cancel_subscription(db, subscription.id, immediate=True, now=NOW)

    assert gateway.called("pay_open_invoice") == []
    assert gateway.called("cancel_plan") == []
    assert (await _fresh(db, Subscription, subscription.id)).status == "canceled"


# ── Refunds ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_leaves_subscription_untouched(
    db, service, gateway, notifier, owner, make_subscription, make_booking
):
    subscription = await make_subscription(
        status="past_due", payment_retry_count=1, last_booking_date=TODAY + timedelta(days=7)
    )
    booking = await make_booking(
        TODAY + timedelta(days=7), subscription_id=subscription.id, payment_ref="pi_week1"
    )
    payout = Payout(owner_id=owner.id, booking_ids=[str(booking.id)], amount=8.0)
    db.add(payout)
    await db.commit()
    before = await _fresh(db, Subscription, subscription.id)
    snapshot = (before.status, before.payment_retry_count, before.last_booking_date, before.version)

    result = await service.refund_occurrence(db, booking.id, "Dog unwell", now=NOW)

    assert result.payment_ref == "pi_week1"
    assert result.refund_ref == "re_pi_week1"
    assert result.refund_amount == 10.0
    assert gateway.called("refund")[0]["amount"] == 10.0
    assert gateway.called("refund")[0]["idempotency_key"] == f"refund-{booking.id}"

    after = await _fresh(db, Subscription, subscription.id)
    assert (after.status, after.payment_retry_count, after.last_booking_date, after.version) == snapshot

    refunded = await _fresh(db, Booking, booking.id)
    assert refunded.status == "cancelled"
    assert refunded.payment_status == "refunded"
    assert refunded.cancellation_reason == "Dog unwell"

    payment = (await db.execute(select(Payment).where(Payment.booking_id == booking.id))).scalar_one()
    assert payment.status == "refunded"
    assert payment.refund_ref == "re_pi_week1"

    transaction = (await db.execute(select(Transaction))).scalar_one()
    assert transaction.type == "REFUND"
    assert transaction.amount == -10.0
    assert transaction.platform_fee == -2.0
    assert transaction.net_amount == -8.0

    assert (await _fresh(db, Payout, payout.id)).status == "canceled"
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_refund_finds_payment_through_invoices(db, service, gateway, make_subscription, make_booking):
    subscription = await make_subscription()
    day = TODAY + timedelta(days=7)
    booking = await make_booking(day, subscription_id=subscription.id)
    gateway.invoices = [
        InvoiceSummary("in_old", "pi_old", [datetime.combine(TODAY, datetime.min.time())]),
        InvoiceSummary("in_match", "pi_match", [datetime.combine(day, datetime.min.time()) + timedelta(hours=3)]),
    ]

    result = await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)
    assert result.payment_ref == "pi_match"


@pytest.mark.asyncio
async def test_refund_falls_back_to_first_paid_invoice(db, service, gateway, make_subscription, make_booking):
    subscription = await make_subscription()
    booking = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)
    gateway.invoices = [
        InvoiceSummary("in_draft", None, []),
        InvoiceSummary("in_paid", "pi_any", [datetime(2025, 1, 1)]),
    ]
    result = await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)
    assert result.payment_ref == "pi_any"


@pytest.mark.asyncio
async def test_refund_without_payment_reference_fails(db, service, gateway, make_subscription, make_booking):
    subscription = await make_subscription()
    booking = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)

    with pytest.raises(InvariantViolation):
        await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)
    assert gateway.called("refund") == []
    assert (await _fresh(db, Booking, booking.id)).status == "confirmed"


@pytest.mark.asyncio
async def test_refund_twice_rejected(db, service, make_subscription, make_booking):
    subscription = await make_subscription()
    booking = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id, payment_ref="pi_x")
    await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)

    with pytest.raises(InvariantViolation):
        await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)


@pytest.mark.asyncio
async def test_refund_unknown_booking(db, service):
    with pytest.raises(NotFoundError):
        await service.refund_occurrence(db, uuid.uuid4(), "Holiday", now=NOW)


@pytest.mark.asyncio
async def test_refund_gateway_failure_changes_nothing(db, service, gateway, make_subscription, make_booking):
    gateway.fail_with["refund"] = GatewayError("declined")
    subscription = await make_subscription()
    booking = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id, payment_ref="pi_y")

    with pytest.raises(GatewayError):
        await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)
    await db.rollback()
    assert (await _fresh(db, Booking, booking.id)).status == "confirmed"
    assert (await db.execute(select(func.count()).select_from(Transaction))).scalar_one() == 0


@pytest.mark.asyncio
async def test_refund_standalone_booking_without_reference_fails(db, service, gateway, make_booking):
    booking = await make_booking(TODAY + timedelta(days=3))

    with pytest.raises(InvariantViolation):
        await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)
    assert gateway.called("refund") == []
    untouched = await _fresh(db, Booking, booking.id)
    assert (untouched.status, untouched.payment_status) == ("confirmed", "paid")


@pytest.mark.asyncio
async def test_refund_single_payment_without_reference_fails(db, service, gateway, make_subscription, make_booking):
    subscription = await make_subscription(plan_kind="single_payment", external_ref="cs_single")
    booking = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)

    with pytest.raises(InvariantViolation):
        await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)
    assert gateway.called("list_invoices") == []
    assert gateway.called("refund") == []
    assert (await _fresh(db, Booking, booking.id)).status == "confirmed"


@pytest.mark.asyncio
async def test_refund_completed_booking_rejected(db, service, gateway, make_booking):
    booking = await make_booking(TODAY - timedelta(days=7), status="completed", payment_ref="pi_done")
    with pytest.raises(InvariantViolation):
        await service.refund_occurrence(db, booking.id, "Holiday", now=NOW)
    assert gateway.called("refund") == []


@pytest.mark.asyncio
async def test_concurrent_refunds_hit_the_gateway_once(
    db, session_factory, service, gateway, make_subscription, make_booking
):
    subscription = await make_subscription()
    booking = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)

    # Hold both requests until each has passed its status check
    arrived = []
    both_in = asyncio.Event()

    async def find_invoice_payment(plan_ref, booking_date):
        arrived.append(plan_ref.id)
        if len(arrived) == 2:
            both_in.set()
        await asyncio.wait_for(both_in.wait(), timeout=5)
        return "pi_shared"

    with patch.object(service, "_find_invoice_payment", find_invoice_payment):
        async with session_factory() as first, session_factory() as second:
            results = await asyncio.gather(
                service.refund_occurrence(first, booking.id, "Rained off", now=NOW),
                service.refund_occurrence(second, booking.id, "Rained off", now=NOW),
                return_exceptions=True,
            )

    assert len(arrived) == 2
    assert len(gateway.called("refund")) == 1
    assert gateway.called("refund")[0]["idempotency_key"] == f"refund-{booking.id}"
    assert sum(isinstance(r, InvariantViolation) for r in results) == 1
    assert sum(getattr(r, "refund_ref", None) == "re_pi_shared" for r in results) == 1

    refunded = await _fresh(db, Booking, booking.id)
    assert (refunded.status, refunded.payment_status) == ("cancelled", "refunded")
    refunds = (await db.execute(select(func.count()).select_from(Transaction))).scalar_one()
    assert refunds == 1


# ── Cancellation ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_immediately(db, service, gateway, notifier, customer, make_subscription, make_booking):
    subscription = await make_subscription()
    future = await make_booking(TODAY + timedelta(days=7), subscription_id=subscription.id)

    result = await service.cancel_subscription(db, subscription.id, immediate=True, reason="Moving", now=NOW)

    assert result.status == "canceled"
    assert result.canceled_at == NOW
    assert result.cancellation_reason == "Moving"
    assert gateway.called("cancel_plan")[0]["immediate"] is True
    assert (await _fresh(db, Booking, future.id)).status == "cancelled"
    assert notifier.for_user(customer.id) == [notifications.SUBSCRIPTION_CANCELED]


@pytest.mark.asyncio
async def test_cancel_at_period_end(db, service, make_subscription):
    subscription = await make_subscription()
    result = await service.cancel_subscription(db, subscription.id, now=NOW)
    assert result.status == "active"
    assert result.cancel_at_period_end is True


@pytest.mark.asyncio
async def test_cancel_survives_gateway_error(db, service, gateway, make_subscription):
    gateway.fail_with["cancel_plan"] = GatewayError("timeout")
    subscription = await make_subscription()

    result = await service.cancel_subscription(db, subscription.id, immediate=True, now=NOW)
    assert result.status == "canceled"


@pytest.mark.asyncio
async def test_cancel_twice_is_noop(db, service, gateway, notifier, make_subscription):
    subscription = await make_subscription(status="canceled")
    await service.cancel_subscription(db, subscription.id, immediate=True, now=NOW)
    assert gateway.calls == []
    assert notifier.sent == []


# ── Optimistic concurrency ─────────────────────────────────

@pytest.mark.asyncio
async def test_conditional_update_retries_after_concurrent_write(db, session_factory, make_subscription):
    subscription = await make_subscription()
    start_version = subscription.version
    real_load = optimistic.load_subscription
    loads = {"n": 0}

    async def load_then_race(session, subscription_id):
        current = await real_load(session, subscription_id)
        loads["n"] += 1
        if loads["n"] == 1:
            async with session_factory() as other:
                await other.execute(
                    update(Subscription)
                    .where(Subscription.id == subscription_id)
                    .values(version=Subscription.version + 1, failure_reason="raced")
                )
                await other.commit()
        return current

    calls = []

    def bump(s):
        calls.append(s.version)
        return {"payment_retry_count": s.payment_retry_count + 1}

    with patch.object(optimistic, "load_subscription", side_effect=load_then_race):
        result = await update_subscription(db, subscription.id, bump)
    await db.commit()

    assert calls == [start_version, start_version + 1]
    assert result.version == start_version + 2
    assert result.payment_retry_count == 1
    assert result.failure_reason == "raced"


@pytest.mark.asyncio
async def test_conditional_update_gives_up(db, make_subscription):
    subscription = await make_subscription()
    real_load = optimistic.load_subscription

    async def always_stale(session, subscription_id):
        current = await real_load(session, subscription_id)
        set_committed_value(current, "version", current.version - 1)
        return current

    with patch.object(optimistic, "load_subscription", side_effect=always_stale):
        with pytest.raises(ConcurrentUpdateError):
            await update_subscription(db, subscription.id, lambda s: {"failure_reason": "x"})


@pytest.mark.asyncio
async def test_conditional_update_noop_keeps_version(db, make_subscription):
    subscription = await make_subscription()
    result = await update_subscription(db, subscription.id, lambda s: None)
    assert result.version == subscription.version


@pytest.mark.asyncio
async def test_conditional_update_unknown_subscription(db):
    with pytest.raises(NotFoundError):
        await update_subscription(db, uuid.uuid4(), lambda s: {"status": "active"})

"""
Optimistic writes for Subscription rows.

Webhooks, the retry sweep and user requests can all touch the same
subscription. Each write is conditioned on the version that was read:

    UPDATE subscriptions SET ..., version = v + 1 WHERE id = :id AND version = v

No matching row means someone else got there first; re-read, recompute
and try again.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import utcnow
from models.subscription import Subscription
from services.errors import ConcurrentUpdateError, NotFoundError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

Changes = Callable[[Subscription], dict[str, Any] | None]


async def load_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
    """Fresh read of a subscription, overwriting whatever the session had cached."""
    subscription = (
        await db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


async def update_subscription(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    changes: Changes,
) -> Subscription:
    """
    Apply ``changes(current_row)`` with a version check.

    ``changes`` is called again on every attempt with the freshly read row,
    so decisions like "retry count + 1" are made against current state.
    Returning None or {} means there is nothing to write.

    Raises:
        NotFoundError: the subscription does not exist
        ConcurrentUpdateError: the row kept changing for MAX_ATTEMPTS reads
    """
    for attempt in range(1, MAX_ATTEMPTS + 1):
        subscription = await load_subscription(db, subscription_id)
        values = changes(subscription)
        if not values:
            return subscription

        read_version = subscription.version
        result = await db.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, Subscription.version == read_version)
            .values(**values, version=read_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.refresh(subscription)
            return subscription

        logger.info(
            "Subscription %s changed underneath us (read version %s, attempt %d/%d)",
            subscription_id, read_version, attempt, MAX_ATTEMPTS,
        )

    raise ConcurrentUpdateError(
        f"Subscription {subscription_id} is being updated concurrently",
        details={"subscription_id": str(subscription_id), "attempts": MAX_ATTEMPTS},
    )

"""Counter Sequencer — human-readable monotonic IDs (booking numbers, ...)."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from models.counter import Counter

# First value handed out for a brand-new sequence
SEQUENCE_STARTS = {
    "booking": 1111,
}
DEFAULT_START = 1


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Counter upsert not supported on {dialect}")


async def next_value(db: AsyncSession, name: str) -> int:
    """
    Atomically increment-and-read a named counter.

    A single upsert: the first call creates the row at the sequence's
    start value, every later call bumps it by one.
    """
    insert = _insert_for(db)
    start = SEQUENCE_STARTS.get(name, DEFAULT_START)
    stmt = (
        insert(Counter)
        .values(name=name, value=start)
        .on_conflict_do_update(
            index_elements=[Counter.name],
            set_={"value": Counter.value + 1},
        )
        .returning(Counter.value)
    )
    result = await db.execute(stmt)
    return result.scalar_one()


async def next_booking_number(db: AsyncSession) -> str:
    return str(await next_value(db, "booking"))

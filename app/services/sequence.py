"""Sequence numbering for invoices and receipts."""

import logging

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.sequence import SequenceCounter

logger = logging.getLogger(__name__)

INVOICE_PREFIX = "INV"
PAYMENT_RECEIPT_PREFIX = "RCP"
EMI_RECEIPT_PREFIX = "EMI"

NUMBER_WIDTH = 6


def format_number(prefix: str, value: int) -> str:
    """Format a counter value as PREFIX + zero padded digits."""
    return f"{prefix}{value:0{NUMBER_WIDTH}d}"


def _insert_counter(dialect_name: str, name: str):
    if dialect_name == "postgresql":
        insert = postgresql.insert
    elif dialect_name == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"Sequence counters are not supported on {dialect_name}")
    return (
        insert(SequenceCounter)
        .values(name=name, value=0)
        .on_conflict_do_nothing(index_elements=["name"])
    )


async def _increment(db: AsyncSession, name: str) -> int | None:
    stmt = (
        update(SequenceCounter)
        .where(SequenceCounter.name == name)
        .values(value=SequenceCounter.value + 1)
        .returning(SequenceCounter.value)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def next_value(db: AsyncSession, name: str) -> int:
    """
    Atomically increment and return the counter for ``name``.

    The increment runs as a single UPDATE ... RETURNING, so concurrent callers
    never see the same value. The row is created on first use with an
    insert that ignores conflicts.
    """
    value = await _increment(db, name)
    if value is None:
        dialect_name = db.get_bind().dialect.name
        await db.execute(_insert_counter(dialect_name, name))
        value = await _increment(db, name)
        logger.info("Initialized sequence counter %s", name)
    return value


async def next_number(db: AsyncSession, prefix: str) -> str:
    """Return the next formatted number for ``prefix``, e.g. RCP000042."""
    return format_number(prefix, await next_value(db, prefix))

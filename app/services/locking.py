"""Serialized read-modify-write for one student's ledger."""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.exceptions import ConsistencyError, NotFoundError
from app.models.student import Student

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def lock_student(db: AsyncSession, student_id: UUID) -> Student:
    """
    Take the row lock on a student and reload it.

    Every ledger mutation locks the owning student first, so two events for
    the same student never interleave. Databases without row locks still get
    conflict detection from the version columns.
    """
    result = await db.execute(
        select(Student)
        .where(Student.id == student_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    student = result.scalar_one_or_none()
    if student is None:
        raise NotFoundError("Student not found", student_id=student_id)
    return student


async def run_serialized(
    db: AsyncSession,
    operation: Callable[[AsyncSession], Awaitable[T]],
    description: str = "ledger update",
) -> T:
    """
    Run ``operation`` as one transaction and commit it.

    A version conflict rolls the whole unit back and runs it again from the
    start; any other error rolls back and propagates.
    """
    attempts = max(1, settings.RECONCILE_MAX_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            result = await operation(db)
            await db.commit()
            return result
        except StaleDataError as e:
            await db.rollback()
            if attempt == attempts:
                logger.error("%s kept conflicting after %d attempts", description, attempts)
                raise ConsistencyError(
                    "Concurrent update conflict could not be resolved",
                    operation=description,
                    attempts=attempts,
                ) from e
            logger.warning("%s hit a concurrent update, retrying (%d/%d)", description, attempt, attempts)
        except Exception:
            await db.rollback()
            raise
    raise AssertionError("unreachable")

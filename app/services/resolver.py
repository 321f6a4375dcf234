"""Prioritized resolver chains for locating the ledger entity an event targets.

Gateway metadata does not always reach us intact, so an event is matched by
trying several keys in order. Each attempt is logged and the keys tried are
reported when nothing matches.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.payment import EMIPayment, EMIStatus, Payment, PaymentStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ResolverStep(Generic[T]):
    """One lookup in a chain."""

    name: str
    key: Any
    lookup: Callable[[], Awaitable[T | None]]
    fallback: bool = False


class ResolverChain(Generic[T]):
    """Ordered lookups; the first step that finds something wins."""

    def __init__(self, entity: str) -> None:
        self.entity = entity
        self.steps: list[ResolverStep[T]] = []
        self.matched_by: str | None = None

    def add(
        self,
        name: str,
        key: Any,
        lookup: Callable[[], Awaitable[T | None]],
        fallback: bool = False,
    ) -> "ResolverChain[T]":
        """Append a step. Steps whose key is missing are skipped at resolve time."""
        self.steps.append(ResolverStep(name, key, lookup, fallback))
        return self

    @property
    def attempted(self) -> dict[str, Any]:
        return {step.name: step.key for step in self.steps if step.key is not None}

    async def resolve_optional(self) -> T | None:
        for step in self.steps:
            if step.key is None:
                continue
            logger.debug("Resolving %s by %s=%s", self.entity, step.name, step.key)
            found = await step.lookup()
            if found is None:
                continue
            self.matched_by = step.name
            if step.fallback:
                logger.warning(
                    "Resolved %s %s only by fallback %s=%s; tried %s",
                    self.entity,
                    getattr(found, "id", found),
                    step.name,
                    step.key,
                    self.attempted,
                )
            else:
                logger.info("Resolved %s %s by %s", self.entity, getattr(found, "id", found), step.name)
            return found
        return None

    async def resolve(self) -> T:
        found = await self.resolve_optional()
        if found is None:
            logger.warning("No %s matched; tried %s", self.entity, self.attempted)
            raise NotFoundError(f"{self.entity} not found", attempted=self.attempted)
        return found


def payment_chain(
    db: AsyncSession,
    *,
    explicit_id: UUID | None = None,
    gateway_payment_id: str | None = None,
    metadata_payment_id: UUID | None = None,
    student_id: UUID | None = None,
) -> ResolverChain[Payment]:
    """Payment by explicit id, gateway id, metadata id, then the student's latest open payment."""

    async def by_id(payment_id: UUID) -> Payment | None:
        return await db.get(Payment, payment_id)

    async def by_gateway_id() -> Payment | None:
        result = await db.execute(
            select(Payment)
            .where(Payment.gateway_payment_id == gateway_payment_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_open_for_student() -> Payment | None:
        result = await db.execute(
            select(Payment)
            .where(
                Payment.student_id == student_id,
                Payment.status.in_(
                    (PaymentStatus.PENDING, PaymentStatus.PARTIAL, PaymentStatus.PROCESSING)
                ),
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    return (
        ResolverChain[Payment]("Payment")
        .add("payment_id", explicit_id, lambda: by_id(explicit_id))
        .add("gateway_payment_id", gateway_payment_id, by_gateway_id)
        .add("metadata.paymentId", metadata_payment_id, lambda: by_id(metadata_payment_id))
        .add("metadata.studentId", student_id, latest_open_for_student, fallback=True)
    )


def installment_chain(
    db: AsyncSession,
    *,
    explicit_id: UUID | None = None,
    metadata_emi_payment_id: UUID | None = None,
    gateway_payment_id: str | None = None,
    student_id: UUID | None = None,
) -> ResolverChain[EMIPayment]:
    """Installment by explicit id, metadata id, gateway id, then the student's earliest open installment."""

    async def by_id(emi_payment_id: UUID) -> EMIPayment | None:
        return await db.get(EMIPayment, emi_payment_id)

    async def by_gateway_id() -> EMIPayment | None:
        result = await db.execute(
            select(EMIPayment)
            .where(EMIPayment.gateway_payment_id == gateway_payment_id)
            .order_by(EMIPayment.installment_number)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def earliest_open_for_student() -> EMIPayment | None:
        result = await db.execute(
            select(EMIPayment)
            .where(
                EMIPayment.student_id == student_id,
                EMIPayment.status.in_((EMIStatus.PENDING, EMIStatus.OVERDUE)),
            )
            .order_by(EMIPayment.due_date, EMIPayment.installment_number)
            .limit(1)
        )
        return result.scalar_one_or_none()

    return (
        ResolverChain[EMIPayment]("EMIPayment")
        .add("emi_payment_id", explicit_id, lambda: by_id(explicit_id))
        .add("metadata.emiPaymentId", metadata_emi_payment_id, lambda: by_id(metadata_emi_payment_id))
        .add("gateway_payment_id", gateway_payment_id, by_gateway_id)
        .add("metadata.studentId", student_id, earliest_open_for_student, fallback=True)
    )

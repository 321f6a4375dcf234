"""Dependencies for FastAPI routes."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.services.gateway import PaymentGateway, get_stripe_gateway


def get_gateway() -> PaymentGateway:
    """Payment gateway used by intent creation, confirmation and webhooks."""
    return get_stripe_gateway()


# Common dependency aliases
DbSession = Annotated[AsyncSession, Depends(get_db)]
Gateway = Annotated[PaymentGateway, Depends(get_gateway)]

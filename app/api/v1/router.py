"""API v1 router aggregating all route modules."""

from fastapi import APIRouter

from app.api.v1.routes import (
    emi_payments,
    payments,
    students,
    webhooks,
)

api_router = APIRouter()

api_router.include_router(students.router)
api_router.include_router(payments.router)
api_router.include_router(emi_payments.router)
api_router.include_router(webhooks.router)

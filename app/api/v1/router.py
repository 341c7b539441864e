"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from app.api.v1 import admin, bookings, cron, lessons, payouts, webhooks

api_router = APIRouter()

# Bookings
api_router.include_router(bookings.router, prefix="/bookings", tags=["Bookings"])

# Group lessons
api_router.include_router(lessons.router, prefix="/lessons", tags=["Lessons"])

# Payouts
api_router.include_router(payouts.router, prefix="/payouts", tags=["Payouts"])

# Admin
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])

# Scheduled tasks
api_router.include_router(cron.router, prefix="/cron", tags=["Cron"])

# Payment processor webhooks
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

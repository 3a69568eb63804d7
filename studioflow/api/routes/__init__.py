"""API Routes module"""
from fastapi import APIRouter

from .automations import router as automations_router
from .campaigns import router as campaigns_router
from .subscriptions import router as subscriptions_router
from .events import router as events_router
from .history import router as history_router
from .scheduler import router as scheduler_router

# Main API router
api_router = APIRouter()

api_router.include_router(automations_router, prefix="/automations", tags=["Automations"])
api_router.include_router(campaigns_router, prefix="/campaigns", tags=["Campaigns"])
api_router.include_router(subscriptions_router, prefix="/subscriptions", tags=["Subscriptions"])
api_router.include_router(events_router, prefix="/events", tags=["Events"])
api_router.include_router(history_router, prefix="/history", tags=["History"])
api_router.include_router(scheduler_router, prefix="/scheduler", tags=["Scheduler"])

__all__ = ["api_router"]

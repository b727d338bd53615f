from fastapi import APIRouter

from metahub.api import ai_reply, automation_rules, escalations, health, scheduled_actions

api_router = APIRouter(prefix="/api")

api_router.include_router(health.router)
api_router.include_router(automation_rules.router)
api_router.include_router(scheduled_actions.router)
api_router.include_router(ai_reply.router)
api_router.include_router(escalations.router)

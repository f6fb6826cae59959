"""
Jobs API Endpoints
==================

Internal triggers for scheduled maintenance, called by an external cron.
"""

from fastapi import APIRouter

from entitlement_core.dependencies import DBSession, InternalCaller
from entitlement_core.services.scheduled_jobs import (
    run_expire_lapsed_subscriptions,
    run_resume_stalled_campaigns,
)

router = APIRouter(dependencies=[InternalCaller])


@router.post("/expire-subscriptions")
async def expire_subscriptions(db: DBSession) -> dict:
    return await run_expire_lapsed_subscriptions(db)


@router.post("/resume-campaigns")
async def resume_campaigns(db: DBSession) -> dict:
    return await run_resume_stalled_campaigns(db)

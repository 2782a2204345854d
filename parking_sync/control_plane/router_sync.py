from __future__ import annotations

import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from parking_sync.config import settings
from parking_sync.erp.execution_log import list_runs
from parking_sync.erp.orchestrator import SyncOrchestrator
from parking_sync.erp.progress import SYNC_JOB_TYPE
from parking_sync.erp.schemas import SyncResult, Trigger
from . import crud
from .db import get_db
from .models_erp import CronJobProgress
from .schemas_sync import CronJobLogOut, ResumeProgressOut, SyncRequest

router = APIRouter(prefix="/api/v1/integrations", tags=["sync"])

_ERROR_STATUS = {
    "AUTH_FAILED": 401,
    "CONFIG_INVALID": 400,
    "PRECONDITION_FAILED": 400,
    "REMOTE_ERROR": 502,
    "TIMEOUT": 504,
}

def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator()

def resolve_trigger(x_cron_secret: Optional[str]) -> Trigger:
    if x_cron_secret is None:
        return Trigger.MANUAL
    if not settings.CRON_SECRET or not hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
        raise HTTPException(401, "Invalid cron secret")
    return Trigger.SCHEDULED

@router.post("/{integration_id}/sync", response_model=SyncResult)
async def sync_integration(
    integration_id: str,
    req: Optional[SyncRequest] = None,
    x_cron_secret: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    trigger = resolve_trigger(x_cron_secret)

    integration = await crud.get_integration(db, integration_id)
    if not integration:
        raise HTTPException(404, "Integration not found")

    result = await orchestrator.run_sync(integration_id, (req or SyncRequest()).to_options(), trigger)

    # Scheduled failures are only visible through the execution log
    if not result.success and result.error_code and trigger == Trigger.MANUAL:
        raise HTTPException(_ERROR_STATUS.get(result.error_code, 500), result.message)
    return result

@router.get("/{integration_id}/logs", response_model=List[CronJobLogOut])
async def list_sync_logs(integration_id: str, limit: int = 20, db: AsyncSession = Depends(get_db)):
    rows = await list_runs(db, integration_id, limit=min(max(limit, 1), 200))
    return [
        CronJobLogOut(
            id=r.id, status=r.status, started_at=r.started_at, completed_at=r.completed_at,
            duration_ms=r.duration_ms, stats=r.stats, error=r.error, details=r.details,
        ) for r in rows
    ]

@router.get("/{integration_id}/progress", response_model=List[ResumeProgressOut])
async def get_sync_progress(integration_id: str, db: AsyncSession = Depends(get_db)):
    res = await db.execute(
        select(CronJobProgress).where(
            CronJobProgress.job_type == SYNC_JOB_TYPE,
            CronJobProgress.integration_id == integration_id,
        )
    )
    return [
        ResumeProgressOut(model_name=p.model_name, last_offset=p.last_offset, total_seen=p.total_seen)
        for p in res.scalars().all()
    ]

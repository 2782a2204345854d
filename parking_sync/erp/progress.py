from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.future import select

from parking_sync.control_plane.db import utcnow
from parking_sync.control_plane.models_erp import CronJobProgress

logger = logging.getLogger("parking_sync.erp.progress")

SYNC_JOB_TYPE = "sync-integration"

@dataclass
class ProgressState:
    last_offset: int = 0
    total_seen: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None

@dataclass(frozen=True)
class OffsetWindow:
    offset: int
    limit: int
    total: int

    @property
    def next_offset(self) -> int:
        return min(self.offset + self.limit, self.total)

    @property
    def has_more(self) -> bool:
        return self.next_offset < self.total

def _where(job_type: str, integration_id: Optional[str], model_name: Optional[str]):
    return (
        CronJobProgress.job_type == job_type,
        CronJobProgress.integration_id == (integration_id or ""),
        CronJobProgress.model_name == (model_name or ""),
    )

async def get_progress(session_factory, job_type: str, integration_id: Optional[str], model_name: Optional[str]) -> Optional[ProgressState]:
    async with session_factory() as session:
        res = await session.execute(select(CronJobProgress).where(*_where(job_type, integration_id, model_name)))
        row = res.scalars().first()
        if not row:
            return None
        return ProgressState(last_offset=row.last_offset or 0, total_seen=row.total_seen, payload=row.payload)

async def save_progress(
    session_factory,
    job_type: str,
    integration_id: Optional[str],
    model_name: Optional[str],
    last_offset: int,
    total_seen: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    async with session_factory() as session:
        res = await session.execute(select(CronJobProgress).where(*_where(job_type, integration_id, model_name)))
        row = res.scalars().first()
        if not row:
            row = CronJobProgress(job_type=job_type, integration_id=integration_id or "", model_name=model_name or "")
            session.add(row)
        row.last_offset = last_offset
        row.total_seen = total_seen
        row.payload = payload
        row.updated_at = utcnow()
        await session.commit()
    logger.info(f"Saved progress {job_type}/{integration_id}/{model_name}: offset {last_offset} of {total_seen}")

async def clear_progress(session_factory, job_type: str, integration_id: Optional[str], model_name: Optional[str]) -> None:
    async with session_factory() as session:
        await session.execute(delete(CronJobProgress).where(*_where(job_type, integration_id, model_name)))
        await session.commit()

def resolve_window(
    total: int,
    *,
    saved: Optional[ProgressState],
    explicit_offset: Optional[int],
    requested_limit: Optional[int],
    max_limit: int,
) -> OffsetWindow:
    """An explicit offset wins over the saved one; both are clamped to the dataset size."""
    limit = max(1, min(requested_limit or max_limit, max_limit))
    if explicit_offset is not None and explicit_offset >= 0:
        offset = explicit_offset
    elif saved is not None:
        offset = saved.last_offset
    else:
        offset = 0
    return OffsetWindow(offset=min(offset, total), limit=limit, total=total)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.future import select

from parking_sync.control_plane.models_erp import CronJobLog

logger = logging.getLogger("parking_sync.erp.execution_log")

@dataclass
class ExecutionLogEntry:
    job_type: str
    status: str
    started_at: datetime
    completed_at: datetime
    integration_id: Optional[str] = None
    user_id: Optional[str] = None
    stats: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

async def record_run(session_factory, entry: ExecutionLogEntry) -> Optional[str]:
    """Appends one log row. A failed write is logged and otherwise ignored."""
    try:
        async with session_factory() as session:
            row = CronJobLog(
                user_id=entry.user_id,
                integration_id=entry.integration_id,
                job_type=entry.job_type,
                status=entry.status,
                started_at=entry.started_at,
                completed_at=entry.completed_at,
                duration_ms=entry.duration_ms,
                stats=entry.stats,
                error=entry.error,
                details=entry.details,
            )
            session.add(row)
            await session.commit()
            return row.id
    except Exception as e:
        logger.error(f"Failed to write execution log for {entry.integration_id}: {e}")
        return None

async def list_runs(session, integration_id: str, limit: int = 20) -> List[CronJobLog]:
    res = await session.execute(
        select(CronJobLog)
        .where(CronJobLog.integration_id == integration_id)
        .order_by(CronJobLog.started_at.desc())
        .limit(limit)
    )
    return list(res.scalars().all())

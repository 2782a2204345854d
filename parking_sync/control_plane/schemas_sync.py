from __future__ import annotations

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, List

from parking_sync.erp.schemas import SyncOptions

class SyncRequest(BaseModel):
    parent_ids: Optional[List[int]] = Field(None, examples=[[3018, 3019]])
    filter_by_recent_parents: bool = False
    recent_parent_months: Optional[int] = Field(None, ge=1)
    offset: Optional[int] = Field(None, ge=0)
    limit: Optional[int] = Field(None, ge=1, le=500)
    full_sync: bool = False

    def to_options(self) -> SyncOptions:
        return SyncOptions(**self.model_dump())

class CronJobLogOut(BaseModel):
    id: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    stats: Optional[Dict[str, Any]]
    error: Optional[str]
    details: Optional[Dict[str, Any]]

class ResumeProgressOut(BaseModel):
    model_config = ConfigDict(protected_namespaces=())
    model_name: str
    last_offset: int
    total_seen: Optional[int]

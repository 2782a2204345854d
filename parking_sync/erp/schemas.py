from __future__ import annotations

import enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

class Trigger(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "cron"

class SyncStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"

# --- Integration configuration (config_json) ---
class UniqueIdentifier(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    erp_field: str = Field(..., alias="erpField")
    model_field: str = Field(..., alias="modelField")

class ModelMapping(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())
    model_name: Optional[str] = Field(None, alias="modelName")
    field_mappings: Dict[str, str] = Field(default_factory=dict, alias="fieldMappings")
    unique_identifier: Optional[UniqueIdentifier] = Field(None, alias="uniqueIdentifier")
    sync_direction: str = Field("one-way", alias="syncDirection")

class Schedule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    cron_expression: Optional[str] = Field(None, alias="cronExpression")

class IntegrationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())
    model_mapping: ModelMapping = Field(default_factory=ModelMapping, alias="modelMapping")
    selected_fields: List[str] = Field(default_factory=list, alias="selectedFields")
    fields_string: Optional[str] = Field(None, alias="fieldsString")
    filter: Optional[str] = None
    schedule: Optional[Schedule] = None

    def remote_fields(self) -> List[str]:
        if self.selected_fields:
            return list(self.selected_fields)
        if self.fields_string:
            return [f.strip() for f in self.fields_string.split(",") if f.strip()]
        return list(self.model_mapping.field_mappings.keys())

# --- Invocation ---
class SyncOptions(BaseModel):
    parent_ids: Optional[List[int]] = None
    filter_by_recent_parents: bool = False
    recent_parent_months: Optional[int] = None
    offset: Optional[int] = Field(None, ge=0)
    limit: Optional[int] = Field(None, ge=1)
    full_sync: bool = False

class DirectionStats(BaseModel):
    created: int = 0
    updated: int = 0
    errors: int = 0
    skipped: int = 0
    synced: int = 0
    total: int = 0

class SyncStatsOut(BaseModel):
    erp_to_app: DirectionStats = Field(default_factory=DirectionStats)
    app_to_erp: Optional[DirectionStats] = None

class ProgressOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    total: int
    completed_from: int
    completed_to: int
    next_offset: int
    has_more: bool

class SyncResult(BaseModel):
    success: bool
    status: SyncStatus
    message: str
    integration_id: str
    model_name: Optional[str] = None
    stats: SyncStatsOut = Field(default_factory=SyncStatsOut)
    skipped_reasons: Dict[str, int] = Field(default_factory=dict)
    progress: Optional[ProgressOut] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    last_sync_at: Optional[datetime] = None

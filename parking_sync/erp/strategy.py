from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from parking_sync.config import settings
from .entities import EntityKind
from .schemas import Trigger

METHOD_TABLE = "table"
METHOD_NAMED_QUERY = "named_query"
METHOD_PER_PARENT = "per_parent"

WATERMARK_FORMAT = "%Y-%m-%d %H:%M:%S"

@dataclass(frozen=True)
class FetchPlan:
    method: str
    filter_expression: str = "1=1"
    filters: Optional[str] = None
    named_query: Optional[str] = None
    since: Optional[str] = None
    incremental: bool = False
    reason: str = ""

def to_erp_local(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """Naive UTC -> naive wall-clock time of the ERP server."""
    tz = ZoneInfo(tz_name or settings.ERP_TIMEZONE)
    return dt.replace(tzinfo=timezone.utc).astimezone(tz).replace(tzinfo=None)

def format_watermark(dt: datetime, tz_name: Optional[str] = None) -> str:
    return to_erp_local(dt, tz_name).strftime(WATERMARK_FORMAT)

def incremental_filter(base_filter: Optional[str], table: str, since: str) -> Tuple[str, str]:
    """Returns (FILTER, FILTERS) restricting a GetTable read to rows touched after `since`."""
    date_filter = f"(INSDATE>'{since}' OR UPDDATE>'{since}')"
    base = (base_filter or "").strip()
    if not base or base == "1=1":
        expression = date_filter
    else:
        expression = f"({base}) AND {date_filter}"
    filters = f"{table}.INSDATE>{since}&{table}.UPDDATE>{since}"
    return expression, filters

def decide_fetch_plan(
    kind: EntityKind,
    *,
    table: str,
    base_filter: Optional[str],
    watermark: Optional[datetime],
    trigger: Trigger,
    parent_scoped: bool = False,
    resume_active: bool = False,
    full_sync: bool = False,
) -> FetchPlan:
    base = (base_filter or "").strip() or "1=1"

    if parent_scoped:
        return FetchPlan(METHOD_PER_PARENT, filter_expression=base, reason="parent-scoped contract lines")
    if full_sync:
        return FetchPlan(METHOD_TABLE, filter_expression=base, reason="full sync")
    if watermark is None:
        return FetchPlan(METHOD_TABLE, filter_expression=base, reason="first sync")
    if trigger == Trigger.MANUAL:
        return FetchPlan(METHOD_TABLE, filter_expression=base, reason="manual trigger")
    if resume_active:
        return FetchPlan(METHOD_TABLE, filter_expression=base, reason="resuming saved offset")

    since = format_watermark(watermark)
    if kind.named_query:
        return FetchPlan(
            METHOD_NAMED_QUERY,
            named_query=kind.named_query,
            since=since,
            incremental=True,
            reason=f"named query {kind.named_query} since {since}",
        )
    return table_fallback_plan(kind, table=table, base_filter=base, since=since)

def table_fallback_plan(kind: EntityKind, *, table: str, base_filter: Optional[str], since: str) -> FetchPlan:
    """Generic read equivalent to an incremental named query."""
    base = (base_filter or "").strip() or "1=1"
    if not kind.has_date_fields:
        return FetchPlan(METHOD_TABLE, filter_expression=base, incremental=True, reason="table read (no date fields)")
    expression, filters = incremental_filter(base, table, since)
    return FetchPlan(
        METHOD_TABLE,
        filter_expression=expression,
        filters=filters,
        since=since,
        incremental=True,
        reason=f"table read since {since}",
    )

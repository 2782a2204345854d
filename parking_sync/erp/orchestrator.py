from __future__ import annotations

import asyncio
import calendar
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import inspect as sa_inspect

from parking_sync.config import settings
from parking_sync.control_plane import crud
from parking_sync.control_plane.db import AsyncSessionLocal, utcnow
from parking_sync.control_plane.models_erp import SoftOneConnection
from parking_sync.security.crypto import DecryptionError, decrypt_secret
from .connectors.base import ErpConnector, ErpSession
from .connectors.registry import get_connector_class
from .connectors.softone import SoftOneConfig
from .entities import CONTRACT, EntityKind, resolve_entity_kind
from .errors import AuthError, ConfigurationError, FullSyncPreconditionError, RemoteError, SyncError, SyncErrorCode
from .execution_log import ExecutionLogEntry, record_run
from .gate import ACTION_SKIP, classify_record
from .normalize import field_lookup, normalize
from .persistence import BatchWriter, QueuedRecord
from .progress import SYNC_JOB_TYPE, OffsetWindow, clear_progress, get_progress, resolve_window, save_progress
from .resolution import build_index
from .schemas import (
    DirectionStats, IntegrationConfig, ProgressOut, SyncOptions, SyncResult, SyncStatsOut, SyncStatus, Trigger,
)
from .strategy import (
    METHOD_NAMED_QUERY, METHOD_PER_PARENT, FetchPlan, decide_fetch_plan, table_fallback_plan,
    to_erp_local,
)

logger = logging.getLogger("parking_sync.erp.orchestrator")

ConnectorFactory = Callable[[SoftOneConnection, str], ErpConnector]

@dataclass
class SyncStats:
    created: int = 0
    updated: int = 0
    errors: int = 0
    skipped: int = 0
    total: int = 0
    skipped_reasons: Counter = field(default_factory=Counter)

    def skip(self, reason: str) -> None:
        self.skipped += 1
        self.skipped_reasons[reason] += 1

    @property
    def synced(self) -> int:
        return self.created + self.updated

    @property
    def status(self) -> SyncStatus:
        if self.errors > 0 and self.synced == 0:
            return SyncStatus.ERROR
        if self.errors > 0:
            return SyncStatus.PARTIAL
        return SyncStatus.SUCCESS

    def as_direction(self) -> DirectionStats:
        return DirectionStats(
            created=self.created,
            updated=self.updated,
            errors=self.errors,
            skipped=self.skipped,
            synced=self.synced,
            total=self.total,
        )

@dataclass
class RunContext:
    """Per-invocation state handed from stage to stage."""
    integration_id: str
    trigger: Trigger
    options: SyncOptions
    started_at: datetime
    stage: str = "AUTHENTICATE"
    integration: Any = None
    connection: Any = None
    config: Optional[IntegrationConfig] = None
    kind: Optional[EntityKind] = None
    field_mappings: Dict[str, str] = field(default_factory=dict)
    unique_erp_field: str = ""
    unique_model_field: str = ""
    watermark: Optional[datetime] = None
    new_watermark: Optional[datetime] = None
    full_sync: bool = False
    parent_scoped: bool = False
    resumable: bool = False
    plan: Optional[FetchPlan] = None
    fields: List[str] = field(default_factory=list)
    records: List[Dict[str, Any]] = field(default_factory=list)
    window: Optional[OffsetWindow] = None
    progress: Optional[ProgressOut] = None
    failed_parents: List[int] = field(default_factory=list)
    stats: SyncStats = field(default_factory=SyncStats)

    @property
    def model_name(self) -> Optional[str]:
        return self.kind.name if self.kind else None

def build_connector(connection: SoftOneConnection, password: str) -> ErpConnector:
    connector_cls = get_connector_class(connection.provider or "softone")
    return connector_cls(SoftOneConfig(
        base_url=connection.base_url or "",
        username=connection.username,
        password=password,
        app_id=connection.app_id,
        company=connection.company or "1001",
        branch=connection.branch or "1000",
        module=connection.module or "0",
        refid=connection.refid or "15",
        registered_name=connection.registered_name,
        timeout_s=settings.SOFTONE_TIMEOUT_SECONDS,
        retry_attempts=settings.REMOTE_RETRY_ATTEMPTS,
        retry_delay_s=settings.REMOTE_RETRY_DELAY_SECONDS,
    ))

def months_ago(now: datetime, months: int) -> datetime:
    month = now.month - months
    year = now.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)

class SyncOrchestrator:
    """
    Runs one ERP -> App sync for one integration:
    - authenticate, pick full / incremental / named-query / per-parent fetch
    - normalize, classify against the stored records, gate contract lines
    - persist in batches, advance resume offset and watermark
    - append an execution log entry (success, partial or error)
    """

    def __init__(
        self,
        session_factory=None,
        *,
        connector_factory: Optional[ConnectorFactory] = None,
        decrypt: Callable[[str], str] = decrypt_secret,
        clock: Callable[[], datetime] = utcnow,
        fanout: Optional[int] = None,
        sleep=asyncio.sleep,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.connector_factory = connector_factory or build_connector
        self.decrypt = decrypt
        self.clock = clock
        self.fanout = fanout
        self._sleep = sleep

    async def run_sync(
        self,
        integration_id: str,
        options: Optional[SyncOptions] = None,
        trigger: Trigger = Trigger.MANUAL,
        timeout: Optional[float] = None,
    ) -> SyncResult:
        ctx = RunContext(
            integration_id=integration_id,
            trigger=trigger,
            options=options or SyncOptions(),
            started_at=self.clock(),
        )
        timeout = timeout or settings.SYNC_TIMEOUT_SECONDS
        logger.info(f"Sync {integration_id} started ({trigger.value})")

        try:
            await asyncio.wait_for(self._run(ctx), timeout=timeout)
        except asyncio.TimeoutError:
            return await self._fail(ctx, SyncError(f"Sync timed out after {timeout}s", SyncErrorCode.TIMEOUT))
        except SyncError as e:
            return await self._fail(ctx, e)
        except Exception as e:
            logger.exception(f"Sync {integration_id} crashed during {ctx.stage}")
            return await self._fail(ctx, SyncError(f"{type(e).__name__}: {e}", SyncErrorCode.UNKNOWN))

        return await self._finish(ctx)

    # --- Stages ---
    async def _run(self, ctx: RunContext) -> None:
        await self._load(ctx)

        connector = None
        try:
            ctx.stage = "AUTHENTICATE"
            try:
                password = self.decrypt(ctx.connection.password_encrypted)
            except DecryptionError as e:
                raise AuthError(f"Failed to decrypt connection credentials: {e}") from e
            connector = self.connector_factory(ctx.connection, password)
            session = await connector.authenticate()

            ctx.stage = "DECIDE_STRATEGY"
            await self._decide_strategy(ctx)

            ctx.stage = "FETCH"
            if ctx.full_sync:
                await self._check_full_sync(ctx)
            await self._fetch(ctx, connector, session)
        finally:
            if connector is not None:
                await connector.aclose()

        ctx.stage = "NORMALIZE"
        if ctx.resumable:
            await self._apply_window(ctx)
        ctx.stats.total = len(ctx.records)

        if ctx.full_sync:
            async with self.session_factory() as db:
                deleted = await crud.delete_contract_lines(db)
            logger.warning(f"Full sync: deleted {deleted} {ctx.kind.name} records before re-insert")

        ctx.stage = "BUILD_INDEX"
        queued = await self._classify(ctx)

        ctx.stage = "BATCH_PERSIST"
        if queued:
            writer = BatchWriter(
                self.session_factory,
                ctx.kind,
                lookup_field=ctx.kind.lookup_field or ctx.unique_model_field,
                concurrency=self.fanout,
                sleep=self._sleep,
            )
            outcome = await writer.persist(
                queued, insert_only=ctx.full_sync, count_by_classification=ctx.plan.incremental,
            )
            ctx.stats.created += outcome.created
            ctx.stats.updated += outcome.updated
            ctx.stats.errors += outcome.errors

        if ctx.resumable:
            await self._advance_progress(ctx)

        ctx.stage = "UPDATE_WATERMARK"
        completed = self.clock()
        ctx.new_watermark = max(ctx.watermark, completed) if ctx.watermark else completed
        async with self.session_factory() as db:
            await crud.set_watermark(db, ctx.integration_id, ctx.new_watermark)

    async def _load(self, ctx: RunContext) -> None:
        ctx.stage = "LOAD"
        async with self.session_factory() as db:
            ctx.integration = await crud.get_integration(db, ctx.integration_id)
            if ctx.integration is None:
                raise ConfigurationError(f"Integration {ctx.integration_id} not found", {"not_found": True})
            ctx.connection = await crud.get_connection(db, ctx.integration.connection_id)
            if ctx.connection is None:
                raise ConfigurationError(f"Connection {ctx.integration.connection_id} not found")

        try:
            ctx.config = IntegrationConfig.model_validate(ctx.integration.config_json or {})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid integration configuration: {e}") from e

        mapping = ctx.config.model_mapping
        ctx.kind = resolve_entity_kind(mapping.model_name or ctx.integration.object_name)
        if ctx.kind is None:
            raise ConfigurationError(f"Unsupported model: {mapping.model_name or ctx.integration.object_name}")
        if mapping.unique_identifier is None:
            raise ConfigurationError("Missing unique identifier mapping (modelMapping.uniqueIdentifier)")

        columns = {attr.key for attr in sa_inspect(ctx.kind.model).column_attrs}
        ctx.unique_erp_field = mapping.unique_identifier.erp_field
        ctx.unique_model_field = mapping.unique_identifier.model_field
        if ctx.unique_model_field not in columns:
            raise ConfigurationError(f"Unique field {ctx.unique_model_field} is not a {ctx.kind.name} column")

        for erp_field, model_field in mapping.field_mappings.items():
            if not model_field or model_field.strip().lower() == "none":
                continue
            if model_field not in columns:
                logger.warning(f"Ignoring mapping {erp_field} -> {model_field}: not a {ctx.kind.name} column")
                continue
            ctx.field_mappings[erp_field] = model_field

        if mapping.sync_direction == "two-way":
            logger.warning(f"Integration {ctx.integration_id} is two-way; only ERP -> App is synced")

        ctx.watermark = ctx.integration.last_sync_at
        ctx.fields = ctx.kind.remote_fields(ctx.config.remote_fields())

    async def _decide_strategy(self, ctx: RunContext) -> None:
        opts = ctx.options
        wants_parent_scope = bool(opts.parent_ids) or opts.filter_by_recent_parents
        ctx.parent_scoped = wants_parent_scope and ctx.kind.parent_gate
        if wants_parent_scope and not ctx.parent_scoped:
            logger.warning(f"Parent scoping only applies to contract lines; ignored for {ctx.kind.name}")

        ctx.full_sync = opts.full_sync and ctx.kind.supports_full_sync and not ctx.parent_scoped
        if opts.full_sync and not ctx.full_sync:
            logger.warning(f"Full sync is not available for {ctx.kind.name} in this mode; running a normal sync")

        ctx.resumable = ctx.kind.resumable and not ctx.full_sync and not ctx.parent_scoped
        resume_active = False
        if ctx.resumable:
            saved = await get_progress(self.session_factory, SYNC_JOB_TYPE, ctx.integration_id, ctx.kind.name)
            resume_active = bool(saved and saved.last_offset > 0) or bool(opts.offset)
            # A saved offset only addresses the dataset of the read that produced it
            saved_plan = (saved.payload or {}).get("plan") if saved and saved.last_offset > 0 else None
            if saved_plan and opts.offset is None:
                ctx.plan = FetchPlan(**saved_plan)
                logger.info(f"Sync {ctx.integration_id} ({ctx.kind.name}): resuming {ctx.plan.reason}")
                return

        ctx.plan = decide_fetch_plan(
            ctx.kind,
            table=ctx.integration.table_name,
            base_filter=ctx.config.filter,
            watermark=ctx.watermark,
            trigger=ctx.trigger,
            parent_scoped=ctx.parent_scoped,
            resume_active=resume_active,
            full_sync=ctx.full_sync,
        )
        logger.info(f"Sync {ctx.integration_id} ({ctx.kind.name}): {ctx.plan.reason}")

    async def _check_full_sync(self, ctx: RunContext) -> None:
        async with self.session_factory() as db:
            contracts = await crud.count_contracts(db)
        if contracts == 0:
            raise FullSyncPreconditionError(
                f"Sync contracts ({CONTRACT.name}) before contract lines: no contracts stored"
            )

    async def _fetch(self, ctx: RunContext, connector: ErpConnector, session: ErpSession) -> None:
        plan = ctx.plan
        table = ctx.integration.table_name

        if plan.method == METHOD_PER_PARENT:
            await self._fetch_per_parent(ctx, connector, session)
            return

        if plan.method == METHOD_NAMED_QUERY:
            try:
                result = await connector.fetch_named_query(session, plan.named_query, plan.since)
                ctx.records = normalize(result.rows, result.keys, ctx.fields)
                return
            except RemoteError as e:
                logger.warning(f"Named query {plan.named_query} failed ({e}); falling back to GetTable {table}")
                ctx.plan = plan = table_fallback_plan(ctx.kind, table=table, base_filter=ctx.config.filter, since=plan.since)

        result = await connector.fetch_table(session, table, ctx.fields, plan.filter_expression, plan.filters)
        ctx.records = normalize(result.rows, result.keys, ctx.fields)

    async def _fetch_per_parent(self, ctx: RunContext, connector: ErpConnector, session: ErpSession) -> None:
        opts = ctx.options
        if opts.parent_ids:
            parent_ids = list(dict.fromkeys(opts.parent_ids))
        else:
            months = opts.recent_parent_months or settings.RECENT_PARENT_MONTHS
            cutoff = months_ago(to_erp_local(self.clock()), months)
            async with self.session_factory() as db:
                parent_ids = await crud.recent_contract_ids(db, cutoff)
            logger.info(f"{len(parent_ids)} contracts with WDATETO >= {cutoff:%Y-%m-%d}")

        table = ctx.integration.table_name
        for parent_id in parent_ids:
            try:
                result = await connector.fetch_table(session, table, ctx.fields, f"INST={parent_id}")
            except RemoteError as e:
                logger.error(f"Fetching {ctx.kind.name} for contract {parent_id} failed: {e}")
                ctx.failed_parents.append(parent_id)
                continue
            ctx.records.extend(normalize(result.rows, result.keys, ctx.fields))

    async def _apply_window(self, ctx: RunContext) -> None:
        saved = await get_progress(self.session_factory, SYNC_JOB_TYPE, ctx.integration_id, ctx.kind.name)
        ctx.window = resolve_window(
            len(ctx.records),
            saved=saved,
            explicit_offset=ctx.options.offset,
            requested_limit=ctx.options.limit,
            max_limit=settings.CONTRACT_LINE_PAGE_LIMIT,
        )
        ctx.records = ctx.records[ctx.window.offset:ctx.window.next_offset]
        logger.info(
            f"{ctx.kind.name}: processing {ctx.window.offset}..{ctx.window.next_offset} of {ctx.window.total}"
        )

    async def _classify(self, ctx: RunContext) -> List[QueuedRecord]:
        kind = ctx.kind
        candidates = [field_lookup(r, ctx.unique_erp_field) for r in ctx.records]
        index = await build_index(self.session_factory, kind, ctx.unique_model_field, candidates)
        parent_index = None
        if kind.parent_gate:
            parent_index = await build_index(self.session_factory, CONTRACT, CONTRACT.primary_key)

        ctx.stage = "CLASSIFY_AND_GATE"
        watermark = to_erp_local(ctx.watermark) if ctx.watermark and ctx.plan.incremental else None
        queued: List[QueuedRecord] = []
        for remote in ctx.records:
            c = classify_record(
                remote,
                kind=kind,
                field_mappings=ctx.field_mappings,
                unique_erp_field=ctx.unique_erp_field,
                unique_model_field=ctx.unique_model_field,
                index=index,
                parent_index=parent_index,
                watermark=watermark,
                incremental=ctx.plan.incremental,
            )
            if c.action == ACTION_SKIP:
                ctx.stats.skip(c.reason)
                continue
            queued.append(QueuedRecord(key=c.key, data=c.record_data, is_new=c.is_new))

        if ctx.stats.skipped_reasons:
            logger.warning(f"{kind.name}: skipped {ctx.stats.skipped} records {dict(ctx.stats.skipped_reasons)}")
        logger.info(f"{kind.name}: {len(queued)} of {len(ctx.records)} records queued for persistence")
        return queued

    async def _advance_progress(self, ctx: RunContext) -> None:
        window = ctx.window
        ctx.progress = ProgressOut(
            total=window.total,
            completed_from=window.offset,
            completed_to=window.offset + ctx.stats.synced,
            next_offset=window.next_offset,
            has_more=window.has_more,
        )
        if window.has_more:
            await save_progress(
                self.session_factory,
                SYNC_JOB_TYPE,
                ctx.integration_id,
                ctx.kind.name,
                window.next_offset,
                window.total,
                payload={"completedFrom": window.offset, "limit": window.limit, "plan": asdict(ctx.plan)},
            )
        else:
            await clear_progress(self.session_factory, SYNC_JOB_TYPE, ctx.integration_id, ctx.kind.name)

    # --- Outcome ---
    def _details(self, ctx: RunContext, message: str) -> Dict[str, Any]:
        mapping = ctx.config.model_mapping if ctx.config else None
        details = {
            "integrationName": ctx.integration.name if ctx.integration else None,
            "modelName": ctx.model_name,
            "syncDirection": mapping.sync_direction if mapping else None,
            "lastSyncAt": ctx.new_watermark.isoformat() if ctx.new_watermark else None,
            "triggeredBy": ctx.trigger.value,
            "message": message,
            "stage": ctx.stage,
            "skippedReasons": dict(ctx.stats.skipped_reasons),
        }
        if ctx.plan:
            details["fetch"] = ctx.plan.reason
        if ctx.progress:
            details["progress"] = ctx.progress.model_dump(by_alias=True)
        if ctx.failed_parents:
            details["failedParents"] = ctx.failed_parents
        return details

    async def _log(self, ctx: RunContext, status: SyncStatus, message: str, error: Optional[str]) -> None:
        await record_run(self.session_factory, ExecutionLogEntry(
            job_type=SYNC_JOB_TYPE,
            status=status.value,
            started_at=ctx.started_at,
            completed_at=self.clock(),
            integration_id=ctx.integration_id,
            user_id=ctx.integration.user_id if ctx.integration else None,
            stats={"erpToApp": ctx.stats.as_direction().model_dump(), "appToErp": None},
            error=error,
            details=self._details(ctx, message),
        ))

    async def _finish(self, ctx: RunContext) -> SyncResult:
        stats = ctx.stats
        status = stats.status
        message = (
            f"Synced {stats.synced} {ctx.kind.name} records "
            f"({stats.created} created, {stats.updated} updated, {stats.errors} errors, {stats.skipped} skipped)"
        )
        if ctx.progress and ctx.progress.has_more:
            message += f"; next offset {ctx.progress.next_offset} of {ctx.progress.total}"
        logger.info(f"Sync {ctx.integration_id} finished [{status.value}]: {message}")

        await self._log(ctx, status, message, None if status == SyncStatus.SUCCESS else f"{stats.errors} records failed")
        return SyncResult(
            success=status != SyncStatus.ERROR,
            status=status,
            message=message,
            integration_id=ctx.integration_id,
            model_name=ctx.model_name,
            stats=SyncStatsOut(erp_to_app=stats.as_direction()),
            skipped_reasons=dict(stats.skipped_reasons),
            progress=ctx.progress,
            last_sync_at=ctx.new_watermark,
        )

    async def _fail(self, ctx: RunContext, exc: SyncError) -> SyncResult:
        logger.error(f"Sync {ctx.integration_id} failed during {ctx.stage}: {exc}")
        await self._log(ctx, SyncStatus.ERROR, str(exc), str(exc))
        return SyncResult(
            success=False,
            status=SyncStatus.ERROR,
            message=str(exc),
            integration_id=ctx.integration_id,
            model_name=ctx.model_name,
            stats=SyncStatsOut(erp_to_app=ctx.stats.as_direction()),
            skipped_reasons=dict(ctx.stats.skipped_reasons),
            error=str(exc),
            error_code=exc.code.value,
        )

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from parking_sync.config import settings
from .entities import EntityKind, UPSERT_FIND_THEN_WRITE
from .retry import retry_async, is_transient_store_error, store_retry_delay

logger = logging.getLogger("parking_sync.erp.persistence")

CREATED = "created"
UPDATED = "updated"
FAILED = "failed"
# duplicate key on create, written as an update instead
CONFLICT_UPDATED = "conflict_updated"

@dataclass
class QueuedRecord:
    key: Any
    data: Dict[str, Any]
    is_new: bool = True

@dataclass
class PersistOutcome:
    created: int = 0
    updated: int = 0
    errors: int = 0
    failed_keys: List[Any] = field(default_factory=list)

    def tally(self, status: str, key: Any = None) -> None:
        if status == CREATED:
            self.created += 1
        elif status == UPDATED or status == CONFLICT_UPDATED:
            self.updated += 1
        else:
            self.errors += 1
            self.failed_keys.append(key)

class BatchWriter:
    """
    Writes classified records in fixed-size batches.

    A batch is one transaction. If it fails, its members are written again one
    by one (each in its own session, bounded concurrency) so a single malformed
    record cannot sink its batch-mates. Lock and connectivity errors on that
    path are retried with exponential backoff; a duplicate key on create is
    retried once as an update.

    Incremental runs count by classification (`QueuedRecord.is_new`); other
    runs count what storage did. A duplicate-key conversion is always an update.
    """

    def __init__(
        self,
        session_factory,
        kind: EntityKind,
        *,
        lookup_field: Optional[str] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.kind = kind
        self.lookup_field = lookup_field or kind.lookup_field
        if kind.upsert == UPSERT_FIND_THEN_WRITE and not self.lookup_field:
            raise ValueError(f"{kind.name} needs a lookup field for find-then-write upserts")
        self.batch_size = batch_size or kind.batch_size
        self.concurrency = concurrency or kind.concurrency
        self.retry_attempts = retry_attempts or settings.STORE_RETRY_ATTEMPTS
        self.retry_base_delay = settings.STORE_RETRY_BASE_DELAY_SECONDS if retry_base_delay is None else retry_base_delay
        self._sleep = sleep

    async def persist(
        self,
        records: List[QueuedRecord],
        insert_only: bool = False,
        count_by_classification: bool = False,
    ) -> PersistOutcome:
        outcome = PersistOutcome()
        total_batches = (len(records) + self.batch_size - 1) // self.batch_size
        for n, start in enumerate(range(0, len(records), self.batch_size), start=1):
            batch = records[start:start + self.batch_size]
            try:
                statuses = await self._write_batch(batch, insert_only)
            except Exception as e:
                logger.warning(
                    f"{self.kind.name} batch {n}/{total_batches} failed ({e}); retrying {len(batch)} records individually"
                )
                statuses = await self._write_individually(batch, insert_only)
            for rec, status in zip(batch, statuses):
                if count_by_classification and status in (CREATED, UPDATED):
                    status = CREATED if rec.is_new else UPDATED
                outcome.tally(status, rec.key)
            logger.info(f"{self.kind.name} batch {n}/{total_batches}: {len(batch)} records written")
        return outcome

    async def _write_batch(self, batch: List[QueuedRecord], insert_only: bool) -> List[str]:
        async with self.session_factory() as session:
            if insert_only:
                session.add_all([self.kind.model(**rec.data) for rec in batch])
                await session.commit()
                return [CREATED] * len(batch)

            statuses = [await self._upsert(session, rec) for rec in batch]
            await session.commit()
            return statuses

    async def _write_one(self, rec: QueuedRecord, insert_only: bool) -> str:
        async with self.session_factory() as session:
            if insert_only:
                session.add(self.kind.model(**rec.data))
                status = CREATED
            else:
                status = await self._upsert(session, rec)
            await session.commit()
            return status

    async def _write_individually(self, batch: List[QueuedRecord], insert_only: bool) -> List[str]:
        sem = asyncio.Semaphore(self.concurrency)

        async def _with_retry(rec: QueuedRecord, as_insert: bool) -> str:
            return await retry_async(
                lambda: self._write_one(rec, as_insert),
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                is_transient=is_transient_store_error,
                delay_for=store_retry_delay(self.retry_base_delay),
                sleep=self._sleep,
                label=f"{self.kind.name} {rec.key}",
            )

        async def _one(rec: QueuedRecord) -> str:
            async with sem:
                try:
                    return await _with_retry(rec, insert_only)
                except IntegrityError as e:
                    logger.warning(f"{self.kind.name} {rec.key}: duplicate key on write ({e.orig}); retrying as update")
                    try:
                        await _with_retry(rec, False)
                        return CONFLICT_UPDATED
                    except Exception as e2:
                        logger.error(f"{self.kind.name} {rec.key}: failed after duplicate-key retry: {e2}")
                        return FAILED
                except Exception as e:
                    logger.error(f"{self.kind.name} {rec.key}: failed to persist: {e}")
                    return FAILED

        return list(await asyncio.gather(*[_one(rec) for rec in batch]))

    async def _upsert(self, session, rec: QueuedRecord) -> str:
        model = self.kind.model
        if self.kind.upsert == UPSERT_FIND_THEN_WRITE:
            value = rec.data.get(self.lookup_field)
            obj = None
            # a NULL lookup would match any row with an empty column
            if value is not None:
                column = getattr(model, self.lookup_field)
                res = await session.execute(select(model).where(column == value).limit(1))
                obj = res.scalars().first()
        else:
            obj = await session.get(model, rec.data[self.kind.primary_key])

        if obj is None:
            session.add(model(**rec.data))
            await session.flush()
            return CREATED

        for k, v in rec.data.items():
            if k == self.kind.primary_key:
                continue
            setattr(obj, k, v)
        await session.flush()
        return UPDATED

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.future import select

from parking_sync.config import settings
from .entities import EntityKind

logger = logging.getLogger("parking_sync.erp.resolution")

@dataclass
class ExistingRecord:
    pk: Any
    key: Any
    values: Dict[str, Any] = field(default_factory=dict)

def snapshot(row: Any) -> Dict[str, Any]:
    return {attr.key: getattr(row, attr.key) for attr in sa_inspect(row).mapper.column_attrs}

class ResolutionIndex:
    """In-memory map of normalized unique key -> stored record summary."""

    def __init__(self, kind: EntityKind, unique_field: str):
        self.kind = kind
        self.unique_field = unique_field
        self._entries: Dict[Any, ExistingRecord] = {}

    def add_row(self, row: Any) -> None:
        key = self.kind.normalize_key(getattr(row, self.unique_field))
        if key is None:
            return
        values = snapshot(row)
        self._entries[key] = ExistingRecord(pk=values.get(self.kind.primary_key), key=key, values=values)

    def get(self, raw_value: Any) -> Optional[ExistingRecord]:
        key = self.kind.normalize_key(raw_value)
        if key is None:
            return None
        return self._entries.get(key)

    def __contains__(self, raw_value: Any) -> bool:
        return self.get(raw_value) is not None

    def __len__(self) -> int:
        return len(self._entries)

def _chunks(values: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]

async def build_index(
    session_factory,
    kind: EntityKind,
    unique_field: str,
    candidate_values: Iterable[Any] = (),
    page_size: Optional[int] = None,
) -> ResolutionIndex:
    """
    Loads the stored records needed to classify a fetch.

    Exhaustive kinds page through every stored row, so that remote key format
    drift can never produce a false "not found". Other kinds only query the
    candidate keys, in IN-lists of at most `page_size` values.
    """
    page_size = page_size or settings.INDEX_PAGE_SIZE
    index = ResolutionIndex(kind, unique_field)
    model = kind.model
    column = getattr(model, unique_field)

    async with session_factory() as session:
        if kind.exhaustive_index:
            pk_column = getattr(model, kind.primary_key)
            offset = 0
            while True:
                res = await session.execute(select(model).order_by(pk_column).offset(offset).limit(page_size))
                rows = res.scalars().all()
                for row in rows:
                    index.add_row(row)
                if len(rows) < page_size:
                    break
                offset += page_size
        else:
            keys = []
            seen = set()
            for value in candidate_values:
                key = kind.normalize_key(value)
                if key is not None and key not in seen:
                    seen.add(key)
                    keys.append(key)
            for chunk in _chunks(keys, page_size):
                res = await session.execute(select(model).where(column.in_(chunk)))
                for row in res.scalars().all():
                    index.add_row(row)

    logger.info(f"Resolution index for {kind.name}: {len(index)} stored records")
    return index

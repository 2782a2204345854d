from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .entities import EntityKind, numeric_key
from .normalize import field_lookup, parse_datetime
from .resolution import ExistingRecord, ResolutionIndex

# Skip reasons raised by the contract-line parent gate
PARENT_MISSING = "parent_missing"
PARENT_NOT_FOUND = "parent_not_found"
PARENT_MISSING_CUSTOMER = "parent_missing_customer"

MISSING_DATES = "missing_dates"
NOT_NEW_OR_UPDATED = "not_new_or_updated"
UNCHANGED = "unchanged"

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_SKIP = "skip"

@dataclass(frozen=True)
class GateResult:
    accepted: bool
    reason: Optional[str] = None

@dataclass
class Classification:
    action: str
    reason: Optional[str] = None
    key: Any = None
    record_data: Optional[Dict[str, Any]] = None
    existing: Optional[ExistingRecord] = None

    @property
    def is_new(self) -> bool:
        return self.action == ACTION_CREATE

def _skip(reason: str, key: Any = None) -> Classification:
    return Classification(action=ACTION_SKIP, reason=reason, key=key)

def validate_parent(record: Dict[str, Any], parent_index: ResolutionIndex) -> GateResult:
    """
    A contract line may only be stored under a stored contract that has a
    customer (TRDR); contracts without a customer cannot host plates.
    """
    parent_key = numeric_key(field_lookup(record, "INST"))
    if parent_key is None:
        return GateResult(False, PARENT_MISSING)

    parent = parent_index.get(parent_key)
    if parent is None:
        return GateResult(False, PARENT_NOT_FOUND)

    trdr = parent.values.get("trdr")
    if trdr is None or str(trdr).strip() == "":
        return GateResult(False, PARENT_MISSING_CUSTOMER)

    return GateResult(True)

def map_record(remote: Dict[str, Any], field_mappings: Dict[str, str]) -> Dict[str, Any]:
    """Applies the remote->local field mapping, skipping fields the remote did not send."""
    by_lower = {k.lower(): v for k, v in remote.items()}
    data: Dict[str, Any] = {}
    for erp_field, model_field in field_mappings.items():
        if not model_field or model_field.strip().lower() == "none":
            continue
        if erp_field.lower() not in by_lower:
            continue
        data[model_field] = by_lower[erp_field.lower()]
    return data

def is_unchanged(record_data: Dict[str, Any], existing: ExistingRecord) -> bool:
    for k, v in record_data.items():
        if k not in existing.values:
            continue
        if existing.values[k] != v:
            return False
    return True

def classify_record(
    remote: Dict[str, Any],
    *,
    kind: EntityKind,
    field_mappings: Dict[str, str],
    unique_erp_field: str,
    unique_model_field: str,
    index: ResolutionIndex,
    parent_index: Optional[ResolutionIndex] = None,
    watermark: Optional[datetime] = None,
    incremental: bool = False,
) -> Classification:
    """
    Decides create / update / skip for one normalized remote record.

    Incremental runs on date-bearing kinds classify by INSDATE/UPDDATE against
    the watermark; everything else goes by existence in the index. Stored
    records whose mapped values already match are skipped as unchanged.
    """
    raw_unique = field_lookup(remote, unique_erp_field)
    if raw_unique is None or str(raw_unique).strip() == "":
        return _skip(f"missing_{unique_erp_field.upper()}")

    key = kind.normalize_key(raw_unique)
    if key is None:
        return _skip(f"invalid_{unique_erp_field.upper()}")

    if kind.parent_gate:
        if parent_index is None:
            raise ValueError(f"{kind.name} requires a parent index")
        gate = validate_parent(remote, parent_index)
        if not gate.accepted:
            return _skip(gate.reason, key)

    record_data = map_record(remote, field_mappings)
    record_data[unique_model_field] = key

    if kind.derive is not None:
        reason = kind.derive(record_data, remote)
        if reason:
            return _skip(reason, key)

    existing = index.get(key)

    if incremental and kind.has_date_fields and watermark is not None:
        ins = parse_datetime(field_lookup(remote, "INSDATE"))
        upd = parse_datetime(field_lookup(remote, "UPDDATE"))
        if ins is None and upd is None:
            return _skip(MISSING_DATES, key)
        if ins is not None and ins >= watermark:
            action = ACTION_CREATE
        elif upd is not None and upd >= watermark:
            action = ACTION_UPDATE
        else:
            return _skip(NOT_NEW_OR_UPDATED, key)
    else:
        action = ACTION_CREATE if existing is None else ACTION_UPDATE

    if existing is not None and is_unchanged(record_data, existing):
        return _skip(UNCHANGED, key)

    return Classification(action=action, key=key, record_data=record_data, existing=existing)

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from parking_sync.config import settings
from parking_sync.control_plane.models_parking import Contract, ContractLine, Customer, Item, Payment
from .normalize import field_lookup

UPSERT_MERGE = "merge"                      # native upsert keyed by primary key
UPSERT_FIND_THEN_WRITE = "find_then_write"  # lookup by a non-unique field, update by pk, else create

DATE_TRACKING_FIELDS = ("INSDATE", "UPDDATE")

CONTRACT_LINE_FIELDS = frozenset({
    "INST", "INSTLINES", "LINENUM", "SODTYPE", "MTRL", "BUSUNITS", "QTY", "PRICE", "FROMDATE",
    "FINALDATE", "COMMENTS", "SNCODE", "INSTLINESS", "MTRUNIT", "BAILTYPE", "GPNT", "TRDBRANCH",
})

def numeric_key(value: Any) -> Optional[int]:
    """'003018', 3018 and '3018' all map to 3018. Zero and non-numbers are not keys."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, int):
        return value if value > 0 else None
    s = str(value).strip().lstrip("0")
    if not s.isdigit():
        return None
    return int(s)

def string_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value)
    return s if s.strip() else None

def _derive_item(record_data: Dict[str, Any], remote: Dict[str, Any]) -> Optional[str]:
    mtrl = record_data.get("mtrl")
    if mtrl is None or str(mtrl).strip() == "":
        mtrl = field_lookup(remote, "MTRL")
    if mtrl is None or str(mtrl).strip() == "":
        return "missing_MTRL"
    items = numeric_key(mtrl)
    if items is None:
        return "invalid_MTRL"
    record_data["mtrl"] = str(mtrl)
    record_data["items"] = items
    if record_data.get("isactive") is None:
        record_data["isactive"] = 1
    return None

def _derive_contract_line(record_data: Dict[str, Any], remote: Dict[str, Any]) -> Optional[str]:
    parent = numeric_key(field_lookup(remote, "INST"))
    if parent is None:
        return "parent_missing"
    record_data["inst"] = parent
    return None

def _derive_customer(record_data: Dict[str, Any], remote: Dict[str, Any]) -> Optional[str]:
    if record_data.get("trdr") is not None:
        record_data["trdr"] = str(record_data["trdr"])
    return None

@dataclass(frozen=True)
class EntityKind:
    """One variant per synced entity type; the orchestrator dispatches on these."""
    name: str
    model: Any
    primary_key: str
    numeric_key: bool
    has_date_fields: bool
    exhaustive_index: bool = False
    named_query: Optional[str] = None
    upsert: str = UPSERT_MERGE
    lookup_field: Optional[str] = None        # find_then_write column; None means the configured unique field
    parent_gate: bool = False
    resumable: bool = False
    supports_full_sync: bool = False
    fanout: Optional[int] = None
    field_allowlist: Optional[FrozenSet[str]] = None
    required_fields: Tuple[str, ...] = ()
    derive: Optional[Callable[[Dict[str, Any], Dict[str, Any]], Optional[str]]] = None

    def normalize_key(self, value: Any):
        return numeric_key(value) if self.numeric_key else string_key(value)

    @property
    def batch_size(self) -> int:
        if self.name == CONTRACT_LINE.name:
            return settings.DB_BATCH_SIZE_CONTRACT_LINES
        return settings.DB_BATCH_SIZE

    @property
    def concurrency(self) -> int:
        return self.fanout or self.batch_size

    def remote_fields(self, selected: List[str]) -> List[str]:
        """Field list sent to GetTable for this entity type."""
        fields = [f for f in selected if f]
        if self.field_allowlist is not None:
            fields = [f for f in fields if f.upper() in self.field_allowlist]
        for required in self.required_fields:
            if required.upper() not in {f.upper() for f in fields}:
                fields.append(required)
        if self.has_date_fields:
            for date_field in DATE_TRACKING_FIELDS:
                if date_field not in {f.upper() for f in fields}:
                    fields.append(date_field)
        return fields

CUSTOMER = EntityKind(
    name="CUSTOMER",
    model=Customer,
    primary_key="id",
    numeric_key=False,
    has_date_fields=True,
    named_query="137",
    upsert=UPSERT_FIND_THEN_WRITE,
    derive=_derive_customer,
)

CONTRACT = EntityKind(
    name="INST",
    model=Contract,
    primary_key="inst",
    numeric_key=True,
    has_date_fields=True,
    exhaustive_index=True,
    named_query="135",
    fanout=settings.CONTRACT_FANOUT,
)

CONTRACT_LINE = EntityKind(
    name="INSTLINES",
    model=ContractLine,
    primary_key="instlines",
    numeric_key=True,
    has_date_fields=False,
    exhaustive_index=True,
    named_query="136",
    parent_gate=True,
    resumable=True,
    supports_full_sync=True,
    fanout=settings.CONTRACT_FANOUT,
    field_allowlist=CONTRACT_LINE_FIELDS,
    required_fields=("INSTLINES", "INST"),
    derive=_derive_contract_line,
)

ITEM = EntityKind(
    name="ITEMS",
    model=Item,
    primary_key="items",
    numeric_key=False,
    has_date_fields=True,
    named_query="138",
    upsert=UPSERT_FIND_THEN_WRITE,
    lookup_field="items",
    derive=_derive_item,
)

PAYMENT = EntityKind(
    name="PAYMENT",
    model=Payment,
    primary_key="payment",
    numeric_key=True,
    has_date_fields=True,
)

ENTITY_KINDS: Dict[str, EntityKind] = {k.name: k for k in (CUSTOMER, CONTRACT, CONTRACT_LINE, ITEM, PAYMENT)}

_ALIASES = {
    "CUSTORMER": CUSTOMER,
    "CUSTOMERS": CUSTOMER,
    "TRDR": CUSTOMER,
    "CONTRACT": CONTRACT,
    "CONTRACTS": CONTRACT,
    "CONTRACT_LINE": CONTRACT_LINE,
    "CONTRACT_LINES": CONTRACT_LINE,
    "ITEM": ITEM,
    "MTRL": ITEM,
    "PAYMENTS": PAYMENT,
}

def resolve_entity_kind(model_name: Optional[str]) -> Optional[EntityKind]:
    if not model_name:
        return None
    key = model_name.strip().upper()
    return ENTITY_KINDS.get(key) or _ALIASES.get(key)

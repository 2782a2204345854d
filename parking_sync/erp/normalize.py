from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger("parking_sync.erp.normalize")

# Reserved FIELDS entry meaning "no field selected"
PLACEHOLDER_FIELD = "MYDUMMY"

ZERO_DATE = "0/0/0 0:0:0.0"

INT_FIELDS = frozenset({
    "COUNTRY", "SOCURRENCY", "ISACTIVE", "VAT", "VATS1", "VATS3", "MYDATACODE", "DEPART",
    "ACNMSKS", "ACNMSKX", "LOCKID", "TRDCATEGORY", "SODTYPE", "ITEMS", "PAYMENT", "ISDOSE",
    "INSTALMENTS", "MATURE", "PAYROUND", "MATURE1", "INST", "BLOCKED", "INSTLINES", "LINENUM",
    "MTRTYPE1",
})

FLOAT_FIELDS = frozenset({
    "PERCNT", "MU21", "MU31", "MU41", "WEIGHT", "PRICEW", "PRICER", "DIM1", "DIM2", "DIM3",
    "SALQTY", "PURQTY", "ITEQTY", "GWEIGHT", "INTERESTDEB", "INTERESTCRE", "QTY", "PRICE", "NUM01",
})

DATE_FIELDS = frozenset({
    "INSDATE", "UPDDATE", "FROMDATE", "FINALDATE", "PAYFROMDATE", "GDATEFROM", "GDATETO",
    "WDATEFROM", "WDATETO", "BLCKDATE", "CREATEDAT", "UPDATEDAT",
})

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
)

def field_type(name: str) -> str:
    upper = name.upper()
    if upper in INT_FIELDS:
        return "int"
    if upper in FLOAT_FIELDS:
        return "float"
    if upper in DATE_FIELDS or upper.endswith("DATE"):
        return "datetime"
    return "str"

def parse_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v) if v.is_integer() else None
    s = str(v).strip()
    if not s:
        return None
    try:
        return int(s)
    except ValueError:
        try:
            f = float(s)
        except ValueError:
            return None
        return int(f) if f.is_integer() else None

def parse_float(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    s = str(v).strip().replace(",", ".")
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None

def parse_datetime(v: Any) -> Optional[datetime]:
    """Parses SoftOne timestamps into naive datetimes; the zero date maps to None."""
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.replace(tzinfo=None)
    s = str(v).strip()
    if not s or s == ZERO_DATE:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

def coerce_value(name: str, v: Any) -> Any:
    kind = field_type(name)
    if kind == "int":
        return parse_int(v)
    if kind == "float":
        return parse_float(v)
    if kind == "datetime":
        return parse_datetime(v)
    if v is None:
        return None
    return str(v)

def field_lookup(record: Dict[str, Any], name: str) -> Any:
    """Case-insensitive field access."""
    if name in record:
        return record[name]
    lower = name.lower()
    for key, value in record.items():
        if key.lower() == lower:
            return value
    return None

def _zip_row(row: Sequence[Any], keys: List[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for i, key in enumerate(keys):
        if key.upper() == PLACEHOLDER_FIELD:
            continue
        out[key] = row[i] if i < len(row) else None
    return out

def _rekey(row: Dict[str, Any], declared_fields: List[str]) -> Dict[str, Any]:
    canonical = {f.lower(): f for f in declared_fields}
    out: Dict[str, Any] = {}
    for key, value in row.items():
        if key.upper() == PLACEHOLDER_FIELD:
            continue
        out[canonical.get(key.lower(), key)] = value
    return out

def normalize(
    raw_rows: Iterable[Any],
    keys: Optional[List[str]],
    declared_fields: List[str],
) -> List[Dict[str, Any]]:
    """
    Turns a GetTable/SqlData result into a list of coerced field maps.
    Positional rows are zipped against `keys` (or `declared_fields` when the
    remote sent none); field-map rows are re-keyed to the declared casing.
    """
    zip_keys = list(keys or []) or list(declared_fields)
    records: List[Dict[str, Any]] = []
    for row in raw_rows:
        if isinstance(row, dict):
            mapped = _rekey(row, declared_fields)
        elif isinstance(row, (list, tuple)):
            mapped = _zip_row(row, zip_keys)
        else:
            logger.warning(f"Skipping unrecognized row shape: {type(row).__name__}")
            continue
        records.append({k: coerce_value(k, v) for k, v in mapped.items()})
    return records

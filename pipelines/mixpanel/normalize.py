from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from .errors import ConfigError
from .models import ColumnSpec
from .utils import to_utc

EVENT_COLUMN = "event"
DEFAULT_TIME_COLUMN = "time"
TIME_COLUMNS = ("time", "last_seen")
CUSTOM_PROPERTIES_COLUMN = "custom_properties"
# Por encima de esto un epoch solo puede estar en milisegundos (año 5138 en segundos)
MS_EPOCH_THRESHOLD = 10 ** 11


def _source(record: dict, nested: bool) -> dict:
    if nested:
        return record.get("properties") or {}
    return record


def epoch_seconds(value, divisor: Optional[int] = None) -> int:
    if divisor is None:
        divisor = 1000 if abs(value) >= MS_EPOCH_THRESHOLD else 1
    return int(value) // divisor


@dataclass(frozen=True)
class EventName:
    name: str

    def extract(self, record: dict):
        return record.get(EVENT_COLUMN)


@dataclass(frozen=True)
class EpochTimeField:
    """Epoch in project-local time.

    ``divisor`` is 1000 for millisecond fields; ``None`` tells seconds from
    milliseconds by magnitude.
    """

    name: str
    zone: str
    nested: bool = False
    divisor: Optional[int] = None

    def extract(self, record: dict):
        value = _source(record, self.nested).get(self.name)
        if value is None:
            return None
        # <= 0 es centinela de "desconocido", se deja tal cual
        if value > 0:
            return to_utc(epoch_seconds(value, self.divisor), self.zone)
        return value


@dataclass(frozen=True)
class IncrementalField(EpochTimeField):
    pass


@dataclass(frozen=True)
class RawPropertyField:
    name: str
    nested: bool = False

    def extract(self, record: dict):
        return _source(record, self.nested).get(self.name)


def build_extractors(
    columns: List[ColumnSpec],
    zone: str,
    nested: bool,
    incremental_column: Optional[str] = None,
    divisor: Optional[int] = None,
) -> list:
    """One extractor per column, chosen once per run."""
    out = []
    for col in columns:
        if col.name == EVENT_COLUMN:
            out.append(EventName(col.name))
        elif col.name in TIME_COLUMNS:
            out.append(EpochTimeField(col.name, zone, nested, divisor))
        elif incremental_column and col.name == incremental_column:
            out.append(IncrementalField(col.name, zone, nested, divisor))
        else:
            out.append(RawPropertyField(col.name, nested))
    return out


def _to_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "y"):
        return True
    if text in ("false", "0", "no", "n", ""):
        return False
    raise ValueError(value)


def _to_timestamp(value, fmt: Optional[str]):
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if fmt:
        parsed = datetime.strptime(str(value), fmt)
    else:
        parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def coerce(value: Any, column: ColumnSpec):
    if value is None:
        return None
    try:
        if column.type == "string":
            return value if isinstance(value, str) else str(value)
        if column.type in ("integer", "long"):
            return int(value)
        if column.type == "double":
            return float(value)
        if column.type == "boolean":
            return _to_bool(value)
        if column.type == "timestamp":
            return _to_timestamp(value, column.format)
        return value
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"Valor {value!r} no convertible a {column.type} en columna '{column.name}'"
        ) from e


def custom_properties(record: dict, known: List[str]) -> Dict[str, Any]:
    props = record.get("properties") or {}
    return {k: v for k, v in props.items() if k not in known}


def extract_row(record: dict, extractors: list, columns: List[ColumnSpec]) -> list:
    return [coerce(ex.extract(record), col) for ex, col in zip(extractors, columns)]


_INFERRED = {
    "integer": "long",
    "mixed-integer-float": "double",
    "floating": "double",
    "decimal": "double",
    "boolean": "boolean",
    "string": "string",
    "datetime": "timestamp",
    "datetime64": "timestamp",
}


def flatten_record(record: dict, nested: bool) -> dict:
    if not nested:
        return dict(record)
    flat = {EVENT_COLUMN: record.get(EVENT_COLUMN)}
    flat.update(record.get("properties") or {})
    return flat


def guess_columns(records: List[dict], nested: bool) -> List[dict]:
    """Column list (name/type) inferred from a small sample."""
    df = pd.DataFrame.from_records([flatten_record(r, nested) for r in records])
    cols = []
    for name in df.columns:
        series = df[name].dropna()
        if name in TIME_COLUMNS:
            ctype = "timestamp"
        elif series.empty:
            ctype = "string"
        else:
            ctype = _INFERRED.get(pd.api.types.infer_dtype(series, skipna=True), "json")
        cols.append({"name": str(name), "type": ctype})
    return cols

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from .errors import ConfigError

COLUMN_TYPES = ("string", "integer", "long", "double", "boolean", "timestamp", "json")


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str

    @classmethod
    def from_cfg(cls, cfg: dict) -> "Credentials":
        api_key = (cfg.get("api_key") or os.environ.get("MIXPANEL_API_KEY", "")).strip()
        api_secret = (
            cfg.get("api_secret") or os.environ.get("MIXPANEL_API_SECRET", "")
        ).strip()
        if not api_key or not api_secret:
            raise ConfigError("MIXPANEL_API_KEY / MIXPANEL_API_SECRET no configurados")
        return cls(api_key=api_key, api_secret=api_secret)


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ConfigError(f"Rango inválido: {self.start} > {self.end}")

    def __len__(self) -> int:
        return (self.end - self.start).days + 1

    def dates(self) -> List[date]:
        return [self.start + timedelta(days=i) for i in range(len(self))]


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str
    format: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "ColumnSpec":
        name = raw.get("name")
        ctype = str(raw.get("type", "")).lower()
        if not name:
            raise ConfigError(f"Columna sin nombre: {raw}")
        if ctype not in COLUMN_TYPES:
            raise ConfigError(
                f"Tipo '{raw.get('type')}' no soportado en columna '{name}'. "
                f"Válidos: {', '.join(COLUMN_TYPES)}"
            )
        return cls(name=name, type=ctype, format=raw.get("format"))


@dataclass
class Watermark:
    last_slice: Optional[DateRange] = None
    latest_fetched_time: int = 0

    def observe(self, value) -> None:
        if value > self.latest_fetched_time:
            self.latest_fetched_time = value


@dataclass(frozen=True)
class RunReport:
    next_from_date: Optional[date] = None
    latest_fetched_time: Optional[int] = None

    def is_empty(self) -> bool:
        return self.next_from_date is None

    def to_dict(self) -> Dict[str, Any]:
        if self.is_empty():
            return {}
        return {
            "from_date": self.next_from_date.isoformat(),
            "latest_fetched_time": self.latest_fetched_time,
        }


@dataclass
class RunContext:
    """Per-run state passed to every component instead of module globals."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    preview: bool = False
    today: Optional[date] = None

    def log(self, level: str, **fields) -> None:
        from .utils import log_event

        log_event(level, self.run_id, **fields)


@dataclass
class Task:
    mode: str
    credentials: Credentials
    timezone: str
    columns: List[ColumnSpec]
    dates: Optional[DateRange]
    from_date: date
    fetch_days: Optional[int] = None
    incremental: bool = True
    incremental_column: Optional[str] = None
    latest_fetched_time: int = 0
    slice_range: int = 7
    retry_initial_wait_sec: float = 1
    retry_limit: int = 5
    timeout_seconds: int = 3600
    export_endpoint: Optional[str] = None
    event: Optional[List[str]] = None
    where: Optional[str] = None
    bucket: Optional[str] = None
    fetch_custom_properties: bool = False
    jql_script: Optional[str] = None
    jql_endpoint: Optional[str] = None

    @property
    def column_names(self) -> List[str]:
        names = [c.name for c in self.columns]
        if self.fetch_custom_properties:
            names.append("custom_properties")
        return names


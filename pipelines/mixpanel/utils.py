from __future__ import annotations

import json
import os
import re
import warnings
from datetime import date, datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd

from .errors import ConfigError
from .models import DateRange

DEFAULT_FETCH_DAYS = 7
DEFAULT_SLICE_RANGE = 7
_EPOCH = datetime(1970, 1, 1)
_RELATIVE_RE = re.compile(r"^\s*(\d+)\s+days?\s+ago\s*$")


def now_utc():
    return datetime.now(timezone.utc)


def log_event(level: str, run_id: str, **fields):
    rec = {"ts": now_utc().isoformat().replace("+00:00", "Z"), "level": level, "run_id": run_id}
    rec.update(fields)
    print(json.dumps(rec, default=str))


def validate_timezone(name: str) -> ZoneInfo:
    if not name:
        raise ConfigError("timezone vacío")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"'{name}' is invalid timezone") from e


def today_in(tz_name: str) -> date:
    return now_utc().astimezone(validate_timezone(tz_name)).date()


def parse_date(value, field: str = "from_date", today: Optional[date] = None) -> date:
    """Accepts a date, 'YYYY-MM-DD' or a relative 'N days ago'."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    m = _RELATIVE_RE.match(text)
    if m:
        return (today or date.today()) - timedelta(days=int(m.group(1)))
    try:
        return date.fromisoformat(text.strip())
    except ValueError as e:
        raise ConfigError(f"{field} '{value}' no es una fecha válida (YYYY-MM-DD)") from e


def clamp_range(rng: DateRange, today: date) -> Tuple[Optional[DateRange], List[date]]:
    """Cuts ``rng`` at yesterday. Returns (clamped range or None, dropped dates)."""
    yesterday = today - timedelta(days=1)
    if rng.end <= yesterday:
        return rng, []
    dropped = [d for d in rng.dates() if d > yesterday]
    if rng.start > yesterday:
        return None, dropped
    return DateRange(rng.start, yesterday), dropped


def _warn_dropped(dropped: List[date], log=None):
    if not dropped:
        return
    msg = (
        f"Fechas sin datos todavía (>= hoy), se ignoran: "
        f"{dropped[0].isoformat()}..{dropped[-1].isoformat()} ({len(dropped)} días)"
    )
    warnings.warn(msg)
    if log is not None:
        log("warning", action="dates_dropped", first=dropped[0], last=dropped[-1], days=len(dropped))


def plan_slices(
    rng: Optional[DateRange], slice_size: int, today: Optional[date] = None, log=None
) -> List[DateRange]:
    if int(slice_size) < 1:
        raise ConfigError(f"slice_range debe ser >= 1 (recibido {slice_size})")
    if rng is None:
        return []
    clamped, dropped = clamp_range(rng, today or date.today())
    _warn_dropped(dropped, log)
    if clamped is None:
        return []
    slices = []
    start = clamped.start
    while start <= clamped.end:
        end = min(start + timedelta(days=int(slice_size) - 1), clamped.end)
        slices.append(DateRange(start, end))
        start = end + timedelta(days=1)
    return slices


def next_start(last_slice: DateRange) -> date:
    return last_slice.end + timedelta(days=1)


def generate_range(
    from_date: date, fetch_days: Optional[int], today: date, log=None
) -> Optional[DateRange]:
    """Requested window [from_date, from_date + fetch_days - 1], up to yesterday."""
    yesterday = today - timedelta(days=1)
    if fetch_days is None:
        end = max(from_date, yesterday)
    else:
        end = from_date + timedelta(days=int(fetch_days) - 1)
    clamped, dropped = clamp_range(DateRange(from_date, end), today)
    _warn_dropped(dropped, log)
    return clamped


def default_guess_start_date(today: date) -> date:
    return today - timedelta(days=2)


def _offset_seconds(zone: ZoneInfo, local: datetime) -> int:
    return int(zone.utcoffset(local).total_seconds())


def _exists_locally(zone: ZoneInfo, local: datetime) -> bool:
    aware = local.replace(tzinfo=zone)
    back = aware.astimezone(timezone.utc).astimezone(zone).replace(tzinfo=None)
    return back == local


def to_utc(local_epoch, zone_name: str):
    """Convert an epoch expressed in ``zone_name`` wall-clock time to UTC.

    Mixpanel stores event times shifted to the project timezone. The offset
    in effect at that wall-clock instant is subtracted. Ambiguous instants
    (clocks moved back) resolve to the DST side. Instants that do not exist
    locally (clocks moved forward) are moved one hour ahead and then take the
    offset in effect at that later instant.
    """
    zone = validate_timezone(zone_name)
    local = _EPOCH + timedelta(seconds=local_epoch)
    if not _exists_locally(zone, local):
        local_epoch = local_epoch + 3600
        local = local + timedelta(hours=1)
    return local_epoch - _offset_seconds(zone, local)


class DataFrameSink:
    """Row sink: collects positional rows and materializes a DataFrame on finish."""

    def __init__(self, columns: List[str], json_columns: Optional[List[str]] = None):
        self.columns = list(columns)
        self.json_columns = set(json_columns or [])
        self.rows: List[list] = []
        self.finished = False

    def add(self, values: List[Any]) -> None:
        if self.finished:
            raise RuntimeError("sink ya cerrado")
        self.rows.append(list(values))

    def finish(self) -> pd.DataFrame:
        self.finished = True
        df = pd.DataFrame(self.rows, columns=self.columns)
        for col in self.json_columns:
            if col in df.columns:
                df[col] = df[col].map(
                    lambda v: None if v is None else json.dumps(v, ensure_ascii=False)
                )
        return df


def _ensure_local_dir(path: str):
    d = os.path.dirname(path)
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


def write_rows(
    df: pd.DataFrame,
    path_tpl: str,
    dataset: str,
    run_ts: datetime,
    root: str,
) -> str:
    if df is None:
        return ""
    iso_run = run_ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    path = path_tpl.format(
        root=root,
        dataset=dataset,
        year=run_ts.year,
        month=f"{run_ts.month:02d}",
        day=f"{run_ts.day:02d}",
        iso_run=iso_run.replace(":", "-"),
    )
    _ensure_local_dir(path)
    if path.endswith(".parquet"):
        df.to_parquet(path, index=False)
    else:
        df.to_csv(path, index=False, encoding="utf-8")
    return path

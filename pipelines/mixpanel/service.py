"""Ingestion services for the two Mixpanel API shapes.

    task = create_task(ds_cfg, defaults, state)
    run = service_for(task, ctx).ingest()
    for row in run:
        sink.add(row)
    run.report.to_dict()  # -> diff for the next run

Slices are processed one after the other; the report only exists once every
row of the run has been consumed.
"""

from __future__ import annotations

import json
import warnings
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .hooks import (as_number, validate_incremental_column,
                    validate_jql_script, validate_positive, validate_result)
from .mixpanel_client import MixpanelClient
from .models import (ColumnSpec, Credentials, DateRange, RunContext, RunReport,
                     Task, Watermark)
from .normalize import (DEFAULT_TIME_COLUMN, build_extractors,
                        custom_properties, extract_row, guess_columns)
from .utils import (DEFAULT_FETCH_DAYS, DEFAULT_SLICE_RANGE,
                    default_guess_start_date, generate_range, next_start,
                    parse_date, plan_slices, today_in, validate_timezone)

MODES = ("export", "jql")


def create_task(
    ds_cfg: dict,
    defaults: Optional[dict] = None,
    state: Optional[dict] = None,
    today: Optional[date] = None,
    log=None,
) -> Task:
    """Merge defaults <- dataset <- persisted state and validate everything."""
    cfg = {**(defaults or {}), **(ds_cfg or {}), **(state or {})}

    mode = str(cfg.get("mode", "export")).lower()
    if mode not in MODES:
        raise ConfigError(f"mode '{mode}' no soportado. Válidos: {', '.join(MODES)}")

    tz = cfg.get("timezone") or "UTC"
    validate_timezone(tz)
    today = today or today_in(tz)

    columns = [ColumnSpec.from_dict(c) for c in cfg.get("columns") or []]
    if not columns:
        raise ConfigError("columns vacío: declara al menos una columna")

    fetch_days = validate_positive("fetch_days", cfg.get("fetch_days"))
    slice_range = as_number("slice_range", cfg.get("slice_range", DEFAULT_SLICE_RANGE))
    if slice_range < 1:
        raise ConfigError(f"slice_range debe ser >= 1 (recibido {slice_range})")
    retry_limit = as_number("retry_limit", cfg.get("retry_limit", 5))
    if retry_limit < 1:
        raise ConfigError(f"retry_limit debe ser >= 1 (recibido {retry_limit})")

    jql_script = cfg.get("jql_script")
    if mode == "jql":
        validate_jql_script(jql_script)

    fetch_custom = bool(cfg.get("fetch_custom_properties", False))
    if cfg.get("fetch_unknown_columns"):
        warnings.warn("Deprecated `fetch_unknown_columns`. Use `fetch_custom_properties` instead.")
        fetch_custom = True

    from_date = parse_date(
        cfg.get("from_date") or default_guess_start_date(today), "from_date", today
    )
    dates = generate_range(from_date, fetch_days, today, log)

    event = cfg.get("event")
    if isinstance(event, str):
        event = [event]

    return Task(
        mode=mode,
        credentials=Credentials.from_cfg(cfg),
        timezone=tz,
        columns=columns,
        dates=dates,
        from_date=from_date,
        fetch_days=fetch_days,
        incremental=bool(cfg.get("incremental", True)),
        incremental_column=cfg.get("incremental_column"),
        latest_fetched_time=as_number(
            "latest_fetched_time", cfg.get("latest_fetched_time") or 0
        ),
        slice_range=slice_range,
        retry_initial_wait_sec=as_number(
            "retry_initial_wait_sec", cfg.get("retry_initial_wait_sec", 1), float
        ),
        retry_limit=retry_limit,
        timeout_seconds=as_number("timeout_seconds", cfg.get("timeout_seconds", 3600)),
        export_endpoint=cfg.get("export_endpoint"),
        event=event,
        where=cfg.get("where"),
        bucket=cfg.get("bucket"),
        fetch_custom_properties=fetch_custom and mode == "export",
        jql_script=jql_script,
        jql_endpoint=cfg.get("jql_endpoint"),
    )


class IngestionRun:
    """Lazy, single-pass row iterator. ``report`` is available once exhausted."""

    def __init__(self, service: "BaseService"):
        self.skipped = 0
        self.rows = 0
        self.slices = 0
        self._report: Optional[RunReport] = None
        self._it = service._iter_rows(self)

    def __iter__(self):
        return self

    def __next__(self) -> List[Any]:
        return next(self._it)

    @property
    def report(self) -> RunReport:
        if self._report is None:
            raise RuntimeError("Run sin terminar: consume todas las filas antes de pedir el report")
        return self._report


class BaseService:
    nested = True
    divisor = None

    def __init__(self, task: Task, ctx: Optional[RunContext] = None, client=None):
        self.task = task
        self.ctx = ctx or RunContext()
        self.client = client
        self.today = self.ctx.today or today_in(task.timezone)
        self.incremental_column = task.incremental_column
        if task.incremental and not self.incremental_column:
            self.ctx.log(
                "warning",
                action="incremental_column_default",
                message="incremental_column should be specified when running in "
                "incremental mode to avoid duplicated",
                default=DEFAULT_TIME_COLUMN,
            )
            self.incremental_column = DEFAULT_TIME_COLUMN

    def create_client(self) -> MixpanelClient:
        creds = self.task.credentials
        return MixpanelClient(
            creds.api_key,
            creds.api_secret,
            retry_initial_wait_sec=self.task.retry_initial_wait_sec,
            retry_limit=self.task.retry_limit,
            timeout_seconds=self.task.timeout_seconds,
            today=self.today,
            log=self.ctx.log,
        )

    def _client(self):
        if self.client is None:
            self.client = self.create_client()
        return self.client

    def fetch_slice(self, client, sl: DateRange) -> List[Any]:
        raise NotImplementedError

    def fetch_sample(self, client) -> List[Any]:
        raise NotImplementedError

    def incremental_value(self, record: dict):
        return record.get(self.incremental_column)

    def extractors(self) -> list:
        return build_extractors(
            self.task.columns,
            self.task.timezone,
            nested=self.nested,
            incremental_column=self.incremental_column if self.task.incremental else None,
            divisor=self.divisor,
        )

    def ingest(self) -> IngestionRun:
        return IngestionRun(self)

    def _iter_rows(self, run: IngestionRun):
        task = self.task
        client = self._client()
        slices = plan_slices(task.dates, task.slice_range, self.today, self.ctx.log)
        extractors = self.extractors()
        known = [c.name for c in task.columns]
        baseline = task.latest_fetched_time
        watermark = Watermark(latest_fetched_time=baseline)

        for sl in slices:
            self.ctx.log("info", action="fetch_slice", from_date=sl.start, to_date=sl.end)
            records = validate_result(self.fetch_slice(client, sl))
            if task.incremental:
                validate_incremental_column(records, self.incremental_column, self.nested)
            for record in records:
                if task.incremental:
                    value = self.incremental_value(record)
                    if value is not None:
                        if value <= baseline:
                            run.skipped += 1
                            continue
                        watermark.observe(value)
                row = extract_row(record, extractors, task.columns)
                if task.fetch_custom_properties:
                    row.append(custom_properties(record, known))
                run.rows += 1
                yield row
            watermark.last_slice = sl
            run.slices += 1
            if self.ctx.preview:
                break

        self.ctx.log("info", action="ingest_done", rows=run.rows, skipped=run.skipped, slices=run.slices)
        if task.incremental and not self.ctx.preview:
            next_from = (
                next_start(watermark.last_slice) if watermark.last_slice else task.from_date
            )
            run._report = RunReport(next_from, watermark.latest_fetched_time)
        else:
            run._report = RunReport()

    def guess_columns(self) -> List[dict]:
        records = validate_result(self.fetch_sample(self._client()))
        if self.task.incremental:
            validate_incremental_column(records, self.incremental_column, self.nested)
        columns = guess_columns(records, self.nested)
        self.ctx.log("info", action="guess_done", columns=len(columns), sample=len(records))
        return columns


class ExportService(BaseService):
    nested = True
    # time viene en segundos; las columnas incrementales suelen ir en ms
    divisor = None

    def _params(self, start: date, end: Optional[date] = None) -> Dict[str, Any]:
        params = {"from_date": start.isoformat()}
        if end is not None:
            params["to_date"] = end.isoformat()
        for key in ("event", "where", "bucket"):
            value = getattr(self.task, key)
            if value:
                params[key] = value
        return params

    def fetch_slice(self, client, sl: DateRange) -> List[Any]:
        if self.ctx.preview:
            return client.export_sample(self._params(sl.start, sl.end), self.task.export_endpoint)
        return client.export(self._params(sl.start, sl.end), self.task.export_endpoint)

    def fetch_sample(self, client) -> List[Any]:
        rng, records = client.export_small_dataset(
            self._params(self.task.from_date), self.task.export_endpoint
        )
        self.ctx.log("info", action="guess_range", from_date=rng.start, to_date=rng.end)
        return records

    def incremental_value(self, record: dict):
        return (record.get("properties") or {}).get(self.incremental_column)


class JqlService(BaseService):
    nested = False
    divisor = 1000

    def _params(self, sl: DateRange) -> Dict[str, Any]:
        return {
            "params": json.dumps(
                {"from_date": sl.start.isoformat(), "to_date": sl.end.isoformat()}
            ),
            "script": self.task.jql_script,
        }

    def fetch_slice(self, client, sl: DateRange) -> List[Any]:
        if self.ctx.preview:
            return client.send_jql_script_small_dataset(self._params(sl), self.task.jql_endpoint)
        return client.send_jql_script(self._params(sl), self.task.jql_endpoint)

    def guess_range(self) -> DateRange:
        fetch_days = min(self.task.fetch_days or DEFAULT_FETCH_DAYS, DEFAULT_FETCH_DAYS)
        rng = generate_range(self.task.from_date, fetch_days, self.today, self.ctx.log)
        if rng is None:
            start = default_guess_start_date(self.today)
            return DateRange(start, self.today - timedelta(days=1))
        return rng

    def fetch_sample(self, client) -> List[Any]:
        rng = self.guess_range()
        self.ctx.log("info", action="guess_range", from_date=rng.start, to_date=rng.end)
        return client.send_jql_script_small_dataset(self._params(rng), self.task.jql_endpoint)


def service_for(task: Task, ctx: Optional[RunContext] = None, client=None) -> BaseService:
    if task.mode == "jql":
        return JqlService(task, ctx, client)
    return ExportService(task, ctx, client)

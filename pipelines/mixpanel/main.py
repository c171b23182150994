from __future__ import annotations

import argparse
import os
from datetime import datetime, timezone
from typing import Optional

import yaml

from .errors import IngestError
from .models import RunContext
from .service import create_task, service_for
from .utils import DataFrameSink, log_event, now_utc, write_rows

DEFAULT_CFG = "config/mixpanel.yaml"
DEFAULT_STATE_DIR = "state"


def load_cfg(path=DEFAULT_CFG):
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def state_path(state_dir: str, dataset: str) -> str:
    return os.path.join(state_dir, f"{dataset}.yaml")


def load_state(state_dir: str, dataset: str) -> dict:
    path = state_path(state_dir, dataset)
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def save_state(state_dir: str, dataset: str, report: dict) -> str:
    """Merges the run report into the persisted state. Empty report -> no-op."""
    if not report:
        return ""
    path = state_path(state_dir, dataset)
    os.makedirs(state_dir, exist_ok=True)
    state = load_state(state_dir, dataset)
    state.update(report)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(state, f, sort_keys=True, allow_unicode=True)
    return path


def get_dataset(cfg: dict, name: str) -> dict:
    ds = cfg.get("datasets", {}).get(name)
    if not ds or not ds.get("enabled", True):
        available = ", ".join(
            sorted(k for k, v in cfg.get("datasets", {}).items() if v.get("enabled", True))
        )
        raise SystemExit(
            f"Dataset '{name}' no existe o está deshabilitado. Disponibles: {available}"
        )
    return ds


def run_dataset(
    cfg: dict,
    dataset: str,
    ctx: RunContext,
    state_dir: str = DEFAULT_STATE_DIR,
    overrides: Optional[dict] = None,
    client=None,
) -> dict:
    ds = get_dataset(cfg, dataset)
    state = {**load_state(state_dir, dataset), **(overrides or {})}
    task = create_task(ds, cfg.get("defaults", {}), state, today=ctx.today, log=ctx.log)
    ctx.log(
        "info",
        action="run_start",
        dataset=dataset,
        mode=task.mode,
        preview=ctx.preview,
        from_date=task.dates.start if task.dates else None,
        to_date=task.dates.end if task.dates else None,
    )

    service = service_for(task, ctx, client)
    json_cols = [c.name for c in task.columns if c.type == "json"]
    if task.fetch_custom_properties:
        json_cols.append("custom_properties")
    sink = DataFrameSink(task.column_names, json_cols)
    run = service.ingest()
    for row in run:
        sink.add(row)
    df = sink.finish()

    paths = cfg.get("paths_local", {})
    out_path = write_rows(
        df,
        paths.get("rows", "{root}/{dataset}/{year}/{month}/{day}/{iso_run}.csv"),
        dataset=dataset,
        run_ts=now_utc(),
        root=paths.get("root", "./data"),
    )
    report = run.report.to_dict()
    # El estado solo se escribe cuando todo el run (y la salida) terminó
    saved = "" if ctx.preview else save_state(state_dir, dataset, report)
    summary = {
        "dataset": dataset,
        "rows": run.rows,
        "skipped": run.skipped,
        "slices": run.slices,
        "path": out_path,
        "report": report,
        "state_path": saved,
    }
    ctx.log("info", action="run_summary", **summary)
    return summary


def guess_dataset(cfg: dict, dataset: str, ctx: RunContext, client=None) -> list:
    ds = get_dataset(cfg, dataset)
    task = create_task(ds, cfg.get("defaults", {}), today=ctx.today, log=ctx.log)
    return service_for(task, ctx, client).guess_columns()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Ingesta de eventos Mixpanel (export / JQL)")
    parser.add_argument("dataset", help="Nombre del dataset en config/mixpanel.yaml")
    parser.add_argument("--config", default=DEFAULT_CFG, help="Ruta del YAML de configuración")
    parser.add_argument("--state-dir", default=DEFAULT_STATE_DIR, help="Directorio del estado incremental")
    parser.add_argument("--from-date", help="YYYY-MM-DD, sustituye el from_date del estado guardado")
    parser.add_argument("--fetch-days", type=int, help="Número de días a traer desde from_date")
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Solo una muestra pequeña del primer slice; no escribe estado",
    )
    parser.add_argument(
        "--guess",
        action="store_true",
        help="Infiere las columnas a partir de una muestra y las imprime en YAML",
    )
    args = parser.parse_args(argv)

    cfg = load_cfg(args.config)
    ctx = RunContext(preview=args.preview)
    t_start = datetime.now(timezone.utc)
    try:
        if args.guess:
            columns = guess_dataset(cfg, args.dataset, ctx)
            print(yaml.safe_dump({"columns": columns}, sort_keys=False, allow_unicode=True))
            return 0
        overrides = {}
        if args.from_date:
            overrides["from_date"] = args.from_date
        if args.fetch_days is not None:
            overrides["fetch_days"] = args.fetch_days
        run_dataset(cfg, args.dataset, ctx, args.state_dir, overrides)
    except IngestError as e:
        log_event("error", ctx.run_id, action="run_failed", kind=e.kind, error=str(e))
        # 2 -> error de configuración, 1 -> fallo del servicio (reintentable)
        return 2 if e.kind == "config" else 1
    log_event(
        "info",
        ctx.run_id,
        action="run_end",
        duration_seconds=round((datetime.now(timezone.utc) - t_start).total_seconds(), 2),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

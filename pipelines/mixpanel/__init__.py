"""Mixpanel ingest subpackage exposing public API.

Typical usage:
    from pipelines.mixpanel import create_task, service_for

But normally you call CLI:
    python -m pipelines.mixpanel.main <dataset> [--preview | --guess]

Exports:
    load_cfg, create_task, service_for, MixpanelClient, error classes,
    planner/timezone helpers
"""

from .errors import ConfigError, IngestError, ServiceError
from .main import load_cfg, run_dataset
from .mixpanel_client import MixpanelClient, signature
from .models import ColumnSpec, DateRange, RunContext, RunReport
from .service import create_task, service_for
from .utils import next_start, plan_slices, to_utc

__all__ = [
    "load_cfg",
    "run_dataset",
    "create_task",
    "service_for",
    "MixpanelClient",
    "signature",
    "ColumnSpec",
    "DateRange",
    "RunContext",
    "RunReport",
    "ConfigError",
    "IngestError",
    "ServiceError",
    "next_start",
    "plan_slices",
    "to_utc",
]

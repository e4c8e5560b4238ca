"""Orchestration: dispatcher, continuous scheduler and runtime assembly."""

from repowatch.orchestrator.dispatcher import Dispatcher, backoff_delay
from repowatch.orchestrator.metrics import DispatcherStats
from repowatch.orchestrator.runtime import Runtime, open_runtime
from repowatch.orchestrator.scheduler import run_continuous, sweep_stale_monitors

__all__ = [
    "Dispatcher",
    "DispatcherStats",
    "Runtime",
    "backoff_delay",
    "open_runtime",
    "run_continuous",
    "sweep_stale_monitors",
]

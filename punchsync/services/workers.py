from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import asdict, dataclass, is_dataclass
from typing import Any

from punchsync.services.consistency import run_validation
from punchsync.services.folding import run_fold_cycle
from punchsync.services.gaps import run_gap_cycle
from punchsync.services.polling import run_poll_cycle
from punchsync.services.stale_sessions import run_stale_sweep
from punchsync.services.task_state import TASK_FOLD, TASK_GAP_SCAN, TASK_POLL, TASK_STALE_SWEEP, TASK_VALIDATE
from punchsync.services.upstream import BiometricApiClient
from punchsync.settings import Settings, get_settings

logger = logging.getLogger("punchsync.worker")

MIN_INTERVAL_SECONDS = 5


@dataclass(frozen=True, slots=True)
class WorkerSpec:
    name: str
    interval_seconds: int
    run: Callable[[], Any]


def summarize_result(result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if is_dataclass(result) and not isinstance(result, type):
        return {
            key: value
            for key, value in asdict(result).items()
            if value is None or isinstance(value, (bool, int, float, str))
        }
    return {"result": str(result)}


def default_worker_specs(settings: Settings | None = None) -> list[WorkerSpec]:
    active_settings = settings or get_settings()
    # requests.Session is not shared between worker threads.
    poll_client = BiometricApiClient.from_settings()
    backfill_client = BiometricApiClient.from_settings()
    return [
        WorkerSpec(TASK_POLL, active_settings.poll_interval_seconds, lambda: run_poll_cycle(client=poll_client)),
        WorkerSpec(TASK_GAP_SCAN, active_settings.gap_scan_interval_seconds, lambda: run_gap_cycle(client=backfill_client)),
        WorkerSpec(TASK_FOLD, active_settings.fold_interval_seconds, run_fold_cycle),
        WorkerSpec(TASK_STALE_SWEEP, active_settings.stale_sweep_interval_seconds, run_stale_sweep),
        WorkerSpec(TASK_VALIDATE, active_settings.validator_interval_seconds, run_validation),
    ]


async def worker_loop(spec: WorkerSpec, stop_event: asyncio.Event) -> None:
    interval_seconds = max(MIN_INTERVAL_SECONDS, int(spec.interval_seconds))
    while not stop_event.is_set():
        try:
            result = await asyncio.to_thread(spec.run)
        except Exception:
            logger.exception("worker_tick_failed", extra={"task": spec.name})
        else:
            logger.debug("worker_tick", extra={"task": spec.name, "result": summarize_result(result)})

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


class WorkerPool:
    """Independent periodic loops, one per pipeline task.

    ``stop`` lets a running cycle finish within ``grace_seconds`` before the
    loop task is cancelled.
    """

    def __init__(self, specs: list[WorkerSpec], *, grace_seconds: float = 30.0) -> None:
        self.specs = specs
        self.grace_seconds = grace_seconds
        self.stop_event: asyncio.Event | None = None
        self.tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def running(self) -> bool:
        return bool(self.tasks)

    def start(self) -> None:
        if self.tasks:
            return
        self.stop_event = asyncio.Event()
        for spec in self.specs:
            self.tasks[spec.name] = asyncio.create_task(worker_loop(spec, self.stop_event), name=f"punchsync-{spec.name}")
        logger.info(
            "workers_started",
            extra={"tasks": {spec.name: spec.interval_seconds for spec in self.specs}},
        )

    async def stop(self) -> None:
        if self.stop_event is not None:
            self.stop_event.set()
        for name, task in self.tasks.items():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("worker_stop_timeout", extra={"task": name})
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self.tasks = {}
        self.stop_event = None
        logger.info("workers_stopped")

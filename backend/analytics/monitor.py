from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
import asyncio
import logging
import sqlite3
import time

from backend.analytics.experiments import Experiment, ExperimentManager
from backend.analytics.metrics import MetricsRecorder
from backend.analytics.notifications import NotificationQueue, significant_result_key
from backend.app.cache import CacheStore
from backend.app.config import Settings, settings as default_settings
from backend.app.db import session
from backend.app.errors import RankerError

logger = logging.getLogger(__name__)

CACHE_PREFIX = "analytics:"

# key -> (window seconds, ttl seconds)
REALTIME_STATS = ("analytics:realtime_stats", 3600, 300)
DAILY_STATS = ("analytics:daily_stats", 24 * 3600, 3600)
ALGORITHM_COMPARISON = ("analytics:algorithm_comparison", 24 * 3600, 3600)


class ActiveExperimentSet:
    """running experiments as last loaded by the monitor, one per monitor instance"""

    def __init__(self) -> None:
        self._by_id: Dict[str, Experiment] = {}
        self.loaded_at: Optional[int] = None

    def replace(self, experiments: Iterable[Experiment], now: Optional[int] = None) -> None:
        self._by_id = {e.id: e for e in experiments}
        self.loaded_at = int(time.time()) if now is None else now

    def discard(self, experiment_id: str) -> None:
        self._by_id.pop(experiment_id, None)

    def get(self, experiment_id: str) -> Optional[Experiment]:
        return self._by_id.get(experiment_id)

    def ids(self) -> List[str]:
        return sorted(self._by_id)

    def all(self) -> List[Experiment]:
        return [self._by_id[i] for i in self.ids()]

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, experiment_id: object) -> bool:
        return experiment_id in self._by_id


@dataclass
class _Loop:
    name: str
    interval: float
    tick: Callable[[], Awaitable[Any]]
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    last_run: Optional[int] = None
    last_error: Optional[str] = None
    runs: int = 0


class AnalyticsMonitor:
    """
    Background upkeep for the analytics side, three independent loops:

    - reload running experiments (hourly)
    - refresh realtime / daily / per-algorithm aggregates (every 5 min)
    - evaluate finished experiments, queue a notification on a significant result (hourly)

    Blocking sqlite work goes through asyncio.to_thread. A failing tick is
    logged and the loop carries on. stop() waits for in-flight ticks.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        cfg = config or default_settings
        self.db_path = db_path
        self.clock = clock
        self.notifications_enabled = cfg.notifications_enabled
        self.intervals = {
            "experiments_reload": float(cfg.monitor_experiments_reload_seconds),
            "metrics_refresh": float(cfg.monitor_metrics_refresh_seconds),
            "experiment_evaluation": float(cfg.monitor_experiment_evaluation_seconds),
        }
        self.active_experiments = ActiveExperimentSet()
        self._loops: Dict[str, _Loop] = {}
        self._running = False

    def _now(self) -> int:
        return int(self.clock())

    @property
    def is_running(self) -> bool:
        return self._running

    # one tick of each loop, synchronous so tests and scripts can call them directly

    def reload_active_experiments(self) -> int:
        now = self._now()
        with session(self.db_path) as conn:
            tests = ExperimentManager(conn).get_active_tests(now=now)
        self.active_experiments.replace(tests, now=now)
        logger.info("monitor loaded %d active experiments", len(tests))
        return len(tests)

    def refresh_metrics_cache(self) -> Dict[str, int]:
        now = self._now()
        with session(self.db_path) as conn:
            metrics = MetricsRecorder(conn)
            cache = CacheStore()

            key, window, ttl = REALTIME_STATS
            realtime = metrics.get_overall_stats(now - window, now)
            cache.set(key, realtime.to_dict(), ttl)

            key, window, ttl = DAILY_STATS
            daily = metrics.get_overall_stats(now - window, now)
            cache.set(key, daily.to_dict(), ttl)

            key, window, ttl = ALGORITHM_COMPARISON
            comparison = metrics.get_algorithm_comparison(now - window, now)
            cache.set(key, [s.to_dict() for s in comparison], ttl)

        logger.debug(
            "monitor refreshed aggregates: realtime=%d daily=%d algorithms=%d",
            realtime.total_recommendations,
            daily.total_recommendations,
            len(comparison),
        )
        return {
            "realtime_recommendations": realtime.total_recommendations,
            "daily_recommendations": daily.total_recommendations,
            "algorithms": len(comparison),
        }

    def evaluate_experiments(self) -> Dict[str, int]:
        now = self._now()
        evaluated = significant = queued = 0
        with session(self.db_path) as conn:
            manager = ExperimentManager(conn, metrics=MetricsRecorder(conn))
            queue = NotificationQueue(conn)

            for exp in manager.get_evaluable(now=now):
                try:
                    manager.evaluate(exp, now=now)
                except (RankerError, sqlite3.Error, ValueError) as e:
                    logger.error("monitor failed to evaluate experiment %s: %s", exp.id, e)
                    continue
                evaluated += 1
                if exp.status != "active":
                    self.active_experiments.discard(exp.id)

                if not exp.results.get("statistical_significance"):
                    continue
                significant += 1
                if not self.notifications_enabled or not exp.notifications.get("on_significant_result", True):
                    continue

                winner = str(exp.results.get("winner_variant"))
                payload = {
                    "experiment_id": exp.id,
                    "name": exp.name,
                    "primary_metric": exp.primary_metric,
                    "winner_variant": winner,
                    "improvement": exp.results.get("improvement"),
                    "p_value": exp.results.get("p_value"),
                    "recipients": list(exp.notifications.get("recipients") or []),
                    "evaluated_at": now,
                }
                # same experiment + same winner -> same key -> queued once
                if queue.enqueue("experiment_significant_result", payload, significant_result_key(exp.id, winner), now=now):
                    queued += 1

        logger.info("monitor evaluated %d experiments (%d significant, %d notifications)", evaluated, significant, queued)
        return {"evaluated": evaluated, "significant": significant, "notifications": queued}

    # async loops

    async def _run_loop(self, loop: _Loop) -> None:
        while not loop.stop_event.is_set():
            try:
                await loop.tick()
                loop.last_error = None
            except Exception as e:
                logger.exception("monitor %s tick failed", loop.name)
                loop.last_error = str(e)
            loop.runs += 1
            loop.last_run = self._now()
            try:
                await asyncio.wait_for(loop.stop_event.wait(), timeout=loop.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._running:
            return
        ticks = {
            "experiments_reload": lambda: asyncio.to_thread(self.reload_active_experiments),
            "metrics_refresh": lambda: asyncio.to_thread(self.refresh_metrics_cache),
            "experiment_evaluation": lambda: asyncio.to_thread(self.evaluate_experiments),
        }
        self._loops = {}
        for name, tick in ticks.items():
            loop = _Loop(name=name, interval=self.intervals[name], tick=tick)
            loop.task = asyncio.create_task(self._run_loop(loop), name=f"analytics-monitor-{name}")
            self._loops[name] = loop
        self._running = True
        logger.info("analytics monitor started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for loop in self._loops.values():
            loop.stop_event.set()
        # each loop finishes its current tick and then sees the event
        await asyncio.gather(*(lp.task for lp in self._loops.values() if lp.task is not None))
        logger.info("analytics monitor stopped")

    # read side

    def get_cached_stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        cache = CacheStore()
        for key, _, _ in (REALTIME_STATS, DAILY_STATS, ALGORITHM_COMPARISON):
            out[key[len(CACHE_PREFIX):]] = cache.get(key)
        return out

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "active_experiments": self.active_experiments.ids(),
            "active_experiments_loaded_at": self.active_experiments.loaded_at,
            "notifications_enabled": self.notifications_enabled,
            "tasks": {
                name: {
                    "interval_seconds": loop.interval,
                    "runs": loop.runs,
                    "last_run": loop.last_run,
                    "last_error": loop.last_error,
                }
                for name, loop in self._loops.items()
            },
        }

import asyncio

import pytest

from backend.analytics.experiments import ExperimentManager
from backend.analytics.metrics import MetricsRecorder
from backend.analytics.monitor import AnalyticsMonitor
from backend.analytics.notifications import NotificationQueue, significant_result_key
from backend.app.config import Settings

DAY = 24 * 3600


@pytest.fixture
def monitor(seeded, db_path, now):
    return AnalyticsMonitor(db_path=db_path, clock=lambda: now)


def _finished_experiment(conn, now):
    manager = ExperimentManager(conn)
    manager.create(
        {
            "id": "exp-done",
            "name": "hot vs mixed",
            "experiment_type": "algorithm_comparison",
            "primary_metric": "ctr",
            "variants": [
                {"id": "A", "traffic_percentage": 50},
                {"id": "B", "traffic_percentage": 50},
            ],
            "start_ts": now - 10 * DAY,
            "end_ts": now - DAY,
            "notifications": {"recipients": ["ops@example.com"]},
        },
        now=now - 10 * DAY,
    )
    manager.update_status("exp-done", "active")

    recorder = MetricsRecorder(conn)
    for variant, clicks in (("A", 3), ("B", 6)):
        for i in range(10):
            s = recorder.record(
                {
                    "user_id": 1,
                    "item_id": 1,
                    "algorithm": "mixed",
                    "score": 1.0,
                    "rank": i + 1,
                    "experiment_id": "exp-done",
                    "experiment_variant": variant,
                    "recommended_at": now - 2 * DAY,
                }
            )
            if i < clicks:
                recorder.update(s.id, "click", now=now - 2 * DAY)


def test_notification_queue_dedupes(seeded, now):
    queue = NotificationQueue(seeded)
    key = significant_result_key("exp-1", "B")
    assert key == "experiment:exp-1:significant:B"
    assert queue.enqueue("experiment_significant_result", {"x": 1}, key, now=now) is True
    assert queue.enqueue("experiment_significant_result", {"x": 2}, key, now=now) is False

    pending = queue.pending()
    assert len(pending) == 1
    assert pending[0]["payload"] == {"x": 1}

    queue.mark_delivered(pending[0]["id"], now=now)
    assert queue.pending() == []


def test_reload_active_experiments(monitor, seeded, now):
    manager = ExperimentManager(seeded)
    manager.create(
        {
            "id": "running",
            "name": "running",
            "experiment_type": "algorithm_comparison",
            "primary_metric": "ctr",
            "variants": [{"id": "A", "traffic_percentage": 50}, {"id": "B", "traffic_percentage": 50}],
            "start_ts": now - DAY,
            "end_ts": now + DAY,
        }
    )
    manager.update_status("running", "active")

    assert monitor.reload_active_experiments() == 1
    assert "running" in monitor.active_experiments
    assert monitor.active_experiments.loaded_at == now


def test_refresh_metrics_cache(monitor, seeded, now):
    recorder = MetricsRecorder(seeded)
    s = recorder.record({"user_id": 1, "item_id": 1, "algorithm": "hot", "score": 1.0, "rank": 1,
                         "recommended_at": now - 60})
    recorder.update(s.id, "click", now=now - 30)

    summary = monitor.refresh_metrics_cache()
    assert summary["realtime_recommendations"] == 1

    cached = monitor.get_cached_stats()
    assert cached["realtime_stats"]["total_recommendations"] == 1
    assert cached["realtime_stats"]["ctr"] == 1.0
    assert cached["daily_stats"]["total_recommendations"] == 1
    assert cached["algorithm_comparison"][0]["algorithm"] == "hot"


def test_evaluate_experiments_notifies_once(monitor, seeded, now):
    _finished_experiment(seeded, now)

    first = monitor.evaluate_experiments()
    assert first == {"evaluated": 1, "significant": 1, "notifications": 1}

    exp = ExperimentManager(seeded).get("exp-done")
    assert exp.status == "completed"
    assert exp.results["winner_variant"] == "B"

    # re-evaluating the same result does not queue again
    second = monitor.evaluate_experiments()
    assert second["notifications"] == 0

    pending = NotificationQueue(seeded).pending()
    assert len(pending) == 1
    assert pending[0]["dedupe_key"] == "experiment:exp-done:significant:B"
    assert pending[0]["payload"]["recipients"] == ["ops@example.com"]


def test_evaluate_respects_notification_switch(seeded, db_path, now):
    _finished_experiment(seeded, now)
    quiet = AnalyticsMonitor(db_path=db_path, config=Settings(notifications_enabled=False), clock=lambda: now)

    assert quiet.evaluate_experiments()["notifications"] == 0
    assert NotificationQueue(seeded).pending() == []


@pytest.mark.asyncio
async def test_start_and_stop(monitor):
    monitor.start()
    monitor.start()  # second start is a no-op
    assert monitor.is_running
    await asyncio.sleep(0.2)

    await monitor.stop()
    assert not monitor.is_running

    status = monitor.status()
    assert set(status["tasks"]) == {"experiments_reload", "metrics_refresh", "experiment_evaluation"}
    for task in status["tasks"].values():
        assert task["runs"] >= 1
        assert task["last_error"] is None


@pytest.mark.asyncio
async def test_failing_tick_keeps_loop_alive(monitor, monkeypatch):
    def broken():
        raise RuntimeError("metrics store unavailable")

    monkeypatch.setattr(monitor, "refresh_metrics_cache", broken)
    monitor.intervals["metrics_refresh"] = 0.01

    monitor.start()
    await asyncio.sleep(0.2)
    await monitor.stop()

    task = monitor.status()["tasks"]["metrics_refresh"]
    assert task["runs"] > 1
    assert "unavailable" in task["last_error"]


@pytest.mark.asyncio
async def test_stop_without_start(monitor):
    await monitor.stop()
    assert monitor.status()["running"] is False

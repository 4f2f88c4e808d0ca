import pytest

from backend.analytics.metrics import MetricsRecorder, derive_metrics
from backend.app.errors import NotFoundError, ValidationError


@pytest.fixture
def recorder(seeded):
    return MetricsRecorder(seeded)


def _impression(**overrides):
    data = {"user_id": 1, "item_id": 1, "algorithm": "mixed", "score": 0.8, "rank": 1}
    data.update(overrides)
    return data


def test_derive_metrics():
    assert derive_metrics({}, None) == (0.0, 0.0, None)
    assert derive_metrics({"is_clicked": True}, None) == (1.0, 0.0, None)
    assert derive_metrics({"is_liked": True, "is_shared": True}, None) == (0.0, 0.5, 0.5)
    assert derive_metrics({"is_liked": True}, 4.0)[2] == pytest.approx(0.8)
    # a dislike alone floors at zero
    assert derive_metrics({"is_disliked": True}, None)[2] == 0.0


def test_record_defaults_and_features(recorder, now):
    snap = recorder.record(_impression(recommended_at=now))
    assert snap.id
    assert snap.ctr == 0.0
    assert snap.engagement_rate == 0.0
    assert snap.satisfaction_score is None
    assert snap.context == {"page": "home", "position": 1, "session": None}
    assert snap.item_features["tags"] == ["travel", "food"]
    assert snap.user_features["is_new_user"] is False
    assert snap.recommended_at == now


def test_record_is_idempotent_by_id(recorder, seeded):
    a = recorder.record(_impression(id="imp-1"))
    b = recorder.record(_impression(id="imp-1", score=0.1))
    assert a == b
    count = seeded.execute("SELECT COUNT(*) AS c FROM impressions").fetchone()["c"]
    assert count == 1


@pytest.mark.parametrize(
    "overrides",
    [{"rank": 0}, {"user_id": 0}, {"algorithm": ""}, {"score": "high"}],
)
def test_record_rejects_invalid(recorder, overrides):
    with pytest.raises(ValidationError) as exc:
        recorder.record(_impression(**overrides))
    assert exc.value.status_code == 400
    assert isinstance(exc.value.details, list)


def test_repeated_like_counts_once(recorder, now):
    snap = recorder.record(_impression(recommended_at=now))
    recorder.update(snap.id, "like", now=now + 5)
    after = recorder.update(snap.id, "like", now=now + 50)
    assert after.is_liked is True
    assert after.engagement_rate == pytest.approx(0.25)
    # first interaction wins
    assert after.time_to_interact == 5


def test_two_engagements(recorder, now):
    snap = recorder.record(_impression(recommended_at=now))
    recorder.update(snap.id, "like", now=now)
    after = recorder.update(snap.id, "share", now=now)
    assert after.engagement_rate == pytest.approx(0.5)
    assert after.satisfaction_score == pytest.approx(0.5)


def test_rating_sets_satisfaction(recorder, now):
    snap = recorder.record(_impression(recommended_at=now))
    after = recorder.update(snap.id, "rate", {"user_rating": 4}, now=now + 10)
    assert after.user_rating == 4.0
    assert after.satisfaction_score == pytest.approx(0.8)


def test_out_of_range_rating_is_ignored(recorder, now):
    snap = recorder.record(_impression(recommended_at=now))
    after = recorder.update(snap.id, "rate", {"user_rating": 9}, now=now + 10)
    assert after.user_rating is None
    assert after.satisfaction_score is None
    assert after.interacted_at == now + 10


def test_click_and_view(recorder, now):
    snap = recorder.record(_impression(recommended_at=now))
    recorder.update(snap.id, "click", now=now)
    after = recorder.update(snap.id, "view", {"view_duration": 12.5}, now=now)
    assert after.ctr == 1.0
    assert after.view_duration == 12.5
    assert after.satisfaction_score is None


def test_update_errors(recorder):
    snap = recorder.record(_impression())
    with pytest.raises(ValidationError):
        recorder.update(snap.id, "poke")
    with pytest.raises(NotFoundError):
        recorder.update("missing", "like")


def test_algorithm_stats_and_comparison(recorder, now):
    for i in range(4):
        s = recorder.record(_impression(algorithm="hot", rank=i + 1, recommended_at=now))
        if i == 0:
            recorder.update(s.id, "click", now=now)
    for i in range(2):
        s = recorder.record(_impression(algorithm="mixed", rank=i + 1, recommended_at=now))
        recorder.update(s.id, "click", now=now)
        recorder.update(s.id, "like", now=now)

    hot = recorder.get_algorithm_stats("hot", now - 10, now + 10)
    assert hot.total_recommendations == 4
    assert hot.ctr == pytest.approx(0.25)

    comparison = recorder.get_algorithm_comparison(now - 10, now + 10)
    assert [s.algorithm for s in comparison] == ["mixed", "hot"]
    assert comparison[0].engagement_rate == pytest.approx(0.25)

    overall = recorder.get_overall_stats(now - 10, now + 10)
    assert overall.total_recommendations == 6
    assert overall.total_clicks == 3

    # outside the window
    assert recorder.get_algorithm_stats("hot", now + 100, now + 200).total_recommendations == 0


def test_experiment_results_group_by_variant(recorder, now):
    for variant, clicks in (("A", 1), ("B", 2)):
        for i in range(4):
            s = recorder.record(
                _impression(experiment_id="exp-1", experiment_variant=variant, rank=i + 1, recommended_at=now)
            )
            if i < clicks:
                recorder.update(s.id, "click", now=now)

    results = recorder.get_experiment_results("exp-1")
    assert [r.variant for r in results] == ["A", "B"]
    assert results[0].ctr == pytest.approx(0.25)
    assert results[1].ctr == pytest.approx(0.5)
    assert results[1].metric("ctr") == pytest.approx(0.5)
    assert results[1].metric("retention_rate") is None


def test_daily_and_user_effectiveness(recorder, now):
    s = recorder.record(_impression(recommended_at=now))
    recorder.update(s.id, "click", now=now)
    recorder.record(_impression(algorithm="hot", recommended_at=now))

    daily = recorder.get_daily_stats(now - 10, now + 10)
    assert len(daily) == 1
    assert daily[0]["total_recommendations"] == 2

    eff = recorder.get_user_effectiveness(1, now - 10, now + 10)
    assert eff["total_recommendations"] == 2
    assert eff["best_algorithm"] == "mixed"
    assert recorder.get_user_effectiveness(7)["total_recommendations"] == 0

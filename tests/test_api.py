import time

from backend.analytics.monitor import AnalyticsMonitor

DAY = 24 * 3600


def _experiment_payload(**overrides):
    now = int(time.time())
    data = {
        "id": "exp-api",
        "name": "hot only vs default blend",
        "experiment_type": "algorithm_comparison",
        "primary_metric": "ctr",
        "variants": [
            {"id": "A", "traffic_percentage": 0},
            {
                "id": "B",
                "traffic_percentage": 100,
                "configuration": {
                    "weights": {"hot": 1.0, "recency": 0.0, "content": 0.0, "collaborative": 0.0,
                                "social_collaborative": 0.0}
                },
            },
        ],
        "start_ts": now - DAY,
        "end_ts": now + 7 * DAY,
    }
    data.update(overrides)
    return data


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert client.get("/").status_code == 200


def test_recommendations_record_impressions(client):
    r = client.get("/recommendations", params={"user_id": 1, "limit": 3})
    assert r.status_code == 200
    body = r.json()
    assert len(body["items"]) == 3
    assert body["pagination"]["page"] == 1
    assert body["cold_start"]["is_cold_start"] is False
    assert body["experiment"] == {"experiment_id": None, "variant": None}
    assert all(it["impression_id"] for it in body["items"])

    imp = client.get(f"/analytics/impressions/{body['items'][0]['impression_id']}").json()
    assert imp["algorithm"] == "mixed"
    assert imp["rank"] == 1
    assert imp["item_id"] == body["items"][0]["id"]


def test_recommendations_second_page_ranks_continue(client):
    r = client.get("/recommendations", params={"user_id": 1, "limit": 3, "page": 2})
    body = r.json()
    imp = client.get(f"/analytics/impressions/{body['items'][0]['impression_id']}").json()
    assert imp["rank"] == 4


def test_recommendations_without_impressions(client):
    r = client.get("/recommendations", params={"user_id": 7, "limit": 2, "record_impressions": False})
    body = r.json()
    assert body["cold_start"]["is_cold_start"] is True
    assert all("impression_id" not in it for it in body["items"])


def test_recommendations_validation(client):
    assert client.get("/recommendations", params={"user_id": 0}).status_code == 422
    assert client.get("/recommendations", params={"user_id": 1, "limit": 500}).status_code == 422
    r = client.get("/recommendations", params={"user_id": 1, "exclude_ids": "a,b"})
    assert r.status_code == 400


def test_recommendations_exclude_and_diversity(client):
    r = client.get(
        "/recommendations",
        params={"user_id": 1, "exclude_ids": "1,2", "include_diversity": True, "include_social_scores": True},
    )
    body = r.json()
    ids = [it["id"] for it in body["items"]]
    assert 1 not in ids and 2 not in ids
    assert "diversity" in body
    assert body["filters"]["exclude_ids"] == [1, 2]


def test_recommendations_follow_experiment_variant(client):
    assert client.post("/analytics/experiments", json=_experiment_payload()).status_code == 201
    assert client.put("/analytics/experiments/exp-api/status", json={"status": "active"}).status_code == 200

    body = client.get("/recommendations", params={"user_id": 1, "limit": 3}).json()
    assert body["experiment"] == {"experiment_id": "exp-api", "variant": "B"}
    assert body["weights"]["hot"] == 1.0
    assert [it["id"] for it in body["items"]] == [1, 2, 3]

    imp = client.get(f"/analytics/impressions/{body['items'][0]['impression_id']}").json()
    assert imp["experiment_id"] == "exp-api"
    assert imp["experiment_variant"] == "B"


def test_clear_recommendation_cache(client):
    client.get("/recommendations", params={"user_id": 1})
    r = client.delete("/recommendations/cache", params={"user_id": 1})
    assert r.status_code == 200
    assert r.json()["removed"] > 0


def test_engine_endpoints(client):
    social = client.get("/recommendations/social-collaborative", params={"user_id": 1, "limit": 2}).json()
    assert len(social["items"]) == 2
    assert social["pagination"]["hasMore"] is True
    assert social["degraded"] is False

    collab = client.get("/recommendations/collaborative", params={"user_id": 1}).json()
    assert {it["item_id"] for it in collab["items"]} == {4, 5, 8}

    content = client.get("/recommendations/content-based", params={"user_id": 1}).json()
    assert [it["item_id"] for it in content["items"]] == [8]

    tagged = client.get("/recommendations/tag-based", params={"tags": "gaming", "include_hot_score": False}).json()
    assert [it["item_id"] for it in tagged["items"]] == [9, 5]
    assert tagged["filters"]["tags"] == ["gaming"]


def test_social_endpoints(client):
    d = client.get("/social/distance", params={"user_id": 1, "target_user_id": 4}).json()
    assert d["distance"] == 2
    assert d["type"] == "second_degree"

    far = client.get("/social/distance", params={"user_id": 1, "target_user_id": 7}).json()
    assert far["distance"] is None
    assert far["type"] == "unknown"

    stats = client.get("/social/stats", params={"user_id": 1}).json()
    assert stats["followers_count"] == 2
    assert stats["from_cache"] is False

    summary = client.post("/social/cache/refresh", json={"user_ids": [1, 2]}).json()
    assert summary["total_users"] == 2

    cached = client.get("/social/stats", params={"user_id": 1, "use_cache": True}).json()
    assert cached["from_cache"] is True
    assert cached["followers_count"] == 2


def test_impression_lifecycle(client):
    r = client.post("/analytics/impressions", json={"user_id": 1, "item_id": 2, "algorithm": "hot", "score": 800, "rank": 1})
    assert r.status_code == 201
    imp_id = r.json()["id"]

    r = client.put(f"/analytics/impressions/{imp_id}/interaction", json={"interaction_type": "like"})
    assert r.status_code == 200
    assert r.json()["engagement_rate"] == 0.25

    r = client.put(f"/analytics/impressions/{imp_id}/interaction", json={"interaction_type": "rate", "user_rating": 5})
    assert r.json()["satisfaction_score"] == 1.0

    r = client.put(f"/analytics/impressions/{imp_id}/interaction", json={"interaction_type": "poke"})
    assert r.status_code == 400
    assert "poke" in r.json()["detail"]

    r = client.put("/analytics/impressions/missing/interaction", json={"interaction_type": "like"})
    assert r.status_code == 404


def test_invalid_impression_is_400(client):
    r = client.post("/analytics/impressions", json={"user_id": 1})
    assert r.status_code == 400
    assert r.json()["errors"]


def test_analytics_reads(client):
    client.get("/recommendations", params={"user_id": 1, "limit": 2})

    stats = client.get("/analytics/algorithm-stats").json()
    assert stats["algorithm"] is None
    assert stats["stats"][0]["algorithm"] == "mixed"

    one = client.get("/analytics/algorithm-stats", params={"algorithm": "mixed"}).json()
    assert one["stats"]["total_recommendations"] == 2

    assert client.get("/analytics/algorithm-stats", params={"start_ts": 10, "end_ts": 5}).status_code == 400

    eff = client.get("/analytics/user-effectiveness", params={"user_id": 1}).json()
    assert eff["total_recommendations"] == 2

    dash = client.get("/analytics/dashboard").json()
    assert dash["overall_stats"]["total_recommendations"] == 2
    assert dash["active_experiments"] == []

    mon = client.get("/analytics/monitor").json()
    assert mon["running"] is False
    assert mon["enabled"] is False


def test_experiment_endpoints(client):
    r = client.post("/analytics/experiments", json=_experiment_payload())
    assert r.status_code == 201
    assert r.json()["status"] == "draft"

    assert client.post("/analytics/experiments", json=_experiment_payload()).status_code == 409
    bad = _experiment_payload(id="bad", variants=[{"id": "A", "traffic_percentage": 100}])
    assert client.post("/analytics/experiments", json=bad).status_code == 400

    listing = client.get("/analytics/experiments").json()
    assert listing["pagination"]["total"] == 1
    assert listing["items"][0]["id"] == "exp-api"

    assert client.get("/analytics/experiments/nope").status_code == 404
    assert client.put("/analytics/experiments/exp-api/status", json={"status": "active"}).json()["status"] == "active"
    assert client.put("/analytics/experiments/exp-api/status", json={"status": "draft"}).status_code == 400

    results = client.get("/analytics/experiments/exp-api/results").json()
    assert results["primary_metric"] == "ctr"
    assert results["results"]["winner_variant"] == "none"
    assert results["variants"] == []


def test_malformed_variant_weights_rejected(client):
    payload = _experiment_payload(id="exp-bad")
    payload["variants"][1]["configuration"] = {"weights": {"hot": "lots"}}
    r = client.post("/analytics/experiments", json=payload)
    assert r.status_code == 400
    assert r.json()["errors"]


def test_stored_bad_weights_never_break_serving(client, seeded):
    assert client.post("/analytics/experiments", json=_experiment_payload()).status_code == 201
    broken = '[{"id": "A", "traffic_percentage": 0, "configuration": {"weights": "lots"}},' \
             ' {"id": "B", "traffic_percentage": 100, "configuration": {"weights": {"hot": "lots"}}}]'
    seeded.execute("UPDATE experiments SET variants_json = ? WHERE id = ?", (broken, "exp-api"))
    seeded.commit()
    assert client.put("/analytics/experiments/exp-api/status", json={"status": "active"}).status_code == 200

    r = client.get("/recommendations", params={"user_id": 1, "limit": 3})
    assert r.status_code == 200
    body = r.json()
    assert body["experiment"] == {"experiment_id": "exp-api", "variant": "B"}
    assert len(body["items"]) == 3


def test_paused_experiment_stops_assigning_with_monitor_loaded(client, db_path):
    monitor = AnalyticsMonitor(db_path=db_path)
    client.app.state.monitor = monitor
    try:
        client.post("/analytics/experiments", json=_experiment_payload())
        client.put("/analytics/experiments/exp-api/status", json={"status": "active"})
        monitor.reload_active_experiments()
        assert "exp-api" in monitor.active_experiments

        r = client.put("/analytics/experiments/exp-api/status", json={"status": "paused"})
        assert r.json()["status"] == "paused"
        assert "exp-api" not in monitor.active_experiments
        body = client.get("/recommendations", params={"user_id": 1, "limit": 3}).json()
        assert body["experiment"] == {"experiment_id": None, "variant": None}

        client.put("/analytics/experiments/exp-api/status", json={"status": "active"})
        assert "exp-api" in monitor.active_experiments
        body = client.get("/recommendations", params={"user_id": 1, "limit": 3}).json()
        assert body["experiment"]["experiment_id"] == "exp-api"
    finally:
        client.app.state.monitor = None


def test_results_preview_reports_stored_status(client):
    now = int(time.time())
    payload = _experiment_payload(start_ts=now - 10 * DAY, end_ts=now - DAY)
    client.post("/analytics/experiments", json=payload)
    client.put("/analytics/experiments/exp-api/status", json={"status": "active"})

    # auto_stop would complete it, but a preview never does
    results = client.get("/analytics/experiments/exp-api/results").json()
    assert results["status"] == "active"
    assert client.get("/analytics/experiments/exp-api").json()["status"] == "active"

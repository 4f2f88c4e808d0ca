from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import logging
import time

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend.analytics.experiments import ExperimentManager, assign_variant, pick_experiment
from backend.analytics.metrics import MetricsRecorder
from backend.analytics.monitor import AnalyticsMonitor
from backend.app.cache import CacheStore
from backend.app.config import settings
from backend.app.db import connect, init_db, session
from backend.app.errors import InfrastructureError, RankerError
from backend.app.logging_setup import setup_logging
from backend.recommender.baseline import paginate
from backend.recommender.collaborative import get_collaborative_filtering_recommendations
from backend.recommender.content import get_content_based_recommendations, get_tag_based_recommendations
from backend.recommender.mixed import MixedRecommender
from backend.recommender.social_collaborative import (
    STATS_CACHE_PREFIX,
    STATS_CACHE_TTL,
    get_social_collaborative_filtering_recommendations,
    get_social_collaborative_filtering_stats,
    update_social_collaborative_filtering_cache,
)
from backend.recommender.social_graph import (
    build_social_graph,
    calculate_social_distance,
    calculate_social_similarity,
    expand_user_ids,
)

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 30 * 24 * 3600


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ensure DB exists
    conn = connect()
    init_db(conn)
    conn.close()

    app.state.ranker = MixedRecommender()
    app.state.monitor = None
    if settings.monitor_enabled:
        app.state.monitor = AnalyticsMonitor()
        app.state.monitor.start()

    yield

    if app.state.monitor is not None:
        await app.state.monitor.stop()
    app.state.ranker.executor.shutdown(wait=False)


app = FastAPI(
    title=settings.app_name,
    version="0.2.0",
    lifespan=lifespan,
)


@app.exception_handler(RankerError)
async def ranker_error_handler(request: Request, exc: RankerError):
    if isinstance(exc, InfrastructureError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "errors": exc.details})


@app.get("/health")
def health():
    return {"status": "ok", "app": settings.app_name, "env": settings.app_env}


@app.get("/")
def root():
    return {"message": "Social feed ranker API is running", "docs": "/docs", "health": "/health"}


def _parse_ids(raw: Optional[str]) -> List[int]:
    # "3,1,2" -> [3, 1, 2], order kept, duplicates dropped
    if not raw:
        return []
    try:
        ids = [int(x) for x in raw.split(",") if x.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail="exclude_ids must be a comma-separated list of integers")
    return list(dict.fromkeys(ids))


def _default_window(start_ts: Optional[int], end_ts: Optional[int]) -> tuple[int, int]:
    now = int(time.time())
    if end_ts is None:
        end_ts = now
    if start_ts is None:
        start_ts = end_ts - DEFAULT_WINDOW_SECONDS
    if start_ts > end_ts:
        raise HTTPException(status_code=400, detail="start_ts must be <= end_ts")
    return start_ts, end_ts


def _experiment_assignment(user_id: int) -> Dict[str, Any]:
    """running algorithm experiment for this user, or an empty assignment"""
    monitor: Optional[AnalyticsMonitor] = app.state.monitor
    try:
        if monitor is not None and monitor.active_experiments.loaded_at is not None:
            now = int(time.time())
            tests = [t for t in monitor.active_experiments.all() if t.is_active(now)]
        else:
            with session() as conn:
                tests = ExperimentManager(conn).get_active_tests()
    except InfrastructureError as e:
        logger.warning("experiment lookup skipped: %s", e)
        return {"experiment_id": None, "variant": None, "weights": None}

    exp = pick_experiment(tests)
    if exp is None:
        return {"experiment_id": None, "variant": None, "weights": None}
    variant = assign_variant(exp, user_id)
    return {"experiment_id": exp.id, "variant": variant, "weights": exp.variant_config(variant).get("weights")}


def _record_impressions(user_id: int, items: List[Dict[str, Any]], skip: int, assignment: Dict[str, Any]) -> None:
    # serving never fails because of metrics
    try:
        with session() as conn:
            recorder = MetricsRecorder(conn)
            for pos, item in enumerate(items, start=skip + 1):
                snap = recorder.record(
                    {
                        "user_id": user_id,
                        "item_id": item["id"],
                        "algorithm": "mixed",
                        "score": item["total_score"],
                        "rank": pos,
                        "context_position": pos,
                        "experiment_id": assignment["experiment_id"],
                        "experiment_variant": assignment["variant"],
                        "item_features": {"tags": item.get("tags", []), "hot_score": item.get("hot_score", 0.0)},
                    }
                )
                item["impression_id"] = snap.id
    except RankerError as e:
        logger.warning("impression logging failed for user %s: %s", user_id, e.message)


# Recommendations
@app.get("/recommendations")
def recommendations(
    user_id: int = Query(..., ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    exclude_ids: Optional[str] = Query(default=None),
    clear_cache: bool = Query(False),
    use_cache: bool = Query(True),
    include_diversity: bool = Query(False),
    include_social_scores: bool = Query(False),
    record_impressions: bool = Query(True),
):
    excludes = _parse_ids(exclude_ids)
    assignment = _experiment_assignment(user_id)

    ranker: MixedRecommender = app.state.ranker
    result = ranker.recommend(
        user_id,
        page=page,
        limit=limit,
        exclude_ids=excludes,
        clear_cache=clear_cache,
        use_cache=use_cache,
        include_diversity=include_diversity,
        include_social_scores=include_social_scores,
        custom_weights=assignment["weights"],
    )
    if record_impressions and result.items:
        _record_impressions(user_id, result.items, result.pagination.skip, assignment)

    body = result.to_dict()
    body.update(
        {
            "user_id": user_id,
            "recommendation_type": "mixed",
            "filters": {
                "page": page,
                "limit": limit,
                "exclude_ids": excludes,
                "clear_cache": clear_cache,
                "use_cache": use_cache,
                "include_diversity": include_diversity,
                "include_social_scores": include_social_scores,
            },
            "experiment": {"experiment_id": assignment["experiment_id"], "variant": assignment["variant"]},
        }
    )
    return body


@app.get("/recommendations/social-collaborative")
def social_collaborative_recommendations(
    user_id: int = Query(..., ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    exclude_ids: Optional[str] = Query(default=None),
    min_similarity: float = Query(0.1, ge=0, le=1),
    include_hot_score: bool = Query(True),
    hot_score_weight: float = Query(0.3, ge=0, le=1),
):
    excludes = _parse_ids(exclude_ids)
    try:
        with session() as conn:
            items, pagination = get_social_collaborative_filtering_recommendations(
                conn,
                user_id,
                limit=limit,
                page=page,
                exclude_ids=excludes,
                min_similarity=min_similarity,
                include_hot_score=include_hot_score,
                hot_score_weight=hot_score_weight,
                hot_score_scale=settings.hot_score_scale,
                candidate_limit=settings.candidate_limit,
            )
        degraded = False
    except InfrastructureError as e:
        logger.error("social-collaborative ranking unavailable (user=%s): %s", user_id, e)
        items, pagination = paginate([], page, limit)
        degraded = True

    return {
        "user_id": user_id,
        "items": [it.to_dict() for it in items],
        "pagination": pagination.to_dict(),
        "filters": {"page": page, "limit": limit, "exclude_ids": excludes},
        "degraded": degraded,
    }


def _engine_response(user_id: Optional[int], fn, **filters):
    try:
        with session() as conn:
            items = fn(conn)
        degraded = False
    except InfrastructureError as e:
        logger.error("ranking engine unavailable (user=%s): %s", user_id, e)
        items, degraded = [], True
    return {
        "user_id": user_id,
        "items": [it.to_dict() for it in items],
        "count": len(items),
        "filters": filters,
        "degraded": degraded,
    }


@app.get("/recommendations/collaborative")
def collaborative_recommendations(
    user_id: int = Query(..., ge=1),
    limit: int = Query(20, ge=1, le=100),
    exclude_ids: Optional[str] = Query(default=None),
    min_similarity: float = Query(0.1, ge=0, le=1),
    include_hot_score: bool = Query(True),
    hot_score_weight: float = Query(0.3, ge=0, le=1),
):
    excludes = _parse_ids(exclude_ids)
    return _engine_response(
        user_id,
        lambda conn: get_collaborative_filtering_recommendations(
            conn,
            user_id,
            limit=limit,
            min_similarity=min_similarity,
            include_hot_score=include_hot_score,
            hot_score_weight=hot_score_weight,
            exclude_ids=excludes,
            hot_score_scale=settings.hot_score_scale,
        ),
        limit=limit,
        exclude_ids=excludes,
        min_similarity=min_similarity,
    )


@app.get("/recommendations/content-based")
def content_based_recommendations(
    user_id: int = Query(..., ge=1),
    limit: int = Query(20, ge=1, le=100),
    exclude_ids: Optional[str] = Query(default=None),
    min_similarity: float = Query(0.1, ge=0, le=1),
    exclude_interacted: bool = Query(True),
    include_hot_score: bool = Query(True),
    hot_score_weight: float = Query(0.3, ge=0, le=1),
):
    excludes = _parse_ids(exclude_ids)
    return _engine_response(
        user_id,
        lambda conn: get_content_based_recommendations(
            conn,
            user_id,
            limit=limit,
            min_similarity=min_similarity,
            include_hot_score=include_hot_score,
            hot_score_weight=hot_score_weight,
            exclude_interacted=exclude_interacted,
            exclude_ids=excludes,
            candidate_limit=settings.candidate_limit,
            decay_factor=settings.interaction_decay_factor,
            hot_score_scale=settings.hot_score_scale,
        ),
        limit=limit,
        exclude_ids=excludes,
        min_similarity=min_similarity,
        exclude_interacted=exclude_interacted,
    )


@app.get("/recommendations/tag-based")
def tag_based_recommendations(
    tags: str = Query(""),
    limit: int = Query(20, ge=1, le=100),
    exclude_ids: Optional[str] = Query(default=None),
    min_similarity: float = Query(0.1, ge=0, le=1),
    include_hot_score: bool = Query(True),
    hot_score_weight: float = Query(0.3, ge=0, le=1),
):
    tag_list = [t.strip() for t in tags.split(",") if t.strip()]
    excludes = _parse_ids(exclude_ids)
    return _engine_response(
        None,
        lambda conn: get_tag_based_recommendations(
            conn,
            tag_list,
            limit=limit,
            min_similarity=min_similarity,
            include_hot_score=include_hot_score,
            hot_score_weight=hot_score_weight,
            exclude_ids=excludes,
            candidate_limit=settings.candidate_limit,
            hot_score_scale=settings.hot_score_scale,
        ),
        tags=tag_list,
        limit=limit,
        exclude_ids=excludes,
        min_similarity=min_similarity,
    )


@app.delete("/recommendations/cache")
def clear_recommendation_cache(user_id: int = Query(..., ge=1)):
    removed = app.state.ranker.clear_cache(user_id)
    return {"user_id": user_id, "removed": removed}


# Social graph
@app.get("/social/stats")
def social_stats(user_id: int = Query(..., ge=1), use_cache: bool = Query(False)):
    if use_cache:
        try:
            cached = CacheStore().get(f"{STATS_CACHE_PREFIX}{user_id}")
        except InfrastructureError as e:
            logger.warning("social stats cache bypassed (user=%s): %s", user_id, e)
            cached = None
        if cached is not None:
            return {**cached, "from_cache": True}
    with session() as conn:
        stats = get_social_collaborative_filtering_stats(conn, user_id)
    return {**stats, "from_cache": False}


@app.get("/social/distance")
def social_distance(
    user_id: int = Query(..., ge=1),
    target_user_id: int = Query(..., ge=1),
):
    with session() as conn:
        graph = build_social_graph(conn, expand_user_ids(conn, [user_id, target_user_id], depth=2))
    return {
        "user_id": user_id,
        "target_user_id": target_user_id,
        **calculate_social_distance(user_id, target_user_id, graph).to_dict(),
        "similarity": calculate_social_similarity(user_id, target_user_id, graph),
    }


class SocialCacheRefresh(BaseModel):
    user_ids: Optional[List[int]] = Field(default=None, max_length=10000)


@app.post("/social/cache/refresh")
def social_cache_refresh(body: Optional[SocialCacheRefresh] = None):
    # no body -> every user with interactions or follow edges
    user_ids = body.user_ids if body is not None else None
    with session() as conn:
        summary = update_social_collaborative_filtering_cache(
            conn, user_ids, cache=CacheStore(), ttl=STATS_CACHE_TTL
        )
    return summary


# Analytics: impressions
@app.post("/analytics/impressions", status_code=201)
def track_impression(payload: Dict[str, Any] = Body(...)):
    with session() as conn:
        snap = MetricsRecorder(conn).record(payload)
    return snap.to_dict()


class InteractionUpdate(BaseModel):
    interaction_type: str = Field(..., min_length=1, max_length=32)
    view_duration: Optional[float] = None
    user_rating: Optional[float] = None


@app.put("/analytics/impressions/{impression_id}/interaction")
def update_impression_interaction(impression_id: str, body: InteractionUpdate):
    extra = {"view_duration": body.view_duration, "user_rating": body.user_rating}
    with session() as conn:
        snap = MetricsRecorder(conn).update(impression_id, body.interaction_type, extra)
    return snap.to_dict()


@app.get("/analytics/impressions/{impression_id}")
def get_impression(impression_id: str):
    with session() as conn:
        return MetricsRecorder(conn).get(impression_id).to_dict()


# Analytics: aggregates
@app.get("/analytics/algorithm-stats")
def algorithm_stats(
    algorithm: Optional[str] = Query(default=None),
    start_ts: Optional[int] = Query(default=None, ge=0),
    end_ts: Optional[int] = Query(default=None, ge=0),
):
    start_ts, end_ts = _default_window(start_ts, end_ts)
    with session() as conn:
        metrics = MetricsRecorder(conn)
        if algorithm:
            return {"algorithm": algorithm, "stats": metrics.get_algorithm_stats(algorithm, start_ts, end_ts).to_dict()}
        comparison = metrics.get_algorithm_comparison(start_ts, end_ts)
    return {"algorithm": None, "stats": [s.to_dict() for s in comparison]}


@app.get("/analytics/user-effectiveness")
def user_effectiveness(
    user_id: int = Query(..., ge=1),
    start_ts: Optional[int] = Query(default=None, ge=0),
    end_ts: Optional[int] = Query(default=None, ge=0),
):
    start_ts, end_ts = _default_window(start_ts, end_ts)
    with session() as conn:
        out = MetricsRecorder(conn).get_user_effectiveness(user_id, start_ts, end_ts)
    return {**out, "start_ts": start_ts, "end_ts": end_ts}


@app.get("/analytics/dashboard")
def dashboard(
    start_ts: Optional[int] = Query(default=None, ge=0),
    end_ts: Optional[int] = Query(default=None, ge=0),
):
    start_ts, end_ts = _default_window(start_ts, end_ts)
    with session() as conn:
        metrics = MetricsRecorder(conn)
        overall = metrics.get_overall_stats(start_ts, end_ts)
        comparison = metrics.get_algorithm_comparison(start_ts, end_ts)
        daily = metrics.get_daily_stats(start_ts, end_ts)
        active = ExperimentManager(conn).get_active_tests()

    return {
        "time_range": {"start_ts": start_ts, "end_ts": end_ts},
        "overall_stats": overall.to_dict(),
        "algorithm_comparison": [s.to_dict() for s in comparison],
        "daily_stats": daily,
        "active_experiments": [{"id": e.id, "name": e.name, "primary_metric": e.primary_metric} for e in active],
    }


@app.get("/analytics/monitor")
def monitor_status():
    monitor: Optional[AnalyticsMonitor] = app.state.monitor
    if monitor is None:
        return {"running": False, "enabled": settings.monitor_enabled, "cached_stats": None}
    return {**monitor.status(), "enabled": True, "cached_stats": monitor.get_cached_stats()}


# Analytics: experiments
@app.post("/analytics/experiments", status_code=201)
def create_experiment(payload: Dict[str, Any] = Body(...)):
    with session() as conn:
        exp = ExperimentManager(conn).create(payload)
    return exp.to_dict()


@app.get("/analytics/experiments")
def list_experiments(
    status: Optional[str] = Query(default=None),
    experiment_type: Optional[str] = Query(default=None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    with session() as conn:
        items, total = ExperimentManager(conn).list(status=status, experiment_type=experiment_type, page=page, limit=limit)
    _, pagination = paginate(range(total), page, limit, id_of=int)
    return {"items": [e.to_dict() for e in items], "pagination": pagination.to_dict()}


@app.get("/analytics/experiments/{experiment_id}")
def get_experiment(experiment_id: str):
    with session() as conn:
        return ExperimentManager(conn).get(experiment_id).to_dict()


class StatusUpdate(BaseModel):
    status: str = Field(..., min_length=1, max_length=16)


@app.put("/analytics/experiments/{experiment_id}/status")
def update_experiment_status(experiment_id: str, body: StatusUpdate):
    with session() as conn:
        exp = ExperimentManager(conn).update_status(experiment_id, body.status)

    # keep the monitor's assignment set in step with the store
    monitor: Optional[AnalyticsMonitor] = app.state.monitor
    if monitor is not None and monitor.active_experiments.loaded_at is not None:
        if exp.status != "active":
            monitor.active_experiments.discard(exp.id)
        else:
            try:
                monitor.reload_active_experiments()
            except InfrastructureError as e:
                logger.warning("active experiment reload deferred to the monitor: %s", e)
    return {"id": exp.id, "status": exp.status, "updated_at": exp.updated_at}


@app.get("/analytics/experiments/{experiment_id}/results")
def experiment_results(experiment_id: str):
    # live preview, nothing is persisted here
    with session() as conn:
        metrics = MetricsRecorder(conn)
        manager = ExperimentManager(conn, metrics=metrics)
        exp = manager.get(experiment_id)
        stored_status = exp.status
        variants = manager.collect_results(exp)
        manager.evaluate(exp, persist=False)
    return {
        "id": exp.id,
        "status": stored_status,
        "primary_metric": exp.primary_metric,
        "variants": [v.to_dict() for v in variants],
        "results": exp.results,
    }

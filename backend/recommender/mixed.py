from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional
import hashlib
import json
import logging
import math
import time
import uuid

from backend.app.cache import CacheStore
from backend.app.config import settings
from backend.app.db import session
from backend.app.errors import InfrastructureError
from backend.recommender.baseline import (
    Pagination,
    ScoredItem,
    get_hot_recommendations,
    get_recency_recommendations,
    paginate,
)
from backend.recommender.collaborative import get_collaborative_filtering_recommendations
from backend.recommender.content import get_content_based_recommendations
from backend.recommender.interactions import count_user_interactions
from backend.recommender.social_collaborative import score_social_collaborative
from backend.recommender.social_scores import calculate_item_social_scores

logger = logging.getLogger(__name__)

ENGINES = ("hot", "recency", "content", "collaborative", "social_collaborative")
# engines that need the user's own history
PERSONAL_ENGINES = ("content", "collaborative", "social_collaborative")

CACHE_PREFIX = "mixed"


def normalize_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """known engines only, negatives clipped, scaled to sum 1 (all-zero -> pure hot)"""
    clean = {e: max(0.0, float(weights.get(e, 0.0) or 0.0)) for e in ENGINES}
    total = sum(clean.values())
    if total <= 0.0:
        return {e: (1.0 if e == "hot" else 0.0) for e in ENGINES}
    return {e: w / total for e, w in clean.items()}


def apply_cold_start(weights: Mapping[str, float]) -> Dict[str, float]:
    """zero the personal engines, hand their mass to hot/recency pro rata"""
    w = normalize_weights(weights)
    freed = sum(w[e] for e in PERSONAL_ENGINES)
    for e in PERSONAL_ENGINES:
        w[e] = 0.0

    base = w["hot"] + w["recency"]
    if base > 0.0:
        hot_share = w["hot"] / base
    else:
        hot_share = 0.5
    w["hot"] += freed * hot_share
    w["recency"] += freed * (1.0 - hot_share)
    return normalize_weights(w)


def move_weight_to_hot(weights: Mapping[str, float], engine: str) -> Dict[str, float]:
    w = dict(weights)
    if engine != "hot":
        w["hot"] = w.get("hot", 0.0) + w.get(engine, 0.0)
        w[engine] = 0.0
    return normalize_weights(w)


def clean_custom_weights(custom: Any) -> Dict[str, float]:
    """known engines as floats; anything malformed is dropped as a whole"""
    try:
        out = {k: float(v) for k, v in dict(custom).items() if k in ENGINES}
        for engine, w in out.items():
            if not math.isfinite(w) or w < 0:
                raise ValueError(f"bad weight {w!r} for {engine}")
    except (TypeError, ValueError) as e:
        logger.warning("custom weights ignored, serving with defaults: %s", e)
        return {}
    return out


def weight_version(weights: Mapping[str, float]) -> str:
    payload = json.dumps({e: round(weights.get(e, 0.0), 6) for e in ENGINES}, sort_keys=True)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


def page_cache_key(user_id: int, page: int, limit: int, exclude_ids: Iterable[int], version: str) -> str:
    raw = json.dumps([user_id, page, limit, sorted({int(i) for i in exclude_ids}), version])
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()
    return f"{CACHE_PREFIX}:{user_id}:page:{digest}"


def snapshot_cache_key(user_id: int, version: str) -> str:
    return f"{CACHE_PREFIX}:{user_id}:snapshot:{version}"


def calculate_tag_diversity(items: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    tags: List[str] = [t for it in items for t in it.get("tags") or []]
    unique = len(set(tags))
    return {
        "tag_diversity": unique / len(tags) if tags else 0.0,
        "unique_tags": unique,
        "total_tags": len(tags),
    }


@dataclass
class MixedItem:
    id: int
    title: str
    tags: List[str]
    hot_score: float
    created_at: int
    total_score: float
    algorithm_scores: Dict[str, float]
    recommendation_type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EngineRun:
    name: str
    items: List[ScoredItem] = field(default_factory=list)
    status: str = "ok"  # ok | fallback | failed | timeout | skipped
    elapsed_ms: float = 0.0


@dataclass
class MixedResult:
    items: List[Dict[str, Any]]
    pagination: Pagination
    weights: Dict[str, float]
    cold_start: Dict[str, Any]
    from_cache: bool = False
    degraded: bool = False
    snapshot_id: Optional[str] = None
    engines: Dict[str, str] = field(default_factory=dict)
    diversity: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "items": self.items,
            "pagination": self.pagination.to_dict(),
            "weights": self.weights,
            "cold_start": self.cold_start,
            "from_cache": self.from_cache,
            "degraded": self.degraded,
            "snapshot_id": self.snapshot_id,
            "engines": self.engines,
        }
        if self.diversity is not None:
            out["diversity"] = self.diversity
        return out


def blend_engine_results(runs: Mapping[str, List[ScoredItem]], weights: Mapping[str, float]) -> List[MixedItem]:
    """
    Per-engine max-normalization, then weighted sum. Items are ordered by
    total_score desc, raw hot_score desc, id asc.
    """
    merged: Dict[int, MixedItem] = {}
    contributors: Dict[int, List[str]] = {}

    for engine in ENGINES:
        w = weights.get(engine, 0.0)
        items = runs.get(engine) or []
        if w <= 0.0 or not items:
            continue
        top = max(it.score for it in items)
        for it in items:
            norm = it.score / top if top > 0 else 0.0
            m = merged.get(it.item_id)
            if m is None:
                m = MixedItem(
                    id=it.item_id,
                    title=it.title,
                    tags=list(it.tags),
                    hot_score=it.hot_score,
                    created_at=it.created_at,
                    total_score=0.0,
                    algorithm_scores={},
                    recommendation_type="",
                )
                merged[it.item_id] = m
                contributors[it.item_id] = []
            m.algorithm_scores[engine] = norm
            m.total_score += w * norm
            contributors[it.item_id].append(engine)

    for item_id, m in merged.items():
        engines = contributors[item_id]
        m.recommendation_type = engines[0] if len(engines) == 1 else "mixed"

    return sorted(merged.values(), key=lambda m: (-m.total_score, -m.hot_score, m.id))


class MixedRecommender:
    """
    Blends the hot, recency, content, collaborative and social-collaborative
    engines into one ranking.

    Engines run in a thread pool, each on its own sqlite connection, under a
    shared per-request budget. The full ranking is cached as a snapshot per
    (user, weight profile); pages are cut from that snapshot so pages of the
    same snapshot never reorder.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        weights: Optional[Mapping[str, float]] = None,
        cold_start_threshold: Optional[int] = None,
        engine_timeout: Optional[float] = None,
        cache_ttl: Optional[int] = None,
        candidate_limit: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.db_path = db_path
        self.weights = normalize_weights(weights if weights is not None else settings.blend_weights)
        self.cold_start_threshold = (
            settings.cold_start_min_interactions if cold_start_threshold is None else cold_start_threshold
        )
        self.engine_timeout = settings.engine_timeout_seconds if engine_timeout is None else engine_timeout
        self.cache_ttl = settings.ranking_cache_ttl_seconds if cache_ttl is None else cache_ttl
        self.candidate_limit = settings.candidate_limit if candidate_limit is None else candidate_limit
        self.executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix="ranker")

    # engine adapters: each opens its own connection

    def _engine_fn(self, name: str, user_id: int, now: Optional[int]) -> Callable[[], List[ScoredItem]]:
        n = self.candidate_limit

        def run() -> List[ScoredItem]:
            with session(self.db_path) as conn:
                if name == "hot":
                    return get_hot_recommendations(conn, limit=n)
                if name == "recency":
                    return get_recency_recommendations(
                        conn, limit=n, half_life_hours=settings.recency_half_life_hours, now=now
                    )
                if name == "content":
                    return get_content_based_recommendations(
                        conn,
                        user_id,
                        limit=n,
                        include_hot_score=False,
                        fallback=False,
                        decay_factor=settings.interaction_decay_factor,
                        now=now,
                    )
                if name == "collaborative":
                    return get_collaborative_filtering_recommendations(
                        conn, user_id, limit=n, include_hot_score=False, fallback=False
                    )
                if name == "social_collaborative":
                    return score_social_collaborative(conn, user_id, include_hot_score=False)[:n]
            raise ValueError(f"unknown engine: {name}")

        return run

    def run_engines(self, user_id: int, weights: Mapping[str, float], now: Optional[int] = None) -> Dict[str, EngineRun]:
        runs: Dict[str, EngineRun] = {}
        futures: Dict[str, Future] = {}
        started = time.perf_counter()

        for name in ENGINES:
            # hot always runs, it absorbs the weight of failing engines
            if name != "hot" and weights.get(name, 0.0) <= 0.0:
                runs[name] = EngineRun(name, status="skipped")
                continue
            futures[name] = self.executor.submit(self._engine_fn(name, user_id, now))

        wait(list(futures.values()), timeout=self.engine_timeout)
        elapsed = (time.perf_counter() - started) * 1000.0

        for name, fut in futures.items():
            run = EngineRun(name, elapsed_ms=round(elapsed, 2))
            if not fut.done():
                fut.cancel()
                run.status = "timeout"
                logger.warning("engine %s timed out after %.2fs (user=%s)", name, self.engine_timeout, user_id)
            elif fut.exception() is not None:
                run.status = "failed"
                logger.warning("engine %s failed (user=%s): %s", name, user_id, fut.exception())
            else:
                run.items = fut.result()
                if name in PERSONAL_ENGINES and not run.items:
                    run.status = "fallback"
            runs[name] = run
        return runs

    def _cache_call(self, fn: Callable[[], Any], what: str) -> Any:
        try:
            return fn()
        except InfrastructureError as e:
            logger.warning("ranking cache %s bypassed: %s", what, e)
            return None

    def clear_cache(self, user_id: int) -> int:
        return CacheStore().delete_prefix(f"{CACHE_PREFIX}:{user_id}:")

    def effective_weights(
        self, interaction_count: int, custom_weights: Optional[Mapping[str, float]] = None
    ) -> Dict[str, float]:
        base = dict(self.weights)
        if custom_weights:
            base.update(clean_custom_weights(custom_weights))
        if interaction_count < self.cold_start_threshold:
            return apply_cold_start(base)
        return normalize_weights(base)

    def recommend(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        exclude_ids: Iterable[int] = (),
        clear_cache: bool = False,
        use_cache: bool = True,
        include_diversity: bool = False,
        include_social_scores: bool = False,
        custom_weights: Optional[Mapping[str, float]] = None,
        now: Optional[int] = None,
    ) -> MixedResult:
        excludes = [int(i) for i in exclude_ids]
        try:
            result = self._recommend(user_id, page, limit, excludes, clear_cache, use_cache, custom_weights, now)
        except InfrastructureError as e:
            logger.error("mixed ranking degraded to popularity baseline (user=%s): %s", user_id, e)
            result = self._degraded(page, limit, excludes)

        if include_social_scores and result.items:
            self._attach_social_scores(user_id, result.items)
        if include_diversity:
            result.diversity = calculate_tag_diversity(result.items)
        return result

    def _recommend(
        self,
        user_id: int,
        page: int,
        limit: int,
        excludes: List[int],
        clear_cache: bool,
        use_cache: bool,
        custom_weights: Optional[Mapping[str, float]],
        now: Optional[int],
    ) -> MixedResult:
        with session(self.db_path) as conn:
            cache = CacheStore()
            interaction_count = count_user_interactions(conn, user_id)
            weights = self.effective_weights(interaction_count, custom_weights)
            cold_start = {
                "is_cold_start": interaction_count < self.cold_start_threshold,
                "interaction_count": interaction_count,
                "threshold": self.cold_start_threshold,
            }
            version = weight_version(weights)
            snap_key = snapshot_cache_key(user_id, version)
            page_key = page_cache_key(user_id, page, limit, excludes, version)

            if clear_cache:
                self._cache_call(lambda: cache.delete_prefix(f"{CACHE_PREFIX}:{user_id}:"), "clear")

            snapshot = None
            if use_cache and not clear_cache:
                snapshot = self._cache_call(lambda: cache.get_entry(snap_key), "read")
                if snapshot is not None:
                    snap, _ = snapshot
                    cached_page = self._cache_call(lambda: cache.get(page_key), "read")
                    if cached_page and cached_page.get("snapshot_id") == snap["snapshot_id"]:
                        return MixedResult(
                            items=cached_page["items"],
                            pagination=Pagination(**cached_page["pagination"]),
                            weights=snap["weights"],
                            cold_start=cold_start,
                            from_cache=True,
                            snapshot_id=snap["snapshot_id"],
                            engines=snap.get("engines", {}),
                        )

            if snapshot is not None:
                snap, expires_at = snapshot
                from_cache = True
            else:
                snap, expires_at = self._build_snapshot(user_id, weights, now), None
                from_cache = False
                if use_cache or clear_cache:
                    expires_at = self._cache_call(
                        lambda: cache.set(snap_key, snap, self.cache_ttl), "write"
                    )

            page_items, pagination = paginate(snap["items"], page, limit, excludes, id_of=lambda x: x["id"])
            if expires_at is not None:
                # a page never outlives the snapshot it was cut from
                self._cache_call(
                    lambda: cache.set(
                        page_key,
                        {
                            "snapshot_id": snap["snapshot_id"],
                            "items": page_items,
                            "pagination": pagination.to_dict(),
                        },
                        self.cache_ttl,
                        expires_at=expires_at,
                    ),
                    "write",
                )

            return MixedResult(
                items=page_items,
                pagination=pagination,
                weights=snap["weights"],
                cold_start=cold_start,
                from_cache=from_cache,
                degraded=snap.get("degraded", False),
                snapshot_id=snap["snapshot_id"],
                engines=snap.get("engines", {}),
            )

    def _build_snapshot(self, user_id: int, weights: Dict[str, float], now: Optional[int]) -> Dict[str, Any]:
        runs = self.run_engines(user_id, weights, now)

        effective = dict(weights)
        for name, run in runs.items():
            if name != "hot" and run.status in ("failed", "timeout", "fallback") and effective.get(name, 0.0) > 0:
                effective = move_weight_to_hot(effective, name)

        degraded = runs["hot"].status != "ok"
        if degraded:
            raise InfrastructureError("hot baseline unavailable")

        ranked = blend_engine_results({n: r.items for n, r in runs.items()}, effective)
        return {
            "snapshot_id": uuid.uuid4().hex,
            "created_at": int(time.time()),
            "weights": effective,
            "engines": {n: r.status for n, r in runs.items()},
            "items": [m.to_dict() for m in ranked],
        }

    def _degraded(self, page: int, limit: int, excludes: List[int]) -> MixedResult:
        weights = {e: (1.0 if e == "hot" else 0.0) for e in ENGINES}
        items: List[Dict[str, Any]] = []
        try:
            with session(self.db_path) as conn:
                hot = get_hot_recommendations(conn, limit=self.candidate_limit)
            items = [m.to_dict() for m in blend_engine_results({"hot": hot}, weights)]
        except InfrastructureError as e:
            logger.error("popularity baseline unavailable too: %s", e)

        page_items, pagination = paginate(items, page, limit, excludes, id_of=lambda x: x["id"])
        return MixedResult(
            items=page_items,
            pagination=pagination,
            weights=weights,
            cold_start={"is_cold_start": None, "interaction_count": None, "threshold": self.cold_start_threshold},
            degraded=True,
        )

    def _attach_social_scores(self, user_id: int, items: List[Dict[str, Any]]) -> None:
        # transparency only, ordering is already final
        try:
            with session(self.db_path) as conn:
                scores = calculate_item_social_scores(conn, user_id, [it["id"] for it in items])
        except InfrastructureError as e:
            logger.warning("social scores skipped (user=%s): %s", user_id, e)
            return
        for it in items:
            s = scores.get(it["id"])
            it["social"] = s.to_dict() if s else None

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple
import sqlite3
import time

from backend.app.cache import CacheStore
from backend.recommender.baseline import (
    Pagination,
    ScoredItem,
    get_hot_recommendations,
    paginate,
)
from backend.recommender.collaborative import (
    build_interaction_matrix,
    calculate_user_similarity,
    score_items_from_neighbors,
    scores_to_items,
)
from backend.recommender.social_graph import (
    SocialGraph,
    build_social_graph,
    expand_user_ids,
    find_social_similar_users,
    influence_level,
)

FALLBACK_TYPE = "social_collaborative_fallback"
STATS_CACHE_PREFIX = "social_cf:stats:"
STATS_CACHE_TTL = 3600


def calculate_social_weighted_similarity(
    vec_a: Dict[int, float],
    vec_b: Dict[int, float],
    social_similarity: float,
    neighbor_influence: float,
) -> float:
    """0.6 * behaviour cosine + 0.3 * social similarity + 0.1 * influence/100, capped at 1"""
    behavior = calculate_user_similarity(vec_a, vec_b)
    influence = max(0.0, min(neighbor_influence / 100.0, 1.0))
    return min(1.0, behavior * 0.6 + max(0.0, social_similarity) * 0.3 + influence * 0.1)


def _load_neighbourhood(conn: sqlite3.Connection, user_id: int) -> SocialGraph:
    # 2 hops is enough for the 3rd-degree distance check from user_id
    return build_social_graph(conn, expand_user_ids(conn, [user_id], depth=2))


def score_social_collaborative(
    conn: sqlite3.Connection,
    user_id: int,
    min_similarity: float = 0.1,
    max_similar_users: int = 50,
    include_hot_score: bool = True,
    hot_score_weight: float = 0.3,
    exclude_interacted: bool = True,
    hot_score_scale: float = 1000.0,
    graph: Optional[SocialGraph] = None,
) -> List[ScoredItem]:
    """
    Full warm-mode ranking, unpaged. Empty list means cold start:
    no interactions, no follow edges, or no socially similar users.
    """
    if graph is None:
        graph = _load_neighbourhood(conn, user_id)
    node = graph.get(user_id)
    if node is None or not node.connections:
        return []

    similar = find_social_similar_users(user_id, graph, min_similarity, max_similar_users)
    if not similar:
        return []

    matrix = build_interaction_matrix(conn, [user_id, *(uid for uid, _ in similar)])
    target = matrix.get(user_id)
    if not target:
        return []

    neighbors: List[Tuple[int, float]] = []
    for other_id, social_sim in similar:
        w = calculate_social_weighted_similarity(
            target, matrix.get(other_id, {}), social_sim, graph[other_id].influence_score
        )
        if w > 0.0:
            neighbors.append((other_id, w))

    seen = set(target) if exclude_interacted else set()
    scores = score_items_from_neighbors(matrix, neighbors, seen=seen)
    return scores_to_items(
        conn, scores, "social_collaborative_filtering", include_hot_score, hot_score_weight, hot_score_scale
    )


def get_social_collaborative_filtering_recommendations(
    conn: sqlite3.Connection,
    user_id: int,
    limit: int = 20,
    page: int = 1,
    exclude_ids: Iterable[int] = (),
    min_similarity: float = 0.1,
    max_similar_users: int = 50,
    include_hot_score: bool = True,
    hot_score_weight: float = 0.3,
    hot_score_scale: float = 1000.0,
    candidate_limit: int = 500,
) -> Tuple[List[ScoredItem], Pagination]:
    """
    Paged social-collaborative ranking.

    exclude_ids is applied before paging, so asking for page n+1 with every
    id already shown never repeats an item, in warm and fallback mode alike.
    """
    excluded = [int(i) for i in exclude_ids]

    ranked = score_social_collaborative(
        conn,
        user_id,
        min_similarity=min_similarity,
        max_similar_users=max_similar_users,
        include_hot_score=include_hot_score,
        hot_score_weight=hot_score_weight,
        hot_score_scale=hot_score_scale,
    )
    if not ranked:
        ranked = get_hot_recommendations(conn, limit=candidate_limit, recommendation_type=FALLBACK_TYPE)

    return paginate(ranked, page=page, limit=limit, exclude_ids=excluded)


def get_social_collaborative_filtering_stats(
    conn: sqlite3.Connection,
    user_id: int,
    graph: Optional[SocialGraph] = None,
) -> Dict[str, Any]:
    if graph is None:
        graph = _load_neighbourhood(conn, user_id)
    matrix = build_interaction_matrix(conn, [user_id])
    node = graph.get(user_id)

    followers = len(node.followers) if node else 0
    following = len(node.following) if node else 0
    mutual = len(node.mutual) if node else 0
    influence = node.influence_score if node else 0.0

    similar = find_social_similar_users(user_id, graph, 0.1, 100)
    total = followers + following

    return {
        "user_id": user_id,
        "interaction_count": len(matrix.get(user_id, {})),
        "social_connections": len(node.connections) if node else 0,
        "followers_count": followers,
        "following_count": following,
        "mutual_follows_count": mutual,
        "influence_score": influence,
        "influence_level": influence_level(influence),
        "social_similar_users_count": len(similar),
        "average_social_similarity": sum(s for _, s in similar) / len(similar) if similar else 0.0,
        "top_social_similar_users": [
            {"user_id": uid, "similarity": s, "influence_score": graph[uid].influence_score}
            for uid, s in similar[:5]
        ],
        "social_activity": "active" if following > 0 else "passive",
        "network_density": round(mutual / total, 2) if total else 0.0,
    }


def _all_social_user_ids(conn: sqlite3.Connection) -> List[int]:
    rows = conn.execute(
        """
        SELECT user_id AS u FROM interactions
        UNION SELECT follower_id FROM follows
        UNION SELECT following_id FROM follows
        """
    ).fetchall()
    return sorted(int(r["u"]) for r in rows)


def update_social_collaborative_filtering_cache(
    conn: sqlite3.Connection,
    user_ids: Optional[Iterable[int]] = None,
    cache: Optional[CacheStore] = None,
    ttl: int = STATS_CACHE_TTL,
) -> Dict[str, Any]:
    """
    Batch pass over the given users (everyone when None). Per-user stats
    are written to the cache when one is given; ranking never reads them.
    """
    t0 = time.perf_counter()
    ids = list(user_ids) if user_ids is not None else _all_social_user_ids(conn)

    matrix = build_interaction_matrix(conn, ids)
    graph = build_social_graph(conn, ids)
    requested = [graph[u] for u in ids if u in graph]

    if cache is not None:
        for u in ids:
            cache.set(f"{STATS_CACHE_PREFIX}{u}", get_social_collaborative_filtering_stats(conn, u), ttl)

    return {
        "total_users": len(matrix),
        "total_interactions": sum(len(v) for v in matrix.values()),
        "total_social_connections": sum(len(n.connections) for n in requested),
        "average_influence_score": (
            sum(n.influence_score for n in requested) / len(requested) if requested else 0.0
        ),
        "processing_time": round((time.perf_counter() - t0) * 1000.0, 2),
    }

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple
import math
import sqlite3

from backend.recommender.baseline import (
    ScoredItem,
    row_to_item,
    blend_with_hot,
    fetch_items,
    get_hot_recommendations,
    ranking_key,
)
from backend.recommender.interactions import CONSUMPTION_TYPES, INTERACTION_WEIGHTS, sql_placeholders

InteractionMatrix = Dict[int, Dict[int, float]]


def build_interaction_matrix(conn: sqlite3.Connection, user_ids: Optional[Iterable[int]] = None) -> InteractionMatrix:
    """
    user -> {item -> summed interaction weight}, no time decay.
    user_ids=None loads everyone (batch jobs only).
    """
    sql = f"""
        SELECT user_id, item_id, event_type FROM interactions
        WHERE event_type IN ({sql_placeholders(len(CONSUMPTION_TYPES))})
    """
    params: list[object] = list(CONSUMPTION_TYPES)

    if user_ids is not None:
        ids = list(dict.fromkeys(int(u) for u in user_ids))
        if not ids:
            return {}
        sql += f" AND user_id IN ({sql_placeholders(len(ids))})"
        params.extend(ids)

    matrix: InteractionMatrix = {}
    for r in conn.execute(sql, tuple(params)).fetchall():
        row = matrix.setdefault(int(r["user_id"]), {})
        item_id = int(r["item_id"])
        row[item_id] = row.get(item_id, 0.0) + INTERACTION_WEIGHTS.get(r["event_type"], 1.0)
    return matrix


def calculate_user_similarity(vec_a: Dict[int, float], vec_b: Dict[int, float]) -> float:
    """cosine of two item->weight vectors; weights are non-negative so this is in [0, 1]"""
    if not vec_a or not vec_b:
        return 0.0

    # iterate the smaller vector
    small, large = (vec_a, vec_b) if len(vec_a) <= len(vec_b) else (vec_b, vec_a)
    dot = sum(w * large[i] for i, w in small.items() if i in large)
    if dot <= 0.0:
        return 0.0

    norm_a = math.sqrt(sum(w * w for w in vec_a.values()))
    norm_b = math.sqrt(sum(w * w for w in vec_b.values()))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return min(1.0, dot / (norm_a * norm_b))


def find_similar_users(
    user_id: int,
    matrix: InteractionMatrix,
    min_similarity: float = 0.1,
    max_users: Optional[int] = 50,
) -> List[Tuple[int, float]]:
    target = matrix.get(user_id)
    if not target:
        return []

    out: List[Tuple[int, float]] = []
    for other_id, vec in matrix.items():
        if other_id == user_id:
            continue
        sim = calculate_user_similarity(target, vec)
        if sim >= min_similarity and sim > 0.0:
            out.append((other_id, sim))

    out.sort(key=lambda x: (-x[1], x[0]))
    return out[:max_users] if max_users is not None else out


def get_co_interacting_user_ids(conn: sqlite3.Connection, user_id: int) -> List[int]:
    """users who touched at least one item user_id touched"""
    types = sql_placeholders(len(CONSUMPTION_TYPES))
    rows = conn.execute(
        f"""
        SELECT DISTINCT x.user_id FROM interactions x
        WHERE x.user_id != ? AND x.event_type IN ({types})
          AND x.item_id IN (
            SELECT item_id FROM interactions WHERE user_id = ? AND event_type IN ({types})
          )
        """,
        (user_id, *CONSUMPTION_TYPES, user_id, *CONSUMPTION_TYPES),
    ).fetchall()
    return sorted(int(r["user_id"]) for r in rows)


def score_items_from_neighbors(
    matrix: InteractionMatrix,
    neighbors: Iterable[Tuple[int, float]],
    seen: Iterable[int],
) -> Dict[int, float]:
    """sum over neighbors n of weight(n) * matrix[n][item], seen items skipped"""
    skip = set(seen)
    scores: Dict[int, float] = {}
    for other_id, weight in neighbors:
        for item_id, w in matrix.get(other_id, {}).items():
            if item_id in skip:
                continue
            scores[item_id] = scores.get(item_id, 0.0) + weight * w
    return scores


def scores_to_items(
    conn: sqlite3.Connection,
    scores: Dict[int, float],
    recommendation_type: str,
    include_hot_score: bool,
    hot_score_weight: float,
    hot_score_scale: float,
) -> List[ScoredItem]:
    """max-normalize raw neighbor scores, attach item rows, optional hot blend"""
    if not scores:
        return []
    top = max(scores.values())
    rows = fetch_items(conn, scores.keys())

    out: List[ScoredItem] = []
    for item_id, raw in scores.items():
        r = rows.get(item_id)
        if r is None:
            continue
        score = raw / top if top > 0 else 0.0
        if include_hot_score:
            score = blend_with_hot(score, float(r["hot_score"] or 0.0), hot_score_weight, hot_score_scale)
        item = row_to_item(r, score, recommendation_type)
        item.stats = {"raw_score": raw}
        out.append(item)
    out.sort(key=ranking_key)
    return out


def get_collaborative_filtering_recommendations(
    conn: sqlite3.Connection,
    user_id: int,
    limit: Optional[int] = 20,
    min_similarity: float = 0.1,
    max_similar_users: int = 50,
    include_hot_score: bool = True,
    hot_score_weight: float = 0.3,
    exclude_ids: Iterable[int] = (),
    fallback: bool = True,
    hot_score_scale: float = 1000.0,
) -> List[ScoredItem]:
    """
      user-user collaborative filtering:
    - neighbours = users sharing at least one item, cosine >= min_similarity
    - score(item) = sum sim(u, n) * matrix[n][item] over unseen items
    - no history / no neighbours -> hot list tagged collaborative_fallback
    """
    excluded = {int(i) for i in exclude_ids}

    def _fallback() -> List[ScoredItem]:
        if not fallback:
            return []
        return get_hot_recommendations(
            conn, limit=limit, exclude_ids=excluded, recommendation_type="collaborative_fallback"
        )

    candidates = get_co_interacting_user_ids(conn, user_id)
    matrix = build_interaction_matrix(conn, [user_id, *candidates])
    if not matrix.get(user_id):
        return _fallback()

    neighbors = find_similar_users(user_id, matrix, min_similarity, max_similar_users)
    if not neighbors:
        return _fallback()

    scores = score_items_from_neighbors(matrix, neighbors, seen=set(matrix[user_id]) | excluded)
    items = scores_to_items(
        conn, scores, "collaborative_filtering", include_hot_score, hot_score_weight, hot_score_scale
    )
    if not items:
        return _fallback()
    return items[:limit] if limit is not None else items

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence
import sqlite3

from backend.recommender.baseline import (
    ScoredItem,
    row_to_item,
    blend_with_hot,
    fetch_candidate_items,
    get_hot_recommendations,
    ranking_key,
)
from backend.recommender.interactions import (
    DEFAULT_DECAY_FACTOR,
    aggregate_user_interactions,
    get_user_seen_item_ids,
    parse_tags,
)

# how many of the strongest preferences drive candidate retrieval
CANDIDATE_TAGS = 20
PROFILE_TAGS = 5


def calculate_tag_similarity(
    tags_a: Iterable[str],
    tags_b: Iterable[str],
    prefs: Optional[Dict[str, float]] = None,
) -> float:
    """
    jaccard(tags_a, tags_b), or with prefs:
      0.6 * jaccard + 0.4 * mean(prefs[t] for t in intersection)
    """
    a, b = set(tags_a), set(tags_b)
    if not a or not b:
        return 0.0

    inter = a & b
    jaccard = len(inter) / len(a | b)
    if not prefs:
        return jaccard

    pref_weight = sum(prefs.get(t, 0.0) for t in inter) / len(inter) if inter else 0.0
    return min(1.0, jaccard * 0.6 + pref_weight * 0.4)


def calculate_preference_match(item_tags: Iterable[str], prefs: Dict[str, float]) -> float:
    # share of the user's total preference mass the item covers
    total = sum(prefs.values())
    if total <= 0:
        return 0.0
    matched = sum(prefs.get(t, 0.0) for t in set(item_tags))
    return min(1.0, matched / total)


def get_content_based_recommendations(
    conn: sqlite3.Connection,
    user_id: int,
    limit: Optional[int] = 20,
    min_similarity: float = 0.1,
    include_hot_score: bool = True,
    hot_score_weight: float = 0.3,
    exclude_interacted: bool = True,
    exclude_ids: Iterable[int] = (),
    fallback: bool = True,
    candidate_limit: int = 500,
    decay_factor: float = DEFAULT_DECAY_FACTOR,
    hot_score_scale: float = 1000.0,
    now: Optional[int] = None,
) -> List[ScoredItem]:
    """
      tag-affinity engine:
    - preference vector from the user's decayed interactions
    - score = 0.6 * preference_match + 0.4 * tag_similarity(item, top tags)
    - optional hot blend, then min_similarity cut

    A user without history gets the hot list tagged content_based_fallback,
    or nothing at all when fallback=False.
    """
    excluded = {int(i) for i in exclude_ids}
    profile = aggregate_user_interactions(conn, user_id, decay_factor=decay_factor, now=now)

    if not profile.preferences:
        if not fallback:
            return []
        return get_hot_recommendations(
            conn, limit=limit, exclude_ids=excluded, recommendation_type="content_based_fallback"
        )

    if exclude_interacted:
        excluded |= get_user_seen_item_ids(conn, user_id)

    top_tags = profile.top_tags(PROFILE_TAGS)
    candidate_tags = profile.top_tags(CANDIDATE_TAGS)
    rows = fetch_candidate_items(conn, limit=candidate_limit, tags=candidate_tags)

    out: List[ScoredItem] = []
    for r in rows:
        if int(r["item_id"]) in excluded:
            continue
        item_tags = parse_tags(r["tags"])
        pref_match = calculate_preference_match(item_tags, profile.preferences)
        tag_sim = calculate_tag_similarity(item_tags, top_tags, profile.preferences)
        score = pref_match * 0.6 + tag_sim * 0.4

        hot = float(r["hot_score"] or 0.0)
        if include_hot_score:
            score = blend_with_hot(score, hot, hot_score_weight, hot_score_scale)
        if score < min_similarity:
            continue

        item = row_to_item(r, score, "content_based")
        item.stats = {"preference_match": pref_match, "tag_similarity": tag_sim}
        out.append(item)

    out.sort(key=ranking_key)
    return out[:limit] if limit is not None else out


def get_tag_based_recommendations(
    conn: sqlite3.Connection,
    tags: Sequence[str],
    limit: Optional[int] = 20,
    min_similarity: float = 0.1,
    include_hot_score: bool = True,
    hot_score_weight: float = 0.3,
    exclude_ids: Iterable[int] = (),
    candidate_limit: int = 500,
    hot_score_scale: float = 1000.0,
) -> List[ScoredItem]:
    query_tags = [t.strip() for t in tags if t and t.strip()]
    if not query_tags:
        return []

    excluded = {int(i) for i in exclude_ids}
    rows = fetch_candidate_items(conn, limit=candidate_limit, tags=query_tags)

    out: List[ScoredItem] = []
    for r in rows:
        if int(r["item_id"]) in excluded:
            continue
        sim = calculate_tag_similarity(parse_tags(r["tags"]), query_tags)
        score = sim
        if include_hot_score:
            score = blend_with_hot(score, float(r["hot_score"] or 0.0), hot_score_weight, hot_score_scale)
        if score < min_similarity:
            continue

        item = row_to_item(r, score, "tag_based")
        item.stats = {"tag_similarity": sim}
        out.append(item)

    out.sort(key=ranking_key)
    return out[:limit] if limit is not None else out

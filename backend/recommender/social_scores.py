from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
import sqlite3

from backend.recommender.interactions import INTERACTION_WEIGHTS, get_item_interactors, sql_placeholders
from backend.recommender.social_graph import (
    SocialGraph,
    build_social_graph,
    calculate_social_distance,
    expand_user_ids,
)

MAX_SOCIAL_SCORE = 20.0
MAX_DISTANCE = 3
MAX_REASONS = 3
MIN_SCORE_FOR_REASON = 2.0


@dataclass
class SocialReason:
    action: str
    user_id: int
    weight: float
    distance_type: str


@dataclass
class ItemSocialScore:
    item_id: int
    social_score: float = 0.0
    interaction_score: float = 0.0
    distance_score: float = 0.0
    influence_score: float = 0.0
    reasons: List[SocialReason] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "social_score": self.social_score,
            "interaction_score": self.interaction_score,
            "distance_score": self.distance_score,
            "influence_score": self.influence_score,
            "reasons": [r.__dict__ for r in self.reasons],
        }


def _authors(conn: sqlite3.Connection, item_ids: List[int]) -> Dict[int, int]:
    rows = conn.execute(
        f"SELECT id, author_id FROM items WHERE id IN ({sql_placeholders(len(item_ids))}) AND author_id IS NOT NULL",
        tuple(item_ids),
    ).fetchall()
    return {int(r["id"]): int(r["author_id"]) for r in rows}


def calculate_item_social_scores(
    conn: sqlite3.Connection,
    user_id: int,
    item_ids: Iterable[int],
    graph: Optional[SocialGraph] = None,
) -> Dict[int, ItemSocialScore]:
    """
    Why an item shows up in someone's social circle.

    For every other user who touched the item within 3 hops of user_id:
      interaction += type_weight * distance_weight * (1 + influence/100)
      distance    += distance_weight
      influence   += influence
    social_score = min(sum of the three, 20). Purely informational, the
    ranking never looks at it.
    """
    ids = list(dict.fromkeys(int(i) for i in item_ids))
    if not ids:
        return {}

    if graph is None:
        graph = build_social_graph(conn, expand_user_ids(conn, [user_id], depth=2))

    # one action per user and item: the strongest one
    actors: Dict[int, Dict[int, str]] = {i: {} for i in ids}
    for item_id, pairs in get_item_interactors(conn, ids).items():
        for other, event_type in pairs:
            prev = actors[item_id].get(other)
            if prev is None or INTERACTION_WEIGHTS.get(event_type, 0.0) > INTERACTION_WEIGHTS.get(prev, 0.0):
                actors[item_id][other] = event_type
    for item_id, author_id in _authors(conn, ids).items():
        actors[item_id][author_id] = "publish"

    out: Dict[int, ItemSocialScore] = {}
    for item_id in ids:
        s = ItemSocialScore(item_id=item_id)
        reasons: List[SocialReason] = []
        for other, action in actors[item_id].items():
            if other == user_id:
                continue
            dist = calculate_social_distance(user_id, other, graph)
            if dist.distance > MAX_DISTANCE:
                continue
            influence = graph[other].influence_score if other in graph else 0.0

            weight = INTERACTION_WEIGHTS.get(action, 0.0) * dist.weight * (1.0 + influence / 100.0)
            s.interaction_score += weight
            s.distance_score += dist.weight
            s.influence_score += influence

            if weight >= MIN_SCORE_FOR_REASON:
                reasons.append(SocialReason(action, other, weight, dist.relation_type.value))

        s.social_score = min(s.interaction_score + s.distance_score + s.influence_score, MAX_SOCIAL_SCORE)
        reasons.sort(key=lambda r: (-r.weight, r.user_id))
        s.reasons = reasons[:MAX_REASONS]
        out[item_id] = s
    return out

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple
import math
import sqlite3

from backend.recommender.interactions import sql_placeholders


class RelationType(str, Enum):
    MUTUAL_FOLLOW = "mutual_follow"
    DIRECT_FOLLOW = "direct_follow"
    SECOND_DEGREE = "second_degree"
    THIRD_DEGREE = "third_degree"
    UNKNOWN = "unknown"


RELATION_WEIGHTS: Dict[RelationType, float] = {
    RelationType.MUTUAL_FOLLOW: 1.5,
    RelationType.DIRECT_FOLLOW: 1.0,
    RelationType.SECOND_DEGREE: 0.6,
    RelationType.THIRD_DEGREE: 0.3,
    RelationType.UNKNOWN: 0.0,
}

# influence = followers*a + following*b + mutual*c, clipped to [0, 100]
INFLUENCE_WEIGHTS = {"followers": 0.3, "following": 0.2, "mutual": 0.5}
MAX_INFLUENCE = 100.0

# lower bound of each level, checked top-down
INFLUENCE_LEVELS: List[Tuple[float, str]] = [
    (50.0, "influencer"),
    (20.0, "popular"),
    (10.0, "active"),
    (5.0, "moderate"),
    (1.0, "low"),
]


@dataclass
class SocialNode:
    user_id: int
    followers: Set[int] = field(default_factory=set)
    following: Set[int] = field(default_factory=set)
    mutual: Set[int] = field(default_factory=set)
    influence_score: float = 0.0

    @property
    def connections(self) -> Set[int]:
        return self.followers | self.following | self.mutual

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user_id,
            "followers": sorted(self.followers),
            "following": sorted(self.following),
            "mutual": sorted(self.mutual),
            "influence_score": self.influence_score,
        }


@dataclass(frozen=True)
class SocialDistance:
    distance: float
    relation_type: RelationType

    @property
    def weight(self) -> float:
        return RELATION_WEIGHTS[self.relation_type]

    def to_dict(self) -> Dict[str, object]:
        return {
            # inf is not valid JSON
            "distance": None if math.isinf(self.distance) else int(self.distance),
            "type": self.relation_type.value,
            "weight": self.weight,
        }


SocialGraph = Dict[int, SocialNode]

UNKNOWN_DISTANCE = SocialDistance(math.inf, RelationType.UNKNOWN)


def calculate_influence_score(followers_count: int, following_count: int, mutual_count: int) -> float:
    raw = (
        followers_count * INFLUENCE_WEIGHTS["followers"]
        + following_count * INFLUENCE_WEIGHTS["following"]
        + mutual_count * INFLUENCE_WEIGHTS["mutual"]
    )
    return max(0.0, min(raw, MAX_INFLUENCE))


def influence_level(score: float) -> str:
    for threshold, level in INFLUENCE_LEVELS:
        if score >= threshold:
            return level
    return "none"


def _load_edges(conn: sqlite3.Connection, user_ids: List[int]) -> List[sqlite3.Row]:
    q = sql_placeholders(len(user_ids))
    return conn.execute(
        f"""
        SELECT follower_id, following_id FROM follows
        WHERE follower_id IN ({q}) OR following_id IN ({q})
        """,
        (*user_ids, *user_ids),
    ).fetchall()


def build_social_graph(conn: sqlite3.Connection, user_ids: Iterable[int]) -> SocialGraph:
    """
    Follow graph around the given users.

    Every endpoint of a loaded edge gets a node, but only the requested
    users are guaranteed complete edge sets (and so an exact influence).
    """
    ids = list(dict.fromkeys(int(u) for u in user_ids))
    if not ids:
        return {}

    graph: SocialGraph = {u: SocialNode(user_id=u) for u in ids}
    for r in _load_edges(conn, ids):
        follower, following = int(r["follower_id"]), int(r["following_id"])
        if follower == following:
            continue
        graph.setdefault(follower, SocialNode(user_id=follower)).following.add(following)
        graph.setdefault(following, SocialNode(user_id=following)).followers.add(follower)

    for node in graph.values():
        node.mutual = node.followers & node.following
        node.influence_score = calculate_influence_score(
            len(node.followers), len(node.following), len(node.mutual)
        )
    return graph


def expand_user_ids(conn: sqlite3.Connection, user_ids: Iterable[int], depth: int = 2) -> List[int]:
    """bfs along follow edges (both directions), seeds first, then by hop"""
    seen: Dict[int, None] = dict.fromkeys(int(u) for u in user_ids)
    frontier = list(seen)
    for _ in range(max(0, depth)):
        if not frontier:
            break
        nxt: List[int] = []
        for r in _load_edges(conn, frontier):
            for u in (int(r["follower_id"]), int(r["following_id"])):
                if u not in seen:
                    seen[u] = None
                    nxt.append(u)
        frontier = nxt
    return list(seen)


def calculate_social_distance(user_a: int, user_b: int, graph: SocialGraph) -> SocialDistance:
    a = graph.get(user_a)
    b = graph.get(user_b)
    if a is None or b is None or user_a == user_b:
        return UNKNOWN_DISTANCE

    # mutual implies direct, so it goes first
    if user_b in a.mutual:
        return SocialDistance(1, RelationType.MUTUAL_FOLLOW)
    if user_b in a.following or user_b in a.followers:
        return SocialDistance(1, RelationType.DIRECT_FOLLOW)

    second: Set[int] = set()
    for mid in a.following:
        node = graph.get(mid)
        if node is not None:
            second |= node.following
    if user_b in second:
        return SocialDistance(2, RelationType.SECOND_DEGREE)

    for mid in second:
        node = graph.get(mid)
        if node is not None and user_b in node.following:
            return SocialDistance(3, RelationType.THIRD_DEGREE)

    return UNKNOWN_DISTANCE


def calculate_social_similarity(user_a: int, user_b: int, graph: SocialGraph) -> float:
    a = graph.get(user_a)
    b = graph.get(user_b)
    if a is None or b is None:
        return 0.0

    set_a = a.connections
    set_b = b.connections
    if not set_a or not set_b:
        return 0.0

    union = set_a | set_b
    return len(set_a & set_b) / len(union)


def find_social_similar_users(
    user_id: int,
    graph: SocialGraph,
    min_similarity: float = 0.1,
    max_results: Optional[int] = 50,
) -> List[Tuple[int, float]]:
    """[(other_user_id, similarity)] by similarity desc, influence desc, id asc"""
    if user_id not in graph:
        return []

    scored: List[Tuple[int, float, float]] = []
    for other_id, node in graph.items():
        if other_id == user_id:
            continue
        sim = calculate_social_similarity(user_id, other_id, graph)
        if sim >= min_similarity and sim > 0.0:
            scored.append((other_id, sim, node.influence_score))

    scored.sort(key=lambda x: (-x[1], -x[2], x[0]))
    if max_results is not None:
        scored = scored[:max_results]
    return [(uid, sim) for uid, sim, _ in scored]

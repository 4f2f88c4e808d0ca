from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
import sqlite3
import time


# shared by the tag-affinity, collaborative and social engines
INTERACTION_WEIGHTS: Dict[str, float] = {
    "publish": 5.0,
    "share": 4.0,
    "like": 3.0,
    "comment": 3.0,
    "collect": 2.0,
    "view": 1.0,
}

# what a user does *to* content (publish is authorship, not consumption)
CONSUMPTION_TYPES = ("like", "collect", "comment", "share", "view")

DEFAULT_DECAY_FACTOR = 0.95

# interaction count at which tag preferences are fully trusted
CONFIDENCE_SATURATION = 20

SECONDS_PER_DAY = 24 * 3600


def parse_tags(tags_csv: str | None) -> List[str]:
    if not tags_csv:
        return []
    parts = [t.strip() for t in tags_csv.split(",")]
    return [t for t in parts if t]


def sql_placeholders(n: int) -> str:
    return ",".join(["?"] * n)


@dataclass
class UserInteractionProfile:
    user_id: int
    by_item: Dict[int, float] = field(default_factory=dict)
    by_tag: Dict[str, float] = field(default_factory=dict)
    preferences: Dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0
    interaction_count: int = 0

    def top_tags(self, n: int = 5) -> List[str]:
        ranked = sorted(self.preferences.items(), key=lambda kv: (-kv[1], kv[0]))
        return [tag for tag, _ in ranked[:n]]


def count_user_interactions(conn: sqlite3.Connection, user_id: int) -> int:
    row = conn.execute(
        f"""
        SELECT COUNT(*) AS c FROM interactions
        WHERE user_id = ? AND event_type IN ({sql_placeholders(len(CONSUMPTION_TYPES))})
        """,
        (user_id, *CONSUMPTION_TYPES),
    ).fetchone()
    return int(row["c"]) if row else 0


def get_user_seen_item_ids(conn: sqlite3.Connection, user_id: int) -> set[int]:
    rows = conn.execute(
        f"""
        SELECT DISTINCT item_id FROM interactions
        WHERE user_id = ? AND event_type IN ({sql_placeholders(len(CONSUMPTION_TYPES))})
        """,
        (user_id, *CONSUMPTION_TYPES),
    ).fetchall()
    return {int(r["item_id"]) for r in rows}


def time_decay(ts: int, now: int, decay_factor: float = DEFAULT_DECAY_FACTOR) -> float:
    days_since = max(0.0, (now - int(ts)) / SECONDS_PER_DAY)
    return decay_factor ** days_since


def aggregate_user_interactions(
    conn: sqlite3.Connection,
    user_id: int,
    decay_factor: float = DEFAULT_DECAY_FACTOR,
    now: Optional[int] = None,
) -> UserInteractionProfile:
    """
    Weighted, time-decayed view of everything a user did to content.

    - weight = INTERACTION_WEIGHTS[type] * decay_factor ** days_since
    - accumulated per item and per tag of the item
    - tag map normalized by its max into a 0..1 preference vector
    """
    now = int(time.time()) if now is None else now

    rows = conn.execute(
        f"""
        SELECT x.item_id, x.event_type, x.ts, i.tags
        FROM interactions x
        JOIN items i ON i.id = x.item_id
        WHERE x.user_id = ? AND x.event_type IN ({sql_placeholders(len(CONSUMPTION_TYPES))})
        """,
        (user_id, *CONSUMPTION_TYPES),
    ).fetchall()

    profile = UserInteractionProfile(user_id=user_id)
    if not rows:
        return profile

    for r in rows:
        w = INTERACTION_WEIGHTS.get(r["event_type"], 1.0) * time_decay(r["ts"], now, decay_factor)
        item_id = int(r["item_id"])
        profile.by_item[item_id] = profile.by_item.get(item_id, 0.0) + w
        for tag in parse_tags(r["tags"]):
            profile.by_tag[tag] = profile.by_tag.get(tag, 0.0) + w

    profile.interaction_count = len(rows)

    max_w = max(profile.by_tag.values(), default=0.0)
    if max_w > 0.0:
        profile.preferences = {tag: w / max_w for tag, w in profile.by_tag.items()}

    profile.confidence = min(1.0, profile.interaction_count / CONFIDENCE_SATURATION)
    return profile


def calculate_user_tag_preferences(
    conn: sqlite3.Connection,
    user_id: int,
    decay_factor: float = DEFAULT_DECAY_FACTOR,
    now: Optional[int] = None,
) -> Dict[str, object]:
    profile = aggregate_user_interactions(conn, user_id, decay_factor=decay_factor, now=now)
    return {
        "preferences": profile.preferences,
        "confidence": profile.confidence,
        "interaction_count": profile.interaction_count,
    }


def get_item_interactors(
    conn: sqlite3.Connection,
    item_ids: Iterable[int],
) -> Dict[int, List[tuple[int, str]]]:
    """item_id -> [(user_id, event_type)], one entry per (user, type) pair"""
    ids = list(item_ids)
    if not ids:
        return {}
    rows = conn.execute(
        f"""
        SELECT DISTINCT item_id, user_id, event_type
        FROM interactions
        WHERE item_id IN ({sql_placeholders(len(ids))})
        """,
        tuple(ids),
    ).fetchall()
    out: Dict[int, List[tuple[int, str]]] = {i: [] for i in ids}
    for r in rows:
        out[int(r["item_id"])].append((int(r["user_id"]), str(r["event_type"])))
    return out

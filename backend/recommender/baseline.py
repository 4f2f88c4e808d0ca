from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import math
import sqlite3
import time

from backend.recommender.interactions import parse_tags, sql_placeholders


@dataclass
class ScoredItem:
    item_id: int
    title: str
    tags: List[str]
    score: float
    hot_score: float
    created_at: int
    recommendation_type: str
    stats: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Pagination:
    page: int
    limit: int
    skip: int
    total: int
    hasMore: bool
    totalPages: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_ITEM_COLUMNS = "i.id AS item_id, i.title AS title, i.tags AS tags, i.hot_score AS hot_score, i.created_at AS created_at"


def row_to_item(r: sqlite3.Row, score: float, recommendation_type: str) -> ScoredItem:
    return ScoredItem(
        item_id=int(r["item_id"]),
        title=str(r["title"]),
        tags=parse_tags(r["tags"]),
        score=float(score),
        hot_score=float(r["hot_score"] or 0.0),
        created_at=int(r["created_at"]),
        recommendation_type=recommendation_type,
    )


def normalize_hot_score(hot_score: float, scale: float = 1000.0) -> float:
    if scale <= 0:
        return 0.0
    return max(0.0, min(float(hot_score) / scale, 1.0))


def blend_with_hot(score: float, hot_score: float, hot_score_weight: float, scale: float = 1000.0) -> float:
    # same blend every engine uses when includeHotScore is on
    if hot_score <= 0:
        return score
    return score * (1.0 - hot_score_weight) + normalize_hot_score(hot_score, scale) * hot_score_weight


def ranking_key(item: ScoredItem) -> Tuple[float, float, int]:
    # score desc, then raw hot score desc, then id asc -> fully deterministic
    return (-item.score, -item.hot_score, item.item_id)


def fetch_items(conn: sqlite3.Connection, item_ids: Iterable[int]) -> Dict[int, sqlite3.Row]:
    ids = list(dict.fromkeys(int(i) for i in item_ids))
    if not ids:
        return {}
    rows = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM items i WHERE i.status = 'public' AND i.id IN ({sql_placeholders(len(ids))})",
        tuple(ids),
    ).fetchall()
    return {int(r["item_id"]): r for r in rows}


def fetch_candidate_items(
    conn: sqlite3.Connection,
    limit: Optional[int] = None,
    tags: Sequence[str] = (),
) -> List[sqlite3.Row]:
    """public items, most popular first"""
    sql = f"SELECT {_ITEM_COLUMNS} FROM items i WHERE i.status = 'public'"
    params: list[object] = []
    tags = [t for t in tags if t]
    if tags:
        # tags column is csv, match whole names only
        sql += " AND (" + " OR ".join(["(',' || i.tags || ',') LIKE ?"] * len(tags)) + ")"
        params.extend(f"%,{t},%" for t in tags)
    sql += " ORDER BY i.hot_score DESC, i.id ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return conn.execute(sql, tuple(params)).fetchall()


def get_hot_recommendations(
    conn: sqlite3.Connection,
    limit: Optional[int] = None,
    exclude_ids: Iterable[int] = (),
    tags: Sequence[str] = (),
    recommendation_type: str = "hot",
) -> List[ScoredItem]:
    """
      popularity baseline:
    - candidates = public items by hot_score desc (ties by id)
    - score = raw hot_score

    Also used verbatim as the fallback list of the personalised engines,
    only the recommendation_type differs.
    """
    excluded = {int(i) for i in exclude_ids}
    rows = fetch_candidate_items(conn, limit=None if excluded else limit, tags=tags)

    out: List[ScoredItem] = []
    for r in rows:
        if int(r["item_id"]) in excluded:
            continue
        out.append(row_to_item(r, float(r["hot_score"] or 0.0), recommendation_type))
        if limit is not None and len(out) >= limit:
            break
    return out


def get_recency_recommendations(
    conn: sqlite3.Connection,
    limit: int = 50,
    half_life_hours: float = 24.0,
    now: Optional[int] = None,
) -> List[ScoredItem]:
    """
      recency baseline:
    - newest public items first
    - score = 0.5 ** (age_hours / half_life), so a brand new item scores 1
    """
    now = int(time.time()) if now is None else now
    rows = conn.execute(
        f"""
        SELECT {_ITEM_COLUMNS} FROM items i
        WHERE i.status = 'public'
        ORDER BY i.created_at DESC, i.id ASC
        LIMIT ?
        """,
        (int(limit),),
    ).fetchall()

    out: List[ScoredItem] = []
    for r in rows:
        age_hours = max(0.0, (now - int(r["created_at"])) / 3600.0)
        score = math.pow(0.5, age_hours / half_life_hours) if half_life_hours > 0 else 0.0
        item = row_to_item(r, score, "recency")
        item.stats = {"age_hours": age_hours}
        out.append(item)
    return out


def paginate(
    items: Sequence[Any],
    page: int,
    limit: int,
    exclude_ids: Iterable[int] = (),
    id_of=lambda x: x.item_id,
) -> Tuple[List[Any], Pagination]:
    """drop excluded ids first, then slice the requested page"""
    page = max(1, int(page))
    limit = max(1, int(limit))
    excluded = {int(i) for i in exclude_ids}

    remaining = [x for x in items if int(id_of(x)) not in excluded] if excluded else list(items)
    skip = (page - 1) * limit
    total = len(remaining)

    return remaining[skip: skip + limit], Pagination(
        page=page,
        limit=limit,
        skip=skip,
        total=total,
        hasMore=skip + limit < total,
        totalPages=math.ceil(total / limit) if total else 0,
    )

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
import json
import logging
import sqlite3
import time
import uuid

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from backend.app.errors import NotFoundError, ValidationError
from backend.recommender.interactions import count_user_interactions, parse_tags

logger = logging.getLogger(__name__)

# interaction type -> boolean outcome column
FLAG_COLUMNS: Dict[str, str] = {
    "click": "is_clicked",
    "like": "is_liked",
    "share": "is_shared",
    "comment": "is_commented",
    "collect": "is_collected",
    "dislike": "is_disliked",
}
VALUE_INTERACTIONS = ("view", "rate")
INTERACTION_TYPES = tuple(FLAG_COLUMNS) + VALUE_INTERACTIONS

# the four positive engagement signals, also the engagement denominator
ENGAGEMENT_COLUMNS = ("is_liked", "is_shared", "is_commented", "is_collected")

NEW_USER_INTERACTIONS = 5


class NewImpression(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    user_id: int = Field(..., ge=1)
    item_id: int = Field(..., ge=1)
    algorithm: str = Field(..., min_length=1, max_length=64)
    score: float
    rank: int = Field(..., ge=1)
    experiment_id: Optional[str] = None
    experiment_variant: Optional[str] = None
    context_page: str = Field("home", min_length=1, max_length=32)
    context_position: Optional[int] = Field(default=None, ge=1)
    context_session: Optional[str] = None
    user_features: Optional[Dict[str, Any]] = None
    item_features: Optional[Dict[str, Any]] = None
    recommended_at: Optional[int] = Field(default=None, ge=0)


@dataclass
class ImpressionSnapshot:
    id: str
    user_id: int
    item_id: int
    algorithm: str
    score: float
    rank: int
    experiment_id: Optional[str]
    experiment_variant: Optional[str]
    context: Dict[str, Any]
    user_features: Dict[str, Any]
    item_features: Dict[str, Any]
    is_clicked: bool
    is_liked: bool
    is_shared: bool
    is_commented: bool
    is_collected: bool
    is_disliked: bool
    view_duration: float
    user_rating: Optional[float]
    time_to_interact: Optional[int]
    ctr: Optional[float]
    engagement_rate: Optional[float]
    satisfaction_score: Optional[float]
    recommended_at: int
    interacted_at: Optional[int]

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "ImpressionSnapshot":
        return cls(
            id=str(r["id"]),
            user_id=int(r["user_id"]),
            item_id=int(r["item_id"]),
            algorithm=str(r["algorithm"]),
            score=float(r["score"]),
            rank=int(r["rank"]),
            experiment_id=r["experiment_id"],
            experiment_variant=r["experiment_variant"],
            context={
                "page": r["context_page"],
                "position": int(r["context_position"]),
                "session": r["context_session"],
            },
            user_features=json.loads(r["user_features_json"]),
            item_features=json.loads(r["item_features_json"]),
            is_clicked=bool(r["is_clicked"]),
            is_liked=bool(r["is_liked"]),
            is_shared=bool(r["is_shared"]),
            is_commented=bool(r["is_commented"]),
            is_collected=bool(r["is_collected"]),
            is_disliked=bool(r["is_disliked"]),
            view_duration=float(r["view_duration"] or 0.0),
            user_rating=float(r["user_rating"]) if r["user_rating"] is not None else None,
            time_to_interact=int(r["time_to_interact"]) if r["time_to_interact"] is not None else None,
            ctr=r["ctr"],
            engagement_rate=r["engagement_rate"],
            satisfaction_score=r["satisfaction_score"],
            recommended_at=int(r["recommended_at"]),
            interacted_at=int(r["interacted_at"]) if r["interacted_at"] is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def derive_metrics(flags: Mapping[str, Any], user_rating: Optional[float]) -> Tuple[float, float, Optional[float]]:
    """
    (ctr, engagement_rate, satisfaction_score) from the outcome flags.

    - ctr = 1 if clicked else 0
    - engagement = positive signals / 4, repeats don't count twice
    - satisfaction = rating/5, else max(0, (positive - dislike)/4), else None
    """
    ctr = 1.0 if flags.get("is_clicked") else 0.0
    positive = sum(1 for c in ENGAGEMENT_COLUMNS if flags.get(c))
    engagement_rate = positive / len(ENGAGEMENT_COLUMNS)

    if user_rating is not None:
        satisfaction: Optional[float] = float(user_rating) / 5.0
    else:
        negative = 1 if flags.get("is_disliked") else 0
        if positive == 0 and negative == 0:
            satisfaction = None
        else:
            satisfaction = max(0.0, (positive - negative) / len(ENGAGEMENT_COLUMNS))
    return ctr, engagement_rate, satisfaction


@dataclass
class AlgorithmStats:
    algorithm: str
    total_recommendations: int = 0
    total_clicks: int = 0
    total_likes: int = 0
    total_shares: int = 0
    total_comments: int = 0
    total_collections: int = 0
    total_dislikes: int = 0
    ctr: float = 0.0
    engagement_rate: float = 0.0
    avg_view_duration: float = 0.0
    avg_rating: float = 0.0
    avg_satisfaction: float = 0.0
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExperimentVariantStats:
    experiment_id: str
    variant: str
    sample_size: int = 0
    total_clicks: int = 0
    total_likes: int = 0
    total_shares: int = 0
    total_comments: int = 0
    total_collections: int = 0
    total_dislikes: int = 0
    ctr: float = 0.0
    engagement_rate: float = 0.0
    avg_view_duration: float = 0.0
    avg_rating: float = 0.0
    satisfaction_score: float = 0.0
    extra: Dict[str, float] = field(default_factory=dict)

    def metric(self, name: str) -> Optional[float]:
        if name == "satisfaction_score":
            return self.satisfaction_score
        if name in ("ctr", "engagement_rate", "avg_view_duration", "avg_rating"):
            return getattr(self, name)
        if name == "view_duration":
            return self.avg_view_duration
        if name == "user_rating":
            return self.avg_rating
        return self.extra.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_AGG_COLUMNS = """
    COUNT(*)                  AS total,
    COALESCE(SUM(is_clicked), 0)   AS clicks,
    COALESCE(SUM(is_liked), 0)     AS likes,
    COALESCE(SUM(is_shared), 0)    AS shares,
    COALESCE(SUM(is_commented), 0) AS comments,
    COALESCE(SUM(is_collected), 0) AS collections,
    COALESCE(SUM(is_disliked), 0)  AS dislikes,
    AVG(view_duration)        AS avg_view_duration,
    AVG(user_rating)          AS avg_rating,
    AVG(satisfaction_score)   AS avg_satisfaction
"""


def _window(where: List[str], params: List[object], start_ts: Optional[int], end_ts: Optional[int]) -> None:
    if start_ts is not None:
        where.append("recommended_at >= ?")
        params.append(int(start_ts))
    if end_ts is not None:
        where.append("recommended_at <= ?")
        params.append(int(end_ts))


def _rates(r: sqlite3.Row) -> Tuple[int, float, float]:
    total = int(r["total"] or 0)
    if total == 0:
        return 0, 0.0, 0.0
    engaged = int(r["likes"]) + int(r["shares"]) + int(r["comments"]) + int(r["collections"])
    return total, int(r["clicks"]) / total, engaged / (total * len(ENGAGEMENT_COLUMNS))


def _stats_from_row(algorithm: str, r: Optional[sqlite3.Row], start_ts, end_ts) -> AlgorithmStats:
    if r is None or not r["total"]:
        return AlgorithmStats(algorithm=algorithm, start_ts=start_ts, end_ts=end_ts)
    total, ctr, engagement = _rates(r)
    return AlgorithmStats(
        algorithm=algorithm,
        total_recommendations=total,
        total_clicks=int(r["clicks"]),
        total_likes=int(r["likes"]),
        total_shares=int(r["shares"]),
        total_comments=int(r["comments"]),
        total_collections=int(r["collections"]),
        total_dislikes=int(r["dislikes"]),
        ctr=ctr,
        engagement_rate=engagement,
        avg_view_duration=float(r["avg_view_duration"] or 0.0),
        avg_rating=float(r["avg_rating"] or 0.0),
        avg_satisfaction=float(r["avg_satisfaction"] or 0.0),
        start_ts=start_ts,
        end_ts=end_ts,
    )


class MetricsRecorder:
    """
    Impression log: one row per served item, outcome flags filled in later.

    Knows nothing about experiments beyond the id/variant strings it stores;
    the experiment manager reads from here, never the other way around.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # writes

    def _user_features(self, user_id: int) -> Dict[str, Any]:
        n = count_user_interactions(self.conn, user_id)
        if n >= 50:
            level = "high"
        elif n >= 10:
            level = "medium"
        else:
            level = "low"
        return {"is_new_user": n < NEW_USER_INTERACTIONS, "user_activity_level": level, "interaction_count": n}

    def _item_features(self, item_id: int, now: int) -> Dict[str, Any]:
        r = self.conn.execute(
            "SELECT tags, hot_score, created_at FROM items WHERE id = ?",
            (item_id,),
        ).fetchone()
        if r is None:
            return {"tags": [], "hot_score": 0.0, "age_hours": None}
        return {
            "tags": parse_tags(r["tags"]),
            "hot_score": float(r["hot_score"] or 0.0),
            "age_hours": max(0, (now - int(r["created_at"])) // 3600),
        }

    def record(self, data: Mapping[str, Any] | NewImpression) -> ImpressionSnapshot:
        try:
            imp = data if isinstance(data, NewImpression) else NewImpression.model_validate(data)
        except PydanticValidationError as e:
            details = e.errors(include_url=False, include_context=False, include_input=False)
            raise ValidationError("invalid impression", details=details) from e

        if imp.id is not None:
            existing = self.get_optional(imp.id)
            if existing is not None:
                return existing

        now = imp.recommended_at if imp.recommended_at is not None else int(time.time())
        impression_id = imp.id or str(uuid.uuid4())
        # frozen at serve time, never rewritten afterwards
        user_features = imp.user_features if imp.user_features is not None else self._user_features(imp.user_id)
        item_features = imp.item_features if imp.item_features is not None else self._item_features(imp.item_id, now)

        ctr, engagement, satisfaction = derive_metrics({}, None)
        self.conn.execute(
            """
            INSERT OR IGNORE INTO impressions(
              id, user_id, item_id, algorithm, score, rank, experiment_id, experiment_variant,
              context_page, context_position, context_session, user_features_json, item_features_json,
              ctr, engagement_rate, satisfaction_score, recommended_at
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                impression_id,
                imp.user_id,
                imp.item_id,
                imp.algorithm,
                float(imp.score),
                imp.rank,
                imp.experiment_id,
                imp.experiment_variant,
                imp.context_page,
                imp.context_position or imp.rank,
                imp.context_session,
                json.dumps(user_features),
                json.dumps(item_features),
                ctr,
                engagement,
                satisfaction,
                now,
            ),
        )
        self.conn.commit()
        return self.get(impression_id)

    def update(
        self,
        impression_id: str,
        interaction_type: str,
        extra: Optional[Mapping[str, Any]] = None,
        now: Optional[int] = None,
    ) -> ImpressionSnapshot:
        if interaction_type not in INTERACTION_TYPES:
            raise ValidationError(
                f"unknown interaction type: {interaction_type}",
                details={"allowed": list(INTERACTION_TYPES)},
            )
        extra = extra or {}
        now = int(time.time()) if now is None else now

        row = self._row(impression_id)
        if row is None:
            raise NotFoundError(f"impression {impression_id} not found")

        flags = {c: bool(row[c]) for c in FLAG_COLUMNS.values()}
        view_duration = float(row["view_duration"] or 0.0)
        user_rating = float(row["user_rating"]) if row["user_rating"] is not None else None

        if interaction_type in FLAG_COLUMNS:
            flags[FLAG_COLUMNS[interaction_type]] = True
        elif interaction_type == "view":
            d = _as_float(extra.get("view_duration"))
            if d is not None and d >= 0:
                view_duration = d
        else:
            rating = _as_float(extra.get("user_rating"))
            # out of range ratings are dropped, the interaction itself still counts
            if rating is not None and 1.0 <= rating <= 5.0:
                user_rating = rating

        ctr, engagement, satisfaction = derive_metrics(flags, user_rating)
        time_to_interact = row["time_to_interact"]
        if time_to_interact is None:
            time_to_interact = max(0, now - int(row["recommended_at"]))

        self.conn.execute(
            """
            UPDATE impressions SET
              is_clicked = ?, is_liked = ?, is_shared = ?, is_commented = ?, is_collected = ?, is_disliked = ?,
              view_duration = ?, user_rating = ?, time_to_interact = ?,
              ctr = ?, engagement_rate = ?, satisfaction_score = ?, interacted_at = ?
            WHERE id = ?
            """,
            (
                *(int(flags[c]) for c in FLAG_COLUMNS.values()),
                view_duration,
                user_rating,
                int(time_to_interact),
                ctr,
                engagement,
                satisfaction,
                now,
                impression_id,
            ),
        )
        self.conn.commit()
        logger.debug("impression %s updated with %s", impression_id, interaction_type)
        return self.get(impression_id)

    # reads

    def _row(self, impression_id: str) -> Optional[sqlite3.Row]:
        return self.conn.execute("SELECT * FROM impressions WHERE id = ?", (impression_id,)).fetchone()

    def get_optional(self, impression_id: str) -> Optional[ImpressionSnapshot]:
        r = self._row(impression_id)
        return ImpressionSnapshot.from_row(r) if r is not None else None

    def get(self, impression_id: str) -> ImpressionSnapshot:
        snap = self.get_optional(impression_id)
        if snap is None:
            raise NotFoundError(f"impression {impression_id} not found")
        return snap

    def get_algorithm_stats(
        self, algorithm: str, start_ts: Optional[int] = None, end_ts: Optional[int] = None
    ) -> AlgorithmStats:
        where, params = ["algorithm = ?"], [algorithm]
        _window(where, params, start_ts, end_ts)
        r = self.conn.execute(
            f"SELECT {_AGG_COLUMNS} FROM impressions WHERE {' AND '.join(where)}",
            tuple(params),
        ).fetchone()
        return _stats_from_row(algorithm, r, start_ts, end_ts)

    def get_overall_stats(self, start_ts: Optional[int] = None, end_ts: Optional[int] = None) -> AlgorithmStats:
        where: List[str] = ["1 = 1"]
        params: List[object] = []
        _window(where, params, start_ts, end_ts)
        r = self.conn.execute(
            f"SELECT {_AGG_COLUMNS} FROM impressions WHERE {' AND '.join(where)}",
            tuple(params),
        ).fetchone()
        return _stats_from_row("all", r, start_ts, end_ts)

    def get_algorithm_comparison(
        self, start_ts: Optional[int] = None, end_ts: Optional[int] = None
    ) -> List[AlgorithmStats]:
        """one entry per algorithm seen in the window, best ctr first"""
        where: List[str] = ["1 = 1"]
        params: List[object] = []
        _window(where, params, start_ts, end_ts)
        rows = self.conn.execute(
            f"""
            SELECT algorithm, {_AGG_COLUMNS} FROM impressions
            WHERE {' AND '.join(where)}
            GROUP BY algorithm
            """,
            tuple(params),
        ).fetchall()
        out = [_stats_from_row(str(r["algorithm"]), r, start_ts, end_ts) for r in rows]
        out.sort(key=lambda s: (-s.ctr, -s.engagement_rate, s.algorithm))
        return out

    def get_experiment_results(
        self, experiment_id: str, start_ts: Optional[int] = None, end_ts: Optional[int] = None
    ) -> List[ExperimentVariantStats]:
        where, params = ["experiment_id = ?", "experiment_variant IS NOT NULL"], [experiment_id]
        _window(where, params, start_ts, end_ts)
        rows = self.conn.execute(
            f"""
            SELECT experiment_variant, {_AGG_COLUMNS} FROM impressions
            WHERE {' AND '.join(where)}
            GROUP BY experiment_variant
            ORDER BY experiment_variant
            """,
            tuple(params),
        ).fetchall()

        out: List[ExperimentVariantStats] = []
        for r in rows:
            total, ctr, engagement = _rates(r)
            out.append(
                ExperimentVariantStats(
                    experiment_id=experiment_id,
                    variant=str(r["experiment_variant"]),
                    sample_size=total,
                    total_clicks=int(r["clicks"]),
                    total_likes=int(r["likes"]),
                    total_shares=int(r["shares"]),
                    total_comments=int(r["comments"]),
                    total_collections=int(r["collections"]),
                    total_dislikes=int(r["dislikes"]),
                    ctr=ctr,
                    engagement_rate=engagement,
                    avg_view_duration=float(r["avg_view_duration"] or 0.0),
                    avg_rating=float(r["avg_rating"] or 0.0),
                    satisfaction_score=float(r["avg_satisfaction"] or 0.0),
                )
            )
        return out

    def get_daily_stats(self, start_ts: Optional[int] = None, end_ts: Optional[int] = None) -> List[Dict[str, Any]]:
        where: List[str] = ["1 = 1"]
        params: List[object] = []
        _window(where, params, start_ts, end_ts)
        rows = self.conn.execute(
            f"""
            SELECT date(recommended_at, 'unixepoch') AS day, {_AGG_COLUMNS} FROM impressions
            WHERE {' AND '.join(where)}
            GROUP BY day
            ORDER BY day
            """,
            tuple(params),
        ).fetchall()

        out: List[Dict[str, Any]] = []
        for r in rows:
            total, ctr, engagement = _rates(r)
            out.append({"date": r["day"], "total_recommendations": total, "ctr": ctr, "engagement_rate": engagement})
        return out

    def get_user_effectiveness(
        self, user_id: int, start_ts: Optional[int] = None, end_ts: Optional[int] = None
    ) -> Dict[str, Any]:
        where, params = ["user_id = ?"], [user_id]
        _window(where, params, start_ts, end_ts)
        cond = " AND ".join(where)

        overall = self.conn.execute(f"SELECT {_AGG_COLUMNS} FROM impressions WHERE {cond}", tuple(params)).fetchone()
        by_algo = self.conn.execute(
            f"SELECT algorithm, {_AGG_COLUMNS} FROM impressions WHERE {cond} GROUP BY algorithm ORDER BY algorithm",
            tuple(params),
        ).fetchall()

        summary = _stats_from_row("all", overall, start_ts, end_ts)
        algorithms = [_stats_from_row(str(r["algorithm"]), r, start_ts, end_ts) for r in by_algo]
        best = max(algorithms, key=lambda s: (s.ctr, s.engagement_rate), default=None)
        return {
            "user_id": user_id,
            "total_recommendations": summary.total_recommendations,
            "ctr": summary.ctr,
            "engagement_rate": summary.engagement_rate,
            "avg_view_duration": summary.avg_view_duration,
            "avg_rating": summary.avg_rating,
            "avg_satisfaction": summary.avg_satisfaction,
            "best_algorithm": best.algorithm if best else None,
            "by_algorithm": [s.to_dict() for s in algorithms],
        }


def _as_float(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Protocol, Sequence, Tuple
import hashlib
import json
import logging
import math
import sqlite3
import time

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from scipy.stats import norm

from backend.analytics.metrics import ExperimentVariantStats
from backend.app.errors import ConflictError, NotFoundError, RankerError, ValidationError

logger = logging.getLogger(__name__)

ExperimentType = Literal[
    "algorithm_comparison",
    "parameter_tuning",
    "feature_testing",
    "ui_variation",
    "content_variation",
]
MetricName = Literal[
    "ctr",
    "engagement_rate",
    "satisfaction_score",
    "retention_rate",
    "conversion_rate",
    "revenue_per_user",
]
SecondaryMetricName = Literal[
    "ctr",
    "engagement_rate",
    "satisfaction_score",
    "retention_rate",
    "conversion_rate",
    "revenue_per_user",
    "avg_view_duration",
    "time_to_interact",
]
VariantId = Literal["A", "B", "control"]

STATUSES = ("draft", "active", "paused", "completed", "cancelled")
TERMINAL_STATUSES = ("completed", "cancelled")

# draft -> active <-> paused -> completed, cancel from anything non-terminal
TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "draft": ("active", "cancelled"),
    "active": ("paused", "completed", "cancelled"),
    "paused": ("active", "completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

TRAFFIC_TOLERANCE = 0.01


EngineName = Literal["hot", "recency", "content", "collaborative", "social_collaborative"]


class VariantConfiguration(BaseModel):
    # free-form per variant, only the blend weights are understood here
    model_config = ConfigDict(extra="allow")

    weights: Optional[Dict[EngineName, float]] = None

    @model_validator(mode="after")
    def check_weights(self) -> "VariantConfiguration":
        if self.weights is None:
            return self
        for engine, w in self.weights.items():
            if not math.isfinite(w) or w < 0:
                raise ValueError(f"weight for {engine} must be a finite number >= 0")
        if self.weights and sum(self.weights.values()) <= 0:
            raise ValueError("variant weights must not all be zero")
        return self


class VariantSpec(BaseModel):
    id: VariantId
    name: str = ""
    traffic_percentage: float = Field(..., ge=0, le=100)
    configuration: VariantConfiguration = Field(default_factory=VariantConfiguration)


class StatisticalSettings(BaseModel):
    confidence_level: float = Field(0.95, gt=0, lt=1)
    minimum_sample_size: int = Field(1000, ge=1)
    minimum_duration_days: int = Field(7, ge=0)


class AutomationSettings(BaseModel):
    auto_stop: bool = True
    auto_winner_selection: bool = False
    minimum_improvement: float = Field(0.05, ge=0)


class NotificationSettings(BaseModel):
    on_start: bool = True
    on_completion: bool = True
    on_significant_result: bool = True
    recipients: List[str] = Field(default_factory=list)


class ExperimentCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    experiment_type: ExperimentType
    primary_metric: MetricName
    secondary_metrics: List[SecondaryMetricName] = Field(default_factory=list)
    variants: List[VariantSpec]
    target_audience: Dict[str, Any] = Field(default_factory=dict)
    start_ts: int = Field(..., ge=0)
    end_ts: int = Field(..., ge=0)
    statistical_settings: StatisticalSettings = Field(default_factory=StatisticalSettings)
    automation: AutomationSettings = Field(default_factory=AutomationSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    created_by: Optional[int] = None

    @model_validator(mode="after")
    def check_variants_and_dates(self) -> "ExperimentCreate":
        if len(self.variants) < 2:
            raise ValueError("at least two variants are required")
        ids = [v.id for v in self.variants]
        if len(set(ids)) != len(ids):
            raise ValueError("variant ids must be unique")
        total = sum(v.traffic_percentage for v in self.variants)
        if abs(total - 100.0) > TRAFFIC_TOLERANCE:
            raise ValueError(f"variant traffic must sum to 100, got {total}")
        if self.end_ts <= self.start_ts:
            raise ValueError("end_ts must be after start_ts")
        return self


class ExperimentMetricsSource(Protocol):
    """read-only slice of the metrics recorder the manager depends on"""

    def get_experiment_results(
        self, experiment_id: str, start_ts: Optional[int] = None, end_ts: Optional[int] = None
    ) -> List[ExperimentVariantStats]: ...


def empty_results() -> Dict[str, Any]:
    return {
        "winner_variant": None,
        "statistical_significance": None,
        "p_value": None,
        "effect_size": None,
        "improvement": None,
        "sample_sizes": {},
        "metric_results": {},
        "evaluated_at": None,
    }


@dataclass
class Experiment:
    id: str
    name: str
    experiment_type: str
    primary_metric: str
    variants: List[Dict[str, Any]]
    start_ts: int
    end_ts: int
    description: str = ""
    secondary_metrics: List[str] = field(default_factory=list)
    target_audience: Dict[str, Any] = field(default_factory=dict)
    status: str = "draft"
    statistical_settings: Dict[str, Any] = field(default_factory=lambda: StatisticalSettings().model_dump())
    automation: Dict[str, Any] = field(default_factory=lambda: AutomationSettings().model_dump())
    notifications: Dict[str, Any] = field(default_factory=lambda: NotificationSettings().model_dump())
    results: Dict[str, Any] = field(default_factory=empty_results)
    created_by: Optional[int] = None
    created_at: int = 0
    updated_at: int = 0

    def is_active(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return self.status == "active" and self.start_ts <= now <= self.end_ts

    def is_completed(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return self.status == "completed" or now > self.end_ts

    @property
    def duration_days(self) -> int:
        return math.ceil((self.end_ts - self.start_ts) / 86400)

    @property
    def minimum_improvement(self) -> float:
        return float(self.automation.get("minimum_improvement", 0.05))

    def compared_variants(self) -> Tuple[str, str]:
        """(baseline, treatment): A vs B when both exist, else the first two declared"""
        ids = [str(v["id"]) for v in self.variants]
        if "A" in ids and "B" in ids:
            return "A", "B"
        return ids[0], ids[1]

    def _metric_pair(self) -> Optional[Tuple[float, float]]:
        metric_results = self.results.get("metric_results") or {}
        a_id, b_id = self.compared_variants()
        a = (metric_results.get(a_id) or {}).get(self.primary_metric)
        b = (metric_results.get(b_id) or {}).get(self.primary_metric)
        if a is None or b is None:
            return None
        return float(a), float(b)

    def improvement(self) -> Optional[float]:
        pair = self._metric_pair()
        if pair is None:
            return None
        a, b = pair
        if a == 0:
            return math.inf if b > 0 else 0.0
        return (b - a) / a

    def check_statistical_significance(self) -> bool:
        imp = self.improvement()
        if imp is None:
            return False
        return abs(imp) > self.minimum_improvement

    def select_winner(self) -> str:
        if not self.check_statistical_significance():
            winner = "none"
        else:
            a_id, b_id = self.compared_variants()
            a, b = self._metric_pair()
            winner = b_id if b > a else a_id
        self.results["winner_variant"] = winner
        return winner

    def variant_config(self, variant_id: str) -> Dict[str, Any]:
        for v in self.variants:
            if v["id"] == variant_id:
                cfg = v.get("configuration")
                return dict(cfg) if isinstance(cfg, dict) else {}
        return {}

    def to_dict(self, now: Optional[int] = None) -> Dict[str, Any]:
        out = asdict(self)
        out["is_active"] = self.is_active(now)
        out["is_completed"] = self.is_completed(now)
        out["duration_days"] = self.duration_days
        return out

    @classmethod
    def from_row(cls, r: sqlite3.Row) -> "Experiment":
        results = empty_results()
        results.update(json.loads(r["results_json"] or "{}"))
        return cls(
            id=str(r["id"]),
            name=str(r["name"]),
            description=str(r["description"] or ""),
            experiment_type=str(r["experiment_type"]),
            primary_metric=str(r["primary_metric"]),
            secondary_metrics=json.loads(r["secondary_metrics_json"] or "[]"),
            variants=json.loads(r["variants_json"]),
            target_audience=json.loads(r["target_audience_json"] or "{}"),
            start_ts=int(r["start_ts"]),
            end_ts=int(r["end_ts"]),
            status=str(r["status"]),
            statistical_settings=json.loads(r["statistical_settings_json"] or "{}"),
            automation=json.loads(r["automation_json"] or "{}"),
            notifications=json.loads(r["notifications_json"] or "{}"),
            results=results,
            created_by=r["created_by"],
            created_at=int(r["created_at"]),
            updated_at=int(r["updated_at"]),
        )


def two_proportion_p_value(successes_a: int, n_a: int, successes_b: int, n_b: int) -> Optional[float]:
    """two-sided p-value of a pooled two-proportion z-test, None when undefined"""
    if n_a <= 0 or n_b <= 0:
        return None
    p_a, p_b = successes_a / n_a, successes_b / n_b
    pooled = (successes_a + successes_b) / (n_a + n_b)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n_a + 1 / n_b))
    if se == 0:
        return None
    z = (p_b - p_a) / se
    return float(2 * norm.sf(abs(z)))


def _rate_trials(stats: ExperimentVariantStats, metric: str) -> Optional[Tuple[int, int]]:
    if metric == "ctr":
        return stats.total_clicks, stats.sample_size
    if metric == "engagement_rate":
        engaged = stats.total_likes + stats.total_shares + stats.total_comments + stats.total_collections
        return engaged, stats.sample_size * 4
    return None


class ExperimentManager:
    def __init__(self, conn: sqlite3.Connection, metrics: Optional[ExperimentMetricsSource] = None):
        self.conn = conn
        self.metrics = metrics

    def create(self, data: Mapping[str, Any] | ExperimentCreate, now: Optional[int] = None) -> Experiment:
        try:
            req = data if isinstance(data, ExperimentCreate) else ExperimentCreate.model_validate(data)
        except PydanticValidationError as e:
            details = e.errors(include_url=False, include_context=False, include_input=False)
            raise ValidationError("invalid experiment", details=details) from e

        if self._row(req.id) is not None:
            raise ConflictError(f"experiment {req.id} already exists")

        now = int(time.time()) if now is None else now
        exp = Experiment(
            id=req.id,
            name=req.name,
            description=req.description,
            experiment_type=req.experiment_type,
            primary_metric=req.primary_metric,
            secondary_metrics=list(req.secondary_metrics),
            variants=[v.model_dump(exclude_none=True) for v in req.variants],
            target_audience=req.target_audience,
            start_ts=req.start_ts,
            end_ts=req.end_ts,
            statistical_settings=req.statistical_settings.model_dump(),
            automation=req.automation.model_dump(),
            notifications=req.notifications.model_dump(),
            created_by=req.created_by,
            created_at=now,
            updated_at=now,
        )
        try:
            self.conn.execute(
                """
                INSERT INTO experiments(
                  id, name, description, experiment_type, primary_metric, secondary_metrics_json,
                  variants_json, target_audience_json, start_ts, end_ts, status,
                  statistical_settings_json, automation_json, notifications_json, results_json,
                  created_by, created_at, updated_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    exp.id,
                    exp.name,
                    exp.description,
                    exp.experiment_type,
                    exp.primary_metric,
                    json.dumps(exp.secondary_metrics),
                    json.dumps(exp.variants),
                    json.dumps(exp.target_audience),
                    exp.start_ts,
                    exp.end_ts,
                    exp.status,
                    json.dumps(exp.statistical_settings),
                    json.dumps(exp.automation),
                    json.dumps(exp.notifications),
                    json.dumps(exp.results),
                    exp.created_by,
                    exp.created_at,
                    exp.updated_at,
                ),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as e:
            # lost a race with another create of the same id
            raise ConflictError(f"experiment {exp.id} already exists") from e

        logger.info("experiment %s created (%s, %d variants)", exp.id, exp.experiment_type, len(exp.variants))
        return exp

    def _row(self, experiment_id: str) -> Optional[sqlite3.Row]:
        return self.conn.execute("SELECT * FROM experiments WHERE id = ?", (experiment_id,)).fetchone()

    def get(self, experiment_id: str) -> Experiment:
        r = self._row(experiment_id)
        if r is None:
            raise NotFoundError(f"experiment {experiment_id} not found")
        return Experiment.from_row(r)

    def list(
        self,
        status: Optional[str] = None,
        experiment_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Experiment], int]:
        where: List[str] = ["1 = 1"]
        params: List[object] = []
        if status is not None:
            where.append("status = ?")
            params.append(status)
        if experiment_type is not None:
            where.append("experiment_type = ?")
            params.append(experiment_type)
        cond = " AND ".join(where)

        total = int(self.conn.execute(f"SELECT COUNT(*) AS c FROM experiments WHERE {cond}", tuple(params)).fetchone()["c"])
        rows = self.conn.execute(
            f"SELECT * FROM experiments WHERE {cond} ORDER BY created_at DESC, id ASC LIMIT ? OFFSET ?",
            (*params, int(limit), (max(1, int(page)) - 1) * int(limit)),
        ).fetchall()
        return [Experiment.from_row(r) for r in rows], total

    def save(self, exp: Experiment, now: Optional[int] = None) -> Experiment:
        """last write wins, no version check"""
        exp.updated_at = int(time.time()) if now is None else now
        self.conn.execute(
            "UPDATE experiments SET status = ?, results_json = ?, updated_at = ? WHERE id = ?",
            (exp.status, json.dumps(exp.results), exp.updated_at, exp.id),
        )
        self.conn.commit()
        return exp

    def update_status(self, experiment_id: str, status: str, now: Optional[int] = None) -> Experiment:
        if status not in STATUSES:
            raise ValidationError(f"unknown status: {status}", details={"allowed": list(STATUSES)})
        exp = self.get(experiment_id)
        if status == exp.status:
            return exp
        if status not in TRANSITIONS[exp.status]:
            raise ValidationError(
                f"cannot move experiment {experiment_id} from {exp.status} to {status}",
                details={"allowed": list(TRANSITIONS[exp.status])},
            )
        exp.status = status
        self.save(exp, now=now)
        logger.info("experiment %s -> %s", experiment_id, status)
        return exp

    def collect_results(self, exp: Experiment) -> List[ExperimentVariantStats]:
        if self.metrics is None:
            return []
        return self.metrics.get_experiment_results(exp.id, exp.start_ts, exp.end_ts)

    def evaluate(self, exp: Experiment, now: Optional[int] = None, persist: bool = True) -> Experiment:
        """
        Refresh results from the metrics side, decide significance and the
        winner, then apply the automation settings.

        - auto_winner_selection: a real winner completes the experiment
        - auto_stop: passing end_ts completes it
        """
        now = int(time.time()) if now is None else now
        stats = {s.variant: s for s in self.collect_results(exp)}

        metrics = [exp.primary_metric, *[m for m in exp.secondary_metrics if m != exp.primary_metric]]
        exp.results["sample_sizes"] = {v["id"]: (stats[v["id"]].sample_size if v["id"] in stats else 0) for v in exp.variants}
        exp.results["metric_results"] = {
            vid: {m: s.metric(m) for m in metrics if s.metric(m) is not None} for vid, s in stats.items()
        }

        significant = exp.check_statistical_significance()
        winner = exp.select_winner()
        imp = exp.improvement()

        a_id, b_id = exp.compared_variants()
        p_value = None
        effect_size = None
        if a_id in stats and b_id in stats:
            a_val, b_val = stats[a_id].metric(exp.primary_metric), stats[b_id].metric(exp.primary_metric)
            if a_val is not None and b_val is not None:
                effect_size = b_val - a_val
            ta, tb = _rate_trials(stats[a_id], exp.primary_metric), _rate_trials(stats[b_id], exp.primary_metric)
            if ta is not None and tb is not None:
                p_value = two_proportion_p_value(ta[0], ta[1], tb[0], tb[1])

        min_sample = int(exp.statistical_settings.get("minimum_sample_size", 0))
        exp.results.update(
            {
                "statistical_significance": significant,
                "improvement": None if imp is None or math.isinf(imp) else imp,
                "p_value": p_value,
                "effect_size": effect_size,
                "minimum_sample_size_reached": all(
                    n >= min_sample for n in exp.results["sample_sizes"].values()
                ),
                "evaluated_at": now,
            }
        )

        if exp.status in ("active", "paused"):
            if exp.automation.get("auto_winner_selection") and winner != "none":
                exp.status = "completed"
            elif exp.automation.get("auto_stop", True) and now > exp.end_ts:
                exp.status = "completed"

        if persist:
            self.save(exp, now=now)
            logger.info(
                "experiment %s evaluated: significant=%s winner=%s status=%s",
                exp.id,
                significant,
                winner,
                exp.status,
            )
        return exp

    def get_active_tests(self, now: Optional[int] = None) -> List[Experiment]:
        """never raises, serving must not depend on experiments being readable"""
        now = int(time.time()) if now is None else now
        try:
            rows = self.conn.execute("SELECT * FROM experiments WHERE status = 'active'").fetchall()
            tests = [Experiment.from_row(r) for r in rows]
        except (sqlite3.Error, RankerError, ValueError) as e:
            logger.error("failed to load active experiments: %s", e)
            return []
        # date window is filtered here, not in sql
        return [t for t in tests if t.start_ts <= now <= t.end_ts]

    def get_evaluable(self, now: Optional[int] = None) -> List[Experiment]:
        """non-cancelled experiments that are completed or past their end"""
        now = int(time.time()) if now is None else now
        rows = self.conn.execute(
            "SELECT * FROM experiments WHERE status != 'cancelled' AND (status = 'completed' OR end_ts < ?)",
            (now,),
        ).fetchall()
        return [e for e in (Experiment.from_row(r) for r in rows) if e.is_completed(now)]


def assign_variant(exp: Experiment, user_id: int) -> str:
    """sticky bucket in [0, 100) from sha1(experiment, user), walked over cumulative traffic"""
    digest = hashlib.sha1(f"{exp.id}:{user_id}".encode("utf-8")).hexdigest()
    bucket = (int(digest[:8], 16) % 10000) / 100.0

    cumulative = 0.0
    for v in exp.variants:
        cumulative += float(v["traffic_percentage"])
        if bucket < cumulative:
            return str(v["id"])
    return str(exp.variants[-1]["id"])


def pick_experiment(tests: Sequence[Experiment], experiment_type: str = "algorithm_comparison") -> Optional[Experiment]:
    """oldest running experiment of the given type"""
    candidates = [t for t in tests if t.experiment_type == experiment_type]
    if not candidates:
        return None
    return min(candidates, key=lambda t: (t.start_ts, t.id))

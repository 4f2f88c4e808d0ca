from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "SocialFeedRanker"
    app_env: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/app.db"

    # ranking snapshots, social stats and analytics aggregates
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 0.5

    # blend weights for the mixed ranker (normalized to sum 1 at request time)
    weight_hot: float = 0.25
    weight_recency: float = 0.20
    weight_content: float = 0.20
    weight_collaborative: float = 0.15
    weight_social_collaborative: float = 0.20

    # below this many interactions a user is treated as cold start
    cold_start_min_interactions: int = 5

    interaction_decay_factor: float = 0.95
    recency_half_life_hours: float = 24.0
    hot_score_scale: float = 1000.0
    candidate_limit: int = 500

    # per-request budget shared by all engine sub-tasks
    engine_timeout_seconds: float = 2.0
    ranking_cache_ttl_seconds: int = 600

    monitor_enabled: bool = True
    monitor_experiments_reload_seconds: int = 3600
    monitor_metrics_refresh_seconds: int = 300
    monitor_experiment_evaluation_seconds: int = 3600
    notifications_enabled: bool = True

    @property
    def blend_weights(self) -> Dict[str, float]:
        return {
            "hot": self.weight_hot,
            "recency": self.weight_recency,
            "content": self.weight_content,
            "collaborative": self.weight_collaborative,
            "social_collaborative": self.weight_social_collaborative,
        }


settings = Settings()

"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables."""

    # Cache backend (no URL = in-process memory store)
    redis_url: Optional[str] = None
    cache_connect_timeout_seconds: float = 3.0
    # How long an expired entry is kept around for the budget-exhausted fallback
    cache_stale_retention_seconds: int = 86400

    # Upstream provider budget
    daily_budget: int = 2000
    requests_per_minute: int = 60
    budget_timezone: str = "UTC"
    # Per-resource daily allocations; protected buckets may run up to the hard cap
    budget_buckets_enabled: bool = False
    daily_hard_budget: int = 2200
    budget_bucket_scoreboard: int = 300
    budget_bucket_game_summary: int = 600
    budget_bucket_standings: int = 50
    budget_bucket_schedule: int = 50
    budget_bucket_reserve: int = 1000

    # Upstream calls
    upstream_timeout_seconds: float = 15.0
    upstream_user_agent: str = "BoxScore/1.0"
    coalesce_timeout_seconds: float = 30.0

    # Preloading
    preload_interval_seconds: float = 0.05
    preload_pace_to_budget: bool = True

    # Cache TTLs (seconds) by resource kind
    cache_ttl_live_game: int = 15
    cache_ttl_scoreboard: int = 30
    cache_ttl_box_score: int = 30
    cache_ttl_standings: int = 21600      # 6 hours
    cache_ttl_roster: int = 86400         # 24 hours
    cache_ttl_schedule: int = 43200       # 12 hours
    cache_ttl_player_stats: int = 300     # 5 minutes
    cache_ttl_rankings: int = 21600       # 6 hours

    # Status- and date-aware TTLs (seconds)
    cache_ttl_scoreboard_scheduled_today: int = 300     # 5 minutes
    cache_ttl_final_scoreboard_same_day: int = 21600    # 6 hours, stat corrections
    cache_ttl_final_scoreboard_historical: int = 86400  # 24 hours
    cache_ttl_final_box_score_same_day: int = 21600     # 6 hours, stat corrections
    cache_ttl_final_box_score: int = 604800             # 7 days

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

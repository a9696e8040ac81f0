from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings

ROOT_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Monitored services (YAML list of name/display_name/url/health_path)
    services_file: Path = ROOT_DIR / "services.yaml"

    # Poll cadence
    check_interval_ms: int = 15_000
    check_timeout_ms: int = 5_000

    # Debounce window: status flips once `failure_threshold` of the last
    # `window_size` results agree
    window_size: int = 5
    failure_threshold: int = 3
    window_ttl_seconds: int = 300  # idle monitor self-clears
    snapshot_ttl_seconds: int = 60

    # Redis (window store, status snapshot, event streams)
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "health"

    # Event bus (Redis Streams, one stream per event type)
    event_stream_prefix: str = "events"
    event_stream_maxlen: int = 10_000
    source_service: str = "health-monitor"

    # Durable storage
    db_path: Path = ROOT_DIR / "data" / "health.db"
    history_retention_days: int = 30
    history_prune_interval_seconds: int = 3600

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3020

    # Logging
    log_level: str = "INFO"


settings = Settings()

from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "vikingsync"
    log_level: str = "INFO"

    # Upstream proxy in front of OSM; read once at startup.
    backend_url: str = "http://localhost:3000"
    # Where the OAuth flow should send the user back to.
    frontend_url: str = "http://localhost:3001"
    # OAuth state tells the backend which OSM app registration to use.
    oauth_state: str = "prod"
    # Demo mode serves cached fixtures only and never calls upstream.
    demo_mode: bool = False

    # Cold normalized store for members, events, attendance and FlexiRecords.
    database_url: str = "sqlite+aiosqlite:///./vikingsync.db"
    # Hot key-value tier lives in the cold DB by default; "redis" shares it across processes.
    cache_backend: str = "sql"
    redis_url: str = "redis://localhost:6379/0"

    # Bound a single upstream request so a hung socket cannot stall the queue.
    http_timeout_ms: int = 30000

    # Retry protocol for rate-limited upstream calls.
    queue_max_retries: int = 3
    queue_base_delay_ms: int = 1000
    queue_max_delay_ms: int = 30000
    # Absolute deadline for a queued request before it is rejected.
    queue_timeout_ms: int = 300000
    # Pacing between successful calls and after a rate-limit pause.
    queue_success_gap_ms: int = 50
    queue_resume_padding_ms: int = 100

    # Per-category cache TTLs.
    ttl_flexi_list_s: int = 1800
    ttl_flexi_structure_s: int = 3600
    ttl_flexi_data_s: int = 300
    ttl_events_s: int = 600
    ttl_shared_attendance_s: int = 3600
    ttl_members_s: int = 1800
    ttl_terms_s: int = 86400

    # Trust a connectivity probe result for this long before probing again.
    network_probe_interval_s: int = 30

    # Upstream applies field writes in order; keep bulk-clear steps apart.
    sign_in_clear_gap_ms: int = 100

    # Attendance sync throttling and event window.
    event_sync_min_interval_s: int = 300
    event_sync_past_days: int = 7
    event_sync_future_days: int = 90

    # Log upstream quota when the remaining allowance drops below these marks.
    rate_limit_warn_remaining: int = 20
    rate_limit_error_remaining: int = 10


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service-wide configuration options."""

    api_v1_prefix: str = "/v1"
    service_base_url: str = "http://localhost:8000"
    deployment_env: str = "staging"
    redis_url: str = "redis://localhost:6379/0"

    github_token: str | None = None
    github_base_url: str | None = None
    github_timeout_seconds: float = 15.0
    github_per_page: int = 100
    github_max_check_runs: int = 500

    triage_default_max_log_bytes: int = 65536
    triage_max_log_bytes_cap: int = 1048576
    triage_default_max_steps: int = 50
    triage_max_steps_cap: int = 200

    rerun_default_max_attempts: int = 2

    wait_default_max_seconds: int = 900
    wait_max_seconds_cap: int = 3600
    wait_default_poll_seconds: int = 15
    wait_min_poll_seconds: int = 5
    wait_max_poll_seconds: int = 300

    production_merge_enabled: bool = False
    default_merge_method: str = "squash"
    merge_blocking_labels: list[str] = ["do-not-merge", "hold", "wip"]
    approval_public_keys: dict[str, str] = {}
    approval_token_min_length: int = 16

    lawbook_version: str = "2024-06-01"
    lawbook_max_reruns_per_job: int = 2
    lawbook_max_total_reruns_per_pr: int = 5
    lawbook_stuck_window_minutes: int = 30

    audit_signing_key: str | None = None
    audit_key_id: str | None = None

    timeseries_backend: str = "file"
    timeseries_path: str = "data/audit_events.jsonl"
    timeseries_rotate_daily: bool = False
    timeseries_table: str | None = None
    timeseries_batch_size: int = 25
    timeseries_max_pending: int = 1000
    clickhouse_url: str | None = None
    clickhouse_database: str | None = None
    clickhouse_user: str | None = None
    clickhouse_password: str | None = None

    otel_enabled: bool = False
    otel_exporter: str = "console"
    otel_prometheus_port: int = 9464
    otel_otlp_endpoint: str | None = None

    model_config = SettingsConfigDict(env_prefix="remediation_", env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.deployment_env.lower().strip() in {"prod", "production"}

    @property
    def deployment_tag(self) -> str:
        return "prod" if self.is_production else "staging"


settings = Settings()

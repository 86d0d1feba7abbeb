from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Storage
    db_path: str = "data/pulsewatch.db"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    base_url: str = "http://localhost:8000"  # used in verify / unsubscribe links

    # Logging
    log_level: str = "INFO"

    # SMTP
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_use_tls: bool = True
    smtp_user: str = ""
    smtp_password: str = ""
    email_from: str = "pulsewatch@localhost"

    # Channel defaults (seed the stored channel configs on first read)
    email_recipients: str = ""  # comma separated fallback list
    email_throttle_minutes: int = 60
    webhook_url: str = ""
    webhook_throttle_minutes: int = 60

    # Scheduling (seconds)
    default_check_interval: int = 300
    refresh_interval_seconds: int = 3600
    sweep_interval_seconds: int = 1800
    run_sweep_on_start: bool = False

    # Probes
    api_timeout_ms: int = 5000
    command_timeout_seconds: int = 30
    server_load_threshold: float = 0.8
    server_free_memory_threshold: float = 20.0  # percent

    # Forced / per-check runs skip incident detection unless enabled
    incidents_on_forced_checks: bool = False


settings = Settings()

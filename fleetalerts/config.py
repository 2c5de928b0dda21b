from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent


class EmailSettings(BaseModel):
    enabled: bool = False
    smtp_host: str = "localhost"
    smtp_port: int = 587
    sender_address: str = ""
    sender_password: str = ""
    recipient_address: str = ""
    throttle_minutes: float = 5
    # How often held (throttled) notifications are checked for sending
    flush_interval_seconds: float = 30.0


class Settings(BaseSettings):
    app_name: str = "Fleet Alerts - Alert & Escalation Engine"
    debug: bool = False
    log_level: str = "INFO"
    db_path: str = str(BASE_DIR / "db" / "fleetalerts.db")
    host: str = "127.0.0.1"
    port: int = 8780
    cors_origins: list[str] = ["http://localhost:5173"]
    # JSON rule table; the bundled default is used when unset
    rules_path: str | None = None
    # Seconds between timer sweeps
    sweep_interval: float = 5.0
    timer_retry_delays: list[float] = [0.5, 2.0, 5.0]
    # Seconds between passes that re-create timers lost to store errors
    timer_reconcile_interval: float = 60.0
    dispatch_retry_delays: list[float] = [5.0, 15.0, 30.0]
    notify_on_auto_dismiss: bool = False
    # Entities whose facts are evaluated at the same time
    fact_concurrency: int = 8
    email: EmailSettings = EmailSettings()

    model_config = {"env_file": ".env", "env_prefix": "FLEETALERTS_", "env_nested_delimiter": "__"}


settings = Settings()

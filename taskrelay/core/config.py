from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthSettings(BaseModel):
    token: str = Field(
        "change-me-to-a-secure-token",
        min_length=1,
        description="Shared bearer token checked by the broker and presented by the worker.",
    )


class BrokerSettings(BaseModel):
    host: str = Field("0.0.0.0", description="Interface the broker binds to.")
    port: int = Field(3456, ge=1, le=65535)
    poll_interval_ms: int = Field(500, ge=1, description="Re-check interval inside long-poll waits.")
    default_claim_wait_ms: int = Field(30_000, ge=0)
    max_claim_wait_ms: int = Field(60_000, ge=0)
    max_fetch_wait_ms: int = Field(300_000, ge=0)
    task_ttl_seconds: int = Field(15 * 60, ge=1, description="Age after which a task without result is dropped.")
    result_ttl_seconds: int = Field(30 * 60, ge=1, description="Age after which an unfetched result is dropped.")
    sweep_interval_seconds: int = Field(60, ge=1)
    default_command_timeout_ms: int = Field(30_000, ge=1)
    default_backend_timeout_ms: int = Field(120_000, ge=1)
    default_callback_platform: str = Field("discord", min_length=1)


class WorkerSettings(BaseModel):
    broker_url: str = Field("http://127.0.0.1:3456", description="Base URL of the broker.")
    poll_interval_ms: int = Field(500, ge=1, description="Pause used when no execution slot is free.")
    long_poll_wait_ms: int = Field(30_000, ge=0, description="How long the broker may hold a poll request.")
    max_concurrent: int = Field(3, ge=1)
    request_timeout_seconds: float = Field(10.0, ge=0.1)
    long_poll_slack_seconds: float = Field(5.0, ge=0.0)
    backoff_step_seconds: float = Field(5.0, ge=0.0)
    max_backoff_seconds: float = Field(60.0, ge=0.0)
    auth_retry_seconds: float = Field(10.0, ge=0.0)
    default_timeout_ms: int = Field(300_000, ge=1)
    shell: str = Field("/bin/sh", min_length=1)
    login_shell: bool = Field(False, description="Run commands through a login shell to load the user profile.")
    extra_path: list[str] = Field(default_factory=lambda: ["/usr/local/bin", "/opt/homebrew/bin"])
    max_output_bytes: int = Field(10 * 1024 * 1024, ge=1024)
    shutdown_grace_seconds: float = Field(1.0, ge=0.0)


class BackendSettings(BaseModel):
    executable: str = Field("claude", min_length=1, description="Backend CLI executable.")
    working_dir: str | None = Field(None, description="Working directory for backend runs (defaults to home).")
    extra_args: list[str] = Field(default_factory=lambda: ["--dangerously-skip-permissions"])
    timeout_grace_ms: int = Field(30_000, ge=0)
    transcript_path: str | None = Field(None, description="Optional file receiving live backend output.")
    screenshot_marker: str = Field(
        r"PLEASE_UPLOAD_TO_DISCORD:\s*(.+\.png)",
        description="Regex whose first group is a screenshot path announced by the backend.",
    )


class SessionSettings(BaseModel):
    session_file: str = Field("/tmp/taskrelay-sessions.json")
    session_ttl_seconds: int = Field(30 * 60, ge=1)
    session_sweep_interval_seconds: int = Field(5 * 60, ge=1)


class NotificationSettings(BaseModel):
    mode: Literal["disabled", "cli", "webhook"] = "disabled"
    cli_path: str = Field("openclaw.mjs", description="OpenClaw CLI script used to send chat messages.")
    container: str | None = Field(None, description="Run the CLI inside this docker container when set.")
    webhook_url: str | None = Field(None)
    webhook_token: str | None = Field(None)
    max_attempts: int = Field(3, ge=1)
    retry_delay_seconds: float = Field(5.0, ge=0.0)
    send_timeout_seconds: float = Field(15.0, ge=0.1)
    debounce_seconds: float = Field(3.0, ge=0.0)
    max_message_chars: int = Field(1500, ge=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    auth: AuthSettings = Field(default_factory=AuthSettings)  # type: ignore[arg-type]
    broker: BrokerSettings = Field(default_factory=BrokerSettings)  # type: ignore[arg-type]
    worker: WorkerSettings = Field(default_factory=WorkerSettings)  # type: ignore[arg-type]
    backend: BackendSettings = Field(default_factory=BackendSettings)  # type: ignore[arg-type]
    sessions: SessionSettings = Field(default_factory=SessionSettings)  # type: ignore[arg-type]
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="TASKRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()

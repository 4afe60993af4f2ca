from __future__ import annotations

import pytest
from pydantic import ValidationError

from taskrelay.core.config import Settings, get_settings


def test_nested_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("TASKRELAY_BROKER__PORT", "4567")
    monkeypatch.setenv("TASKRELAY_AUTH__TOKEN", "from-env")
    monkeypatch.setenv("TASKRELAY_NOTIFICATIONS__MODE", "webhook")

    settings = Settings()

    assert settings.broker.port == 4567
    assert settings.auth.token == "from-env"
    assert settings.notifications.mode == "webhook"


def test_overrides_bypass_the_cache() -> None:
    settings = get_settings({"worker": {"max_concurrent": 7}})

    assert settings.worker.max_concurrent == 7
    assert get_settings() is get_settings()


def test_defaults_match_relay_conventions() -> None:
    settings = Settings()

    assert settings.broker.port == 3456
    assert settings.broker.task_ttl_seconds == 15 * 60
    assert settings.broker.result_ttl_seconds == 30 * 60
    assert settings.worker.max_concurrent == 3
    assert settings.sessions.session_ttl_seconds == 30 * 60


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(worker={"max_concurrent": 0})
    with pytest.raises(ValidationError):
        Settings(notifications={"mode": "carrier-pigeon"})

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from taskrelay.broker.service import TaskBroker
from taskrelay.core.config import Settings
from taskrelay.main import create_app

TEST_TOKEN = "test-token"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        auth={"token": TEST_TOKEN},
        broker={"poll_interval_ms": 10, "default_claim_wait_ms": 0},
        worker={"poll_interval_ms": 10, "long_poll_wait_ms": 0, "shutdown_grace_seconds": 0.5},
        sessions={"session_file": str(tmp_path / "sessions.json")},
        notifications={"retry_delay_seconds": 0, "debounce_seconds": 0.05},
    )


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_TOKEN}"}


@pytest.fixture
def broker(settings: Settings) -> TaskBroker:
    return TaskBroker(settings.broker)


@pytest.fixture
def client(settings: Settings, broker: TaskBroker) -> Iterator[TestClient]:
    app = create_app(settings, broker=broker)
    with TestClient(app) as test_client:
        yield test_client

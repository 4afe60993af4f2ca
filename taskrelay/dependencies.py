from __future__ import annotations

from fastapi import Request

from .broker.service import TaskBroker
from .core.config import Settings


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_broker(request: Request) -> TaskBroker:
    return request.app.state.broker

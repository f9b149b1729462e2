from __future__ import annotations

import os

from src.api.routers.automation_config import (
    automation_postgres_dsn,
    automation_store_backend_name,
    order_sink_backend_name,
)

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def validate_persistence_profile_guardrails() -> None:
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if automation_store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_AUTOMATION_POSTGRES")
    if not automation_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_AUTOMATION_POSTGRES_DSN")
    if order_sink_backend_name() != "HTTP":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_HTTP_ORDER_SINK")
    if not os.getenv("AUTOMATION_ORDER_SINK_URL", "").strip():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_ORDER_SINK_URL")

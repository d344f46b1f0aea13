"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from privacy_vault.core.config import Settings, get_settings
from privacy_vault.ingest.pipeline import PrivacyPipeline
from privacy_vault.retention.scheduler import RetentionScheduler

_PIPELINE: PrivacyPipeline | None = None
_SCHEDULER: RetentionScheduler | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_pipeline() -> PrivacyPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = PrivacyPipeline.build(get_app_settings())
    return _PIPELINE


def get_scheduler() -> RetentionScheduler:
    global _SCHEDULER
    if _SCHEDULER is None:
        settings = get_app_settings()
        _SCHEDULER = RetentionScheduler(get_pipeline().enforcer, settings.sweep_interval_seconds)
    return _SCHEDULER


def shutdown() -> None:
    global _PIPELINE, _SCHEDULER
    if _SCHEDULER is not None:
        _SCHEDULER.stop()
        _SCHEDULER = None
    if _PIPELINE is not None:
        _PIPELINE.close()
        _PIPELINE = None


__all__ = ["get_app_settings", "get_pipeline", "get_scheduler", "shutdown"]

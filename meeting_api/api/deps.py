from __future__ import annotations

from functools import lru_cache

from ..config import settings
from ..jobs.queue import AudioQueue
from ..nlp.providers import ProviderChain, build_provider_chain
from ..services.progress_hub import ProgressHub


@lru_cache()
def get_hub() -> ProgressHub:
    return ProgressHub()


@lru_cache()
def get_queue() -> AudioQueue:
    return AudioQueue(
        attempts=settings.queue_attempts,
        backoff_ms=settings.queue_backoff_ms,
        stall_timeout_sec=settings.queue_stall_timeout_sec,
    )


@lru_cache()
def get_provider_chain() -> ProviderChain:
    return build_provider_chain(settings)

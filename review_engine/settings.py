from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_str(env: Mapping[str, str], name: str, *, default: str) -> str:
    return env.get(name, "").strip() or default


@dataclass(frozen=True)
class ReviewSettings:
    review_queue: str = "manual-review"
    processing_queue: str = "document-processing"
    rejected_queue: str = "rejected-documents"
    processing_attempts: int = 3
    rejected_attempts: int = 1
    remove_on_complete: bool = False
    remove_on_fail: bool = False
    max_write_attempts: int = 3
    bulk_max_items: int = 500
    bulk_max_workers: int = 1
    default_timeframe: str = "24h"
    pending_max_limit: int = 100

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ReviewSettings":
        env = os.environ if environ is None else environ
        return cls(
            review_queue=_env_str(env, "REVIEW_QUEUE_NAME", default=cls.review_queue),
            processing_queue=_env_str(env, "REVIEW_PROCESSING_QUEUE", default=cls.processing_queue),
            rejected_queue=_env_str(env, "REVIEW_REJECTED_QUEUE", default=cls.rejected_queue),
            processing_attempts=_env_int(
                env,
                "REVIEW_PROCESSING_ATTEMPTS",
                default=cls.processing_attempts,
                minimum=1,
            ),
            rejected_attempts=_env_int(env, "REVIEW_REJECTED_ATTEMPTS", default=cls.rejected_attempts, minimum=1),
            remove_on_complete=_env_bool(env, "REVIEW_REMOVE_ON_COMPLETE", default=cls.remove_on_complete),
            remove_on_fail=_env_bool(env, "REVIEW_REMOVE_ON_FAIL", default=cls.remove_on_fail),
            max_write_attempts=_env_int(env, "REVIEW_MAX_WRITE_ATTEMPTS", default=cls.max_write_attempts, minimum=1),
            bulk_max_items=_env_int(env, "REVIEW_BULK_MAX_ITEMS", default=cls.bulk_max_items, minimum=1),
            bulk_max_workers=_env_int(env, "REVIEW_BULK_MAX_WORKERS", default=cls.bulk_max_workers, minimum=1),
            default_timeframe=_env_str(env, "REVIEW_DEFAULT_TIMEFRAME", default=cls.default_timeframe),
            pending_max_limit=_env_int(env, "REVIEW_PENDING_MAX_LIMIT", default=cls.pending_max_limit, minimum=1),
        )

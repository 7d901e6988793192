from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from thesis_validator.models import WORK_KINDS


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("TV_REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class RuntimeSettings:
    store_backend: str
    postgres_dsn: str
    queue_visibility_timeout_ms: int
    queue_enqueue_retry_max: int
    queue_retry_backoff_base_ms: int
    queue_retry_backoff_max_ms: int
    pipeline_retry_max: int
    event_tail_limit: int
    event_poll_interval_ms: int
    worker_poll_interval_ms: int
    worker_max_messages_per_iteration: int
    worker_concurrency: dict[str, int]
    require_truestack: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RuntimeSettings":
        env = os.environ if environ is None else environ
        concurrency = {
            kind: _env_int(env, f"WORKER_CONCURRENCY_{kind.upper()}", default=1, minimum=1)
            for kind in WORK_KINDS
        }
        return cls(
            store_backend=str(env.get("TV_STORE_BACKEND", "memory")).strip().lower() or "memory",
            postgres_dsn=str(env.get("POSTGRES_DSN", "")).strip(),
            queue_visibility_timeout_ms=_env_int(
                env, "TV_QUEUE_VISIBILITY_TIMEOUT_MS", default=300_000, minimum=1
            ),
            queue_enqueue_retry_max=_env_int(env, "TV_QUEUE_ENQUEUE_RETRY_MAX", default=3),
            queue_retry_backoff_base_ms=_env_int(env, "TV_QUEUE_RETRY_BACKOFF_BASE_MS", default=50),
            queue_retry_backoff_max_ms=_env_int(env, "TV_QUEUE_RETRY_BACKOFF_MAX_MS", default=2000),
            pipeline_retry_max=_env_int(env, "TV_PIPELINE_RETRY_MAX", default=2),
            event_tail_limit=_env_int(env, "TV_EVENT_TAIL_LIMIT", default=500, minimum=1),
            event_poll_interval_ms=_env_int(env, "TV_EVENT_POLL_INTERVAL_MS", default=250, minimum=1),
            worker_poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            worker_max_messages_per_iteration=_env_int(
                env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1
            ),
            worker_concurrency=concurrency,
            require_truestack=true_stack_required(env),
        )

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from thesis_validator.errors import TransientIOFailure
from thesis_validator.models import WORK_KINDS
from thesis_validator.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None
    receipt: str | None = None
    visible_until: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _is_due(raw: str | None, *, now: datetime) -> bool:
    if not raw:
        return True
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= now


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


def _new_receipt(message_id: str) -> str:
    return f"{message_id}.{uuid.uuid4().hex[:16]}"


def _message_id_from_receipt(receipt: str) -> str:
    return receipt.split(".", maxsplit=1)[0]


class InMemoryQueueBackend:
    """Process-local queue with visibility timeout; used by tests and single-process dev runs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    def _reclaim_expired(self, queue_name: str, *, now: datetime) -> None:
        expired = [
            msg
            for msg in self._inflight.values()
            if msg.queue_name == queue_name and _is_due(msg.visible_until, now=now)
        ]
        for msg in expired:
            self._inflight.pop(msg.message_id, None)
            msg.attempt += 1
            msg.receipt = None
            msg.visible_until = None
            msg.available_at = _iso(now)
            self._queues.setdefault(queue_name, deque()).appendleft(msg)
            logger.warning("queue_visibility_expired queue=%s message_id=%s attempt=%s", queue_name, msg.message_id, msg.attempt)

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=_new_message_id(),
                queue_name=queue_name,
                payload=dict(payload),
                available_at=_iso(available_at) if isinstance(available_at, datetime) else _iso(_utcnow()),
            )
            self._queues.setdefault(queue_name, deque()).append(msg)
            return msg

    def dequeue(self, *, queue_name: str, visibility_timeout_ms: int) -> QueueMessage | None:
        with self._lock:
            now = _utcnow()
            self._reclaim_expired(queue_name, now=now)
            queue = self._queues.setdefault(queue_name, deque())
            size = len(queue)
            scanned = 0
            while scanned < size:
                msg = queue.popleft()
                if _is_due(msg.available_at, now=now):
                    msg.receipt = _new_receipt(msg.message_id)
                    msg.visible_until = _iso(now + timedelta(milliseconds=max(1, int(visibility_timeout_ms))))
                    self._inflight[msg.message_id] = msg
                    return QueueMessage(**vars(msg))
                queue.append(msg)
                scanned += 1
            return None

    def ack(self, *, receipt: str) -> bool:
        with self._lock:
            msg = self._inflight.get(_message_id_from_receipt(receipt))
            if msg is None or msg.receipt != receipt:
                return False
            self._inflight.pop(msg.message_id, None)
            return True

    def nack(self, *, receipt: str, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.get(_message_id_from_receipt(receipt))
            if msg is None or msg.receipt != receipt:
                return None
            self._inflight.pop(msg.message_id, None)
            msg.attempt += 1
            msg.receipt = None
            msg.visible_until = None
            msg.available_at = _iso(_utcnow() + timedelta(milliseconds=max(0, int(delay_ms))))
            self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)
            return QueueMessage(**vars(msg))

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def inflight_count(self, *, queue_name: str) -> int:
        with self._lock:
            return sum(1 for msg in self._inflight.values() if msg.queue_name == queue_name)

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()


class SqliteQueueBackend:
    """SQLite-backed queue shared by processes on one host."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=5.0)
        except sqlite3.OperationalError as exc:
            raise TransientIOFailure(f"sqlite queue unavailable: {exc}", code="QUEUE_UNAVAILABLE") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            conn.rollback()
            raise TransientIOFailure(f"sqlite queue unavailable: {exc}", code="QUEUE_UNAVAILABLE") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_messages (
                    message_id TEXT PRIMARY KEY,
                    queue_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    receipt TEXT,
                    available_at TEXT NOT NULL,
                    visible_until TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_messages_lookup
                ON queue_messages(queue_name, status, created_at)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> QueueMessage:
        return QueueMessage(
            message_id=row["message_id"],
            queue_name=row["queue_name"],
            payload=json.loads(row["payload"]),
            attempt=int(row["attempt"]),
            available_at=row["available_at"],
            receipt=row["receipt"],
            visible_until=row["visible_until"],
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            now = _iso(_utcnow())
            msg = QueueMessage(
                message_id=_new_message_id(),
                queue_name=queue_name,
                payload=dict(payload),
                available_at=_iso(available_at) if isinstance(available_at, datetime) else now,
            )
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO queue_messages(
                        message_id, queue_name, payload, attempt, status, available_at, created_at, updated_at
                    ) VALUES (?, ?, ?, 0, 'pending', ?, ?, ?)
                    """,
                    (
                        msg.message_id,
                        msg.queue_name,
                        json.dumps(msg.payload, ensure_ascii=True, sort_keys=True),
                        msg.available_at,
                        now,
                        now,
                    ),
                )
                conn.commit()
            return msg

    def dequeue(self, *, queue_name: str, visibility_timeout_ms: int) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                now_dt = _utcnow()
                now = _iso(now_dt)
                reclaimed = conn.execute(
                    """
                    UPDATE queue_messages
                    SET status = 'pending', attempt = attempt + 1, receipt = NULL,
                        visible_until = NULL, available_at = ?, updated_at = ?
                    WHERE queue_name = ? AND status = 'inflight' AND visible_until <= ?
                    """,
                    (now, now, queue_name, now),
                ).rowcount
                if reclaimed:
                    logger.warning("queue_visibility_expired queue=%s reclaimed=%s", queue_name, reclaimed)
                row = conn.execute(
                    """
                    SELECT message_id
                    FROM queue_messages
                    WHERE queue_name = ? AND status = 'pending' AND available_at <= ?
                    ORDER BY created_at ASC, message_id ASC
                    LIMIT 1
                    """,
                    (queue_name, now),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                receipt = _new_receipt(row["message_id"])
                visible_until = _iso(now_dt + timedelta(milliseconds=max(1, int(visibility_timeout_ms))))
                conn.execute(
                    """
                    UPDATE queue_messages
                    SET status = 'inflight', receipt = ?, visible_until = ?, updated_at = ?
                    WHERE message_id = ?
                    """,
                    (receipt, visible_until, now, row["message_id"]),
                )
                claimed = conn.execute(
                    "SELECT * FROM queue_messages WHERE message_id = ?",
                    (row["message_id"],),
                ).fetchone()
                conn.commit()
                return self._row_to_message(claimed)

    def ack(self, *, receipt: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                deleted = conn.execute(
                    "DELETE FROM queue_messages WHERE message_id = ? AND receipt = ? AND status = 'inflight'",
                    (_message_id_from_receipt(receipt), receipt),
                ).rowcount
                conn.commit()
                return bool(deleted)

    def nack(self, *, receipt: str, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                message_id = _message_id_from_receipt(receipt)
                now_dt = _utcnow()
                updated = conn.execute(
                    """
                    UPDATE queue_messages
                    SET status = 'pending', attempt = attempt + 1, receipt = NULL, visible_until = NULL,
                        available_at = ?, updated_at = ?
                    WHERE message_id = ? AND receipt = ? AND status = 'inflight'
                    """,
                    (
                        _iso(now_dt + timedelta(milliseconds=max(0, int(delay_ms)))),
                        _iso(now_dt),
                        message_id,
                        receipt,
                    ),
                ).rowcount
                if not updated:
                    conn.commit()
                    return None
                row = conn.execute("SELECT * FROM queue_messages WHERE message_id = ?", (message_id,)).fetchone()
                conn.commit()
                return self._row_to_message(row)

    def _count(self, *, queue_name: str, status: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(1) AS cnt FROM queue_messages WHERE queue_name = ? AND status = ?",
                    (queue_name, status),
                ).fetchone()
                return int(row["cnt"]) if row is not None else 0

    def pending_count(self, *, queue_name: str) -> int:
        return self._count(queue_name=queue_name, status="pending")

    def inflight_count(self, *, queue_name: str) -> int:
        return self._count(queue_name=queue_name, status="inflight")

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM queue_messages")
                conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for TV_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue: pending list plus an in-flight sorted set scored by visibility deadline."""

    def __init__(self, *, dsn: str = "", namespace: str = "tv", client: Any = None) -> None:
        self._namespace = namespace.strip() or "tv"
        self._lock = threading.RLock()
        if client is not None:
            self._client = client
            self._errors: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError)
            self._conflict_errors: tuple[type[BaseException], ...] = ()
            return
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        redis = _import_redis()
        self._client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._errors = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)
        self._conflict_errors = (redis.exceptions.WatchError,)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except self._errors as exc:
            raise TransientIOFailure(f"redis queue unavailable: {exc}", code="QUEUE_UNAVAILABLE") from exc

    def _pending_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:pending"

    def _inflight_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:inflight"

    def _msg_key(self, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _load_msg(self, message_id: str, *, reader: Any = None) -> dict[str, Any] | None:
        raw = (reader or self._client).get(self._msg_key(message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _encode(self, data: dict[str, Any]) -> str:
        return json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":"))

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            queue_name=str(data.get("queue_name", "")),
            payload=dict(data.get("payload") or {}),
            attempt=int(data.get("attempt", 0)),
            available_at=data.get("available_at") or None,
            receipt=data.get("receipt") or None,
            visible_until=data.get("visible_until") or None,
        )

    def _reclaim_expired(self, queue_name: str, *, now: datetime) -> None:
        inflight_key = self._inflight_key(queue_name)
        cutoff = int(now.timestamp() * 1000)
        for message_id in self._client.zrangebyscore(inflight_key, 0, cutoff) or []:
            msg_key = self._msg_key(message_id)
            with self._client.pipeline(transaction=True) as pipe:
                try:
                    pipe.watch(inflight_key, msg_key)
                    score = pipe.zscore(inflight_key, message_id)
                    if score is None or score > cutoff:
                        continue
                    data = self._load_msg(message_id, reader=pipe)
                    pipe.multi()
                    pipe.zrem(inflight_key, message_id)
                    if data is not None:
                        data.update(
                            {
                                "status": "pending",
                                "attempt": int(data.get("attempt", 0)) + 1,
                                "receipt": None,
                                "visible_until": None,
                                "available_at": _iso(now),
                            }
                        )
                        pipe.set(msg_key, self._encode(data))
                        pipe.lpush(self._pending_key(queue_name), message_id)
                    pipe.execute()
                except self._conflict_errors:
                    continue
            if data is not None:
                logger.warning("queue_visibility_expired queue=%s message_id=%s", queue_name, message_id)

    def _claim(self, queue_name: str, message_id: str, *, now: datetime, visibility_timeout_ms: int) -> QueueMessage | None:
        """Move one due message from pending to in-flight in a single MULTI/EXEC."""
        pending_key = self._pending_key(queue_name)
        msg_key = self._msg_key(message_id)
        with self._client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(pending_key, msg_key)
                data = self._load_msg(message_id, reader=pipe)
                if data is None:
                    pipe.multi()
                    pipe.lrem(pending_key, 1, message_id)
                    pipe.execute()
                    return None
                if not _is_due(data.get("available_at"), now=now):
                    return None
                deadline = now + timedelta(milliseconds=max(1, int(visibility_timeout_ms)))
                data.update(
                    {
                        "status": "inflight",
                        "receipt": _new_receipt(message_id),
                        "visible_until": _iso(deadline),
                    }
                )
                pipe.multi()
                pipe.lrem(pending_key, 1, message_id)
                pipe.set(msg_key, self._encode(data))
                pipe.zadd(self._inflight_key(queue_name), {message_id: int(deadline.timestamp() * 1000)})
                removed = pipe.execute()[0]
            except self._conflict_errors:
                return None
        return self._to_message(message_id, data) if removed else None

    def enqueue(
        self,
        *,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock, self._guard():
            message_id = _new_message_id()
            data = {
                "queue_name": queue_name,
                "payload": dict(payload),
                "attempt": 0,
                "status": "pending",
                "available_at": _iso(available_at) if isinstance(available_at, datetime) else _iso(_utcnow()),
            }
            with self._client.pipeline(transaction=True) as pipe:
                pipe.multi()
                pipe.set(self._msg_key(message_id), self._encode(data))
                pipe.rpush(self._pending_key(queue_name), message_id)
                pipe.sadd(self._registry_key(), self._pending_key(queue_name), self._inflight_key(queue_name))
                pipe.execute()
            return self._to_message(message_id, data)

    def dequeue(self, *, queue_name: str, visibility_timeout_ms: int) -> QueueMessage | None:
        # Pending ids are scanned in place; a message leaves the list only inside its claim.
        with self._lock, self._guard():
            now = _utcnow()
            self._reclaim_expired(queue_name, now=now)
            for message_id in self._client.lrange(self._pending_key(queue_name), 0, -1) or []:
                claimed = self._claim(queue_name, message_id, now=now, visibility_timeout_ms=visibility_timeout_ms)
                if claimed is not None:
                    return claimed
            return None

    def ack(self, *, receipt: str) -> bool:
        with self._lock, self._guard():
            message_id = _message_id_from_receipt(receipt)
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight" or data.get("receipt") != receipt:
                return False
            with self._client.pipeline(transaction=True) as pipe:
                pipe.multi()
                pipe.zrem(self._inflight_key(str(data.get("queue_name", ""))), message_id)
                pipe.delete(self._msg_key(message_id))
                pipe.execute()
            return True

    def nack(self, *, receipt: str, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock, self._guard():
            message_id = _message_id_from_receipt(receipt)
            data = self._load_msg(message_id)
            if data is None or data.get("status") != "inflight" or data.get("receipt") != receipt:
                return None
            queue_name = str(data.get("queue_name", ""))
            data.update(
                {
                    "status": "pending",
                    "attempt": int(data.get("attempt", 0)) + 1,
                    "receipt": None,
                    "visible_until": None,
                    "available_at": _iso(_utcnow() + timedelta(milliseconds=max(0, int(delay_ms)))),
                }
            )
            with self._client.pipeline(transaction=True) as pipe:
                pipe.multi()
                pipe.set(self._msg_key(message_id), self._encode(data))
                pipe.zrem(self._inflight_key(queue_name), message_id)
                pipe.lpush(self._pending_key(queue_name), message_id)
                pipe.execute()
            return self._to_message(message_id, data)

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock, self._guard():
            return int(self._client.llen(self._pending_key(queue_name)))

    def inflight_count(self, *, queue_name: str) -> int:
        with self._lock, self._guard():
            return int(self._client.zcard(self._inflight_key(queue_name)))

    def reset(self) -> None:
        with self._lock, self._guard():
            keys = list(self._client.smembers(self._registry_key()) or [])
            for key in keys:
                if key.endswith(":pending"):
                    for message_id in self._client.lrange(key, 0, -1) or []:
                        self._client.delete(self._msg_key(message_id))
                elif key.endswith(":inflight"):
                    for message_id in self._client.zrange(key, 0, -1) or []:
                        self._client.delete(self._msg_key(message_id))
            if keys:
                self._client.delete(*keys)
            self._client.delete(self._registry_key())


@dataclass
class Delivery:
    work_item_id: str
    receipt: str
    attempt: int
    message_id: str
    kind: str


class WorkQueue:
    """One logical queue per work kind; carries only work item ids."""

    def __init__(
        self,
        *,
        backend: Any,
        visibility_timeout_ms: int = 300_000,
        enqueue_retry_max: int = 3,
        retry_backoff_base_ms: int = 50,
        retry_backoff_max_ms: int = 2000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.visibility_timeout_ms = max(1, int(visibility_timeout_ms))
        self.enqueue_retry_max = max(0, int(enqueue_retry_max))
        self.retry_backoff_base_ms = max(0, int(retry_backoff_base_ms))
        self.retry_backoff_max_ms = max(self.retry_backoff_base_ms, int(retry_backoff_max_ms))
        self._sleep = sleep

    @staticmethod
    def queue_name(kind: str) -> str:
        return f"work.{kind}"

    def backoff_ms(self, attempt: int) -> int:
        return min(self.retry_backoff_max_ms, self.retry_backoff_base_ms * (2 ** max(0, attempt)))

    def enqueue(self, kind: str, work_item_id: str) -> str:
        attempt = 0
        while True:
            try:
                msg = self.backend.enqueue(
                    queue_name=self.queue_name(kind),
                    payload={"work_item_id": work_item_id, "kind": kind},
                )
                return msg.message_id
            except TransientIOFailure:
                if attempt >= self.enqueue_retry_max:
                    logger.warning("queue_enqueue_exhausted kind=%s item_id=%s attempts=%s", kind, work_item_id, attempt + 1)
                    raise
                delay_ms = self.backoff_ms(attempt)
                logger.warning("queue_enqueue_retry kind=%s item_id=%s delay_ms=%s", kind, work_item_id, delay_ms)
                self._sleep(delay_ms / 1000.0)
                attempt += 1

    def dequeue(self, kind: str) -> Delivery | None:
        msg = self.backend.dequeue(
            queue_name=self.queue_name(kind),
            visibility_timeout_ms=self.visibility_timeout_ms,
        )
        if msg is None:
            return None
        return Delivery(
            work_item_id=str(msg.payload.get("work_item_id") or ""),
            receipt=str(msg.receipt),
            attempt=int(msg.attempt),
            message_id=msg.message_id,
            kind=kind,
        )

    def ack(self, receipt: str) -> bool:
        return bool(self.backend.ack(receipt=receipt))

    def nack(self, receipt: str, retry_after_ms: int = 0) -> bool:
        return self.backend.nack(receipt=receipt, delay_ms=max(0, int(retry_after_ms))) is not None

    def depths(self) -> dict[str, dict[str, int]]:
        return {
            kind: {
                "pending": self.backend.pending_count(queue_name=self.queue_name(kind)),
                "inflight": self.backend.inflight_count(queue_name=self.queue_name(kind)),
            }
            for kind in WORK_KINDS
        }


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | SqliteQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("TV_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        if true_stack_required(env):
            raise RuntimeError("in-memory queue backend is not allowed when TV_REQUIRE_TRUESTACK=true")
        return InMemoryQueueBackend()
    if backend == "sqlite":
        db_path = env.get("TV_QUEUE_SQLITE_PATH", ".runtime/tv_queue.sqlite3")
        return SqliteQueueBackend(db_path)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when TV_QUEUE_BACKEND=redis")
        namespace = env.get("TV_QUEUE_KEY_PREFIX", "tv")
        return RedisQueueBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported queue backend: {backend}")

from __future__ import annotations

import copy
import json
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from review_engine.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

JOB_STATES = ("waiting", "active", "completed", "failed", "delayed")
TERMINAL_STATES = frozenset({"completed", "failed"})


class JobStoreError(RuntimeError):
    pass


class JobNotFoundError(JobStoreError):
    def __init__(self, queue_name: str, job_id: str) -> None:
        super().__init__(f"job {job_id} not found in queue {queue_name}")
        self.queue_name = queue_name
        self.job_id = job_id


class RevisionConflictError(JobStoreError):
    def __init__(self, queue_name: str, job_id: str, *, expected: int, actual: int | None) -> None:
        super().__init__(f"revision conflict for job {job_id} in queue {queue_name}: expected {expected}, found {actual}")
        self.queue_name = queue_name
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class InvalidJobStateError(JobStoreError):
    pass


@dataclass
class QueueJob:
    job_id: str
    queue_name: str
    data: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_attempts: int = 1
    attempts_made: int = 0
    state: str = "waiting"
    created_at: str = ""
    updated_at: str = ""
    processed_at: str | None = None
    finished_at: str | None = None
    failed_reason: str | None = None
    return_value: Any = None
    revision: int = 0

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "QueueJob":
        data = record.get("data")
        return cls(
            job_id=str(record["job_id"]),
            queue_name=str(record["queue_name"]),
            data=dict(data) if isinstance(data, dict) else {},
            priority=int(record.get("priority") or 0),
            max_attempts=int(record.get("max_attempts") or 1),
            attempts_made=int(record.get("attempts_made") or 0),
            state=str(record.get("state") or "waiting"),
            created_at=str(record.get("created_at") or ""),
            updated_at=str(record.get("updated_at") or ""),
            processed_at=record.get("processed_at"),
            finished_at=record.get("finished_at"),
            failed_reason=record.get("failed_reason"),
            return_value=record.get("return_value"),
            revision=int(record.get("revision") or 0),
        )


def _sort_key(job: QueueJob) -> tuple[int, str, str]:
    return (-int(job.priority), job.created_at, job.job_id)


class BaseJobStore:
    """Job store operations shared by every backend.

    Backends only provide record persistence (`_load`, `_insert`, `_replace`,
    `_delete`, `_list`). `_replace` must refuse the write when the stored
    revision no longer equals `previous_revision`, which makes every mutation a
    compare-and-set even across processes.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def _load(self, queue_name: str, job_id: str) -> QueueJob | None:
        raise NotImplementedError

    def _insert(self, job: QueueJob) -> None:
        raise NotImplementedError

    def _replace(self, job: QueueJob, *, previous_revision: int) -> None:
        raise NotImplementedError

    def _delete(self, queue_name: str, job_id: str) -> bool:
        raise NotImplementedError

    def _list(self, queue_name: str) -> list[QueueJob]:
        raise NotImplementedError

    def _clear(self) -> None:
        raise NotImplementedError

    def _mutate(
        self,
        queue_name: str,
        job_id: str,
        fn: Callable[[QueueJob], None],
        *,
        expected_revision: int | None = None,
    ) -> QueueJob:
        with self._lock:
            job = self._load(queue_name, job_id)
            if job is None:
                raise JobNotFoundError(queue_name, job_id)
            if expected_revision is not None and job.revision != expected_revision:
                raise RevisionConflictError(queue_name, job_id, expected=expected_revision, actual=job.revision)
            previous_revision = job.revision
            fn(job)
            job.revision = previous_revision + 1
            job.updated_at = self._utcnow_iso()
            self._replace(job, previous_revision=previous_revision)
            return job

    def get_job(self, queue_name: str, job_id: str) -> QueueJob | None:
        with self._lock:
            return self._load(queue_name, job_id)

    def add_job(
        self,
        queue_name: str,
        payload: Mapping[str, Any],
        *,
        priority: int = 0,
        attempts: int = 1,
        job_id: str | None = None,
    ) -> QueueJob:
        with self._lock:
            now = self._utcnow_iso()
            job = QueueJob(
                job_id=job_id or f"job_{uuid.uuid4().hex[:12]}",
                queue_name=queue_name,
                data=copy.deepcopy(dict(payload)),
                priority=int(priority),
                max_attempts=max(1, int(attempts)),
                state="waiting",
                created_at=now,
                updated_at=now,
            )
            if self._load(queue_name, job.job_id) is not None:
                raise JobStoreError(f"job {job.job_id} already exists in queue {queue_name}")
            self._insert(job)
            return job

    def update_job(
        self,
        queue_name: str,
        job_id: str,
        partial: Mapping[str, Any],
        *,
        expected_revision: int | None = None,
        unset: Iterable[str] = (),
    ) -> QueueJob:
        overlay = copy.deepcopy(dict(partial))
        dropped = set(unset)

        def _apply(job: QueueJob) -> None:
            merged = {**job.data, **overlay}
            job.data = {key: value for key, value in merged.items() if key not in dropped}

        return self._mutate(queue_name, job_id, _apply, expected_revision=expected_revision)

    def move_to_active(self, queue_name: str, job_id: str) -> QueueJob:
        def _apply(job: QueueJob) -> None:
            if job.state in TERMINAL_STATES:
                raise InvalidJobStateError(f"job {job_id} is already {job.state}")
            if job.state != "active":
                job.state = "active"
                job.processed_at = self._utcnow_iso()

        return self._mutate(queue_name, job_id, _apply)

    def move_to_completed(
        self,
        queue_name: str,
        job_id: str,
        result: Any,
        *,
        remove_on_complete: bool = False,
    ) -> QueueJob:
        def _apply(job: QueueJob) -> None:
            if job.state in TERMINAL_STATES:
                raise InvalidJobStateError(f"job {job_id} is already {job.state}")
            job.state = "completed"
            job.finished_at = self._utcnow_iso()
            job.return_value = result

        with self._lock:
            job = self._mutate(queue_name, job_id, _apply)
            if remove_on_complete:
                self._delete(queue_name, job_id)
            return job

    def move_to_failed(
        self,
        queue_name: str,
        job_id: str,
        error: BaseException | str,
        *,
        remove_on_fail: bool = False,
    ) -> QueueJob:
        def _apply(job: QueueJob) -> None:
            if job.state in TERMINAL_STATES:
                raise InvalidJobStateError(f"job {job_id} is already {job.state}")
            job.state = "failed"
            job.finished_at = self._utcnow_iso()
            job.failed_reason = str(error)
            job.attempts_made += 1

        with self._lock:
            job = self._mutate(queue_name, job_id, _apply)
            if remove_on_fail:
                self._delete(queue_name, job_id)
            return job

    def change_priority(self, queue_name: str, job_id: str, priority: int) -> QueueJob:
        def _apply(job: QueueJob) -> None:
            job.priority = int(priority)

        return self._mutate(queue_name, job_id, _apply)

    def remove_job(self, queue_name: str, job_id: str) -> bool:
        with self._lock:
            return self._delete(queue_name, job_id)

    def get_jobs(
        self,
        queue_name: str,
        states: Iterable[str],
        offset: int = 0,
        limit: int = -1,
    ) -> list[QueueJob]:
        wanted = set(states)
        with self._lock:
            jobs = [job for job in self._list(queue_name) if job.state in wanted]
        jobs.sort(key=_sort_key)
        start = max(0, int(offset))
        if limit < 0:
            return jobs[start:]
        return jobs[start : start + int(limit)]

    def get_queue_stats(self, queue_name: str) -> dict[str, int]:
        stats = {state: 0 for state in JOB_STATES}
        with self._lock:
            for job in self._list(queue_name):
                if job.state in stats:
                    stats[job.state] += 1
        return stats

    def reset(self) -> None:
        with self._lock:
            self._clear()


class InMemoryJobStore(BaseJobStore):
    """Process-local job store; the default backend and the one used in tests."""

    def __init__(self) -> None:
        super().__init__()
        self._jobs: dict[tuple[str, str], QueueJob] = {}

    def _load(self, queue_name: str, job_id: str) -> QueueJob | None:
        job = self._jobs.get((queue_name, job_id))
        return copy.deepcopy(job) if job is not None else None

    def _insert(self, job: QueueJob) -> None:
        self._jobs[(job.queue_name, job.job_id)] = copy.deepcopy(job)

    def _replace(self, job: QueueJob, *, previous_revision: int) -> None:
        key = (job.queue_name, job.job_id)
        current = self._jobs.get(key)
        if current is None:
            raise JobNotFoundError(job.queue_name, job.job_id)
        if current.revision != previous_revision:
            raise RevisionConflictError(
                job.queue_name,
                job.job_id,
                expected=previous_revision,
                actual=current.revision,
            )
        self._jobs[key] = copy.deepcopy(job)

    def _delete(self, queue_name: str, job_id: str) -> bool:
        return self._jobs.pop((queue_name, job_id), None) is not None

    def _list(self, queue_name: str) -> list[QueueJob]:
        return [copy.deepcopy(job) for (queue, _), job in self._jobs.items() if queue == queue_name]

    def _clear(self) -> None:
        self._jobs.clear()


class SqliteJobStore(BaseJobStore):
    """SQLite-backed job store used for local persistence."""

    _COLUMNS = (
        "job_id",
        "queue_name",
        "data",
        "priority",
        "max_attempts",
        "attempts_made",
        "state",
        "created_at",
        "updated_at",
        "processed_at",
        "finished_at",
        "failed_reason",
        "return_value",
        "revision",
    )

    def __init__(self, db_path: str | Path) -> None:
        super().__init__()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_queue_jobs (
                    job_id TEXT NOT NULL,
                    queue_name TEXT NOT NULL,
                    data TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 1,
                    attempts_made INTEGER NOT NULL DEFAULT 0,
                    state TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    processed_at TEXT,
                    finished_at TEXT,
                    failed_reason TEXT,
                    return_value TEXT,
                    revision INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (queue_name, job_id)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_review_queue_jobs_state
                ON review_queue_jobs(queue_name, state, priority)
                """
            )
            conn.commit()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> QueueJob:
        record = {key: row[key] for key in row.keys()}
        record["data"] = json.loads(row["data"])
        raw_result = row["return_value"]
        record["return_value"] = json.loads(raw_result) if raw_result is not None else None
        return QueueJob.from_record(record)

    @staticmethod
    def _job_to_params(job: QueueJob) -> dict[str, Any]:
        params = job.to_record()
        params["data"] = json.dumps(job.data, ensure_ascii=True, sort_keys=True)
        params["return_value"] = (
            json.dumps(job.return_value, ensure_ascii=True, sort_keys=True) if job.return_value is not None else None
        )
        return params

    def _load(self, queue_name: str, job_id: str) -> QueueJob | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM review_queue_jobs WHERE queue_name = ? AND job_id = ? LIMIT 1",
                (queue_name, job_id),
            ).fetchone()
        return self._row_to_job(row) if row is not None else None

    def _insert(self, job: QueueJob) -> None:
        columns = ", ".join(self._COLUMNS)
        placeholders = ", ".join(f":{name}" for name in self._COLUMNS)
        with self._connect() as conn:
            try:
                conn.execute(
                    f"INSERT INTO review_queue_jobs ({columns}) VALUES ({placeholders})",
                    self._job_to_params(job),
                )
            except sqlite3.IntegrityError as exc:
                raise JobStoreError(f"job {job.job_id} already exists in queue {job.queue_name}") from exc
            conn.commit()

    def _replace(self, job: QueueJob, *, previous_revision: int) -> None:
        assignments = ", ".join(f"{name} = :{name}" for name in self._COLUMNS if name not in {"job_id", "queue_name"})
        params = self._job_to_params(job)
        params["previous_revision"] = previous_revision
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE review_queue_jobs
                SET {assignments}
                WHERE queue_name = :queue_name AND job_id = :job_id AND revision = :previous_revision
                """,
                params,
            )
            conn.commit()
        if cursor.rowcount == 0:
            current = self._load(job.queue_name, job.job_id)
            if current is None:
                raise JobNotFoundError(job.queue_name, job.job_id)
            raise RevisionConflictError(
                job.queue_name,
                job.job_id,
                expected=previous_revision,
                actual=current.revision,
            )

    def _delete(self, queue_name: str, job_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM review_queue_jobs WHERE queue_name = ? AND job_id = ?",
                (queue_name, job_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def _list(self, queue_name: str) -> list[QueueJob]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM review_queue_jobs WHERE queue_name = ?",
                (queue_name,),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def _clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM review_queue_jobs")
            conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for REVIEW_JOB_STORE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisJobStore(BaseJobStore):
    """Redis-backed job store; revision checks run under WATCH/MULTI."""

    def __init__(self, *, dsn: str, namespace: str = "review") -> None:
        super().__init__()
        if not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis job store")
        self._dsn = dsn.strip()
        self._namespace = namespace.strip() or "review"
        redis = _import_redis()
        self._watch_error = redis.WatchError
        self._client = redis.Redis.from_url(self._dsn, decode_responses=True)

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _members_key(self, queue_name: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:jobs"

    def _job_key(self, queue_name: str, job_id: str) -> str:
        return f"{self._namespace}:job:{queue_name}:{job_id}"

    @staticmethod
    def _encode(job: QueueJob) -> str:
        return json.dumps(job.to_record(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))

    @staticmethod
    def _decode(raw: Any) -> QueueJob | None:
        if not isinstance(raw, str) or not raw:
            return None
        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(record, dict) or "job_id" not in record or "queue_name" not in record:
            return None
        return QueueJob.from_record(record)

    def _load(self, queue_name: str, job_id: str) -> QueueJob | None:
        return self._decode(self._client.get(self._job_key(queue_name, job_id)))

    def _insert(self, job: QueueJob) -> None:
        job_key = self._job_key(job.queue_name, job.job_id)
        members_key = self._members_key(job.queue_name)
        self._client.set(job_key, self._encode(job))
        self._client.sadd(members_key, job.job_id)
        self._client.sadd(self._registry_key(), job_key)
        self._client.sadd(self._registry_key(), members_key)

    def _replace(self, job: QueueJob, *, previous_revision: int) -> None:
        job_key = self._job_key(job.queue_name, job.job_id)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(job_key)
                current = self._decode(pipe.get(job_key))
                if current is None:
                    raise JobNotFoundError(job.queue_name, job.job_id)
                if current.revision != previous_revision:
                    raise RevisionConflictError(
                        job.queue_name,
                        job.job_id,
                        expected=previous_revision,
                        actual=current.revision,
                    )
                pipe.multi()
                pipe.set(job_key, self._encode(job))
                pipe.execute()
            except self._watch_error as exc:
                raise RevisionConflictError(
                    job.queue_name,
                    job.job_id,
                    expected=previous_revision,
                    actual=None,
                ) from exc

    def _delete(self, queue_name: str, job_id: str) -> bool:
        job_key = self._job_key(queue_name, job_id)
        existed = self._client.get(job_key) is not None
        self._client.delete(job_key)
        self._client.srem(self._members_key(queue_name), job_id)
        self._client.srem(self._registry_key(), job_key)
        return existed

    def _list(self, queue_name: str) -> list[QueueJob]:
        jobs: list[QueueJob] = []
        for job_id in sorted(self._client.smembers(self._members_key(queue_name))):
            job = self._load(queue_name, str(job_id))
            if job is not None:
                jobs.append(job)
        return jobs

    def _clear(self) -> None:
        registry = self._registry_key()
        keys = self._client.smembers(registry)
        if keys:
            self._client.delete(*list(keys))
        self._client.delete(registry)


def create_job_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryJobStore | SqliteJobStore | RedisJobStore:
    env = os.environ if environ is None else environ
    backend = env.get("REVIEW_JOB_STORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryJobStore()
    if backend == "sqlite":
        db_path = env.get("REVIEW_JOB_STORE_SQLITE_PATH", ".runtime/review_jobs.sqlite3")
        return SqliteJobStore(db_path)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            if true_stack_required(env):
                raise ValueError("REDIS_DSN must be set when REVIEW_JOB_STORE_BACKEND=redis")
            logger.warning("job_store_fallback backend=redis reason=missing_dsn fallback=memory")
            return InMemoryJobStore()
        namespace = env.get("REVIEW_JOB_STORE_KEY_PREFIX", "review")
        return RedisJobStore(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported job store backend: {backend}")

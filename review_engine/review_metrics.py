from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from review_engine.errors import ValidationError
from review_engine.job_store import BaseJobStore
from review_engine.models import STATUS_APPROVED, STATUS_IN_REVIEW, STATUS_PENDING, STATUS_REJECTED, ReviewJob
from review_engine.settings import ReviewSettings

logger = logging.getLogger(__name__)

_TIMEFRAME_PATTERN = re.compile(r"^(\d+)([mhdw])$")
_UNIT_MINUTES = {"m": 1, "h": 60, "d": 1440, "w": 10080}


def parse_timeframe(value: str) -> timedelta:
    """Parse `<n>m|h|d|w` (for example `1h`, `24h`, `7d`) into a window length."""
    match = _TIMEFRAME_PATTERN.fullmatch(str(value or "").strip().lower())
    if match is None or int(match.group(1)) <= 0:
        raise ValidationError(
            f"invalid timeframe: {value!r}; expected <n>m, <n>h, <n>d or <n>w",
            code="REVIEW_TIMEFRAME_INVALID",
        )
    return timedelta(minutes=int(match.group(1)) * _UNIT_MINUTES[match.group(2)])


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _percent(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(part / total * 100)


def _parse_ts(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _mean_seconds(pairs: Iterable[tuple[datetime | None, datetime | None]]) -> int:
    durations = [(end - start).total_seconds() for start, end in pairs if start is not None and end is not None]
    if not durations:
        return 0
    return round_half_up(sum(durations) / len(durations))


class ReviewMetricsAggregator:
    def __init__(
        self,
        *,
        job_store: BaseJobStore,
        settings: ReviewSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = job_store
        self._settings = settings or ReviewSettings()
        self._clock = clock or (lambda: datetime.now(UTC))

    def _since(self, timeframe: str | None) -> tuple[str, datetime]:
        label = (timeframe or self._settings.default_timeframe).strip()
        return label, self._clock() - parse_timeframe(label)

    def _finished_since(self, since: datetime) -> list[ReviewJob]:
        jobs = self._store.get_jobs(self._settings.review_queue, ["completed", "failed"])
        out: list[ReviewJob] = []
        for job in jobs:
            finished = _parse_ts(job.finished_at)
            if finished is not None and finished >= since:
                out.append(ReviewJob.from_queue_job(job))
        return out

    def _queue_counts(self) -> dict[str, int]:
        stats = self._store.get_queue_stats(self._settings.review_queue)
        return {
            "waiting": int(stats.get("waiting") or 0),
            "active": int(stats.get("active") or 0),
            "completed": int(stats.get("completed") or 0),
        }

    def review_stats(self, timeframe: str | None = None) -> dict[str, Any]:
        label, since = self._since(timeframe)
        finished = self._finished_since(since)
        approved = sum(1 for job in finished if job.status == STATUS_APPROVED)
        rejected = sum(1 for job in finished if job.status == STATUS_REJECTED)
        flagged = sum(1 for job in finished if job.flags)
        avg_processing_time = _mean_seconds(
            (_parse_ts(job.processed_at), _parse_ts(job.finished_at)) for job in finished
        )
        return {
            "timeframe": label,
            "queue": self._queue_counts(),
            "total_reviewed": approved + rejected,
            "approved": approved,
            "rejected": rejected,
            "flagged": flagged,
            "approval_rate": _percent(approved, approved + rejected),
            "avg_processing_time": avg_processing_time,
            "avg_review_time": avg_processing_time,
            "documents_per_hour": round_half_up(3600 / avg_processing_time) if avg_processing_time > 0 else 0,
        }

    def workflow_metrics(self, timeframe: str | None = None) -> dict[str, Any]:
        label, since = self._since(timeframe)
        active = [
            ReviewJob.from_queue_job(job) for job in self._store.get_jobs(self._settings.review_queue, ["active"])
        ]
        jobs = active + self._finished_since(since)

        buckets = {"pending": 0, "in_review": 0, "approved": 0, "rejected": 0, "flagged": 0}
        workload: dict[str, dict[str, int]] = {}
        for job in jobs:
            if job.status == STATUS_PENDING:
                buckets["pending"] += 1
            elif job.status == STATUS_IN_REVIEW:
                buckets["in_review"] += 1
            elif job.status == STATUS_APPROVED:
                buckets["approved"] += 1
            elif job.status == STATUS_REJECTED:
                buckets["rejected"] += 1
            if job.flags:
                buckets["flagged"] += 1

            load = workload.setdefault(job.assigned_to or "unassigned", {"pending": 0, "in_review": 0, "completed": 0})
            if job.status == STATUS_PENDING:
                load["pending"] += 1
            elif job.status == STATUS_IN_REVIEW:
                load["in_review"] += 1
            else:
                load["completed"] += 1

        decided = buckets["approved"] + buckets["rejected"]
        avg_review_time = _mean_seconds(
            (_parse_ts(job.review_started_at), _parse_ts(job.finished_at)) for job in jobs
        )
        return {
            "timeframe": label,
            "queue": self._queue_counts(),
            "workflow": buckets,
            "performance": {
                "approval_rate": _percent(buckets["approved"], decided),
                "rejection_rate": _percent(buckets["rejected"], decided),
                "avg_review_time": avg_review_time,
                "throughput_per_hour": round_half_up(3600 / avg_review_time) if avg_review_time > 0 else 0,
            },
            "workload": workload,
        }

    def workflow_status(self, document_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = [str(x).strip() for x in document_ids if str(x).strip()]
        if not ids:
            raise ValidationError("document_ids must be a non-empty list", code="BULK_DOCUMENT_IDS_REQUIRED")
        statuses: list[dict[str, Any]] = []
        for document_id in ids:
            try:
                job = self._store.get_job(self._settings.review_queue, document_id)
            except Exception as exc:
                logger.warning("workflow_status_lookup_failed document_id=%s error=%s", document_id, exc)
                statuses.append({"document_id": document_id, "status": "error", "error": str(exc)})
                continue
            if job is None:
                statuses.append({"document_id": document_id, "status": "not-found", "error": "Document not found"})
                continue
            entry = ReviewJob.from_queue_job(job).to_status()
            entry["document_id"] = document_id
            statuses.append(entry)
        return statuses

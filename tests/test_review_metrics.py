from __future__ import annotations

from datetime import UTC, datetime

import pytest

from review_engine.errors import ValidationError
from review_engine.job_store import QueueJob
from review_engine.review_metrics import ReviewMetricsAggregator, parse_timeframe, round_half_up

NOW = datetime(2026, 1, 1, 10, 30, tzinfo=UTC)


class StubJobStore:
    def __init__(self, jobs: list[QueueJob], *, broken_ids: set[str] | None = None) -> None:
        self._jobs = jobs
        self._broken_ids = broken_ids or set()

    def get_jobs(self, queue_name, states, offset=0, limit=-1):
        wanted = set(states)
        return [job for job in self._jobs if job.queue_name == queue_name and job.state in wanted]

    def get_queue_stats(self, queue_name):
        stats = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        for job in self._jobs:
            if job.queue_name == queue_name:
                stats[job.state] += 1
        return stats

    def get_job(self, queue_name, job_id):
        if job_id in self._broken_ids:
            raise ConnectionError("store unreachable")
        for job in self._jobs:
            if job.queue_name == queue_name and job.job_id == job_id:
                return job
        return None


def _job(job_id: str, state: str, **data) -> QueueJob:
    processed_at = data.pop("processed_at", None)
    finished_at = data.pop("finished_at", None)
    return QueueJob(
        job_id=job_id,
        queue_name="manual-review",
        data=data,
        state=state,
        created_at="2026-01-01T09:00:00+00:00",
        updated_at="2026-01-01T09:00:00+00:00",
        processed_at=processed_at,
        finished_at=finished_at,
    )


def _fixture_jobs() -> list[QueueJob]:
    return [
        _job(
            "approved-1",
            "completed",
            status="approved",
            assigned_to="alice",
            flags=[{"id": "flag_1", "type": "quality"}],
            processed_at="2026-01-01T10:00:00+00:00",
            review_started_at="2026-01-01T09:59:50+00:00",
            finished_at="2026-01-01T10:00:10+00:00",
        ),
        _job(
            "rejected-1",
            "failed",
            status="rejected",
            processed_at="2026-01-01T10:00:00+00:00",
            review_started_at="2026-01-01T09:59:55+00:00",
            finished_at="2026-01-01T10:00:05+00:00",
        ),
        _job("reviewing-1", "active", status="in-review", assigned_to="alice"),
        _job("waiting-1", "waiting"),
        _job(
            "old-approved",
            "completed",
            status="approved",
            processed_at="2025-12-01T10:00:00+00:00",
            finished_at="2025-12-01T10:00:01+00:00",
        ),
    ]


def _aggregator(jobs: list[QueueJob] | None = None, **kwargs) -> ReviewMetricsAggregator:
    return ReviewMetricsAggregator(
        job_store=StubJobStore(_fixture_jobs() if jobs is None else jobs, **kwargs),
        clock=lambda: NOW,
    )


@pytest.mark.parametrize(
    ("value", "minutes"),
    [("1h", 60), ("24h", 1440), ("7d", 10080), ("15m", 15), ("2w", 20160)],
)
def test_parse_timeframe_units(value, minutes):
    assert parse_timeframe(value).total_seconds() == minutes * 60


@pytest.mark.parametrize("value", ["", "24", "h", "0h", "1y", "-1h", "1.5h"])
def test_parse_timeframe_rejects_garbage(value):
    with pytest.raises(ValidationError) as exc_info:
        parse_timeframe(value)
    assert exc_info.value.code == "REVIEW_TIMEFRAME_INVALID"


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(7.49) == 7


def test_review_stats_over_window():
    stats = _aggregator().review_stats("1h")

    assert stats["timeframe"] == "1h"
    assert stats["queue"] == {"waiting": 1, "active": 1, "completed": 2}
    assert stats["approved"] == 1
    assert stats["rejected"] == 1
    assert stats["flagged"] == 1
    assert stats["approval_rate"] == 50
    assert stats["avg_processing_time"] == 8
    assert stats["avg_review_time"] == 8
    assert stats["documents_per_hour"] == 450


def test_review_stats_window_excludes_older_jobs():
    stats = _aggregator().review_stats("10m")
    assert stats["approved"] == 0
    assert stats["rejected"] == 0
    assert stats["approval_rate"] == 0
    assert stats["avg_processing_time"] == 0
    assert stats["documents_per_hour"] == 0


def test_approval_rate_is_zero_without_decisions():
    stats = _aggregator([_job("waiting-1", "waiting")]).review_stats()
    assert stats["timeframe"] == "24h"
    assert stats["approval_rate"] == 0


def test_workflow_metrics_buckets_and_workload():
    metrics = _aggregator().workflow_metrics("1h")

    assert metrics["workflow"] == {"pending": 0, "in_review": 1, "approved": 1, "rejected": 1, "flagged": 1}
    assert metrics["performance"] == {
        "approval_rate": 50,
        "rejection_rate": 50,
        "avg_review_time": 15,
        "throughput_per_hour": 240,
    }
    assert metrics["workload"] == {
        "alice": {"pending": 0, "in_review": 1, "completed": 1},
        "unassigned": {"pending": 0, "in_review": 0, "completed": 1},
    }


def test_workflow_metrics_rejects_invalid_timeframe():
    with pytest.raises(ValidationError):
        _aggregator().workflow_metrics("forever")


def test_workflow_status_never_aborts():
    statuses = _aggregator(broken_ids={"broken-1"}).workflow_status(["reviewing-1", "missing", "broken-1"])

    assert statuses[0]["document_id"] == "reviewing-1"
    assert statuses[0]["status"] == "in-review"
    assert statuses[0]["assigned_to"] == "alice"
    assert statuses[0]["last_updated"] == "2026-01-01T09:00:00+00:00"
    assert statuses[1] == {"document_id": "missing", "status": "not-found", "error": "Document not found"}
    assert statuses[2] == {"document_id": "broken-1", "status": "error", "error": "store unreachable"}


def test_workflow_status_requires_ids():
    with pytest.raises(ValidationError):
        _aggregator().workflow_status([])

from __future__ import annotations

import pytest

from review_engine.errors import TransitionError
from review_engine.job_store import QueueJob
from review_engine.models import (
    REVIEW_TRANSITIONS,
    ReviewFlag,
    ReviewJob,
    assert_transition,
    dedupe_tags,
)


def _job(**data) -> ReviewJob:
    return ReviewJob.from_queue_job(
        QueueJob(job_id="doc-1", queue_name="manual-review", data=data, priority=2, created_at="t0", updated_at="t0")
    )


def _flag(flag_id: str) -> ReviewFlag:
    return ReviewFlag(
        id=flag_id,
        type="quality",
        reason="blurry scan",
        flagged_by="alice",
        flagged_at="2026-01-01T00:00:00+00:00",
    )


def test_terminal_statuses_allow_no_transition():
    assert REVIEW_TRANSITIONS["approved"] == set()
    assert REVIEW_TRANSITIONS["rejected"] == set()
    assert_transition("pending", "approved")
    assert_transition("in-review", "in-review")
    with pytest.raises(TransitionError) as exc_info:
        assert_transition("approved", "rejected")
    assert exc_info.value.http_status == 409
    assert exc_info.value.code == "WF_STATE_TRANSITION_INVALID"


def test_from_queue_job_defaults_document_id_and_status():
    job = _job(payload={"document": {"title": "Report", "content": "x" * 300}})
    assert job.document_id == "doc-1"
    assert job.status == "pending"
    assert job.priority == 2
    assert job.queue_state == "waiting"
    assert job.title == "Report"
    assert len(job.to_summary()["content_preview"]) == 200


def test_with_flag_appends_without_touching_existing():
    job = _job(flags=[_flag("flag_a").to_dict()])
    flags = job.with_flag(_flag("flag_b"))
    assert [x["id"] for x in flags] == ["flag_a", "flag_b"]
    assert len(job.flags) == 1
    assert "bulk_operation" not in flags[0]


def test_flag_records_keep_zero_priority_and_unknown_keys():
    stored = {**_flag("flag_a").to_dict(), "priority": 0, "resolved": True, "resolved_by": "bob"}
    job = _job(flags=[stored])
    assert job.flags[0].priority == 0
    assert ReviewFlag.from_dict({"id": "flag_x", "priority": None}).priority == 1

    flags = job.with_flag(_flag("flag_b"))
    assert flags[0] == stored
    assert flags[0] is not stored


def test_tag_set_operations_keep_first_seen_order():
    job = _job(tags=["finance", "q3"])
    assert job.with_tags(["q3", "audit", "audit"]) == ["finance", "q3", "audit"]
    assert job.without_tags(["finance", "missing"]) == ["q3"]
    assert job.tags == ("finance", "q3")


def test_dedupe_tags_strips_blanks():
    assert dedupe_tags([" a ", "", "b", "a"]) == ["a", "b"]


def test_search_matches_title_or_content_case_insensitively():
    job = _job(payload={"document": {"title": "Annual Budget", "content": "Capital expenditure plan"}})
    assert job.matches_search("budget")
    assert job.matches_search("EXPENDITURE")
    assert not job.matches_search("payroll")
    assert job.matches_search("")

from __future__ import annotations

import pytest

from review_engine.errors import ValidationError
from review_engine.runtime import ReviewRuntime
from review_engine.settings import ReviewSettings


def test_bulk_partial_failure_is_not_fatal(runtime, seed):
    seed("doc-1")
    seed("doc-2")
    outcome = runtime.bulk.bulk_approve(["doc-1", "missing", "doc-2"], actor="alice")

    assert outcome["results"] == [
        {"document_id": "doc-1", "status": "approved"},
        {"document_id": "doc-2", "status": "approved"},
    ]
    assert outcome["errors"] == [{"document_id": "missing", "error": "Document not found"}]
    assert outcome["summary"] == {"total": 3, "successful": 2, "failed": 1}
    assert outcome["message"] == "Bulk approval completed: 2 successful, 1 failed"
    assert len(runtime.job_store.get_jobs("document-processing", ["waiting"])) == 2


def test_bulk_records_transition_errors_per_item(runtime, engine, seed):
    seed("doc-1")
    seed("doc-2")
    engine.approve("doc-1", actor="alice")

    outcome = runtime.bulk.bulk_reject(["doc-1", "doc-2"], actor="alice", reason="duplicate")
    assert [r["document_id"] for r in outcome["results"]] == ["doc-2"]
    assert outcome["errors"][0]["document_id"] == "doc-1"
    assert "invalid transition" in outcome["errors"][0]["error"]
    assert outcome["message"] == "Bulk rejection completed: 1 successful, 1 failed"


@pytest.mark.parametrize("document_ids", [[], None, "doc-1", ["doc-1", ""], ["doc-1", 7]])
def test_bulk_rejects_invalid_id_lists(runtime, document_ids):
    with pytest.raises(ValidationError) as exc_info:
        runtime.bulk.bulk_approve(document_ids, actor="alice")
    assert exc_info.value.code == "BULK_DOCUMENT_IDS_REQUIRED"


def test_bulk_enforces_max_items(seed_job):
    runtime = ReviewRuntime.build(settings=ReviewSettings(bulk_max_items=2))
    seed_job(runtime.job_store, "doc-1")
    with pytest.raises(ValidationError) as exc_info:
        runtime.bulk.bulk_assign(["doc-1", "doc-2", "doc-3"], actor="lead", assign_to="bob")
    assert exc_info.value.code == "BULK_TOO_MANY_ITEMS"
    assert runtime.job_store.get_job("manual-review", "doc-1").revision == 0


def test_bulk_request_validation_aborts_before_any_item(runtime, seed):
    seed("doc-1")
    with pytest.raises(ValidationError) as exc_info:
        runtime.bulk.bulk_reject(["doc-1"], actor="alice", reason="  ")
    assert exc_info.value.code == "REVIEW_REASON_REQUIRED"
    with pytest.raises(ValidationError):
        runtime.bulk.bulk_flag(["doc-1"], actor="alice", flag_type=None)
    with pytest.raises(ValidationError):
        runtime.bulk.bulk_assign(["doc-1"], actor="alice", assign_to="")
    with pytest.raises(ValidationError):
        runtime.bulk.bulk_add_tags(["doc-1"], actor="alice", tags=[])
    with pytest.raises(ValidationError):
        runtime.bulk.bulk_remove_tags(["doc-1"], actor="alice", tags="finance")

    assert runtime.job_store.get_job("manual-review", "doc-1").revision == 0


def test_bulk_items_carry_bulk_marker(runtime, seed):
    seed("doc-1")
    runtime.bulk.bulk_flag(["doc-1"], actor="alice", flag_type="quality", reason="blurry")

    job = runtime.engine.get_document("doc-1")
    assert job.data["bulk_operation"] is True
    assert job.flags[0].bulk_operation is True
    records = runtime.audit_trail.list_for_document("doc-1")
    assert records[-1]["details"]["bulk_operation"] is True


def test_bulk_start_review_accepts_assignee(runtime, seed):
    seed("doc-1")
    seed("doc-2")
    outcome = runtime.bulk.bulk_start_review(["doc-1", "doc-2"], actor="lead", assign_to="carol", priority=2)
    assert outcome["results"] == [
        {"document_id": "doc-1", "status": "in-review", "assigned_to": "carol"},
        {"document_id": "doc-2", "status": "in-review", "assigned_to": "carol"},
    ]
    assert outcome["message"] == "Bulk start review completed: 2 successful, 0 failed"
    assert runtime.engine.get_document("doc-2").priority == 2


def test_bulk_assign_and_tag_result_shapes(runtime, seed):
    seed("doc-1", tags=["finance"])
    assigned = runtime.bulk.bulk_assign(["doc-1"], actor="lead", assign_to="bob", notes="balance")
    assert assigned["results"] == [{"document_id": "doc-1", "status": "assigned", "assigned_to": "bob"}]

    tagged = runtime.bulk.bulk_add_tags(["doc-1"], actor="lead", tags=["q3", "finance"])
    assert tagged["results"] == [
        {
            "document_id": "doc-1",
            "status": "tagged",
            "added_tags": ["q3", "finance"],
            "all_tags": ["finance", "q3"],
        }
    ]
    assert tagged["message"] == "Bulk tagging completed: 1 successful, 0 failed"

    untagged = runtime.bulk.bulk_remove_tags(["doc-1"], actor="lead", tags=["finance"])
    assert untagged["results"] == [
        {
            "document_id": "doc-1",
            "status": "untagged",
            "removed_tags": ["finance"],
            "remaining_tags": ["q3"],
        }
    ]
    assert untagged["message"] == "Bulk tag removal completed: 1 successful, 0 failed"


def test_bulk_thread_pool_keeps_input_order(seed_job):
    runtime = ReviewRuntime.build(settings=ReviewSettings(bulk_max_workers=4))
    ids = [f"doc-{i}" for i in range(8)]
    for document_id in ids:
        if document_id != "doc-3":
            seed_job(runtime.job_store, document_id)

    outcome = runtime.bulk.bulk_flag(ids, actor="alice", flag_type="quality")
    assert [r["document_id"] for r in outcome["results"]] == [x for x in ids if x != "doc-3"]
    assert outcome["errors"] == [{"document_id": "doc-3", "error": "Document not found"}]
    assert outcome["summary"] == {"total": 8, "successful": 7, "failed": 1}
    assert outcome["message"] == "Bulk flagging completed: 7 successful, 1 failed"

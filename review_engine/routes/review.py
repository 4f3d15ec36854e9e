from __future__ import annotations

from fastapi import APIRouter, Query, Request

from review_engine.routes._deps import actor_from_request, runtime_from_request, trace_id_from_request
from review_engine.schemas import (
    ApproveRequest,
    AssignRequest,
    BulkApproveRequest,
    BulkAssignRequest,
    BulkFlagRequest,
    BulkRejectRequest,
    BulkStartReviewRequest,
    BulkTagsRequest,
    FlagRequest,
    RejectRequest,
    StartReviewRequest,
    TagsRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/v1/review", tags=["review"])


def _split_ids(raw: list[str]) -> list[str]:
    out: list[str] = []
    for item in raw:
        out.extend(x.strip() for x in item.split(",") if x.strip())
    return out


@router.get("/pending")
def list_pending(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
    search: str = "",
    filter_name: str = Query(default="all", alias="filter"),
):
    runtime = runtime_from_request(request)
    data = runtime.engine.list_pending(page=page, limit=limit, search=search, filter_name=filter_name)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/document/{document_id}")
def get_document(document_id: str, request: Request):
    job = runtime_from_request(request).engine.get_document(document_id)
    return success_envelope({"document": job.to_detail()}, trace_id_from_request(request))


@router.get("/stats")
def review_stats(request: Request, timeframe: str | None = None):
    stats = runtime_from_request(request).metrics.review_stats(timeframe)
    return success_envelope({"stats": stats}, trace_id_from_request(request))


@router.get("/workflow/status")
def workflow_status(request: Request, document_ids: list[str] | None = Query(default=None)):
    statuses = runtime_from_request(request).metrics.workflow_status(_split_ids(document_ids or []))
    return success_envelope({"statuses": statuses}, trace_id_from_request(request))


@router.get("/workflow/metrics")
def workflow_metrics(request: Request, timeframe: str | None = None):
    metrics = runtime_from_request(request).metrics.workflow_metrics(timeframe)
    return success_envelope(
        {"metrics": metrics, "timeframe": metrics["timeframe"]},
        trace_id_from_request(request),
    )


@router.get("/audit/{document_id}")
def audit_trail(document_id: str, request: Request):
    records = runtime_from_request(request).audit_trail.list_for_document(document_id)
    entries = [
        {
            "audit_id": row.get("audit_id"),
            "action": row.get("action"),
            "actor": row.get("actor"),
            "occurred_at": row.get("occurred_at"),
            "details": row.get("details") or {},
        }
        for row in records
    ]
    return success_envelope({"document_id": document_id, "audit_trail": entries}, trace_id_from_request(request))


@router.post("/start-review/{document_id}")
def start_review(document_id: str, request: Request, payload: StartReviewRequest | None = None):
    payload = payload or StartReviewRequest()
    job = runtime_from_request(request).engine.start_review(
        document_id,
        actor=actor_from_request(request),
        notes=payload.notes,
        priority=payload.priority,
    )
    data = {
        "document_id": document_id,
        "status": job.status,
        "priority": job.priority,
        "assigned_to": job.assigned_to,
        "review_started_at": job.review_started_at,
    }
    return success_envelope(data, trace_id_from_request(request), message="Review started successfully")


@router.post("/approve/{document_id}")
def approve(document_id: str, request: Request, payload: ApproveRequest | None = None):
    payload = payload or ApproveRequest()
    job = runtime_from_request(request).engine.approve(
        document_id,
        actor=actor_from_request(request),
        notes=payload.notes,
        visibility=payload.visibility,
        tags=payload.tags,
        overrides=payload.overrides,
    )
    data = {
        "document_id": document_id,
        "status": job.status,
        "visibility": job.data.get("visibility"),
        "tags": list(job.tags),
        "downstream_job_id": job.data.get("downstream_job_id"),
    }
    return success_envelope(data, trace_id_from_request(request), message="Document approved successfully")


@router.post("/reject/{document_id}")
def reject(document_id: str, request: Request, payload: RejectRequest | None = None):
    payload = payload or RejectRequest()
    job = runtime_from_request(request).engine.reject(
        document_id,
        actor=actor_from_request(request),
        reason=payload.reason,
        notes=payload.notes,
        permanent=payload.permanent,
    )
    data = {
        "document_id": document_id,
        "status": job.status,
        "permanent": bool(job.data.get("permanent")),
        "rejection_reason": job.data.get("rejection_reason"),
        "downstream_job_id": job.data.get("downstream_job_id"),
    }
    return success_envelope(data, trace_id_from_request(request), message="Document rejected successfully")


@router.post("/flag/{document_id}")
def flag(document_id: str, request: Request, payload: FlagRequest | None = None):
    payload = payload or FlagRequest()
    job, review_flag = runtime_from_request(request).engine.flag(
        document_id,
        actor=actor_from_request(request),
        flag_type=payload.flag_type,
        reason=payload.flag_reason,
        priority=payload.priority,
    )
    data = {"document_id": document_id, "flag": review_flag.to_dict(), "priority": job.priority}
    return success_envelope(data, trace_id_from_request(request), message="Document flagged successfully")


@router.post("/assign/{document_id}")
def assign(document_id: str, request: Request, payload: AssignRequest | None = None):
    payload = payload or AssignRequest()
    job = runtime_from_request(request).engine.assign(
        document_id,
        actor=actor_from_request(request),
        assign_to=payload.assign_to,
        notes=payload.notes,
    )
    data = {"document_id": document_id, "assigned_to": job.assigned_to}
    return success_envelope(data, trace_id_from_request(request), message="Document assigned successfully")


@router.post("/add-tags/{document_id}")
def add_tags(document_id: str, request: Request, payload: TagsRequest | None = None):
    payload = payload or TagsRequest()
    job = runtime_from_request(request).engine.add_tags(
        document_id,
        actor=actor_from_request(request),
        tags=payload.tags,
        notes=payload.notes,
    )
    data = {"document_id": document_id, "added_tags": list(payload.tags or []), "all_tags": list(job.tags)}
    return success_envelope(data, trace_id_from_request(request), message="Tags added successfully")


@router.post("/remove-tags/{document_id}")
def remove_tags(document_id: str, request: Request, payload: TagsRequest | None = None):
    payload = payload or TagsRequest()
    job = runtime_from_request(request).engine.remove_tags(
        document_id,
        actor=actor_from_request(request),
        tags=payload.tags,
        notes=payload.notes,
    )
    data = {
        "document_id": document_id,
        "removed_tags": list(payload.tags or []),
        "remaining_tags": list(job.tags),
    }
    return success_envelope(data, trace_id_from_request(request), message="Tags removed successfully")


def _bulk_response(request: Request, outcome: dict) -> dict:
    message = outcome.pop("message")
    return success_envelope(outcome, trace_id_from_request(request), message=message)


@router.post("/bulk/approve")
def bulk_approve(payload: BulkApproveRequest, request: Request):
    outcome = runtime_from_request(request).bulk.bulk_approve(
        payload.document_ids,
        actor=actor_from_request(request),
        notes=payload.notes,
        visibility=payload.visibility,
        tags=payload.tags,
    )
    return _bulk_response(request, outcome)


@router.post("/bulk/reject")
def bulk_reject(payload: BulkRejectRequest, request: Request):
    outcome = runtime_from_request(request).bulk.bulk_reject(
        payload.document_ids,
        actor=actor_from_request(request),
        reason=payload.reason,
        notes=payload.notes,
        permanent=payload.permanent,
    )
    return _bulk_response(request, outcome)


@router.post("/bulk/start-review")
def bulk_start_review(payload: BulkStartReviewRequest, request: Request):
    outcome = runtime_from_request(request).bulk.bulk_start_review(
        payload.document_ids,
        actor=actor_from_request(request),
        notes=payload.notes,
        priority=payload.priority,
        assign_to=payload.assign_to,
    )
    return _bulk_response(request, outcome)


@router.post("/bulk/flag")
def bulk_flag(payload: BulkFlagRequest, request: Request):
    outcome = runtime_from_request(request).bulk.bulk_flag(
        payload.document_ids,
        actor=actor_from_request(request),
        flag_type=payload.flag_type,
        reason=payload.flag_reason,
        priority=payload.priority,
    )
    return _bulk_response(request, outcome)


@router.post("/bulk/assign")
def bulk_assign(payload: BulkAssignRequest, request: Request):
    outcome = runtime_from_request(request).bulk.bulk_assign(
        payload.document_ids,
        actor=actor_from_request(request),
        assign_to=payload.assign_to,
        notes=payload.notes,
    )
    return _bulk_response(request, outcome)


@router.post("/bulk/add-tags")
def bulk_add_tags(payload: BulkTagsRequest, request: Request):
    outcome = runtime_from_request(request).bulk.bulk_add_tags(
        payload.document_ids,
        actor=actor_from_request(request),
        tags=payload.tags,
        notes=payload.notes,
    )
    return _bulk_response(request, outcome)


@router.post("/bulk/remove-tags")
def bulk_remove_tags(payload: BulkTagsRequest, request: Request):
    outcome = runtime_from_request(request).bulk.bulk_remove_tags(
        payload.document_ids,
        actor=actor_from_request(request),
        tags=payload.tags,
        notes=payload.notes,
    )
    return _bulk_response(request, outcome)

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from review_engine.errors import TransitionError
from review_engine.job_store import QueueJob

STATUS_PENDING = "pending"
STATUS_IN_REVIEW = "in-review"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

REVIEW_STATUSES = (STATUS_PENDING, STATUS_IN_REVIEW, STATUS_APPROVED, STATUS_REJECTED)
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED})

REVIEW_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_IN_REVIEW, STATUS_APPROVED, STATUS_REJECTED},
    STATUS_IN_REVIEW: {STATUS_IN_REVIEW, STATUS_APPROVED, STATUS_REJECTED},
    STATUS_APPROVED: set(),
    STATUS_REJECTED: set(),
}

CONTENT_PREVIEW_CHARS = 200


def normalize_status(value: Any) -> str:
    status = str(value or "").strip()
    return status if status in REVIEW_STATUSES else STATUS_PENDING


def assert_transition(current_status: str, new_status: str) -> None:
    allowed = REVIEW_TRANSITIONS.get(current_status, set())
    if new_status not in allowed:
        raise TransitionError(current_status=current_status, new_status=new_status)


def dedupe_tags(tags: Iterable[Any]) -> list[str]:
    """Strip, drop blanks and keep the first occurrence of each tag."""
    out: list[str] = []
    seen: set[str] = set()
    for raw in tags:
        tag = str(raw).strip()
        if tag and tag not in seen:
            seen.add(tag)
            out.append(tag)
    return out


@dataclass(frozen=True)
class ReviewFlag:
    id: str
    type: str
    reason: str
    flagged_by: str
    flagged_at: str
    priority: int = 1
    resolved: bool = False
    bulk_operation: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "reason": self.reason,
            "flagged_by": self.flagged_by,
            "flagged_at": self.flagged_at,
            "priority": self.priority,
            "resolved": self.resolved,
        }
        if self.bulk_operation:
            out["bulk_operation"] = True
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ReviewFlag":
        priority = raw.get("priority")
        return cls(
            id=str(raw.get("id") or ""),
            type=str(raw.get("type") or ""),
            reason=str(raw.get("reason") or ""),
            flagged_by=str(raw.get("flagged_by") or ""),
            flagged_at=str(raw.get("flagged_at") or ""),
            priority=1 if priority is None else int(priority),
            resolved=bool(raw.get("resolved", False)),
            bulk_operation=bool(raw.get("bulk_operation", False)),
        )


@dataclass(frozen=True)
class ReviewJob:
    """Typed, read-only view of a review-queue record.

    `data` keeps the raw job data so fields the engine does not model
    (decision metadata, bulk markers, upstream extras) survive a round trip.
    Mutations are expressed as partial dicts that the job store merges.
    """

    id: str
    document_id: str
    status: str
    priority: int
    queue_state: str
    payload: dict[str, Any] = field(default_factory=dict)
    flags: tuple[ReviewFlag, ...] = ()
    tags: tuple[str, ...] = ()
    assigned_to: str | None = None
    workflow_stage: str | None = None
    review_started_at: str | None = None
    attempts_made: int = 0
    max_attempts: int = 1
    created_at: str = ""
    updated_at: str = ""
    processed_at: str | None = None
    finished_at: str | None = None
    failed_reason: str | None = None
    revision: int = 0
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_queue_job(cls, job: QueueJob) -> "ReviewJob":
        data = dict(job.data)
        payload = data.get("payload")
        flags = data.get("flags") or []
        tags = data.get("tags") or []
        return cls(
            id=job.job_id,
            document_id=str(data.get("document_id") or job.job_id),
            status=normalize_status(data.get("status")),
            priority=job.priority,
            queue_state=job.state,
            payload=dict(payload) if isinstance(payload, dict) else {},
            flags=tuple(ReviewFlag.from_dict(x) for x in flags if isinstance(x, dict)),
            tags=tuple(dedupe_tags(tags if isinstance(tags, list) else [])),
            assigned_to=data.get("assigned_to") or None,
            workflow_stage=data.get("workflow_stage"),
            review_started_at=data.get("review_started_at"),
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            created_at=job.created_at,
            updated_at=str(data.get("updated_at") or job.updated_at),
            processed_at=job.processed_at,
            finished_at=job.finished_at,
            failed_reason=job.failed_reason,
            revision=job.revision,
            data=data,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def document(self) -> dict[str, Any]:
        document = self.payload.get("document")
        return dict(document) if isinstance(document, dict) else {}

    @property
    def title(self) -> str:
        return str(self.document.get("title") or self.payload.get("title") or "")

    @property
    def content(self) -> str:
        return str(self.document.get("content") or self.payload.get("content") or "")

    def with_flag(self, flag: ReviewFlag) -> list[dict[str, Any]]:
        existing = self.data.get("flags") or []
        if not isinstance(existing, list):
            existing = []
        return [dict(x) if isinstance(x, dict) else x for x in existing] + [flag.to_dict()]

    def with_tags(self, tags: Iterable[str]) -> list[str]:
        return dedupe_tags([*self.tags, *tags])

    def without_tags(self, tags: Iterable[str]) -> list[str]:
        removed = set(dedupe_tags(tags))
        return [tag for tag in self.tags if tag not in removed]

    def matches_search(self, search: str) -> bool:
        needle = search.strip().lower()
        if not needle:
            return True
        return needle in self.title.lower() or needle in self.content.lower()

    def to_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "title": self.title,
            "content_preview": self.content[:CONTENT_PREVIEW_CHARS],
            "source": self.payload.get("source"),
            "status": self.status,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "flags": [x.to_dict() for x in self.flags],
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_detail(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "title": self.title,
            "content": self.content,
            "source": self.payload.get("source"),
            "metadata": dict(self.payload.get("metadata") or {}),
            "processing": {
                "attempts_made": self.attempts_made,
                "max_attempts": self.max_attempts,
                "priority": self.priority,
                "processed_at": self.processed_at,
                "finished_at": self.finished_at,
                "failed_reason": self.failed_reason,
                "queue_state": self.queue_state,
            },
            "status": self.status,
            "workflow_stage": self.workflow_stage,
            "assigned_to": self.assigned_to,
            "assigned_by": self.data.get("assigned_by"),
            "assigned_at": self.data.get("assigned_at"),
            "flags": [x.to_dict() for x in self.flags],
            "tags": list(self.tags),
            "review_notes": self.data.get("review_notes"),
            "review_started_by": self.data.get("review_started_by"),
            "review_started_at": self.review_started_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "revision": self.revision,
        }

    def to_status(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "status": self.status,
            "workflow_stage": self.workflow_stage,
            "assigned_to": self.assigned_to,
            "review_started_at": self.review_started_at,
            "last_updated": self.updated_at,
        }

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from review_engine.audit import CurationAuditTrail
from review_engine.errors import ConflictError, NotFoundError, TransitionError, ValidationError
from review_engine.job_store import (
    BaseJobStore,
    InvalidJobStateError,
    JobNotFoundError,
    QueueJob,
    RevisionConflictError,
)
from review_engine.models import (
    STATUS_APPROVED,
    STATUS_IN_REVIEW,
    STATUS_PENDING,
    STATUS_REJECTED,
    ReviewFlag,
    ReviewJob,
    assert_transition,
    dedupe_tags,
)
from review_engine.settings import ReviewSettings

logger = logging.getLogger(__name__)

PENDING_FILTERS = ("all", "pending", "in-review", "flagged", "assigned", "unassigned")
OPEN_QUEUE_STATES = ("waiting", "active", "delayed")
REJECTED_QUEUE_PRIORITY = 0


class ReviewWorkflowEngine:
    """Single-document review transitions over the review queue.

    Every mutation runs under a per-document lock and writes with the
    revision it read, so a concurrent writer in another process shows up as
    a revision conflict instead of a lost update. Merge-only transitions
    re-read and retry; terminal transitions surface `ConflictError`.
    """

    def __init__(
        self,
        *,
        job_store: BaseJobStore,
        audit_trail: CurationAuditTrail | None = None,
        settings: ReviewSettings | None = None,
    ) -> None:
        self._store = job_store
        self._audit_trail = audit_trail
        self._settings = settings or ReviewSettings()
        self._locks: dict[str, list[Any]] = {}
        self._locks_guard = threading.Lock()

    @property
    def settings(self) -> ReviewSettings:
        return self._settings

    @property
    def job_store(self) -> BaseJobStore:
        return self._store

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @contextmanager
    def _document_lock(self, document_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(document_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[document_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(document_id, None)

    def _load(self, document_id: str) -> ReviewJob:
        job = self._store.get_job(self._settings.review_queue, document_id)
        if job is None:
            raise NotFoundError(document_id)
        return ReviewJob.from_queue_job(job)

    def _audit(self, action: str, document_id: str, details: Mapping[str, Any], *, actor: str) -> None:
        if self._audit_trail is None:
            return
        try:
            self._audit_trail.log_curation_action(action, document_id, details, actor=actor)
        except Exception as exc:
            logger.warning(
                "curation_audit_failed action=%s document_id=%s error=%s",
                action,
                document_id,
                exc,
            )

    @staticmethod
    def _translate(exc: Exception, *, document_id: str, current_status: str, new_status: str) -> Exception:
        if isinstance(exc, JobNotFoundError):
            return NotFoundError(document_id)
        if isinstance(exc, RevisionConflictError):
            return ConflictError(document_id)
        if isinstance(exc, InvalidJobStateError):
            return TransitionError(current_status=current_status, new_status=new_status)
        return exc

    def _merge(
        self,
        document_id: str,
        build: Callable[[ReviewJob], dict[str, Any]],
    ) -> tuple[ReviewJob, ReviewJob]:
        """Apply a merge-only update, re-reading and retrying on revision conflicts.

        Returns the job as read before the winning write and the job after it.
        """
        attempts = self._settings.max_write_attempts
        for attempt in range(1, attempts + 1):
            current = self._load(document_id)
            partial = build(current)
            partial["updated_at"] = self._utcnow_iso()
            try:
                updated = self._store.update_job(
                    self._settings.review_queue,
                    document_id,
                    partial,
                    expected_revision=current.revision,
                )
            except RevisionConflictError:
                logger.warning(
                    "review_write_conflict document_id=%s attempt=%s max_attempts=%s",
                    document_id,
                    attempt,
                    attempts,
                )
                continue
            except JobNotFoundError as exc:
                raise NotFoundError(document_id) from exc
            return current, ReviewJob.from_queue_job(updated)
        raise ConflictError(document_id)

    def _compensate(self, queue_name: str, job_id: str, *, document_id: str) -> None:
        try:
            removed = self._store.remove_job(queue_name, job_id)
        except Exception:
            logger.exception(
                "downstream_compensation_failed document_id=%s queue=%s job_id=%s",
                document_id,
                queue_name,
                job_id,
            )
            return
        logger.warning(
            "downstream_job_compensated document_id=%s queue=%s job_id=%s removed=%s",
            document_id,
            queue_name,
            job_id,
            removed,
        )

    def _restore(self, current: ReviewJob, partial: Mapping[str, Any]) -> None:
        restore = {key: current.data[key] for key in partial if key in current.data}
        added = [key for key in partial if key not in current.data]
        try:
            self._store.update_job(self._settings.review_queue, current.id, restore, unset=added)
        except Exception:
            logger.exception("review_restore_failed document_id=%s", current.id)

    def _finish_terminal(
        self,
        current: ReviewJob,
        partial: dict[str, Any],
        *,
        new_status: str,
        downstream: QueueJob | None,
        finish: Callable[[], QueueJob],
    ) -> ReviewJob:
        """Write the terminal merge and finish the review job, undoing the downstream job on failure."""
        queue = self._settings.review_queue
        merged = False
        try:
            self._store.update_job(queue, current.id, partial, expected_revision=current.revision)
            merged = True
            finished = finish()
        except Exception as exc:
            if merged:
                self._restore(current, partial)
            if downstream is not None:
                self._compensate(downstream.queue_name, downstream.job_id, document_id=current.id)
            translated = self._translate(
                exc,
                document_id=current.id,
                current_status=current.status,
                new_status=new_status,
            )
            if translated is exc:
                raise
            raise translated from exc
        return ReviewJob.from_queue_job(finished)

    def start_review(
        self,
        document_id: str,
        *,
        actor: str,
        notes: str | None = None,
        priority: int | None = None,
        assign_to: str | None = None,
        bulk_operation: bool = False,
    ) -> ReviewJob:
        queue = self._settings.review_queue
        assignee = (assign_to or "").strip() or actor
        with self._document_lock(document_id):

            def _build(current: ReviewJob) -> dict[str, Any]:
                assert_transition(current.status, STATUS_IN_REVIEW)
                partial: dict[str, Any] = {
                    "status": STATUS_IN_REVIEW,
                    "workflow_stage": "review",
                    "assigned_to": assignee,
                    "review_started_by": actor,
                    "review_started_at": self._utcnow_iso(),
                }
                if notes is not None:
                    partial["review_notes"] = notes
                if bulk_operation:
                    partial["bulk_operation"] = True
                return partial

            previous, updated = self._merge(document_id, _build)
            try:
                if priority is not None and int(priority) != updated.priority:
                    self._store.change_priority(queue, document_id, int(priority))
                if updated.queue_state in {"waiting", "delayed"}:
                    self._store.move_to_active(queue, document_id)
            except (JobNotFoundError, InvalidJobStateError) as exc:
                raise self._translate(
                    exc,
                    document_id=document_id,
                    current_status=previous.status,
                    new_status=STATUS_IN_REVIEW,
                ) from exc
            updated = self._load(document_id)

        self._audit(
            "start_review",
            document_id,
            {
                "previous_status": previous.status,
                "priority": updated.priority,
                "assigned_to": assignee,
                "notes": notes,
                "bulk_operation": bulk_operation,
            },
            actor=actor,
        )
        logger.info("review_started document_id=%s actor=%s priority=%s", document_id, actor, updated.priority)
        return updated

    def approve(
        self,
        document_id: str,
        *,
        actor: str,
        notes: str | None = None,
        visibility: str = "internal",
        tags: Iterable[str] | None = None,
        overrides: Mapping[str, Any] | None = None,
        bulk_operation: bool = False,
    ) -> ReviewJob:
        settings = self._settings
        with self._document_lock(document_id):
            current = self._load(document_id)
            assert_transition(current.status, STATUS_APPROVED)
            now = self._utcnow_iso()
            partial: dict[str, Any] = {
                "status": STATUS_APPROVED,
                "decision": "approve",
                "approved_by": actor,
                "approved_at": now,
                "visibility": visibility or "internal",
                "tags": dedupe_tags(tags or []),
                "workflow_stage": STATUS_APPROVED,
                "updated_at": now,
            }
            if notes is not None:
                partial["review_notes"] = notes
            if overrides:
                payload = dict(current.payload)
                payload["document"] = {**current.document, **dict(overrides)}
                partial["payload"] = payload
            if bulk_operation:
                partial["bulk_operation"] = True

            downstream = self._store.add_job(
                settings.processing_queue,
                {**current.data, **partial, "document_id": current.document_id},
                priority=current.priority,
                attempts=settings.processing_attempts,
            )
            partial["downstream_job_id"] = downstream.job_id
            approved = self._finish_terminal(
                current,
                partial,
                new_status=STATUS_APPROVED,
                downstream=downstream,
                finish=lambda: self._store.move_to_completed(
                    settings.review_queue,
                    document_id,
                    STATUS_APPROVED,
                    remove_on_complete=settings.remove_on_complete,
                ),
            )

        self._audit(
            "approve",
            document_id,
            {
                "previous_status": current.status,
                "visibility": partial["visibility"],
                "tags": partial["tags"],
                "notes": notes,
                "overrides": sorted(dict(overrides or {}).keys()),
                "downstream_job_id": downstream.job_id,
                "bulk_operation": bulk_operation,
            },
            actor=actor,
        )
        logger.info(
            "review_approved document_id=%s actor=%s downstream_job_id=%s",
            document_id,
            actor,
            downstream.job_id,
        )
        return approved

    def reject(
        self,
        document_id: str,
        *,
        actor: str,
        reason: str | None,
        notes: str | None = None,
        permanent: bool = False,
        bulk_operation: bool = False,
    ) -> ReviewJob:
        reason_text = str(reason or "").strip()
        if not reason_text:
            raise ValidationError("Rejection reason is required", code="REVIEW_REASON_REQUIRED")
        settings = self._settings
        with self._document_lock(document_id):
            current = self._load(document_id)
            assert_transition(current.status, STATUS_REJECTED)
            now = self._utcnow_iso()
            partial: dict[str, Any] = {
                "status": STATUS_REJECTED,
                "decision": "reject",
                "rejected_by": actor,
                "rejected_at": now,
                "rejection_reason": reason_text,
                "permanent": bool(permanent),
                "workflow_stage": STATUS_REJECTED,
                "updated_at": now,
            }
            if notes is not None:
                partial["review_notes"] = notes
            if bulk_operation:
                partial["bulk_operation"] = True

            downstream: QueueJob | None = None
            if permanent:

                def _finish() -> QueueJob:
                    return self._store.move_to_failed(
                        settings.review_queue,
                        document_id,
                        f"Rejected: {reason_text}",
                        remove_on_fail=settings.remove_on_fail,
                    )

            else:
                downstream = self._store.add_job(
                    settings.rejected_queue,
                    {**current.data, **partial, "document_id": current.document_id},
                    priority=REJECTED_QUEUE_PRIORITY,
                    attempts=settings.rejected_attempts,
                )
                partial["downstream_job_id"] = downstream.job_id

                def _finish() -> QueueJob:
                    return self._store.move_to_completed(
                        settings.review_queue,
                        document_id,
                        STATUS_REJECTED,
                        remove_on_complete=settings.remove_on_complete,
                    )

            rejected = self._finish_terminal(
                current,
                partial,
                new_status=STATUS_REJECTED,
                downstream=downstream,
                finish=_finish,
            )

        self._audit(
            "reject",
            document_id,
            {
                "previous_status": current.status,
                "reason": reason_text,
                "notes": notes,
                "permanent": bool(permanent),
                "downstream_job_id": downstream.job_id if downstream is not None else None,
                "bulk_operation": bulk_operation,
            },
            actor=actor,
        )
        logger.info(
            "review_rejected document_id=%s actor=%s permanent=%s",
            document_id,
            actor,
            bool(permanent),
        )
        return rejected

    def flag(
        self,
        document_id: str,
        *,
        actor: str,
        flag_type: str | None,
        reason: str | None = None,
        priority: int = 1,
        bulk_operation: bool = False,
    ) -> tuple[ReviewJob, ReviewFlag]:
        type_text = str(flag_type or "").strip()
        if not type_text:
            raise ValidationError("Flag type is required", code="REVIEW_FLAG_TYPE_REQUIRED")
        flag_priority = int(priority)
        flag = ReviewFlag(
            id=f"flag_{uuid.uuid4().hex[:12]}",
            type=type_text,
            reason=str(reason or ""),
            flagged_by=actor,
            flagged_at=self._utcnow_iso(),
            priority=flag_priority,
            resolved=False,
            bulk_operation=bulk_operation,
        )
        with self._document_lock(document_id):

            def _build(current: ReviewJob) -> dict[str, Any]:
                partial: dict[str, Any] = {"flags": current.with_flag(flag)}
                if bulk_operation:
                    partial["bulk_operation"] = True
                return partial

            previous, updated = self._merge(document_id, _build)
            if flag_priority > updated.priority:
                try:
                    escalated = self._store.change_priority(self._settings.review_queue, document_id, flag_priority)
                except JobNotFoundError as exc:
                    raise NotFoundError(document_id) from exc
                updated = ReviewJob.from_queue_job(escalated)

        self._audit(
            "flag",
            document_id,
            {
                "flag_id": flag.id,
                "type": flag.type,
                "reason": flag.reason,
                "priority": flag_priority,
                "previous_priority": previous.priority,
                "bulk_operation": bulk_operation,
            },
            actor=actor,
        )
        logger.info(
            "review_flagged document_id=%s actor=%s flag_type=%s priority=%s",
            document_id,
            actor,
            flag.type,
            updated.priority,
        )
        return updated, flag

    def assign(
        self,
        document_id: str,
        *,
        actor: str,
        assign_to: str | None,
        notes: str | None = None,
        bulk_operation: bool = False,
    ) -> ReviewJob:
        assignee = str(assign_to or "").strip()
        if not assignee:
            raise ValidationError("assign_to is required", code="REVIEW_ASSIGNEE_REQUIRED")
        with self._document_lock(document_id):

            def _build(current: ReviewJob) -> dict[str, Any]:
                partial: dict[str, Any] = {
                    "assigned_to": assignee,
                    "assigned_by": actor,
                    "assigned_at": self._utcnow_iso(),
                    "assignment_notes": notes or "",
                }
                if bulk_operation:
                    partial["bulk_operation"] = True
                return partial

            previous, updated = self._merge(document_id, _build)

        self._audit(
            "assign",
            document_id,
            {
                "assigned_to": assignee,
                "previous_assignee": previous.assigned_to,
                "notes": notes,
                "bulk_operation": bulk_operation,
            },
            actor=actor,
        )
        logger.info("review_assigned document_id=%s actor=%s assigned_to=%s", document_id, actor, assignee)
        return updated

    @staticmethod
    def _require_tags(tags: Iterable[Any] | None) -> list[str]:
        cleaned = dedupe_tags(tags or [])
        if not cleaned:
            raise ValidationError("tags must be a non-empty list", code="REVIEW_TAGS_REQUIRED")
        return cleaned

    def add_tags(
        self,
        document_id: str,
        *,
        actor: str,
        tags: Iterable[str] | None,
        notes: str | None = None,
        bulk_operation: bool = False,
    ) -> ReviewJob:
        wanted = self._require_tags(tags)
        with self._document_lock(document_id):

            def _build(current: ReviewJob) -> dict[str, Any]:
                partial: dict[str, Any] = {
                    "tags": current.with_tags(wanted),
                    "last_tagged_by": actor,
                    "last_tagged_at": self._utcnow_iso(),
                    "tagging_notes": notes or "",
                }
                if bulk_operation:
                    partial["bulk_operation"] = True
                return partial

            _, updated = self._merge(document_id, _build)

        self._audit(
            "add_tags",
            document_id,
            {"tags": wanted, "all_tags": list(updated.tags), "notes": notes, "bulk_operation": bulk_operation},
            actor=actor,
        )
        logger.info("review_tags_added document_id=%s actor=%s count=%s", document_id, actor, len(wanted))
        return updated

    def remove_tags(
        self,
        document_id: str,
        *,
        actor: str,
        tags: Iterable[str] | None,
        notes: str | None = None,
        bulk_operation: bool = False,
    ) -> ReviewJob:
        unwanted = self._require_tags(tags)
        with self._document_lock(document_id):

            def _build(current: ReviewJob) -> dict[str, Any]:
                partial: dict[str, Any] = {
                    "tags": current.without_tags(unwanted),
                    "last_tagged_by": actor,
                    "last_tagged_at": self._utcnow_iso(),
                    "tagging_notes": notes or "",
                }
                if bulk_operation:
                    partial["bulk_operation"] = True
                return partial

            _, updated = self._merge(document_id, _build)

        self._audit(
            "remove_tags",
            document_id,
            {"tags": unwanted, "remaining_tags": list(updated.tags), "notes": notes, "bulk_operation": bulk_operation},
            actor=actor,
        )
        logger.info("review_tags_removed document_id=%s actor=%s count=%s", document_id, actor, len(unwanted))
        return updated

    def get_document(self, document_id: str) -> ReviewJob:
        return self._load(document_id)

    @staticmethod
    def _matches_filter(job: ReviewJob, filter_name: str) -> bool:
        if filter_name == "pending":
            return job.status == STATUS_PENDING
        if filter_name == "in-review":
            return job.status == STATUS_IN_REVIEW
        if filter_name == "flagged":
            return bool(job.flags)
        if filter_name == "assigned":
            return job.assigned_to is not None
        if filter_name == "unassigned":
            return job.assigned_to is None
        return True

    def list_pending(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        search: str = "",
        filter_name: str = "all",
    ) -> dict[str, Any]:
        filter_key = (filter_name or "all").strip().lower()
        if filter_key not in PENDING_FILTERS:
            raise ValidationError(f"filter must be one of: {', '.join(PENDING_FILTERS)}")
        page = max(1, int(page))
        limit = min(max(1, int(limit)), self._settings.pending_max_limit)

        jobs = self._store.get_jobs(self._settings.review_queue, OPEN_QUEUE_STATES)
        matched = [
            review
            for review in (ReviewJob.from_queue_job(job) for job in jobs)
            if not review.is_terminal and self._matches_filter(review, filter_key) and review.matches_search(search)
        ]
        start = (page - 1) * limit
        window = matched[start : start + limit]
        total = len(matched)
        return {
            "documents": [review.to_summary() for review in window],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

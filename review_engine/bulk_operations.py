from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from review_engine.errors import ApiError, NotFoundError, ValidationError
from review_engine.review_workflow import ReviewWorkflowEngine
from review_engine.settings import ReviewSettings

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Document not found"

BULK_LABELS: dict[str, str] = {
    "approve": "approval",
    "reject": "rejection",
    "start_review": "start review",
    "flag": "flagging",
    "assign": "assignment",
    "add_tags": "tagging",
    "remove_tags": "tag removal",
}

ItemOutcome = tuple[dict[str, Any] | None, dict[str, Any] | None]


class BulkOperationCoordinator:
    """Apply one review transition to many documents with per-item isolation.

    Request-level validation happens before any item is touched and aborts the
    batch. After that, a failing item is recorded in `errors` and the batch
    continues. Results and errors keep the order of `document_ids`.
    """

    def __init__(self, *, engine: ReviewWorkflowEngine, settings: ReviewSettings | None = None) -> None:
        self._engine = engine
        self._settings = settings or engine.settings

    def _validate_ids(self, document_ids: Any) -> list[str]:
        if not isinstance(document_ids, (list, tuple)) or not document_ids:
            raise ValidationError("document_ids must be a non-empty list", code="BULK_DOCUMENT_IDS_REQUIRED")
        ids: list[str] = []
        for raw in document_ids:
            if not isinstance(raw, str) or not raw.strip():
                raise ValidationError(
                    "document_ids must contain non-empty strings",
                    code="BULK_DOCUMENT_IDS_REQUIRED",
                )
            ids.append(raw.strip())
        if len(ids) > self._settings.bulk_max_items:
            raise ValidationError(
                f"at most {self._settings.bulk_max_items} documents per bulk request",
                code="BULK_TOO_MANY_ITEMS",
            )
        return ids

    @staticmethod
    def _run_one(operation: str, document_id: str, fn: Callable[[str], dict[str, Any]]) -> ItemOutcome:
        try:
            return fn(document_id), None
        except NotFoundError:
            return None, {"document_id": document_id, "error": NOT_FOUND_MESSAGE}
        except ApiError as exc:
            logger.warning(
                "bulk_item_failed operation=%s document_id=%s code=%s",
                operation,
                document_id,
                exc.code,
            )
            return None, {"document_id": document_id, "error": exc.message}
        except Exception as exc:
            logger.exception("bulk_item_error operation=%s document_id=%s", operation, document_id)
            return None, {"document_id": document_id, "error": str(exc) or exc.__class__.__name__}

    def _run(
        self,
        operation: str,
        document_ids: Sequence[str],
        fn: Callable[[str], dict[str, Any]],
    ) -> dict[str, Any]:
        workers = min(self._settings.bulk_max_workers, len(document_ids))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="review-bulk") as pool:
                outcomes = list(pool.map(lambda doc_id: self._run_one(operation, doc_id, fn), document_ids))
        else:
            outcomes = [self._run_one(operation, doc_id, fn) for doc_id in document_ids]

        results = [result for result, _ in outcomes if result is not None]
        errors = [error for _, error in outcomes if error is not None]
        label = BULK_LABELS[operation]
        logger.info(
            "bulk_operation_completed operation=%s total=%s successful=%s failed=%s",
            operation,
            len(document_ids),
            len(results),
            len(errors),
        )
        return {
            "results": results,
            "errors": errors,
            "summary": {
                "total": len(document_ids),
                "successful": len(results),
                "failed": len(errors),
            },
            "message": f"Bulk {label} completed: {len(results)} successful, {len(errors)} failed",
        }

    def bulk_approve(
        self,
        document_ids: Any,
        *,
        actor: str,
        notes: str | None = None,
        visibility: str = "internal",
        tags: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        ids = self._validate_ids(document_ids)
        tag_list = list(tags or [])

        def _apply(document_id: str) -> dict[str, Any]:
            self._engine.approve(
                document_id,
                actor=actor,
                notes=notes,
                visibility=visibility,
                tags=tag_list,
                bulk_operation=True,
            )
            return {"document_id": document_id, "status": "approved"}

        return self._run("approve", ids, _apply)

    def bulk_reject(
        self,
        document_ids: Any,
        *,
        actor: str,
        reason: str | None,
        notes: str | None = None,
        permanent: bool = False,
    ) -> dict[str, Any]:
        ids = self._validate_ids(document_ids)
        if not str(reason or "").strip():
            raise ValidationError("Rejection reason is required", code="REVIEW_REASON_REQUIRED")

        def _apply(document_id: str) -> dict[str, Any]:
            self._engine.reject(
                document_id,
                actor=actor,
                reason=reason,
                notes=notes,
                permanent=permanent,
                bulk_operation=True,
            )
            return {"document_id": document_id, "status": "rejected"}

        return self._run("reject", ids, _apply)

    def bulk_start_review(
        self,
        document_ids: Any,
        *,
        actor: str,
        notes: str | None = None,
        priority: int | None = None,
        assign_to: str | None = None,
    ) -> dict[str, Any]:
        ids = self._validate_ids(document_ids)

        def _apply(document_id: str) -> dict[str, Any]:
            job = self._engine.start_review(
                document_id,
                actor=actor,
                notes=notes,
                priority=priority,
                assign_to=assign_to,
                bulk_operation=True,
            )
            return {"document_id": document_id, "status": "in-review", "assigned_to": job.assigned_to}

        return self._run("start_review", ids, _apply)

    def bulk_flag(
        self,
        document_ids: Any,
        *,
        actor: str,
        flag_type: str | None,
        reason: str | None = None,
        priority: int = 1,
    ) -> dict[str, Any]:
        ids = self._validate_ids(document_ids)
        if not str(flag_type or "").strip():
            raise ValidationError("Flag type is required", code="REVIEW_FLAG_TYPE_REQUIRED")

        def _apply(document_id: str) -> dict[str, Any]:
            _, flag = self._engine.flag(
                document_id,
                actor=actor,
                flag_type=flag_type,
                reason=reason,
                priority=priority,
                bulk_operation=True,
            )
            return {"document_id": document_id, "status": "flagged", "flag_id": flag.id}

        return self._run("flag", ids, _apply)

    def bulk_assign(
        self,
        document_ids: Any,
        *,
        actor: str,
        assign_to: str | None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        ids = self._validate_ids(document_ids)
        assignee = str(assign_to or "").strip()
        if not assignee:
            raise ValidationError("assign_to is required", code="REVIEW_ASSIGNEE_REQUIRED")

        def _apply(document_id: str) -> dict[str, Any]:
            self._engine.assign(
                document_id,
                actor=actor,
                assign_to=assignee,
                notes=notes,
                bulk_operation=True,
            )
            return {"document_id": document_id, "status": "assigned", "assigned_to": assignee}

        return self._run("assign", ids, _apply)

    @staticmethod
    def _require_tags(tags: Any) -> list[str]:
        if not isinstance(tags, (list, tuple)):
            raise ValidationError("tags must be a non-empty list", code="REVIEW_TAGS_REQUIRED")
        cleaned = [str(tag).strip() for tag in tags if str(tag).strip()]
        if not cleaned:
            raise ValidationError("tags must be a non-empty list", code="REVIEW_TAGS_REQUIRED")
        return cleaned

    def bulk_add_tags(
        self,
        document_ids: Any,
        *,
        actor: str,
        tags: Any,
        notes: str | None = None,
    ) -> dict[str, Any]:
        ids = self._validate_ids(document_ids)
        wanted = self._require_tags(tags)

        def _apply(document_id: str) -> dict[str, Any]:
            job = self._engine.add_tags(document_id, actor=actor, tags=wanted, notes=notes, bulk_operation=True)
            return {
                "document_id": document_id,
                "status": "tagged",
                "added_tags": list(wanted),
                "all_tags": list(job.tags),
            }

        return self._run("add_tags", ids, _apply)

    def bulk_remove_tags(
        self,
        document_ids: Any,
        *,
        actor: str,
        tags: Any,
        notes: str | None = None,
    ) -> dict[str, Any]:
        ids = self._validate_ids(document_ids)
        unwanted = self._require_tags(tags)

        def _apply(document_id: str) -> dict[str, Any]:
            job = self._engine.remove_tags(document_id, actor=actor, tags=unwanted, notes=notes, bulk_operation=True)
            return {
                "document_id": document_id,
                "status": "untagged",
                "removed_tags": list(unwanted),
                "remaining_tags": list(job.tags),
            }

        return self._run("remove_tags", ids, _apply)


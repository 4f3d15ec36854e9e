from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, Field


class StartReviewRequest(BaseModel):
    notes: str | None = None
    priority: int | None = None


class ApproveRequest(BaseModel):
    notes: str | None = None
    visibility: str = "internal"
    tags: list[str] = Field(default_factory=list)
    overrides: dict[str, Any] = Field(default_factory=dict)


class RejectRequest(BaseModel):
    reason: str | None = None
    notes: str | None = None
    permanent: bool = False


class FlagRequest(BaseModel):
    flag: str | None = None
    type: str | None = None
    reason: str | None = None
    notes: str | None = None
    priority: int = 1

    @property
    def flag_type(self) -> str | None:
        return self.flag or self.type

    @property
    def flag_reason(self) -> str:
        return self.reason or self.notes or ""


class AssignRequest(BaseModel):
    assign_to: str | None = Field(default=None, validation_alias=AliasChoices("assign_to", "assignTo"))
    notes: str | None = None


class TagsRequest(BaseModel):
    tags: list[str] | None = None
    notes: str | None = None


class BulkRequest(BaseModel):
    document_ids: list[Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("document_ids", "documentIds"),
    )


class BulkApproveRequest(BulkRequest):
    notes: str | None = None
    visibility: str = "internal"
    tags: list[str] = Field(default_factory=list)


class BulkRejectRequest(BulkRequest):
    reason: str | None = None
    notes: str | None = None
    permanent: bool = False


class BulkStartReviewRequest(BulkRequest):
    notes: str | None = None
    priority: int | None = None
    assign_to: str | None = Field(default=None, validation_alias=AliasChoices("assign_to", "assignTo"))


class BulkFlagRequest(BulkRequest):
    flag: str | None = None
    type: str | None = None
    reason: str | None = None
    notes: str | None = None
    priority: int = 1

    @property
    def flag_type(self) -> str | None:
        return self.flag or self.type

    @property
    def flag_reason(self) -> str:
        return self.reason or self.notes or ""


class BulkAssignRequest(BulkRequest):
    assign_to: str | None = Field(default=None, validation_alias=AliasChoices("assign_to", "assignTo"))
    notes: str | None = None


class BulkTagsRequest(BulkRequest):
    tags: list[str] | None = None
    notes: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }

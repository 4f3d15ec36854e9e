from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ValidationError(ApiError):
    def __init__(self, message: str, *, code: str = "REQ_VALIDATION_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class NotFoundError(ApiError):
    def __init__(self, document_id: str) -> None:
        super().__init__(
            code="DOC_NOT_FOUND",
            message=f"Document {document_id} not found",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.document_id = document_id


class TransitionError(ApiError):
    def __init__(self, *, current_status: str, new_status: str) -> None:
        super().__init__(
            code="WF_STATE_TRANSITION_INVALID",
            message=f"invalid transition: {current_status} -> {new_status}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
        self.current_status = current_status
        self.new_status = new_status


class ConflictError(ApiError):
    """Raised when a concurrent writer changed the job between read and write."""

    def __init__(self, document_id: str) -> None:
        super().__init__(
            code="WF_WRITE_CONFLICT",
            message=f"Document {document_id} was modified concurrently",
            error_class="concurrency",
            retryable=True,
            http_status=409,
        )
        self.document_id = document_id

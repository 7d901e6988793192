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


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "REQ_NOT_FOUND") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class ConflictError(ApiError):
    def __init__(self, message: str, *, code: str = "WORK_ITEM_STATE_CONFLICT") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


class ValidationFailed(ApiError):
    def __init__(self, message: str, *, code: str = "REQ_VALIDATION_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class PipelineFailure(ApiError):
    """Raised inside a pipeline stage; recorded on the work item, never returned to a caller."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "PIPELINE_FAILED",
        retryable: bool = False,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="permanent",
            retryable=retryable,
            http_status=500,
        )


class TransientIOFailure(ApiError):
    def __init__(self, message: str, *, code: str = "STORAGE_UNAVAILABLE") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )

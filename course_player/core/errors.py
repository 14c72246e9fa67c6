from typing import Any

from course_player.core.error_codes import ErrorCode


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, detail: dict[str, Any] | None = None):
        self.status_code = status_code
        self.code = str(code)
        self.message = message
        self.detail = detail or {}
        super().__init__(message)


class PolicySeekViolation(ApiError):
    """Learner tried to scrub past the furthest point actually watched."""

    def __init__(self, lesson_id: str, requested_fraction: float, allowed_fraction: float):
        self.lesson_id = lesson_id
        self.requested_fraction = requested_fraction
        self.allowed_fraction = allowed_fraction
        super().__init__(
            status_code=409,
            code=ErrorCode.SEEK_NOT_ALLOWED,
            message="Please watch the full content to proceed.",
            detail={"lesson_id": lesson_id, "snap_to": allowed_fraction},
        )


class GateViolation(ApiError):
    def __init__(self, lesson_id: str, reason: str, code: str = ErrorCode.LESSON_LOCKED):
        self.lesson_id = lesson_id
        self.reason = reason
        super().__init__(status_code=403, code=code, message=reason, detail={"lesson_id": lesson_id})


class SyncTransientFailure(ApiError):
    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(status_code=503, code=ErrorCode.SYNC_UNAVAILABLE, message=message)


class SyncPermanentFailure(ApiError):
    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(status_code=422, code=ErrorCode.SYNC_REJECTED, message=message)


class ScormProtocolMisuse(ApiError):
    """Out-of-order RTE call. Logged by the shim, never raised into content."""

    def __init__(self, call: str, state: str):
        self.call = call
        self.state = state
        super().__init__(
            status_code=400,
            code=ErrorCode.SCORM_MISUSE,
            message=f"{call} is not allowed while the runtime is {state}",
        )


class InvalidSignal(ApiError):
    def __init__(self, message: str):
        super().__init__(status_code=422, code=ErrorCode.INVALID_SIGNAL, message=message)

"""
Standardised error handling for FrameUploader.
"""

from app.core.constants import ErrorCode, TRANSIENT_CAUSES


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None,
                 detail: str | None = None):
        self.code = code
        self.message = message
        self.retryable = bool(retryable)
        # Diagnostics only (e.g. a raw response body); never shown to the user
        self.detail = detail
        super().__init__(f"[{code}] {message}")


class TransferError(JobError):
    """Failure of an upload, download or status request."""

    def __init__(self, code: str, message: str, status: int | None = None,
                 cause: str | None = None, detail: str | None = None):
        self.status = status
        self.cause = cause
        super().__init__(code, message,
                         retryable=is_retryable(code, cause),
                         detail=detail)


def is_retryable(code: str, cause: str | None = None) -> bool:
    return code == ErrorCode.TRANSPORT and cause in TRANSIENT_CAUSES


def cancelled_error(what: str = "Transfer") -> TransferError:
    return TransferError(ErrorCode.CANCELLED, f"{what} cancelled")

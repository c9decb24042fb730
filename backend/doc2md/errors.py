"""Error kinds surfaced by the conversion pipeline, task store and upload cache.

Every kind carries an HTTP status and a stable ``code`` so clients can branch on
the code instead of matching message text.
"""
from typing import Optional


class Doc2MDError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class InvalidInput(Doc2MDError):
    status_code = 400
    code = "invalid_input"


class UnsupportedFormat(Doc2MDError):
    status_code = 415
    code = "unsupported_format"


class PayloadTooLarge(Doc2MDError):
    status_code = 413
    code = "payload_too_large"


class ProbeFailed(Doc2MDError):
    status_code = 422
    code = "probe_failed"


class EncodingFailed(Doc2MDError):
    status_code = 500
    code = "encoding_failed"


class EncodingTimeout(EncodingFailed):
    code = "encoding_timeout"


class EncodedFileTooLarge(EncodingFailed):
    status_code = 413
    code = "encoded_file_too_large"


class ConfigurationMissing(Doc2MDError):
    """The capability a request depends on is not configured; retrying will not help."""

    status_code = 503
    code = "configuration_missing"

    def __init__(self, message: str):
        super().__init__(f"Configuration required: {message}")


class UpstreamCallFailed(Doc2MDError):
    status_code = 502
    code = "upstream_call_failed"

    def __init__(self, backend: str, message: str, model: Optional[str] = None):
        where = f"{backend} (model={model})" if model else backend
        super().__init__(f"{where} call failed: {message}")
        self.backend = backend
        self.model = model


class TaskNotFound(Doc2MDError):
    status_code = 404
    code = "task_not_found"

    def __init__(self, task_id: str):
        super().__init__("Task not found")
        self.task_id = task_id


class CacheEntryExpired(Doc2MDError):
    status_code = 410
    code = "cache_entry_expired"

    def __init__(self, entry_id: str, filename: Optional[str] = None):
        label = filename or entry_id
        super().__init__(f"Uploaded file is no longer available: {label}")
        self.entry_id = entry_id


class FilePreparationFailed(Doc2MDError):
    """A single file in a batch could not be prepared; keeps the underlying kind's code."""

    def __init__(self, filename: str, cause: Exception):
        message = cause.message if isinstance(cause, Doc2MDError) else str(cause)
        super().__init__(f"{filename}: {message}")
        self.filename = filename
        if isinstance(cause, Doc2MDError):
            self.code = cause.code
            self.status_code = cause.status_code

"""Error taxonomy shared by the upload pipeline.

Every failure the pipeline can report is an ``UploadServerError`` carrying a
machine readable ``reason`` and the HTTP status it maps to. The web layer never
inspects exception text; it only calls :func:`error_response`.
"""
from typing import Dict, Tuple


class UploadServerError(Exception):
    reason = "internal_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)


class EmptyUpload(UploadServerError):
    reason = "empty_upload"
    status_code = 400


class MalformedUpload(UploadServerError):
    reason = "malformed_request"
    status_code = 400


class InvalidOptions(UploadServerError):
    reason = "invalid_options"
    status_code = 400


class PayloadTooLarge(UploadServerError):
    reason = "payload_too_large"
    status_code = 413


class StorageFailure(UploadServerError):
    reason = "storage_failure"
    status_code = 500


class IdentifierCollision(StorageFailure):
    """The target identifier is already taken; callers retry with a new one."""
    reason = "identifier_collision"


class ThumbnailFailure(UploadServerError):
    """Raised inside the thumbnail path only, never surfaced to clients."""
    reason = "thumbnail_failure"


class NotFound(UploadServerError):
    reason = "not_found"
    status_code = 404


class Unauthorized(UploadServerError):
    reason = "invalid_delete_token"
    status_code = 403


def error_response(error: Exception) -> Tuple[int, Dict[str, str]]:
    """Map an exception to an HTTP status code and JSON body."""
    if isinstance(error, IdentifierCollision):
        # Collisions are retried upstream, one that escapes is a storage failure
        return StorageFailure.status_code, {"error": StorageFailure.reason}
    if isinstance(error, UploadServerError):
        return error.status_code, {"error": error.reason}
    return 500, {"error": UploadServerError.reason}

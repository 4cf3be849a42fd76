"""Error taxonomy surfaced by the storage engine.

Every error carries a stable ``code`` so clients can tell a retryable
rejection (wrong share password) from a permanent one (expired link).
"""

from __future__ import annotations


class CabinetError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", **details) -> None:
        super().__init__(message or self.code)
        self.details = details


class InvalidRequest(CabinetError):
    code = "invalid_request"
    status_code = 400


class NotFound(CabinetError):
    code = "not_found"
    status_code = 404


class FileNotFound(NotFound):
    code = "file_not_found"


class FolderNotFound(NotFound):
    code = "folder_not_found"


class UserNotFound(NotFound):
    code = "user_not_found"


class ShareNotFound(NotFound):
    code = "share_not_found"


class Forbidden(CabinetError):
    code = "forbidden"
    status_code = 403


class Unauthorized(CabinetError):
    code = "unauthorized"
    status_code = 401


class SharePasswordRequired(Unauthorized):
    code = "share_password_required"


class SharePasswordInvalid(Unauthorized):
    code = "share_password_invalid"


class QuotaExceeded(CabinetError):
    code = "quota_exceeded"
    status_code = 413


class UploadTooLarge(CabinetError):
    code = "upload_too_large"
    status_code = 413


class UploadSizeMismatch(InvalidRequest):
    code = "upload_size_mismatch"


class FolderNotEmpty(CabinetError):
    code = "folder_not_empty"
    status_code = 409


class InvalidFolderMove(CabinetError):
    code = "invalid_folder_move"
    status_code = 409


class FolderChainBroken(CabinetError):
    code = "folder_chain_broken"
    status_code = 409


class UsernameTaken(CabinetError):
    code = "username_taken"
    status_code = 409


class ShareGone(CabinetError):
    code = "share_gone"
    status_code = 410


class ShareExpired(ShareGone):
    code = "share_expired"


class ShareExhausted(ShareGone):
    code = "share_exhausted"


class StorageIOFailure(CabinetError):
    code = "storage_unavailable"
    status_code = 503


class DerivativeGenerationFailed(CabinetError):
    """Raised inside the derivative pipeline only; never reaches callers."""

    code = "derivative_generation_failed"

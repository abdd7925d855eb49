"""
Exception hierarchy shared by the storage, persistence, OCR and auth layers.

Every error carries a stable ``code`` and the HTTP status the API renders it
with, so services can raise domain errors without importing FastAPI.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class RepackError(Exception):
    code: str = "SERVER_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class StorageError(RepackError):
    """Base class for upload provider failures."""


class ProviderNotFound(StorageError):
    code = "PROVIDER_NOT_FOUND"
    http_status = 400

    def __init__(self, provider_name: str):
        super().__init__(
            f"Provider '{provider_name}' not found",
            details={"provider": provider_name},
        )
        self.provider_name = provider_name


class ProviderNotConfigured(StorageError):
    code = "PROVIDER_NOT_CONFIGURED"
    http_status = 503

    def __init__(self, provider_name: str):
        super().__init__(
            f"Provider '{provider_name}' is not properly configured",
            details={"provider": provider_name},
        )
        self.provider_name = provider_name


class UploadFailed(StorageError):
    code = "UPLOAD_FAILED"
    http_status = 502


class DeleteFailed(StorageError):
    code = "DELETE_FAILED"
    http_status = 502


class InvalidUpload(StorageError):
    code = "INVALID_UPLOAD"
    http_status = 400


class RecordNotFound(RepackError):
    code = "RECORD_NOT_FOUND"
    http_status = 404


class OcrFailed(RepackError):
    code = "OCR_FAILED"
    http_status = 502


class AuthErrorCode(str, Enum):
    EMAIL_ALREADY_REGISTERED = "EMAIL_ALREADY_REGISTERED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    TOO_MANY_ATTEMPTS = "TOO_MANY_ATTEMPTS"
    INVALID_TOKEN = "INVALID_TOKEN"
    EXPIRED_TOKEN = "EXPIRED_TOKEN"
    MISSING_TOKEN = "MISSING_TOKEN"
    PASSWORD_RESET_EXPIRED = "PASSWORD_RESET_EXPIRED"
    PASSWORD_RESET_INVALID = "PASSWORD_RESET_INVALID"
    PASSWORD_TOO_WEAK = "PASSWORD_TOO_WEAK"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    EMAIL_PROVIDER_MISMATCH = "EMAIL_PROVIDER_MISMATCH"


class AuthError(RepackError):
    def __init__(
        self,
        code: AuthErrorCode,
        message: str,
        http_status: int,
        *,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.code = code.value
        self.http_status = http_status

    @classmethod
    def email_already_registered(cls, email: str) -> "AuthError":
        return cls(
            AuthErrorCode.EMAIL_ALREADY_REGISTERED,
            f"Email {email} is already registered",
            409,
            details={"email": email},
        )

    @classmethod
    def invalid_credentials(cls) -> "AuthError":
        return cls(
            AuthErrorCode.INVALID_CREDENTIALS, "Invalid email or password", 401
        )

    @classmethod
    def account_inactive(cls) -> "AuthError":
        return cls(AuthErrorCode.ACCOUNT_INACTIVE, "Account is inactive", 403)

    @classmethod
    def account_suspended(cls) -> "AuthError":
        return cls(
            AuthErrorCode.ACCOUNT_SUSPENDED,
            "Account is suspended due to too many failed login attempts",
            403,
        )

    @classmethod
    def too_many_attempts(cls, retry_after: int) -> "AuthError":
        return cls(
            AuthErrorCode.TOO_MANY_ATTEMPTS,
            "Too many login attempts, please try again later",
            429,
            details={"retry_after": retry_after},
        )

    @classmethod
    def invalid_token(cls) -> "AuthError":
        return cls(
            AuthErrorCode.INVALID_TOKEN, "Invalid authentication token", 401
        )

    @classmethod
    def expired_token(cls) -> "AuthError":
        return cls(
            AuthErrorCode.EXPIRED_TOKEN, "Authentication token has expired", 401
        )

    @classmethod
    def missing_token(cls) -> "AuthError":
        return cls(
            AuthErrorCode.MISSING_TOKEN, "Authentication token is required", 401
        )

    @classmethod
    def password_reset_expired(cls) -> "AuthError":
        return cls(
            AuthErrorCode.PASSWORD_RESET_EXPIRED,
            "Password reset token has expired",
            400,
        )

    @classmethod
    def password_reset_invalid(cls) -> "AuthError":
        return cls(
            AuthErrorCode.PASSWORD_RESET_INVALID,
            "Invalid password reset token",
            400,
        )

    @classmethod
    def password_too_weak(cls) -> "AuthError":
        return cls(
            AuthErrorCode.PASSWORD_TOO_WEAK,
            "Password does not meet security requirements",
            400,
            details={
                "requirements": {
                    "min_length": 8,
                    "require_uppercase": True,
                    "require_lowercase": True,
                    "require_number": True,
                    "require_special_char": True,
                }
            },
        )

    @classmethod
    def email_provider_mismatch(cls, email: str, provider: str) -> "AuthError":
        return cls(
            AuthErrorCode.EMAIL_PROVIDER_MISMATCH,
            f"Email {email} is already registered with {provider}",
            409,
            details={"email": email, "provider": provider},
        )

    @classmethod
    def provider_error(cls, message: str) -> "AuthError":
        return cls(AuthErrorCode.PROVIDER_ERROR, message, 503)

"""
Credential management: bcrypt password hashing, JWT access tokens, account
lockout after repeated failures, Google sign-in and password resets.
"""

from __future__ import annotations

import logging
import re
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

import bcrypt
import jwt
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from repack.config import Settings
from repack.db import CredentialRecord, DbClient
from repack.errors import AuthError
from repack.types import AuthProvider, CredentialStatus

logger = logging.getLogger(__name__)

_PASSWORD_CHECKS = (
    re.compile(r"[A-Z]"),
    re.compile(r"[a-z]"),
    re.compile(r"\d"),
    re.compile(r"[^A-Za-z0-9]"),
)


def hash_password(password: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode(
        "utf-8"
    )


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def validate_password_strength(password: str) -> None:
    if len(password or "") < 8 or not all(
        check.search(password) for check in _PASSWORD_CHECKS
    ):
        raise AuthError.password_too_weak()


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class LoginRateLimiter:
    """
    Fixed-window counter of failed login attempts per client key.

    Successful logins clear the key, so only failures count.
    """

    max_attempts: int = 10
    window_seconds: int = 15 * 60
    _failures: dict = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def check(self, key: str) -> None:
        now = time.time()
        with self._lock:
            window_start, count = self._failures.get(key, (now, 0))
            if now - window_start >= self.window_seconds:
                self._failures.pop(key, None)
                return
            if count >= self.max_attempts:
                retry_after = int(window_start + self.window_seconds - now) + 1
                raise AuthError.too_many_attempts(retry_after)

    def record_failure(self, key: str) -> None:
        now = time.time()
        with self._lock:
            expired = [
                stale
                for stale, (started, _) in self._failures.items()
                if now - started >= self.window_seconds
            ]
            for stale in expired:
                del self._failures[stale]
            window_start, count = self._failures.get(key, (now, 0))
            self._failures[key] = (window_start, count + 1)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class CredentialService:
    def __init__(
        self,
        db: DbClient,
        *,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        jwt_expires_minutes: int = 24 * 60,
        salt_rounds: int = 10,
        max_failed_login_attempts: int = 6,
        password_reset_ttl_seconds: int = 3600,
        google_client_id: Optional[str] = None,
    ):
        self.db = db
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.jwt_expires_minutes = jwt_expires_minutes
        self.salt_rounds = salt_rounds
        self.max_failed_login_attempts = max_failed_login_attempts
        self.password_reset_ttl_seconds = password_reset_ttl_seconds
        self.google_client_id = google_client_id

    @classmethod
    def from_settings(cls, db: DbClient, settings: Settings) -> "CredentialService":
        return cls(
            db,
            jwt_secret=settings.jwt_secret,
            jwt_algorithm=settings.jwt_algorithm,
            jwt_expires_minutes=settings.jwt_expires_minutes,
            salt_rounds=settings.salt_rounds,
            max_failed_login_attempts=settings.max_failed_login_attempts,
            password_reset_ttl_seconds=settings.password_reset_ttl_seconds,
            google_client_id=settings.google_client_id,
        )

    # Tokens

    def create_token(self, credential: CredentialRecord) -> str:
        now = int(time.time())
        payload = {
            "sub": credential.user_id,
            "email": credential.email,
            "provider": AuthProvider(credential.provider).value,
            "iat": now,
            "exp": now + self.jwt_expires_minutes * 60,
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def decode_token(self, token: str) -> dict:
        try:
            return jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthError.expired_token() from exc
        except jwt.InvalidTokenError as exc:
            raise AuthError.invalid_token() from exc

    def authenticate(self, token: Optional[str]) -> CredentialRecord:
        """Resolve a bearer token to an active credential."""
        if not token:
            raise AuthError.missing_token()
        claims = self.decode_token(token)
        credential = self.db.find_credential_by_user_id(claims.get("sub", ""))
        if credential is None:
            raise AuthError.invalid_token()
        if credential.status != CredentialStatus.ACTIVE:
            raise AuthError.account_inactive()
        return credential

    # Local credentials

    def register_user(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> CredentialRecord:
        email = _normalize_email(email)
        if self.db.find_credential_by_email(email):
            raise AuthError.email_already_registered(email)
        validate_password_strength(password)
        credential = CredentialRecord(
            email=email,
            password_hash=hash_password(password, self.salt_rounds),
            first_name=first_name,
            last_name=last_name,
            provider=AuthProvider.LOCAL,
        )
        self.db.save_credential(credential)
        logger.info("Registered local credential for %s", email)
        return credential

    def login_with_credentials(
        self, email: str, password: str
    ) -> tuple[CredentialRecord, str]:
        email = _normalize_email(email)
        credential = self.db.find_credential_by_email(email, AuthProvider.LOCAL)
        if credential is None:
            raise AuthError.invalid_credentials()
        if credential.status == CredentialStatus.INACTIVE:
            raise AuthError.account_inactive()
        if credential.status == CredentialStatus.SUSPENDED:
            raise AuthError.account_suspended()

        if not verify_password(password, credential.password_hash):
            credential.failed_login_attempts += 1
            if credential.failed_login_attempts >= self.max_failed_login_attempts:
                credential.status = CredentialStatus.SUSPENDED
                logger.warning(
                    "Suspended %s after %d failed login attempts",
                    email,
                    credential.failed_login_attempts,
                )
            self.db.save_credential(credential)
            raise AuthError.invalid_credentials()

        credential.failed_login_attempts = 0
        credential.last_login_at = time.time()
        self.db.save_credential(credential)
        return credential, self.create_token(credential)

    # Social login

    def create_social_login(
        self,
        email: str,
        first_name: str,
        last_name: str,
        provider: AuthProvider,
        provider_user_id: str,
    ) -> CredentialRecord:
        email = _normalize_email(email)
        credential = self.db.find_credential_by_provider(provider, provider_user_id)
        if credential:
            credential.email = email
            credential.first_name = first_name
            credential.last_name = last_name
            credential.last_login_at = time.time()
            return self.db.save_credential(credential)

        existing = self.db.find_credential_by_email(email)
        if existing and existing.provider != provider:
            raise AuthError.email_provider_mismatch(
                email, AuthProvider(existing.provider).value
            )

        credential = CredentialRecord(
            email=email,
            first_name=first_name,
            last_name=last_name,
            provider=provider,
            provider_user_id=provider_user_id,
            last_login_at=time.time(),
        )
        self.db.save_credential(credential)
        logger.info("Created %s credential for %s", provider.value, email)
        return credential

    def login_with_google(self, token: str) -> tuple[CredentialRecord, str]:
        if not self.google_client_id:
            raise AuthError.provider_error("Google sign-in is not configured")
        try:
            claims = google_id_token.verify_oauth2_token(
                token, google_requests.Request(), audience=self.google_client_id
            )
        except ValueError as exc:
            logger.warning("Rejected Google ID token: %s", exc)
            raise AuthError.invalid_token() from exc

        email = claims.get("email")
        if not email:
            raise AuthError.provider_error("No email found in Google profile")
        name = claims.get("name") or ""
        first_name = claims.get("given_name") or name.split(" ")[0]
        last_name = claims.get("family_name") or " ".join(name.split(" ")[1:])
        credential = self.create_social_login(
            email, first_name, last_name, AuthProvider.GOOGLE, claims["sub"]
        )
        if credential.status != CredentialStatus.ACTIVE:
            raise AuthError.account_inactive()
        return credential, self.create_token(credential)

    # Passwords and account lifecycle

    def update_password(
        self, user_id: str, new_password: str
    ) -> Optional[CredentialRecord]:
        credential = self.db.find_credential_by_user_id(user_id, AuthProvider.LOCAL)
        if credential is None:
            return None
        validate_password_strength(new_password)
        credential.password_hash = hash_password(new_password, self.salt_rounds)
        credential.password_reset_token = None
        credential.password_reset_expires = None
        return self.db.save_credential(credential)

    def generate_password_reset_token(self, email: str) -> str:
        credential = self.db.find_credential_by_email(
            _normalize_email(email), AuthProvider.LOCAL
        )
        if credential is None:
            raise AuthError.invalid_credentials()
        credential.password_reset_token = secrets.token_urlsafe(32)
        credential.password_reset_expires = time.time() + self.password_reset_ttl_seconds
        self.db.save_credential(credential)
        return credential.password_reset_token

    def reset_password_with_token(
        self, token: str, new_password: str
    ) -> CredentialRecord:
        credential = self.db.find_credential_by_reset_token(token)
        if credential is None:
            raise AuthError.password_reset_invalid()
        if (
            not credential.password_reset_expires
            or credential.password_reset_expires < time.time()
        ):
            raise AuthError.password_reset_expired()
        validate_password_strength(new_password)
        credential.password_hash = hash_password(new_password, self.salt_rounds)
        credential.password_reset_token = None
        credential.password_reset_expires = None
        credential.failed_login_attempts = 0
        if credential.status == CredentialStatus.SUSPENDED:
            credential.status = CredentialStatus.ACTIVE
        return self.db.save_credential(credential)

    def deactivate_account(self, user_id: str) -> Optional[CredentialRecord]:
        credential = self.db.find_credential_by_user_id(user_id)
        if credential is None:
            return None
        credential.status = CredentialStatus.INACTIVE
        logger.info("Deactivated account %s", user_id)
        return self.db.save_credential(credential)

"""
Dependency wiring for the FastAPI app and the OCR worker.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from repack.auth import CredentialService, LoginRateLimiter
from repack.config import get_settings
from repack.db import CredentialRecord, DbClient, InMemoryDbClient, PostgresDbClient
from repack.ocr import OcrService
from repack.parcels import ParcelReceiveService
from repack.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from repack.uploads import FileUploadService, build_upload_service

_db_client: DbClient | None = None
_queue_client: JobQueue | None = None
_upload_service: FileUploadService | None = None
_ocr_service: OcrService | None = None
_login_rate_limiter: LoginRateLimiter | None = None

bearer_scheme = HTTPBearer(auto_error=False)


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so parcel state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for dispatching OCR jobs to workers.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_upload_service() -> FileUploadService:
    global _upload_service
    if _upload_service:
        return _upload_service
    _upload_service = build_upload_service(get_settings())
    return _upload_service


def get_ocr_service() -> OcrService:
    global _ocr_service
    if _ocr_service:
        return _ocr_service
    _ocr_service = OcrService(default_provider=get_settings().ocr_provider)
    return _ocr_service


def get_login_rate_limiter() -> LoginRateLimiter:
    global _login_rate_limiter
    if _login_rate_limiter:
        return _login_rate_limiter
    settings = get_settings()
    _login_rate_limiter = LoginRateLimiter(
        max_attempts=settings.login_rate_limit_attempts,
        window_seconds=settings.login_rate_limit_window_seconds,
    )
    return _login_rate_limiter


def get_credential_service(
    db: DbClient = Depends(get_db_client),
) -> CredentialService:
    return CredentialService.from_settings(db, get_settings())


def get_parcel_service(
    db: DbClient = Depends(get_db_client),
    uploads: FileUploadService = Depends(get_upload_service),
    ocr: OcrService = Depends(get_ocr_service),
    queue: JobQueue = Depends(get_queue_client),
) -> ParcelReceiveService:
    return ParcelReceiveService(
        db,
        uploads,
        ocr,
        queue,
        max_parcel_images=get_settings().max_parcel_images,
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    auth: CredentialService = Depends(get_credential_service),
) -> CredentialRecord:
    token = credentials.credentials if credentials else None
    return auth.authenticate(token)


def reset_dependencies() -> None:
    """Drop cached singletons so the next call rebuilds them from settings."""
    global _db_client, _queue_client, _upload_service, _ocr_service
    global _login_rate_limiter
    _db_client = None
    _queue_client = None
    _upload_service = None
    _ocr_service = None
    _login_rate_limiter = None

"""
HTTP routes for the intake API.
"""

from __future__ import annotations

import logging

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
)
from starlette.concurrency import run_in_threadpool

from repack.auth import CredentialService, LoginRateLimiter
from repack.db import CredentialRecord, ParcelRecord
from repack.dependencies import (
    get_credential_service,
    get_current_user,
    get_login_rate_limiter,
    get_parcel_service,
    get_queue_client,
    get_upload_service,
)
from repack.errors import AuthError
from repack.parcels import ParcelReceiveService
from repack.queue import InMemoryJobQueue, JobQueue
from repack.schemas import (
    CredentialResponse,
    GoogleLoginRequest,
    LoginRequest,
    ParcelListResponse,
    ParcelResponse,
    ParcelStatsResponse,
    ParcelUpdateRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    StatusResponse,
    StorageProvidersResponse,
    TokenResponse,
)
from repack.storage import IncomingFile
from repack.types import ParcelStatus
from repack.uploads import FileUploadService
from repack.worker import drain

logger = logging.getLogger(__name__)

router = APIRouter()


def _credential_response(credential: CredentialRecord) -> CredentialResponse:
    return CredentialResponse(**credential.as_public_dict())


def _token_response(credential: CredentialRecord, token: str) -> TokenResponse:
    return TokenResponse(access_token=token, user=_credential_response(credential))


def _parcel_response(record: ParcelRecord) -> ParcelResponse:
    return ParcelResponse(**record.as_dict())


async def _incoming(upload: UploadFile) -> IncomingFile:
    return IncomingFile(
        original_name=upload.filename or "upload",
        mimetype=upload.content_type or "application/octet-stream",
        content=await upload.read(),
    )


# Auth


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(
    payload: RegisterRequest,
    auth: CredentialService = Depends(get_credential_service),
):
    credential = auth.register_user(
        payload.email, payload.password, payload.first_name, payload.last_name
    )
    return _token_response(credential, auth.create_token(credential))


@router.post("/auth/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    request: Request,
    auth: CredentialService = Depends(get_credential_service),
    limiter: LoginRateLimiter = Depends(get_login_rate_limiter),
):
    client_key = request.client.host if request.client else "unknown"
    limiter.check(client_key)
    try:
        credential, token = auth.login_with_credentials(payload.email, payload.password)
    except AuthError:
        limiter.record_failure(client_key)
        raise
    limiter.reset(client_key)
    return _token_response(credential, token)


@router.post("/auth/google", response_model=TokenResponse)
def login_with_google(
    payload: GoogleLoginRequest,
    auth: CredentialService = Depends(get_credential_service),
):
    credential, token = auth.login_with_google(payload.id_token)
    return _token_response(credential, token)


@router.get("/auth/me", response_model=CredentialResponse)
def me(user: CredentialRecord = Depends(get_current_user)):
    return _credential_response(user)


@router.post("/auth/password-reset/request", response_model=StatusResponse)
def request_password_reset(
    payload: PasswordResetRequest,
    auth: CredentialService = Depends(get_credential_service),
):
    """
    Issue a reset token. The response is the same whether or not the email
    exists; delivering the token to the user happens out of band.
    """
    try:
        auth.generate_password_reset_token(payload.email)
    except AuthError:
        logger.info("Password reset requested for unknown email")
    return StatusResponse(status="ok")


@router.post("/auth/password-reset/confirm", response_model=StatusResponse)
def confirm_password_reset(
    payload: PasswordResetConfirm,
    auth: CredentialService = Depends(get_credential_service),
):
    auth.reset_password_with_token(payload.token, payload.new_password)
    return StatusResponse(status="ok")


@router.post("/auth/deactivate", response_model=StatusResponse)
def deactivate(
    user: CredentialRecord = Depends(get_current_user),
    auth: CredentialService = Depends(get_credential_service),
):
    auth.deactivate_account(user.user_id)
    return StatusResponse(status="ok")


# Parcels


@router.post("/parcels", response_model=ParcelResponse, status_code=201)
async def create_parcel(
    background_tasks: BackgroundTasks,
    tracking_barcode: UploadFile = File(...),
    parcel_images: list[UploadFile] | None = File(None),
    tracking_number: str | None = Form(None),
    description: str | None = Form(None),
    category: str | None = Form(None),
    channel: str | None = Form(None),
    location: str | None = Form(None),
    quantity: int | None = Form(None),
    provider: str | None = Form(None),
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
    queue: JobQueue = Depends(get_queue_client),
):
    """
    Receive a parcel: the barcode photo is required, item photos are optional.
    """
    barcode = await _incoming(tracking_barcode)
    images = [await _incoming(image) for image in parcel_images or []]
    record = await run_in_threadpool(
        service.create,
        barcode,
        images,
        tracking_number=tracking_number,
        description=description,
        category=category,
        channel=channel,
        location=location,
        quantity=quantity,
        created_by=user.user_id,
        provider_name=provider,
    )
    # Without Redis there is no separate worker, so OCR runs after the response.
    if isinstance(queue, InMemoryJobQueue):
        background_tasks.add_task(drain, service, queue)
    return _parcel_response(record)


@router.get("/parcels", response_model=ParcelListResponse)
def list_parcels(
    status: ParcelStatus | None = Query(None),
    category: str | None = Query(None),
    created_by: str | None = Query(None),
    tracking_number: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    items, total = service.list_parcels(
        status=status,
        category=category,
        created_by=created_by,
        tracking_number=tracking_number,
        page=page,
        limit=limit,
    )
    return ParcelListResponse(
        items=[_parcel_response(record) for record in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/parcels/search", response_model=list[ParcelResponse])
def search_parcels(
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    return [_parcel_response(record) for record in service.search(q, limit=limit)]


@router.get("/parcels/stats", response_model=ParcelStatsResponse)
def parcel_stats(
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    return ParcelStatsResponse(**service.stats())


@router.get("/parcels/{parcel_id}", response_model=ParcelResponse)
def get_parcel(
    parcel_id: str,
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    return _parcel_response(service.get(parcel_id))


@router.patch("/parcels/{parcel_id}", response_model=ParcelResponse)
def update_parcel(
    parcel_id: str,
    payload: ParcelUpdateRequest,
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("status") is None:
        changes.pop("status", None)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    record = service.update(parcel_id, changes, updated_by=user.user_id)
    return _parcel_response(record)


@router.post("/parcels/{parcel_id}/return", response_model=ParcelResponse)
def return_parcel(
    parcel_id: str,
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    return _parcel_response(service.mark_returned(parcel_id, updated_by=user.user_id))


@router.post("/parcels/{parcel_id}/ocr", response_model=ParcelResponse)
def reprocess_parcel_ocr(
    parcel_id: str,
    provider: str | None = Query(None),
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    return _parcel_response(service.reprocess_ocr(parcel_id, provider))


@router.delete("/parcels/{parcel_id}", status_code=204)
def delete_parcel(
    parcel_id: str,
    user: CredentialRecord = Depends(get_current_user),
    service: ParcelReceiveService = Depends(get_parcel_service),
):
    service.delete(parcel_id)
    return Response(status_code=204)


# Storage


@router.get("/storage/providers", response_model=StorageProvidersResponse)
def storage_providers(
    user: CredentialRecord = Depends(get_current_user),
    uploads: FileUploadService = Depends(get_upload_service),
):
    return StorageProvidersResponse(
        available=uploads.get_available_providers(),
        configured=uploads.get_configured_providers(),
        default=uploads.get_default_provider(),
    )

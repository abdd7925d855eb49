"""
Pydantic schemas for the intake API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from repack.types import ParcelStatus


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., max_length=128)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class GoogleLoginRequest(BaseModel):
    id_token: str


class CredentialResponse(BaseModel):
    id: str
    user_id: str
    email: str
    first_name: str
    last_name: str
    provider: str
    status: str
    last_login_at: Optional[float] = None
    created_at: float


class TokenResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user: CredentialResponse


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str
    new_password: str = Field(..., max_length=128)


class StatusResponse(BaseModel):
    status: Literal["ok"]


class OcrResultResponse(BaseModel):
    extracted_text: str
    confidence: float
    provider: str
    processed_at: float
    error: Optional[str] = None


class HistoryEntryResponse(BaseModel):
    action: str
    timestamp: float
    snapshot: dict


class ParcelResponse(BaseModel):
    id: str
    tracking_number: Optional[str] = None
    tracking_barcode_url: Optional[str] = None
    parcel_image_urls: list[str] = Field(default_factory=list)
    storage_provider: Optional[str] = None
    ocr_result: Optional[OcrResultResponse] = None
    status: ParcelStatus
    channel: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: float
    updated_at: float
    history: list[HistoryEntryResponse] = Field(default_factory=list)


class ParcelListResponse(BaseModel):
    items: list[ParcelResponse]
    total: int
    page: int
    limit: int


class ParcelUpdateRequest(BaseModel):
    tracking_number: Optional[str] = Field(default=None, max_length=128)
    channel: Optional[str] = Field(default=None, max_length=128)
    location: Optional[str] = Field(default=None, max_length=128)
    description: Optional[str] = Field(default=None, max_length=2000)
    category: Optional[str] = Field(default=None, max_length=128)
    quantity: Optional[int] = Field(default=None, ge=0)
    status: Optional[ParcelStatus] = None


class ParcelStatsResponse(BaseModel):
    total: int
    pending: int
    processed: int
    returned: int
    failed: int


class StorageProvidersResponse(BaseModel):
    available: list[str]
    configured: list[str]
    default: str

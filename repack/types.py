"""
Enumerations shared by the persistence, auth and API layers.
"""

from __future__ import annotations

from enum import Enum


class ParcelStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    RETURNED = "returned"
    FAILED = "failed"


class HistoryAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class AuthProvider(str, Enum):
    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"


class CredentialStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"

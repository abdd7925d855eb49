"""
Database abstraction for Postgres and an in-memory test implementation.

Parcel saves follow one rule in both stores: the first save of a record
without an id assigns the id and appends a ``create`` history entry; every
later save appends an ``update`` entry. History lives beside the record and
is only ever appended to.
"""

from __future__ import annotations

import copy
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Protocol

from sqlalchemy import (
    JSON,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from repack.types import (
    AuthProvider,
    CredentialStatus,
    HistoryAction,
    ParcelStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class OcrResult:
    extracted_text: str
    confidence: float
    provider: str
    processed_at: float = field(default_factory=lambda: time.time())
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["OcrResult"]:
        if not data:
            return None
        return cls(**data)


@dataclass(frozen=True)
class HistoryEntry:
    action: str
    timestamp: float
    snapshot: dict

    def as_dict(self) -> dict:
        return {
            "action": self.action,
            "timestamp": self.timestamp,
            "snapshot": copy.deepcopy(self.snapshot),
        }


@dataclass
class ParcelRecord:
    id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_barcode_url: Optional[str] = None
    parcel_image_urls: List[str] = field(default_factory=list)
    storage_provider: Optional[str] = None
    ocr_result: Optional[OcrResult] = None
    status: ParcelStatus = ParcelStatus.PENDING
    channel: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[int] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    history: List[HistoryEntry] = field(default_factory=list)

    def snapshot(self) -> dict:
        """Serialized copy of every field except ``history``."""
        return {
            "id": self.id,
            "tracking_number": self.tracking_number,
            "tracking_barcode_url": self.tracking_barcode_url,
            "parcel_image_urls": list(self.parcel_image_urls),
            "storage_provider": self.storage_provider,
            "ocr_result": self.ocr_result.as_dict() if self.ocr_result else None,
            "status": ParcelStatus(self.status).value,
            "channel": self.channel,
            "location": self.location,
            "description": self.description,
            "category": self.category,
            "quantity": self.quantity,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def as_dict(self) -> dict:
        payload = self.snapshot()
        payload["history"] = [entry.as_dict() for entry in self.history]
        return payload


def prepare_parcel_save(record: ParcelRecord) -> HistoryEntry:
    """
    Stamp ``record`` for a save and return the history entry describing it.
    """
    now = time.time()
    if record.id is None:
        record.id = uuid.uuid4().hex
        record.status = ParcelStatus.PENDING
        record.created_at = now
        action = HistoryAction.CREATE
    else:
        action = HistoryAction.UPDATE
    record.updated_at = now
    return HistoryEntry(
        action=action.value, timestamp=now, snapshot=copy.deepcopy(record.snapshot())
    )


@dataclass
class CredentialRecord:
    email: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    password_hash: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    provider: AuthProvider = AuthProvider.LOCAL
    provider_user_id: Optional[str] = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    failed_login_attempts: int = 0
    last_login_at: Optional[float] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[float] = None
    created_at: float = field(default_factory=lambda: time.time())

    def as_public_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "provider": AuthProvider(self.provider).value,
            "status": CredentialStatus(self.status).value,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }


class DbClient(Protocol):
    """Interface for database access."""

    def save_parcel(self, record: ParcelRecord) -> ParcelRecord:
        ...

    def get_parcel(self, parcel_id: str) -> Optional[ParcelRecord]:
        ...

    def list_parcels(
        self,
        *,
        status: Optional[ParcelStatus] = None,
        category: Optional[str] = None,
        created_by: Optional[str] = None,
        tracking_number: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[ParcelRecord], int]:
        ...

    def search_parcels(self, term: str, limit: int = 20) -> list[ParcelRecord]:
        ...

    def delete_parcel(self, parcel_id: str) -> bool:
        ...

    def parcel_stats(self) -> dict:
        ...

    def save_credential(self, credential: CredentialRecord) -> CredentialRecord:
        ...

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        ...

    def find_credential_by_email(
        self, email: str, provider: Optional[AuthProvider] = None
    ) -> Optional[CredentialRecord]:
        ...

    def find_credential_by_provider(
        self, provider: AuthProvider, provider_user_id: str
    ) -> Optional[CredentialRecord]:
        ...

    def find_credential_by_user_id(
        self, user_id: str, provider: Optional[AuthProvider] = None
    ) -> Optional[CredentialRecord]:
        ...

    def find_credential_by_reset_token(
        self, token: str
    ) -> Optional[CredentialRecord]:
        ...


def _empty_stats() -> dict:
    stats = {"total": 0}
    for status in ParcelStatus:
        stats[status.value] = 0
    return stats


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.parcels: Dict[str, ParcelRecord] = {}
        self.history: Dict[str, List[HistoryEntry]] = {}
        self.credentials: Dict[str, CredentialRecord] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.parcels.clear()
        self.history.clear()
        self.credentials.clear()

    def _load(self, parcel_id: str) -> ParcelRecord:
        record = copy.deepcopy(self.parcels[parcel_id])
        record.history = copy.deepcopy(self.history.get(parcel_id, []))
        return record

    def save_parcel(self, record: ParcelRecord) -> ParcelRecord:
        entry = prepare_parcel_save(record)
        self.history.setdefault(record.id, []).append(entry)
        stored = copy.deepcopy(record)
        stored.history = []
        self.parcels[record.id] = stored
        record.history = copy.deepcopy(self.history[record.id])
        logger.debug("Parcel %s saved (%s)", record.id, entry.action)
        return record

    def get_parcel(self, parcel_id: str) -> Optional[ParcelRecord]:
        if parcel_id not in self.parcels:
            return None
        return self._load(parcel_id)

    def list_parcels(
        self,
        *,
        status: Optional[ParcelStatus] = None,
        category: Optional[str] = None,
        created_by: Optional[str] = None,
        tracking_number: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[ParcelRecord], int]:
        matches = []
        for record in self.parcels.values():
            if status and record.status != status:
                continue
            if category and record.category != category:
                continue
            if created_by and record.created_by != created_by:
                continue
            if tracking_number and tracking_number.lower() not in (
                record.tracking_number or ""
            ).lower():
                continue
            matches.append(record)
        matches.sort(key=lambda r: r.created_at or 0, reverse=True)
        page = matches[offset : offset + limit]
        return [self._load(r.id) for r in page], len(matches)

    def search_parcels(self, term: str, limit: int = 20) -> list[ParcelRecord]:
        needle = term.lower()
        matches = []
        for record in self.parcels.values():
            ocr_text = record.ocr_result.extracted_text if record.ocr_result else ""
            if needle in (record.tracking_number or "").lower() or needle in (
                ocr_text or ""
            ).lower():
                matches.append(record)
        matches.sort(key=lambda r: r.created_at or 0, reverse=True)
        return [self._load(r.id) for r in matches[:limit]]

    def delete_parcel(self, parcel_id: str) -> bool:
        self.history.pop(parcel_id, None)
        return self.parcels.pop(parcel_id, None) is not None

    def parcel_stats(self) -> dict:
        stats = _empty_stats()
        for record in self.parcels.values():
            stats["total"] += 1
            stats[ParcelStatus(record.status).value] += 1
        return stats

    def save_credential(self, credential: CredentialRecord) -> CredentialRecord:
        self.credentials[credential.id] = copy.deepcopy(credential)
        return credential

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        credential = self.credentials.get(credential_id)
        return copy.deepcopy(credential) if credential else None

    def _find(self, predicate) -> Optional[CredentialRecord]:
        for credential in self.credentials.values():
            if predicate(credential):
                return copy.deepcopy(credential)
        return None

    def find_credential_by_email(
        self, email: str, provider: Optional[AuthProvider] = None
    ) -> Optional[CredentialRecord]:
        return self._find(
            lambda c: c.email == email and (provider is None or c.provider == provider)
        )

    def find_credential_by_provider(
        self, provider: AuthProvider, provider_user_id: str
    ) -> Optional[CredentialRecord]:
        return self._find(
            lambda c: c.provider == provider
            and c.provider_user_id == provider_user_id
        )

    def find_credential_by_user_id(
        self, user_id: str, provider: Optional[AuthProvider] = None
    ) -> Optional[CredentialRecord]:
        return self._find(
            lambda c: c.user_id == user_id
            and (provider is None or c.provider == provider)
        )

    def find_credential_by_reset_token(
        self, token: str
    ) -> Optional[CredentialRecord]:
        return self._find(lambda c: c.password_reset_token == token)


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _history_for(self, session: Session, parcel_id: str) -> list[HistoryEntry]:
        rows = session.execute(
            select(ParcelHistoryRow)
            .where(ParcelHistoryRow.parcel_id == parcel_id)
            .order_by(ParcelHistoryRow.seq.asc())
        ).scalars()
        return [
            HistoryEntry(action=row.action, timestamp=row.timestamp, snapshot=row.snapshot)
            for row in rows
        ]

    def _to_parcel_record(self, session: Session, row: "ParcelRow") -> ParcelRecord:
        return ParcelRecord(
            id=row.id,
            tracking_number=row.tracking_number,
            tracking_barcode_url=row.tracking_barcode_url,
            parcel_image_urls=list(row.parcel_image_urls or []),
            storage_provider=row.storage_provider,
            ocr_result=OcrResult.from_dict(row.ocr_result),
            status=ParcelStatus(row.status),
            channel=row.channel,
            location=row.location,
            description=row.description,
            category=row.category,
            quantity=row.quantity,
            created_by=row.created_by,
            updated_by=row.updated_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
            history=self._history_for(session, row.id),
        )

    def save_parcel(self, record: ParcelRecord) -> ParcelRecord:
        entry = prepare_parcel_save(record)
        snapshot = record.snapshot()
        with self.Session() as session:
            row = session.get(ParcelRow, record.id)
            if row is None:
                row = ParcelRow(id=record.id)
                session.add(row)
            row.tracking_number = record.tracking_number
            row.tracking_barcode_url = record.tracking_barcode_url
            row.parcel_image_urls = snapshot["parcel_image_urls"]
            row.storage_provider = record.storage_provider
            row.ocr_result = snapshot["ocr_result"]
            row.ocr_text = (
                record.ocr_result.extracted_text if record.ocr_result else None
            )
            row.status = snapshot["status"]
            row.channel = record.channel
            row.location = record.location
            row.description = record.description
            row.category = record.category
            row.quantity = record.quantity
            row.created_by = record.created_by
            row.updated_by = record.updated_by
            row.created_at = record.created_at
            row.updated_at = record.updated_at
            session.add(
                ParcelHistoryRow(
                    parcel_id=record.id,
                    action=entry.action,
                    timestamp=entry.timestamp,
                    snapshot=entry.snapshot,
                )
            )
            try:
                session.commit()
            except Exception:
                if entry.action == HistoryAction.CREATE.value:
                    # Nothing was stored; a retry must create the record again.
                    record.id = None
                    record.created_at = None
                raise
            record.history = self._history_for(session, record.id)
        logger.debug("Parcel %s saved (%s)", record.id, entry.action)
        return record

    def get_parcel(self, parcel_id: str) -> Optional[ParcelRecord]:
        with self.Session() as session:
            row = session.get(ParcelRow, parcel_id)
            if not row:
                return None
            return self._to_parcel_record(session, row)

    def list_parcels(
        self,
        *,
        status: Optional[ParcelStatus] = None,
        category: Optional[str] = None,
        created_by: Optional[str] = None,
        tracking_number: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[ParcelRecord], int]:
        filters = []
        if status:
            filters.append(ParcelRow.status == ParcelStatus(status).value)
        if category:
            filters.append(ParcelRow.category == category)
        if created_by:
            filters.append(ParcelRow.created_by == created_by)
        if tracking_number:
            filters.append(ParcelRow.tracking_number.ilike(f"%{tracking_number}%"))
        with self.Session() as session:
            total = session.execute(
                select(func.count()).select_from(ParcelRow).where(*filters)
            ).scalar_one()
            rows = session.execute(
                select(ParcelRow)
                .where(*filters)
                .order_by(ParcelRow.created_at.desc())
                .offset(offset)
                .limit(limit)
            ).scalars().all()
            return [self._to_parcel_record(session, row) for row in rows], total

    def search_parcels(self, term: str, limit: int = 20) -> list[ParcelRecord]:
        pattern = f"%{term}%"
        with self.Session() as session:
            rows = session.execute(
                select(ParcelRow)
                .where(
                    or_(
                        ParcelRow.tracking_number.ilike(pattern),
                        ParcelRow.ocr_text.ilike(pattern),
                    )
                )
                .order_by(ParcelRow.created_at.desc())
                .limit(limit)
            ).scalars().all()
            return [self._to_parcel_record(session, row) for row in rows]

    def delete_parcel(self, parcel_id: str) -> bool:
        with self.Session() as session:
            row = session.get(ParcelRow, parcel_id)
            if not row:
                return False
            session.query(ParcelHistoryRow).filter(
                ParcelHistoryRow.parcel_id == parcel_id
            ).delete(synchronize_session=False)
            session.delete(row)
            session.commit()
            return True

    def parcel_stats(self) -> dict:
        stats = _empty_stats()
        with self.Session() as session:
            rows = session.execute(
                select(ParcelRow.status, func.count()).group_by(ParcelRow.status)
            ).all()
        for status, count in rows:
            stats[status] = count
            stats["total"] += count
        return stats

    def _to_credential_record(self, row: "CredentialRow") -> CredentialRecord:
        return CredentialRecord(
            id=row.id,
            user_id=row.user_id,
            email=row.email,
            password_hash=row.password_hash,
            first_name=row.first_name,
            last_name=row.last_name,
            provider=AuthProvider(row.provider),
            provider_user_id=row.provider_user_id,
            status=CredentialStatus(row.status),
            failed_login_attempts=row.failed_login_attempts,
            last_login_at=row.last_login_at,
            password_reset_token=row.password_reset_token,
            password_reset_expires=row.password_reset_expires,
            created_at=row.created_at,
        )

    def save_credential(self, credential: CredentialRecord) -> CredentialRecord:
        with self.Session() as session:
            row = session.get(CredentialRow, credential.id)
            if row is None:
                row = CredentialRow(id=credential.id)
                session.add(row)
            row.user_id = credential.user_id
            row.email = credential.email
            row.password_hash = credential.password_hash
            row.first_name = credential.first_name
            row.last_name = credential.last_name
            row.provider = AuthProvider(credential.provider).value
            row.provider_user_id = credential.provider_user_id
            row.status = CredentialStatus(credential.status).value
            row.failed_login_attempts = credential.failed_login_attempts
            row.last_login_at = credential.last_login_at
            row.password_reset_token = credential.password_reset_token
            row.password_reset_expires = credential.password_reset_expires
            row.created_at = credential.created_at
            session.commit()
        return credential

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        with self.Session() as session:
            row = session.get(CredentialRow, credential_id)
            return self._to_credential_record(row) if row else None

    def _find_credential(self, *filters) -> Optional[CredentialRecord]:
        with self.Session() as session:
            row = session.execute(
                select(CredentialRow).where(*filters).limit(1)
            ).scalar_one_or_none()
            return self._to_credential_record(row) if row else None

    def find_credential_by_email(
        self, email: str, provider: Optional[AuthProvider] = None
    ) -> Optional[CredentialRecord]:
        filters = [CredentialRow.email == email]
        if provider:
            filters.append(CredentialRow.provider == AuthProvider(provider).value)
        return self._find_credential(*filters)

    def find_credential_by_provider(
        self, provider: AuthProvider, provider_user_id: str
    ) -> Optional[CredentialRecord]:
        return self._find_credential(
            CredentialRow.provider == AuthProvider(provider).value,
            CredentialRow.provider_user_id == provider_user_id,
        )

    def find_credential_by_user_id(
        self, user_id: str, provider: Optional[AuthProvider] = None
    ) -> Optional[CredentialRecord]:
        filters = [CredentialRow.user_id == user_id]
        if provider:
            filters.append(CredentialRow.provider == AuthProvider(provider).value)
        return self._find_credential(*filters)

    def find_credential_by_reset_token(
        self, token: str
    ) -> Optional[CredentialRecord]:
        return self._find_credential(CredentialRow.password_reset_token == token)


Base = declarative_base()


class ParcelRow(Base):
    __tablename__ = "parcels"

    id = Column(String, primary_key=True)
    tracking_number = Column(String, nullable=True, index=True)
    tracking_barcode_url = Column(String, nullable=True)
    parcel_image_urls = Column(JSON, nullable=False, default=list)
    storage_provider = Column(String, nullable=True)
    ocr_result = Column(JSON, nullable=True)
    ocr_text = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=True)
    location = Column(String, nullable=True)
    description = Column(String, nullable=True)
    category = Column(String, nullable=True, index=True)
    quantity = Column(Integer, nullable=True)
    created_by = Column(String, nullable=True, index=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class ParcelHistoryRow(Base):
    __tablename__ = "parcel_history"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    parcel_id = Column(String, ForeignKey("parcels.id"), nullable=False, index=True)
    action = Column(String, nullable=False)
    timestamp = Column(Float, nullable=False)
    snapshot = Column(JSON, nullable=False)


class CredentialRow(Base):
    __tablename__ = "credentials"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    password_hash = Column(String, nullable=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    provider = Column(String, nullable=False)
    provider_user_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False)
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    last_login_at = Column(Float, nullable=True)
    password_reset_token = Column(String, nullable=True, index=True)
    password_reset_expires = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

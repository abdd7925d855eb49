"""
Parcel intake workflow: upload the tracking barcode and item photos, persist
the parcel record and hand it to the OCR queue.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from repack.db import DbClient, OcrResult, ParcelRecord
from repack.errors import InvalidUpload, RecordNotFound, RepackError, StorageError
from repack.ocr import OcrService
from repack.queue import JobQueue, OcrJob
from repack.storage import ITEM, SERIAL, IncomingFile, UploadOptions
from repack.types import ParcelStatus
from repack.uploads import FileUploadService

logger = logging.getLogger(__name__)

# Fields a client may change through ``update``.
EDITABLE_FIELDS = (
    "tracking_number",
    "channel",
    "location",
    "description",
    "category",
    "quantity",
    "status",
)


class ParcelReceiveService:
    def __init__(
        self,
        db: DbClient,
        uploads: FileUploadService,
        ocr: OcrService,
        queue: Optional[JobQueue] = None,
        *,
        max_parcel_images: int = 10,
    ):
        self.db = db
        self.uploads = uploads
        self.ocr = ocr
        self.queue = queue
        self.max_parcel_images = max_parcel_images

    def create(
        self,
        barcode: IncomingFile,
        images: Iterable[IncomingFile] = (),
        *,
        tracking_number: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        channel: Optional[str] = None,
        location: Optional[str] = None,
        quantity: Optional[int] = None,
        created_by: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> ParcelRecord:
        """
        Upload the barcode, save the record, then attach the item photos.

        The record is saved twice, so a freshly created parcel carries a
        ``create`` and an ``update`` history entry. Images are validated up
        front; a crash between upload and save can still orphan a blob.
        """
        images = list(images)
        if len(images) > self.max_parcel_images:
            raise InvalidUpload(
                f"At most {self.max_parcel_images} parcel images are allowed",
                details={"count": len(images)},
            )
        for image in images:
            self.uploads.validate(image)

        barcode_upload = self.uploads.upload_file(
            barcode,
            UploadOptions(type=SERIAL, metadata={"kind": "tracking-barcode"}),
            provider_name=provider_name,
        )
        # Item photos go to the same backend as the barcode.
        provider_name = barcode_upload.provider
        record = ParcelRecord(
            tracking_number=tracking_number or None,
            tracking_barcode_url=barcode_upload.url,
            storage_provider=provider_name,
            description=description,
            category=category,
            channel=channel,
            location=location,
            quantity=quantity,
            created_by=created_by,
            updated_by=created_by,
        )
        try:
            self.db.save_parcel(record)
        except Exception:
            logger.exception("Saving new parcel failed; removing uploaded barcode")
            self._discard_blobs([barcode_upload.url], provider_name)
            raise

        if images:
            results = self.uploads.upload_files(
                images,
                UploadOptions(type=ITEM, metadata={"parcel_id": record.id}),
                provider_name=provider_name,
            )
            record.parcel_image_urls = [result.url for result in results]
        self.db.save_parcel(record)
        logger.info(
            "Parcel %s received with %d image(s)",
            record.id,
            len(record.parcel_image_urls),
        )

        if self.queue is not None:
            self.queue.enqueue(OcrJob(record.id))
        return record

    def get(self, parcel_id: str) -> ParcelRecord:
        record = self.db.get_parcel(parcel_id)
        if record is None:
            raise RecordNotFound(
                f"Parcel {parcel_id} not found", details={"id": parcel_id}
            )
        return record

    def list_parcels(
        self,
        *,
        status: Optional[ParcelStatus] = None,
        category: Optional[str] = None,
        created_by: Optional[str] = None,
        tracking_number: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[ParcelRecord], int]:
        return self.db.list_parcels(
            status=status,
            category=category,
            created_by=created_by,
            tracking_number=tracking_number,
            limit=limit,
            offset=(page - 1) * limit,
        )

    def search(self, term: str, limit: int = 20) -> list[ParcelRecord]:
        return self.db.search_parcels(term, limit=limit)

    def stats(self) -> dict:
        return self.db.parcel_stats()

    def update(
        self, parcel_id: str, changes: dict, updated_by: Optional[str] = None
    ) -> ParcelRecord:
        record = self.get(parcel_id)
        for name, value in changes.items():
            if name not in EDITABLE_FIELDS:
                raise ValueError(f"Field {name!r} cannot be updated")
            if name == "status":
                value = ParcelStatus(value)
            setattr(record, name, value)
        if updated_by is not None:
            record.updated_by = updated_by
        return self.db.save_parcel(record)

    def mark_returned(
        self, parcel_id: str, updated_by: Optional[str] = None
    ) -> ParcelRecord:
        return self.update(
            parcel_id, {"status": ParcelStatus.RETURNED}, updated_by=updated_by
        )

    def delete(self, parcel_id: str) -> None:
        record = self.get(parcel_id)
        self.db.delete_parcel(parcel_id)
        urls = [record.tracking_barcode_url, *record.parcel_image_urls]
        self._discard_blobs([url for url in urls if url], record.storage_provider)
        logger.info("Parcel %s deleted", parcel_id)

    def _discard_blobs(self, urls: list[str], provider_name: Optional[str]) -> None:
        for url in urls:
            try:
                self.uploads.delete_file(url, provider_name)
            except StorageError as exc:
                logger.warning("Could not delete %s: %s", url, exc)

    def apply_ocr(
        self, parcel_id: str, provider_name: Optional[str] = None
    ) -> ParcelRecord:
        """
        Run OCR on the stored barcode image and record the outcome.

        Failures never propagate: the parcel is marked ``failed`` with the
        error kept in its OCR result.
        """
        record = self.get(parcel_id)
        try:
            if not record.tracking_barcode_url:
                raise FileNotFoundError("no tracking barcode image")
            image = self.uploads.read_file(
                record.tracking_barcode_url, record.storage_provider
            )
            result = self.ocr.extract_serial_number(image, provider_name)
        except (RepackError, OSError) as exc:
            logger.warning("OCR failed for parcel %s: %s", parcel_id, exc)
            record.status = ParcelStatus.FAILED
            record.ocr_result = OcrResult(
                extracted_text="",
                confidence=0.0,
                provider="failed",
                error=str(exc),
            )
            return self.db.save_parcel(record)

        record.ocr_result = result
        if not record.tracking_number:
            record.tracking_number = result.extracted_text
        record.status = ParcelStatus.PROCESSED
        logger.info("OCR completed for parcel %s: %s", parcel_id, result.extracted_text)
        return self.db.save_parcel(record)

    def reprocess_ocr(
        self, parcel_id: str, provider_name: Optional[str] = None
    ) -> ParcelRecord:
        record = self.get(parcel_id)
        # An unknown OCR provider is a bad request, not an OCR failure.
        self.ocr.get_provider(provider_name)
        record.status = ParcelStatus.PENDING
        self.db.save_parcel(record)
        return self.apply_ocr(parcel_id, provider_name)

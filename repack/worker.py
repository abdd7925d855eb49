"""
Worker loop that runs OCR for parcels queued by the intake API.

Each job names a parcel. The worker reads the parcel's barcode image from
storage, extracts the serial number and saves the result on the record.
Jobs that crash (as opposed to OCR simply failing) are requeued until
``ocr_max_attempts`` is reached.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from repack.config import get_settings
from repack.dependencies import (
    get_db_client,
    get_ocr_service,
    get_queue_client,
    get_upload_service,
)
from repack.errors import RecordNotFound
from repack.parcels import ParcelReceiveService
from repack.queue import JobQueue, OcrJob

logger = logging.getLogger(__name__)


def build_parcel_service(queue: Optional[JobQueue] = None) -> ParcelReceiveService:
    return ParcelReceiveService(
        get_db_client(),
        get_upload_service(),
        get_ocr_service(),
        queue or get_queue_client(),
        max_parcel_images=get_settings().max_parcel_images,
    )


def run_job(
    service: ParcelReceiveService,
    queue: JobQueue,
    job: OcrJob,
    max_attempts: int,
) -> bool:
    try:
        record = service.apply_ocr(job.parcel_id, job.ocr_provider)
    except RecordNotFound:
        logger.warning("Received parcel id %s from queue but no record found", job.parcel_id)
        return False
    except Exception:
        attempt = job.attempts + 1
        if attempt < max_attempts:
            logger.exception(
                "[%s] OCR job crashed (attempt %d/%d); requeueing",
                job.parcel_id,
                attempt,
                max_attempts,
            )
            queue.enqueue(job.retried())
        else:
            logger.exception(
                "[%s] OCR job crashed %d times; giving up", job.parcel_id, attempt
            )
        return False
    logger.info("[%s] OCR job finished with status %s", job.parcel_id, record.status.value)
    return True


def process_next(
    *,
    service: Optional[ParcelReceiveService] = None,
    queue: Optional[JobQueue] = None,
    block: bool = True,
    timeout: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> bool:
    """
    Fetch and process one OCR job from the queue. Returns True if processed.
    """
    queue = queue or get_queue_client()
    service = service or build_parcel_service(queue)
    job = queue.dequeue(block=block, timeout=timeout)
    if job is None:
        return False
    return run_job(service, queue, job, max_attempts or get_settings().ocr_max_attempts)


def drain(
    service: ParcelReceiveService,
    queue: JobQueue,
    max_attempts: Optional[int] = None,
) -> int:
    """Process every queued job without blocking; used for in-process OCR."""
    max_attempts = max_attempts or get_settings().ocr_max_attempts
    processed = 0
    while True:
        job = queue.dequeue(block=False)
        if job is None:
            return processed
        if run_job(service, queue, job, max_attempts):
            processed += 1


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Simple polling loop that blocks on the queue. Intended to be run under systemd/supervisor.
    """
    queue = get_queue_client()
    service = build_parcel_service(queue)
    logger.info("OCR worker started; %d job(s) waiting", queue.size())
    while True:
        try:
            processed = process_next(
                service=service, queue=queue, block=True, timeout=int(poll_interval_seconds)
            )
        except Exception:
            logger.exception("Polling the OCR queue failed")
            processed = False
        if not processed:
            time.sleep(poll_interval_seconds)


def main() -> None:
    logging.basicConfig(level=get_settings().log_level.upper())
    run_loop()


if __name__ == "__main__":
    main()

import logging
import sqlite3
import time
from typing import Callable, Optional, Tuple

from . import cache
from .config import DEFAULT_QUALITY, Settings
from .jobstore import create_job
from .models import JobRecord, SUCCEEDED
from .utils import extract_source_id, normalize_quality, fingerprint

logger = logging.getLogger(__name__)

TRANSIENT_RETRIES = 4


def with_transient_retries(fn: Callable, settings: Settings, what: str = "operation"):
    """Run ``fn``, retrying sqlite lock/busy errors with exponential backoff."""
    for attempt in range(1, TRANSIENT_RETRIES + 1):
        try:
            return fn()
        except sqlite3.OperationalError as e:
            if attempt == TRANSIENT_RETRIES:
                raise
            delay = min(settings.backoff_cap_seconds, 0.05 * (2 ** attempt))
            logger.warning(f"[dispatch] {what} failed ({e}); retry {attempt} in {delay:.2f}s")
            time.sleep(delay)


def submit(
    conn,
    source_ref: str,
    quality: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Tuple[JobRecord, bool]:
    """Accept a conversion request.

    Returns (job, enqueued). ``enqueued`` is True only when a new pending job
    was created; cache hits and requests matching an in-flight job reuse the
    existing record and enqueue nothing.
    """
    settings = settings or Settings()
    source_id = extract_source_id(source_ref)
    q = normalize_quality(quality if quality not in (None, "") else DEFAULT_QUALITY)
    fp = fingerprint(source_id, q)

    def _dispatch():
        entry = cache.lookup(conn, fp)
        if entry is not None:
            job, created = create_job(
                conn, fingerprint=fp, source_ref=source_id, quality=q,
                max_attempts=settings.max_attempts_default,
                result_ref=entry.storage_ref,
            )
            if job.state == SUCCEEDED:
                if created:
                    logger.info(f"[dispatch] cache hit for {source_id}@{q}: job {job.id} succeeded")
                return job, False
            # an in-flight job, or the entry was evicted before the insert
            if created:
                logger.info(f"[dispatch] cache entry for {source_id}@{q} gone; enqueued job {job.id}")
            return job, created
        job, created = create_job(
            conn, fingerprint=fp, source_ref=source_id, quality=q,
            max_attempts=settings.max_attempts_default,
        )
        if created:
            logger.info(f"[dispatch] enqueued job {job.id} for {source_id}@{q}")
        else:
            logger.info(f"[dispatch] {source_id}@{q} joined existing job {job.id} ({job.state})")
        return job, created

    return with_transient_retries(_dispatch, settings, what=f"submit {source_id}")

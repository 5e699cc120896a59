import logging
from typing import BinaryIO, Dict, Optional, Tuple

from . import cache
from .backends import MetadataLookup, fallback_metadata
from .cache import ArtifactStore
from .errors import ArtifactNotFound, NotReady
from .jobstore import get_job, request_cancel
from .models import JobRecord, FAILED, SUCCEEDED
from .utils import extract_source_id

logger = logging.getLogger(__name__)


def status(conn, job_id: str) -> JobRecord:
    return get_job(conn, job_id)


def download(conn, store: ArtifactStore, job_id: str) -> Tuple[JobRecord, BinaryIO]:
    """Open the artifact of a succeeded job.

    NotReady while pending/running, JobNotFound for unknown ids and
    ArtifactNotFound for failed jobs or evicted artifacts.
    """
    job = get_job(conn, job_id)
    if job.state == FAILED:
        raise ArtifactNotFound(f"Job {job_id} failed: {job.error}")
    if job.state != SUCCEEDED:
        raise NotReady(job_id, job.state)

    entry = cache.lookup(conn, job.fingerprint)
    if entry is None or entry.storage_ref != job.result_ref:
        raise ArtifactNotFound(f"Artifact for job {job_id} is no longer available")
    fh = store.open(job.result_ref)
    cache.touch(conn, job.fingerprint)
    return job, fh


def cancel(conn, job_id: str) -> JobRecord:
    job = request_cancel(conn, job_id)
    logger.info(f"[gateway] cancel requested for {job_id} -> {job.state}")
    return job


def info(metadata: Optional[MetadataLookup], source_ref: str) -> Dict:
    source_id = extract_source_id(source_ref)
    if metadata is None:
        return fallback_metadata(source_id)
    return metadata.lookup(source_id)

import logging
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import BinaryIO, Dict, List, Optional, Tuple

from . import cache, dispatcher, gateway, jobstore
from .backends import CommandConversionBackend, ConversionBackend, MetadataLookup
from .cache import ArtifactStore, FileArtifactStore
from .config import ARTIFACT_DIR, DB_FILE, Settings
from .db import connect_db, init_db
from .models import JobRecord, ResultEntry
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class Engine:
    """Orchestration context handed to request handlers and the CLI.

    Owns the database location, the artifact store, the collaborators and the
    worker pool. Every call opens its own short-lived connection, so one
    engine can be shared between threads.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        store: Optional[ArtifactStore] = None,
        backend: Optional[ConversionBackend] = None,
        metadata: Optional[MetadataLookup] = None,
        settings: Optional[Settings] = None,
        **overrides,
    ):
        self.db_path = db_path or DB_FILE
        init_db(self.db_path)
        self.store = store if store is not None else FileArtifactStore(ARTIFACT_DIR)
        self.backend = backend or CommandConversionBackend()
        self.metadata = metadata
        if settings is None:
            with self.connection() as conn:
                settings = jobstore.load_settings(conn, **overrides)
        elif overrides:
            settings = replace(settings, **overrides)
        self.settings = settings
        self.pool = WorkerPool(self.connect, self.store, self.backend, self.settings)

    def connect(self):
        return connect_db(self.db_path)

    @contextmanager
    def connection(self):
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    # ---------- lifecycle ----------
    def start(self, workers: int = 1) -> "Engine":
        self.pool.start(workers)
        return self

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> bool:
        return self.pool.stop(drain=drain, timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        if self.pool.running:
            self.stop(drain=True)

    # ---------- operations ----------
    def submit(self, source_ref: str, quality: Optional[str] = None) -> JobRecord:
        with self.connection() as conn:
            job, enqueued = dispatcher.submit(conn, source_ref, quality, self.settings)
        if enqueued:
            self.pool.notify()
        return job

    def status(self, job_id: str) -> JobRecord:
        with self.connection() as conn:
            return gateway.status(conn, job_id)

    def download(self, job_id: str) -> Tuple[JobRecord, BinaryIO]:
        with self.connection() as conn:
            return gateway.download(conn, self.store, job_id)

    def read_artifact(self, job_id: str) -> bytes:
        _, fh = self.download(job_id)
        with fh:
            return fh.read()

    def cancel(self, job_id: str) -> JobRecord:
        with self.connection() as conn:
            return gateway.cancel(conn, job_id)

    def info(self, source_ref: str) -> Dict:
        return gateway.info(self.metadata, source_ref)

    def wait(self, job_id: str, timeout: float = 30.0) -> JobRecord:
        """Poll until the job is terminal or ``timeout`` elapses; returns the last record."""
        deadline = time.monotonic() + timeout
        job = self.status(job_id)
        while not job.terminal and time.monotonic() < deadline:
            time.sleep(self.settings.poll_interval)
            job = self.status(job_id)
        return job

    def run_once(self) -> Optional[JobRecord]:
        return self.pool.run_once()

    # ---------- maintenance ----------
    def evict(self, max_bytes: Optional[int] = None) -> List[ResultEntry]:
        with self.connection() as conn:
            return cache.evict(
                conn, self.store,
                self.settings.cache_max_bytes if max_bytes is None else max_bytes,
            )

    def gc(self, older_than_seconds: Optional[float] = None) -> int:
        if older_than_seconds is None:
            older_than_seconds = self.settings.job_retention_seconds
        with self.connection() as conn:
            removed = jobstore.gc_jobs(conn, older_than_seconds)
        logger.info(f"[gc] removed {removed} terminal job(s)")
        return removed

    def list_jobs(self, state: Optional[str] = None, limit: Optional[int] = None) -> List[JobRecord]:
        with self.connection() as conn:
            return list(jobstore.list_jobs(conn, state=state, limit=limit))

    def stats(self) -> Dict:
        with self.connection() as conn:
            return {"jobs": jobstore.counts(conn), "cache": cache.usage(conn)}

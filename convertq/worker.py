import logging
import os
import signal
import sqlite3
import threading
import time
from typing import Callable, List, Optional
from uuid import uuid4

from . import cache
from .backends import ConversionBackend
from .cache import ArtifactStore
from .config import Settings
from .errors import ConflictError, ConversionTimeout, InvalidInputError
from .jobstore import (
    CANCELLED_MESSAGE, claim_next, get_job, heartbeat, record_failure,
    recover_stale, release, transition,
)
from .models import (
    JobRecord, PENDING, RUNNING, SUCCEEDED, FAILED,
    KIND_CANCELLED, KIND_CONVERSION, KIND_INVALID_INPUT, KIND_TIMEOUT,
)

logger = logging.getLogger(__name__)


class WorkerPool:
    """Threads that claim pending jobs and run them through the conversion backend.

    A claim is the pending -> running transition, so two workers can never
    process the same job. Each attempt runs in a helper thread while the
    worker heartbeats, watching for cancellation, shutdown and the timeout.
    """

    def __init__(
        self,
        connect: Callable[[], sqlite3.Connection],
        store: ArtifactStore,
        backend: ConversionBackend,
        settings: Settings,
    ):
        self._connect = connect
        self.store = store
        self.backend = backend
        self.settings = settings
        self._stop = threading.Event()      # stop claiming
        self._abort = threading.Event()     # abandon in-flight attempts
        self._wakeup = threading.Event()
        self._threads: List[threading.Thread] = []
        # lease owner suffix, unique per pool instance
        self.pool_id = f"{os.getpid()}-{uuid4().hex[:6]}"

    def owner(self, name: str) -> str:
        return f"{name}@{self.pool_id}"

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def notify(self):
        """Wake idle workers, e.g. right after a job was enqueued."""
        self._wakeup.set()

    def start(self, count: int = 1):
        if count < 1:
            raise ValueError("count must be >= 1")
        if self.running:
            raise RuntimeError("Worker pool is already running")
        self._stop.clear()
        self._abort.clear()
        self._threads = []
        for i in range(count):
            t = threading.Thread(
                target=self._loop, args=(f"worker-{i+1}",), name=f"worker-{i+1}", daemon=True
            )
            t.start()
            self._threads.append(t)
            logger.info(f"[System] Started {t.name}")

    def request_stop(self, drain: bool = True):
        self._stop.set()
        if not drain:
            self._abort.set()
        self._wakeup.set()

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> bool:
        """Stop the workers. With ``drain`` in-flight jobs finish first,
        otherwise they are released back to pending. Returns True once every
        thread has exited."""
        self.request_stop(drain)
        for t in self._threads:
            t.join(timeout)
        if self.running:
            return False
        self._threads = []
        logger.info("[System] All workers stopped gracefully.")
        return True

    def run_forever(self, count: int = 1):
        """Start ``count`` workers and block until they are stopped by a signal."""
        setup_signal_handlers(self)
        self.start(count)
        try:
            while self.running:
                time.sleep(0.5)
        finally:
            self.stop(drain=True)

    # ---------- loop ----------
    def _loop(self, name: str):
        conn = self._connect()
        try:
            while not self._stop.is_set():
                try:
                    job = claim_next(conn, self.owner(name))
                    if job is None:
                        recover_stale(conn, self.settings)
                        self.enforce_cache_policy(conn)
                        self._wakeup.wait(self.settings.poll_interval)
                        self._wakeup.clear()
                        continue
                    self.process(conn, job, name)
                except sqlite3.OperationalError as e:
                    logger.warning(f"[{name}] Database unavailable ({e}); backing off")
                    self._stop.wait(1)
                except Exception:
                    logger.exception(f"[{name}] Unexpected error")
                    self._stop.wait(1)
        finally:
            conn.close()
            logger.info(f"[{name}] Worker stopped.")

    def run_once(self, name: str = "worker-0") -> Optional[JobRecord]:
        """Claim and process a single due job in the calling thread."""
        conn = self._connect()
        try:
            job = claim_next(conn, self.owner(name))
            if job is None:
                return None
            return self.process(conn, job, name)
        finally:
            conn.close()

    # ---------- one attempt ----------
    def process(self, conn, job: JobRecord, name: str) -> JobRecord:
        logger.info(
            f"[{name}] Executing job: {job.id} → {job.source_ref}@{job.quality} "
            f"(attempt {job.attempts + 1}/{job.max_attempts})"
        )
        cancel = threading.Event()
        outcome = {}

        def _attempt():
            try:
                stream = self.backend.convert(job.source_ref, job.quality, cancel)
                outcome["artifact"] = self.store.write(stream, cancel)
            except BaseException as e:
                outcome["error"] = e

        helper = threading.Thread(target=_attempt, name=f"{name}-convert", daemon=True)
        started = time.monotonic()
        helper.start()

        while True:
            helper.join(self.settings.poll_interval)
            if not helper.is_alive():
                break
            owned, cancel_requested = heartbeat(conn, job.id, self.owner(name))
            if not owned:
                cancel.set()
                logger.warning(f"[{name}] Lost the lease on job {job.id}; abandoning attempt")
                return get_job(conn, job.id)
            if cancel_requested:
                cancel.set()
                return self._cancelled(conn, job, name)
            if self._abort.is_set():
                cancel.set()
                return self._release(conn, job, name)
            if time.monotonic() - started > self.settings.timeout_seconds:
                cancel.set()
                return self._fail(
                    conn, job, name,
                    ConversionTimeout(f"Conversion exceeded {self.settings.timeout_seconds:g}s"),
                    kind=KIND_TIMEOUT,
                )

        owned, cancel_requested = heartbeat(conn, job.id, self.owner(name))
        if not owned:
            logger.warning(f"[{name}] Job {job.id} was taken away while converting")
            return get_job(conn, job.id)

        error = outcome.get("error")
        if cancel_requested:
            if error is None:
                # the artifact is still good for later requests
                ref, size = outcome["artifact"]
                cache.record(conn, self.store, job.fingerprint, ref, size, self.settings.cache_ttl_seconds)
            return self._cancelled(conn, job, name)
        if isinstance(error, InvalidInputError):
            return self._fail(conn, job, name, error, kind=KIND_INVALID_INPUT, retryable=False)
        if error is not None:
            if not isinstance(error, Exception):
                raise error
            return self._fail(conn, job, name, error, kind=KIND_CONVERSION)
        return self._succeed(conn, job, name, *outcome["artifact"])

    def _succeed(self, conn, job: JobRecord, name: str, ref: str, size: int) -> JobRecord:
        entry = cache.record(
            conn, self.store, job.fingerprint, ref, size, self.settings.cache_ttl_seconds
        )
        try:
            done = transition(
                conn, job.id, RUNNING, SUCCEEDED, owner=self.owner(name),
                attempts=job.attempts + 1, result_ref=entry.storage_ref,
            )
        except ConflictError as e:
            logger.warning(f"[{name}] Job {job.id} changed while converting ({e}); result kept in cache")
            return get_job(conn, job.id)
        logger.info(f"[{name}] Job {job.id} completed successfully ({size} bytes).")
        self.enforce_cache_policy(conn)
        return done

    def enforce_cache_policy(self, conn):
        """Drop expired cache entries and trim the cache to `cache_max_bytes`."""
        try:
            cache.evict(conn, self.store, self.settings.cache_max_bytes)
        except sqlite3.OperationalError as e:
            logger.warning(f"[cache] Eviction skipped ({e})")

    def _fail(self, conn, job: JobRecord, name: str, error: Exception,
              kind: str, retryable: bool = True) -> JobRecord:
        message = str(error) or error.__class__.__name__
        try:
            rec = record_failure(
                conn, job, message, self.settings,
                kind=kind, retryable=retryable, owner=self.owner(name),
            )
        except ConflictError as e:
            logger.warning(f"[{name}] Could not record failure of {job.id}: {e}")
            return get_job(conn, job.id)
        if rec.state == PENDING:
            logger.warning(
                f"[{name}] Job {job.id} failed ({message}), retry {rec.attempts}/{rec.max_attempts} "
                f"at {rec.next_run_at}"
            )
        else:
            logger.error(f"[{name}] Job {job.id} failed permanently ({kind}): {message}")
        return rec

    def _cancelled(self, conn, job: JobRecord, name: str) -> JobRecord:
        try:
            rec = transition(
                conn, job.id, RUNNING, FAILED, owner=self.owner(name),
                attempts=job.attempts + 1,
                error=CANCELLED_MESSAGE, error_kind=KIND_CANCELLED,
            )
        except ConflictError as e:
            logger.warning(f"[{name}] Could not cancel {job.id}: {e}")
            return get_job(conn, job.id)
        logger.info(f"[{name}] Job {job.id} cancelled.")
        return rec

    def _release(self, conn, job: JobRecord, name: str) -> JobRecord:
        try:
            rec = release(conn, job, owner=self.owner(name))
        except ConflictError as e:
            logger.warning(f"[{name}] Could not release {job.id}: {e}")
            return get_job(conn, job.id)
        logger.info(f"[{name}] Job {job.id} released back to the queue.")
        return rec


def setup_signal_handlers(pool: WorkerPool):
    """First SIGINT/SIGTERM drains the pool, a second one aborts in-flight jobs."""
    def _handler(signum, frame):
        if pool._stop.is_set():
            logger.warning(f"[Main] Received signal {signum} again. Aborting in-flight jobs")
            pool.request_stop(drain=False)
        else:
            logger.warning(f"[Main] Received signal {signum}. Draining workers")
            pool.request_stop(drain=True)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not in the main thread
            logger.debug("Signal handlers can only be installed from the main thread")

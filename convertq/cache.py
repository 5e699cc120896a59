"""
Result cache: maps a request fingerprint to a stored artifact.

The index lives in the ``results`` table next to the jobs; the bytes live in an
ArtifactStore and are addressed by their sha256 digest, so workers that race
on the same fingerprint (and produce the same bytes) end up with one blob.
"""
import hashlib
import io
import logging
import os
import re
import tempfile
import threading
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from .errors import ArtifactNotFound, Cancelled, ConversionError
from .models import ResultEntry, PENDING, RUNNING
from .utils import now_iso, iso_in_utc_from_seconds_from_now

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
_REF_RE = re.compile(r"^[0-9a-f]{64}$")


def iter_chunks(stream) -> Iterator[bytes]:
    """Accept bytes, a binary file object or an iterable of byte chunks."""
    if stream is None:
        raise ConversionError("backend returned no artifact")
    if isinstance(stream, (bytes, bytearray, memoryview)):
        yield bytes(stream)
        return
    if hasattr(stream, "read"):
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
        return
    for chunk in stream:
        yield bytes(chunk)


class ArtifactStore:
    """Blob storage for converted artifacts."""

    def write(self, stream, cancel: Optional[threading.Event] = None) -> Tuple[str, int]:
        """Store ``stream`` and return (storage_ref, size_bytes)."""
        raise NotImplementedError

    def open(self, ref: str) -> BinaryIO:
        raise NotImplementedError

    def delete(self, ref: str) -> None:
        raise NotImplementedError

    def exists(self, ref: str) -> bool:
        raise NotImplementedError


def _consume(stream, cancel, sink) -> Tuple[str, int]:
    digest = hashlib.sha256()
    size = 0
    for chunk in iter_chunks(stream):
        if cancel is not None and cancel.is_set():
            raise Cancelled("artifact write cancelled")
        sink(chunk)
        digest.update(chunk)
        size += len(chunk)
    if size == 0:
        raise ConversionError("conversion produced an empty artifact")
    return digest.hexdigest(), size


class FileArtifactStore(ArtifactStore):
    def __init__(self, root: str, suffix: str = ".mp3"):
        self.root = os.path.abspath(root)
        self.suffix = suffix
        self._tmp = os.path.join(self.root, "tmp")
        os.makedirs(self._tmp, exist_ok=True)

    def path_for(self, ref: str) -> str:
        if not _REF_RE.match(ref or ""):
            raise ArtifactNotFound(f"Invalid artifact reference {ref!r}")
        return os.path.join(self.root, ref[:2], ref + self.suffix)

    def write(self, stream, cancel=None):
        fd, tmp = tempfile.mkstemp(dir=self._tmp, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                ref, size = _consume(stream, cancel, fh.write)
            path = self.path_for(ref)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            os.replace(tmp, path)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        return ref, size

    def open(self, ref):
        try:
            return open(self.path_for(ref), "rb")
        except FileNotFoundError:
            raise ArtifactNotFound(f"Artifact {ref} not found")

    def delete(self, ref):
        try:
            os.unlink(self.path_for(ref))
        except FileNotFoundError:
            pass

    def exists(self, ref):
        try:
            return os.path.exists(self.path_for(ref))
        except ArtifactNotFound:
            return False


class MemoryArtifactStore(ArtifactStore):
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def write(self, stream, cancel=None):
        buf = io.BytesIO()
        ref, size = _consume(stream, cancel, buf.write)
        with self._lock:
            self._blobs[ref] = buf.getvalue()
        return ref, size

    def open(self, ref):
        with self._lock:
            data = self._blobs.get(ref)
        if data is None:
            raise ArtifactNotFound(f"Artifact {ref} not found")
        return io.BytesIO(data)

    def delete(self, ref):
        with self._lock:
            self._blobs.pop(ref, None)

    def exists(self, ref):
        with self._lock:
            return ref in self._blobs


# ---------- Index ----------
def _expires_at(ttl_seconds: Optional[float]) -> Optional[str]:
    if not ttl_seconds or ttl_seconds <= 0:
        return None
    return iso_in_utc_from_seconds_from_now(ttl_seconds)


def lookup(conn, fingerprint: str) -> Optional[ResultEntry]:
    row = conn.execute(
        "SELECT * FROM results WHERE fingerprint=? AND (expires_at IS NULL OR expires_at > ?)",
        (fingerprint, now_iso()),
    ).fetchone()
    return ResultEntry.from_row(row) if row else None


def touch(conn, fingerprint: str):
    with conn:
        conn.execute(
            "UPDATE results SET last_accessed_at=? WHERE fingerprint=?",
            (now_iso(), fingerprint),
        )


def _release_blob(conn, store: ArtifactStore, ref: str):
    still_used = conn.execute(
        "SELECT 1 FROM results WHERE storage_ref=? LIMIT 1", (ref,)
    ).fetchone()
    if still_used is None:
        store.delete(ref)


def record(
    conn,
    store: ArtifactStore,
    fingerprint: str,
    storage_ref: str,
    size_bytes: int,
    ttl_seconds: Optional[float] = None,
) -> ResultEntry:
    """Index a stored artifact under ``fingerprint``; the first live entry wins.

    Returns the winning entry. A losing blob that nothing else references is
    deleted, as is the blob of an expired entry being replaced.
    """
    replaced = None
    with conn:
        conn.execute("BEGIN IMMEDIATE")
        ts = now_iso()
        row = conn.execute("SELECT * FROM results WHERE fingerprint=?", (fingerprint,)).fetchone()
        if row is not None and (row["expires_at"] is None or row["expires_at"] > ts):
            winner = ResultEntry.from_row(row)
        else:
            if row is not None:
                replaced = row["storage_ref"]
                conn.execute("DELETE FROM results WHERE fingerprint=?", (fingerprint,))
            winner = ResultEntry(
                fingerprint=fingerprint,
                storage_ref=storage_ref,
                size_bytes=int(size_bytes),
                created_at=ts,
                expires_at=_expires_at(ttl_seconds),
                last_accessed_at=ts,
            )
            conn.execute(
                """INSERT INTO results
                   (fingerprint, storage_ref, size_bytes, created_at, expires_at, last_accessed_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (winner.fingerprint, winner.storage_ref, winner.size_bytes,
                 winner.created_at, winner.expires_at, winner.last_accessed_at),
            )

    if winner.storage_ref != storage_ref:
        logger.info(f"[cache] {fingerprint[:12]} already stored as {winner.storage_ref[:12]}; dropping duplicate")
        _release_blob(conn, store, storage_ref)
    if replaced and replaced != winner.storage_ref:
        _release_blob(conn, store, replaced)
    return winner


def put(conn, store: ArtifactStore, fingerprint: str, stream, ttl_seconds: Optional[float] = None) -> ResultEntry:
    ref, size = store.write(stream)
    return record(conn, store, fingerprint, ref, size, ttl_seconds)


# ---------- Eviction ----------
# Entries whose fingerprint has a job in flight are never evicted.
_UNPROTECTED = "fingerprint NOT IN (SELECT fingerprint FROM jobs WHERE state IN (?, ?))"


def _drop(conn, store: ArtifactStore, entry: ResultEntry) -> bool:
    with conn:
        cur = conn.execute(
            "DELETE FROM results WHERE fingerprint=? AND storage_ref=?",
            (entry.fingerprint, entry.storage_ref),
        )
    if cur.rowcount != 1:
        return False
    _release_blob(conn, store, entry.storage_ref)
    return True


def evict(conn, store: ArtifactStore, max_bytes: Optional[int] = None) -> List[ResultEntry]:
    """Evict expired entries, then least recently used ones until under ``max_bytes``."""
    evicted = []
    rows = conn.execute(
        f"SELECT * FROM results WHERE expires_at IS NOT NULL AND expires_at <= ? AND {_UNPROTECTED}",
        (now_iso(), PENDING, RUNNING),
    ).fetchall()
    for row in rows:
        entry = ResultEntry.from_row(row)
        if _drop(conn, store, entry):
            evicted.append(entry)

    if max_bytes is not None:
        total = usage(conn)["bytes"]
        if total > max_bytes:
            rows = conn.execute(
                f"SELECT * FROM results WHERE {_UNPROTECTED} ORDER BY last_accessed_at ASC",
                (PENDING, RUNNING),
            ).fetchall()
            for row in rows:
                if total <= max_bytes:
                    break
                entry = ResultEntry.from_row(row)
                if _drop(conn, store, entry):
                    evicted.append(entry)
                    total -= entry.size_bytes

    for entry in evicted:
        logger.info(f"[cache] evicted {entry.fingerprint[:12]} ({entry.size_bytes} bytes)")
    return evicted


def usage(conn) -> Dict[str, int]:
    row = conn.execute(
        "SELECT COUNT(1) AS n, COALESCE(SUM(size_bytes), 0) AS b FROM results"
    ).fetchone()
    return {"entries": row["n"], "bytes": row["b"]}

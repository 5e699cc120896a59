import logging
import sqlite3
from typing import Dict, Iterable, List, Optional, Tuple

from .config import ALLOWED_CONFIG_KEYS, Settings
from .errors import ConflictError, InvalidTransition, JobNotFound
from .models import (
    JobRecord, PENDING, RUNNING, SUCCEEDED, FAILED, STATES,
    KIND_CONVERSION, KIND_CANCELLED, KIND_LEASE_EXPIRED,
)
from .utils import now_iso, iso_in_utc_from_seconds_from_now, new_job_id, truncate_error

logger = logging.getLogger(__name__)

TRANSITIONS = {
    (PENDING, RUNNING),
    (PENDING, FAILED),      # cancelled before pickup
    (RUNNING, SUCCEEDED),
    (RUNNING, FAILED),
    (RUNNING, PENDING),     # retry or release
}

_MUTABLE_FIELDS = {
    "attempts", "next_run_at", "result_ref", "error", "error_kind",
    "picked_by", "heartbeat_at", "cancel_requested",
}

CANCELLED_MESSAGE = "Cancelled by request"


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    # raises ValueError for values of the wrong type
    Settings.from_config({key: str(value)})
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def load_settings(conn, **overrides) -> Settings:
    return Settings.from_config(get_config(conn), **overrides)


# ---------- Jobs: create / read ----------
# A job is "active" for its fingerprint while it is in flight, or succeeded
# with its artifact still present (and unexpired) in the result cache.
_ACTIVE_JOB_SQL = """
SELECT j.* FROM jobs j
WHERE j.fingerprint = ?
  AND (j.state IN (?, ?)
       OR (j.state = ? AND EXISTS (
            SELECT 1 FROM results r
            WHERE r.fingerprint = j.fingerprint
              AND r.storage_ref = j.result_ref
              AND (r.expires_at IS NULL OR r.expires_at > ?))))
ORDER BY j.created_at DESC
LIMIT 1
"""


def find_active_job(conn, fingerprint: str) -> Optional[JobRecord]:
    row = conn.execute(
        _ACTIVE_JOB_SQL, (fingerprint, PENDING, RUNNING, SUCCEEDED, now_iso())
    ).fetchone()
    return JobRecord.from_row(row) if row else None


def create_job(
    conn,
    *,
    fingerprint: str,
    source_ref: str,
    quality: str,
    max_attempts: int,
    result_ref: Optional[str] = None,
) -> Tuple[JobRecord, bool]:
    """Return the active job for ``fingerprint``, creating one if there is none.

    With ``result_ref`` the new job is created directly as succeeded (the
    cache fast path), provided that cache entry is still live; otherwise it
    starts pending and is immediately due.
    The lookup and the insert run under one write lock so concurrent callers
    for the same fingerprint converge on a single job.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    with conn:
        conn.execute("BEGIN IMMEDIATE")
        ts = now_iso()
        row = conn.execute(
            _ACTIVE_JOB_SQL, (fingerprint, PENDING, RUNNING, SUCCEEDED, ts)
        ).fetchone()
        if row:
            return JobRecord.from_row(row), False

        if result_ref and conn.execute(
            "SELECT 1 FROM results WHERE fingerprint=? AND storage_ref=? "
            "AND (expires_at IS NULL OR expires_at > ?)",
            (fingerprint, result_ref, ts),
        ).fetchone() is None:
            # evicted since the caller looked it up
            result_ref = None

        job_id = new_job_id()
        state = SUCCEEDED if result_ref else PENDING
        conn.execute(
            """INSERT INTO jobs
               (id, fingerprint, source_ref, quality, state, attempts, max_attempts,
                created_at, updated_at, next_run_at, result_ref)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
            (job_id, fingerprint, source_ref, quality, state, int(max_attempts),
             ts, ts, None if result_ref else ts, result_ref),
        )
    return get_job(conn, job_id), True


def get_job(conn, job_id: str) -> JobRecord:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    if row is None:
        raise JobNotFound(job_id)
    return JobRecord.from_row(row)


# ---------- Jobs: transitions ----------
def transition(
    conn,
    job_id: str,
    from_state: str,
    to_state: str,
    *,
    owner: Optional[str] = None,
    **fields,
) -> JobRecord:
    """Compare-and-swap ``job_id`` from ``from_state`` to ``to_state``.

    Raises ConflictError when the stored state (or the lease holder, if
    ``owner`` is given) does not match. result_ref is kept iff the target is
    succeeded and error/error_kind iff it is failed.
    """
    if (from_state, to_state) not in TRANSITIONS:
        raise InvalidTransition(f"{from_state} -> {to_state} is not allowed")
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")

    if to_state == SUCCEEDED:
        if not fields.get("result_ref"):
            raise ValueError("result_ref is required to succeed a job")
        fields["error"] = None
        fields["error_kind"] = None
    elif to_state == FAILED:
        if not fields.get("error"):
            raise ValueError("error is required to fail a job")
        fields["error"] = truncate_error(fields["error"])
        fields.setdefault("error_kind", KIND_CONVERSION)
        fields["result_ref"] = None
    else:
        fields["result_ref"] = None
        fields["error"] = None
        fields["error_kind"] = None

    if from_state == RUNNING:
        fields.setdefault("picked_by", None)
        fields.setdefault("heartbeat_at", None)
        fields.setdefault("cancel_requested", 0)
    if to_state != PENDING:
        fields.setdefault("next_run_at", None)

    assignments = ["state = ?", "updated_at = ?"]
    params: List = [to_state, now_iso()]
    for key, value in fields.items():
        if key == "attempts":
            # attempts never goes down
            assignments.append("attempts = MAX(attempts, ?)")
            params.append(int(value))
        elif key == "cancel_requested":
            assignments.append("cancel_requested = ?")
            params.append(1 if value else 0)
        else:
            assignments.append(f"{key} = ?")
            params.append(value)

    where = "id = ? AND state = ?"
    params.extend([job_id, from_state])
    if owner is not None:
        where += " AND picked_by = ?"
        params.append(owner)

    with conn:
        cur = conn.execute(f"UPDATE jobs SET {', '.join(assignments)} WHERE {where}", params)
    if cur.rowcount != 1:
        row = conn.execute("SELECT state, picked_by FROM jobs WHERE id=?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFound(job_id)
        actual = row["state"]
        if actual == from_state and owner is not None:
            actual = f"{actual} (held by {row['picked_by']})"
        raise ConflictError(job_id, from_state, actual)
    return get_job(conn, job_id)


def claim_next(conn, worker_name: str, batch: int = 5) -> Optional[JobRecord]:
    now = now_iso()
    rows = conn.execute(
        """SELECT id FROM jobs
           WHERE state=? AND (next_run_at IS NULL OR next_run_at <= ?)
           ORDER BY next_run_at ASC, created_at ASC
           LIMIT ?""",
        (PENDING, now, batch),
    ).fetchall()
    for row in rows:
        try:
            return transition(
                conn, row["id"], PENDING, RUNNING, picked_by=worker_name, heartbeat_at=now
            )
        except ConflictError as e:
            logger.debug(f"[{worker_name}] lost claim race: {e}")
    return None


def heartbeat(conn, job_id: str, worker_name: str) -> Tuple[bool, bool]:
    """Refresh the lease. Returns (still_owned, cancel_requested)."""
    with conn:
        cur = conn.execute(
            "UPDATE jobs SET heartbeat_at=? WHERE id=? AND state=? AND picked_by=?",
            (now_iso(), job_id, RUNNING, worker_name),
        )
    if cur.rowcount != 1:
        return False, False
    row = conn.execute("SELECT cancel_requested FROM jobs WHERE id=?", (job_id,)).fetchone()
    return True, bool(row["cancel_requested"])


def record_failure(
    conn,
    job: JobRecord,
    error,
    settings: Settings,
    *,
    kind: str = KIND_CONVERSION,
    retryable: bool = True,
    owner: Optional[str] = None,
) -> JobRecord:
    """Apply the retry policy to a running job after a failed attempt."""
    attempts = job.attempts + 1
    if retryable and attempts < job.max_attempts:
        delay = settings.backoff_delay(attempts)
        return transition(
            conn, job.id, RUNNING, PENDING, owner=owner,
            attempts=attempts,
            next_run_at=iso_in_utc_from_seconds_from_now(delay),
        )
    return transition(
        conn, job.id, RUNNING, FAILED, owner=owner,
        attempts=attempts, error=str(error), error_kind=kind,
    )


def release(conn, job: JobRecord, owner: Optional[str] = None) -> JobRecord:
    """Hand a running job back to the queue without using up an attempt."""
    return transition(conn, job.id, RUNNING, PENDING, owner=owner, next_run_at=now_iso())


def request_cancel(conn, job_id: str) -> JobRecord:
    """Cancel a job: pending jobs fail at once, running jobs are flagged for their worker."""
    for _ in range(3):
        job = get_job(conn, job_id)
        if job.state == PENDING:
            try:
                return transition(
                    conn, job_id, PENDING, FAILED,
                    error=CANCELLED_MESSAGE, error_kind=KIND_CANCELLED,
                )
            except ConflictError:
                continue
        if job.state == RUNNING:
            with conn:
                cur = conn.execute(
                    "UPDATE jobs SET cancel_requested=1, updated_at=? WHERE id=? AND state=?",
                    (now_iso(), job_id, RUNNING),
                )
            if cur.rowcount == 1:
                return get_job(conn, job_id)
            continue
        return job
    return get_job(conn, job_id)


def recover_stale(conn, settings: Settings) -> List[JobRecord]:
    """Requeue (or fail) running jobs whose worker stopped heartbeating."""
    cutoff = iso_in_utc_from_seconds_from_now(-settings.lease_seconds)
    rows = conn.execute(
        "SELECT * FROM jobs WHERE state=? AND (heartbeat_at IS NULL OR heartbeat_at < ?)",
        (RUNNING, cutoff),
    ).fetchall()

    recovered = []
    for row in rows:
        job = JobRecord.from_row(row)
        try:
            if job.cancel_requested:
                rec = transition(
                    conn, job.id, RUNNING, FAILED, owner=job.picked_by,
                    attempts=job.attempts + 1,
                    error=CANCELLED_MESSAGE, error_kind=KIND_CANCELLED,
                )
            else:
                rec = record_failure(
                    conn, job, f"lease held by {job.picked_by} expired", settings,
                    kind=KIND_LEASE_EXPIRED, owner=job.picked_by,
                )
        except ConflictError:
            continue
        logger.warning(f"[recovery] job {job.id} lease expired (worker={job.picked_by}) -> {rec.state}")
        recovered.append(rec)
    return recovered


# ---------- Queries ----------
def list_jobs(conn, state: Optional[str] = None, limit: Optional[int] = None) -> Iterable[JobRecord]:
    sql = "SELECT * FROM jobs"
    params: List = []
    if state:
        if state not in STATES:
            raise ValueError(f"Unknown state {state!r}")
        sql += " WHERE state=?"
        params.append(state)
    sql += " ORDER BY created_at ASC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [JobRecord.from_row(r) for r in conn.execute(sql, params).fetchall()]


def counts(conn) -> Dict[str, int]:
    out = {s: 0 for s in STATES}
    for r in conn.execute("SELECT state, COUNT(1) AS c FROM jobs GROUP BY state"):
        out[r["state"]] = r["c"]
    return out


def gc_jobs(conn, older_than_seconds: float) -> int:
    """Delete terminal jobs not updated within ``older_than_seconds``."""
    cutoff = iso_in_utc_from_seconds_from_now(-older_than_seconds)
    try:
        with conn:
            cur = conn.execute(
                "DELETE FROM jobs WHERE state IN (?, ?) AND updated_at < ?",
                (SUCCEEDED, FAILED, cutoff),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during job GC: {e}")
    return cur.rowcount

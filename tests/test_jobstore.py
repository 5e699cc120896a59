import pytest

from conftest import assert_invariants
from convertq import jobstore
from convertq.config import Settings
from convertq.errors import ConflictError, InvalidTransition, JobNotFound
from convertq.models import PENDING, RUNNING, SUCCEEDED, FAILED, KIND_CANCELLED
from convertq.utils import fingerprint, iso_in_utc_from_seconds_from_now

FP = fingerprint("abc123", "128")
SETTINGS = Settings(backoff_base=0)


def _create(conn, fp=FP, **kw):
    return jobstore.create_job(
        conn, fingerprint=fp, source_ref="abc123", quality="128", max_attempts=kw.pop("max_attempts", 3), **kw
    )


def test_create_is_idempotent_per_fingerprint(conn):
    job, created = _create(conn)
    again, created_again = _create(conn)
    assert created and not created_again
    assert again.id == job.id
    assert job.state == PENDING and job.attempts == 0
    assert_invariants(job)


def test_failed_job_does_not_block_a_new_one(conn):
    job, _ = _create(conn)
    jobstore.request_cancel(conn, job.id)
    fresh, created = _create(conn)
    assert created
    assert fresh.id != job.id


def test_transition_is_compare_and_swap(conn):
    job, _ = _create(conn)
    claimed = jobstore.transition(conn, job.id, PENDING, RUNNING, picked_by="w1")
    assert claimed.state == RUNNING and claimed.picked_by == "w1"
    with pytest.raises(ConflictError) as exc:
        jobstore.transition(conn, job.id, PENDING, RUNNING, picked_by="w2")
    assert exc.value.actual == RUNNING
    assert jobstore.get_job(conn, job.id).picked_by == "w1"


def test_transition_checks_lease_owner(conn):
    job, _ = _create(conn)
    jobstore.transition(conn, job.id, PENDING, RUNNING, picked_by="w1")
    with pytest.raises(ConflictError):
        jobstore.transition(conn, job.id, RUNNING, SUCCEEDED, owner="w2", result_ref="r" * 64)


def test_illegal_edges_and_missing_fields(conn):
    job, _ = _create(conn)
    with pytest.raises(InvalidTransition):
        jobstore.transition(conn, job.id, PENDING, SUCCEEDED, result_ref="x")
    jobstore.transition(conn, job.id, PENDING, RUNNING, picked_by="w1")
    with pytest.raises(ValueError):
        jobstore.transition(conn, job.id, RUNNING, SUCCEEDED)
    with pytest.raises(ValueError):
        jobstore.transition(conn, job.id, RUNNING, FAILED)
    with pytest.raises(JobNotFound):
        jobstore.transition(conn, "nope", PENDING, RUNNING)


def test_result_and_error_invariants(conn):
    job, _ = _create(conn)
    jobstore.transition(conn, job.id, PENDING, RUNNING, picked_by="w1")
    failed = jobstore.transition(conn, job.id, RUNNING, FAILED, attempts=1, error="boom", result_ref="x")
    assert failed.error == "boom" and failed.result_ref is None
    assert failed.picked_by is None and failed.heartbeat_at is None
    assert_invariants(failed)

    other, _ = _create(conn, fp=fingerprint("other", "128"))
    jobstore.transition(conn, other.id, PENDING, RUNNING, picked_by="w1")
    done = jobstore.transition(conn, other.id, RUNNING, SUCCEEDED, result_ref="a" * 64, error="ignored")
    assert done.result_ref == "a" * 64 and done.error is None
    assert_invariants(done)


def test_attempts_never_decrease(conn):
    job, _ = _create(conn)
    jobstore.transition(conn, job.id, PENDING, RUNNING, picked_by="w1")
    jobstore.transition(conn, job.id, RUNNING, PENDING, attempts=2)
    jobstore.transition(conn, job.id, PENDING, RUNNING, picked_by="w1")
    back = jobstore.transition(conn, job.id, RUNNING, PENDING, attempts=1)
    assert back.attempts == 2


def test_error_text_is_truncated(conn):
    job, _ = _create(conn)
    failed = jobstore.transition(conn, job.id, PENDING, FAILED, error="x" * 2000)
    assert len(failed.error) == 500


def test_claim_next_respects_visibility_time(conn):
    job, _ = _create(conn)
    claimed = jobstore.claim_next(conn, "w1")
    assert claimed.id == job.id
    assert jobstore.claim_next(conn, "w2") is None

    slow = Settings(backoff_base=10)
    retried = jobstore.record_failure(conn, claimed, "boom", slow, owner="w1")
    assert retried.state == PENDING and retried.attempts == 1
    assert jobstore.claim_next(conn, "w1") is None


def test_record_failure_exhausts_attempts(conn):
    job, _ = _create(conn, max_attempts=2)
    job = jobstore.claim_next(conn, "w1")
    job = jobstore.record_failure(conn, job, "boom", SETTINGS, owner="w1")
    assert job.state == PENDING
    job = jobstore.claim_next(conn, "w1")
    job = jobstore.record_failure(conn, job, "boom again", SETTINGS, owner="w1")
    assert job.state == FAILED
    assert job.attempts == 2
    assert job.error == "boom again"
    assert_invariants(job)
    assert jobstore.claim_next(conn, "w1") is None


def test_record_failure_not_retryable(conn):
    _create(conn)
    job = jobstore.claim_next(conn, "w1")
    job = jobstore.record_failure(conn, job, "bad video", SETTINGS, kind="invalid_input", retryable=False)
    assert job.state == FAILED and job.error_kind == "invalid_input" and job.attempts == 1


def test_heartbeat_reports_cancel(conn):
    _create(conn)
    job = jobstore.claim_next(conn, "w1")
    assert jobstore.heartbeat(conn, job.id, "w1") == (True, False)
    assert jobstore.heartbeat(conn, job.id, "w2") == (False, False)
    flagged = jobstore.request_cancel(conn, job.id)
    assert flagged.state == RUNNING and flagged.cancel_requested
    assert jobstore.heartbeat(conn, job.id, "w1") == (True, True)


def test_cancel_pending_fails_immediately(conn):
    job, _ = _create(conn)
    cancelled = jobstore.request_cancel(conn, job.id)
    assert cancelled.state == FAILED
    assert cancelled.error_kind == KIND_CANCELLED
    assert_invariants(cancelled)
    # terminal jobs are left alone
    assert jobstore.request_cancel(conn, job.id).state == FAILED


def test_recover_stale_requeues_dead_workers_jobs(conn):
    _create(conn)
    job = jobstore.claim_next(conn, "w1")
    with conn:
        conn.execute(
            "UPDATE jobs SET heartbeat_at=? WHERE id=?",
            (iso_in_utc_from_seconds_from_now(-3600), job.id),
        )
    recovered = jobstore.recover_stale(conn, Settings(backoff_base=0, lease_seconds=60))
    assert [r.id for r in recovered] == [job.id]
    rec = jobstore.get_job(conn, job.id)
    assert rec.state == PENDING and rec.attempts == 1 and rec.picked_by is None


def test_recover_stale_honours_pending_cancel(conn):
    _create(conn)
    job = jobstore.claim_next(conn, "w1")
    jobstore.request_cancel(conn, job.id)
    with conn:
        conn.execute("UPDATE jobs SET heartbeat_at=NULL WHERE id=?", (job.id,))
    jobstore.recover_stale(conn, SETTINGS)
    rec = jobstore.get_job(conn, job.id)
    assert rec.state == FAILED and rec.error_kind == KIND_CANCELLED


def test_recover_stale_ignores_live_leases(conn):
    _create(conn)
    jobstore.claim_next(conn, "w1")
    assert jobstore.recover_stale(conn, Settings(lease_seconds=60)) == []


def test_gc_only_removes_old_terminal_jobs(conn):
    done, _ = _create(conn)
    jobstore.request_cancel(conn, done.id)
    live, _ = _create(conn)
    with conn:
        conn.execute("UPDATE jobs SET updated_at=?", (iso_in_utc_from_seconds_from_now(-7200),))
    assert jobstore.gc_jobs(conn, 3600) == 1
    with pytest.raises(JobNotFound):
        jobstore.get_job(conn, done.id)
    assert jobstore.get_job(conn, live.id).state == PENDING


def test_counts_and_list(conn):
    _create(conn)
    _create(conn, fp=fingerprint("zzz", "128"))
    jobstore.claim_next(conn, "w1")
    assert jobstore.counts(conn) == {PENDING: 1, RUNNING: 1, SUCCEEDED: 0, FAILED: 0}
    assert len(jobstore.list_jobs(conn, state=PENDING)) == 1
    with pytest.raises(ValueError):
        jobstore.list_jobs(conn, state="dead")


def test_config_validation(conn):
    jobstore.set_config(conn, "backoff_base", "3")
    assert jobstore.get_config(conn)["backoff_base"] == "3"
    assert jobstore.load_settings(conn).backoff_base == 3.0
    with pytest.raises(ValueError):
        jobstore.set_config(conn, "nope", "1")
    with pytest.raises(ValueError):
        jobstore.set_config(conn, "max_attempts_default", "lots")


def test_create_with_missing_cache_entry_starts_pending(conn):
    job, created = _create(conn, result_ref="f" * 64)
    assert created
    assert job.state == PENDING and job.result_ref is None
    assert job.next_run_at is not None

import os
import threading

import pytest

from convertq import cache, jobstore
from convertq.cache import FileArtifactStore, MemoryArtifactStore
from convertq.errors import ArtifactNotFound, Cancelled, ConversionError
from convertq.utils import fingerprint, iso_in_utc_from_seconds_from_now

FP = fingerprint("abc123", "128")


def test_put_then_lookup_round_trip(conn, store):
    entry = cache.put(conn, store, FP, [b"ID3", b"-bytes"])
    assert entry.size_bytes == 9
    found = cache.lookup(conn, FP)
    assert found.storage_ref == entry.storage_ref
    with store.open(found.storage_ref) as fh:
        assert fh.read() == b"ID3-bytes"


def test_lookup_miss(conn):
    assert cache.lookup(conn, FP) is None


def test_racing_writers_converge_on_first_entry(conn, store):
    first_ref, first_size = store.write(b"first render")
    second_ref, second_size = store.write(b"second render")

    winner = cache.record(conn, store, FP, first_ref, first_size)
    loser = cache.record(conn, store, FP, second_ref, second_size)

    assert loser.storage_ref == winner.storage_ref == first_ref
    assert store.exists(first_ref)
    assert not store.exists(second_ref)


def test_identical_bytes_share_one_blob(conn, store):
    a = cache.put(conn, store, FP, b"same audio")
    b = cache.put(conn, store, fingerprint("abc123", "320"), b"same audio")
    assert a.storage_ref == b.storage_ref
    # evicting one entry keeps the blob alive for the other
    _age(conn, FP, 600)
    evicted = cache.evict(conn, store, max_bytes=a.size_bytes)
    assert [e.fingerprint for e in evicted] == [FP]
    assert store.exists(a.storage_ref)


def test_expired_entry_misses_and_is_replaced(conn, store):
    old = cache.put(conn, store, FP, b"old audio", ttl_seconds=60)
    with conn:
        conn.execute("UPDATE results SET expires_at=?", (iso_in_utc_from_seconds_from_now(-1),))
    assert cache.lookup(conn, FP) is None

    new = cache.put(conn, store, FP, b"new audio", ttl_seconds=60)
    assert new.storage_ref != old.storage_ref
    assert cache.lookup(conn, FP).storage_ref == new.storage_ref
    assert not store.exists(old.storage_ref)


def test_no_ttl_means_no_expiry(conn, store):
    entry = cache.put(conn, store, FP, b"audio", ttl_seconds=0)
    assert entry.expires_at is None


def _age(conn, fp, seconds_ago):
    with conn:
        conn.execute(
            "UPDATE results SET last_accessed_at=? WHERE fingerprint=?",
            (iso_in_utc_from_seconds_from_now(-seconds_ago), fp),
        )


def test_evict_lru_until_under_budget(conn, store):
    fps = [fingerprint(f"vid{i}", "128") for i in range(3)]
    for i, fp in enumerate(fps):
        cache.put(conn, store, fp, bytes([65 + i]) * 10)
    _age(conn, fps[0], 30)
    _age(conn, fps[1], 300)
    _age(conn, fps[2], 3)

    evicted = cache.evict(conn, store, max_bytes=15)
    assert [e.fingerprint for e in evicted] == [fps[1], fps[0]]
    assert cache.lookup(conn, fps[2]) is not None
    assert cache.usage(conn) == {"entries": 1, "bytes": 10}


def test_evict_expired_entries(conn, store):
    entry = cache.put(conn, store, FP, b"stale", ttl_seconds=60)
    with conn:
        conn.execute("UPDATE results SET expires_at=?", (iso_in_utc_from_seconds_from_now(-1),))
    evicted = cache.evict(conn, store)
    assert [e.fingerprint for e in evicted] == [FP]
    assert not store.exists(entry.storage_ref)


def test_evict_skips_fingerprints_with_jobs_in_flight(conn, store):
    cache.put(conn, store, FP, b"x" * 10)
    job, _ = jobstore.create_job(conn, fingerprint=FP, source_ref="abc123", quality="128", max_attempts=3)
    assert job.state == "pending"
    assert cache.evict(conn, store, max_bytes=0) == []
    assert cache.lookup(conn, FP) is not None


def test_touch_updates_lru_clock(conn, store):
    cache.put(conn, store, FP, b"audio")
    _age(conn, FP, 600)
    before = cache.lookup(conn, FP).last_accessed_at
    cache.touch(conn, FP)
    assert cache.lookup(conn, FP).last_accessed_at > before


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryArtifactStore()
    return FileArtifactStore(str(tmp_path / "artifacts"))


def test_store_write_open_delete(any_store):
    ref, size = any_store.write(iter([b"abc", b"def"]))
    assert size == 6 and len(ref) == 64
    with any_store.open(ref) as fh:
        assert fh.read() == b"abcdef"
    any_store.delete(ref)
    assert not any_store.exists(ref)
    with pytest.raises(ArtifactNotFound):
        any_store.open(ref)
    any_store.delete(ref)


def test_store_rejects_empty_artifact(any_store):
    with pytest.raises(ConversionError):
        any_store.write([])


def test_store_write_honours_cancel(any_store):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        any_store.write([b"chunk"], cancel)


def test_file_store_cleans_partial_files(tmp_path):
    store = FileArtifactStore(str(tmp_path / "artifacts"))

    def broken():
        yield b"partial"
        raise ConversionError("stream broke")

    with pytest.raises(ConversionError):
        store.write(broken())
    assert os.listdir(os.path.join(store.root, "tmp")) == []


def test_file_store_accepts_file_objects(tmp_path):
    src = tmp_path / "in.mp3"
    src.write_bytes(b"ID3" * 1000)
    store = FileArtifactStore(str(tmp_path / "artifacts"))
    with open(src, "rb") as fh:
        ref, size = store.write(fh)
    assert size == 3000
    assert store.path_for(ref).endswith(".mp3")

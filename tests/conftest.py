import threading
import time

import pytest

from convertq.backends import ConversionBackend
from convertq.cache import MemoryArtifactStore
from convertq.config import Settings
from convertq.engine import Engine
from convertq.errors import Cancelled, ConversionError
from convertq.models import SUCCEEDED, FAILED


class FakeBackend(ConversionBackend):
    """Scriptable converter: can fail N times and can block until released."""

    def __init__(self, failures=0, block=False, error=None):
        self.failures = failures
        self.error = error
        self.release = threading.Event()
        if not block:
            self.release.set()
        self.calls = []
        self.cancelled = threading.Event()
        self._lock = threading.Lock()

    @staticmethod
    def payload(source_ref, quality):
        return f"ID3 fake audio for {source_ref} at {quality}kbps".encode()

    def convert(self, source_ref, quality, cancel=None):
        with self._lock:
            self.calls.append((source_ref, quality))
            fail = self.failures > 0
            if fail:
                self.failures -= 1
        while not self.release.wait(0.005):
            if cancel is not None and cancel.is_set():
                self.cancelled.set()
                raise Cancelled("fake conversion aborted")
        if self.error is not None:
            raise self.error
        if fail:
            raise ConversionError("backend exploded")
        data = self.payload(source_ref, quality)
        return [data[:5], data[5:]]


def assert_invariants(job):
    assert (job.result_ref is not None) == (job.state == SUCCEEDED)
    assert (job.error is not None) == (job.state == FAILED)
    assert job.attempts <= job.max_attempts


def wait_for_state(engine, job_id, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    job = engine.status(job_id)
    while job.state != state and time.monotonic() < deadline:
        time.sleep(0.005)
        job = engine.status(job_id)
    return job


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store():
    return MemoryArtifactStore()


@pytest.fixture
def make_engine(tmp_path, store, backend):
    engines = []

    def _make(backend=backend, **overrides):
        params = dict(
            backoff_base=0,
            poll_interval=0.01,
            timeout_seconds=5,
            lease_seconds=60,
            max_attempts_default=3,
        )
        params.update(overrides)
        eng = Engine(
            db_path=str(tmp_path / "convertq.db"),
            store=store,
            backend=backend,
            settings=Settings(**params),
        )
        engines.append(eng)
        return eng

    yield _make
    for eng in engines:
        eng.stop(drain=False, timeout=5)


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def conn(engine):
    c = engine.connect()
    yield c
    c.close()

"""
Shared fixtures for the Replica Watcher tests.
"""
import hashlib
import logging
import threading
import time

import pytest
import responses
from requests.structures import CaseInsensitiveDict

from replica_watch.checker import ReplicationChecker
from replica_watch.models import ChangeEvent, ChangeKind
from replica_watch.probe import HttpProbe, ProbeResponse

CONTENT = b"<report><row id='1'/></report>\n"
DIGEST = hashlib.sha256(CONTENT).hexdigest()


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """Keep test output quiet unless something goes wrong."""
    logging.getLogger("replica_watch").setLevel(logging.WARNING)
    yield


@pytest.fixture
def source_root(tmp_path):
    root = tmp_path / "site"
    root.mkdir()
    return root


@pytest.fixture
def source_file(source_root):
    """report.xml inside the watched root with known content."""
    path = source_root / "report.xml"
    path.write_bytes(CONTENT)
    return path


@pytest.fixture
def changed_event(source_file):
    return ChangeEvent.from_path(source_file, ChangeKind.CHANGED)


@pytest.fixture
def mocked_http():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def probe():
    p = HttpProbe(timeout=2)
    yield p
    p.close()


@pytest.fixture
def checker(probe, source_root):
    return ReplicationChecker(probe, source_root=str(source_root))


class FakeProbe:
    """In-memory stand-in for HttpProbe, keyed by (method, uri)."""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def add(self, method, uri, status=200, headers=None, body=None, delay=0.0, exc=None):
        self.routes[(method, uri)] = (status, headers or {}, body, delay, exc)

    def probe(self, uri, method="HEAD", timeout=None):
        with self._lock:
            self.calls.append((method, uri))
        status, headers, body, delay, exc = self.routes.get((method, uri), (404, {}, None, 0.0, None))
        if delay:
            time.sleep(delay)
        if exc is not None:
            raise exc
        return ProbeResponse(uri, status, CaseInsensitiveDict(headers), body if method == "GET" else None)

    def head(self, uri, timeout=None):
        return self.probe(uri, "HEAD", timeout)

    def get(self, uri, timeout=None):
        return self.probe(uri, "GET", timeout)

    def fetch_digest(self, uri, algorithm="sha256", timeout=None, chunk_size=None):
        resp = self.probe(uri, "GET", timeout)
        digest = hashlib.new(algorithm, resp.body or b"").hexdigest() if resp.ok else None
        return ProbeResponse(uri, resp.status_code, resp.headers, digest=digest)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_probe():
    return FakeProbe()


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll *predicate* until it is truthy or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())

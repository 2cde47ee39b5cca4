"""
Pytest configuration and fixtures for CouchbaseStore tests.

Provides:
- An in-memory fake cluster injected through ``cluster_factory``
- Store and connection fixtures with cleanup
- Test data generators
"""

import copy
import itertools
import threading
from enum import Enum

import pytest
from couchbase.exceptions import (
    DocumentNotFoundException,
    UnAmbiguousTimeoutException,
    ValueFormatException,
)
from dotenv import load_dotenv

from vertector_couchbasestore import (
    AuthConfig,
    BootstrapConfig,
    CouchbaseStore,
    CouchbaseStoreConfig,
)

# Load environment variables for integration tests
load_dotenv()


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (require a Couchbase cluster)"
    )


# ============================================================================
# Fake Couchbase cluster
# ============================================================================

class DriverQueryStatus(Enum):
    """Stand-in for the SDK's query status enum."""
    SUCCESS = "success"
    ERRORS = "errors"
    TIMEOUT = "timeout"


class FakeMutationResult:
    def __init__(self, cas: int):
        self.cas = cas

    def mutation_token(self):
        return None


class FakeGetResult:
    def __init__(self, content: dict, cas: int):
        self._content = content
        self.cas = cas

    @property
    def content_as(self):
        return {dict: copy.deepcopy(self._content)}


class FakeCollection:
    """Thread-safe in-memory default collection."""

    def __init__(self):
        self.documents: dict[str, dict] = {}
        self.corrupt: set[str] = set()
        self._lock = threading.Lock()
        self._cas = itertools.count(1)

    def upsert(self, key, value):
        with self._lock:
            self.documents[key] = copy.deepcopy(value)
            return FakeMutationResult(next(self._cas))

    def get(self, key):
        with self._lock:
            if key in self.corrupt:
                raise ValueFormatException(message=f"Cannot decode document {key}")
            if key not in self.documents:
                raise DocumentNotFoundException(message=f"Document {key} not found")
            return FakeGetResult(self.documents[key], next(self._cas))

    def remove(self, key):
        with self._lock:
            if key not in self.documents:
                raise DocumentNotFoundException(message=f"Document {key} not found")
            del self.documents[key]
            return FakeMutationResult(next(self._cas))


class FakeBucket:
    def __init__(self, collection: FakeCollection):
        self._collection = collection

    def default_collection(self):
        return self._collection


class FakeQueryMetaData:
    def __init__(self, status):
        self._status = status

    def status(self):
        return self._status


class FakeQueryResult:
    def __init__(self, rows, status):
        self._rows = rows
        self._status = status

    def rows(self):
        return iter(self._rows)

    def metadata(self):
        return FakeQueryMetaData(self._status)


class FakeServer:
    """
    State shared by every cluster handle created by a FakeClusterFactory.

    Buckets survive re-initialization, like a real cluster would.
    """

    def __init__(self):
        self.buckets: dict[str, FakeCollection] = {}
        self.query_rows: list[dict] = []
        self.query_status = DriverQueryStatus.SUCCESS
        self.query_error: Exception | None = None
        self.queries: list[tuple] = []
        self.reachable = True
        self.open_clusters = 0
        self.max_open_clusters = 0
        self._lock = threading.Lock()

    def collection(self, bucket: str) -> FakeCollection:
        with self._lock:
            return self.buckets.setdefault(bucket, FakeCollection())

    def opened(self):
        with self._lock:
            self.open_clusters += 1
            self.max_open_clusters = max(self.max_open_clusters, self.open_clusters)

    def closed(self):
        with self._lock:
            self.open_clusters -= 1


class FakeCluster:
    def __init__(self, server: FakeServer, connection_string: str, options):
        self.server = server
        self.connection_string = connection_string
        self.options = options
        self.closed = False
        server.opened()

    def bucket(self, name):
        assert not self.closed, "operation on a closed cluster"
        return FakeBucket(self.server.collection(name))

    def query(self, statement, *options):
        assert not self.closed, "operation on a closed cluster"
        self.server.queries.append((statement, *options))
        if self.server.query_error is not None:
            raise self.server.query_error
        return FakeQueryResult(list(self.server.query_rows), self.server.query_status)

    def ping(self):
        if not self.server.reachable:
            raise UnAmbiguousTimeoutException(message="ping timed out")
        return {"id": "fake"}

    def close(self):
        if not self.closed:
            self.closed = True
            self.server.closed()


class FakeClusterFactory:
    """
    Callable standing in for couchbase.cluster.Cluster.

    ``fail_times`` makes the next N connection attempts fail; a negative
    value makes every attempt fail.
    """

    def __init__(self, server: FakeServer):
        self.server = server
        self.clusters: list[FakeCluster] = []
        self.attempts = 0
        self.fail_times = 0
        self._lock = threading.Lock()

    def __call__(self, connection_string, options):
        with self._lock:
            self.attempts += 1
            if self.fail_times:
                self.fail_times -= 1 if self.fail_times > 0 else 0
                raise UnAmbiguousTimeoutException(message="bootstrap timed out")
            cluster = FakeCluster(self.server, connection_string, options)
            self.clusters.append(cluster)
            return cluster


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def cluster_factory(fake_server):
    return FakeClusterFactory(fake_server)


@pytest.fixture
def config():
    """Configuration matching the example deployment (bucket users on db1, db2)."""
    return CouchbaseStoreConfig(
        node_set="db1,db2",
        bucket="users",
        auth=AuthConfig(username="cas", password="secret"),
    )


@pytest.fixture
def background_config(config):
    return config.model_copy(
        update={"bootstrap": BootstrapConfig(background_retry=True, retry_interval_seconds=0.01)}
    )


@pytest.fixture
def store(config, cluster_factory):
    """Connected store backed by the fake cluster."""
    store = CouchbaseStore(config, cluster_factory=cluster_factory)
    yield store
    store.shutdown()


@pytest.fixture
def collection(store, fake_server):
    """The fake default collection of the store's bucket."""
    return fake_server.collection(store.bucket)


# ============================================================================
# Test Data Generators
# ============================================================================

@pytest.fixture
def sample_users():
    """Generate sample user documents."""
    return [
        {
            "key": "user_001",
            "value": {
                "username": "alice",
                "email": "alice@example.com",
                "memberOf": ["staff", "engineering"],
                "age": 30,
            }
        },
        {
            "key": "user_002",
            "value": {
                "username": "bob",
                "email": "bob@example.com",
                "memberOf": ["staff"],
                "age": 35,
            }
        },
        {
            "key": "user_003",
            "value": {
                "username": "charlie",
                "email": "charlie@example.com",
                "memberOf": [],
                "address": {"city": "Stockholm", "country": "SE"},
                "active": None,
            }
        },
    ]


@pytest.fixture
def driver_status():
    """The fake SDK query status enum."""
    return DriverQueryStatus

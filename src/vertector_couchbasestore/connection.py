"""
Cluster connection lifecycle.

ConnectionManager owns the single live Couchbase cluster handle of a store.
Operations borrow the handle through acquire(), which holds the read side of
a read/write lock; initialize() and shutdown() hold the write side while the
handle is swapped, so callers never observe a half-replaced or already
closed handle.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Callable, Iterator
from urllib.parse import urlencode

from couchbase.auth import PasswordAuthenticator
from couchbase.cluster import Cluster
from couchbase.exceptions import CouchbaseException
from couchbase.options import ClusterOptions, ClusterTimeoutOptions
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_when_event_set,
    wait_fixed,
)

from vertector_couchbasestore.config import CouchbaseStoreConfig
from vertector_couchbasestore.exceptions import ConnectionUnavailableError, StoreConfigurationError

logger = logging.getLogger(__name__)

# Seconds to wait for the background bootstrap thread on shutdown
BOOTSTRAP_JOIN_TIMEOUT = 5.0


class ReadWriteLock:
    """
    Writer-preferring read/write lock.

    Any number of readers may hold the lock at once; a writer waits for
    active readers to drain and blocks new readers while it waits.
    Not reentrant: a thread holding the read side must not request the
    write side.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def build_connection_string(config: CouchbaseStoreConfig) -> str:
    """
    Build the cluster connection string from the configured seed nodes.

    Nodes are sorted so the same node set always yields the same string.
    Network resolution is left to automatic detection.
    """
    hosts = ",".join(sorted(config.seed_nodes))
    params = urlencode({
        "network": "auto",
        "max_http_connections": config.max_http_connections,
    })
    return f"{config.scheme}://{hosts}?{params}"


def timeout_settings(config: CouchbaseStoreConfig) -> dict[str, timedelta]:
    """Map the configured timeouts onto ClusterTimeoutOptions keyword arguments."""
    timeouts = config.timeouts
    return {
        "connect_timeout": timeouts.connection_timeout,
        "kv_timeout": timeouts.kv_timeout,
        "query_timeout": timeouts.query_timeout,
        "search_timeout": timeouts.search_timeout,
        "views_timeout": timeouts.view_timeout,
    }


def build_cluster_options(config: CouchbaseStoreConfig) -> ClusterOptions:
    """Build ClusterOptions with credentials and timeout configuration."""
    return ClusterOptions(
        PasswordAuthenticator(config.auth.username, config.auth.password),
        timeout_options=ClusterTimeoutOptions(**timeout_settings(config)),
    )


class ConnectionManager:
    """
    Owns the Couchbase cluster handle for one store instance.

    By default the constructor connects synchronously and raises
    ConnectionUnavailableError if the cluster is unreachable. When
    ``config.bootstrap.background_retry`` is set, connecting happens on a
    daemon thread that retries on a fixed interval until it succeeds or the
    manager is shut down, so the host process never blocks on an unavailable
    database.

    Example:
        with ConnectionManager(config) as manager:
            with manager.acquire() as cluster:
                cluster.ping()
    """

    def __init__(
        self,
        config: CouchbaseStoreConfig,
        *,
        cluster_factory: Callable[[str, ClusterOptions], Any] | None = None,
        connect: bool = True,
    ) -> None:
        """
        Initialize connection manager.

        Args:
            config: Store configuration
            cluster_factory: Callable building a cluster from a connection
                string and ClusterOptions (default: couchbase Cluster)
            connect: Connect immediately (default: True)
        """
        self._config = config
        self._cluster_factory = cluster_factory or Cluster
        self._cluster: Any | None = None
        self._lock = ReadWriteLock()
        # Serializes initialize/shutdown, including bootstrap thread bookkeeping
        self._lifecycle_lock = threading.Lock()
        self._ready = threading.Event()
        self._stop_event = threading.Event()
        self._bootstrap_thread: threading.Thread | None = None

        if connect:
            self.initialize()

    # Configuration accessors

    @property
    def config(self) -> CouchbaseStoreConfig:
        return self._config

    @property
    def bucket_name(self) -> str:
        return self._config.bucket

    @property
    def connection_string(self) -> str:
        return build_connection_string(self._config)

    @property
    def connection_timeout(self) -> timedelta:
        return self._config.timeouts.connection_timeout

    @property
    def kv_timeout(self) -> timedelta:
        return self._config.timeouts.kv_timeout

    @property
    def query_timeout(self) -> timedelta:
        return self._config.timeouts.query_timeout

    @property
    def search_timeout(self) -> timedelta:
        return self._config.timeouts.search_timeout

    @property
    def view_timeout(self) -> timedelta:
        return self._config.timeouts.view_timeout

    # State

    @property
    def is_connected(self) -> bool:
        """Whether a live cluster handle is currently held."""
        return self._cluster is not None

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def is_bootstrapping(self) -> bool:
        """Whether a background bootstrap is still trying to connect."""
        thread = self._bootstrap_thread
        return thread is not None and thread.is_alive()

    def wait_until_ready(self, timeout: float | None = None) -> bool:
        """
        Block until a live handle is available.

        Args:
            timeout: Seconds to wait (None waits forever)

        Returns:
            True if the handle became available within the timeout
        """
        return self._ready.wait(timeout)

    # Lifecycle

    def initialize(self, config: CouchbaseStoreConfig | None = None) -> None:
        """
        (Re-)establish the cluster handle.

        Idempotent: a running background bootstrap is stopped and any live
        handle is disconnected before the new one is created, so at most one
        handle is ever owned.

        Args:
            config: Replacement configuration (default: keep the current one)

        Raises:
            StoreConfigurationError: If the password secret was never resolved
            ConnectionUnavailableError: If connecting synchronously fails
        """
        config = config or self._config
        if config.auth.has_unresolved_secret:
            raise StoreConfigurationError(
                "Password secret is unresolved; call config.resolve_secrets() first"
            )

        with self._lifecycle_lock:
            self._stop_bootstrap()

            with self._lock.write_locked():
                self._disconnect()
                self._config = config
                logger.debug(f"Initializing Couchbase cluster for nodes {sorted(config.seed_nodes)}")

                if not config.bootstrap.background_retry:
                    self._cluster = self._connect()
                    self._ready.set()
                    return

            self._start_bootstrap()

    def shutdown(self) -> None:
        """
        Disconnect from the cluster and stop any background bootstrap.

        Safe to call when not connected and safe to call repeatedly.
        """
        with self._lifecycle_lock:
            self._stop_bootstrap()
            with self._lock.write_locked():
                self._disconnect()

    @contextmanager
    def acquire(self) -> Iterator[Any]:
        """
        Borrow the live cluster handle.

        The handle cannot be swapped or closed while the context is open.

        Raises:
            ConnectionUnavailableError: If no live handle exists
        """
        with self._lock.read_locked():
            cluster = self._cluster
            if cluster is None:
                if self.is_bootstrapping:
                    raise ConnectionUnavailableError(
                        "Couchbase cluster connection not established yet (background bootstrap in progress)"
                    )
                raise ConnectionUnavailableError()
            yield cluster

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # Internals

    def _connect(self) -> Any:
        """Create a new cluster handle. Caller holds the write lock or owns the result."""
        connection_string = build_connection_string(self._config)
        try:
            cluster = self._cluster_factory(connection_string, build_cluster_options(self._config))
        except CouchbaseException as e:
            raise ConnectionUnavailableError(
                f"Failed to connect to Couchbase cluster at {connection_string}", e
            )
        logger.info(f"Connected to Couchbase cluster at {connection_string}")
        return cluster

    def _disconnect(self) -> None:
        """Close the live handle, if any. Caller holds the write lock."""
        cluster, self._cluster = self._cluster, None
        self._ready.clear()
        if cluster is None:
            return

        logger.debug("Disconnecting from Couchbase cluster")
        try:
            cluster.close()
        except CouchbaseException as e:
            logger.warning(f"Error while disconnecting from Couchbase cluster: {e}")

    def _start_bootstrap(self) -> None:
        self._stop_event = threading.Event()
        self._bootstrap_thread = threading.Thread(
            target=self._bootstrap,
            args=(self._stop_event,),
            name="couchbase-bootstrap",
            daemon=True,
        )
        logger.info(
            f"Connecting to Couchbase in the background "
            f"(retry every {self._config.bootstrap.retry_interval_seconds}s)"
        )
        self._bootstrap_thread.start()

    def _stop_bootstrap(self) -> None:
        thread = self._bootstrap_thread
        if thread is None:
            return

        self._stop_event.set()
        thread.join(timeout=BOOTSTRAP_JOIN_TIMEOUT)
        if thread.is_alive():
            # The thread re-checks the stop event under the write lock and
            # closes whatever it connected instead of installing it.
            logger.warning("Background bootstrap did not stop within timeout")
        self._bootstrap_thread = None

    def _bootstrap(self, stop_event: threading.Event) -> None:
        """Background bootstrap loop, retried with tenacity until connected or stopped."""
        retrying = Retrying(
            retry=retry_if_exception_type(ConnectionUnavailableError),
            wait=wait_fixed(self._config.bootstrap.retry_interval_seconds),
            stop=stop_when_event_set(stop_event),
            sleep=stop_event.wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            retrying(self._bootstrap_attempt, stop_event)
        except RetryError:
            logger.info("Background bootstrap stopped before a connection was established")
        except Exception:
            logger.exception("Background bootstrap failed with an unexpected error; giving up")

    def _bootstrap_attempt(self, stop_event: threading.Event) -> None:
        if stop_event.is_set():
            return

        cluster = self._connect()
        with self._lock.write_locked():
            if stop_event.is_set() or self._cluster is not None:
                logger.debug("Bootstrap superseded after connecting; discarding handle")
                try:
                    cluster.close()
                except CouchbaseException as e:
                    logger.warning(f"Error while discarding Couchbase cluster: {e}")
                return
            self._cluster = cluster
            self._ready.set()

"""
Couchbase-backed document store.

This module provides CouchbaseStore, the entry point used by attribute
resolution code: it owns the cluster connection, runs bucket-scoped queries,
reads and writes documents in the bucket's default collection and projects
documents into attribute maps.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping

from couchbase.exceptions import CouchbaseException

from vertector_couchbasestore.attributes import AttributeMap, collect_attributes
from vertector_couchbasestore.config import CouchbaseStoreConfig
from vertector_couchbasestore.connection import ConnectionManager
from vertector_couchbasestore.documents import Document, DocumentStore, MutationConfirmation
from vertector_couchbasestore.exceptions import ConnectionUnavailableError
from vertector_couchbasestore.logging_utils import PerformanceLogger
from vertector_couchbasestore.observability import OperationMetrics, Tracer
from vertector_couchbasestore.query import QueryExecutor, QueryParameters, QueryResult

logger = logging.getLogger(__name__)


class CouchbaseStore:
    """
    Document store over a single Couchbase bucket.

    Features:
        - Synchronous or background connection bootstrap
        - Safe re-initialization while operations are in flight
        - Bucket-scoped N1QL queries with bound parameters
        - Upsert / get / remove on the default collection
        - Attribute extraction for attribute release
        - Per-operation metrics and optional OpenTelemetry tracing

    All operations block the calling thread for at most their configured
    timeout and may be called from several threads at once.

    Example:
        with CouchbaseStore.from_config(config) as store:
            confirmation = store.upsert({"email": "a@x.com"})
            doc = store.get(confirmation.key)
            attributes = store.collect_attributes(doc, lambda name: name.startswith("e"))
    """

    def __init__(
        self,
        config: CouchbaseStoreConfig,
        *,
        cluster_factory: Callable[..., Any] | None = None,
        connect: bool = True,
        enable_tracing: bool | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            config: Store configuration
            cluster_factory: Callable building a cluster from a connection
                string and ClusterOptions (default: couchbase Cluster)
            connect: Connect immediately (default: True)
            enable_tracing: Override ``config.enable_tracing``
        """
        self.connection = ConnectionManager(config, cluster_factory=cluster_factory, connect=False)
        self.queries = QueryExecutor(self.connection)
        self.documents = DocumentStore(self.connection)

        self.metrics = OperationMetrics(service_name=f"couchbase_store_{config.bucket}")

        tracing = config.enable_tracing if enable_tracing is None else enable_tracing
        if tracing:
            self.tracer = Tracer(service_name=f"couchbase_store_{config.bucket}")
            logger.info("OpenTelemetry tracing enabled")
        else:
            self.tracer = None

        if connect:
            self.initialize()

    @classmethod
    @contextmanager
    def from_config(
        cls,
        config: CouchbaseStoreConfig,
        **kwargs: Any,
    ) -> Iterator["CouchbaseStore"]:
        """
        Create a connected store and shut it down on exit.

        Example:
            with CouchbaseStore.from_config(load_config_from_env()) as store:
                result = store.query("type = $type", {"type": "user"})
        """
        store = cls(config, **kwargs)
        try:
            yield store
        finally:
            store.shutdown()

    @property
    def config(self) -> CouchbaseStoreConfig:
        return self.connection.config

    @property
    def bucket(self) -> str:
        return self.connection.bucket_name

    # Lifecycle

    def initialize(self, config: CouchbaseStoreConfig | None = None) -> None:
        """(Re-)connect to the cluster. See ConnectionManager.initialize."""
        self.connection.initialize(config)

    def shutdown(self) -> None:
        """Disconnect from the cluster. Idempotent."""
        logger.info(f"Shutting down CouchbaseStore for bucket '{self.bucket}'")
        self.connection.shutdown()

    def __enter__(self) -> "CouchbaseStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # Operations

    def query(self, predicate: str, parameters: QueryParameters | None = None) -> QueryResult:
        """
        Select all fields of the documents in the bucket matching ``predicate``.

        Raises:
            QueryExecutionError: If the query fails or reports ERRORS
            ConnectionUnavailableError: If there is no live connection
        """
        with self._instrument("query", predicate=predicate):
            return self.queries.query(predicate, parameters)

    def upsert(
        self,
        document: Mapping[str, Any] | str | bytes,
        key: str | None = None,
    ) -> MutationConfirmation:
        """
        Create or overwrite a document; a UUID key is generated when omitted.

        Raises:
            SerializationError: If the document is not a JSON object tree
            ConnectionUnavailableError: If there is no live connection
        """
        with self._instrument("upsert", key=key or ""):
            return self.documents.upsert(document, key)

    def get(self, key: str) -> Document:
        """
        Fetch a document by key.

        Raises:
            DocumentNotFoundError: If no document exists under the key
            ConnectionUnavailableError: If there is no live connection
        """
        with self._instrument("get", key=key):
            return self.documents.get(key)

    def remove(self, key: str) -> MutationConfirmation:
        """
        Delete a document by key.

        Raises:
            DocumentNotFoundError: If no document exists under the key
            ConnectionUnavailableError: If there is no live connection
        """
        with self._instrument("remove", key=key):
            return self.documents.remove(key)

    @staticmethod
    def collect_attributes(
        document: Mapping[str, Any],
        predicate: Callable[[str], bool],
    ) -> AttributeMap:
        """Project the fields whose name satisfies ``predicate`` into an AttributeMap."""
        return collect_attributes(document, predicate)

    # Monitoring

    def get_metrics(self) -> dict[str, Any]:
        """
        Get operation metrics.

        Returns:
            Dictionary with operation counts, error rate and latency
            percentiles per operation
        """
        return self.metrics.get_stats()

    def reset_metrics(self) -> None:
        self.metrics.reset()
        logger.info("Operation metrics reset")

    def export_prometheus_metrics(self) -> str:
        """Export operation metrics in Prometheus text format."""
        return self.metrics.export_prometheus()

    def health_check(self) -> dict[str, Any]:
        """
        Ping the cluster through the live handle.

        Returns:
            Dictionary containing health status:
            - status: "healthy" | "unhealthy"
            - timestamp: Current timestamp
            - bucket: Configured bucket
            - connected: Whether a live handle is held
            - bootstrapping: Whether a background bootstrap is in progress
            - latency_ms: Health check execution time
            - error: Failure description (unhealthy only)
        """
        start_time = time.perf_counter()
        health: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "bucket": self.bucket,
            "connected": self.connection.is_connected,
            "bootstrapping": self.connection.is_bootstrapping,
        }

        try:
            with self.connection.acquire() as cluster:
                cluster.ping()
            health["status"] = "healthy"
        except (ConnectionUnavailableError, CouchbaseException) as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)

        health["latency_ms"] = round((time.perf_counter() - start_time) * 1000, 2)
        return health

    @contextmanager
    def _instrument(self, operation: str, **attributes: Any) -> Iterator[None]:
        """Trace, time and log one store operation."""
        attributes = {"bucket": self.bucket, **attributes}
        with PerformanceLogger(operation, logger, **attributes):
            with self.metrics.measure(operation):
                if self.tracer:
                    with self.tracer.span(f"couchbase.{operation}", attributes=attributes):
                        yield
                else:
                    yield

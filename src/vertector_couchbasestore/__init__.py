"""
Vertector Couchbase Store - resilient Couchbase access layer.

This package provides a thread-safe client for a single Couchbase bucket:
connection lifecycle with optional background bootstrap, bucket-scoped N1QL
queries, document CRUD on the default collection and attribute extraction.
"""

from vertector_couchbasestore.store import CouchbaseStore

from vertector_couchbasestore.connection import (
    ConnectionManager,
    ReadWriteLock,
    build_connection_string,
    build_cluster_options,
    timeout_settings,
)

from vertector_couchbasestore.query import (
    QueryExecutor,
    QueryResult,
    QueryStatus,
)

from vertector_couchbasestore.documents import (
    Document,
    DocumentStore,
    MutationConfirmation,
    to_document,
)

from vertector_couchbasestore.attributes import (
    AttributeMap,
    collect_attributes,
)

from vertector_couchbasestore.exceptions import (
    CouchbaseStoreError,
    ConnectionUnavailableError,
    QueryExecutionError,
    DocumentNotFoundError,
    SerializationError,
    StoreConfigurationError,
    StoreValidationError,
)

from vertector_couchbasestore.config import (
    CouchbaseStoreConfig,
    AuthConfig,
    TimeoutConfig,
    BootstrapConfig,
    SecretsManager,
    SecretsProvider,
    load_config_from_env,
    parse_node_set,
)

from vertector_couchbasestore.observability import (
    Tracer,
    OperationMetrics,
)

__version__ = "1.0.0"

__all__ = [
    # Core store
    "CouchbaseStore",
    "ConnectionManager",
    "ReadWriteLock",
    "build_connection_string",
    "build_cluster_options",
    "timeout_settings",
    "QueryExecutor",
    "QueryResult",
    "QueryStatus",
    "Document",
    "DocumentStore",
    "MutationConfirmation",
    "to_document",
    "AttributeMap",
    "collect_attributes",
    # Errors
    "CouchbaseStoreError",
    "ConnectionUnavailableError",
    "QueryExecutionError",
    "DocumentNotFoundError",
    "SerializationError",
    "StoreConfigurationError",
    "StoreValidationError",
    # Configuration
    "CouchbaseStoreConfig",
    "AuthConfig",
    "TimeoutConfig",
    "BootstrapConfig",
    "SecretsManager",
    "SecretsProvider",
    "load_config_from_env",
    "parse_node_set",
    # Observability
    "Tracer",
    "OperationMetrics",
]

"""
Bucket-scoped N1QL queries.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence

from couchbase.exceptions import CouchbaseException
from couchbase.options import QueryOptions

from vertector_couchbasestore.connection import ConnectionManager
from vertector_couchbasestore.exceptions import QueryExecutionError

logger = logging.getLogger(__name__)

QueryParameters = Mapping[str, Any] | Sequence[Any]


class QueryStatus(str, Enum):
    """Query service status as reported in the result metadata."""
    RUNNING = "running"
    SUCCESS = "success"
    ERRORS = "errors"
    COMPLETED = "completed"
    STOPPED = "stopped"
    TIMEOUT = "timeout"
    CLOSED = "closed"
    FATAL = "fatal"
    ABORTED = "aborted"
    UNKNOWN = "unknown"

    @classmethod
    def from_driver(cls, status: Any) -> "QueryStatus":
        """Convert the SDK's status enum (or its string value) to QueryStatus."""
        value = getattr(status, "value", status)
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class QueryResult:
    """Rows returned by a query, fully consumed, plus the final status."""
    rows: list[dict[str, Any]]
    status: QueryStatus
    statement: str
    bucket: str
    parameters: Any = field(default=None, repr=False)

    @property
    def documents(self) -> list[Any]:
        """
        Documents contained in the rows.

        ``SELECT *`` wraps every document under the bucket name; such rows
        are unwrapped, other row shapes are returned as-is.
        """
        return [
            row[self.bucket] if isinstance(row, dict) and set(row) == {self.bucket} else row
            for row in self.rows
        ]

    def __len__(self) -> int:
        return len(self.rows)


class QueryExecutor:
    """
    Runs ``SELECT * FROM `bucket` WHERE <predicate>`` against the live cluster.

    The predicate is caller-supplied and passed through verbatim; bind values
    as parameters (``$name`` or ``$1``) rather than formatting them into it.
    """

    def __init__(self, connection: ConnectionManager):
        self.connection = connection

    @property
    def bucket(self) -> str:
        return self.connection.bucket_name

    def build_statement(self, predicate: str) -> str:
        return f"SELECT * FROM `{self.bucket}` WHERE {predicate}"

    def query(
        self,
        predicate: str,
        parameters: QueryParameters | None = None,
    ) -> QueryResult:
        """
        Execute a bucket-scoped query.

        Args:
            predicate: WHERE clause body
            parameters: Mapping of named parameters, or a sequence of
                positional parameters

        Returns:
            QueryResult with all rows consumed

        Raises:
            QueryExecutionError: If the query fails or reports ERRORS
            ConnectionUnavailableError: If there is no live connection
        """
        statement = self.build_statement(predicate)

        with self.connection.acquire() as cluster:
            try:
                if parameters is None:
                    result = cluster.query(statement)
                else:
                    result = cluster.query(statement, self._options(parameters))
                rows = list(result.rows())
                status = QueryStatus.from_driver(result.metadata().status())
            except CouchbaseException as e:
                raise QueryExecutionError(
                    "Could not execute query", e, statement=statement, bucket=self.bucket
                )

        if status is QueryStatus.ERRORS:
            raise QueryExecutionError(
                "Could not execute query", statement=statement, bucket=self.bucket, status=status
            )

        logger.debug(f"Query returned {len(rows)} rows with status {status.value}: {statement}")
        return QueryResult(
            rows=rows,
            status=status,
            statement=statement,
            bucket=self.bucket,
            parameters=parameters,
        )

    @staticmethod
    def _options(parameters: QueryParameters) -> QueryOptions:
        if isinstance(parameters, Mapping):
            return QueryOptions(named_parameters=dict(parameters))
        if isinstance(parameters, (str, bytes)):
            raise TypeError("Query parameters must be a mapping or a sequence of values")
        return QueryOptions(positional_parameters=list(parameters))

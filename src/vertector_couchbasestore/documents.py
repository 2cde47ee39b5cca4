"""
Schema-less documents and CRUD against the bucket's default collection.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

from couchbase.exceptions import CouchbaseException, DocumentNotFoundException, ValueFormatException
from pydantic import JsonValue, TypeAdapter, ValidationError

from vertector_couchbasestore.connection import ConnectionManager
from vertector_couchbasestore.exceptions import (
    CouchbaseStoreError,
    DocumentNotFoundError,
    SerializationError,
    StoreValidationError,
)

logger = logging.getLogger(__name__)

# A document is a JSON object: field name -> str | int | float | bool | None | list | dict
Document = dict[str, JsonValue]

_document_adapter: TypeAdapter[Document] = TypeAdapter(Document)


def to_document(value: Mapping[str, Any] | str | bytes) -> Document:
    """
    Validate a mapping, or parse JSON text, into a Document.

    Field order is preserved.

    Raises:
        SerializationError: If the value is not a JSON object tree
    """
    try:
        if isinstance(value, (str, bytes)):
            return _document_adapter.validate_json(value)
        return _document_adapter.validate_python(value)
    except ValidationError as e:
        raise SerializationError("Value is not a JSON document", e)


@dataclass(frozen=True)
class MutationConfirmation:
    """Outcome of a write; callers may ignore it."""
    key: str
    cas: int | None = None
    mutation_token: Any = None

    @classmethod
    def from_result(cls, key: str, result: Any) -> "MutationConfirmation":
        token = result.mutation_token() if hasattr(result, "mutation_token") else None
        return cls(key=key, cas=getattr(result, "cas", None), mutation_token=token)


class DocumentStore:
    """
    Document CRUD within the default collection of the configured bucket.

    Example:
        documents = DocumentStore(manager)
        confirmation = documents.upsert({"email": "a@x.com"})
        doc = documents.get(confirmation.key)
        documents.remove(confirmation.key)
    """

    def __init__(self, connection: ConnectionManager):
        self.connection = connection

    @property
    def bucket(self) -> str:
        return self.connection.bucket_name

    def upsert(
        self,
        document: Mapping[str, Any] | str | bytes,
        key: str | None = None,
    ) -> MutationConfirmation:
        """
        Create or overwrite a document.

        Args:
            document: Mapping or JSON object text
            key: Document key; a random UUID is generated when omitted

        Returns:
            MutationConfirmation for the write

        Raises:
            SerializationError: If the document is not a JSON object tree
            StoreValidationError: If an explicit key is empty or not a string
            ConnectionUnavailableError: If there is no live connection
        """
        if key is None:
            key = str(uuid.uuid4())
        else:
            self._validate_key(key)
        content = to_document(document)

        with self.connection.acquire() as cluster:
            collection = cluster.bucket(self.bucket).default_collection()
            try:
                result = collection.upsert(key, content)
            except ValueFormatException as e:
                raise SerializationError(f"Document '{key}' could not be encoded", e)
            except CouchbaseException as e:
                raise CouchbaseStoreError(f"Failed to upsert document '{key}'", e)

        logger.debug(f"Upserted document '{key}' into bucket '{self.bucket}'")
        return MutationConfirmation.from_result(key, result)

    def get(self, key: str) -> Document:
        """
        Fetch a document by key.

        Raises:
            DocumentNotFoundError: If no document exists under the key
            SerializationError: If the stored content is not a JSON object
            ConnectionUnavailableError: If there is no live connection
        """
        self._validate_key(key)
        with self.connection.acquire() as cluster:
            collection = cluster.bucket(self.bucket).default_collection()
            try:
                result = collection.get(key)
                content = result.content_as[dict]
            except DocumentNotFoundException as e:
                raise DocumentNotFoundError(key, self.bucket, e)
            except ValueFormatException as e:
                raise SerializationError(f"Document '{key}' could not be decoded", e)
            except CouchbaseException as e:
                raise CouchbaseStoreError(f"Failed to get document '{key}'", e)
            except (TypeError, ValueError) as e:
                raise SerializationError(f"Document '{key}' is not a JSON object", e)

        return to_document(content)

    def remove(self, key: str) -> MutationConfirmation:
        """
        Delete a document by key.

        Raises:
            DocumentNotFoundError: If no document exists under the key
            ConnectionUnavailableError: If there is no live connection
        """
        self._validate_key(key)
        with self.connection.acquire() as cluster:
            collection = cluster.bucket(self.bucket).default_collection()
            try:
                result = collection.remove(key)
            except DocumentNotFoundException as e:
                raise DocumentNotFoundError(key, self.bucket, e)
            except CouchbaseException as e:
                raise CouchbaseStoreError(f"Failed to remove document '{key}'", e)

        logger.debug(f"Removed document '{key}' from bucket '{self.bucket}'")
        return MutationConfirmation.from_result(key, result)

    @staticmethod
    def _validate_key(key: str) -> None:
        """
        Validate a document key.

        Raises:
            StoreValidationError: If key is not a non-empty string
        """
        if not isinstance(key, str):
            raise StoreValidationError(
                f"Key must be a string, got {type(key).__name__}",
                field="key",
                value=key
            )

        if not key:
            raise StoreValidationError("Key cannot be empty", field="key", value=key)

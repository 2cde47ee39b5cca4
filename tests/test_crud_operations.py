"""
Unit tests for document CRUD operations.

Tests:
- upsert with explicit and generated keys
- get round trip and not-found
- remove
- serialization failures
- concurrent writes
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

from vertector_couchbasestore import (
    ConnectionUnavailableError,
    DocumentNotFoundError,
    MutationConfirmation,
    SerializationError,
    StoreValidationError,
    to_document,
)


@pytest.mark.unit
class TestUpsert:
    """Test upsert operations."""

    def test_upsert_with_key(self, store, collection):
        confirmation = store.upsert({"email": "a@x.com"}, key="user_001")

        assert isinstance(confirmation, MutationConfirmation)
        assert confirmation.key == "user_001"
        assert confirmation.cas is not None
        assert collection.documents["user_001"] == {"email": "a@x.com"}

    def test_upsert_generates_uuid_key(self, store, collection):
        confirmation = store.upsert({"email": "a@x.com"})

        assert uuid.UUID(confirmation.key).version == 4
        assert confirmation.key in collection.documents

    def test_upsert_overwrites(self, store):
        store.upsert({"email": "old@x.com"}, key="user_001")
        store.upsert({"email": "new@x.com"}, key="user_001")

        assert store.get("user_001") == {"email": "new@x.com"}

    def test_upsert_json_text(self, store):
        store.upsert('{"email": "a@x.com", "memberOf": ["staff"]}', key="user_001")

        assert store.get("user_001") == {"email": "a@x.com", "memberOf": ["staff"]}

    def test_upsert_nested_document(self, store, sample_users):
        user = sample_users[2]

        store.upsert(user["value"], key=user["key"])

        assert store.get(user["key"]) == user["value"]


@pytest.mark.unit
class TestGet:
    """Test get operations."""

    def test_round_trip(self, store, sample_users):
        for user in sample_users:
            store.upsert(user["value"], key=user["key"])

        for user in sample_users:
            assert store.get(user["key"]) == user["value"]

    def test_round_trip_preserves_field_order(self, store):
        store.upsert({"z": 1, "a": 2, "m": 3}, key="ordered")

        assert list(store.get("ordered")) == ["z", "a", "m"]

    def test_get_missing_key(self, store):
        with pytest.raises(DocumentNotFoundError) as exc_info:
            store.get("missing")

        assert exc_info.value.key == "missing"
        assert exc_info.value.bucket == "users"
        assert "Document 'missing' not found in bucket 'users'" in str(exc_info.value)

    def test_get_undecodable_content(self, store, collection):
        collection.corrupt.add("broken")

        with pytest.raises(SerializationError):
            store.get("broken")


@pytest.mark.unit
class TestRemove:
    """Test remove operations."""

    def test_remove_existing(self, store, collection):
        store.upsert({"email": "a@x.com"}, key="user_001")

        confirmation = store.remove("user_001")

        assert confirmation.key == "user_001"
        assert "user_001" not in collection.documents
        with pytest.raises(DocumentNotFoundError):
            store.get("user_001")

    def test_remove_missing(self, store):
        with pytest.raises(DocumentNotFoundError):
            store.remove("missing")


@pytest.mark.unit
class TestSerialization:
    """Test document validation."""

    def test_invalid_json_text(self, store, collection):
        with pytest.raises(SerializationError):
            store.upsert('{"email": ', key="user_001")

        assert collection.documents == {}

    def test_json_text_must_be_object(self):
        with pytest.raises(SerializationError):
            to_document("[1, 2, 3]")

    def test_non_json_value_rejected(self, store, collection):
        with pytest.raises(SerializationError):
            store.upsert({"created": datetime(2024, 1, 1)}, key="user_001")

        assert collection.documents == {}

    def test_non_string_field_names_rejected(self):
        with pytest.raises(SerializationError):
            to_document({1: "one"})

    def test_to_document_accepts_bytes(self):
        assert to_document(b'{"a": [1, 2.5, null, true]}') == {"a": [1, 2.5, None, True]}


@pytest.mark.unit
class TestConcurrentWrites:
    """Test concurrent access to the store."""

    def test_concurrent_upserts_distinct_keys(self, store, collection):
        def write(i):
            return store.upsert({"index": i}).key

        with ThreadPoolExecutor(max_workers=8) as pool:
            keys = list(pool.map(write, range(100)))

        assert len(set(keys)) == 100
        assert len(collection.documents) == 100
        assert sorted(collection.documents[key]["index"] for key in keys) == list(range(100))


@pytest.mark.unit
class TestWithoutConnection:
    """Test operations without a live connection."""

    def test_operations_fail_after_shutdown(self, store):
        store.shutdown()

        with pytest.raises(ConnectionUnavailableError):
            store.upsert({"email": "a@x.com"})
        with pytest.raises(ConnectionUnavailableError):
            store.get("user_001")
        with pytest.raises(ConnectionUnavailableError):
            store.remove("user_001")

    def test_operations_recover_after_reinitialize(self, store):
        store.upsert({"email": "a@x.com"}, key="user_001")
        store.shutdown()

        store.initialize()

        assert store.get("user_001") == {"email": "a@x.com"}


@pytest.mark.unit
class TestKeyValidation:
    """Test document key validation."""

    def test_upsert_empty_key_rejected(self, store, collection):
        with pytest.raises(StoreValidationError) as exc_info:
            store.upsert({"email": "a@x.com"}, key="")

        assert exc_info.value.field == "key"
        assert collection.documents == {}

    def test_upsert_non_string_key_rejected(self, store, collection):
        with pytest.raises(StoreValidationError):
            store.upsert({"email": "a@x.com"}, key=42)

        assert collection.documents == {}

    @pytest.mark.parametrize("operation", ["get", "remove"])
    def test_empty_key_rejected(self, store, operation):
        with pytest.raises(StoreValidationError):
            getattr(store, operation)("")

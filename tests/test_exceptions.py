"""
Tests for Lifeworld Error Handling
==================================
Exception hierarchy, error codes and storage-exception wrapping.
"""

import pytest

from lifeworld.core.exceptions import (
    ConceptNotFoundError,
    ConfigurationError,
    IrrecoverableError,
    LifeworldError,
    MergeIntegrityError,
    NotFoundError,
    OracleCallError,
    OracleError,
    OracleParseError,
    RecoverableError,
    StorageError,
    StorageTimeoutError,
    StoreUnavailableError,
    ValidationError,
    is_debug_mode,
    wrap_storage_exception,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc",
        [
            StoreUnavailableError("sqlite"),
            StorageTimeoutError("sqlite", "count_concepts"),
            OracleCallError("ollama", "connection refused"),
        ],
    )
    def test_recoverable(self, exc):
        assert isinstance(exc, RecoverableError)
        assert exc.recoverable is True

    @pytest.mark.parametrize(
        "exc",
        [
            ConfigurationError("store.backend", "bad"),
            ValidationError("importance", "out of range", 42),
            ConceptNotFoundError(7),
        ],
    )
    def test_irrecoverable(self, exc):
        assert isinstance(exc, IrrecoverableError)
        assert exc.recoverable is False

    def test_oracle_errors_share_a_base(self):
        assert isinstance(OracleCallError("ollama", "x"), OracleError)
        assert isinstance(OracleParseError("no array"), OracleError)

    def test_store_unavailable_is_a_storage_error(self):
        assert isinstance(StoreUnavailableError("memory"), StorageError)

    def test_concept_not_found_is_not_found(self):
        exc = ConceptNotFoundError(12)
        assert isinstance(exc, NotFoundError)
        assert exc.concept_id == 12
        assert "Concept '12' not found" in str(exc)

    def test_merge_integrity_is_recoverable_domain_error(self):
        exc = MergeIntegrityError(1, 2, "concept 2 no longer exists")
        assert isinstance(exc, LifeworldError)
        assert exc.recoverable is True
        assert exc.keep_id == 1 and exc.remove_id == 2


class TestToDict:
    def test_to_dict_shape(self):
        exc = ValidationError("name", "Concept name cannot be empty")
        data = exc.to_dict()
        assert data["code"] == "VALIDATION_ERROR"
        assert data["recoverable"] is False
        assert data["context"] == {"field": "name"}
        assert "traceback" not in data

    def test_parse_error_truncates_raw(self):
        exc = OracleParseError("no JSON array found", "x" * 500)
        assert len(exc.context["raw"]) == 200


class TestWrapStorageException:
    def test_passthrough(self):
        original = StoreUnavailableError("sqlite", "gone")
        assert wrap_storage_exception("sqlite", "op", original) is original

    def test_timeout(self):
        wrapped = wrap_storage_exception("sqlite", "op", TimeoutError("timeout waiting"))
        assert isinstance(wrapped, StorageTimeoutError)

    def test_locked_database_is_unavailable(self):
        wrapped = wrap_storage_exception("sqlite", "op", Exception("database is locked"))
        assert isinstance(wrapped, StoreUnavailableError)

    def test_generic(self):
        wrapped = wrap_storage_exception("sqlite", "insert_edge", KeyError("boom"))
        assert type(wrapped) is StorageError
        assert wrapped.context["original_exception"] == "KeyError"


def test_debug_mode(monkeypatch):
    monkeypatch.delenv("LIFEWORLD_DEBUG", raising=False)
    assert is_debug_mode() is False
    monkeypatch.setenv("LIFEWORLD_DEBUG", "true")
    assert is_debug_mode() is True

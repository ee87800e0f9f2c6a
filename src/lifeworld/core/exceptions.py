"""
Lifeworld Exceptions
====================

    LifeworldError
    ├── RecoverableError          transient; the same call may succeed later
    │   ├── StoreUnavailableError
    │   ├── StorageTimeoutError
    │   └── OracleCallError
    ├── IrrecoverableError        needs a fix in input, config or data
    │   ├── ConfigurationError
    │   ├── ValidationError
    │   └── NotFoundError
    │       └── ConceptNotFoundError
    ├── StorageError              base of the store errors above
    ├── OracleError               base of OracleCallError / OracleParseError
    └── MergeIntegrityError       a merge endpoint vanished; the pair is skipped

Lookups that miss return None. Read paths fall back to neutral values on
StoreUnavailableError, write paths let it propagate. Oracle errors stop at
batch scope and merge-integrity errors at pair scope.
"""

import os
import traceback
from typing import Any, Dict, Optional

_TRUTHY = ("true", "1", "yes")


def _ctx(base: Dict[str, Any], extra: Optional[dict]) -> Dict[str, Any]:
    if extra:
        base.update(extra)
    return base


class LifeworldError(Exception):
    """
    Root of the hierarchy.

    ``error_code`` is what API clients see in the ``code`` field; ``context``
    carries the ids and names needed to diagnose the failure.
    """

    error_code: str = "LIFEWORLD_ERROR"
    recoverable: bool = True

    def __init__(
        self,
        message: str,
        context: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable

    def __str__(self) -> str:
        return f"{self.message} | context={self.context}" if self.context else self.message

    def to_dict(self, include_traceback: bool = False) -> dict:
        body = {"error": self.message, "code": self.error_code, "recoverable": self.recoverable}
        if self.context:
            body["context"] = self.context
        if include_traceback:
            body["traceback"] = traceback.format_exc()
        return body


class RecoverableError(LifeworldError):
    recoverable = True


class IrrecoverableError(LifeworldError):
    recoverable = False


# ---- Concept store ------------------------------------------------------ #

class StorageError(LifeworldError):
    error_code = "STORAGE_ERROR"


class StoreUnavailableError(RecoverableError, StorageError):
    """The backend cannot be reached (closed, locked, not connected)."""

    error_code = "STORE_UNAVAILABLE"

    def __init__(self, backend: str, message: str = "Store unavailable", context: Optional[dict] = None):
        super().__init__(f"[{backend}] {message}", _ctx({"backend": backend}, context))
        self.backend = backend


class StorageTimeoutError(RecoverableError, StorageError):
    error_code = "STORAGE_TIMEOUT_ERROR"

    def __init__(self, backend: str, operation: str, timeout_ms: Optional[int] = None, context: Optional[dict] = None):
        base = {"backend": backend, "operation": operation}
        if timeout_ms is not None:
            base["timeout_ms"] = timeout_ms
        super().__init__(f"[{backend}] {operation} timed out", _ctx(base, context))
        self.backend = backend
        self.operation = operation


# ---- Similarity oracle -------------------------------------------------- #

class OracleError(LifeworldError):
    error_code = "ORACLE_ERROR"


class OracleCallError(RecoverableError, OracleError):
    """Transport failure or non-success status from the comparison service."""

    error_code = "ORACLE_CALL_ERROR"

    def __init__(self, provider: str, reason: str, context: Optional[dict] = None):
        super().__init__(f"Oracle call to '{provider}' failed: {reason}", _ctx({"provider": provider}, context))
        self.provider = provider


class OracleParseError(OracleError):
    """The reply carried no usable candidate array."""

    error_code = "ORACLE_PARSE_ERROR"
    recoverable = True

    def __init__(self, reason: str, raw: Optional[str] = None, context: Optional[dict] = None):
        base = {} if raw is None else {"raw": raw[:200]}
        super().__init__(f"Unparseable oracle response: {reason}", _ctx(base, context))


# ---- Merging ------------------------------------------------------------ #

class MergeIntegrityError(LifeworldError):
    """One side of a merge no longer exists (absorbed earlier, or a self-merge)."""

    error_code = "MERGE_INTEGRITY_ERROR"
    recoverable = True

    def __init__(self, keep_id: int, remove_id: int, reason: str, context: Optional[dict] = None):
        super().__init__(
            f"Merge {remove_id} -> {keep_id} skipped: {reason}",
            _ctx({"keep_id": keep_id, "remove_id": remove_id}, context),
        )
        self.keep_id = keep_id
        self.remove_id = remove_id


# ---- Input and configuration ------------------------------------------- #

class ConfigurationError(IrrecoverableError):
    error_code = "CONFIGURATION_ERROR"

    def __init__(self, config_key: str, reason: str, context: Optional[dict] = None):
        super().__init__(
            f"Configuration error for '{config_key}': {reason}",
            _ctx({"config_key": config_key}, context),
        )
        self.config_key = config_key


class ValidationError(IrrecoverableError):
    error_code = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str, value: Any = None, context: Optional[dict] = None):
        base: Dict[str, Any] = {"field": field}
        if value is not None:
            text = str(value)
            base["value"] = text if len(text) <= 100 else text[:100] + "..."
        super().__init__(f"Validation error for '{field}': {reason}", _ctx(base, context))
        self.field = field


class NotFoundError(IrrecoverableError):
    error_code = "NOT_FOUND_ERROR"

    def __init__(self, resource_type: str, resource_id: str, context: Optional[dict] = None):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            _ctx({"resource_type": resource_type, "resource_id": resource_id}, context),
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConceptNotFoundError(NotFoundError):
    error_code = "CONCEPT_NOT_FOUND_ERROR"

    def __init__(self, concept_id: Any, context: Optional[dict] = None):
        super().__init__("Concept", str(concept_id), context)
        self.concept_id = concept_id


# ---- Helpers ------------------------------------------------------------ #

_UNAVAILABLE_MARKERS = ("unable to open", "database is locked", "closed", "disk i/o")


def wrap_storage_exception(backend: str, operation: str, exc: Exception) -> StorageError:
    """Translate a driver exception (aiosqlite / sqlite3) into the store hierarchy."""
    if isinstance(exc, StorageError):
        return exc

    name, text = type(exc).__name__, str(exc)
    lowered = text.lower()
    if "timeout" in lowered or "Timeout" in name:
        return StorageTimeoutError(backend, operation)
    if any(m in lowered for m in _UNAVAILABLE_MARKERS) or "connect" in name.lower():
        return StoreUnavailableError(backend, text, {"operation": operation})
    return StorageError(
        f"[{backend}] {operation} failed: {text}",
        {"backend": backend, "operation": operation, "original_exception": name},
    )


def is_debug_mode() -> bool:
    """LIFEWORLD_DEBUG=1 adds tracebacks to API error bodies."""
    return os.environ.get("LIFEWORLD_DEBUG", "").lower() in _TRUTHY

"""
Error taxonomy shared by the orchestrator, transformer, registry and server.

Each error carries an ErrorKind so callers can route on the kind instead of
parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    # orchestrator
    NOT_FOUND = "NotFound"
    TIMEOUT_EXCEEDED = "TimeoutExceeded"
    EXECUTION_ERROR = "ExecutionError"
    # transformer
    MISSING_FIELD = "MissingField"
    INVALID_TIMESTAMP = "InvalidTimestamp"
    SCHEMA_MISMATCH = "SchemaMismatch"
    # registry
    ARTIFACT_CORRUPT = "ArtifactCorrupt"
    ARTIFACT_NOT_FOUND = "ArtifactNotFound"
    # serving
    JOIN_UNRESOLVED = "JoinUnresolved"


class BikeshareError(Exception):
    """Base class for typed errors."""

    kind: ErrorKind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class MissingFieldError(BikeshareError):
    kind = ErrorKind.MISSING_FIELD

    def __init__(self, field: str, details: Optional[Dict[str, Any]] = None):
        self.field = field
        super().__init__(f"Required field '{field}' is missing and has no default", details)


class InvalidTimestampError(BikeshareError):
    kind = ErrorKind.INVALID_TIMESTAMP

    def __init__(self, value: Any, details: Optional[Dict[str, Any]] = None):
        self.value = value
        super().__init__(f"Unparsable timestamp: {value!r}", details)


class SchemaMismatchError(BikeshareError):
    kind = ErrorKind.SCHEMA_MISMATCH


class ArtifactNotFoundError(BikeshareError):
    kind = ErrorKind.ARTIFACT_NOT_FOUND


class ArtifactCorruptError(BikeshareError):
    kind = ErrorKind.ARTIFACT_CORRUPT


class JoinUnresolvedError(BikeshareError):
    kind = ErrorKind.JOIN_UNRESOLVED

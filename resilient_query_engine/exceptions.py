"""
Custom exceptions for the Resilient Query Engine.

This module provides a hierarchy of exceptions that enable type-safe error
handling throughout the engine. All exceptions inherit from the base
QueryEngineError for consistent catching.

Exception Hierarchy:
    QueryEngineError (base)
    ├── ConfigurationError
    │   ├── ConfigFileNotFoundError
    │   ├── ConfigValidationError
    │   └── APIKeyMissingError
    ├── CheckpointError
    │   ├── CheckpointWriteError
    │   └── CheckpointCorruptError
    ├── ResumeError
    ├── InvalidQueryListError
    ├── SessionError
    │   └── SessionOpenError
    └── SurfaceError
        ├── SurfaceBlockedError
        ├── SurfaceResponseError
        └── SurfaceTransportError

Usage:
    from resilient_query_engine.exceptions import SurfaceBlockedError

    try:
        response = await adapter.submit(handle, "best crm tools", 60_000)
    except SurfaceBlockedError as e:
        logger.warning(f"Surface blocked the query: {e}")
"""


class QueryEngineError(Exception):
    """
    Base exception for all Resilient Query Engine errors.

    All custom exceptions in this application inherit from this class so
    callers can catch every engine-specific error with a single except clause.
    """

    pass


# ============================================================================
# Configuration Errors
# ============================================================================


class ConfigurationError(QueryEngineError):
    """
    Base class for configuration-related errors.

    Raised when configuration loading, parsing, or validation fails.
    Should be caught and result in exit code 1 (configuration error).
    """

    pass


class ConfigFileNotFoundError(ConfigurationError):
    """Configuration file does not exist at the specified path."""

    pass


class ConfigValidationError(ConfigurationError):
    """
    Configuration file is invalid (schema validation failed).

    Should include details about which field(s) failed validation.

    Example:
        raise ConfigValidationError("Field 'studies' must be a non-empty list")
    """

    pass


class APIKeyMissingError(ConfigurationError):
    """
    Required environment variable is not set.

    Example:
        raise APIKeyMissingError("SERPAPI_API_KEY environment variable not set")
    """

    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================


class CheckpointError(QueryEngineError):
    """
    Base class for checkpoint persistence errors.

    Should be caught and result in exit code 2 (storage error).
    """

    pass


class CheckpointWriteError(CheckpointError):
    """
    Checkpoint could not be written to durable storage.

    Example:
        raise CheckpointWriteError("Cannot write checkpoint: disk full")
    """

    pass


class CheckpointCorruptError(CheckpointError):
    """
    Checkpoint file exists but cannot be parsed.

    Raised instead of silently starting over, because restarting from zero
    would re-submit queries that were already answered.
    """

    pass


class ResumeError(QueryEngineError):
    """
    Failed to resume a previous run.

    Example:
        raise ResumeError("Cannot resume: directory ./output/run-1 does not exist")
    """

    pass


class InvalidQueryListError(QueryEngineError):
    """
    Query list is empty or its indices are not contiguous from 0.

    Example:
        raise InvalidQueryListError("Query index 3 found at position 2")
    """

    pass


# ============================================================================
# Session Errors
# ============================================================================


class SessionError(QueryEngineError):
    """Base class for egress session lifecycle errors."""

    pass


class SessionOpenError(SessionError):
    """
    A browser context or HTTP client could not be opened for an identity.

    During recovery this counts as a failed recovery attempt rather than
    a fatal error.
    """

    pass


# ============================================================================
# Surface Errors
# ============================================================================


class SurfaceError(QueryEngineError):
    """
    Base class for errors raised by surface adapters.

    Adapters raise one of the typed subclasses so the failure classifier
    never needs surface-specific knowledge.

    Attributes:
        status_code: HTTP status code when the error came from an HTTP response
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SurfaceBlockedError(SurfaceError):
    """
    Surface presented a block or challenge (CAPTCHA, "unusual traffic" page).

    Example:
        raise SurfaceBlockedError("Challenge page detected: unusual traffic")
    """

    pass


class SurfaceResponseError(SurfaceError):
    """
    Surface returned a malformed or empty response.

    Example:
        raise SurfaceResponseError("Gemini response missing 'candidates'")
    """

    pass


class SurfaceTransportError(SurfaceError):
    """
    Request never produced a usable response (connection, HTTP status, timeout).

    Example:
        raise SurfaceTransportError("SerpAPI HTTP error: status=503", status_code=503)
    """

    pass

"""
Exception classes for spotterm.

This module defines every custom exception raised by the session manager,
the remote client, the local playback engine and the dispatcher. Each
exception carries an ErrorKind so the dispatcher can decide, without
inspecting messages, whether a failure is retried, surfaced or swallowed.

Exception Hierarchy:
    SpotTermError (base)
        ConfigError - Configuration file or credential issues
        AuthError - Credential lifecycle issues
            AuthExpiredUnrecoverable - Refresh token rejected, re-authorize
            AuthorizationAbandoned - User did not finish the browser flow
            CacheCorrupt - Credential cache unreadable (treated as a miss)
        RemoteError - Web API failures
            Unauthorized - 401, access token no longer accepted
            NotFound - 404, unknown item/device
            RateLimited - 429, carries Retry-After
            NetworkTransient - Connection problems and 5xx responses
                NetworkUnavailable - Token endpoint unreachable
            Malformed - Response did not have the expected shape
        EngineUnavailable - Local engine failed to start or crashed
        EngineCommandFailed - Engine reported an error for one command
        RoutingInvalid - Intent aimed at an adapter that is not active
"""

from enum import Enum


class ErrorKind(Enum):
    """
    Classification used by the dispatcher's retry and status policy.

    The value is what the renderer shows next to the last-error field.
    """
    AUTH_EXPIRED = "auth_expired"
    AUTH_ABANDONED = "auth_abandoned"
    CACHE_CORRUPT = "cache_corrupt"
    CONFIG = "config"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    MALFORMED = "malformed"
    ENGINE_UNAVAILABLE = "engine_unavailable"
    ENGINE_ERROR = "engine_error"
    ROUTING_INVALID = "routing_invalid"
    UNKNOWN = "unknown"


# Failures that may succeed when the same request is sent again later.
RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.RATE_LIMITED})


class SpotTermError(Exception):
    """
    Base exception for all spotterm errors.

    All custom exceptions in this project inherit from this class,
    allowing callers to catch every spotterm failure with a single
    except clause.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (e.g. status code, URI).

    Example:
        try:
            await client.pause(device_id)
        except SpotTermError as e:
            logger.error(f"Pause failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description that may be shown to the user.
            details: Optional dictionary containing additional context about the error.
                     Common keys include:
                     - 'status': HTTP status code returned by the Web API
                     - 'uri': Spotify URI involved in the error
                     - 'original_error': The underlying exception if wrapping another error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message

    @property
    def retryable(self) -> bool:
        """True when the failure is network-class and a retry may succeed."""
        return self.kind in RETRYABLE_KINDS


class ConfigError(SpotTermError):
    """
    Raised when the configuration cannot be used.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - client_id missing from config.yaml and environment
        - playback.mode not one of remote/local/auto
        - config.yaml has invalid YAML syntax
    """
    kind = ErrorKind.CONFIG


class AuthError(SpotTermError):
    """Base class for credential lifecycle failures."""
    kind = ErrorKind.AUTH_EXPIRED


class AuthExpiredUnrecoverable(AuthError):
    """
    Raised when the refresh token itself was rejected.

    The session manager reacts by invalidating the cache and running the
    interactive authorization flow again. It only reaches the user when
    that flow is abandoned.
    """
    kind = ErrorKind.AUTH_EXPIRED


class AuthorizationAbandoned(AuthError):
    """
    Raised when the interactive authorization flow did not complete.

    Common causes:
        - User closed the browser or denied access
        - Callback did not arrive before the timeout
        - CSRF state returned by the callback did not match
    """
    kind = ErrorKind.AUTH_ABANDONED


class CacheCorrupt(AuthError):
    """
    Raised internally when the credential cache cannot be parsed.

    Never fatal: the session manager logs it and treats the cache as missing.
    """
    kind = ErrorKind.CACHE_CORRUPT


class RemoteError(SpotTermError):
    """
    Base class for Web API failures.

    Attributes:
        status: HTTP status code when one was received, otherwise None.
    """

    def __init__(self, message: str, details: dict | None = None, status: int | None = None) -> None:
        super().__init__(message, details)
        self.status = status


class Unauthorized(RemoteError):
    """Access token rejected (401). The dispatcher refreshes and retries once."""
    kind = ErrorKind.UNAUTHORIZED


class NotFound(RemoteError):
    """Requested item, playlist or device does not exist (404). Never retried."""
    kind = ErrorKind.NOT_FOUND


class RateLimited(RemoteError):
    """
    Raised when the Web API answers 429.

    Attributes:
        retry_after: Seconds the provider asked us to wait, if it said so.
    """
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        status: int | None = 429,
        retry_after: float | None = None
    ) -> None:
        super().__init__(message, details, status)
        self.retry_after = retry_after


class NetworkTransient(RemoteError):
    """Connection failure, timeout or 5xx response. Retried for idempotent intents."""
    kind = ErrorKind.NETWORK


class NetworkUnavailable(NetworkTransient):
    """The token endpoint could not be reached. The caller may retry later."""
    kind = ErrorKind.NETWORK


class Malformed(RemoteError):
    """
    Raised when a response does not have the expected shape.

    This is a data-integrity error: surfaced immediately, never retried.
    """
    kind = ErrorKind.MALFORMED


class EngineUnavailable(SpotTermError):
    """
    Raised when the local playback engine cannot be used.

    Common causes:
        - Local playback disabled in configuration
        - No audio backend registered under the configured name
        - Backend failed to initialize or its worker thread died
        - Engine did not acknowledge a command within the timeout
    """
    kind = ErrorKind.ENGINE_UNAVAILABLE


class RoutingInvalid(SpotTermError):
    """Raised when an intent targets an adapter that is not the active playback target."""
    kind = ErrorKind.ROUTING_INVALID


class EngineCommandFailed(SpotTermError):
    """
    Raised when the engine is running but reported an error for a command.

    Typically an item the account cannot play locally. Unlike
    EngineUnavailable it does not trigger a fallback to remote playback.
    """
    kind = ErrorKind.ENGINE_ERROR

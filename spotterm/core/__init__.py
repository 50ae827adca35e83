"""
Core definitions shared by every spotterm package.

Usage:
    from spotterm.core import SpotTermError, EngineUnavailable
"""

from .exceptions import (
    AuthError,
    AuthExpiredUnrecoverable,
    AuthorizationAbandoned,
    CacheCorrupt,
    ConfigError,
    EngineCommandFailed,
    EngineUnavailable,
    ErrorKind,
    Malformed,
    NetworkTransient,
    NetworkUnavailable,
    NotFound,
    RateLimited,
    RemoteError,
    RoutingInvalid,
    SpotTermError,
    Unauthorized,
)

__all__ = [
    'AuthError',
    'AuthExpiredUnrecoverable',
    'AuthorizationAbandoned',
    'CacheCorrupt',
    'ConfigError',
    'EngineCommandFailed',
    'EngineUnavailable',
    'ErrorKind',
    'Malformed',
    'NetworkTransient',
    'NetworkUnavailable',
    'NotFound',
    'RateLimited',
    'RemoteError',
    'RoutingInvalid',
    'SpotTermError',
    'Unauthorized',
]

"""
Configuration package for spotterm

1. Settings (settings.py): YAML + environment configuration, validation and
   persistence.
2. Authentication (auth.py): the session manager that owns the Spotify
   credential, its cache file, refresh and interactive authorization.
"""

from .settings import Settings, get_settings, reload_settings
from .auth import Credential, SessionManager, create_session_manager, get_session, reset_session

__all__ = [
    'Settings',
    'get_settings',
    'reload_settings',
    'Credential',
    'SessionManager',
    'create_session_manager',
    'get_session',
    'reset_session',
]

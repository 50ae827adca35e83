"""
OAuth2 credential lifecycle for the Spotify Web API

This module owns the single credential shared by the remote client and the
local playback engine. It loads the credential cache, refreshes the access
token before it expires, runs the interactive browser authorization when no
usable credential exists, and persists every new credential before handing it
out.

Key features:
- Authorization code flow with a local callback server
- PKCE (S256) when no client secret is configured, CSRF state check always
- Coalesced refresh: concurrent callers share one in-flight token request
- Coalesced authorization: only one browser flow runs at a time
- Atomic cache writes with restrictive file permissions (600)
- Corrupt caches are logged and treated as missing, never fatal

The flow follows Spotify's OAuth2 specification:
1. Build the authorization URL with the required scopes
2. Open the browser for user consent
3. Receive the authorization code on the callback server
4. Exchange the code for access/refresh tokens
5. Persist the credential for future sessions
6. Refresh the access token when it is about to expire

Blocking HTTP work (token endpoint, browser flow) runs in worker threads via
asyncio.to_thread so the dispatcher's event loop keeps serving intents.
"""

import asyncio
import json
import os
import tempfile
import threading
import time
import urllib.parse
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from ..core.exceptions import (
    AuthExpiredUnrecoverable,
    AuthorizationAbandoned,
    CacheCorrupt,
    ConfigError,
    NetworkUnavailable,
)
from ..utils.helpers import generate_pkce_pair, generate_state
from ..utils.logger import get_logger
from .settings import Settings, get_settings


logger = get_logger(__name__)

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"

# Errors from the token endpoint that mean the refresh token is dead.
_UNRECOVERABLE_GRANT_ERRORS = {'invalid_grant', 'invalid_client', 'unauthorized_client'}


@dataclass(frozen=True)
class Credential:
    """
    OAuth access/refresh token pair and its expiry metadata

    Attributes:
        access_token: Bearer token for Web API calls
        refresh_token: Long-lived token used to mint new access tokens
        expires_at: Unix timestamp when access_token stops being accepted
        scope: Space-separated granted scopes
        token_type: Always "Bearer" for Spotify
    """
    access_token: str
    refresh_token: str
    expires_at: int
    scope: str = ""
    token_type: str = "Bearer"

    def is_expired(self, margin: int = 300, now: Optional[float] = None) -> bool:
        """
        True when the token expires within `margin` seconds

        The margin covers request latency and clock drift so a token is
        never sent when it is about to be rejected.
        """
        current = time.time() if now is None else now
        return current >= self.expires_at - margin

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> 'Credential':
        """
        Restore a cached credential

        Raises:
            CacheCorrupt: If required fields are missing or have the wrong type
        """
        required_fields = ('access_token', 'refresh_token', 'expires_at')
        if not isinstance(data, dict) or not all(data.get(name) for name in required_fields):
            raise CacheCorrupt("Credential cache is missing required fields")
        try:
            return cls(
                access_token=str(data['access_token']),
                refresh_token=str(data['refresh_token']),
                expires_at=int(data['expires_at']),
                scope=str(data.get('scope') or ""),
                token_type=str(data.get('token_type') or "Bearer"),
            )
        except (TypeError, ValueError) as e:
            raise CacheCorrupt(f"Credential cache has invalid values: {e}")

    @classmethod
    def from_token_response(
        cls,
        data: Dict[str, Any],
        previous: Optional['Credential'] = None,
        now: Optional[float] = None
    ) -> 'Credential':
        """
        Build a credential from a token endpoint response

        Spotify may or may not rotate the refresh token on refresh; the
        previous one is kept when the response omits it.
        """
        issued_at = time.time() if now is None else now
        refresh_token = data.get('refresh_token') or (previous.refresh_token if previous else "")
        return cls(
            access_token=data['access_token'],
            refresh_token=refresh_token,
            expires_at=int(issued_at) + int(data.get('expires_in', 3600)),
            scope=data.get('scope') or (previous.scope if previous else ""),
            token_type=data.get('token_type', 'Bearer'),
        )


class TokenEndpoint:
    """
    Blocking client for the accounts service token endpoint

    Translates HTTP outcomes into the credential error taxonomy:
    rejected grants become AuthExpiredUnrecoverable, connection problems
    and 5xx answers become NetworkUnavailable.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        timeout: int = 10,
        token_url: str = TOKEN_URL
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.token_url = token_url

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new access token."""
        return self._post({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })

    def exchange_code(self, code: str, redirect_uri: str, code_verifier: Optional[str] = None) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens

        Args:
            code: Authorization code from the callback
            redirect_uri: Must match the URI used in the authorization request
            code_verifier: PKCE verifier when the flow ran without a secret
        """
        data = {
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': redirect_uri,
        }
        if code_verifier:
            data['code_verifier'] = code_verifier
        return self._post(data)

    def _post(self, data: Dict[str, str]) -> Dict[str, Any]:
        payload = {**data, 'client_id': self.client_id}
        if self.client_secret:
            payload['client_secret'] = self.client_secret

        headers = {'Content-Type': 'application/x-www-form-urlencoded'}

        try:
            response = requests.post(self.token_url, headers=headers, data=payload, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkUnavailable(
                f"Token endpoint unreachable: {e}",
                details={'original_error': str(e)}
            )

        if response.status_code >= 500 or response.status_code == 429:
            raise NetworkUnavailable(
                f"Token endpoint returned {response.status_code}",
                status=response.status_code
            )

        if response.status_code in (400, 401):
            error = _error_code(response)
            if error in _UNRECOVERABLE_GRANT_ERRORS or response.status_code == 401:
                raise AuthExpiredUnrecoverable(
                    f"Token request rejected: {error or response.status_code}",
                    details={'status': response.status_code, 'error': error}
                )

        try:
            response.raise_for_status()
            token_data = response.json()
        except (requests.HTTPError, ValueError) as e:
            raise AuthExpiredUnrecoverable(
                f"Token request failed: {e}",
                details={'status': response.status_code}
            )

        if 'access_token' not in token_data:
            raise AuthExpiredUnrecoverable("Token response did not contain an access token")
        return token_data


def _error_code(response: requests.Response) -> str:
    try:
        return str(response.json().get('error', ""))
    except ValueError:
        return ""


class AuthorizationFlow(ABC):
    """
    Interactive authorization collaborator

    `authorize()` blocks until the user grants access and returns the raw
    token endpoint response, or raises AuthorizationAbandoned.
    """

    @abstractmethod
    def authorize(self) -> Dict[str, Any]:
        ...


class CallbackHandler(BaseHTTPRequestHandler):
    """
    HTTP request handler for the OAuth2 redirect

    Stores the code (or the error) and the returned state on the parent
    server for the waiting flow to pick up.
    """

    def do_GET(self):
        parsed_url = urllib.parse.urlparse(self.path)
        if parsed_url.path != self.server.callback_path:
            self.send_response(404)
            self.end_headers()
            return

        query_params = urllib.parse.parse_qs(parsed_url.query)
        self.server.returned_state = query_params.get('state', [None])[0]

        if 'code' in query_params:
            self.server.authorization_code = query_params['code'][0]
            self._respond(200, "Authorization Successful!", "You can now close this window and return to the terminal.")
        else:
            self.server.authorization_error = query_params.get('error', ['unknown_error'])[0]
            self._respond(400, "Authorization Failed", f"Error: {self.server.authorization_error}")

    def _respond(self, status: int, title: str, message: str) -> None:
        self.send_response(status)
        self.send_header('Content-type', 'text/html')
        self.end_headers()
        color = "#1DB954" if status == 200 else "#E22134"
        html = f"""
        <html>
        <head><title>{title}</title></head>
        <body style="font-family: Arial, sans-serif; text-align: center; margin-top: 50px;">
            <h1 style="color: {color};">{title}</h1>
            <p>{message}</p>
        </body>
        </html>
        """
        self.wfile.write(html.encode())

    def log_message(self, format, *args):
        """Keep the HTTP server quiet so it does not draw over the terminal."""
        pass


class BrowserAuthorizationFlow(AuthorizationFlow):
    """
    Authorization code flow through the user's browser

    Starts a one-shot HTTP server on the redirect URI's host and port, opens
    the consent page and waits for the callback. Uses PKCE when the app has
    no client secret.
    """

    def __init__(
        self,
        client_id: str,
        redirect_uri: str,
        scope: str,
        endpoint: TokenEndpoint,
        use_pkce: bool = False,
        timeout: float = 300,
        open_browser: Callable[[str], Any] = webbrowser.open
    ):
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.endpoint = endpoint
        self.use_pkce = use_pkce
        self.timeout = timeout
        self.open_browser = open_browser

    def build_authorization_url(self, state: str, code_challenge: Optional[str] = None) -> str:
        params = {
            'client_id': self.client_id,
            'response_type': 'code',
            'redirect_uri': self.redirect_uri,
            'scope': self.scope,
            'state': state,
        }
        if code_challenge:
            params['code_challenge_method'] = 'S256'
            params['code_challenge'] = code_challenge
        return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"

    def authorize(self) -> Dict[str, Any]:
        """
        Run the browser flow to completion

        Returns:
            Token endpoint response for the granted authorization code

        Raises:
            AuthorizationAbandoned: On denial, timeout, state mismatch or
                when the callback server cannot start
        """
        state = generate_state()
        verifier, challenge = generate_pkce_pair() if self.use_pkce else (None, None)
        authorization_url = self.build_authorization_url(state, challenge)

        parsed = urllib.parse.urlparse(self.redirect_uri)
        host = parsed.hostname or '127.0.0.1'
        port = parsed.port or 80

        try:
            server = HTTPServer((host, port), CallbackHandler)
        except OSError as e:
            raise AuthorizationAbandoned(
                f"Cannot listen on {host}:{port} for the authorization callback: {e}",
                details={'redirect_uri': self.redirect_uri}
            )

        server.callback_path = parsed.path or '/'
        server.authorization_code = None
        server.authorization_error = None
        server.returned_state = None

        server_thread = threading.Thread(target=server.serve_forever, name="spotterm-oauth-callback")
        server_thread.daemon = True
        server_thread.start()

        try:
            logger.console_info("Opening browser for Spotify authorization...")
            logger.console_info(f"If the browser doesn't open, visit: {authorization_url}")
            self.open_browser(authorization_url)

            start_time = time.monotonic()
            while server.authorization_code is None and server.authorization_error is None:
                time.sleep(0.5)
                if time.monotonic() - start_time > self.timeout:
                    raise AuthorizationAbandoned("Authorization timed out", details={'timeout': self.timeout})

            if server.authorization_error:
                raise AuthorizationAbandoned(
                    f"Authorization failed: {server.authorization_error}",
                    details={'error': server.authorization_error}
                )

            if server.returned_state != state:
                raise AuthorizationAbandoned("Authorization state mismatch, possible CSRF")

            return self.endpoint.exchange_code(server.authorization_code, self.redirect_uri, verifier)
        finally:
            server.shutdown()
            server.server_close()


class SessionManager:
    """
    Owner of the shared OAuth credential and its cache artifact

    All methods that may perform network I/O are coroutines and must be
    awaited on the dispatcher's event loop; the blocking parts run in worker
    threads. The manager is the only writer of the cache file.

    Attributes:
        token_file: Path of the JSON credential cache
        flow: Interactive authorization collaborator
        endpoint: Token endpoint used for refreshes
        expiry_margin: Seconds before expiry at which a token counts as expired
    """

    def __init__(
        self,
        token_file: Path,
        flow: AuthorizationFlow,
        endpoint: TokenEndpoint,
        expiry_margin: int = 300,
        clock: Callable[[], float] = time.time
    ):
        self.token_file = Path(token_file)
        self.flow = flow
        self.endpoint = endpoint
        self.expiry_margin = expiry_margin
        self._clock = clock

        self._credential: Optional[Credential] = None
        self._cache_checked = False
        self._refresh_task: Optional[asyncio.Task] = None
        self._authorize_task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[Credential], None]] = []

    @property
    def credential(self) -> Optional[Credential]:
        """Credential currently held in memory, if any."""
        return self._credential

    def add_listener(self, callback: Callable[[Credential], None]) -> None:
        """
        Register a callback for every credential obtained by refresh or authorization

        Callbacks run on the event loop right after the credential is stored,
        so they must not block.
        """
        self._listeners.append(callback)

    def load_cached(self) -> Optional[Credential]:
        """
        Load the credential cache into memory

        A missing file is a miss. A corrupt file is logged and treated as a
        miss so the caller falls through to interactive authorization.
        """
        self._cache_checked = True
        if not self.token_file.exists():
            return None

        try:
            with open(self.token_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            credential = Credential.from_dict(data)
        except (OSError, ValueError, CacheCorrupt) as e:
            logger.warning(f"Ignoring unreadable credential cache {self.token_file}: {e}")
            return None

        self._credential = credential
        return credential

    async def acquire(self, force_refresh: bool = False) -> Credential:
        """
        Return a credential that is valid right now

        Flow:
        1. Use the in-memory credential, loading the cache on first use
        2. Refresh it when expired (or when force_refresh is set)
        3. Fall back to interactive authorization when there is nothing to
           refresh or the refresh token was rejected

        Raises:
            AuthorizationAbandoned: If the user did not complete authorization
            NetworkUnavailable: If the token endpoint could not be reached
        """
        credential = self._credential
        if credential is None and not self._cache_checked:
            credential = self.load_cached()

        if credential is not None:
            if not force_refresh and not credential.is_expired(self.expiry_margin, self._clock()):
                return credential
            try:
                return await self.refresh()
            except AuthExpiredUnrecoverable as e:
                logger.warning(f"Stored authorization is no longer valid ({e}), re-authorizing")
                self.invalidate()

        return await self.authorize()

    async def refresh(self) -> Credential:
        """
        Refresh the access token

        Concurrent callers share one in-flight request and all receive the
        same credential (or the same exception).

        Raises:
            AuthExpiredUnrecoverable: If there is no refresh token or it was rejected
            NetworkUnavailable: If the token endpoint could not be reached
        """
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._refresh())
            self._refresh_task.add_done_callback(self._clear_refresh_task)
        return await asyncio.shield(self._refresh_task)

    async def authorize(self) -> Credential:
        """
        Run interactive authorization

        Only one flow runs at a time; callers arriving while it is open wait
        for the same result.
        """
        if self._authorize_task is None:
            self._authorize_task = asyncio.ensure_future(self._authorize())
            self._authorize_task.add_done_callback(self._clear_authorize_task)
        return await asyncio.shield(self._authorize_task)

    def invalidate(self) -> None:
        """Forget the credential and delete the cache artifact."""
        self._credential = None
        self._cache_checked = True
        try:
            self.token_file.unlink()
            logger.info(f"Removed credential cache {self.token_file}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to delete credential cache {self.token_file}: {e}")

    def status(self) -> Dict[str, Any]:
        """
        Describe the cached credential without touching the network

        Returns:
            Dictionary with keys: cached, expired, expires_at, scope, token_file
        """
        credential = self._credential or self.load_cached()
        if credential is None:
            return {'cached': False, 'expired': None, 'expires_at': None, 'scope': "", 'token_file': str(self.token_file)}
        return {
            'cached': True,
            'expired': credential.is_expired(self.expiry_margin, self._clock()),
            'expires_at': datetime.fromtimestamp(credential.expires_at).isoformat(),
            'scope': credential.scope,
            'token_file': str(self.token_file),
        }

    async def _refresh(self) -> Credential:
        previous = self._credential
        if previous is None or not previous.refresh_token:
            raise AuthExpiredUnrecoverable("No refresh token available")

        logger.debug("Refreshing access token")
        data = await asyncio.to_thread(self.endpoint.refresh, previous.refresh_token)
        credential = Credential.from_token_response(data, previous, now=self._clock())
        self._persist(credential)
        self._credential = credential
        logger.info("Access token refreshed")
        self._notify(credential)
        return credential

    async def _authorize(self) -> Credential:
        logger.info("Starting interactive authorization")
        data = await asyncio.to_thread(self.flow.authorize)
        credential = Credential.from_token_response(data, now=self._clock())
        if not credential.refresh_token:
            raise AuthorizationAbandoned("Authorization response did not include a refresh token")
        self._persist(credential)
        self._credential = credential
        logger.console_info("Authorization successful!")
        self._notify(credential)
        return credential

    def _notify(self, credential: Credential) -> None:
        for callback in self._listeners:
            try:
                callback(credential)
            except Exception as e:
                logger.warning(f"Credential listener {callback!r} failed: {e}")

    def _persist(self, credential: Credential) -> None:
        """
        Atomically write the credential cache (owner read/write only)

        Written to a temporary file in the same directory and renamed over
        the cache so a crash never leaves a half-written file. When the write
        fails the credential is still handed out, but only for this run.
        """
        token_data = {**credential.to_dict(), 'saved_at': datetime.now().isoformat()}

        tmp_path = None
        try:
            self.token_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.token-', dir=str(self.token_file.parent))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(token_data, f, indent=2)
            try:
                os.chmod(tmp_path, 0o600)
            except OSError:
                # Windows doesn't support chmod
                pass
            os.replace(tmp_path, self.token_file)
        except OSError as e:
            logger.error(
                f"Failed to save credential cache {self.token_file}: {e}. "
                f"The new credential is kept in memory only; the next run may have to authorize again"
            )
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    def _clear_authorize_task(self, task: asyncio.Task) -> None:
        if self._authorize_task is task:
            self._authorize_task = None


def create_session_manager(settings: Settings) -> SessionManager:
    """
    Build a SessionManager wired to the configured app credentials

    Raises:
        ConfigError: If no client id is configured
    """
    if not settings.spotify.client_id:
        raise ConfigError(
            "Spotify client_id must be configured",
            details={'hint': "Set SPOTIFY_CLIENT_ID or spotify.client_id in config.yaml"}
        )

    endpoint = TokenEndpoint(
        client_id=settings.spotify.client_id,
        client_secret=settings.spotify.client_secret,
        timeout=settings.network.request_timeout,
    )
    flow = BrowserAuthorizationFlow(
        client_id=settings.spotify.client_id,
        redirect_uri=settings.spotify.redirect_url,
        scope=settings.spotify.scope,
        endpoint=endpoint,
        use_pkce=not settings.spotify.client_secret,
    )
    return SessionManager(
        token_file=settings.get_token_storage_path(),
        flow=flow,
        endpoint=endpoint,
        expiry_margin=settings.security.token_expiry_margin,
    )


# Global session instance
_session_instance: Optional[SessionManager] = None


def get_session() -> SessionManager:
    """
    Get the global session manager (singleton pattern)

    Created on first access from the global settings so every component
    shares the same credential and the same refresh coalescing.
    """
    global _session_instance
    if _session_instance is None:
        _session_instance = create_session_manager(get_settings())
    return _session_instance


def reset_session() -> None:
    """
    Drop the global session manager

    Does not delete the credential cache; use SessionManager.invalidate()
    for logout.
    """
    global _session_instance
    _session_instance = None

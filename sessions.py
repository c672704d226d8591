"""
Session key lifecycle for the resto API.

One cached key per server base URL. A key is handed out again as long as it
is younger than its TTL; otherwise the manager logs in again.
"""
import logging
import threading
import time
from collections import namedtuple

from errors import AuthError, RemoteAPIError
from resto_api import make_url, sha1sum

logger = logging.getLogger(__name__)

TOKEN_TTL = 3600  # seconds

Credentials = namedtuple('Credentials', ['login', 'password'])


class SessionToken:
    """A session key plus the moment it was issued."""

    def __init__(self, key: str, issued_at: float, ttl: float = TOKEN_TTL):
        self.key = key
        self.issued_at = issued_at
        self.ttl = ttl

    def is_valid(self, now: float) -> bool:
        return now - self.issued_at < self.ttl

    def __repr__(self):
        return f"SessionToken(issued_at={self.issued_at}, ttl={self.ttl})"


class SessionManager:
    """Owns the session key cache, one slot per server.

    The slot lock is only held while reading or writing the cache, never
    across a network call. Two callers racing on an empty slot may both log
    in; the last one to finish keeps the slot.
    """

    def __init__(self, client, clock=time.monotonic, ttl=TOKEN_TTL):
        self.client = client
        self.clock = clock
        self.ttl = ttl
        self._tokens = {}
        self._lock = threading.Lock()

    def cached(self, server_url):
        """Return the cached token for a server if it is still valid."""
        with self._lock:
            token = self._tokens.get(server_url)
        if token is not None and token.is_valid(self.clock()):
            return token
        return None

    def acquire_token(self, credentials: Credentials, server_url: str) -> str:
        """Return a usable session key, logging in only when needed.

        Raises:
            AuthError: if the credential exchange fails for any reason
        """
        token = self.cached(server_url)
        if token is not None:
            return token.key

        url = make_url(server_url, 'auth')
        params = {'login': credentials.login, 'pass': sha1sum(credentials.password)}
        try:
            response = self.client.get(url, params=params)
        except AuthError:
            raise
        except RemoteAPIError as e:
            raise AuthError(f"Authentication on {server_url} failed: {e}", status_code=e.status_code) from e

        key = response.text.strip().strip('"')
        if not key:
            raise AuthError(f"Authentication on {server_url} returned an empty key")

        token = SessionToken(key, self.clock(), self.ttl)
        with self._lock:
            self._tokens[server_url] = token
        logger.info(f"Authenticated on {server_url} as {credentials.login}")
        return key

    def invalidate(self, server_url):
        """Drop a cached key without calling logout (it was already rejected)."""
        with self._lock:
            self._tokens.pop(server_url, None)

    def release(self, server_url):
        """Log out and clear the slot.

        An expired key is simply dropped; logout is only sent with a key
        that is still valid. Logout failures are logged, not raised.
        """
        with self._lock:
            token = self._tokens.pop(server_url, None)
        if token is None or not token.is_valid(self.clock()):
            return

        try:
            self.client.get(make_url(server_url, 'logout'), params={'key': token.key})
            logger.info(f"Logged out of {server_url}")
        except RemoteAPIError as e:
            logger.warning(f"Logout from {server_url} failed: {e}")

    def release_all(self):
        with self._lock:
            servers = list(self._tokens)
        for server_url in servers:
            self.release(server_url)

"""
HTTP transport for the restaurant-management (resto) API.

Every call carries a short timeout. Timeouts, connection failures and 5xx
responses are retried with exponential backoff; 4xx responses are not.
"""
import hashlib
import logging
import time

import requests

from errors import AuthError, RemoteAPIError, TransientNetworkError

logger = logging.getLogger(__name__)

API_PREFIX = "/resto/api"

# Request configuration
REQUEST_TIMEOUT = 5  # seconds
MAX_RETRIES = 3
RETRY_DELAY = 1  # Base delay in seconds for exponential backoff


def base_url(server: str) -> str:
    """Expand a server host into the API base URL.

    A bare host such as 'cafe.example.com:443' becomes
    'https://cafe.example.com:443/resto/api'. A value that already carries a
    scheme is used as the base URL unchanged.
    """
    server = server.strip().rstrip('/')
    if server.startswith(('http://', 'https://')):
        return server
    return f"https://{server}{API_PREFIX}"


def make_url(server_url: str, *path: str) -> str:
    """Join path segments onto an API base URL."""
    return '/'.join([server_url.rstrip('/')] + [p.strip('/') for p in path])


def sha1sum(password: str) -> str:
    """Hex SHA-1 of a password, as the auth endpoint expects it."""
    return hashlib.sha1(password.encode('utf-8')).hexdigest()


class RestoClient:
    """Thin wrapper around a requests.Session with retry and error mapping."""

    def __init__(self, timeout=REQUEST_TIMEOUT, max_retries=MAX_RETRIES,
                 retry_delay=RETRY_DELAY, session=None, sleep=time.sleep):
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self._sleep = sleep

    def get(self, url, params=None) -> requests.Response:
        return self._request('GET', url, params=params)

    def post(self, url, params=None, json=None) -> requests.Response:
        return self._request('POST', url, params=params, json=json)

    def get_json(self, url, params=None):
        return self._decode(self.get(url, params=params))

    def post_json(self, url, params=None, json=None):
        return self._decode(self.post(url, params=params, json=json))

    def close(self):
        self.session.close()

    def _request(self, method, url, **kwargs):
        """Send a request, retrying transient failures.

        Raises:
            AuthError: on 401/403
            RemoteAPIError: on any other 4xx
            TransientNetworkError: when every attempt timed out, failed to
                connect or got a 5xx
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.Timeout as e:
                last_error = TransientNetworkError(f"Request to {url} timed out: {e}")
            except requests.ConnectionError as e:
                last_error = TransientNetworkError(f"Connection to {url} failed: {e}")
            else:
                status = response.status_code
                if status < 400:
                    return response
                if status in (401, 403):
                    raise AuthError(f"{method} {url} rejected with {status}", status_code=status)
                if status < 500:
                    raise RemoteAPIError(f"{method} {url} failed with {status}", status_code=status)
                last_error = TransientNetworkError(f"{method} {url} failed with {status}", status_code=status)

            if attempt < self.max_retries:
                wait_time = self.retry_delay * (2 ** attempt)
                logger.warning(f"{last_error} (attempt {attempt + 1}/{self.max_retries + 1}), retrying in {wait_time}s")
                self._sleep(wait_time)

        # All retries exhausted
        logger.error(f"All {self.max_retries} retries exhausted for {method} {url}")
        raise last_error

    @staticmethod
    def _decode(response):
        try:
            return response.json()
        except ValueError as e:
            raise RemoteAPIError(f"Malformed JSON from {response.url}: {e}",
                                 status_code=response.status_code) from e

"""
HTTP client for the identity provider REST API.

Wraps a persistent http.client connection with SSL handling, SSWS/Bearer
authentication, per-request timeout, a per-client request budget and retries
for transient failures. Responses are returned as parsed JSON together with
their lower-cased, multi-valued headers.
"""

import json
import ssl
import html
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Union, Iterable
from urllib.parse import urlparse
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from .config import ConfigurationError, decrypt_secret
from .retry import (RetryableError, MaxRetriesExceeded, retry_call,
                    is_retryable_status, create_retry_callback)

logger = logging.getLogger(__name__)

LINK_ENTRY = re.compile(r'<(.*?)>;\s*rel="(.*?)"')


class IdPError(Exception):
    """Base exception for IdP API errors."""
    pass


class IdPConnectionError(IdPError):
    """Raised on transport failure, timeout or an exhausted request budget."""
    pass


class IdPAuthError(IdPError):
    """Raised when the IdP answers with an error payload or an unusable body."""
    pass


@dataclass
class ApiResponse:
    """Decoded IdP response."""
    headers: Dict[str, List[str]] = field(default_factory=dict)
    body: Any = None

    def header(self, name: str) -> List[str]:
        return self.headers.get(name.lower(), [])


def parse_link_header(values: Union[str, Iterable[str], None]) -> Dict[str, str]:
    """
    Parse RFC 5988 Link header values into a rel -> URL mapping.

    Entries that do not look like ``<url>; rel="name"`` are ignored.

    Args:
        values: One header value or the list of values captured for ``link``

    Returns:
        Dictionary of relation name to HTML-entity-decoded URL
    """
    if not values:
        return {}
    if isinstance(values, str):
        values = [values]

    links = {}
    for value in values:
        for match in LINK_ENTRY.finditer(value):
            url, rel = match.groups()
            links[rel] = html.unescape(url)
    return links


class ApiClient:
    """
    Generic client for the IdP REST API.

    One connection is kept open per client and reused across requests,
    including the ``next`` links of paginated listings.
    """

    def __init__(self, base_url: str, api_key: str, auth_scheme: str = 'SSWS',
                 timeout: float = 30, max_requests: Optional[int] = None,
                 verify_ssl: bool = True, ca_cert_file: Optional[str] = None,
                 max_retries: int = 3, retry_wait: float = 5):
        """
        Initialize IdP API client.

        Args:
            base_url: IdP organisation URL, e.g. https://example.okta.com
            api_key: API token sent in the Authorization header
            auth_scheme: Authorization scheme, ``SSWS`` or ``Bearer``
            timeout: Per-request timeout in seconds
            max_requests: Maximum number of HTTP requests, None for unlimited
            verify_ssl: Verify the server certificate
            ca_cert_file: Optional PEM bundle for private CAs
            max_retries: Retries for transient failures, on top of the first attempt
            retry_wait: Delay between retries in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.auth_scheme = auth_scheme
        self.timeout = timeout
        self.max_requests = max_requests
        self.verify_ssl = verify_ssl
        self.ca_cert_file = ca_cert_file
        self.max_retries = max_retries
        self.retry_wait = retry_wait

        self.requests_made = 0
        self.connection = None
        self._connection_key = None
        self.ssl_context = self._create_ssl_context()

    @classmethod
    def from_config(cls, idp_config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None,
                    api_key: Optional[str] = None) -> 'ApiClient':
        """
        Build a client from the ``idp`` and ``error_handling`` configuration sections.

        Args:
            idp_config: IdP configuration section
            error_config: Retry settings
            api_key: Key overriding the configured one (e.g. from the config store)

        Raises:
            ConfigurationError: If no usable API key is available
        """
        error_config = error_config or {}
        if api_key is None:
            api_key = idp_config.get('api_key')
            if api_key and idp_config.get('api_key_encrypted'):
                api_key = decrypt_secret(api_key, idp_config.get('secret_key'))
        if not api_key:
            raise ConfigurationError("No IdP API key configured (idp.api_key or IDP_API_KEY)")

        return cls(
            base_url=idp_config['base_url'],
            api_key=api_key,
            auth_scheme=idp_config.get('auth_scheme', 'SSWS'),
            timeout=idp_config.get('timeout_seconds', 30),
            max_requests=idp_config.get('max_requests'),
            verify_ssl=idp_config.get('verify_ssl', True),
            ca_cert_file=idp_config.get('ca_cert_file'),
            max_retries=error_config.get('max_retries', 3),
            retry_wait=error_config.get('retry_wait_seconds', 5),
        )

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        """Set up SSL context based on configuration."""
        if urlparse(self.base_url).scheme != 'https':
            return None

        if not self.verify_ssl:
            logger.warning(f"SSL verification disabled for {self.base_url}")
            return ssl._create_unverified_context()

        context = ssl.create_default_context()
        if self.ca_cert_file:
            try:
                context.load_verify_locations(cafile=self.ca_cert_file)
            except (OSError, ssl.SSLError) as e:
                raise ConfigurationError(f"Failed to load CA bundle {self.ca_cert_file}: {e}")
            logger.info(f"Loaded CA bundle: {self.ca_cert_file}")
        return context

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'Authorization': f"{self.auth_scheme} {self.api_key}",
        }

    def resolve_url(self, uri: str) -> str:
        """Absolute URLs under the base URL are used verbatim, anything else is appended to it."""
        if self.base_url in uri:
            return uri
        return self.base_url + '/' + uri.lstrip('/')

    def _get_connection(self, scheme: str, netloc: str) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        key = (scheme, netloc)
        if self.connection and self._connection_key == key:
            return self.connection

        self.close()
        if scheme == 'https':
            self.connection = HTTPSConnection(netloc, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(netloc, timeout=self.timeout)
        self._connection_key = key
        return self.connection

    def _send(self, method: str, url: str, payload: Optional[str]):
        """Perform one HTTP exchange, counted against the request budget."""
        if self.max_requests is not None and self.requests_made >= self.max_requests:
            raise IdPConnectionError(f"Request budget of {self.max_requests} exhausted")
        self.requests_made += 1

        parsed = urlparse(url)
        target = parsed.path or '/'
        if parsed.query:
            target += '?' + parsed.query

        conn = self._get_connection(parsed.scheme, parsed.netloc)
        try:
            logger.debug(f"Making {method} request to {parsed.netloc}{target}")
            conn.request(method, target, payload, self.headers)
            response = conn.getresponse()
            data = response.read()
        except (OSError, HTTPException):
            # A broken connection cannot be reused
            self.close()
            raise

        logger.debug(f"Response status: {response.status} {response.reason}")
        if is_retryable_status(response.status):
            raise RetryableError(f"HTTP {response.status}: {response.reason}", response.status)
        return response.status, response.getheaders(), data

    def request(self, uri: str, method: str = 'GET', body: Optional[Any] = None) -> ApiResponse:
        """
        Make HTTP request to the IdP API.

        Args:
            uri: Path relative to the base URL, or an absolute URL such as a ``next`` link
            method: HTTP method
            body: Request body, serialized as JSON

        Returns:
            ApiResponse with lower-cased multi-valued headers and decoded JSON body

        Raises:
            IdPConnectionError: On transport failure, timeout or exhausted request budget
            IdPAuthError: On an error payload, empty body or invalid JSON
        """
        url = self.resolve_url(uri)
        payload = json.dumps(body) if body is not None else None

        try:
            status, raw_headers, data = retry_call(
                self._send, (method, url, payload),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                exceptions=(OSError, HTTPException, RetryableError),
                on_retry=create_retry_callback(f"{method} {urlparse(url).path}")
            )
        except MaxRetriesExceeded as e:
            raise IdPConnectionError(f"Request to {url} failed: {e.last_exception}")

        headers: Dict[str, List[str]] = {}
        for name, value in raw_headers:
            headers.setdefault(name.lower(), []).append(value)

        text = data.decode('utf-8', errors='replace') if data else ''
        if not text.strip():
            raise IdPAuthError(f"Empty response from {url} (HTTP {status})")
        try:
            decoded = json.loads(text)
        except ValueError as e:
            raise IdPAuthError(f"Invalid JSON response from {url}: {e}")

        if isinstance(decoded, dict) and 'errorCode' in decoded:
            summary = decoded.get('errorSummary')
            message = f"{decoded['errorCode']}: {summary}" if summary else str(decoded['errorCode'])
            raise IdPAuthError(message)
        if status >= 400:
            raise IdPAuthError(f"HTTP {status} from {url}")

        return ApiResponse(headers=headers, body=decoded)

    def close(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection to {self.base_url}: {e}")
            finally:
                self.connection = None
                self._connection_key = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

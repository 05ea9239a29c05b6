"""
HTTP probe for Replica Watcher.

Issues single HEAD or GET requests against a replica server through one
pooled ``requests.Session`` that every worker thread shares. Status codes
are always handed back to the caller; only transport failures (timeout,
refused connection, TLS handshake) raise.
There are no retries here: each trigger gets exactly one request per tier.
"""

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict

from replica_watch.errors import (
    CAUSE_CONNECT,
    CAUSE_REQUEST,
    CAUSE_TIMEOUT,
    CAUSE_TLS,
    HttpError,
    NetworkError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
METHODS = ("HEAD", "GET")
HASH_CHUNK = 256 * 1024


@dataclass(frozen=True)
class ProbeResponse:
    """What came back from one request."""
    uri: str
    status_code: int
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: bytes | None = None
    digest: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def etag(self) -> str | None:
        value = self.headers.get("ETag")
        return value.strip() if value and value.strip() else None

    @property
    def last_modified(self) -> datetime | None:
        """Parsed ``Last-Modified`` header as an aware UTC datetime, if valid."""
        value = self.headers.get("Last-Modified")
        if not value:
            return None
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug("Unparseable Last-Modified %r from %s", value, self.uri)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def raise_for_status(self) -> None:
        if not self.ok:
            raise HttpError(self.status_code, self.uri)


class HttpProbe:
    """
    Thread-safe request helper shared by all checker workers.

    Parameters
    ----------
    timeout : float
        Per-request timeout in seconds (connect and read).
    verify_tls : bool
        Validate server certificates. Turning this off is an explicit
        opt-in and is logged.
    extra_headers : dict, optional
        Headers added to every request (e.g. for a reverse proxy).
    pool_size : int
        Connections kept per host in the pool.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        verify_tls: bool = True,
        extra_headers: dict[str, str] | None = None,
        pool_size: int = 10,
    ):
        if timeout <= 0:
            raise ValueError("Probe timeout must be positive")
        self.timeout = float(timeout)
        self.verify_tls = verify_tls
        self._session = requests.Session()
        self._session.verify = verify_tls
        if extra_headers:
            self._session.headers.update(extra_headers)
        adapter = HTTPAdapter(
            pool_connections=pool_size,
            pool_maxsize=pool_size,
            max_retries=0,
        )
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)
        if not verify_tls:
            logger.warning("TLS certificate validation is DISABLED for replica probes.")

    def probe(self, uri: str, method: str = "HEAD", timeout: float | None = None) -> ProbeResponse:
        """
        Send one *method* request to *uri*.

        Returns a ``ProbeResponse`` for every HTTP status, 4xx/5xx included.
        Raises ``NetworkError`` when no response was received.
        """
        method = method.upper()
        if method not in METHODS:
            raise ValueError(f"Unsupported probe method: {method}")
        timeout = self.timeout if timeout is None else timeout

        with _translate_errors(timeout):
            resp = self._session.request(
                method, uri, timeout=timeout, allow_redirects=True
            )

        logger.debug("%s %s -> %d", method, uri, resp.status_code)
        return ProbeResponse(
            uri=uri,
            status_code=resp.status_code,
            headers=CaseInsensitiveDict(resp.headers),
            body=resp.content if method == "GET" else None,
        )

    def head(self, uri: str, timeout: float | None = None) -> ProbeResponse:
        return self.probe(uri, "HEAD", timeout)

    def get(self, uri: str, timeout: float | None = None) -> ProbeResponse:
        return self.probe(uri, "GET", timeout)

    def fetch_digest(
        self,
        uri: str,
        algorithm: str = "sha256",
        timeout: float | None = None,
        chunk_size: int = HASH_CHUNK,
    ) -> ProbeResponse:
        """
        GET *uri* and hash the body as it streams in.

        The body is never held in memory; the result carries ``digest``
        instead. Non-2xx responses are returned unread with no digest.
        """
        timeout = self.timeout if timeout is None else timeout
        h = hashlib.new(algorithm)
        with _translate_errors(timeout):
            with self._session.get(
                uri, timeout=timeout, allow_redirects=True, stream=True
            ) as resp:
                status = resp.status_code
                headers = CaseInsensitiveDict(resp.headers)
                digest = None
                if 200 <= status < 300:
                    for chunk in resp.iter_content(chunk_size):
                        h.update(chunk)
                    digest = h.hexdigest()

        logger.debug("GET %s -> %d (streamed)", uri, status)
        return ProbeResponse(uri=uri, status_code=status, headers=headers, digest=digest)

    def close(self) -> None:
        """Release pooled connections."""
        self._session.close()


@contextmanager
def _translate_errors(timeout: float):
    """Turn requests' transport exceptions into ``NetworkError``."""
    try:
        yield
    except requests.exceptions.Timeout as exc:
        raise NetworkError(CAUSE_TIMEOUT, f"no response within {timeout:g}s") from exc
    except requests.exceptions.SSLError as exc:
        raise NetworkError(CAUSE_TLS, str(exc)) from exc
    except requests.exceptions.ConnectionError as exc:
        raise NetworkError(CAUSE_CONNECT, str(exc)) from exc
    except requests.exceptions.RequestException as exc:
        raise NetworkError(CAUSE_REQUEST, str(exc)) from exc

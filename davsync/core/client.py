"""HTTP client wrapper for WebDAV transfers and locks."""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .. import __version__
from ..errors import TransferError
from .auth import CredentialResolver

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

LOCK_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>\n'
    '<D:lockinfo xmlns:D="DAV:">'
    "<D:lockscope><D:exclusive/></D:lockscope>"
    "<D:locktype><D:write/></D:locktype>"
    "<D:owner>{owner}</D:owner>"
    "</D:lockinfo>"
)

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>\n'
    '<D:propfind xmlns:D="DAV:"><D:prop>'
    "<D:getetag/><D:getlastmodified/><D:getcontentlength/>"
    "</D:prop></D:propfind>"
)

RETRY_STATUSES = (429, 500, 502, 503, 504)
RETRY_METHODS = frozenset({"GET", "PUT", "PROPFIND", "LOCK", "UNLOCK"})
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class LockToken:
    """A granted WebDAV lock on one resource."""

    remote_url: str
    token: str  # Without the surrounding angle brackets
    acquired_at: datetime
    timeout_seconds: int


@dataclass(frozen=True)
class RemoteInfo:
    """Properties of a remote resource from a PROPFIND request."""

    url: str
    etag: str = ""
    last_modified: str = ""
    content_length: int | None = None

    @property
    def fingerprint(self) -> str:
        """Value that changes whenever the resource content changes."""
        if self.etag:
            return self.etag
        return f"{self.last_modified}|{self.content_length}"


class WebDavClient:
    """WebDAV client with bounded per-request retry and lazy basic auth."""

    def __init__(
        self,
        resolver: CredentialResolver | None = None,
        retries: int = 3,
        verify_tls: bool = True,
        timeout: float = 60,
        owner: str = "davsync",
    ) -> None:
        """Initialize client.

        Args:
            resolver: Consulted once, on the first 401 response
            retries: Retry budget for connection errors and transient statuses
            verify_tls: Verify server certificates
            timeout: Per-request socket timeout in seconds
            owner: Text placed in the LOCK owner element
        """
        self.resolver = resolver
        self.verify_tls = verify_tls
        self.timeout = timeout
        self.owner = owner
        self._auth: tuple[str, str] | None = None
        self._auth_resolved = False

        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=RETRY_METHODS,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": f"davsync/{__version__}"})
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        return self.session.request(
            method=method,
            url=url,
            auth=self._auth,
            verify=self.verify_tls,
            timeout=self.timeout,
            **kwargs,
        )

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send a request, resolving credentials on the first 401.

        Raises:
            TransferError: On connection failure after retries
        """
        try:
            response = self._send(method, url, **kwargs)
            if response.status_code == 401 and not self._auth_resolved and self.resolver:
                self._auth_resolved = True
                creds = self.resolver.resolve(urlparse(url).netloc)
                if creds is not None:
                    response.close()
                    self._auth = creds.as_tuple()
                    response = self._send(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransferError(f"{method} {url} failed: {e}") from e

        logger.debug("%s %s -> %d", method, url, response.status_code)
        return response

    @staticmethod
    def _check(response: requests.Response, method: str, url: str) -> None:
        if response.status_code >= 400:
            raise TransferError(
                f"WebDAV {method} {url} -> {response.status_code}: {response.text[:300]}",
                response.status_code,
            )

    @staticmethod
    def _if_header(token: str | None) -> dict[str, str]:
        return {"If": f"(<{token}>)"} if token else {}

    def put(self, url: str, local_path: Path, token: str | None = None) -> None:
        """Upload a local file.

        Args:
            url: Remote resource URL
            local_path: File to send
            token: Lock token held on the resource, if any
        """
        data = Path(local_path).read_bytes()
        response = self._request("PUT", url, data=data, headers=self._if_header(token))
        self._check(response, "PUT", url)

    def get(self, url: str, dest_path: Path, token: str | None = None) -> None:
        """Stream a remote resource into dest_path."""
        response = self._request("GET", url, headers=self._if_header(token), stream=True)
        with response:
            self._check(response, "GET", url)
            try:
                with open(dest_path, "wb") as f:
                    for chunk in response.iter_content(CHUNK_SIZE):
                        f.write(chunk)
            except requests.RequestException as e:
                raise TransferError(f"GET {url} interrupted: {e}") from e

    def lock(self, url: str, timeout: int) -> LockToken:
        """Request an exclusive write lock.

        The returned token may be empty when the server granted the lock
        without sending one; callers must reject that.

        Args:
            url: Remote resource URL
            timeout: Requested lock lifetime in seconds

        Returns:
            LockToken for the resource
        """
        headers = {
            "Content-Type": 'application/xml; charset="utf-8"',
            "Depth": "0",
            "Timeout": f"Second-{timeout}",
        }
        body = LOCK_BODY.format(owner=self.owner)
        response = self._request("LOCK", url, data=body.encode("utf-8"), headers=headers)
        self._check(response, "LOCK", url)

        token = response.headers.get("Lock-Token", "").strip().strip("<>")
        granted = timeout
        root = _parse_xml(response.content)
        if root is not None:
            if not token:
                token = (root.findtext(f".//{DAV_NS}locktoken/{DAV_NS}href") or "").strip()
            granted = _parse_timeout(root.findtext(f".//{DAV_NS}timeout"), timeout)

        return LockToken(
            remote_url=url,
            token=token,
            acquired_at=datetime.now(timezone.utc),
            timeout_seconds=granted,
        )

    def unlock(self, url: str, token: str) -> None:
        """Release a lock previously granted on url."""
        response = self._request("UNLOCK", url, headers={"Lock-Token": f"<{token}>"})
        self._check(response, "UNLOCK", url)

    def stat(self, url: str) -> RemoteInfo | None:
        """Probe a resource with PROPFIND.

        Returns:
            RemoteInfo, or None if the resource does not exist
        """
        headers = {"Content-Type": 'application/xml; charset="utf-8"', "Depth": "0"}
        response = self._request("PROPFIND", url, data=PROPFIND_BODY.encode("utf-8"), headers=headers)
        if response.status_code == 404:
            return None
        self._check(response, "PROPFIND", url)

        root = _parse_xml(response.content)
        if root is None:
            raise TransferError(f"PROPFIND {url} returned an unreadable body", response.status_code)

        etag = (root.findtext(f".//{DAV_NS}getetag") or "").strip()
        length = (root.findtext(f".//{DAV_NS}getcontentlength") or "").strip()
        return RemoteInfo(
            url=url,
            etag=etag,
            last_modified=(root.findtext(f".//{DAV_NS}getlastmodified") or "").strip(),
            content_length=int(length) if length.isdigit() else None,
        )

    def close(self) -> None:
        self.session.close()


def _parse_xml(content: bytes) -> ET.Element | None:
    if not content:
        return None
    try:
        return ET.fromstring(content)
    except ET.ParseError:
        return None


def _parse_timeout(value: str | None, default: int) -> int:
    """Parse a `Second-N` timeout; `Infinite` and junk fall back to default."""
    if value and value.strip().startswith("Second-"):
        seconds = value.strip()[len("Second-"):]
        if seconds.isdigit():
            return int(seconds)
    return default

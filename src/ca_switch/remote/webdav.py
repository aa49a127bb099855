"""WebDAV remote store over httpx."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from urllib.parse import quote, unquote, urlsplit

import httpx

from ca_switch.errors import Conflict, NotFound, RemoteUnavailable, RemoteWriteError
from ca_switch.remote.base import RemoteObject, RemoteStore

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getcontentlength/><d:getlastmodified/>"
    "</d:prop></d:propfind>"
)


class WebDAVRemote(RemoteStore):
    """Stores archives in one collection under a WebDAV root.

    Objects live at ``<url>/<remote_dir>/<name>``. The collection is
    created on the first upload.
    """

    DEFAULT_DIR = "ca-switch-backups"

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        remote_dir: str = DEFAULT_DIR,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"WebDAV URL must be http(s): {url}")
        self.url = url.rstrip("/") + "/"
        self.remote_dir = remote_dir.strip("/")
        self.username = username
        auth = (username, password) if username else None
        self._client = httpx.Client(auth=auth, timeout=timeout, transport=transport)
        self._collection_ready = False

    @property
    def collection_url(self) -> str:
        return f"{self.url}{quote(self.remote_dir)}/"

    def _object_url(self, name: str) -> str:
        return f"{self.collection_url}{quote(name)}"

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue one request; transport and auth failures become RemoteUnavailable."""
        logger.debug("%s %s", method, url)
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Cannot reach WebDAV server {self.url}: {e}") from e
        if response.status_code in (401, 403):
            raise RemoteUnavailable(
                f"WebDAV authentication failed (HTTP {response.status_code}) for {self.url}"
            )
        return response

    def is_available(self) -> bool:
        try:
            response = self._send("PROPFIND", self.url, headers={"Depth": "0"})
        except RemoteUnavailable as e:
            logger.debug("WebDAV not available: %s", e)
            return False
        return response.status_code in (200, 207)

    def ensure_collection(self) -> None:
        if self._collection_ready:
            return
        response = self._send("MKCOL", self.collection_url)
        # 405: collection already exists.
        if response.status_code not in (200, 201, 405):
            raise RemoteWriteError(
                f"Cannot create backup directory /{self.remote_dir}: HTTP {response.status_code}",
                response.status_code,
            )
        self._collection_ready = True

    def exists(self, name: str) -> bool:
        response = self._send("HEAD", self._object_url(name))
        if response.status_code == 404:
            return False
        if response.is_success:
            return True
        raise RemoteUnavailable(f"Cannot check {name}: HTTP {response.status_code}")

    def get(self, name: str) -> bytes:
        response = self._send("GET", self._object_url(name))
        if response.status_code == 404:
            raise NotFound(f"Remote backup '{name}' not found.")
        if not response.is_success:
            raise RemoteUnavailable(f"Download of {name} failed: HTTP {response.status_code}")
        return response.content

    def put(self, name: str, data: bytes, overwrite: bool = False) -> RemoteObject:
        self.ensure_collection()
        headers = {"Content-Type": "application/json"}
        if not overwrite:
            headers["If-None-Match"] = "*"
        response = self._send("PUT", self._object_url(name), content=data, headers=headers)
        if response.status_code == 412:
            raise Conflict(f"Remote backup '{name}' already exists.")
        if not response.is_success:
            raise RemoteWriteError(
                f"Upload of {name} failed: HTTP {response.status_code}", response.status_code
            )
        return RemoteObject(
            name=name, path=urlsplit(self._object_url(name)).path, size=len(data)
        )

    def list(self) -> list[RemoteObject]:
        response = self._send(
            "PROPFIND",
            self.collection_url,
            headers={"Depth": "1", "Content-Type": "application/xml"},
            content=PROPFIND_BODY.encode("utf-8"),
        )
        if response.status_code == 404:
            return []
        if response.status_code not in (200, 207):
            raise RemoteUnavailable(f"Listing backups failed: HTTP {response.status_code}")
        return parse_multistatus(response.content)

    def delete(self, name: str) -> None:
        response = self._send("DELETE", self._object_url(name))
        if response.status_code == 404:
            raise NotFound(f"Remote backup '{name}' not found.")
        if not response.is_success:
            raise RemoteWriteError(
                f"Delete of {name} failed: HTTP {response.status_code}", response.status_code
            )

    def close(self) -> None:
        self._client.close()

    @property
    def display_name(self) -> str:
        who = f"{self.username}@" if self.username else ""
        return f"webdav {who}{urlsplit(self.url).netloc}/{self.remote_dir}"


def parse_multistatus(body: bytes) -> list[RemoteObject]:
    """Parse a PROPFIND multistatus body into file objects.

    Collections (including the listed directory itself) are skipped.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise RemoteUnavailable(f"Malformed PROPFIND response: {e}") from e

    objects = []
    for response in root.iter(f"{DAV_NS}response"):
        href = response.findtext(f"{DAV_NS}href", default="").strip()
        if not href:
            continue
        path = unquote(urlsplit(href).path)
        if path.endswith("/") or response.find(f".//{DAV_NS}collection") is not None:
            continue

        size_text = response.findtext(f".//{DAV_NS}getcontentlength", default="").strip()
        modified_text = response.findtext(f".//{DAV_NS}getlastmodified", default="").strip()
        try:
            size = int(size_text) if size_text else 0
        except ValueError:
            size = 0
        try:
            last_modified = parsedate_to_datetime(modified_text) if modified_text else None
        except (TypeError, ValueError):
            last_modified = None

        objects.append(
            RemoteObject(
                name=path.rsplit("/", 1)[-1],
                path=path,
                size=size,
                last_modified=last_modified,
            )
        )
    return objects

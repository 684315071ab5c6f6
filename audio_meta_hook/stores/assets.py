from __future__ import annotations

import http.client
import logging
import shutil
import socket
import urllib.error
import urllib.parse
import urllib.request
import uuid
from pathlib import Path
from typing import Any, Mapping, Optional

from ..models import AssetNotFound, ServiceContext, TransportError
from ..stream import AudioStreamHandle, open_stream

logger = logging.getLogger(__name__)


class LocalAssetStore:
    """Files addressed by id below a root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def path_for(self, file_id: str) -> Path:
        root = self.root.resolve()
        candidate = (root / file_id).resolve()
        if candidate == root or root not in candidate.parents:
            raise AssetNotFound(f"file id {file_id!r} is outside the asset root")
        return candidate

    def get_stream(
        self,
        file_id: str,
        transforms: Optional[Mapping[str, Any]] = None,
        *,
        context: ServiceContext,
    ) -> AudioStreamHandle:
        if transforms:
            raise ValueError("local assets are served as stored; transforms are not supported")
        path = self.path_for(file_id)
        logger.debug("Opening asset %s for %s", file_id, context.actor)
        return open_stream(path, name=file_id)

    def put(self, source: Path, file_id: Optional[str] = None) -> str:
        file_id = file_id or f"{uuid.uuid4().hex}{source.suffix.lower()}"
        target = self.path_for(file_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        logger.info("Stored %s as asset %s", source, file_id)
        return file_id

    def file_id_for(self, path: Path) -> Optional[str]:
        try:
            return path.resolve().relative_to(self.root.resolve()).as_posix()
        except ValueError:
            return None


class HttpAssetStore:
    """Streams raw asset bytes from a host's `/assets/<id>` endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 30.0,
        useragent: str = "audio-meta-hook",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.useragent = useragent

    def url_for(self, file_id: str, transforms: Optional[Mapping[str, Any]] = None) -> str:
        url = f"{self.base_url}/assets/{urllib.parse.quote(file_id, safe='')}"
        if transforms:
            url = f"{url}?{urllib.parse.urlencode(transforms)}"
        return url

    def get_stream(
        self,
        file_id: str,
        transforms: Optional[Mapping[str, Any]] = None,
        *,
        context: ServiceContext,
    ) -> AudioStreamHandle:
        url = self.url_for(file_id, transforms)
        headers = {"User-Agent": self.useragent}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(url, headers=headers)
        try:
            resp = urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise AssetNotFound(f"asset {file_id} not found at {url}") from exc
            raise TransportError(f"asset {file_id}: HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise TransportError(f"asset {file_id}: request failed: {exc}") from exc
        length = resp.headers.get("Content-Length")
        size = int(length) if length and length.isdigit() else None
        return AudioStreamHandle(ResponseBody(resp), size=size, name=file_id)


class ResponseBody:
    """File-like wrapper whose `abort` tears the socket down under a blocked read."""

    def __init__(self, resp: http.client.HTTPResponse) -> None:
        self._resp = resp
        self._closed = False

    def read(self, count: int) -> bytes:
        try:
            return self._resp.read(count)
        except http.client.HTTPException as exc:
            raise OSError(f"incomplete response: {exc}") from exc

    def abort(self) -> None:
        sock = _response_socket(self._resp)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                logger.debug("Socket shutdown failed: %s", exc)
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._resp.close()


def _response_socket(resp: Any) -> Optional[socket.socket]:
    raw = getattr(getattr(resp, "fp", None), "raw", None)
    sock = getattr(raw, "_sock", None)
    return sock if isinstance(sock, socket.socket) else None

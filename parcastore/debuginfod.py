"""Clients that fetch debug information files from debuginfod servers."""

from __future__ import annotations

import io
import logging
import os
import posixpath
import threading
import urllib.error
import urllib.parse
import urllib.request
from typing import BinaryIO, Iterable, Protocol

_log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 30.0


class DebugInfoNotFoundError(LookupError):
    """Raised when no debug information exists for a build id."""

    def __init__(self, message: str = "debug info not found") -> None:
        super().__init__(message)


class DebugInfodError(Exception):
    """Raised when a debuginfod server cannot be queried."""


class _DebugInfodClient(Protocol):
    def get_debug_info(self, build_id: str) -> BinaryIO: ...


class _Bucket(Protocol):
    def upload(self, name: str, reader: BinaryIO) -> None: ...


def object_path(build_id: str) -> str:
    """Return the object name of the debug info file for ``build_id``."""
    return posixpath.join(build_id, "debuginfo")


class NopDebugInfodClient:
    """A client that never finds anything."""

    def get_debug_info(self, build_id: str) -> BinaryIO:
        """Always raise :class:`DebugInfoNotFoundError`."""
        raise DebugInfoNotFoundError()


def _status_error(code: int, reason: str) -> Exception:
    status = f"{code} {reason}".strip()
    if code == 404:
        return DebugInfoNotFoundError()
    if code // 100 == 4:
        return DebugInfodError(f"client error: {status}")
    if code // 100 == 5:
        return DebugInfodError(f"server error: {status}")
    return DebugInfodError(f"unexpected status code: {status}")


class HTTPDebugInfodClient:
    """Downloads debug information files from a list of upstream debuginfod servers."""

    def __init__(
        self,
        server_urls: Iterable[str],
        timeout: float = _DEFAULT_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or _log
        self.timeout = timeout
        self.upstream_servers: list[str] = []
        for server_url in server_urls:
            scheme = urllib.parse.urlsplit(server_url).scheme
            if scheme not in ("http", "https"):
                raise ValueError(f"unsupported scheme {scheme!r}")
            self.upstream_servers.append(server_url)

    def get_debug_info(self, build_id: str) -> BinaryIO:
        """Return a readable stream of the debug info from the first server that has it."""
        for server_url in self.upstream_servers:
            try:
                return self.request(server_url, build_id)
            except (DebugInfoNotFoundError, DebugInfodError) as exc:
                self._logger.warning(
                    "failed to download debug info file from upstream debuginfod server, "
                    "trying next one (if exists) buildid=%s server=%s err=%s",
                    build_id,
                    server_url,
                    exc,
                )
        raise DebugInfoNotFoundError()

    def request(self, server_url: str, build_id: str) -> BinaryIO:
        """Fetch ``/buildid/<build_id>/debuginfo`` from one server and return the body."""
        parts = urllib.parse.urlsplit(server_url)
        path = posixpath.normpath(
            posixpath.join("/", parts.path, "buildid", build_id, "debuginfo")
        )
        url = urllib.parse.urlunsplit(
            (parts.scheme, parts.netloc, path, parts.query, parts.fragment)
        )
        try:
            req = urllib.request.Request(url, method="GET")
        except ValueError as exc:
            raise DebugInfodError(f"create request: {exc}") from exc

        try:
            response = urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as exc:
            exc.close()
            raise _status_error(exc.code, str(exc.reason)) from None
        except (urllib.error.URLError, OSError) as exc:
            raise DebugInfodError(f"request failed: {exc}") from exc

        if response.status // 100 == 2:
            return response
        response.close()
        raise _status_error(response.status, response.reason)


class _TeeReader(io.RawIOBase):
    """Reads from ``source`` and copies everything read into ``sink``."""

    def __init__(
        self, source: BinaryIO, sink: BinaryIO, uploader: threading.Thread
    ) -> None:
        super().__init__()
        self._source = source
        self._sink: BinaryIO | None = sink
        self._uploader = uploader

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        data = self._source.read(len(buffer))
        if not data:
            return 0
        if self._sink is not None:
            try:
                self._sink.write(data)
            except (BrokenPipeError, ValueError):
                # The upload stopped; keep serving the reader without copying.
                self._sink = None
        size = len(data)
        buffer[:size] = data
        return size

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self._sink is not None:
                try:
                    self._sink.close()
                except (BrokenPipeError, ValueError):
                    pass
                self._sink = None
            self._uploader.join()
        finally:
            self._source.close()
            super().close()


class CachingDebugInfodClient:
    """Wraps a client and stores every file it downloads in object storage."""

    def __init__(
        self,
        bucket: _Bucket,
        client: _DebugInfodClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._bucket = bucket
        self._client = client
        self._logger = logger or _log

    def get_debug_info(self, build_id: str) -> BinaryIO:
        """Return the debug info stream; what is read from it is uploaded as well."""
        debug_info = self._client.get_debug_info(build_id)

        read_fd, write_fd = os.pipe()
        pipe_reader = os.fdopen(read_fd, "rb")
        pipe_writer = os.fdopen(write_fd, "wb")

        def upload() -> None:
            try:
                self._bucket.upload(object_path(build_id), pipe_reader)
            except Exception as exc:  # noqa: BLE001 - reported, reader keeps working
                self._logger.error(
                    "failed to upload downloaded debuginfod file buildid=%s err=%s",
                    build_id,
                    exc,
                )
            finally:
                pipe_reader.close()

        uploader = threading.Thread(target=upload, name="debuginfod-cache", daemon=True)
        uploader.start()
        return io.BufferedReader(_TeeReader(debug_info, pipe_writer, uploader))
"""Upload state of debug information files, kept next to them in object storage."""

from __future__ import annotations

import enum
import io
import json
import logging
import os
import posixpath
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Callable, Iterator, Union

_log = logging.getLogger(__name__)


class ObjectNotFoundError(LookupError):
    """Raised when an object does not exist in the bucket."""


class FilesystemBucket:
    """An object storage bucket kept in a local directory."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._root = Path(directory).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        parts = PurePosixPath(name).parts
        if not name or name.startswith("/") or ".." in parts:
            raise ValueError(f"invalid object name {name!r}")
        return self._root.joinpath(*parts)

    def upload(self, name: str, reader: Union[bytes, BinaryIO]) -> None:
        """Store everything read from ``reader`` (or the given bytes) under ``name``."""
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        source = io.BytesIO(reader) if isinstance(reader, (bytes, bytearray)) else reader
        with tempfile.NamedTemporaryFile(dir=path.parent, delete=False) as tmp:
            try:
                shutil.copyfileobj(source, tmp)
            except BaseException:
                tmp.close()
                os.unlink(tmp.name)
                raise
        os.replace(tmp.name, path)

    def get(self, name: str) -> bytes:
        """Return the contents of the object ``name``."""
        try:
            return self._path(name).read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise ObjectNotFoundError(name) from None

    def iter(self, prefix: str = "") -> Iterator[str]:
        """Yield the names directly under ``prefix``; directories end with ``/``."""
        stripped = prefix.strip("/")
        directory = self._root if not stripped else self._path(stripped)
        if not directory.is_dir():
            return
        for entry in sorted(directory.iterdir()):
            relative = entry.relative_to(self._root).as_posix()
            yield relative + "/" if entry.is_dir() else relative


class MetadataError(Exception):
    """Raised when debug info metadata cannot be read or updated."""


class MetadataNotFoundError(MetadataError):
    """Raised when there is no metadata for a build id."""


class MetadataShouldExistError(MetadataError):
    """Raised when metadata was expected to exist but does not."""


class MetadataState(enum.IntEnum):
    """Upload state of a debug information file."""

    UNKNOWN = 0
    UPLOADING = 1
    UPLOADED = 2
    CORRUPTED = 3

    def __str__(self) -> str:
        return f"METADATA_STATE_{self.name}"

    @classmethod
    def from_name(cls, name: str) -> MetadataState:
        """Return the state for its serialized name; unknown names map to UNKNOWN."""
        prefix = "METADATA_STATE_"
        if name.startswith(prefix):
            member = cls.__members__.get(name[len(prefix):])
            if member is not None:
                return member
        return cls.UNKNOWN


@dataclass
class Metadata:
    """The upload record of one debug information file."""

    state: MetadataState = MetadataState.UNKNOWN
    build_id: str = ""
    hash: str = ""
    upload_started_at: int = 0
    upload_finished_at: int = 0

    def _as_dict(self) -> dict[str, Any]:
        return {
            "state": str(MetadataState(self.state)),
            "build_id": self.build_id,
            "hash": self.hash,
            "upload_started_at": self.upload_started_at,
            "upload_finished_at": self.upload_finished_at,
        }

    def to_json(self) -> str:
        """Return the compact JSON form of the record."""
        return json.dumps(self._as_dict(), separators=(",", ":"))


def metadata_from_json(data: Union[str, bytes]) -> Metadata:
    """Parse a JSON record; missing fields keep their zero values."""
    try:
        doc = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MetadataError(f"invalid metadata: {exc}") from exc
    if not isinstance(doc, dict):
        raise MetadataError("invalid metadata: expected an object")

    def field(name: str, kind: type, default: Any) -> Any:
        value = doc.get(name)
        if value is None:
            return default
        if not isinstance(value, kind) or isinstance(value, bool):
            raise MetadataError(f"invalid metadata: {name} has the wrong type")
        return value

    return Metadata(
        state=MetadataState.from_name(field("state", str, "")),
        build_id=field("build_id", str, ""),
        hash=field("hash", str, ""),
        upload_started_at=field("upload_started_at", int, 0),
        upload_finished_at=field("upload_finished_at", int, 0),
    )


def metadata_object_path(build_id: str) -> str:
    """Return the object name of the metadata for ``build_id``."""
    return posixpath.join(build_id, "metadata")


class ObjectStoreMetadata:
    """Keeps debug info metadata records in an object storage bucket."""

    def __init__(
        self,
        bucket: FilesystemBucket,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bucket = bucket
        self._logger = logger or _log
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _write(self, build_id: str, metadata: Metadata) -> None:
        payload = json.dumps(metadata._as_dict(), indent="\t").encode()
        try:
            self._bucket.upload(metadata_object_path(build_id), payload)
        except OSError as exc:
            self._logger.error("failed to create metadata file err=%s", exc)
            raise MetadataError(f"failed to write metadata: {exc}") from exc

    def mark_as_corrupted(self, build_id: str) -> None:
        """Record that the debug info for ``build_id`` is corrupted."""
        self._write(build_id, Metadata(state=MetadataState.CORRUPTED))
        self._logger.debug("marked as corrupted buildid=%s", build_id)

    def mark_as_uploading(self, build_id: str) -> None:
        """Record that an upload for ``build_id`` has started, unless a record exists."""
        try:
            self._bucket.get(metadata_object_path(build_id))
        except ObjectNotFoundError:
            pass
        else:
            # Not an error: two uploads may race for the same build id.
            self._logger.info("there should not be a metadata file")
            return

        self._write(
            build_id,
            Metadata(
                state=MetadataState.UPLOADING,
                build_id=build_id,
                upload_started_at=self._now(),
            ),
        )
        self._logger.debug("marked as uploading buildid=%s", build_id)

    def mark_as_uploaded(self, build_id: str, hash_value: str) -> None:
        """Record that the upload for ``build_id`` finished with ``hash_value``."""
        try:
            raw = self._bucket.get(metadata_object_path(build_id))
        except ObjectNotFoundError as exc:
            self._logger.error("expected metadata file err=%s", exc)
            raise MetadataShouldExistError("debug info metadata should exist") from exc

        metadata = metadata_from_json(raw)
        if metadata.state is MetadataState.UPLOADED:
            return
        if metadata.state is MetadataState.UPLOADING and metadata.build_id != build_id:
            raise MetadataError("build ids do not match")

        metadata.state = MetadataState.UPLOADED
        metadata.build_id = build_id
        metadata.hash = hash_value
        metadata.upload_finished_at = self._now()
        self._write(build_id, metadata)
        self._logger.debug("marked as uploaded buildid=%s", build_id)

    def fetch(self, build_id: str) -> Metadata:
        """Return the metadata for ``build_id``."""
        try:
            raw = self._bucket.get(metadata_object_path(build_id))
        except ObjectNotFoundError:
            raise MetadataNotFoundError("debug info metadata not found") from None
        return metadata_from_json(raw)
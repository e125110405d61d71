"""Profile entities and the key-value keys under which they are stored."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field

_U64 = 0xFFFFFFFFFFFFFFFF

LOCATIONS_KEY_PREFIX = "v1/locations/by-key/"
UNSYMBOLIZED_LOCATION_LINES_KEY_PREFIX = "v1/unsymbolized-locations/by-key/"
FUNCTION_KEY_PREFIX = "v1/functions/by-key/"
MAPPING_KEY_PREFIX = "v1/mappings/by-key/"
STACKTRACE_KEY_PREFIX = "v1/stacktraces/by-key/"

# Mapping sizes are rounded up to the next 4K boundary to absorb minor
# discrepancies introduced by address space randomization.
MAPSIZE_ROUNDING = 0x1000


@dataclass
class Mapping:
    """A memory mapping of a binary into a process."""

    id: str = ""
    start: int = 0
    limit: int = 0
    offset: int = 0
    file: str = ""
    build_id: str = ""
    has_functions: bool = False
    has_filenames: bool = False
    has_line_numbers: bool = False
    has_inline_frames: bool = False


@dataclass
class Line:
    """A source line attributed to a location."""

    function_id: str = ""
    line: int = 0


@dataclass
class Location:
    """An instruction address, optionally resolved to source lines."""

    id: str = ""
    address: int = 0
    mapping_id: str = ""
    is_folded: bool = False
    lines: list[Line] = field(default_factory=list)


@dataclass
class Function:
    """A function identified by name, system name, file and start line."""

    id: str = ""
    start_line: int = 0
    name: str = ""
    system_name: str = ""
    filename: str = ""


@dataclass
class Stacktrace:
    """An ordered list of location ids, leaf first."""

    id: str = ""
    location_ids: list[str] = field(default_factory=list)


def _sha512_256():
    return hashlib.new("sha512_256")


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _u64(value: int) -> bytes:
    return (value & _U64).to_bytes(8, "big")


def _i64(value: int) -> bytes:
    return value.to_bytes(8, "big", signed=True)


def _strip_prefix(key: str, prefix: str) -> str:
    if not key.startswith(prefix):
        raise ValueError(f"key {key!r} does not start with {prefix!r}")
    return key[len(prefix):]


def make_location_key(location: Location) -> str:
    """Return the storage key of ``location``."""
    return make_location_key_with_id(make_location_id(location))


def make_location_key_with_id(location_id: str) -> str:
    """Return the storage key of the location with ``location_id``."""
    return LOCATIONS_KEY_PREFIX + location_id


def make_unsymbolized_location_key_with_id(location_id: str) -> str:
    """Return the key marking the location with ``location_id`` as unsymbolized."""
    return UNSYMBOLIZED_LOCATION_LINES_KEY_PREFIX + location_id


def location_id_from_unsymbolized_key(key: str) -> str:
    """Return the location id part of an unsymbolized-location key."""
    return _strip_prefix(key, UNSYMBOLIZED_LOCATION_LINES_KEY_PREFIX)


def location_id_from_key(key: str) -> str:
    """Return the location id part of a location key."""
    return _strip_prefix(key, LOCATIONS_KEY_PREFIX)


def make_location_id(location: Location) -> str:
    """Return an id that uniquely identifies ``location``.

    Locations are identified by mapping id and address. When the address is 0
    the location comes from an interpreted runtime, so its lines take part in
    the id as well.
    """
    h = _sha512_256()
    h.update(location.mapping_id.encode())
    h.update(_u64(location.address))
    # The folded flag is encoded with a platform-sized integer, which the
    # binary encoder rejects without writing anything, so it never reaches
    # the hash. Ids must stay stable, so that is kept as is.
    if location.address == 0:
        for line in location.lines:
            h.update(line.function_id.encode())
            h.update(_i64(line.line))
    mapping_id = location.mapping_id or "unknown-mapping"
    return f"{mapping_id}/{_b64(h.digest())}"


def make_function_key(function: Function) -> str:
    """Return the storage key of ``function``."""
    return make_function_key_with_id(make_function_id(function))


def make_function_key_with_id(function_id: str) -> str:
    """Return the storage key of the function with ``function_id``."""
    return FUNCTION_KEY_PREFIX + function_id


def function_id_from_key(key: str) -> str:
    """Return the function id part of a function key."""
    return _strip_prefix(key, FUNCTION_KEY_PREFIX)


def make_function_id(function: Function) -> str:
    """Return an id namespaced by the hash of the function's filename."""
    h = _sha512_256()
    h.update(_i64(function.start_line))
    h.update(function.name.encode())
    h.update(function.system_name.encode())
    h.update(function.filename.encode())
    digest = _b64(h.digest())
    if not function.filename:
        return f"unknown-filename/{digest}"
    filename_hash = hashlib.new("sha512_256", function.filename.encode()).digest()
    return f"{_b64(filename_hash)}/{digest}"


def make_mapping_key(mapping: Mapping) -> str:
    """Return the storage key of ``mapping``."""
    return make_mapping_key_with_id(make_mapping_id(mapping))


def make_mapping_key_with_id(mapping_id: str) -> str:
    """Return the storage key of the mapping with ``mapping_id``."""
    return MAPPING_KEY_PREFIX + mapping_id


def mapping_id_from_key(key: str) -> str:
    """Return the mapping id part of a mapping key."""
    return _strip_prefix(key, MAPPING_KEY_PREFIX)


def make_mapping_id(mapping: Mapping) -> str:
    """Return an id from build id (or file), rounded size and offset."""
    h = _sha512_256()
    size = (mapping.limit - mapping.start) & _U64
    size = (size + MAPSIZE_ROUNDING - 1) & _U64
    size -= size % MAPSIZE_ROUNDING
    if mapping.build_id:
        h.update(mapping.build_id.encode())
    elif mapping.file:
        h.update(mapping.file.encode())
    # Mappings with neither build id nor file are fake and share one key.
    h.update(_u64(size))
    h.update(_u64(mapping.offset))
    return _b64(h.digest())


def make_stacktrace_key(stacktrace: Stacktrace) -> str:
    """Return the storage key of ``stacktrace``."""
    return make_stacktrace_key_with_id(make_stacktrace_id(stacktrace))


def make_stacktrace_key_with_id(stacktrace_id: str) -> str:
    """Return the storage key of the stacktrace with ``stacktrace_id``."""
    return STACKTRACE_KEY_PREFIX + stacktrace_id


def stacktrace_id_from_key(key: str) -> str:
    """Return the stacktrace id part of a stacktrace key."""
    return _strip_prefix(key, STACKTRACE_KEY_PREFIX)


def make_stacktrace_id(stacktrace: Stacktrace) -> str:
    """Return an id prefixed by the root location id."""
    if not stacktrace.location_ids:
        return "empty-stacktrace"
    h = _sha512_256()
    for location_id in stacktrace.location_ids:
        h.update(location_id.encode())
    return f"{stacktrace.location_ids[-1]}/{_b64(h.digest())}"
"""Streaming 64-bit xxHash digests for files and readers."""

from __future__ import annotations

import os
from typing import BinaryIO

_MASK = 0xFFFFFFFFFFFFFFFF

_P1 = 0x9E3779B185EBCA87
_P2 = 0xC2B2AE3D27D4EB4F
_P3 = 0x165667B19E3779F9
_P4 = 0x85EBCA77C2B2AE63
_P5 = 0x27D4EB2F165667C5

_STRIPE = 32
_READ_SIZE = 64 * 1024


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK
    acc = _rotl(acc, 31)
    return (acc * _P1) & _MASK


def _merge_round(acc: int, value: int) -> int:
    acc ^= _round(0, value)
    return (acc * _P1 + _P4) & _MASK


class XXHash64:
    """Incremental XXH64 hasher with a hashlib-like interface."""

    digest_size = 8

    def __init__(self, data: bytes = b"", seed: int = 0) -> None:
        self._seed = seed & _MASK
        self._v1 = (self._seed + _P1 + _P2) & _MASK
        self._v2 = (self._seed + _P2) & _MASK
        self._v3 = self._seed
        self._v4 = (self._seed - _P1) & _MASK
        self._total = 0
        self._buffer = b""
        if data:
            self.update(data)

    def update(self, data: bytes) -> None:
        """Feed more bytes into the hash."""
        data = bytes(data)
        self._total += len(data)
        buffer = self._buffer + data
        full = len(buffer) - len(buffer) % _STRIPE
        v1, v2, v3, v4 = self._v1, self._v2, self._v3, self._v4
        for start in range(0, full, _STRIPE):
            v1 = _round(v1, int.from_bytes(buffer[start:start + 8], "little"))
            v2 = _round(v2, int.from_bytes(buffer[start + 8:start + 16], "little"))
            v3 = _round(v3, int.from_bytes(buffer[start + 16:start + 24], "little"))
            v4 = _round(v4, int.from_bytes(buffer[start + 24:start + 32], "little"))
        self._v1, self._v2, self._v3, self._v4 = v1, v2, v3, v4
        self._buffer = buffer[full:]

    def intdigest(self) -> int:
        """Return the current hash value as an unsigned 64-bit integer."""
        if self._total >= _STRIPE:
            h = (
                _rotl(self._v1, 1)
                + _rotl(self._v2, 7)
                + _rotl(self._v3, 12)
                + _rotl(self._v4, 18)
            ) & _MASK
            for v in (self._v1, self._v2, self._v3, self._v4):
                h = _merge_round(h, v)
        else:
            h = (self._seed + _P5) & _MASK

        h = (h + self._total) & _MASK

        tail = self._buffer
        pos = 0
        while pos + 8 <= len(tail):
            h ^= _round(0, int.from_bytes(tail[pos:pos + 8], "little"))
            h = (_rotl(h, 27) * _P1 + _P4) & _MASK
            pos += 8
        if pos + 4 <= len(tail):
            h ^= (int.from_bytes(tail[pos:pos + 4], "little") * _P1) & _MASK
            h = (_rotl(h, 23) * _P2 + _P3) & _MASK
            pos += 4
        for byte in tail[pos:]:
            h ^= (byte * _P5) & _MASK
            h = (_rotl(h, 11) * _P1) & _MASK

        h ^= h >> 33
        h = (h * _P2) & _MASK
        h ^= h >> 29
        h = (h * _P3) & _MASK
        h ^= h >> 32
        return h

    def digest(self) -> bytes:
        """Return the hash as 8 big-endian bytes."""
        return self.intdigest().to_bytes(8, "big")

    def hexdigest(self) -> str:
        """Return the hash as 16 lower-case hex digits."""
        return self.digest().hex()


def xxh64(data: bytes, seed: int = 0) -> int:
    """Return the XXH64 hash of ``data`` as an integer."""
    return XXHash64(data, seed=seed).intdigest()


def hash_reader(reader: BinaryIO) -> str:
    """Return the hex XXH64 hash of everything readable from ``reader``."""
    hasher = XXHash64()
    for chunk in iter(lambda: reader.read(_READ_SIZE), b""):
        hasher.update(chunk)
    return hasher.hexdigest()


def hash_file(path: str | os.PathLike[str]) -> str:
    """Return the hex XXH64 hash of the file at ``path``."""
    with open(path, "rb") as handle:
        return hash_reader(handle)
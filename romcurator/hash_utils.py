"""Fingerprint engine - single-pass CRC32/MD5/SHA1 computation over byte streams.

Every digest requested is fed from the same chunk loop, so a source is read
exactly once. Leading header bytes can be excluded from the digests while
still being counted in the observed size.
"""

from __future__ import annotations

import hashlib
import os
import re
import zlib
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Literal, Optional, Tuple, Union

DigestKind = Literal["crc32", "md5", "sha1"]

ALL_DIGEST_KINDS: Tuple[str, ...] = ("crc32", "md5", "sha1")
DEFAULT_CHUNK_SIZE = 1024 * 1024

# Higher is stronger; authoritative matching uses the strongest kind both sides carry.
DIGEST_STRENGTH: Dict[str, int] = {"crc32": 0, "md5": 1, "sha1": 2}

_DIGEST_LENGTHS = {"crc32": 8, "md5": 32, "sha1": 40}
_HEX_RE = re.compile(r"^[0-9a-f]+$")


def normalize_digest(kind: str, value: Optional[str]) -> Optional[str]:
    """Lower-case and validate a hex digest. Empty values become None.

    CRC32 values shorter than 8 digits are zero padded (some DATs drop
    leading zeros). Raises ValueError for anything that is not hex of the
    right length.
    """
    if value is None:
        return None
    text = str(value).strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if not text or text == "-":
        return None
    expected = _DIGEST_LENGTHS[kind]
    if kind == "crc32" and len(text) < expected:
        text = text.zfill(expected)
    if len(text) != expected or not _HEX_RE.match(text):
        raise ValueError(f"malformed {kind} digest: {value!r}")
    return text


@dataclass(frozen=True)
class Digests:
    crc32: Optional[str] = None
    md5: Optional[str] = None
    sha1: Optional[str] = None

    def get(self, kind: str) -> Optional[str]:
        return getattr(self, kind)

    def kinds(self) -> Tuple[str, ...]:
        return tuple(k for k in ALL_DIGEST_KINDS if self.get(k))

    def is_empty(self) -> bool:
        return not self.kinds()

    def strongest_common(self, other: "Digests") -> Optional[str]:
        """Strongest digest kind present on both sides."""
        shared = [k for k in self.kinds() if other.get(k)]
        if not shared:
            return None
        return max(shared, key=lambda k: DIGEST_STRENGTH[k])

    def matches(self, other: "Digests", *, allow_weak: bool = True) -> bool:
        """Authoritative equality on the strongest shared digest.

        Every shared kind must agree; a CRC32-only comparison counts only
        when ``allow_weak`` is set.
        """
        kind = self.strongest_common(other)
        if kind is None:
            return False
        if kind == "crc32" and not allow_weak:
            return False
        return all(self.get(k) == other.get(k) for k in self.kinds() if other.get(k))

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"crc32": self.crc32, "md5": self.md5, "sha1": self.sha1}


@dataclass(frozen=True)
class HeaderRule:
    """A byte signature that must appear at ``offset`` for a header to be present."""

    offset: int
    value: bytes


@dataclass(frozen=True)
class HeaderSpec:
    """Console-specific leading header excluded from digests (e.g. iNES, Lynx, FDS)."""

    name: str
    skip_bytes: int
    rules: Tuple[HeaderRule, ...] = field(default_factory=tuple)

    @property
    def probe_length(self) -> int:
        if not self.rules:
            return 0
        return max(r.offset + len(r.value) for r in self.rules)

    def matches(self, head: bytes) -> bool:
        """True when every rule's signature is found in ``head``.

        A header without rules always applies.
        """
        for rule in self.rules:
            end = rule.offset + len(rule.value)
            if len(head) < end or head[rule.offset:end] != rule.value:
                return False
        return True


@dataclass(frozen=True)
class Fingerprint:
    size: int
    digests: Digests
    skipped: int = 0

    @property
    def content_size(self) -> int:
        """Bytes that fed the digests."""
        return self.size - self.skipped

    @property
    def crc32(self) -> Optional[str]:
        return self.digests.crc32

    @property
    def md5(self) -> Optional[str]:
        return self.digests.md5

    @property
    def sha1(self) -> Optional[str]:
        return self.digests.sha1


def _normalize_kinds(kinds: Iterable[str]) -> Tuple[str, ...]:
    wanted = {str(k).lower() for k in kinds}
    unknown = wanted - set(ALL_DIGEST_KINDS)
    if unknown:
        raise ValueError(f"unknown digest kind(s): {sorted(unknown)}")
    return tuple(k for k in ALL_DIGEST_KINDS if k in wanted)


def _read_exact(stream: BinaryIO, length: int) -> bytes:
    parts = []
    remaining = length
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


def compute_fingerprint(
    stream: BinaryIO,
    kinds: Iterable[str] = ALL_DIGEST_KINDS,
    *,
    skip: int = 0,
    header: Optional[HeaderSpec] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Fingerprint:
    """Compute the requested digests and the byte count of ``stream`` in one pass.

    Args:
        stream: Binary stream positioned at the start of the logical content.
        kinds: Digest kinds to compute (crc32, md5, sha1).
        skip: Leading bytes to exclude from the digests (still counted in size).
        header: Optional header rule; when its signature matches, its
            ``skip_bytes`` replaces ``skip``.
        chunk_size: Read size.

    Read errors propagate; no partial result is ever returned.
    """
    wanted = _normalize_kinds(kinds)
    crc = 0
    md5 = hashlib.md5() if "md5" in wanted else None
    sha1 = hashlib.sha1() if "sha1" in wanted else None

    head = b""
    if header is not None:
        head = _read_exact(stream, header.probe_length)
        if header.matches(head):
            skip = header.skip_bytes
    skip = max(0, int(skip))

    total = 0
    to_skip = skip

    def _feed(data: bytes) -> None:
        nonlocal crc, total, to_skip
        total += len(data)
        if to_skip:
            if len(data) <= to_skip:
                to_skip -= len(data)
                return
            data = data[to_skip:]
            to_skip = 0
        if "crc32" in wanted:
            crc = zlib.crc32(data, crc)
        if md5 is not None:
            md5.update(data)
        if sha1 is not None:
            sha1.update(data)

    if head:
        _feed(head)
    while True:
        data = stream.read(chunk_size)
        if not data:
            break
        _feed(data)

    digests = Digests(
        crc32="%08x" % (crc & 0xFFFFFFFF) if "crc32" in wanted else None,
        md5=md5.hexdigest() if md5 is not None else None,
        sha1=sha1.hexdigest() if sha1 is not None else None,
    )
    return Fingerprint(size=total, digests=digests, skipped=min(skip, total))


@lru_cache(maxsize=1000)
def _fingerprint_file_cached(
    file_path: str,
    mtime_ns: int,
    size_bytes: int,
    kinds: Tuple[str, ...],
    skip: int,
    header: Optional[HeaderSpec],
    chunk_size: int,
) -> Fingerprint:
    with open(file_path, "rb") as f:
        return compute_fingerprint(f, kinds, skip=skip, header=header, chunk_size=chunk_size)


def fingerprint_file(
    file_path: Union[str, Path],
    kinds: Iterable[str] = ALL_DIGEST_KINDS,
    *,
    skip: int = 0,
    header: Optional[HeaderSpec] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Fingerprint:
    """Fingerprint a plain file, cached on (path, mtime, size)."""
    path = os.fspath(file_path)
    stat = os.stat(path)
    return _fingerprint_file_cached(
        path,
        stat.st_mtime_ns,
        int(stat.st_size),
        _normalize_kinds(kinds),
        int(skip),
        header,
        int(chunk_size),
    )


def clear_fingerprint_cache() -> None:
    _fingerprint_file_cached.cache_clear()

"""Container codec contract shared by every supported storage format."""

from __future__ import annotations

import io
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, ClassVar, ContextManager, Iterator, List, Optional, Tuple, Union

from ..config.models import ConversionConfig
from ..exceptions import ContainerError, SizeMismatchError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

COPY_CHUNK_SIZE = 1024 * 1024
SIGNATURE_PROBE_SIZE = 16


class ContainerKind(str, Enum):
    FLAT = "flat"
    ZIP = "zip"
    SEVENZIP = "7z"
    CSO = "cso"
    CHD = "chd"

    @property
    def is_disc_image(self) -> bool:
        return self in (ContainerKind.CSO, ContainerKind.CHD)

    @property
    def is_archive(self) -> bool:
        return self in (ContainerKind.ZIP, ContainerKind.SEVENZIP)

    @classmethod
    def parse(cls, value: Union[str, "ContainerKind"]) -> "ContainerKind":
        if isinstance(value, ContainerKind):
            return value
        text = str(value).strip().lower()
        aliases = {"sevenzip": "7z", "plain": "flat", "raw": "flat"}
        return cls(aliases.get(text, text))


@dataclass(frozen=True)
class EntryInfo:
    """One logical entry as listed by a codec.

    ``size`` is the decoded length when the container knows it up front and
    ``crc32`` the stored checksum where the format keeps one (ZIP, 7z).
    """

    name: str
    size: Optional[int]
    crc32: Optional[str] = None


def read_signature(path: PathLike, length: int = SIGNATURE_PROBE_SIZE) -> bytes:
    with open(path, "rb") as f:
        return f.read(length)


def copy_stream(src: BinaryIO, dst: BinaryIO, chunk_size: int = COPY_CHUNK_SIZE) -> int:
    written = 0
    while True:
        data = src.read(chunk_size)
        if not data:
            break
        dst.write(data)
        written += len(data)
    return written


class ChunkIteratorReader(io.RawIOBase):
    """Read-only stream over an iterator of byte chunks (decoded blocks)."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        super().__init__()
        self._chunks = chunks
        self._buffer = b""
        self._offset = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while self._offset >= len(self._buffer):
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
            self._offset = 0
        n = min(len(b), len(self._buffer) - self._offset)
        b[:n] = self._buffer[self._offset:self._offset + n]
        self._offset += n
        return n

    def close(self) -> None:
        close = getattr(self._chunks, "close", None)
        if close is not None:
            close()
        super().close()


class SizeCheckingReader(io.RawIOBase):
    """Passes reads through and raises SizeMismatchError at EOF when the length is wrong."""

    def __init__(self, inner: BinaryIO, expected: int, file_path: Optional[str] = None) -> None:
        super().__init__()
        self._inner = inner
        self._expected = int(expected)
        self._file_path = file_path
        self._seen = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        data = self._inner.read(len(b))
        if not data:
            if self._seen != self._expected:
                raise SizeMismatchError(
                    "Decoded length differs from the image's logical size",
                    file_path=self._file_path,
                    expected=self._expected,
                    actual=self._seen,
                )
            return 0
        self._seen += len(data)
        if self._seen > self._expected:
            raise SizeMismatchError(
                "Decoded data runs past the image's logical size",
                file_path=self._file_path,
                expected=self._expected,
                actual=self._seen,
            )
        n = len(data)
        b[:n] = data
        return n


class ContainerWriter(ABC):
    """Single-owner writer producing one output container.

    Used as a context manager, a writer that leaves the block without
    ``finalize()`` aborts and removes its partial output.
    """

    def __init__(self, path: PathLike, options: ConversionConfig) -> None:
        self.path = Path(path)
        self.options = options
        self.entries: List[Tuple[str, int]] = []
        self._finalized = False
        self._aborted = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    @abstractmethod
    def write_entry(self, name: str, stream: BinaryIO, size: Optional[int] = None) -> int:
        """Write one entry from ``stream``; returns the number of bytes consumed."""

    @abstractmethod
    def _finalize(self) -> None:
        ...

    def _abort(self) -> None:
        """Release format-specific resources. Output removal is handled by abort()."""

    def finalize(self) -> Path:
        if self._aborted:
            raise ContainerError("Writer already aborted", file_path=str(self.path))
        if not self._finalized:
            self._finalize()
            self._finalized = True
        return self.path

    def abort(self) -> None:
        if self._finalized or self._aborted:
            return
        self._aborted = True
        try:
            self._abort()
        finally:
            if self.path.exists():
                os.remove(self.path)

    def _check_declared_size(self, name: str, declared: Optional[int], written: int) -> None:
        if declared is not None and int(declared) != written:
            raise SizeMismatchError(
                f"Entry {name!r} wrote {written} bytes, declared {declared}",
                file_path=str(self.path),
                expected=int(declared),
                actual=written,
            )

    def __enter__(self) -> "ContainerWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._finalized:
            self.abort()


class ContainerCodec(ABC):
    kind: ClassVar[ContainerKind]
    extension: ClassVar[str]
    signatures: ClassVar[Tuple[bytes, ...]] = ()
    max_entries: ClassVar[Optional[int]] = None

    def __init__(self, options: Optional[ConversionConfig] = None) -> None:
        self.options = options or ConversionConfig()

    def detect(self, head: bytes) -> bool:
        """True when ``head`` (the first bytes of a file) carries this codec's signature."""
        return any(head.startswith(sig) for sig in self.signatures)

    @abstractmethod
    def list_entries(self, path: PathLike) -> List[EntryInfo]:
        ...

    @abstractmethod
    def open_entry(self, path: PathLike, name: str) -> ContextManager[BinaryIO]:
        """Context manager yielding the decoded stream of entry ``name``."""

    @abstractmethod
    def create_writer(self, path: PathLike) -> ContainerWriter:
        ...

    def target_name(self, stem: str) -> str:
        return f"{stem}{self.extension}"

    def _entry_or_raise(self, path: PathLike, name: str) -> EntryInfo:
        for entry in self.list_entries(path):
            if entry.name == name:
                return entry
        raise ContainerError(f"No entry named {name!r}", file_path=str(path))

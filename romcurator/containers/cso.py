"""CSO (compressed ISO, CISO v1) codec.

Layout, little-endian:

- 24-byte header: magic ``CISO``, header size (u32), uncompressed size
  (u64), block size (u32), version (u8), index alignment shift (u8),
  2 reserved bytes
- block index: ``blocks + 1`` u32 entries; ``(entry & 0x7FFFFFFF) << align``
  is the block's file offset, bit 31 marks a block stored uncompressed
- blocks: raw deflate streams (no zlib header)

A CSO holds exactly one logical entry; its length is the header's
uncompressed size and reads that come up short or long raise
SizeMismatchError.
"""

from __future__ import annotations

import io
import logging
import os
import struct
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from ..exceptions import ContainerError, ContainerFormatError, SizeMismatchError
from .base import (
    ChunkIteratorReader,
    ContainerCodec,
    ContainerKind,
    ContainerWriter,
    EntryInfo,
    PathLike,
    SizeCheckingReader,
)

logger = logging.getLogger(__name__)

CSO_MAGIC = b"CISO"
CSO_HEADER = struct.Struct("<4sIQIBB2s")
CSO_HEADER_SIZE = CSO_HEADER.size  # 24
CSO_PLAIN_FLAG = 0x80000000
CSO_OFFSET_MASK = 0x7FFFFFFF
CSO_ENTRY_EXTENSION = ".iso"


@dataclass(frozen=True)
class CsoHeader:
    header_size: int
    total_bytes: int
    block_size: int
    version: int
    align: int

    @property
    def block_count(self) -> int:
        if self.block_size <= 0:
            return 0
        return (self.total_bytes + self.block_size - 1) // self.block_size


def read_cso_header(f: BinaryIO, file_path: Optional[str] = None) -> CsoHeader:
    raw = f.read(CSO_HEADER_SIZE)
    if len(raw) < CSO_HEADER_SIZE:
        raise ContainerFormatError("Truncated CSO header", file_path=file_path)
    magic, header_size, total_bytes, block_size, version, align, _ = CSO_HEADER.unpack(raw)
    if magic != CSO_MAGIC:
        raise ContainerFormatError("Not a CSO image", file_path=file_path)
    if version > 1:
        raise ContainerFormatError(f"Unsupported CSO version {version}", file_path=file_path)
    if block_size <= 0 or block_size & (block_size - 1):
        raise ContainerFormatError(f"Invalid CSO block size {block_size}", file_path=file_path)
    return CsoHeader(header_size or CSO_HEADER_SIZE, total_bytes, block_size, version, align)


def _read_index(f: BinaryIO, header: CsoHeader, file_path: Optional[str]) -> List[int]:
    count = header.block_count + 1
    raw = f.read(count * 4)
    if len(raw) != count * 4:
        raise ContainerFormatError("Truncated CSO block index", file_path=file_path)
    return list(struct.unpack(f"<{count}I", raw))


def _iter_blocks(path: PathLike) -> Iterator[bytes]:
    """Yield decoded blocks; the last one is trimmed to the logical size."""
    file_path = str(path)
    with open(path, "rb") as f:
        header = read_cso_header(f, file_path)
        f.seek(CSO_HEADER_SIZE)
        index = _read_index(f, header, file_path)
        remaining = header.total_bytes
        for i in range(header.block_count):
            start = (index[i] & CSO_OFFSET_MASK) << header.align
            end = (index[i + 1] & CSO_OFFSET_MASK) << header.align
            if end < start:
                raise ContainerFormatError(f"CSO block {i} has a negative length", file_path=file_path)
            f.seek(start)
            raw = f.read(end - start)
            if len(raw) != end - start:
                raise SizeMismatchError(
                    f"CSO block {i} is truncated",
                    file_path=file_path,
                    expected=header.total_bytes,
                    actual=header.total_bytes - remaining,
                )
            want = min(header.block_size, remaining)
            if index[i] & CSO_PLAIN_FLAG:
                data = raw[:header.block_size]
            else:
                try:
                    inflater = zlib.decompressobj(-15)
                    data = inflater.decompress(raw, header.block_size)
                except zlib.error as exc:
                    raise ContainerFormatError(f"CSO block {i} does not inflate: {exc}", file_path=file_path) from exc
            if len(data) < want:
                raise SizeMismatchError(
                    f"CSO block {i} decodes short",
                    file_path=file_path,
                    expected=header.total_bytes,
                    actual=header.total_bytes - remaining + len(data),
                )
            remaining -= want
            yield data[:want]


class CsoWriter(ContainerWriter):
    def __init__(self, path: PathLike, options) -> None:
        super().__init__(path, options)
        self.block_size = int(options.cso_block_size)
        self.level = int(options.cso_compression_level)
        self._handle: Optional[BinaryIO] = None

    def write_entry(self, name: str, stream: BinaryIO, size: Optional[int] = None) -> int:
        if self.entries:
            raise ContainerError("A CSO image holds exactly one entry", file_path=str(self.path))
        if size is None:
            raise ContainerError("CSO images need the entry size up front", file_path=str(self.path))
        total = int(size)
        block_size = self.block_size
        blocks = (total + block_size - 1) // block_size
        index_bytes = (blocks + 1) * 4

        align = 0
        # Compressed blocks never exceed the input, so the input size bounds every offset.
        while ((CSO_HEADER_SIZE + index_bytes + total + blocks * ((1 << align) - 1)) >> align) > CSO_OFFSET_MASK:
            align += 1
        pad_unit = 1 << align

        self._handle = open(self.path, "wb")
        f = self._handle
        f.write(CSO_HEADER.pack(CSO_MAGIC, CSO_HEADER_SIZE, total, block_size, 1, align, b"\x00\x00"))
        f.write(b"\x00" * index_bytes)

        index: List[int] = []
        position = CSO_HEADER_SIZE + index_bytes
        written = 0
        for i in range(blocks):
            want = min(block_size, total - written)
            chunk = stream.read(want)
            while len(chunk) < want:
                more = stream.read(want - len(chunk))
                if not more:
                    break
                chunk += more
            if len(chunk) < want:
                raise SizeMismatchError(
                    f"Entry {name!r} ended early",
                    file_path=str(self.path),
                    expected=total,
                    actual=written + len(chunk),
                )
            written += len(chunk)

            if position % pad_unit:
                padding = pad_unit - position % pad_unit
                f.write(b"\x00" * padding)
                position += padding

            deflater = zlib.compressobj(self.level, zlib.DEFLATED, -15)
            packed = deflater.compress(chunk) + deflater.flush()
            if len(packed) >= len(chunk):
                # The plain-flag reader takes a whole block, so a short final block is zero padded.
                f.write(chunk + b"\x00" * (block_size - len(chunk)) if len(chunk) < block_size else chunk)
                entry = (position >> align) | CSO_PLAIN_FLAG
                position += max(len(chunk), block_size)
            else:
                f.write(packed)
                entry = position >> align
                position += len(packed)
            index.append(entry)

        if stream.read(1):
            raise SizeMismatchError(
                f"Entry {name!r} is longer than declared",
                file_path=str(self.path),
                expected=total,
                actual=written + 1,
            )

        if position % pad_unit:
            padding = pad_unit - position % pad_unit
            f.write(b"\x00" * padding)
            position += padding
        index.append(position >> align)

        f.seek(CSO_HEADER_SIZE)
        f.write(struct.pack(f"<{len(index)}I", *index))
        f.seek(0, io.SEEK_END)
        self.entries.append((name, written))
        return written

    def _finalize(self) -> None:
        if not self.entries or self._handle is None:
            raise ContainerError("Nothing written", file_path=str(self.path))
        self._handle.flush()
        os.fsync(self._handle.fileno())
        self._handle.close()
        self._handle = None

    def _abort(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class CsoCodec(ContainerCodec):
    kind = ContainerKind.CSO
    extension = ".cso"
    signatures = (CSO_MAGIC,)
    max_entries = 1

    def _entry_name(self, path: PathLike) -> str:
        return Path(path).stem + CSO_ENTRY_EXTENSION

    def logical_size(self, path: PathLike) -> int:
        with open(path, "rb") as f:
            return read_cso_header(f, str(path)).total_bytes

    def list_entries(self, path: PathLike) -> List[EntryInfo]:
        return [EntryInfo(name=self._entry_name(path), size=self.logical_size(path))]

    @contextmanager
    def open_entry(self, path: PathLike, name: str) -> Iterator[BinaryIO]:
        if name != self._entry_name(path):
            raise ContainerError(f"No entry named {name!r}", file_path=str(path))
        expected = self.logical_size(path)
        blocks = _iter_blocks(path)
        raw = SizeCheckingReader(ChunkIteratorReader(blocks), expected, str(path))
        stream = io.BufferedReader(raw)
        try:
            yield stream
        finally:
            stream.close()
            blocks.close()

    def create_writer(self, path: PathLike) -> CsoWriter:
        return CsoWriter(path, self.options)

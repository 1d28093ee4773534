"""CHD (MAME Compressed Hunks of Data) codec.

Headers (v3-v5) and the metadata chain are parsed here; hunk decoding and
encoding are delegated to ``chdman``. A CHD holds one logical entry:

- DVD and raw/hard-disk images expose the raw data, whose length must equal
  the header's logical size
- CD/GD-ROM images expose the ``.bin`` produced by ``extractcd``; the
  logical size of a CD CHD counts subcode and hunk padding, so no length is
  known up front

New CHDs are written with ``createdvd`` for ``.iso`` entries that are a
whole number of 2048-byte sectors, otherwise with ``createraw``.

References:
- MAME source: src/lib/util/chd.h
"""

from __future__ import annotations

import io
import logging
import os
import shutil
import struct
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple

from ..exceptions import ContainerError, ContainerFormatError, SizeMismatchError
from ..utils.external_tools import run_chdman
from .base import ContainerCodec, ContainerKind, ContainerWriter, EntryInfo, PathLike, SizeCheckingReader, copy_stream

logger = logging.getLogger(__name__)

CHD_MAGIC = b"MComprHD"

# Header sizes by version
CHD_HEADER_SIZES = {
    1: 76,
    2: 80,
    3: 120,
    4: 108,
    5: 124,
}

COMPRESSION_CODECS = {
    0x00000000: "none",
    0x7A6C6962: "zlib",
    0x7A737464: "zstd",
    0x6C7A6D61: "lzma",
    0x68756666: "huff",
    0x666C6163: "flac",
    0x63647A6C: "cdzl",
    0x63647A73: "cdzs",
    0x63646C7A: "cdlz",
    0x6364666C: "cdfl",
}

METADATA_HEADER_SIZE = 16
MAX_METADATA_ENTRIES = 256

RAW_UNIT_BYTES = 512
RAW_HUNK_BYTES = 4096
DVD_SECTOR_BYTES = 2048


class ChdMediaType(Enum):
    UNKNOWN = "Unknown"
    CDROM = "CD-ROM"
    GDROM = "GD-ROM"
    DVD = "DVD"
    HDD = "Hard Disk"
    LASERDISC = "LaserDisc"


_TAG_MEDIA = {
    b"CHT2": ChdMediaType.CDROM,
    b"CHTR": ChdMediaType.CDROM,
    b"CHCD": ChdMediaType.CDROM,
    b"CHGT": ChdMediaType.GDROM,
    b"CHGD": ChdMediaType.GDROM,
    b"DVD ": ChdMediaType.DVD,
    b"GDDD": ChdMediaType.HDD,
    b"AVAV": ChdMediaType.LASERDISC,
    b"AVLD": ChdMediaType.LASERDISC,
}


@dataclass(frozen=True)
class ChdHeader:
    version: int
    logical_bytes: int
    hunk_bytes: int
    unit_bytes: int
    meta_offset: int
    compression: Tuple[str, ...]
    sha1: Optional[str]
    raw_sha1: Optional[str]
    parent_sha1: Optional[str]
    media_type: ChdMediaType = ChdMediaType.UNKNOWN
    metadata_tags: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def entry_extension(self) -> str:
        return ".iso" if self.media_type is ChdMediaType.DVD else ".bin"

    @property
    def has_fixed_length(self) -> bool:
        return self.media_type not in (ChdMediaType.CDROM, ChdMediaType.GDROM, ChdMediaType.LASERDISC)


def _hex_or_none(raw: bytes) -> Optional[str]:
    if not raw or not any(raw):
        return None
    return raw.hex()


def _decode_compression(code: int) -> str:
    if code in COMPRESSION_CODECS:
        return COMPRESSION_CODECS[code]
    try:
        return struct.pack(">I", code).decode("ascii").strip() or "unknown"
    except UnicodeDecodeError:
        return f"0x{code:08x}"


def _scan_metadata(f: BinaryIO, meta_offset: int, file_size: int) -> Tuple[ChdMediaType, Tuple[str, ...]]:
    """Walk the metadata chain and derive the media type from its tags."""
    media_type = ChdMediaType.UNKNOWN
    tags: List[str] = []
    offset = meta_offset
    seen = set()
    while offset and offset < file_size and len(tags) < MAX_METADATA_ENTRIES:
        if offset in seen:
            break
        seen.add(offset)
        f.seek(offset)
        raw = f.read(METADATA_HEADER_SIZE)
        if len(raw) < METADATA_HEADER_SIZE:
            break
        tag = raw[0:4]
        offset = struct.unpack_from(">Q", raw, 8)[0]
        tags.append(tag.decode("latin-1"))
        if media_type is ChdMediaType.UNKNOWN and tag in _TAG_MEDIA:
            media_type = _TAG_MEDIA[tag]
    return media_type, tuple(tags)


def read_chd_header(path: PathLike) -> ChdHeader:
    """Parse a CHD header; raises ContainerFormatError for anything unreadable."""
    file_path = str(path)
    file_size = os.path.getsize(path)
    with open(path, "rb") as f:
        head = f.read(16)
        if len(head) < 16 or head[:8] != CHD_MAGIC:
            raise ContainerFormatError("Not a CHD image", file_path=file_path)
        header_len, version = struct.unpack_from(">II", head, 8)
        if version not in (3, 4, 5):
            raise ContainerFormatError(f"Unsupported CHD version {version}", file_path=file_path)
        f.seek(0)
        header = f.read(max(header_len, CHD_HEADER_SIZES[version]))
        if len(header) < CHD_HEADER_SIZES[version]:
            raise ContainerFormatError("Truncated CHD header", file_path=file_path)

        if version == 5:
            compression = tuple(
                _decode_compression(struct.unpack_from(">I", header, 16 + i * 4)[0])
                for i in range(4)
                if struct.unpack_from(">I", header, 16 + i * 4)[0]
            ) or ("none",)
            logical_bytes = struct.unpack_from(">Q", header, 32)[0]
            meta_offset = struct.unpack_from(">Q", header, 48)[0]
            hunk_bytes = struct.unpack_from(">I", header, 56)[0]
            unit_bytes = struct.unpack_from(">I", header, 60)[0]
            raw_sha1 = _hex_or_none(header[64:84])
            sha1 = _hex_or_none(header[84:104])
            parent_sha1 = _hex_or_none(header[104:124])
        elif version == 4:
            compression = (_decode_compression(struct.unpack_from(">I", header, 20)[0]),)
            logical_bytes = struct.unpack_from(">Q", header, 28)[0]
            meta_offset = struct.unpack_from(">Q", header, 36)[0]
            hunk_bytes = struct.unpack_from(">I", header, 44)[0]
            unit_bytes = 0
            sha1 = _hex_or_none(header[48:68])
            parent_sha1 = _hex_or_none(header[68:88])
            raw_sha1 = _hex_or_none(header[88:108])
        else:
            compression = (_decode_compression(struct.unpack_from(">I", header, 20)[0]),)
            logical_bytes = struct.unpack_from(">Q", header, 28)[0]
            meta_offset = struct.unpack_from(">Q", header, 36)[0]
            hunk_bytes = struct.unpack_from(">I", header, 76)[0]
            unit_bytes = 0
            sha1 = _hex_or_none(header[80:100])
            parent_sha1 = _hex_or_none(header[100:120])
            raw_sha1 = None

        media_type, tags = _scan_metadata(f, meta_offset, file_size)

    return ChdHeader(
        version=version,
        logical_bytes=int(logical_bytes),
        hunk_bytes=int(hunk_bytes),
        unit_bytes=int(unit_bytes),
        meta_offset=int(meta_offset),
        compression=compression,
        sha1=sha1,
        raw_sha1=raw_sha1,
        parent_sha1=parent_sha1,
        media_type=media_type,
        metadata_tags=tags,
    )


class ChdWriter(ContainerWriter):
    def __init__(self, path: PathLike, options) -> None:
        super().__init__(path, options)
        self._scratch = Path(tempfile.mkdtemp(prefix="curator-chd-", dir=options.temp_dir))
        self._spool: Optional[Path] = None

    def write_entry(self, name: str, stream: BinaryIO, size: Optional[int] = None) -> int:
        if self.entries:
            raise ContainerError("A CHD image holds exactly one entry", file_path=str(self.path))
        spool = self._scratch / ("entry" + (Path(name).suffix.lower() or ".bin"))
        with open(spool, "wb") as dst:
            written = copy_stream(stream, dst)
        self._check_declared_size(name, size, written)
        if written == 0 or written % RAW_UNIT_BYTES:
            raise ContainerError(
                f"CHD images need a whole number of {RAW_UNIT_BYTES}-byte units; {name!r} has {written} bytes",
                file_path=str(self.path),
            )
        self._spool = spool
        self.entries.append((name, written))
        return written

    def _command(self) -> List[str]:
        assert self._spool is not None
        name, written = self.entries[0]
        if name.lower().endswith(".iso") and written % DVD_SECTOR_BYTES == 0:
            return ["createdvd", "-i", str(self._spool), "-o", str(self.path), "-f"]
        return [
            "createraw",
            "-i", str(self._spool),
            "-o", str(self.path),
            "--hunksize", str(RAW_HUNK_BYTES),
            "--unitsize", str(RAW_UNIT_BYTES),
            "-f",
        ]

    def _finalize(self) -> None:
        if not self.entries or self._spool is None:
            raise ContainerError("Nothing written", file_path=str(self.path))
        try:
            run_chdman(
                self._command(),
                chdman_path=self.options.chdman_path,
                timeout_sec=self.options.chdman_timeout_sec,
            )
        finally:
            shutil.rmtree(self._scratch, ignore_errors=True)
        header = read_chd_header(self.path)
        written = self.entries[0][1]
        if header.logical_bytes != written:
            raise SizeMismatchError(
                "chdman produced an image of the wrong logical size",
                file_path=str(self.path),
                expected=written,
                actual=header.logical_bytes,
            )

    def _abort(self) -> None:
        shutil.rmtree(self._scratch, ignore_errors=True)


class ChdCodec(ContainerCodec):
    kind = ContainerKind.CHD
    extension = ".chd"
    signatures = (CHD_MAGIC,)
    max_entries = 1

    def list_entries(self, path: PathLike) -> List[EntryInfo]:
        header = read_chd_header(path)
        size = header.logical_bytes if header.has_fixed_length else None
        return [EntryInfo(name=Path(path).stem + header.entry_extension, size=size)]

    def _extract_command(self, header: ChdHeader, source: PathLike, out_dir: Path) -> Tuple[List[str], Path]:
        src = str(source)
        if header.media_type in (ChdMediaType.CDROM, ChdMediaType.GDROM):
            out = out_dir / "entry.bin"
            return ["extractcd", "-i", src, "-o", str(out_dir / "entry.cue"), "-ob", str(out), "-f"], out
        if header.media_type is ChdMediaType.DVD:
            out = out_dir / "entry.iso"
            return ["extractdvd", "-i", src, "-o", str(out), "-f"], out
        if header.media_type is ChdMediaType.HDD:
            out = out_dir / "entry.bin"
            return ["extracthd", "-i", src, "-o", str(out), "-f"], out
        if header.media_type is ChdMediaType.LASERDISC:
            raise ContainerError("LaserDisc CHDs are not supported", file_path=src)
        out = out_dir / "entry.bin"
        return ["extractraw", "-i", src, "-o", str(out), "-f"], out

    @contextmanager
    def open_entry(self, path: PathLike, name: str) -> Iterator[BinaryIO]:
        header = read_chd_header(path)
        if name != Path(path).stem + header.entry_extension:
            raise ContainerError(f"No entry named {name!r}", file_path=str(path))
        if header.parent_sha1:
            raise ContainerError("CHDs with a parent image are not supported", file_path=str(path))
        scratch = Path(tempfile.mkdtemp(prefix="curator-chd-read-", dir=self.options.temp_dir))
        try:
            args, extracted = self._extract_command(header, path, scratch)
            run_chdman(args, chdman_path=self.options.chdman_path, timeout_sec=self.options.chdman_timeout_sec)
            with open(extracted, "rb") as raw:
                if header.has_fixed_length:
                    stream = io.BufferedReader(SizeCheckingReader(raw, header.logical_bytes, str(path)))
                    try:
                        yield stream
                    finally:
                        stream.close()
                else:
                    yield raw
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def create_writer(self, path: PathLike) -> ChdWriter:
        return ChdWriter(path, self.options)

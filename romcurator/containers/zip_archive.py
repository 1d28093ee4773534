"""ZIP codec backed by the standard library ``zipfile`` module.

Output is reproducible: every entry gets the same fixed timestamp and
permission bits, so converting the same content twice yields the same bytes.
"""

from __future__ import annotations

import logging
import zipfile
from contextlib import contextmanager
from typing import BinaryIO, Iterator, List, Optional

from ..exceptions import ContainerError, ContainerFormatError
from ..security.security_utils import is_safe_archive_member
from .base import ContainerCodec, ContainerKind, ContainerWriter, EntryInfo, PathLike, copy_stream

logger = logging.getLogger(__name__)

ZIP_FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
ZIP64_THRESHOLD = 0x7FFFFFFF


def _safe_members(zf: zipfile.ZipFile, path: PathLike) -> List[zipfile.ZipInfo]:
    members = []
    for info in zf.infolist():
        if info.is_dir():
            continue
        if not is_safe_archive_member(info):
            logger.warning("Skipping unsafe archive member %r in %s", info.filename, path)
            continue
        members.append(info)
    return members


class ZipWriter(ContainerWriter):
    def __init__(self, path: PathLike, options) -> None:
        super().__init__(path, options)
        self._zip = zipfile.ZipFile(
            self.path,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=options.zip_compression_level,
            allowZip64=True,
        )

    def write_entry(self, name: str, stream: BinaryIO, size: Optional[int] = None) -> int:
        if not is_safe_archive_member(name):
            raise ContainerError(f"Refusing unsafe entry name {name!r}", file_path=str(self.path))
        if any(existing == name for existing, _ in self.entries):
            raise ContainerError(f"Duplicate entry name {name!r}", file_path=str(self.path))
        info = zipfile.ZipInfo(name, date_time=ZIP_FIXED_DATE_TIME)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        force_zip64 = size is None or int(size) > ZIP64_THRESHOLD
        with self._zip.open(info, "w", force_zip64=force_zip64) as dst:
            written = copy_stream(stream, dst)
        self._check_declared_size(name, size, written)
        self.entries.append((name, written))
        return written

    def _finalize(self) -> None:
        if not self.entries:
            raise ContainerError("Nothing written", file_path=str(self.path))
        self._zip.close()

    def _abort(self) -> None:
        self._zip.close()


class ZipCodec(ContainerCodec):
    kind = ContainerKind.ZIP
    extension = ".zip"
    signatures = (b"PK\x03\x04", b"PK\x05\x06")

    def list_entries(self, path: PathLike) -> List[EntryInfo]:
        try:
            with zipfile.ZipFile(path, "r") as zf:
                return [
                    EntryInfo(name=info.filename, size=int(info.file_size), crc32="%08x" % (info.CRC & 0xFFFFFFFF))
                    for info in _safe_members(zf, path)
                ]
        except zipfile.BadZipFile as exc:
            raise ContainerFormatError(f"Corrupt zip archive: {exc}", file_path=str(path)) from exc

    @contextmanager
    def open_entry(self, path: PathLike, name: str) -> Iterator[BinaryIO]:
        try:
            zf = zipfile.ZipFile(path, "r")
        except zipfile.BadZipFile as exc:
            raise ContainerFormatError(f"Corrupt zip archive: {exc}", file_path=str(path)) from exc
        with zf:
            members = {info.filename: info for info in _safe_members(zf, path)}
            info = members.get(name)
            if info is None:
                raise ContainerError(f"No entry named {name!r}", file_path=str(path))
            with zf.open(info, "r") as stream:
                yield stream

    def create_writer(self, path: PathLike) -> ZipWriter:
        return ZipWriter(path, self.options)

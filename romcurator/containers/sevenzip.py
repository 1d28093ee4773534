"""7z codec backed by ``py7zr``.

py7zr cannot hand out a streaming reader for a single member, so reads go
through a scoped temporary directory that is removed when the entry stream
is closed. Writes are spooled to a temporary file per entry for the same
reason.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

import py7zr
from py7zr.exceptions import Bad7zFile

from ..exceptions import ContainerError, ContainerFormatError
from ..security.security_utils import is_safe_archive_member
from .base import ContainerCodec, ContainerKind, ContainerWriter, EntryInfo, PathLike, copy_stream

logger = logging.getLogger(__name__)


class SevenZipWriter(ContainerWriter):
    def __init__(self, path: PathLike, options) -> None:
        super().__init__(path, options)
        self._spool_dir = Path(tempfile.mkdtemp(prefix="curator-7z-", dir=options.temp_dir))
        self._spooled: List[tuple] = []

    def write_entry(self, name: str, stream: BinaryIO, size: Optional[int] = None) -> int:
        if not is_safe_archive_member(name):
            raise ContainerError(f"Refusing unsafe entry name {name!r}", file_path=str(self.path))
        if any(existing == name for existing, _ in self.entries):
            raise ContainerError(f"Duplicate entry name {name!r}", file_path=str(self.path))
        spool_path = self._spool_dir / f"entry{len(self._spooled):05d}"
        with open(spool_path, "wb") as dst:
            written = copy_stream(stream, dst)
        self._check_declared_size(name, size, written)
        self._spooled.append((spool_path, name))
        self.entries.append((name, written))
        return written

    def _finalize(self) -> None:
        if not self.entries:
            raise ContainerError("Nothing written", file_path=str(self.path))
        try:
            with py7zr.SevenZipFile(self.path, "w") as archive:
                for spool_path, name in self._spooled:
                    archive.write(spool_path, arcname=name)
        finally:
            shutil.rmtree(self._spool_dir, ignore_errors=True)

    def _abort(self) -> None:
        shutil.rmtree(self._spool_dir, ignore_errors=True)


class SevenZipCodec(ContainerCodec):
    kind = ContainerKind.SEVENZIP
    extension = ".7z"
    signatures = (b"7z\xbc\xaf\x27\x1c",)

    def _members(self, path: PathLike) -> List[EntryInfo]:
        try:
            with py7zr.SevenZipFile(path, "r") as archive:
                infos = archive.list()
        except Bad7zFile as exc:
            raise ContainerFormatError(f"Corrupt 7z archive: {exc}", file_path=str(path)) from exc
        entries = []
        for info in infos:
            if info.is_directory:
                continue
            if not is_safe_archive_member(info.filename):
                logger.warning("Skipping unsafe archive member %r in %s", info.filename, path)
                continue
            crc = getattr(info, "crc32", None)
            entries.append(
                EntryInfo(
                    name=info.filename,
                    size=int(info.uncompressed) if info.uncompressed is not None else None,
                    crc32="%08x" % (crc & 0xFFFFFFFF) if isinstance(crc, int) else None,
                )
            )
        return entries

    def list_entries(self, path: PathLike) -> List[EntryInfo]:
        return self._members(path)

    @contextmanager
    def open_entry(self, path: PathLike, name: str) -> Iterator[BinaryIO]:
        self._entry_or_raise(path, name)
        scratch = tempfile.mkdtemp(prefix="curator-7z-read-", dir=self.options.temp_dir)
        try:
            try:
                with py7zr.SevenZipFile(path, "r") as archive:
                    archive.extract(path=scratch, targets=[name])
            except Bad7zFile as exc:
                raise ContainerFormatError(f"Corrupt 7z archive: {exc}", file_path=str(path)) from exc
            extracted = os.path.join(scratch, *name.replace("\\", "/").split("/"))
            if not os.path.isfile(extracted):
                raise ContainerFormatError(f"Entry {name!r} could not be extracted", file_path=str(path))
            with open(extracted, "rb") as stream:
                yield stream
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def create_writer(self, path: PathLike) -> SevenZipWriter:
        return SevenZipWriter(path, self.options)

"""Flat file codec: the file is its own single entry."""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from ..exceptions import ContainerError
from .base import ContainerCodec, ContainerKind, ContainerWriter, EntryInfo, PathLike, copy_stream


class FlatWriter(ContainerWriter):
    def __init__(self, path: PathLike, options) -> None:
        super().__init__(path, options)
        self._handle: Optional[BinaryIO] = None

    def write_entry(self, name: str, stream: BinaryIO, size: Optional[int] = None) -> int:
        if self.entries:
            raise ContainerError("A flat file holds exactly one entry", file_path=str(self.path))
        self._handle = open(self.path, "wb")
        written = copy_stream(stream, self._handle)
        self._check_declared_size(name, size, written)
        self.entries.append((name, written))
        return written

    def _finalize(self) -> None:
        if not self.entries:
            raise ContainerError("Nothing written", file_path=str(self.path))
        if self._handle is not None:
            self._handle.flush()
            os.fsync(self._handle.fileno())
            self._handle.close()
            self._handle = None

    def _abort(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class FlatCodec(ContainerCodec):
    kind = ContainerKind.FLAT
    extension = ""
    max_entries = 1

    def detect(self, head: bytes) -> bool:
        # Chosen by the registry when no container signature matches.
        return False

    def list_entries(self, path: PathLike) -> List[EntryInfo]:
        p = Path(path)
        return [EntryInfo(name=p.name, size=p.stat().st_size)]

    @contextmanager
    def open_entry(self, path: PathLike, name: str) -> Iterator[BinaryIO]:
        with open(path, "rb") as f:
            yield f

    def create_writer(self, path: PathLike) -> FlatWriter:
        return FlatWriter(path, self.options)

    def target_name(self, stem: str) -> str:
        # Flat targets keep the entry's own name.
        return stem

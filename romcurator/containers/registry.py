"""Codec registry and signature-based container detection."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional, Tuple

from ..config.models import ConversionConfig
from ..exceptions import ContainerError, UnsupportedContainerError
from .base import ContainerCodec, ContainerKind, PathLike, read_signature
from .chd import ChdCodec
from .cso import CsoCodec
from .flat import FlatCodec
from .sevenzip import SevenZipCodec
from .zip_archive import ZipCodec

logger = logging.getLogger(__name__)

CODEC_CLASSES = (FlatCodec, ZipCodec, SevenZipCodec, CsoCodec, ChdCodec)

# Container signatures we recognise but do not decode.
UNSUPPORTED_SIGNATURES: Tuple[Tuple[bytes, str], ...] = (
    (b"Rar!\x1a\x07", "rar"),
    (b"\x1f\x8b", "gzip"),
    (b"BZh", "bzip2"),
    (b"\xfd7zXZ\x00", "xz"),
    (b"ZISO", "zso"),
    (b"DAX\x00", "dax"),
    (b"JISO", "jiso"),
    (b"RVZ\x01", "rvz"),
    (b"WIA\x01", "wia"),
)


class CodecRegistry:
    """Maps every :class:`ContainerKind` to exactly one codec."""

    def __init__(self, options: Optional[ConversionConfig] = None,
                 codecs: Optional[Iterable[ContainerCodec]] = None) -> None:
        self.options = options or ConversionConfig()
        if codecs is None:
            codecs = [cls(self.options) for cls in CODEC_CLASSES]
        self._codecs: Dict[ContainerKind, ContainerCodec] = {}
        for codec in codecs:
            if codec.kind in self._codecs:
                raise ContainerError(f"Two codecs registered for {codec.kind.value}")
            self._codecs[codec.kind] = codec
        missing = [kind.value for kind in ContainerKind if kind not in self._codecs]
        if missing:
            raise ContainerError(f"No codec registered for: {', '.join(missing)}")

    def codec(self, kind: ContainerKind) -> ContainerCodec:
        return self._codecs[ContainerKind.parse(kind)]

    def detect_kind(self, path: PathLike) -> ContainerKind:
        """Classify a file by its leading bytes only.

        Raises UnsupportedContainerError for known container formats without a
        codec. Files without any container signature are raw content.
        """
        head = read_signature(path)
        for kind, codec in self._codecs.items():
            if kind is not ContainerKind.FLAT and codec.detect(head):
                return kind
        for signature, label in UNSUPPORTED_SIGNATURES:
            if head.startswith(signature):
                raise UnsupportedContainerError(
                    f"Unsupported container format: {label}",
                    file_path=str(path),
                    signature=label,
                )
        return ContainerKind.FLAT

    def detect(self, path: PathLike) -> ContainerCodec:
        return self._codecs[self.detect_kind(path)]

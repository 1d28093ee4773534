"""Container codec layer: flat files, ZIP, 7z, CSO and CHD."""

from .base import ContainerCodec, ContainerKind, ContainerWriter, EntryInfo
from .registry import CodecRegistry, UNSUPPORTED_SIGNATURES

__all__ = [
    "CodecRegistry",
    "ContainerCodec",
    "ContainerKind",
    "ContainerWriter",
    "EntryInfo",
    "UNSUPPORTED_SIGNATURES",
]

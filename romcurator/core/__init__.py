"""Catalog model, DAT parsing and the persistent catalog store."""

from .catalog_models import CatalogSnapshot, GameRecord, RomBinding, RomRecord, RomStatus, SystemRecord
from .catalog_store import CatalogStore
from .dat_parser import DatDocument, DatGame, DatParseIssue, DatRom, parse_dat, parse_header_detector
from .name_parsing import ReleaseInfo, parse_release_info

__all__ = [
    "CatalogSnapshot",
    "CatalogStore",
    "DatDocument",
    "DatGame",
    "DatParseIssue",
    "DatRom",
    "GameRecord",
    "ReleaseInfo",
    "RomBinding",
    "RomRecord",
    "RomStatus",
    "SystemRecord",
    "parse_dat",
    "parse_header_detector",
    "parse_release_info",
]

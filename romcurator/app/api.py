"""Public controller API surface for the CLI and integrations.

Centralizes stable imports to keep callers decoupled from controller internals.
"""

from __future__ import annotations

from ..core.catalog_store import CatalogStore
from ..duplicates.parent_clone import CloneGroup, build_clone_groups
from ..duplicates.preferred_variants import select_one_game_one_rom
from .check_controller import check_library, check_snapshot
from .conversion_controller import convert, plan_conversions, record_conversions
from .import_controller import import_catalog, import_document
from .models import (
    CancelToken,
    CheckItem,
    CheckReport,
    CheckStatus,
    ConversionJob,
    ConversionReport,
    FileIssue,
    FileMove,
    ImportReport,
    JobStatus,
    MatchResult,
    MatchStatus,
    MoveKind,
    MoveStatus,
    OrganizeReport,
    ProgressCallback,
    ReconcileReport,
    Selection,
    SelectionReport,
    to_jsonable,
)
from .organize_controller import organize_library, plan_moves, trash_check_failures
from .reconcile_controller import reconcile, reconcile_snapshot, record_bindings

__all__ = [
    "CancelToken",
    "CatalogStore",
    "CheckItem",
    "CheckReport",
    "CheckStatus",
    "CloneGroup",
    "ConversionJob",
    "ConversionReport",
    "FileIssue",
    "FileMove",
    "ImportReport",
    "JobStatus",
    "MatchResult",
    "MatchStatus",
    "MoveKind",
    "MoveStatus",
    "OrganizeReport",
    "ProgressCallback",
    "ReconcileReport",
    "Selection",
    "SelectionReport",
    "build_clone_groups",
    "check_library",
    "check_snapshot",
    "convert",
    "import_catalog",
    "import_document",
    "organize_library",
    "plan_moves",
    "plan_conversions",
    "reconcile",
    "reconcile_snapshot",
    "record_bindings",
    "record_conversions",
    "select_one_game_one_rom",
    "to_jsonable",
    "trash_check_failures",
]

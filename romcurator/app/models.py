"""Shared type aliases, report dataclasses and the cancel token for app controllers."""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..containers.base import ContainerKind
from ..core.dat_parser import DatParseIssue
from ..hash_utils import Digests, HeaderSpec

ProgressCallback = Callable[[int, int], None]


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def event(self) -> threading.Event:
        return self._event

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


def to_jsonable(value: Any) -> Any:
    """Convert reports (dataclasses, enums, paths, bytes, tuples) into JSON-ready values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Digests):
        return {k: v for k, v in value.as_dict().items() if v}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.hex().upper()
    return value


# =====================================================================================================
# Import
# =====================================================================================================

@dataclass(frozen=True)
class ImportReport:
    system: str
    source: Optional[str]
    system_created: bool
    games_added: int
    games_updated: int
    games_removed: int
    added: int
    replaced: int
    unchanged: int
    retained: int
    pruned: int
    orphans: int
    issues: Tuple[DatParseIssue, ...] = ()
    structural_errors: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.system_created or self.games_added or self.games_updated or self.games_removed
                    or self.added or self.replaced or self.pruned)


# =====================================================================================================
# Reconcile
# =====================================================================================================

class MatchStatus(str, Enum):
    EXACT = "exact"
    MISMATCH = "mismatch"
    UNRECOGNIZED = "unrecognized"
    MISSING = "missing"


@dataclass(frozen=True)
class MatchResult:
    status: MatchStatus
    path: Optional[str] = None
    entry_name: Optional[str] = None
    container: Optional[ContainerKind] = None
    size: Optional[int] = None
    rom_id: Optional[int] = None
    game_name: Optional[str] = None
    rom_name: Optional[str] = None
    expected: Optional[Digests] = None
    actual: Optional[Digests] = None
    nearest: Optional[str] = None
    duplicate_rom_ids: Tuple[int, ...] = ()
    redundant: bool = False
    renamed: bool = False
    reason: Optional[str] = None


@dataclass(frozen=True)
class FileIssue:
    path: str
    reason: str


@dataclass(frozen=True)
class ReconcileReport:
    system: str
    root: str
    results: Tuple[MatchResult, ...]
    unsupported: Tuple[FileIssue, ...] = ()
    errors: Tuple[FileIssue, ...] = ()
    complete_games: Tuple[str, ...] = ()
    cancelled: bool = False
    header: Optional[HeaderSpec] = None

    @property
    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in MatchStatus}
        for result in self.results:
            totals[result.status.value] += 1
        totals["redundant"] = sum(1 for r in self.results if r.redundant)
        totals["unsupported"] = len(self.unsupported)
        totals["errors"] = len(self.errors)
        return totals

    def by_status(self, status: MatchStatus) -> List[MatchResult]:
        return [r for r in self.results if r.status is status]


# =====================================================================================================
# 1G1R selection
# =====================================================================================================

@dataclass(frozen=True)
class Selection:
    group: str
    game_id: int
    game_name: str
    ranked: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SelectionReport:
    system: str
    selections: Tuple[Selection, ...]
    unselected: Tuple[str, ...] = ()

    def selected_game_ids(self) -> Tuple[int, ...]:
        return tuple(s.game_id for s in self.selections)


# =====================================================================================================
# Conversion
# =====================================================================================================

class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ConversionJob:
    source_path: str
    target_kind: ContainerKind
    expected: Dict[str, Digests] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    target_path: Optional[str] = None
    entry_names: Dict[str, str] = field(default_factory=dict)
    source_removed: bool = False
    error: Optional[str] = None
    header: Optional[HeaderSpec] = None

    def advance(self, status: JobStatus, **changes: Any) -> "ConversionJob":
        return dataclasses.replace(self, status=status, **changes)


@dataclass(frozen=True)
class ConversionReport:
    jobs: Tuple[ConversionJob, ...]
    cancelled: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in JobStatus}
        for job in self.jobs:
            totals[job.status.value] += 1
        totals["converted"] = totals[JobStatus.VERIFIED.value]
        return totals


# =====================================================================================================
# Library check
# =====================================================================================================

class CheckStatus(str, Enum):
    OK = "ok"
    CHANGED = "changed"
    MISSING_FILE = "missing_file"
    ERROR = "error"


@dataclass(frozen=True)
class CheckItem:
    rom_id: int
    rom_name: str
    path: str
    entry_name: str
    status: CheckStatus
    reason: Optional[str] = None


@dataclass(frozen=True)
class CheckReport:
    system: str
    items: Tuple[CheckItem, ...]
    unbound: int = 0
    cancelled: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in CheckStatus}
        for item in self.items:
            totals[item.status.value] += 1
        totals["unbound"] = self.unbound
        return totals


# =====================================================================================================
# Organize / trash
# =====================================================================================================

class MoveKind(str, Enum):
    RENAME = "rename"
    TRASH = "trash"


class MoveStatus(str, Enum):
    PLANNED = "planned"
    MOVED = "moved"
    FAILED = "failed"


@dataclass(frozen=True)
class FileMove:
    source: str
    target: str
    kind: MoveKind
    status: MoveStatus = MoveStatus.PLANNED
    rom_id: Optional[int] = None
    entry_name: Optional[str] = None
    error: Optional[str] = None

    def advance(self, status: MoveStatus, **changes: Any) -> "FileMove":
        return dataclasses.replace(self, status=status, **changes)


@dataclass(frozen=True)
class OrganizeReport:
    system: str
    moves: Tuple[FileMove, ...]
    dry_run: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        totals = {status.value: 0 for status in MoveStatus}
        for move in self.moves:
            totals[move.status.value] += 1
        for kind in MoveKind:
            totals[kind.value] = sum(1 for m in self.moves if m.kind is kind and m.status is MoveStatus.MOVED)
        return totals

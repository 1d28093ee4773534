"""Catalog records and the immutable per-system snapshot read by the reconciler and selector."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..hash_utils import Digests, HeaderSpec
from .name_parsing import ReleaseInfo


class RomStatus(str, Enum):
    GOOD = "good"
    BADDUMP = "baddump"
    NODUMP = "nodump"
    VERIFIED = "verified"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RomStatus":
        text = str(value or "good").strip().lower()
        try:
            return cls(text)
        except ValueError:
            return cls.GOOD


@dataclass(frozen=True)
class SystemRecord:
    id: int
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    header: Optional[HeaderSpec] = None


@dataclass(frozen=True)
class GameRecord:
    id: int
    system_id: int
    name: str
    description: Optional[str] = None
    parent_name: Optional[str] = None
    parent_id: Optional[int] = None
    release: ReleaseInfo = ReleaseInfo()

    @property
    def is_clone(self) -> bool:
        return self.parent_name is not None

    @property
    def is_orphan(self) -> bool:
        """Clone whose parent is not in the catalog."""
        return self.parent_name is not None and self.parent_id is None


@dataclass(frozen=True)
class RomRecord:
    id: int
    game_id: int
    name: str
    size: int
    digests: Digests
    rom_of: Optional[str] = None
    header_skip: int = 0
    status: RomStatus = RomStatus.GOOD


@dataclass(frozen=True)
class RomBinding:
    """Persisted link between a rom and the file entry that satisfies it."""

    rom_id: int
    path: str
    entry_name: str
    container: str


class CatalogSnapshot:
    """Read-only view of one system's catalog.

    Built once per run; every index is a read-only mapping so concurrent
    readers need no locking.
    """

    def __init__(
        self,
        system: SystemRecord,
        games: Iterable[GameRecord],
        roms: Iterable[RomRecord],
        bindings: Iterable[RomBinding] = (),
    ) -> None:
        self.system = system
        self.games: Tuple[GameRecord, ...] = tuple(sorted(games, key=lambda g: g.id))
        self.roms: Tuple[RomRecord, ...] = tuple(sorted(roms, key=lambda r: r.id))

        games_by_id = {g.id: g for g in self.games}
        games_by_name = {g.name: g for g in self.games}
        roms_by_game: Dict[int, List[RomRecord]] = {}
        roms_by_size: Dict[int, List[RomRecord]] = {}
        for rom in self.roms:
            roms_by_game.setdefault(rom.game_id, []).append(rom)
            roms_by_size.setdefault(rom.size, []).append(rom)

        self.games_by_id: Mapping[int, GameRecord] = MappingProxyType(games_by_id)
        self.games_by_name: Mapping[str, GameRecord] = MappingProxyType(games_by_name)
        self.roms_by_id: Mapping[int, RomRecord] = MappingProxyType({r.id: r for r in self.roms})
        self.roms_by_game: Mapping[int, Tuple[RomRecord, ...]] = MappingProxyType(
            {k: tuple(v) for k, v in roms_by_game.items()}
        )
        self.roms_by_size: Mapping[int, Tuple[RomRecord, ...]] = MappingProxyType(
            {k: tuple(v) for k, v in roms_by_size.items()}
        )
        self.bindings: Mapping[int, RomBinding] = MappingProxyType({b.rom_id: b for b in bindings})

        skips = {r.header_skip for r in self.roms if r.header_skip}
        if system.header is not None and system.header.skip_bytes:
            skips.add(system.header.skip_bytes)
        self._header_skips: Tuple[int, ...] = tuple(sorted(skips))

    @property
    def header(self) -> Optional[HeaderSpec]:
        return self.system.header

    def candidates_for_size(self, observed_size: int) -> Tuple[RomRecord, ...]:
        """Roms whose declared size fits an entry of ``observed_size`` bytes.

        With a header rule, an entry may also be ``skip`` bytes longer than
        the declared (headerless) size.
        """
        found = {r.id: r for r in self.roms_by_size.get(observed_size, ())}
        for skip in self._header_skips:
            if observed_size > skip:
                for rom in self.roms_by_size.get(observed_size - skip, ()):
                    found.setdefault(rom.id, rom)
        return tuple(found[k] for k in sorted(found))

    def required_roms(self, game_id: int) -> Tuple[RomRecord, ...]:
        """Roms of a game that a complete set must hold; ``nodump`` roms have no dump to hold."""
        return tuple(r for r in self.roms_by_game.get(game_id, ()) if r.status is not RomStatus.NODUMP)

    def game_of(self, rom: RomRecord) -> GameRecord:
        return self.games_by_id[rom.game_id]

    def __len__(self) -> int:
        return len(self.roms)

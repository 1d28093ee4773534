"""SQLite-backed catalog store (systems, games, roms and file bindings)."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..config import CuratorConfig
from ..exceptions import CatalogError, DatabaseError, TransactionError
from ..hash_utils import Digests, HeaderRule, HeaderSpec
from .catalog_models import CatalogSnapshot, GameRecord, RomBinding, RomRecord, RomStatus, SystemRecord
from .name_parsing import ReleaseInfo
from .store_lock import store_lock

logger = logging.getLogger(__name__)


def _header_to_json(header: Optional[HeaderSpec]) -> Optional[str]:
    if header is None:
        return None
    return json.dumps(
        {
            "name": header.name,
            "skip_bytes": header.skip_bytes,
            "rules": [{"offset": r.offset, "value": r.value.hex()} for r in header.rules],
        },
        sort_keys=True,
    )


def _header_from_json(raw: Optional[str]) -> Optional[HeaderSpec]:
    if not raw:
        return None
    payload = json.loads(raw)
    rules = tuple(HeaderRule(int(r["offset"]), bytes.fromhex(r["value"])) for r in payload.get("rules", ()))
    return HeaderSpec(name=str(payload.get("name") or ""), skip_bytes=int(payload.get("skip_bytes") or 0), rules=rules)


def _release_to_json(release: ReleaseInfo) -> str:
    return json.dumps(
        {
            "regions": list(release.regions),
            "languages": list(release.languages),
            "flags": list(release.flags),
            "revision": release.revision,
            "implied_languages": list(release.implied_languages),
        },
        sort_keys=True,
    )


def _release_from_json(raw: Optional[str]) -> ReleaseInfo:
    if not raw:
        return ReleaseInfo()
    payload = json.loads(raw)
    return ReleaseInfo(
        regions=tuple(payload.get("regions") or ()),
        languages=tuple(payload.get("languages") or ()),
        flags=tuple(payload.get("flags") or ()),
        revision=payload.get("revision"),
        implied_languages=tuple(payload.get("implied_languages") or ()),
    )


def _system_from_row(row: sqlite3.Row) -> SystemRecord:
    return SystemRecord(
        id=int(row["id"]),
        name=str(row["name"]),
        description=row["description"],
        version=row["version"],
        header=_header_from_json(row["header_json"]),
    )


def _game_from_row(row: sqlite3.Row) -> GameRecord:
    return GameRecord(
        id=int(row["id"]),
        system_id=int(row["system_id"]),
        name=str(row["name"]),
        description=row["description"],
        parent_name=row["parent_name"],
        parent_id=int(row["parent_id"]) if row["parent_id"] is not None else None,
        release=_release_from_json(row["release_json"]),
    )


def _rom_from_row(row: sqlite3.Row) -> RomRecord:
    return RomRecord(
        id=int(row["id"]),
        game_id=int(row["game_id"]),
        name=str(row["name"]),
        size=int(row["size"]),
        digests=Digests(crc32=row["crc32"], md5=row["md5"], sha1=row["sha1"]),
        rom_of=row["rom_of"],
        header_skip=int(row["header_skip"] or 0),
        status=RomStatus.parse(row["status"]),
    )


class CatalogStore:
    """Persistent catalog.

    Reads may run at any time; writes go through :meth:`transaction`, which
    commits the whole batch or nothing. :meth:`write_lock` keeps a second
    process from writing the same store file.
    """

    def __init__(self, db_path: Path, lock_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path)
        self.lock_path = Path(lock_path) if lock_path else self.db_path.with_name(self.db_path.name + ".lock")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._in_transaction = False
        try:
            # Autocommit mode; batches open their own transaction explicitly.
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Cannot open catalog store {self.db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row
        self._apply_pragmas()
        self._init_schema()

    @classmethod
    def from_config(cls, config: CuratorConfig) -> "CatalogStore":
        lock_path = Path(config.catalog.lock_path) if config.catalog.lock_path else None
        return cls(Path(config.catalog.store_path), lock_path=lock_path)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "CatalogStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _apply_pragmas(self) -> None:
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.execute("PRAGMA temp_store=MEMORY")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA cache_size=-20000")
        cur.execute("PRAGMA busy_timeout=3000")

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS systems (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL,
                description TEXT,
                version TEXT,
                header_json TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS games (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                system_id INTEGER NOT NULL REFERENCES systems(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                description TEXT,
                parent_name TEXT,
                parent_id INTEGER REFERENCES games(id) ON DELETE SET NULL,
                release_json TEXT,
                UNIQUE (system_id, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS roms (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                game_id INTEGER NOT NULL REFERENCES games(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                size INTEGER NOT NULL,
                crc32 TEXT,
                md5 TEXT,
                sha1 TEXT,
                rom_of TEXT,
                header_skip INTEGER DEFAULT 0,
                status TEXT DEFAULT 'good',
                UNIQUE (game_id, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bindings (
                rom_id INTEGER PRIMARY KEY REFERENCES roms(id) ON DELETE CASCADE,
                path TEXT NOT NULL,
                entry_name TEXT NOT NULL,
                container TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_games_system ON games(system_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_roms_game ON roms(game_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_roms_size ON roms(size)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_roms_sha1 ON roms(sha1)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_bindings_path ON bindings(path)")

    # ------------------------------------------------------------------
    # Transactions and locking
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, operation: str = "batch") -> Iterator["CatalogStore"]:
        """Run a batch atomically.

        SQLite failures roll the whole batch back and surface as
        ``TransactionError``; any other exception also rolls back and is
        re-raised unchanged.
        """
        with self._lock:
            if self._in_transaction:
                raise TransactionError("Nested store transactions are not supported", operation=operation)
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise TransactionError(f"Cannot start {operation}: {exc}", operation=operation) from exc
            self._in_transaction = True
            try:
                yield self
                self.conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(operation)
                raise TransactionError(f"{operation} rolled back: {exc}", operation=operation) from exc
            except BaseException:
                self._rollback(operation)
                raise
            finally:
                self._in_transaction = False

    def _rollback(self, operation: str) -> None:
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("Rollback of %s failed: %s", operation, exc)
        else:
            logger.warning("Rolled back %s", operation)

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with store_lock(self.lock_path, self.db_path):
            yield

    def _execute(self, query: str, params: Tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(query, params)
        except sqlite3.Error as exc:
            if self._in_transaction:
                raise
            raise DatabaseError(f"Catalog store query failed: {exc}", query=query) from exc

    # ------------------------------------------------------------------
    # Systems
    # ------------------------------------------------------------------

    def get_system(self, name: str) -> Optional[SystemRecord]:
        with self._lock:
            row = self._execute("SELECT * FROM systems WHERE name=?", (name,)).fetchone()
        return _system_from_row(row) if row else None

    def list_systems(self) -> List[SystemRecord]:
        with self._lock:
            rows = self._execute("SELECT * FROM systems ORDER BY name").fetchall()
        return [_system_from_row(r) for r in rows]

    def upsert_system(
        self,
        name: str,
        description: Optional[str] = None,
        version: Optional[str] = None,
        header: Optional[HeaderSpec] = None,
    ) -> Tuple[SystemRecord, bool]:
        """Insert or update a system row; returns the record and whether it was created."""
        with self._lock:
            existing = self.get_system(name)
            if existing is None:
                cur = self._execute(
                    "INSERT INTO systems (name, description, version, header_json) VALUES (?, ?, ?, ?)",
                    (name, description, version, _header_to_json(header)),
                )
                system_id = int(cur.lastrowid)
                created = True
            else:
                system_id = existing.id
                # A re-import without a header file keeps the attached one.
                header_json = _header_to_json(header) if header is not None else _header_to_json(existing.header)
                self._execute(
                    "UPDATE systems SET description=?, version=?, header_json=? WHERE id=?",
                    (description, version, header_json, system_id),
                )
                created = False
        system = self.get_system(name)
        assert system is not None
        return system, created

    # ------------------------------------------------------------------
    # Games and roms
    # ------------------------------------------------------------------

    def load_games(self, system_id: int) -> Dict[str, GameRecord]:
        with self._lock:
            rows = self._execute("SELECT * FROM games WHERE system_id=? ORDER BY id", (system_id,)).fetchall()
        return {str(r["name"]): _game_from_row(r) for r in rows}

    def load_roms(self, system_id: int) -> Dict[Tuple[str, str], RomRecord]:
        """Roms of a system keyed by (game name, rom name)."""
        with self._lock:
            rows = self._execute(
                """
                SELECT roms.*, games.name AS game_name FROM roms
                JOIN games ON games.id = roms.game_id
                WHERE games.system_id=? ORDER BY roms.id
                """,
                (system_id,),
            ).fetchall()
        return {(str(r["game_name"]), str(r["name"])): _rom_from_row(r) for r in rows}

    def insert_game(
        self,
        system_id: int,
        name: str,
        description: Optional[str],
        parent_name: Optional[str],
        release: ReleaseInfo,
    ) -> int:
        cur = self._execute(
            "INSERT INTO games (system_id, name, description, parent_name, release_json) VALUES (?, ?, ?, ?, ?)",
            (system_id, name, description, parent_name, _release_to_json(release)),
        )
        return int(cur.lastrowid)

    def update_game(
        self,
        game_id: int,
        description: Optional[str],
        parent_name: Optional[str],
        release: ReleaseInfo,
    ) -> None:
        self._execute(
            "UPDATE games SET description=?, parent_name=?, release_json=? WHERE id=?",
            (description, parent_name, _release_to_json(release), game_id),
        )

    def delete_games(self, game_ids: Iterable[int]) -> int:
        ids = [(int(i),) for i in game_ids]
        if not ids:
            return 0
        self.conn.executemany("DELETE FROM games WHERE id=?", ids)
        return len(ids)

    def resolve_parents(self, system_id: int) -> int:
        """Set ``parent_id`` from ``parent_name``; unresolved names stay orphan. Returns orphan count."""
        self._execute(
            """
            UPDATE games SET parent_id = (
                SELECT p.id FROM games AS p
                WHERE p.system_id = games.system_id AND p.name = games.parent_name
            )
            WHERE system_id=?
            """,
            (system_id,),
        )
        row = self._execute(
            "SELECT COUNT(*) FROM games WHERE system_id=? AND parent_name IS NOT NULL AND parent_id IS NULL",
            (system_id,),
        ).fetchone()
        return int(row[0])

    def insert_rom(
        self,
        game_id: int,
        name: str,
        size: int,
        digests: Digests,
        rom_of: Optional[str],
        header_skip: int,
        status: RomStatus,
    ) -> int:
        cur = self._execute(
            """
            INSERT INTO roms (game_id, name, size, crc32, md5, sha1, rom_of, header_skip, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (game_id, name, int(size), digests.crc32, digests.md5, digests.sha1, rom_of, int(header_skip), status.value),
        )
        return int(cur.lastrowid)

    def update_rom(
        self,
        rom_id: int,
        size: int,
        digests: Digests,
        rom_of: Optional[str],
        header_skip: int,
        status: RomStatus,
    ) -> None:
        """Replace a rom's content description in place; its binding no longer holds."""
        self._execute(
            """
            UPDATE roms SET size=?, crc32=?, md5=?, sha1=?, rom_of=?, header_skip=?, status=?
            WHERE id=?
            """,
            (int(size), digests.crc32, digests.md5, digests.sha1, rom_of, int(header_skip), status.value, rom_id),
        )
        self._execute("DELETE FROM bindings WHERE rom_id=?", (rom_id,))

    def update_rom_metadata(self, rom_id: int, rom_of: Optional[str], header_skip: int, status: RomStatus) -> None:
        self._execute(
            "UPDATE roms SET rom_of=?, header_skip=?, status=? WHERE id=?",
            (rom_of, int(header_skip), status.value, rom_id),
        )

    def delete_roms(self, rom_ids: Iterable[int]) -> int:
        ids = [(int(i),) for i in rom_ids]
        if not ids:
            return 0
        self.conn.executemany("DELETE FROM roms WHERE id=?", ids)
        return len(ids)

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def load_bindings(self, system_id: int) -> List[RomBinding]:
        with self._lock:
            rows = self._execute(
                """
                SELECT bindings.* FROM bindings
                JOIN roms ON roms.id = bindings.rom_id
                JOIN games ON games.id = roms.game_id
                WHERE games.system_id=? ORDER BY bindings.rom_id
                """,
                (system_id,),
            ).fetchall()
        return [
            RomBinding(rom_id=int(r["rom_id"]), path=str(r["path"]), entry_name=str(r["entry_name"]), container=str(r["container"]))
            for r in rows
        ]

    def upsert_binding(self, binding: RomBinding) -> None:
        self._execute(
            """
            INSERT INTO bindings (rom_id, path, entry_name, container) VALUES (?, ?, ?, ?)
            ON CONFLICT(rom_id) DO UPDATE SET
                path=excluded.path, entry_name=excluded.entry_name, container=excluded.container
            """,
            (binding.rom_id, binding.path, binding.entry_name, binding.container),
        )

    def clear_bindings(self, system_id: int) -> int:
        cur = self._execute(
            """
            DELETE FROM bindings WHERE rom_id IN (
                SELECT roms.id FROM roms JOIN games ON games.id = roms.game_id WHERE games.system_id=?
            )
            """,
            (system_id,),
        )
        return int(cur.rowcount or 0)

    def delete_bindings_for_path(self, path: str) -> int:
        cur = self._execute("DELETE FROM bindings WHERE path=?", (path,))
        return int(cur.rowcount or 0)

    def rebind_path(self, old_path: str, new_path: str, container: str, entry_names: Dict[str, str]) -> int:
        """Point bindings of ``old_path`` at ``new_path``; ``entry_names`` maps old entry names to new ones."""
        rows = self._execute("SELECT rom_id, entry_name FROM bindings WHERE path=?", (old_path,)).fetchall()
        for row in rows:
            entry = str(row["entry_name"])
            self._execute(
                "UPDATE bindings SET path=?, entry_name=?, container=? WHERE rom_id=?",
                (new_path, entry_names.get(entry, entry), container, int(row["rom_id"])),
            )
        return len(rows)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def load_snapshot(self, system_name: str) -> CatalogSnapshot:
        with self._lock:
            system = self.get_system(system_name)
            if system is None:
                raise CatalogError(f"Unknown system {system_name!r}", details={"system": system_name})
            games = self.load_games(system.id).values()
            roms = self.load_roms(system.id).values()
            bindings = self.load_bindings(system.id)
        snapshot = CatalogSnapshot(system, games, roms, bindings)
        logger.debug("Loaded snapshot %s: %d games, %d roms", system_name, len(snapshot.games), len(snapshot.roms))
        return snapshot

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                table: int(self._execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])  # nosec B608
                for table in ("systems", "games", "roms", "bindings")
            }

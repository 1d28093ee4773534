"""Catalog import: merge semantics, clone graph handling, transactional rollback."""

import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SYSTEM = "Nintendo - NES"

GAMES = [
    {"name": "Foo (USA)", "roms": [("Foo (USA).nes", b"foo-usa" * 10)]},
    {"name": "Foo (Europe)", "cloneof": "Foo (USA)", "roms": [("Foo (Europe).nes", b"foo-eur" * 10),
                                                              ("Foo (Europe) extra.nes", b"extra" * 3)]},
    {"name": "Foo (Japan)", "cloneof": "Foo (Europe)", "roms": [("Foo (Japan).nes", b"foo-jpn" * 10)]},
    {"name": "Lonely (USA)", "cloneof": "Missing (World)", "roms": [("Lonely (USA).nes", b"lonely")]},
    {"name": "Loop A", "cloneof": "Loop B", "roms": [("a.nes", b"a")]},
    {"name": "Loop B", "cloneof": "Loop A", "roms": [("b.nes", b"b")]},
    {"name": "Selfish", "cloneof": "Selfish", "roms": [("s.nes", b"s")]},
]


def _import(store, dat_path, **kwargs):
    from romcurator.app.api import import_catalog

    return import_catalog(store, dat_path, **kwargs)


def test_first_import_flattens_clone_chains(store, write_dat) -> None:
    report = _import(store, write_dat(SYSTEM, GAMES))

    assert report.system == SYSTEM
    assert report.system_created is True
    assert report.games_added == 4
    assert report.added == 5
    assert report.orphans == 1
    assert len(report.structural_errors) == 3

    snapshot = store.load_snapshot(SYSTEM)
    games = snapshot.games_by_name
    assert set(games) == {"Foo (USA)", "Foo (Europe)", "Foo (Japan)", "Lonely (USA)"}
    assert games["Foo (Japan)"].parent_name == "Foo (USA)"
    assert games["Foo (Japan)"].parent_id == games["Foo (USA)"].id
    assert games["Foo (Europe)"].parent_id == games["Foo (USA)"].id
    assert games["Lonely (USA)"].is_orphan
    assert games["Foo (USA)"].release.regions == ("USA",)


def test_reimport_is_idempotent(store, write_dat) -> None:
    dat = write_dat(SYSTEM, GAMES)
    _import(store, dat)
    before = store.counts()

    again = _import(store, dat)

    assert again.system_created is False
    assert again.added == 0
    assert again.replaced == 0
    assert again.unchanged == 5
    assert again.games_updated == 0
    assert not again.changed
    assert store.counts() == before


def test_changed_rom_is_replaced_and_loses_binding(store, write_dat) -> None:
    from romcurator.core.catalog_models import RomBinding

    _import(store, write_dat(SYSTEM, GAMES))
    snapshot = store.load_snapshot(SYSTEM)
    rom = next(r for r in snapshot.roms if r.name == "Foo (USA).nes")
    with store.write_lock(), store.transaction("seed"):
        store.upsert_binding(RomBinding(rom.id, "/lib/Foo (USA).nes", "Foo (USA).nes", "flat"))

    changed = [dict(g) for g in GAMES]
    changed[0] = {"name": "Foo (USA)", "roms": [("Foo (USA).nes", b"fixed dump" * 7)]}
    report = _import(store, write_dat(SYSTEM, changed, name="v2.dat"))

    assert report.replaced == 1
    assert report.unchanged == 4
    snapshot = store.load_snapshot(SYSTEM)
    updated = snapshot.roms_by_id[rom.id]
    assert updated.size == 70
    assert rom.id not in snapshot.bindings


def test_absent_roms_retained_unless_pruned(store, write_dat) -> None:
    _import(store, write_dat(SYSTEM, GAMES))
    reduced = [
        {"name": "Foo (USA)", "roms": [("Foo (USA).nes", b"foo-usa" * 10)]},
        {"name": "Foo (Europe)", "cloneof": "Foo (USA)", "roms": [("Foo (Europe).nes", b"foo-eur" * 10)]},
        {"name": "Foo (Japan)", "cloneof": "Foo (Europe)", "roms": [("Foo (Japan).nes", b"foo-jpn" * 10)]},
    ]
    dat = write_dat(SYSTEM, reduced, name="reduced.dat")

    kept = _import(store, dat)
    assert kept.retained == 2
    assert kept.pruned == 0
    assert store.counts()["roms"] == 5

    pruned = _import(store, dat, prune=True)
    assert pruned.pruned == 2
    assert pruned.games_removed == 1
    assert store.counts()["roms"] == 3
    assert "Lonely (USA)" not in store.load_snapshot(SYSTEM).games_by_name


def test_prune_default_comes_from_config(store, write_dat) -> None:
    from romcurator.config import CuratorConfig

    _import(store, write_dat(SYSTEM, GAMES))
    config = CuratorConfig.model_validate({"catalog": {"prune_on_import": True}})
    report = _import(store, write_dat(SYSTEM, GAMES[:1], name="one.dat"), config=config)

    assert report.pruned == 4


def test_duplicate_game_names_reported(store, write_dat) -> None:
    games = [
        {"name": "Dup (USA)", "roms": [("dup.nes", b"one")]},
        {"name": "Dup (USA)", "roms": [("dup.nes", b"two")]},
    ]
    report = _import(store, write_dat(SYSTEM, games))

    assert report.games_added == 1
    assert [i.reason for i in report.issues] == ["duplicate game name"]


def test_system_name_override(store, write_dat) -> None:
    report = _import(store, write_dat(SYSTEM, GAMES[:1]), system_name="NES (custom)")

    assert report.system == "NES (custom)"
    assert store.get_system("NES (custom)") is not None
    assert store.get_system(SYSTEM) is None


def test_header_detector_sets_rom_skip_and_survives_reimport(store, write_dat, tmp_path: Path) -> None:
    detector = tmp_path / "nes.xml"
    detector.write_text(
        '<detector><name>iNES</name><rule start_offset="10"><data offset="0" value="4E45531A"/></rule></detector>',
        encoding="utf-8",
    )
    dat = write_dat(SYSTEM, GAMES[:1])

    _import(store, dat, header_path=detector)
    _import(store, dat)

    snapshot = store.load_snapshot(SYSTEM)
    assert snapshot.header is not None
    assert snapshot.header.skip_bytes == 16
    assert all(r.header_skip == 16 for r in snapshot.roms)


def test_failed_import_rolls_back_everything(store, write_dat, monkeypatch: pytest.MonkeyPatch) -> None:
    from romcurator.exceptions import TransactionError

    calls = {"n": 0}
    original = store.insert_rom

    def flaky_insert(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 3:
            raise sqlite3.OperationalError("disk I/O error")
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "insert_rom", flaky_insert)

    with pytest.raises(TransactionError):
        _import(store, write_dat(SYSTEM, GAMES))

    assert store.counts() == {"systems": 0, "games": 0, "roms": 0, "bindings": 0}
    assert not store.lock_path.exists()


def test_concurrent_writer_rejected(store, write_dat) -> None:
    from romcurator.exceptions import StoreLockedError

    dat = write_dat(SYSTEM, GAMES)
    with store.write_lock():
        with pytest.raises(StoreLockedError):
            _import(store, dat)

    assert store.counts()["systems"] == 0


def test_unknown_system_snapshot(store) -> None:
    from romcurator.exceptions import CatalogError

    with pytest.raises(CatalogError):
        store.load_snapshot("Nope")


def test_flatten_clone_graph_reports_cycles() -> None:
    from romcurator.app.import_controller import flatten_clone_graph
    from romcurator.core.dat_parser import DatGame

    games = [
        DatGame(name="Root"),
        DatGame(name="Mid", cloneof="Root"),
        DatGame(name="Leaf", cloneof="Mid"),
        DatGame(name="X", cloneof="Y"),
        DatGame(name="Y", cloneof="X"),
        DatGame(name="Tail", cloneof="X"),
    ]

    parents, errors = flatten_clone_graph(games)

    assert parents["Root"] is None
    assert parents["Mid"] == "Root"
    assert parents["Leaf"] == "Root"
    assert "X" not in parents and "Y" not in parents
    assert parents["Tail"] == "X"
    assert sorted(e.details["game"] for e in errors) == ["X", "Y"]

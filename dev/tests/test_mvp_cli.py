from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SYSTEM = "Nintendo - NES"
D1 = bytes((i * 3) & 0xFF for i in range(1024))
D2 = bytes((i * 5 + 1) & 0xFF for i in range(1024))

GAMES = [
    {"name": "Foo (Europe)", "roms": [("Foo (Europe).nes", D2)]},
    {"name": "Foo (USA)", "cloneof": "Foo (Europe)", "roms": [("Foo (USA).nes", D1)]},
]


@pytest.fixture
def cli_config(tmp_path: Path, library: Path) -> Path:
    path = tmp_path / "romcurator.yaml"
    path.write_text(
        yaml.safe_dump({
            "library_root": str(library),
            "catalog": {"store_path": str(tmp_path / "db" / "catalog.sqlite")},
            "performance": {"workers": 2, "io_limit": 2},
        }),
        encoding="utf-8",
    )
    return path


def _run(capsys, *argv):
    from romcurator.cli import main

    code = main(list(argv))
    out = capsys.readouterr().out
    return code, json.loads(out)


def test_full_command_flow(capsys, cli_config: Path, library: Path, write_dat) -> None:
    dat = write_dat(SYSTEM, GAMES)
    (library / "Foo (USA).nes").write_bytes(D1)
    (library / "Foo (Europe).nes").write_bytes(D2)
    cfg = str(cli_config)

    code, payload = _run(capsys, "--config", cfg, "import-dat", str(dat))
    assert code == 0
    assert payload["report"]["games_added"] == 2
    assert payload["report"]["system"] == SYSTEM

    code, payload = _run(capsys, "--config", cfg, "reconcile", SYSTEM, str(library), "--record")
    assert code == 0
    assert payload["counts"]["exact"] == 2
    assert payload["recorded"] == 2

    code, payload = _run(capsys, "--config", cfg, "select", SYSTEM, str(library))
    assert code == 0
    assert [s["game_name"] for s in payload["report"]["selections"]] == ["Foo (USA)"]

    code, payload = _run(capsys, "--config", cfg, "convert", SYSTEM, str(library), "--to", "zip")
    assert code == 0
    assert payload["counts"]["converted"] == 1
    assert payload["rebound"] == 1
    assert (library / "Foo (USA).zip").exists()
    assert not (library / "Foo (USA).nes").exists()

    code, payload = _run(capsys, "--config", cfg, "check", SYSTEM)
    assert code == 0
    assert payload["counts"]["ok"] == 2


def test_check_reports_changed_files(capsys, cli_config: Path, library: Path, write_dat) -> None:
    cfg = str(cli_config)
    (library / "Foo (USA).nes").write_bytes(D1)
    _run(capsys, "--config", cfg, "import-dat", str(write_dat(SYSTEM, GAMES)))
    _run(capsys, "--config", cfg, "reconcile", SYSTEM, str(library), "--record")

    (library / "Foo (USA).nes").write_bytes(D2)
    code, payload = _run(capsys, "--config", cfg, "check", SYSTEM)

    assert code == 1
    assert payload["counts"]["changed"] == 1
    assert payload["counts"]["unbound"] == 1


def test_unknown_system_is_an_error(capsys, cli_config: Path) -> None:
    code, payload = _run(capsys, "--config", str(cli_config), "check", "Nope")

    assert code == 1
    assert payload["command"] == "check"
    assert payload["error"]["message"]


def test_missing_root_is_an_error(capsys, cli_config: Path, library: Path, write_dat) -> None:
    cfg = str(cli_config)
    _run(capsys, "--config", cfg, "import-dat", str(write_dat(SYSTEM, GAMES)))

    code, payload = _run(capsys, "--config", cfg, "reconcile", SYSTEM, str(library / "absent"))

    assert code == 1
    assert payload["error"]["error_code"] == "FILE_NOT_FOUND"


def test_invalid_config_exits_with_2(capsys, tmp_path: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("conversion:\n  zip_compression_level: 12\n", encoding="utf-8")

    code, payload = _run(capsys, "--config", str(bad), "check", SYSTEM)

    assert code == 2
    assert payload["error"]["error_code"] == "VALIDATION_ERROR"
    assert payload["error"]["details"]["field_name"] == "conversion.zip_compression_level"


def test_version_flag(capsys) -> None:
    from romcurator.cli import main

    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])

    assert excinfo.value.code == 0
    assert capsys.readouterr().out.startswith("romcurator ")


def test_organize_and_check_trash_commands(capsys, cli_config: Path, library: Path, write_dat) -> None:
    cfg = str(cli_config)
    _run(capsys, "--config", cfg, "import-dat", str(write_dat(SYSTEM, GAMES)))
    (library / "usa.nes").write_bytes(D1)
    (library / "junk.nes").write_bytes(b"\x01" * 1024)

    code, payload = _run(capsys, "--config", cfg, "organize", SYSTEM, str(library), "--dry-run")
    assert code == 0
    assert payload["report"]["dry_run"] is True
    assert (library / "usa.nes").exists()

    code, payload = _run(capsys, "--config", cfg, "organize", SYSTEM, str(library), "--trash-unmatched")
    assert code == 0
    assert payload["counts"]["rename"] == 1
    assert payload["counts"]["trash"] == 1
    assert (library / "Foo (USA).nes").read_bytes() == D1
    assert (library / "Trash" / "junk.nes").exists()

    (library / "Foo (USA).nes").write_bytes(D2[:1000] + D1[1000:])
    code, payload = _run(capsys, "--config", cfg, "check", SYSTEM, "--trash", str(library))
    assert code == 1
    assert payload["counts"]["changed"] == 1
    assert payload["trash"]["counts"]["trash"] == 1
    assert (library / "Trash" / "Foo (USA).nes").exists()

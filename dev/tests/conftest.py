from __future__ import annotations

import hashlib
import sys
import zlib
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional
from xml.sax.saxutils import quoteattr

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def pytest_configure() -> None:
    """Ensure pytest base temp directory exists for CI runs."""

    repo_root = Path(__file__).resolve().parents[2]
    base_temp = repo_root / "temp" / "pytest"
    base_temp.mkdir(parents=True, exist_ok=True)


def digests_of(data: bytes) -> Dict[str, str]:
    return {
        "crc": "%08x" % (zlib.crc32(data) & 0xFFFFFFFF),
        "md5": hashlib.md5(data).hexdigest(),
        "sha1": hashlib.sha1(data).hexdigest(),
    }


def _rom_xml(name: str, data: bytes, kinds: Iterable[str]) -> str:
    digests = digests_of(data)
    attrs = [f"name={quoteattr(name)}", f'size="{len(data)}"']
    attrs.extend(f'{k}="{digests[k]}"' for k in kinds)
    return f"    <rom {' '.join(attrs)}/>"


def build_logiqx(system: str, games: List[dict], version: str = "1", header_file: Optional[str] = None) -> str:
    """Logiqx XML text. ``games`` items: name, roms [(name, bytes)], optional cloneof/kinds."""
    lines = ['<?xml version="1.0"?>', "<datafile>", "  <header>", f"    <name>{system}</name>",
             f"    <description>{system}</description>", f"    <version>{version}</version>"]
    if header_file:
        lines.append(f'    <clrmamepro header="{header_file}"/>')
    lines.append("  </header>")
    for game in games:
        clone = f" cloneof={quoteattr(game['cloneof'])}" if game.get("cloneof") else ""
        lines.append(f"  <game name={quoteattr(game['name'])}{clone}>")
        lines.append(f"    <description>{game['name']}</description>")
        kinds = game.get("kinds", ("crc", "md5", "sha1"))
        for rom_name, data in game.get("roms", ()):
            lines.append(_rom_xml(rom_name, data, kinds))
        lines.append("  </game>")
    lines.append("</datafile>")
    return "\n".join(lines) + "\n"


@pytest.fixture
def rom_digests() -> Callable[[bytes], Dict[str, str]]:
    return digests_of


@pytest.fixture
def write_dat(tmp_path: Path) -> Callable[..., Path]:
    def _write(system: str, games: List[dict], name: str = "catalog.dat", **kwargs) -> Path:
        path = tmp_path / name
        path.write_text(build_logiqx(system, games, **kwargs), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def store(tmp_path: Path):
    from romcurator.core.catalog_store import CatalogStore

    catalog = CatalogStore(tmp_path / "db" / "catalog.sqlite")
    yield catalog
    catalog.close()


@pytest.fixture
def config(tmp_path: Path):
    from romcurator.config import CuratorConfig

    return CuratorConfig.model_validate(
        {
            "library_root": str(tmp_path / "library"),
            "catalog": {"store_path": str(tmp_path / "db" / "catalog.sqlite")},
            "performance": {"workers": 2, "io_limit": 2},
        }
    )


@pytest.fixture
def library(tmp_path: Path) -> Path:
    root = tmp_path / "library"
    root.mkdir()
    return root

"""Container codec layer: round trips, size checks, detection."""

from __future__ import annotations

import hashlib
import io
import struct
import sys
import zipfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _payload(size: int, seed: int = 7) -> bytes:
    # Mildly compressible, not trivially so.
    return bytes((i * seed + i // 97) & 0xFF for i in range(size))


def _write_single(codec, path: Path, name: str, data: bytes) -> None:
    with codec.create_writer(path) as writer:
        writer.write_entry(name, io.BytesIO(data), len(data))
        writer.finalize()


def _read(codec, path: Path, name: str) -> bytes:
    with codec.open_entry(path, name) as stream:
        return stream.read()


def test_flat_round_trip(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    codec = CodecRegistry().codec(ContainerKind.FLAT)
    target = tmp_path / "Game (USA).nes"
    data = _payload(4096)
    _write_single(codec, target, "Game (USA).nes", data)

    entries = codec.list_entries(target)
    assert [(e.name, e.size) for e in entries] == [("Game (USA).nes", 4096)]
    assert _read(codec, target, "Game (USA).nes") == data
    assert codec.target_name("Game (USA).nes") == "Game (USA).nes"


def test_zip_round_trip_with_stored_crc(tmp_path: Path) -> None:
    import zlib

    from romcurator.containers import CodecRegistry, ContainerKind

    codec = CodecRegistry().codec(ContainerKind.ZIP)
    target = tmp_path / "set.zip"
    first, second = _payload(5000), _payload(3000, seed=13)
    with codec.create_writer(target) as writer:
        writer.write_entry("b.bin", io.BytesIO(second), len(second))
        writer.write_entry("a.bin", io.BytesIO(first), len(first))
        writer.finalize()

    entries = {e.name: e for e in codec.list_entries(target)}
    assert set(entries) == {"a.bin", "b.bin"}
    assert entries["a.bin"].size == 5000
    assert entries["a.bin"].crc32 == "%08x" % (zlib.crc32(first) & 0xFFFFFFFF)
    assert _read(codec, target, "b.bin") == second


def test_zip_output_is_reproducible(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    codec = CodecRegistry().codec(ContainerKind.ZIP)
    data = _payload(10000)
    one, two = tmp_path / "one.zip", tmp_path / "two.zip"
    _write_single(codec, one, "game.bin", data)
    _write_single(codec, two, "game.bin", data)

    assert one.read_bytes() == two.read_bytes()


def test_zip_skips_traversal_members(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    target = tmp_path / "evil.zip"
    with zipfile.ZipFile(target, "w") as zf:
        zf.writestr("../escape.bin", b"x")
        zf.writestr("ok.bin", b"y")

    codec = CodecRegistry().codec(ContainerKind.ZIP)
    assert [e.name for e in codec.list_entries(target)] == ["ok.bin"]


def test_corrupt_zip_raises_format_error(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind
    from romcurator.exceptions import ContainerFormatError

    target = tmp_path / "broken.zip"
    target.write_bytes(b"PK\x03\x04" + b"\x00" * 20)

    with pytest.raises(ContainerFormatError):
        CodecRegistry().codec(ContainerKind.ZIP).list_entries(target)


def test_sevenzip_round_trip(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    codec = CodecRegistry().codec(ContainerKind.SEVENZIP)
    target = tmp_path / "set.7z"
    data = _payload(7000)
    _write_single(codec, target, "game.bin", data)

    entries = codec.list_entries(target)
    assert [(e.name, e.size) for e in entries] == [("game.bin", 7000)]
    assert _read(codec, target, "game.bin") == data


@pytest.mark.parametrize("size", [2048 * 3, 2048 * 3 + 100, 10])
def test_cso_round_trip(tmp_path: Path, size: int) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    codec = CodecRegistry().codec(ContainerKind.CSO)
    target = tmp_path / "Disc.cso"
    data = _payload(size)
    _write_single(codec, target, "Disc.iso", data)

    entries = codec.list_entries(target)
    assert [(e.name, e.size) for e in entries] == [("Disc.iso", size)]
    assert hashlib.sha1(_read(codec, target, "Disc.iso")).hexdigest() == hashlib.sha1(data).hexdigest()


def test_cso_incompressible_blocks_stored_plain(tmp_path: Path) -> None:
    import os

    from romcurator.containers import CodecRegistry, ContainerKind

    codec = CodecRegistry().codec(ContainerKind.CSO)
    target = tmp_path / "Noise.cso"
    data = os.urandom(2048 * 2 + 300)
    _write_single(codec, target, "Noise.iso", data)

    assert _read(codec, target, "Noise.iso") == data


def test_truncated_cso_raises_size_mismatch(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind
    from romcurator.exceptions import SizeMismatchError

    codec = CodecRegistry().codec(ContainerKind.CSO)
    target = tmp_path / "Disc.cso"
    _write_single(codec, target, "Disc.iso", _payload(2048 * 8))
    raw = target.read_bytes()
    target.write_bytes(raw[: len(raw) - 40])

    with pytest.raises(SizeMismatchError):
        _read(codec, target, "Disc.iso")


def test_writer_rejects_wrong_declared_size_and_cleans_up(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind
    from romcurator.exceptions import SizeMismatchError

    registry = CodecRegistry()
    for kind in (ContainerKind.ZIP, ContainerKind.CSO, ContainerKind.FLAT):
        target = tmp_path / f"out.{kind.value}"
        with pytest.raises(SizeMismatchError):
            with registry.codec(kind).create_writer(target) as writer:
                writer.write_entry("game.bin", io.BytesIO(b"x" * 100), 200)
                writer.finalize()
        assert not target.exists()


def test_unfinalized_writer_aborts(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    target = tmp_path / "partial.zip"
    with CodecRegistry().codec(ContainerKind.ZIP).create_writer(target) as writer:
        writer.write_entry("game.bin", io.BytesIO(b"data"), 4)

    assert not target.exists()


def test_single_entry_formats_refuse_second_entry(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind
    from romcurator.exceptions import ContainerError

    with pytest.raises(ContainerError):
        with CodecRegistry().codec(ContainerKind.CSO).create_writer(tmp_path / "two.cso") as writer:
            writer.write_entry("a.iso", io.BytesIO(b"a" * 10), 10)
            writer.write_entry("b.iso", io.BytesIO(b"b" * 10), 10)


def test_registry_detects_by_signature_not_extension(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    registry = CodecRegistry()
    zipped = tmp_path / "looks_like.bin"
    with zipfile.ZipFile(zipped, "w") as zf:
        zf.writestr("game.bin", b"data")
    plain = tmp_path / "game.zip"
    plain.write_bytes(b"\x00\x01\x02 not an archive")
    empty = tmp_path / "empty.bin"
    empty.write_bytes(b"")

    assert registry.detect_kind(zipped) is ContainerKind.ZIP
    assert registry.detect_kind(plain) is ContainerKind.FLAT
    assert registry.detect_kind(empty) is ContainerKind.FLAT


def test_registry_reports_unsupported_formats(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry
    from romcurator.exceptions import UnsupportedContainerError

    rar = tmp_path / "game.rar"
    rar.write_bytes(b"Rar!\x1a\x07\x00" + b"\x00" * 32)

    with pytest.raises(UnsupportedContainerError) as excinfo:
        CodecRegistry().detect_kind(rar)
    assert excinfo.value.details.get("signature") == "rar"


def test_registry_requires_one_codec_per_kind() -> None:
    from romcurator.containers import CodecRegistry
    from romcurator.containers.flat import FlatCodec
    from romcurator.exceptions import ContainerError

    with pytest.raises(ContainerError):
        CodecRegistry(codecs=[FlatCodec()])


def _synthetic_chd(path: Path, logical: int, tag: bytes) -> None:
    header = bytearray(124)
    header[0:8] = b"MComprHD"
    struct.pack_into(">II", header, 8, 124, 5)
    struct.pack_into(">I", header, 16, 0x7A6C6962)  # zlib
    struct.pack_into(">Q", header, 32, logical)
    struct.pack_into(">Q", header, 48, 124)
    struct.pack_into(">I", header, 56, 4096)
    struct.pack_into(">I", header, 60, 2048)
    header[84:104] = bytes(range(1, 21))
    meta = tag + struct.pack(">I", 0) + struct.pack(">Q", 0) + b"\x00" * 16
    path.write_bytes(bytes(header) + meta)


def test_chd_header_dvd(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind
    from romcurator.containers.chd import ChdMediaType, read_chd_header

    image = tmp_path / "Disc (USA).chd"
    _synthetic_chd(image, 2048 * 100, b"DVD ")

    header = read_chd_header(image)
    assert header.version == 5
    assert header.media_type is ChdMediaType.DVD
    assert header.logical_bytes == 2048 * 100
    assert header.sha1 == bytes(range(1, 21)).hex()
    assert header.parent_sha1 is None
    assert header.compression == ("zlib",)

    registry = CodecRegistry()
    assert registry.detect_kind(image) is ContainerKind.CHD
    entries = registry.codec(ContainerKind.CHD).list_entries(image)
    assert [(e.name, e.size) for e in entries] == [("Disc (USA).iso", 2048 * 100)]


def test_chd_cd_tracks_have_unknown_size(tmp_path: Path) -> None:
    from romcurator.containers import CodecRegistry, ContainerKind

    image = tmp_path / "Disc.chd"
    _synthetic_chd(image, 2352 * 10, b"CHT2")

    entries = CodecRegistry().codec(ContainerKind.CHD).list_entries(image)
    assert [(e.name, e.size) for e in entries] == [("Disc.bin", None)]


def test_chd_bad_version_rejected(tmp_path: Path) -> None:
    from romcurator.containers.chd import read_chd_header
    from romcurator.exceptions import ContainerFormatError

    image = tmp_path / "Old.chd"
    image.write_bytes(b"MComprHD" + struct.pack(">II", 76, 2) + b"\x00" * 80)

    with pytest.raises(ContainerFormatError):
        read_chd_header(image)


def test_chd_round_trip_with_chdman(tmp_path: Path) -> None:
    from romcurator.utils.external_tools import find_chdman

    if find_chdman() is None:
        pytest.skip("chdman not installed")

    from romcurator.containers import CodecRegistry, ContainerKind

    codec = CodecRegistry().codec(ContainerKind.CHD)
    target = tmp_path / "Disc.chd"
    data = _payload(2048 * 16)
    _write_single(codec, target, "Disc.iso", data)

    assert [(e.name, e.size) for e in codec.list_entries(target)] == [("Disc.iso", len(data))]
    assert _read(codec, target, "Disc.iso") == data

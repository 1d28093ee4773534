import hashlib
import io
import sys
import zlib
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def test_single_pass_digests_match_hashlib() -> None:
    from romcurator.hash_utils import compute_fingerprint

    data = bytes(range(256)) * 700
    fp = compute_fingerprint(io.BytesIO(data), chunk_size=4096)

    assert fp.size == len(data)
    assert fp.crc32 == "%08x" % (zlib.crc32(data) & 0xFFFFFFFF)
    assert fp.md5 == hashlib.md5(data).hexdigest()
    assert fp.sha1 == hashlib.sha1(data).hexdigest()


def test_only_requested_kinds_are_computed() -> None:
    from romcurator.hash_utils import compute_fingerprint

    fp = compute_fingerprint(io.BytesIO(b"abc"), ["sha1"])

    assert fp.crc32 is None
    assert fp.md5 is None
    assert fp.sha1 == hashlib.sha1(b"abc").hexdigest()


def test_unknown_kind_rejected() -> None:
    from romcurator.hash_utils import compute_fingerprint

    with pytest.raises(ValueError):
        compute_fingerprint(io.BytesIO(b"abc"), ["sha256"])


def test_skip_excludes_leading_bytes_but_counts_size() -> None:
    from romcurator.hash_utils import compute_fingerprint

    header = b"H" * 16
    body = b"payload" * 100
    fp = compute_fingerprint(io.BytesIO(header + body), skip=16, chunk_size=5)

    assert fp.size == len(header) + len(body)
    assert fp.skipped == 16
    assert fp.content_size == len(body)
    assert fp.sha1 == hashlib.sha1(body).hexdigest()


def test_header_rule_applies_only_when_signature_matches() -> None:
    from romcurator.hash_utils import HeaderRule, HeaderSpec, compute_fingerprint

    header = HeaderSpec(name="iNES", skip_bytes=16, rules=(HeaderRule(offset=0, value=b"NES\x1a"),))
    body = b"\x01\x02\x03" * 50

    headered = compute_fingerprint(io.BytesIO(b"NES\x1a" + b"\x00" * 12 + body), header=header)
    assert headered.skipped == 16
    assert headered.sha1 == hashlib.sha1(body).hexdigest()

    plain = compute_fingerprint(io.BytesIO(body), header=header)
    assert plain.skipped == 0
    assert plain.sha1 == hashlib.sha1(body).hexdigest()


def test_stream_shorter_than_skip() -> None:
    from romcurator.hash_utils import compute_fingerprint

    fp = compute_fingerprint(io.BytesIO(b"abc"), skip=10)

    assert fp.size == 3
    assert fp.skipped == 3
    assert fp.crc32 == "%08x" % (zlib.crc32(b"") & 0xFFFFFFFF)


def test_read_errors_propagate() -> None:
    from romcurator.hash_utils import compute_fingerprint

    class Broken(io.RawIOBase):
        def readable(self):
            return True

        def readinto(self, b):
            raise OSError("device gone")

    with pytest.raises(OSError):
        compute_fingerprint(io.BufferedReader(Broken()))


@pytest.mark.parametrize(
    "kind,value,expected",
    [
        ("crc32", "ABCD1234", "abcd1234"),
        ("crc32", "1234", "00001234"),
        ("crc32", "0x0000ffff", "0000ffff"),
        ("md5", "", None),
        ("sha1", None, None),
    ],
)
def test_normalize_digest(kind, value, expected) -> None:
    from romcurator.hash_utils import normalize_digest

    assert normalize_digest(kind, value) == expected


def test_normalize_digest_rejects_garbage() -> None:
    from romcurator.hash_utils import normalize_digest

    with pytest.raises(ValueError):
        normalize_digest("sha1", "xyz")
    with pytest.raises(ValueError):
        normalize_digest("md5", "abcd")


def test_digest_match_uses_strongest_shared_kind() -> None:
    from romcurator.hash_utils import Digests

    catalog = Digests(crc32="11111111", sha1="a" * 40)
    same = Digests(crc32="11111111", md5="b" * 32, sha1="a" * 40)
    sha_differs = Digests(crc32="11111111", sha1="c" * 40)
    crc_only = Digests(crc32="11111111")

    assert catalog.strongest_common(same) == "sha1"
    assert catalog.matches(same)
    assert not catalog.matches(sha_differs)
    assert catalog.matches(crc_only, allow_weak=True)
    assert not catalog.matches(crc_only, allow_weak=False)
    assert not catalog.matches(Digests(md5="b" * 32))


def test_fingerprint_file_cache_tracks_modification(tmp_path: Path) -> None:
    import os

    from romcurator.hash_utils import clear_fingerprint_cache, fingerprint_file

    clear_fingerprint_cache()
    rom = tmp_path / "game.bin"
    rom.write_bytes(b"first")
    first = fingerprint_file(rom)
    assert first.sha1 == hashlib.sha1(b"first").hexdigest()

    rom.write_bytes(b"second!")
    stat = rom.stat()
    os.utime(rom, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    second = fingerprint_file(rom)
    assert second.size == 7
    assert second.sha1 == hashlib.sha1(b"second!").hexdigest()

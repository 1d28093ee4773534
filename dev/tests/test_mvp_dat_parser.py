import sys
import zipfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


LOGIQX = """<?xml version="1.0"?>
<datafile>
  <header>
    <name>Nintendo - NES</name>
    <description>Nintendo - Nintendo Entertainment System</description>
    <version>20240101</version>
    <clrmamepro header="No-Intro_NES.xml"/>
  </header>
  <game name="Foo (USA)">
    <description>Foo (USA)</description>
    <release name="Foo" region="USA"/>
    <rom name="Foo (USA).nes" size="1024" crc="ABCDEF01" md5="0123456789ABCDEF0123456789ABCDEF" sha1="0123456789abcdef0123456789abcdef01234567"/>
  </game>
  <game name="Foo (Europe)" cloneof="Foo (USA)">
    <description>Foo (Europe)</description>
    <rom name="Foo (Europe).nes" size="1024" crc="12345678"/>
    <rom name="broken.nes" size="abc" crc="12345678"/>
    <rom name="nohash.nes" size="12"/>
    <rom name="badcrc.nes" size="12" crc="zz"/>
  </game>
</datafile>
"""

CLRMAMEPRO = """clrmamepro (
\tname "Sega - Mega Drive"
\tdescription "Sega - Mega Drive - Genesis"
\tversion 20231212
)

game (
\tname "Bar (Japan)"
\tdescription "Bar (Japan)"
\trom ( name "Bar (Japan).md" size 2048 crc 0badf00d sha1 89abcdef0123456789abcdef0123456789abcdef )
)

game (
\tname "Bar (USA)"
\tcloneof "Bar (Japan)"
\trom ( name "Bar (USA).md" size 0x800 crc 1234 )
\trom ( name "Bar (USA).md" size 2048 crc 00001234 )
)
"""


def test_parse_logiqx(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_dat

    dat = tmp_path / "nes.dat"
    dat.write_text(LOGIQX, encoding="utf-8")

    doc = parse_dat(dat)

    assert doc.header.name == "Nintendo - NES"
    assert doc.header.version == "20240101"
    assert doc.header.header_file == "No-Intro_NES.xml"
    assert [g.name for g in doc.games] == ["Foo (USA)", "Foo (Europe)"]

    foo = doc.games[0]
    assert foo.regions == ("USA",)
    assert foo.roms[0].size == 1024
    assert foo.roms[0].digests.crc32 == "abcdef01"
    assert foo.roms[0].digests.md5 == "0123456789abcdef0123456789abcdef"

    clone = doc.games[1]
    assert clone.cloneof == "Foo (USA)"
    assert [r.name for r in clone.roms] == ["Foo (Europe).nes"]
    reasons = sorted(issue.reason for issue in doc.issues)
    assert len(reasons) == 3
    assert any("invalid size" in r for r in reasons)
    assert any("without any digest" in r for r in reasons)
    assert any("malformed crc32" in r for r in reasons)


def test_parse_clrmamepro(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_dat

    dat = tmp_path / "md.dat"
    dat.write_text(CLRMAMEPRO, encoding="utf-8")

    doc = parse_dat(dat)

    assert doc.header.name == "Sega - Mega Drive"
    assert doc.header.version == "20231212"
    assert [g.name for g in doc.games] == ["Bar (Japan)", "Bar (USA)"]
    japan, usa = doc.games
    assert japan.roms[0].digests.crc32 == "0badf00d"
    assert japan.roms[0].digests.sha1 == "89abcdef0123456789abcdef0123456789abcdef"
    assert usa.cloneof == "Bar (Japan)"
    assert len(usa.roms) == 1
    assert usa.roms[0].size == 2048
    assert usa.roms[0].digests.crc32 == "00001234"
    assert [i.reason for i in doc.issues] == ["duplicate rom name within game"]


def test_parse_zipped_dat(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_dat

    archive = tmp_path / "nes.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("readme.txt", "not a catalog")
        zf.writestr("Nintendo - NES.dat", LOGIQX)

    doc = parse_dat(archive)

    assert doc.header.name == "Nintendo - NES"
    assert doc.source.endswith("!Nintendo - NES.dat")


def test_zip_without_catalog_rejected(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_dat
    from romcurator.exceptions import CatalogParseError

    archive = tmp_path / "empty.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("readme.txt", "nothing")

    with pytest.raises(CatalogParseError):
        parse_dat(archive)


def test_malformed_xml_rejected(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_dat
    from romcurator.exceptions import CatalogParseError

    dat = tmp_path / "bad.dat"
    dat.write_text("<datafile><game name='x'>", encoding="utf-8")

    with pytest.raises(CatalogParseError):
        parse_dat(dat)


def test_entity_expansion_rejected(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_dat
    from romcurator.exceptions import CatalogParseError

    dat = tmp_path / "bomb.dat"
    dat.write_text(
        '<?xml version="1.0"?>\n'
        '<!DOCTYPE datafile [<!ENTITY lol "lol"><!ENTITY lol2 "&lol;&lol;&lol;">]>\n'
        "<datafile><header><name>&lol2;</name></header></datafile>\n",
        encoding="utf-8",
    )

    with pytest.raises(CatalogParseError):
        parse_dat(dat)


def test_missing_file_rejected(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_dat
    from romcurator.exceptions import CatalogParseError

    with pytest.raises(CatalogParseError):
        parse_dat(tmp_path / "nope.dat")


def test_header_detector(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_header_detector

    detector = tmp_path / "nes.xml"
    detector.write_text(
        """<?xml version="1.0"?>
<detector>
  <name>No-Intro NES</name>
  <rule start_offset="10" end_offset="EOF" operation="none">
    <data offset="0" value="4E45531A" result="true"/>
  </rule>
  <rule start_offset="20">
    <data offset="0" value="FFFF"/>
  </rule>
</detector>
""",
        encoding="utf-8",
    )

    header = parse_header_detector(detector)

    assert header.name == "No-Intro NES"
    assert header.skip_bytes == 16
    assert len(header.rules) == 1
    assert header.rules[0].offset == 0
    assert header.rules[0].value == b"NES\x1a"
    assert header.matches(b"NES\x1a\x00")
    assert not header.matches(b"XXXX")


def test_header_detector_without_rule(tmp_path: Path) -> None:
    from romcurator.core.dat_parser import parse_header_detector
    from romcurator.exceptions import CatalogParseError

    detector = tmp_path / "empty.xml"
    detector.write_text("<detector><name>x</name></detector>", encoding="utf-8")

    with pytest.raises(CatalogParseError):
        parse_header_detector(detector)

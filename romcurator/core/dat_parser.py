"""Reference catalog (DAT) parsing.

Supported inputs:
  - Logiqx XML (No-Intro, Redump, MAME ``<machine>`` listings), streamed
  - ClrMamePro text blocks: ``game ( name "..." rom ( ... ) )``
  - ``.zip`` files holding one of the above
  - ClrMamePro header detector XML (``<detector><rule ...>``)

Malformed records are collected as :class:`DatParseIssue` entries and left
out of the document; a single bad rom never aborts the parse.
"""

from __future__ import annotations

import io
import logging
import re
import shlex
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple, Union

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as ET

from ..exceptions import CatalogParseError
from ..hash_utils import Digests, HeaderRule, HeaderSpec, normalize_digest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatRom:
    name: str
    size: int
    digests: Digests
    status: str = "good"
    merge: Optional[str] = None


@dataclass(frozen=True)
class DatGame:
    name: str
    description: Optional[str] = None
    cloneof: Optional[str] = None
    romof: Optional[str] = None
    regions: Tuple[str, ...] = ()
    languages: Tuple[str, ...] = ()
    roms: Tuple[DatRom, ...] = ()


@dataclass(frozen=True)
class DatHeader:
    name: str
    description: Optional[str] = None
    version: Optional[str] = None
    header_file: Optional[str] = None


@dataclass(frozen=True)
class DatParseIssue:
    record: str
    reason: str
    line: Optional[int] = None


@dataclass(frozen=True)
class DatDocument:
    header: DatHeader
    games: Tuple[DatGame, ...]
    issues: Tuple[DatParseIssue, ...] = ()
    source: Optional[str] = None


class _GameBuilder:
    """Collects one game's attributes and roms; reports bad roms as issues."""

    def __init__(self, issues: List[DatParseIssue], line: Optional[int] = None) -> None:
        self.issues = issues
        self.line = line
        self.name: Optional[str] = None
        self.description: Optional[str] = None
        self.cloneof: Optional[str] = None
        self.romof: Optional[str] = None
        self.regions: List[str] = []
        self.languages: List[str] = []
        self.roms: List[DatRom] = []
        self._seen_roms: Dict[str, int] = {}

    def add_release(self, region: Optional[str], language: Optional[str]) -> None:
        if region and region not in self.regions:
            self.regions.append(region)
        if language and language not in self.languages:
            self.languages.append(language)

    def add_rom(self, attrs: Dict[str, str], line: Optional[int] = None) -> None:
        label = f"{self.name or '?'} / {attrs.get('name') or '?'}"
        rom_name = (attrs.get("name") or "").strip()
        if not rom_name:
            self.issues.append(DatParseIssue(label, "rom without a name", line))
            return
        raw_size = (attrs.get("size") or "").strip()
        if raw_size.lower().startswith("0x"):
            size_ok = re.fullmatch(r"0x[0-9a-f]+", raw_size.lower()) is not None
            size = int(raw_size, 16) if size_ok else -1
        else:
            size_ok = raw_size.isdigit()
            size = int(raw_size) if size_ok else -1
        if not size_ok:
            self.issues.append(DatParseIssue(label, f"invalid size {raw_size!r}", line))
            return
        status = (attrs.get("status") or "good").strip().lower()
        try:
            digests = Digests(
                crc32=normalize_digest("crc32", attrs.get("crc")),
                md5=normalize_digest("md5", attrs.get("md5")),
                sha1=normalize_digest("sha1", attrs.get("sha1")),
            )
        except ValueError as exc:
            self.issues.append(DatParseIssue(label, str(exc), line))
            return
        if digests.is_empty() and status != "nodump":
            self.issues.append(DatParseIssue(label, "rom without any digest", line))
            return
        if rom_name in self._seen_roms:
            self.issues.append(DatParseIssue(label, "duplicate rom name within game", line))
            return
        self._seen_roms[rom_name] = len(self.roms)
        merge = (attrs.get("merge") or "").strip() or None
        self.roms.append(DatRom(name=rom_name, size=size, digests=digests, status=status, merge=merge))

    def build(self) -> Optional[DatGame]:
        if not self.name:
            self.issues.append(DatParseIssue("?", "game without a name", self.line))
            return None
        return DatGame(
            name=self.name,
            description=self.description,
            cloneof=self.cloneof or None,
            romof=self.romof or None,
            regions=tuple(self.regions),
            languages=tuple(self.languages),
            roms=tuple(self.roms),
        )


def _local(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def _parse_logiqx_stream(stream: BinaryIO, source: str) -> DatDocument:
    issues: List[DatParseIssue] = []
    games: List[DatGame] = []
    header_fields: Dict[str, Optional[str]] = {"name": None, "description": None, "version": None, "header_file": None}
    in_header = False
    builder: Optional[_GameBuilder] = None

    try:
        context = ET.iterparse(stream, events=("start", "end"))
        for event, elem in context:
            tag = _local(elem.tag)
            if event == "start":
                if tag == "header":
                    in_header = True
                elif tag in ("game", "machine", "software"):
                    builder = _GameBuilder(issues)
                    builder.name = (elem.attrib.get("name") or "").strip() or None
                    builder.cloneof = (elem.attrib.get("cloneof") or "").strip() or None
                    builder.romof = (elem.attrib.get("romof") or "").strip() or None
                continue

            if in_header:
                if tag in ("name", "description", "version") and elem.text and header_fields[tag] is None:
                    header_fields[tag] = elem.text.strip()
                elif tag == "clrmamepro" and elem.attrib.get("header"):
                    header_fields["header_file"] = elem.attrib["header"].strip()
                elif tag == "header":
                    in_header = False
                continue

            if builder is None:
                continue
            if tag == "description" and elem.text:
                builder.description = elem.text.strip()
            elif tag == "release":
                builder.add_release(elem.attrib.get("region"), elem.attrib.get("language"))
            elif tag in ("rom", "disk"):
                if tag == "disk" and not elem.attrib.get("size"):
                    # MAME CHD disks carry no size; they cannot be size-matched.
                    issues.append(DatParseIssue(f"{builder.name} / {elem.attrib.get('name')}", "disk without size"))
                else:
                    builder.add_rom(dict(elem.attrib))
            elif tag in ("game", "machine", "software"):
                game = builder.build()
                if game is not None:
                    games.append(game)
                builder = None
                elem.clear()
    except (ET.ParseError, DefusedXmlException) as exc:
        raise CatalogParseError(f"Malformed XML catalog: {exc}", source=source) from exc

    if not header_fields["name"]:
        header_fields["name"] = Path(source).stem if source else "Unknown"
    return DatDocument(
        header=DatHeader(
            name=str(header_fields["name"]),
            description=header_fields["description"],
            version=header_fields["version"],
            header_file=header_fields["header_file"],
        ),
        games=tuple(games),
        issues=tuple(issues),
        source=source,
    )


_CMP_BLOCK_START = re.compile(r"^\s*(clrmamepro|header|game|machine|resource)\s*\(\s*$", re.I)
_CMP_BLOCK_END = re.compile(r"^\s*\)\s*$")
_CMP_INNER = re.compile(r"^\s*(rom|disk|release)\s*\(\s*(.*?)\s*\)\s*$", re.I)


def _tokenize_pairs(text: str) -> Dict[str, str]:
    """``name "Foo (USA).nes" size 1024 crc abcd1234`` -> dict."""
    try:
        tokens = shlex.split(text, posix=True)
    except ValueError:
        tokens = text.split()
    pairs: Dict[str, str] = {}
    for key, value in zip(tokens[0::2], tokens[1::2]):
        pairs.setdefault(key.lower(), value)
    return pairs


def _parse_clrmamepro_stream(stream: BinaryIO, source: str) -> DatDocument:
    issues: List[DatParseIssue] = []
    games: List[DatGame] = []
    header_fields: Dict[str, Optional[str]] = {"name": None, "description": None, "version": None, "header_file": None}
    block: Optional[str] = None
    builder: Optional[_GameBuilder] = None

    text = io.TextIOWrapper(stream, encoding="utf-8", errors="replace")
    for lineno, line in enumerate(text, start=1):
        if not line.strip():
            continue

        m_start = _CMP_BLOCK_START.match(line)
        if m_start:
            block = m_start.group(1).lower()
            if block in ("game", "machine", "resource"):
                builder = _GameBuilder(issues, lineno)
            continue

        if _CMP_BLOCK_END.match(line):
            if builder is not None:
                game = builder.build()
                if game is not None:
                    games.append(game)
            builder = None
            block = None
            continue

        m_inner = _CMP_INNER.match(line)
        if m_inner and builder is not None:
            kind = m_inner.group(1).lower()
            attrs = _tokenize_pairs(m_inner.group(2))
            if kind == "release":
                builder.add_release(attrs.get("region"), attrs.get("language"))
            elif kind == "rom" or attrs.get("size"):
                builder.add_rom(attrs, lineno)
            continue

        pairs = _tokenize_pairs(line.strip())
        if not pairs:
            continue
        key, value = next(iter(pairs.items()))
        if block in ("clrmamepro", "header"):
            if key in ("name", "description", "version") and header_fields[key] is None:
                header_fields[key] = value
            elif key == "header":
                header_fields["header_file"] = value
        elif builder is not None:
            if key == "name" and builder.name is None:
                builder.name = value
            elif key == "description":
                builder.description = value
            elif key == "cloneof":
                builder.cloneof = value
            elif key == "romof":
                builder.romof = value

    if builder is not None:
        issues.append(DatParseIssue(builder.name or "?", "unterminated game block", builder.line))

    if not header_fields["name"]:
        header_fields["name"] = Path(source).stem if source else "Unknown"
    return DatDocument(
        header=DatHeader(
            name=str(header_fields["name"]),
            description=header_fields["description"],
            version=header_fields["version"],
            header_file=header_fields["header_file"],
        ),
        games=tuple(games),
        issues=tuple(issues),
        source=source,
    )


def _looks_like_xml(head: bytes) -> bool:
    return head.lstrip(b"\xef\xbb\xbf \t\r\n").startswith(b"<")


def parse_dat_stream(stream: BinaryIO, source: str = "<stream>") -> DatDocument:
    """Parse a seekable binary stream holding XML or ClrMamePro text."""
    head = stream.read(64)
    stream.seek(0)
    if _looks_like_xml(head):
        return _parse_logiqx_stream(stream, source)
    return _parse_clrmamepro_stream(stream, source)


def _iter_zip_members(path: Path) -> Iterator[Tuple[str, bytes]]:
    with zipfile.ZipFile(path, "r") as zf:
        for info in sorted(zf.infolist(), key=lambda i: i.filename):
            if info.is_dir():
                continue
            if not info.filename.lower().endswith((".dat", ".xml")):
                continue
            yield info.filename, zf.read(info)


def parse_dat(path: Union[str, Path]) -> DatDocument:
    """Parse a DAT file, or the first DAT inside a ``.zip``."""
    p = Path(path)
    try:
        if p.suffix.lower() == ".zip":
            for member, payload in _iter_zip_members(p):
                return parse_dat_stream(io.BytesIO(payload), f"{p}!{member}")
            raise CatalogParseError("Archive contains no .dat or .xml catalog", source=str(p))
        with open(p, "rb") as f:
            return parse_dat_stream(f, str(p))
    except (OSError, zipfile.BadZipFile) as exc:
        raise CatalogParseError(f"Cannot read catalog: {exc}", source=str(p)) from exc


def parse_header_detector(path: Union[str, Path]) -> HeaderSpec:
    """Parse a ClrMamePro header detector XML into a :class:`HeaderSpec`.

    Only the first rule is used. ``start_offset`` becomes the skip length and
    each ``<data offset value>`` test becomes a signature check. Offsets in
    detector files are hexadecimal.
    """
    p = Path(path)
    try:
        with open(p, "rb") as f:
            tree = ET.parse(f)
    except (OSError, ET.ParseError, DefusedXmlException) as exc:
        raise CatalogParseError(f"Cannot read header detector: {exc}", source=str(p)) from exc

    root = tree.getroot()
    name_elem = root.find("name")
    name = name_elem.text.strip() if name_elem is not None and name_elem.text else p.stem
    rule = root.find("rule")
    if rule is None:
        raise CatalogParseError("Header detector has no rule", source=str(p))

    try:
        skip = int(str(rule.attrib.get("start_offset") or "0"), 16)
        checks = []
        for data in rule.findall("data"):
            offset = int(str(data.attrib.get("offset") or "0"), 16)
            value = bytes.fromhex(str(data.attrib.get("value") or ""))
            if value:
                checks.append(HeaderRule(offset=offset, value=value))
    except ValueError as exc:
        raise CatalogParseError(f"Malformed header detector rule: {exc}", source=str(p)) from exc

    return HeaderSpec(name=name, skip_bytes=skip, rules=tuple(checks))

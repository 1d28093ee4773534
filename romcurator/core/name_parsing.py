"""Release metadata parsed from No-Intro / Redump style game names.

Examples:
  - "Foo (USA, Europe) (Rev 1)" -> regions ("USA", "EUR"), revision "Rev 1"
  - "Foo (Japan) (En,Ja) (Beta)" -> regions ("JPN",), languages ("en", "ja"), flags ("beta",)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

# Region name -> (code, implied languages)
REGION_TABLE: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "argentina": ("ARG", ("es",)),
    "asia": ("ASI", ("zh",)),
    "australia": ("AUS", ("en",)),
    "brazil": ("BRA", ("pt",)),
    "canada": ("CAN", ("en", "fr")),
    "china": ("CHN", ("zh",)),
    "denmark": ("DAN", ("da",)),
    "europe": ("EUR", ("en",)),
    "finland": ("FIN", ("fi",)),
    "france": ("FRA", ("fr",)),
    "germany": ("GER", ("de",)),
    "greece": ("GRE", ("el",)),
    "hong kong": ("HK", ("zh",)),
    "italy": ("ITA", ("it",)),
    "japan": ("JPN", ("ja",)),
    "korea": ("KOR", ("ko",)),
    "latin america": ("LAM", ("es",)),
    "mexico": ("MEX", ("es",)),
    "netherlands": ("HOL", ("nl",)),
    "new zealand": ("NZ", ("en",)),
    "norway": ("NOR", ("no",)),
    "portugal": ("POR", ("pt",)),
    "russia": ("RUS", ("ru",)),
    "scandinavia": ("SCA", ("en",)),
    "spain": ("SPA", ("es",)),
    "sweden": ("SWE", ("sv",)),
    "taiwan": ("TAI", ("zh",)),
    "uk": ("UK", ("en",)),
    "united kingdom": ("UK", ("en",)),
    "usa": ("USA", ("en",)),
    "world": ("WOR", ("en",)),
    # GoodTools single-letter codes
    "u": ("USA", ("en",)),
    "e": ("EUR", ("en",)),
    "j": ("JPN", ("ja",)),
    "w": ("WOR", ("en",)),
}

REGION_CODES = {code for code, _ in REGION_TABLE.values()}
_IMPLIED_LANGUAGES = {code: langs for code, langs in REGION_TABLE.values()}

# Fixed demotion order; a higher number is a stronger demotion.
FLAG_SEVERITY: Dict[str, int] = {
    "aftermarket": 1,
    "unlicensed": 2,
    "pirate": 3,
    "beta": 4,
    "sample": 5,
    "prototype": 6,
    "demo": 7,
}

_FLAG_PATTERNS = {
    "aftermarket": re.compile(r"\((?:Aftermarket|Homebrew)\)", re.IGNORECASE),
    "unlicensed": re.compile(r"\((?:Unl|Unlicensed)\)", re.IGNORECASE),
    "pirate": re.compile(r"\(Pirate\)", re.IGNORECASE),
    "beta": re.compile(r"\(Beta(?:\s*[a-z0-9.]+)?\)", re.IGNORECASE),
    "sample": re.compile(r"\(Sample(?:\s*[a-z0-9.]+)?\)", re.IGNORECASE),
    "prototype": re.compile(r"\((?:Proto|Prototype)(?:\s*[a-z0-9.]+)?\)", re.IGNORECASE),
    "demo": re.compile(r"\((?:Demo|Kiosk|Trial(?: Version)?|Preview)(?:\s*[a-z0-9.]+)?\)", re.IGNORECASE),
}

_SECTION_RE = re.compile(r"\(([^()]+)\)")
_LANGUAGES_RE = re.compile(r"^[a-z]{2}(?:[,+][a-z]{2})*$", re.IGNORECASE)
_REV_RE = re.compile(r"^Rev\s*([a-z0-9.]+)$", re.IGNORECASE)
_VERSION_RE = re.compile(r"^v\s*([0-9][a-z0-9.]*)$", re.IGNORECASE)
_NATURAL_SPLIT_RE = re.compile(r"(\d+)")


@dataclass(frozen=True)
class ReleaseInfo:
    regions: Tuple[str, ...] = ()
    languages: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()
    revision: Optional[str] = None
    implied_languages: Tuple[str, ...] = field(default=())

    @property
    def effective_languages(self) -> Tuple[str, ...]:
        """Explicit languages, or the ones implied by the regions."""
        return self.languages or self.implied_languages

    @property
    def demotion_key(self) -> Tuple[int, int]:
        """(worst flag severity, number of flags); (0, 0) for an unflagged release."""
        if not self.flags:
            return 0, 0
        return max(FLAG_SEVERITY.get(f, 0) for f in self.flags), len(self.flags)


def normalize_region(token: str) -> Optional[str]:
    text = str(token or "").strip()
    if not text:
        return None
    if text.upper() in REGION_CODES:
        return text.upper()
    entry = REGION_TABLE.get(text.lower())
    return entry[0] if entry else None


def parse_release_info(
    name: str,
    extra_regions: Iterable[str] = (),
    extra_languages: Iterable[str] = (),
) -> ReleaseInfo:
    """Parse regions, languages, flags and revision from a game name.

    ``extra_regions``/``extra_languages`` come from catalog ``<release>``
    records and are merged with what the name carries.
    """
    regions = []
    languages = []
    revision: Optional[str] = None

    for raw in extra_regions:
        code = normalize_region(raw)
        if code and code not in regions:
            regions.append(code)
    for raw in extra_languages:
        for part in re.split(r"[,+]", str(raw or "")):
            code = part.strip().lower()
            if len(code) == 2 and code not in languages:
                languages.append(code)

    for match in _SECTION_RE.finditer(str(name or "")):
        section = match.group(1).strip()
        if _LANGUAGES_RE.match(section) and not all(normalize_region(p) for p in re.split(r"[,+]", section)):
            for part in re.split(r"[,+]", section):
                code = part.strip().lower()
                if code not in languages:
                    languages.append(code)
            continue

        parts = [p.strip() for p in section.split(",")]
        codes = [normalize_region(p) for p in parts]
        if parts and all(codes):
            for code in codes:
                if code not in regions:
                    regions.append(code)
            continue

        if revision is None:
            rev = _REV_RE.match(section)
            if rev:
                revision = f"Rev {rev.group(1).upper() if rev.group(1).isalpha() else rev.group(1)}"
                continue
            ver = _VERSION_RE.match(section)
            if ver:
                revision = f"v{ver.group(1).lower()}"

    flags = tuple(sorted(flag for flag, pattern in _FLAG_PATTERNS.items() if pattern.search(str(name or ""))))

    implied = []
    for code in regions:
        for lang in _IMPLIED_LANGUAGES.get(code, ()):
            if lang not in implied:
                implied.append(lang)

    return ReleaseInfo(
        regions=tuple(regions),
        languages=tuple(languages),
        flags=flags,
        revision=revision,
        implied_languages=tuple(implied),
    )


def natural_key(text: Optional[str]) -> Tuple[Tuple[int, int, str], ...]:
    """Numeric-aware sort key: "1.10" sorts after "1.9", "B" after "A"."""
    key = []
    for part in _NATURAL_SPLIT_RE.split(str(text or "").lower()):
        if not part:
            continue
        if part.isdigit():
            key.append((0, int(part), ""))
        else:
            key.append((1, 0, part))
    return tuple(key)


def revision_key(revision: Optional[str]) -> Tuple[Tuple[int, int, str], ...]:
    """Sort key for a revision token; a release without one sorts lowest."""
    if not revision:
        return ()
    text = revision.strip()
    rev = re.match(r"^rev\s*(.*)$", text, re.IGNORECASE)
    if rev:
        text = rev.group(1)
    elif text[:1].lower() == "v":
        text = text[1:]
    return natural_key(text)

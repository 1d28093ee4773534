#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""ROM Curator - fuzzy name matching used for diagnostics only.

Names never decide a match; the nearest catalog name is attached to a
mismatch so a human can see what the file most likely was meant to be.
"""

import logging
import re
from typing import Optional, Sequence, Tuple

from rapidfuzz import fuzz, process

logger = logging.getLogger(__name__)

_EXTENSION_RE = re.compile(r"\.[a-z0-9]{1,4}$", re.IGNORECASE)


def normalize_for_compare(name: str) -> str:
    """Lower-case, strip the extension and collapse punctuation."""
    text = _EXTENSION_RE.sub("", str(name or "")).lower()
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def nearest_name(query: str, choices: Sequence[str], score_cutoff: float = 0.0) -> Optional[Tuple[str, float]]:
    """Return the closest choice and its score, or None.

    Ties keep the earliest choice, so callers pass choices in a stable order.
    """
    if not choices:
        return None
    match = process.extractOne(
        query,
        list(choices),
        scorer=fuzz.token_sort_ratio,
        processor=normalize_for_compare,
        score_cutoff=score_cutoff,
    )
    if match is None:
        return None
    choice, score, _ = match
    return choice, float(score)

#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""ROM Curator - safety validation for paths and archive members.

Writes and deletes performed by the conversion pipeline are confined to the
library root; archive members are checked before they are listed or read.
"""

import logging
import os
import re
import stat
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from ..exceptions import InvalidPathError, PathTraversalError

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255

_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f-\x9f]')
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


def _posix_parts(name: str):
    return PurePosixPath(name.replace("\\", "/")).parts


def is_path_traversal_attack(path: str) -> bool:
    """True for NUL bytes or any ``..`` component."""
    return "\x00" in path or ".." in _posix_parts(path)


def resolve_path_safe(path: Union[str, Path]) -> Path:
    raw = os.fspath(path)
    if is_path_traversal_attack(raw):
        raise PathTraversalError(f"Path traversal detected: {raw}", path=raw)
    return Path(raw).resolve()


def validate_file_operation(file_path: Union[str, Path],
                            base_dir: Optional[Union[str, Path]] = None) -> Path:
    """Resolve ``file_path`` and make sure it stays inside ``base_dir``.

    Returns the resolved path. Raises InvalidPathError when the target
    escapes the base directory.
    """
    resolved = resolve_path_safe(file_path)
    if not base_dir:
        return resolved
    base = resolve_path_safe(base_dir)
    if resolved != base and base not in resolved.parents:
        logger.warning("Refusing file operation outside %s: %s", base, resolved)
        raise InvalidPathError(f"File access outside allowed directory: {resolved}", path=str(resolved))
    return resolved


def sanitize_filename(filename: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """Replace characters no common file system accepts and cap the length, keeping the extension."""
    if not filename:
        raise ValueError("filename must not be empty")

    cleaned = _UNSAFE_FILENAME_CHARS.sub('_', filename).strip(' .') or "unknown_file"
    if len(cleaned) <= max_length:
        return cleaned

    stem, dot, ext = cleaned.rpartition('.')
    room = max_length - len(ext) - 1
    if dot and room > 0:
        return stem[:room] + '.' + ext
    return cleaned[:max_length]


def is_safe_archive_member(member: Union[str, zipfile.ZipInfo]) -> bool:
    """Reject empty names, absolute or drive paths, ``..`` components and symlink entries."""
    if isinstance(member, zipfile.ZipInfo):
        if stat.S_ISLNK(member.external_attr >> 16):
            return False
        name = member.filename
    else:
        name = str(member)

    if not name or name[0] in "/\\" or _DRIVE_PREFIX.match(name):
        return False
    return not is_path_traversal_attack(name)

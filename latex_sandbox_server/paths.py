"""Containment checks for caller-supplied paths inside a sandbox directory."""

import os
import re
import stat
from pathlib import Path
from typing import Any, Optional, Union

_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")
_SEGMENT_SPLIT = re.compile(r"[\\/]")

PathLike = Union[str, Path]


def _is_absolute(value: str) -> bool:
    return value.startswith(("/", "\\")) or bool(_DRIVE_PATTERN.match(value))


def _within(root: str, candidate: str) -> bool:
    return candidate == root or candidate.startswith(root + os.sep)


def is_plain_relative(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    if "\0" in value or _is_absolute(value):
        return False
    return ".." not in _SEGMENT_SPLIT.split(value)


def resolve_sandbox_path(root: PathLike, untrusted: Any) -> Optional[Path]:
    """Lexically resolve ``untrusted`` under ``root``.

    Returns ``None`` for anything that is not a plain relative path staying
    inside the root: non-strings, empty strings, null bytes, absolute or
    drive-letter paths and any ``..`` segment.
    """
    if not is_plain_relative(untrusted):
        return None
    base = os.path.abspath(str(root))
    resolved = os.path.normpath(os.path.join(base, untrusted))
    if not _within(base, resolved):
        return None
    return Path(resolved)


def resolve_sandbox_path_checked(root: PathLike, untrusted: Any) -> Optional[Path]:
    """Like :func:`resolve_sandbox_path`, but also rejects symlink escapes.

    Every existing component between the root and the target is inspected; a
    symbolic link whose real target leaves the root rejects the whole path.
    Components that do not exist yet are accepted so callers can create them.
    """
    resolved = resolve_sandbox_path(root, untrusted)
    if resolved is None:
        return None
    base = os.path.abspath(str(root))
    real_base = os.path.realpath(base)
    current = base
    for part in Path(os.path.relpath(str(resolved), base)).parts:
        if part == os.curdir:
            continue
        current = os.path.join(current, part)
        try:
            info = os.lstat(current)
        except OSError:
            break
        if stat.S_ISLNK(info.st_mode):
            if not _within(real_base, os.path.realpath(current)):
                return None
    return resolved


def sandbox_relative(root: PathLike, path: PathLike) -> str:
    return Path(os.path.relpath(str(path), os.path.abspath(str(root)))).as_posix()

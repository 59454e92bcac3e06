"""
Path handling for the local disk storage provider.

Receipt filenames are generated server-side, but the disk provider also
turns stored URLs back into paths on delete, so every component that
reaches the filesystem goes through secure_join.
"""

import os
import re
from pathlib import Path
from typing import Optional

MAX_COMPONENT_LENGTH = 255

_FORBIDDEN = re.compile(r'[<>:"|?*\x00-\x1f]')


def is_safe_filename(filename: str) -> bool:
    """True when filename is a single, visible path component with no traversal."""
    if not filename or filename.startswith("."):
        return False
    if "/" in filename or "\\" in filename or ".." in filename:
        return False
    return _FORBIDDEN.search(filename) is None


def sanitize_filename(filename: str) -> str:
    """
    Reduce an arbitrary string to one safe path component.

    Directory parts are dropped, forbidden and control characters removed,
    spaces become underscores. The result may be empty.
    """
    name = os.path.basename(filename.replace("\\", "/"))
    name = _FORBIDDEN.sub("", name.replace("..", "")).replace(" ", "_").lstrip(".")

    if len(name) > MAX_COMPONENT_LENGTH:
        stem, ext = os.path.splitext(name)
        name = stem[:MAX_COMPONENT_LENGTH - len(ext)] + ext
    return name


def secure_join(base_path: Path, *parts: str) -> Optional[Path]:
    """
    Join sanitized components onto base_path.

    Returns None when a component sanitizes to nothing or the resolved
    result would land outside base_path.
    """
    joined = base_path
    for part in parts:
        component = sanitize_filename(part)
        if not component:
            return None
        joined = joined / component

    try:
        if not joined.resolve().is_relative_to(base_path.resolve()):
            return None
    except (OSError, ValueError):
        return None
    return joined

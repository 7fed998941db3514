from __future__ import annotations

import os
from typing import List


def norm_path(p: str) -> str:
    """Normalize archive paths to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments
    """
    p = p.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError(f"Path may not contain '..': {p!r}")
    return "/".join(parts)


def split_path(p: str) -> List[str]:
    norm = norm_path(p)
    return norm.split("/") if norm else []


def safe_join(root: str, p: str) -> str:
    """Join an archive path below ``root``, refusing anything that escapes it."""
    rel = norm_path(p)
    if not rel:
        raise ValueError(f"Empty archive path: {p!r}")
    return os.path.join(root, *rel.split("/"))


def is_within(root: str, path: str) -> bool:
    """True when ``path`` still lies below ``root`` once symlinks are resolved."""
    base = os.path.realpath(root)
    real = os.path.realpath(path)
    return real == base or os.path.commonpath([base, real]) == base

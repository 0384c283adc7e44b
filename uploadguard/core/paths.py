"""Path canonicalization and containment primitives.

Every component that turns caller-influenced strings into filesystem paths
(quarantine store, durable storage, scanners, media serving) goes through
these helpers so the containment rules are identical everywhere:

* separators are normalized to ``/``;
* empty and ``.`` segments are dropped, ``..`` segments are rejected;
* the resolved path must be lexically inside the configured root;
* no existing component between the root and the target may be a symlink.
"""
from __future__ import annotations

import os
import re

# Identifiers handed out to callers only ever contain these characters.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


def normalize_separators(path: str) -> str:
    return path.replace("\\", "/")


def split_segments(path: str) -> list[str]:
    """Split *path* into segments, dropping empty and ``.`` segments."""
    return [s for s in normalize_separators(path).split("/") if s not in ("", ".")]


def has_traversal(path: str) -> bool:
    return ".." in split_segments(path)


def is_absolute(path: str) -> bool:
    normalized = normalize_separators(path)
    return normalized.startswith("/") or re.match(r"^[A-Za-z]:/", normalized) is not None


def is_safe_identifier(identifier: str) -> bool:
    """Return ``True`` when *identifier* is a relative, allowlisted path."""
    if not identifier or not _IDENTIFIER_RE.match(identifier):
        return False
    if identifier.startswith("/"):
        return False
    return not has_traversal(identifier)


def canonical_root(root: str) -> str:
    return os.path.normpath(os.path.abspath(root))


def is_within(path: str, root: str) -> bool:
    """Lexical containment check of *path* under *root* (root itself excluded)."""
    base = canonical_root(root)
    candidate = os.path.normpath(os.path.abspath(path))
    prefix = base if base.endswith(os.sep) else base + os.sep
    return candidate.startswith(prefix)


def to_relative(path: str, root: str) -> str | None:
    """Return *path* relative to *root* with ``/`` separators, or ``None``."""
    if not is_within(path, root):
        return None
    relative = os.path.relpath(os.path.normpath(os.path.abspath(path)), canonical_root(root))
    return normalize_separators(relative)


def has_symlink_component(path: str, root: str) -> bool:
    """Return ``True`` if any existing component below *root* is a symlink."""
    base = canonical_root(root)
    relative = to_relative(path, base)
    if relative is None:
        return True
    current = base
    for segment in relative.split("/"):
        current = os.path.join(current, segment)
        if os.path.islink(current):
            return True
    return False


def resolve_under(root: str, relative: str) -> str | None:
    """Join *relative* onto *root* after validating it.

    Returns the absolute path, or ``None`` when *relative* is absolute,
    contains traversal segments, escapes the root, or crosses a symlink.
    """
    if not relative or is_absolute(relative) or has_traversal(relative):
        return None
    segments = split_segments(relative)
    if not segments:
        return None
    candidate = os.path.join(canonical_root(root), *segments)
    if not is_within(candidate, root) or has_symlink_component(candidate, root):
        return None
    return candidate

"""Confinement of client-supplied paths to the served root directory.

Client paths are forward-slash separated and always relative to the root;
leading slashes are ignored, so ``/docs`` and ``docs`` name the same entry.

Resolution is lexical: ``.``/``..`` segments are collapsed with
``os.path.normpath`` and containment is checked per path segment with
``os.path.commonpath`` (a root of ``/mnt/test`` never accepts
``/mnt/test-evil``). Symlinks are *not* dereferenced: a link inside the tree
that points outside of it is followed by the filesystem calls that use the
resolved path. That is a known residual risk, not handled here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from services.errors import FsIOError, PathEscapeError, ValidationError


def _is_within(root: str, candidate: str) -> bool:
    """True when ``candidate`` equals ``root`` or lies below it (segment-wise)."""
    try:
        return os.path.commonpath([root, candidate]) == root
    except ValueError:
        # Mixed absolute/relative or different drives.
        return False


def _confine(root: str, base: str, relative: Optional[str]) -> "ConfinedPath":
    raw = "" if relative is None else str(relative)
    if "\x00" in raw:
        raise ValidationError("bad_path")
    # Names are taken verbatim; " a.txt" and "a.txt" are different entries.
    rel = raw.lstrip("/")
    if not rel or rel == ".":
        candidate = base
    else:
        candidate = os.path.normpath(os.path.join(base, rel))
    if not _is_within(root, candidate):
        raise PathEscapeError(details=raw)
    return ConfinedPath(root, candidate)


@dataclass(frozen=True)
class ConfinedPath:
    """Absolute path proven to lie within ``root``.

    Construction re-checks the invariant, so an instance can never point
    outside the root even when built by hand.
    """

    root: str
    path: str

    def __post_init__(self) -> None:
        if not os.path.isabs(self.path) or os.path.normpath(self.path) != self.path:
            raise PathEscapeError("path_not_normalized", details=self.path)
        if not _is_within(self.root, self.path):
            raise PathEscapeError(details=self.path)

    def __str__(self) -> str:
        return self.path

    def __fspath__(self) -> str:
        return self.path

    @property
    def is_root(self) -> bool:
        return self.path == self.root

    @property
    def relative(self) -> str:
        """Posix path relative to the root ("" for the root itself)."""
        if self.is_root:
            return ""
        return os.path.relpath(self.path, self.root).replace(os.sep, "/")

    @property
    def name(self) -> str:
        if self.is_root:
            return ""
        return os.path.basename(self.path)

    @property
    def parent(self) -> "ConfinedPath":
        if self.is_root:
            return self
        return ConfinedPath(self.root, os.path.dirname(self.path))

    def child(self, name: str) -> "ConfinedPath":
        """Join ``name`` below this path, re-applying confinement."""
        return _confine(self.root, self.path, name)


class PathResolver:
    """Turns client-relative paths into :class:`ConfinedPath` values."""

    def __init__(self, root_dir: str) -> None:
        if not root_dir:
            raise ValueError("root_dir is required")
        self.root = os.path.normpath(os.path.abspath(os.path.expanduser(root_dir)))

    def resolve(self, relative: Optional[str]) -> ConfinedPath:
        """Resolve ``relative`` under the root.

        Raises PathEscapeError when the result would leave the root.
        """
        return _confine(self.root, self.root, relative)

    @property
    def root_path(self) -> ConfinedPath:
        return ConfinedPath(self.root, self.root)

    def ensure_root(self) -> ConfinedPath:
        """Create the root directory (with parents) if it does not exist yet."""
        try:
            os.makedirs(self.root, exist_ok=True)
        except FileExistsError:
            raise FsIOError("root_not_directory", details=self.root)
        except OSError as e:
            raise FsIOError("root_unavailable", details=str(e))
        if not os.path.isdir(self.root):
            raise FsIOError("root_not_directory", details=self.root)
        return self.root_path


def require_confined(value: object) -> ConfinedPath:
    """Guard for service entry points: only confined paths are accepted."""
    if not isinstance(value, ConfinedPath):
        raise TypeError(f"expected ConfinedPath, got {type(value).__name__}")
    return value

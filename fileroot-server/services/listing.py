"""Directory listing and the recursive directory tree.

Both are best-effort enumerations: an entry that cannot be stat'ed (removed
mid-scan, permission denied, dangling symlink) is logged and skipped, so one
bad entry never blocks viewing the rest of a directory.
"""

from __future__ import annotations

import mimetypes
import os
import stat
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from services.errors import FsIOError, NotFoundError, ValidationError
from services.logging_setup import core_log
from services.pathguard import ConfinedPath, require_confined


FOLDER_TYPE = "folder"
UNKNOWN_TYPE = "unknown"


def _iso_mtime(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def guess_content_type(name: str) -> str:
    ctype, _enc = mimetypes.guess_type(name, strict=False)
    return ctype or UNKNOWN_TYPE


@dataclass
class EntryInfo:
    name: str
    path: str
    is_directory: bool
    size: Optional[int]
    modified: str
    type: str
    item_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "path": self.path,
            "isDirectory": self.is_directory,
            "size": self.size,
            "modified": self.modified,
            "type": self.type,
        }
        if self.item_count is not None:
            out["itemCount"] = self.item_count
        return out


@dataclass
class TreeNode:
    name: str
    path: str
    children: List["TreeNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "isDirectory": True,
            "children": [c.to_dict() for c in self.children],
        }


def entry_info_from_stat(target: ConfinedPath, st: os.stat_result) -> EntryInfo:
    is_dir = stat.S_ISDIR(st.st_mode)
    name = target.name or os.path.basename(target.root) or "/"
    return EntryInfo(
        name=name,
        path=target.relative,
        is_directory=is_dir,
        size=None if is_dir else int(st.st_size),
        modified=_iso_mtime(st.st_mtime),
        type=FOLDER_TYPE if is_dir else guess_content_type(name),
    )


def _name_key(name: str) -> Tuple[str, str]:
    # Letters first, case only breaks ties: apple, Banana, cherry.
    return (name.casefold(), name)


def _sort_entries(items: List[EntryInfo]) -> List[EntryInfo]:
    # Directories first, then files.
    return sorted(items, key=lambda e: (not e.is_directory, _name_key(e.name)))


def _scan_names(directory: ConfinedPath) -> List[str]:
    """Names of the immediate children, with OSError mapped to the taxonomy."""
    try:
        with os.scandir(directory.path) as it:
            return [entry.name for entry in it]
    except FileNotFoundError:
        raise NotFoundError("directory_not_found", details=directory.relative)
    except NotADirectoryError:
        raise ValidationError("not_a_directory", details=directory.relative)
    except OSError as e:
        raise FsIOError("list_failed", details=str(e))


class DirectoryReader:
    """Reads directory contents into EntryInfo / TreeNode values."""

    def list(self, directory: ConfinedPath) -> List[EntryInfo]:
        directory = require_confined(directory)
        items: List[EntryInfo] = []
        for name in _scan_names(directory):
            child = directory.child(name)
            try:
                st = os.stat(child.path)
            except OSError as e:
                core_log("warning", "fs.list skip", path=child.relative, error=str(e))
                continue
            items.append(entry_info_from_stat(child, st))
        return _sort_entries(items)

    def build_tree(self, directory: ConfinedPath) -> List[TreeNode]:
        """Recursive directory-only forest below ``directory``.

        Symlinked directories are followed; a directory already present on the
        current branch (a symlink cycle) is listed without descending again.
        """
        directory = require_confined(directory)
        try:
            st = os.stat(directory.path)
        except FileNotFoundError:
            raise NotFoundError("directory_not_found", details=directory.relative)
        except OSError as e:
            raise FsIOError("tree_failed", details=str(e))
        if not stat.S_ISDIR(st.st_mode):
            raise ValidationError("not_a_directory", details=directory.relative)
        return self._children(directory, {(st.st_dev, st.st_ino)})

    def _children(self, directory: ConfinedPath, branch: Set[Tuple[int, int]]) -> List[TreeNode]:
        try:
            names = _scan_names(directory)
        except (FsIOError, NotFoundError, ValidationError) as e:
            core_log("warning", "fs.tree skip", path=directory.relative, error=str(e))
            return []

        nodes: List[TreeNode] = []
        for name in names:
            child = directory.child(name)
            try:
                st = os.stat(child.path)
            except OSError as e:
                core_log("warning", "fs.tree skip", path=child.relative, error=str(e))
                continue
            if not stat.S_ISDIR(st.st_mode):
                continue
            key = (st.st_dev, st.st_ino)
            node = TreeNode(name=name, path=child.relative)
            if key in branch:
                core_log("warning", "fs.tree cycle", path=child.relative)
            else:
                node.children = self._children(child, branch | {key})
            nodes.append(node)
        nodes.sort(key=lambda n: _name_key(n.name))
        return nodes


def count_children(directory: ConfinedPath) -> int:
    return len(_scan_names(require_confined(directory)))

"""Filesystem mutations on confined paths: mkdir, remove, copy, move, stat.

Overwrite policy
- copy/move onto an existing destination replaces it when ``overwrite`` is
  true (the default, configurable). A directory copied onto an existing
  directory is merged into it; a move replaces it.
- With ``overwrite=False`` an existing destination raises ConflictError.

The destination's parent chain is created implicitly. Failures are never
swallowed: anything that goes wrong is raised as an FsError subclass.
"""

from __future__ import annotations

import errno
import os
import shutil
import stat
import uuid
from typing import Optional

from services.errors import (
    ConflictError,
    FsIOError,
    NotFoundError,
    ValidationError,
    from_os_error,
)
from services.listing import EntryInfo, count_children, entry_info_from_stat
from services.logging_setup import core_log
from services.pathguard import ConfinedPath, _is_within, require_confined


def _copy_file(src: str, dst: str) -> str:
    """Copy file bytes; metadata is best-effort.

    Some mounts (exFAT/NTFS/FAT, FUSE) reject copystat and would otherwise
    break plain copies.
    """
    if os.path.islink(dst):
        # Never write through a link that happens to sit at the destination.
        os.unlink(dst)
    shutil.copyfile(src, dst, follow_symlinks=False)
    try:
        shutil.copystat(src, dst, follow_symlinks=False)
    except OSError:
        pass
    return dst


def _copy_error_details(err: shutil.Error) -> str:
    failures = err.args[0] if err.args else []
    if isinstance(failures, list) and failures:
        first = failures[0]
        try:
            src, _dst, why = first
            tail = f" (+{len(failures) - 1} more)" if len(failures) > 1 else ""
            return f"{src}: {why}{tail}"
        except (TypeError, ValueError):
            pass
    return str(err)


def _lstat_or_none(path: str) -> Optional[os.stat_result]:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        return None


def _is_dir_stat(st: Optional[os.stat_result]) -> bool:
    return st is not None and stat.S_ISDIR(st.st_mode)


class FileOperations:
    def __init__(self, *, overwrite: bool = True) -> None:
        self.overwrite = bool(overwrite)

    # --- create / remove ---

    def create_directory(self, parent: ConfinedPath, name: str) -> ConfinedPath:
        """Create ``parent/name`` and any missing ancestors. Idempotent."""
        parent = require_confined(parent)
        name = str(name or "")
        if not name.strip():
            raise ValidationError("name_required")
        target = parent.child(name)
        if target.path == parent.path:
            raise ValidationError("bad_name", details=name)
        try:
            os.makedirs(target.path, exist_ok=True)
        except OSError as e:
            raise FsIOError("mkdir_failed", details=e.strerror or str(e))
        core_log("info", "fs.mkdir", path=target.relative)
        return target

    def remove(self, target: ConfinedPath) -> bool:
        """Delete a file, a symlink (never its target) or a whole directory tree.

        Returns False when there was nothing to delete.
        """
        target = require_confined(target)
        if target.is_root:
            raise ValidationError("refuse_root")
        try:
            st = _lstat_or_none(target.path)
        except OSError as e:
            raise from_os_error(e, "remove_failed")
        if st is None:
            core_log("info", "fs.remove noop", path=target.relative)
            return False
        try:
            if stat.S_ISDIR(st.st_mode):
                shutil.rmtree(target.path)
            else:
                os.unlink(target.path)
        except OSError as e:
            core_log("error", "fs.remove failed", path=target.relative, error=str(e))
            raise FsIOError("remove_failed", details=e.strerror or str(e))
        core_log("info", "fs.remove", path=target.relative, dir=stat.S_ISDIR(st.st_mode))
        return True

    # --- copy / move ---

    def _check_pair(self, source: ConfinedPath, destination: ConfinedPath) -> os.stat_result:
        source = require_confined(source)
        destination = require_confined(destination)
        if source.is_root or destination.is_root:
            raise ValidationError("refuse_root")
        try:
            src_st = _lstat_or_none(source.path)
        except OSError as e:
            raise from_os_error(e)
        if src_st is None:
            raise NotFoundError("source_not_found", details=source.relative)
        if source.path != destination.path:
            if stat.S_ISDIR(src_st.st_mode) and _is_within(source.path, destination.path):
                raise ValidationError("destination_inside_source", details=destination.relative)
            if _is_within(destination.path, source.path):
                raise ValidationError("source_inside_destination", details=destination.relative)
        return src_st

    def _prepare_destination(self, destination: ConfinedPath, overwrite: bool) -> Optional[os.stat_result]:
        """Apply the overwrite policy and make sure the parent chain exists."""
        try:
            dst_st = _lstat_or_none(destination.path)
        except OSError as e:
            raise from_os_error(e)
        if dst_st is not None and not overwrite:
            raise ConflictError(details=destination.relative)
        try:
            os.makedirs(destination.parent.path, exist_ok=True)
        except OSError as e:
            raise FsIOError("parent_unavailable", details=e.strerror or str(e))
        return dst_st

    def _clear(self, path: str, st: os.stat_result) -> None:
        if stat.S_ISDIR(st.st_mode):
            shutil.rmtree(path)
        else:
            os.unlink(path)

    def copy(self, source: ConfinedPath, destination: ConfinedPath, *, overwrite: Optional[bool] = None) -> ConfinedPath:
        """Deep-copy a file, symlink or directory tree to ``destination``."""
        overwrite = self.overwrite if overwrite is None else bool(overwrite)
        src_st = self._check_pair(source, destination)
        if source.path == destination.path:
            raise ValidationError("same_path", details=source.relative)
        dst_st = self._prepare_destination(destination, overwrite)

        src_dir = stat.S_ISDIR(src_st.st_mode)
        try:
            if dst_st is not None and (src_dir != _is_dir_stat(dst_st) or stat.S_ISLNK(dst_st.st_mode)):
                self._clear(destination.path, dst_st)
            if src_dir:
                shutil.copytree(
                    source.path,
                    destination.path,
                    symlinks=True,
                    copy_function=_copy_file,
                    dirs_exist_ok=True,
                )
            elif stat.S_ISLNK(src_st.st_mode):
                os.symlink(os.readlink(source.path), destination.path)
            else:
                _copy_file(source.path, destination.path)
        except shutil.Error as e:
            details = _copy_error_details(e)
            core_log("error", "fs.copy failed", src=source.relative, dst=destination.relative, error=details)
            raise FsIOError("copy_failed", details=details)
        except OSError as e:
            core_log("error", "fs.copy failed", src=source.relative, dst=destination.relative, error=str(e))
            raise FsIOError("copy_failed", details=e.strerror or str(e))
        core_log("info", "fs.copy", src=source.relative, dst=destination.relative, dir=src_dir)
        return destination

    def move(self, source: ConfinedPath, destination: ConfinedPath, *, overwrite: Optional[bool] = None) -> ConfinedPath:
        """Rename/relocate ``source``.

        A single ``os.replace`` (atomic) on the same filesystem; copy + delete
        when the destination lives on another device. A destination that
        ``os.replace`` cannot overwrite is first renamed aside and only deleted
        once the move succeeded; on failure it is put back.
        """
        overwrite = self.overwrite if overwrite is None else bool(overwrite)
        src_st = self._check_pair(source, destination)
        if source.path == destination.path:
            return destination
        dst_st = self._prepare_destination(destination, overwrite)

        src_dir = stat.S_ISDIR(src_st.st_mode)
        aside: Optional[str] = None
        cross_device = False
        try:
            # os.replace only swaps non-directories onto non-directories (or
            # onto an empty directory).
            if dst_st is not None and (src_dir or _is_dir_stat(dst_st)):
                aside = self._set_aside(destination)
            try:
                os.replace(source.path, destination.path)
            except OSError as e:
                if e.errno != errno.EXDEV:
                    raise
                cross_device = True
                self._copy_across_devices(source, destination, src_st)
        except FsIOError:
            self._restore_aside(destination, aside)
            raise
        except OSError as e:
            self._restore_aside(destination, aside)
            core_log("error", "fs.move failed", src=source.relative, dst=destination.relative, error=str(e))
            raise FsIOError("move_failed", details=e.strerror or str(e))
        if aside is not None:
            self._discard_aside(aside)
        if cross_device:
            self._remove_moved_source(source, src_st)
        core_log("info", "fs.move", src=source.relative, dst=destination.relative, dir=src_dir)
        return destination

    def _set_aside(self, destination: ConfinedPath) -> str:
        aside = os.path.join(destination.parent.path, f".{destination.name}.replaced-{uuid.uuid4().hex[:12]}")
        os.rename(destination.path, aside)
        return aside

    def _restore_aside(self, destination: ConfinedPath, aside: Optional[str]) -> None:
        if aside is None:
            return
        try:
            # A cross-device copy may have left a partial destination behind.
            partial = _lstat_or_none(destination.path)
            if partial is not None:
                self._clear(destination.path, partial)
            os.rename(aside, destination.path)
        except OSError as e:
            core_log("error", "fs.move restore failed", dst=destination.relative, aside=aside, error=str(e))

    def _discard_aside(self, aside: str) -> None:
        try:
            st = os.lstat(aside)
            self._clear(aside, st)
        except OSError as e:
            core_log("warning", "fs.move leftover", path=aside, error=str(e))

    def _copy_across_devices(self, source: ConfinedPath, destination: ConfinedPath, src_st: os.stat_result) -> None:
        if stat.S_ISLNK(src_st.st_mode):
            os.symlink(os.readlink(source.path), destination.path)
        elif stat.S_ISDIR(src_st.st_mode):
            try:
                shutil.copytree(source.path, destination.path, symlinks=True, copy_function=_copy_file, dirs_exist_ok=True)
            except shutil.Error as e:
                raise FsIOError("move_failed", details=_copy_error_details(e))
        else:
            _copy_file(source.path, destination.path)

    def _remove_moved_source(self, source: ConfinedPath, src_st: os.stat_result) -> None:
        # The destination is complete at this point and stays in place.
        try:
            self._clear(source.path, src_st)
        except OSError as e:
            core_log("error", "fs.move source not removed", src=source.relative, error=str(e))
            raise FsIOError("move_failed", details=e.strerror or str(e))

    def rename(self, target: ConfinedPath, new_name: str, *, overwrite: Optional[bool] = None) -> ConfinedPath:
        """Give ``target`` a new name inside the same directory."""
        target = require_confined(target)
        new_name = str(new_name or "")
        if not new_name.strip():
            raise ValidationError("name_required")
        if "/" in new_name or new_name in (".", ".."):
            raise ValidationError("bad_name", details=new_name)
        return self.move(target, target.parent.child(new_name), overwrite=overwrite)

    # --- metadata ---

    def stat(self, target: ConfinedPath) -> EntryInfo:
        """EntryInfo for ``target``; directories also get ``item_count``."""
        target = require_confined(target)
        try:
            st = os.stat(target.path)
        except FileNotFoundError:
            raise NotFoundError(details=target.relative)
        except OSError as e:
            raise FsIOError("stat_failed", details=e.strerror or str(e))
        info = entry_info_from_stat(target, st)
        if info.is_directory:
            info.item_count = count_children(target)
        return info

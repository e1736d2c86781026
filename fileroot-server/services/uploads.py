"""Storing uploaded files into a confined destination directory."""

from __future__ import annotations

import os
import uuid
from typing import Any, BinaryIO, Iterable, List, Optional, Tuple

from services.errors import (
    ConflictError,
    FsIOError,
    UploadTooLargeError,
    ValidationError,
)
from services.logging_setup import core_log
from services.pathguard import ConfinedPath, require_confined


UPLOAD_CHUNK_SIZE = 64 * 1024


def _unpack(item: Any) -> Tuple[str, BinaryIO]:
    # werkzeug FileStorage or a plain (filename, stream) pair
    if hasattr(item, "filename") and hasattr(item, "stream"):
        return str(item.filename or ""), item.stream
    filename, stream = item
    return str(filename or ""), stream


def clean_filename(raw: str) -> str:
    """Keep the client's filename verbatim, minus any directory components."""
    name = os.path.basename(str(raw or "").rstrip("/"))
    if not name.strip() or name in (".", ".."):
        raise ValidationError("bad_filename", details=str(raw or ""))
    return name


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


class UploadReceiver:
    def __init__(self, *, overwrite: bool = True, max_bytes: Optional[int] = None, chunk_size: int = UPLOAD_CHUNK_SIZE) -> None:
        self.overwrite = bool(overwrite)
        self.max_bytes = max_bytes if max_bytes and max_bytes > 0 else None
        self.chunk_size = max(1024, int(chunk_size))

    def receive(self, destination: ConfinedPath, files: Iterable[Any], *, overwrite: Optional[bool] = None) -> List[str]:
        """Store every incoming file under ``destination``; returns stored names.

        A same-named file is replaced (atomically, via a temp file in the same
        directory) unless ``overwrite`` is false. Files stored before a failing
        one are kept.
        """
        destination = require_confined(destination)
        overwrite = self.overwrite if overwrite is None else bool(overwrite)
        try:
            os.makedirs(destination.path, exist_ok=True)
        except FileExistsError:
            raise ValidationError("not_a_directory", details=destination.relative)
        except OSError as e:
            raise FsIOError("mkdir_failed", details=e.strerror or str(e))

        stored: List[str] = []
        for item in files:
            filename, stream = _unpack(item)
            name = clean_filename(filename)
            target = destination.child(name)
            if target.parent.path != destination.path:
                raise ValidationError("bad_filename", details=filename)
            if os.path.isdir(target.path):
                raise ValidationError("not_a_file", details=target.relative)
            if not overwrite and os.path.lexists(target.path):
                raise ConflictError(details=target.relative)
            total = self._store(stream, target)
            stored.append(name)
            core_log("info", "fs.upload", path=target.relative, bytes=total, overwrite=overwrite)
        return stored

    def _store(self, stream: BinaryIO, target: ConfinedPath) -> int:
        tmp_path = os.path.join(
            os.path.dirname(target.path),
            f".{target.name}.upload-{uuid.uuid4().hex[:12]}.tmp",
        )
        total = 0
        try:
            with open(tmp_path, "wb") as outfp:
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        break
                    total += len(chunk)
                    if self.max_bytes is not None and total > self.max_bytes:
                        raise UploadTooLargeError(details=target.name)
                    outfp.write(chunk)
            os.replace(tmp_path, target.path)
        except OSError as e:
            _discard(tmp_path)
            core_log("error", "fs.upload failed", path=target.relative, error=str(e))
            raise FsIOError("upload_failed", details=e.strerror or str(e))
        except Exception:
            _discard(tmp_path)
            raise
        return total

"""On-the-fly ZIP streaming for directory downloads.

The archive is produced incrementally: ``zipfile`` writes into a small
in-memory sink that is drained after every chunk of every file, so memory use
stays bounded by the chunk size regardless of the directory size. The sink is
not seekable, which makes ``zipfile`` emit data descriptors after each entry;
ZIP64 is always enabled.

Entry names are relative to the downloaded directory (it becomes the archive
root). Symlinks are skipped, and empty directories are kept as ``name/``
entries.

Known limitation: once the first bytes have been sent the response is
committed. A read error in the middle of the walk aborts the generator with
FsIOError and the client receives a truncated archive.
"""

from __future__ import annotations

import os
import stat
import zipfile
from typing import BinaryIO, Iterator, List, Tuple

from services.errors import FsIOError, NotFoundError, ValidationError
from services.logging_setup import core_log
from services.pathguard import ConfinedPath, require_confined


DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_COMPRESS_LEVEL = 9


class _ZipSink:
    """Write-only, non-seekable buffer that zipfile writes into."""

    def __init__(self) -> None:
        self._chunks: List[bytes] = []

    def write(self, data) -> int:
        b = bytes(data)
        if b:
            self._chunks.append(b)
        return len(b)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        out = b"".join(self._chunks)
        self._chunks.clear()
        return out


def _deflated_info(path: str, arcname: str, level: int) -> zipfile.ZipInfo:
    zinfo = zipfile.ZipInfo.from_file(path, arcname)
    zinfo.compress_type = zipfile.ZIP_DEFLATED
    if hasattr(zinfo, "compress_level"):
        zinfo.compress_level = level
    else:
        # Python < 3.13 keeps the per-entry level under a private name.
        zinfo._compresslevel = level
    return zinfo


def zip_download_name(directory: ConfinedPath) -> str:
    base = directory.name or os.path.basename(directory.root) or "download"
    return base + ".zip"


class ArchiveStreamer:
    def __init__(self, *, chunk_size: int = DEFAULT_CHUNK_SIZE, compress_level: int = DEFAULT_COMPRESS_LEVEL) -> None:
        self.chunk_size = max(1024, int(chunk_size))
        self.compress_level = int(compress_level)

    def stream_zip(self, directory: ConfinedPath) -> Iterator[bytes]:
        """Validate ``directory`` now and return a generator of archive bytes.

        Validation happens before the generator is created so callers can
        still answer 404/400 before committing a response.
        """
        directory = require_confined(directory)
        try:
            st = os.stat(directory.path)
        except FileNotFoundError:
            raise NotFoundError(details=directory.relative)
        except OSError as e:
            raise FsIOError("zip_failed", details=e.strerror or str(e))
        if not stat.S_ISDIR(st.st_mode):
            raise ValidationError("not_a_directory", details=directory.relative)
        return self._generate(directory)

    def write_zip(self, directory: ConfinedPath, sink: BinaryIO) -> int:
        """Write the whole archive into ``sink``; returns the byte count."""
        total = 0
        for chunk in self.stream_zip(directory):
            sink.write(chunk)
            total += len(chunk)
        return total

    def _walk(self, abs_dir: str, prefix: str) -> Iterator[Tuple[str, str, bool]]:
        """Yield (abs_path, arcname, is_dir) in name order, depth first."""
        try:
            with os.scandir(abs_dir) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise FsIOError("zip_failed", details=f"{abs_dir}: {e.strerror or e}")

        if not entries and prefix:
            yield abs_dir, prefix + "/", True
            return
        for entry in entries:
            arcname = f"{prefix}/{entry.name}" if prefix else entry.name
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    yield from self._walk(entry.path, arcname)
                elif entry.is_file(follow_symlinks=False):
                    yield entry.path, arcname, False
            except OSError as e:
                raise FsIOError("zip_failed", details=f"{entry.path}: {e.strerror or e}")

    def _generate(self, directory: ConfinedPath) -> Iterator[bytes]:
        sink = _ZipSink()
        files = 0
        try:
            with zipfile.ZipFile(
                sink,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=self.compress_level,
                allowZip64=True,
            ) as zf:
                for abs_path, arcname, is_dir in self._walk(directory.path, ""):
                    if is_dir:
                        zf.writestr(zipfile.ZipInfo.from_file(abs_path, arcname), b"")
                    else:
                        zinfo = _deflated_info(abs_path, arcname, self.compress_level)
                        with open(abs_path, "rb") as src, zf.open(zinfo, "w", force_zip64=True) as dest:
                            while True:
                                chunk = src.read(self.chunk_size)
                                if not chunk:
                                    break
                                dest.write(chunk)
                                data = sink.drain()
                                if data:
                                    yield data
                        files += 1
                    data = sink.drain()
                    if data:
                        yield data
        except OSError as e:
            core_log("error", "fs.zip aborted", path=directory.relative, files=files, error=str(e))
            raise FsIOError("zip_failed", details=e.strerror or str(e))
        except FsIOError as e:
            core_log("error", "fs.zip aborted", path=directory.relative, files=files, error=str(e))
            raise
        # Central directory, written when the ZipFile closed.
        tail = sink.drain()
        if tail:
            yield tail
        core_log("info", "fs.zip", path=directory.relative, files=files)

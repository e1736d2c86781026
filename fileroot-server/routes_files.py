"""File manager API for the served root directory.

This blueprint exposes the endpoints under /api/*:

- GET    /api/files?path=       list a directory
- GET    /api/tree              directory-only tree of the whole root
- POST   /api/directory         {path, name}
- POST   /api/upload            multipart files[] + path
- GET    /api/download?path=    file bytes, or a streamed zip for directories
- DELETE /api/files?path=       delete a file or a directory tree
- POST   /api/copy              {source, destination, overwrite?}
- POST   /api/move              {source, destination, overwrite?}
- POST   /api/rename            {path, name, overwrite?}
- GET    /api/properties?path=  metadata (+itemCount for directories)
- GET    /api/health

Every client path goes through PathResolver first. Service errors
(services.errors.FsError) are turned into ``{"error": code}`` responses by the
blueprint's error handler.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping
from urllib.parse import quote as _url_quote

from flask import Blueprint, Response, jsonify, request, send_file

from services.archive import ArchiveStreamer, zip_download_name
from services.config import Settings, parse_flag
from services.errors import FsError, NotFoundError, ValidationError
from services.fileops import FileOperations
from services.listing import DirectoryReader, guess_content_type
from services.logging_setup import core_log as _core_log
from services.pathguard import PathResolver
from services.uploads import UploadReceiver


def error_response(message: str, status: int = 400, **extra: Any) -> Any:
    payload: Dict[str, Any] = {"error": message}
    payload.update({k: v for k, v in extra.items() if v is not None})
    return jsonify(payload), status


def _sanitize_download_filename(name: str, *, default: str = "download") -> str:
    """Sanitize filename for Content-Disposition header (prevent header injection)."""
    s = os.path.basename((name or "").strip())
    s = s.replace("\r", "").replace("\n", "").replace('"', "")
    if not s:
        s = default
    # Keep header reasonably small.
    if len(s) > 180:
        s = s[:180]
    return s


def _content_disposition_attachment(filename: str) -> str:
    """Build a safe Content-Disposition attachment header value."""
    fn = _sanitize_download_filename(filename)
    # RFC 5987 filename* improves UTF-8 handling in modern browsers.
    fn_star = _url_quote(fn, safe="")
    ascii_fn = fn.encode("ascii", "replace").decode("ascii").replace("?", "_")
    return f"attachment; filename=\"{ascii_fn}\"; filename*=UTF-8''{fn_star}"


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _str_field(data: Mapping[str, Any], key: str) -> str:
    """Field value as sent; a blank value counts as missing."""
    v = data.get(key)
    if v is None:
        return ""
    s = str(v)
    return s if s.strip() else ""


def create_files_blueprint(settings: Settings) -> Blueprint:
    """Create the /api/* blueprint bound to ``settings.root_dir``."""

    bp = Blueprint("files", __name__)

    resolver = PathResolver(settings.root_dir)
    reader = DirectoryReader()
    ops = FileOperations(overwrite=settings.overwrite)
    streamer = ArchiveStreamer()
    receiver = UploadReceiver(overwrite=settings.overwrite, max_bytes=settings.max_upload_bytes)

    @bp.errorhandler(FsError)
    def _handle_fs_error(e: FsError) -> Any:
        level = "error" if e.status >= 500 else "info"
        _core_log(level, "api error", method=request.method, path=request.path, code=e.code, status=e.status, details=e.details)
        extra: Dict[str, Any] = {}
        if e.details and e.status >= 500:
            extra["details"] = e.details
        return error_response(e.code, e.status, **extra)

    def _required_path_arg() -> str:
        path = _str_field(request.args, "path")
        if not path:
            raise ValidationError("path_required")
        return path

    def _overwrite_flag(value: Any) -> bool:
        return parse_flag(value, settings.overwrite)

    @bp.get("/api/health")
    def api_health() -> Any:
        return jsonify({"ok": True, "root": resolver.root})

    @bp.get("/api/files")
    def api_files_list() -> Any:
        directory = resolver.resolve(_str_field(request.args, "path"))
        items = reader.list(directory)
        return jsonify([it.to_dict() for it in items])

    @bp.get("/api/tree")
    def api_tree() -> Any:
        nodes = reader.build_tree(resolver.root_path)
        return jsonify([n.to_dict() for n in nodes])

    @bp.post("/api/directory")
    def api_directory_create() -> Any:
        data = _json_body()
        name = _str_field(data, "name")
        if not name:
            raise ValidationError("name_required")
        parent = resolver.resolve(_str_field(data, "path"))
        target = ops.create_directory(parent, name)
        return jsonify({"message": "Directory created successfully", "path": target.relative})

    @bp.post("/api/upload")
    def api_upload() -> Any:
        incoming: List[Any] = []
        for field_name in ("files", "files[]"):
            incoming.extend(f for f in request.files.getlist(field_name) if f and f.filename)
        if not incoming:
            raise ValidationError("files_required")
        path = _str_field(request.form, "path") or _str_field(request.args, "path")
        overwrite = _overwrite_flag(request.form.get("overwrite", request.args.get("overwrite")))
        # Second, independent confinement check for the upload destination.
        destination = resolver.resolve(path)
        stored = receiver.receive(destination, incoming, overwrite=overwrite)
        return jsonify({"message": "Files uploaded successfully", "files": stored})

    @bp.get("/api/download")
    def api_download() -> Any:
        target = resolver.resolve(_required_path_arg())
        if not os.path.exists(target.path):
            raise NotFoundError(details=target.relative)

        if os.path.isdir(target.path):
            chunks = streamer.stream_zip(target)
            zip_name = zip_download_name(target)
            _core_log("info", "fs.download", path=target.relative, archive=True)
            headers = {
                "Content-Disposition": _content_disposition_attachment(zip_name),
                "Cache-Control": "no-store",
            }
            return Response(chunks, mimetype="application/zip", headers=headers)

        if not os.path.isfile(target.path):
            raise ValidationError("not_a_file", details=target.relative)
        name = _sanitize_download_filename(target.name)
        ctype = guess_content_type(name)
        resp = send_file(
            target.path,
            as_attachment=True,
            download_name=name,
            mimetype=ctype if ctype != "unknown" else "application/octet-stream",
            conditional=True,
        )
        resp.headers["Cache-Control"] = "no-store"
        _core_log("info", "fs.download", path=target.relative, archive=False)
        return resp

    @bp.delete("/api/files")
    def api_files_delete() -> Any:
        target = resolver.resolve(_required_path_arg())
        removed = ops.remove(target)
        return jsonify({"message": "File/directory deleted successfully", "removed": removed})

    def _source_destination() -> tuple:
        data = _json_body()
        src = _str_field(data, "source")
        dst = _str_field(data, "destination")
        if not src or not dst:
            raise ValidationError("source_destination_required")
        return resolver.resolve(src), resolver.resolve(dst), _overwrite_flag(data.get("overwrite"))

    @bp.post("/api/copy")
    def api_copy() -> Any:
        src, dst, overwrite = _source_destination()
        ops.copy(src, dst, overwrite=overwrite)
        return jsonify({"message": "File/directory copied successfully"})

    @bp.post("/api/move")
    def api_move() -> Any:
        src, dst, overwrite = _source_destination()
        ops.move(src, dst, overwrite=overwrite)
        return jsonify({"message": "File/directory moved successfully"})

    @bp.post("/api/rename")
    def api_rename() -> Any:
        data = _json_body()
        path = _str_field(data, "path")
        name = _str_field(data, "name")
        if not path or not name:
            raise ValidationError("path_name_required")
        target = ops.rename(resolver.resolve(path), name, overwrite=_overwrite_flag(data.get("overwrite")))
        return jsonify({"message": "File/directory renamed successfully", "path": target.relative})

    @bp.get("/api/properties")
    def api_properties() -> Any:
        target = resolver.resolve(_required_path_arg())
        return jsonify(ops.stat(target).to_dict())

    return bp

import io
import zipfile

import pytest

from app import SETTINGS_EXTENSION, create_app
from services.config import Settings


# --- listing / tree ---

def test_list_root_by_default(client, sample_tree):
    resp = client.get("/api/files")
    assert resp.status_code == 200
    data = resp.get_json()
    assert [d["name"] for d in data] == ["docs", "pics", "z.txt"]
    assert data[0]["isDirectory"] is True
    assert data[2]["size"] == 4


def test_list_subdirectory(client, sample_tree):
    resp = client.get("/api/files", query_string={"path": "docs"})
    assert resp.status_code == 200
    assert [d["path"] for d in resp.get_json()] == ["docs/nested", "docs/a.txt", "docs/b.md"]


def test_list_missing_directory_is_404(client, sample_tree):
    resp = client.get("/api/files", query_string={"path": "does/not/exist"})
    assert resp.status_code == 404
    assert "error" in resp.get_json()


def test_list_escape_is_403(client, sample_tree):
    resp = client.get("/api/files", query_string={"path": "../.."})
    assert resp.status_code == 403
    assert resp.get_json() == {"error": "path_not_allowed"}


def test_tree(client, sample_tree):
    resp = client.get("/api/tree")
    assert resp.status_code == 200
    tree = resp.get_json()
    assert [n["name"] for n in tree] == ["docs", "pics"]
    assert tree[0]["children"][0]["path"] == "docs/nested"


# --- directory ---

def test_create_directory(client, root):
    resp = client.post("/api/directory", json={"path": "a", "name": "b"})
    assert resp.status_code == 200
    assert resp.get_json()["path"] == "a/b"
    assert (root / "a" / "b").is_dir()

    again = client.post("/api/directory", json={"path": "a", "name": "b"})
    assert again.status_code == 200


def test_create_directory_without_name_is_400(client):
    resp = client.post("/api/directory", json={"path": ""})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "name_required"}


def test_create_directory_without_body_is_400(client):
    resp = client.post("/api/directory", data="not json", content_type="text/plain")
    assert resp.status_code == 400


# --- upload ---

def test_upload_multiple_files(client, root):
    resp = client.post(
        "/api/upload",
        data={
            "path": "incoming",
            "files": [(io.BytesIO(b"one"), "one.txt"), (io.BytesIO(b"two"), "two.txt")],
        },
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200
    assert resp.get_json()["files"] == ["one.txt", "two.txt"]
    assert (root / "incoming" / "two.txt").read_bytes() == b"two"


def test_upload_accepts_bracket_field_name(client, root):
    resp = client.post(
        "/api/upload",
        data={"files[]": (io.BytesIO(b"x"), "x.txt")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200
    assert (root / "x.txt").exists()


def test_upload_same_name_keeps_second_content(client, root):
    for content in (b"first", b"second"):
        resp = client.post(
            "/api/upload",
            data={"path": "u", "files": (io.BytesIO(content), "dup.txt")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 200
    assert (root / "u" / "dup.txt").read_bytes() == b"second"


def test_upload_with_overwrite_off_conflicts(client, root):
    (root / "dup.txt").write_bytes(b"keep")
    resp = client.post(
        "/api/upload",
        data={"overwrite": "0", "files": (io.BytesIO(b"new"), "dup.txt")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 409
    assert (root / "dup.txt").read_bytes() == b"keep"


def test_upload_destination_escape_is_403(client):
    resp = client.post(
        "/api/upload",
        data={"path": "../outside", "files": (io.BytesIO(b"x"), "x.txt")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 403


def test_upload_without_files_is_400(client):
    resp = client.post("/api/upload", data={"path": ""}, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "files_required"


def test_upload_too_large_is_413(root):
    app = create_app(Settings(root_dir=str(root), max_upload_mb=1))
    resp = app.test_client().post(
        "/api/upload",
        data={"files": (io.BytesIO(b"x" * (1024 * 1024 + 1)), "big.bin")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 413
    assert not (root / "big.bin").exists()


# --- download ---

def test_download_file(client, sample_tree):
    resp = client.get("/api/download", query_string={"path": "docs/a.txt"})
    assert resp.status_code == 200
    assert resp.data == b"alpha"
    assert resp.headers["Content-Disposition"].startswith("attachment")
    assert "a.txt" in resp.headers["Content-Disposition"]
    resp.close()


def test_download_directory_streams_zip(client, sample_tree):
    resp = client.get("/api/download", query_string={"path": "docs"})
    assert resp.status_code == 200
    assert resp.mimetype == "application/zip"
    assert "docs.zip" in resp.headers["Content-Disposition"]
    with zipfile.ZipFile(io.BytesIO(resp.data)) as zf:
        files = {n for n in zf.namelist() if not n.endswith("/")}
    assert files == {"a.txt", "b.md", "nested/deep.bin"}


def test_download_requires_path(client):
    resp = client.get("/api/download")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "path_required"}


def test_download_missing_is_404(client, sample_tree):
    resp = client.get("/api/download", query_string={"path": "ghost.txt"})
    assert resp.status_code == 404


# --- delete ---

def test_delete_file_and_directory(client, sample_tree):
    assert client.delete("/api/files", query_string={"path": "z.txt"}).status_code == 200
    resp = client.delete("/api/files", query_string={"path": "docs"})
    assert resp.status_code == 200
    assert resp.get_json()["removed"] is True
    assert not (sample_tree / "docs").exists()
    assert not (sample_tree / "z.txt").exists()


def test_delete_absent_is_idempotent(client):
    resp = client.delete("/api/files", query_string={"path": "ghost"})
    assert resp.status_code == 200
    assert resp.get_json()["removed"] is False


def test_delete_requires_path(client, sample_tree):
    resp = client.delete("/api/files")
    assert resp.status_code == 400
    assert (sample_tree / "docs").exists()


def test_delete_escape_is_403(client):
    resp = client.delete("/api/files", query_string={"path": "../served-sibling"})
    assert resp.status_code == 403


# --- copy / move / rename ---

def test_copy(client, sample_tree):
    resp = client.post("/api/copy", json={"source": "docs", "destination": "pics/docs"})
    assert resp.status_code == 200
    assert (sample_tree / "pics" / "docs" / "nested" / "deep.bin").exists()
    assert (sample_tree / "docs" / "a.txt").exists()


@pytest.mark.parametrize("body", [{}, {"source": "docs"}, {"destination": "x"}])
def test_copy_and_move_require_both_paths(client, body):
    assert client.post("/api/copy", json=body).status_code == 400
    assert client.post("/api/move", json=body).status_code == 400


def test_copy_missing_source_is_404(client):
    resp = client.post("/api/copy", json={"source": "ghost", "destination": "x"})
    assert resp.status_code == 404


def test_move(client, sample_tree):
    resp = client.post("/api/move", json={"source": "z.txt", "destination": "pics/z.txt"})
    assert resp.status_code == 200
    listing = client.get("/api/files", query_string={"path": "pics"}).get_json()
    assert [d["name"] for d in listing] == ["z.txt"]
    assert not (sample_tree / "z.txt").exists()


def test_move_without_overwrite_conflicts(client, sample_tree):
    resp = client.post(
        "/api/move",
        json={"source": "z.txt", "destination": "docs/a.txt", "overwrite": False},
    )
    assert resp.status_code == 409
    assert resp.get_json() == {"error": "exists"}


def test_move_escape_is_403(client, sample_tree):
    resp = client.post("/api/move", json={"source": "z.txt", "destination": "../z.txt"})
    assert resp.status_code == 403
    assert (sample_tree / "z.txt").exists()


def test_rename(client, sample_tree):
    resp = client.post("/api/rename", json={"path": "docs/b.md", "name": "c.md"})
    assert resp.status_code == 200
    assert resp.get_json()["path"] == "docs/c.md"
    assert (sample_tree / "docs" / "c.md").exists()


def test_rename_rejects_path_in_name(client, sample_tree):
    resp = client.post("/api/rename", json={"path": "docs/b.md", "name": "../b.md"})
    assert resp.status_code == 400


# --- properties ---

def test_properties_of_directory(client, sample_tree):
    resp = client.get("/api/properties", query_string={"path": "docs"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["isDirectory"] is True
    assert data["itemCount"] == 3
    assert data["type"] == "folder"


def test_properties_of_file(client, sample_tree):
    data = client.get("/api/properties", query_string={"path": "z.txt"}).get_json()
    assert data["size"] == 4
    assert "itemCount" not in data


def test_properties_requires_path(client):
    resp = client.get("/api/properties")
    assert resp.status_code == 400
    assert "error" in resp.get_json()


def test_properties_missing_is_404(client):
    assert client.get("/api/properties", query_string={"path": "ghost"}).status_code == 404


# --- app wiring ---

def test_health_and_cors(client, root):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "root": str(root)}
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


def test_unknown_api_route_is_json_404(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "not_found"}


def test_create_app_creates_missing_root(tmp_path):
    target = tmp_path / "fresh" / "root"
    app = create_app(Settings(root_dir=str(target)))
    assert target.is_dir()
    assert app.extensions[SETTINGS_EXTENSION].root_dir == str(target)


def test_create_app_overrides(tmp_path):
    app = create_app(Settings(root_dir=str(tmp_path)), overwrite=False)
    assert app.extensions[SETTINGS_EXTENSION].overwrite is False


def test_space_named_entries_round_trip(client, root):
    (root / "a.txt").write_text("aaaa")
    resp = client.post(
        "/api/upload",
        data={"files": (io.BytesIO(b"spaced"), " a.txt")},
        content_type="multipart/form-data",
    )
    assert resp.get_json()["files"] == [" a.txt"]

    listing = {d["name"]: d for d in client.get("/api/files").get_json()}
    assert listing["a.txt"]["size"] == 4
    assert listing[" a.txt"]["size"] == 6

    props = client.get("/api/properties", query_string={"path": " a.txt"}).get_json()
    assert props["size"] == 6


def test_blank_path_argument_counts_as_missing(client):
    resp = client.get("/api/properties", query_string={"path": "   "})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "path_required"}

from pathlib import Path

import pytest

from app import create_app
from services.config import Settings
from services.pathguard import PathResolver


@pytest.fixture
def root(tmp_path: Path) -> Path:
    base = tmp_path / "served"
    base.mkdir()
    return base


@pytest.fixture
def resolver(root: Path) -> PathResolver:
    return PathResolver(str(root))


@pytest.fixture
def settings(root: Path) -> Settings:
    return Settings(root_dir=str(root))


@pytest.fixture
def app(settings: Settings):
    app = create_app(settings)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sample_tree(root: Path) -> Path:
    """docs/{a.txt, b.md, nested/{deep.bin, empty/}}, pics/, z.txt"""
    (root / "docs" / "nested" / "empty").mkdir(parents=True)
    (root / "docs" / "a.txt").write_text("alpha", encoding="utf-8")
    (root / "docs" / "b.md").write_text("# bravo\n", encoding="utf-8")
    (root / "docs" / "nested" / "deep.bin").write_bytes(bytes(range(256)) * 64)
    (root / "pics").mkdir()
    (root / "z.txt").write_text("zulu", encoding="utf-8")
    return root

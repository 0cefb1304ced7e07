from __future__ import annotations

import base64
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from httpfm_backend.config import ServerConfig
from server import create_app


KEY = bytes(range(32))
KEY_B64 = base64.b64encode(KEY).decode("ascii")


@pytest.fixture
def root(tmp_path: Path) -> Path:
    base = tmp_path / "srv"
    (base / "docs" / "reports").mkdir(parents=True)
    (base / "docs" / "reports" / "a.txt").write_text("quarterly numbers")
    (base / "docs" / "notes.md").write_text("# notes")
    (base / "Music").mkdir()
    (base / "Music" / "song.mp3").write_bytes(b"ID3" + b"\x00" * 32)
    (base / "photo.jpg").write_bytes(b"\xff\xd8\xff\xe0" + b"\x00" * 16)
    (base / "readme.txt").write_text("hello")
    return base


@pytest.fixture
def lines() -> list[str]:
    return []


@pytest.fixture
def make_client(root: Path, tmp_path: Path, lines: list[str]):
    def _make(**overrides) -> TestClient:
        values = {"root": root, "cache_dir": tmp_path / "cache", "log_sink": lines.append}
        values.update(overrides)
        return TestClient(create_app(ServerConfig(**values)))

    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()

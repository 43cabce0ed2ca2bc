"""
Pytest config.

Local imports like `import portal` rely on the repo root being on sys.path. When invoking a
global `pytest` entrypoint that doesn't happen reliably during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


def _clear_caches() -> None:
    from portal.auth import microsoft
    from portal.auth.config import load_provider_config, load_session_config

    load_provider_config.cache_clear()
    load_session_config.cache_clear()
    microsoft.get_exchanger.cache_clear()
    microsoft._jwks_cache.clear()


@pytest.fixture(autouse=True)
def _fresh_config_caches():
    """Configuration is loaded once per process; tests change env vars, so reset around each test."""
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture
def portal_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Minimal valid environment. Returns the static directory (with an index.html)."""
    static_dir = tmp_path / "public"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<h1>hello portal</h1>", encoding="utf-8")
    (static_dir / "notes.txt").write_text("secret notes", encoding="utf-8")

    monkeypatch.setenv("MICROSOFT_CLIENT_ID", "client-123")
    monkeypatch.setenv("MICROSOFT_CLIENT_SECRET", "shh-secret")
    monkeypatch.setenv("MICROSOFT_CLIENT_TENANT", "tenant-abc")
    monkeypatch.setenv("AUTH_SESSION_SECRET", "test-secret-key-for-testing-purposes-only")
    monkeypatch.setenv("PORTAL_STATIC_DIR", str(static_dir))
    for name in ("PORTAL_DOMAIN", "AUTH_COOKIE_SECURE", "AUTH_VERIFY_STATE", "MICROSOFT_VERIFY_ID_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    return static_dir

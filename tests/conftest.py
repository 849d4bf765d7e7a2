"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict

import pytest
import yaml

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for conversation files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover overrides)."""
    monkeypatch.delenv("MIRROR_CHAT_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("MIRROR_CHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def write_config(tmp_path: Path, clean_env) -> Callable[[Dict[str, Any]], str]:
    """Write a YAML config into tmp_path and return its path."""
    def _write(cfg: Dict[str, Any], name: str = "config.yaml") -> str:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(cfg, allow_unicode=True), encoding="utf-8")
        return str(path)

    return _write


class FixedClock:
    """Deterministic millisecond clock advancing by ``step`` per call."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()

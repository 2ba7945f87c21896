from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

AMBIENT_VARIABLES = (
    "INPUT_SOURCE-REPO",
    "INPUT_TARGET-REPO",
    "INPUT_TARGET-SSH-KEY",
    "INPUT_TARGET-TOKEN",
    "INPUT_SOURCE-SSH-KEY",
    "INPUT_GITHUB-HOST",
    "INPUT_STRICT-HOST-KEYS",
    "SSH_AUTH_SOCK",
    "SSH_AGENT_PID",
    "GIT_SSH_COMMAND",
    "GITHUB_OUTPUT",
    "GITHUB_REPOSITORY",
    "GITHUB_REPOSITORY_OWNER",
    "GITHUB_SERVER_URL",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Start every test without CI variables and with a private temp root."""
    for name in AMBIENT_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    temp_root = tmp_path / "tmp"
    temp_root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp_root))
    return temp_root

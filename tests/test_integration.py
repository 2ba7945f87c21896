"""End-to-end mirror of a local fixture repository with the real git binary."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest
from typer.testing import CliRunner

import git_mirror as gm
from tests.utils import SAMPLE_TOKEN

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(*args: str, cwd: Path | None = None) -> str:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd else None,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def fixture_repos(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> tuple[Path, Path]:
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    source = tmp_path / "source"
    target = tmp_path / "target.git"
    _git("init", "-q", str(source))
    identity = ("-c", "user.name=Mirror Test", "-c", "user.email=mirror@example.com", "-c", "commit.gpgsign=false")
    (source / "README").write_text("hello\n")
    _git("add", "README", cwd=source)
    _git(*identity, "commit", "-q", "-m", "initial", cwd=source)
    _git("branch", "feature", cwd=source)
    _git(*identity, "tag", "-a", "v1", "-m", "release", cwd=source)
    _git("init", "-q", "--bare", str(target))
    return source, target


def test_head_output_matches_mirrored_head(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    isolated_environment: Path,
    fixture_repos: tuple[Path, Path],
) -> None:
    source, target = fixture_repos

    def local_setup_global(self: gm.TokenCredentials) -> None:
        self.state_dir = gm._make_state_dir(self.repo, "cred")
        self.secret = None

    monkeypatch.setattr(gm.TokenCredentials, "remote_url", property(lambda self: str(target)))
    monkeypatch.setattr(gm.TokenCredentials, "setup_global", local_setup_global)
    output_file = tmp_path / "github_output"

    result = CliRunner().invoke(
        gm.app,
        [],
        env={
            "INPUT_SOURCE-REPO": str(source),
            "INPUT_TARGET-REPO": "acme/widgets",
            "INPUT_TARGET-TOKEN": SAMPLE_TOKEN,
            "GITHUB_OUTPUT": str(output_file),
        },
    )

    assert result.exit_code == 0, result.stdout
    expected = _git("rev-parse", "HEAD", cwd=source)
    lines = output_file.read_text().splitlines()
    head = lines[lines.index(next(line for line in lines if line.startswith("head-commit-hash<<"))) + 1]
    assert head == expected
    assert _git("rev-parse", "HEAD", cwd=target) == expected
    refs = _git("for-each-ref", "--format=%(refname)", cwd=target).splitlines()
    assert "refs/heads/feature" in refs
    assert "refs/tags/v1" in refs
    assert list(isolated_environment.iterdir()) == []

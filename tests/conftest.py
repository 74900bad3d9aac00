from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from typer.testing import CliRunner

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point config to a temp path so tests don't touch user state."""
    cfg_path = tmp_path / "config.toml"
    monkeypatch.setenv("SWARMCTL_CONFIG", str(cfg_path))
    for key in list(os.environ):
        if key.startswith("SWARMCTL_") and key != "SWARMCTL_CONFIG":
            monkeypatch.delenv(key, raising=False)
    return cfg_path


@pytest.fixture(autouse=True)
def capture_console(monkeypatch: Any) -> Console:
    """Use an in-memory Rich console during tests."""
    test_console = Console(record=True, width=200)
    import swarmctl.core.console as core_console
    import swarmctl.core.decorators as decorators
    import swarmctl.main as swarm_main

    monkeypatch.setattr(core_console, "console", test_console)
    monkeypatch.setattr(decorators, "console", test_console)
    monkeypatch.setattr(swarm_main, "console", test_console)
    return test_console


def _git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A git repository on branch ``main`` with one commit."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()

    # Use subprocess directly for setup (not part of SUT)
    _git(repo_path, "init", "--initial-branch=main")
    _git(repo_path, "config", "user.email", "test@test.com")
    _git(repo_path, "config", "user.name", "Test User")
    _git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Repo\n")
    (repo_path / "app.py").write_text("VALUE = 1\n")
    _git(repo_path, "add", ".")
    _git(repo_path, "commit", "-m", "Initial commit")
    return repo_path

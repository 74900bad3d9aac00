"""Tests for configuration loading and Safe Mode fallback."""

from __future__ import annotations

from pathlib import Path

from swarmctl.core.config import AppConfig, load_config


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    config, meta = load_config(config_path=tmp_path / "absent.toml")
    assert config.orchestrator.max_parallel == 4
    assert config.orchestrator.review_retries == 1
    assert config.orchestrator.tie_break == "declaration"
    assert config.workspace.baseline_branch == "main"
    assert not meta.file_loaded
    assert meta.error is None


def test_toml_file_is_loaded(tmp_path: Path) -> None:
    path = tmp_path / "swarmctl.toml"
    path.write_text(
        "[orchestrator]\nmax_parallel = 2\ntie_break = \"priority\"\n"
        "[phases]\nimplement = \"make build\"\n",
        encoding="utf-8",
    )
    config, meta = load_config(config_path=path)
    assert meta.file_loaded
    assert config.orchestrator.max_parallel == 2
    assert config.orchestrator.tie_break == "priority"
    assert config.phases.implement == "make build"


def test_json_file_is_loaded(tmp_path: Path) -> None:
    path = tmp_path / "swarmctl.json"
    path.write_text('{"retry": {"attempts": 5}}', encoding="utf-8")
    config, _ = load_config(config_path=path)
    assert config.retry.attempts == 5


def test_env_overrides_file(tmp_path: Path) -> None:
    path = tmp_path / "swarmctl.toml"
    path.write_text("[orchestrator]\nmax_parallel = 2\n", encoding="utf-8")
    config, meta = load_config(
        config_path=path, env={"SWARMCTL_ORCHESTRATOR__MAX_PARALLEL": "8"}
    )
    assert config.orchestrator.max_parallel == 8
    assert meta.env_overrides == {"orchestrator.max_parallel"}


def test_syntax_error_enters_safe_mode(tmp_path: Path) -> None:
    path = tmp_path / "swarmctl.toml"
    path.write_text("[orchestrator\n", encoding="utf-8")
    config, meta = load_config(config_path=path)
    assert meta.error is not None
    assert config == AppConfig()


def test_invalid_value_enters_safe_mode(tmp_path: Path) -> None:
    path = tmp_path / "swarmctl.toml"
    path.write_text("[orchestrator]\nmax_parallel = 0\ntie_break = \"random\"\n", encoding="utf-8")
    config, meta = load_config(config_path=path)
    assert meta.error is not None
    assert config.orchestrator.max_parallel == 4


def test_config_path_from_environment(tmp_path: Path, isolate_config: Path) -> None:
    isolate_config.write_text("[user]\nlog_level = \"DEBUG\"\n", encoding="utf-8")
    config, meta = load_config()
    assert meta.path == isolate_config
    assert config.user.log_level == "DEBUG"


def test_worktree_root_is_created(tmp_path: Path) -> None:
    root = tmp_path / "trees"
    path = tmp_path / "swarmctl.toml"
    path.write_text(f"[workspace]\nworktree_root = \"{root}\"\n", encoding="utf-8")
    config, _ = load_config(config_path=path)
    assert config.workspace.worktree_root == root.resolve()
    assert root.is_dir()

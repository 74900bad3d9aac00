"""Tests for CLI error presentation."""

from __future__ import annotations

import pytest
import typer
from rich.console import Console

from swarmctl.core.config import ConfigError
from swarmctl.core.decorators import exit_code_for, handle_exceptions
from swarmctl.core.result import (
    ConfigurationError,
    GitError,
    PhaseFailure,
    ValidationError,
)


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (ValidationError("bad input"), 2),
        (ConfigurationError("bad config"), 3),
        (ConfigError("bad file"), 3),
        (GitError("not a repository"), 4),
        (PhaseFailure("planning crashed"), 1),
        (PermissionError("denied"), 1),
    ],
)
def test_exit_code_per_error_class(error: Exception, code: int) -> None:
    assert exit_code_for(error) == code


def test_context_is_printed_under_the_message(capture_console: Console) -> None:
    @handle_exceptions
    def failing() -> None:
        raise GitError("merge refused", context={"branch": "swarm/task-001-ab12", "returncode": 128})

    with pytest.raises(typer.Exit) as exc_info:
        failing()

    assert exc_info.value.exit_code == 4
    output = capture_console.export_text()
    assert "merge refused" in output
    assert "branch: swarm/task-001-ab12" in output
    assert "returncode: 128" in output


def test_return_value_passes_through() -> None:
    @handle_exceptions
    def fine(value: int) -> int:
        return value * 2

    assert fine(21) == 42


def test_unrelated_errors_propagate() -> None:
    @handle_exceptions
    def broken() -> None:
        raise KeyError("bug")

    with pytest.raises(KeyError):
        broken()

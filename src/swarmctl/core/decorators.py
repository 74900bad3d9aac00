from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, NoReturn, TypeVar

import typer
from rich.markup import escape

from swarmctl.core.config import ConfigError
from swarmctl.core.console import console
from swarmctl.core.result import ConfigurationError, SwarmError, ValidationError, WorkspaceError

F = TypeVar("F", bound=Callable[..., Any])

# Checked in order; the first matching class wins.
EXIT_CODES: tuple[tuple[type[Exception], int], ...] = (
    (ValidationError, 2),
    (ConfigurationError, 3),
    (ConfigError, 3),
    (WorkspaceError, 4),
)


def exit_code_for(exc: Exception) -> int:
    """Process exit status for an error that ends a CLI command."""
    for error_type, code in EXIT_CODES:
        if isinstance(exc, error_type):
            return code
    return 1


def _report(exc: Exception) -> NoReturn:
    if isinstance(exc, SwarmError):
        console.print(f"[red]{escape(exc.message)}[/red]")
        for key, value in exc.context.items():
            console.print(f"  [dim]{escape(key)}:[/dim] {escape(str(value))}")
    else:
        console.print(f"[red]{escape(str(exc))}[/red]")
    raise typer.Exit(code=exit_code_for(exc))


def handle_exceptions(func: F) -> F:
    """Print orchestration errors with their context and exit with a status per error class.

    Exit codes: 2 bad input, 3 configuration, 4 repository or workspace,
    1 anything else.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (SwarmError, ConfigError, PermissionError) as exc:
            _report(exc)

    return wrapper  # type: ignore[return-value]


__all__ = ["EXIT_CODES", "exit_code_for", "handle_exceptions"]

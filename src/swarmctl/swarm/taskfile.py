"""Task files: the input of ``swarmctl run``.

A task file lists the tasks of one run in order, in TOML or JSON::

    [[tasks]]
    name = "schema"
    description = "Add the users table"

    [[tasks]]
    description = "Expose users over the API"
    depends_on = ["schema"]
    priority = 5

``depends_on`` entries may reference a task's ``name`` or the id it will be
assigned (``task-001`` for the first task).
"""

from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from swarmctl.core.result import ConfigurationError


class TaskSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str
    name: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    priority: int = 0

    @field_validator("description")
    @classmethod
    def description_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("description must not be empty")
        return v.strip()


class TaskFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tasks: list[TaskSpec] = Field(min_length=1)


@dataclass(frozen=True)
class RunSpec:
    """Task file contents translated to controller arguments."""

    descriptions: list[str]
    dependencies: list[tuple[str, str]]
    priorities: list[int]
    names: dict[str, str]


def _task_id(index: int) -> str:
    return f"task-{index + 1:03d}"


def to_run_spec(task_file: TaskFile) -> RunSpec:
    """Resolve names to the ids the registry will assign."""
    names: dict[str, str] = {}
    for index, entry in enumerate(task_file.tasks):
        if entry.name is None:
            continue
        if entry.name in names:
            raise ConfigurationError(f"Duplicate task name: {entry.name}")
        names[entry.name] = _task_id(index)

    known_ids = {_task_id(index) for index in range(len(task_file.tasks))}
    dependencies: list[tuple[str, str]] = []
    for index, entry in enumerate(task_file.tasks):
        for ref in entry.depends_on:
            target = names.get(ref, ref)
            if target not in known_ids:
                raise ConfigurationError(
                    f"Task {_task_id(index)} depends on unknown task '{ref}'"
                )
            dependencies.append((_task_id(index), target))

    return RunSpec(
        descriptions=[entry.description for entry in task_file.tasks],
        dependencies=dependencies,
        priorities=[entry.priority for entry in task_file.tasks],
        names={task_id: name for name, task_id in names.items()},
    )


def load_task_file(path: Path) -> RunSpec:
    """Read and validate a task file.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read task file {path}: {exc}") from exc

    parser = json.loads if path.suffix.lower() == ".json" else tomllib.loads
    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"Syntax error in {path}: {exc}") from exc

    try:
        task_file = TaskFile.model_validate(data)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid task file {path}: {exc}") from exc

    return to_run_spec(task_file)


__all__ = ["RunSpec", "TaskFile", "TaskSpec", "load_task_file", "to_run_spec"]

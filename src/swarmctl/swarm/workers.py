"""Phase worker that runs a configured command per phase.

The command runs inside the task's worktree with the task exposed through
environment variables:

    SWARMCTL_TASK_ID           task id
    SWARMCTL_PHASE             exploring | planning | implementing | reviewing
    SWARMCTL_TASK_DESCRIPTION  task description
    SWARMCTL_TOUCH_SET         current touch-set, newline separated

Exit 0 succeeds, exit 75 (EX_TEMPFAIL) asks for a retry, anything else fails
the phase. The last line of stdout may be a JSON object such as
``{"touch_set": ["src/app.py"], "verdict": "approved"}``.
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from swarmctl.core.config import PhaseCommandConfig
from swarmctl.core.result import Err, Ok, ProviderUnavailable
from swarmctl.core.system import run_command
from swarmctl.structures.task import Phase, ReviewVerdict, Task
from swarmctl.swarm.types import PhaseOutcome, WorkspaceHandle

logger = logging.getLogger(__name__)

EX_TEMPFAIL = 75

_PHASE_COMMANDS: dict[Phase, str] = {
    Phase.EXPLORING: "explore",
    Phase.PLANNING: "plan",
    Phase.IMPLEMENTING: "implement",
    Phase.REVIEWING: "review",
}


class WorkerReport(BaseModel):
    """Structured trailer a phase command may print as its last line."""

    model_config = ConfigDict(extra="ignore")

    touch_set: list[str] | None = None
    verdict: ReviewVerdict | None = None
    detail: str | None = None


def parse_report(stdout: str) -> WorkerReport | None:
    """Parse the trailing JSON object of ``stdout``, if there is one.

    Raises:
        pydantic.ValidationError: If the trailer is JSON but malformed
    """
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines or not lines[-1].startswith("{"):
        return None
    try:
        json.loads(lines[-1])
    except json.JSONDecodeError:
        return None
    return WorkerReport.model_validate_json(lines[-1])


class CommandPhaseWorker:
    """Runs ``phases.<explore|plan|implement|review>`` commands.

    A phase without a command succeeds immediately; a review without a
    command approves.
    """

    def __init__(self, commands: PhaseCommandConfig) -> None:
        self._commands = commands

    def command_for(self, phase: Phase) -> str | None:
        field = _PHASE_COMMANDS.get(phase)
        if field is None:
            return None
        command: str | None = getattr(self._commands, field)
        return command

    async def run(self, phase: Phase, task: Task, handle: WorkspaceHandle) -> PhaseOutcome:
        command = self.command_for(phase)
        if not command:
            if phase is Phase.REVIEWING:
                return PhaseOutcome.success(verdict=ReviewVerdict.APPROVED)
            return PhaseOutcome.success()

        env = {
            "SWARMCTL_TASK_ID": task.id,
            "SWARMCTL_PHASE": phase.value,
            "SWARMCTL_TASK_DESCRIPTION": task.description,
            "SWARMCTL_TOUCH_SET": "\n".join(sorted(task.touch_set)),
        }

        match await run_command(command, handle.path, env=env, timeout=self._commands.timeout):
            case Err(err):
                return PhaseOutcome.failure(str(err))
            case Ok(result):
                pass

        if result.returncode == EX_TEMPFAIL:
            raise ProviderUnavailable(
                f"{phase.value} command asked to be retried",
                context={"task_id": task.id},
            )
        if not result.ok:
            output = result.tail() or "no output"
            return PhaseOutcome.failure(f"exit {result.returncode}: {output}")

        try:
            report = parse_report(result.stdout)
        except PydanticValidationError as exc:
            return PhaseOutcome.failure(f"malformed report from {phase.value} command: {exc}")

        if report is None:
            report = WorkerReport()
        if report.verdict is ReviewVerdict.UNREVIEWED:
            return PhaseOutcome.failure("review command reported no verdict")

        verdict = report.verdict
        if phase is Phase.REVIEWING and verdict is None:
            verdict = ReviewVerdict.APPROVED

        logger.debug("%s %s finished", task.id, phase.value)
        return PhaseOutcome.success(
            touch_set=frozenset(report.touch_set) if report.touch_set is not None else None,
            verdict=verdict if phase is Phase.REVIEWING else None,
            detail=report.detail,
        )


__all__ = ["EX_TEMPFAIL", "CommandPhaseWorker", "WorkerReport", "parse_report"]

"""Conflict inference and merge ordering.

The analyzer turns touch-sets and explicit dependencies into a total merge
order:

1. Explicit edges (``dependency -> dependent``) are checked for cycles. Every
   task on a cycle is reported through ``CycleError``; cycles are never
   broken automatically.
2. A deterministic linear extension of the explicit edges is computed with
   Kahn's algorithm, using the tie-break key to pick among ready tasks.
3. Each conflict edge (intersecting touch-sets) is oriented by position in
   that extension. The orientation can never contradict an explicit
   dependency, so conflict edges never introduce cycles.
4. The union of both edge sets is sorted again with the same key.

Tasks with neither kind of edge stay mutually unconstrained.

[invariant:typing] All types are explicit; mypy --strict compliant.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from swarmctl.core.result import CycleError, Err, Ok, Result
from swarmctl.swarm.types import ConflictEdge, MergePlan

logger = logging.getLogger(__name__)

SortKey = tuple[Any, ...]


@dataclass
class TaskNode:
    """Everything the analyzer knows about one task."""

    task_id: str
    declared: int
    priority: int = 0
    touch_set: frozenset[str] = field(default_factory=frozenset)
    depends_on: set[str] = field(default_factory=set)


class TieBreak(str, Enum):
    """Deterministic orderings for tasks that nothing else orders.

    Every key ends with the task id, which makes the order total and stable
    across runs with identical input.
    """

    DECLARATION = "declaration"
    LEXICOGRAPHIC = "lexicographic"
    PRIORITY = "priority"
    TOUCH_SET_SIZE = "touch-set-size"

    def key(self, node: TaskNode) -> SortKey:
        match self:
            case TieBreak.DECLARATION:
                return (node.declared, node.task_id)
            case TieBreak.LEXICOGRAPHIC:
                return (node.task_id,)
            case TieBreak.PRIORITY:
                return (-node.priority, node.declared, node.task_id)
            case TieBreak.TOUCH_SET_SIZE:
                # Broader changes are treated as more foundational.
                return (-len(node.touch_set), node.declared, node.task_id)
        raise AssertionError(self)


class DependencyAnalyzer:
    """Builds the conflict graph and derives the merge plan."""

    def __init__(self, tie_break: TieBreak | str = TieBreak.DECLARATION) -> None:
        self._tie_break = TieBreak(tie_break)
        self._nodes: dict[str, TaskNode] = {}
        self._declared = 0

    @property
    def tie_break(self) -> TieBreak:
        return self._tie_break

    @property
    def task_ids(self) -> list[str]:
        return list(self._nodes)

    def add_task(self, task_id: str, *, priority: int = 0) -> None:
        """Register a task; repeated calls only update the priority."""
        node = self._nodes.get(task_id)
        if node is None:
            self._nodes[task_id] = TaskNode(task_id=task_id, declared=self._declared, priority=priority)
            self._declared += 1
        else:
            node.priority = priority

    def add_touch_set(self, task_id: str, resources: Iterable[str]) -> None:
        """Replace the task's touch-set (estimates are refined, not merged)."""
        self._node(task_id).touch_set = frozenset(resources)

    def add_explicit_dependency(self, task_id: str, depends_on: str) -> None:
        """Require ``depends_on`` to integrate before ``task_id``."""
        self._node(depends_on)
        self._node(task_id).depends_on.add(depends_on)

    def remove_task(self, task_id: str) -> None:
        """Drop a task and every edge that mentions it."""
        self._nodes.pop(task_id, None)
        for node in self._nodes.values():
            node.depends_on.discard(task_id)

    def touch_set(self, task_id: str) -> frozenset[str]:
        return self._node(task_id).touch_set

    def conflict_edges(self) -> list[ConflictEdge]:
        """Every pair of tasks whose touch-sets intersect, in stable order."""
        owners: dict[str, list[str]] = {}
        for node in self._ordered_nodes():
            for resource in node.touch_set:
                owners.setdefault(resource, []).append(node.task_id)

        shared: dict[tuple[str, str], set[str]] = {}
        for resource, task_ids in owners.items():
            for i, first in enumerate(task_ids):
                for second in task_ids[i + 1 :]:
                    shared.setdefault((first, second), set()).add(resource)

        return [
            ConflictEdge(first=first, second=second, resources=frozenset(resources))
            for (first, second), resources in sorted(
                shared.items(), key=lambda item: (self._rank(item[0][0]), self._rank(item[0][1]))
            )
        ]

    def compute_order(self) -> Result[MergePlan, CycleError]:
        """Derive the merge plan from explicit and conflict edges.

        Returns:
            Ok(MergePlan) on success, Err(CycleError) naming every cycle member
        """
        explicit: dict[str, set[str]] = {
            task_id: {dep for dep in node.depends_on if dep in self._nodes}
            for task_id, node in self._nodes.items()
        }

        match self._sort(explicit):
            case Err(err):
                logger.warning("Merge order unavailable: %s", err)
                return Err(err)
            case Ok(extension):
                pass

        position = {task_id: index for index, task_id in enumerate(extension)}
        conflicts: dict[str, set[str]] = {task_id: set() for task_id in self._nodes}
        for edge in self.conflict_edges():
            first, second = edge.first, edge.second
            if first in explicit[second] or second in explicit[first]:
                continue
            earlier, later = (first, second) if position[first] < position[second] else (second, first)
            conflicts[later].add(earlier)

        combined = {task_id: explicit[task_id] | conflicts[task_id] for task_id in self._nodes}
        match self._sort(combined):
            case Err(err):
                # Unreachable unless the orientation above is broken.
                return Err(err)
            case Ok(order):
                pass

        plan = MergePlan(
            order=tuple(order),
            explicit={tid: frozenset(deps) for tid, deps in explicit.items() if deps},
            conflicts={tid: frozenset(deps) for tid, deps in conflicts.items() if deps},
        )
        logger.debug("Merge plan: %s", " -> ".join(plan.order) or "(empty)")
        return Ok(plan)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _node(self, task_id: str) -> TaskNode:
        if task_id not in self._nodes:
            self.add_task(task_id)
        return self._nodes[task_id]

    def _rank(self, task_id: str) -> SortKey:
        return self._tie_break.key(self._nodes[task_id])

    def _ordered_nodes(self) -> list[TaskNode]:
        return sorted(self._nodes.values(), key=self._tie_break.key)

    def _sort(self, predecessors: Mapping[str, set[str]]) -> Result[list[str], CycleError]:
        """Kahn's algorithm with the tie-break key as heap priority."""
        in_degree = {task_id: len(deps) for task_id, deps in predecessors.items()}
        successors: dict[str, list[str]] = {task_id: [] for task_id in predecessors}
        for task_id, deps in predecessors.items():
            for dep in deps:
                successors[dep].append(task_id)

        heap = [(self._rank(tid), tid) for tid, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        order: list[str] = []
        while heap:
            _, current = heapq.heappop(heap)
            order.append(current)
            for successor in successors[current]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    heapq.heappush(heap, (self._rank(successor), successor))

        if len(order) == len(predecessors):
            return Ok(order)

        remaining = {tid for tid, degree in in_degree.items() if degree > 0}
        return Err(CycleError(_cycles_among(remaining, predecessors)))


def _cycles_among(nodes: set[str], predecessors: Mapping[str, set[str]]) -> list[list[str]]:
    """Strongly connected components that form cycles (Tarjan).

    Tasks left over by Kahn's algorithm either sit on a cycle or merely
    depend on one; only the former are reported.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    cycles: list[list[str]] = []
    counter = 0

    def neighbours(task_id: str) -> list[str]:
        return sorted(dep for dep in predecessors[task_id] if dep in nodes)

    def visit(root: str) -> None:
        nonlocal counter
        # Iterative DFS keeps deep chains clear of the recursion limit.
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            task_id, child_index = work.pop()
            if child_index == 0:
                index_of[task_id] = lowlink[task_id] = counter
                counter += 1
                stack.append(task_id)
                on_stack.add(task_id)
            children = neighbours(task_id)
            if child_index < len(children):
                work.append((task_id, child_index + 1))
                child = children[child_index]
                if child not in index_of:
                    work.append((child, 0))
                elif child in on_stack:
                    lowlink[task_id] = min(lowlink[task_id], index_of[child])
                continue
            if lowlink[task_id] == index_of[task_id]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == task_id:
                        break
                if len(component) > 1 or task_id in predecessors[task_id]:
                    cycles.append(sorted(component))
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[task_id])

    for task_id in sorted(nodes):
        if task_id not in index_of:
            visit(task_id)

    return cycles


__all__ = ["DependencyAnalyzer", "TaskNode", "TieBreak"]

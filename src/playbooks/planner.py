"""ExecutionPlanner - turns a validated step graph into ordered ready sets."""

from collections import deque
from typing import Deque, Dict, List, Sequence

from .errors import CyclicGraphError
from .models import BaseStep

ExecutionPlan = List[List[str]]


class ExecutionPlanner:
    """
    Compute the ready sets of a step graph with Kahn's algorithm.

    Each ready set holds the steps whose dependencies all appear in earlier
    sets. Members of a set keep their declaration order, so the same input
    always yields the same plan. Branch selection is a run-time decision and
    does not affect the plan.
    """

    def plan(self, steps: Sequence[BaseStep]) -> ExecutionPlan:
        """
        Build the execution plan.

        Args:
            steps: Steps in declaration order (assumed to have unique keys)

        Returns:
            List of ready sets, each a list of step keys

        Raises:
            CyclicGraphError: If some steps can never become ready
        """
        order = {step.key: index for index, step in enumerate(steps)}
        in_degree: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {key: [] for key in order}

        for step in steps:
            deps = [d for d in dict.fromkeys(step.depends_on) if d in order]
            in_degree[step.key] = len(deps)
            for dep in deps:
                dependents[dep].append(step.key)

        ready: Deque[str] = deque(k for k in order if in_degree[k] == 0)
        plan: ExecutionPlan = []
        scheduled = 0

        while ready:
            current = sorted(ready, key=order.__getitem__)
            ready.clear()
            plan.append(current)
            scheduled += len(current)

            for key in current:
                for dependent in dependents[key]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        ready.append(dependent)

        if scheduled != len(order):
            unscheduled = [k for k in order if in_degree[k] > 0]
            raise CyclicGraphError(unscheduled)

        return plan


def flatten(plan: ExecutionPlan) -> List[str]:
    """Concatenate the ready sets of a plan into a single ordering."""
    return [key for ready_set in plan for key in ready_set]

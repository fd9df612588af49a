"""GraphValidator - rejects malformed playbook graphs before any run is created."""

import argparse
import sys
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set

from .models import BaseStep, BranchStep, PlaybookDefinition
from .templates import step_references


class IssueSeverity(str, Enum):
    """Validation issue severity levels."""

    ERROR = "error"
    WARNING = "warning"


class IssueCode(str, Enum):
    """Machine-readable issue codes."""

    EMPTY_GRAPH = "EMPTY_GRAPH"
    DUPLICATE_KEYS = "DUPLICATE_KEYS"
    INVALID_EDGES = "INVALID_EDGES"
    NO_ENTRY_POINT = "NO_ENTRY_POINT"
    MULTIPLE_ENTRY_POINTS = "MULTIPLE_ENTRY_POINTS"
    ORPHANED_NODES = "ORPHANED_NODES"
    CYCLIC_GRAPH = "CYCLIC_GRAPH"
    INCOMPLETE_BRANCH = "INCOMPLETE_BRANCH"
    BRANCH_TARGET_NOT_DEPENDENT = "BRANCH_TARGET_NOT_DEPENDENT"
    UNDECLARED_REFERENCE = "UNDECLARED_REFERENCE"


@dataclass(frozen=True)
class Issue:
    """A validation issue with severity and the step it concerns."""

    code: str
    message: str
    severity: IssueSeverity
    step_key: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == IssueSeverity.ERROR

    def __str__(self) -> str:
        prefix = f"[{self.severity.value.upper()}] {self.code}"
        if self.step_key:
            prefix += f" (step '{self.step_key}')"
        return f"{prefix}: {self.message}"


@dataclass
class ValidationReport:
    """Result of validating a step set."""

    valid: bool
    issues: List[Issue] = field(default_factory=list)

    @property
    def errors(self) -> List[Issue]:
        return [i for i in self.issues if i.is_error]

    @property
    def warnings(self) -> List[Issue]:
        return [i for i in self.issues if not i.is_error]

    @property
    def codes(self) -> List[str]:
        return [i.code for i in self.issues]


class GraphValidator:
    """
    Validate the structure of a playbook's step graph.

    Checks, in order, accumulating every applicable issue:
    - Empty graph
    - Duplicate step keys
    - Invalid edges (unknown keys, self dependencies, unknown branch targets)
    - Entry point count
    - Orphaned (unreachable) steps
    - Dependency cycles
    - Branches without a default target (warning)

    The graph is valid iff no error-severity issue was produced.
    """

    def validate(self, steps: Sequence[BaseStep]) -> ValidationReport:
        """
        Validate a list of steps.

        Args:
            steps: Steps in declaration order

        Returns:
            ValidationReport with all issues found
        """
        issues: List[Issue] = []

        if not steps:
            issues.append(
                self._error(IssueCode.EMPTY_GRAPH, "Playbook has no steps")
            )
            return ValidationReport(valid=False, issues=issues)

        # First declaration wins for every later check
        by_key: Dict[str, BaseStep] = {}
        for step in steps:
            by_key.setdefault(step.key, step)
        unique = list(by_key.values())

        issues.extend(self._check_duplicates(steps))
        issues.extend(self._check_edges(unique, by_key))

        deps = self._valid_dependencies(unique, by_key)
        entries = [s.key for s in unique if not s.depends_on]

        issues.extend(self._check_entry_points(entries))
        if entries:
            issues.extend(self._check_orphans(unique, deps, entries))
        issues.extend(self._check_cycles(unique, deps))
        issues.extend(self._check_branches(unique, by_key))
        issues.extend(self._check_references(unique, deps))

        valid = not any(i.is_error for i in issues)
        return ValidationReport(valid=valid, issues=issues)

    def validate_playbook(self, playbook: PlaybookDefinition) -> ValidationReport:
        """Validate a playbook's steps and its designated sink step."""
        report = self.validate(playbook.steps)
        if playbook.sink_key and playbook.sink_key not in playbook.step_keys:
            report.issues.append(
                self._error(
                    IssueCode.INVALID_EDGES,
                    f"Sink step '{playbook.sink_key}' does not exist",
                )
            )
            report.valid = False
        return report

    def _check_duplicates(self, steps: Sequence[BaseStep]) -> List[Issue]:
        counts = Counter(step.key for step in steps)
        issues: List[Issue] = []
        seen: Set[str] = set()
        for step in steps:
            if counts[step.key] > 1 and step.key not in seen:
                seen.add(step.key)
                issues.append(
                    self._error(
                        IssueCode.DUPLICATE_KEYS,
                        f"Step key '{step.key}' is declared {counts[step.key]} times",
                        step.key,
                    )
                )
        return issues

    def _check_edges(
        self, steps: List[BaseStep], by_key: Dict[str, BaseStep]
    ) -> List[Issue]:
        issues: List[Issue] = []
        for step in steps:
            for dep in step.depends_on:
                if dep == step.key:
                    issues.append(
                        self._error(
                            IssueCode.INVALID_EDGES,
                            "Step depends on itself",
                            step.key,
                        )
                    )
                elif dep not in by_key:
                    issues.append(
                        self._error(
                            IssueCode.INVALID_EDGES,
                            f"Dependency '{dep}' does not exist",
                            step.key,
                        )
                    )

            if isinstance(step, BranchStep):
                for target in step.condition.target_keys:
                    if target == step.key:
                        issues.append(
                            self._error(
                                IssueCode.INVALID_EDGES,
                                "Branch targets itself",
                                step.key,
                            )
                        )
                    elif target not in by_key:
                        issues.append(
                            self._error(
                                IssueCode.INVALID_EDGES,
                                f"Branch target '{target}' does not exist",
                                step.key,
                            )
                        )
        return issues

    def _check_entry_points(self, entries: List[str]) -> List[Issue]:
        if not entries:
            return [
                self._error(
                    IssueCode.NO_ENTRY_POINT,
                    "No step without dependencies; the graph has no entry point",
                )
            ]
        if len(entries) > 1:
            return [
                self._error(
                    IssueCode.MULTIPLE_ENTRY_POINTS,
                    "Exactly one entry point is required, found "
                    f"{len(entries)}: {', '.join(entries)}",
                )
            ]
        return []

    def _check_orphans(
        self,
        steps: List[BaseStep],
        deps: Dict[str, List[str]],
        entries: List[str],
    ) -> List[Issue]:
        dependents: Dict[str, List[str]] = {s.key: [] for s in steps}
        for key, key_deps in deps.items():
            for dep in key_deps:
                dependents[dep].append(key)

        reachable: Set[str] = set(entries)
        queue = deque(entries)
        while queue:
            for nxt in dependents[queue.popleft()]:
                if nxt not in reachable:
                    reachable.add(nxt)
                    queue.append(nxt)

        return [
            self._error(
                IssueCode.ORPHANED_NODES,
                "Step is unreachable from the entry point",
                step.key,
            )
            for step in steps
            if step.key not in reachable
        ]

    def _check_cycles(
        self, steps: List[BaseStep], deps: Dict[str, List[str]]
    ) -> List[Issue]:
        white, gray, black = 0, 1, 2
        color = {s.key: white for s in steps}
        issues: List[Issue] = []

        for start in color:
            if color[start] != white:
                continue
            color[start] = gray
            path = [start]
            stack = [iter(deps[start])]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    color[path.pop()] = black
                    stack.pop()
                elif color[nxt] == gray:
                    cycle = path[path.index(nxt) :] + [nxt]
                    issues.append(
                        self._error(
                            IssueCode.CYCLIC_GRAPH,
                            "Dependency cycle: " + " -> ".join(cycle),
                            nxt,
                        )
                    )
                elif color[nxt] == white:
                    color[nxt] = gray
                    path.append(nxt)
                    stack.append(iter(deps[nxt]))
        return issues

    def _check_branches(
        self, steps: List[BaseStep], by_key: Dict[str, BaseStep]
    ) -> List[Issue]:
        issues: List[Issue] = []
        for step in steps:
            if not isinstance(step, BranchStep):
                continue
            if not step.condition.default_key:
                issues.append(
                    self._warning(
                        IssueCode.INCOMPLETE_BRANCH,
                        "Branch has no default target; a run fails if no condition matches",
                        step.key,
                    )
                )
            for target in step.condition.target_keys:
                target_step = by_key.get(target)
                if target_step is not None and step.key not in target_step.depends_on:
                    issues.append(
                        self._warning(
                            IssueCode.BRANCH_TARGET_NOT_DEPENDENT,
                            f"Branch target '{target}' does not depend on the branch step",
                            step.key,
                        )
                    )
        return issues

    def _check_references(
        self, steps: List[BaseStep], deps: Dict[str, List[str]]
    ) -> List[Issue]:
        issues: List[Issue] = []
        for step in steps:
            ancestors = self._ancestors(step.key, deps)
            for ref in sorted(step_references(step)):
                if ref not in ancestors:
                    issues.append(
                        self._warning(
                            IssueCode.UNDECLARED_REFERENCE,
                            f"References step '{ref}', which is not an ancestor; "
                            "its output may be unavailable at run time",
                            step.key,
                        )
                    )
        return issues

    @staticmethod
    def _valid_dependencies(
        steps: List[BaseStep], by_key: Dict[str, BaseStep]
    ) -> Dict[str, List[str]]:
        return {
            s.key: [d for d in s.depends_on if d in by_key and d != s.key]
            for s in steps
        }

    @staticmethod
    def _ancestors(key: str, deps: Dict[str, List[str]]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(deps.get(key, []))
        while stack:
            dep = stack.pop()
            if dep not in seen:
                seen.add(dep)
                stack.extend(deps.get(dep, []))
        return seen

    @staticmethod
    def _error(code: IssueCode, message: str, step_key: Optional[str] = None) -> Issue:
        return Issue(code.value, message, IssueSeverity.ERROR, step_key)

    @staticmethod
    def _warning(code: IssueCode, message: str, step_key: Optional[str] = None) -> Issue:
        return Issue(code.value, message, IssueSeverity.WARNING, step_key)


def format_issue(issue: Issue, color: bool = True) -> str:
    """Format an issue for terminal output."""
    if not color:
        return str(issue)
    code = "\033[91m" if issue.is_error else "\033[93m"
    return f"{code}{issue}\033[0m"


def main() -> None:
    """CLI entry point for playbook validation."""
    from .loader import PlaybookLoader
    from .planner import ExecutionPlanner

    parser = argparse.ArgumentParser(
        description="Validate playbook YAML files before execution"
    )
    parser.add_argument("playbook", help="Path to playbook YAML file")
    parser.add_argument(
        "--plan",
        action="store_true",
        help="Show the ready sets of a valid playbook",
    )
    parser.add_argument(
        "--no-color", action="store_true", help="Disable colored output"
    )

    args = parser.parse_args()

    try:
        playbook = PlaybookLoader().load_from_file(args.playbook)
        report = GraphValidator().validate_playbook(playbook)

        for issue in report.issues:
            print(format_issue(issue, color=not args.no_color))

        if report.issues:
            print(
                f"\nValidation Summary: {len(report.errors)} error(s), "
                f"{len(report.warnings)} warning(s)"
            )

        if report.valid and args.plan:
            plan = ExecutionPlanner().plan(playbook.steps)
            print(f"\nPlaybook: {playbook.name} v{playbook.version}")
            print(f"Execution Plan ({len(playbook.steps)} steps):\n")
            for i, ready_set in enumerate(plan, 1):
                print(f"{i}. {', '.join(ready_set)}")

        sys.exit(0 if report.valid else 1)

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Custom exceptions for playbook execution with enhanced error context."""

from difflib import get_close_matches
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .validator import Issue


class PlaybookExecutionError(Exception):
    """Base exception for playbook execution errors."""

    code: str = "EXECUTION_ERROR"


class GraphValidationError(PlaybookExecutionError):
    """
    Raised when a playbook graph is rejected before a run is created.

    Carries the full list of validator issues so callers can act on
    individual issue codes.
    """

    code = "VALIDATION_ERROR"

    def __init__(self, playbook_name: str, issues: List["Issue"]):
        """
        Initialize GraphValidationError.

        Args:
            playbook_name: The playbook that failed validation
            issues: All issues produced by the validator (errors and warnings)
        """
        self.playbook_name = playbook_name
        self.issues = issues

        errors = [i for i in issues if i.is_error]
        message = f"Playbook '{playbook_name}' failed validation "
        message += f"({len(errors)} error(s))\n"
        for issue in errors:
            message += f"  - [{issue.code}] {issue.message}\n"

        super().__init__(message)

    @property
    def codes(self) -> List[str]:
        """Issue codes of all error-severity issues."""
        return [i.code for i in self.issues if i.is_error]


class CyclicGraphError(PlaybookExecutionError):
    """Raised by the planner when the dependency graph contains a cycle."""

    code = "CYCLIC_GRAPH"

    def __init__(self, unscheduled: List[str]):
        self.unscheduled = unscheduled
        super().__init__(
            "Dependency cycle detected; steps that could not be scheduled: "
            + ", ".join(unscheduled)
        )


class ConfigurationError(PlaybookExecutionError):
    """
    Raised for step configuration problems.

    Configuration errors are always fatal and never retried.
    """

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, step_key: Optional[str] = None):
        self.step_key = step_key
        if step_key:
            message = f"Step '{step_key}': {message}"
        super().__init__(message)


class UnresolvedReferenceError(ConfigurationError):
    """
    Raised when a template reference cannot be resolved.

    Lists the references that are available to aid debugging.
    """

    code = "UNRESOLVED_REFERENCE"

    def __init__(
        self,
        reference: str,
        step_key: Optional[str],
        available: Dict[str, Any],
    ):
        """
        Initialize UnresolvedReferenceError.

        Args:
            reference: The dotted reference that failed, e.g. "research.output.summary"
            step_key: The step whose template contained the reference
            available: Mapping of resolvable roots to their values
        """
        self.reference = reference
        self.available = available

        message = f"Unresolved reference '{{{{{reference}}}}}'\n\n"
        message += "Available references:\n"
        if available:
            for key, value in sorted(available.items()):
                if isinstance(value, dict):
                    message += f"  - {key}: dict with {len(value)} keys\n"
                elif isinstance(value, list):
                    message += f"  - {key}: list with {len(value)} items\n"
                else:
                    preview = str(value)
                    if len(preview) > 80:
                        preview = preview[:77] + "..."
                    message += f"  - {key}: {preview}\n"
        else:
            message += "  (nothing available)\n"

        message += (
            "\nTip: References must point at a completed ancestor step, "
            "e.g. {{research.output.summary}}.\n"
        )

        super().__init__(message, step_key=step_key)


class AgentNotFoundError(ConfigurationError):
    """
    Raised when an agent is not found in the registry.

    Provides suggestions for close matches and lists available agents.
    """

    code = "AGENT_NOT_FOUND"

    def __init__(
        self,
        agent_id: str,
        available_agents: List[str],
        step_key: Optional[str] = None,
    ):
        self.agent_id = agent_id
        self.available_agents = available_agents

        suggestions = get_close_matches(agent_id, available_agents, n=3, cutoff=0.6)

        message = f"Agent '{agent_id}' not found in registry\n"
        if suggestions:
            message += "Did you mean one of these?\n"
            for suggestion in suggestions:
                message += f"  - {suggestion}\n"

        message += f"Available agents ({len(available_agents)}):\n"
        for agent in sorted(available_agents):
            message += f"  - {agent}\n"

        message += "\nTip: Register your agent with:\n"
        message += "  registry.register(YourAgent())\n"

        super().__init__(message, step_key=step_key)


class StepExecutionError(PlaybookExecutionError):
    """
    Raised when a step handler fails.

    Every handler failure is classified as retryable or fatal so the
    coordinator can apply the step's retry policy.
    """

    def __init__(
        self,
        step_key: str,
        message: str,
        retryable: bool,
        code: str = "STEP_FAILED",
        original_error: Optional[BaseException] = None,
    ):
        self.step_key = step_key
        self.retryable = retryable
        self.code = code
        self.original_error = original_error

        kind = "retryable" if retryable else "fatal"
        super().__init__(f"Step '{step_key}' failed ({kind}): {message}")

    @property
    def detail(self) -> str:
        """The underlying error message without the step prefix."""
        if self.original_error is not None:
            return f"{type(self.original_error).__name__}: {self.original_error}"
        return str(self)


class AgentError(PlaybookExecutionError):
    """
    Raised by agent handlers to report a failure with an explicit class.

    Handlers raise this with ``retryable=False`` for malformed requests that
    will never succeed; any other handler exception is treated as retryable.
    """

    code = "AGENT_ERROR"

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class QuotaExceededError(PlaybookExecutionError):
    """Raised by the quota collaborator when a reservation is rejected."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, org_id: str, resource_kind: str, amount: int, limit: int):
        self.org_id = org_id
        self.resource_kind = resource_kind
        self.amount = amount
        self.limit = limit

        message = f"Quota exceeded for org '{org_id}'\n"
        message += f"  Resource: {resource_kind}\n"
        message += f"  Requested: {amount}, limit: {limit}\n"

        super().__init__(message)


class RunCancelledError(PlaybookExecutionError):
    """Signals that a run was cancelled on request."""

    code = "RUN_CANCELLED"

    def __init__(self, run_id: str, message: Optional[str] = None):
        self.run_id = run_id
        super().__init__(message or f"Run '{run_id}' was cancelled")


class RunTimeoutError(RunCancelledError):
    """Signals that a run exceeded its wall-clock timeout."""

    code = "RUN_TIMEOUT"

    def __init__(self, run_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            run_id, f"Run '{run_id}' exceeded its timeout of {timeout_seconds}s"
        )


class PlaybookLoadError(PlaybookExecutionError):
    """Raised when a playbook cannot be loaded or parsed."""

    code = "LOAD_ERROR"


class StoreError(PlaybookExecutionError):
    """
    Raised when run store save/load operations fail.
    """

    code = "STORE_ERROR"

    def __init__(self, operation: str, run_id: str, original_error: Exception):
        """
        Initialize StoreError.

        Args:
            operation: The operation that failed (save/load)
            run_id: The run ID
            original_error: The original exception
        """
        self.operation = operation
        self.run_id = run_id
        self.original_error = original_error

        message = f"Run store {operation} failed for run '{run_id}'\n"
        message += f"  Error: {type(original_error).__name__}: {original_error}\n"

        super().__init__(message)

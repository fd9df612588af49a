"""Playbook engine - validation, planning and execution of step graphs."""

from .collaborators import (
    ApiClient,
    ApiResponse,
    HttpxApiClient,
    InMemoryQuota,
    MemoryItem,
    MemoryService,
    NoMemory,
    QuotaService,
    StaticMemory,
    UnlimitedQuota,
)
from .config import EngineConfig
from .context import ContextAssembler, ExecutionContext, estimate_tokens
from .coordinator import RunCoordinator
from .dispatcher import StepDispatcher
from .engine import PlaybookEngine, RunHandle
from .errors import (
    AgentError,
    AgentNotFoundError,
    ConfigurationError,
    CyclicGraphError,
    GraphValidationError,
    PlaybookExecutionError,
    PlaybookLoadError,
    QuotaExceededError,
    RunCancelledError,
    RunTimeoutError,
    StepExecutionError,
    StoreError,
    UnresolvedReferenceError,
)
from .events import EventBus, EventType, ExecutionEvent, WebhookNotifier
from .loader import PlaybookLoader
from .metrics import EngineMetrics, MetricsCollector, PrometheusExporter
from .models import (
    AgentStep,
    ApiStep,
    BranchStep,
    DataStep,
    PlaybookDefinition,
    RetryPolicy,
    Step,
    StepType,
)
from .planner import ExecutionPlanner
from .pool import WorkerPool
from .runs import Run, RunStatus, RunStatusReport, StepRun, StepRunStatus
from .store import InMemoryRunStore, JsonFileRunStore, RunStore
from .validator import GraphValidator, Issue, IssueSeverity, ValidationReport

__all__ = [
    "PlaybookLoader",
    "PlaybookDefinition",
    "Step",
    "AgentStep",
    "DataStep",
    "BranchStep",
    "ApiStep",
    "StepType",
    "RetryPolicy",
    "GraphValidator",
    "ValidationReport",
    "Issue",
    "IssueSeverity",
    "ExecutionPlanner",
    "PlaybookEngine",
    "RunHandle",
    "RunCoordinator",
    "StepDispatcher",
    "ContextAssembler",
    "ExecutionContext",
    "estimate_tokens",
    "EngineConfig",
    "Run",
    "RunStatus",
    "StepRun",
    "StepRunStatus",
    "RunStatusReport",
    "RunStore",
    "InMemoryRunStore",
    "JsonFileRunStore",
    "EventBus",
    "EventType",
    "ExecutionEvent",
    "WebhookNotifier",
    "WorkerPool",
    "MetricsCollector",
    "EngineMetrics",
    "PrometheusExporter",
    "ApiClient",
    "ApiResponse",
    "HttpxApiClient",
    "MemoryItem",
    "MemoryService",
    "NoMemory",
    "StaticMemory",
    "QuotaService",
    "UnlimitedQuota",
    "InMemoryQuota",
    "PlaybookExecutionError",
    "GraphValidationError",
    "CyclicGraphError",
    "ConfigurationError",
    "UnresolvedReferenceError",
    "AgentNotFoundError",
    "AgentError",
    "StepExecutionError",
    "QuotaExceededError",
    "RunCancelledError",
    "RunTimeoutError",
    "PlaybookLoadError",
    "StoreError",
]

"""PlaybookEngine - validates, plans and runs playbooks."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from .collaborators import (
    ApiClient,
    HttpxApiClient,
    MemoryService,
    QuotaService,
    UnlimitedQuota,
)
from .config import EngineConfig
from .context import ContextAssembler
from .coordinator import RunCoordinator
from .dispatcher import StepDispatcher
from .errors import GraphValidationError
from .events import EventBus, WebhookNotifier
from .metrics import EngineMetrics
from .models import PlaybookDefinition
from .planner import ExecutionPlan, ExecutionPlanner
from .pool import WorkerPool
from .runs import Run, RunStatusReport
from .store import InMemoryRunStore, RunStore
from .validator import GraphValidator, ValidationReport

if TYPE_CHECKING:
    from ..agents.registry import AgentRegistry

logger = logging.getLogger(__name__)

RUN_RESOURCE = "playbook_run"


class RunHandle:
    """Handle to a started run."""

    def __init__(self, coordinator: RunCoordinator, task: "asyncio.Task[Run]") -> None:
        self.coordinator = coordinator
        self.task = task

    @property
    def run_id(self) -> str:
        return self.coordinator.run.id

    @property
    def run(self) -> Run:
        """The live Run record."""
        return self.coordinator.run

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> bool:
        return self.coordinator.request_cancel()

    async def wait(self) -> Run:
        """Wait for the run to reach a terminal state."""
        return await asyncio.shield(self.task)

    def __repr__(self) -> str:
        return f"<RunHandle run_id='{self.run_id}' status={self.run.status.value}>"


class PlaybookEngine:
    """
    Execute playbooks against an injected agent registry and collaborators.

    ``start`` validates the playbook, reserves quota and returns a RunHandle
    once the Run exists; the run itself proceeds in a background task.
    Validation and quota failures raise before any Run is created.

    Example:
        registry = AgentRegistry()
        registry.register(Researcher())

        engine = PlaybookEngine(registry)
        playbook = PlaybookLoader().load_from_file("playbooks/outreach.yaml")
        run = await engine.execute(playbook, input={"company": "Acme"}, org_id="org-1")
        print(run.status, run.output)
    """

    def __init__(
        self,
        agent_registry: "AgentRegistry",
        api_client: Optional[ApiClient] = None,
        memory: Optional[MemoryService] = None,
        quota: Optional[QuotaService] = None,
        store: Optional[RunStore] = None,
        events: Optional[EventBus] = None,
        metrics: Optional[EngineMetrics] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.agent_registry = agent_registry
        self.quota = quota or UnlimitedQuota()
        self.store = store or InMemoryRunStore()
        self.events = events or EventBus()
        self.metrics = metrics or EngineMetrics()
        self.validator = GraphValidator()
        self.planner = ExecutionPlanner()
        self.pool = WorkerPool(self.config.max_workers)
        self.dispatcher = StepDispatcher(agent_registry, api_client, self.quota)
        self._owns_api_client = api_client is None
        self.assembler = ContextAssembler(memory, self.config.min_memory_relevance)
        self._active: Dict[str, RunHandle] = {}

    def validate(self, playbook: PlaybookDefinition) -> ValidationReport:
        """Validate a playbook without running it."""
        return self.validator.validate_playbook(playbook)

    def plan(self, playbook: PlaybookDefinition) -> ExecutionPlan:
        """
        Validate a playbook and return its ready sets.

        Raises:
            GraphValidationError: If the playbook is invalid
        """
        self._require_valid(playbook)
        return self.planner.plan(playbook.steps)

    async def start(
        self,
        playbook: PlaybookDefinition,
        input: Any = None,
        org_id: str = "default",
        shared_state: Optional[Dict[str, Any]] = None,
        token_budget: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        webhook_url: Optional[str] = None,
    ) -> RunHandle:
        """
        Start a run in the background.

        Args:
            playbook: Playbook to execute
            input: Run input, referenced as ``{{input.*}}``
            org_id: Organisation the run is billed to
            shared_state: Initial shared state, merged over playbook variables
            token_budget: Context budget per step (defaults to config)
            timeout_seconds: Run wall-clock timeout (defaults to config)
            webhook_url: URL notified when the run finishes

        Returns:
            RunHandle for the created run

        Raises:
            GraphValidationError: If the playbook is invalid
            QuotaExceededError: If the org may not start another run
        """
        self._require_valid(playbook)

        await self.quota.check_and_reserve(org_id, RUN_RESOURCE, 1)

        run = Run(
            playbook_id=playbook.id,
            playbook_version=playbook.version,
            org_id=org_id,
            input=input,
        )
        await self.store.save_run(run)

        if webhook_url:
            self.events.subscribe(WebhookNotifier(webhook_url), run_id=run.id)

        coordinator = RunCoordinator(
            playbook=playbook,
            run=run,
            dispatcher=self.dispatcher,
            assembler=self.assembler,
            pool=self.pool,
            store=self.store,
            events=self.events,
            metrics=self.metrics,
            config=self.config,
            shared_state=shared_state,
            token_budget=token_budget,
            timeout_seconds=timeout_seconds,
        )
        await coordinator.initialize()

        task = asyncio.ensure_future(coordinator.execute())
        handle = RunHandle(coordinator, task)
        self._active[run.id] = handle
        task.add_done_callback(lambda _: self._active.pop(run.id, None))
        return handle

    async def execute(
        self,
        playbook: PlaybookDefinition,
        input: Any = None,
        org_id: str = "default",
        shared_state: Optional[Dict[str, Any]] = None,
        token_budget: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        webhook_url: Optional[str] = None,
    ) -> Run:
        """Start a run and wait for it to finish."""
        handle = await self.start(
            playbook,
            input=input,
            org_id=org_id,
            shared_state=shared_state,
            token_budget=token_budget,
            timeout_seconds=timeout_seconds,
            webhook_url=webhook_url,
        )
        return await handle.wait()

    def cancel(self, run_id: str) -> bool:
        """
        Request cooperative cancellation of an active run.

        Returns:
            True if the request was accepted, False if the run is not active
        """
        handle = self._active.get(run_id)
        if handle is None:
            return False
        return handle.cancel()

    async def get_status(self, run_id: str) -> Optional[RunStatusReport]:
        """Status of a run with per-step progress, or None if unknown."""
        handle = self._active.get(run_id)
        if handle is not None:
            coordinator = handle.coordinator
            return RunStatusReport.build(
                coordinator.run.model_copy(deep=True),
                [s.model_copy(deep=True) for s in coordinator.step_runs],
            )

        run = await self.store.get_run(run_id)
        if run is None:
            return None
        return RunStatusReport.build(run, await self.store.list_step_runs(run_id))

    def active_runs(self) -> Dict[str, RunHandle]:
        return dict(self._active)

    def worker_stats(self) -> Dict[str, int]:
        """Worker pool utilisation plus the number of active runs."""
        stats = self.pool.stats()
        stats["active_runs"] = len(self._active)
        return stats

    async def shutdown(self) -> None:
        """Cancel every active run, wait for them and close engine-owned clients."""
        handles = list(self._active.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        api_client = self.dispatcher.api_client
        if self._owns_api_client and isinstance(api_client, HttpxApiClient):
            await api_client.aclose()

    def _require_valid(self, playbook: PlaybookDefinition) -> None:
        report = self.validator.validate_playbook(playbook)
        for warning in report.warnings:
            logger.warning("Playbook '%s': %s", playbook.name, warning)
        if not report.valid:
            raise GraphValidationError(playbook.name, report.issues)

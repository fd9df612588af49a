"""Unit tests for PlaybookEngine."""

import asyncio
from typing import Any, List

import httpx
import pytest

from src.agents.base import AgentHandler, AgentRequest, AgentResponse
from src.agents.registry import AgentRegistry
from src.playbooks.collaborators import HttpxApiClient, InMemoryQuota
from src.playbooks.engine import RUN_RESOURCE, PlaybookEngine
from src.playbooks.errors import GraphValidationError, QuotaExceededError
from src.playbooks.events import EventBus, EventType, ExecutionEvent
from src.playbooks.metrics import EngineMetrics
from src.playbooks.models import PlaybookDefinition
from src.playbooks.runs import RunStatus, StepRunStatus
from src.playbooks.store import InMemoryRunStore, JsonFileRunStore


class SummaryAgent(AgentHandler):
    """Agent returning a fixed summary."""

    name = "summarizer"
    version = "1.0.0"
    description = "Summarise input"

    async def complete(self, request: AgentRequest) -> AgentResponse:
        return AgentResponse(completion={"summary": "short"})


class HoldingAgent(AgentHandler):
    """Agent that blocks until released."""

    name = "holding"

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, request: AgentRequest) -> AgentResponse:
        self.started.set()
        await self.release.wait()
        return AgentResponse(completion="done")


def simple_playbook(agent_id: str = "summarizer") -> PlaybookDefinition:
    return PlaybookDefinition.model_validate(
        {
            "id": "summary",
            "name": "Summary",
            "version": 2,
            "steps": [
                {"key": "summarize", "type": "AGENT", "config": {"agent_id": agent_id}},
                {
                    "key": "extract",
                    "type": "DATA",
                    "depends_on": ["summarize"],
                    "config": {
                        "operation": "pluck",
                        "source_key": "summarize.output.completion",
                        "fields": ["summary"],
                    },
                },
            ],
            "sink_key": "extract",
        }
    )


def invalid_playbook() -> PlaybookDefinition:
    return PlaybookDefinition.model_validate(
        {
            "id": "broken",
            "name": "Broken",
            "steps": [
                {"key": "a", "type": "DATA", "config": {"operation": "passthrough"}},
                {"key": "b", "type": "DATA", "config": {"operation": "passthrough"}},
                {
                    "key": "c",
                    "type": "DATA",
                    "depends_on": ["a", "ghost"],
                    "config": {"operation": "passthrough"},
                },
            ],
        }
    )


@pytest.fixture
def registry() -> AgentRegistry:
    registry = AgentRegistry()
    registry.register(SummaryAgent())
    return registry


@pytest.fixture
def store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def engine(registry: AgentRegistry, store: InMemoryRunStore) -> PlaybookEngine:
    return PlaybookEngine(registry, store=store)


class TestPlaybookEngine:
    """Test suite for PlaybookEngine."""

    @pytest.mark.asyncio
    async def test_execute_simple_playbook(self, engine: PlaybookEngine) -> None:
        """Test executing a playbook end to end."""
        run = await engine.execute(simple_playbook(), input={"text": "long"}, org_id="org-1")

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == {"summary": "short"}
        assert run.playbook_id == "summary"
        assert run.playbook_version == 2
        assert run.org_id == "org-1"
        assert run.input == {"text": "long"}

    @pytest.mark.asyncio
    async def test_run_persisted(self, engine: PlaybookEngine, store: InMemoryRunStore) -> None:
        """Test the run and its steps are persisted in the store."""
        run = await engine.execute(simple_playbook())

        stored = await store.get_run(run.id)
        step_runs = await store.list_step_runs(run.id)

        assert stored.status == RunStatus.SUCCEEDED
        assert [s.step_key for s in step_runs] == ["summarize", "extract"]
        assert all(s.status == StepRunStatus.SUCCEEDED for s in step_runs)
        assert step_runs[0].output["completion"] == {"summary": "short"}

    @pytest.mark.asyncio
    async def test_invalid_playbook_creates_no_run(
        self, engine: PlaybookEngine, store: InMemoryRunStore
    ) -> None:
        """Test validation errors are raised before any run exists."""
        with pytest.raises(GraphValidationError) as exc_info:
            await engine.start(invalid_playbook())

        assert "INVALID_EDGES" in exc_info.value.codes
        assert "MULTIPLE_ENTRY_POINTS" in exc_info.value.codes
        assert await store.list_runs() == []
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_quota_rejection_creates_no_run(
        self, registry: AgentRegistry, store: InMemoryRunStore
    ) -> None:
        """Test a quota rejection happens before the run record is written."""
        quota = InMemoryQuota()
        quota.block("org-1")
        engine = PlaybookEngine(registry, quota=quota, store=store)

        with pytest.raises(QuotaExceededError) as exc_info:
            await engine.execute(simple_playbook(), org_id="org-1")

        assert exc_info.value.resource_kind == RUN_RESOURCE
        assert await store.list_runs() == []

    @pytest.mark.asyncio
    async def test_run_quota_limit(self, registry: AgentRegistry) -> None:
        """Test the run quota counts one unit per started run."""
        quota = InMemoryQuota({RUN_RESOURCE: 1})
        engine = PlaybookEngine(registry, quota=quota)

        await engine.execute(simple_playbook(), org_id="org-1")
        with pytest.raises(QuotaExceededError):
            await engine.execute(simple_playbook(), org_id="org-1")

        await engine.execute(simple_playbook(), org_id="org-2")
        assert quota.used("org-1", RUN_RESOURCE) == 1

    def test_validate(self, engine: PlaybookEngine) -> None:
        """Test validate returns a report without raising."""
        assert engine.validate(simple_playbook()).valid is True
        assert engine.validate(invalid_playbook()).valid is False

    def test_plan(self, engine: PlaybookEngine) -> None:
        """Test plan returns ready sets and rejects invalid playbooks."""
        assert engine.plan(simple_playbook()) == [["summarize"], ["extract"]]
        with pytest.raises(GraphValidationError):
            engine.plan(invalid_playbook())

    @pytest.mark.asyncio
    async def test_get_status_unknown_run(self, engine: PlaybookEngine) -> None:
        """Test status of an unknown run is None."""
        assert await engine.get_status("missing") is None

    @pytest.mark.asyncio
    async def test_get_status_of_active_run(self) -> None:
        """Test progress is reported while a run is in flight."""
        holding = HoldingAgent()
        registry = AgentRegistry()
        registry.register(holding)
        engine = PlaybookEngine(registry)

        handle = await engine.start(simple_playbook("holding"))
        await asyncio.wait_for(holding.started.wait(), timeout=1)

        report = await engine.get_status(handle.run_id)
        assert report.run.status == RunStatus.RUNNING
        assert report.progress.total == 2
        assert report.progress.pending == 2
        assert report.latest_attempt("summarize").status == StepRunStatus.RUNNING
        assert engine.worker_stats()["active_runs"] == 1
        assert engine.worker_stats()["active"] == 1
        assert handle.run_id in engine.active_runs()

        holding.release.set()
        run = await handle.wait()

        assert run.status == RunStatus.FAILED
        assert run.error.code == "CONFIGURATION_ERROR"
        report = await engine.get_status(handle.run_id)
        assert report.progress.completed == 1
        assert report.progress.failed == 1

    @pytest.mark.asyncio
    async def test_events_published_in_order(self, registry: AgentRegistry) -> None:
        """Test a run emits lifecycle events in order."""
        events = EventBus()
        received: List[ExecutionEvent] = []
        events.subscribe(received.append)
        engine = PlaybookEngine(registry, events=events)

        run = await engine.execute(simple_playbook())

        assert [(e.type, e.step_key) for e in received] == [
            (EventType.RUN_STARTED, None),
            (EventType.STEP_STARTED, "summarize"),
            (EventType.STEP_COMPLETED, "summarize"),
            (EventType.STEP_STARTED, "extract"),
            (EventType.STEP_COMPLETED, "extract"),
            (EventType.RUN_COMPLETED, None),
        ]
        assert all(e.run_id == run.id for e in received)
        assert [e.sequence for e in received] == sorted(e.sequence for e in received)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, registry: AgentRegistry) -> None:
        """Test run and step metrics are recorded."""
        metrics = EngineMetrics()
        engine = PlaybookEngine(registry, metrics=metrics)

        await engine.execute(simple_playbook())

        collector = metrics.collector
        assert collector.get_counter(
            EngineMetrics.RUNS_TOTAL, {"playbook": "summary", "status": "SUCCEEDED"}
        ) == 1
        assert collector.get_counter(EngineMetrics.STEP_ATTEMPTS) == 2
        assert collector.get_gauge(EngineMetrics.ACTIVE_RUNS) == 0
        assert len(collector.get_histogram_values(EngineMetrics.RUN_DURATION)) == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active_runs(self) -> None:
        """Test shutdown cancels and drains active runs."""
        holding = HoldingAgent()
        registry = AgentRegistry()
        registry.register(holding)
        engine = PlaybookEngine(registry)

        handle = await engine.start(simple_playbook("holding"))
        await asyncio.wait_for(holding.started.wait(), timeout=1)

        shutdown = asyncio.ensure_future(engine.shutdown())
        await asyncio.sleep(0)
        holding.release.set()
        await asyncio.wait_for(shutdown, timeout=1)

        assert handle.done is True
        assert handle.run.status == RunStatus.CANCELLED
        assert engine.active_runs() == {}

    @pytest.mark.asyncio
    async def test_shutdown_closes_owned_http_client(self, registry: AgentRegistry) -> None:
        """Test the default HTTP client is closed on shutdown."""
        engine = PlaybookEngine(registry)
        api_client = engine.dispatcher.api_client
        assert isinstance(api_client, HttpxApiClient)
        http = api_client._get_client()

        await engine.shutdown()

        assert http.is_closed
        assert api_client._client is None

    @pytest.mark.asyncio
    async def test_shutdown_leaves_injected_client_open(self, registry: AgentRegistry) -> None:
        """Test a caller-supplied API client is not closed."""
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        engine = PlaybookEngine(registry, api_client=HttpxApiClient(http))

        await engine.shutdown()

        assert not http.is_closed
        await http.aclose()

    @pytest.mark.asyncio
    async def test_json_file_store(self, registry: AgentRegistry, tmp_path: Any) -> None:
        """Test runs can be read back from a file store."""
        store = JsonFileRunStore(str(tmp_path / "runs"))
        engine = PlaybookEngine(registry, store=store)

        run = await engine.execute(simple_playbook())
        other = PlaybookEngine(registry, store=JsonFileRunStore(str(tmp_path / "runs")))
        report = await other.get_status(run.id)

        assert report.run.status == RunStatus.SUCCEEDED
        assert report.run.output == {"summary": "short"}
        assert report.progress.completed == 2


class TestRunHandle:
    """Test suite for RunHandle."""

    @pytest.mark.asyncio
    async def test_handle_returned_before_completion(self, engine: PlaybookEngine) -> None:
        """Test start returns once the run exists and is running."""
        handle = await engine.start(simple_playbook())

        assert handle.run.status == RunStatus.RUNNING
        run = await handle.wait()
        assert run is handle.run
        assert handle.done is True
        assert "SUCCEEDED" in repr(handle)

    @pytest.mark.asyncio
    async def test_cancel_after_completion(self, engine: PlaybookEngine) -> None:
        """Test cancelling a finished run is rejected."""
        handle = await engine.start(simple_playbook())
        await handle.wait()

        assert handle.cancel() is False
        assert engine.cancel(handle.run_id) is False

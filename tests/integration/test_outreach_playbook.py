"""Integration test: a YAML outreach playbook run end to end through the engine."""

from typing import Any, Dict, List, Mapping, Tuple

import pytest

from src.agents.base import AgentHandler, AgentRequest, AgentResponse, AgentUsage
from src.agents.registry import AgentRegistry
from src.playbooks.collaborators import ApiResponse, InMemoryQuota
from src.playbooks.engine import PlaybookEngine
from src.playbooks.events import EventBus, EventType, ExecutionEvent
from src.playbooks.loader import PlaybookLoader
from src.playbooks.runs import RunStatus, StepRunStatus
from src.playbooks.store import InMemoryRunStore

OUTREACH_YAML = """
metadata:
  name: Lead Outreach
  version: 1

variables:
  tone: friendly

sink_key: send

steps:
  - key: research
    type: AGENT
    config:
      agent_id: researcher
      prompt: "Research {{input.company}}"
      max_tokens: 300

  - key: pitch
    type: AGENT
    depends_on: [research]
    config:
      agent_id: writer
      prompt: "Write a {{state.tone}} pitch using {{research.output.completion}}"
      max_tokens: 400

  - key: send
    type: API
    depends_on: [pitch]
    config:
      method: POST
      url: "{{ mail_api }}/send"
      headers:
        X-Lead: "{{input.company}}"
      body:
        to: "{{input.email}}"
        text: "{{pitch.output.completion}}"
    retry_policy:
      max_attempts: 2
      backoff_ms: 1
"""


class ResearchAgent(AgentHandler):
    """Returns canned research notes."""

    name = "researcher"

    def __init__(self) -> None:
        super().__init__()
        self.prompts: List[str] = []

    async def complete(self, request: AgentRequest) -> AgentResponse:
        self.prompts.append(request.user_prompt)
        return AgentResponse(
            completion="Acme builds rockets",
            usage=AgentUsage(prompt_tokens=10, completion_tokens=5),
        )


class WriterAgent(AgentHandler):
    """Echoes its prompt as the pitch."""

    name = "writer"

    def __init__(self) -> None:
        super().__init__()
        self.prompts: List[str] = []

    async def complete(self, request: AgentRequest) -> AgentResponse:
        self.prompts.append(request.user_prompt)
        return AgentResponse(completion=f"PITCH: {request.user_prompt}")


class MailApi:
    """ApiClient double that fails a configurable number of times with 503."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: List[Tuple[str, str, Dict[str, str], Any]] = []

    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Any,
        timeout_ms: int,
    ) -> ApiResponse:
        self.calls.append((method, url, dict(headers), body))
        if len(self.calls) <= self.failures:
            return ApiResponse(status=503, body="busy")
        return ApiResponse(status=202, body={"message_id": "m-1"})


def build_engine(mail: MailApi) -> Tuple[PlaybookEngine, ResearchAgent, WriterAgent]:
    registry = AgentRegistry()
    researcher = registry.register(ResearchAgent())
    writer = registry.register(WriterAgent())
    engine = PlaybookEngine(
        registry,
        api_client=mail,
        quota=InMemoryQuota({"playbook_run": 5}),
        store=InMemoryRunStore(),
        events=EventBus(),
    )
    return engine, researcher, writer  # type: ignore[return-value]


class TestOutreachPlaybook:
    """End-to-end run of the outreach playbook."""

    @pytest.fixture
    def playbook_variables(self) -> Dict[str, Any]:
        return {"mail_api": "https://mail.example.com"}

    @pytest.mark.asyncio
    async def test_research_pitch_send(self, playbook_variables: Dict[str, Any]) -> None:
        """Test the three steps run in order and feed each other."""
        playbook = PlaybookLoader().load_from_string(OUTREACH_YAML, playbook_variables)
        mail = MailApi()
        engine, researcher, writer = build_engine(mail)

        started: List[str] = []

        def on_event(event: ExecutionEvent) -> None:
            if event.step_key:
                started.append(event.step_key)

        engine.events.subscribe(on_event, types={EventType.STEP_STARTED})

        run = await engine.execute(
            playbook,
            input={"company": "Acme", "email": "ceo@acme.com"},
            org_id="org-1",
        )

        assert run.status == RunStatus.SUCCEEDED
        assert run.output == {"status": 202, "body": {"message_id": "m-1"}}
        assert started == ["research", "pitch", "send"]

        assert researcher.prompts == ["Research Acme"]
        assert writer.prompts == ["Write a friendly pitch using Acme builds rockets"]

        method, url, headers, body = mail.calls[0]
        assert method == "POST"
        assert url == "https://mail.example.com/send"
        assert headers == {"X-Lead": "Acme"}
        assert body == {
            "to": "ceo@acme.com",
            "text": "PITCH: Write a friendly pitch using Acme builds rockets",
        }

        step_runs = await engine.store.list_step_runs(run.id)
        assert len(step_runs) == 3
        assert all(s.status == StepRunStatus.SUCCEEDED for s in step_runs)

    @pytest.mark.asyncio
    async def test_send_retried_after_503(self, playbook_variables: Dict[str, Any]) -> None:
        """Test a transient API failure is retried within the step policy."""
        playbook = PlaybookLoader().load_from_string(OUTREACH_YAML, playbook_variables)
        mail = MailApi(failures=1)
        engine, _, _ = build_engine(mail)

        run = await engine.execute(playbook, input={"company": "Acme", "email": "x@acme.com"})

        assert run.status == RunStatus.SUCCEEDED
        assert len(mail.calls) == 2

        step_runs = await engine.store.list_step_runs(run.id)
        send_runs = [s for s in step_runs if s.step_key == "send"]
        assert [s.status for s in send_runs] == [StepRunStatus.FAILED, StepRunStatus.SUCCEEDED]
        assert [s.attempt for s in send_runs] == [1, 2]

    @pytest.mark.asyncio
    async def test_send_exhausts_retries(self, playbook_variables: Dict[str, Any]) -> None:
        """Test the run fails once the API keeps failing."""
        playbook = PlaybookLoader().load_from_string(OUTREACH_YAML, playbook_variables)
        mail = MailApi(failures=10)
        engine, _, _ = build_engine(mail)

        run = await engine.execute(playbook, input={"company": "Acme", "email": "x@acme.com"})

        assert run.status == RunStatus.FAILED
        assert len(mail.calls) == 2
        assert run.error is not None

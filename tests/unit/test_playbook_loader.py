"""Unit tests for PlaybookLoader."""

from pathlib import Path
from tempfile import NamedTemporaryFile

import pytest

from src.playbooks.errors import PlaybookLoadError
from src.playbooks.loader import PlaybookLoader
from src.playbooks.models import AgentStep, ApiStep, BranchStep, DataStep


class TestPlaybookLoader:
    """Test suite for PlaybookLoader."""

    @pytest.fixture
    def loader(self) -> PlaybookLoader:
        """Create a PlaybookLoader instance."""
        return PlaybookLoader()

    @pytest.fixture
    def outreach_yaml(self) -> str:
        """A three step outreach playbook."""
        return """
metadata:
  name: Lead Outreach
  version: 3
  description: Research a lead, write a pitch and send it

variables:
  tone: friendly

sink_key: send

steps:
  - key: research
    type: agent
    config:
      agent_id: researcher
      prompt: "Research {{input.company}}"
      max_tokens: 500
    retry_policy:
      max_attempts: 3
      backoff_ms: 200

  - key: pitch
    type: AGENT
    depends_on: [research]
    config:
      agentId: writer
      prompt: "Write a {{state.tone}} pitch using {{research.output.completion}}"

  - key: send
    type: api
    depends_on: [pitch]
    config:
      method: post
      url: https://mail.example.com/send
      body:
        text: "{{pitch.output.completion}}"
"""

    def test_load_from_string(self, loader: PlaybookLoader, outreach_yaml: str) -> None:
        """Test loading a playbook from a YAML string."""
        playbook = loader.load_from_string(outreach_yaml)

        assert playbook.name == "Lead Outreach"
        assert playbook.id == "lead-outreach"
        assert playbook.version == 3
        assert playbook.description == "Research a lead, write a pitch and send it"
        assert playbook.variables == {"tone": "friendly"}
        assert playbook.sink_key == "send"
        assert playbook.step_keys == ["research", "pitch", "send"]

        research, pitch, send = playbook.steps
        assert isinstance(research, AgentStep)
        assert research.retry_policy.max_attempts == 3
        assert research.config.max_tokens == 500
        assert isinstance(pitch, AgentStep)
        assert pitch.config.agent_id == "writer"
        assert isinstance(send, ApiStep)
        assert send.config.method == "POST"

    def test_runtime_references_survive(
        self, loader: PlaybookLoader, outreach_yaml: str
    ) -> None:
        """Test run-time references are left untouched by loading."""
        playbook = loader.load_from_string(outreach_yaml, variables={"unused": 1})

        pitch = playbook.get_step("pitch")
        send = playbook.get_step("send")
        assert pitch.config.prompt == (
            "Write a {{state.tone}} pitch using {{research.output.completion}}"
        )
        assert send.config.body == {"text": "{{pitch.output.completion}}"}

    def test_load_time_variables(self, loader: PlaybookLoader) -> None:
        """Test Jinja2 substitution of load-time variables."""
        yaml_content = """
name: Templated
steps:
  - key: fetch
    type: API
    config:
      url: "{{ base_url }}/leads/{{input.lead_id}}"
    retry_policy:
      max_attempts: {{ attempts }}
"""
        playbook = loader.load_from_string(
            yaml_content,
            variables={"base_url": "https://crm.example.com", "attempts": 4},
        )

        fetch = playbook.get_step("fetch")
        assert fetch.config.url == "https://crm.example.com/leads/{{input.lead_id}}"
        assert fetch.retry_policy.max_attempts == 4

    def test_load_from_file(self, loader: PlaybookLoader, outreach_yaml: str) -> None:
        """Test loading a playbook from a file."""
        with NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False, encoding="utf-8"
        ) as f:
            f.write(outreach_yaml)
            temp_path = Path(f.name)

        try:
            playbook = loader.load_from_file(temp_path)
            assert playbook.name == "Lead Outreach"
        finally:
            temp_path.unlink()

    def test_load_from_file_not_found(self, loader: PlaybookLoader) -> None:
        """Test loading a non-existent file."""
        with pytest.raises(PlaybookLoadError, match="Playbook file not found"):
            loader.load_from_file("/nonexistent/playbook.yaml")

    def test_load_from_file_is_directory(
        self, loader: PlaybookLoader, tmp_path: Path
    ) -> None:
        """Test loading a directory instead of a file."""
        with pytest.raises(PlaybookLoadError, match="Path is not a file"):
            loader.load_from_file(tmp_path)

    def test_branch_and_data_steps(self, loader: PlaybookLoader) -> None:
        """Test loading branch and data steps."""
        yaml_content = """
name: Routing
steps:
  - key: classify
    type: AGENT
    config:
      agent_id: classifier
  - key: route
    type: BRANCH
    depends_on: [classify]
    condition:
      source: "{{classify.output.completion.sentiment}}"
      conditions:
        - operator: equals
          value: positive
          target_key: thank_you
      default_key: archive
  - key: thank_you
    type: DATA
    depends_on: [route]
    config:
      operation: pluck
      source_key: classify.output.completion
      fields: [sentiment]
  - key: archive
    type: DATA
    depends_on: [route]
    config:
      operation: passthrough
"""
        playbook = loader.load_from_string(yaml_content)

        route = playbook.get_step("route")
        assert isinstance(route, BranchStep)
        assert route.condition.source == "classify.output.completion.sentiment"
        assert route.condition.target_keys == ["thank_you", "archive"]
        assert isinstance(playbook.get_step("thank_you"), DataStep)

    def test_invalid_yaml(self, loader: PlaybookLoader) -> None:
        """Test loading invalid YAML."""
        with pytest.raises(PlaybookLoadError, match="Failed to parse YAML"):
            loader.load_from_string("name: x\nsteps: [unclosed")

    def test_not_a_mapping(self, loader: PlaybookLoader) -> None:
        """Test a YAML list is rejected."""
        with pytest.raises(PlaybookLoadError, match="must be a dictionary"):
            loader.load_from_string("- a\n- b\n")

    def test_missing_name(self, loader: PlaybookLoader) -> None:
        """Test a playbook without a name."""
        with pytest.raises(PlaybookLoadError, match="must have a 'name'"):
            loader.load_from_string("steps: []\n")

    def test_missing_steps(self, loader: PlaybookLoader) -> None:
        """Test a playbook without steps."""
        with pytest.raises(PlaybookLoadError, match="must have 'steps' section"):
            loader.load_from_string("name: x\n")

    def test_empty_steps_left_to_validator(self, loader: PlaybookLoader) -> None:
        """Test an empty step list loads; the graph validator rejects it."""
        playbook = loader.load_from_string("name: x\nsteps: []\n")
        assert playbook.steps == []

    def test_invalid_step_type(self, loader: PlaybookLoader) -> None:
        """Test a step with an unknown type."""
        yaml_content = """
name: x
steps:
  - key: a
    type: shell
"""
        with pytest.raises(PlaybookLoadError, match="unknown type"):
            loader.load_from_string(yaml_content)

    def test_step_missing_type(self, loader: PlaybookLoader) -> None:
        """Test a step without a type."""
        with pytest.raises(PlaybookLoadError, match="must have a 'type' field"):
            loader.load_from_string("name: x\nsteps:\n  - key: a\n")

    def test_step_missing_required_field(self, loader: PlaybookLoader) -> None:
        """Test an AGENT step without an agent id."""
        yaml_content = """
name: x
steps:
  - key: a
    type: AGENT
    config:
      prompt: hello
"""
        with pytest.raises(PlaybookLoadError, match="validation failed"):
            loader.load_from_string(yaml_content)

    def test_template_syntax_error(self, loader: PlaybookLoader) -> None:
        """Test invalid Jinja2 syntax when variables are supplied."""
        yaml_content = """
name: x
steps:
  - key: a
    type: DATA
    config:
      operation: "{% if %}"
"""
        with pytest.raises(PlaybookLoadError, match="Template processing failed"):
            loader.load_from_string(yaml_content, variables={"v": 1})

    def test_undefined_load_time_expression(self, loader: PlaybookLoader) -> None:
        """Test undefined names in load-time expressions are errors."""
        yaml_content = """
name: x
steps:
  - key: a
    type: DATA
    retry_policy:
      max_attempts: {{ missing + 1 }}
    config:
      operation: passthrough
"""
        with pytest.raises(PlaybookLoadError, match="Template processing failed"):
            loader.load_from_string(yaml_content, variables={"v": 1})

    def test_load_from_dict(self, loader: PlaybookLoader) -> None:
        """Test loading from a dictionary with an explicit id."""
        playbook = loader.load_from_dict(
            {
                "id": "custom-id",
                "name": "Dict Playbook",
                "steps": [
                    {"key": "a", "type": "data", "config": {"operation": "merge"}}
                ],
            }
        )

        assert playbook.id == "custom-id"
        assert isinstance(playbook.steps[0], DataStep)

    def test_playbook_repr(self, loader: PlaybookLoader, outreach_yaml: str) -> None:
        """Test the playbook representation."""
        playbook = loader.load_from_string(outreach_yaml)
        assert repr(playbook) == "<PlaybookDefinition name='Lead Outreach' version=3 steps=3>"

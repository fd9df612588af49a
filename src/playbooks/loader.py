"""PlaybookLoader - loads playbook definitions from YAML files."""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError
from pydantic import ValidationError

from .errors import PlaybookLoadError
from .models import PlaybookDefinition, StepType
from .templates import REFERENCE_PATTERN

_SLUG = re.compile(r"[^a-z0-9]+")


class PlaybookLoader:
    """
    Loads playbook definitions from YAML files.

    The loader handles:
    - YAML parsing
    - Jinja2 substitution of load-time variables
    - Pydantic validation of the step union

    Step references such as ``{{research.output.summary}}`` are resolved at
    run time and pass through load-time substitution untouched, unless their
    root names one of the supplied variables.

    Example:
        loader = PlaybookLoader()
        playbook = loader.load_from_file("playbooks/outreach.yaml")

        # With load-time variables
        playbook = loader.load_from_file(
            "playbooks/template.yaml",
            variables={"max_attempts": 3}
        )
    """

    def __init__(self) -> None:
        self._jinja_env = Environment(autoescape=False, undefined=StrictUndefined)

    def load_from_file(
        self, file_path: Union[str, Path], variables: Optional[Dict[str, Any]] = None
    ) -> PlaybookDefinition:
        """
        Load a playbook from a YAML file.

        Raises:
            PlaybookLoadError: If the file cannot be read, parsed, or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise PlaybookLoadError(f"Playbook file not found: {file_path}")
        if not file_path.is_file():
            raise PlaybookLoadError(f"Path is not a file: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise PlaybookLoadError(f"Failed to read file {file_path}: {e}") from e

        return self.load_from_string(content, variables)

    def load_from_string(
        self, yaml_content: str, variables: Optional[Dict[str, Any]] = None
    ) -> PlaybookDefinition:
        """
        Load a playbook from a YAML string.

        Args:
            yaml_content: YAML content as string
            variables: Optional load-time template variables

        Raises:
            PlaybookLoadError: If YAML cannot be parsed or validated
        """
        if variables:
            yaml_content = self._process_template(yaml_content, variables)

        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise PlaybookLoadError(f"Failed to parse YAML: {e}") from e

        if not isinstance(data, dict):
            raise PlaybookLoadError("YAML content must be a dictionary")

        return self.load_from_dict(data)

    def load_from_dict(self, data: Dict[str, Any]) -> PlaybookDefinition:
        """
        Load a playbook from a dictionary.

        A ``metadata`` section (name, version, description) is merged into the
        top level. ``id`` defaults to a slug of the name.

        Raises:
            PlaybookLoadError: If validation fails
        """
        data = dict(data)
        metadata = data.pop("metadata", None) or {}
        if not isinstance(metadata, dict):
            raise PlaybookLoadError("'metadata' must be a dictionary")
        for key, value in metadata.items():
            data.setdefault(key, value)

        if "name" not in data:
            raise PlaybookLoadError("Playbook must have a 'name'")
        if "steps" not in data:
            raise PlaybookLoadError("Playbook must have 'steps' section")
        data.setdefault("id", _SLUG.sub("-", str(data["name"]).lower()).strip("-"))
        data["steps"] = self._normalize_steps(data["steps"])

        try:
            return PlaybookDefinition.model_validate(data)
        except ValidationError as e:
            raise PlaybookLoadError(f"Playbook validation failed: {e}") from e

    def _normalize_steps(self, steps_data: Any) -> List[Dict[str, Any]]:
        if not isinstance(steps_data, list):
            raise PlaybookLoadError("'steps' must be a list")

        allowed = [t.value for t in StepType]
        steps: List[Dict[str, Any]] = []
        for i, step_data in enumerate(steps_data):
            if not isinstance(step_data, dict):
                raise PlaybookLoadError(f"Step {i} must be a dictionary")
            if "type" not in step_data:
                raise PlaybookLoadError(f"Step {i} must have a 'type' field")

            step_type = str(step_data["type"]).upper()
            if step_type not in allowed:
                raise PlaybookLoadError(
                    f"Step {i} has unknown type '{step_data['type']}'. "
                    f"Must be one of: {allowed}"
                )
            steps.append({**step_data, "type": step_type})
        return steps

    def _process_template(self, content: str, variables: Dict[str, Any]) -> str:
        """
        Substitute load-time variables, leaving run-time references intact.

        Raises:
            PlaybookLoadError: If template processing fails
        """
        protected: Dict[str, str] = {}

        def protect(match: "re.Match[str]") -> str:
            if match.group(1).split(".")[0] in variables:
                return match.group(0)
            token = f"__playbook_ref_{len(protected)}__"
            protected[token] = match.group(0)
            return token

        try:
            masked = REFERENCE_PATTERN.sub(protect, content)
            rendered = self._jinja_env.from_string(masked).render(**variables)
        except TemplateError as e:
            raise PlaybookLoadError(f"Template processing failed: {e}") from e

        for token, original in protected.items():
            rendered = rendered.replace(token, original)
        return rendered

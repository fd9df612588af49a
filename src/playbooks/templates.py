"""Pre-compiled template references for step inputs.

Step inputs, agent prompts and API requests may embed references of the form
``{{stepKey.output.field}}``. Templates are compiled once into a
:class:`CompiledTemplate` holding typed :class:`Reference` objects, and are
rendered by walking a :class:`ReferenceScope`. A reference that cannot be
resolved raises :class:`UnresolvedReferenceError`; it never renders as an
empty value.

Two roots are reserved: ``input`` (the run input) and ``state`` (the run's
shared state).
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .errors import UnresolvedReferenceError
from .models import AgentStep, ApiStep, BaseStep, BranchStep, DataStep

REFERENCE_PATTERN = re.compile(
    r"\{\{\s*([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\s*\}\}"
)

INPUT_ROOT = "input"
STATE_ROOT = "state"
RESERVED_ROOTS = (INPUT_ROOT, STATE_ROOT)

_MISSING = object()


@dataclass(frozen=True)
class Reference:
    """A parsed dotted reference."""

    raw: str
    root: str
    path: Tuple[str, ...]

    @classmethod
    def parse(cls, raw: str) -> "Reference":
        parts = raw.split(".")
        root, rest = parts[0], parts[1:]
        # "step.output.x" and "step.x" both address the step's output
        if root not in RESERVED_ROOTS and rest and rest[0] == "output":
            rest = rest[1:]
        return cls(raw=raw, root=root, path=tuple(rest))

    @property
    def step_key(self) -> Optional[str]:
        """The referenced step key, or None for reserved roots."""
        return None if self.root in RESERVED_ROOTS else self.root


@dataclass
class ReferenceScope:
    """Values a template may reference while rendering one step's input."""

    prior_outputs: Mapping[str, Any]
    run_input: Any = None
    shared_state: Mapping[str, Any] = field(default_factory=dict)
    step_key: Optional[str] = None

    def lookup(self, ref: Reference) -> Any:
        if ref.root == INPUT_ROOT:
            value: Any = self.run_input
        elif ref.root == STATE_ROOT:
            value = self.shared_state
        elif ref.root in self.prior_outputs:
            value = self.prior_outputs[ref.root]
        else:
            raise self._unresolved(ref)

        for part in ref.path:
            value = _descend(value, part)
            if value is _MISSING:
                raise self._unresolved(ref)
        return value

    def _unresolved(self, ref: Reference) -> UnresolvedReferenceError:
        available: Dict[str, Any] = {
            f"{key}.output": value for key, value in self.prior_outputs.items()
        }
        available[INPUT_ROOT] = self.run_input
        available[STATE_ROOT] = dict(self.shared_state)
        return UnresolvedReferenceError(ref.raw, self.step_key, available)


def _descend(value: Any, part: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(part, _MISSING)
    if isinstance(value, (list, tuple)):
        try:
            return value[int(part)]
        except (ValueError, IndexError):
            return _MISSING
    return _MISSING


class CompiledTemplate:
    """
    A template value with its references parsed up front.

    The value may be any JSON-like structure; strings anywhere inside it are
    scanned for references.
    """

    def __init__(self, source: Any) -> None:
        self.source = source
        self.references: List[Reference] = list(_collect(source))

    @property
    def step_keys(self) -> Set[str]:
        """Step keys referenced anywhere in the template."""
        return {ref.step_key for ref in self.references if ref.step_key}

    def render(self, scope: ReferenceScope) -> Any:
        """Render the template, raising UnresolvedReferenceError on any miss."""
        return _render(self.source, scope)

    def __repr__(self) -> str:
        refs = ", ".join(ref.raw for ref in self.references)
        return f"<CompiledTemplate refs=[{refs}]>"


def compile_template(source: Any) -> CompiledTemplate:
    """Compile a template value."""
    return CompiledTemplate(source)


def _collect(obj: Any) -> List[Reference]:
    refs: List[Reference] = []
    if isinstance(obj, str):
        refs.extend(Reference.parse(m) for m in REFERENCE_PATTERN.findall(obj))
    elif isinstance(obj, dict):
        for value in obj.values():
            refs.extend(_collect(value))
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            refs.extend(_collect(item))
    return refs


def _render(obj: Any, scope: ReferenceScope) -> Any:
    if isinstance(obj, str):
        return _render_string(obj, scope)
    if isinstance(obj, dict):
        return {key: _render(value, scope) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_render(item, scope) for item in obj]
    return obj


def _render_string(text: str, scope: ReferenceScope) -> Any:
    # A string that is exactly one reference keeps the referenced value's type
    whole = REFERENCE_PATTERN.fullmatch(text.strip())
    if whole:
        return scope.lookup(Reference.parse(whole.group(1)))

    def replace(match: "re.Match[str]") -> str:
        value = scope.lookup(Reference.parse(match.group(1)))
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)

    return REFERENCE_PATTERN.sub(replace, text)


def step_references(step: BaseStep) -> Set[str]:
    """Step keys referenced by any template-bearing field of ``step``."""
    sources: Dict[str, Any] = {"input": step.input}
    if isinstance(step, AgentStep):
        sources["prompt"] = step.config.prompt
        sources["system_prompt"] = step.config.system_prompt
        sources["memory_query"] = step.config.memory_query
    elif isinstance(step, ApiStep):
        sources["url"] = step.config.url
        sources["headers"] = step.config.headers
        sources["body"] = step.config.body
    elif isinstance(step, BranchStep):
        sources["source"] = "{{" + step.condition.source + "}}"
    elif isinstance(step, DataStep) and step.config.source_key:
        sources["source"] = "{{" + step.config.source_key + "}}"
    return CompiledTemplate(sources).step_keys

"""Engine configuration."""

import os
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from .context import DEFAULT_TOKEN_BUDGET
from .models import RetryPolicy

ENV_PREFIX = "PLAYBOOK_ENGINE_"


class EngineConfig(BaseModel):
    """
    Tunables for a PlaybookEngine.

    Values can be read from ``PLAYBOOK_ENGINE_*`` environment variables with
    :meth:`from_env`, e.g. ``PLAYBOOK_ENGINE_MAX_WORKERS=4``.
    """

    max_workers: int = Field(default=10, ge=1, description="Global step concurrency")
    default_token_budget: int = Field(default=DEFAULT_TOKEN_BUDGET, gt=0)
    run_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    default_retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    continue_on_failure: bool = Field(
        default=True,
        description="Keep dispatching independent steps after a step fails",
    )
    min_memory_relevance: float = Field(default=0.0, ge=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Build a config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        retry: Dict[str, Any] = {}

        for name, (target, field_name, convert) in _ENV_FIELDS.items():
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                continue
            target_values = retry if target == "retry" else values
            target_values[field_name] = convert(raw)

        if retry:
            values["default_retry_policy"] = RetryPolicy(**retry)
        return cls(**values)


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


_ENV_FIELDS: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "MAX_WORKERS": ("engine", "max_workers", int),
    "TOKEN_BUDGET": ("engine", "default_token_budget", int),
    "RUN_TIMEOUT_SECONDS": ("engine", "run_timeout_seconds", float),
    "CONTINUE_ON_FAILURE": ("engine", "continue_on_failure", _parse_bool),
    "MIN_MEMORY_RELEVANCE": ("engine", "min_memory_relevance", float),
    "MAX_ATTEMPTS": ("retry", "max_attempts", int),
    "BACKOFF_MS": ("retry", "backoff_ms", int),
}

"""ContextAssembler - builds the bounded context handed to each step."""

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .collaborators import MemoryItem, MemoryService, NoMemory
from .templates import ReferenceScope

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 8000


def estimate_tokens(value: Any) -> int:
    """Approximate token count: one token per four characters of compact JSON."""
    if value is None:
        return 0
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, separators=(",", ":"), default=str)
    return math.ceil(len(text) / 4)


def memory_item_tokens(item: MemoryItem) -> int:
    if item.estimated_tokens is not None:
        return item.estimated_tokens
    return estimate_tokens(item.content)


@dataclass
class ExecutionContext:
    """
    Everything a step handler may read while it runs.

    ``previous_outputs`` preserves completion order (oldest first). The
    cancellation event is shared by every step of the run; handlers may poll
    ``cancelled`` to stop early.
    """

    run_id: str
    step_key: str
    org_id: str
    input: Any = None
    step_input: Dict[str, Any] = field(default_factory=dict)
    previous_outputs: Dict[str, Any] = field(default_factory=dict)
    shared_state: Dict[str, Any] = field(default_factory=dict)
    memory: List[MemoryItem] = field(default_factory=list)
    token_budget: int = DEFAULT_TOKEN_BUDGET
    token_count: int = 0
    dropped_memory: int = 0
    dropped_outputs: List[str] = field(default_factory=list)
    attempt: int = 1
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def over_budget(self) -> bool:
        return self.token_count > self.token_budget

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def scope(self) -> ReferenceScope:
        """Reference scope for resolving templates within this step."""
        return ReferenceScope(
            prior_outputs=self.previous_outputs,
            run_input=self.input,
            shared_state=self.shared_state,
            step_key=self.step_key,
        )

    def to_prompt_context(self) -> Dict[str, Any]:
        """Serializable view passed to agents."""
        return {
            "input": self.step_input,
            "previous_outputs": self.previous_outputs,
            "shared_state": self.shared_state,
            "memory": [item.content for item in self.memory],
        }


class ContextAssembler:
    """
    Assemble an ExecutionContext within a token budget.

    Trimming order when over budget:
    1. Memory items, lowest relevance x importance first
    2. Prior outputs the step does not reference, oldest first

    Shared state and referenced outputs are never trimmed; if they alone
    exceed the budget the context is returned over budget.
    """

    def __init__(
        self,
        memory: Optional[MemoryService] = None,
        min_relevance: float = 0.0,
    ) -> None:
        self.memory = memory or NoMemory()
        self.min_relevance = min_relevance

    async def assemble(
        self,
        run_id: str,
        step_key: str,
        prior_outputs: Dict[str, Any],
        shared_state: Dict[str, Any],
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        referenced: Iterable[str] = (),
        memory_query: Optional[str] = None,
        org_id: str = "",
        run_input: Any = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionContext:
        """
        Build the context for one step invocation.

        Args:
            run_id: Run being executed
            step_key: Step the context is for
            prior_outputs: Outputs of completed steps, oldest first
            shared_state: Run shared state
            token_budget: Maximum estimated tokens
            referenced: Step keys whose outputs the step references
            memory_query: Query for the memory service, if any
            org_id: Organisation scope for memory search
            run_input: Run input
            cancel_event: Run cancellation signal

        Returns:
            ExecutionContext with token accounting filled in
        """
        referenced_keys = set(referenced)

        items: List[MemoryItem] = []
        if memory_query:
            items = list(
                await self.memory.search(memory_query, org_id, self.min_relevance)
            )

        fixed = estimate_tokens(shared_state) if shared_state else 0
        output_tokens = {key: estimate_tokens(v) for key, v in prior_outputs.items()}
        fixed += sum(t for k, t in output_tokens.items() if k in referenced_keys)
        trimmable_outputs = [k for k in prior_outputs if k not in referenced_keys]

        total = fixed
        total += sum(output_tokens[k] for k in trimmable_outputs)
        total += sum(memory_item_tokens(item) for item in items)

        # Highest score first so that pop() removes the weakest item
        kept_memory = sorted(items, key=lambda i: i.score, reverse=True)
        dropped_memory = 0
        while total > token_budget and kept_memory:
            total -= memory_item_tokens(kept_memory.pop())
            dropped_memory += 1

        dropped_outputs: List[str] = []
        while total > token_budget and trimmable_outputs:
            oldest = trimmable_outputs.pop(0)
            total -= output_tokens[oldest]
            dropped_outputs.append(oldest)

        if total > token_budget:
            logger.warning(
                "Context for step '%s' of run %s exceeds budget (%d > %d)",
                step_key,
                run_id,
                total,
                token_budget,
            )
        elif dropped_memory or dropped_outputs:
            logger.debug(
                "Trimmed context for step '%s': %d memory item(s), outputs %s",
                step_key,
                dropped_memory,
                dropped_outputs,
            )

        return ExecutionContext(
            run_id=run_id,
            step_key=step_key,
            org_id=org_id,
            input=run_input,
            previous_outputs={
                k: v for k, v in prior_outputs.items() if k not in dropped_outputs
            },
            shared_state=dict(shared_state),
            memory=kept_memory,
            token_budget=token_budget,
            token_count=total,
            dropped_memory=dropped_memory,
            dropped_outputs=dropped_outputs,
            cancel_event=cancel_event or asyncio.Event(),
        )

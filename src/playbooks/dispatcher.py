"""StepDispatcher - runs a single step attempt according to its type."""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import httpx
import openai

from ..agents.base import AgentRequest
from .collaborators import ApiClient, HttpxApiClient, QuotaService, UnlimitedQuota
from .context import ExecutionContext
from .errors import (
    AgentError,
    ConfigurationError,
    QuotaExceededError,
    StepExecutionError,
    UnresolvedReferenceError,
)
from .models import (
    AgentStep,
    ApiStep,
    BaseStep,
    BranchOperator,
    BranchStep,
    DataOperation,
    DataStep,
    StepType,
)
from .templates import RESERVED_ROOTS, Reference, compile_template

if TYPE_CHECKING:
    from ..agents.registry import AgentRegistry

logger = logging.getLogger(__name__)

TOKEN_RESOURCE = "tokens"

# Failures of the provider or the network that may succeed on a later attempt
RETRYABLE_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    asyncio.TimeoutError,
)

# Requests the provider rejected as malformed or unauthorised
FATAL_PROVIDER_ERRORS = (
    openai.BadRequestError,
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
    openai.UnprocessableEntityError,
)


def is_retryable_status(status: int) -> bool:
    """HTTP statuses that are worth retrying."""
    return status >= 500 or status == 429


class StepDispatcher:
    """
    Execute one attempt of a step and return its output.

    Step variants are dispatched by type:
    - AGENT: look up the agent, reserve tokens, invoke it
    - API: call the ApiClient
    - DATA: pure in-process transform
    - BRANCH: evaluate ordered conditions and select the next step

    Every failure leaves as a StepExecutionError classified retryable or
    fatal, so the coordinator can apply the step's retry policy.

    Example:
        dispatcher = StepDispatcher(registry, api_client=HttpxApiClient())
        output = await dispatcher.dispatch(step, context)
    """

    def __init__(
        self,
        agent_registry: "AgentRegistry",
        api_client: Optional[ApiClient] = None,
        quota: Optional[QuotaService] = None,
    ) -> None:
        self.agent_registry = agent_registry
        self.api_client = api_client or HttpxApiClient()
        self.quota = quota or UnlimitedQuota()

    async def dispatch(self, step: BaseStep, context: ExecutionContext) -> Any:
        """
        Run one attempt of ``step``.

        Args:
            step: The step to run
            context: Assembled context for this attempt

        Returns:
            The step output

        Raises:
            StepExecutionError: On any failure, with ``retryable`` set
        """
        try:
            if isinstance(step, AgentStep):
                return await self._run_agent(step, context)
            if isinstance(step, ApiStep):
                return await self._run_api(step, context)
            if isinstance(step, DataStep):
                return self._run_data(step, context)
            if isinstance(step, BranchStep):
                return self._run_branch(step, context)
            raise ConfigurationError(
                f"Unsupported step type {type(step).__name__}", step_key=step.key
            )
        except Exception as e:
            raise classify_error(step, e) from e

    async def _run_agent(self, step: AgentStep, context: ExecutionContext) -> Any:
        config = step.config
        scope = context.scope()

        agent = self.agent_registry.lookup(config.agent_id, step_key=step.key)

        if config.prompt:
            user_prompt = _as_text(compile_template(config.prompt).render(scope))
        else:
            user_prompt = json.dumps(context.step_input, default=str)
        system_prompt = None
        if config.system_prompt:
            system_prompt = _as_text(compile_template(config.system_prompt).render(scope))

        await self.quota.check_and_reserve(
            context.org_id, TOKEN_RESOURCE, config.max_tokens
        )

        request = AgentRequest(
            user_prompt=user_prompt,
            system_prompt=system_prompt,
            max_tokens=config.max_tokens,
            model=config.model,
            temperature=config.temperature,
            context=context.to_prompt_context(),
        )

        logger.debug(
            "Invoking agent '%s' for step '%s' (attempt %d)",
            config.agent_id,
            step.key,
            context.attempt,
        )
        response, trace = await agent.run(request)
        logger.debug(
            "Agent '%s' completed in %sms", config.agent_id, trace.duration_ms
        )

        return {
            "completion": response.completion,
            "usage": response.usage.model_dump(),
        }

    async def _run_api(self, step: ApiStep, context: ExecutionContext) -> Any:
        config = step.config
        scope = context.scope()

        url = _as_text(compile_template(config.url).render(scope))
        headers = {
            name: _as_text(value)
            for name, value in compile_template(config.headers).render(scope).items()
        }
        body = compile_template(config.body).render(scope)

        response = await self.api_client.request(
            config.method, url, headers, body, config.timeout_ms
        )

        if response.status >= 400:
            raise StepExecutionError(
                step.key,
                f"{config.method} {url} returned HTTP {response.status}",
                retryable=is_retryable_status(response.status),
                code=f"HTTP_{response.status}",
            )

        return {"status": response.status, "body": response.body}

    def _run_data(self, step: DataStep, context: ExecutionContext) -> Any:
        config = step.config

        if config.source_key:
            data = compile_template("{{" + config.source_key + "}}").render(
                context.scope()
            )
        else:
            data = context.step_input

        operation = config.operation
        if operation == DataOperation.PLUCK:
            if not config.fields:
                raise ConfigurationError(
                    "DATA operation 'pluck' requires 'fields'", step_key=step.key
                )
            return _each(data, step.key, "pluck", lambda d: {f: d.get(f) for f in config.fields})

        if operation == DataOperation.MAP:
            if not config.mapping:
                raise ConfigurationError(
                    "DATA operation 'map' requires 'mapping'", step_key=step.key
                )
            return _each(
                data,
                step.key,
                "map",
                lambda d: {new: d.get(old) for new, old in config.mapping.items()},
            )

        if operation == DataOperation.MERGE:
            step_input = context.step_input
            if isinstance(data, dict):
                if isinstance(step_input, dict):
                    return {**data, **step_input}
                return data
            return step_input

        if operation == DataOperation.FILTER:
            if not isinstance(data, list):
                raise ConfigurationError(
                    "DATA operation 'filter' requires a list source", step_key=step.key
                )
            return [
                item
                for item in data
                if isinstance(item, dict)
                and all(item.get(k) == v for k, v in config.where.items())
            ]

        return data

    def _run_branch(self, step: BranchStep, context: ExecutionContext) -> Dict[str, Any]:
        condition = step.condition
        value = self._branch_source(step, context)

        for rule in condition.conditions:
            if evaluate_condition(rule.operator, value, rule.value):
                return {
                    "matched": True,
                    "operator": rule.operator.value,
                    "next_step_key": rule.target_key,
                }

        if condition.default_key:
            return {
                "matched": False,
                "operator": None,
                "next_step_key": condition.default_key,
            }

        raise ConfigurationError(
            f"No branch condition matched value {value!r} and no default is set",
            step_key=step.key,
        )

    @staticmethod
    def _branch_source(step: BranchStep, context: ExecutionContext) -> Any:
        scope = context.scope()
        ref = Reference.parse(step.condition.source)
        try:
            return scope.lookup(ref)
        except UnresolvedReferenceError:
            # A missing field of an available output is "absent" for the
            # operators; a missing step is a configuration error.
            if ref.root in RESERVED_ROOTS or ref.root in context.previous_outputs:
                return None
            raise


def evaluate_condition(operator: BranchOperator, actual: Any, expected: Any) -> bool:
    """Apply a branch operator to a resolved value."""
    if operator == BranchOperator.EQUALS:
        return bool(actual == expected)
    if operator == BranchOperator.NOT_EQUALS:
        return bool(actual != expected)
    if operator == BranchOperator.CONTAINS:
        if isinstance(actual, str):
            return str(expected) in actual
        if isinstance(actual, (list, tuple, set, dict)):
            return expected in actual
        return False
    if operator == BranchOperator.GREATER_THAN:
        return _compare(actual, expected, lambda a, b: a > b)
    if operator == BranchOperator.LESS_THAN:
        return _compare(actual, expected, lambda a, b: a < b)
    if operator == BranchOperator.EXISTS:
        return actual is not None
    return False


def _compare(actual: Any, expected: Any, op: Any) -> bool:
    try:
        return bool(op(float(actual), float(expected)))
    except (TypeError, ValueError):
        return False


def _each(data: Any, step_key: str, operation: str, fn: Any) -> Any:
    if isinstance(data, dict):
        return fn(data)
    if isinstance(data, list) and all(isinstance(item, dict) for item in data):
        return [fn(item) for item in data]
    raise ConfigurationError(
        f"Cannot {operation} non-object data of type {type(data).__name__}",
        step_key=step_key,
    )


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def classify_error(step: BaseStep, error: Exception) -> StepExecutionError:
    """
    Wrap any handler failure in a StepExecutionError.

    Configuration, quota and rejected-request errors are fatal. Timeouts,
    network and provider availability errors are retryable. Unknown errors
    from AGENT and API steps are retryable; DATA and BRANCH steps are
    deterministic, so their unknown errors are fatal.
    """
    if isinstance(error, StepExecutionError):
        return error

    message = str(error).strip() or type(error).__name__

    if isinstance(error, ConfigurationError):
        return StepExecutionError(step.key, message, False, error.code, error)
    if isinstance(error, QuotaExceededError):
        return StepExecutionError(step.key, message, False, error.code, error)
    if isinstance(error, AgentError):
        return StepExecutionError(step.key, message, error.retryable, error.code, error)
    if isinstance(error, FATAL_PROVIDER_ERRORS):
        return StepExecutionError(step.key, message, False, "PROVIDER_REJECTED", error)
    if isinstance(error, (httpx.TimeoutException, openai.APITimeoutError, asyncio.TimeoutError)):
        return StepExecutionError(step.key, message, True, "STEP_TIMEOUT", error)
    if isinstance(error, RETRYABLE_ERRORS):
        return StepExecutionError(step.key, message, True, "PROVIDER_UNAVAILABLE", error)
    if isinstance(error, openai.APIStatusError):
        return StepExecutionError(
            step.key,
            message,
            is_retryable_status(error.status_code),
            f"HTTP_{error.status_code}",
            error,
        )

    retryable = getattr(step, "type", None) in (StepType.AGENT.value, StepType.API.value)
    return StepExecutionError(step.key, message, retryable, "HANDLER_ERROR", error)

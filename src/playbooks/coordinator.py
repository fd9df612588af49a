"""RunCoordinator - drives one run of a playbook to a terminal state.

One coordinator task owns every mutation of its Run and StepRun records.
Step attempts execute as child tasks bounded by the engine's WorkerPool;
their results are applied by the coordinator as they complete, so a step
starts as soon as its own dependencies are terminal rather than waiting for
a whole ready set to finish.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import EngineConfig
from .context import ContextAssembler
from .dispatcher import StepDispatcher, classify_error
from .errors import (
    ConfigurationError,
    RunCancelledError,
    RunTimeoutError,
    StepExecutionError,
)
from .events import EventBus, EventType, ExecutionEvent
from .metrics import EngineMetrics
from .models import AgentStep, ApiStep, BaseStep, BranchStep, PlaybookDefinition, RetryPolicy
from .pool import WorkerPool
from .runs import (
    Run,
    RunError,
    RunStatus,
    StepError,
    StepRun,
    StepRunStatus,
    utcnow,
)
from .store import RunStore
from .templates import ReferenceScope, compile_template, step_references

logger = logging.getLogger(__name__)

_STEP = "step"
_RETRY = "retry"

RUN_EVENTS = {
    RunStatus.SUCCEEDED: EventType.RUN_COMPLETED,
    RunStatus.FAILED: EventType.RUN_FAILED,
    RunStatus.CANCELLED: EventType.RUN_CANCELLED,
}


class RunCoordinator:
    """
    Execute a validated playbook for one Run.

    Scheduling rules:
    - A step is ready when every dependency is SUCCEEDED or SKIPPED and every
      branch that targets it has succeeded and selected it
    - Ready steps are dispatched in declaration order
    - A BRANCH skips its non-chosen targets and their downstream steps,
      except steps that are also downstream of the chosen target
    - A retryable failure with attempts left schedules a new attempt after
      exponential backoff; otherwise the step FAILS and its downstream steps
      are SKIPPED while independent steps continue
    """

    def __init__(
        self,
        playbook: PlaybookDefinition,
        run: Run,
        dispatcher: StepDispatcher,
        assembler: ContextAssembler,
        pool: WorkerPool,
        store: RunStore,
        events: EventBus,
        metrics: EngineMetrics,
        config: EngineConfig,
        shared_state: Optional[Dict[str, Any]] = None,
        token_budget: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.playbook = playbook
        self.run = run
        self.dispatcher = dispatcher
        self.assembler = assembler
        self.pool = pool
        self.store = store
        self.events = events
        self.metrics = metrics
        self.config = config
        self.token_budget = token_budget or config.default_token_budget
        self.timeout_seconds = timeout_seconds or config.run_timeout_seconds

        self.steps: Dict[str, BaseStep] = {}
        for step in playbook.steps:
            self.steps.setdefault(step.key, step)
        self.order = {key: index for index, key in enumerate(self.steps)}

        self.deps: Dict[str, List[str]] = {
            key: [d for d in dict.fromkeys(step.depends_on) if d in self.steps]
            for key, step in self.steps.items()
        }
        self.gates: Dict[str, Set[str]] = {key: set() for key in self.steps}
        self.downstream: Dict[str, List[str]] = {key: [] for key in self.steps}
        for key, deps in self.deps.items():
            for dep in deps:
                self.downstream[dep].append(key)
        for key, step in self.steps.items():
            if isinstance(step, BranchStep):
                for target in step.condition.target_keys:
                    if target in self.steps:
                        self.gates[target].add(key)
                        if target not in self.downstream[key]:
                            self.downstream[key].append(target)

        upstream: Dict[str, List[str]] = {key: [] for key in self.steps}
        for key, targets in self.downstream.items():
            for target in targets:
                upstream[target].append(key)
        self.ancestors: Dict[str, Set[str]] = {
            key: _reachable(upstream[key], upstream) for key in self.steps
        }
        self.referenced: Dict[str, Set[str]] = {
            key: step_references(step) for key, step in self.steps.items()
        }

        self.shared_state: Dict[str, Any] = {
            **playbook.variables,
            **(shared_state or {}),
        }
        self.status: Dict[str, StepRunStatus] = {}
        self.current: Dict[str, StepRun] = {}
        self.step_runs: List[StepRun] = []
        self.outputs: Dict[str, Any] = {}
        self.selected: Dict[str, str] = {}

        self.cancel_event = asyncio.Event()
        self.cancel_error: Optional[RunCancelledError] = None
        self.halted_by: Optional[str] = None

        self._tasks: Dict["asyncio.Task[Any]", Tuple[str, str]] = {}
        self._wakeup: Optional["asyncio.Task[Any]"] = None
        self._deadline: Optional[float] = None

    async def initialize(self) -> None:
        """Create the first attempt record of every step and mark the run RUNNING."""
        for key, step in self.steps.items():
            step_run = StepRun(run_id=self.run.id, step_key=key, step_type=step.type)
            self._track(step_run)
            await self.store.save_step_run(step_run)

        self.run.status = RunStatus.RUNNING
        self.run.started_at = utcnow()
        await self.store.save_run(self.run)
        self.metrics.run_started(self.playbook.id)

        logger.info(
            "Run %s started: playbook '%s' v%d with %d steps",
            self.run.id,
            self.playbook.name,
            self.playbook.version,
            len(self.steps),
        )
        await self._emit(
            EventType.RUN_STARTED,
            payload={"playbook_id": self.playbook.id, "steps": list(self.steps)},
        )

    def request_cancel(self, error: Optional[RunCancelledError] = None) -> bool:
        """
        Ask the run to stop dispatching new steps.

        In-flight steps observe the cancellation event on their context and
        are allowed to finish.

        Returns:
            False if the run already finished or was already cancelled
        """
        if self.run.is_terminal or self.cancel_error is not None:
            return False
        self.cancel_error = error or RunCancelledError(self.run.id)
        self.cancel_event.set()
        logger.info("Run %s cancellation requested (%s)", self.run.id, self.cancel_error.code)
        return True

    async def execute(self) -> Run:
        """Drive the run until no step is pending or running, then finalize."""
        loop = asyncio.get_running_loop()
        if self.timeout_seconds:
            self._deadline = loop.time() + self.timeout_seconds
        self._wakeup = asyncio.ensure_future(self.cancel_event.wait())

        try:
            while True:
                self._check_deadline(loop)

                if self.cancel_error is not None:
                    await self._cancel_retries()
                    await self._skip_pending(*self._cancel_reason())
                elif self.halted_by is None:
                    await self._dispatch_ready()

                if not self._tasks:
                    break

                wait_for: Set["asyncio.Future[Any]"] = set(self._tasks)
                if not self._wakeup.done():
                    wait_for.add(self._wakeup)
                timeout = None
                if self._deadline is not None and self.cancel_error is None:
                    timeout = max(self._deadline - loop.time(), 0)

                done, _ = await asyncio.wait(
                    wait_for, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )

                finished = [t for t in done if t in self._tasks]
                finished.sort(key=lambda t: self.order[self._tasks[t][1]])
                for task in finished:
                    kind, key = self._tasks.pop(task)
                    if kind == _RETRY:
                        await self._retry_due(key)
                    else:
                        await self._attempt_finished(key, task)

            await self._skip_pending(*self._leftover_reason())
            await self._finalize()

        except asyncio.CancelledError:
            for task in list(self._tasks):
                task.cancel()
            raise
        except Exception as e:
            logger.exception("Run %s aborted by an internal error", self.run.id)
            for task in list(self._tasks):
                task.cancel()
            self._tasks.clear()
            if self.run.error is None:
                self.run.error = RunError(code="COORDINATOR_ERROR", message=str(e))
            await self._skip_pending("run aborted", "aborted")
            await self._finalize(force_status=RunStatus.FAILED)
        finally:
            if self._wakeup is not None:
                self._wakeup.cancel()

        return self.run

    # Scheduling

    def _is_ready(self, key: str) -> bool:
        if self.status[key] != StepRunStatus.PENDING or self._pending_retry(key):
            return False
        for dep in self.deps[key]:
            if self.status[dep] not in (StepRunStatus.SUCCEEDED, StepRunStatus.SKIPPED):
                return False
        for branch in self.gates[key]:
            if self.status[branch] != StepRunStatus.SUCCEEDED:
                return False
            if self.selected.get(branch) != key:
                return False
        return True

    def _pending_retry(self, key: str) -> bool:
        return any(k == key for kind, k in self._tasks.values() if kind == _RETRY)

    async def _dispatch_ready(self) -> None:
        for key in [k for k in self.steps if self._is_ready(k)]:
            # A launch that fails immediately may skip later candidates
            if self._is_ready(key):
                await self._launch(key)

    async def _launch(self, key: str) -> None:
        step = self.steps[key]
        step_run = self.current[key]
        attempt = step_run.attempt

        step_run.status = StepRunStatus.RUNNING
        step_run.started_at = utcnow()
        self.status[key] = StepRunStatus.RUNNING

        try:
            step_input, memory_query = self._render(step)
        except ConfigurationError as e:
            await self.store.save_step_run(step_run)
            await self._emit(EventType.STEP_STARTED, key, {"attempt": attempt})
            await self._attempt_failed(key, classify_error(step, e))
            return

        step_run.input = step_input
        await self.store.save_step_run(step_run)
        await self._emit(
            EventType.STEP_STARTED, key, {"attempt": attempt, "type": step.type}
        )
        logger.info("Run %s: step '%s' started (attempt %d)", self.run.id, key, attempt)

        task = asyncio.ensure_future(
            self._invoke(
                step,
                attempt,
                step_input,
                memory_query,
                self._prior_outputs(step.key),
                dict(self.shared_state),
            )
        )
        self._tasks[task] = (_STEP, key)

    def _render(self, step: BaseStep) -> Tuple[Dict[str, Any], Optional[str]]:
        scope = ReferenceScope(
            prior_outputs=self._prior_outputs(step.key),
            run_input=self.run.input,
            shared_state=self.shared_state,
            step_key=step.key,
        )
        step_input = compile_template(step.input).render(scope)
        memory_query = None
        if isinstance(step, AgentStep) and step.config.memory_query:
            rendered = compile_template(step.config.memory_query).render(scope)
            memory_query = rendered if isinstance(rendered, str) else str(rendered)
        return step_input, memory_query

    async def _invoke(
        self,
        step: BaseStep,
        attempt: int,
        step_input: Dict[str, Any],
        memory_query: Optional[str],
        prior_outputs: Dict[str, Any],
        shared_state: Dict[str, Any],
    ) -> Any:
        try:
            context = await self.assembler.assemble(
                run_id=self.run.id,
                step_key=step.key,
                prior_outputs=prior_outputs,
                shared_state=shared_state,
                token_budget=self.token_budget,
                referenced=self.referenced[step.key],
                memory_query=memory_query,
                org_id=self.run.org_id,
                run_input=self.run.input,
                cancel_event=self.cancel_event,
            )
            context.step_input = step_input
            context.attempt = attempt

            if isinstance(step, (AgentStep, ApiStep)):
                async with self.pool.slot():
                    return await self.dispatcher.dispatch(step, context)
            return await self.dispatcher.dispatch(step, context)
        except StepExecutionError:
            raise
        except Exception as e:
            raise classify_error(step, e) from e

    # Result handling

    async def _attempt_finished(self, key: str, task: "asyncio.Task[Any]") -> None:
        error = task.exception()
        if error is None:
            await self._attempt_succeeded(key, task.result())
        elif isinstance(error, StepExecutionError):
            await self._attempt_failed(key, error)
        else:
            await self._attempt_failed(key, classify_error(self.steps[key], error))

    async def _attempt_succeeded(self, key: str, output: Any) -> None:
        step = self.steps[key]
        step_run = self.current[key]
        step_run.status = StepRunStatus.SUCCEEDED
        step_run.output = output
        step_run.completed_at = utcnow()
        self.status[key] = StepRunStatus.SUCCEEDED
        self.outputs[key] = output
        if step.output_var:
            self.shared_state[step.output_var] = output

        await self.store.save_step_run(step_run)
        self.metrics.step_finished(step.type, "SUCCEEDED", _seconds(step_run))
        logger.info(
            "Run %s: step '%s' succeeded in %sms",
            self.run.id,
            key,
            step_run.duration_ms,
        )
        await self._emit(
            EventType.STEP_COMPLETED,
            key,
            {"attempt": step_run.attempt, "duration_ms": step_run.duration_ms},
        )

        if isinstance(step, BranchStep):
            await self._route_branch(step, output)

    async def _route_branch(self, step: BranchStep, output: Any) -> None:
        chosen = output.get("next_step_key") if isinstance(output, dict) else None
        self.selected[step.key] = chosen
        logger.info("Run %s: branch '%s' selected '%s'", self.run.id, step.key, chosen)

        keep = self._closure([chosen]) if chosen in self.steps else set()
        others = [t for t in step.condition.target_keys if t != chosen and t in self.steps]
        for key in self._sorted(self._closure(others) - keep):
            await self._skip(key, f"branch '{step.key}' selected '{chosen}'", "branch")

    async def _attempt_failed(self, key: str, error: StepExecutionError) -> None:
        step = self.steps[key]
        step_run = self.current[key]
        step_run.status = StepRunStatus.FAILED
        step_run.error = StepError(
            code=error.code, message=error.detail, retryable=error.retryable
        )
        step_run.completed_at = utcnow()
        await self.store.save_step_run(step_run)
        self.metrics.step_finished(step.type, "FAILED", _seconds(step_run))

        policy = self._policy(step)
        if (
            error.retryable
            and step_run.attempt < policy.max_attempts
            and self.cancel_error is None
        ):
            await self._schedule_retry(step, step_run, policy, error)
            return

        self.status[key] = StepRunStatus.FAILED
        logger.error(
            "Run %s: step '%s' failed after %d attempt(s): %s",
            self.run.id,
            key,
            step_run.attempt,
            error.detail,
        )
        await self._emit(
            EventType.STEP_FAILED,
            key,
            {
                "attempt": step_run.attempt,
                "code": error.code,
                "message": error.detail,
                "retryable": error.retryable,
            },
        )

        if self.run.error is None:
            self.run.error = RunError(code=error.code, message=error.detail, step_key=key)
            await self.store.save_run(self.run)
        if not self.config.continue_on_failure and self.halted_by is None:
            self.halted_by = key

        for dependent in self._sorted(self._closure(self.downstream[key])):
            await self._skip(dependent, f"dependency '{key}' failed", "dependency_failed")

    async def _schedule_retry(
        self,
        step: BaseStep,
        failed: StepRun,
        policy: RetryPolicy,
        error: StepExecutionError,
    ) -> None:
        delay = policy.delay_seconds(failed.attempt)
        next_run = StepRun(
            run_id=self.run.id,
            step_key=step.key,
            step_type=step.type,
            attempt=failed.attempt + 1,
        )
        self._track(next_run)
        self.status[step.key] = StepRunStatus.PENDING
        await self.store.save_step_run(next_run)

        self.metrics.step_retried(step.type)
        logger.warning(
            "Run %s: step '%s' attempt %d failed (%s); retrying in %.3fs",
            self.run.id,
            step.key,
            failed.attempt,
            error.detail,
            delay,
        )
        await self._emit(
            EventType.STEP_RETRYING,
            step.key,
            {"attempt": failed.attempt, "next_attempt": next_run.attempt, "delay_seconds": delay},
        )

        task = asyncio.ensure_future(asyncio.sleep(delay))
        self._tasks[task] = (_RETRY, step.key)

    async def _retry_due(self, key: str) -> None:
        if self.cancel_error is None and self.status[key] == StepRunStatus.PENDING:
            await self._launch(key)

    async def _cancel_retries(self) -> None:
        for task, (kind, _) in list(self._tasks.items()):
            if kind == _RETRY:
                task.cancel()
                del self._tasks[task]

    # Skipping and finalization

    async def _skip(self, key: str, reason: str, cause: str) -> None:
        if self.status[key] != StepRunStatus.PENDING:
            return
        step_run = self.current[key]
        step_run.status = StepRunStatus.SKIPPED
        step_run.skip_reason = reason
        step_run.completed_at = utcnow()
        self.status[key] = StepRunStatus.SKIPPED
        await self.store.save_step_run(step_run)
        self.metrics.step_skipped(cause)
        logger.info("Run %s: step '%s' skipped (%s)", self.run.id, key, reason)
        await self._emit(EventType.STEP_SKIPPED, key, {"reason": reason})

    async def _skip_pending(self, reason: str, cause: str) -> None:
        for key in self.steps:
            if self.status[key] == StepRunStatus.PENDING and not self._pending_retry(key):
                await self._skip(key, reason, cause)

    def _cancel_reason(self) -> Tuple[str, str]:
        if isinstance(self.cancel_error, RunTimeoutError):
            return "run timed out", "timeout"
        return "run cancelled", "cancelled"

    def _leftover_reason(self) -> Tuple[str, str]:
        if self.cancel_error is not None:
            return self._cancel_reason()
        if self.halted_by is not None:
            return f"run halted after '{self.halted_by}' failed", "halted"
        return "dependencies never satisfied", "unreachable"

    def _check_deadline(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._deadline is None or self.cancel_error is not None:
            return
        if loop.time() >= self._deadline:
            self.request_cancel(RunTimeoutError(self.run.id, self.timeout_seconds or 0))

    async def _finalize(self, force_status: Optional[RunStatus] = None) -> None:
        run = self.run
        if force_status is not None:
            run.status = force_status
        elif any(s == StepRunStatus.FAILED for s in self.status.values()):
            run.status = RunStatus.FAILED
        elif self.cancel_error is not None:
            run.status = RunStatus.CANCELLED
            run.error = RunError(code=self.cancel_error.code, message=str(self.cancel_error))
        else:
            run.status = RunStatus.SUCCEEDED
            run.output = self._aggregate_output()

        run.completed_at = utcnow()
        await self.store.save_run(run)

        duration = (run.duration_ms or 0) / 1000.0
        self.metrics.run_finished(self.playbook.id, run.status.value, duration)
        log = logger.info if run.status == RunStatus.SUCCEEDED else logger.warning
        log("Run %s finished: %s in %sms", run.id, run.status.value, run.duration_ms)

        payload: Dict[str, Any] = {"status": run.status.value}
        if run.error is not None:
            payload["error"] = run.error.model_dump()
        await self._emit(RUN_EVENTS[run.status], payload=payload)

    def _aggregate_output(self) -> Any:
        if self.playbook.sink_key:
            return self.outputs.get(self.playbook.sink_key)
        return {
            key: self.outputs[key]
            for key in self.steps
            if self.status[key] == StepRunStatus.SUCCEEDED
        }

    # Helpers

    def _track(self, step_run: StepRun) -> None:
        self.step_runs.append(step_run)
        self.current[step_run.step_key] = step_run
        self.status[step_run.step_key] = step_run.status

    def _policy(self, step: BaseStep) -> RetryPolicy:
        return step.retry_policy or self.config.default_retry_policy

    def _closure(self, roots: List[str]) -> Set[str]:
        return _reachable([r for r in roots if r in self.steps], self.downstream)

    def _prior_outputs(self, key: str) -> Dict[str, Any]:
        """Outputs of completed ancestors of ``key``, in completion order."""
        ancestors = self.ancestors[key]
        return {k: v for k, v in self.outputs.items() if k in ancestors}

    def _sorted(self, keys: Set[str]) -> List[str]:
        return sorted(keys, key=self.order.__getitem__)

    async def _emit(
        self,
        event_type: EventType,
        step_key: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.events.publish(
            ExecutionEvent(
                type=event_type,
                run_id=self.run.id,
                step_key=step_key,
                payload=payload or {},
            )
        )


def _seconds(step_run: StepRun) -> float:
    return (step_run.duration_ms or 0) / 1000.0


def _reachable(roots: List[str], edges: Dict[str, List[str]]) -> Set[str]:
    seen: Set[str] = set()
    stack = list(roots)
    while stack:
        key = stack.pop()
        if key not in seen:
            seen.add(key)
            stack.extend(edges[key])
    return seen

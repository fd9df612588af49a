"""Progress events emitted by the run coordinator."""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import httpx

from .runs import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of progress events, in the order a run may emit them."""

    RUN_STARTED = "run.started"
    STEP_STARTED = "step.started"
    STEP_COMPLETED = "step.completed"
    STEP_FAILED = "step.failed"
    STEP_RETRYING = "step.retrying"
    STEP_SKIPPED = "step.skipped"
    RUN_COMPLETED = "run.completed"
    RUN_FAILED = "run.failed"
    RUN_CANCELLED = "run.cancelled"


TERMINAL_RUN_EVENTS = frozenset(
    {EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED}
)


@dataclass
class ExecutionEvent:
    """A single progress event."""

    type: EventType
    run_id: str
    step_key: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "step_key": self.step_key,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }


EventHandler = Callable[[ExecutionEvent], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    handler: EventHandler
    run_id: Optional[str] = None
    types: Optional[Set[EventType]] = None

    def matches(self, event: ExecutionEvent) -> bool:
        if self.run_id is not None and event.run_id != self.run_id:
            return False
        return self.types is None or event.type in self.types


class EventBus:
    """
    In-process publish/subscribe for run progress.

    Events of a run are delivered to subscribers in publish order. A failing
    subscriber is logged and never affects the run.

    Example:
        bus = EventBus()
        bus.subscribe(lambda e: print(e.type, e.step_key), run_id=run.id)
    """

    def __init__(self, history_limit: int = 1000) -> None:
        self.history_limit = history_limit
        self._subscriptions: List[Subscription] = []
        self._history: Dict[str, List[ExecutionEvent]] = {}
        self._sequence = 0

    def subscribe(
        self,
        handler: EventHandler,
        run_id: Optional[str] = None,
        types: Optional[Set[EventType]] = None,
    ) -> Subscription:
        """Register a sync or async handler, optionally filtered by run and type."""
        subscription = Subscription(handler, run_id, set(types) if types else None)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish(self, event: ExecutionEvent) -> None:
        self._sequence += 1
        event.sequence = self._sequence

        history = self._history.setdefault(event.run_id, [])
        history.append(event)
        if len(history) > self.history_limit:
            del history[0]

        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event subscriber failed on %s for run %s",
                    event.type.value,
                    event.run_id,
                )

    def history(self, run_id: str) -> List[ExecutionEvent]:
        """Events published for ``run_id`` so far."""
        return list(self._history.get(run_id, []))

    def forget(self, run_id: str) -> None:
        self._history.pop(run_id, None)


class WebhookNotifier:
    """
    POST run events to a webhook URL.

    Delivery is best effort: failures are logged and not retried. By default
    only terminal run events are sent.

    Example:
        notifier = WebhookNotifier("https://hooks.example.com/runs")
        bus.subscribe(notifier, run_id=run.id)
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        event_types: Optional[Set[EventType]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.event_types = set(event_types or TERMINAL_RUN_EVENTS)
        self.timeout_seconds = timeout_seconds
        self._client = client
        self.delivered = 0

    async def __call__(self, event: ExecutionEvent) -> None:
        if event.type not in self.event_types:
            return
        try:
            if self._client is not None:
                response = await self._post(self._client, event)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, event)
            response.raise_for_status()
            self.delivered += 1
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.warning(
                "Webhook delivery to %s failed for %s: %s", self.url, event.type.value, e
            )

    async def _post(
        self, client: httpx.AsyncClient, event: ExecutionEvent
    ) -> httpx.Response:
        return await client.post(
            self.url,
            json=event.to_dict(),
            headers=self.headers,
            timeout=self.timeout_seconds,
        )

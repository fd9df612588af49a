"""External collaborators used by the engine: HTTP, memory search and quota.

Each collaborator is a Protocol so tests and hosts can supply their own
implementation. Thin default implementations are provided for local use.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple

import httpx

from .errors import QuotaExceededError

logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    """Response returned by an ApiClient."""

    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status < 400


class ApiClient(Protocol):
    """Generic HTTP-style invocation used by API steps."""

    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Any,
        timeout_ms: int,
    ) -> ApiResponse:
        """Perform the request; network failures raise, HTTP errors return."""
        ...


@dataclass
class MemoryItem:
    """A ranked memory item returned by a MemoryService."""

    content: Any
    relevance: float = 1.0
    importance: float = 1.0
    estimated_tokens: Optional[int] = None

    @property
    def score(self) -> float:
        return self.relevance * self.importance


class MemoryService(Protocol):
    """Semantic memory search, consumed read-only by the context assembler."""

    async def search(
        self, query: str, org_scope: str, min_relevance: float = 0.0
    ) -> List[MemoryItem]:
        ...


class QuotaService(Protocol):
    """Billing quota gate."""

    async def check_and_reserve(
        self, org_id: str, resource_kind: str, amount: int
    ) -> None:
        """Reserve ``amount`` units or raise QuotaExceededError."""
        ...


class HttpxApiClient:
    """
    ApiClient backed by httpx.AsyncClient.

    Non-JSON response bodies are returned as text. Timeouts and connection
    failures propagate as httpx exceptions so the dispatcher can classify them.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._owns_client = client is None

    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Any,
        timeout_ms: int,
    ) -> ApiResponse:
        client = self._get_client()
        kwargs: Dict[str, Any] = {
            "headers": dict(headers),
            "timeout": timeout_ms / 1000.0,
        }
        if body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        logger.debug("HTTP %s %s", method, url)
        response = await client.request(method, url, **kwargs)

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text

        return ApiResponse(
            status=response.status_code,
            body=payload,
            headers=dict(response.headers),
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client


class NoMemory:
    """MemoryService that never returns anything."""

    async def search(
        self, query: str, org_scope: str, min_relevance: float = 0.0
    ) -> List[MemoryItem]:
        return []


class StaticMemory:
    """MemoryService over a fixed list of items, filtered by relevance."""

    def __init__(self, items: List[MemoryItem]) -> None:
        self.items = list(items)
        self.queries: List[Tuple[str, str]] = []

    async def search(
        self, query: str, org_scope: str, min_relevance: float = 0.0
    ) -> List[MemoryItem]:
        self.queries.append((query, org_scope))
        ranked = [i for i in self.items if i.relevance >= min_relevance]
        return sorted(ranked, key=lambda i: i.relevance, reverse=True)


class UnlimitedQuota:
    """QuotaService that accepts every reservation."""

    async def check_and_reserve(
        self, org_id: str, resource_kind: str, amount: int
    ) -> None:
        return None


class InMemoryQuota:
    """
    QuotaService with per-org limits held in memory.

    Reservations are applied atomically under a lock. A resource kind with
    no configured limit is unlimited.

    Example:
        quota = InMemoryQuota({"playbook_run": 10, "tokens": 50_000})
        await quota.check_and_reserve("org-1", "playbook_run", 1)
    """

    def __init__(self, limits: Optional[Dict[str, int]] = None) -> None:
        self.limits: Dict[str, int] = dict(limits or {})
        self._used: Dict[Tuple[str, str], int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self._blocked: Set[str] = set()

    def block(self, org_id: str) -> None:
        """Reject every future reservation for ``org_id``."""
        self._blocked.add(org_id)

    def used(self, org_id: str, resource_kind: str) -> int:
        return self._used[(org_id, resource_kind)]

    async def check_and_reserve(
        self, org_id: str, resource_kind: str, amount: int
    ) -> None:
        async with self._lock:
            limit = self.limits.get(resource_kind)
            if org_id in self._blocked:
                raise QuotaExceededError(org_id, resource_kind, amount, limit or 0)
            used = self._used[(org_id, resource_kind)]
            if limit is not None and used + amount > limit:
                raise QuotaExceededError(org_id, resource_kind, amount, limit)
            self._used[(org_id, resource_kind)] = used + amount

"""Run stores - persistence of Run and StepRun records."""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import StoreError
from .runs import Run, StepRun

T = TypeVar("T")


class RunStore(ABC):
    """
    Persistence collaborator for run records.

    The coordinator calls ``save_run`` / ``save_step_run`` at every state
    transition; saving is an upsert keyed by record id.
    """

    @abstractmethod
    async def list_runs(self) -> List[str]:
        """Ids of all stored runs."""
        return []


class InMemoryRunStore(RunStore):
    """
    RunStore that keeps copies of records in memory.

    Stored records are copies, so later mutation by the coordinator is only
    visible after the next save.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._step_runs: Dict[str, Dict[str, StepRun]] = {}
        self.writes = 0

    async def save_run(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)
        self._step_runs.setdefault(run.id, {})
        self.writes += 1

    async def save_step_run(self, step_run: StepRun) -> None:
        self._step_runs.setdefault(step_run.run_id, {})[step_run.id] = (
            step_run.model_copy(deep=True)
        )
        self.writes += 1

    async def get_run(self, run_id: str) -> Optional[Run]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_step_runs(self, run_id: str) -> List[StepRun]:
        records = self._step_runs.get(run_id, {})
        return [s.model_copy(deep=True) for s in records.values()]

    async def list_runs(self) -> List[str]:
        return list(self._runs.keys())


class JsonFileRunStore(RunStore):
    """
    RunStore writing one JSON document per run.

    Each document holds the run and all of its step attempts. File I/O runs
    in the default executor so the event loop is never blocked; writes are
    serialised per store with an asyncio lock.

    Example:
        store = JsonFileRunStore(".runs")
        engine = PlaybookEngine(registry, store=store)
    """

    def __init__(self, directory: str = ".runs") -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def _read(self, run_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(run_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            document: Dict[str, Any] = json.load(f)
        return document

    def _write(self, run_id: str, document: Dict[str, Any]) -> None:
        path = self._path(run_id)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, default=str)
        tmp.replace(path)

    def _upsert_run(self, run_id: str, record: Dict[str, Any]) -> None:
        document = self._read(run_id) or {"step_runs": []}
        document["run"] = record
        self._write(run_id, document)

    def _upsert_step_run(self, run_id: str, record: Dict[str, Any]) -> None:
        document = self._read(run_id) or {"run": None, "step_runs": []}
        records: List[Dict[str, Any]] = document["step_runs"]
        # Replace in place to keep creation order
        for i, existing in enumerate(records):
            if existing.get("id") == record["id"]:
                records[i] = record
                break
        else:
            records.append(record)
        self._write(run_id, document)

    async def _in_executor(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def save_run(self, run: Run) -> None:
        async with self._lock:
            try:
                await self._in_executor(self._upsert_run, run.id, run.to_dict())
            except Exception as e:
                raise StoreError("save", run.id, e) from e

    async def save_step_run(self, step_run: StepRun) -> None:
        async with self._lock:
            try:
                await self._in_executor(
                    self._upsert_step_run, step_run.run_id, step_run.to_dict()
                )
            except Exception as e:
                raise StoreError("save", step_run.run_id, e) from e

    async def get_run(self, run_id: str) -> Optional[Run]:
        try:
            document = await self._in_executor(self._read, run_id)
        except Exception as e:
            raise StoreError("load", run_id, e) from e
        if not document or not document.get("run"):
            return None
        return Run.model_validate(document["run"])

    async def list_step_runs(self, run_id: str) -> List[StepRun]:
        try:
            document = await self._in_executor(self._read, run_id)
        except Exception as e:
            raise StoreError("load", run_id, e) from e
        if not document:
            return []
        return [StepRun.model_validate(r) for r in document["step_runs"]]

    async def list_runs(self) -> List[str]:
        return [p.stem for p in self.directory.glob("*.json")]

    def delete_run(self, run_id: str) -> bool:
        """Delete a run document; returns False if it did not exist."""
        path = self._path(run_id)
        if path.exists():
            path.unlink()
            return True
        return False

"""Unit tests for run stores."""

import asyncio
import json
import threading
from pathlib import Path
from typing import Any, Dict, List

import pytest

from src.playbooks.errors import StoreError
from src.playbooks.runs import (
    Run,
    RunError,
    RunStatus,
    RunStatusReport,
    StepRun,
    StepRunStatus,
)
from src.playbooks.store import InMemoryRunStore, JsonFileRunStore


@pytest.fixture
def run() -> Run:
    return Run(playbook_id="outreach", org_id="org-1", input={"company": "Acme"})


class TestInMemoryRunStore:
    """Test suite for InMemoryRunStore."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, run: Run) -> None:
        """Test saving and loading a run."""
        store = InMemoryRunStore()
        await store.save_run(run)

        loaded = await store.get_run(run.id)
        assert loaded == run
        assert loaded is not run
        assert await store.list_runs() == [run.id]

    @pytest.mark.asyncio
    async def test_records_are_copies(self, run: Run) -> None:
        """Test later mutation is only visible after the next save."""
        store = InMemoryRunStore()
        await store.save_run(run)

        run.status = RunStatus.RUNNING
        assert (await store.get_run(run.id)).status == RunStatus.PENDING

        await store.save_run(run)
        assert (await store.get_run(run.id)).status == RunStatus.RUNNING
        assert store.writes == 2

    @pytest.mark.asyncio
    async def test_step_runs_upserted_in_creation_order(self, run: Run) -> None:
        """Test step runs are upserted by id and keep their order."""
        store = InMemoryRunStore()
        first = StepRun(run_id=run.id, step_key="a", step_type="AGENT")
        second = StepRun(run_id=run.id, step_key="b", step_type="DATA")
        await store.save_step_run(first)
        await store.save_step_run(second)

        first.status = StepRunStatus.SUCCEEDED
        await store.save_step_run(first)

        records = await store.list_step_runs(run.id)
        assert [r.step_key for r in records] == ["a", "b"]
        assert records[0].status == StepRunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_unknown_run(self) -> None:
        """Test lookups of unknown runs."""
        store = InMemoryRunStore()
        assert await store.get_run("missing") is None
        assert await store.list_step_runs("missing") == []


class TestJsonFileRunStore:
    """Test suite for JsonFileRunStore."""

    @pytest.mark.asyncio
    async def test_round_trip(self, run: Run, tmp_path: Path) -> None:
        """Test a run and its steps survive a new store instance."""
        store = JsonFileRunStore(str(tmp_path))
        run.status = RunStatus.FAILED
        run.error = RunError(code="HTTP_404", message="not found", step_key="send")
        await store.save_run(run)
        step_run = StepRun(
            run_id=run.id,
            step_key="send",
            step_type="API",
            status=StepRunStatus.FAILED,
            attempt=2,
        )
        await store.save_step_run(step_run)

        reopened = JsonFileRunStore(str(tmp_path))
        loaded = await reopened.get_run(run.id)
        records = await reopened.list_step_runs(run.id)

        assert loaded == run
        assert loaded.error.step_key == "send"
        assert records == [step_run]
        assert await reopened.list_runs() == [run.id]

    @pytest.mark.asyncio
    async def test_file_io_runs_off_the_event_loop(
        self, run: Run, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test reads and writes happen in executor threads."""
        store = JsonFileRunStore(str(tmp_path))
        loop_thread = threading.get_ident()
        threads: List[int] = []
        read, write = store._read, store._write

        def tracking_read(run_id: str) -> Any:
            threads.append(threading.get_ident())
            return read(run_id)

        def tracking_write(run_id: str, document: Dict[str, Any]) -> None:
            threads.append(threading.get_ident())
            write(run_id, document)

        monkeypatch.setattr(store, "_read", tracking_read)
        monkeypatch.setattr(store, "_write", tracking_write)

        await store.save_run(run)
        await store.save_step_run(StepRun(run_id=run.id, step_key="a", step_type="DATA"))
        await store.get_run(run.id)

        assert threads
        assert loop_thread not in threads

    @pytest.mark.asyncio
    async def test_concurrent_step_saves(self, run: Run, tmp_path: Path) -> None:
        """Test concurrent saves to one run document are not lost."""
        store = JsonFileRunStore(str(tmp_path))
        step_runs = [
            StepRun(run_id=run.id, step_key=f"s{i}", step_type="DATA") for i in range(10)
        ]

        await asyncio.gather(store.save_run(run), *(store.save_step_run(s) for s in step_runs))

        records = await store.list_step_runs(run.id)
        assert sorted(r.step_key for r in records) == sorted(s.step_key for s in step_runs)
        assert await store.get_run(run.id) == run

    @pytest.mark.asyncio
    async def test_document_layout(self, run: Run, tmp_path: Path) -> None:
        """Test one JSON document per run holding run and step runs."""
        store = JsonFileRunStore(str(tmp_path))
        await store.save_step_run(StepRun(run_id=run.id, step_key="a", step_type="DATA"))
        await store.save_run(run)

        document = json.loads((tmp_path / f"{run.id}.json").read_text(encoding="utf-8"))
        assert document["run"]["id"] == run.id
        assert document["run"]["status"] == "PENDING"
        assert [r["step_key"] for r in document["step_runs"]] == ["a"]

    @pytest.mark.asyncio
    async def test_step_saved_before_run(self, run: Run, tmp_path: Path) -> None:
        """Test a document with only step runs has no run yet."""
        store = JsonFileRunStore(str(tmp_path))
        await store.save_step_run(StepRun(run_id=run.id, step_key="a", step_type="DATA"))

        assert await store.get_run(run.id) is None
        assert len(await store.list_step_runs(run.id)) == 1

    @pytest.mark.asyncio
    async def test_corrupt_document(self, tmp_path: Path) -> None:
        """Test an unreadable document raises StoreError."""
        store = JsonFileRunStore(str(tmp_path))
        (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StoreError, match="load failed for run 'bad'"):
            await store.get_run("bad")

    @pytest.mark.asyncio
    async def test_delete_run(self, run: Run, tmp_path: Path) -> None:
        """Test deleting a stored run."""
        store = JsonFileRunStore(str(tmp_path))
        await store.save_run(run)

        assert store.delete_run(run.id) is True
        assert store.delete_run(run.id) is False
        assert await store.get_run(run.id) is None


class TestRunRecords:
    """Test suite for run record helpers."""

    def test_to_json(self, run: Run) -> None:
        """Test records export as JSON with ISO timestamps."""
        data = json.loads(run.to_json())
        assert data["status"] == "PENDING"
        assert data["input"] == {"company": "Acme"}
        assert "T" in data["created_at"]

    def test_duration(self, run: Run) -> None:
        """Test duration is None until the run has finished."""
        assert run.duration_ms is None
        assert run.is_terminal is False

    def test_status_report_counts_latest_attempts(self, run: Run) -> None:
        """Test progress counts only the latest attempt of each step."""
        records = [
            StepRun(run_id=run.id, step_key="a", step_type="AGENT", status=StepRunStatus.FAILED),
            StepRun(
                run_id=run.id,
                step_key="a",
                step_type="AGENT",
                status=StepRunStatus.SUCCEEDED,
                attempt=2,
            ),
            StepRun(run_id=run.id, step_key="b", step_type="DATA", status=StepRunStatus.SKIPPED),
            StepRun(run_id=run.id, step_key="c", step_type="DATA"),
        ]

        report = RunStatusReport.build(run, records)

        assert report.progress.model_dump() == {
            "total": 3,
            "completed": 1,
            "failed": 0,
            "skipped": 1,
            "pending": 1,
        }
        assert report.latest_attempt("a").attempt == 2
        assert report.latest_attempt("missing") is None

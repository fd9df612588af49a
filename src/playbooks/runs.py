"""Run and StepRun records - the persisted outcome of every execution."""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunStatus(str, Enum):
    """Lifecycle of a run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepRunStatus(str, Enum):
    """Lifecycle of a single step attempt."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StepRunStatus.SUCCEEDED,
            StepRunStatus.FAILED,
            StepRunStatus.SKIPPED,
        )


class RunError(BaseModel):
    """Why a run did not succeed."""

    code: str
    message: str
    step_key: Optional[str] = None


class StepError(BaseModel):
    """Why a step attempt failed."""

    code: str
    message: str
    retryable: bool = False


class RecordModel(BaseModel):
    """Base for persisted records with JSON export helpers."""

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the record to a dictionary for JSON serialization.

        Returns:
            Dictionary representation with ISO timestamps
        """
        return self.model_dump(mode="json")

    def to_json(self, indent: Optional[int] = 2) -> str:
        """
        Export the record as a JSON string.

        Args:
            indent: Number of spaces for indentation (None for compact JSON)
        """
        return json.dumps(self.to_dict(), indent=indent)


class Run(RecordModel):
    """One execution of one playbook version."""

    id: str = Field(default_factory=new_id)
    playbook_id: str
    playbook_version: int = 1
    org_id: str
    status: RunStatus = RunStatus.PENDING
    input: Any = None
    output: Any = None
    error: Optional[RunError] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class StepRun(RecordModel):
    """One attempt of one step within a run."""

    id: str = Field(default_factory=new_id)
    run_id: str
    step_key: str
    step_type: str
    status: StepRunStatus = StepRunStatus.PENDING
    attempt: int = Field(default=1, ge=1)
    input: Any = None
    output: Any = None
    error: Optional[StepError] = None
    skip_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class RunProgress(BaseModel):
    """Step counts for a run, counting the latest attempt of each step."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0


class RunStatusReport(RecordModel):
    """Snapshot of a run and its step attempts."""

    run: Run
    step_runs: List[StepRun] = Field(default_factory=list)
    progress: RunProgress = Field(default_factory=RunProgress)

    @classmethod
    def build(cls, run: Run, step_runs: List[StepRun]) -> "RunStatusReport":
        latest: Dict[str, StepRun] = {}
        for step_run in step_runs:
            current = latest.get(step_run.step_key)
            if current is None or step_run.attempt >= current.attempt:
                latest[step_run.step_key] = step_run

        progress = RunProgress(total=len(latest))
        for step_run in latest.values():
            if step_run.status == StepRunStatus.SUCCEEDED:
                progress.completed += 1
            elif step_run.status == StepRunStatus.FAILED:
                progress.failed += 1
            elif step_run.status == StepRunStatus.SKIPPED:
                progress.skipped += 1
            else:
                progress.pending += 1

        return cls(run=run, step_runs=step_runs, progress=progress)

    def latest_attempt(self, step_key: str) -> Optional[StepRun]:
        """The most recent attempt of ``step_key``, if any."""
        attempts = [s for s in self.step_runs if s.step_key == step_key]
        return max(attempts, key=lambda s: s.attempt) if attempts else None

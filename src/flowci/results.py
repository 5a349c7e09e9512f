# results.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import ErrorKind
from .model import JobInstance, JobStatus, StepStatus


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"  # document/graph error, nothing ran


@dataclass
class StepResult:
    name: str
    status: StepStatus
    id: Optional[str] = None
    exit_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    output: str = ""
    hint: Optional[str] = None
    continue_on_error: bool = False
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def masked(self) -> bool:
        """A failure that continue-on-error keeps from failing the job."""
        return self.status is StepStatus.FAILED and self.continue_on_error

    @property
    def conclusion(self) -> StepStatus:
        return StepStatus.SUCCEEDED if self.masked else self.status


@dataclass
class InstanceResult:
    index: int
    job: str
    key: str
    matrix: Dict[str, Any]
    status: JobStatus
    required: bool = True
    steps: List[StepResult] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def for_instance(cls, inst: JobInstance, status: JobStatus, **kwargs) -> "InstanceResult":
        return cls(
            index=inst.index,
            job=inst.name,
            key=inst.key,
            matrix=dict(inst.matrix),
            status=status,
            required=inst.required,
            **kwargs,
        )


class Aggregator:
    """
    Collects terminal instance results.

    Merges go through one lock so concurrent completions never interleave;
    `snapshot()` may be called from any thread mid-run.
    """

    def __init__(self, instances: List[JobInstance]):
        self._lock = threading.Lock()
        self._instances = {i.index: i for i in instances}
        self._results: Dict[int, InstanceResult] = {}
        self.started_at = now_utc()
        self.finished_at: Optional[datetime] = None

    def record(self, result: InstanceResult) -> bool:
        """
        Merge a terminal result and set the instance's status. Only the thread
        owning the instance calls this. Returns False if the instance already
        had a result, in which case nothing changes.
        """
        if not result.status.terminal:
            raise ValueError(f"{result.key}: cannot record non-terminal status {result.status.value}")
        with self._lock:
            if result.index in self._results:
                return False
            self._results[result.index] = result
            self._instances[result.index].status = result.status
            if len(self._results) == len(self._instances):
                self.finished_at = now_utc()
            return True

    def get(self, index: int) -> Optional[InstanceResult]:
        with self._lock:
            return self._results.get(index)

    def done(self) -> bool:
        with self._lock:
            return len(self._results) == len(self._instances)

    def snapshot(self) -> Tuple[InstanceResult, ...]:
        """Terminal results so far, in declaration order (job, then matrix)."""
        with self._lock:
            return tuple(self._results[i] for i in sorted(self._results))

    def job_result(self, name: str) -> Optional[str]:
        """
        Combined `needs.<job>.result` over all instances of a job, or None
        while any of them is still running.
        """
        with self._lock:
            indices = [i for i, inst in self._instances.items() if inst.name == name]
            if any(i not in self._results for i in indices):
                return None
            statuses = [self._results[i].status for i in indices]
        if JobStatus.FAILED in statuses:
            return "failure"
        if any(s in (JobStatus.CANCELLED, JobStatus.CANCELLED_TIMEOUT) for s in statuses):
            return "cancelled"
        if all(s is JobStatus.SKIPPED for s in statuses):
            return "skipped"
        return "success"

    def outcome(self) -> Outcome:
        ok = (JobStatus.SUCCEEDED, JobStatus.SKIPPED)
        for r in self.snapshot():
            if r.required and r.status not in ok:
                return Outcome.FAILURE
        return Outcome.SUCCESS

    def report(self, *, workflow: Optional[str] = None, event: Optional[Dict[str, Any]] = None) -> "RunReport":
        return RunReport(
            workflow=workflow,
            event=event or {},
            outcome=self.outcome(),
            started_at=self.started_at,
            finished_at=self.finished_at,
            jobs=[JobReport.from_result(r) for r in self.snapshot()],
        )


# ----------------------------------------------------------------------
# Machine-readable report
# ----------------------------------------------------------------------

class StepReport(BaseModel):
    name: str
    id: Optional[str] = None
    status: StepStatus
    conclusion: StepStatus
    exit_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    output: str = ""
    warnings: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobReport(BaseModel):
    job: str
    key: str
    matrix: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    required: bool = True
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[StepReport] = Field(default_factory=list)

    @classmethod
    def from_result(cls, r: InstanceResult) -> "JobReport":
        return cls(
            job=r.job,
            key=r.key,
            matrix=r.matrix,
            status=r.status,
            required=r.required,
            error_kind=r.error_kind,
            message=r.message,
            started_at=r.started_at,
            finished_at=r.finished_at,
            steps=[
                StepReport(
                    name=s.name,
                    id=s.id,
                    status=s.status,
                    conclusion=s.conclusion,
                    exit_code=s.exit_code,
                    error_kind=s.error_kind,
                    message=s.message,
                    output=s.output,
                    warnings=s.warnings,
                    started_at=s.started_at,
                    finished_at=s.finished_at,
                )
                for s in r.steps
            ],
        )


class RunReport(BaseModel):
    workflow: Optional[str] = None
    event: Dict[str, Any] = Field(default_factory=dict)
    outcome: Outcome
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    jobs: List[JobReport] = Field(default_factory=list)

    def statuses(self) -> Dict[str, str]:
        """key -> status, the view the CLI summary prints."""
        return {j.key: j.status.value for j in self.jobs}

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(indent=indent)

    @classmethod
    def from_json(cls, data: str | bytes) -> "RunReport":
        return cls.model_validate_json(data)

    @classmethod
    def aborted(cls, error: str, *, workflow: Optional[str] = None, event: Optional[Dict[str, Any]] = None) -> "RunReport":
        now = now_utc()
        return cls(workflow=workflow, event=event or {}, outcome=Outcome.ABORTED, error=error, started_at=now, finished_at=now)

# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional, Tuple

from .expr import Condition


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNABLE = "runnable"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    CANCELLED_TIMEOUT = "cancelled_timeout"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def result(self) -> str:
        """The value exposed to expressions as `needs.<job>.result`."""
        if self is JobStatus.SUCCEEDED:
            return "success"
        if self is JobStatus.FAILED:
            return "failure"
        if self in (JobStatus.CANCELLED, JobStatus.CANCELLED_TIMEOUT):
            return "cancelled"
        return "skipped"


_TERMINAL = {
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.SKIPPED,
    JobStatus.CANCELLED,
    JobStatus.CANCELLED_TIMEOUT,
}


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def result(self) -> str:
        return {
            StepStatus.SUCCEEDED: "success",
            StepStatus.FAILED: "failure",
            StepStatus.CANCELLED: "cancelled",
        }.get(self, "skipped")


@dataclass(frozen=True)
class Trigger:
    """One event kind from `on:`, optionally filtered by branch globs."""
    event: str
    branches: Optional[Tuple[str, ...]] = None
    branches_ignore: Optional[Tuple[str, ...]] = None

    def matches(self, event: str, branch: str | None) -> bool:
        if event != self.event:
            return False
        if branch is None:
            return True
        if self.branches is not None and not any(fnmatch(branch, p) for p in self.branches):
            return False
        if self.branches_ignore is not None and any(fnmatch(branch, p) for p in self.branches_ignore):
            return False
        return True


@dataclass(frozen=True)
class StepSpec:
    """
    A single step inside a job: either a shell command (`run`) or a named
    external action (`uses`, e.g. `actions/checkout@v4`).
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    inputs: Dict[str, str] = field(default_factory=dict)  # `with:`
    id: Optional[str] = None
    condition: Optional[Condition] = None
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    cwd: str | None = None  # `working-directory:`

    @property
    def kind(self) -> str:
        return "run" if self.run is not None else "uses"

    @property
    def ref(self) -> str:
        return self.run if self.run is not None else (self.uses or "")


@dataclass(frozen=True)
class Matrix:
    axes: Dict[str, Tuple[Any, ...]]
    include: Tuple[Dict[str, Any], ...] = ()
    exclude: Tuple[Dict[str, Any], ...] = ()


@dataclass
class JobSpec:
    """A declared job: steps + dependencies + execution policy."""
    name: str
    steps: List[StepSpec]
    needs: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    condition: Optional[Condition] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    matrix: Optional[Matrix] = None
    runs_on: Optional[str] = None

    @property
    def max_duration(self) -> Optional[float]:
        """Max duration in seconds, if any."""
        if self.timeout_minutes is None:
            return None
        return self.timeout_minutes * 60.0


@dataclass
class WorkflowDocument:
    triggers: Tuple[Trigger, ...]
    jobs: Dict[str, JobSpec]  # declaration order
    env: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None

    def is_triggered_by(self, event: str, branch: str | None = None) -> bool:
        return any(t.matches(event, branch) for t in self.triggers)


@dataclass
class JobInstance:
    """
    One concrete matrix combination of a job.

    `steps`, `env` and `condition` already have the combination's matrix
    values substituted in. `index` is the global declaration ordinal
    (job order, then matrix order) used for tie-breaking and reporting.
    """
    job: JobSpec
    index: int
    matrix: Dict[str, Any]
    steps: List[StepSpec]
    env: Dict[str, str]
    condition: Optional[Condition] = None
    status: JobStatus = JobStatus.PENDING

    @property
    def key(self) -> str:
        if not self.job.matrix:
            return self.job.name
        values = ", ".join(str(v) for v in self.matrix.values())
        return f"{self.job.name} ({values})"

    @property
    def name(self) -> str:
        return self.job.name

    @property
    def required(self) -> bool:
        return not self.job.continue_on_error

# context.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import EngineConfig
from .dag import ExecutionPlan
from .executor import StepExecutor
from .expr import Scope
from .model import JobInstance, WorkflowDocument
from .results import Aggregator
from .ui.console import Console


@dataclass(frozen=True)
class EventContext:
    """The triggering event: kind (push, pull_request, ...) and branch."""
    kind: str = "push"
    branch: Optional[str] = None

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}" if self.branch else ""

    def as_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "branch": self.branch}


@dataclass
class RunContext:
    """
    Everything one run needs, passed explicitly to the scheduler and the
    step runner: document, plan, live results, config, event, executor and
    console.
    """
    document: WorkflowDocument
    plan: ExecutionPlan
    executor: StepExecutor
    config: EngineConfig = field(default_factory=EngineConfig)
    event: EventContext = field(default_factory=EventContext)
    console: Console = field(default_factory=Console)
    results: Optional[Aggregator] = None

    def __post_init__(self):
        if self.results is None:
            self.results = Aggregator(self.plan.instances)

    def scope_for(self, inst: JobInstance, *, env: Optional[Dict[str, str]] = None) -> Scope:
        """Expression scope for an instance: matrix, needs results, env, event."""
        needs: Dict[str, Dict[str, Any]] = {}
        for name in inst.job.needs:
            result = self.results.job_result(name)
            if result is not None:
                needs[name] = {"result": result}
        return Scope(
            contexts={
                "matrix": dict(inst.matrix),
                "needs": needs,
                "steps": {},
                "env": dict(env if env is not None else {**self.document.env, **inst.env}),
                "github": {
                    "event_name": self.event.kind,
                    "ref": self.event.ref,
                    "ref_name": self.event.branch or "",
                },
            }
        )

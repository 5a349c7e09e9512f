from .loader import parse, load_workflow
from .dag import build, ExecutionPlan
from .runner import run_plan
from .context import RunContext, EventContext
from .config import EngineConfig
from .model import WorkflowDocument, JobSpec, StepSpec, JobInstance, JobStatus, StepStatus
from .results import Aggregator, RunReport, Outcome
from .errors import DocumentError, ParseError, GraphError, StepExecutionError, ExecutorUnavailable, TemplateError, ErrorKind

__all__ = [
    "parse", "load_workflow", "build", "ExecutionPlan", "run_plan", "RunContext", "EventContext",
    "EngineConfig", "WorkflowDocument", "JobSpec", "StepSpec", "JobInstance", "JobStatus", "StepStatus",
    "Aggregator", "RunReport", "Outcome", "DocumentError", "ParseError", "GraphError",
    "StepExecutionError", "ExecutorUnavailable", "TemplateError", "ErrorKind",
]

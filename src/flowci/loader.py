# loader.py
"""
Workflow document loading.

YAML text (or an already-decoded mapping) -> strict pydantic schema ->
`WorkflowDocument`. Every problem is reported as a DocumentError with a
location; nothing is coerced silently.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import DocumentError
from .expr import Condition, ExpressionSyntaxError
from .model import JobSpec, Matrix, StepSpec, Trigger, WorkflowDocument

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# YAML
# ----------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of keeping the last."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _value_node in node.value:
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                mark = key_node.start_mark
                raise DocumentError(
                    f"duplicate key {key!r}",
                    location=f"line {mark.line + 1}, column {mark.column + 1}",
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _load_yaml(text: str) -> Any:
    try:
        return yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark
        location = f"line {mark.line + 1}, column {mark.column + 1}" if mark else "<document>"
        raise DocumentError(f"invalid YAML: {e.problem}", location=location) from e
    except yaml.YAMLError as e:
        raise DocumentError(f"invalid YAML: {e}") from e


# ----------------------------------------------------------------------
# Strict schema
# ----------------------------------------------------------------------

def _scalar_text(value: Any) -> str:
    # str/int/bool are unambiguous; floats are not (3.10 would become "3.1")
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        raise ValueError(f"float value {value!r} is ambiguous, quote it")
    raise ValueError(f"expected a string, got {type(value).__name__}")


def _string_map(value: Any) -> Any:
    if value is None:
        return {}
    if not isinstance(value, dict):
        return value
    return {str(k): _scalar_text(v) for k, v in value.items()}


def _string_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


def _condition_text(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class _Schema(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)


class _RawStep(_Schema):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @field_validator("with_", "env", mode="before")
    @classmethod
    def string_maps(cls, v):
        return _string_map(v)

    @field_validator("if_", mode="before")
    @classmethod
    def condition_text(cls, v):
        return _condition_text(v)

    @model_validator(mode="after")
    def one_executable(self):
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class _RawStrategy(_Schema):
    matrix: Optional[Dict[str, Any]] = None


class _RawJob(_Schema):
    needs: List[str] = Field(default_factory=list)
    runs_on: List[str] = Field(default_factory=list, alias="runs-on")
    steps: List[_RawStep] = Field(default_factory=list)
    strategy: Optional[_RawStrategy] = None
    env: Dict[str, str] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    @field_validator("needs", "runs_on", mode="before")
    @classmethod
    def string_lists(cls, v):
        return _string_list(v)

    @field_validator("env", mode="before")
    @classmethod
    def string_map(cls, v):
        return _string_map(v)

    @field_validator("if_", mode="before")
    @classmethod
    def condition_text(cls, v):
        return _condition_text(v)


class _RawBranchFilter(_Schema):
    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = Field(default=None, alias="branches-ignore")

    @field_validator("branches", "branches_ignore", mode="before")
    @classmethod
    def string_lists(cls, v):
        return [v] if isinstance(v, str) else v


class _RawWorkflow(_Schema):
    name: Optional[str] = None
    on: Any
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, _RawJob]

    @field_validator("on")
    @classmethod
    def trigger_spec(cls, v):
        """
        Normalize `on:` to an event name, a list of names, or a mapping of
        event name -> branch filter (None when the event has no filter).
        Event payloads other than a mapping (e.g. `schedule: [{cron: ...}]`)
        are kept as unfiltered triggers.
        """
        if isinstance(v, str):
            return v
        if isinstance(v, list) and all(isinstance(e, str) for e in v):
            return v
        if isinstance(v, dict):
            triggers: Dict[str, Optional[_RawBranchFilter]] = {}
            for event, payload in v.items():
                if not isinstance(payload, dict):
                    triggers[str(event)] = None
                    continue
                try:
                    triggers[str(event)] = _RawBranchFilter.model_validate(payload)
                except ValidationError as e:
                    first = e.errors()[0]
                    raise ValueError(f"{event}.{_format_loc(first['loc'])}: {first['msg']}") from e
            return triggers
        raise ValueError("expected an event name, a list of event names or a mapping of events")

    @field_validator("env", mode="before")
    @classmethod
    def string_map(cls, v):
        return _string_map(v)

    @field_validator("jobs")
    @classmethod
    def jobs_not_empty(cls, v):
        if not v:
            raise ValueError("at least one job is required")
        return v


def _format_loc(loc: Tuple[Any, ...]) -> str:
    out = ""
    for part in loc:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += ("." if out else "") + str(part)
    return out or "<document>"


# ----------------------------------------------------------------------
# Conversion to the domain model
# ----------------------------------------------------------------------

def _parse_condition(source: Optional[str], location: str) -> Optional[Condition]:
    if source is None:
        return None
    try:
        return Condition.parse(source)
    except ExpressionSyntaxError as e:
        raise DocumentError(str(e), location=location) from e


def _matrix_value(value: Any, location: str) -> Any:
    if isinstance(value, float) or not isinstance(value, (str, int, bool)):
        raise DocumentError(
            f"matrix values must be strings, integers or booleans, got {value!r}",
            location=location,
        )
    return value


def _combination_list(value: Any, location: str) -> Tuple[Dict[str, Any], ...]:
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise DocumentError("expected a list of mappings", location=location)
    return tuple(
        {str(k): _matrix_value(v, f"{location}[{i}].{k}") for k, v in entry.items()}
        for i, entry in enumerate(value)
    )


def _parse_matrix(raw: Dict[str, Any], location: str) -> Matrix:
    axes: Dict[str, Tuple[Any, ...]] = {}
    include: Tuple[Dict[str, Any], ...] = ()
    exclude: Tuple[Dict[str, Any], ...] = ()
    for axis, values in raw.items():
        where = f"{location}.{axis}"
        if axis == "include":
            include = _combination_list(values, where)
            continue
        if axis == "exclude":
            exclude = _combination_list(values, where)
            continue
        if not isinstance(values, list):
            raise DocumentError("matrix axis must be a list of values", location=where)
        if not values:
            raise DocumentError(f"matrix axis '{axis}' has no values", location=where)
        axes[axis] = tuple(_matrix_value(v, f"{where}[{i}]") for i, v in enumerate(values))
    if not axes and not include:
        raise DocumentError("matrix declares no axes", location=location)
    return Matrix(axes=axes, include=include, exclude=exclude)


def _default_step_name(raw: _RawStep) -> str:
    if raw.uses is not None:
        return f"Run {raw.uses}"
    first_line = (raw.run or "").strip().splitlines()
    return f"Run {first_line[0]}" if first_line else "Run"


def _convert_step(raw: _RawStep, location: str) -> StepSpec:
    return StepSpec(
        name=raw.name or _default_step_name(raw),
        run=raw.run,
        uses=raw.uses,
        inputs=dict(raw.with_),
        id=raw.id,
        condition=_parse_condition(raw.if_, f"{location}.if"),
        env=dict(raw.env),
        continue_on_error=raw.continue_on_error,
        cwd=raw.working_directory,
    )


def _convert_job(name: str, raw: _RawJob) -> JobSpec:
    location = f"jobs.{name}"
    if not raw.steps:
        raise DocumentError(f"job '{name}' has no steps", location=f"{location}.steps")

    steps: List[StepSpec] = []
    ids = set()
    for i, raw_step in enumerate(raw.steps):
        step = _convert_step(raw_step, f"{location}.steps[{i}]")
        if step.id is not None:
            if step.id in ids:
                raise DocumentError(f"duplicate step id '{step.id}'", location=f"{location}.steps[{i}].id")
            ids.add(step.id)
        steps.append(step)

    matrix = None
    if raw.strategy is not None and raw.strategy.matrix is not None:
        matrix = _parse_matrix(raw.strategy.matrix, f"{location}.strategy.matrix")

    return JobSpec(
        name=name,
        steps=steps,
        needs=list(raw.needs),
        env=dict(raw.env),
        condition=_parse_condition(raw.if_, f"{location}.if"),
        continue_on_error=raw.continue_on_error,
        timeout_minutes=raw.timeout_minutes,
        matrix=matrix,
        runs_on=", ".join(raw.runs_on) or None,
    )


def _convert_triggers(on: Any) -> Tuple[Trigger, ...]:
    if isinstance(on, str):
        return (Trigger(event=on),)
    if isinstance(on, list):
        return tuple(Trigger(event=e) for e in on)
    triggers = []
    for event, flt in on.items():
        if flt is None:
            triggers.append(Trigger(event=event))
            continue
        triggers.append(
            Trigger(
                event=event,
                branches=tuple(flt.branches) if flt.branches is not None else None,
                branches_ignore=tuple(flt.branches_ignore) if flt.branches_ignore is not None else None,
            )
        )
    return tuple(triggers)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def parse(document: Union[str, Mapping[str, Any]]) -> WorkflowDocument:
    """
    Parse a workflow document into a validated WorkflowDocument.

    Raises:
      DocumentError (a.k.a. ParseError) with location + message.
    """
    data = _load_yaml(document) if isinstance(document, str) else document
    if not isinstance(data, Mapping):
        raise DocumentError("workflow document must be a mapping")

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)
    for required in ("on", "jobs"):
        if required not in data:
            raise DocumentError(f"missing required key '{required}'")

    try:
        raw = _RawWorkflow.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        more = f" (and {e.error_count() - 1} more)" if e.error_count() > 1 else ""
        raise DocumentError(f"{first['msg']}{more}", location=_format_loc(first["loc"])) from e

    jobs: Dict[str, JobSpec] = {}
    for name, raw_job in raw.jobs.items():
        jobs[name] = _convert_job(name, raw_job)

    for job in jobs.values():
        for dep in job.needs:
            if dep not in jobs:
                raise DocumentError(
                    f"job '{job.name}' needs unknown job '{dep}'. Known jobs: {sorted(jobs)}",
                    location=f"jobs.{job.name}.needs",
                )

    doc = WorkflowDocument(
        triggers=_convert_triggers(raw.on),
        jobs=jobs,
        env=dict(raw.env),
        name=raw.name,
    )
    logger.debug(f"Parsed workflow {doc.name or '<unnamed>'}: {len(jobs)} job(s)")
    return doc


def load_workflow(path: str | Path) -> WorkflowDocument:
    """Load and parse a workflow document from a YAML file."""
    wf_path = Path(path).expanduser()
    if not wf_path.is_file():
        raise DocumentError("workflow file not found", location=str(wf_path))
    return parse(wf_path.read_text(encoding="utf-8"))

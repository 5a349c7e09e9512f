# steps.py
"""
Step Runner: executes one job instance's steps, in order, on the calling
worker thread.

Rules:
  - a step whose condition is false is SKIPPED and never affects the job
  - a failing step stops the job (remaining steps SKIPPED, job FAILED),
    unless it has continue-on-error: then the failure is masked and the job
    outcome is the worst *unmasked* step result
  - a cancel signal stops at the current step (CANCELLED), later steps are
    SKIPPED and the job is CANCELLED
  - env = global <- job <- step, every value rendered through templates;
    an unresolved reference fails that step (UNRESOLVED_TEMPLATE)
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .context import RunContext
from .errors import ErrorKind, StepExecutionError, TemplateError
from .expr import Scope
from .model import JobInstance, JobStatus, StepSpec, StepStatus
from .results import InstanceResult, StepResult, now_utc
from .template import render, render_mapping

logger = logging.getLogger(__name__)


def _layered_env(ctx: RunContext, inst: JobInstance) -> Dict[str, str]:
    """Global env, then job env on top. Job values may reference global ones."""
    scope = ctx.scope_for(inst, env={})
    global_env = render_mapping(ctx.document.env, scope)
    scope = ctx.scope_for(inst, env=global_env)
    return {**global_env, **render_mapping(inst.env, scope)}


def _with_steps(scope: Scope, steps_ctx: Dict[str, Dict[str, str]]) -> Scope:
    scope.contexts["steps"] = dict(steps_ctx)
    return scope


def _render_step(step: StepSpec, scope: Scope) -> Tuple[StepSpec, Dict[str, str]]:
    """Rendered copy of the step plus its own env layer."""
    step_env = render_mapping(step.env, scope)
    rendered = replace(
        step,
        run=render(step.run, scope) if step.run is not None else None,
        inputs=render_mapping(step.inputs, scope),
        cwd=render(step.cwd, scope) if step.cwd is not None else None,
    )
    return rendered, step_env


def run_step(
    inst: JobInstance,
    step: StepSpec,
    ctx: RunContext,
    *,
    base_env: Dict[str, str],
    env_error: Optional[TemplateError],
    steps_ctx: Dict[str, Dict[str, str]],
    cancel: threading.Event,
) -> StepResult:
    result = StepResult(name=step.name, id=step.id, status=StepStatus.PENDING, continue_on_error=step.continue_on_error)
    scope = _with_steps(ctx.scope_for(inst, env=base_env), steps_ctx)

    if step.condition is not None:
        run_it = step.condition.evaluate(scope, where=f"{inst.key} / {step.name}")
        result.warnings = [f"unknown identifier '{name}'" for name in scope.unknown]
        if not run_it:
            result.status = StepStatus.SKIPPED
            ctx.console.print_step_skipped(inst.key, step.name)
            return result

    result.started_at = now_utc()
    ctx.console.print_step(inst.key, step.name)
    try:
        if env_error is not None:
            raise env_error
        rendered, step_env = _render_step(step, scope)
        exec_result = ctx.executor.invoke(rendered, {**base_env, **step_env}, cancel)
    except TemplateError as e:
        result.status = StepStatus.FAILED
        result.error_kind = ErrorKind.UNRESOLVED_TEMPLATE
        result.message = e.message
    except StepExecutionError as e:
        result.status = StepStatus.FAILED
        result.error_kind = e.kind
        result.message = e.message
        result.exit_code = e.exit_code
    else:
        result.exit_code = exec_result.exit_code
        result.output = exec_result.output
        result.hint = exec_result.hint
        if exec_result.cancelled:
            result.status = StepStatus.CANCELLED
            result.error_kind = ErrorKind.CANCELLED
            result.message = "cancelled"
        elif exec_result.exit_code != 0:
            result.status = StepStatus.FAILED
            result.error_kind = ErrorKind.NONZERO_EXIT
            result.message = f"exited with code {exec_result.exit_code}"
        else:
            result.status = StepStatus.SUCCEEDED
    result.finished_at = now_utc()

    if result.status is StepStatus.FAILED:
        ctx.console.print_step_failure(
            inst.key,
            step.name,
            result.message or "",
            exit_code=result.exit_code,
            hint=result.hint,
            output=result.output,
        )
        if step.continue_on_error:
            ctx.console.print_info(f"[{inst.key}] continue-on-error: carrying on")
    return result


def run_instance(inst: JobInstance, ctx: RunContext, cancel: threading.Event) -> InstanceResult:
    """Run every step of `inst` in declared order and return its terminal result."""
    started = now_utc()
    inst.status = JobStatus.RUNNING
    ctx.console.print_job_start(inst.key)

    try:
        base_env = _layered_env(ctx, inst)
        env_error = None
    except TemplateError as e:
        base_env, env_error = {}, e

    steps: List[StepResult] = []
    steps_ctx: Dict[str, Dict[str, str]] = {}
    failed: Optional[StepResult] = None
    cancelled = False

    for step in inst.steps:
        if failed is not None or cancelled or cancel.is_set():
            cancelled = cancelled or (failed is None and cancel.is_set())
            steps.append(StepResult(name=step.name, id=step.id, status=StepStatus.SKIPPED, continue_on_error=step.continue_on_error))
            continue

        res = run_step(
            inst,
            step,
            ctx,
            base_env=base_env,
            env_error=env_error,
            steps_ctx=steps_ctx,
            cancel=cancel,
        )
        steps.append(res)
        if step.id is not None:
            steps_ctx[step.id] = {"outcome": res.status.result, "conclusion": res.conclusion.result}

        if res.status is StepStatus.CANCELLED:
            cancelled = True
        elif res.status is StepStatus.FAILED and not res.masked:
            failed = res

    if cancelled:
        status, kind, message = JobStatus.CANCELLED, ErrorKind.CANCELLED, "cancelled"
    elif failed is not None:
        status, kind, message = JobStatus.FAILED, failed.error_kind, f"step '{failed.name}': {failed.message}"
    else:
        status, kind, message = JobStatus.SUCCEEDED, None, None

    return InstanceResult.for_instance(
        inst,
        status,
        steps=steps,
        error_kind=kind,
        message=message,
        started_at=started,
        finished_at=now_utc(),
    )

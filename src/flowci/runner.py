# runner.py
from __future__ import annotations

import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Dict, List, Optional, Set

from .context import RunContext
from .errors import ErrorKind
from .model import JobInstance, JobStatus
from .results import InstanceResult, RunReport, now_utc
from .steps import run_instance

logger = logging.getLogger(__name__)


class _Scheduler:
    """
    Drives one plan to completion.

    Ownership: this (calling) thread owns every instance that has not been
    dispatched yet and is the only one to move it out of PENDING/RUNNABLE.
    Once dispatched, the worker owns it and records its own terminal result,
    except when the worker ignores a cancel signal past the grace period:
    then the scheduler records CANCELLED_TIMEOUT and whatever the worker
    records later is dropped by the aggregator.
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.plan = ctx.plan
        self.config = ctx.config
        self.workers = max(1, ctx.config.workers)

        self.remaining: Dict[int, Set[int]] = {i: set(d) for i, d in self.plan.deps.items()}
        self.not_started: Set[int] = {i.index for i in self.plan.instances}
        self.ready: List[int] = []  # heap of RUNNABLE indices, declaration order first

        self.in_flight: Dict[Future, int] = {}
        self.abandoned: Set[Future] = set()
        self.cancels: Dict[int, threading.Event] = {}
        self.deadlines: Dict[int, float] = {}  # per-job max-duration
        self.grace: Dict[int, float] = {}      # cancel signalled -> force after this
        self.timed_out: Set[int] = set()
        self.started: Dict[int, datetime] = {}  # dispatch time

        self.stopping = False
        self.stop_reason: Optional[str] = None
        self.pipeline_deadline = (
            time.monotonic() + self.config.timeout if self.config.timeout else None
        )

    # ------------------------------------------------------------------
    # state transitions for instances this thread owns
    # ------------------------------------------------------------------

    def _inst(self, idx: int) -> JobInstance:
        return self.plan.instances[idx]

    def _finish_unstarted(self, idx: int, status: JobStatus, message: str) -> None:
        inst = self._inst(idx)
        self.not_started.discard(idx)
        now = now_utc()
        self.ctx.results.record(
            InstanceResult.for_instance(inst, status, message=message, started_at=now, finished_at=now)
        )
        if status is JobStatus.SKIPPED:
            self.ctx.console.print_job_skipped(inst.key, message)
        else:
            self.ctx.console.print_job_finished(inst.key, f"{status.value} ({message})")
        self._release(idx)

    def _resolve(self, idx: int) -> None:
        """Every dependency of idx is terminal: decide RUNNABLE or SKIPPED."""
        inst = self._inst(idx)
        if self.stopping:
            self._finish_unstarted(idx, JobStatus.CANCELLED, self.stop_reason or "cancelled")
            return

        if not inst.job.continue_on_error:
            for dep in sorted(self.plan.deps[idx]):
                r = self.ctx.results.get(dep)
                if r is None or r.status is not JobStatus.SUCCEEDED:
                    status = r.status.value if r is not None else "unknown"
                    self._finish_unstarted(idx, JobStatus.SKIPPED, f"dependency '{self._inst(dep).key}' {status}")
                    return

        if inst.condition is not None:
            scope = self.ctx.scope_for(inst)
            if not inst.condition.evaluate(scope, where=inst.key):
                self._finish_unstarted(idx, JobStatus.SKIPPED, f"condition false: {inst.condition.source}")
                return

        inst.status = JobStatus.RUNNABLE
        heapq.heappush(self.ready, idx)

    def _release(self, idx: int) -> None:
        """idx became terminal: unlock dependents whose last dependency it was."""
        for child in sorted(self.plan.dependents[idx]):
            self.remaining[child].discard(idx)
            if not self.remaining[child] and child in self.not_started and self._inst(child).status is JobStatus.PENDING:
                self._resolve(child)

    # ------------------------------------------------------------------
    # cancellation
    # ------------------------------------------------------------------

    def _signal(self, idx: int) -> None:
        if idx in self.grace:
            return
        self.cancels[idx].set()
        self.grace[idx] = time.monotonic() + self.config.grace_period

    def _stop_all(self, reason: str) -> None:
        if self.stopping:
            return
        self.stopping = True
        self.stop_reason = reason
        logger.info(f"Stopping run: {reason}")
        self.ready = []
        for idx in sorted(self.not_started):
            if idx in self.not_started:
                self._finish_unstarted(idx, JobStatus.CANCELLED, reason)
        for idx in list(self.in_flight.values()):
            self._signal(idx)

    def _force(self, fut: Future) -> None:
        idx = self.in_flight[fut]
        inst = self._inst(idx)
        forced = InstanceResult.for_instance(
            inst,
            JobStatus.CANCELLED_TIMEOUT,
            error_kind=ErrorKind.CANCELLED,
            message=f"did not stop within the {self.config.grace_period}s grace period",
            started_at=self.started.get(idx),
            finished_at=now_utc(),
        )
        if not self.ctx.results.record(forced):
            # the worker recorded its result first; _complete picks it up
            return
        del self.in_flight[fut]
        self.abandoned.add(fut)
        logger.error(f"[{inst.key}] did not stop within {self.config.grace_period}s of cancellation")
        self.ctx.console.print_job_finished(inst.key, JobStatus.CANCELLED_TIMEOUT.value)
        self._cleanup(idx)
        self._trip(inst, JobStatus.CANCELLED_TIMEOUT)
        self._release(idx)

    def _cleanup(self, idx: int) -> None:
        self.cancels.pop(idx, None)
        self.deadlines.pop(idx, None)
        self.grace.pop(idx, None)

    def _trip(self, inst: JobInstance, status: JobStatus) -> None:
        """Fail-fast: a required instance failing (or timing out) stops the run."""
        if not self.config.fail_fast or not inst.required:
            return
        if status is JobStatus.FAILED or inst.index in self.timed_out:
            self._stop_all(f"fail-fast after {inst.key} {status.value}")

    def _check_deadlines(self) -> None:
        now = time.monotonic()
        if self.pipeline_deadline is not None and now >= self.pipeline_deadline and not self.stopping:
            self._stop_all(f"pipeline timeout ({self.config.timeout}s)")
        for idx, deadline in list(self.deadlines.items()):
            if now >= deadline and idx not in self.grace:
                self.timed_out.add(idx)
                logger.warning(f"[{self._inst(idx).key}] exceeded timeout-minutes={self._inst(idx).job.timeout_minutes}")
                self._signal(idx)
        for fut, idx in list(self.in_flight.items()):
            if idx in self.grace and now >= self.grace[idx] and not fut.done():
                self._force(fut)

    def _next_wakeup(self) -> Optional[float]:
        points = [d for i, d in self.deadlines.items() if i not in self.grace]
        points += list(self.grace.values())
        if self.pipeline_deadline is not None and not self.stopping:
            points.append(self.pipeline_deadline)
        if not points:
            return None
        return max(0.0, min(points) - time.monotonic())

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------

    def _worker(self, inst: JobInstance, cancel: threading.Event) -> InstanceResult:
        """Run on a pool thread; the owning worker records the terminal result."""
        try:
            result = run_instance(inst, self.ctx, cancel)
        except Exception as e:
            logger.exception(f"[{inst.key}] internal error in worker")
            result = InstanceResult.for_instance(
                inst,
                JobStatus.FAILED,
                error_kind=ErrorKind.INTERNAL,
                message=f"internal error: {type(e).__name__}: {e}",
                started_at=self.started.get(inst.index),
                finished_at=now_utc(),
            )
        # timed_out is filled before the cancel event is set
        if inst.index in self.timed_out and result.status is JobStatus.CANCELLED:
            result.message = f"timed out after {inst.job.timeout_minutes} minute(s)"
        self.ctx.results.record(result)
        return result

    def _busy(self) -> int:
        self.abandoned = {f for f in self.abandoned if not f.done()}
        return len(self.in_flight) + len(self.abandoned)

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        while self.ready and not self.stopping and self._busy() < self.workers:
            idx = heapq.heappop(self.ready)
            inst = self._inst(idx)
            self.not_started.discard(idx)
            cancel = threading.Event()
            self.cancels[idx] = cancel
            self.started[idx] = now_utc()
            self.ctx.console.print_debug(f"dispatch {inst.key} ({self._busy() + 1}/{self.workers} slots)")
            if inst.job.max_duration is not None:
                self.deadlines[idx] = time.monotonic() + inst.job.max_duration
            fut = pool.submit(self._worker, inst, cancel)
            self.in_flight[fut] = idx

    def _complete(self, fut: Future) -> None:
        idx = self.in_flight.pop(fut)
        inst = self._inst(idx)
        result: InstanceResult = fut.result()
        self._cleanup(idx)
        self.ctx.console.print_job_finished(inst.key, result.status.value)
        self._trip(inst, result.status)
        self._release(idx)

    def run(self) -> None:
        pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="flowci")
        try:
            for inst in self.plan.instances:
                if not self.plan.deps[inst.index] and inst.status is JobStatus.PENDING:
                    self._resolve(inst.index)

            while self.not_started or self.in_flight:
                self._dispatch(pool)
                if not self.in_flight:
                    if self.ready and self.abandoned:
                        # every slot is held by a worker that ignored cancellation
                        timeout = self._next_wakeup()
                        if timeout is None or timeout > self.config.grace_period:
                            timeout = self.config.grace_period
                        wait(self.abandoned, timeout=timeout, return_when=FIRST_COMPLETED)
                        self._check_deadlines()
                        continue
                    if self.not_started:
                        raise RuntimeError(f"scheduler stalled with {len(self.not_started)} instance(s) waiting")
                    break

                done, _ = wait(list(self.in_flight), timeout=self._next_wakeup(), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: self.in_flight[f]):
                    self._complete(fut)
                self._check_deadlines()
        finally:
            for event in self.cancels.values():
                event.set()
            pool.shutdown(wait=not self.abandoned, cancel_futures=True)


def run_plan(ctx: RunContext) -> RunReport:
    """
    Execute every instance of ctx.plan and return the final report.

    - runs up to ctx.config.workers instances at once; when more are ready,
      the earliest declared goes first
    - an instance starts only after all its dependencies are terminal; if one
      did not succeed (and the job lacks continue-on-error) it is SKIPPED,
      which propagates to its own dependents
    - fail-fast cancels everything not started and signals running instances
    - a workflow not triggered by ctx.event skips every instance
    """
    doc = ctx.document
    ctx.console.print_run_started(
        workflow=doc.name or "<unnamed>",
        event=f"{ctx.event.kind} ({ctx.event.branch or 'no branch'})",
        instance_count=len(ctx.plan.instances),
    )

    if not doc.is_triggered_by(ctx.event.kind, ctx.event.branch):
        ctx.console.print_not_triggered(ctx.event.kind)
        now = now_utc()
        for inst in ctx.plan.instances:
            ctx.results.record(
                InstanceResult.for_instance(
                    inst, JobStatus.SKIPPED, message="workflow not triggered by this event", started_at=now, finished_at=now
                )
            )
    else:
        _Scheduler(ctx).run()

    return ctx.results.report(workflow=doc.name, event=ctx.event.as_dict())

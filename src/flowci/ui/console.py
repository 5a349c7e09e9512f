"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..model import JobInstance
    from ..results import RunReport


class Console:
    """Centralized console output formatting. Safe to call from workers."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(self, workflow: str, event: str, instance_count: int) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out("\nRUN STARTED", f"Workflow: {workflow}", f"Event: {event}", f"Jobs: {instance_count}", "")

    def print_not_triggered(self, event: str) -> None:
        self._out(f"Workflow is not triggered by {event}; every job is skipped.")

    def print_job_start(self, key: str) -> None:
        if not self.quiet:
            self._out(f"JOB STARTED: {key}")

    def print_step(self, key: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{key}] STEP: {name}")

    def print_step_skipped(self, key: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{key}] STEP SKIPPED: {name}")

    def print_step_failure(
        self,
        key: str,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: str = "",
    ) -> None:
        """
        Print a step failure.

        In debug mode the captured output tail is printed as well.
        """
        lines = [f"[{key}] STEP FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"[{key}] Exit code: {exit_code}")
        if hint:
            lines.append(f"[{key}] Hint: {hint}")
        if reason:
            lines.append(f"[{key}] Error: {reason.splitlines()[0]}")
        if self.debug and output:
            lines.extend(f"[{key}]   | {line}" for line in output.rstrip().splitlines())
        self._out(*lines)

    def print_job_finished(self, key: str, status: str) -> None:
        if not self.quiet:
            self._out(f"JOB FINISHED: {key} STATUS: {status}")

    def print_job_skipped(self, key: str, reason: str) -> None:
        if not self.quiet:
            self._out(f"JOB SKIPPED: {key} ({reason})")

    def print_plan(self, levels: List[List["JobInstance"]]) -> None:
        """Print the execution plan as parallel stages."""
        for n, level in enumerate(levels, start=1):
            self._out(f"=== Stage {n} ===")
            for inst in level:
                needs = f" (needs: {', '.join(inst.job.needs)})" if inst.job.needs else ""
                self._out(f"  {inst.key}{needs}")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for key, status in report.statuses().items():
            lines.append(f"  {key}: {status.upper()}")
        lines.append(f"OUTCOME: {report.outcome.value.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)

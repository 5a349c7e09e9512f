# executor.py
"""
Step executors: the opaque boundary between the engine and real work.

`invoke(step, env, cancel) -> ExecResult(exit_code, output)`

  - `run:` steps are handed to ShellExecutor (a subprocess)
  - `uses:` steps are looked up in an ActionRegistry

A missing shell or working directory, an unregistered action, or an OS
permission failure raise ExecutorUnavailable. A command that runs and exits
nonzero is a normal ExecResult; the step runner decides what that means.
"""
from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Tuple

from .errors import ExecutorUnavailable
from .model import StepSpec

OUTPUT_TAIL = 4000

TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "rustup": "Install rustup from https://rustup.rs or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    output: str = ""
    cancelled: bool = False
    hint: Optional[str] = None


class StepExecutor(Protocol):
    def invoke(self, step: StepSpec, env: Dict[str, str], cancel: threading.Event) -> ExecResult:
        ...


def _hint_for(command: str, exit_code: int) -> Optional[str]:
    # 127 is the shell's "command not found"
    if exit_code != 127:
        return None
    words = command.strip().split()
    return TOOL_HINTS.get(words[0]) if words else None


class ShellExecutor:
    """Runs `run:` commands with `<shell> -c`, honouring cancellation."""

    def __init__(
        self,
        *,
        shell: str = "/bin/sh",
        repo_root: str | Path = ".",
        grace_period: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.shell = shell
        self.repo_root = Path(repo_root)
        self.grace_period = grace_period
        self.poll_interval = poll_interval

    def _stop(self, proc: subprocess.Popen) -> str:
        """SIGTERM the process group, then SIGKILL it after the grace period."""
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            out, _ = proc.communicate(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            out, _ = proc.communicate()
        return out or ""

    def run_command(
        self,
        command: str,
        env: Dict[str, str],
        cancel: threading.Event,
        *,
        cwd: str | None = None,
    ) -> ExecResult:
        workdir = (self.repo_root / (cwd or ".")).resolve()
        if not workdir.is_dir():
            raise ExecutorUnavailable(command, f"working directory not found: {workdir}")

        full_env = os.environ.copy()
        full_env["CI"] = "true"
        full_env.update(env)

        try:
            proc = subprocess.Popen(
                [self.shell, "-c", command],
                cwd=str(workdir),
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ExecutorUnavailable(command, f"cannot start shell {self.shell!r}: {e}") from e

        while True:
            if cancel.is_set():
                out = self._stop(proc)
                return ExecResult(exit_code=proc.returncode, output=out[-OUTPUT_TAIL:], cancelled=True)
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                continue

        out = out or ""
        return ExecResult(
            exit_code=proc.returncode,
            output=out[-OUTPUT_TAIL:],
            hint=_hint_for(command, proc.returncode),
        )

    def invoke(self, step: StepSpec, env: Dict[str, str], cancel: threading.Event) -> ExecResult:
        return self.run_command(step.run or "", env, cancel, cwd=step.cwd)


# ----------------------------------------------------------------------
# Actions (`uses:`)
# ----------------------------------------------------------------------

# handler(inputs, env, cancel) -> ExecResult
ActionHandler = Callable[[Dict[str, str], Dict[str, str], threading.Event], ExecResult]


def split_action(uses: str) -> Tuple[str, Optional[str]]:
    """'actions/checkout@v4' -> ('actions/checkout', 'v4')"""
    name, sep, version = uses.partition("@")
    return name, (version if sep else None)


def input_env(inputs: Dict[str, str]) -> Dict[str, str]:
    return {f"INPUT_{k.replace(' ', '_').upper()}": v for k, v in inputs.items()}


class ActionRegistry:
    """
    Maps action references to handlers. A handler registered for
    `name@version` wins over one registered for the bare `name`.
    """

    def __init__(self, shell: Optional[ShellExecutor] = None, *, stub_unknown: bool = False):
        self.shell = shell
        self.stub_unknown = stub_unknown
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, ref: str, handler: ActionHandler) -> None:
        self._handlers[ref] = handler

    def register_command(self, ref: str, command: str) -> None:
        """Run `command` through the shell executor whenever `ref` is used."""
        if self.shell is None:
            raise ValueError("register_command needs a ShellExecutor")
        shell = self.shell

        def handler(inputs: Dict[str, str], env: Dict[str, str], cancel: threading.Event) -> ExecResult:
            return shell.run_command(command, {**env, **input_env(inputs)}, cancel)

        self.register(ref, handler)

    def lookup(self, uses: str) -> Optional[ActionHandler]:
        name, _version = split_action(uses)
        return self._handlers.get(uses) or self._handlers.get(name)

    def invoke(self, step: StepSpec, env: Dict[str, str], cancel: threading.Event) -> ExecResult:
        uses = step.uses or ""
        handler = self.lookup(uses)
        if handler is None:
            if self.stub_unknown:
                return ExecResult(exit_code=0, output=f"(stub) {uses}")
            raise ExecutorUnavailable(uses, f"no executor registered for action '{uses}'")
        return handler(dict(step.inputs), env, cancel)


class LocalExecutor:
    """Default executor: shell for `run:`, registry for `uses:`."""

    def __init__(self, shell: ShellExecutor, actions: ActionRegistry):
        self.shell = shell
        self.actions = actions

    def invoke(self, step: StepSpec, env: Dict[str, str], cancel: threading.Event) -> ExecResult:
        if step.run is not None:
            return self.shell.invoke(step, env, cancel)
        return self.actions.invoke(step, env, cancel)


def local_executor(
    *,
    shell: str = "/bin/sh",
    repo_root: str | Path = ".",
    grace_period: float = 10.0,
    actions: Optional[Dict[str, str]] = None,
    stub_actions: bool = False,
) -> LocalExecutor:
    sh = ShellExecutor(shell=shell, repo_root=repo_root, grace_period=grace_period)
    registry = ActionRegistry(sh, stub_unknown=stub_actions)
    for ref, command in (actions or {}).items():
        registry.register_command(ref, command)
    return LocalExecutor(sh, registry)

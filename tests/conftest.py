import threading
import time
from pathlib import Path

import pytest

from flowci.config import EngineConfig
from flowci.context import EventContext, RunContext
from flowci.dag import build
from flowci.errors import ExecutorUnavailable
from flowci.executor import ExecResult
from flowci.loader import parse
from flowci.ui.console import Console

DATA_DIR = Path(__file__).parent / "data"


class FakeExecutor:
    """
    Scripted step executor.

    exit_codes:    step ref (command or action) -> exit code (default 0)
    delays:        step ref -> seconds the step "runs"; cancellation ends it early
    ignore_cancel: refs that keep running through a cancel signal
    unavailable:   refs that raise ExecutorUnavailable
    """

    def __init__(self, exit_codes=None, delays=None, ignore_cancel=(), unavailable=(), raises=()):
        self.exit_codes = dict(exit_codes or {})
        self.delays = dict(delays or {})
        self.ignore_cancel = set(ignore_cancel)
        self.unavailable = set(unavailable)
        self.raises = set(raises)
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def invoke(self, step, env, cancel):
        ref = step.ref
        with self._lock:
            self.calls.append((ref, dict(env)))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if ref in self.raises:
                raise RuntimeError(f"boom in {ref}")
            if ref in self.unavailable:
                raise ExecutorUnavailable(ref, f"no executor for {ref}")
            delay = self.delays.get(ref, 0)
            if delay:
                if ref in self.ignore_cancel:
                    time.sleep(delay)
                elif cancel.wait(delay):
                    return ExecResult(exit_code=-15, output="terminated", cancelled=True)
            return ExecResult(exit_code=self.exit_codes.get(ref, 0), output=f"ran {ref}")
        finally:
            with self._lock:
                self.active -= 1

    @property
    def refs(self):
        return [ref for ref, _env in self.calls]


def make_ctx(document, executor, *, event=None, **config):
    doc = parse(document) if not hasattr(document, "jobs") else document
    settings = {"workers": 1, "grace_period": 0.5}
    settings.update(config)
    engine_config = EngineConfig(**settings)
    plan = build(doc, max_matrix=engine_config.max_matrix)
    return RunContext(
        document=doc,
        plan=plan,
        executor=executor,
        config=engine_config,
        event=event or EventContext(kind="push", branch="main"),
        console=Console(quiet=True),
    )


@pytest.fixture
def build_and_test_yaml():
    return (DATA_DIR / "build-and-test.yml").read_text()


@pytest.fixture
def fake_executor():
    return FakeExecutor()

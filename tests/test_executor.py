"""Tests for the local shell and action executors."""
import shutil
import threading
import time

import pytest

from flowci.errors import ErrorKind, ExecutorUnavailable
from flowci.executor import ActionRegistry, ExecResult, ShellExecutor, local_executor, split_action
from flowci.model import StepSpec

pytestmark = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


def run(command, **kw):
    return StepSpec(name="step", run=command, **kw)


def uses(ref, **inputs):
    return StepSpec(name="step", uses=ref, inputs=inputs)


class TestShell:
    def test_exit_code_and_output(self, tmp_path):
        sh = ShellExecutor(repo_root=tmp_path)
        result = sh.invoke(run("echo hello; exit 3"), {}, threading.Event())
        assert result.exit_code == 3
        assert "hello" in result.output
        assert not result.cancelled

    def test_env_is_passed(self, tmp_path):
        sh = ShellExecutor(repo_root=tmp_path)
        result = sh.invoke(run('echo "$GREETING/$CI"'), {"GREETING": "hi"}, threading.Event())
        assert result.output.strip() == "hi/true"

    def test_working_directory(self, tmp_path):
        (tmp_path / "sub").mkdir()
        sh = ShellExecutor(repo_root=tmp_path)
        result = sh.invoke(run("pwd", cwd="sub"), {}, threading.Event())
        assert result.output.strip().endswith("sub")

    def test_missing_working_directory(self, tmp_path):
        with pytest.raises(ExecutorUnavailable) as exc:
            ShellExecutor(repo_root=tmp_path).invoke(run("true", cwd="nope"), {}, threading.Event())
        assert exc.value.kind is ErrorKind.EXECUTOR_UNAVAILABLE
        assert "working directory not found" in exc.value.message

    def test_cancel_terminates_process(self, tmp_path):
        sh = ShellExecutor(repo_root=tmp_path, grace_period=1.0)
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        start = time.monotonic()
        result = sh.invoke(run("sleep 5"), {}, cancel)
        assert result.cancelled
        assert time.monotonic() - start < 3

    def test_missing_shell_is_unavailable(self, tmp_path):
        sh = ShellExecutor(shell=str(tmp_path / "no-such-shell"), repo_root=tmp_path)
        with pytest.raises(ExecutorUnavailable):
            sh.invoke(run("true"), {}, threading.Event())

    def test_command_not_found_hint(self, tmp_path):
        sh = ShellExecutor(repo_root=tmp_path, shell="/bin/sh")
        result = sh.invoke(run("cargo build"), {"PATH": str(tmp_path)}, threading.Event())
        assert result.exit_code == 127
        assert "rustup" in result.hint


class TestActions:
    def test_split_action(self):
        assert split_action("actions/checkout@v4") == ("actions/checkout", "v4")
        assert split_action("local/thing") == ("local/thing", None)

    def test_unknown_action_is_unavailable(self):
        with pytest.raises(ExecutorUnavailable):
            ActionRegistry().invoke(uses("actions/checkout@v4"), {}, threading.Event())

    def test_stub_unknown_actions(self):
        result = ActionRegistry(stub_unknown=True).invoke(uses("actions/checkout@v4"), {}, threading.Event())
        assert result.exit_code == 0
        assert "stub" in result.output

    def test_versioned_handler_wins(self):
        registry = ActionRegistry()
        registry.register("actions/checkout", lambda i, e, c: ExecResult(0, "any"))
        registry.register("actions/checkout@v4", lambda i, e, c: ExecResult(0, "v4"))
        assert registry.invoke(uses("actions/checkout@v4"), {}, threading.Event()).output == "v4"
        assert registry.invoke(uses("actions/checkout@v3"), {}, threading.Event()).output == "any"

    def test_command_action_gets_inputs_as_env(self, tmp_path):
        ex = local_executor(repo_root=tmp_path, actions={"setup-tool": 'echo "$INPUT_TOOLCHAIN"'})
        result = ex.invoke(uses("setup-tool@v1", toolchain="1.76.0"), {}, threading.Event())
        assert result.output.strip() == "1.76.0"

    def test_local_executor_routes_run_steps_to_shell(self, tmp_path):
        ex = local_executor(repo_root=tmp_path)
        assert ex.invoke(run("exit 0"), {}, threading.Event()).exit_code == 0

"""Tests for workflow document loading."""
import textwrap

import pytest

from flowci.errors import DocumentError, ParseError
from flowci.loader import load_workflow, parse


def doc(text):
    return textwrap.dedent(text)


class TestRealWorkflow:
    def test_jobs_in_declaration_order(self, build_and_test_yaml):
        wf = parse(build_and_test_yaml)
        assert list(wf.jobs) == ["format-check", "check", "build"]
        assert wf.name == "Build and Test"
        assert wf.env == {"CARGO_TERM_COLOR": "always"}

    def test_triggers_from_on_key(self, build_and_test_yaml):
        wf = parse(build_and_test_yaml)
        assert {t.event for t in wf.triggers} == {"push", "pull_request"}
        assert wf.is_triggered_by("push", "main")
        assert wf.is_triggered_by("pull_request", "main")
        assert not wf.is_triggered_by("push", "feature/x")
        assert not wf.is_triggered_by("schedule", "main")

    def test_steps(self, build_and_test_yaml):
        wf = parse(build_and_test_yaml)
        check = wf.jobs["check"]
        assert [s.name for s in check.steps] == [
            "Run actions/checkout@v4",
            "Install toolchain",
            "Check",
            "Clippy",
        ]
        assert check.steps[0].uses == "actions/checkout@v4"
        assert check.steps[1].inputs == {"toolchain": "1.76.0", "components": "clippy"}
        assert check.steps[2].run == "cargo check --all-targets"
        assert check.runs_on == "ubuntu-latest"

    def test_matrix_and_condition(self, build_and_test_yaml):
        build = parse(build_and_test_yaml).jobs["build"]
        assert build.matrix.axes == {"target": ("x86_64-unknown-linux-musl",)}
        tests_step = build.steps[-1]
        assert tests_step.condition.source == "matrix.target == 'x86_64-unknown-linux-musl'"

    def test_load_workflow_from_file(self, tmp_path, build_and_test_yaml):
        path = tmp_path / "ci.yml"
        path.write_text(build_and_test_yaml)
        assert list(load_workflow(path).jobs) == ["format-check", "check", "build"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(DocumentError) as exc:
            load_workflow(tmp_path / "nope.yml")
        assert "not found" in exc.value.message


class TestValidation:
    def test_parse_error_is_document_error(self):
        assert ParseError is DocumentError

    def test_duplicate_job_names(self):
        text = doc("""
            on: push
            jobs:
              a:
                steps: [{run: echo 1}]
              a:
                steps: [{run: echo 2}]
        """)
        with pytest.raises(DocumentError) as exc:
            parse(text)
        assert "duplicate key 'a'" in exc.value.message
        assert exc.value.location == "line 6, column 3"

    def test_unknown_needs(self):
        with pytest.raises(DocumentError) as exc:
            parse({"on": "push", "jobs": {"a": {"needs": "ghost", "steps": [{"run": "x"}]}}})
        assert "ghost" in exc.value.message
        assert exc.value.location == "jobs.a.needs"

    def test_job_without_steps(self):
        with pytest.raises(DocumentError) as exc:
            parse({"on": "push", "jobs": {"a": {"runs-on": "ubuntu-latest"}}})
        assert exc.value.location == "jobs.a.steps"

    def test_empty_matrix_axis(self):
        with pytest.raises(DocumentError) as exc:
            parse({"on": "push", "jobs": {"a": {"strategy": {"matrix": {"os": []}}, "steps": [{"run": "x"}]}}})
        assert "no values" in exc.value.message
        assert exc.value.location == "jobs.a.strategy.matrix.os"

    def test_float_matrix_value_is_ambiguous(self):
        with pytest.raises(DocumentError):
            parse({"on": "push", "jobs": {"a": {"strategy": {"matrix": {"py": [3.10]}}, "steps": [{"run": "x"}]}}})

    def test_float_env_value_is_rejected(self):
        with pytest.raises(DocumentError) as exc:
            parse({"on": "push", "env": {"PY": 3.10}, "jobs": {"a": {"steps": [{"run": "x"}]}}})
        assert exc.value.location == "env"
        assert "quote it" in exc.value.message

    def test_int_and_bool_env_values_are_exact(self):
        wf = parse({"on": "push", "env": {"N": 1, "FLAG": True}, "jobs": {"a": {"steps": [{"run": "x"}]}}})
        assert wf.env == {"N": "1", "FLAG": "true"}

    def test_continue_on_error_must_be_boolean(self):
        with pytest.raises(DocumentError) as exc:
            parse({"on": "push", "jobs": {"a": {"continue-on-error": "yes", "steps": [{"run": "x"}]}}})
        assert exc.value.location == "jobs.a.continue-on-error"

    def test_step_needs_exactly_one_executable(self):
        with pytest.raises(DocumentError) as exc:
            parse({"on": "push", "jobs": {"a": {"steps": [{"run": "x", "uses": "y@v1"}]}}})
        assert exc.value.location == "jobs.a.steps[0]"
        with pytest.raises(DocumentError):
            parse({"on": "push", "jobs": {"a": {"steps": [{"name": "nothing"}]}}})

    def test_bad_condition(self):
        with pytest.raises(DocumentError) as exc:
            parse({"on": "push", "jobs": {"a": {"steps": [{"run": "x", "if": "matrix.a = 'b'"}]}}})
        assert exc.value.location == "jobs.a.steps[0].if"

    def test_duplicate_step_ids(self):
        with pytest.raises(DocumentError):
            parse({"on": "push", "jobs": {"a": {"steps": [{"id": "s", "run": "x"}, {"id": "s", "run": "y"}]}}})

    @pytest.mark.parametrize("missing", ["on", "jobs"])
    def test_required_keys(self, missing):
        data = {"on": "push", "jobs": {"a": {"steps": [{"run": "x"}]}}}
        del data[missing]
        with pytest.raises(DocumentError) as exc:
            parse(data)
        assert missing in exc.value.message

    def test_empty_jobs(self):
        with pytest.raises(DocumentError):
            parse({"on": "push", "jobs": {}})

    def test_unknown_top_level_keys_are_ignored(self):
        wf = parse({"on": "push", "permissions": {"contents": "read"}, "jobs": {"a": {"steps": [{"run": "x"}]}}})
        assert list(wf.jobs) == ["a"]

    def test_invalid_yaml(self):
        with pytest.raises(DocumentError) as exc:
            parse("on: push\njobs: [unclosed\n")
        assert exc.value.location.startswith("line ")

    def test_document_must_be_mapping(self):
        with pytest.raises(DocumentError):
            parse("- just\n- a list\n")

    def test_timeout_and_flags(self):
        wf = parse({
            "on": ["push"],
            "jobs": {
                "a": {
                    "timeout-minutes": 5,
                    "continue-on-error": True,
                    "if": "github.event_name == 'push'",
                    "steps": [{"run": "x", "continue-on-error": True, "env": {"A": "b"}}],
                },
            },
        })
        job = wf.jobs["a"]
        assert job.max_duration == 300.0
        assert job.continue_on_error
        assert job.condition.source == "github.event_name == 'push'"
        assert job.steps[0].continue_on_error
        assert job.steps[0].env == {"A": "b"}

    def test_branches_ignore(self):
        wf = parse({"on": {"push": {"branches-ignore": ["wip/*"]}}, "jobs": {"a": {"steps": [{"run": "x"}]}}})
        assert wf.is_triggered_by("push", "main")
        assert not wf.is_triggered_by("push", "wip/thing")

    def test_triggers_without_branch_filters(self):
        wf = parse(doc("""
            on:
              push:
                branches: [main]
              schedule:
                - cron: '0 0 * * *'
              workflow_dispatch:
                inputs:
                  level:
                    description: Log level
                    default: info
            jobs:
              a:
                steps: [{run: x}]
        """))
        assert [t.event for t in wf.triggers] == ["push", "schedule", "workflow_dispatch"]
        assert wf.is_triggered_by("schedule")
        assert wf.is_triggered_by("workflow_dispatch", "feature/x")
        assert wf.is_triggered_by("push", "main")
        assert not wf.is_triggered_by("push", "feature/x")

    @pytest.mark.parametrize("on, fragment", [
        (5, "expected an event name"),
        ({"push": {"branches": 3}}, "push.branches"),
    ])
    def test_bad_on_reports_its_location(self, on, fragment):
        with pytest.raises(DocumentError) as exc:
            parse({"on": on, "jobs": {"a": {"steps": [{"run": "x"}]}}})
        assert exc.value.location == "on"
        assert fragment in exc.value.message

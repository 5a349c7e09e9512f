import pytest

from flowci.dag import build
from flowci.loader import parse
from flowci.model import JobStatus, StepStatus
from flowci.results import Aggregator, InstanceResult, Outcome, RunReport, StepResult


@pytest.fixture
def plan():
    return build(parse({
        "on": "push",
        "jobs": {
            "lint": {"steps": [{"run": "lint"}]},
            "test": {"strategy": {"matrix": {"py": ["3.11", "3.12"]}}, "steps": [{"run": "pytest"}]},
            "docs": {"continue-on-error": True, "steps": [{"run": "docs"}]},
        },
    }))


def record_all(agg, plan, statuses):
    for inst, status in zip(plan.instances, statuses):
        agg.record(InstanceResult.for_instance(inst, status))


def test_outcome_success_when_required_instances_pass(plan):
    agg = Aggregator(plan.instances)
    record_all(agg, plan, [JobStatus.SUCCEEDED, JobStatus.SKIPPED, JobStatus.SUCCEEDED, JobStatus.FAILED])
    assert agg.outcome() is Outcome.SUCCESS


@pytest.mark.parametrize("bad", [JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.CANCELLED_TIMEOUT])
def test_outcome_failure_for_required_instance(plan, bad):
    agg = Aggregator(plan.instances)
    record_all(agg, plan, [JobStatus.SUCCEEDED, bad, JobStatus.SUCCEEDED, JobStatus.SUCCEEDED])
    assert agg.outcome() is Outcome.FAILURE


def test_snapshot_is_in_declaration_order(plan):
    agg = Aggregator(plan.instances)
    for inst in reversed(plan.instances):
        agg.record(InstanceResult.for_instance(inst, JobStatus.SUCCEEDED))
    assert [r.key for r in agg.snapshot()] == ["lint", "test (3.11)", "test (3.12)", "docs"]
    assert agg.done()
    assert agg.finished_at is not None


def test_second_record_is_ignored(plan):
    agg = Aggregator(plan.instances)
    inst = plan.instances[0]
    assert agg.record(InstanceResult.for_instance(inst, JobStatus.CANCELLED_TIMEOUT))
    assert not agg.record(InstanceResult.for_instance(inst, JobStatus.SUCCEEDED))
    assert agg.get(0).status is JobStatus.CANCELLED_TIMEOUT
    assert inst.status is JobStatus.CANCELLED_TIMEOUT


def test_non_terminal_status_is_rejected(plan):
    agg = Aggregator(plan.instances)
    with pytest.raises(ValueError):
        agg.record(InstanceResult.for_instance(plan.instances[0], JobStatus.RUNNING))


def test_job_result_combines_instances(plan):
    agg = Aggregator(plan.instances)
    agg.record(InstanceResult.for_instance(plan.instances[1], JobStatus.SUCCEEDED))
    assert agg.job_result("test") is None
    agg.record(InstanceResult.for_instance(plan.instances[2], JobStatus.FAILED))
    assert agg.job_result("test") == "failure"


def test_report_round_trips_through_json(plan):
    agg = Aggregator(plan.instances)
    steps = [
        StepResult(name="lint", status=StepStatus.FAILED, exit_code=1, continue_on_error=True),
        StepResult(name="after", status=StepStatus.SUCCEEDED, exit_code=0),
    ]
    agg.record(InstanceResult.for_instance(plan.instances[0], JobStatus.SUCCEEDED, steps=steps))
    record_all(agg, plan, [JobStatus.SUCCEEDED, JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED])

    report = agg.report(workflow="ci", event={"kind": "push", "branch": "main"})
    loaded = RunReport.from_json(report.to_json())
    assert loaded.statuses() == report.statuses() == {
        "lint": "succeeded",
        "test (3.11)": "succeeded",
        "test (3.12)": "failed",
        "docs": "skipped",
    }
    assert loaded.outcome is Outcome.FAILURE
    assert loaded.jobs[0].steps[0].conclusion is StepStatus.SUCCEEDED
    assert loaded.jobs[1].matrix == {"py": "3.11"}


def test_aborted_report():
    report = RunReport.aborted("dependency cycle: a -> b -> a", workflow="ci")
    assert report.outcome is Outcome.ABORTED
    assert report.jobs == []
    assert RunReport.from_json(report.to_json()).error == "dependency cycle: a -> b -> a"

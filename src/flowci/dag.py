# dag.py
from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Set

from .errors import GraphError
from .model import JobInstance, JobSpec, Matrix, StepSpec, WorkflowDocument
from .template import substitute_matrix

DEFAULT_MAX_MATRIX = 256


# ----------------------------------------------------------------------
# Matrix expansion
# ----------------------------------------------------------------------

def _matches(combo: Dict[str, Any], pattern: Dict[str, Any]) -> bool:
    return all(k in combo and combo[k] == v for k, v in pattern.items())


def expand_matrix(matrix: Matrix | None) -> List[Dict[str, Any]]:
    """
    Cross product of the axes in declared order, minus `exclude` matches.
    Each `include` entry extends the combinations it matches on axis keys,
    or becomes a combination of its own when it matches none. Axis values
    are never overwritten; keys added by an earlier `include` are.

    Example:
        {os: [a, b], ver: [1, 2]} -> 4 combinations
    """
    if matrix is None:
        return [{}]

    names = list(matrix.axes)
    combos: List[Dict[str, Any]] = []
    if names:
        for values in itertools.product(*(matrix.axes[n] for n in names)):
            combos.append(dict(zip(names, values)))

    combos = [c for c in combos if not any(_matches(c, ex) for ex in matrix.exclude)]

    for extra in matrix.include:
        base = {k: v for k, v in extra.items() if k in matrix.axes}
        targets = [c for c in combos if _matches(c, base)]
        if targets:
            for c in targets:
                for k, v in extra.items():
                    if k not in matrix.axes:
                        c[k] = v
        else:
            combos.append(dict(extra))
    return combos


def _substitute_step(step: StepSpec, combo: Dict[str, Any]) -> StepSpec:
    return replace(
        step,
        name=substitute_matrix(step.name, combo),
        run=substitute_matrix(step.run, combo) if step.run is not None else None,
        inputs={k: substitute_matrix(v, combo) for k, v in step.inputs.items()},
        env={k: substitute_matrix(v, combo) for k, v in step.env.items()},
        condition=step.condition.bind_matrix(combo) if step.condition is not None else None,
        cwd=substitute_matrix(step.cwd, combo) if step.cwd is not None else None,
    )


def _instantiate(job: JobSpec, combo: Dict[str, Any], index: int) -> JobInstance:
    return JobInstance(
        job=job,
        index=index,
        matrix=dict(combo),
        steps=[_substitute_step(s, combo) for s in job.steps],
        env={k: substitute_matrix(v, combo) for k, v in job.env.items()},
        condition=job.condition.bind_matrix(combo) if job.condition is not None else None,
    )


# ----------------------------------------------------------------------
# Plan
# ----------------------------------------------------------------------

@dataclass
class ExecutionPlan:
    """
    DAG over job instances. Nodes are addressed by instance index.

    deps[i]       -> indices instance i waits for
    dependents[i] -> indices waiting for instance i
    """
    document: WorkflowDocument
    instances: List[JobInstance]
    deps: Dict[int, Set[int]] = field(default_factory=dict)
    dependents: Dict[int, Set[int]] = field(default_factory=dict)

    def by_job(self, name: str) -> List[JobInstance]:
        return [i for i in self.instances if i.name == name]

    def topological_order(self) -> List[JobInstance]:
        """Kahn's algorithm; among ready nodes the earliest declared goes first."""
        indeg = {i.index: len(self.deps[i.index]) for i in self.instances}
        heap = [n for n, d in indeg.items() if d == 0]
        heapq.heapify(heap)
        order: List[JobInstance] = []
        while heap:
            n = heapq.heappop(heap)
            order.append(self.instances[n])
            for child in self.dependents[n]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(heap, child)
        return order

    def levels(self) -> List[List[JobInstance]]:
        """
        Topological "levels" (stages). Each stage only depends on earlier
        ones, so its instances could run in parallel.
        """
        indeg = {i.index: len(self.deps[i.index]) for i in self.instances}
        current = sorted(n for n, d in indeg.items() if d == 0)
        levels: List[List[JobInstance]] = []
        while current:
            levels.append([self.instances[n] for n in current])
            nxt: List[int] = []
            for n in current:
                for child in self.dependents[n]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            current = sorted(nxt)
        return levels


# ----------------------------------------------------------------------
# Cycle detection
# ----------------------------------------------------------------------

_UNVISITED, _VISITING, _DONE = 0, 1, 2


def _check_acyclic(jobs: Dict[str, JobSpec]) -> None:
    """
    DFS with three-color marking over the job-level needs graph. An instance
    graph has a cycle iff the job graph has one, since every instance of J
    depends on every instance of each job J needs.
    """
    color = {name: _UNVISITED for name in jobs}
    path: List[str] = []

    def visit(name: str) -> None:
        color[name] = _VISITING
        path.append(name)
        for dep in jobs[name].needs:
            if color[dep] == _VISITING:
                cycle = path[path.index(dep):] + [dep]
                raise GraphError(
                    GraphError.CYCLE,
                    f"dependency cycle: {' -> '.join(cycle)}",
                    nodes=cycle,
                )
            if color[dep] == _UNVISITED:
                visit(dep)
        path.pop()
        color[name] = _DONE

    for name in jobs:
        if color[name] == _UNVISITED:
            visit(name)


# ----------------------------------------------------------------------
# Build
# ----------------------------------------------------------------------

def build(document: WorkflowDocument, *, max_matrix: int = DEFAULT_MAX_MATRIX) -> ExecutionPlan:
    """
    Build an ExecutionPlan from a parsed document.

    Raises GraphError for unresolved needs, cycles, or a job whose matrix
    expands past `max_matrix` instances.
    """
    jobs = document.jobs
    for job in jobs.values():
        for dep in job.needs:
            if dep not in jobs:
                raise GraphError(
                    GraphError.UNRESOLVED_DEPENDENCY,
                    f"job '{job.name}' needs missing job '{dep}'. Known jobs: {sorted(jobs)}",
                    nodes=[job.name, dep],
                )

    _check_acyclic(jobs)

    instances: List[JobInstance] = []
    for job in jobs.values():
        combos = expand_matrix(job.matrix)
        if len(combos) > max_matrix:
            raise GraphError(
                GraphError.MATRIX_TOO_LARGE,
                f"job '{job.name}' expands to {len(combos)} instances (limit {max_matrix})",
                nodes=[job.name],
            )
        for combo in combos:
            instances.append(_instantiate(job, combo, len(instances)))

    plan = ExecutionPlan(document=document, instances=instances)
    by_name: Dict[str, List[int]] = {}
    for inst in instances:
        by_name.setdefault(inst.name, []).append(inst.index)
        plan.deps[inst.index] = set()
        plan.dependents[inst.index] = set()

    # every instance of J waits for every instance of each job J needs
    for inst in instances:
        for dep in inst.job.needs:
            for d in by_name[dep]:
                plan.deps[inst.index].add(d)
                plan.dependents[d].add(inst.index)

    return plan

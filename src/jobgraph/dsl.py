# src/jobgraph/dsl.py
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .model import Artifact, ContainerEnvironment, EnvironmentDescriptor, HostEnvironment, Job, Step
from .release import ReleasePlan
from .trigger import always


# ---------------------------------------------------------------------
# Step / environment helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def host(toolchain: str | None = None) -> HostEnvironment:
    return HostEnvironment(toolchain=toolchain)


def container(
    image: str,
    *bootstrap: Step,
    options: Optional[List[str]] = None,
    toolchain: str | None = None,
) -> ContainerEnvironment:
    """
    Containerized environment. Bootstrap steps run before the job's own
    steps, e.g. container("debian:10", sh("deps", "apt-get update")).
    """
    return ContainerEnvironment(
        image=image,
        bootstrap=tuple(bootstrap),
        options=tuple(options or ()),
        toolchain=toolchain,
    )


def artifact(name: str, *paths: str) -> Artifact:
    if not paths:
        raise ValueError(f"artifact({name!r}) needs at least one path")
    return Artifact(name=name, paths=tuple(paths))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    runs_on: Optional[EnvironmentDescriptor] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, Any]] = None,
    produces: Optional[List[Artifact]] = None,
    consumes: Optional[List[str]] = None,
    condition: Optional[Callable] = None,
    timeout: Optional[float] = None,
    checkout: Optional[str] = ".",
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        runs_on=runs_on or HostEnvironment(),
        needs=tuple(needs or ()),
        # force values to str so steps see them verbatim
        env={k: str(v) for k, v in (env or {}).items()},
        produces=tuple(produces or ()),
        consumes=tuple(consumes or ()),
        condition=condition or always,
        timeout=timeout,
        checkout=checkout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._runs_on: EnvironmentDescriptor = HostEnvironment()
        self._produces: list[Artifact] = []
        self._consumes: list[str] = []
        self._condition: Callable = always
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, descriptor: EnvironmentDescriptor):
        self._runs_on = descriptor
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def produces(self, name: str, *paths: str):
        self._produces.append(artifact(name, *paths))
        return self

    def consumes(self, *names: str):
        self._consumes.extend(names)
        return self

    def when(self, condition: Callable):
        self._condition = condition
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=tuple(self._steps),
            runs_on=self._runs_on,
            needs=tuple(self._needs),
            env=dict(self._env),
            produces=tuple(self._produces),
            consumes=tuple(self._consumes),
            condition=self._condition,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("distro", ["ubuntu", "debian-10"]).jobs(
            lambda v: job(f"run-ci-{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]

    def names(self, builder: Callable[[Any], str]) -> List[str]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------

@dataclass
class Pipeline:
    jobs: List[Job]
    release: Optional[ReleasePlan] = None
    name: str = "pipeline"


def wf(*jobs: Union[Job, List[Job]]) -> List[Job]:
    """
    Workflow definition helper. Lists (e.g. from matrix(...).jobs) are
    flattened, so users can write:

        def workflow():
            return wf(
                job(...),
                matrix(...).jobs(...),
            )
    """
    out: List[Job] = []
    for item in jobs:
        if isinstance(item, Job):
            out.append(item)
        else:
            out.extend(item)
    return out


def release(*, requires: List[str], artifacts: List[str]) -> ReleasePlan:
    """Declare what must succeed and which artifacts are published on a release event."""
    return ReleasePlan(requires=tuple(requires), artifacts=tuple(artifacts))


def pipeline(*jobs: Union[Job, List[Job]], release: Optional[ReleasePlan] = None, name: str = "pipeline") -> Pipeline:
    return Pipeline(jobs=wf(*jobs), release=release, name=name)

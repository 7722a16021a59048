# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set

from .errors import CycleError, ValidationError
from .model import Job


class JobGraph:
    """
    The DAG of jobs connected by `needs` edges.

    Built once per pipeline definition and never mutated. Run state lives
    in the scheduler; every query here takes the state it needs as
    arguments.
    """

    def __init__(self, jobs: Iterable[Job]):
        jobs = list(jobs)
        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValidationError(f"Duplicate job names found: {dupes}")

        self.jobs: Dict[str, Job] = {j.name: j for j in jobs}
        self.order: List[str] = names
        # dep -> dependents
        self.adj: Dict[str, Set[str]] = {n: set() for n in names}
        self.indeg: Dict[str, int] = {n: 0 for n in names}

        for job in jobs:
            for dep in job.needs:
                if dep not in self.jobs:
                    raise ValidationError(
                        f"Job '{job.name}' needs missing job '{dep}'. "
                        f"Known jobs: {sorted(self.jobs)}"
                    )
                if job.name not in self.adj[dep]:
                    self.adj[dep].add(job.name)
                    self.indeg[job.name] += 1

    def __len__(self) -> int:
        return len(self.jobs)

    def __iter__(self):
        return (self.jobs[n] for n in self.order)

    def needs(self, name: str) -> List[str]:
        return list(self.jobs[name].needs)

    def dependents(self, name: str) -> Set[str]:
        return set(self.adj[name])

    # -----------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------

    def validate(self) -> None:
        """
        Check that the graph can be executed at all.

        Raises CycleError naming the cycle, or ValidationError for
        conditions and artifact wiring that can never work.
        """
        self.topo_levels()

        for job in self:
            if not callable(job.condition):
                raise ValidationError(
                    f"Job '{job.name}' has a condition that is not callable: {job.condition!r}"
                )

        producers = self.producers()
        for job in self:
            upstream = self.ancestors(job.name)
            for name in job.consumes:
                producer = producers.get(name)
                if producer is None:
                    raise ValidationError(
                        f"Job '{job.name}' consumes artifact '{name}' that no job produces"
                    )
                if producer not in upstream:
                    raise ValidationError(
                        f"Job '{job.name}' consumes artifact '{name}' from '{producer}' "
                        f"but does not (transitively) need it"
                    )

    def producers(self) -> Dict[str, str]:
        """Map artifact name -> the single job producing it."""
        out: Dict[str, str] = {}
        for job in self:
            for name in job.produced_names:
                if name in out:
                    raise ValidationError(
                        f"Artifact '{name}' is produced by both '{out[name]}' and '{job.name}'"
                    )
                out[name] = job.name
        return out

    def ancestors(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.jobs[name].needs)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.jobs[current].needs)
        return seen

    def topo_levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Jobs within one level do not depend on each other.
        """
        indeg = dict(self.indeg)  # copy (we mutate it)
        q = deque(sorted(n for n, d in indeg.items() if d == 0))

        levels: List[List[str]] = []
        processed = 0

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                processed += 1

                for child in sorted(self.adj[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)

            levels.append(level)

        if processed != len(indeg):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise CycleError(self._find_cycle(stuck))

        return levels

    def _find_cycle(self, stuck: List[str]) -> List[str]:
        # Every stuck node has at least one stuck dependency, so walking
        # needs from any of them must revisit a node.
        stuck_set = set(stuck)
        path: List[str] = []
        index: Dict[str, int] = {}
        node = stuck[0]
        while node not in index:
            index[node] = len(path)
            path.append(node)
            node = next(d for d in sorted(self.jobs[node].needs) if d in stuck_set)
        cycle = path[index[node]:]
        cycle.reverse()  # report in execution direction: dep -> dependent
        return cycle + [cycle[0]]

    # -----------------------------------------------------------------
    # Frontier queries
    # -----------------------------------------------------------------

    def ready_set(
        self,
        completed: Set[str],
        skipped: Set[str],
        started: Set[str] = frozenset(),
    ) -> Set[str]:
        """
        Jobs whose every dependency is in `completed` and which have not
        been started, completed or skipped themselves.
        """
        done = completed | skipped | started
        return {
            name
            for name, job in self.jobs.items()
            if name not in done and all(dep in completed for dep in job.needs)
        }

    def skip_set(self, failed: Set[str], skipped: Set[str], started: Set[str] = frozenset()) -> Set[str]:
        """
        Jobs that have not started yet and need something that failed or
        was skipped. Only the current frontier is returned; their own
        dependents surface on the next call.
        """
        dead = failed | skipped
        return {
            name
            for name, job in self.jobs.items()
            if name not in dead
            and name not in started
            and any(dep in dead for dep in job.needs)
        }

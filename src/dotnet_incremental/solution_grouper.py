# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Solution-level batching.

Running the external tool concurrently on several projects that share a
solution can race on shared restore and output artifacts. When enough of a
solution's members are targets, the members are routed through one
solution-level invocation instead, and the tool schedules them internally.

Policies (see models.SolutionPolicy):
- auto: batch a solution only when every one of its members is a target
- force: batch when at least two members are targets
- never: always run per project

Build-only projects never join a batch: they run with a filtered argument
set that must not leak into a solution-wide invocation.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from dotnet_incremental.config import ConfigurationError
from dotnet_incremental.models import BatchPlan, Project, Solution, SolutionPolicy
from dotnet_incremental.project_graph import ProjectGraph, find_stuck

logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 2


def _full_matches(
    candidates: Dict[str, Project], solutions: Iterable[Solution]
) -> List[Tuple[Solution, List[str]]]:
    """Solutions whose entire membership is among the candidates."""
    matches = []
    for solution in solutions:
        members = solution.projects
        if len(members) >= MIN_GROUP_SIZE and all(path in candidates for path in members):
            matches.append((solution, sorted(members)))
    matches.sort(key=lambda match: (-len(match[1]), match[0].path))
    return matches


def _partial_matches(
    candidates: Dict[str, Project], solutions: Iterable[Solution]
) -> List[Tuple[Solution, List[str]]]:
    """Solutions containing at least two candidates, largest intersection first."""
    matches = []
    for solution in solutions:
        members = sorted(path for path in solution.projects if path in candidates)
        if len(members) >= MIN_GROUP_SIZE:
            matches.append((solution, members))
    matches.sort(key=lambda match: (-len(match[1]), match[0].path))
    return matches


def _job_dependencies(plan: BatchPlan, graph: ProjectGraph) -> Dict[str, Set[str]]:
    """Job-level edges induced by project edges, keyed by job id."""
    job_of: Dict[str, str] = {}
    for job in plan.jobs():
        for project in job.projects:
            job_of[project.path] = job.id

    deps: Dict[str, Set[str]] = {job_id: set() for job_id in set(job_of.values())}
    for path, job_id in job_of.items():
        for dep in graph.dependencies(path):
            dep_job = job_of.get(dep)
            if dep_job is not None and dep_job != job_id:
                deps[job_id].add(dep_job)
    return deps


def _demote_cyclic_groups(plan: BatchPlan, graph: ProjectGraph) -> None:
    """Split solution groups whose collapse creates a job-level ordering cycle.

    A cycle made only of individual projects is left in place; the
    scheduler reports it as a configuration error.
    """
    while plan.solution_groups:
        deps = _job_dependencies(plan, graph)
        stuck = find_stuck(deps.keys(), deps)
        group_ids = {solution.path for solution, _ in plan.solution_groups}
        stuck_groups = group_ids & set(stuck)
        if not stuck_groups:
            return

        kept: List[Tuple[Solution, List[Project]]] = []
        for solution, members in plan.solution_groups:
            if solution.path in stuck_groups:
                logger.info(
                    f"Running {solution.name} members individually: batching would "
                    f"create a dependency cycle between jobs"
                )
                plan.individual.extend(members)
            else:
                kept.append((solution, members))
        plan.solution_groups = kept
        plan.solution_wide = None
        plan.individual.sort(key=lambda p: p.path)


def plan_batches(
    targets: Iterable[Project],
    solutions: Iterable[Solution],
    policy: str = SolutionPolicy.AUTO,
    build_only: Optional[Iterable[str]] = None,
    graph: Optional[ProjectGraph] = None,
) -> BatchPlan:
    """Partition targets into solution groups, individual jobs and build-only jobs.

    Args:
        targets: Projects that need to run.
        solutions: Discovered solutions.
        policy: One of SolutionPolicy.ALL.
        build_only: Paths of targets that only need to compile.
        graph: When given, groups that would introduce a job-level cycle
            are split back into individual jobs.

    Returns:
        BatchPlan. Every target appears in exactly one bucket.

    Raises:
        ConfigurationError: If ``policy`` is not a known policy.
    """
    if policy not in SolutionPolicy.ALL:
        raise ConfigurationError(
            f"Unknown solution policy '{policy}' (expected one of {', '.join(SolutionPolicy.ALL)})"
        )

    build_only_paths = set(build_only or ())
    solutions = list(solutions)
    plan = BatchPlan()
    candidates: Dict[str, Project] = {}
    for project in targets:
        if project.path in build_only_paths:
            plan.build_only.append(project)
        else:
            candidates[project.path] = project
    plan.build_only.sort(key=lambda p: p.path)

    if policy == SolutionPolicy.NEVER or len(candidates) < MIN_GROUP_SIZE:
        plan.individual = [candidates[path] for path in sorted(candidates)]
        return plan

    if not plan.build_only:
        for solution in solutions:
            if solution.projects == set(candidates):
                logger.debug(f"All {len(candidates)} targets form solution {solution.name}")
                plan.solution_wide = solution
                plan.solution_groups = [(solution, [candidates[path] for path in sorted(candidates)])]
                break

    if plan.solution_wide is None:
        if policy == SolutionPolicy.AUTO:
            matches = _full_matches(candidates, solutions)
        else:
            matches = _partial_matches(candidates, solutions)

        assigned: Set[str] = set()
        for solution, members in matches:
            if policy == SolutionPolicy.AUTO:
                if any(path in assigned for path in members):
                    continue
                chosen = members
            else:
                chosen = [path for path in members if path not in assigned]
                if len(chosen) < MIN_GROUP_SIZE:
                    continue
            plan.solution_groups.append((solution, [candidates[path] for path in chosen]))
            assigned.update(chosen)

        plan.individual = [candidates[path] for path in sorted(candidates) if path not in assigned]

    if graph is not None:
        _demote_cyclic_groups(plan, graph)

    logger.debug(
        f"Planned {len(plan.solution_groups)} solution groups, {len(plan.individual)} "
        f"individual and {len(plan.build_only)} build-only jobs (policy={policy})"
    )
    return plan

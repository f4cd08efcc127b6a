# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Engine facade: the API the CLI and the watch loop call.

An Engine is opened once per repository. It owns the parsed project graph,
the ignore rules, the persistent cache, the test selector and the scheduler,
and exposes:
- compute_affected(changed_paths)
- plan_batches(targets, policy, build_only)
- execute(plan, options)
- get_filter(project, changed_files, user_filter)
- lookup(key) / mark(key, ...)
- run(changed_paths, options): the whole incremental cycle

All calls are synchronous; concurrency lives inside the scheduler.
"""

import dataclasses
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from dotnet_incremental.args import build_only_args, command_args
from dotnet_incremental.cache import ContentCache
from dotnet_incremental.config import Config, DependencyCycleError
from dotnet_incremental.coverage_build import CoverageMapBuilder, ReportReader
from dotnet_incremental.hashing import compute_content_hash, hash_args, make_cache_key
from dotnet_incremental.ignore_rules import IgnoreRules
from dotnet_incremental.invoker import DotnetInvoker, Invoker
from dotnet_incremental.models import (
    BatchPlan,
    CacheEntry,
    FilterResult,
    JobKind,
    JobResult,
    Project,
    RunOptions,
    RunSummary,
    Solution,
)
from dotnet_incremental.output import extract_test_stats
from dotnet_incremental.project_graph import ProjectGraph, discover
from dotnet_incremental.scheduler import Scheduler
from dotnet_incremental.session import SessionContext
from dotnet_incremental.solution_grouper import plan_batches
from dotnet_incremental.testfilter.coverage_map import CoverageStatus, check_staleness, load_coverage_maps
from dotnet_incremental.testfilter.heuristics import parse_heuristics
from dotnet_incremental.testfilter.selector import TestSelector
from dotnet_incremental.watcher import ChangeCallback, ChangeWatcher

logger = logging.getLogger(__name__)

CACHE_DB_NAME = "cache.db"
SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600

# (previous failing output) -> filter expression narrowing a rerun, or ""
FailedTestFilter = Callable[[str], str]


class Engine:
    """Incremental execution engine for one repository.

    Usage:
        with Engine.open(repo_root) as engine:
            summary = engine.run(changed_paths, RunOptions.from_config(engine.config))
    """

    def __init__(
        self,
        root: Path,
        projects: Iterable[Project],
        solutions: Iterable[Solution] = (),
        config: Optional[Config] = None,
        invoker: Optional[Invoker] = None,
        cache: Optional[ContentCache] = None,
    ):
        """Initialize Engine from already-discovered descriptors.

        Args:
            root: Repository root.
            projects: Parsed project descriptors.
            solutions: Parsed solution descriptors.
            config: Configuration (defaults when None).
            invoker: Process-invocation collaborator (``dotnet`` when None).
            cache: Open cache store (opened under ``config.cache_dir`` when None).

        Raises:
            CacheStoreError: If the cache store cannot be opened.
        """
        self.root = Path(root).resolve()
        self.config = config if config is not None else Config.from_dict({})
        self.graph = ProjectGraph(projects)
        self.solutions: List[Solution] = list(solutions)
        self.rules = IgnoreRules(self.root, user_ignore_patterns=self.config.ignore_patterns)
        self.cache_dir = self.root / self.config.cache_dir
        self.cache = cache if cache is not None else ContentCache(self.cache_dir / CACHE_DB_NAME)
        self.invoker = invoker if invoker is not None else DotnetInvoker(self.root)
        self.coverage_maps = load_coverage_maps(self.cache_dir)
        self.selector = TestSelector(
            self.root,
            coverage_maps=self.coverage_maps,
            heuristics=parse_heuristics(self.config.heuristics),
        )
        self.scheduler = Scheduler(
            self.root,
            self.graph,
            self.cache,
            self.invoker,
            self.rules,
            selector=self.selector,
            progress_queue_size=self.config.progress_queue_size,
        )

        if self.config.cache_max_age_days > 0:
            self.cache.delete_old_entries(self.config.cache_max_age_days * SECONDS_PER_DAY)

        logger.info(
            f"Engine ready for {self.root}: {len(self.graph)} projects, "
            f"{len(self.solutions)} solutions, {len(self.coverage_maps)} coverage maps"
        )

    @classmethod
    def open(
        cls, repo_root: Path, config: Optional[Config] = None, invoker: Optional[Invoker] = None
    ) -> "Engine":
        """Discover projects and solutions under ``repo_root`` and open an engine.

        ``config`` defaults to ``<repo_root>/.dotnet_incremental.yml``.
        """
        root = Path(repo_root).resolve()
        if config is None:
            config = Config(root / ".dotnet_incremental.yml")
        projects, solutions = discover(root)
        return cls(root, projects, solutions, config=config, invoker=invoker)

    def close(self) -> None:
        self.cache.close()

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # Core API

    def compute_affected(self, changed_paths: Iterable[str]) -> Set[str]:
        """Projects owning a build-relevant changed path, plus all their dependents."""
        relevant = [path for path in changed_paths if self.rules.is_build_relevant(path)]
        return self.graph.compute_affected(self.graph.owning_projects(relevant))

    def plan_batches(
        self,
        targets: Iterable[Project],
        policy: Optional[str] = None,
        build_only: Optional[Iterable[str]] = None,
    ) -> BatchPlan:
        return plan_batches(
            targets,
            self.solutions,
            policy if policy is not None else self.config.solution,
            build_only=build_only,
            graph=self.graph,
        )

    def execute(
        self, plan: BatchPlan, options: RunOptions, session: Optional[SessionContext] = None
    ) -> RunSummary:
        return self.scheduler.execute(plan, options, session)

    def get_filter(self, project: Project, changed_files: Sequence[str], user_filter: str = "") -> FilterResult:
        return self.selector.get_filter(project, changed_files, user_filter)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        return self.cache.lookup(key)

    def mark(self, key: str, success: bool, output: Optional[bytes] = None, args_display: str = "") -> None:
        self.cache.mark(key, time.time(), success, output, args_display)

    def cache_key(self, project: Project, args: Sequence[str]) -> str:
        """Cache key for ``project`` under the current content and ``args``."""
        dirs = self.graph.relevant_dirs(project.path)
        return make_cache_key(compute_content_hash(self.root, dirs, self.rules), hash_args(args), project.path)

    # Incremental run

    def select_targets(self, candidates: Iterable[str], command: str) -> Tuple[List[Project], List[str]]:
        """Projects the command should run on, and which of them only need to build.

        For ``test``: the test projects among ``candidates`` plus untested
        non-test projects (build-only). Any other command runs on every
        candidate.
        """
        candidate_set = set(candidates)
        projects = [p for p in self.graph.projects if p.path in candidate_set]
        if command != "test":
            return projects, []

        untested = {p.path for p in self.graph.find_untested_projects()}
        targets = [p for p in projects if p.is_test or p.path in untested]
        build_only = sorted(p.path for p in targets if not p.is_test)
        return targets, build_only

    def _job_args(self, options: RunOptions, build_only: bool) -> List[str]:
        if build_only:
            return build_only_args(options.extra_args)
        return command_args(options.command, options.extra_args, options.coverage)

    def _restrict_to_failed(
        self,
        targets: List[Project],
        build_only: List[str],
        options: RunOptions,
        failed_test_filter: Optional[FailedTestFilter],
    ) -> Tuple[List[Project], Dict[str, str]]:
        build_only_set = set(build_only)
        failed_outputs: Dict[str, bytes] = {}
        for entry in self.cache.get_failed(hash_args(self._job_args(options, build_only=False))):
            if entry.project_path not in build_only_set:
                failed_outputs[entry.project_path] = entry.output
        if build_only_set:
            for entry in self.cache.get_failed(hash_args(self._job_args(options, build_only=True))):
                if entry.project_path in build_only_set:
                    failed_outputs[entry.project_path] = entry.output

        kept = [p for p in targets if p.path in failed_outputs]
        filters: Dict[str, str] = dict(options.failed_test_filters)
        if failed_test_filter is not None:
            for project in kept:
                if project.path in build_only_set:
                    continue
                expression = failed_test_filter(failed_outputs[project.path].decode("utf-8", errors="replace"))
                if expression:
                    filters[project.path] = expression
        logger.info(f"Rerunning {len(kept)} previously failed project(s)")
        return kept, filters

    def _drop_cached(
        self, targets: List[Project], build_only: List[str], options: RunOptions
    ) -> Tuple[List[Project], List[JobResult]]:
        build_only_set = set(build_only)
        remaining: List[Project] = []
        cached: List[JobResult] = []
        for project in targets:
            is_build_only = project.path in build_only_set
            entry = self.cache.lookup(self.cache_key(project, self._job_args(options, is_build_only)))
            if entry is None or (options.print_output and not entry.output):
                remaining.append(project)
                continue
            output = entry.output_text()
            cached.append(
                JobResult(
                    job_id=project.path,
                    kind=JobKind.BUILD_ONLY if is_build_only else JobKind.PROJECT,
                    name=project.name,
                    project_paths=[project.path],
                    success=True,
                    output=output,
                    cached=True,
                    stats=extract_test_stats(output),
                )
            )
        return remaining, cached

    def _warn_stale_coverage(self, session: SessionContext) -> None:
        if not self.coverage_maps:
            return
        report = check_staleness(
            self.root, self.coverage_maps, self.config.coverage_max_age_hours * SECONDS_PER_HOUR
        )
        if report.status == CoverageStatus.STALE:
            detail = f"{len(report.changed_files)} covered file(s) changed" if report.changed_files else "too old"
            session.warn_once(
                "stale-coverage",
                f"Coverage maps are stale ({detail}); test selection may be less precise until they are rebuilt",
            )

    def run(
        self,
        changed_paths: Optional[Iterable[str]],
        options: RunOptions,
        failed_test_filter: Optional[FailedTestFilter] = None,
    ) -> RunSummary:
        """Run the command on every project the changes can affect.

        Args:
            changed_paths: Repo-relative changed files; None considers every
                project and relies on the cache alone.
            options: Run options; not mutated.
            failed_test_filter: With ``options.failed_only``, maps a
                project's previous failing output to a narrowing filter.

        Returns:
            RunSummary with cached results first, then executed ones.

        Raises:
            DependencyCycleError: If the targets contain a dependency cycle.
            CacheStoreError: If the cache store fails.
        """
        session = SessionContext()
        self._warn_stale_coverage(session)

        if changed_paths is None or options.failed_only:
            changed: List[str] = sorted({p.replace("\\", "/") for p in changed_paths or ()})
            candidates: Set[str] = {p.path for p in self.graph.projects}
        else:
            changed = sorted({p.replace("\\", "/") for p in changed_paths})
            candidates = self.compute_affected(changed)

        targets, build_only = self.select_targets(candidates, options.command)

        stuck = self.graph.find_cycle(p.path for p in targets)
        if stuck:
            raise DependencyCycleError(stuck)

        failed_filters = dict(options.failed_test_filters)
        if options.failed_only:
            targets, failed_filters = self._restrict_to_failed(targets, build_only, options, failed_test_filter)

        run_options = dataclasses.replace(
            options, changed_files=changed, failed_test_filters=failed_filters
        )

        cached: List[JobResult] = []
        if not options.force:
            targets, cached = self._drop_cached(targets, build_only, run_options)
        remaining = {p.path for p in targets}
        build_only = [path for path in build_only if path in remaining]

        logger.info(f"{len(targets)} project(s) to run, {len(cached)} cached")
        summary = RunSummary(results=list(cached))
        if not targets:
            return summary

        plan = self.plan_batches(targets, options.solution_policy, build_only)
        executed = self.execute(plan, run_options, session)
        summary.results.extend(executed.results)
        summary.not_run = executed.not_run
        summary.cancelled = executed.cancelled
        return summary

    # Coverage maps and watch mode

    def build_coverage_maps(
        self, report_reader: ReportReader, projects: Optional[Iterable[Project]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """Generate coverage maps for test projects and start using them.

        Returns:
            Number of maps built.
        """
        builder = CoverageMapBuilder(
            self.root,
            self.invoker,
            self.cache_dir,
            report_reader,
            granularity=self.config.coverage_granularity,
            workers=self.config.parallel,
        )
        built = builder.build(projects if projects is not None else self.graph.projects, cancel)
        self.coverage_maps.update(built)
        self.selector.coverage_maps.update(built)
        return len(built)

    def create_watcher(self, on_change: ChangeCallback) -> ChangeWatcher:
        """Watcher over this repository using the engine's ignore rules."""
        return ChangeWatcher(self.root, self.rules, on_change, debounce_ms=self.config.watch_debounce_ms)

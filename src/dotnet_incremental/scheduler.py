# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Dependency-aware parallel execution of a BatchPlan.

Architecture:
- The control loop (the calling thread) owns every piece of mutable
  scheduling state: pending-dependency counts, the ready queue, the
  in-flight set and the result list. It mutates that state only in response
  to messages on the results queue.
- Worker threads pull one job at a time from the intake queue, run it
  (cache lookup, test selection, skip-build/skip-restore checks, invocation,
  retries) and post a completion message. They never touch scheduling state.
- Cache writes for finished jobs happen on the control loop as completion
  messages arrive.
- Progress lines go through a bounded queue with put_nowait; when it is
  full, lines are dropped so progress can never block a worker.

Ordering: a job is handed to a worker only after every same-plan job it
depends on has completed. Jobs outside the plan are treated as satisfied.

Failure policy:
- default: a failure marker in streamed output pauses dispatch; the first
  failed job cancels every in-flight invocation (process groups killed)
  and nothing new starts.
- keep_going: failures are recorded, dependents still run, nothing is
  cancelled.
"""

import logging
import os
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from dotnet_incremental.args import (
    COVERAGE_FLAG,
    QUIET_WARNINGS_FLAG,
    and_filters,
    build_only_args,
    command_args,
    extract_filter,
    filter_build_args,
    filter_display_args,
    remove_filter,
)
from dotnet_incremental.cache import ContentCache
from dotnet_incremental.config import DependencyCycleError
from dotnet_incremental.hashing import (
    can_skip_build,
    can_skip_restore,
    compute_content_hash,
    hash_args,
    make_cache_key,
    touch_restore_manifest,
)
from dotnet_incremental.ignore_rules import IgnoreRules
from dotnet_incremental.invoker import InvocationError, InvocationResult, Invoker
from dotnet_incremental.logging_setup import log_fields
from dotnet_incremental.models import (
    BatchPlan,
    FilterResult,
    Job,
    JobKind,
    JobResult,
    Project,
    RunOptions,
    RunSummary,
)
from dotnet_incremental.output import (
    extract_test_stats,
    filter_matched_nothing,
    is_failure_line,
    needs_restore_retry,
)
from dotnet_incremental.project_graph import ProjectGraph, filter_files_to_project, find_stuck
from dotnet_incremental.session import SessionContext
from dotnet_incremental.testfilter.selector import TestSelector

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_QUEUE_SIZE = 256
POLL_INTERVAL = 0.1

# Results-queue message kinds
_DONE = "done"
_FAILURE_SEEN = "failure_seen"
_ERROR = "error"


@dataclass
class _CacheMark:
    key: str
    success: bool
    output: Optional[bytes]
    args_display: str


@dataclass
class _Completion:
    """Everything a worker reports back for one job."""

    job_id: str
    result: JobResult
    marks: List[_CacheMark] = field(default_factory=list)
    touch: List[Project] = field(default_factory=list)
    diagnostics: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class _RunContext:
    """Per-execute state shared read-only with workers (plus thread-safe queues/events)."""

    options: RunOptions
    intake: "queue.Queue[Optional[Job]]"
    results: "queue.Queue[tuple]"
    progress: "queue.Queue[Tuple[str, str]]"
    cancel: threading.Event


def job_dependencies(jobs: List[Job], graph: ProjectGraph) -> Dict[str, List[str]]:
    """Same-plan job dependencies derived from member project edges."""
    job_of: Dict[str, str] = {}
    for job in jobs:
        for project in job.projects:
            job_of[project.path] = job.id

    deps: Dict[str, List[str]] = {}
    for job in jobs:
        found: Set[str] = set()
        for project in job.projects:
            for dep in graph.dependencies(project.path):
                dep_job = job_of.get(dep)
                if dep_job is not None and dep_job != job.id:
                    found.add(dep_job)
        deps[job.id] = sorted(found)
    return deps


def _outcome(result: JobResult) -> str:
    if result.cancelled:
        return "cancelled"
    if result.cached:
        return "cached"
    if result.skipped_by_filter:
        return "skipped"
    return "passed" if result.success else "failed"


class Scheduler:
    """Runs a BatchPlan through a dependency-gated worker pool.

    Usage:
        scheduler = Scheduler(root, graph, cache, invoker, rules, selector)
        summary = scheduler.execute(plan, RunOptions(parallel=4))
    """

    def __init__(
        self,
        root: Path,
        graph: ProjectGraph,
        cache: ContentCache,
        invoker: Invoker,
        rules: IgnoreRules,
        selector: Optional[TestSelector] = None,
        progress_queue_size: int = DEFAULT_PROGRESS_QUEUE_SIZE,
    ):
        self.root = Path(root)
        self.graph = graph
        self.cache = cache
        self.invoker = invoker
        self.rules = rules
        self.selector = selector
        self.progress_queue_size = progress_queue_size

    def execute(
        self, plan: BatchPlan, options: RunOptions, session: Optional[SessionContext] = None
    ) -> RunSummary:
        """Run every job in ``plan``.

        Raises:
            DependencyCycleError: If the plan's jobs contain a dependency cycle
                (raised before anything is dispatched).
            CacheStoreError: If the cache store fails; in-flight work is
                cancelled first.
            KeyboardInterrupt: Re-raised after in-flight work is cancelled.
        """
        session = session if session is not None else SessionContext()
        jobs = plan.jobs()
        summary = RunSummary()
        if not jobs:
            return summary

        deps = job_dependencies(jobs, self.graph)
        stuck = find_stuck([job.id for job in jobs], deps)
        if stuck:
            raise DependencyCycleError(stuck)

        workers_wanted = options.parallel if options.parallel > 0 else (os.cpu_count() or 1)
        worker_count = max(1, min(workers_wanted, len(jobs)))

        ctx = _RunContext(
            options=options,
            intake=queue.Queue(),
            results=queue.Queue(),
            progress=queue.Queue(maxsize=max(1, self.progress_queue_size)),
            cancel=threading.Event(),
        )

        logger.info(f"Executing {len(jobs)} jobs with {worker_count} workers")
        threads = [
            threading.Thread(target=self._worker, args=(ctx,), name=f"scheduler-worker-{i}", daemon=True)
            for i in range(worker_count)
        ]
        for thread in threads:
            thread.start()

        try:
            self._control_loop(jobs, deps, worker_count, ctx, summary, session)
        except BaseException:
            ctx.cancel.set()
            raise
        finally:
            for _ in threads:
                ctx.intake.put(None)
            for thread in threads:
                thread.join()
            self._drain_progress(ctx)

        return summary

    def _control_loop(
        self,
        jobs: List[Job],
        deps: Dict[str, List[str]],
        worker_count: int,
        ctx: _RunContext,
        summary: RunSummary,
        session: SessionContext,
    ) -> None:
        options = ctx.options
        job_by_id = {job.id: job for job in jobs}
        pending = {job_id: len(job_deps) for job_id, job_deps in deps.items()}
        dependents: Dict[str, List[str]] = {job.id: [] for job in jobs}
        for job_id, job_deps in deps.items():
            for dep in job_deps:
                dependents[dep].append(job_id)

        ready: Deque[str] = deque(sorted(job_id for job_id, count in pending.items() if count == 0))
        in_flight: Set[str] = set()
        paused_by: Set[str] = set()
        finished: Set[str] = set()

        def dispatch() -> None:
            while ready and len(in_flight) < worker_count and not paused_by and not ctx.cancel.is_set():
                job_id = ready.popleft()
                in_flight.add(job_id)
                ctx.intake.put(job_by_id[job_id])

        dispatch()
        while in_flight:
            if options.cancel_event is not None and options.cancel_event.is_set() and not ctx.cancel.is_set():
                logger.info("Cancellation requested, stopping in-flight jobs")
                summary.cancelled = True
                ctx.cancel.set()

            try:
                message = ctx.results.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                self._drain_progress(ctx)
                continue
            self._drain_progress(ctx)

            kind = message[0]
            if kind == _FAILURE_SEEN:
                if not options.keep_going and message[1] in in_flight:
                    paused_by.add(message[1])
                continue
            if kind == _ERROR:
                _, job_id, error = message
                in_flight.discard(job_id)
                raise error

            completion: _Completion = message[1]
            job_id = completion.job_id
            in_flight.discard(job_id)
            paused_by.discard(job_id)
            finished.add(job_id)
            result = completion.result
            summary.results.append(result)

            self._record(completion, session)

            if not result.success and not result.cancelled and not options.keep_going:
                if not ctx.cancel.is_set():
                    logger.info(f"{result.name} failed, cancelling remaining jobs")
                ctx.cancel.set()

            for dependent in dependents[job_id]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    ready.append(dependent)
            dispatch()

        summary.not_run = sorted(job.id for job in jobs if job.id not in finished)

    def _record(self, completion: _Completion, session: SessionContext) -> None:
        """Apply a completion's side effects: cache marks, manifest touches, diagnostics."""
        now = time.time()
        for mark in completion.marks:
            self.cache.mark(mark.key, now, mark.success, mark.output, mark.args_display)
        for project in completion.touch:
            touch_restore_manifest(self.root, project)
        for key, message in completion.diagnostics:
            session.warn_once(key, message)

    def _drain_progress(self, ctx: _RunContext) -> None:
        callback = ctx.options.on_progress
        while True:
            try:
                name, line = ctx.progress.get_nowait()
            except queue.Empty:
                return
            if callback is not None:
                callback(name, line)
            else:
                logger.debug(f"[{name}] {line}")

    @staticmethod
    def _progress(ctx: _RunContext, name: str, line: str) -> None:
        try:
            ctx.progress.put_nowait((name, line))
        except queue.Full:
            pass  # dropped

    def _worker(self, ctx: _RunContext) -> None:
        while True:
            job = ctx.intake.get()
            if job is None:
                return
            fields = {
                "job": job.id,
                "kind": job.kind,
                "projects": [p.path for p in job.projects],
                "command": ctx.options.command,
            }
            logger.debug(f"[{job.name}] started", extra=log_fields(**fields))
            try:
                completion = self._run_job(job, ctx)
            except Exception as e:
                logger.error(f"[{job.name}] job crashed: {e}", extra=log_fields(**fields))
                ctx.results.put((_ERROR, job.id, e))
                continue
            result = completion.result
            logger.info(
                f"[{job.name}] {_outcome(result)} in {result.duration:.1f}s",
                extra=log_fields(
                    **fields,
                    success=result.success,
                    cached=result.cached,
                    cancelled=result.cancelled,
                    filtered=result.filtered,
                    duration=round(result.duration, 3),
                ),
            )
            ctx.results.put((_DONE, completion))

    def _run_job(self, job: Job, ctx: _RunContext) -> _Completion:
        if ctx.cancel.is_set():
            now = time.monotonic()
            return _Completion(
                job_id=job.id,
                result=self._new_result(job, success=False, cancelled=True, started_at=now, finished_at=now),
            )
        if job.kind == JobKind.SOLUTION:
            return self._run_solution(job, ctx)
        return self._run_project(job, ctx)

    @staticmethod
    def _new_result(job: Job, **fields) -> JobResult:
        return JobResult(
            job_id=job.id,
            kind=job.kind,
            name=job.name,
            project_paths=[p.path for p in job.projects],
            **fields,
        )

    def _line_handler(self, job: Job, ctx: _RunContext) -> Callable[[str], None]:
        """Streamed-output callback that signals the first failure marker once."""
        signalled = [ctx.options.keep_going]

        def on_line(line: str) -> None:
            if not signalled[0] and is_failure_line(line):
                signalled[0] = True
                ctx.results.put((_FAILURE_SEEN, job.id))

        return on_line

    def _invoke(
        self, job: Job, verb: str, flags: List[str], ctx: _RunContext, diagnostics: List[Tuple[str, str]]
    ) -> InvocationResult:
        try:
            return self.invoker.invoke(job.target, verb, flags, self._line_handler(job, ctx), ctx.cancel)
        except InvocationError as e:
            diagnostics.append(("invocation-error", str(e)))
            return InvocationResult(exit_code=-1, output=f"{e}\n", duration=0.0)

    def _content_key(self, project: Project, args_hash: str) -> str:
        dirs = self.graph.relevant_dirs(project.path)
        return make_cache_key(compute_content_hash(self.root, dirs, self.rules), args_hash, project.path)

    def _usable_hit(self, key: str, options: RunOptions) -> Optional[str]:
        """Cached output for ``key`` if the hit can satisfy this run, else None."""
        entry = self.cache.lookup(key)
        if entry is None:
            return None
        if options.print_output and not entry.output:
            return None
        return entry.output_text()

    def _select_filter(
        self, project: Project, ctx: _RunContext, dirs: List[str], user_filter: str
    ) -> Optional[FilterResult]:
        if self.selector is None or not project.is_test or not ctx.options.changed_files:
            return None
        changed = [
            path
            for path in filter_files_to_project(ctx.options.changed_files, dirs)
            if self.rules.is_build_relevant(path)
        ]
        if not changed:
            return None
        return self.selector.get_filter(project, changed, user_filter)

    def _run_project(self, job: Job, ctx: _RunContext) -> _Completion:
        options = ctx.options
        project = job.projects[0]
        build_only = job.kind == JobKind.BUILD_ONLY
        verb = "build" if build_only else options.command
        started_at = time.monotonic()

        cache_args = build_only_args(options.extra_args) if build_only else command_args(
            options.command, options.extra_args, options.coverage
        )
        args_display = " ".join(filter_display_args(cache_args))
        key = self._content_key(project, hash_args(cache_args))

        if not options.force:
            cached_output = self._usable_hit(key, options)
            if cached_output is not None:
                return _Completion(
                    job_id=job.id,
                    result=self._new_result(
                        job,
                        success=True,
                        cached=True,
                        output=cached_output,
                        started_at=started_at,
                        finished_at=time.monotonic(),
                        stats=extract_test_stats(cached_output),
                    ),
                )

        dirs = self.graph.relevant_dirs(project.path)
        extra = filter_build_args(options.extra_args) if build_only else list(options.extra_args)
        user_filter = "" if build_only else extract_filter(extra)

        flags = [QUIET_WARNINGS_FLAG]
        skipped_build = skipped_restore = False
        if not options.full_build:
            if verb == "test" and can_skip_build(self.root, project, dirs, self.rules):
                flags.append("--no-build")
                skipped_build = True
            elif can_skip_restore(self.root, project, dirs):
                flags.append("--no-restore")
                skipped_restore = True
        if options.coverage and verb == "test":
            flags.append(COVERAGE_FLAG)

        computed_filter = ""
        matched_tests: List[str] = []
        if verb == "test":
            selection = self._select_filter(project, ctx, dirs, user_filter)
            if selection is not None and selection.excluded_by_user_filter:
                self._progress(ctx, job.name, f"skipped: {selection.reason}")
                return _Completion(
                    job_id=job.id,
                    result=self._new_result(
                        job,
                        success=True,
                        skipped_by_filter=True,
                        started_at=started_at,
                        finished_at=time.monotonic(),
                    ),
                )
            if selection is not None and selection.can_filter:
                computed_filter = selection.filter_expression
                matched_tests = list(selection.matched_tests)
            computed_filter = and_filters(computed_filter, options.failed_test_filters.get(project.path, ""))

        def with_filter(ours: str) -> List[str]:
            combined = and_filters(ours, user_filter)
            if not combined:
                return flags + extra
            return flags + remove_filter(extra) + ["--filter", combined]

        diagnostics: List[Tuple[str, str]] = []
        self._progress(ctx, job.name, f"{verb} started")
        result = self._invoke(job, verb, with_filter(computed_filter), ctx, diagnostics)

        restore_retried = False
        if not result.success and not result.cancelled and skipped_restore and needs_restore_retry(result.output):
            self._progress(ctx, job.name, "restore needed, retrying with restore")
            flags.remove("--no-restore")
            skipped_restore = False
            restore_retried = True
            result = self._invoke(job, verb, with_filter(computed_filter), ctx, diagnostics)

        filtered = bool(computed_filter)
        if filtered and not result.cancelled and filter_matched_nothing(result.output):
            self._progress(ctx, job.name, "filter matched no tests, rerunning unfiltered")
            filtered = False
            matched_tests = []
            result = self._invoke(job, verb, with_filter(""), ctx, diagnostics)

        finished_at = time.monotonic()
        success = result.success
        self._progress(ctx, job.name, f"{'passed' if success else 'failed'} in {result.duration:.1f}s")

        job_result = self._new_result(
            job,
            success=success,
            output=result.output,
            duration=finished_at - started_at,
            cancelled=result.cancelled,
            skipped_build=skipped_build,
            skipped_restore=skipped_restore,
            restore_retried=restore_retried,
            filtered=filtered,
            matched_tests=matched_tests,
            started_at=started_at,
            finished_at=finished_at,
            stats=extract_test_stats(result.output),
        )
        completion = _Completion(job_id=job.id, result=job_result, diagnostics=diagnostics)
        if not result.cancelled:
            completion.marks.append(
                _CacheMark(key=key, success=success, output=result.output.encode("utf-8"), args_display=args_display)
            )
            if success:
                completion.touch.append(project)
        return completion

    def _run_solution(self, job: Job, ctx: _RunContext) -> _Completion:
        options = ctx.options
        started_at = time.monotonic()
        cache_args = command_args(options.command, options.extra_args, options.coverage)
        args_hash = hash_args(cache_args)
        args_display = " ".join(filter_display_args(cache_args))
        keys = [self._content_key(project, args_hash) for project in job.projects]

        if not options.force and all(self._usable_hit(key, options) is not None for key in keys):
            return _Completion(
                job_id=job.id,
                result=self._new_result(
                    job, success=True, cached=True, started_at=started_at, finished_at=time.monotonic()
                ),
            )

        flags = [QUIET_WARNINGS_FLAG, "-clp:ErrorsOnly"]
        if options.coverage and options.command == "test":
            flags.append(COVERAGE_FLAG)
        flags.extend(options.extra_args)

        diagnostics: List[Tuple[str, str]] = []
        self._progress(ctx, job.name, f"{options.command} started ({len(job.projects)} projects)")
        # Solution runs take no skip-build/skip-restore flags and get no restore retry
        result = self._invoke(job, options.command, flags, ctx, diagnostics)
        finished_at = time.monotonic()
        self._progress(ctx, job.name, f"{'passed' if result.success else 'failed'} in {result.duration:.1f}s")

        completion = _Completion(
            job_id=job.id,
            result=self._new_result(
                job,
                success=result.success,
                output=result.output,
                duration=finished_at - started_at,
                cancelled=result.cancelled,
                started_at=started_at,
                finished_at=finished_at,
                stats=extract_test_stats(result.output),
            ),
            diagnostics=diagnostics,
        )
        if not result.cancelled:
            completion.marks.extend(
                _CacheMark(key=key, success=result.success, output=None, args_display=args_display)
                for key in keys
            )
        return completion

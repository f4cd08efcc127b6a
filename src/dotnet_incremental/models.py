# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Core data models for the incremental execution engine.

This module defines the data structures shared by every layer:
- Project / Solution: parsed build descriptors, immutable for a run
- CacheEntry / FailedEntry / CacheStats: persisted job outcomes
- FilterResult: one test-selection decision
- Job / BatchPlan: what the scheduler is asked to run
- JobResult / RunSummary: what the scheduler reports back
- RunOptions: per-invocation knobs

Policies and job kinds are plain string constants (not Enum) so they
serialize into logs and JSON without conversion.
"""

import logging
import posixpath
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, List, Optional, Tuple

if TYPE_CHECKING:
    from dotnet_incremental.config import Config

logger = logging.getLogger(__name__)


class SolutionPolicy:
    """Solution batching policies.

    Design: Using class constants (not Enum) for JSON-compatible strings.
    """

    AUTO = "auto"  # batch only when every member is a target
    FORCE = "force"  # batch when at least two members are targets
    NEVER = "never"  # always run per project

    ALL = (AUTO, FORCE, NEVER)


class JobKind:
    """Kinds of scheduled jobs."""

    PROJECT = "project"
    BUILD_ONLY = "build_only"
    SOLUTION = "solution"


@dataclass(frozen=True)
class Project:
    """A parsed project descriptor.

    Paths are repository-root-relative and use forward slashes. ``references``
    holds the resolved paths of referenced projects (dependency edges), which
    may point outside the scanned set.
    """

    path: str
    name: str
    dir: str
    is_test: bool = False
    references: Tuple[str, ...] = ()
    package_references: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "path": self.path,
            "name": self.name,
            "dir": self.dir,
            "is_test": self.is_test,
            "references": list(self.references),
            "package_references": list(self.package_references),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        """Deserialize from JSON-compatible dict.

        Raises:
            KeyError: If ``path`` is missing.
        """
        path = data["path"]
        return cls(
            path=path,
            name=data.get("name") or posixpath.splitext(posixpath.basename(path))[0],
            dir=data.get("dir") or (posixpath.dirname(path) or "."),
            is_test=bool(data.get("is_test", False)),
            references=tuple(data.get("references", ())),
            package_references=tuple(data.get("package_references", ())),
        )


@dataclass(frozen=True)
class Solution:
    """A solution descriptor and the project paths it lists."""

    path: str
    projects: FrozenSet[str] = frozenset()

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)


@dataclass
class CacheEntry:
    """Persisted outcome of one job for one (content, args, project) key.

    Overwritten wholesale on every mark; ``created_at`` records the first
    time the key was written.
    """

    success: bool
    output: bytes
    last_run: float
    args_display: str = ""
    created_at: float = 0.0

    def output_text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


@dataclass
class FailedEntry:
    """A project whose most recent run under some args hash failed."""

    project_path: str
    output: bytes


@dataclass
class CacheStats:
    """Summary statistics for the persistent cache."""

    total_entries: int = 0
    failed_entries: int = 0
    oldest_entry: Optional[float] = None
    newest_entry: Optional[float] = None
    db_size_bytes: int = 0


@dataclass
class FilterResult:
    """Outcome of one test-selection decision.

    ``filter_expression`` is only meaningful when ``can_filter`` is True.
    ``reason`` is always filled in for diagnostics.
    """

    can_filter: bool
    filter_expression: str = ""
    matched_tests: List[str] = field(default_factory=list)
    reason: str = ""
    excluded_by_user_filter: bool = False
    excluded_traits: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_filter": self.can_filter,
            "filter_expression": self.filter_expression,
            "matched_tests": list(self.matched_tests),
            "reason": self.reason,
            "excluded_by_user_filter": self.excluded_by_user_filter,
            "excluded_traits": list(self.excluded_traits),
        }


@dataclass(frozen=True)
class Job:
    """A unit of scheduled work: one project, or one solution-level invocation."""

    id: str
    kind: str
    projects: Tuple[Project, ...]
    solution: Optional[Solution] = None

    @property
    def name(self) -> str:
        if self.solution is not None:
            return self.solution.name
        return self.projects[0].name

    @property
    def target(self) -> str:
        """Path handed to the external tool."""
        if self.solution is not None:
            return self.solution.path
        return self.projects[0].path


@dataclass
class BatchPlan:
    """Partition of a target set into solution groups and per-project jobs.

    ``solution_wide`` is set on the fast path, when a single solution's full
    membership equals the whole target set.
    """

    solution_groups: List[Tuple[Solution, List[Project]]] = field(default_factory=list)
    individual: List[Project] = field(default_factory=list)
    build_only: List[Project] = field(default_factory=list)
    solution_wide: Optional[Solution] = None

    def jobs(self) -> List[Job]:
        """Materialize the plan as scheduler jobs."""
        jobs: List[Job] = []
        for solution, members in self.solution_groups:
            jobs.append(
                Job(
                    id=solution.path,
                    kind=JobKind.SOLUTION,
                    projects=tuple(sorted(members, key=lambda p: p.path)),
                    solution=solution,
                )
            )
        for project in self.individual:
            jobs.append(Job(id=project.path, kind=JobKind.PROJECT, projects=(project,)))
        for project in self.build_only:
            jobs.append(Job(id=project.path, kind=JobKind.BUILD_ONLY, projects=(project,)))
        return jobs

    def project_paths(self) -> List[str]:
        paths = [p.path for _, members in self.solution_groups for p in members]
        paths.extend(p.path for p in self.individual)
        paths.extend(p.path for p in self.build_only)
        return sorted(paths)

    def is_empty(self) -> bool:
        return not (self.solution_groups or self.individual or self.build_only)


@dataclass
class TestStats:
    """Counts parsed from a ``Failed: N, Passed: N, Skipped: N, Total: N`` summary."""

    __test__ = False  # keep pytest from collecting this class

    failed: int
    passed: int
    skipped: int
    total: int

    def format(self) -> str:
        return (
            f"Failed: {self.failed:2d}  Passed: {self.passed:3d}  "
            f"Skipped: {self.skipped:2d}  Total: {self.total:3d}"
        )


@dataclass
class JobResult:
    """Outcome of one scheduled job."""

    job_id: str
    kind: str
    name: str
    project_paths: List[str]
    success: bool
    output: str = ""
    duration: float = 0.0
    cached: bool = False
    cancelled: bool = False
    skipped_build: bool = False
    skipped_restore: bool = False
    restore_retried: bool = False
    filtered: bool = False
    matched_tests: List[str] = field(default_factory=list)
    skipped_by_filter: bool = False
    started_at: float = 0.0
    finished_at: float = 0.0
    stats: Optional[TestStats] = None

    @property
    def executed(self) -> bool:
        """True if the external tool actually ran for this job."""
        return not (self.cached or self.skipped_by_filter)


@dataclass
class RunSummary:
    """Aggregated outcome of one execute/run call."""

    results: List[JobResult] = field(default_factory=list)
    not_run: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> List[JobResult]:
        return [r for r in self.results if not r.success]

    @property
    def succeeded(self) -> List[JobResult]:
        return [r for r in self.results if r.success]

    @property
    def cached(self) -> List[JobResult]:
        return [r for r in self.results if r.cached]

    @property
    def executed(self) -> List[JobResult]:
        return [r for r in self.results if r.executed]

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.not_run and all(r.success for r in self.results)

    def result_for(self, job_id: str) -> Optional[JobResult]:
        for result in self.results:
            if result.job_id == job_id:
                return result
        return None


@dataclass
class RunOptions:
    """Per-invocation options for execute/run.

    ``changed_files`` are repository-relative paths used for test selection.
    ``failed_test_filters`` maps a project path to a filter expression
    narrowing it to previously failed tests.
    """

    command: str = "test"
    extra_args: List[str] = field(default_factory=list)
    parallel: int = 0
    keep_going: bool = False
    force: bool = False
    full_build: bool = False
    coverage: bool = False
    print_output: bool = False
    solution_policy: str = SolutionPolicy.AUTO
    failed_only: bool = False
    changed_files: List[str] = field(default_factory=list)
    failed_test_filters: Dict[str, str] = field(default_factory=dict)
    on_progress: Optional[Callable[[str, str], None]] = None
    cancel_event: Optional[Any] = None  # threading.Event shared with the caller

    @classmethod
    def from_config(cls, config: "Config", **overrides: Any) -> "RunOptions":
        """Build options from configuration values, then apply overrides."""
        options = cls(
            parallel=config.parallel,
            keep_going=config.keep_going,
            force=config.force,
            full_build=config.full_build,
            coverage=config.coverage,
            print_output=config.print_output,
            solution_policy=config.solution,
        )
        for key, value in overrides.items():
            if not hasattr(options, key):
                raise TypeError(f"Unknown run option '{key}'")
            setattr(options, key, value)
        return options

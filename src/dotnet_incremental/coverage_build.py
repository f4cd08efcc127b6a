# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Explicit per-test coverage map generation.

For each test project:
1. list its tests through the invoker (``test --list-tests --no-build``)
2. group them by method or by class
3. run each group with coverage collection into a private results directory
4. ask the coverage-report reader which repo files the group executed
5. record the group's tests as covering those files

Groups run in parallel on a thread pool; results are merged on the calling
thread only. The map is saved every ``save_interval`` groups and once at the
end, and a rerun resumes from the tests an existing map already recorded.
Parsing raw coverage reports is delegated to the injected reader.
"""

import concurrent.futures
import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from dotnet_incremental.invoker import InvocationError, Invoker
from dotnet_incremental.models import Project
from dotnet_incremental.testfilter.coverage_map import CoverageMap, coverage_map_path

logger = logging.getLogger(__name__)

# (results directory, repo root) -> covered repo-relative files, or None when no report was produced
ReportReader = Callable[[Path, Path], Optional[Iterable[str]]]

TEST_LIST_HEADER = "The following Tests are available:"
_TEST_LINE_RE = re.compile(r"^\s{4}(\S.+)$")

GRANULARITY_METHOD = "method"
GRANULARITY_CLASS = "class"


@dataclass
class TestGroup:
    """Tests run together in one coverage invocation."""

    __test__ = False  # keep pytest from collecting this class

    name: str
    tests: List[str]
    filter: str


def parse_test_list(output: str) -> List[str]:
    """Test names printed after the ``--list-tests`` header."""
    tests: List[str] = []
    in_list = False
    for line in output.splitlines():
        if TEST_LIST_HEADER in line:
            in_list = True
            continue
        if in_list:
            match = _TEST_LINE_RE.match(line)
            if match:
                tests.append(match.group(1).strip())
    return tests


def base_test_name(test: str) -> str:
    """Strip a parameter list: ``Ns.C.M(x: 1)`` -> ``Ns.C.M``."""
    paren = test.find("(")
    return test[:paren] if paren > 0 else test


def class_of_test(test: str) -> str:
    base = base_test_name(test)
    dot = base.rfind(".")
    return base[:dot] if dot > 0 else base


def group_tests(tests: Iterable[str], granularity: str) -> List[TestGroup]:
    """Group tests for coverage runs.

    Raises:
        ValueError: If ``granularity`` is unknown.
    """
    if granularity == GRANULARITY_METHOD:
        return [TestGroup(name=t, tests=[t], filter=f"FullyQualifiedName={t}") for t in tests]
    if granularity != GRANULARITY_CLASS:
        raise ValueError(f"Unknown coverage granularity '{granularity}'")

    by_class: Dict[str, List[str]] = {}
    for test in tests:
        by_class.setdefault(class_of_test(test), []).append(test)
    return [
        TestGroup(name=name, tests=members, filter=f"FullyQualifiedName~{name}")
        for name, members in sorted(by_class.items())
    ]


class CoverageMapBuilder:
    """Builds and persists coverage maps for test projects."""

    def __init__(
        self,
        root: Path,
        invoker: Invoker,
        cache_dir: Path,
        report_reader: ReportReader,
        granularity: str = GRANULARITY_CLASS,
        workers: int = 0,
        save_interval: int = 10,
    ):
        self.root = Path(root)
        self.invoker = invoker
        self.cache_dir = Path(cache_dir)
        self.report_reader = report_reader
        self.granularity = granularity
        self.workers = workers if workers > 0 else (os.cpu_count() or 1)
        self.save_interval = max(1, save_interval)

    def list_tests(self, project: Project) -> List[str]:
        """Unique (parameter-stripped) test names of a project, in listing order.

        Raises:
            InvocationError: If listing fails.
        """
        result = self.invoker.invoke(project.path, "test", ["--list-tests", "--no-build"])
        if not result.success:
            raise InvocationError(f"Listing tests of {project.name} failed (exit {result.exit_code})")

        seen = set()
        unique: List[str] = []
        for test in parse_test_list(result.output):
            base = base_test_name(test)
            if base not in seen:
                seen.add(base)
                unique.append(base)
        return unique

    def _run_group(self, project: Project, group: TestGroup, results_dir: Path) -> List[str]:
        shutil.rmtree(results_dir, ignore_errors=True)
        try:
            result = self.invoker.invoke(
                project.path,
                "test",
                [
                    "--filter",
                    group.filter,
                    "--collect",
                    "XPlat Code Coverage",
                    "--results-directory",
                    str(results_dir),
                    "--no-build",
                ],
            )
            if not result.success:
                logger.debug(f"[{project.name}] coverage run for {group.name} exited {result.exit_code}")
            files = self.report_reader(results_dir, self.root)
            if files is None:
                logger.debug(f"[{project.name}] no coverage report for {group.name}")
                return []
            return sorted({f.replace("\\", "/") for f in files})
        finally:
            shutil.rmtree(results_dir, ignore_errors=True)

    def build_project(self, project: Project, cancel: Optional[threading.Event] = None) -> Optional[CoverageMap]:
        """Build (or resume) the coverage map of one test project.

        Returns:
            The saved map, or None when tests could not be listed or none exist.
        """
        map_path = coverage_map_path(self.cache_dir, project.name)
        logger.info(f"Building per-test coverage map for {project.name}")

        try:
            tests = self.list_tests(project)
        except InvocationError as e:
            logger.error(f"[{project.name}] {e}")
            return None
        if not tests:
            logger.warning(f"[{project.name}] no tests found")
            return None

        coverage = CoverageMap.load(map_path) or CoverageMap(project=project.name)
        coverage.project = project.name
        coverage.total_tests = len(tests)
        pending = [t for t in tests if t not in coverage.test_to_files]
        if len(pending) < len(tests):
            logger.info(f"[{project.name}] resuming: {len(tests) - len(pending)} tests already processed")
        if not pending:
            return coverage

        groups = group_tests(pending, self.granularity)
        runs_dir = self.cache_dir / "coverage-runs" / project.name
        processed_groups = 0

        with concurrent.futures.ThreadPoolExecutor(max_workers=min(self.workers, len(groups))) as executor:
            futures = {}
            for index, group in enumerate(groups):
                if cancel is not None and cancel.is_set():
                    break
                futures[executor.submit(self._run_group, project, group, runs_dir / str(index))] = group

            for future in concurrent.futures.as_completed(futures):
                group = futures[future]
                try:
                    files = future.result()
                except Exception as e:
                    logger.error(f"[{project.name}] coverage run for {group.name} failed: {e}")
                    continue
                for test in group.tests:
                    coverage.add(test, files)
                    coverage.processed_tests += 1
                processed_groups += 1
                logger.debug(
                    f"[{project.name}] {processed_groups}/{len(groups)} groups "
                    f"({coverage.processed_tests} tests)"
                )
                if processed_groups % self.save_interval == 0:
                    coverage.generated_at = datetime.now(timezone.utc)
                    coverage.save(map_path)

        shutil.rmtree(runs_dir, ignore_errors=True)
        coverage.generated_at = datetime.now(timezone.utc)
        coverage.save(map_path)
        logger.info(
            f"[{project.name}] processed {coverage.processed_tests}/{coverage.total_tests} tests, "
            f"{len(coverage.file_to_tests)} files mapped -> {map_path}"
        )
        return coverage

    def build(self, projects: Iterable[Project], cancel: Optional[threading.Event] = None) -> Dict[str, CoverageMap]:
        """Build maps for every test project in ``projects``, keyed by project name."""
        maps: Dict[str, CoverageMap] = {}
        for project in projects:
            if not project.is_test:
                continue
            if cancel is not None and cancel.is_set():
                break
            coverage = self.build_project(project, cancel)
            if coverage is not None:
                maps[project.name] = coverage
        return maps

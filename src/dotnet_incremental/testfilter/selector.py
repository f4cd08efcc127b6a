# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Test subset selection.

For one test project and the changed files relevant to it, three strategies
are tried in order and the first that can filter wins:

1. coverage: every changed file must map to at least one covering test
   (changed test files contribute their own class). One uncovered file
   rejects coverage for the whole project. A map that has not processed
   every test counts as no coverage data.
2. heuristics: opt-in naming rules. Changed test files must pass the safety
   check; any non-.cs file, unsafe test file, or file no enabled heuristic
   recognizes rejects heuristics for the whole project.
3. test files only: every changed file must be a safe test file; the filter
   is those classes.

Every rejection is fail-closed: ``can_filter`` is False and the project runs
unfiltered. Coverage is always consulted before heuristics.

When the user's own filter excludes categories (``Category!=Live``) and every
test method the computed filter would select carries an excluded category,
the result is flagged ``excluded_by_user_filter`` so the caller can skip the
run instead of executing zero tests.
"""

import logging
import posixpath
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

from dotnet_incremental.ignore_rules import is_non_build_file
from dotnet_incremental.models import FilterResult, Project
from dotnet_incremental.testfilter.coverage_map import CoverageMap
from dotnet_incremental.testfilter.heuristics import Heuristic, is_test_file_stem, nearest_dir_name
from dotnet_incremental.testfilter.safety import check_test_file_safety, find_project_dir, is_test_only_file
from dotnet_incremental.testfilter.traits import TraitMap, parse_filter_exclusions

logger = logging.getLogger(__name__)


def build_filter_expression(tests: Iterable[str]) -> str:
    """``FullyQualifiedName~`` alternation over the tests, in sorted order."""
    return "|".join(f"FullyQualifiedName~{test}" for test in sorted(set(tests)))


def _split(rel_path: str):
    name = posixpath.basename(rel_path)
    stem, ext = posixpath.splitext(name)
    return name, stem, ext.lower()


class TestSelector:
    """Decides whether a test project's run can be narrowed.

    Thread Safety:
        get_filter may be called from several worker threads. The only
        shared state is the per-project trait-map memo, guarded by _lock.
    """

    __test__ = False  # keep pytest from collecting this class

    def __init__(
        self,
        root: Path,
        coverage_maps: Optional[Dict[str, CoverageMap]] = None,
        heuristics: Optional[Sequence[Heuristic]] = None,
    ):
        """
        Args:
            root: Repository root; changed files are relative to it.
            coverage_maps: Coverage maps keyed by test project name.
            heuristics: Enabled heuristics (empty disables the heuristic step).
        """
        self.root = Path(root)
        self.coverage_maps: Dict[str, CoverageMap] = dict(coverage_maps or {})
        self.heuristics: List[Heuristic] = list(heuristics or ())
        self._trait_maps: Dict[str, TraitMap] = {}
        self._lock = threading.Lock()

    def get_filter(self, project: Project, changed_files: Sequence[str], user_filter: str = "") -> FilterResult:
        """Decide the filter for one test project.

        Args:
            project: The test project.
            changed_files: Repo-relative changed files under the project's
                relevant directories.
            user_filter: The user's own ``--filter`` expression, if any.

        Returns:
            FilterResult; ``reason`` always explains the decision.
        """
        files = sorted({path.replace("\\", "/") for path in changed_files})
        if not files:
            return FilterResult(can_filter=False, reason="no changed files")

        reasons: List[str] = []

        coverage = self.coverage_maps.get(project.name)
        if coverage is None:
            reasons.append(f"no coverage data for {project.name}")
        elif not coverage.is_complete():
            reasons.append(
                f"coverage map incomplete ({coverage.processed_tests}/{coverage.total_tests} tests)"
            )
        else:
            result = self._from_coverage(coverage, files)
            if result.can_filter:
                return self._apply_user_filter(project, result, user_filter)
            reasons.append(result.reason)

        if not self.heuristics:
            reasons.append("heuristics disabled")
        else:
            result = self._from_heuristics(files)
            if result.can_filter:
                return self._apply_user_filter(project, result, user_filter)
            reasons.append(result.reason)

        result = self._from_test_files(files)
        if result.can_filter:
            return self._apply_user_filter(project, result, user_filter)
        reasons.append(result.reason)

        logger.debug(f"[{project.name}] running unfiltered: {'; '.join(reasons)}")
        return FilterResult(can_filter=False, reason="; ".join(reasons))

    def _from_coverage(self, coverage: CoverageMap, files: Sequence[str]) -> FilterResult:
        tests: Set[str] = set()
        uncovered: List[str] = []

        for path in files:
            name, stem, ext = _split(path)
            if ext == ".cs" and is_test_file_stem(stem):
                tests.add(stem)
                continue
            covering = coverage.tests_for_file(path)
            if covering:
                tests.update(covering)
            elif not is_non_build_file(name):
                uncovered.append(name)

        if uncovered:
            return FilterResult(can_filter=False, reason=f"file(s) not in coverage: {', '.join(uncovered)}")
        if not tests:
            return FilterResult(can_filter=False, reason="no tests cover the changed files")

        matched = sorted(tests)
        return FilterResult(
            can_filter=True,
            filter_expression=build_filter_expression(matched),
            matched_tests=matched,
            reason=f"coverage-based: {len(matched)} test(s) for {len(files)} file(s)",
        )

    def _is_safe_test_file(self, full_path: Path) -> Optional[str]:
        """None when safe, otherwise the reason it is not."""
        safety = check_test_file_safety(full_path, find_project_dir(full_path, self.root))
        return None if safety.is_safe else safety.reason

    def _from_heuristics(self, files: Sequence[str]) -> FilterResult:
        patterns: Set[str] = set()
        used: List[str] = []

        for path in files:
            name, stem, ext = _split(path)
            if ext != ".cs":
                return FilterResult(can_filter=False, reason=f"non-.cs file changed: {name}")

            full_path = self.root / path
            if is_test_file_stem(stem) or is_test_only_file(full_path):
                unsafe = self._is_safe_test_file(full_path)
                if unsafe is not None:
                    return FilterResult(
                        can_filter=False, reason=f"test file not safe to filter: {stem} ({unsafe})"
                    )
                patterns.add(stem)
                if Heuristic.TEST_FILE_ONLY.value not in used:
                    used.append(Heuristic.TEST_FILE_ONLY.value)
                continue

            dir_name = nearest_dir_name(path)
            found = False
            for heuristic in self.heuristics:
                for pattern in heuristic.apply(stem, dir_name):
                    if pattern:
                        patterns.add(pattern)
                        found = True
                        if heuristic.value not in used:
                            used.append(heuristic.value)
            if not found:
                return FilterResult(can_filter=False, reason=f"no heuristic matches {name}")

        matched = sorted(patterns)
        return FilterResult(
            can_filter=True,
            filter_expression=build_filter_expression(matched),
            matched_tests=matched,
            reason=f"heuristic [{','.join(used)}]: {len(matched)} pattern(s) for {len(files)} file(s)",
        )

    def _from_test_files(self, files: Sequence[str]) -> FilterResult:
        classes: Set[str] = set()
        for path in files:
            name, stem, ext = _split(path)
            full_path = self.root / path
            if ext != ".cs" or not (is_test_file_stem(stem) or is_test_only_file(full_path)):
                return FilterResult(can_filter=False, reason=f"non-test file changed: {name}")
            unsafe = self._is_safe_test_file(full_path)
            if unsafe is not None:
                return FilterResult(can_filter=False, reason=f"test file not safe to filter: {stem} ({unsafe})")
            classes.add(stem)

        matched = sorted(classes)
        return FilterResult(
            can_filter=True,
            filter_expression=build_filter_expression(matched),
            matched_tests=matched,
            reason=f"only test files changed: {', '.join(matched)}",
        )

    def trait_map(self, project: Project) -> TraitMap:
        """Test-method index for a project directory, built once per selector."""
        with self._lock:
            cached = self._trait_maps.get(project.dir)
        if cached is not None:
            return cached

        built = TraitMap.build(self.root / project.dir)
        with self._lock:
            return self._trait_maps.setdefault(project.dir, built)

    def _apply_user_filter(self, project: Project, result: FilterResult, user_filter: str) -> FilterResult:
        excluded = parse_filter_exclusions(user_filter)
        if not excluded:
            return result

        all_excluded, traits = self.trait_map(project).check_exclusion(result.matched_tests, excluded)
        if all_excluded:
            result.excluded_by_user_filter = True
            result.excluded_traits = traits
            result.reason = f"all tests excluded by user filter (traits: {', '.join(traits)})"
            logger.debug(f"[{project.name}] {result.reason}")
        return result

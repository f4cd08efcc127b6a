# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for test subset selection."""

import pytest

from dotnet_incremental.models import Project
from dotnet_incremental.testfilter.coverage_map import CoverageMap
from dotnet_incremental.testfilter.heuristics import Heuristic
from dotnet_incremental.testfilter.selector import TestSelector, build_filter_expression

FOO_TESTS = """using Xunit;

namespace Core.Tests
{
    public class FooTests
    {
        [Fact]
        public void Adds()
        {
        }
    }
}
"""

LIVE_FOO_TESTS = FOO_TESTS.replace(
    "    public class FooTests", '    [Trait("Category", "Live")]\n    public class FooTests'
)

CORE_TESTS = Project(
    path="Core.Tests/Core.Tests.csproj", name="Core.Tests", dir="Core.Tests", is_test=True
)


@pytest.fixture
def repo(tmp_path):
    files = {
        "Core/Core.csproj": "<Project />",
        "Core/Foo.cs": "namespace Core { public class Foo {} }",
        "Core/Other.cs": "namespace Core { public class Other {} }",
        "Core.Tests/Core.Tests.csproj": "<Project />",
        "Core.Tests/FooTests.cs": FOO_TESTS,
        "Core.Tests/BarTests.cs": FOO_TESTS.replace("FooTests", "BarTests"),
        "Core.Tests/HelperTests.cs": FOO_TESTS.replace("FooTests", "HelperTests"),
    }
    for rel_path, content in files.items():
        path = tmp_path / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return tmp_path


def _coverage():
    coverage = CoverageMap(project="Core.Tests", total_tests=1, processed_tests=1)
    coverage.add("Core.Tests.FooTests.Adds", ["Core/Foo.cs"])
    return coverage


def test_build_filter_expression():
    assert build_filter_expression(["B", "A", "B"]) == "FullyQualifiedName~A|FullyQualifiedName~B"


def test_no_changed_files(repo):
    result = TestSelector(repo).get_filter(CORE_TESTS, [])

    assert result.can_filter is False
    assert result.reason == "no changed files"


class TestOnlyTestFilesChanged:
    def test_single_safe_test_file(self, repo):
        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core.Tests/FooTests.cs"])

        assert result.can_filter is True
        assert result.filter_expression == "FullyQualifiedName~FooTests"
        assert result.reason == "only test files changed: FooTests"

    def test_source_file_disables_filtering(self, repo):
        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core.Tests/FooTests.cs", "Core/Foo.cs"])

        assert result.can_filter is False
        assert "non-test file changed: Foo.cs" in result.reason

    def test_non_test_file_in_project(self, repo):
        (repo / "Core.Tests" / "Settings.json").write_text("{}")

        result = TestSelector(repo).get_filter(
            CORE_TESTS, ["Core.Tests/FooTests.cs", "Core.Tests/Settings.json"]
        )

        assert result.can_filter is False
        assert "non-test file changed: Settings.json" in result.reason

    def test_unsafe_test_file(self, repo):
        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core.Tests/HelperTests.cs"])

        assert result.can_filter is False
        assert "test file not safe to filter: HelperTests" in result.reason

    def test_referenced_test_file(self, repo):
        (repo / "Core.Tests" / "BarTests.cs").write_text(FOO_TESTS.replace("FooTests", "BarTests") + "// uses FooTests\n")

        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core.Tests/FooTests.cs"])

        assert result.can_filter is False
        assert "referenced by 1 other test file(s)" in result.reason


class TestCoverageSelection:
    def test_covered_file(self, repo):
        selector = TestSelector(repo, coverage_maps={"Core.Tests": _coverage()})

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.can_filter is True
        assert result.filter_expression == "FullyQualifiedName~Core.Tests.FooTests.Adds"
        assert result.matched_tests == ["Core.Tests.FooTests.Adds"]
        assert result.reason.startswith("coverage-based")

    def test_uncovered_file_rejects_whole_project(self, repo):
        selector = TestSelector(repo, coverage_maps={"Core.Tests": _coverage()})

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs", "Core/Other.cs"])

        assert result.can_filter is False
        assert "file(s) not in coverage: Other.cs" in result.reason

    def test_non_build_files_are_skipped(self, repo):
        selector = TestSelector(repo, coverage_maps={"Core.Tests": _coverage()})

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs", "Core/README.md"])

        assert result.can_filter is True
        assert result.matched_tests == ["Core.Tests.FooTests.Adds"]

    def test_changed_test_file_adds_its_class(self, repo):
        selector = TestSelector(repo, coverage_maps={"Core.Tests": _coverage()})

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs", "Core.Tests/BarTests.cs"])

        assert result.can_filter is True
        assert result.matched_tests == ["BarTests", "Core.Tests.FooTests.Adds"]

    def test_coverage_wins_over_heuristics(self, repo):
        selector = TestSelector(
            repo, coverage_maps={"Core.Tests": _coverage()}, heuristics=[Heuristic.NAME_TO_NAME_TESTS]
        )

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.matched_tests == ["Core.Tests.FooTests.Adds"]

    def test_partial_map_runs_unfiltered(self, repo):
        coverage = CoverageMap(project="Core.Tests", total_tests=10, processed_tests=1)
        coverage.add("Core.Tests.FooTests.Adds", ["Core/Foo.cs"])
        selector = TestSelector(repo, coverage_maps={"Core.Tests": coverage})

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.can_filter is False
        assert result.filter_expression == ""
        assert "coverage map incomplete (1/10 tests)" in result.reason

    def test_partial_map_falls_through_to_heuristics(self, repo):
        coverage = CoverageMap(project="Core.Tests", total_tests=10, processed_tests=1)
        coverage.add("Core.Tests.FooTests.Adds", ["Core/Foo.cs"])
        selector = TestSelector(
            repo, coverage_maps={"Core.Tests": coverage}, heuristics=[Heuristic.NAME_TO_NAME_TESTS]
        )

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.can_filter is True
        assert result.filter_expression == "FullyQualifiedName~FooTests"
        assert result.reason.startswith("heuristic [NameToNameTests]")

    def test_map_without_tests_is_not_used(self, repo):
        selector = TestSelector(repo, coverage_maps={"Core.Tests": CoverageMap(project="Core.Tests")})

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.can_filter is False
        assert "coverage map incomplete (0/0 tests)" in result.reason


class TestHeuristicSelection:
    def test_name_to_name_tests(self, repo):
        selector = TestSelector(repo, heuristics=[Heuristic.NAME_TO_NAME_TESTS])

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.can_filter is True
        assert result.filter_expression == "FullyQualifiedName~FooTests"
        assert result.reason == "heuristic [NameToNameTests]: 1 pattern(s) for 1 file(s)"

    def test_disabled_by_default(self, repo):
        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.can_filter is False
        assert "heuristics disabled" in result.reason

    def test_non_cs_file_rejects(self, repo):
        selector = TestSelector(repo, heuristics=[Heuristic.NAME_TO_NAME_TESTS])

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs", "Core/Core.csproj"])

        assert result.can_filter is False
        assert "non-.cs file changed: Core.csproj" in result.reason

    def test_unrecognized_file_rejects(self, repo):
        selector = TestSelector(repo, heuristics=[Heuristic.INTERFACE_TO_IMPL])

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs"])

        assert result.can_filter is False
        assert "no heuristic matches Foo.cs" in result.reason

    def test_unsafe_test_file_rejects(self, repo):
        selector = TestSelector(repo, heuristics=[Heuristic.NAME_TO_NAME_TESTS])

        result = selector.get_filter(CORE_TESTS, ["Core/Foo.cs", "Core.Tests/HelperTests.cs"])

        assert result.can_filter is False
        assert "test file not safe to filter: HelperTests" in result.reason


class TestUserFilterExclusion:
    def test_all_selected_tests_excluded(self, repo):
        (repo / "Core.Tests" / "FooTests.cs").write_text(LIVE_FOO_TESTS)

        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core.Tests/FooTests.cs"], "Category!=Live")

        assert result.can_filter is True
        assert result.excluded_by_user_filter is True
        assert result.excluded_traits == ["Live"]
        assert result.reason == "all tests excluded by user filter (traits: Live)"

    def test_some_selected_tests_remain(self, repo):
        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core.Tests/FooTests.cs"], "Category!=Live")

        assert result.can_filter is True
        assert result.excluded_by_user_filter is False

    def test_filter_without_exclusions(self, repo):
        (repo / "Core.Tests" / "FooTests.cs").write_text(LIVE_FOO_TESTS)

        result = TestSelector(repo).get_filter(CORE_TESTS, ["Core.Tests/FooTests.cs"], "Priority=1")

        assert result.excluded_by_user_filter is False

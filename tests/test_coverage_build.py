# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for per-test coverage map generation."""

import threading
from pathlib import Path

import pytest

from dotnet_incremental.coverage_build import (
    CoverageMapBuilder,
    group_tests,
    parse_test_list,
)
from dotnet_incremental.invoker import InvocationResult, Invoker
from dotnet_incremental.models import Project
from dotnet_incremental.testfilter.coverage_map import CoverageMap, coverage_map_path

LISTING = """Test run for /repo/Core.Tests/bin/Debug/net8.0/Core.Tests.dll (.NETCoreApp,Version=v8.0)
The following Tests are available:
    Core.Tests.FooTests.Adds
    Core.Tests.FooTests.Subtracts(a: 1)
    Core.Tests.FooTests.Subtracts(a: 2)
    Core.Tests.BarTests.Works
"""

CORE_TESTS = Project(path="Core.Tests/Core.Tests.csproj", name="Core.Tests", dir="Core.Tests", is_test=True)
CORE = Project(path="Core/Core.csproj", name="Core", dir="Core")


class CoverageInvoker(Invoker):
    """Lists LISTING and writes a plain-text "report" of covered files per filter."""

    def __init__(self, covered, listing=LISTING, list_exit_code=0):
        self.covered = covered
        self.listing = listing
        self.list_exit_code = list_exit_code
        self.filters = []
        self._lock = threading.Lock()

    def invoke(self, target, verb, flags, on_line=None, cancel=None):
        flags = list(flags)
        if "--list-tests" in flags:
            return InvocationResult(exit_code=self.list_exit_code, output=self.listing, duration=0.0)

        test_filter = flags[flags.index("--filter") + 1]
        with self._lock:
            self.filters.append(test_filter)
        results_dir = Path(flags[flags.index("--results-directory") + 1])
        results_dir.mkdir(parents=True, exist_ok=True)
        if test_filter in self.covered:
            (results_dir / "covered.txt").write_text("\n".join(self.covered[test_filter]))
        return InvocationResult(exit_code=0, output="", duration=0.0)


def read_report(results_dir, root):
    report = results_dir / "covered.txt"
    if not report.exists():
        return None
    return [line for line in report.read_text().splitlines() if line]


COVERED = {
    "FullyQualifiedName~Core.Tests.FooTests": ["Core\\Foo.cs"],
    "FullyQualifiedName~Core.Tests.BarTests": ["Core/Bar.cs", "Core/Foo.cs"],
}


def _builder(tmp_path, invoker, **kwargs):
    return CoverageMapBuilder(tmp_path, invoker, tmp_path / "cache", read_report, workers=2, **kwargs)


def test_parse_test_list():
    assert parse_test_list(LISTING) == [
        "Core.Tests.FooTests.Adds",
        "Core.Tests.FooTests.Subtracts(a: 1)",
        "Core.Tests.FooTests.Subtracts(a: 2)",
        "Core.Tests.BarTests.Works",
    ]
    assert parse_test_list("Build succeeded.\n") == []


class TestGroupTests:
    TESTS = ["Ns.A.One", "Ns.B.Two", "Ns.A.Three"]

    def test_by_class(self):
        groups = group_tests(self.TESTS, "class")

        assert [(g.name, g.tests, g.filter) for g in groups] == [
            ("Ns.A", ["Ns.A.One", "Ns.A.Three"], "FullyQualifiedName~Ns.A"),
            ("Ns.B", ["Ns.B.Two"], "FullyQualifiedName~Ns.B"),
        ]

    def test_by_method(self):
        groups = group_tests(self.TESTS, "method")

        assert [g.filter for g in groups] == [
            "FullyQualifiedName=Ns.A.One",
            "FullyQualifiedName=Ns.B.Two",
            "FullyQualifiedName=Ns.A.Three",
        ]

    def test_unknown_granularity(self):
        with pytest.raises(ValueError):
            group_tests(self.TESTS, "assembly")


class TestCoverageMapBuilder:
    def test_list_tests_strips_parameters(self, tmp_path):
        builder = _builder(tmp_path, CoverageInvoker(COVERED))

        assert builder.list_tests(CORE_TESTS) == [
            "Core.Tests.FooTests.Adds",
            "Core.Tests.FooTests.Subtracts",
            "Core.Tests.BarTests.Works",
        ]

    def test_build_project(self, tmp_path):
        invoker = CoverageInvoker(COVERED)

        coverage = _builder(tmp_path, invoker).build_project(CORE_TESTS)

        assert sorted(invoker.filters) == sorted(COVERED)
        assert coverage.is_complete()
        assert coverage.generated_at is not None
        assert coverage.test_to_files["Core.Tests.FooTests.Adds"] == ["Core/Foo.cs"]
        assert coverage.test_to_files["Core.Tests.BarTests.Works"] == ["Core/Bar.cs", "Core/Foo.cs"]
        assert sorted(coverage.tests_for_file("Core/Foo.cs")) == [
            "Core.Tests.BarTests.Works",
            "Core.Tests.FooTests.Adds",
            "Core.Tests.FooTests.Subtracts",
        ]
        assert CoverageMap.load(coverage_map_path(tmp_path / "cache", "Core.Tests")) == coverage
        assert not (tmp_path / "cache" / "coverage-runs" / "Core.Tests").exists()

    def test_resumes_from_existing_map(self, tmp_path):
        existing = CoverageMap(project="Core.Tests", total_tests=3, processed_tests=2)
        existing.add("Core.Tests.FooTests.Adds", ["Core/Foo.cs"])
        existing.add("Core.Tests.FooTests.Subtracts", ["Core/Foo.cs"])
        existing.save(coverage_map_path(tmp_path / "cache", "Core.Tests"))
        invoker = CoverageInvoker(COVERED)

        coverage = _builder(tmp_path, invoker).build_project(CORE_TESTS)

        assert invoker.filters == ["FullyQualifiedName~Core.Tests.BarTests"]
        assert coverage.processed_tests == 3
        assert coverage.is_complete()

    def test_group_without_report_covers_nothing(self, tmp_path):
        invoker = CoverageInvoker({})

        coverage = _builder(tmp_path, invoker).build_project(CORE_TESTS)

        assert coverage.processed_tests == 3
        assert coverage.file_to_tests == {}

    def test_listing_failure(self, tmp_path):
        builder = _builder(tmp_path, CoverageInvoker(COVERED, list_exit_code=1))

        assert builder.build_project(CORE_TESTS) is None

    def test_no_tests(self, tmp_path):
        builder = _builder(tmp_path, CoverageInvoker(COVERED, listing="The following Tests are available:\n"))

        assert builder.build_project(CORE_TESTS) is None

    def test_build_skips_non_test_projects(self, tmp_path):
        invoker = CoverageInvoker(COVERED)

        maps = _builder(tmp_path, invoker).build([CORE, CORE_TESTS])

        assert list(maps) == ["Core.Tests"]

    def test_build_cancelled(self, tmp_path):
        cancel = threading.Event()
        cancel.set()
        invoker = CoverageInvoker(COVERED)

        assert _builder(tmp_path, invoker).build([CORE_TESTS], cancel) == {}
        assert invoker.filters == []

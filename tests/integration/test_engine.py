# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""End-to-end incremental runs through the Engine facade."""

import logging
import time
from datetime import datetime, timezone

import pytest

from dotnet_incremental.config import Config, DependencyCycleError
from dotnet_incremental.engine import Engine
from dotnet_incremental.models import JobKind, RunOptions, SolutionPolicy
from dotnet_incremental.output import failed_test_filter
from dotnet_incremental.testfilter.coverage_map import CoverageMap, coverage_map_path

CORE = "Core/Core.csproj"
CORE_TESTS = "Core.Tests/Core.Tests.csproj"
TOOLS = "Tools/Tools.csproj"

FAILED_OUTPUT = (
    "  Failed Core.Tests.FooTests.Adds [12 ms]\n"
    "Failed!  - Failed:     1, Passed:     0, Skipped:     0, Total:     1\n"
)


def _targets(invoker):
    return sorted((target, verb) for target, verb, _flags in invoker.calls)


class TestAffectedSet:
    def test_compute_affected(self, engine):
        assert engine.compute_affected(["Core/Foo.cs"]) == {CORE, CORE_TESTS, TOOLS}
        assert engine.compute_affected(["Tools/Cli.cs"]) == {TOOLS}
        assert engine.compute_affected(["Core.Tests/FooTests.cs"]) == {CORE_TESTS}
        assert engine.compute_affected(["README.md"]) == set()

    def test_select_targets_for_test(self, engine):
        targets, build_only = engine.select_targets({CORE, CORE_TESTS, TOOLS}, "test")

        assert [p.path for p in targets] == [CORE_TESTS, TOOLS]
        assert build_only == [TOOLS]

    def test_select_targets_for_build(self, engine):
        targets, build_only = engine.select_targets({CORE, TOOLS}, "build")

        assert [p.path for p in targets] == [CORE, TOOLS]
        assert build_only == []


class TestIncrementalTestRuns:
    def test_source_change_reruns_tests_unfiltered(self, engine, fake_invoker, dotnet_repo):
        options = RunOptions(command="test")

        summary = engine.run(["Core/Foo.cs"], options)

        assert summary.success
        assert _targets(fake_invoker) == [(CORE_TESTS, "test"), (TOOLS, "build")]
        assert "--filter" not in fake_invoker.calls_for(CORE_TESTS)[0]
        assert summary.result_for(TOOLS).kind == JobKind.BUILD_ONLY
        assert options.changed_files == []

        core_tests = engine.graph.get(CORE_TESTS)
        old_key = engine.cache_key(core_tests, ["test"])
        assert engine.lookup(old_key) is not None

        (dotnet_repo / "Core" / "Foo.cs").write_text("namespace Core { public class Foo { int x; } }\n")
        engine.run(["Core/Foo.cs"], options)

        new_key = engine.cache_key(core_tests, ["test"])
        assert new_key != old_key
        assert engine.lookup(new_key) is not None
        assert engine.lookup(old_key) is not None
        assert len(fake_invoker.calls) == 4

    def test_second_run_is_fully_cached(self, engine, fake_invoker):
        engine.run(["Core/Foo.cs"], RunOptions(command="test"))

        summary = engine.run(["Core/Foo.cs"], RunOptions(command="test"))

        assert len(fake_invoker.calls) == 2
        assert summary.success
        assert sorted(r.job_id for r in summary.cached) == [CORE_TESTS, TOOLS]
        assert summary.executed == []

    def test_force_reruns(self, engine, fake_invoker):
        engine.run(None, RunOptions(command="test"))
        engine.run(None, RunOptions(command="test", force=True))

        assert len(fake_invoker.calls) == 4

    def test_only_test_file_changed(self, engine, fake_invoker):
        summary = engine.run(["Core.Tests/FooTests.cs"], RunOptions(command="test"))

        assert _targets(fake_invoker) == [(CORE_TESTS, "test")]
        assert fake_invoker.calls_for(CORE_TESTS)[0][-2:] == ["--filter", "FullyQualifiedName~FooTests"]
        assert summary.result_for(CORE_TESTS).filtered is True

    def test_non_build_change_runs_nothing(self, engine, fake_invoker):
        summary = engine.run(["README.md"], RunOptions(command="test"))

        assert summary.results == []
        assert summary.success
        assert fake_invoker.calls == []


class TestFailedOnly:
    def test_reruns_only_failed_tests(self, engine, fake_invoker):
        fake_invoker.respond(CORE_TESTS, (1, FAILED_OUTPUT), (0, "Passed!  - Failed: 0, Passed: 1, Skipped: 0, Total: 1\n"))
        first = engine.run(None, RunOptions(command="test", keep_going=True))
        assert [r.job_id for r in first.failed] == [CORE_TESTS]

        summary = engine.run(
            None, RunOptions(command="test", failed_only=True), failed_test_filter=failed_test_filter
        )

        assert [r.job_id for r in summary.results] == [CORE_TESTS]
        assert summary.success
        rerun_flags = fake_invoker.calls_for(CORE_TESTS)[1]
        assert rerun_flags[-2:] == ["--filter", "FullyQualifiedName~Core.Tests.FooTests.Adds"]

    def test_nothing_failed(self, engine, fake_invoker):
        engine.run(None, RunOptions(command="test"))

        summary = engine.run(None, RunOptions(command="test", failed_only=True))

        assert summary.results == []
        assert len(fake_invoker.calls) == 2


class TestBuildRuns:
    def test_solution_batching(self, engine, fake_invoker):
        summary = engine.run(["Core/Foo.cs"], RunOptions(command="build"))

        assert summary.success
        assert _targets(fake_invoker) == [("App.sln", "build"), (TOOLS, "build")]
        intervals = fake_invoker.intervals
        assert intervals["App.sln"][1] <= intervals[TOOLS][0]

    def test_never_batch(self, engine, fake_invoker):
        engine.run(["Core/Foo.cs"], RunOptions(command="build", solution_policy=SolutionPolicy.NEVER))

        assert _targets(fake_invoker) == [(CORE_TESTS, "build"), (CORE, "build"), (TOOLS, "build")]
        assert fake_invoker.calls[0][0] == CORE

    def test_dependency_cycle(self, make_repo, fake_invoker):
        root = make_repo(
            {
                "A/A.csproj": '<Project><ItemGroup><ProjectReference Include="..\\B\\B.csproj" /></ItemGroup></Project>',
                "B/B.csproj": '<Project><ItemGroup><ProjectReference Include="..\\A\\A.csproj" /></ItemGroup></Project>',
            }
        )

        with Engine.open(root, config=Config.from_dict({}), invoker=fake_invoker) as engine:
            with pytest.raises(DependencyCycleError) as exc_info:
                engine.run(None, RunOptions(command="build"))

        assert exc_info.value.waiting == {"A/A.csproj": ["B/B.csproj"], "B/B.csproj": ["A/A.csproj"]}
        assert fake_invoker.calls == []


class TestCoverageMaps:
    def test_stale_coverage_still_filters_and_warns_once(self, dotnet_repo, fake_invoker, caplog):
        coverage = CoverageMap(
            project="Core.Tests",
            generated_at=datetime.fromtimestamp(time.time() - 3600, tz=timezone.utc),
            total_tests=1,
            processed_tests=1,
        )
        coverage.add("Core.Tests.FooTests.Adds", ["Core/Foo.cs"])
        coverage.save(coverage_map_path(dotnet_repo / ".donotnet", "Core.Tests"))

        with caplog.at_level(logging.WARNING):
            with Engine.open(dotnet_repo, config=Config.from_dict({}), invoker=fake_invoker) as engine:
                engine.run(["Core/Foo.cs"], RunOptions(command="test"))

        assert caplog.text.count("Coverage maps are stale") == 1
        flags = fake_invoker.calls_for(CORE_TESTS)[0]
        assert flags[-2:] == ["--filter", "FullyQualifiedName~Core.Tests.FooTests.Adds"]


class TestFacade:
    def test_mark_and_lookup(self, engine):
        key = engine.cache_key(engine.graph.get(CORE), ["build"])

        engine.mark(key, True, b"Build succeeded.", "build")

        entry = engine.lookup(key)
        assert entry.output == b"Build succeeded."
        assert entry.args_display == "build"

    def test_get_filter(self, engine):
        result = engine.get_filter(engine.graph.get(CORE_TESTS), ["Core.Tests/FooTests.cs"])

        assert result.filter_expression == "FullyQualifiedName~FooTests"

    def test_plan_batches_uses_configured_policy(self, engine):
        plan = engine.plan_batches(engine.graph.projects)

        assert [solution.path for solution, _ in plan.solution_groups] == ["App.sln"]
        assert [p.path for p in plan.individual] == [TOOLS]

    def test_create_watcher(self, engine):
        watcher = engine.create_watcher(lambda batch: None)

        assert watcher.rules is engine.rules
        assert watcher.debounce_seconds == 0.3

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Tests for the naming heuristics."""

import logging

import pytest

from dotnet_incremental.testfilter.heuristics import (
    DEFAULT_HEURISTICS,
    Heuristic,
    is_test_file_stem,
    nearest_dir_name,
    parse_heuristics,
)


class TestTransforms:
    @pytest.mark.parametrize(
        "heuristic, stem, dir_name, expected",
        [
            (Heuristic.TEST_FILE_ONLY, "FooTests", "Core", ["FooTests"]),
            (Heuristic.TEST_FILE_ONLY, "Foo", "Core", []),
            (Heuristic.NAME_TO_NAME_TESTS, "Foo", "Core", ["FooTests"]),
            (Heuristic.DIR_TO_NAMESPACE, "Foo", "Cache", [".Cache.Foo"]),
            (Heuristic.DIR_TO_NAMESPACE, "Foo", "", []),
            (Heuristic.DIR_TO_NAMESPACE, "Foo", "src", []),
            (Heuristic.EXTENSIONS_TO_BASE, "StringExtensions", "Core", ["StringTests"]),
            (Heuristic.EXTENSIONS_TO_BASE, "String", "Core", []),
            (Heuristic.INTERFACE_TO_IMPL, "IFoo", "Core", ["FooTests"]),
            (Heuristic.INTERFACE_TO_IMPL, "Internal", "Core", []),
            (Heuristic.INTERFACE_TO_IMPL, "I", "Core", []),
            (Heuristic.ALWAYS_COMPOSITION_ROOT, "Anything", "Core", ["CompositionRootTests"]),
        ],
    )
    def test_apply(self, heuristic, stem, dir_name, expected):
        assert heuristic.apply(stem, dir_name) == expected

    def test_every_variant_has_a_description(self):
        for heuristic in Heuristic:
            assert heuristic.description

    def test_test_file_stem(self):
        assert is_test_file_stem("FooTests")
        assert is_test_file_stem("FooTest")
        assert not is_test_file_stem("Testing")


class TestParse:
    def test_default_is_empty(self):
        assert DEFAULT_HEURISTICS == ()
        assert parse_heuristics("") == []
        assert parse_heuristics("default") == []
        assert parse_heuristics("none") == []

    def test_explicit_list(self):
        assert parse_heuristics("NameToNameTests, InterfaceToImpl") == [
            Heuristic.NAME_TO_NAME_TESTS,
            Heuristic.INTERFACE_TO_IMPL,
        ]

    def test_default_plus_and_minus(self):
        assert parse_heuristics("default,ExtensionsToBase") == [Heuristic.EXTENSIONS_TO_BASE]
        assert parse_heuristics("NameToNameTests,DirToNamespace,-DirToNamespace") == [
            Heuristic.NAME_TO_NAME_TESTS
        ]

    def test_duplicates_collapse(self):
        assert parse_heuristics("NameToNameTests,NameToNameTests") == [Heuristic.NAME_TO_NAME_TESTS]

    def test_unknown_names_are_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="dotnet_incremental.testfilter.heuristics"):
            result = parse_heuristics("Bogus,NameToNameTests")

        assert result == [Heuristic.NAME_TO_NAME_TESTS]
        assert "Bogus" in caplog.text


class TestNearestDirName:
    def test_plain_dir(self):
        assert nearest_dir_name("src/Core/Cache/Foo.cs") == "Cache"

    def test_skips_neutral_dirs(self):
        assert nearest_dir_name("Core/src/Foo.cs") == "Core"
        assert nearest_dir_name("Core/Source/Foo.cs") == "Core"

    def test_no_dir(self):
        assert nearest_dir_name("Foo.cs") == ""
        assert nearest_dir_name("src/Foo.cs") == ""

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Test subset selection for test projects.

Components:
- TestSelector: coverage -> heuristics -> test-files-only decision, fail-closed
- CoverageMap: per-test-project file <-> test mapping, JSON persisted
- Heuristic: closed set of opt-in naming heuristics
- check_test_file_safety: whether a lone changed test file can be trusted
- TraitMap: per-project test methods with resolved category traits
"""

from dotnet_incremental.testfilter.coverage_map import (
    CoverageMap,
    CoverageStatus,
    check_staleness,
    coverage_map_path,
    load_coverage_maps,
)
from dotnet_incremental.testfilter.heuristics import Heuristic, parse_heuristics
from dotnet_incremental.testfilter.safety import SafetyResult, check_test_file_safety
from dotnet_incremental.testfilter.selector import TestSelector, build_filter_expression
from dotnet_incremental.testfilter.traits import TraitMap, parse_filter_exclusions

__all__ = [
    "TestSelector",
    "build_filter_expression",
    # Coverage
    "CoverageMap",
    "CoverageStatus",
    "check_staleness",
    "coverage_map_path",
    "load_coverage_maps",
    # Heuristics and safety
    "Heuristic",
    "parse_heuristics",
    "SafetyResult",
    "check_test_file_safety",
    # Traits
    "TraitMap",
    "parse_filter_exclusions",
]

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Scanning of the external tool's output.

The engine never parses output structurally. It only looks for:
- literal failure markers (used to stop dispatch early)
- an optional ``Failed: N, Passed: N, Skipped: N, Total: N`` summary
- signatures meaning a skipped restore was wrong
- signatures meaning a test filter matched nothing or was malformed
"""

import re
from typing import List, Optional

from dotnet_incremental.models import TestStats

FAILURE_MARKERS = (
    "Failed!",  # test run failed
    "] Failed ",  # individual test failed
    "Error Message:",  # test error details
    "Build FAILED",  # build failure
)

_FAILED_COUNT_RE = re.compile(r"Failed:\s*[1-9]\d*[,\s]")
_TEST_STATS_RE = re.compile(
    r"Failed:\s*(\d+),\s*Passed:\s*(\d+),\s*Skipped:\s*(\d+),\s*Total:\s*(\d+)"
)

RESTORE_RETRY_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"Assets file .* doesn't have a target",
        r"run a NuGet package restore",
        r"Please restore this project",
        r"project\.assets\.json' not found",
        r"NETSDK1004:",  # missing assets file
        r"NETSDK1064:",  # package deleted since restore
        r"NU1101:",  # unable to find package
        r"The project file could not be loaded",
    )
)

NO_TEST_MATCH_MARKER = "No test matches the given testcase filter"
BAD_FILTER_MARKER = "Incorrect format for TestCaseFilter"


def is_failure_line(line: str) -> bool:
    """True if one line of streamed output signals a failure."""
    if any(marker in line for marker in FAILURE_MARKERS):
        return True
    return bool(_FAILED_COUNT_RE.search(line))


def extract_test_stats(output: str) -> Optional[TestStats]:
    """Parse the first test summary in ``output``; None if absent."""
    match = _TEST_STATS_RE.search(output)
    if match is None:
        return None
    failed, passed, skipped, total = (int(group) for group in match.groups())
    return TestStats(failed=failed, passed=passed, skipped=skipped, total=total)


def needs_restore_retry(output: str) -> bool:
    """True if a failure looks caused by skipping restore."""
    return any(pattern.search(output) for pattern in RESTORE_RETRY_PATTERNS)


def filter_matched_nothing(output: str) -> bool:
    """True if the external tool rejected or found nothing for a test filter."""
    return NO_TEST_MATCH_MARKER in output or BAD_FILTER_MARKER in output


# "  Failed Namespace.Class.Method [12 ms]" and the "X" form some adapters use
_STDOUT_FAILED_RE = re.compile(r"^\s*Failed\s+(\S+)")
_STDOUT_X_FAILED_RE = re.compile(r"^\s*[Xx]\s+(\S+)")
# "[xUnit.net 00:00:00.13]     Namespace.Class.Method(x: 1) [FAIL]"
_XUNIT_FAILED_RE = re.compile(r"\[xUnit\.net[^\]]*\]\s+(.+?)\s+\[FAIL\]")


def parse_failed_tests(output: str) -> List[str]:
    """Fully qualified names of failed tests reported in ``output``, in order.

    Parameter lists are stripped so parameterized cases collapse to one name.
    """
    failed: List[str] = []
    seen = set()
    for line in output.splitlines():
        match = (
            _STDOUT_FAILED_RE.search(line)
            or _STDOUT_X_FAILED_RE.search(line)
            or _XUNIT_FAILED_RE.search(line)
        )
        if match is None:
            continue
        name = match.group(1)
        bracket = name.rfind("[")
        if bracket > 0:
            name = name[:bracket].strip()
        paren = name.find("(")
        if paren > 0:
            name = name[:paren]
        name = name.strip()
        if name and name not in seen:
            seen.add(name)
            failed.append(name)
    return failed


def failed_test_filter(output: str) -> str:
    """Filter expression selecting the failed tests in ``output``; "" if none found."""
    return "|".join(f"FullyQualifiedName~{name}" for name in parse_failed_tests(output))

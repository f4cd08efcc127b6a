# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Helpers for the external tool's argument lists.

Filters are accepted in both ``--filter VALUE`` and ``--filter=VALUE`` forms.
"""

from typing import List, Sequence

COVERAGE_FLAG = "--collect:XPlat Code Coverage"
QUIET_WARNINGS_FLAG = "--property:WarningLevel=0"

# Flags that only make sense for test runs
_TEST_ONLY_FLAGS = frozenset({"--blame", "--blame-hang", "--blame-crash"})
# Flags whose value is the following argument, hidden from display
_VALUE_FLAGS_HIDDEN = frozenset({"--logger", "--results-directory", "-l", "-r"})


def extract_filter(args: Sequence[str]) -> str:
    """Return the ``--filter`` value from args, or "" if none."""
    for i, arg in enumerate(args):
        if arg == "--filter" and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith("--filter="):
            return arg[len("--filter="):]
    return ""


def remove_filter(args: Sequence[str]) -> List[str]:
    """Return a copy of args with ``--filter`` (and its value) removed."""
    result: List[str] = []
    skip = False
    for i, arg in enumerate(args):
        if skip:
            skip = False
            continue
        if arg == "--filter" and i + 1 < len(args):
            skip = True
            continue
        if arg.startswith("--filter="):
            continue
        result.append(arg)
    return result


def and_filters(first: str, second: str) -> str:
    """Combine two filter expressions with logical AND; either may be empty."""
    if not first:
        return second
    if not second:
        return first
    return f"({first})&({second})"


def combine_filter(args: Sequence[str], extra: str) -> List[str]:
    """Merge ``extra`` into args: ANDed with an existing filter, else appended."""
    existing = extract_filter(args)
    if existing:
        return remove_filter(args) + ["--filter", and_filters(existing, extra)]
    return list(args) + ["--filter", extra]


def filter_build_args(args: Sequence[str]) -> List[str]:
    """Drop test-only arguments so they can be passed to a plain build."""
    return [arg for arg in remove_filter(args) if arg not in _TEST_ONLY_FLAGS]


def filter_display_args(args: Sequence[str]) -> List[str]:
    """Arguments worth showing to a user (logger/results/property noise removed)."""
    display: List[str] = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg.startswith(("--logger:", "--results-directory:", "--property:", "-p:")):
            continue
        if arg in _VALUE_FLAGS_HIDDEN:
            skip = True
            continue
        display.append(arg)
    return display


def has_flag(args: Sequence[str], flag: str) -> bool:
    return flag in args


def command_args(command: str, extra_args: Sequence[str], coverage: bool = False) -> List[str]:
    """Arguments that identify a run for caching: verb, coverage flag, extras."""
    args = [command]
    if coverage and command == "test":
        args.append(COVERAGE_FLAG)
    args.extend(extra_args)
    return args


def build_only_args(extra_args: Sequence[str]) -> List[str]:
    """Cache-identifying arguments for a build-only job."""
    return ["build"] + filter_build_args(extra_args)

# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Naming heuristics that guess test names from changed source files.

The set of heuristics is closed: every variant is a member of the Heuristic
enum and maps to a pure transformation ``(file_stem, dir_name) -> patterns``.
All heuristics are opt-in; the default set is empty.
"""

import logging
from enum import Enum
from typing import Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

TEST_NAME_SUFFIXES = ("Tests", "Test")
# Directory names that never contribute a namespace segment
NAMESPACE_NEUTRAL_DIRS = ("", "Source", "src")


def is_test_file_stem(stem: str) -> bool:
    return stem.endswith(TEST_NAME_SUFFIXES)


class Heuristic(Enum):
    """Opt-in heuristics, identified by name."""

    TEST_FILE_ONLY = "TestFileOnly"
    NAME_TO_NAME_TESTS = "NameToNameTests"
    DIR_TO_NAMESPACE = "DirToNamespace"
    EXTENSIONS_TO_BASE = "ExtensionsToBase"
    INTERFACE_TO_IMPL = "InterfaceToImpl"
    ALWAYS_COMPOSITION_ROOT = "AlwaysCompositionRoot"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    def apply(self, file_stem: str, dir_name: str) -> List[str]:
        """Test name patterns for a source file.

        Args:
            file_stem: File name without extension.
            dir_name: Nearest meaningful parent directory name (see nearest_dir_name).

        Returns:
            Patterns to match against fully qualified test names; empty when
            the heuristic does not apply.
        """
        return _TRANSFORMS[self](file_stem, dir_name)


def _test_file_only(stem: str, dir_name: str) -> List[str]:
    return [stem] if is_test_file_stem(stem) else []


def _name_to_name_tests(stem: str, dir_name: str) -> List[str]:
    return [stem + "Tests"]


def _dir_to_namespace(stem: str, dir_name: str) -> List[str]:
    if dir_name in NAMESPACE_NEUTRAL_DIRS:
        return []
    return [f".{dir_name}.{stem}"]


def _extensions_to_base(stem: str, dir_name: str) -> List[str]:
    if not stem.endswith("Extensions"):
        return []
    return [stem[: -len("Extensions")] + "Tests"]


def _interface_to_impl(stem: str, dir_name: str) -> List[str]:
    # IFoo -> FooTests, but not Internal -> nternalTests
    if len(stem) > 1 and stem[0] == "I" and "A" <= stem[1] <= "Z":
        return [stem[1:] + "Tests"]
    return []


def _always_composition_root(stem: str, dir_name: str) -> List[str]:
    return ["CompositionRootTests"]


_TRANSFORMS: Dict[Heuristic, Callable[[str, str], List[str]]] = {
    Heuristic.TEST_FILE_ONLY: _test_file_only,
    Heuristic.NAME_TO_NAME_TESTS: _name_to_name_tests,
    Heuristic.DIR_TO_NAMESPACE: _dir_to_namespace,
    Heuristic.EXTENSIONS_TO_BASE: _extensions_to_base,
    Heuristic.INTERFACE_TO_IMPL: _interface_to_impl,
    Heuristic.ALWAYS_COMPOSITION_ROOT: _always_composition_root,
}

_DESCRIPTIONS: Dict[Heuristic, str] = {
    Heuristic.TEST_FILE_ONLY: (
        "FooTests.cs -> FooTests (only when the file has test methods and no other "
        "test file references it)"
    ),
    Heuristic.NAME_TO_NAME_TESTS: "Foo.cs -> FooTests (direct name match, can miss or run wrong tests)",
    Heuristic.DIR_TO_NAMESPACE: "Cache/Foo.cs -> .Cache.Foo (directory as namespace segment)",
    Heuristic.EXTENSIONS_TO_BASE: "FooExtensions.cs -> FooTests (extension methods tested with the base)",
    Heuristic.INTERFACE_TO_IMPL: "IFoo.cs -> FooTests (interface to implementation tests)",
    Heuristic.ALWAYS_COMPOSITION_ROOT: "Any .cs -> CompositionRootTests (DI container tests)",
}

# Enabled when the user asks for "default"; every heuristic is opt-in
DEFAULT_HEURISTICS: Tuple[Heuristic, ...] = ()


def parse_heuristics(spec: str) -> List[Heuristic]:
    """Parse a comma-separated heuristic selection.

    - "" or "default": the default set
    - "none": nothing
    - "default,ExtensionsToBase": defaults plus one
    - "default,-DirToNamespace": defaults minus one
    - "NameToNameTests,InterfaceToImpl": exactly those

    Unknown names are logged and ignored.
    """
    spec = spec.strip()
    if spec in ("", "default"):
        return list(DEFAULT_HEURISTICS)
    if spec == "none":
        return []

    by_name = {heuristic.value: heuristic for heuristic in Heuristic}
    additions: List[str] = []
    disabled = set()
    for name in spec.split(","):
        name = name.strip()
        if not name:
            continue
        if name.startswith("-"):
            disabled.add(name[1:])
        else:
            additions.append(name)

    result: List[Heuristic] = []
    seen = set()
    for name in additions:
        if name in seen or name in disabled:
            continue
        seen.add(name)
        if name == "default":
            for heuristic in DEFAULT_HEURISTICS:
                if heuristic.value not in seen and heuristic.value not in disabled:
                    seen.add(heuristic.value)
                    result.append(heuristic)
        elif name in by_name:
            if by_name[name] not in result:
                result.append(by_name[name])
        else:
            logger.warning(f"Unknown heuristic '{name}' ignored")
    return result


def nearest_dir_name(rel_path: str) -> str:
    """Last parent directory of ``rel_path`` that can act as a namespace segment.

    Skips ``Source``, ``src`` and directories named like project files.
    """
    parts = rel_path.replace("\\", "/").split("/")[:-1]
    for part in reversed(parts):
        if part and part not in ("Source", "src", ".") and not part.endswith(".csproj"):
            return part
    return ""

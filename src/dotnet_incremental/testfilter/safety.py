# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Safety check for narrowing a test run to a single changed test file.

A changed test file is only trusted on its own when:
1. its name does not look like a helper, fixture or base class
2. it contains at least one recognizable test method
3. no other test file in the project references a class it defines

Narrowing to a file that fails any check could silently skip derived or
dependent test classes, so the caller falls back to running everything.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from dotnet_incremental.testfilter.heuristics import is_test_file_stem

logger = logging.getLogger(__name__)

HELPER_NAME_RE = re.compile(
    r"(?i)(Helper|Fixture|Base|Utilities|Common|Shared|Mock|Fake|Stub|TestData|Setup)"
)
TEST_METHOD_RE = re.compile(
    r"\[(Test|Fact|Theory|TestMethod|TestCase)[^\]]*\]\s*\n\s*"
    r"(public|private|protected|internal)?\s*(async\s+)?(Task|void|\w+)\s+\w+\s*\("
)
CLASS_DEF_RE = re.compile(r"\bclass\s+(\w+)(?:\s*:\s*([^{]+))?")
TEST_ATTRIBUTE_RE = re.compile(r"\[(Test|Fact|Theory|TestMethod|TestCase)\b")

_WALK_SKIP_DIRS = frozenset({"bin", "obj", ".git"})


@dataclass
class SafetyResult:
    """Whether a changed test file can be trusted alone, and why."""

    is_safe: bool
    reason: str
    class_name: str = ""
    has_test_methods: bool = False
    referenced_by: List[str] = field(default_factory=list)


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def check_test_file_safety(file_path: Path, project_dir: Path) -> SafetyResult:
    """Decide whether narrowing to ``file_path`` alone is safe.

    Args:
        file_path: Absolute path of the changed test file.
        project_dir: Directory of the owning test project.
    """
    content = _read(file_path)
    if content is None:
        return SafetyResult(is_safe=False, reason="cannot read file")

    stem = file_path.stem
    if HELPER_NAME_RE.search(stem):
        return SafetyResult(is_safe=False, reason=f"file name suggests helper/fixture: {stem}")

    if not TEST_METHOD_RE.search(content):
        return SafetyResult(
            is_safe=False, reason="no test methods found (may be a base class or helper)"
        )

    class_names = [match.group(1) for match in CLASS_DEF_RE.finditer(content)]
    if not class_names:
        return SafetyResult(is_safe=False, reason="no class definition found", has_test_methods=True)

    referencing = find_referencing_files(project_dir, file_path, class_names)
    if referencing:
        return SafetyResult(
            is_safe=False,
            reason=f"referenced by {len(referencing)} other test file(s)",
            class_name=class_names[0],
            has_test_methods=True,
            referenced_by=referencing,
        )

    return SafetyResult(
        is_safe=True,
        reason="file contains test methods and is not referenced by other test files",
        class_name=class_names[0],
        has_test_methods=True,
    )


def find_referencing_files(
    project_dir: Path, exclude_file: Path, class_names: Sequence[str]
) -> List[str]:
    """Other test-named ``.cs`` files under ``project_dir`` that mention any of ``class_names``.

    Returns:
        Paths relative to ``project_dir``, sorted.
    """
    if not class_names:
        return []

    reference_re = re.compile("|".join(rf"\b{re.escape(name)}\b" for name in class_names))
    exclude = Path(exclude_file).resolve()
    found: List[str] = []

    for current, dirnames, filenames in os.walk(project_dir):
        dirnames[:] = [d for d in dirnames if d not in _WALK_SKIP_DIRS]
        for name in filenames:
            if not name.endswith(".cs") or not is_test_file_stem(name[:-3]):
                continue
            path = Path(current) / name
            if path.resolve() == exclude:
                continue
            content = _read(path)
            if content is not None and reference_re.search(content):
                found.append(path.relative_to(project_dir).as_posix())

    return sorted(found)


def is_test_only_file(file_path: Path) -> bool:
    """True if the file carries test attributes (a test file with a non-standard name)."""
    content = _read(file_path)
    return content is not None and bool(TEST_ATTRIBUTE_RE.search(content))


def find_project_dir(file_path: Path, stop_at: Optional[Path] = None) -> Path:
    """Nearest ancestor of ``file_path`` that contains a ``.csproj``.

    Falls back to the file's own directory when none is found before
    ``stop_at`` (or the filesystem root).
    """
    start = Path(file_path).parent
    stop = Path(stop_at).resolve() if stop_at else None
    directory = start
    while True:
        try:
            if any(entry.suffix == ".csproj" and entry.is_file() for entry in directory.iterdir()):
                return directory
        except OSError:
            pass
        if directory.parent == directory or (stop is not None and directory.resolve() == stop):
            return start
        directory = directory.parent

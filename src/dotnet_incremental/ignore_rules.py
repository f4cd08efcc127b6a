# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Ignore rules shared by content hashing, timestamp checks and the watcher.

A file is excluded from the build-relevant file set when any of these match:
- a fixed set of skipped directories (VCS metadata, build output, IDE state)
- the repository-root .gitignore
- user-configured ignore patterns
- a deny-list of files that never affect a build (docs, CI descriptors,
  editor configuration)

Matching uses fnmatch against path components, which covers the gitignore
forms found in practice (``bin/``, ``*.user``, ``/artifacts``, ``docs/*.md``).
Negated patterns (``!keep.me``) are not supported and are skipped.
"""

import fnmatch
import logging
import os
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Set

logger = logging.getLogger(__name__)

# Directories never walked for sources
SKIP_DIRS = frozenset({".git", "node_modules", "bin", "obj", ".vs", "TestResults"})

# Extensions that matter for .NET builds (used by the watcher)
RELEVANT_SOURCE_EXTENSIONS = frozenset({".cs", ".csproj", ".razor", ".props", ".targets"})

_CI_FILES = frozenset(
    {
        "azure-pipelines.yml",
        ".gitlab-ci.yml",
        "dockerfile",
        "docker-compose.yml",
        "docker-compose.yaml",
        ".dockerignore",
    }
)
_EDITOR_FILES = frozenset({".editorconfig", ".gitattributes"})

MAX_PATTERN_LENGTH = 1000


def is_non_build_file(name: str) -> bool:
    """Return True for files that never affect a build (by file name)."""
    lower = name.lower()
    if lower.startswith("readme") or lower.endswith(".md"):
        return True
    if lower in _CI_FILES or lower.startswith("jenkinsfile"):
        return True
    return lower in _EDITOR_FILES


def should_skip_dir(name: str) -> bool:
    return name in SKIP_DIRS


def is_relevant_source(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in RELEVANT_SOURCE_EXTENSIONS


class IgnoreRules:
    """Repository ignore rules.

    Usage:
        rules = IgnoreRules(project_root="/path/to/repo")
        files = rules.collect_files(["src/Core", "src/Core.Tests"])
    """

    def __init__(
        self,
        project_root: Path,
        gitignore_path: Optional[Path] = None,
        user_ignore_patterns: Optional[Iterable[str]] = None,
    ):
        """Initialize IgnoreRules.

        Args:
            project_root: Repository root; all relative paths are resolved against it.
            gitignore_path: Path to .gitignore (defaults to {project_root}/.gitignore)
            user_ignore_patterns: Additional user-configured ignore patterns
        """
        self.project_root = Path(project_root).resolve()
        self.gitignore_path = (
            Path(gitignore_path) if gitignore_path else self.project_root / ".gitignore"
        )
        self.user_ignore_patterns: Set[str] = set(user_ignore_patterns or ())
        self._gitignore_patterns: Set[str] = self._load_gitignore()

    def _load_gitignore(self) -> Set[str]:
        """Load and parse .gitignore patterns with validation.

        Returns:
            Set of gitignore patterns
        """
        patterns: Set[str] = set()

        if not self.gitignore_path.exists():
            logger.debug(f"No .gitignore found at {self.gitignore_path}")
            return patterns

        try:
            with open(self.gitignore_path, encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if line.startswith("!"):
                        logger.debug(f".gitignore line {line_num}: negation not supported, skipping")
                        continue
                    if len(line) > MAX_PATTERN_LENGTH:
                        logger.warning(
                            f".gitignore line {line_num}: Pattern too long (>1000 chars), skipping"
                        )
                        continue
                    patterns.add(line)

            logger.debug(f"Loaded {len(patterns)} patterns from .gitignore")
        except UnicodeDecodeError as e:
            logger.error(f"Failed to decode .gitignore (encoding error): {e}")
        except OSError as e:
            logger.warning(f"Failed to read .gitignore: {e}")

        return patterns

    @staticmethod
    def _matches_pattern(parts: Sequence[str], pattern: str, is_dir: bool) -> bool:
        """Check a repo-relative path (split into components) against one pattern.

        Args:
            parts: Path components, root first.
            pattern: gitignore-style pattern.
            is_dir: Whether the path itself is a directory.
        """
        dir_only = pattern.endswith("/")
        pattern = pattern.rstrip("/")
        anchored = pattern.startswith("/") or "/" in pattern
        pattern = pattern.lstrip("/")
        if not pattern:
            return False

        if anchored:
            depth = pattern.count("/") + 1
            if len(parts) < depth:
                return False
            # A directory match also ignores everything beneath it
            if not fnmatch.fnmatchcase("/".join(parts[:depth]), pattern):
                return False
            return not (dir_only and len(parts) == depth and not is_dir)

        # Unanchored: any component may match; dir-only patterns skip the leaf file
        candidates = parts if (is_dir or not dir_only) else parts[:-1]
        return any(fnmatch.fnmatchcase(part, pattern) for part in candidates)

    def _relative_parts(self, path: str) -> List[str]:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self.project_root)
            except ValueError:
                pass
        return [part for part in candidate.as_posix().split("/") if part and part != "."]

    def should_ignore(self, path: str, is_dir: bool = False) -> bool:
        """Check if a path is excluded by skip-dirs, .gitignore or user patterns.

        Args:
            path: Absolute or repo-relative path
            is_dir: Whether the path is a directory

        Returns:
            True if the path should be ignored
        """
        parts = self._relative_parts(path)
        if not parts:
            return False

        dir_parts = parts if is_dir else parts[:-1]
        if any(should_skip_dir(part) for part in dir_parts):
            return True

        for pattern in self._gitignore_patterns:
            if self._matches_pattern(parts, pattern, is_dir):
                return True

        for pattern in self.user_ignore_patterns:
            if self._matches_pattern(parts, pattern, is_dir):
                return True

        return False

    def is_build_relevant(self, path: str) -> bool:
        """True if a file participates in content hashing and timestamp checks."""
        if is_non_build_file(os.path.basename(path)):
            return False
        return not self.should_ignore(path)

    def iter_files(self, rel_dir: str) -> Iterator[str]:
        """Yield build-relevant files under one repo-relative directory.

        Yields:
            Repo-relative POSIX paths, in no particular order.
        """
        abs_dir = self.project_root if rel_dir in ("", ".") else self.project_root / rel_dir
        if not abs_dir.is_dir():
            return

        for current, dirnames, filenames in os.walk(abs_dir):
            rel_current = Path(current).relative_to(self.project_root).as_posix()
            prefix = "" if rel_current == "." else rel_current + "/"
            dirnames[:] = [
                d
                for d in dirnames
                if not should_skip_dir(d) and not self.should_ignore(prefix + d, is_dir=True)
            ]
            for name in filenames:
                rel_path = prefix + name
                if is_non_build_file(name):
                    continue
                if self.should_ignore(rel_path):
                    continue
                yield rel_path

    def collect_files(self, rel_dirs: Iterable[str]) -> List[str]:
        """Collect the sorted, de-duplicated build-relevant files under several dirs."""
        files: Set[str] = set()
        for rel_dir in rel_dirs:
            files.update(self.iter_files(rel_dir))
        return sorted(files)

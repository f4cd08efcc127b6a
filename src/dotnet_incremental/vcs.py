# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""VCS collaborator backed by the ``git`` command line.

Supplies the changed-file sets the engine consumes. All returned paths are
relative to the repository root and use forward slashes.
"""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30


class VCSError(Exception):
    """Raised when a git command fails unexpectedly."""

    pass


class UnknownReferenceError(VCSError):
    """Raised when a revision reference cannot be resolved."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Unknown git reference: {ref}")


def find_root(start: Optional[Path] = None) -> Optional[Path]:
    """Walk up from ``start`` (default: cwd) to the directory holding ``.git``."""
    directory = Path(start or Path.cwd()).resolve()
    while True:
        if (directory / ".git").exists():
            return directory
        if directory.parent == directory:
            return None
        directory = directory.parent


class GitRepository:
    """Read-only queries against one git working tree."""

    def __init__(self, root: Path, executable: str = "git"):
        self.root = Path(root)
        self.executable = executable

    def _run(self, args: Sequence[str]) -> "subprocess.CompletedProcess[str]":
        try:
            return subprocess.run(
                [self.executable, "-C", str(self.root), *args],
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise VCSError(f"git {' '.join(args)} failed: {e}") from e

    def current_revision(self) -> str:
        """Short id of HEAD for display; empty when unavailable."""
        try:
            result = self._run(["rev-parse", "--short", "HEAD"])
        except VCSError as e:
            logger.debug(str(e))
            return ""
        return result.stdout.strip() if result.returncode == 0 else ""

    def uncommitted_files(self) -> List[str]:
        """Modified, staged, deleted and untracked files (renames report the new path)."""
        result = self._run(["status", "--porcelain", "-z", "--untracked-files=all"])
        if result.returncode != 0:
            raise VCSError(f"git status failed: {result.stderr.strip()}")

        files: List[str] = []
        entries = result.stdout.split("\0")
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if len(entry) < 4:
                continue
            status, path = entry[:2], entry[3:]
            if "R" in status or "C" in status:
                i += 1  # the original path follows a rename/copy entry
            if path:
                files.append(path)
        return sorted(set(files))

    def changed_files(self, ref: str) -> List[str]:
        """Files that differ between ``ref`` and the working tree.

        Raises:
            UnknownReferenceError: If ``ref`` cannot be resolved.
        """
        verify = self._run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])
        if verify.returncode != 0:
            raise UnknownReferenceError(ref)

        result = self._run(["diff", "--name-only", ref])
        if result.returncode != 0:
            raise VCSError(f"git diff {ref} failed: {result.stderr.strip()}")
        return sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})

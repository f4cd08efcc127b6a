# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Content hashing, argument hashing and cache keys.

Cache key layout: ``<content hash>:<args hash>:<project path>``.

- content hash: sha256 over ``path NUL content NUL`` for every build-relevant
  file under a project's relevant directories, in sorted path order. Paths
  are repo-relative so the hash does not depend on where the repository is
  checked out.
- args hash: sha256 over the command verb and extra arguments joined by NUL.

Both digests are truncated to DIGEST_BYTES bytes (hex encoded).

This module also holds the timestamp checks that decide whether the
external tool's build or restore phase may be skipped.
"""

import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence, Tuple

from dotnet_incremental.ignore_rules import IgnoreRules
from dotnet_incremental.models import Project

logger = logging.getLogger(__name__)

# 64-bit digests; see DESIGN.md for the collision budget
DIGEST_BYTES = 8

RESTORE_MANIFEST = Path("obj") / "project.assets.json"
RESTORE_RELEVANT_EXTS = (".csproj", ".props", ".targets")
RESTORE_RELEVANT_FILES = (
    "directory.build.props",
    "directory.build.targets",
    "directory.packages.props",
    "nuget.config",
)


def _truncate(digest: Any) -> str:
    return digest.hexdigest()[: DIGEST_BYTES * 2]


def hash_args(args: Sequence[str]) -> str:
    """Digest of a command verb plus extra arguments; empty for no arguments."""
    if not args:
        return ""
    return _truncate(hashlib.sha256("\x00".join(args).encode("utf-8")))


def compute_content_hash(root: Path, dirs: Iterable[str], rules: IgnoreRules) -> str:
    """Digest of every build-relevant file under ``dirs``.

    Returns:
        Hex digest. A project with no files gets the digest of empty input,
        so every cache key carries a full content part.
    """
    files = rules.collect_files(dirs)
    digest = hashlib.sha256()
    for rel_path in files:
        digest.update(rel_path.encode("utf-8"))
        digest.update(b"\x00")
        try:
            digest.update((root / rel_path).read_bytes())
        except OSError as e:
            # Vanished or unreadable files contribute their path only
            logger.debug(f"Could not read {rel_path} while hashing: {e}")
        digest.update(b"\x00")
    return _truncate(digest)


def make_cache_key(content_hash: str, args_hash: str, project_path: str) -> str:
    return f"{content_hash}:{args_hash}:{project_path}"


def parse_cache_key(key: str) -> Tuple[str, str, str]:
    """Split a cache key into (content hash, args hash, project path).

    Returns:
        Three empty strings when the key is malformed.
    """
    parts = key.split(":", 2)
    if len(parts) != 3:
        return "", "", ""
    return parts[0], parts[1], parts[2]


def _newest_output(bin_dir: Path, assembly_name: str) -> Optional[float]:
    """Newest mtime of ``<assembly_name>.dll`` anywhere under ``bin_dir``."""
    newest: Optional[float] = None
    wanted = assembly_name.lower()
    for current, _dirnames, filenames in os.walk(bin_dir):
        for name in filenames:
            if name.lower() != wanted:
                continue
            try:
                mtime = os.stat(os.path.join(current, name)).st_mtime
            except OSError:
                continue
            if newest is None or mtime > newest:
                newest = mtime
    return newest


def can_skip_build(root: Path, project: Project, relevant_dirs: Iterable[str], rules: IgnoreRules) -> bool:
    """True if the project's output assembly is newer than every relevant source file."""
    project_dir = root / project.dir
    output_mtime = _newest_output(project_dir / "bin", project.name + ".dll")
    if output_mtime is None:
        return False

    for rel_dir in relevant_dirs:
        for rel_path in rules.iter_files(rel_dir):
            try:
                if os.stat(root / rel_path).st_mtime > output_mtime:
                    logger.debug(f"[{project.name}] cannot skip build: {rel_path} is newer")
                    return False
            except OSError:
                continue
    return True


def _newer_restore_file(directory: Path, than: float) -> bool:
    try:
        entries = list(os.scandir(directory))
    except OSError:
        return False
    for entry in entries:
        if not entry.is_file() or not entry.name.lower().endswith(RESTORE_RELEVANT_EXTS):
            continue
        try:
            if entry.stat().st_mtime > than:
                return True
        except OSError:
            continue
    return False


def _any_named_file_newer(directory: Path, than: float) -> bool:
    try:
        names = {entry.name.lower(): entry for entry in os.scandir(directory) if entry.is_file()}
    except OSError:
        return False
    for wanted in RESTORE_RELEVANT_FILES:
        entry = names.get(wanted)
        if entry is None:
            continue
        try:
            if entry.stat().st_mtime > than:
                return True
        except OSError:
            continue
    return False


def can_skip_restore(root: Path, project: Project, relevant_dirs: Iterable[str]) -> bool:
    """True if the restore manifest is newer than every restore-relevant file.

    Restore-relevant files are project/props/targets files directly inside any
    relevant directory, plus Directory.Build.*, Directory.Packages.props and
    nuget.config in the project directory or any ancestor up to the root.
    """
    root = Path(root).resolve()
    project_dir = root / project.dir
    manifest = project_dir / RESTORE_MANIFEST
    try:
        manifest_mtime = manifest.stat().st_mtime
    except OSError:
        return False

    for rel_dir in relevant_dirs:
        directory = root if rel_dir in ("", ".") else root / rel_dir
        if _newer_restore_file(directory, manifest_mtime):
            return False

    directory = project_dir.resolve()
    while True:
        if _any_named_file_newer(directory, manifest_mtime):
            return False
        if directory == root or directory.parent == directory:
            break
        directory = directory.parent
    return True


def touch_restore_manifest(root: Path, project: Project) -> None:
    """Refresh the restore manifest's mtime after a successful job."""
    manifest = root / project.dir / RESTORE_MANIFEST
    if manifest.exists():
        try:
            os.utime(manifest, None)
        except OSError as e:
            logger.debug(f"Could not touch {manifest}: {e}")

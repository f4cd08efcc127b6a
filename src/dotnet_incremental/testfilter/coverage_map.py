# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Per-test coverage maps.

A CoverageMap belongs to one test project and records, for every source file
with at least one execution hit, which tests cover it (and the inverse). Maps
are produced by coverage_build and stored as JSON in the cache directory as
``<ProjectName>.testcoverage.json``; selection only ever reads them.

Loading is soft: a missing, unreadable or malformed map is logged and treated
as "no coverage" so selection degrades to heuristics or no filtering.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

COVERAGE_MAP_SUFFIX = ".testcoverage.json"


def coverage_map_path(cache_dir: Path, project_name: str) -> Path:
    return Path(cache_dir) / f"{project_name}{COVERAGE_MAP_SUFFIX}"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class CoverageMap:
    """Bidirectional file <-> test mapping for one test project."""

    project: str
    file_to_tests: Dict[str, List[str]] = field(default_factory=dict)
    test_to_files: Dict[str, List[str]] = field(default_factory=dict)
    generated_at: Optional[datetime] = None
    total_tests: int = 0
    processed_tests: int = 0

    def add(self, test: str, files: Iterable[str]) -> None:
        """Record that ``test`` covers ``files`` (repo-relative)."""
        covered = sorted({f.replace("\\", "/") for f in files})
        self.test_to_files[test] = covered
        for path in covered:
            tests = self.file_to_tests.setdefault(path, [])
            if test not in tests:
                tests.append(test)

    def tests_for_file(self, rel_path: str) -> List[str]:
        return list(self.file_to_tests.get(rel_path.replace("\\", "/"), ()))

    def is_complete(self) -> bool:
        return self.total_tests > 0 and self.processed_tests >= self.total_tests

    def age_seconds(self, now: Optional[float] = None) -> Optional[float]:
        if self.generated_at is None:
            return None
        now = time.time() if now is None else now
        return now - self.generated_at.timestamp()

    def is_stale(self, max_age_seconds: float, now: Optional[float] = None) -> bool:
        """True when older than ``max_age_seconds``; a non-positive limit never expires."""
        if max_age_seconds <= 0:
            return False
        age = self.age_seconds(now)
        return age is None or age > max_age_seconds

    def modified_files(self, root: Path) -> List[str]:
        """Covered files whose mtime is newer than the map itself."""
        if self.generated_at is None:
            return sorted(self.file_to_tests)
        generated = self.generated_at.timestamp()
        modified = []
        for rel_path in self.file_to_tests:
            try:
                if os.stat(Path(root) / rel_path).st_mtime > generated:
                    modified.append(rel_path)
            except OSError:
                continue
        return sorted(modified)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "file_to_tests": self.file_to_tests,
            "test_to_files": self.test_to_files,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "total_tests": self.total_tests,
            "processed_tests": self.processed_tests,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoverageMap":
        """Deserialize a stored map.

        Raises:
            ValueError: If the data is not a coverage map.
        """
        if not isinstance(data, dict) or not isinstance(data.get("project"), str):
            raise ValueError("coverage map must be an object with a 'project' name")
        file_to_tests = data.get("file_to_tests") or {}
        test_to_files = data.get("test_to_files") or {}
        if not isinstance(file_to_tests, dict) or not isinstance(test_to_files, dict):
            raise ValueError("coverage map mappings must be objects")
        return cls(
            project=data["project"],
            file_to_tests={str(k): list(v or []) for k, v in file_to_tests.items()},
            test_to_files={str(k): list(v or []) for k, v in test_to_files.items()},
            generated_at=_parse_timestamp(data.get("generated_at")),
            total_tests=int(data.get("total_tests") or 0),
            processed_tests=int(data.get("processed_tests") or 0),
        )

    def save(self, path: Path) -> None:
        """Write the map as indented JSON, replacing any previous file atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)
        os.replace(tmp, path)

    @classmethod
    def load(cls, path: Path) -> Optional["CoverageMap"]:
        """Load a stored map; None (with a log line) when missing or invalid."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return cls.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable coverage map {path}: {e}")
            return None


def load_coverage_maps(cache_dir: Path) -> Dict[str, CoverageMap]:
    """Load every ``*.testcoverage.json`` in ``cache_dir``, keyed by project name."""
    maps: Dict[str, CoverageMap] = {}
    cache_dir = Path(cache_dir)
    if not cache_dir.is_dir():
        return maps
    for path in sorted(cache_dir.glob(f"*{COVERAGE_MAP_SUFFIX}")):
        coverage = CoverageMap.load(path)
        if coverage is not None:
            maps[coverage.project] = coverage
    if maps:
        logger.debug(f"Loaded coverage maps for {', '.join(sorted(maps))}")
    return maps


class CoverageStatus:
    """Overall coverage freshness."""

    NOT_FOUND = "not_found"
    STALE = "stale"
    FRESH = "fresh"


@dataclass
class StalenessReport:
    status: str
    changed_files: List[str] = field(default_factory=list)
    oldest: Optional[datetime] = None


def check_staleness(
    root: Path, maps: Dict[str, CoverageMap], max_age_seconds: float = 0, now: Optional[float] = None
) -> StalenessReport:
    """Judge a set of coverage maps by covered-file mtimes and, optionally, age."""
    if not maps:
        return StalenessReport(status=CoverageStatus.NOT_FOUND)

    stamps = [m.generated_at for m in maps.values() if m.generated_at is not None]
    oldest = min(stamps) if stamps else None

    changed = set()
    expired = False
    for coverage in maps.values():
        changed.update(coverage.modified_files(root))
        expired = expired or coverage.is_stale(max_age_seconds, now)

    if changed or expired:
        return StalenessReport(status=CoverageStatus.STALE, changed_files=sorted(changed), oldest=oldest)
    return StalenessReport(status=CoverageStatus.FRESH, oldest=oldest)

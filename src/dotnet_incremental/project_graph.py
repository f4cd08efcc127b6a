# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Project discovery and the project dependency graph.

Discovery walks the repository once, parsing every ``.csproj`` into a
Project and every ``.sln`` into a Solution. ProjectGraph then builds:
- forward adjacency: project -> direct dependencies
- reverse adjacency: project -> direct dependents

and answers the questions the engine asks of it:
- affected set: changed projects plus all transitive dependents
- relevant directories: own dir plus dirs of all transitive dependencies
  (memoized per project, so diamond-shaped graphs stay linear)
- untested projects: non-test projects no test project depends on
- stuck projects: members of (or blocked by) a cycle within a target subset

References to projects outside the scanned set are kept on the Project but
never become graph edges.
"""

import logging
import os
import posixpath
import re
from collections import deque
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from dotnet_incremental.ignore_rules import should_skip_dir
from dotnet_incremental.models import Project, Solution

logger = logging.getLogger(__name__)

PROJECT_REF_RE = re.compile(r'<ProjectReference\s+Include="([^"]+)"')
PACKAGE_REF_RE = re.compile(r'<PackageReference\s+Include="([^"]+)"')
SOLUTION_PROJECT_RE = re.compile(r'Project\("[^"]+"\)\s*=\s*"[^"]+",\s*"([^"]+\.csproj)"')
IS_TEST_PROJECT_RE = re.compile(r"<IsTestProject>\s*true\s*</IsTestProject>", re.IGNORECASE)

TEST_PROJECT_SUFFIXES = (".Tests", ".Test", "Tests")


def _normalize(rel_dir: str, ref: str) -> str:
    """Resolve a descriptor-relative reference to a repo-relative POSIX path."""
    ref = ref.replace("\\", "/")
    joined = posixpath.normpath(posixpath.join(rel_dir, ref))
    return joined


def is_test_project_name(name: str) -> bool:
    return name.endswith(TEST_PROJECT_SUFFIXES)


def parse_project(root: Path, rel_path: str) -> Project:
    """Parse one project descriptor.

    Args:
        root: Repository root.
        rel_path: Repo-relative POSIX path of the ``.csproj``.

    Raises:
        OSError: If the descriptor cannot be read.
    """
    content = (root / rel_path).read_text(encoding="utf-8", errors="replace")
    rel_dir = posixpath.dirname(rel_path) or "."
    name = posixpath.splitext(posixpath.basename(rel_path))[0]

    references = tuple(
        _normalize(rel_dir, match) for match in PROJECT_REF_RE.findall(content)
    )
    packages = tuple(PACKAGE_REF_RE.findall(content))
    is_test = is_test_project_name(name) or bool(IS_TEST_PROJECT_RE.search(content))

    return Project(
        path=rel_path,
        name=name,
        dir=rel_dir,
        is_test=is_test,
        references=references,
        package_references=packages,
    )


def parse_solution(root: Path, rel_path: str) -> Solution:
    """Parse one solution descriptor into its member project paths.

    Raises:
        OSError: If the descriptor cannot be read.
    """
    content = (root / rel_path).read_text(encoding="utf-8-sig", errors="replace")
    rel_dir = posixpath.dirname(rel_path) or "."
    members = frozenset(
        _normalize(rel_dir, match) for match in SOLUTION_PROJECT_RE.findall(content)
    )
    return Solution(path=rel_path, projects=members)


def discover(root: Path, scan_root: Optional[Path] = None) -> Tuple[List[Project], List[Solution]]:
    """Walk the repository once and parse every project and solution descriptor.

    Unreadable descriptors are logged and skipped. Solutions without any
    project entries are dropped.

    Args:
        root: Repository root; all returned paths are relative to it.
        scan_root: Subdirectory to scan (defaults to root).

    Returns:
        (projects, solutions), each sorted by path.
    """
    root = Path(root).resolve()
    scan_root = Path(scan_root).resolve() if scan_root else root
    projects: List[Project] = []
    solutions: List[Solution] = []

    for current, dirnames, filenames in os.walk(scan_root):
        dirnames[:] = sorted(d for d in dirnames if not should_skip_dir(d))
        rel_current = Path(current).relative_to(root).as_posix()
        for name in sorted(filenames):
            rel_path = name if rel_current == "." else f"{rel_current}/{name}"
            if name.endswith(".csproj"):
                try:
                    projects.append(parse_project(root, rel_path))
                except OSError as e:
                    logger.warning(f"Skipping unreadable project {rel_path}: {e}")
            elif name.endswith(".sln"):
                try:
                    solution = parse_solution(root, rel_path)
                except OSError as e:
                    logger.warning(f"Skipping unreadable solution {rel_path}: {e}")
                    continue
                if solution.projects:
                    solutions.append(solution)

    logger.info(f"Discovered {len(projects)} projects and {len(solutions)} solutions")
    projects.sort(key=lambda p: p.path)
    solutions.sort(key=lambda s: s.path)
    return projects, solutions


def find_stuck(nodes: Iterable[str], dependencies: Mapping[str, Iterable[str]]) -> Dict[str, List[str]]:
    """Find nodes that can never become ready because of a dependency cycle.

    Kahn's algorithm restricted to ``nodes``: edges to nodes outside the set
    are treated as already satisfied.

    Returns:
        Mapping of each stuck node to the stuck nodes it is waiting on; empty
        when the subgraph is acyclic.
    """
    node_set = set(nodes)
    pending: Dict[str, Set[str]] = {
        node: {d for d in dependencies.get(node, ()) if d in node_set and d != node}
        for node in node_set
    }
    dependents: Dict[str, List[str]] = {node: [] for node in node_set}
    for node, deps in pending.items():
        for dep in deps:
            dependents[dep].append(node)

    remaining = {node: len(deps) for node, deps in pending.items()}
    ready = deque(sorted(node for node, count in remaining.items() if count == 0))
    while ready:
        node = ready.popleft()
        for dependent in dependents[node]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                ready.append(dependent)

    stuck = {node for node, count in remaining.items() if count > 0}
    return {node: sorted(pending[node] & stuck) for node in sorted(stuck)}


class ProjectGraph:
    """Forward and reverse dependency adjacency over a set of projects.

    Built once per run and never mutated afterwards; the only internal state
    that changes is the relevant-dirs memo.
    """

    def __init__(self, projects: Iterable[Project]):
        self._projects: Dict[str, Project] = {}
        for project in projects:
            if project.path in self._projects:
                logger.warning(f"Duplicate project path {project.path}, keeping first")
                continue
            self._projects[project.path] = project

        self.forward: Dict[str, List[str]] = {path: [] for path in self._projects}
        self.reverse: Dict[str, List[str]] = {path: [] for path in self._projects}

        for path, project in self._projects.items():
            for ref in project.references:
                if ref not in self._projects or ref == path:
                    continue
                if ref in self.forward[path]:
                    continue
                self.forward[path].append(ref)
                self.reverse[ref].append(path)

        self._relevant_dirs: Dict[str, FrozenSet[str]] = {}

    def __contains__(self, path: object) -> bool:
        return path in self._projects

    def __len__(self) -> int:
        return len(self._projects)

    @property
    def projects(self) -> List[Project]:
        return [self._projects[path] for path in sorted(self._projects)]

    def get(self, path: str) -> Optional[Project]:
        return self._projects.get(path)

    def dependencies(self, path: str) -> List[str]:
        """Direct dependencies of a project within the graph."""
        return list(self.forward.get(path, ()))

    def dependents(self, path: str) -> List[str]:
        """Direct dependents of a project within the graph."""
        return list(self.reverse.get(path, ()))

    def compute_affected(self, changed: Iterable[str]) -> Set[str]:
        """Closure of ``changed`` over the reverse graph.

        Args:
            changed: Paths of changed projects.

        Returns:
            The changed projects plus every project that transitively depends
            on one of them.
        """
        affected: Set[str] = set()
        queue = deque()
        for path in changed:
            if path not in affected:
                affected.add(path)
                queue.append(path)

        while queue:
            current = queue.popleft()
            for dependent in self.reverse.get(current, ()):
                if dependent not in affected:
                    affected.add(dependent)
                    queue.append(dependent)

        return affected

    def transitive_dependencies(self, path: str) -> List[str]:
        """All projects reachable from ``path`` over forward edges, excluding itself."""
        seen: Set[str] = {path}
        order: List[str] = []
        queue = deque(self.forward.get(path, ()))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            order.append(current)
            queue.extend(self.forward.get(current, ()))
        return order

    def relevant_dirs(self, path: str) -> List[str]:
        """The project's directory plus those of all its transitive dependencies.

        Raises:
            KeyError: If ``path`` is not a known project.
        """
        if path not in self._projects:
            raise KeyError(path)
        dirs = self._relevant_dirs.get(path)
        if dirs is None:
            dirs, _ = self._collect_relevant_dirs(path, set())
        return sorted(dirs)

    def _collect_relevant_dirs(self, path: str, visiting: Set[str]) -> Tuple[FrozenSet[str], bool]:
        """Recursive union of relevant dirs.

        Returns:
            (dirs, complete). Results are only memoized when no back-edge was
            seen below ``path``; the union returned to the outermost caller is
            always complete.
        """
        memo = self._relevant_dirs.get(path)
        if memo is not None:
            return memo, True

        visiting.add(path)
        dirs: Set[str] = {self._projects[path].dir}
        complete = True
        for dep in self.forward.get(path, ()):
            if dep in visiting:
                complete = False
                continue
            dep_dirs, dep_complete = self._collect_relevant_dirs(dep, visiting)
            dirs.update(dep_dirs)
            complete = complete and dep_complete
        visiting.discard(path)

        result = frozenset(dirs)
        if complete:
            self._relevant_dirs[path] = result
        return result, complete

    def find_untested_projects(self) -> List[Project]:
        """Non-test projects that no test project depends on, directly or transitively."""
        tested: Set[str] = set()
        for project in self._projects.values():
            if project.is_test:
                tested.update(self.transitive_dependencies(project.path))

        return [
            project
            for project in self.projects
            if not project.is_test and project.path not in tested
        ]

    def owning_projects(self, changed_paths: Iterable[str]) -> Set[str]:
        """Projects whose directory contains at least one of the changed paths."""
        owners: Set[str] = set()
        for changed in changed_paths:
            changed = changed.replace("\\", "/")
            for project in self._projects.values():
                if project.dir == "." or changed.startswith(project.dir + "/"):
                    owners.add(project.path)
        return owners

    def find_cycle(self, targets: Iterable[str]) -> Dict[str, List[str]]:
        """Stuck projects within ``targets``; empty when the target subgraph is acyclic."""
        return find_stuck(targets, self.forward)


def filter_files_to_project(files: Iterable[str], relevant_dirs: Sequence[str]) -> List[str]:
    """Keep the files that live under one of the given repo-relative directories."""
    result: List[str] = []
    for path in files:
        path = path.replace("\\", "/")
        for rel_dir in relevant_dirs:
            if rel_dir == "." or path.startswith(rel_dir + "/"):
                result.append(path)
                break
    return result

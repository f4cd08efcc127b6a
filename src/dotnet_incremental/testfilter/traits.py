# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Category/trait extraction from C# test sources.

Recognized attribute forms:
- NUnit:  [Category("Live")]
- xUnit:  [Trait("Category", "Live")]
- MSTest: [TestCategory("Live")]

A test method's resolved traits are the union of its class-level and
method-level attributes. Line comments are stripped first so that
commented-out attributes never count.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Sequence, Tuple

from dotnet_incremental.testfilter.safety import TEST_ATTRIBUTE_RE

logger = logging.getLogger(__name__)

CATEGORY_ATTR_RE = re.compile(r'\[Category\s*\(\s*"([^"]+)"\s*\)\]')
TRAIT_ATTR_RE = re.compile(r'\[Trait\s*\(\s*"Category"\s*,\s*"([^"]+)"\s*\)\]')
TEST_CATEGORY_ATTR_RE = re.compile(r'\[TestCategory\s*\(\s*"([^"]+)"\s*\)\]')
FILTER_EXCLUSION_RE = re.compile(r"Category\s*!=\s*(\w+)")
NAMESPACE_RE = re.compile(r"^\s*namespace\s+([\w.]+)", re.MULTILINE)

# Group 1: attribute block, group 2: class name
CLASS_BLOCK_RE = re.compile(
    r"((?:\[[^\]]+\]\s*)*)\s*(?:public\s+|internal\s+|private\s+|protected\s+)*"
    r"(?:abstract\s+|sealed\s+|static\s+)*class\s+(\w+)",
    re.MULTILINE | re.DOTALL,
)
# Group 1: attribute block, group 2: method name
TEST_METHOD_BLOCK_RE = re.compile(
    r"((?:\[[^\]]+\]\s*)+)\s*(?:public\s+|private\s+|protected\s+|internal\s+)?"
    r"(?:async\s+)?(?:Task|void|\w+)\s+(\w+)\s*\(",
    re.MULTILINE | re.DOTALL,
)

_TRAIT_RES = (CATEGORY_ATTR_RE, TRAIT_ATTR_RE, TEST_CATEGORY_ATTR_RE)


def strip_comments(content: str) -> str:
    """Drop everything after ``//`` on each line."""
    return "\n".join(line.split("//", 1)[0] for line in content.split("\n"))


def extract_traits(attributes: str) -> List[str]:
    """Category names declared in an attribute block, sorted and de-duplicated."""
    traits = set()
    for pattern in _TRAIT_RES:
        traits.update(pattern.findall(attributes))
    return sorted(traits)


def extract_category_traits(content: str) -> List[str]:
    """Every category mentioned anywhere in a source file."""
    return extract_traits(strip_comments(content))


def parse_filter_exclusions(user_filter: str) -> List[str]:
    """Categories excluded by a filter, e.g. ``Category!=Live&Category!=Slow`` -> [Live, Slow]."""
    if not user_filter:
        return []
    return FILTER_EXCLUSION_RE.findall(user_filter)


def are_all_traits_excluded(traits: Iterable[str], excluded: Iterable[str]) -> bool:
    """True if ``traits`` is non-empty and every one of them is excluded (case-insensitive)."""
    traits = list(traits)
    excluded_lower = {category.lower() for category in excluded}
    if not traits or not excluded_lower:
        return False
    return all(trait.lower() in excluded_lower for trait in traits)


@dataclass(frozen=True)
class TestMethodInfo:
    """A test method and its resolved (class ∪ method) traits."""

    __test__ = False  # keep pytest from collecting this class

    name: str
    traits: FrozenSet[str] = frozenset()

    def has_excluded_trait(self, excluded_lower: FrozenSet[str]) -> bool:
        return any(trait.lower() in excluded_lower for trait in self.traits)


def iter_test_methods(content: str) -> List[TestMethodInfo]:
    """Test methods declared in one source file, with fully qualified names.

    Names are ``Namespace.Class.Method`` (``Class.Method`` without a namespace).
    """
    src = strip_comments(content)
    namespace_match = NAMESPACE_RE.search(src)
    namespace = namespace_match.group(1) if namespace_match else ""

    class_matches = list(CLASS_BLOCK_RE.finditer(src))
    methods: List[TestMethodInfo] = []
    for i, class_match in enumerate(class_matches):
        class_traits = extract_traits(class_match.group(1) or "")
        class_name = class_match.group(2)
        fq_class = f"{namespace}.{class_name}" if namespace else class_name

        body_end = class_matches[i + 1].start() if i + 1 < len(class_matches) else len(src)
        body = src[class_match.start():body_end]
        for method_match in TEST_METHOD_BLOCK_RE.finditer(body):
            attributes = method_match.group(1)
            if not TEST_ATTRIBUTE_RE.search(attributes):
                continue
            traits = frozenset(class_traits) | frozenset(extract_traits(attributes))
            methods.append(TestMethodInfo(name=f"{fq_class}.{method_match.group(2)}", traits=traits))
    return methods


def are_all_tests_excluded(content: str, excluded: Sequence[str]) -> Tuple[bool, List[str], int]:
    """Check whether a category filter would exclude every test method in a file.

    Returns:
        (all_excluded, excluded_traits, test_count). A file with no test
        methods is never considered excluded.
    """
    if not excluded:
        return False, [], 0
    methods = iter_test_methods(content)
    if not methods:
        return False, [], 0
    all_excluded, traits = _check_methods(methods, excluded)
    return all_excluded, traits, len(methods)


def _check_methods(methods: Sequence[TestMethodInfo], excluded: Sequence[str]) -> Tuple[bool, List[str]]:
    excluded_lower = frozenset(category.lower() for category in excluded)
    hit: List[str] = []
    for method in methods:
        matching = sorted(t for t in method.traits if t.lower() in excluded_lower)
        if not matching:
            return False, []
        for trait in matching:
            if trait not in hit:
                hit.append(trait)
    return True, hit


@dataclass
class TraitMap:
    """Test methods and their traits for one test project directory."""

    methods: List[TestMethodInfo] = field(default_factory=list)
    class_traits: Dict[str, List[str]] = field(default_factory=dict)
    method_traits: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, project_dir: Path) -> "TraitMap":
        """Scan every ``.cs`` file under ``project_dir`` (bin/obj excluded)."""
        trait_map = cls()
        for current, dirnames, filenames in os.walk(project_dir):
            dirnames[:] = sorted(d for d in dirnames if d not in ("bin", "obj", ".git"))
            for name in sorted(filenames):
                if not name.endswith(".cs"):
                    continue
                try:
                    content = (Path(current) / name).read_text(encoding="utf-8", errors="replace")
                except OSError as e:
                    logger.debug(f"Skipping unreadable test source {name}: {e}")
                    continue
                trait_map._add_source(content)
        return trait_map

    def _add_source(self, content: str) -> None:
        src = strip_comments(content)
        namespace_match = NAMESPACE_RE.search(src)
        namespace = namespace_match.group(1) if namespace_match else ""
        for class_match in CLASS_BLOCK_RE.finditer(src):
            traits = extract_traits(class_match.group(1) or "")
            if traits:
                class_name = class_match.group(2)
                fq_class = f"{namespace}.{class_name}" if namespace else class_name
                self.class_traits[fq_class] = traits

        for method in iter_test_methods(content):
            self.methods.append(method)
            own = extract_traits_for_method(method, self.class_traits)
            if own:
                self.method_traits[method.name] = own

    def traits_for_test(self, test_name: str) -> List[str]:
        """Resolved traits for a fully qualified test name (parameters ignored)."""
        base = test_name.split("(", 1)[0]
        class_name = base.rsplit(".", 1)[0] if "." in base else base
        traits = set(self.class_traits.get(class_name, ()))
        traits.update(self.method_traits.get(base, ()))
        return sorted(traits)

    def all_traits(self) -> List[str]:
        traits = set()
        for values in self.class_traits.values():
            traits.update(values)
        for values in self.method_traits.values():
            traits.update(values)
        return sorted(traits)

    def methods_matching(self, patterns: Iterable[str]) -> List[TestMethodInfo]:
        """Methods whose fully qualified name contains any of ``patterns``."""
        patterns = [p for p in patterns if p]
        return [m for m in self.methods if any(p in m.name for p in patterns)]

    def check_exclusion(self, patterns: Iterable[str], excluded: Sequence[str]) -> Tuple[bool, List[str]]:
        """Whether every method matched by ``patterns`` carries an excluded trait.

        Returns:
            (all_excluded, excluded_traits). Nothing matched means not excluded.
        """
        matched = self.methods_matching(patterns)
        if not matched or not excluded:
            return False, []
        return _check_methods(matched, excluded)


def extract_traits_for_method(method: TestMethodInfo, class_traits: Dict[str, List[str]]) -> List[str]:
    """Traits a method declares itself, beyond those inherited from its class."""
    class_name = method.name.rsplit(".", 1)[0]
    inherited = set(class_traits.get(class_name, ()))
    return sorted(t for t in method.traits if t not in inherited)

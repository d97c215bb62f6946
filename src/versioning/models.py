"""Data models for versioning and package resolution."""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

import semantic_version


class SourceKind(Enum):
    """Where a package's versions come from."""
    REGISTRY = "registry"
    GIT = "git"
    PATH = "path"


class DepKind(Enum):
    """Edge kind of a declared dependency."""
    NORMAL = "normal"
    BUILD = "build"
    DEV = "dev"


@dataclass(frozen=True)
class SourceId:
    """A package source.

    ``precise`` records the resolved git commit and takes no part in
    equality, so a locked git source and the manifest's git source compare
    equal.
    """
    kind: SourceKind
    url: str
    reference: Optional[str] = None  # "branch=main" | "tag=v1" | "rev=abc"
    precise: Optional[str] = field(default=None, compare=False)

    @classmethod
    def registry(cls, url: str) -> "SourceId":
        """Build a registry source, normalizing the trailing slash."""
        return cls(SourceKind.REGISTRY, url.rstrip("/") + "/")

    @classmethod
    def git(cls, url: str, reference: Optional[str] = None, precise: Optional[str] = None) -> "SourceId":
        """Build a git source."""
        return cls(SourceKind.GIT, url, reference, precise)

    @classmethod
    def path(cls, relative: str) -> "SourceId":
        """Build a path source from a workspace-relative POSIX path."""
        return cls(SourceKind.PATH, relative or ".")

    def with_precise(self, precise: Optional[str]) -> "SourceId":
        """Return a copy carrying a resolved commit."""
        return replace(self, precise=precise)

    @property
    def is_local(self) -> bool:
        """True for sources defined inside the workspace."""
        return self.kind == SourceKind.PATH

    def ident(self) -> str:
        """Canonical form without the precise commit."""
        base = f"{self.kind.value}+{self.url}"
        if self.reference:
            base += f"?{self.reference}"
        return base

    def __str__(self) -> str:
        if self.precise:
            return f"{self.ident()}#{self.precise}"
        return self.ident()


# Identity of a resolvable package: (name, source).
PackageKey = Tuple[str, SourceId]


def compat_bucket(version: semantic_version.Version) -> str:
    """Return the semver-compatibility bucket of a version.

    ``1.4.2`` -> ``"1"``, ``0.3.1`` -> ``"0.3"``, ``0.0.7`` -> ``"0.0.7"``.
    """
    if version.major > 0:
        return str(version.major)
    if version.minor > 0:
        return f"0.{version.minor}"
    return f"0.0.{version.patch}"


@dataclass(frozen=True)
class PackageId:
    """A concrete package: name, exact version and source."""
    name: str
    version: semantic_version.Version
    source: SourceId

    @property
    def key(self) -> PackageKey:
        """Identity key shared by every version of this package."""
        return (self.name, self.source)

    def sort_key(self) -> Tuple[str, str, semantic_version.Version]:
        """Stable total ordering used for lock output."""
        return (self.name, self.source.ident(), self.version)

    def __str__(self) -> str:
        if self.source.is_local:
            return f"{self.name} v{self.version} ({self.source.url})"
        return f"{self.name} v{self.version}"


_PARTIAL = r"(\d+)(?:\.(\d+|\*|x|X))?(?:\.(\d+|\*|x|X))?"


def _pad(major: int, minor: Optional[int], patch: Optional[int]) -> str:
    return f"{major}.{minor or 0}.{patch or 0}"


def _expand_clause(clause: str) -> List[str]:
    """Expand one comparator into full-version comparators.

    Bare versions are caret requirements. Partial versions are padded the
    way the operator implies, e.g. ``~1.2`` -> ``>=1.2.0,<1.3.0``.
    """
    clause = clause.strip()
    if clause in ("*", "x", "X", ""):
        return [">=0.0.0"]
    m = re.match(r"^(\^|~|==|>=|<=|=|>|<)?\s*(.+)$", clause)
    if not m:
        raise ValueError(f"Invalid version requirement: '{clause}'")
    op, rest = m.group(1) or "^", m.group(2).strip()
    if op == "==":
        op = "="

    # Full version, possibly with pre-release/build metadata.
    try:
        full = semantic_version.Version(rest)
    except ValueError:
        full = None
    if full is not None:
        text = str(full)
        if op == "=":
            return [f"=={text}"]
        if op in (">=", "<=", ">", "<"):
            return [f"{op}{text}"]
        if op == "~":
            return [f">={text}", f"<{full.major}.{full.minor + 1}.0"]
        # caret
        if full.major > 0:
            upper = f"{full.major + 1}.0.0"
        elif full.minor > 0:
            upper = f"0.{full.minor + 1}.0"
        else:
            upper = f"0.0.{full.patch + 1}"
        return [f">={text}", f"<{upper}"]

    m = re.match(rf"^{_PARTIAL}$", rest)
    if not m:
        raise ValueError(f"Invalid version requirement: '{clause}'")
    major = int(m.group(1))
    minor = int(m.group(2)) if m.group(2) and m.group(2).isdigit() else None
    patch = int(m.group(3)) if m.group(3) and m.group(3).isdigit() else None
    wildcard = any(g and not g.isdigit() for g in (m.group(2), m.group(3)))
    if wildcard:
        op = "="

    lower = _pad(major, minor, patch)
    if minor is None:
        next_up = f"{major + 1}.0.0"
    else:
        next_up = f"{major}.{minor + 1}.0"

    if op == "=":
        return [f">={lower}", f"<{next_up}"]
    if op == ">=":
        return [f">={lower}"]
    if op == ">":
        return [f">={next_up}"]
    if op == "<":
        return [f"<{lower}"]
    if op == "<=":
        return [f"<{next_up}"]
    if op == "~":
        return [f">={lower}", f"<{next_up}"]
    # caret on a partial version
    if major > 0 or minor is None:
        upper = f"{major + 1}.0.0"
    elif minor > 0 or patch is None:
        upper = f"0.{minor + 1}.0"
    else:
        upper = f"0.0.{patch + 1}"
    return [f">={lower}", f"<{upper}"]


_COMPARATORS = {
    "==": operator.eq,
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
}


def _split_comparator(clause: str) -> Tuple[str, semantic_version.Version]:
    m = re.match(r"^(==|>=|<=|>|<)(.+)$", clause)
    if not m:
        raise ValueError(f"Invalid comparator: '{clause}'")
    return m.group(1), semantic_version.Version(m.group(2))


@dataclass(frozen=True)
class VersionRange:
    """A set of acceptable versions expressed as comparator predicates.

    Accepts ``^1.2``, ``~1.2``, ``=1.2.3``, ``>=1.0, <2``, ``*`` and wildcards
    such as ``1.*``. A bare ``1.2`` means ``^1.2``. Pre-release versions only
    match when one of the comparators names a pre-release of the same
    ``major.minor.patch``.
    """
    raw: str
    _comparators: Tuple[Tuple[str, semantic_version.Version], ...] = field(
        init=False, compare=False, repr=False
    )
    _pre_bases: FrozenSet[Tuple[int, int, int]] = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        clauses: List[str] = []
        for part in self.raw.split(","):
            if part.strip():
                clauses.extend(_expand_clause(part))
        if not clauses:
            clauses = [">=0.0.0"]
        comparators = tuple(_split_comparator(c) for c in clauses)
        pre_bases = frozenset(
            (ver.major, ver.minor, ver.patch) for _, ver in comparators if ver.prerelease
        )
        object.__setattr__(self, "_comparators", comparators)
        object.__setattr__(self, "_pre_bases", pre_bases)

    @classmethod
    def exact(cls, version: semantic_version.Version) -> "VersionRange":
        """Range matching exactly one version."""
        return cls(f"={version}")

    def matches(self, version: semantic_version.Version) -> bool:
        """Return True when ``version`` is inside the range."""
        if version.prerelease and (version.major, version.minor, version.patch) not in self._pre_bases:
            return False
        bare = version.truncate("prerelease") if version.build else version
        return all(_COMPARATORS[op](bare, target) for op, target in self._comparators)

    def __str__(self) -> str:
        return self.raw


@dataclass(frozen=True)
class Requirement:
    """A dependency edge's constraint on a target package."""
    target_name: str
    version_range: VersionRange
    source_constraint: SourceId
    kind: DepKind = DepKind.NORMAL

    @property
    def key(self) -> PackageKey:
        """Identity key of the target."""
        return (self.target_name, self.source_constraint)

    def matches(self, package_id: PackageId) -> bool:
        """Check name, source and version range against a package."""
        return (
            package_id.name == self.target_name
            and package_id.source == self.source_constraint
            and self.version_range.matches(package_id.version)
        )

    def __str__(self) -> str:
        where = "" if self.source_constraint.kind == SourceKind.REGISTRY else f" ({self.source_constraint.ident()})"
        return f"{self.target_name} = \"{self.version_range}\"{where}"


@dataclass(frozen=True)
class Node:
    """A resolved package plus what it requires."""
    package_id: PackageId
    requirements: Tuple[Requirement, ...] = ()
    checksum: Optional[str] = None
    dependencies: Tuple[PackageId, ...] = ()
    requires_toolchain: Optional[str] = None
    yanked: bool = False

    @property
    def key(self) -> PackageKey:
        """Identity key of the package."""
        return self.package_id.key


@dataclass(frozen=True)
class LockedGraph:
    """All resolved nodes plus the lock format version."""
    nodes: Tuple[Node, ...] = ()
    version: int = 1

    @classmethod
    def from_nodes(cls, nodes: Iterable[Node], version: int = 1) -> "LockedGraph":
        """Build a graph with nodes in stable order."""
        ordered = sorted(nodes, key=lambda n: n.package_id.sort_key())
        return cls(tuple(ordered), version)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def by_key(self) -> Dict[PackageKey, List[Node]]:
        """Group nodes by identity key, newest version first."""
        grouped: Dict[PackageKey, List[Node]] = {}
        for node in self.nodes:
            grouped.setdefault(node.key, []).append(node)
        for nodes in grouped.values():
            nodes.sort(key=lambda n: n.package_id.version, reverse=True)
        return grouped

    def get(self, package_id: PackageId) -> Optional[Node]:
        """Find the node for an exact package id."""
        for node in self.nodes:
            if node.package_id == package_id:
                return node
        return None

    def package_ids(self) -> List[PackageId]:
        """All package ids in stable order."""
        return [node.package_id for node in self.nodes]


@dataclass(frozen=True)
class Specifier:
    """Partial package id pattern used to select update targets."""
    name: str
    version: Optional[str] = None
    source: Optional[str] = None

    def __str__(self) -> str:
        text = self.name
        if self.version:
            text = f"{text}@{self.version}"
        if self.source:
            text = f"{self.source}#{text}"
        return text


@dataclass(frozen=True)
class UpdateMode:
    """Update scope flags for one run."""
    targets: Tuple[Specifier, ...] = ()
    aggressive: bool = False
    precise: Optional[str] = None
    workspace_only: bool = False
    dry_run: bool = False
    frozen: bool = False
    offline: bool = False

"""Depth-first backtracking resolver.

The search is an explicit loop over a stack of decision frames. Each frame
remembers the queue as it was after its requirement was popped, the lazy
iterator of remaining choices, and undo marks into the assignment trail and
the edge list. A conflict unwinds to the most recent frame, restores its
marks and tries that frame's next choice (chronological backtracking).

``Resolver.resolve`` never raises for an unsatisfiable requirement set; it
returns a ``Resolution`` that carries either the new ``LockedGraph`` or a
``ConflictReport``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants
from errors import OfflineNoCandidate, VersionConflict
from resolution.candidates import CandidateSource
from resolution.graph_builder import check_acyclic
from versioning.models import (
    DepKind,
    LockedGraph,
    Node,
    PackageId,
    PackageKey,
    Requirement,
    SourceId,
    SourceKind,
    compat_bucket,
)

logger = logging.getLogger(__name__)

# (name, source, compatibility bucket); bucket is None when only one
# version per key may be selected.
Slot = Tuple[str, SourceId, Optional[str]]
_Pending = Tuple[PackageId, Requirement]


@dataclass(frozen=True)
class ChainLink:
    """One edge on a requirement path."""
    parent: PackageId
    requirement: Requirement

    def __str__(self) -> str:
        return f"{self.parent} requires {self.requirement}"


@dataclass(frozen=True)
class ConflictReport:
    """Why the last attempted requirement could not be satisfied.

    ``chain`` leads from a workspace member to the failing requirement;
    ``conflicting_chain`` leads to the selection it clashed with, when the
    failure was a clash rather than a missing version. ``offline`` is set
    when the requirement went unmet because nothing cached satisfied it.
    """
    requirement: Requirement
    reason: str
    chain: Tuple[ChainLink, ...]
    conflicting_chain: Tuple[ChainLink, ...] = ()
    offline: bool = False

    def links(self) -> List[ChainLink]:
        """Both chains, failing one first."""
        return list(self.chain) + list(self.conflicting_chain)

    def message(self) -> str:
        """Multi-line human readable description."""
        lines = [f"failed to select a version for `{self.requirement.target_name}`: {self.reason}"]
        lines.append("required by:")
        lines.extend(f"    {link}" for link in self.chain)
        if self.conflicting_chain:
            lines.append("which conflicts with the selection made for:")
            lines.extend(f"    {link}" for link in self.conflicting_chain)
        return "\n".join(lines)


@dataclass(frozen=True)
class Resolution:
    """Outcome of one resolve call."""
    graph: Optional[LockedGraph] = None
    conflict: Optional[ConflictReport] = None
    rejected_pins: FrozenSet[PackageKey] = frozenset()
    steps: int = 0
    backtracks: int = 0

    @property
    def ok(self) -> bool:
        """True when a consistent assignment was found."""
        return self.graph is not None

    def unwrap(self) -> LockedGraph:
        """Return the graph or raise the error describing the failure.

        Raises:
            OfflineNoCandidate: the failing requirement had nothing cached.
            VersionConflict: any other unsatisfiable requirement set.
        """
        if self.graph is not None:
            return self.graph
        assert self.conflict is not None
        if self.conflict.offline:
            raise OfflineNoCandidate(
                self.conflict.message(),
                chain=self.conflict.links(),
                package=self.conflict.requirement.target_name,
                requirement=str(self.conflict.requirement),
            )
        raise VersionConflict(
            self.conflict.message(),
            chain=self.conflict.links(),
            package=self.conflict.requirement.target_name,
        )


@dataclass
class _Frame:
    parent: PackageId
    requirement: Requirement
    queue: Tuple[_Pending, ...]
    choices: Iterator[Node]
    trail_mark: int
    edge_mark: int
    tried: int = 0


@dataclass
class _Search:
    """Mutable state of one search; never shared between calls."""
    source: CandidateSource
    pins: Mapping[PackageKey, Sequence[Node]]
    parallel_majors: bool
    assignment: Dict[Slot, Node] = field(default_factory=dict)
    trail: List[Slot] = field(default_factory=list)
    activated_by: Dict[PackageId, Tuple[PackageId, Requirement]] = field(default_factory=dict)
    edges: List[Tuple[PackageId, Requirement, PackageId]] = field(default_factory=list)
    rejected_pins: Set[PackageKey] = field(default_factory=set)
    steps: int = 0
    backtracks: int = 0

    def slot_of(self, node: Node) -> Slot:
        name, source = node.key
        if self.parallel_majors and source.kind == SourceKind.REGISTRY:
            return (name, source, compat_bucket(node.package_id.version))
        return (name, source, None)

    def selected(self, key: PackageKey) -> List[Node]:
        nodes = [node for slot, node in self.assignment.items() if slot[:2] == key]
        return sorted(nodes, key=lambda n: n.package_id.version, reverse=True)

    def choices(self, req: Requirement) -> Iterator[Node]:
        """Selections already made that satisfy ``req``, then fresh candidates."""
        for node in self.selected(req.key):
            if req.matches(node.package_id):
                yield node
        if req.key in self.pins:
            pool = (n for n in self.pins[req.key] if req.matches(n.package_id))
        else:
            pool = self.source.candidates(req)
        for node in pool:
            if self.slot_of(node) not in self.assignment:
                yield node

    def candidate_count(self, req: Requirement) -> int:
        if req.key in self.pins:
            return sum(1 for n in self.pins[req.key] if req.matches(n.package_id))
        return self.source.count(req)

    def chain_to(self, package_id: PackageId) -> Tuple[ChainLink, ...]:
        links: List[ChainLink] = []
        current = package_id
        while current in self.activated_by:
            parent, req = self.activated_by[current]
            links.append(ChainLink(parent, req))
            current = parent
        return tuple(reversed(links))

    def diagnose(self, frame: _Frame) -> ConflictReport:
        req = frame.requirement
        chain = self.chain_to(frame.parent) + (ChainLink(frame.parent, req),)
        pinned = self.pins.get(req.key)
        if pinned is not None and not any(req.matches(n.package_id) for n in pinned):
            self.rejected_pins.add(req.key)
        existing = self.selected(req.key)
        if existing:
            clash = existing[0]
            return ConflictReport(
                requirement=req,
                reason=f"previously selected {clash.package_id} does not match `{req.version_range}`",
                chain=chain,
                conflicting_chain=self.chain_to(clash.package_id),
            )
        if pinned is not None:
            versions = ", ".join(f"v{n.package_id.version}" for n in pinned) or "nothing"
            return ConflictReport(
                requirement=req,
                reason=f"locked to {versions}, which does not match `{req.version_range}`",
                chain=chain,
            )
        if self.source.offline_miss(req):
            return ConflictReport(
                requirement=req,
                reason=f"no cached version matches `{req.version_range}` and network access is disabled (--offline)",
                chain=chain,
                offline=True,
            )
        return ConflictReport(
            requirement=req,
            reason=f"no version matches `{req.version_range}` in {req.source_constraint.ident()}",
            chain=chain,
        )

    def undo(self, trail_mark: int, edge_mark: int) -> None:
        while len(self.trail) > trail_mark:
            node = self.assignment.pop(self.trail.pop())
            self.activated_by.pop(node.package_id, None)
        del self.edges[edge_mark:]

    def apply(self, frame: _Frame, node: Node) -> Tuple[_Pending, ...]:
        """Record ``node`` as the choice for ``frame``; return the new queue."""
        self.edges.append((frame.parent, frame.requirement, node.package_id))
        slot = self.slot_of(node)
        if slot in self.assignment:
            return frame.queue
        self.assignment[slot] = node
        self.trail.append(slot)
        self.activated_by[node.package_id] = (frame.parent, frame.requirement)
        # Dev requirements are only followed for workspace members.
        new = [r for r in node.requirements if r.kind != DepKind.DEV]
        new.sort(key=lambda r: (self.candidate_count(r), r.target_name, r.source_constraint.ident()))
        return frame.queue + tuple((node.package_id, r) for r in new)


class Resolver:
    """Assigns one version per slot so that every requirement holds.

    Args:
        source: Ordered candidates for requirements on free keys.
        parallel_majors: Allow one version per semver-compatibility bucket
            of a registry package instead of one per package.
        lock_version: Format version stamped on the produced graph.
    """

    def __init__(
        self,
        source: CandidateSource,
        parallel_majors: bool = True,
        lock_version: int = Constants.LOCK_FORMAT_VERSION,
    ):
        self.source = source
        self.parallel_majors = parallel_majors
        self.lock_version = lock_version

    def resolve(
        self,
        roots: Sequence[Node],
        pins: Optional[Mapping[PackageKey, Sequence[Node]]] = None,
    ) -> Resolution:
        """Solve for ``roots`` (workspace members).

        Args:
            roots: Local packages whose requirements, dev included, seed the
                queue. They are selected up front.
            pins: Fixed keys mapped to their only allowed nodes.

        Returns:
            Resolution
        """
        search = _Search(self.source, pins or {}, self.parallel_majors)
        queue: Tuple[_Pending, ...] = ()
        for root in roots:
            slot = search.slot_of(root)
            search.assignment[slot] = root
            search.trail.append(slot)
            queue += tuple((root.package_id, req) for req in root.requirements)

        frames: List[_Frame] = []
        conflict: Optional[ConflictReport] = None
        while True:
            if conflict is None:
                if not queue:
                    return self._success(search)
                (parent, req), queue = queue[0], queue[1:]
                frame = _Frame(parent, req, queue, search.choices(req), len(search.trail), len(search.edges))
                frames.append(frame)
            else:
                if not frames:
                    return Resolution(
                        conflict=conflict,
                        rejected_pins=frozenset(search.rejected_pins),
                        steps=search.steps,
                        backtracks=search.backtracks,
                    )
                frame = frames[-1]
                search.undo(frame.trail_mark, frame.edge_mark)
                search.backtracks += 1

            node = next(frame.choices, None)
            if node is None:
                frames.pop()
                if frame.tried == 0:
                    conflict = search.diagnose(frame)
                    if is_debug_enabled(logger):
                        logger.debug(
                            "Conflict: %s", conflict.reason,
                            extra=extra_context(
                                event="conflict", component="resolver", action="select",
                                target=frame.requirement.target_name, depth=len(frames),
                            ),
                        )
                continue

            frame.tried += 1
            search.steps += 1
            if is_debug_enabled(logger):
                logger.debug(
                    "Trying %s for %s", node.package_id, frame.requirement,
                    extra=extra_context(
                        event="decision", component="resolver", action="select",
                        target=node.package_id.name, depth=len(frames), attempt=frame.tried,
                    ),
                )
            queue = search.apply(frame, node)
            conflict = None

    def _success(self, search: _Search) -> Resolution:
        check_acyclic(
            ((parent, child, req.kind) for parent, req, child in search.edges),
            describe=lambda pid: pid.name,
        )
        deps: Dict[PackageId, Set[PackageId]] = {}
        for parent, _, child in search.edges:
            deps.setdefault(parent, set()).add(child)
        nodes = [
            replace(node, dependencies=tuple(sorted(deps.get(node.package_id, ()), key=PackageId.sort_key)))
            for node in search.assignment.values()
        ]
        logger.debug("Resolved %d package(s) in %d step(s), %d backtrack(s)",
                     len(nodes), search.steps, search.backtracks)
        return Resolution(
            graph=LockedGraph.from_nodes(nodes, self.lock_version),
            rejected_pins=frozenset(search.rejected_pins),
            steps=search.steps,
            backtracks=search.backtracks,
        )

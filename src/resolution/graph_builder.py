"""Requirement graph construction from workspace manifests.

Turns the loaded manifests into local ``Node``s (workspace members and the
path dependencies they reach) with typed requirement edges. Cycles are only
rejected when every edge on them is a normal or build edge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, TypeVar

from constants import Constants
from errors import ManifestError, StructuralCycle
from manifest import Manifest, Workspace, load_manifest
from versioning.models import DepKind, Node, PackageId, PackageKey, Requirement, SourceId, SourceKind
from versioning.parser import parse_requirement

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)

# Edge kinds that must not form a cycle.
STRUCTURAL_KINDS = frozenset({DepKind.NORMAL, DepKind.BUILD})


@dataclass(frozen=True)
class RequirementGraph:
    """Local packages and the requirements they declare."""
    members: Tuple[Node, ...]
    local: Mapping[PackageKey, Node]

    def local_keys(self) -> Set[PackageKey]:
        """Keys of every locally defined package."""
        return set(self.local)

    def edges(self) -> List[Tuple[PackageId, Requirement]]:
        """All declared edges, in stable order."""
        out: List[Tuple[PackageId, Requirement]] = []
        for key in sorted(self.local, key=lambda k: (k[0], k[1].ident())):
            node = self.local[key]
            out.extend((node.package_id, req) for req in node.requirements)
        return out


def find_cycle(adjacency: Mapping[K, Sequence[K]], order: Optional[Sequence[K]] = None) -> Optional[List[K]]:
    """Return one cycle as a closed path ``[a, b, ..., a]`` or None.

    Iterative depth-first search; visiting order follows ``order`` (or the
    mapping order) so the reported cycle is deterministic.
    """
    white, grey, black = 0, 1, 2
    color: Dict[K, int] = {}
    for start in (order if order is not None else list(adjacency)):
        if color.get(start, white) != white:
            continue
        path: List[K] = [start]
        stack = [iter(adjacency.get(start, ()))]
        color[start] = grey
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                color[path.pop()] = black
                continue
            state = color.get(child, white)
            if state == grey:
                return path[path.index(child):] + [child]
            if state == white:
                color[child] = grey
                path.append(child)
                stack.append(iter(adjacency.get(child, ())))
    return None


def check_acyclic(
    edges: Iterable[Tuple[K, K, DepKind]],
    describe: Callable[[K], str] = str,
) -> None:
    """Raise StructuralCycle if normal/build edges form a cycle."""
    adjacency: Dict[K, List[K]] = {}
    for parent, child, kind in edges:
        adjacency.setdefault(parent, [])
        if kind in STRUCTURAL_KINDS and child not in adjacency[parent]:
            adjacency[parent].append(child)
    cycle = find_cycle(adjacency)
    if cycle:
        names = [describe(item) for item in cycle]
        raise StructuralCycle(
            "cyclic package dependency: " + " -> ".join(names),
            cycle=names,
        )


def _node_for(
    manifest: Manifest,
    workspace: Workspace,
    default_registry: SourceId,
) -> Node:
    source = SourceId.path(workspace.relative(manifest.directory))

    def resolve_path(rel: str) -> str:
        return workspace.relative(manifest.directory / rel)

    requirements: List[Requirement] = []
    for kind in (DepKind.NORMAL, DepKind.BUILD, DepKind.DEV):
        for name in sorted(manifest.dependencies.get(kind, {})):
            entry = manifest.dependencies[kind][name]
            try:
                requirements.append(parse_requirement(name, entry, kind, default_registry, resolve_path))
            except ValueError as exc:
                raise ManifestError(f"`{manifest.path}`: {exc}", path=str(manifest.path)) from exc
    return Node(
        package_id=PackageId(manifest.name or "", manifest.version, source),
        requirements=tuple(requirements),
        requires_toolchain=manifest.requires_toolchain,
    )


def build_requirement_graph(workspace: Workspace, default_registry: SourceId) -> RequirementGraph:
    """Build local nodes for members and reachable path dependencies.

    Raises:
        ManifestError: a path dependency has no manifest or a bad entry.
        StructuralCycle: local packages depend on each other in a cycle
            that does not pass through a dev edge.
    """
    local: Dict[PackageKey, Node] = {}
    members: List[Node] = []
    for manifest in workspace.members:
        node = _node_for(manifest, workspace, default_registry)
        local[node.key] = node
        members.append(node)

    pending = [node for node in members]
    while pending:
        node = pending.pop(0)
        for req in node.requirements:
            if req.source_constraint.kind != SourceKind.PATH or req.key in local:
                continue
            manifest_path = workspace.root / req.source_constraint.url / Constants.MANIFEST_FILE
            manifest = load_manifest(Path(manifest_path))
            if not manifest.has_package:
                raise ManifestError(f"path dependency `{manifest_path}` has no [package]", path=str(manifest_path))
            if manifest.name != req.target_name:
                raise ManifestError(
                    f"path dependency `{req.target_name}` points at package `{manifest.name}`",
                    path=str(manifest_path),
                )
            dep_node = _node_for(manifest, workspace, default_registry)
            local[dep_node.key] = dep_node
            pending.append(dep_node)

    local_edges = [
        (node.package_id.name, req.target_name, req.kind)
        for node in local.values()
        for req in node.requirements
        if req.key in local
    ]
    check_acyclic(local_edges)

    logger.debug("Requirement graph: %d member(s), %d local package(s)", len(members), len(local))
    return RequirementGraph(members=tuple(members), local=dict(local))

"""Update planning: which locked packages may move, then drive the resolver.

Every key in the previous lock is either *fixed* (pinned to its locked
node(s)) or *free* (chosen by the resolver from the candidate source).
Keys absent from the previous lock are always free, and local packages are
always served from the workspace manifests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from cli_config import ConfigProvider
from constants import Constants
from errors import ConflictingFlags, ExactVersionUnavailable, InvalidGitRevision, LockOutOfDate
from resolution.candidates import CandidateSource, LocalOnlySource, VersionPreferences
from resolution.graph_builder import RequirementGraph
from resolution.resolver import Resolution, Resolver
from resolution.specifier import match_specifiers
from versioning.models import LockedGraph, Node, PackageId, PackageKey, SourceKind, UpdateMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdatePlan:
    """Fixed/free partition for one run.

    Attributes:
        targets: Package ids the specifiers matched.
        free: Keys the resolver may choose freely.
        fresh: Free keys whose locked version is not preferred.
        prefer_locked: Whether locked versions lead candidate order at all.
        promote: Whether rejected pins are promoted to free and re-solved.
        precise: Literal version or revision for the single target.
    """
    targets: Tuple[PackageId, ...] = ()
    free: FrozenSet[PackageKey] = frozenset()
    fresh: FrozenSet[PackageKey] = frozenset()
    prefer_locked: bool = True
    promote: bool = True
    precise: Optional[str] = None


@dataclass(frozen=True)
class PlanOutcome:
    """The new graph and how it was reached."""
    graph: LockedGraph
    plan: UpdatePlan
    promoted: FrozenSet[PackageKey] = frozenset()
    rounds: int = 1


def validate_mode(mode: UpdateMode) -> None:
    """Reject flag combinations that cannot be planned.

    Raises:
        ConflictingFlags
    """
    if mode.precise is not None and mode.aggressive:
        raise ConflictingFlags("cannot specify both --aggressive and --precise")
    if mode.precise is not None and len(mode.targets) != 1:
        raise ConflictingFlags("--precise requires exactly one package specifier")


class UpdatePlanner:
    """Plans and runs one lock update.

    Args:
        graph: Local packages built from the workspace manifests.
        previous: The previous lock (empty when there is none).
        source: Candidate source over every package source.
        config: Resolver settings (minimal versions, parallel majors).
    """

    def __init__(
        self,
        graph: RequirementGraph,
        previous: LockedGraph,
        source: CandidateSource,
        config: Optional[ConfigProvider] = None,
    ):
        config = config or ConfigProvider()
        self.graph = graph
        self.previous = previous
        self.source = source
        self.minimal_versions = config.get_bool("resolver.minimal-versions")
        self.parallel_majors = config.get_bool("resolver.parallel-majors")
        self.locked: Dict[PackageKey, List[Node]] = previous.by_key()
        self._local_keys = graph.local_keys()

    def universe(self) -> List[PackageId]:
        """Packages a specifier may name: local packages plus the previous lock."""
        ids = [node.package_id for node in self.graph.local.values()]
        ids.extend(pid for pid in self.previous.package_ids() if pid.key not in self._local_keys)
        return ids

    def reachable(self, keys: Iterable[PackageKey]) -> Set[PackageKey]:
        """Keys reachable from ``keys`` through previous-lock edges."""
        adjacency: Dict[PackageKey, Set[PackageKey]] = {}
        for node in self.previous:
            adjacency.setdefault(node.key, set()).update(dep.key for dep in node.dependencies)
        seen: Set[PackageKey] = set()
        pending = list(keys)
        while pending:
            key = pending.pop()
            for child in adjacency.get(key, ()):
                if child not in seen:
                    seen.add(child)
                    pending.append(child)
        return seen

    def plan(self, mode: UpdateMode) -> UpdatePlan:
        """Compute the fixed/free partition for ``mode``.

        Raises:
            ConflictingFlags, SpecifierNotFound, AmbiguousSpecifier
        """
        validate_mode(mode)
        targets = tuple(match_specifiers(mode.targets, self.universe()))
        target_keys = {t.key for t in targets}
        local = set(self._local_keys)

        if mode.workspace_only:
            return UpdatePlan(
                targets=targets,
                free=frozenset(local | target_keys),
                fresh=frozenset(target_keys),
                promote=False,
                precise=mode.precise,
            )
        if not targets:
            return UpdatePlan(
                free=frozenset(set(self.locked) | local),
                fresh=frozenset(self.locked),
                prefer_locked=False,
                promote=False,
            )
        free = local | target_keys
        fresh = set(target_keys)
        if mode.aggressive:
            affected = self.reachable(target_keys) - local
            free |= affected
            fresh |= affected
        return UpdatePlan(
            targets=targets,
            free=frozenset(free),
            fresh=frozenset(fresh),
            precise=mode.precise,
        )

    def pins(self, free: Iterable[PackageKey]) -> Dict[PackageKey, List[Node]]:
        """Locked nodes for every fixed key."""
        free = set(free)
        return {
            key: nodes for key, nodes in self.locked.items()
            if key not in free and key not in self._local_keys
        }

    def _resolver(self, source: CandidateSource) -> Resolver:
        return Resolver(source, parallel_majors=self.parallel_majors, lock_version=Constants.LOCK_FORMAT_VERSION)

    def precheck(self) -> LockedGraph:
        """Satisfy the manifests with the previous lock alone.

        Only local packages are consulted besides the pins, so no registry or
        git access happens.

        Raises:
            LockOutOfDate: some requirement is not met by the previous lock.
        """
        resolution = self._resolver(LocalOnlySource(self.source)).resolve(
            self.graph.members, self.pins(())
        )
        if not resolution.ok:
            assert resolution.conflict is not None
            raise LockOutOfDate(
                "the lock file needs to be updated but --locked was passed to prevent this\n"
                + resolution.conflict.message(),
                package=resolution.conflict.requirement.target_name,
            )
        return resolution.graph

    def _precise_error(self, target: PackageId, value: str, detail: str):
        if target.source.kind == SourceKind.GIT:
            return InvalidGitRevision(
                f"revision `{value}` of `{target.name}` {detail}", package=target.name, revision=value
            )
        return ExactVersionUnavailable(
            f"`{target.name}@{value}` {detail}", package=target.name, version=value
        )

    def resolve(self, mode: UpdateMode, plan: Optional[UpdatePlan] = None) -> PlanOutcome:
        """Plan (unless ``plan`` is given), then solve, promoting rejected pins until a fixpoint.

        Raises:
            ConflictingFlags: checked before any candidate source call.
            VersionConflict: the requirements cannot be satisfied.
            ExactVersionUnavailable, InvalidGitRevision: the ``--precise``
                value does not exist or does not satisfy its requirements.
        """
        if plan is None:
            plan = self.plan(mode)
        preferences = VersionPreferences(
            locked=self.locked,
            fresh=plan.fresh,
            prefer_locked=plan.prefer_locked,
            minimal_versions=self.minimal_versions,
        )
        source = self.source.with_preferences(preferences)

        target: Optional[PackageId] = None
        precise_nodes: Sequence[Node] = ()
        if plan.precise is not None:
            target = plan.targets[0]
            precise_nodes = source.precise(target.key, plan.precise)
            logger.debug("Precise candidates for %s: %s", target.name,
                         ", ".join(str(n.package_id) for n in precise_nodes))

        free: Set[PackageKey] = set(plan.free)
        promoted: Set[PackageKey] = set()
        rounds = 0
        while True:
            rounds += 1
            pins = self.pins(free)
            if target is not None:
                others = [n for n in self.locked.get(target.key, ()) if n.package_id != target]
                pins[target.key] = list(precise_nodes) + others
            resolution: Resolution = self._resolver(source).resolve(self.graph.members, pins)

            if target is not None and target.key in resolution.rejected_pins:
                raise self._precise_error(target, plan.precise, "does not satisfy every requirement on it")
            new = set(resolution.rejected_pins) - free
            if not plan.promote or not new:
                break
            for name, key_source in sorted(new, key=lambda k: (k[0], k[1].ident())):
                logger.info("Unlocking %s (%s) to satisfy the updated requirements", name, key_source.ident())
            promoted |= new
            free |= new

        graph = resolution.unwrap()
        if target is not None:
            chosen = {(n.package_id, n.package_id.source.precise) for n in graph}
            if not any((n.package_id, n.package_id.source.precise) in chosen for n in precise_nodes):
                raise self._precise_error(target, plan.precise, "is not selected by any requirement")
        logger.debug("Planning finished after %d round(s); promoted %d key(s)", rounds, len(promoted))
        return PlanOutcome(graph=graph, plan=plan, promoted=frozenset(promoted), rounds=rounds)

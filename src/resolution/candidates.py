"""Candidate sources: ordered, admissible versions for a requirement.

A ``PackageSource`` knows every version of a package from one kind of
source (registry index, git repository, local path). ``CandidateSource``
sits on top of them and applies the run's policy: previous-lock preference,
newest- or oldest-first ordering, yanked and toolchain filtering, offline
restriction, and a per-run query cache.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple

import semantic_version

from common.logging_utils import extra_context, is_debug_enabled
from errors import ExactVersionUnavailable, ManifestError
from versioning.models import Node, PackageKey, Requirement, SourceId, SourceKind
from versioning.parser import parse_version

logger = logging.getLogger(__name__)


class PackageSource(ABC):
    """Metadata provider for one kind of source."""

    @abstractmethod
    def query(self, name: str, source: SourceId, offline: bool = False) -> List[Node]:
        """Return every known version of ``name`` from ``source``.

        When ``offline`` is set only locally cached metadata may be used; an
        empty list means nothing is cached.
        """

    def precise(self, name: str, source: SourceId, value: str, offline: bool = False) -> List[Node]:
        """Return the node(s) for an exact version.

        Raises:
            ExactVersionUnavailable: the version does not exist.
        """
        try:
            wanted = parse_version(value)
        except ValueError as exc:
            raise ExactVersionUnavailable(
                f"`{value}` is not a valid version for package `{name}`", package=name, version=value
            ) from exc
        nodes = [n for n in self.query(name, source, offline) if n.package_id.version == wanted]
        if not nodes:
            raise ExactVersionUnavailable(
                f"package `{name}` has no version `{value}` in {source.ident()}",
                package=name,
                version=value,
            )
        return nodes


@dataclass(frozen=True)
class VersionPreferences:
    """How candidates are ordered for one run.

    ``locked`` holds the previous lock's nodes by key. When
    ``prefer_locked`` is set, locked versions that still satisfy a
    requirement come first, except for keys in ``fresh``.
    """
    locked: Mapping[PackageKey, Sequence[Node]] = field(default_factory=dict)
    fresh: FrozenSet[PackageKey] = frozenset()
    prefer_locked: bool = True
    minimal_versions: bool = False

    def prefers_locked(self, key: PackageKey) -> bool:
        """True when the locked version should be tried first for ``key``."""
        return self.prefer_locked and key not in self.fresh

    def locked_nodes(self, key: PackageKey) -> Sequence[Node]:
        """Previous lock entries for ``key``, newest first."""
        return self.locked.get(key, ())

    def sort(self, nodes: List[Node]) -> List[Node]:
        """Order admissible nodes newest first (oldest with minimal-versions)."""
        return sorted(nodes, key=lambda n: n.package_id.version, reverse=not self.minimal_versions)


def _toolchain_ok(node: Node, max_toolchain: Optional[semantic_version.Version]) -> bool:
    if max_toolchain is None or not node.requires_toolchain:
        return True
    try:
        required = semantic_version.Version.coerce(node.requires_toolchain)
    except ValueError:
        return True
    return required <= max_toolchain


class CandidateSource:
    """Ordered candidate lists over a set of package sources.

    The sequence returned by ``candidates`` is lazy: a locked version that is
    still admissible is yielded before the underlying package source is
    consulted at all.
    """

    def __init__(
        self,
        sources: Mapping[SourceKind, PackageSource],
        preferences: Optional[VersionPreferences] = None,
        offline: bool = False,
        max_toolchain: Optional[str] = None,
    ):
        self._sources = dict(sources)
        self.preferences = preferences or VersionPreferences()
        self.offline = offline
        self._max_toolchain = semantic_version.Version.coerce(max_toolchain) if max_toolchain else None
        self._listings: Dict[PackageKey, List[Node]] = {}
        self._admissible: Dict[Requirement, Tuple[Node, ...]] = {}
        self.queries = 0

    def with_preferences(self, preferences: VersionPreferences) -> "CandidateSource":
        """Same sources and listing cache, different ordering policy."""
        clone = CandidateSource(self._sources, preferences, self.offline)
        clone._max_toolchain = self._max_toolchain
        clone._listings = self._listings
        return clone

    def _source_for(self, source: SourceId) -> PackageSource:
        try:
            return self._sources[source.kind]
        except KeyError:
            raise ManifestError(
                f"unsupported package source {source.ident()}", source=source.ident()
            ) from None

    def listing(self, key: PackageKey) -> List[Node]:
        """Every known version for ``key`` (cached for the run)."""
        if key not in self._listings:
            name, source = key
            self.queries += 1
            if is_debug_enabled(logger):
                logger.debug(
                    "Querying package source",
                    extra=extra_context(
                        event="query", component="candidates", action="listing",
                        target=f"{name} ({source.ident()})", offline=self.offline,
                    ),
                )
            self._listings[key] = list(self._source_for(source).query(name, source, self.offline))
        return self._listings[key]

    def admissible(self, req: Requirement) -> Tuple[Node, ...]:
        """Nodes from the package source that satisfy ``req``, in preference order."""
        if req not in self._admissible:
            locked_ids = {n.package_id for n in self.preferences.locked_nodes(req.key)}
            nodes = [
                node for node in self.listing(req.key)
                if req.matches(node.package_id)
                and (not node.yanked or node.package_id in locked_ids)
                and _toolchain_ok(node, self._max_toolchain)
            ]
            self._admissible[req] = tuple(self.preferences.sort(nodes))
        return self._admissible[req]

    def _preferred_locked(self, req: Requirement) -> List[Node]:
        if not self.preferences.prefers_locked(req.key):
            return []
        return [n for n in self.preferences.locked_nodes(req.key) if req.matches(n.package_id)]

    def candidates(self, req: Requirement) -> Iterator[Node]:
        """Yield admissible candidates for ``req`` in preference order.

        Offline, only cached metadata is consulted; a requirement nothing
        cached satisfies simply has no candidates.
        """
        seen = set()
        for node in self._preferred_locked(req):
            seen.add(node.package_id)
            yield node
        for node in self.admissible(req):
            if node.package_id not in seen:
                seen.add(node.package_id)
                yield node

    def count(self, req: Requirement) -> int:
        """Number of candidates ``candidates(req)`` would yield.

        When locked versions lead, only those are counted so that the
        package source is not consulted for a key that will likely keep
        its locked version.
        """
        locked = self._preferred_locked(req)
        if locked:
            return len(locked)
        return len(self.admissible(req))

    def offline_miss(self, req: Requirement) -> bool:
        """True when ``req`` has no candidates only because the network is off."""
        return self.offline and not self._preferred_locked(req) and not self.admissible(req)

    def precise(self, key: PackageKey, value: str) -> List[Node]:
        """Nodes for the exact version or revision given to ``--precise``."""
        name, source = key
        self.queries += 1
        return list(self._source_for(source).precise(name, source, value, self.offline))


class LocalOnlySource(CandidateSource):
    """Candidate source restricted to local (path) packages.

    Used for the locked/frozen pre-check: any other requirement has no
    candidates beyond the pins the planner supplies.
    """

    def __init__(self, inner: CandidateSource):
        super().__init__(inner._sources, VersionPreferences(prefer_locked=False), offline=True)

    def candidates(self, req: Requirement) -> Iterator[Node]:
        if req.source_constraint.kind != SourceKind.PATH:
            return iter(())
        return super().candidates(req)

    def count(self, req: Requirement) -> int:
        if req.source_constraint.kind != SourceKind.PATH:
            return 0
        return super().count(req)

    def offline_miss(self, req: Requirement) -> bool:
        return False

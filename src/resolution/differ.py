"""Differences between two locked graphs, by (name, source) key."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from versioning.models import LockedGraph, PackageId, PackageKey, SourceKind, compat_bucket


def _describe(package_id: PackageId) -> str:
    text = f"v{package_id.version}"
    if package_id.source.kind == SourceKind.GIT and package_id.source.precise:
        text += f" ({package_id.source.url}#{package_id.source.precise[:8]})"
    elif package_id.source.kind == SourceKind.PATH:
        text += f" ({package_id.source.url})"
    return text


def _same(a: PackageId, b: PackageId) -> bool:
    return a == b and a.source.precise == b.source.precise


@dataclass(frozen=True)
class LockDiff:
    """Added, removed and changed packages between two graphs."""
    added: Tuple[PackageId, ...] = ()
    removed: Tuple[PackageId, ...] = ()
    changed: Tuple[Tuple[PackageId, PackageId], ...] = ()

    @property
    def is_empty(self) -> bool:
        """True when the graphs hold the same packages."""
        return not (self.added or self.removed or self.changed)

    def lines(self) -> List[str]:
        """Human readable status lines, ordered by package name."""
        entries: List[Tuple[str, str, str]] = []
        for old, new in self.changed:
            verb = "Downgrading" if new.version < old.version else "Updating"
            entries.append((old.name, verb, f"{old.name} {_describe(old)} -> {_describe(new)}"))
        for pid in self.added:
            entries.append((pid.name, "Adding", f"{pid.name} {_describe(pid)}"))
        for pid in self.removed:
            entries.append((pid.name, "Removing", f"{pid.name} {_describe(pid)}"))
        entries.sort(key=lambda e: (e[0], e[2]))
        return [f"{verb:>12} {text}" for _, verb, text in entries]


def _pair(
    old: List[PackageId], new: List[PackageId]
) -> Tuple[List[Tuple[PackageId, PackageId]], List[PackageId], List[PackageId]]:
    """Pair versions of one key: same compatibility bucket first, then a lone leftover on each side."""
    changed: List[Tuple[PackageId, PackageId]] = []
    old_left = [o for o in old if not any(_same(o, n) for n in new)]
    new_left = [n for n in new if not any(_same(o, n) for o in old)]

    def bucket(pid: PackageId) -> Optional[str]:
        return compat_bucket(pid.version) if pid.source.kind == SourceKind.REGISTRY else None

    for o in list(old_left):
        match = next((n for n in new_left if bucket(n) == bucket(o)), None)
        if match is not None:
            changed.append((o, match))
            old_left.remove(o)
            new_left.remove(match)
    if len(old_left) == 1 and len(new_left) == 1:
        changed.append((old_left.pop(), new_left.pop()))
    return changed, new_left, old_left


def compute_diff(old: LockedGraph, new: LockedGraph) -> LockDiff:
    """Compare two graphs key by key."""
    def grouped(graph: LockedGraph) -> Dict[PackageKey, List[PackageId]]:
        return {key: [n.package_id for n in nodes] for key, nodes in graph.by_key().items()}

    before, after = grouped(old), grouped(new)
    added: List[PackageId] = []
    removed: List[PackageId] = []
    changed: List[Tuple[PackageId, PackageId]] = []
    for key in set(before) | set(after):
        pairs, plus, minus = _pair(before.get(key, []), after.get(key, []))
        changed.extend(pairs)
        added.extend(plus)
        removed.extend(minus)
    return LockDiff(
        added=tuple(sorted(added, key=PackageId.sort_key)),
        removed=tuple(sorted(removed, key=PackageId.sort_key)),
        changed=tuple(sorted(changed, key=lambda pair: pair[0].sort_key())),
    )

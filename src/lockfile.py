"""Lock file (deplock.lock) encoding, loading and atomic persistence.

The lock is a JSON document::

    {"version": 1,
     "package": [{"name": "serde", "version": "1.0.2",
                  "source": "registry+https://index.deplock.dev/",
                  "checksum": "...", "dependencies": ["serde_derive"],
                  "requirements": [{"name": "serde_derive", "req": "^1",
                                    "kind": "normal",
                                    "source": "registry+https://index.deplock.dev/"}]}]}

Packages are sorted by ``(name, source, version)`` and keys are sorted, so an
unchanged resolution always produces the same bytes. Dependency references
use the shortest unambiguous form: ``name``, ``name version`` or
``name version (source)``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

from common.file_lock import atomic_write_bytes, exclusive_lock, shared_lock
from constants import Constants
from errors import ManifestError, PersistIoError
from versioning.models import DepKind, LockedGraph, Node, PackageId, Requirement, VersionRange
from versioning.parser import parse_source_id, parse_version

logger = logging.getLogger(__name__)


def _reference(package_id: PackageId, names: Mapping[str, List[PackageId]]) -> str:
    same_name = names[package_id.name]
    if len(same_name) == 1:
        return package_id.name
    if sum(1 for pid in same_name if pid.version == package_id.version) == 1:
        return f"{package_id.name} {package_id.version}"
    return f"{package_id.name} {package_id.version} ({package_id.source})"


def _encode_requirement(req: Requirement) -> Dict[str, Any]:
    return {
        "name": req.target_name,
        "req": str(req.version_range),
        "kind": req.kind.value,
        "source": req.source_constraint.ident(),
    }


def to_document(graph: LockedGraph) -> Dict[str, Any]:
    """JSON-ready structure for ``graph``."""
    names: Dict[str, List[PackageId]] = {}
    for node in graph:
        names.setdefault(node.package_id.name, []).append(node.package_id)

    packages = []
    for node in sorted(graph, key=lambda n: n.package_id.sort_key()):
        pid = node.package_id
        entry: Dict[str, Any] = {
            "name": pid.name,
            "version": str(pid.version),
            "source": str(pid.source),
        }
        if node.checksum:
            entry["checksum"] = node.checksum
        if node.requires_toolchain:
            entry["requires_toolchain"] = node.requires_toolchain
        if node.yanked:
            entry["yanked"] = True
        if node.dependencies:
            entry["dependencies"] = sorted(_reference(dep, names) for dep in node.dependencies)
        if node.requirements:
            entry["requirements"] = [_encode_requirement(r) for r in node.requirements]
        packages.append(entry)
    return {"version": graph.version, "package": packages}


def dumps_lock(graph: LockedGraph) -> str:
    """Serialize ``graph`` deterministically."""
    return json.dumps(to_document(graph), indent=2, sort_keys=True) + "\n"


def _resolve_reference(text: str, by_name: Mapping[str, List[PackageId]]) -> PackageId:
    name, _, rest = text.partition(" ")
    candidates = by_name.get(name, [])
    if rest:
        version_text, _, source_text = rest.partition(" ")
        version = parse_version(version_text)
        candidates = [pid for pid in candidates if pid.version == version]
        if source_text:
            wanted = source_text.strip("()")
            candidates = [pid for pid in candidates if str(pid.source) == wanted]
    if len(candidates) != 1:
        raise ValueError(f"dependency reference `{text}` does not name exactly one package")
    return candidates[0]


def from_document(data: Mapping[str, Any]) -> LockedGraph:
    """Inverse of ``to_document``.

    Raises:
        ValueError: the document is not a valid lock.
    """
    if not isinstance(data, Mapping) or not isinstance(data.get("package", []), list):
        raise ValueError("lock file must be an object with a `package` list")
    version = int(data.get("version", Constants.LOCK_FORMAT_VERSION))
    if version > Constants.LOCK_FORMAT_VERSION:
        raise ValueError(f"lock file format version {version} is newer than supported")

    parsed: List[Tuple[Node, Mapping[str, Any]]] = []
    for entry in data.get("package", []):
        try:
            source = parse_source_id(str(entry["source"]))
            pid = PackageId(str(entry["name"]), parse_version(str(entry["version"])), source)
            requirements = tuple(
                Requirement(
                    str(r["name"]),
                    VersionRange(str(r.get("req", "*"))),
                    parse_source_id(str(r["source"])),
                    DepKind(r.get("kind", DepKind.NORMAL.value)),
                )
                for r in entry.get("requirements", [])
            )
        except KeyError as exc:
            raise ValueError(f"lock entry is missing {exc}") from exc
        node = Node(
            package_id=pid,
            requirements=requirements,
            checksum=entry.get("checksum"),
            requires_toolchain=entry.get("requires_toolchain"),
            yanked=bool(entry.get("yanked", False)),
        )
        parsed.append((node, entry))

    by_name: Dict[str, List[PackageId]] = {}
    for node, _ in parsed:
        by_name.setdefault(node.package_id.name, []).append(node.package_id)

    nodes = []
    for node, entry in parsed:
        deps = tuple(_resolve_reference(str(ref), by_name) for ref in entry.get("dependencies", []))
        nodes.append(Node(
            package_id=node.package_id,
            requirements=node.requirements,
            checksum=node.checksum,
            dependencies=tuple(sorted(deps, key=PackageId.sort_key)),
            requires_toolchain=node.requires_toolchain,
            yanked=node.yanked,
        ))
    return LockedGraph.from_nodes(nodes, version)


def load_lock(path: Path) -> LockedGraph:
    """Read the previous lock; a missing file is an empty graph.

    Raises:
        ManifestError: the file exists but cannot be parsed.
    """
    path = Path(path)
    if not path.is_file():
        logger.debug("No lock file at %s", path)
        return LockedGraph(version=Constants.LOCK_FORMAT_VERSION)
    with shared_lock(path):
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ManifestError(f"failed to read lock file `{path}`: {exc}", path=str(path)) from exc
    try:
        graph = from_document(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise ManifestError(f"failed to parse lock file `{path}`: {exc}", path=str(path)) from exc
    logger.debug("Loaded %d locked package(s) from %s", len(graph), path)
    return graph


def write_lock(path: Path, graph: LockedGraph) -> bool:
    """Persist ``graph`` atomically; skip the write when nothing changed.

    Returns:
        True when the file was (re)written.

    Raises:
        PersistIoError: the file could not be written.
    """
    path = Path(path)
    data = dumps_lock(graph).encode("utf-8")
    try:
        with exclusive_lock(path):
            if path.is_file() and path.read_bytes() == data:
                logger.debug("Lock file %s is already up to date", path)
                return False
            atomic_write_bytes(path, data)
    except OSError as exc:
        raise PersistIoError(f"failed to write lock file `{path}`: {exc}", path=str(path)) from exc
    logger.debug("Wrote %d package(s) to %s", len(graph), path)
    return True

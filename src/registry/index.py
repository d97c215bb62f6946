"""Registry index package source.

Every package has one JSON document at ``<registry-url><name>.json``::

    {"name": "serde",
     "versions": [{"version": "1.0.2", "checksum": "...", "yanked": false,
                   "requires_toolchain": "1.60",
                   "deps": [{"name": "serde_derive", "req": "^1",
                             "kind": "normal", "registry": null}]}]}

Documents are cached on disk under ``<cache.dir>/index/`` and shared between
processes with advisory locks. An online query refetches a document older
than ``net.index-ttl`` seconds; an offline query uses whatever is cached.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import urllib.parse
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from common.file_lock import atomic_write_bytes, exclusive_lock, shared_lock
from common.http_client import get_json
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from constants import Constants
from errors import NetworkUnavailable
from resolution.candidates import PackageSource
from versioning.models import DepKind, Node, PackageId, Requirement, SourceId, VersionRange
from versioning.parser import parse_version

logger = logging.getLogger(__name__)


def index_url(registry: SourceId, name: str) -> str:
    """URL of the index document for ``name``."""
    return f"{registry.url}{urllib.parse.quote(name.lower())}.json"


def empty_document(name: str) -> Dict[str, Any]:
    """Document recorded for a package the registry does not know."""
    return {"name": name, "versions": []}


def _parse_dep(dep: Mapping[str, Any], registry: SourceId) -> Optional[Requirement]:
    kind = DepKind(dep.get("kind") or DepKind.NORMAL.value)
    if kind == DepKind.DEV:
        return None
    source = SourceId.registry(dep["registry"]) if dep.get("registry") else registry
    return Requirement(str(dep["name"]), VersionRange(str(dep.get("req") or "*")), source, kind)


def parse_index_document(data: Mapping[str, Any], registry: SourceId, name: str) -> List[Node]:
    """Turn an index document into nodes.

    Versions that cannot be parsed are skipped. Dev requirements of
    registry packages are dropped since they are never followed.
    """
    nodes: List[Node] = []
    for entry in data.get("versions") or []:
        try:
            version = parse_version(str(entry["version"]))
            requirements = []
            for dep in entry.get("deps") or []:
                req = _parse_dep(dep, registry)
                if req is not None:
                    requirements.append(req)
        except (KeyError, TypeError, ValueError) as exc:
            if is_debug_enabled(logger):
                logger.debug(
                    "Skipping malformed index entry",
                    extra=extra_context(
                        event="parse", component="registry_index", action="parse_entry",
                        outcome="skipped", target=name, reason=str(exc),
                    ),
                )
            continue
        toolchain = entry.get("requires_toolchain")
        nodes.append(
            Node(
                package_id=PackageId(name, version, registry),
                requirements=tuple(requirements),
                checksum=entry.get("checksum"),
                requires_toolchain=str(toolchain) if toolchain else None,
                yanked=bool(entry.get("yanked", False)),
            )
        )
    return nodes


class IndexCache:
    """On-disk cache of registry index documents.

    Args:
        root: Cache root (``cache.dir``).
        ttl: Seconds a document stays fresh.
    """

    def __init__(self, root: Path, ttl: float = Constants.INDEX_TTL_SEC):
        self.root = Path(root)
        self.ttl = ttl

    def path_for(self, registry: SourceId, name: str) -> Path:
        """Cache file of one document."""
        host = urllib.parse.urlsplit(registry.url).hostname or "local"
        digest = hashlib.sha256(registry.url.encode("utf-8")).hexdigest()[:16]
        return self.root / "index" / f"{host}-{digest}" / f"{name.lower()}.json"

    def read(self, registry: SourceId, name: str) -> Optional[Tuple[Dict[str, Any], float]]:
        """Return ``(document, age_seconds)`` or None when not cached."""
        path = self.path_for(registry, name)
        if not path.is_file():
            return None
        with shared_lock(path):
            try:
                raw = path.read_bytes()
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                return None
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Ignoring corrupt index cache entry %s", path)
            return None
        if not isinstance(data, dict):
            return None
        return data, age

    def is_fresh(self, registry: SourceId, name: str) -> bool:
        """True when a cached document exists and is younger than the TTL."""
        cached = self.read(registry, name)
        return cached is not None and cached[1] < self.ttl

    def write(self, registry: SourceId, name: str, data: Mapping[str, Any]) -> None:
        """Atomically replace the cached document."""
        path = self.path_for(registry, name)
        payload = json.dumps(data, sort_keys=True).encode("utf-8")
        with exclusive_lock(path):
            atomic_write_bytes(path, payload)


class RegistryIndex(PackageSource):
    """Package source backed by an HTTP registry index.

    Args:
        cache: Shared on-disk document cache.
        retries: Attempts per document fetch.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        cache: IndexCache,
        retries: int = Constants.HTTP_RETRY_MAX,
        timeout: float = Constants.REQUEST_TIMEOUT,
    ):
        self.cache = cache
        self.retries = retries
        self.timeout = timeout
        self.fetches = 0

    def fetch(self, registry: SourceId, name: str) -> Dict[str, Any]:
        """Download and cache the document for ``name``.

        Raises:
            NetworkUnavailable: the registry kept failing or answered with
                something that is not an index document.
        """
        url = index_url(registry, name)
        self.fetches += 1
        status, _, data = get_json(url, retries=self.retries, timeout=self.timeout)
        if status == 404:
            data = empty_document(name)
        elif status != 200 or not isinstance(data, dict):
            raise NetworkUnavailable(
                f"unexpected response from `{safe_url(url)}` (HTTP {status})",
                url=safe_url(url),
                status=status,
            )
        self.cache.write(registry, name, data)
        return data

    def query(self, name: str, source: SourceId, offline: bool = False) -> List[Node]:
        cached = self.cache.read(source, name)
        if offline:
            if cached is None:
                logger.debug("No cached index document for %s (offline)", name)
                return []
            data = cached[0]
        elif cached is not None and cached[1] < self.cache.ttl:
            data = cached[0]
        else:
            data = self.fetch(source, name)
        return parse_index_document(data, source, name)

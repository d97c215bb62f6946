"""Manifest (deplock.toml) loading and workspace discovery.

A manifest may declare a ``[package]``, a ``[workspace]`` or both. The
workspace root is the manifest named by ``--manifest-path`` (or found by
walking up from the working directory); its members are matched by the
``workspace.members`` globs.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import semantic_version

from constants import Constants, DependencyKinds
from errors import ManifestError
from versioning.models import DepKind

logger = logging.getLogger(__name__)

_KIND_BY_TABLE = {
    DependencyKinds.NORMAL.value: DepKind.NORMAL,
    DependencyKinds.BUILD.value: DepKind.BUILD,
    DependencyKinds.DEV.value: DepKind.DEV,
}


@dataclass
class Manifest:
    """One parsed manifest file."""
    path: Path
    name: Optional[str] = None
    version: Optional[semantic_version.Version] = None
    requires_toolchain: Optional[str] = None
    dependencies: Dict[DepKind, Dict[str, Any]] = field(default_factory=dict)
    workspace_members: List[str] = field(default_factory=list)
    is_workspace_root: bool = False

    @property
    def directory(self) -> Path:
        """Directory containing the manifest."""
        return self.path.parent

    @property
    def has_package(self) -> bool:
        """False for virtual workspace manifests."""
        return self.name is not None


@dataclass
class Workspace:
    """The root manifest and every member package."""
    root: Path
    root_manifest: Manifest
    members: List[Manifest]

    @property
    def lock_path(self) -> Path:
        """Lock file location next to the root manifest."""
        return self.root / Constants.LOCK_FILE

    def relative(self, path: Path) -> str:
        """Workspace-relative POSIX path; falls back to the absolute path."""
        resolved = path.resolve()
        try:
            rel = resolved.relative_to(self.root.resolve())
        except ValueError:
            return resolved.as_posix()
        text = rel.as_posix()
        return text or "."


def load_manifest(path: Path) -> Manifest:
    """Parse one manifest file.

    Raises:
        ManifestError: when the file is missing or malformed.
    """
    try:
        with open(path, "rb") as handle:
            data = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ManifestError(f"manifest not found: `{path}`", path=str(path)) from exc
    except OSError as exc:
        raise ManifestError(f"failed to read manifest `{path}`: {exc}", path=str(path)) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(f"failed to parse manifest `{path}`: {exc}", path=str(path)) from exc

    manifest = Manifest(path=path)
    package = data.get("package")
    if package is not None:
        if not isinstance(package, dict) or "name" not in package:
            raise ManifestError(f"`{path}`: [package] requires a name", path=str(path))
        manifest.name = str(package["name"])
        try:
            manifest.version = semantic_version.Version(str(package.get("version", "0.0.0")))
        except ValueError as exc:
            raise ManifestError(f"`{path}`: invalid package version: {exc}", path=str(path)) from exc
        toolchain = package.get("requires-toolchain")
        manifest.requires_toolchain = str(toolchain) if toolchain is not None else None

    for table, kind in _KIND_BY_TABLE.items():
        entries = data.get(table, {})
        if not isinstance(entries, dict):
            raise ManifestError(f"`{path}`: [{table}] must be a table", path=str(path))
        manifest.dependencies[kind] = entries

    workspace = data.get("workspace")
    if workspace is not None:
        manifest.is_workspace_root = True
        members = workspace.get("members", []) if isinstance(workspace, dict) else []
        manifest.workspace_members = [str(m) for m in members]

    if not manifest.has_package and not manifest.is_workspace_root:
        raise ManifestError(f"`{path}` declares neither [package] nor [workspace]", path=str(path))
    return manifest


def find_manifest(start: Path) -> Path:
    """Walk up from ``start`` to the outermost workspace manifest."""
    found: Optional[Path] = None
    for directory in [start, *start.parents]:
        candidate = directory / Constants.MANIFEST_FILE
        if candidate.is_file():
            if found is None:
                found = candidate
            else:
                try:
                    if load_manifest(candidate).is_workspace_root:
                        found = candidate
                except ManifestError:
                    continue
    if found is None:
        raise ManifestError(
            f"could not find `{Constants.MANIFEST_FILE}` in `{start}` or any parent directory",
            path=str(start),
        )
    return found


def load_workspace(manifest_path: Path) -> Workspace:
    """Load the root manifest and expand its member globs."""
    manifest_path = manifest_path.resolve()
    root_manifest = load_manifest(manifest_path)
    root = manifest_path.parent
    members: List[Manifest] = []
    if root_manifest.has_package:
        members.append(root_manifest)

    seen = {manifest_path}
    for pattern in root_manifest.workspace_members:
        matches = sorted(root.glob(pattern))
        if not matches:
            raise ManifestError(f"workspace member `{pattern}` matched nothing", path=str(manifest_path))
        for directory in matches:
            member_path = (directory / Constants.MANIFEST_FILE).resolve()
            if member_path in seen or not directory.is_dir():
                continue
            seen.add(member_path)
            member = load_manifest(member_path)
            if not member.has_package:
                raise ManifestError(f"workspace member `{member_path}` has no [package]", path=str(member_path))
            members.append(member)

    logger.debug("Loaded workspace at %s with %d member(s)", root, len(members))
    return Workspace(root=root, root_manifest=root_manifest, members=members)

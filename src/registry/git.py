"""Package source for git repositories.

Repositories are mirrored as bare clones under ``<cache.dir>/git/db/`` and
each resolved commit is checked out once under ``<cache.dir>/git/checkouts/``.
The package's metadata is the manifest found at the root of the checkout or
in one of its workspace members. All git work goes through the ``git`` CLI.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Set

from common.file_lock import exclusive_lock
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from constants import Constants
from errors import InvalidGitRevision, ManifestError, NetworkUnavailable
from manifest import Manifest, load_manifest
from resolution.candidates import PackageSource
from versioning.models import DepKind, Node, PackageId, Requirement, SourceId, SourceKind
from versioning.parser import parse_requirement

logger = logging.getLogger(__name__)


class GitCommandError(Exception):
    """A git invocation exited with a non-zero status."""

    def __init__(self, args: List[str], returncode: int, stderr: str):
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.returncode = returncode
        self.stderr = stderr


def _url_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]


def ref_to_revspec(reference: Optional[str]) -> str:
    """``branch=main`` -> ``refs/heads/main``; no reference means HEAD."""
    if not reference:
        return "HEAD"
    kind, _, value = reference.partition("=")
    if kind == "branch":
        return f"refs/heads/{value}"
    if kind == "tag":
        return f"refs/tags/{value}"
    return value


class GitSource(PackageSource):
    """Reads package metadata out of git repositories.

    Args:
        cache_dir: Cache root (``cache.dir``).
        default_registry: Registry used by dependencies that name none.
        timeout: Seconds allowed per git command.
    """

    def __init__(
        self,
        cache_dir: Path,
        default_registry: SourceId,
        timeout: float = Constants.GIT_COMMAND_TIMEOUT,
    ):
        self.cache_dir = Path(cache_dir)
        self.default_registry = default_registry
        self.timeout = timeout
        self._updated: Set[str] = set()
        self._commits: Dict[SourceId, Optional[str]] = {}

    def _git(self, *args: str, cwd: Optional[Path] = None) -> str:
        command = ["git", *args]
        if is_debug_enabled(logger):
            logger.debug(
                "Running git",
                extra=extra_context(event="git", component="git_source", action=args[0] if args else None),
            )
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NetworkUnavailable("the `git` executable was not found on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise NetworkUnavailable(f"git {args[0]} timed out after {self.timeout}s") from exc
        if result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stderr or "")
        return result.stdout

    def db_path(self, url: str) -> Path:
        """Bare mirror location for ``url``."""
        return self.cache_dir / "git" / "db" / _url_hash(url)

    def checkout_path(self, url: str, commit: str) -> Path:
        """Working tree location for one commit."""
        return self.cache_dir / "git" / "checkouts" / _url_hash(url) / commit[:12]

    def update_db(self, url: str, offline: bool = False) -> Optional[Path]:
        """Clone or fetch the bare mirror once per run.

        Returns None when offline and nothing is mirrored yet.

        Raises:
            NetworkUnavailable: clone or fetch failed.
        """
        db = self.db_path(url)
        if offline or url in self._updated:
            return db if db.is_dir() else None
        with exclusive_lock(db):
            try:
                if db.is_dir():
                    self._git("--git-dir", str(db), "fetch", "--quiet", "--force", "--tags",
                              "origin", "+refs/heads/*:refs/heads/*")
                else:
                    db.parent.mkdir(parents=True, exist_ok=True)
                    self._git("clone", "--quiet", "--bare", url, str(db))
            except GitCommandError as exc:
                raise NetworkUnavailable(
                    f"failed to update git repository `{safe_url(url)}`: {exc}", url=safe_url(url)
                ) from exc
        self._updated.add(url)
        logger.debug("Updated git mirror for %s", safe_url(url))
        return db

    def rev_parse(self, db: Path, revspec: str) -> Optional[str]:
        """Full commit id for ``revspec`` or None when it does not resolve."""
        try:
            out = self._git("--git-dir", str(db), "rev-parse", "--verify", "--quiet", f"{revspec}^{{commit}}")
        except GitCommandError:
            return None
        return out.strip() or None

    def checkout(self, url: str, db: Path, commit: str) -> Path:
        """Materialize ``commit`` into its checkout directory."""
        dest = self.checkout_path(url, commit)
        if dest.is_dir():
            return dest
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = Path(tempfile.mkdtemp(prefix=f".{dest.name}.", dir=str(dest.parent)))
        try:
            self._git("clone", "--quiet", "--shared", "--no-checkout", str(db), str(tmp))
            self._git("checkout", "--quiet", commit, cwd=tmp)
            os.replace(tmp, dest)
        except GitCommandError as exc:
            shutil.rmtree(tmp, ignore_errors=True)
            raise NetworkUnavailable(f"failed to check out {commit[:12]} of `{safe_url(url)}`: {exc}") from exc
        except OSError:
            # Another process finished the same checkout first.
            shutil.rmtree(tmp, ignore_errors=True)
            if not dest.is_dir():
                raise
        return dest

    def _find_manifest(self, checkout: Path, name: str) -> Optional[Manifest]:
        root = load_manifest(checkout / Constants.MANIFEST_FILE)
        if root.name == name:
            return root
        for pattern in root.workspace_members:
            for directory in sorted(checkout.glob(pattern)):
                path = directory / Constants.MANIFEST_FILE
                if path.is_file():
                    member = load_manifest(path)
                    if member.name == name:
                        return member
        return None

    def _node(self, manifest: Manifest, source: SourceId) -> Node:
        git_source = replace(source, precise=None)
        requirements: List[Requirement] = []
        for kind in (DepKind.NORMAL, DepKind.BUILD):
            for dep_name in sorted(manifest.dependencies.get(kind, {})):
                try:
                    req = parse_requirement(
                        dep_name, manifest.dependencies[kind][dep_name], kind,
                        self.default_registry, resolve_path=lambda rel: rel,
                    )
                except ValueError as exc:
                    raise ManifestError(f"`{manifest.path}`: {exc}", path=str(manifest.path)) from exc
                # Path dependencies inside a repository come from the same repository.
                if req.source_constraint.kind == SourceKind.PATH:
                    req = replace(req, source_constraint=git_source)
                requirements.append(req)
        return Node(
            package_id=PackageId(manifest.name or "", manifest.version, source),
            requirements=tuple(requirements),
            requires_toolchain=manifest.requires_toolchain,
        )

    def _nodes_at(self, name: str, source: SourceId, db: Path, commit: str) -> List[Node]:
        checkout = self.checkout(source.url, db, commit)
        manifest = self._find_manifest(checkout, name)
        if manifest is None:
            logger.warning("Package `%s` not found in %s at %s", name, safe_url(source.url), commit[:12])
            return []
        return [self._node(manifest, source.with_precise(commit))]

    def query(self, name: str, source: SourceId, offline: bool = False) -> List[Node]:
        db = self.update_db(source.url, offline)
        if db is None:
            return []
        if source not in self._commits:
            self._commits[source] = self.rev_parse(db, ref_to_revspec(source.reference))
        commit = self._commits[source]
        if commit is None:
            logger.warning("Reference `%s` not found in %s", source.reference or "HEAD", safe_url(source.url))
            return []
        return self._nodes_at(name, source, db, commit)

    def precise(self, name: str, source: SourceId, value: str, offline: bool = False) -> List[Node]:
        """Nodes for an exact revision given to ``--precise``.

        Raises:
            InvalidGitRevision: the revision does not exist in the repository.
        """
        db = self.update_db(source.url, offline)
        commit = self.rev_parse(db, value) if db is not None else None
        if commit is None:
            raise InvalidGitRevision(
                f"revision `{value}` not found in {safe_url(source.url)}",
                package=name,
                revision=value,
            )
        nodes = self._nodes_at(name, source, db, commit)
        if not nodes:
            raise InvalidGitRevision(
                f"package `{name}` does not exist at revision `{value}` of {safe_url(source.url)}",
                package=name,
                revision=value,
            )
        return nodes

"""The ``update`` command.

Runs the stages ``Start -> LoadManifests -> LoadPreviousLock -> (PreCheck)
-> Plan -> Resolve -> Diff -> (Report | Write) -> Done``. Any error moves the
command to ``Failed`` and propagates; the lock file is only touched in the
final ``Write`` stage, so a failed run never leaves a partial lock behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from cli_config import ConfigProvider
from common.logging_utils import Timer, extra_context, is_debug_enabled
from errors import DeplockError, LockOutOfDate
from lockfile import load_lock, write_lock
from manifest import load_workspace
from registry.git import GitSource
from registry.index import IndexCache, RegistryIndex
from registry.path import LocalPackageSource
from registry.prefetch import IndexPrefetcher
from resolution.candidates import CandidateSource, PackageSource
from resolution.differ import LockDiff, compute_diff
from resolution.graph_builder import RequirementGraph, build_requirement_graph
from resolution.planner import UpdatePlan, UpdatePlanner, validate_mode
from versioning.models import LockedGraph, SourceId, SourceKind, UpdateMode

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Stages of one update run."""
    START = "start"
    LOAD_MANIFESTS = "load-manifests"
    LOAD_PREVIOUS_LOCK = "load-previous-lock"
    PRE_CHECK = "pre-check"
    PLAN = "plan"
    RESOLVE = "resolve"
    DIFF = "diff"
    REPORT = "report"
    WRITE = "write"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UpdateResult:
    """What a finished run produced."""
    previous: LockedGraph
    graph: LockedGraph
    diff: LockDiff
    written: bool
    lock_path: Path


class UpdateCommand:
    """One invocation of ``deplock update``.

    Args:
        manifest_path: Root manifest of the workspace.
        mode: Update scope flags.
        config: Layered configuration.
        sources: Package sources to use instead of the registry index and
            git source built from ``config``; the path source is always
            built from the workspace.
    """

    def __init__(
        self,
        manifest_path: Path,
        mode: UpdateMode,
        config: Optional[ConfigProvider] = None,
        sources: Optional[Mapping[SourceKind, PackageSource]] = None,
    ):
        self.manifest_path = Path(manifest_path)
        self.mode = mode
        self.config = config or ConfigProvider()
        self._sources = dict(sources) if sources is not None else None
        self.stage = Stage.START

    @property
    def offline(self) -> bool:
        """Network access is disabled by flag, --frozen or config."""
        return self.mode.offline or self.config.get_bool("net.offline")

    def _enter(self, stage: Stage) -> None:
        if is_debug_enabled(logger):
            logger.debug(
                "Update stage",
                extra=extra_context(event="stage", component="update", action=stage.value,
                                    previous=self.stage.value),
            )
        self.stage = stage

    def _index_cache(self) -> IndexCache:
        return IndexCache(self.config.cache_dir(), ttl=self.config.get_int("net.index-ttl"))

    def build_source(self, graph: RequirementGraph, default_registry: SourceId) -> CandidateSource:
        """Candidate source over registry, git and workspace path packages."""
        if self._sources is not None:
            sources = dict(self._sources)
        else:
            sources = {
                SourceKind.REGISTRY: RegistryIndex(
                    self._index_cache(),
                    retries=self.config.get_int("net.retry"),
                    timeout=self.config.get_int("net.timeout"),
                ),
                SourceKind.GIT: GitSource(self.config.cache_dir(), default_registry),
            }
        sources[SourceKind.PATH] = LocalPackageSource(graph)
        return CandidateSource(
            sources,
            offline=self.offline,
            max_toolchain=self.config.get_str("resolver.max-toolchain"),
        )

    def prefetch(self, graph: RequirementGraph, planner: UpdatePlanner, plan: UpdatePlan) -> int:
        """Warm the index cache concurrently before the synchronous resolve.

        Only documents for keys the plan lets move are fetched. The walk also
        starts from the locked requirements of fixed packages so free keys
        below them are reached.
        """
        if self.offline or self.mode.frozen or self._sources is not None:
            return 0
        prefetcher = IndexPrefetcher(
            self._index_cache(),
            max_concurrency=self.config.get_int("net.max-concurrency"),
            retries=self.config.get_int("net.retry"),
            timeout=self.config.get_int("net.timeout"),
        )
        with Timer() as t:
            fixed = planner.pins(plan.free)
            roots = [req for _, req in graph.edges()]
            roots.extend(req for nodes in fixed.values() for node in nodes for req in node.requirements)
            fetched = prefetcher.prefetch(roots, skip=fixed)
        logger.debug("Prefetched %d index document(s) in %d ms", fetched, t.duration_ms())
        return fetched

    def run(self) -> UpdateResult:
        """Run every stage.

        Raises:
            DeplockError: any failure; ``self.stage`` is then ``Stage.FAILED``.
        """
        try:
            return self._run()
        except DeplockError as exc:
            logger.debug("Update failed in stage %s: %s", self.stage.value, exc.kind)
            self.stage = Stage.FAILED
            raise

    def _run(self) -> UpdateResult:
        validate_mode(self.mode)

        self._enter(Stage.LOAD_MANIFESTS)
        workspace = load_workspace(self.manifest_path)
        default_registry = SourceId.registry(self.config.get_str("registry.url") or "")
        graph = build_requirement_graph(workspace, default_registry)

        self._enter(Stage.LOAD_PREVIOUS_LOCK)
        previous = load_lock(workspace.lock_path)
        planner = UpdatePlanner(graph, previous, self.build_source(graph, default_registry), self.config)

        new_graph: Optional[LockedGraph] = None
        if self.mode.frozen:
            self._enter(Stage.PRE_CHECK)
            new_graph = planner.precheck()

        if new_graph is None or self.mode.targets:
            self._enter(Stage.PLAN)
            plan = planner.plan(self.mode)
            logger.debug("Plan: %d free key(s), %d target(s)", len(plan.free), len(plan.targets))
            self.prefetch(graph, planner, plan)

            self._enter(Stage.RESOLVE)
            new_graph = planner.resolve(self.mode, plan).graph

        self._enter(Stage.DIFF)
        diff = compute_diff(previous, new_graph)
        if self.mode.frozen and not diff.is_empty:
            raise LockOutOfDate(
                f"the lock file `{workspace.lock_path}` needs to be updated but "
                "--locked was passed to prevent this",
                path=str(workspace.lock_path),
            )
        for line in diff.lines():
            logger.info(line)

        written = False
        if self.mode.dry_run:
            self._enter(Stage.REPORT)
            logger.warning("not updating lock file due to dry run")
        elif not self.mode.frozen:
            self._enter(Stage.WRITE)
            written = write_lock(workspace.lock_path, new_graph)

        self._enter(Stage.DONE)
        return UpdateResult(
            previous=previous,
            graph=new_graph,
            diff=diff,
            written=written,
            lock_path=workspace.lock_path,
        )

"""Package source for path dependencies inside the workspace."""

from __future__ import annotations

from typing import List

from resolution.candidates import PackageSource
from resolution.graph_builder import RequirementGraph
from versioning.models import Node, SourceId


class LocalPackageSource(PackageSource):
    """Serves the local nodes built from the workspace manifests."""

    def __init__(self, graph: RequirementGraph):
        self._graph = graph

    def query(self, name: str, source: SourceId, offline: bool = False) -> List[Node]:
        node = self._graph.local.get((name, source))
        return [node] if node is not None else []

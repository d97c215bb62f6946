"""Tests for the registry index package source and its disk cache."""

from unittest.mock import patch

import pytest

from errors import NetworkUnavailable
from registry.index import IndexCache, RegistryIndex, index_url, parse_index_document
from versioning.models import DepKind, SourceId

from fakes import REG

DOC = {
    "name": "serde",
    "versions": [
        {"version": "1.0.0", "checksum": "sha256:one", "deps": []},
        {"version": "1.1.0", "checksum": "sha256:two", "yanked": True, "requires_toolchain": "1.70",
         "deps": [
             {"name": "serde_derive", "req": "^1", "kind": "normal"},
             {"name": "cc", "req": "^1", "kind": "build"},
             {"name": "tester", "req": "*", "kind": "dev"},
             {"name": "itoa", "req": "^1", "registry": "https://mirror.test"},
         ]},
        {"version": "not-a-version", "deps": []},
        {"deps": []},
    ],
}


class TestParseIndexDocument:
    """Test turning documents into nodes."""

    def test_nodes(self):
        """Test versions, metadata and requirement kinds."""
        nodes = parse_index_document(DOC, REG, "serde")
        assert [str(n.package_id.version) for n in nodes] == ["1.0.0", "1.1.0"]
        newer = nodes[1]
        assert newer.yanked
        assert newer.requires_toolchain == "1.70"
        assert newer.checksum == "sha256:two"
        assert [(r.target_name, r.kind) for r in newer.requirements] == [
            ("serde_derive", DepKind.NORMAL), ("cc", DepKind.BUILD), ("itoa", DepKind.NORMAL),
        ]
        assert newer.requirements[2].source_constraint == SourceId.registry("https://mirror.test/")

    def test_empty(self):
        """Test a document without versions."""
        assert parse_index_document({"name": "x"}, REG, "x") == []

    def test_index_url(self):
        """Test the per-package document URL."""
        assert index_url(REG, "Serde") == "https://index.test/serde.json"


class TestIndexCache:
    """Test the on-disk document cache."""

    def test_write_read(self, tmp_path):
        """Test a cached document is read back with its age."""
        cache = IndexCache(tmp_path)
        cache.write(REG, "serde", DOC)
        data, age = cache.read(REG, "serde")
        assert data == DOC
        assert age >= 0
        assert cache.is_fresh(REG, "serde")

    def test_layout(self, tmp_path):
        """Test documents live under index/<host>-<hash>/."""
        path = IndexCache(tmp_path).path_for(REG, "Serde")
        assert path.parent.parent == tmp_path / "index"
        assert path.parent.name.startswith("index.test-")
        assert path.name == "serde.json"

    def test_missing(self, tmp_path):
        """Test a document that was never cached."""
        cache = IndexCache(tmp_path)
        assert cache.read(REG, "serde") is None
        assert not cache.is_fresh(REG, "serde")

    def test_corrupt_entry_ignored(self, tmp_path):
        """Test that a damaged file reads as not cached."""
        cache = IndexCache(tmp_path)
        path = cache.path_for(REG, "serde")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"\xff{")
        assert cache.read(REG, "serde") is None

    def test_stale(self, tmp_path):
        """Test a zero TTL makes every document stale."""
        cache = IndexCache(tmp_path, ttl=0)
        cache.write(REG, "serde", DOC)
        assert not cache.is_fresh(REG, "serde")


class TestRegistryIndex:
    """Test queries against the registry."""

    def test_fetch_and_cache(self, tmp_path):
        """Test that a fetched document is cached and reused while fresh."""
        index = RegistryIndex(IndexCache(tmp_path))
        with patch("registry.index.get_json", return_value=(200, {}, DOC)) as mock_get:
            first = index.query("serde", REG)
            second = index.query("serde", REG)
        assert [str(n.package_id.version) for n in first] == ["1.0.0", "1.1.0"]
        assert first == second
        mock_get.assert_called_once()
        assert mock_get.call_args[0][0] == "https://index.test/serde.json"
        assert index.fetches == 1

    def test_stale_refetched(self, tmp_path):
        """Test that a stale document is downloaded again."""
        index = RegistryIndex(IndexCache(tmp_path, ttl=0))
        with patch("registry.index.get_json", return_value=(200, {}, DOC)) as mock_get:
            index.query("serde", REG)
            index.query("serde", REG)
        assert mock_get.call_count == 2

    def test_unknown_package(self, tmp_path):
        """Test that a 404 means no versions and is cached."""
        cache = IndexCache(tmp_path)
        index = RegistryIndex(cache)
        with patch("registry.index.get_json", return_value=(404, {}, None)):
            assert index.query("ghost", REG) == []
        assert cache.read(REG, "ghost")[0] == {"name": "ghost", "versions": []}

    @pytest.mark.parametrize("answer", [(403, {}, None), (200, {}, ["not", "a", "dict"])])
    def test_unexpected_response(self, tmp_path, answer):
        """Test answers that are not index documents."""
        index = RegistryIndex(IndexCache(tmp_path))
        with patch("registry.index.get_json", return_value=answer):
            with pytest.raises(NetworkUnavailable):
                index.query("serde", REG)

    def test_offline_uses_stale_cache(self, tmp_path):
        """Test that offline queries accept any cached document."""
        cache = IndexCache(tmp_path, ttl=0)
        cache.write(REG, "serde", DOC)
        index = RegistryIndex(cache)
        with patch("registry.index.get_json") as mock_get:
            nodes = index.query("serde", REG, offline=True)
        assert len(nodes) == 2
        mock_get.assert_not_called()

    def test_offline_nothing_cached(self, tmp_path):
        """Test that offline queries never touch the network."""
        index = RegistryIndex(IndexCache(tmp_path))
        with patch("registry.index.get_json") as mock_get:
            assert index.query("serde", REG, offline=True) == []
        mock_get.assert_not_called()

"""Tests for the git package source with the git CLI mocked out."""

import subprocess
import textwrap
from unittest.mock import patch

import pytest

from errors import InvalidGitRevision, NetworkUnavailable
from registry.git import GitSource, ref_to_revspec
from versioning.models import SourceId

from fakes import REG

URL = "https://example.com/lib.git"
COMMIT = "0123456789abcdef0123456789abcdef01234567"


class FakeGit:
    """Stands in for subprocess.run; rev-parse knows a fixed set of revisions."""

    def __init__(self, revisions=None, fail=()):
        self.revisions = revisions if revisions is not None else {"refs/heads/main": COMMIT, "HEAD": COMMIT}
        self.fail = set(fail)
        self.commands = []

    def __call__(self, command, cwd=None, **kwargs):
        self.commands.append(command)
        verb = next(arg for arg in command[1:] if not arg.startswith("-") and "/" not in arg)
        if verb in self.fail:
            return subprocess.CompletedProcess(command, 128, "", f"fatal: {verb} failed")
        if "rev-parse" in command:
            revspec = command[-1][: -len("^{commit}")]
            commit = self.revisions.get(revspec)
            if commit is None:
                return subprocess.CompletedProcess(command, 1, "", "")
            return subprocess.CompletedProcess(command, 0, commit + "\n", "")
        return subprocess.CompletedProcess(command, 0, "", "")

    def verbs(self):
        return [next(a for a in c[1:] if not a.startswith("-") and "/" not in a) for c in self.commands]


def checkout_with(source, commit, files):
    root = source.checkout_path(URL, commit)
    for rel, body in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(body), encoding="utf-8")
    return root


LIB_MANIFEST = """
    [package]
    name = "lib"
    version = "0.3.0"

    [dependencies]
    serde = "^1"
    helper = { path = "helper" }

    [dev-dependencies]
    tester = "^1"
"""


@pytest.fixture
def source(tmp_path):
    return GitSource(tmp_path, REG)


class TestRevspec:
    """Test reference translation."""

    @pytest.mark.parametrize(
        "reference, expected",
        [
            (None, "HEAD"),
            ("branch=main", "refs/heads/main"),
            ("tag=v1.0", "refs/tags/v1.0"),
            ("rev=abc123", "abc123"),
        ],
    )
    def test_ref_to_revspec(self, reference, expected):
        """Test each reference kind."""
        assert ref_to_revspec(reference) == expected


class TestQuery:
    """Test reading package metadata from a repository."""

    def test_clone_and_read(self, source):
        """Test a first query clones, resolves the branch and reads the manifest."""
        checkout_with(source, COMMIT, {"deplock.toml": LIB_MANIFEST})
        git = FakeGit()
        with patch("registry.git.subprocess.run", side_effect=git):
            nodes = source.query("lib", SourceId.git(URL, "branch=main"))

        assert git.verbs() == ["clone", "rev-parse"]
        assert len(nodes) == 1
        node = nodes[0]
        assert str(node.package_id.version) == "0.3.0"
        assert node.package_id.source.precise == COMMIT
        by_name = {r.target_name: r for r in node.requirements}
        assert set(by_name) == {"serde", "helper"}
        assert by_name["serde"].source_constraint == REG
        assert by_name["helper"].source_constraint == SourceId.git(URL, "branch=main")
        assert by_name["helper"].source_constraint.precise is None

    def test_repeated_query_is_cached(self, source):
        """Test that the mirror is updated and the ref resolved once per run."""
        checkout_with(source, COMMIT, {"deplock.toml": LIB_MANIFEST})
        git = FakeGit()
        with patch("registry.git.subprocess.run", side_effect=git):
            source.query("lib", SourceId.git(URL, "branch=main"))
            source.query("lib", SourceId.git(URL, "branch=main"))
        assert git.verbs() == ["clone", "rev-parse"]

    def test_existing_mirror_fetched(self, source):
        """Test that an existing mirror is fetched instead of cloned."""
        source.db_path(URL).mkdir(parents=True)
        checkout_with(source, COMMIT, {"deplock.toml": LIB_MANIFEST})
        git = FakeGit()
        with patch("registry.git.subprocess.run", side_effect=git):
            source.query("lib", SourceId.git(URL))
        assert git.verbs()[0] == "fetch"

    def test_workspace_member(self, source):
        """Test finding the package in a member of the repository's workspace."""
        checkout_with(source, COMMIT, {
            "deplock.toml": """
                [workspace]
                members = ["crates/*"]
            """,
            "crates/lib/deplock.toml": LIB_MANIFEST,
        })
        with patch("registry.git.subprocess.run", side_effect=FakeGit()):
            nodes = source.query("lib", SourceId.git(URL))
        assert [n.package_id.name for n in nodes] == ["lib"]

    def test_package_missing(self, source):
        """Test a repository without the requested package."""
        checkout_with(source, COMMIT, {"deplock.toml": LIB_MANIFEST})
        with patch("registry.git.subprocess.run", side_effect=FakeGit()):
            assert source.query("other", SourceId.git(URL)) == []

    def test_unknown_reference(self, source):
        """Test a branch that does not exist."""
        with patch("registry.git.subprocess.run", side_effect=FakeGit()):
            assert source.query("lib", SourceId.git(URL, "branch=nope")) == []

    def test_offline_without_mirror(self, source):
        """Test that offline queries never run git when nothing is mirrored."""
        git = FakeGit()
        with patch("registry.git.subprocess.run", side_effect=git):
            assert source.query("lib", SourceId.git(URL), offline=True) == []
        assert git.commands == []

    def test_clone_failure(self, source):
        """Test that a failed clone is a network error."""
        with patch("registry.git.subprocess.run", side_effect=FakeGit(fail={"clone"})):
            with pytest.raises(NetworkUnavailable):
                source.query("lib", SourceId.git(URL))

    def test_git_missing(self, source):
        """Test a machine without git."""
        with patch("registry.git.subprocess.run", side_effect=FileNotFoundError("git")):
            with pytest.raises(NetworkUnavailable):
                source.query("lib", SourceId.git(URL))


class TestPrecise:
    """Test exact revisions."""

    def test_known_revision(self, source):
        """Test resolving an exact commit."""
        other = "fedcba9876543210fedcba9876543210fedcba98"
        checkout_with(source, other, {"deplock.toml": LIB_MANIFEST})
        with patch("registry.git.subprocess.run", side_effect=FakeGit(revisions={"fedcba98": other})):
            nodes = source.precise("lib", SourceId.git(URL), "fedcba98")
        assert nodes[0].package_id.source.precise == other

    def test_unknown_revision(self, source):
        """Test a revision the repository does not have."""
        with patch("registry.git.subprocess.run", side_effect=FakeGit()):
            with pytest.raises(InvalidGitRevision):
                source.precise("lib", SourceId.git(URL), "deadbeef")

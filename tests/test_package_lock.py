"""
Tests for lock file flattening.
"""

import json

import pytest

from depfarm.package_lock import LOCKFILE_NAME, PackageLock, generate_package_lock
from depfarm.tree import DependencyTree

from .conftest import make_manifest, tarball_url


@pytest.fixture
def tree():
    return DependencyTree()


@pytest.fixture
def add_node(tree):
    """Factory registering a published package version in the tree."""

    def _add_node(name, version, *branches, storage_location=None):
        manifest = make_manifest(
            name,
            version,
            dist={"tarball": tarball_url(name, version), "shasum": "00" * 20},
        )
        node = tree.make_tree_node(manifest, storage_location)
        tree.store_package_in_aggregate_cache(node)
        node.branches.extend(branches)
        return node

    return _add_node


def versions_at_root(document):
    return {name: entry["version"] for name, entry in document["dependencies"].items()}


class TestRootPlacement:
    """Test which versions are placed directly under the root."""

    def test_single_versions_are_flattened(self, add_node):
        c = add_node("C", "1.0.0")
        b = add_node("B", "1.0.0", c)
        a = add_node("A", "1.0.0", b)
        app = add_node("app", "1.0.0", a)

        document = generate_package_lock(app)

        assert versions_at_root(document) == {"A": "1.0.0", "B": "1.0.0", "C": "1.0.0"}
        assert all("dependencies" not in entry for entry in document["dependencies"].values())
        assert document["dependencies"]["A"]["requires"] == {"B": "1.0.0"}

    def test_direct_dependency_wins_conflict(self, add_node):
        x1 = add_node("X", "1.0.0")
        x2 = add_node("X", "2.0.0")
        a = add_node("A", "1.0.0", x2)
        app = add_node("app", "1.0.0", a, x1)

        document = generate_package_lock(app)

        assert versions_at_root(document) == {"A": "1.0.0", "X": "1.0.0"}
        nested = document["dependencies"]["A"]["dependencies"]
        assert versions_at_root({"dependencies": nested}) == {"X": "2.0.0"}

    def test_most_needed_version_is_promoted(self, add_node):
        x2 = add_node("X", "2.0.0")
        x3 = add_node("X", "3.0.0")
        a = add_node("A", "1.0.0", x3)
        b = add_node("B", "1.0.0", x2)
        c = add_node("C", "1.0.0", x2)
        app = add_node("app", "1.0.0", a, b, c)

        document = generate_package_lock(app)

        assert document["dependencies"]["X"]["version"] == "2.0.0"
        assert document["dependencies"]["A"]["dependencies"]["X"]["version"] == "3.0.0"
        assert "dependencies" not in document["dependencies"]["B"]
        assert "dependencies" not in document["dependencies"]["C"]

    def test_first_encountered_version_wins_ties(self, add_node):
        x2 = add_node("X", "2.0.0")
        x3 = add_node("X", "3.0.0")
        a = add_node("A", "1.0.0", x2)
        b = add_node("B", "1.0.0", x3)
        app = add_node("app", "1.0.0", a, b)

        document = generate_package_lock(app)

        assert document["dependencies"]["X"]["version"] == "2.0.0"
        assert document["dependencies"]["B"]["dependencies"]["X"]["version"] == "3.0.0"


class TestNesting:
    """Test nested placement below promoted entries."""

    def test_conflicting_child_nests_below_its_parent(self, add_node):
        x1 = add_node("X", "1.0.0")
        x2 = add_node("X", "2.0.0")
        y = add_node("Y", "1.0.0", x1)
        b = add_node("B", "1.0.0", x2, y)
        app = add_node("app", "1.0.0", b, x1)

        document = generate_package_lock(app)

        nested = document["dependencies"]["B"]["dependencies"]
        assert list(nested) == ["X"]
        assert nested["X"]["version"] == "2.0.0"
        assert "dependencies" not in document["dependencies"]["Y"]

    def test_nearer_version_shadows_root_version(self, add_node):
        x1 = add_node("X", "1.0.0")
        x2 = add_node("X", "2.0.0")
        y1 = add_node("Y", "1.0.0")
        y2 = add_node("Y", "2.0.0", x1)
        b = add_node("B", "1.0.0", x2, y2)
        app = add_node("app", "1.0.0", b, x1, y1)

        document = generate_package_lock(app)

        nested = document["dependencies"]["B"]["dependencies"]
        assert versions_at_root({"dependencies": nested}) == {"X": "2.0.0", "Y": "2.0.0"}
        # A lookup from Y@2 would find B's X@2 first.
        assert nested["Y"]["dependencies"]["X"]["version"] == "1.0.0"

    def test_cycles_terminate(self, add_node):
        a = add_node("A", "1.0.0")
        b = add_node("B", "1.0.0", a)
        a.branches.append(b)
        app = add_node("app", "1.0.0", a)

        document = generate_package_lock(app)

        assert versions_at_root(document) == {"A": "1.0.0", "B": "1.0.0"}

    def test_root_project_is_not_locked_into_itself(self, add_node):
        app = add_node("app", "1.0.0")
        a = add_node("A", "1.0.0", app)
        app.branches.append(a)

        document = generate_package_lock(app)

        assert versions_at_root(document) == {"A": "1.0.0"}


class TestDocument:
    """Test the lock document format."""

    def test_header_and_entry_fields(self, add_node, monkeypatch):
        monkeypatch.setenv("NODE_PRESERVE_SYMLINKS", "1")
        a = add_node("A", "1.0.0")
        app = add_node("app", "2.3.4", a)

        document = generate_package_lock(app)

        assert list(document) == [
            "name",
            "version",
            "lockfileVersion",
            "requires",
            "preserveSymlinks",
            "dependencies",
        ]
        assert document["name"] == "app"
        assert document["version"] == "2.3.4"
        assert document["lockfileVersion"] == 1
        assert document["requires"] is True
        assert document["preserveSymlinks"] == "1"
        assert document["dependencies"]["A"] == {
            "version": "1.0.0",
            "resolved": tarball_url("A", "1.0.0"),
            "integrity": "sha1-AAAAAAAAAAAAAAAAAAAAAAAAAAA=",
        }

    def test_unknown_integrity_is_omitted(self, add_node):
        a = add_node("A", "1.0.0")
        a.integrity = True
        app = add_node("app", "1.0.0", a)

        document = generate_package_lock(app)

        assert "integrity" not in document["dependencies"]["A"]
        assert "preserveSymlinks" not in document

    def test_write_next_to_manifest(self, add_node, tmp_path):
        a = add_node("A", "1.0.0")
        app = add_node("app", "1.0.0", a, storage_location=tmp_path)

        path = PackageLock(app).write()

        assert path == tmp_path / LOCKFILE_NAME
        content = path.read_text(encoding="utf-8")
        assert content.startswith('{\n\t"name": "app"')
        assert json.loads(content)["dependencies"]["A"]["version"] == "1.0.0"

"""
Tests for plugin and peer injection.
"""

import pytest

from depfarm.package_manager_config import PackageManagerConfiguration
from depfarm.peer_linker import PeerLinker
from depfarm.tree import DependencyTree

from .conftest import make_manifest

PEERING = {"host": {"^2.0.0": {"peer-.*": "^1.0.0"}}}


@pytest.fixture
def peering_tree(tmp_path):
    tree = DependencyTree(configuration=PackageManagerConfiguration.from_dict({"peering": PEERING}))

    def add(name, version):
        return tree.root.branch_from_existing_package(
            make_manifest(name, version), tmp_path / f"{name}@{version}"
        )

    return tree, add


class TestPluginLinking:
    """Test `<host>-plugin` detection."""

    def test_plugin_becomes_branch_of_its_host(self, make_project):
        paths = [
            make_project("app", dependencies={"babel": "7.0.0", "babel-plugin": "1.0.0"}),
            make_project("babel", "7.0.0"),
            make_project("babel-plugin", "1.0.0"),
        ]
        tree = DependencyTree.from_package_paths(paths)
        _, host, plugin = tree.root_projects()

        linked = PeerLinker(tree).link()

        assert linked == 1
        assert host.branches == [plugin]

    def test_plugin_is_linked_only_once(self, make_project):
        paths = [
            make_project("app", dependencies={"babel": "7.0.0", "babel-plugin": "1.0.0"}),
            make_project("babel", "7.0.0"),
            make_project("babel-plugin", "1.0.0"),
        ]
        tree = DependencyTree.from_package_paths(paths)
        linker = PeerLinker(tree)

        linker.link()

        assert linker.link() == 0
        assert len(tree.root_projects()[1].branches) == 1

    def test_plugin_without_host_in_tree_is_ignored(self, make_project):
        paths = [
            make_project("app", dependencies={"babel-plugin": "1.0.0"}),
            make_project("babel-plugin", "1.0.0"),
        ]
        tree = DependencyTree.from_package_paths(paths)

        assert PeerLinker(tree).link() == 0


class TestPeeringOffers:
    """Test configured peering."""

    def test_highest_satisfying_peer_is_attached(self, peering_tree):
        tree, add = peering_tree
        host = add("host", "2.1.0")
        add("peer-a", "1.0.0")
        best = add("peer-a", "1.5.0")
        add("peer-b", "2.0.0")
        add("other", "1.0.0")

        linked = PeerLinker(tree).link()

        assert linked == 1
        assert host.branches == [best]

    def test_host_outside_offered_range_is_untouched(self, peering_tree):
        tree, add = peering_tree
        host = add("host", "1.0.0")
        add("peer-a", "1.0.0")

        assert PeerLinker(tree).link() == 0
        assert host.branches == []

    def test_existing_branch_is_not_duplicated(self, peering_tree):
        tree, add = peering_tree
        host = add("host", "2.0.0")
        peer = add("peer-a", "1.0.0")
        host.branches.append(peer)

        assert PeerLinker(tree).link() == 0
        assert host.branches == [peer]

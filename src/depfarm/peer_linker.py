"""
Injection of plugin and peer packages as extra branches of their hosts.
"""

import logging
import re
from typing import List, Optional

from semantic_version import Version

from .package_manager_config import PackageManagerConfiguration, PeerRule, satisfies
from .tree import DependencyTree
from .tree_node import DependencyTreeNode

logger = logging.getLogger(__name__)

PLUGIN_PATTERN = re.compile(r"(.+)-plugin")
PLUGIN_SEPARATOR = "-plugin"


def _sort_key(node: DependencyTreeNode):
    try:
        return (1, Version(node.version))
    except ValueError:
        return (0, Version("0.0.0"))


class PeerLinker:
    """
    Attaches extra branches to host packages after the tree is downloaded.

    Only `branches` lists are changed. No node is added to or removed from
    the aggregate cache.
    """

    def __init__(
        self,
        dependency_tree: DependencyTree,
        configuration: Optional[PackageManagerConfiguration] = None,
    ):
        self.dependency_tree = dependency_tree
        self.configuration = configuration or dependency_tree.configuration

    def link(self) -> int:
        """Run plugin and peering linking, returning how many branches were added."""
        return self.link_plugins() + self.link_peering_offers()

    def link_plugins(self) -> int:
        """
        Make `<host>-plugin` packages visible to the host they extend.

        For every node depending on both a host and its plugin, the plugin
        becomes a branch of that host node unless the host already has it.
        """
        tree = self.dependency_tree
        linked = 0

        for dependency_name in list(tree.aggregate_cache):
            if not PLUGIN_PATTERN.search(dependency_name):
                continue

            host_name = dependency_name.split(PLUGIN_SEPARATOR)[0]
            if host_name not in tree.aggregate_cache:
                logger.debug(
                    "Module '%s' looked like a plugin for '%s', but that wasn't found "
                    "in the tree.",
                    dependency_name,
                    host_name,
                )
                continue

            logger.debug(
                "Found possible plugin '%s' for '%s'.", dependency_name, host_name
            )
            for dependant in tree.find_dependants(dependency_name):
                module_host = dependant.dependency_by_name(host_name)
                if module_host is None:
                    # Host declared too far from the root, or not declared at all.
                    continue

                module_dependency = dependant.dependency_by_name(dependency_name)
                if module_host.has_branch_for(dependency_name):
                    logger.debug(
                        "'%s' already depends on '%s'.", module_host, dependency_name
                    )
                    continue

                logger.debug(
                    "'%s' wants '%s' for '%s'.", dependant, module_dependency, module_host
                )
                module_host.branches.append(module_dependency)
                linked += 1

        return linked

    def _best_peer(
        self, rule: PeerRule, package_name: str
    ) -> Optional[DependencyTreeNode]:
        candidates: List[DependencyTreeNode] = []
        seen = set()
        for node in self.dependency_tree.aggregate_cache.get(package_name, {}).values():
            if id(node) in seen:
                continue
            seen.add(id(node))
            if satisfies(node.version, rule.version_range):
                candidates.append(node)
        if not candidates:
            return None
        return max(candidates, key=_sort_key)

    def link_peering_offers(self) -> int:
        """Attach configured peers to every host version matching an offer."""
        tree = self.dependency_tree
        linked = 0

        for host_name, offers in self.configuration.peering.items():
            hosts = []
            for node in tree.aggregate_cache.get(host_name, {}).values():
                if not any(node is host for host in hosts):
                    hosts.append(node)

            for offer in offers:
                for host in hosts:
                    if not offer.applies_to(host.version):
                        continue

                    for rule in offer.peers:
                        for package_name in list(tree.aggregate_cache):
                            if package_name == host_name or not rule.matches_name(
                                package_name
                            ):
                                continue
                            if host.has_branch_for(package_name):
                                continue

                            peer = self._best_peer(rule, package_name)
                            if peer is None:
                                continue

                            logger.debug("Peering '%s' with '%s'.", peer, host)
                            host.branches.append(peer)
                            linked += 1

        return linked

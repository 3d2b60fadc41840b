"""
Nodes of the dependency tree.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Union

from .dependency import Dependency
from .manifest import Manifest, dependencies_from_manifest, read_manifest

if TYPE_CHECKING:
    from .tree import DependencyTree

logger = logging.getLogger(__name__)

ROOT_NAME = "ROOT"


class DependencyTreeNode:
    """
    A resolved package instance.

    `branches` hold the resolved dependencies. They are references to nodes
    owned by the tree's aggregate cache, so several parents can share one
    node. `dependencies` hold what is still unresolved.
    """

    def __init__(
        self, tree: Optional["DependencyTree"] = None, manifest: Optional[Manifest] = None
    ):
        self.name: str = manifest["name"] if manifest else ROOT_NAME
        self.version: str = manifest["version"] if manifest else "*"
        self.manifest = manifest
        self.tree = tree
        self.dependencies: List[Dependency] = dependencies_from_manifest(manifest)
        self.branches: List["DependencyTreeNode"] = []
        # Root-level overrides consulted before the aggregate cache.
        self.pinned_versions: List["DependencyTreeNode"] = []
        self.storage_location: Optional[Path] = None
        self.is_root_project = False
        # Only known when the node was resolved against a source.
        self.tarball: Optional[str] = None
        self.integrity: Union[str, bool, None] = None
        self.binaries: Dict[str, str] = {}

    @property
    def version_tag(self) -> str:
        return f"{self.name}@{self.version}"

    def branch_from_existing_package_path(
        self, package_path: Union[str, Path]
    ) -> "DependencyTreeNode":
        """Load a `package.json` and register it as a branch of this node."""
        package_path = Path(package_path)
        return self.branch_from_existing_package(
            read_manifest(package_path), package_path.parent
        )

    def branch_from_existing_package(
        self, manifest: Manifest, storage_location: Union[str, Path]
    ) -> "DependencyTreeNode":
        """
        Register a package as a branch of this node and in the aggregate cache.

        Raises:
            StorageCollisionError: The package version is already cached
        """
        node = self.tree.make_tree_node(manifest, storage_location)
        self.branches.append(node)
        self.tree.store_package_in_aggregate_cache(node)
        return node

    def branch_from_dependency(
        self, name: str, version_tag: str, is_development_dependency: bool = False
    ) -> None:
        """Declare a soon-to-be branch."""
        self.dependencies.append(Dependency(name, version_tag, is_development_dependency))

    def has_branch_for(self, package_name: str) -> bool:
        return any(branch.name == package_name for branch in self.branches)

    def dependency_by_name(self, package_name: str) -> Optional["DependencyTreeNode"]:
        return next(
            (branch for branch in self.branches if branch.name == package_name), None
        )

    def _add_branch(self, node: "DependencyTreeNode") -> None:
        if not any(branch is node for branch in self.branches):
            self.branches.append(node)

    def resolve_dependencies(self) -> None:
        """
        Resolve declared dependencies against pinned roots and the aggregate
        cache. Whatever cannot be resolved stays in `dependencies`.
        """
        unresolved = []
        for dependency in self.dependencies:
            if (
                dependency.is_development_dependency
                and not self.tree.considers_dev_dependencies
            ):
                unresolved.append(dependency)
                continue

            root_branch = next(
                (
                    node
                    for node in self.tree.root.pinned_versions
                    if node.name == dependency.name
                ),
                None,
            )
            if root_branch is not None:
                if dependency.requested_version != root_branch.version:
                    logger.info(
                        "Replacing dependency in '%s' on '%s' with root package '%s'.",
                        self,
                        dependency,
                        root_branch,
                    )
                dependency.resolved_version = root_branch.version
                self._add_branch(root_branch)
                continue

            cached_node = self.tree.get_package_from_aggregate_cache(
                dependency.name, dependency.requested_version
            )
            if cached_node is None:
                unresolved.append(dependency)
                continue

            dependency.resolved_version = cached_node.version
            self._add_branch(cached_node)

        self.dependencies = unresolved

    def __str__(self) -> str:
        return self.version_tag

    def __repr__(self) -> str:
        return f"<DependencyTreeNode {self.version_tag}>"

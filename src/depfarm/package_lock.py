"""
Flattening of a resolved dependency graph into an npm-compatible lock file.

The document places every package directly under the root unless a version
conflict forces nesting, which mirrors how a conventional install lays out
`node_modules`.
"""

import json
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .tree_node import DependencyTreeNode

logger = logging.getLogger(__name__)

LOCKFILE_VERSION = 1
LOCKFILE_NAME = "package-lock.json"

LockDocument = Dict[str, Any]


@dataclass
class VersionCacheEntry:
    """Where and by whom one version of a package was seen."""

    tree_node: DependencyTreeNode
    lowest_depth: int
    # Keyed by id() of the dependant node.
    dependants: Dict[int, DependencyTreeNode] = field(default_factory=dict)


class LockDependency:
    """
    One entry of the lock document, nested inside the entry that contains it.

    The root container has no node of its own and no parent.
    """

    def __init__(
        self,
        tree_node: Optional[DependencyTreeNode],
        parent: Optional["LockDependency"] = None,
    ):
        self.tree_node = tree_node
        self.parent = parent
        self.dependencies: Dict[str, "LockDependency"] = {}

    def add(self, tree_node: DependencyTreeNode) -> "LockDependency":
        entry = LockDependency(tree_node, self)
        self.dependencies[tree_node.name] = entry
        return entry

    def check_branch_for_version(self, package_name: str, version: str) -> bool:
        """
        Whether `package_name@version` is what a lookup from here would find.

        The lookup walks up the containers and stops at the nearest entry
        with that name, so a different version closer by shadows the one
        further up.
        """
        container: Optional[LockDependency] = self
        while container is not None:
            entry = container.dependencies.get(package_name)
            if entry is not None:
                return entry.tree_node.version == version
            container = container.parent
        return False

    def to_dict(self) -> Dict[str, Any]:
        node = self.tree_node
        entry: Dict[str, Any] = {"version": node.version}
        if node.tarball:
            entry["resolved"] = node.tarball
        if isinstance(node.integrity, str):
            entry["integrity"] = node.integrity
        if node.branches:
            entry["requires"] = {
                branch.name: branch.version for branch in node.branches
            }
        if self.dependencies:
            entry["dependencies"] = {
                name: self.dependencies[name].to_dict()
                for name in sorted(self.dependencies)
            }
        return entry


class PackageLock:
    """
    Lock document builder for one root project.

    Usage:
        document = PackageLock(project_node).generate()
    """

    def __init__(self, root_node: DependencyTreeNode):
        self.root_node = root_node
        self.version_cache: Dict[str, Dict[str, VersionCacheEntry]] = {}
        self.root = LockDependency(None)

    def collect_versions(self) -> Dict[str, Dict[str, VersionCacheEntry]]:
        """
        Walk the graph breadth-first, recording for every package version the
        shallowest depth it appears at and every node depending on it.

        Each node is expanded once, at the shallowest depth it is reached.
        Later encounters only add dependants.
        """
        self.version_cache = {}
        root_node = self.root_node
        expanded = {id(root_node)}
        queue = deque((branch, root_node, 0) for branch in root_node.branches)

        while queue:
            node, parent, depth = queue.popleft()
            if node is root_node:
                continue

            versions = self.version_cache.setdefault(node.name, {})
            entry = versions.get(node.version)
            if entry is None:
                entry = VersionCacheEntry(node, depth)
                versions[node.version] = entry
            elif depth < entry.lowest_depth:
                entry.lowest_depth = depth
            entry.dependants[id(parent)] = parent

            if id(node) in expanded:
                continue
            expanded.add(id(node))
            queue.extend((branch, node, depth + 1) for branch in node.branches)

        return self.version_cache

    def _select_root_versions(self) -> Dict[str, VersionCacheEntry]:
        selected: Dict[str, VersionCacheEntry] = {}

        for name, versions in self.version_cache.items():
            if len(versions) == 1:
                selected[name] = next(iter(versions.values()))

        for name, versions in self.version_cache.items():
            if name in selected:
                continue
            direct = [entry for entry in versions.values() if entry.lowest_depth == 0]
            if direct:
                selected[name] = direct[0]

        for name, versions in self.version_cache.items():
            if name in selected:
                continue
            # max() keeps the first of equally common versions.
            selected[name] = max(
                versions.values(), key=lambda entry: len(entry.dependants)
            )
            logger.debug(
                "Promoting '%s' over %d other versions.",
                selected[name].tree_node,
                len(versions) - 1,
            )

        return selected

    def _make_dependencies(self, container: LockDependency) -> None:
        for branch in container.tree_node.branches:
            if branch is self.root_node:
                continue
            if container.check_branch_for_version(branch.name, branch.version):
                continue
            self._make_dependencies(container.add(branch))

    def generate(self) -> LockDocument:
        """Build the lock document."""
        self.collect_versions()
        self.root = LockDependency(None)

        root_entries: List[LockDependency] = [
            self.root.add(entry.tree_node)
            for entry in self._select_root_versions().values()
        ]
        for entry in root_entries:
            self._make_dependencies(entry)

        document: LockDocument = {
            "name": self.root_node.name,
            "version": self.root_node.version,
            "lockfileVersion": LOCKFILE_VERSION,
            "requires": True,
        }
        preserve_symlinks = os.environ.get("NODE_PRESERVE_SYMLINKS")
        if preserve_symlinks is not None:
            document["preserveSymlinks"] = preserve_symlinks
        document["dependencies"] = {
            name: self.root.dependencies[name].to_dict()
            for name in sorted(self.root.dependencies)
        }
        return document

    def to_json(self) -> str:
        return json.dumps(self.generate(), indent="\t") + "\n"

    def write(self, path: Union[str, Path, None] = None) -> Path:
        """Write the lock file, next to the project's manifest by default."""
        if path is None:
            if self.root_node.storage_location is None:
                raise ValueError(f"'{self.root_node}' has no storage location")
            path = self.root_node.storage_location / LOCKFILE_NAME
        path = Path(path)
        path.write_text(self.to_json(), encoding="utf-8")
        logger.info("Wrote '%s'.", path)
        return path


def generate_package_lock(root_node: DependencyTreeNode) -> LockDocument:
    return PackageLock(root_node).generate()

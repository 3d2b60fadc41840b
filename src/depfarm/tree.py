"""
The dependency tree and its aggregate version cache.
"""

import asyncio
import base64
import binascii
import logging
import os
import stat
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .error_handling import MissingPinError, StorageCollisionError
from .manifest import MANIFEST_NAME, Manifest, normalize_bin
from .package_manager_config import PackageManagerConfiguration
from .script import Script
from .tree_node import DependencyTreeNode
from .version_resolver import INTEGRITY_MISSING, VersionResolver

logger = logging.getLogger(__name__)


def integrity_from_shasum(shasum: Optional[str]) -> Optional[str]:
    """Build an SRI string from a hex sha1, passing the `missing` sentinel through."""
    if not shasum:
        return None
    if shasum == INTEGRITY_MISSING:
        return INTEGRITY_MISSING
    try:
        digest = binascii.unhexlify(shasum)
    except (binascii.Error, ValueError):
        logger.debug("Ignoring malformed shasum '%s'", shasum)
        return None
    return f"sha1-{base64.b64encode(digest).decode('ascii')}"


def _lstat_or_none(target: str) -> Optional[os.stat_result]:
    try:
        return os.lstat(target)
    except (FileNotFoundError, NotADirectoryError):
        return None


class DependencyTree:
    """
    Maintains which packages depend on each other.

    The aggregate cache maps package name to version tag to node, across the
    entire graph. A version tag is either a concrete version or a requested
    range that was resolved to one; aliases share the same node.
    """

    def __init__(
        self,
        with_dev_dependencies: bool = True,
        configuration: Optional[PackageManagerConfiguration] = None,
        version_resolver: Optional[VersionResolver] = None,
    ):
        self.root = DependencyTreeNode(self)
        self.considers_dev_dependencies = with_dev_dependencies
        self.configuration = configuration or PackageManagerConfiguration()
        self.version_resolver = version_resolver or VersionResolver(self.configuration)
        self.stat_cache: Dict[str, "asyncio.Future[Optional[os.stat_result]]"] = {}
        self.aggregate_cache: Dict[str, Dict[str, DependencyTreeNode]] = {}
        self.scripts: List[Script] = []

    def make_tree_node(
        self, manifest: Manifest, storage_location: Union[str, Path, None]
    ) -> DependencyTreeNode:
        """Create a node for this tree without attaching it."""
        node = DependencyTreeNode(self, manifest)
        node.storage_location = Path(storage_location) if storage_location else None
        dist = manifest.get("dist")
        if dist:
            node.tarball = dist.get("tarball")
            node.integrity = dist.get("integrity") or integrity_from_shasum(
                dist.get("shasum")
            )
        return node

    def register_script(self, script: Script) -> None:
        self.scripts.append(script)

    def store_package_in_aggregate_cache(
        self, node: DependencyTreeNode, version_tag: Optional[str] = None
    ) -> None:
        """
        Register a node under a version tag, its own version by default.

        Raises:
            StorageCollisionError: The tag is already taken
        """
        version_tag = version_tag or node.version
        versions = self.aggregate_cache.setdefault(node.name, {})
        if version_tag in versions:
            raise StorageCollisionError(node.name, version_tag)
        versions[version_tag] = node

    def get_package_from_aggregate_cache(
        self, name: str, version_tag: str
    ) -> Optional[DependencyTreeNode]:
        return self.aggregate_cache.get(name, {}).get(version_tag)

    def unique_nodes(self) -> List[DependencyTreeNode]:
        """Every distinct node in the aggregate cache, aliases collapsed."""
        seen = set()
        nodes = []
        for versions in self.aggregate_cache.values():
            for node in versions.values():
                if id(node) not in seen:
                    seen.add(id(node))
                    nodes.append(node)
        return nodes

    def condensed_dependency_list(self) -> Dict[str, List[str]]:
        """
        All requested ranges still pointing at no branch, grouped by package.

        These usually still need to be fetched from a source.
        """
        result: Dict[str, List[str]] = {}
        for node in self.unique_nodes():
            for dependency in node.dependencies:
                if (
                    dependency.is_development_dependency
                    and not self.considers_dev_dependencies
                ):
                    continue
                requested = result.setdefault(dependency.name, [])
                if dependency.requested_version not in requested:
                    requested.append(dependency.requested_version)
        return result

    def find_dependants(self, dependency_name: str) -> List[DependencyTreeNode]:
        """All nodes that have a resolved branch for the given package."""
        return [
            node for node in self.unique_nodes() if node.has_branch_for(dependency_name)
        ]

    async def lstat(self, target: Union[str, Path]) -> Optional[os.stat_result]:
        """
        `lstat` a path, sharing one lookup among all callers.

        Returns:
            The stat result, or None if the path does not exist
        """
        key = str(target)
        future = self.stat_cache.get(key)
        if future is None:
            future = asyncio.ensure_future(asyncio.to_thread(_lstat_or_none, key))
            self.stat_cache[key] = future
        return await future

    def invalidate_stat(self, target: Union[str, Path]) -> None:
        self.stat_cache.pop(str(target), None)

    def assemble(self) -> "DependencyTree":
        """Resolve pending dependencies of every cached node."""
        for node in self.unique_nodes():
            node.resolve_dependencies()
        return self

    def pin_version(self, package_name: str, version: str) -> None:
        """
        Force every dependency on `package_name` to use this version.

        Raises:
            MissingPinError: The version is not in the tree
        """
        pinnable = self.get_package_from_aggregate_cache(package_name, version)
        if pinnable is None:
            raise MissingPinError(package_name, version)
        self.root.pinned_versions.append(pinnable)

    def collect_binaries(self) -> None:
        for node in self.unique_nodes():
            node.binaries = normalize_bin(node.manifest) if node.manifest else {}

    def root_projects(self) -> List[DependencyTreeNode]:
        return [branch for branch in self.root.branches if branch.is_root_project]

    def version_count(self) -> int:
        return sum(len(versions) for versions in self.aggregate_cache.values())

    @classmethod
    def from_package_paths(
        cls,
        paths: Iterable[Union[str, Path]],
        with_dev_dependencies: bool = True,
        pin_roots: bool = False,
        configuration: Optional[PackageManagerConfiguration] = None,
        version_resolver: Optional[VersionResolver] = None,
    ) -> "DependencyTree":
        """
        Build a tree from a set of `package.json` paths.

        Args:
            paths: Manifests of the projects in the work area
            with_dev_dependencies: Consider devDependencies of these projects
            pin_roots: Redirect every dependency on one of these projects to
                the project itself, regardless of the declared range
        """
        tree = cls(with_dev_dependencies, configuration, version_resolver)
        for package_path in paths:
            tree.root.branch_from_existing_package_path(package_path)

        if pin_roots:
            for branch in tree.root.branches:
                tree.pin_version(branch.name, branch.version)

        for branch in tree.root.branches:
            branch.is_root_project = True

        return tree.assemble()

    @classmethod
    async def from_storage_root(
        cls,
        storage_root: Union[str, Path],
        with_dev_dependencies: bool = False,
        configuration: Optional[PackageManagerConfiguration] = None,
    ) -> "DependencyTree":
        """
        Build a tree from the packages in a storage area.

        Only real directories are considered; symlinked version tags are
        aliases and are derived again during assembly.
        """
        storage_root = Path(storage_root)
        logger.info("Generating dependency tree from '%s'…", storage_root)
        stat_cache_helper = cls(configuration=configuration)

        candidates = await asyncio.to_thread(_list_storage_entries, storage_root)
        manifest_paths = []
        for candidate in candidates:
            entry_stat = await stat_cache_helper.lstat(candidate)
            if entry_stat is None or stat.S_ISLNK(entry_stat.st_mode):
                continue
            if not stat.S_ISDIR(entry_stat.st_mode):
                continue
            manifest_path = candidate / MANIFEST_NAME
            if await stat_cache_helper.lstat(manifest_path) is None:
                logger.warning("Skipping '%s' without %s", candidate, MANIFEST_NAME)
                continue
            manifest_paths.append(manifest_path)

        tree = cls.from_package_paths(
            manifest_paths, with_dev_dependencies, configuration=configuration
        )
        tree.stat_cache = stat_cache_helper.stat_cache
        tree.collect_binaries()
        return tree


def _list_storage_entries(storage_root: Path) -> List[Path]:
    entries = []
    for name in sorted(os.listdir(storage_root)):
        if name.startswith("."):
            continue
        if name.startswith("@"):
            scope = storage_root / name
            if scope.is_dir() and not scope.is_symlink():
                entries.extend(scope / child for child in sorted(os.listdir(scope)))
            continue
        entries.append(storage_root / name)
    return entries

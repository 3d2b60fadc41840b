"""
Retrieval of tree dependencies into the shared storage area.

Every concrete version lives at `<storage>/<name>@<sha256(version)>`. A
requested range that resolves to a stored version becomes a symlink
`<storage>/<name>@<sha256(range)>` pointing at the concrete directory.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from .cli_config import get_config
from .error_handling import (
    DepfarmError,
    MissingPinError,
    ResolutionError,
    StorageCollisionError,
    log_resolution_error,
)
from .manifest import Manifest, lifecycle_scripts, read_manifest_async
from .package_spec import KIND_GIT, KIND_REMOTE, parse_tag
from .script import Script
from .statistics import DownloaderStatistics
from .structured_logging import (
    log_package_downloaded,
    log_stage_complete,
    log_stage_start,
)
from .tree import DependencyTree, integrity_from_shasum

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"

_FATAL_ERRORS = (StorageCollisionError, MissingPinError)


def default_storage_location() -> Path:
    return get_config().install.resolve_storage_root()


def make_version_hash(version: str) -> str:
    """Filesystem-safe, stable identifier for a version string."""
    return hashlib.sha256(version.encode("utf-8")).hexdigest()


def _move_into_place(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    os.rename(source, target)


def _clear_directory(directory: Path) -> None:
    for entry in directory.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


class DependencyDownloader:
    """
    Downloads every dependency of a tree that is not yet a branch on it.

    One `download()` call is a stage. Packages are processed concurrently,
    the versions of one package strictly one after another.
    """

    def __init__(
        self,
        dependency_tree: DependencyTree,
        storage_root: Union[str, Path, None] = None,
        stage: int = 0,
    ):
        self.dependency_tree = dependency_tree
        self.storage_root = (
            Path(storage_root).resolve() if storage_root else default_storage_location()
        )
        self.stage = stage
        self.statistics = DownloaderStatistics()

    def storage_path(self, package_name: str, version: str) -> Path:
        return self.storage_root / f"{package_name}@{make_version_hash(version)}"

    async def prepare(self) -> None:
        """Create the storage area."""
        await asyncio.to_thread(self.storage_root.mkdir, parents=True, exist_ok=True)

    async def clean(self) -> None:
        """Delete the contents of the storage area, but not the area itself."""
        if self.storage_root.is_dir():
            await asyncio.to_thread(_clear_directory, self.storage_root)
        self.dependency_tree.stat_cache.clear()

    async def download(
        self, force_resolve: bool = False, concurrency: int = 4
    ) -> DownloaderStatistics:
        """
        Download all known dependencies not yet registered as branches.

        Args:
            force_resolve: Check every range against its source again, even
                when the storage area already has a match
            concurrency: How many packages to process simultaneously

        Raises:
            StorageCollisionError: A version was registered twice
        """
        await self.prepare()

        async with self.dependency_tree.version_resolver:
            if force_resolve:
                await self._refresh_root_integrity()

            dependency_list = self.dependency_tree.condensed_dependency_list()
            total_versions = sum(len(versions) for versions in dependency_list.values())

            if total_versions == 0:
                logger.info("Nothing to do at this stage. Tree complete.")
                return self.statistics

            logger.info(
                "Resolving %d versions of %d packages…",
                total_versions,
                len(dependency_list),
            )
            log_stage_start(self.stage, len(dependency_list), total_versions)
            self.statistics.start(total_versions)

            semaphore = asyncio.Semaphore(max(1, concurrency))

            async def process(package_name: str) -> None:
                async with semaphore:
                    await self._download_all_versions_of(
                        package_name, dependency_list[package_name], force_resolve
                    )
                    self._emit_progress_as_required()

            results = await asyncio.gather(
                *(process(name) for name in sorted(dependency_list, reverse=True)),
                return_exceptions=True,
            )

        for result in results:
            if isinstance(result, BaseException):
                raise result

        statistics = self.statistics
        logger.info(
            "Downloaded %d of %d (%d already in cache, %d failed).",
            statistics.packages_downloaded,
            statistics.packages_total,
            statistics.packages_already_in_cache,
            statistics.packages_failed,
        )
        log_stage_complete(
            self.stage,
            statistics.packages_downloaded,
            statistics.packages_already_in_cache,
            statistics.packages_failed,
            statistics.packages_total,
        )
        return statistics

    async def _refresh_root_integrity(self) -> None:
        """Look up tarball and integrity of root projects that lack them."""
        resolver = self.dependency_tree.version_resolver

        async def refresh(branch) -> None:
            if branch.integrity:
                return
            try:
                manifest = await resolver.resolve(branch.version_tag)
            except DepfarmError as e:
                manifest = None
                logger.debug("'%s' failed to resolve: %s", branch, e)
            if not manifest:
                logger.debug("'%s' is possibly not published.", branch)
                branch.integrity = True
                return
            dist = manifest.get("dist") or {}
            branch.tarball = dist.get("tarball")
            branch.integrity = dist.get("integrity") or integrity_from_shasum(
                dist.get("shasum")
            )

        await asyncio.gather(
            *(refresh(branch) for branch in self.dependency_tree.root.branches)
        )

    def _emit_progress_as_required(self) -> None:
        statistics = self.statistics
        if not statistics.packages_downloaded:
            return

        processed = statistics.packages_processed
        if statistics.next_progress_update <= processed:
            if not statistics.emitter_blocked:
                logger.info(
                    "%d of %d (%.2f%%) processed.",
                    processed,
                    statistics.packages_total,
                    processed / statistics.packages_total * 100,
                )
                statistics.block()
            statistics.next_progress_update = processed + statistics.progress_step

    async def _download_all_versions_of(
        self, package_name: str, versions: List[str], force_resolve: bool
    ) -> None:
        for version in versions:
            version_tag = f"{package_name}@{version}"
            try:
                await self._download_version(package_name, version, force_resolve)
            except _FATAL_ERRORS:
                raise
            except (DepfarmError, OSError, ValueError) as e:
                log_resolution_error(
                    f"Failed to store '{version_tag}'! ({e})",
                    "downloader",
                    "_download_all_versions_of",
                    version_tag=version_tag,
                    exception=e,
                )
                self.statistics.packages_failed += 1

    async def _download_version(
        self, package_name: str, version: str, force_resolve: bool
    ) -> None:
        tree = self.dependency_tree
        version_tag = f"{package_name}@{version}"
        requested_path = self.storage_path(package_name, version)

        if tree.get_package_from_aggregate_cache(package_name, version) is not None:
            logger.debug("Package '%s' is already tagged in the tree.", version_tag)
            self.statistics.packages_already_in_cache += 1
            return

        if not force_resolve and await tree.lstat(requested_path) is not None:
            logger.debug(
                "Package '%s' is already in storage. Tagging it in the tree.", version_tag
            )
            await self._register_existing(package_name, version, requested_path)
            self.statistics.packages_already_in_cache += 1
            return

        manifest = await tree.version_resolver.resolve(version_tag)
        if not manifest or not manifest.get("name"):
            logger.warning(
                "Package '%s' could not be resolved. Possibly not a package in the registry.",
                version_tag,
            )
            self.statistics.packages_failed += 1
            return

        resolved_version = manifest["version"]
        resolved_tag = f"{package_name}@{resolved_version}"
        resolved_path = self.storage_path(package_name, resolved_version)
        logger.debug("'%s' resolved to '%s'.", version_tag, resolved_tag)

        if await tree.lstat(resolved_path) is not None:
            logger.debug("Package '%s' is already in storage.", resolved_tag)
            self.statistics.packages_already_in_cache += 1
            await self._register_existing(package_name, version, resolved_path, manifest)
            was_already_stored = True
        else:
            await self._download_and_move(manifest, version_tag, resolved_tag, resolved_path)
            was_already_stored = False

        if requested_path == resolved_path:
            return

        if not was_already_stored:
            node = tree.get_package_from_aggregate_cache(package_name, resolved_version)
            tree.store_package_in_aggregate_cache(node, version)

        # The alias may exist already when ranges are resolved again on update.
        if await tree.lstat(requested_path) is None:
            logger.debug("Linking '%s' → '%s'…", requested_path, resolved_path)
            await asyncio.to_thread(
                os.symlink, resolved_path, requested_path, target_is_directory=True
            )
            tree.invalidate_stat(requested_path)

    async def _register_existing(
        self,
        package_name: str,
        version_tag: str,
        path: Path,
        manifest: Optional[Manifest] = None,
    ) -> None:
        """
        Tag a stored package in the tree under `version_tag`.

        Aliases are followed to the concrete directory, and a node already
        registered for the concrete version is shared instead of duplicated.
        """
        tree = self.dependency_tree
        canonical_path = Path(await asyncio.to_thread(os.path.realpath, path))
        stored_manifest = await read_manifest_async(canonical_path)
        concrete_version = stored_manifest["version"]

        node = tree.get_package_from_aggregate_cache(package_name, concrete_version)
        if node is None:
            if manifest is None or manifest.get("version") != concrete_version:
                manifest = stored_manifest
            node = tree.make_tree_node(manifest, canonical_path)
            tree.store_package_in_aggregate_cache(node, concrete_version)

        if version_tag != concrete_version:
            tree.store_package_in_aggregate_cache(node, version_tag)

    def _tarball_url(self, manifest: Manifest, original_version_tag: str) -> str:
        spec = parse_tag(original_version_tag)
        if spec.kind == KIND_GIT:
            return spec.hosted.tarball()
        if spec.kind == KIND_REMOTE:
            return spec.fetch_spec

        tarball = (manifest.get("dist") or {}).get("tarball")
        if not tarball:
            raise ResolutionError(f"No tarball published for '{original_version_tag}'")
        return tarball

    async def _download_and_move(
        self,
        manifest: Manifest,
        original_version_tag: str,
        version_tag: str,
        target: Path,
    ) -> None:
        """Download a package, move it to its hashed location and branch it."""
        logger.info("Downloading '%s'…", version_tag)
        self.statistics.unblock()

        url = self._tarball_url(manifest, original_version_tag)
        client = self.dependency_tree.version_resolver.client
        staging = Path(
            await asyncio.to_thread(
                tempfile.mkdtemp, prefix=STAGING_PREFIX, dir=self.storage_root
            )
        )
        try:
            extracted = await client.download_tarball(url, staging)
            await asyncio.to_thread(_move_into_place, extracted, target)
        finally:
            await asyncio.to_thread(shutil.rmtree, staging, True)

        logger.debug("Stored '%s' as '%s'.", version_tag, target.name)
        self.statistics.packages_downloaded += 1
        log_package_downloaded(version_tag, str(target))

        for stage in lifecycle_scripts(manifest):
            logger.info("Registering '%s' script for '%s'…", stage, version_tag)
            self.dependency_tree.register_script(Script(version_tag, stage, target))

        self.dependency_tree.invalidate_stat(target)
        self.dependency_tree.root.branch_from_existing_package(manifest, target)

"""
Install orchestration.

Builds the dependency tree of a set of projects, downloads it in stages
until nothing new turns up, then links `node_modules`, runs lifecycle
scripts and writes one lock file per project.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .cli_config import DEFAULT_LOCKS_FILE, InstallConfig, default_concurrency
from .downloader import DependencyDownloader
from .error_handling import ManifestError
from .manifest import MANIFEST_NAME, read_manifest
from .modules_generator import ModulesGenerator
from .package_lock import PackageLock
from .package_manager_config import PackageManagerConfiguration
from .peer_linker import PeerLinker
from .script import Script, run_scripts_in_stage_order
from .structured_logging import clear_run_context, get_install_logger, set_run_context
from .tree import DependencyTree
from .version_resolver import VersionResolver

logger = logging.getLogger(__name__)


@dataclass
class InstallOptions:
    """How much of the install pipeline to run, and with what resources."""

    concurrency: int = field(default_factory=default_concurrency)
    storage_root: Optional[Path] = None
    generate_modules: bool = True
    run_scripts: bool = True
    write_lockfiles: bool = True
    package_manager: str = "npm"

    @classmethod
    def from_config(cls, install_config: InstallConfig, **overrides) -> "InstallOptions":
        options = cls(
            concurrency=install_config.concurrency,
            storage_root=install_config.resolve_storage_root(),
            package_manager=install_config.package_manager,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


@dataclass
class InstallResult:
    """Outcome of an install run."""

    projects: List[Path] = field(default_factory=list)
    stages: int = 0
    packages_downloaded: int = 0
    packages_already_in_cache: int = 0
    packages_failed: int = 0
    package_count: int = 0
    version_count: int = 0
    peers_linked: int = 0
    links_created: int = 0
    links_created_bin: int = 0
    scripts_run: int = 0
    failed_scripts: List[Script] = field(default_factory=list)
    lockfiles: List[Path] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return not self.packages_failed and not self.failed_scripts


def load_package_manager_configuration(
    install_config: InstallConfig,
) -> PackageManagerConfiguration:
    """
    Load locks and peering for an install, applying the install switches.

    A configured locks file must exist; the default one is optional.
    """
    if install_config.locks_file:
        configuration = PackageManagerConfiguration.from_file(install_config.locks_file)
    elif Path(DEFAULT_LOCKS_FILE).is_file():
        configuration = PackageManagerConfiguration.from_file(DEFAULT_LOCKS_FILE)
    else:
        configuration = PackageManagerConfiguration()

    configuration.pin_roots = install_config.pin_roots
    configuration.update_dependencies = install_config.update_dependencies
    return configuration


def get_node_js_projects(repositories: Iterable[Union[str, Path]]) -> List[Path]:
    """The manifest paths of all repositories that hold a readable project."""
    manifest_paths = []
    for repository in repositories:
        manifest_path = Path(repository).resolve() / MANIFEST_NAME
        try:
            read_manifest(manifest_path)
        except ManifestError as e:
            logger.debug("Skipping '%s': %s", repository, e)
            continue
        manifest_paths.append(manifest_path)
    return manifest_paths


class InstallTask:
    """Runs the install pipeline over a set of repositories."""

    def __init__(
        self,
        repositories: Iterable[Union[str, Path]],
        configuration: Optional[PackageManagerConfiguration] = None,
        options: Optional[InstallOptions] = None,
        version_resolver: Optional[VersionResolver] = None,
    ):
        self.repositories = [Path(repository) for repository in repositories]
        self.configuration = configuration or PackageManagerConfiguration()
        self.options = options or InstallOptions()
        self.version_resolver = version_resolver or VersionResolver(self.configuration)
        self.result = InstallResult()
        self.event_logger = get_install_logger()

    async def process(self) -> InstallResult:
        start_time = time.time()
        set_run_context(run_id=uuid.uuid4().hex[:12])
        try:
            tree = await self.build_tree()
            self.link_peers(tree)

            if self.options.generate_modules:
                await self.generate_modules(tree)
            if self.options.run_scripts:
                await self.run_scripts(tree)
            if self.options.write_lockfiles:
                self.write_lockfiles(tree)
        finally:
            self.result.duration_seconds = time.time() - start_time
            clear_run_context()

        self.event_logger.info(
            "install_completed",
            projects=len(self.result.projects),
            stages=self.result.stages,
            packages_downloaded=self.result.packages_downloaded,
            packages_failed=self.result.packages_failed,
            duration_seconds=round(self.result.duration_seconds, 3),
        )
        return self.result

    async def build_tree(self) -> DependencyTree:
        """
        Create the tree for all projects and download until it is complete.

        Stage 0 considers devDependencies of the projects; later stages do
        not, so transitive packages never pull their own devDependencies.
        A stage without progress but with failures is retried once.
        """
        manifest_paths = get_node_js_projects(self.repositories)
        self.result.projects = [path.parent for path in manifest_paths]
        logger.info("Considering %d projects.", len(manifest_paths))
        self.event_logger.info("install_started", projects=len(manifest_paths))

        tree = DependencyTree.from_package_paths(
            manifest_paths,
            with_dev_dependencies=True,
            pin_roots=self.configuration.pin_roots,
            configuration=self.configuration,
            version_resolver=self.version_resolver,
        )

        async with tree.version_resolver:
            stage = 0
            while True:
                logger.info("Processing stage %d…", stage)
                downloader = DependencyDownloader(
                    tree, self.options.storage_root, stage=stage
                )
                statistics = await self._download(downloader)
                tree.assemble()
                self.result.stages = stage + 1
                self.result.packages_downloaded += statistics.packages_downloaded
                self.result.packages_already_in_cache += (
                    statistics.packages_already_in_cache
                )
                self.result.packages_failed = statistics.packages_failed

                if stage == 0:
                    tree.considers_dev_dependencies = False
                stage += 1

                # Stored or cached packages may declare dependencies not seen yet.
                if statistics.packages_downloaded or statistics.packages_already_in_cache:
                    continue

                if statistics.packages_failed:
                    logger.warning(
                        "%d packages failed to download. Trying one more time…",
                        statistics.packages_failed,
                    )
                    downloaded_before = statistics.packages_downloaded
                    statistics = await self._download(downloader)
                    tree.assemble()
                    self.result.packages_downloaded += (
                        statistics.packages_downloaded - downloaded_before
                    )
                    self.result.packages_failed = statistics.packages_failed
                break

        self.result.package_count = len(tree.aggregate_cache)
        self.result.version_count = tree.version_count()
        logger.info(
            "Tree contains %d discrete packages in %d versions.",
            self.result.package_count,
            self.result.version_count,
        )
        return tree

    async def _download(self, downloader: DependencyDownloader):
        return await downloader.download(
            self.configuration.update_dependencies, self.options.concurrency
        )

    def link_peers(self, tree: DependencyTree) -> None:
        logger.info("Registering plugins and peers as dependencies…")
        self.result.peers_linked = PeerLinker(tree, self.configuration).link()

    async def generate_modules(self, tree: DependencyTree) -> None:
        logger.info("Generating node_modules…")
        generator = ModulesGenerator(tree)
        statistics = await generator.sync_directories(self.options.concurrency)
        self.result.links_created = statistics.links_created
        self.result.links_created_bin = statistics.links_created_bin

    async def run_scripts(self, tree: DependencyTree) -> None:
        if not tree.scripts:
            return
        logger.info("Running %d scripts…", len(tree.scripts))
        self.result.scripts_run = len(tree.scripts)
        self.result.failed_scripts = await run_scripts_in_stage_order(
            tree.scripts, self.options.package_manager
        )

    def write_lockfiles(self, tree: DependencyTree) -> None:
        # Only projects of the work area get a lock file.
        for project in tree.root_projects():
            self.result.lockfiles.append(PackageLock(project).write())

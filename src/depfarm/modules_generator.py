"""
Generation of `node_modules` symlink farms for a dependency tree.
"""

import asyncio
import errno
import logging
import os
import shutil
import stat
import sys
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from .cli_config import get_config
from .error_handling import log_filesystem_error
from .statistics import ModulesGeneratorStatistics
from .structured_logging import log_links_created
from .tree import DependencyTree
from .tree_node import DependencyTreeNode

logger = logging.getLogger(__name__)

NODE_MODULES = "node_modules"
BIN_DIRECTORY = ".bin"

LINK_RETRY_DELAY = 0.1

# Errors a directory removal reports while another process still holds files.
BUSY_ERRNOS = {errno.EBUSY, errno.ENOTEMPTY, errno.EPERM, errno.EACCES}


class BinaryLinker(ABC):
    """Creates an executable entry point for a package binary."""

    @abstractmethod
    def create(self, source: Path, target: Path) -> None:
        """Expose `source` as the executable `target`."""


class SymlinkBinaryLinker(BinaryLinker):
    """Symbolic links on POSIX-like systems."""

    def create(self, source: Path, target: Path) -> None:
        os.symlink(source, target)
        try:
            mode = os.stat(source).st_mode
            os.chmod(source, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except FileNotFoundError:
            logger.warning("Binary '%s' does not exist", source)


class CmdShimBinaryLinker(BinaryLinker):
    """Shim scripts for Windows-like systems, a `.cmd` and a POSIX shell variant."""

    DEFAULT_PROGRAM = "node"

    @classmethod
    def _program_for(cls, source: Path) -> str:
        try:
            with open(source, encoding="utf-8", errors="replace") as f:
                first_line = f.readline().strip()
        except OSError:
            return cls.DEFAULT_PROGRAM
        if not first_line.startswith("#!"):
            return cls.DEFAULT_PROGRAM
        parts = first_line[2:].split()
        if not parts:
            return cls.DEFAULT_PROGRAM
        # `#!/usr/bin/env node` runs `node`, `#!/bin/sh` runs `sh`.
        if os.path.basename(parts[0]) == "env" and len(parts) > 1:
            return parts[1]
        return os.path.basename(parts[0])

    def create(self, source: Path, target: Path) -> None:
        program = self._program_for(source)
        relative = os.path.relpath(source, target.parent)

        cmd_relative = relative.replace("/", "\\")
        with open(f"{target}.cmd", "w", encoding="utf-8", newline="\r\n") as f:
            f.write("@ECHO off\n")
            f.write(f'"{program}" "%~dp0\\{cmd_relative}" %*\n')

        posix_relative = relative.replace("\\", "/")
        with open(target, "w", encoding="utf-8", newline="\n") as f:
            f.write("#!/bin/sh\n")
            f.write('basedir=$(dirname "$(echo "$0" | sed -e \'s,\\\\,/,g\')")\n')
            f.write(f'exec {program} "$basedir/{posix_relative}" "$@"\n')
        os.chmod(target, 0o755)


def get_binary_linker(platform: Optional[str] = None) -> BinaryLinker:
    """Pick the binary linker for a platform, the running one by default."""
    platform = platform or sys.platform
    if platform == "win32":
        return CmdShimBinaryLinker()
    return SymlinkBinaryLinker()


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)


def _remove_with_busy_retries(path: Path, attempts: int) -> None:
    for attempt in range(attempts + 1):
        try:
            _remove_path(path)
            return
        except FileNotFoundError:
            return
        except OSError as e:
            if e.errno not in BUSY_ERRNOS or attempt == attempts:
                raise
            time.sleep(LINK_RETRY_DELAY * (attempt + 1))


class ModulesGenerator:
    """
    Generates `node_modules` folder structures for a dependency tree.

    Running it twice over an unchanged tree yields the same links.
    """

    def __init__(
        self,
        dependency_tree: DependencyTree,
        binary_linker: Optional[BinaryLinker] = None,
        link_retry_attempts: Optional[int] = None,
        busy_retry_attempts: Optional[int] = None,
    ):
        install_config = get_config().install

        self.dependency_tree = dependency_tree
        self.binary_linker = binary_linker or get_binary_linker()
        self.link_retry_attempts = (
            link_retry_attempts
            if link_retry_attempts is not None
            else install_config.link_retry_attempts
        )
        self.busy_retry_attempts = (
            busy_retry_attempts
            if busy_retry_attempts is not None
            else install_config.busy_retry_attempts
        )
        self.statistics = ModulesGeneratorStatistics()

    def _stored_nodes(self) -> List[DependencyTreeNode]:
        return [
            node
            for node in self.dependency_tree.unique_nodes()
            if node.storage_location is not None
        ]

    async def sync_directories(self, concurrency: int = 4) -> ModulesGeneratorStatistics:
        """
        Create links for every branch in the dependency tree.

        Args:
            concurrency: How many link operations to run simultaneously
        """
        self.statistics = ModulesGeneratorStatistics()
        self.dependency_tree.collect_binaries()
        nodes = self._stored_nodes()
        semaphore = asyncio.Semaphore(max(1, concurrency))

        await self._clear_all_node_modules(nodes, semaphore)

        async def link(parent: DependencyTreeNode, branch: DependencyTreeNode) -> None:
            async with semaphore:
                await self._link_branch_into_node_modules(parent, branch)

        for node in nodes:
            await asyncio.gather(
                *(
                    link(node, branch)
                    for branch in node.branches
                    if branch.storage_location is not None
                )
            )
            await self._create_binary_links(node)

        logger.info(
            "Created %d links with %d binary pointers.",
            self.statistics.links_created,
            self.statistics.links_created_bin,
        )
        log_links_created(
            self.statistics.links_created, self.statistics.links_created_bin
        )
        return self.statistics

    async def _clear_all_node_modules(
        self, nodes: List[DependencyTreeNode], semaphore: asyncio.Semaphore
    ) -> None:
        async def clear(node: DependencyTreeNode) -> None:
            async with semaphore:
                await self._clear_node_modules(node)

        await asyncio.gather(*(clear(node) for node in nodes))

    async def _clear_node_modules(self, node: DependencyTreeNode) -> None:
        node_modules = node.storage_location / NODE_MODULES
        try:
            await asyncio.to_thread(
                _remove_with_busy_retries, node_modules, self.busy_retry_attempts
            )
        except OSError as e:
            log_filesystem_error(
                f"Unable to clear node_modules of '{node}'",
                "modules_generator",
                "_clear_node_modules",
                path=str(node_modules),
                exception=e,
            )
            raise

    async def _make_parent_directory(self, link_target: Path) -> None:
        for attempt in range(self.link_retry_attempts + 1):
            try:
                await asyncio.to_thread(
                    link_target.parent.mkdir, parents=True, exist_ok=True
                )
                return
            except PermissionError as e:
                if attempt == self.link_retry_attempts:
                    log_filesystem_error(
                        f"Unable to create '{link_target.parent}'",
                        "modules_generator",
                        "_make_parent_directory",
                        path=str(link_target.parent),
                        exception=e,
                    )
                    raise
                logger.warning("%s - Retrying in 100ms. Ctrl+C to abort.", e)
                await asyncio.sleep(LINK_RETRY_DELAY)

    async def _link_branch_into_node_modules(
        self, parent: DependencyTreeNode, branch: DependencyTreeNode
    ) -> None:
        link_source = branch.storage_location
        link_target = parent.storage_location / NODE_MODULES / branch.name

        await self._make_parent_directory(link_target)
        await asyncio.to_thread(_remove_path, link_target)
        try:
            await asyncio.to_thread(
                os.symlink, link_source, link_target, target_is_directory=True
            )
        except FileExistsError:
            # Another writer created the link in the meantime.
            return

        logger.debug("Linked '%s' ← '%s'.", link_target, link_source)
        self.statistics.links_created += 1

    async def _create_binary_links(self, parent: DependencyTreeNode) -> None:
        bin_directory = parent.storage_location / NODE_MODULES / BIN_DIRECTORY

        for dependency in parent.branches:
            if not dependency.binaries or dependency.storage_location is None:
                continue

            logger.debug(
                "Creating %d .bin entries for '%s' in '%s'…",
                len(dependency.binaries),
                dependency,
                parent,
            )
            for bin_name, bin_path in dependency.binaries.items():
                link_source = dependency.storage_location / bin_path
                link_target = bin_directory / bin_name

                # Only a link from an earlier pass can exist here.
                if await asyncio.to_thread(os.path.lexists, link_target):
                    continue

                await asyncio.to_thread(bin_directory.mkdir, parents=True, exist_ok=True)
                await asyncio.to_thread(
                    self.binary_linker.create, link_source, link_target
                )
                logger.debug("Linked '%s' ← '%s'.", link_target, link_source)
                self.statistics.links_created_bin += 1

"""
Resolution of version tags to package manifests.
"""

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from .error_handling import ErrorCategory, ResolutionError, get_error_handler
from .manifest import Manifest, read_manifest_async, validate_manifest
from .package_manager_config import PackageManagerConfiguration
from .package_spec import KIND_GIT, KIND_REMOTE, parse_tag
from .registry_clients import NPMRegistryClient, get_registry_client

logger = logging.getLogger(__name__)

INTEGRITY_MISSING = "missing"


class VersionResolver:
    """
    Resolves `name@range` tags to the manifest they refer to.

    Resolutions are memoized per tag, so concurrent requests for the same tag
    share one in-flight lookup. Version locks are applied to every result.

    The resolver is an async context manager that keeps its registry client
    open; nested entries reuse the open client.
    """

    def __init__(
        self,
        configuration: Optional[PackageManagerConfiguration] = None,
        client: Optional[NPMRegistryClient] = None,
    ):
        self.configuration = configuration or PackageManagerConfiguration()
        self.client = client
        self.resolver_cache: Dict[str, "asyncio.Task[Optional[Manifest]]"] = {}
        self._client_depth = 0

    async def __aenter__(self) -> "VersionResolver":
        if self.client is None:
            self.client = get_registry_client()
        if self._client_depth == 0:
            await self.client.__aenter__()
        self._client_depth += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._client_depth -= 1
        if self._client_depth == 0 and self.client is not None:
            await self.client.__aexit__(exc_type, exc_val, exc_tb)

    async def resolve(
        self, version_tag: str, _visited: FrozenSet[str] = frozenset()
    ) -> Optional[Manifest]:
        """
        Retrieve the manifest matching a version tag.

        Returns:
            The manifest with a `dist` section, or None if no published
            version satisfies the tag

        Raises:
            ResolutionError: The source failed, or the lock table loops
        """
        if version_tag in _visited:
            raise ResolutionError(
                f"Version locks form a cycle: {' -> '.join(sorted(_visited))} -> {version_tag}"
            )

        logger.debug("Resolving '%s'…", version_tag)

        task = self.resolver_cache.get(version_tag)
        if task is None:
            task = asyncio.ensure_future(self._fetch(version_tag))
            self.resolver_cache[version_tag] = task

        try:
            manifest = await task
        except Exception:
            # Failed lookups are forgotten so a later stage can retry them.
            if self.resolver_cache.get(version_tag) is task:
                del self.resolver_cache[version_tag]
            raise

        if not manifest:
            return manifest

        version = manifest["version"]
        alternative = next(
            (
                lock
                for lock in self.configuration.locks.get_package_locks(manifest["name"])
                if lock.applies_to(version)
            ),
            None,
        )
        if alternative is not None and version != alternative.replace_with:
            logger.info(
                "Replacing dependency '%s' with version '%s' because it resolved to '%s' "
                "which matches '%s'.",
                version_tag,
                alternative.replace_with,
                version,
                alternative.if_version_matches,
            )
            return await self.resolve(
                f"{manifest['name']}@{alternative.replace_with}",
                _visited | {version_tag},
            )

        return manifest

    async def _fetch(self, version_tag: str) -> Optional[Manifest]:
        if self.client is None:
            raise RuntimeError("VersionResolver must be used as an async context manager")

        spec = parse_tag(version_tag)

        if spec.kind == KIND_GIT:
            self._warn_missing_integrity(version_tag)
            manifest = await self.client.fetch_json(spec.hosted.manifest_url())
            validate_manifest(manifest, version_tag)
            manifest["dist"] = {
                "shasum": INTEGRITY_MISSING,
                "tarball": spec.hosted.tarball(),
            }
            return manifest

        if spec.kind == KIND_REMOTE:
            self._warn_missing_integrity(version_tag)
            target_directory = Path(tempfile.mkdtemp(prefix="depfarm-"))
            try:
                package_directory = await self.client.download_tarball(
                    spec.fetch_spec, target_directory
                )
                manifest = await read_manifest_async(package_directory)
            finally:
                await asyncio.to_thread(shutil.rmtree, target_directory, True)
            manifest["dist"] = {"shasum": INTEGRITY_MISSING, "tarball": spec.fetch_spec}
            return manifest

        return await self.client.resolve_manifest(spec.name, spec.fetch_spec)

    @staticmethod
    def _warn_missing_integrity(version_tag: str) -> None:
        get_error_handler().warning(
            ErrorCategory.RESOLUTION,
            f"Integrity can't be calculated for '{version_tag}'.",
            "version_resolver",
            "resolve",
            details={"version_tag": version_tag},
            suggestions=["Consider using a published package instead"],
        )

"""
Reading of `package.json` manifests.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .dependency import Dependency
from .error_handling import ManifestError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"

LIFECYCLE_STAGES = ("preinstall", "install", "postinstall")

Manifest = Dict[str, Any]


def read_manifest(path: Union[str, Path]) -> Manifest:
    """
    Load and validate a `package.json`.

    Args:
        path: Path to the manifest file, or to the directory containing it

    Raises:
        ManifestError: The file is missing, not JSON, or lacks a name/version
    """
    manifest_path = Path(path)
    if manifest_path.is_dir():
        manifest_path = manifest_path / MANIFEST_NAME

    try:
        with open(manifest_path, encoding="utf-8") as f:
            manifest = json.load(f)
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {manifest_path}") from e
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestError(f"Unable to read manifest {manifest_path}: {e}") from e

    validate_manifest(manifest, str(manifest_path))
    return manifest


async def read_manifest_async(path: Union[str, Path]) -> Manifest:
    return await asyncio.to_thread(read_manifest, path)


def validate_manifest(manifest: Any, source: str = "<memory>") -> None:
    if not isinstance(manifest, dict):
        raise ManifestError(f"Manifest {source} is not a JSON object")
    if not isinstance(manifest.get("name"), str) or not manifest["name"]:
        raise ManifestError(f"Manifest {source} has no package name")
    if not isinstance(manifest.get("version"), str) or not manifest["version"]:
        raise ManifestError(f"Manifest {source} has no version")


def _dependency_map(manifest: Manifest, key: str) -> Dict[str, str]:
    section = manifest.get(key)
    if not section:
        return {}
    if not isinstance(section, dict):
        logger.warning(
            "Ignoring malformed '%s' in '%s@%s'",
            key,
            manifest.get("name"),
            manifest.get("version"),
        )
        return {}
    return {str(name): str(spec) for name, spec in section.items()}


def dependencies_from_manifest(manifest: Optional[Manifest]) -> List[Dependency]:
    """
    Extract the dependency records declared in a manifest.

    `dependencies` and `peerDependencies` become regular records,
    `devDependencies` development records, in that order.
    """
    if manifest is None:
        return []

    dependencies = [
        Dependency(name, spec)
        for name, spec in _dependency_map(manifest, "dependencies").items()
    ]
    dependencies.extend(
        Dependency(name, spec)
        for name, spec in _dependency_map(manifest, "peerDependencies").items()
    )
    dependencies.extend(
        Dependency(name, spec, is_development_dependency=True)
        for name, spec in _dependency_map(manifest, "devDependencies").items()
    )
    return dependencies


def normalize_bin(manifest: Manifest) -> Dict[str, str]:
    """Return the manifest's executables as a `{name: relative path}` map."""
    bin_entry = manifest.get("bin")
    if not bin_entry:
        return {}
    if isinstance(bin_entry, str):
        # Scoped packages expose the unscoped part of their name.
        return {manifest["name"].split("/")[-1]: bin_entry}
    if isinstance(bin_entry, dict):
        return {str(name): str(target) for name, target in bin_entry.items()}
    return {}


def lifecycle_scripts(manifest: Manifest) -> List[str]:
    """Lifecycle stages the manifest declares a script for, in execution order."""
    scripts = manifest.get("scripts") or {}
    if not isinstance(scripts, dict):
        return []
    return [stage for stage in LIFECYCLE_STAGES if scripts.get(stage)]

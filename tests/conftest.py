"""
Shared fixtures for depfarm tests.
Provides temporary projects, a storage area and an in-memory registry.
"""

import hashlib
import io
import json
import tarfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from depfarm.cache_manager import reset_cache_manager
from depfarm.cli_config import reset_config
from depfarm.error_handling import ResolutionError
from depfarm.registry_clients import select_version
from depfarm.version_resolver import VersionResolver


def make_manifest(
    name: str,
    version: str,
    dependencies: Optional[Dict[str, str]] = None,
    **extra,
) -> dict:
    manifest = {"name": name, "version": version}
    if dependencies:
        manifest["dependencies"] = dependencies
    manifest.update(extra)
    return manifest


def tarball_url(name: str, version: str) -> str:
    return f"https://registry.test/{name}/-/{name.split('/')[-1]}-{version}.tgz"


def make_tarball(files: Dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def write_package(directory: Path, manifest: dict) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "package.json").write_text(json.dumps(manifest), encoding="utf-8")
    bin_entry = manifest.get("bin")
    if isinstance(bin_entry, str):
        bin_entry = {"_": bin_entry}
    for target in (bin_entry or {}).values():
        script = directory / target
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text("#!/usr/bin/env node\n", encoding="utf-8")
    return directory


class FakeRegistryClient:
    """In-memory stand-in for `NPMRegistryClient`."""

    def __init__(self, manifests: List[dict]):
        self.packuments: Dict[str, dict] = {}
        self.tarballs: Dict[str, dict] = {}
        self.resolved: List[str] = []
        self.downloaded: List[str] = []
        for manifest in manifests:
            self.publish(manifest)

    def publish(self, manifest: dict) -> None:
        name, version = manifest["name"], manifest["version"]
        published = dict(manifest)
        published["dist"] = {
            "tarball": tarball_url(name, version),
            "shasum": hashlib.sha1(f"{name}@{version}".encode()).hexdigest(),
        }
        packument = self.packuments.setdefault(
            name, {"name": name, "versions": {}, "dist-tags": {}}
        )
        packument["versions"][version] = published
        packument["dist-tags"]["latest"] = version
        self.tarballs[published["dist"]["tarball"]] = manifest

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def resolve_manifest(self, package_name: str, spec: str) -> Optional[dict]:
        self.resolved.append(f"{package_name}@{spec}")
        packument = self.packuments.get(package_name)
        if packument is None:
            raise ResolutionError(f"Package '{package_name}' not found in registry")
        version = select_version(packument, spec)
        if version is None:
            return None
        return dict(packument["versions"][version])

    async def fetch_json(self, url: str) -> dict:
        raise ResolutionError(f"No JSON document at {url}")

    async def download_tarball(self, url: str, destination: Path) -> Path:
        self.downloaded.append(url)
        manifest = self.tarballs.get(url)
        if manifest is None:
            raise ResolutionError(f"HTTP 404 for {url}")
        return write_package(destination / "package", manifest)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Run every test from an empty directory with fresh global state."""
    for variable in ("NODE_PRESERVE_SYMLINKS", "DEPFARM_STORAGE_ROOT"):
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.chdir(tmp_path)
    reset_config()
    reset_cache_manager()
    yield
    reset_config()
    reset_cache_manager()


@pytest.fixture
def storage_root(tmp_path):
    """Storage area location inside the test directory."""
    return tmp_path / ".packages"


@pytest.fixture
def workspace(tmp_path):
    """Directory holding the test projects."""
    directory = tmp_path / "work"
    directory.mkdir()
    return directory


@pytest.fixture
def make_project(workspace):
    """Factory writing a project with a package.json into the workspace."""

    def _make_project(
        name: str,
        version: str = "1.0.0",
        dependencies: Optional[Dict[str, str]] = None,
        **extra,
    ) -> Path:
        directory = workspace / name.replace("/", "-")
        write_package(directory, make_manifest(name, version, dependencies, **extra))
        return directory / "package.json"

    return _make_project


@pytest.fixture
def store_package(storage_root):
    """Factory placing an already downloaded package in the storage area."""
    from depfarm.downloader import make_version_hash

    def _store_package(
        name: str, version: str, dependencies: Optional[Dict[str, str]] = None, **extra
    ) -> Path:
        directory = storage_root / f"{name}@{make_version_hash(version)}"
        return write_package(directory, make_manifest(name, version, dependencies, **extra))

    return _store_package


@pytest.fixture
def registry():
    """Registry with a handful of published packages."""
    return FakeRegistryClient(
        [
            make_manifest("B", "1.0.0"),
            make_manifest("B", "1.2.0"),
            make_manifest("B", "2.0.0"),
            make_manifest("C", "2.1.0", {"D": "^1.0.0"}),
            make_manifest("D", "1.0.0"),
            make_manifest("D", "1.4.0"),
            make_manifest("E", "1.0.0"),
            make_manifest("E", "1.3.0"),
            make_manifest("tool", "3.0.0", bin={"tool": "bin/tool.js"}),
        ]
    )


@pytest.fixture
def resolver(registry):
    """Version resolver backed by the in-memory registry."""
    return VersionResolver(client=registry)

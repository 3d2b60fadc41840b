"""
End-to-end tests for the install pipeline.
"""

import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from depfarm.cli_config import DEFAULT_LOCKS_FILE, InstallConfig
from depfarm.downloader import make_version_hash
from depfarm.error_handling import ConfigurationError
from depfarm.install import (
    InstallOptions,
    InstallTask,
    get_node_js_projects,
    load_package_manager_configuration,
)
from depfarm.package_lock import LOCKFILE_NAME
from depfarm.package_manager_config import PackageManagerConfiguration
from depfarm.script import Script
from depfarm.version_resolver import VersionResolver

from .conftest import make_manifest, tarball_url


@pytest.fixture
def options(storage_root):
    return InstallOptions(concurrency=2, storage_root=storage_root, run_scripts=False)


@pytest.fixture
def projects(make_project):
    """Two projects, the second depending on the first with a stale range."""
    project_a = make_project(
        "A",
        dependencies={"B": "^1.0.0", "C": "^2.0.0"},
        devDependencies={"tool": "^3.0.0"},
    )
    project_f = make_project("F", dependencies={"A": "^0.1.0"})
    return project_a.parent, project_f.parent


def make_task(repositories, registry, options, configuration=None):
    configuration = configuration or PackageManagerConfiguration()
    return InstallTask(
        repositories,
        configuration,
        options,
        version_resolver=VersionResolver(configuration, client=registry),
    )


class TestInstallTask:
    """Test full installs against the in-memory registry."""

    @pytest.mark.asyncio
    async def test_install_downloads_links_and_locks(
        self, projects, registry, options, storage_root
    ):
        project_a, project_f = projects

        result = await make_task(projects, registry, options).process()

        assert result.succeeded
        assert result.projects == [project_a, project_f]
        assert result.stages == 3
        assert result.packages_downloaded == 4
        assert sorted(registry.downloaded) == sorted(
            tarball_url(name, version)
            for name, version in [("B", "1.2.0"), ("C", "2.1.0"), ("D", "1.4.0"), ("tool", "3.0.0")]
        )

        b_link = project_a / "node_modules" / "B"
        assert b_link.is_symlink()
        assert os.path.realpath(b_link) == os.path.realpath(
            storage_root / f"B@{make_version_hash('1.2.0')}"
        )
        assert (project_a / "node_modules" / ".bin" / "tool").is_symlink()
        c_stored = storage_root / f"C@{make_version_hash('2.1.0')}"
        assert (c_stored / "node_modules" / "D").is_symlink()
        # Pinned roots win over the declared range.
        assert os.readlink(project_f / "node_modules" / "A") == str(project_a)

        assert result.lockfiles == [project_a / LOCKFILE_NAME, project_f / LOCKFILE_NAME]
        lock_a = json.loads((project_a / LOCKFILE_NAME).read_text(encoding="utf-8"))
        assert sorted(lock_a["dependencies"]) == ["B", "C", "D", "tool"]
        assert lock_a["dependencies"]["C"]["requires"] == {"D": "1.4.0"}
        lock_f = json.loads((project_f / LOCKFILE_NAME).read_text(encoding="utf-8"))
        assert sorted(lock_f["dependencies"]) == ["A", "B", "C", "D", "tool"]

    @pytest.mark.asyncio
    async def test_second_install_reuses_storage(
        self, projects, registry, options, storage_root
    ):
        await make_task(projects, registry, options).process()
        project_a, _ = projects
        links_before = sorted(os.listdir(project_a / "node_modules"))
        downloads_before = list(registry.downloaded)

        result = await make_task(projects, registry, options).process()

        assert result.succeeded
        assert result.packages_downloaded == 0
        assert result.packages_already_in_cache == 4
        assert registry.downloaded == downloads_before
        assert sorted(os.listdir(project_a / "node_modules")) == links_before

    @pytest.mark.asyncio
    async def test_transitive_dev_dependencies_are_ignored(
        self, make_project, registry, options
    ):
        registry.publish(make_manifest("lib", "1.0.0", devDependencies={"ghost": "^1.0.0"}))
        project = make_project("A", dependencies={"lib": "^1.0.0"}).parent

        result = await make_task([project], registry, options).process()

        assert result.succeeded
        assert "ghost@^1.0.0" not in registry.resolved

    @pytest.mark.asyncio
    async def test_failures_are_retried_once_and_reported(
        self, make_project, registry, options
    ):
        project = make_project("A", dependencies={"B": "^1.0.0", "ghost": "^1.0.0"}).parent

        result = await make_task([project], registry, options).process()

        assert not result.succeeded
        assert result.packages_failed == 1
        assert result.packages_downloaded == 1
        assert (project / "node_modules" / "B").is_symlink()

    @pytest.mark.asyncio
    async def test_lock_only_run_skips_modules(self, projects, registry, storage_root):
        options = InstallOptions(
            concurrency=2,
            storage_root=storage_root,
            generate_modules=False,
            run_scripts=False,
        )
        project_a, _ = projects

        result = await make_task(projects, registry, options).process()

        assert not (project_a / "node_modules").exists()
        assert (project_a / LOCKFILE_NAME).is_file()
        assert result.links_created == 0

    @pytest.mark.asyncio
    async def test_lifecycle_scripts_run_after_linking(
        self, make_project, registry, storage_root
    ):
        registry.publish(
            make_manifest("native", "1.0.0", scripts={"install": "node-gyp rebuild"})
        )
        project = make_project("A", dependencies={"native": "1.0.0"}).parent
        options = InstallOptions(concurrency=1, storage_root=storage_root)

        with patch.object(Script, "process", new=AsyncMock(return_value=False)) as run:
            result = await make_task([project], registry, options).process()

        run.assert_awaited_once_with("npm")
        assert result.scripts_run == 1
        assert [script.version_tag for script in result.failed_scripts] == ["native@1.0.0"]
        assert not result.succeeded


class TestInstallSupport:
    """Test project discovery and install configuration."""

    def test_get_node_js_projects_skips_directories_without_manifest(
        self, make_project, workspace
    ):
        project = make_project("A").parent
        (workspace / "docs").mkdir()

        assert get_node_js_projects([project, workspace / "docs"]) == [
            project.resolve() / "package.json"
        ]

    def test_get_node_js_projects_returns_absolute_paths(self, make_project, tmp_path):
        make_project("A")

        (manifest_path,) = get_node_js_projects(["work/A"])

        assert manifest_path.is_absolute()
        assert manifest_path == (tmp_path / "work" / "A" / "package.json").resolve()

    def test_options_from_config_ignore_unset_overrides(self, storage_root):
        install_config = InstallConfig(concurrency=3, storage_root=str(storage_root))

        options = InstallOptions.from_config(
            install_config, concurrency=None, run_scripts=False
        )

        assert options.concurrency == 3
        assert options.storage_root == storage_root.resolve()
        assert options.run_scripts is False

    def test_default_locks_file_is_optional(self):
        configuration = load_package_manager_configuration(
            InstallConfig(pin_roots=False, update_dependencies=True)
        )

        assert configuration.locks == {}
        assert configuration.pin_roots is False
        assert configuration.update_dependencies is True

    def test_default_locks_file_is_loaded_when_present(self, tmp_path):
        (tmp_path / DEFAULT_LOCKS_FILE).write_text(
            json.dumps({"locks": {"B": {"^1.0.0": "1.0.0"}}}), encoding="utf-8"
        )

        configuration = load_package_manager_configuration(InstallConfig())

        assert len(configuration.locks.get_package_locks("B")) == 1

    def test_configured_locks_file_must_exist(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_package_manager_configuration(
                InstallConfig(locks_file=str(tmp_path / "absent.json"))
            )

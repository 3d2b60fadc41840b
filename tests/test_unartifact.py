"""
Tests for removal of package manager leftovers.
"""

from unittest.mock import patch

from depfarm.unartifact import UnartifactTask


def make_leftovers(project):
    node_modules = project / "node_modules"
    (node_modules / "intact").mkdir(parents=True)
    (node_modules / "intact" / "package.json").write_text("{}", encoding="utf-8")
    (node_modules / "broken").mkdir()
    (node_modules / "broken" / "index.js").write_text("", encoding="utf-8")
    (node_modules / "@scope").mkdir()
    (node_modules / ".bin").mkdir()
    (project / "package-lock.json").write_text("{}", encoding="utf-8")
    (project / "package-lock.json.1").write_text("{}", encoding="utf-8")
    (project / "package-lock.json.12").write_text("{}", encoding="utf-8")
    (project / "package-lock.json.bak").write_text("{}", encoding="utf-8")


class TestUnartifactTask:
    """Test artifact detection and removal."""

    def test_finds_only_artifacts(self, make_project):
        project = make_project("A").parent
        make_leftovers(project)
        task = UnartifactTask([project])

        assert task.find_modules_without_manifest() == [project / "node_modules" / "broken"]
        assert task.find_package_lock_artifacts() == [
            project / "package-lock.json.1",
            project / "package-lock.json.12",
        ]

    def test_process_deletes_artifacts(self, make_project):
        project = make_project("A").parent
        make_leftovers(project)

        deleted = UnartifactTask([project]).process()

        assert len(deleted) == 3
        assert not (project / "node_modules" / "broken").exists()
        assert not (project / "package-lock.json.1").exists()
        assert (project / "node_modules" / "intact").is_dir()
        assert (project / "package-lock.json").is_file()
        assert (project / "package-lock.json.bak").is_file()

    def test_dangling_module_symlink_is_removed(self, make_project, tmp_path):
        project = make_project("A").parent
        (project / "node_modules").mkdir()
        (project / "node_modules" / "gone").symlink_to(tmp_path / "nowhere")

        deleted = UnartifactTask([project]).process()

        assert deleted == [project / "node_modules" / "gone"]
        assert not (project / "node_modules" / "gone").is_symlink()

    def test_missing_repository_is_skipped(self, tmp_path):
        assert UnartifactTask([tmp_path / "absent"]).process() == []

    def test_undeletable_artifact_does_not_stop_cleanup(self, make_project):
        project = make_project("A").parent
        make_leftovers(project)
        real_unlink = type(project).unlink

        def unlink(path, *args, **kwargs):
            if path.name == "package-lock.json.1":
                raise PermissionError("busy")
            return real_unlink(path, *args, **kwargs)

        with patch.object(type(project), "unlink", unlink):
            deleted = UnartifactTask([project]).process()

        assert project / "package-lock.json.1" not in deleted
        assert project / "package-lock.json.12" in deleted
        assert (project / "package-lock.json.1").exists()

"""
Removal of artifacts that interrupted package manager runs leave behind.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, List, Union

from .error_handling import log_filesystem_error
from .manifest import MANIFEST_NAME
from .modules_generator import NODE_MODULES

logger = logging.getLogger(__name__)

# `npm link` leaves numbered copies of the lock file behind.
PACKAGE_LOCK_ARTIFACT = re.compile(r"package-lock\.json\.\d+")


class UnartifactTask:
    """
    Cleans projects of:
    - `node_modules` entries without a `package.json`
    - numbered `package-lock.json.<n>` files
    """

    def __init__(self, repositories: Iterable[Union[str, Path]]):
        self.repositories = [Path(repository) for repository in repositories]
        self.deleted: List[Path] = []

    def process(self) -> List[Path]:
        self.clean_missing_package_json()
        self.clean_package_lock()
        logger.info("Done")
        return self.deleted

    def find_modules_without_manifest(self) -> List[Path]:
        invalid = []
        for repository in self.repositories:
            node_modules = repository / NODE_MODULES
            if not node_modules.is_dir():
                continue
            for module in sorted(node_modules.iterdir()):
                if module.name.startswith(("@", ".")):
                    continue
                if not (module / MANIFEST_NAME).exists():
                    invalid.append(module)
        return invalid

    def find_package_lock_artifacts(self) -> List[Path]:
        artifacts = []
        for repository in self.repositories:
            if not repository.is_dir():
                continue
            artifacts.extend(
                entry
                for entry in sorted(repository.iterdir())
                if PACKAGE_LOCK_ARTIFACT.fullmatch(entry.name)
            )
        return artifacts

    def clean_missing_package_json(self) -> None:
        for module in self.find_modules_without_manifest():
            self._delete(module)

    def clean_package_lock(self) -> None:
        for lockfile in self.find_package_lock_artifacts():
            self._delete(lockfile)

    def _delete(self, path: Path) -> None:
        logger.warning("Deleting %s.", path)
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            # One undeletable artifact does not stop the clean-up.
            log_filesystem_error(
                f"Unable to delete {path}",
                "unartifact",
                "_delete",
                path=str(path),
                exception=e,
            )
            return
        self.deleted.append(path)

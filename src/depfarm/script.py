"""
Lifecycle scripts declared by downloaded packages.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from .error_handling import ErrorCategory, get_error_handler
from .manifest import LIFECYCLE_STAGES

logger = logging.getLogger(__name__)


@dataclass
class Script:
    """A lifecycle script to run once the tree is fully processed."""

    version_tag: str
    stage: str
    cwd: Path

    async def process(self, package_manager: str = "npm") -> bool:
        """
        Run the script through the package manager's `run` command.

        Failures are reported, never raised.

        Returns:
            True if the script succeeded
        """
        logger.info("Processing '%s' script for '%s'…", self.stage, self.version_tag)
        executable = shutil.which(package_manager) or package_manager

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                "run",
                self.stage,
                cwd=str(self.cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            output, _ = await process.communicate()
        except OSError as e:
            self._report_failure(package_manager, e)
            return False

        if process.returncode != 0:
            logger.debug(output.decode(errors="replace"))
            self._report_failure(package_manager)
            return False

        return True

    def _report_failure(
        self, package_manager: str, exception: Optional[Exception] = None
    ) -> None:
        get_error_handler().error(
            ErrorCategory.SCRIPT,
            f"Running '{self.stage}' script for '{self.version_tag}' failed. "
            "The component is unlikely to perform correctly.",
            "script",
            "process",
            exception=exception,
            details={"version_tag": self.version_tag, "cwd": str(self.cwd)},
            suggestions=[
                f"Run '{package_manager} run {self.stage}' in '{self.cwd}' "
                "to retry the operation manually"
            ],
        )


async def run_scripts_in_stage_order(
    scripts: Iterable[Script], package_manager: str = "npm"
) -> List[Script]:
    """
    Run scripts sequentially, all `preinstall` first, then `install`, then
    `postinstall`.

    Returns:
        The scripts that failed
    """
    scripts = list(scripts)
    failed = []
    for stage in LIFECYCLE_STAGES:
        for script in scripts:
            if script.stage != stage:
                continue
            if not await script.process(package_manager):
                failed.append(script)
    return failed

"""
Counters collected during downloader and modules generator runs.
"""

import math
import sys
from dataclasses import dataclass, field


@dataclass
class DownloaderStatistics:
    """Progress and result of one downloader stage."""

    packages_total: int = 0
    packages_downloaded: int = 0
    packages_already_in_cache: int = 0
    packages_failed: int = 0
    next_progress_update: int = sys.maxsize
    progress_step: int = sys.maxsize
    # Progress stays silent until a real download happened.
    emitter_blocked: bool = field(default=True, repr=False)

    @property
    def packages_processed(self) -> int:
        return (
            self.packages_downloaded
            + self.packages_already_in_cache
            + self.packages_failed
        )

    def start(self, total: int) -> None:
        """Reset the counters for a stage of `total` versions."""
        self.packages_total = total
        self.packages_already_in_cache = 0
        self.packages_failed = 0
        self.progress_step = progress_step_for(total)
        self.next_progress_update = self.progress_step

    def block(self) -> None:
        self.emitter_blocked = True

    def unblock(self) -> None:
        self.emitter_blocked = False


def progress_step_for(total: int) -> int:
    """Logarithmic progress step: 1 below 100 items, 10 below 1000, and so on."""
    if total <= 0:
        return sys.maxsize
    return max(1, 10 ** (math.ceil(math.log10(total)) - 2))


@dataclass
class ModulesGeneratorStatistics:
    """Links created while generating `node_modules`."""

    links_created: int = 0
    links_created_bin: int = 0

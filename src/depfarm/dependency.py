"""
Dependency record for depfarm.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class Dependency:
    """An unresolved dependency declared in a package manifest."""

    name: str
    requested_version: str
    is_development_dependency: bool = False
    resolved_version: Optional[str] = None

    @property
    def version_tag(self) -> str:
        return f"{self.name}@{self.requested_version}"

    def __str__(self) -> str:
        return self.version_tag

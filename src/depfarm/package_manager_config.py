"""
Version lock and peering configuration.

The locks file maps package names to version replacement rules and host
packages to the peers they should see:

    {
        "locks": {"<package>": {"<range>": "<replacement version>"}},
        "peering": {"<host>": {"<range>": {"<peer name pattern>": "<range>"}}}
    }
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Union

import yaml
from semantic_version import NpmSpec, Version

from .error_handling import ConfigurationError

logger = logging.getLogger(__name__)


def satisfies(version: str, version_range: str) -> bool:
    """Check a concrete version against an npm range, False if either is invalid."""
    try:
        return NpmSpec(version_range).match(Version(version))
    except ValueError:
        return False


@dataclass(frozen=True)
class VersionLock:
    """Replace versions of a package that match a range with a fixed version."""

    package_name: str
    if_version_matches: str
    replace_with: str

    def applies_to(self, version: str) -> bool:
        # A range that literally equals the version is a pin, not a lock trigger.
        return version != self.if_version_matches and satisfies(
            version, self.if_version_matches
        )


class VersionLockDirectory(Dict[str, List[VersionLock]]):
    """Version locks keyed by package name."""

    def get_package_locks(self, package_name: str) -> List[VersionLock]:
        return self.get(package_name, [])

    def lock(self, package_name: str, if_version_matches: str, replace_with: str) -> None:
        self.setdefault(package_name, []).append(
            VersionLock(package_name, if_version_matches, replace_with)
        )


@dataclass(frozen=True)
class PeerRule:
    """A peer package name pattern and the version range accepted for it."""

    pattern: Pattern[str]
    version_range: str

    def matches_name(self, package_name: str) -> bool:
        return self.pattern.fullmatch(package_name) is not None


@dataclass(frozen=True)
class PeeringOffer:
    """Packages that are allowed to peer with a host package."""

    package_name: str
    if_version_matches: str
    peers: List[PeerRule] = field(default_factory=list)

    def applies_to(self, version: str) -> bool:
        return satisfies(version, self.if_version_matches)


class PeeringDirectory(Dict[str, List[PeeringOffer]]):
    """Peering offers keyed by host package name."""

    def get_peering_offers(self, package_name: str) -> List[PeeringOffer]:
        return self.get(package_name, [])

    def offer_peer(
        self, package_name: str, if_version_matches: str, peer_with: Dict[str, str]
    ) -> None:
        try:
            peers = [
                PeerRule(re.compile(pattern), version_range)
                for pattern, version_range in peer_with.items()
            ]
        except re.error as e:
            raise ConfigurationError(
                f"Invalid peer pattern for '{package_name}': {e}"
            ) from e

        self.setdefault(package_name, []).append(
            PeeringOffer(package_name, if_version_matches, peers)
        )


@dataclass
class PackageManagerConfiguration:
    """
    Package management settings consumed by the install engine.

    Attributes:
        pin_roots: Redirect every dependency on a project in the work area to
            that project, regardless of the declared range
        update_dependencies: Ask the registry again for every range instead
            of reusing what is in the storage area
        locks: Version replacement rules
        peering: Peer injection rules
    """

    pin_roots: bool = True
    update_dependencies: bool = False
    locks: VersionLockDirectory = field(default_factory=VersionLockDirectory)
    peering: PeeringDirectory = field(default_factory=PeeringDirectory)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PackageManagerConfiguration":
        configuration = cls()
        if not data:
            return configuration

        if not isinstance(data, dict):
            raise ConfigurationError("Package manager configuration must be a mapping")

        for package_name, version_locks in (data.get("locks") or {}).items():
            if not isinstance(version_locks, dict):
                raise ConfigurationError(f"Locks for '{package_name}' must be a mapping")
            for if_version_matches, replace_with in version_locks.items():
                configuration.locks.lock(
                    package_name, str(if_version_matches), str(replace_with)
                )

        for package_name, host_configuration in (data.get("peering") or {}).items():
            if not isinstance(host_configuration, dict):
                raise ConfigurationError(
                    f"Peering for '{package_name}' must be a mapping"
                )
            for if_version_matches, peer_with in host_configuration.items():
                if not isinstance(peer_with, dict):
                    raise ConfigurationError(
                        f"Peers of '{package_name}@{if_version_matches}' must be a mapping"
                    )
                configuration.peering.offer_peer(
                    package_name,
                    str(if_version_matches),
                    {str(k): str(v) for k, v in peer_with.items()},
                )

        return configuration

    @classmethod
    def from_file(cls, filename: Union[str, Path]) -> "PackageManagerConfiguration":
        """
        Load locks and peering from a JSON or YAML file.

        Raises:
            ConfigurationError: The file is unreadable or malformed
        """
        path = Path(filename)
        try:
            with open(path, encoding="utf-8") as f:
                if path.suffix.lower() in (".yaml", ".yml"):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Unable to load {path}: {e}") from e

        configuration = cls.from_dict(data)
        logger.debug(
            "Loaded %d lock rules and %d peering offers from %s",
            sum(len(locks) for locks in configuration.locks.values()),
            sum(len(offers) for offers in configuration.peering.values()),
            path,
        )
        return configuration

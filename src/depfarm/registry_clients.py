"""
Registry client for querying the npm registry and fetching package sources.

Implements an async httpx client with registry credential support, packument
caching, version range selection and tarball retrieval.
"""

import asyncio
import logging
import os
import re
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

import httpx
from httpx import HTTPStatusError, InvalidURL, RequestError
from semantic_version import NpmSpec, Version

from .cache_manager import get_cache_manager
from .cli_config import get_config
from .error_handling import ResolutionError, log_network_error
from .structured_logging import log_registry_lookup

logger = logging.getLogger(__name__)

CREDENTIAL_PATTERN = re.compile(r"^[a-zA-Z0-9_\-+=/.:]+$")
SENSITIVE_HEADER_NAMES = {"authorization", "x-api-key", "token", "npm-auth-token"}

Packument = Dict[str, Any]


def _validate_credential(credential: str, credential_type: str = "token") -> str:
    """
    Validate and sanitize credential inputs.

    Raises:
        ValueError: If credential is invalid or unsafe
    """
    if not credential or not isinstance(credential, str):
        raise ValueError(f"Invalid {credential_type}: must be a non-empty string")

    credential = credential.strip()

    if len(credential) > 500:
        raise ValueError(f"{credential_type} too long: {len(credential)} chars")

    if not CREDENTIAL_PATTERN.match(credential):
        raise ValueError(f"Invalid {credential_type}: contains unsafe characters")

    if len(credential) < 8:
        raise ValueError(f"{credential_type} too short (minimum 8 characters)")

    return credential


def _sanitize_url_for_logging(url: str) -> str:
    """
    Sanitize URL for safe logging by removing credentials.

    Args:
        url: URL that may contain credentials

    Returns:
        str: Sanitized URL safe for logging
    """
    try:
        parsed = urlparse(url)
        if parsed.username or parsed.password:
            sanitized_netloc = parsed.hostname or "unknown-host"
            if parsed.port:
                sanitized_netloc += f":{parsed.port}"
            sanitized_url = f"{parsed.scheme}://{sanitized_netloc}{parsed.path}"
            if parsed.query:
                sanitized_url += f"?{parsed.query}"
            return sanitized_url
        return url
    except ValueError:
        return "[REDACTED_URL]"


def _load_token_from_env() -> Optional[str]:
    """Load a registry token from the environment, first valid one wins."""
    for env_var in ("DEPFARM_NPM_TOKEN", "NPM_TOKEN", "NPM_AUTH_TOKEN"):
        value = os.getenv(env_var)
        if not value:
            continue
        try:
            return _validate_credential(value, f"environment variable {env_var}")
        except ValueError as e:
            logger.warning("Ignoring %s: %s", env_var, e)
    return None


@dataclass(frozen=True)
class RegistryConfig:
    """Configuration for a registry including credentials."""

    base_url: str
    token: Optional[str] = None
    custom_headers: Optional[Dict[str, str]] = None

    def __post_init__(self):
        if not self.base_url or not isinstance(self.base_url, str):
            raise ValueError("base_url must be a non-empty string")

        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

        if self.token:
            object.__setattr__(self, "token", _validate_credential(self.token))

    def get_auth_headers(self) -> Dict[str, str]:
        """
        Get authentication headers for this registry.

        Returns:
            Dict[str, str]: HTTP headers for authentication
        """
        headers = {}

        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        if self.custom_headers:
            for name, value in self.custom_headers.items():
                if isinstance(name, str) and isinstance(value, str):
                    if name.lower() not in SENSITIVE_HEADER_NAMES:
                        headers[name] = value

        return headers


def _parse_version(version: str) -> Optional[Version]:
    try:
        return Version(version)
    except ValueError:
        return None


def select_version(packument: Packument, spec: str) -> Optional[str]:
    """
    Pick the version of a packument that satisfies a range.

    Dist-tags and exact versions are honoured first. The `latest` dist-tag
    wins when it satisfies the range, otherwise the highest satisfying
    version is chosen.

    Returns:
        The version key in the packument, or None if nothing satisfies
    """
    versions = packument.get("versions") or {}
    dist_tags = packument.get("dist-tags") or {}
    spec = spec.strip()

    if spec in dist_tags:
        tagged = dist_tags[spec]
        return tagged if tagged in versions else None

    exact = spec.lstrip("=v")
    if exact in versions:
        return exact

    try:
        npm_spec = NpmSpec(spec or "*")
    except ValueError:
        logger.debug("Unparseable version range '%s'", spec)
        return None

    latest = dist_tags.get("latest")
    if latest in versions:
        latest_version = _parse_version(latest)
        if latest_version is not None and npm_spec.match(latest_version):
            return latest

    candidates = {}
    for key in versions:
        parsed = _parse_version(key)
        if parsed is not None:
            candidates[parsed] = key

    best = npm_spec.select(candidates.keys())
    if best is None:
        return None
    return candidates[best]


def _single_top_level_directory(directory: Path) -> Path:
    entries = [entry for entry in directory.iterdir() if entry.is_dir()]
    if len(entries) != 1:
        raise ResolutionError(
            f"Expected one top-level directory in archive, found {len(entries)}"
        )
    return entries[0]


def _extract_archive(archive: Path, destination: Path) -> Path:
    try:
        with tarfile.open(archive) as tf:
            tf.extractall(path=str(destination), filter="data")  # noqa: S202
    except (OSError, tarfile.TarError) as e:
        raise ResolutionError(f"Unable to extract {archive.name}: {e}") from e
    finally:
        archive.unlink(missing_ok=True)
    return _single_top_level_directory(destination)


class NPMRegistryClient:
    """
    Client for the npm registry and for tarball sources.

    Uses the async context manager pattern for httpx.AsyncClient resource
    management. The HTTP client is created on context entry and closed on exit.
    """

    def __init__(
        self,
        registry_config: Optional[RegistryConfig] = None,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = get_config()

        self.registry_config = registry_config or RegistryConfig(
            base_url=config.network.registry_url, token=_load_token_from_env()
        )
        self.base_url = self.registry_config.base_url
        self.timeout = timeout or httpx.Timeout(
            config.network.read_timeout,
            connect=config.network.connect_timeout,
            pool=config.network.pool_timeout,
        )
        self.limits = httpx.Limits(
            max_keepalive_connections=config.network.max_keepalive_connections,
            max_connections=config.network.max_connections,
        )
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

        self._headers = {"User-Agent": config.network.user_agent}
        self._registry_headers = {
            "Accept": "application/json",
            **self.registry_config.get_auth_headers(),
        }

    async def __aenter__(self):
        """Initialize the HTTP client when entering the context."""
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers,
            limits=self.limits,
            follow_redirects=True,
            transport=self.transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Clean up the HTTP client when exiting the context."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _require_client(self) -> httpx.AsyncClient:
        if self.client is None:
            raise RuntimeError(
                "HTTP client not initialized - use within async context manager"
            )
        return self.client

    def _headers_for(self, url: str) -> Dict[str, str]:
        # Credentials are only sent to the configured registry.
        if url.startswith(self.base_url):
            return self._registry_headers
        return {}

    async def fetch_packument(self, package_name: str) -> Packument:
        """
        Fetch the full registry document for a package.

        Raises:
            ResolutionError: The package does not exist or the registry failed
        """
        if not package_name or not isinstance(package_name, str):
            raise ResolutionError("Invalid package name")

        cache_manager = get_cache_manager()
        cached = cache_manager.get(package_name, self.base_url)
        if cached is not None:
            return cached

        url = f"{self.base_url}/{quote(package_name.strip(), safe='@')}"
        start_time = time.time()

        try:
            response = await self._require_client().get(
                url, headers=self._registry_headers
            )
            duration_ms = (time.time() - start_time) * 1000

            if response.status_code == 404:
                log_registry_lookup(package_name, False, duration_ms)
                raise ResolutionError(
                    f"Package '{package_name}' not found in registry "
                    f"{_sanitize_url_for_logging(self.base_url)}"
                )

            response.raise_for_status()
            packument = response.json()
        except HTTPStatusError as e:
            log_network_error(
                f"Registry request for '{package_name}' failed",
                "registry_clients",
                "fetch_packument",
                url=url,
                status_code=e.response.status_code,
                exception=e,
            )
            raise ResolutionError(
                f"HTTP {e.response.status_code} while fetching '{package_name}'"
            ) from e
        except RequestError as e:
            log_network_error(
                f"Network error while fetching '{package_name}'",
                "registry_clients",
                "fetch_packument",
                url=url,
                exception=e,
            )
            raise ResolutionError(f"Network error: {e}") from e
        except ValueError as e:
            raise ResolutionError(f"Invalid registry response for '{package_name}'") from e

        log_registry_lookup(package_name, True, duration_ms)
        cache_manager.put(package_name, self.base_url, packument)
        return packument

    async def resolve_manifest(
        self, package_name: str, spec: str
    ) -> Optional[Dict[str, Any]]:
        """
        Resolve a range to the manifest of the best matching published version.

        Returns:
            The version manifest including `dist`, or None if nothing satisfies
        """
        packument = await self.fetch_packument(package_name)
        version = select_version(packument, spec)
        if version is None:
            logger.debug("No version of '%s' satisfies '%s'", package_name, spec)
            return None
        return dict(packument["versions"][version])

    async def fetch_json(self, url: str) -> Dict[str, Any]:
        """
        Fetch a JSON document, such as a manifest from a git host.

        Raises:
            ResolutionError: The request failed or did not return JSON
        """
        try:
            response = await self._require_client().get(
                url, headers=self._headers_for(url)
            )
            response.raise_for_status()
            return response.json()
        except HTTPStatusError as e:
            log_network_error(
                "Request failed",
                "registry_clients",
                "fetch_json",
                url=url,
                status_code=e.response.status_code,
                exception=e,
            )
            raise ResolutionError(
                f"HTTP {e.response.status_code} for {_sanitize_url_for_logging(url)}"
            ) from e
        except RequestError as e:
            log_network_error(
                "Network error", "registry_clients", "fetch_json", url=url, exception=e
            )
            raise ResolutionError(f"Network error: {e}") from e
        except ValueError as e:
            raise ResolutionError(
                f"Invalid JSON from {_sanitize_url_for_logging(url)}"
            ) from e

    async def download_tarball(self, url: str, destination: Path) -> Path:
        """
        Download a gzipped tarball and extract it into `destination`.

        Returns:
            The single top-level directory contained in the archive

        Raises:
            ResolutionError: The download or extraction failed
        """
        destination.mkdir(parents=True, exist_ok=True)
        fd, archive_name = tempfile.mkstemp(suffix=".tgz", dir=destination)
        os.close(fd)
        archive = Path(archive_name)

        try:
            async with self._require_client().stream(
                "GET", url, headers=self._headers_for(url)
            ) as response:
                response.raise_for_status()
                with open(archive, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except InvalidURL as e:
            archive.unlink(missing_ok=True)
            raise ResolutionError(f"Invalid tarball URL: {e}") from e
        except HTTPStatusError as e:
            archive.unlink(missing_ok=True)
            log_network_error(
                "Tarball download failed",
                "registry_clients",
                "download_tarball",
                url=url,
                status_code=e.response.status_code,
                exception=e,
            )
            raise ResolutionError(
                f"HTTP {e.response.status_code} for {_sanitize_url_for_logging(url)}"
            ) from e
        except RequestError as e:
            archive.unlink(missing_ok=True)
            log_network_error(
                "Network error during tarball download",
                "registry_clients",
                "download_tarball",
                url=url,
                exception=e,
            )
            raise ResolutionError(f"Network error: {e}") from e

        return await asyncio.to_thread(_extract_archive, archive, destination)


def get_registry_client(
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> NPMRegistryClient:
    """
    Factory function for the configured registry client.

    Args:
        transport: Optional httpx transport, used to route traffic in tests

    Returns:
        Configured registry client
    """
    return NPMRegistryClient(transport=transport)

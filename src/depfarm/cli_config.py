"""
Configuration management for depfarm.

Provides configurable settings for the install engine, registry access,
logging and the packument cache.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from rich.console import Console

console = Console(stderr=True)

CONFIG_FILE_NAMES = [".depfarm.json", ".depfarm.yaml", ".depfarm.yml"]
DEFAULT_LOCKS_FILE = ".depfarm-locks.json"


def default_concurrency() -> int:
    """Bounded default for simultaneous downloads and link operations."""
    return min(4, os.cpu_count() or 1)


@dataclass
class InstallConfig:
    """Install engine configuration."""

    concurrency: int = field(default_factory=default_concurrency)
    storage_root: Optional[str] = None
    pin_roots: bool = True
    update_dependencies: bool = False
    locks_file: Optional[str] = None
    link_retry_attempts: int = 50
    busy_retry_attempts: int = 20
    package_manager: str = "npm"

    def resolve_storage_root(self) -> Path:
        """Storage area location, `<cwd>/.packages` unless configured."""
        if self.storage_root:
            return Path(self.storage_root).expanduser().resolve()
        return Path.cwd() / ".packages"


@dataclass
class NetworkConfig:
    """Network and registry configuration."""

    registry_url: str = "https://registry.npmjs.org"
    user_agent: str = "depfarm/1.0.0"
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    pool_timeout: float = 5.0
    max_keepalive_connections: int = 20
    max_connections: int = 50


@dataclass
class LoggingConfig:
    """Logging and error handling configuration."""

    log_level: str = "WARNING"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    enable_sensitive_data_masking: bool = True


@dataclass
class PerformanceConfig:
    """Packument cache configuration."""

    enable_caching: bool = True
    cache_ttl_seconds: int = 3600
    max_cache_size: int = 5000


@dataclass
class ComprehensiveConfig:
    """Main configuration containing all subsections."""

    install: InstallConfig = field(default_factory=InstallConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    @property
    def registry_url(self) -> str:
        return self.network.registry_url

    @property
    def user_agent(self) -> str:
        return self.network.user_agent

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_global_config: Optional[ComprehensiveConfig] = None

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_config_values(config: ComprehensiveConfig) -> List[str]:
    """
    Validate configuration values and return any errors.

    Args:
        config: Configuration to validate

    Returns:
        List[str]: List of validation errors (empty if valid)
    """
    errors = []

    if config.install.concurrency <= 0:
        errors.append("install.concurrency must be positive")
    if config.install.link_retry_attempts < 0:
        errors.append("install.link_retry_attempts must be non-negative")
    if config.install.busy_retry_attempts < 0:
        errors.append("install.busy_retry_attempts must be non-negative")
    if not config.install.package_manager:
        errors.append("install.package_manager must not be empty")

    if not config.network.registry_url.startswith(("http://", "https://")):
        errors.append("network.registry_url must be an http(s) URL")
    if config.network.connect_timeout <= 0:
        errors.append("network.connect_timeout must be positive")
    if config.network.read_timeout <= 0:
        errors.append("network.read_timeout must be positive")
    if config.network.max_connections <= 0:
        errors.append("network.max_connections must be positive")

    if config.logging.log_level.upper() not in _VALID_LOG_LEVELS:
        errors.append(f"logging.log_level must be one of {sorted(_VALID_LOG_LEVELS)}")

    if config.performance.cache_ttl_seconds < 0:
        errors.append("performance.cache_ttl_seconds must be non-negative")
    if config.performance.max_cache_size <= 0:
        errors.append("performance.max_cache_size must be positive")

    return errors


def load_config_file(config_path: Path) -> Optional[Dict[str, Any]]:
    """Load config from file."""
    if not config_path.exists():
        return None

    try:
        with open(config_path, encoding="utf-8") as f:
            if config_path.suffix.lower() in [".yaml", ".yml"]:
                return yaml.safe_load(f)
            elif config_path.suffix.lower() == ".json":
                return json.load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(
            f"⚠️  Error loading config from {config_path}: {e}", style="yellow"
        )

    return None


def find_config_file() -> Optional[Path]:
    """Find config file in standard locations."""
    locations = [Path.cwd() / name for name in CONFIG_FILE_NAMES] + [
        Path.home() / ".config" / "depfarm" / "config.json",
        Path.home() / ".config" / "depfarm" / "config.yaml",
    ]

    for location in locations:
        if location.exists():
            return location

    return None


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


# Environment variable, config section, attribute, parser.
ENVIRONMENT_OVERRIDES: List[Tuple[str, str, str, Callable[[str], Any]]] = [
    ("DEPFARM_CONCURRENCY", "install", "concurrency", int),
    ("DEPFARM_STORAGE_ROOT", "install", "storage_root", str),
    ("DEPFARM_LOCKS_FILE", "install", "locks_file", str),
    ("DEPFARM_PACKAGE_MANAGER", "install", "package_manager", str),
    ("DEPFARM_PIN_ROOTS", "install", "pin_roots", _parse_bool),
    ("DEPFARM_UPDATE", "install", "update_dependencies", _parse_bool),
    ("DEPFARM_REGISTRY_URL", "network", "registry_url", lambda v: v.rstrip("/")),
    ("DEPFARM_USER_AGENT", "network", "user_agent", str),
    ("DEPFARM_CONNECT_TIMEOUT", "network", "connect_timeout", float),
    ("DEPFARM_READ_TIMEOUT", "network", "read_timeout", float),
    ("DEPFARM_LOG_LEVEL", "logging", "log_level", str.upper),
    ("DEPFARM_ENABLE_CACHE", "performance", "enable_caching", _parse_bool),
    ("DEPFARM_CACHE_TTL_SECONDS", "performance", "cache_ttl_seconds", int),
]


def load_environment_overrides(config: ComprehensiveConfig) -> None:
    """Apply `DEPFARM_*` environment variables on top of `config`."""
    for variable, section_name, key, parse in ENVIRONMENT_OVERRIDES:
        raw = os.environ.get(variable)
        if not raw:
            continue
        try:
            value = parse(raw)
        except ValueError:
            console.print(
                f"⚠️  Ignoring {variable}={raw!r}: not a valid {key}", style="yellow"
            )
            continue
        setattr(getattr(config, section_name), key, value)


def apply_config_section(
    config: Any, section_data: Dict[str, Any], section_name: str
) -> None:
    """Apply configuration from dictionary to config section."""
    for key, value in section_data.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            console.print(
                f"⚠️  Unknown config key in {section_name}: {key}", style="yellow"
            )


def load_config() -> ComprehensiveConfig:
    """Load configuration from file and environment."""
    global _global_config

    if _global_config is not None:
        return _global_config

    config = ComprehensiveConfig()

    config_file = find_config_file()
    if config_file:
        file_config = load_config_file(config_file)
        if file_config:
            for section_name in ("install", "network", "logging", "performance"):
                if section_name in file_config:
                    apply_config_section(
                        getattr(config, section_name),
                        file_config[section_name],
                        section_name,
                    )

    load_environment_overrides(config)

    validation_errors = validate_config_values(config)
    if validation_errors:
        console.print("⚠️  Configuration validation errors:", style="red")
        for error in validation_errors:
            console.print(f"  • {error}", style="red")
        console.print("Using default values for invalid settings.", style="yellow")
        config = _reset_invalid_sections(config, validation_errors)

    _global_config = config
    return config


def _reset_invalid_sections(
    config: ComprehensiveConfig, errors: List[str]
) -> ComprehensiveConfig:
    defaults = ComprehensiveConfig()
    for error in errors:
        section_name, _, rest = error.partition(".")
        key = rest.split(" ", 1)[0]
        section = getattr(config, section_name, None)
        if section is not None and hasattr(section, key):
            setattr(section, key, getattr(getattr(defaults, section_name), key))
    return config


def get_config() -> ComprehensiveConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def reset_config() -> None:
    """Reset the global configuration (useful for testing)."""
    global _global_config
    _global_config = None


def create_sample_config() -> str:
    """Generate a sample configuration file with all defaults."""
    sample_config = ComprehensiveConfig().to_dict()
    sample_config["install"]["concurrency"] = 4
    return json.dumps(sample_config, indent=2)

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from netforge.network import DEFAULT_SCHEME, SCHEMES
from netforge.registry import POLICIES


logger = logging.getLogger(__name__)

CONFIG_FILENAME = "netforge.yml"
PROJECT_NAME_PATTERN = re.compile(r"^[a-z0-9]{3,10}$")

REGIONS = {
    "eastus2": "East US 2 (recommended)",
    "centralus": "Central US",
    "westus2": "West US 2",
}
DEFAULT_REGION = "eastus2"

SHUTDOWN_TIMEZONES = [
    "Eastern Standard Time",
    "Central Standard Time",
    "Pacific Standard Time",
    "UTC",
]
DEFAULT_SHUTDOWN_TIME = "2200"


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class EnvironmentProfile:
    name: str
    vm_size: str
    enable_backup: bool
    backup_retention_days: int
    data_disk_size_gb: int
    parameters_file: str
    cost_estimate: str = ""
    description: str = ""
    allow_auto_shutdown: bool = True


DEFAULT_PROFILES = {
    "dev": EnvironmentProfile(
        name="dev",
        vm_size="Standard_D2s_v3",
        enable_backup=False,
        backup_retention_days=7,
        data_disk_size_gb=128,
        parameters_file="dev.parameters.json",
        cost_estimate="~$90-120",
        description="Development (smaller VMs, no backup)",
    ),
    "test": EnvironmentProfile(
        name="test",
        vm_size="Standard_D2s_v3",
        enable_backup=True,
        backup_retention_days=14,
        data_disk_size_gb=256,
        parameters_file="test.parameters.json",
        cost_estimate="~$130-160",
        description="Testing (medium VMs, backup enabled)",
    ),
    "prod": EnvironmentProfile(
        name="prod",
        vm_size="Standard_D4s_v3",
        enable_backup=True,
        backup_retention_days=30,
        data_disk_size_gb=256,
        parameters_file="parameters.json",
        cost_estimate="~$190-220",
        description="Production (full resources, backup enabled)",
        allow_auto_shutdown=False,
    ),
}


@dataclass
class Settings:
    project: str = "cloudpi"
    location: str = DEFAULT_REGION
    admin_username: str = "azureadmin"
    scheme: str = DEFAULT_SCHEME
    policy: str = "probe"
    registry_path: Path | None = None
    lock_timeout: float = 5.0
    environments: dict[str, EnvironmentProfile] = field(
        default_factory=lambda: dict(DEFAULT_PROFILES)
    )

    def profile(self, environment: str) -> EnvironmentProfile:
        if environment not in self.environments:
            raise ConfigError(
                f"Unknown environment '{environment}'. Configured: {', '.join(self.environments)}"
            )
        return self.environments[environment]


def validate_project_name(name: str) -> str:
    if not PROJECT_NAME_PATTERN.match(name or ""):
        raise ConfigError(
            f"Invalid project name '{name}'. Must be 3-10 lowercase alphanumeric characters."
        )
    return name


def find_config(path: str | Path | None = None) -> Path | None:
    """Locate the config file: explicit path, NETFORGE_CONFIG, then ./netforge.yml."""
    if path:
        candidate = Path(path)
        if not candidate.exists():
            raise ConfigError(f"Config file '{path}' not found")
        return candidate.resolve()
    env_path = os.environ.get("NETFORGE_CONFIG")
    if env_path:
        candidate = Path(env_path).expanduser()
        if not candidate.exists():
            raise ConfigError(f"Config file '{env_path}' (from NETFORGE_CONFIG) not found")
        return candidate.resolve()
    candidate = Path.cwd() / CONFIG_FILENAME
    return candidate.resolve() if candidate.exists() else None


def load_config(path: Path) -> dict:
    """Load and parse a netforge YAML config file."""
    try:
        with open(path) as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Invalid config file: {path}")
    return config


def interpolate_variables(config: dict) -> dict:
    """Interpolate ${var} references using values from config['settings']."""
    settings = config.get("settings", {}) or {}
    lookup = {**settings}

    def _replace(obj):
        if isinstance(obj, str):
            def _sub(m):
                key = m.group(1)
                if key in lookup:
                    return str(lookup[key])
                env_val = os.environ.get(key)
                if env_val is not None:
                    return env_val
                return m.group(0)  # leave unresolved
            return re.sub(r"\$\{(\w+)\}", _sub, obj)
        elif isinstance(obj, dict):
            return {k: _replace(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [_replace(item) for item in obj]
        return obj

    return _replace(config)


def validate_config(config: dict) -> None:
    """Validate the optional sections of a netforge config."""
    defaults = config.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("'defaults' must be a mapping")
    if "project" in defaults:
        validate_project_name(str(defaults["project"]))
    if defaults.get("scheme", DEFAULT_SCHEME) not in SCHEMES:
        raise ConfigError(f"Unknown scheme '{defaults['scheme']}'. Choose from: {', '.join(SCHEMES)}")
    if defaults.get("policy", "probe") not in POLICIES:
        raise ConfigError(f"Unknown policy '{defaults['policy']}'. Choose from: {', '.join(POLICIES)}")

    environments = config.get("environments", {}) or {}
    if not isinstance(environments, dict):
        raise ConfigError("'environments' must be a mapping of name to profile")
    for name, env in environments.items():
        if not isinstance(env, dict):
            raise ConfigError(f"Environment '{name}' must be a mapping")
        if name not in DEFAULT_PROFILES:
            for required in ("vm_size", "data_disk_size_gb"):
                if required not in env:
                    raise ConfigError(f"Environment '{name}' missing required field: '{required}'")

    registry = config.get("registry", {}) or {}
    if not isinstance(registry, dict):
        raise ConfigError("'registry' must be a mapping")


PROFILE_FIELD_TYPES = {
    "vm_size": str,
    "enable_backup": bool,
    "backup_retention_days": int,
    "data_disk_size_gb": int,
    "parameters_file": str,
    "cost_estimate": str,
    "description": str,
    "allow_auto_shutdown": bool,
}


def _check_profile_fields(name: str, data: dict) -> None:
    for key, value in data.items():
        if key not in PROFILE_FIELD_TYPES:
            raise ConfigError(f"Environment '{name}' has unknown field: '{key}'")
        expected = PROFILE_FIELD_TYPES[key]
        # bool is a subclass of int, so it must not pass as a number
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ConfigError(
                f"Environment '{name}' field '{key}' must be {expected.__name__}, got {value!r}"
            )


def _build_profile(name: str, data: dict) -> EnvironmentProfile:
    _check_profile_fields(name, data)
    base = DEFAULT_PROFILES.get(name)
    if base:
        return replace(base, **data)
    return EnvironmentProfile(
        name=name,
        vm_size=data["vm_size"],
        enable_backup=data.get("enable_backup", False),
        backup_retention_days=data.get("backup_retention_days", 7),
        data_disk_size_gb=data["data_disk_size_gb"],
        parameters_file=data.get("parameters_file", f"{name}.parameters.json"),
        cost_estimate=data.get("cost_estimate", ""),
        description=data.get("description", ""),
        allow_auto_shutdown=data.get("allow_auto_shutdown", True),
    )


def load_settings(path: str | Path | None = None) -> Settings:
    """Build settings from built-in defaults and the config file, if any."""
    settings = Settings()
    config_path = find_config(path)
    if config_path is None:
        return settings

    logger.debug("Loading config from %s", config_path)
    config = interpolate_variables(load_config(config_path))
    validate_config(config)

    defaults = config.get("defaults", {}) or {}
    for attr in ("project", "location", "admin_username", "scheme", "policy"):
        if attr in defaults:
            setattr(settings, attr, str(defaults[attr]))

    for name, data in (config.get("environments", {}) or {}).items():
        settings.environments[name] = _build_profile(name, data)

    registry = config.get("registry", {}) or {}
    if registry.get("path"):
        registry_path = Path(registry["path"]).expanduser()
        if not registry_path.is_absolute():
            registry_path = config_path.parent / registry_path
        settings.registry_path = registry_path
    if "lock_timeout" in registry:
        try:
            settings.lock_timeout = float(registry["lock_timeout"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid registry lock_timeout: {registry['lock_timeout']}") from e
    return settings

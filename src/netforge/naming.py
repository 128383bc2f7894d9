"""
Resource naming policy for the deployment templates.

Every Azure resource in a deployment is named from the same three inputs:
the project, the environment and (for per-instance resources) a workload
label with an instance number. The formats are:

- Shared resources:   {abbr}-{project}-{environment}           e.g. rg-cloudpi-dev
- Workload resources: {abbr}-{project}-{workload}-{NN}-{env}   e.g. nic-cloudpi-app-01-dev
- Storage accounts:   st{project}{environment}{suffix}         lowercase, no dashes

Names are truncated to the Azure length limit for their resource type.
"""

import re
from dataclasses import dataclass
from datetime import datetime

from netforge.network import unique_string


class NamingError(Exception):
    pass


# resource type -> (abbreviation, max length, per-workload)
RESOURCE_TYPES = {
    "resource_group": ("rg", 90, False),
    "virtual_network": ("vnet", 64, False),
    "subnet": ("snet", 80, True),
    "network_security_group": ("nsg", 80, False),
    "network_interface": ("nic", 80, True),
    "virtual_machine": ("vm", 64, True),
    "os_disk": ("osdisk", 80, True),
    "data_disk": ("disk", 80, True),
    "key_vault": ("kv", 24, False),
    "log_analytics": ("log", 63, False),
    "recovery_vault": ("rsv", 50, False),
    "action_group": ("ag", 260, False),
    "storage_account": ("st", 24, False),
}


@dataclass(frozen=True)
class NamingConfig:
    project: str
    environment: str
    workload: str = "app"
    instance: int = 1


def resource_name(resource_type: str, config: NamingConfig) -> str:
    """Format the name of one resource from an explicit naming config."""
    if resource_type not in RESOURCE_TYPES:
        raise NamingError(
            f"Unknown resource type '{resource_type}'. Known types: {', '.join(sorted(RESOURCE_TYPES))}"
        )
    abbr, max_length, per_workload = RESOURCE_TYPES[resource_type]

    if resource_type == "storage_account":
        return _storage_account_name(config, max_length)

    if resource_type == "subnet":
        parts = [abbr, config.project, config.workload, config.environment]
    elif per_workload:
        parts = [abbr, config.project, config.workload, f"{config.instance:02d}", config.environment]
    else:
        parts = [abbr, config.project, config.environment]
    name = "-".join(p for p in parts if p)
    return name[:max_length].rstrip("-")


def resource_names(config: NamingConfig) -> dict[str, str]:
    return {rtype: resource_name(rtype, config) for rtype in RESOURCE_TYPES}


def _storage_account_name(config: NamingConfig, max_length: int) -> str:
    # Storage account names are global, so a deterministic suffix keeps them unique
    base = re.sub(r"[^a-z0-9]", "", f"{config.project}{config.environment}".lower())
    suffix = unique_string(config.project, config.environment, "storage")[:6]
    room = max_length - len("st") - len(suffix)
    return f"st{base[:room]}{suffix}"


def deployment_name(project: str, environment: str, now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"{project}-{environment}-{now.strftime('%Y%m%d-%H%M%S')}"


def temp_public_ip_name(vm_name: str) -> str:
    """Name of the throwaway public IP attached for testing."""
    return f"pip-{vm_name}-temp"

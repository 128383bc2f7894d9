import json
from dataclasses import dataclass, field
from pathlib import Path

from netforge.config import DEFAULT_SHUTDOWN_TIME, EnvironmentProfile
from netforge.network import AddressRange, RangeAllocator


PARAMETERS_SCHEMA = "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#"
TEMPLATE_FILE = "main.bicep"


@dataclass
class DeploymentPlan:
    project: str
    environment: str
    location: str
    profile: EnvironmentProfile
    address_range: AddressRange
    admin_username: str = "azureadmin"
    enable_auto_shutdown: bool = False
    auto_shutdown_time: str = DEFAULT_SHUTDOWN_TIME
    auto_shutdown_timezone: str = "UTC"
    add_public_ip: bool = False
    ssh_public_key: str | None = None
    tenant_id: str | None = None
    alert_emails: list[str] = field(default_factory=list)
    record_in_registry: bool = False

    @property
    def gateway_ip(self) -> str:
        return RangeAllocator.gateway_ip(self.address_range.app_subnet_prefix)

    @property
    def expected_private_ip(self) -> str:
        return RangeAllocator.first_host_ip(self.address_range.app_subnet_prefix)


class ParametersGenerator:
    """Renders a deployment plan into an ARM deploymentParameters document."""

    def generate(self, plan: DeploymentPlan) -> dict:
        """Build the parameters dict consumed by the Bicep template."""
        profile = plan.profile
        values = {
            "projectName": plan.project,
            "environment": plan.environment,
            "location": plan.location,
            "vmSize": profile.vm_size,
            "dataDiskSizeGB": profile.data_disk_size_gb,
            "enableBackup": profile.enable_backup,
            "backupRetentionDays": profile.backup_retention_days,
            "enableAutoShutdown": plan.enable_auto_shutdown,
            "autoShutdownTime": plan.auto_shutdown_time,
            "autoShutdownTimeZone": plan.auto_shutdown_timezone,
            "adminUsername": plan.admin_username,
            "vnetAddressPrefix": plan.address_range.vnet_prefix,
            "appSubnetPrefix": plan.address_range.app_subnet_prefix,
            "alertEmailAddresses": list(plan.alert_emails),
        }
        if plan.tenant_id:
            values["tenantId"] = plan.tenant_id
        if plan.ssh_public_key:
            values["sshPublicKey"] = plan.ssh_public_key

        return {
            "$schema": PARAMETERS_SCHEMA,
            "contentVersion": "1.0.0.0",
            "parameters": {name: {"value": value} for name, value in values.items()},
        }

    def write(self, document: dict, output_dir: Path, filename: str) -> Path:
        """Write the parameters document as JSON into the given directory."""
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / filename
        with open(path, "w") as f:
            json.dump(document, f, indent=2)
            f.write("\n")
        return path

    @staticmethod
    def deployment_command(plan: DeploymentPlan, parameters_file: Path, name: str) -> list[str]:
        """Return the az CLI argv that deploys the template with these parameters."""
        return [
            "az", "deployment", "sub", "create",
            "--name", name,
            "--location", plan.location,
            "--template-file", TEMPLATE_FILE,
            "--parameters", f"@{parameters_file}",
        ]

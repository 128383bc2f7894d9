import json
import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.table import Table

from netforge.config import Settings
from netforge.naming import NamingConfig, deployment_name, resource_names, temp_public_ip_name
from netforge.network import AddressRange, RangeAllocator, collision_probability
from netforge.parameters import DeploymentPlan, ParametersGenerator
from netforge.registry import AllocationRegistry

console = Console()
logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("text", "json", "env")


class AllocationController:
    """Ties the allocator, registry, naming policy and parameter files together."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()

    @property
    def registry(self) -> AllocationRegistry:
        return AllocationRegistry(self.settings.registry_path, self.settings.lock_timeout)

    def allocate(
        self,
        project: str,
        environment: str,
        vnet_prefix: str | None = None,
        subnet_prefix: str | None = None,
        scheme: str | None = None,
        use_registry: bool = False,
        policy: str | None = None,
    ) -> AddressRange:
        """Compute (and optionally record) the address range for a key."""
        allocator = RangeAllocator(scheme or self.settings.scheme)
        policy = policy or self.settings.policy

        if use_registry and not (vnet_prefix or subnet_prefix):
            return self.registry.reserve(project, environment, allocator=allocator, policy=policy)
        return allocator.allocate(project, environment, vnet_prefix, subnet_prefix)

    @staticmethod
    def render(address_range: AddressRange, output_format: str = "text") -> str:
        """Format an allocation as text, JSON or KEY=VALUE lines."""
        octet = "" if address_range.network_octet is None else str(address_range.network_octet)
        if output_format == "json":
            return json.dumps(address_range.to_dict(), indent=2)
        if output_format == "env":
            return "\n".join([
                f"VNET_ADDRESS_PREFIX={address_range.vnet_prefix}",
                f"APP_SUBNET_PREFIX={address_range.app_subnet_prefix}",
                f"NETWORK_OCTET={octet}",
            ])
        lines = [
            f"VNet:    {address_range.vnet_prefix}",
            f"Subnet:  {address_range.app_subnet_prefix}",
            f"Octet:   {octet or '-'}",
            f"Source:  {address_range.source}",
        ]
        if address_range.conflict:
            lines.append(f"Warning: {address_range.conflict}")
        return "\n".join(lines)

    def release(self, project: str, environment: str) -> None:
        entry = self.registry.release(project, environment)
        console.print(f"[bold green]Released {entry.vnet_prefix} ({entry.key}).[/bold green]")

    def list_allocations(self, include_released: bool = False) -> None:
        """Print the registry contents as a table."""
        registry = self.registry
        entries = registry.list_entries(include_released=include_released)
        if not entries:
            console.print(
                "No allocations recorded. Run [bold]netforge allocate --registry[/bold] to record one."
            )
            return

        table = Table(title=f"Allocations - {registry.path}")
        table.add_column("Key", style="cyan")
        table.add_column("Octet", justify="right")
        table.add_column("VNet", style="green")
        table.add_column("Subnet")
        table.add_column("Status", style="bold")
        table.add_column("Updated")

        for entry in entries:
            status_style = "green" if entry.status == "active" else "dim"
            table.add_row(
                entry.key,
                str(entry.octet) if entry.octet is not None else "-",
                entry.vnet_prefix,
                entry.app_subnet_prefix,
                f"[{status_style}]{entry.status}[/{status_style}]",
                entry.updated_at[:19],
            )

        console.print(table)
        active = len(registry.active_octets())
        console.print(
            f"[dim]{active} active range(s); chance of a hash collision among {active} keys: "
            f"{collision_probability(active):.0%}[/dim]"
        )

    def print_names(self, project: str, environment: str, workload: str = "app", instance: int = 1) -> None:
        config = NamingConfig(project, environment, workload=workload, instance=instance)
        table = Table(title=f"Resource Names - {project}/{environment}")
        table.add_column("Resource", style="cyan")
        table.add_column("Name", style="green")
        for rtype, name in resource_names(config).items():
            table.add_row(rtype, name)
        console.print(table)

    def build_plan(
        self,
        project: str,
        environment: str,
        location: str,
        enable_auto_shutdown: bool = False,
        auto_shutdown_timezone: str = "UTC",
        add_public_ip: bool = False,
        ssh_key_path: Path | None = None,
        tenant_id: str | None = None,
        use_registry: bool = False,
        vnet_prefix: str | None = None,
        subnet_prefix: str | None = None,
    ) -> DeploymentPlan:
        """Resolve every input of a deployment. Nothing is written."""
        profile = self.settings.profile(environment)
        if not profile.allow_auto_shutdown:
            enable_auto_shutdown = False
            auto_shutdown_timezone = "UTC"

        record = use_registry and not (vnet_prefix or subnet_prefix)
        if record:
            # Nothing is recorded until the plan is written
            address_range = self.registry.preview(
                project,
                environment,
                allocator=RangeAllocator(self.settings.scheme),
                policy=self.settings.policy,
            )
        else:
            address_range = self.allocate(project, environment, vnet_prefix=vnet_prefix, subnet_prefix=subnet_prefix)

        ssh_public_key = None
        if ssh_key_path and ssh_key_path.exists():
            ssh_public_key = ssh_key_path.read_text().strip()
        elif ssh_key_path:
            logger.warning("SSH key %s not found; sshPublicKey will be left out", ssh_key_path)

        return DeploymentPlan(
            project=project,
            environment=environment,
            location=location,
            profile=profile,
            address_range=address_range,
            admin_username=self.settings.admin_username,
            enable_auto_shutdown=enable_auto_shutdown,
            auto_shutdown_timezone=auto_shutdown_timezone,
            add_public_ip=add_public_ip,
            ssh_public_key=ssh_public_key,
            tenant_id=tenant_id,
            record_in_registry=record,
        )

    def print_summary(self, plan: DeploymentPlan) -> None:
        """Print the deployment summary the operator confirms."""
        profile = plan.profile
        address_range = plan.address_range

        table = Table(title="Deployment Summary", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")

        table.add_row("Project Name", plan.project)
        table.add_row("Environment", plan.environment)
        table.add_row("Region", plan.location)
        table.add_row("VM Size", profile.vm_size)
        table.add_row("Data Disk", f"{profile.data_disk_size_gb}GB")
        table.add_row("Backup Enabled", str(profile.enable_backup).lower())
        if profile.enable_backup:
            table.add_row("Backup Retention", f"{profile.backup_retention_days} days")
        if plan.enable_auto_shutdown:
            table.add_row("Auto-Shutdown", f"Enabled at 10 PM {plan.auto_shutdown_timezone}")
        else:
            table.add_row("Auto-Shutdown", "Disabled")
        table.add_row("Public IP", "Yes (testing)" if plan.add_public_ip else "No (secure)")

        if address_range.source == "override":
            table.add_row("VNet Range", f"{address_range.vnet_prefix} (explicit)")
        else:
            table.add_row("VNet Range", f"{address_range.vnet_prefix} (auto-assigned)")
        table.add_row("App Subnet", address_range.app_subnet_prefix)
        table.add_row("Subnet Gateway", plan.gateway_ip)
        table.add_row("Expected VM IP", plan.expected_private_ip)
        if profile.cost_estimate:
            table.add_row("Est. Monthly Cost", f"[yellow]{profile.cost_estimate}[/yellow]")

        console.print(table)
        if address_range.conflict:
            console.print(f"[yellow]Warning:[/yellow] {address_range.conflict}")
        if not plan.ssh_public_key:
            console.print("[yellow]Warning:[/yellow] no SSH public key found; add sshPublicKey before deploying")

    def write_plan(self, plan: DeploymentPlan, output_dir: Path, now: datetime | None = None) -> Path:
        """Write the parameters file and print the command that deploys it."""
        if plan.record_in_registry:
            reserved = self.registry.reserve(
                plan.project,
                plan.environment,
                allocator=RangeAllocator(self.settings.scheme),
                policy=self.settings.policy,
            )
            if reserved.vnet_prefix != plan.address_range.vnet_prefix:
                console.print(
                    f"[yellow]Warning:[/yellow] range changed since the summary; using {reserved.vnet_prefix}"
                )
            plan.address_range = reserved
            console.print(f"[bold green]Recorded in registry:[/bold green] {reserved.vnet_prefix}")

        generator = ParametersGenerator()
        document = generator.generate(plan)
        path = generator.write(document, output_dir, plan.profile.parameters_file)
        console.print(f"[bold green]Wrote deployment parameters:[/bold green] {path}")

        name = deployment_name(plan.project, plan.environment, now)
        command = generator.deployment_command(plan, path, name)
        console.print("\n[bold]Deploy with:[/bold]")
        console.print(" ".join(command), markup=False, highlight=False, soft_wrap=True)

        vm_name = resource_names(NamingConfig(plan.project, plan.environment))["virtual_machine"]
        if plan.add_public_ip:
            console.print(
                f"\n[dim]Public IP requested: attach {temp_public_ip_name(vm_name)} for testing and "
                "remove it before production.[/dim]"
            )
        else:
            console.print(
                f"\n[dim]No public IP: reach {vm_name} at {plan.expected_private_ip} "
                "through Bastion, VPN or Cloud Shell.[/dim]"
            )
        return path

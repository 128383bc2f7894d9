import functools
import logging
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler

from netforge import __version__
from netforge.config import (
    REGIONS,
    SHUTDOWN_TIMEZONES,
    ConfigError,
    load_settings,
    validate_project_name,
)
from netforge.controller import OUTPUT_FORMATS, AllocationController
from netforge.naming import NamingError
from netforge.network import SCHEMES, NetworkError
from netforge.registry import POLICIES, LockTimeoutError, StateError

console = Console()


def handle_errors(fn):
    """Decorator to catch and display common errors."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ConfigError, StateError, NetworkError, NamingError, LockTimeoutError) as e:
            console.print(f"[bold red]Error:[/bold red] {e}", highlight=False)
            raise SystemExit(1)

    return wrapper


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="netforge")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.option("-c", "--config", "config_path", default=None, help="Path to a netforge.yml config file")
@click.pass_context
@handle_errors
def cli(ctx, verbose, config_path):
    """Netforge - Deterministic address ranges and deployment parameters for Azure environments."""
    setup_logging(verbose)
    ctx.obj = AllocationController(load_settings(config_path))


@cli.command()
@click.argument("project")
@click.argument("environment")
@click.option("--vnet-prefix", default=None, help="Explicit virtual network CIDR (overrides allocation)")
@click.option("--subnet-prefix", default=None, help="Explicit app subnet CIDR (overrides allocation)")
@click.option("--scheme", type=click.Choice(SCHEMES), default=None, help="Hash scheme")
@click.option("--registry/--no-registry", "use_registry", default=False,
              help="Record the range and avoid octets already in use")
@click.option("--policy", type=click.Choice(POLICIES), default=None,
              help="What to do when the computed range is already in use")
@click.option("-o", "--format", "output_format", type=click.Choice(OUTPUT_FORMATS), default="text",
              help="Output format")
@click.pass_obj
@handle_errors
def allocate(controller, project, environment, vnet_prefix, subnet_prefix, scheme, use_registry, policy,
             output_format):
    """Compute the address range for PROJECT and ENVIRONMENT."""
    address_range = controller.allocate(
        project,
        environment,
        vnet_prefix=vnet_prefix,
        subnet_prefix=subnet_prefix,
        scheme=scheme,
        use_registry=use_registry,
        policy=policy,
    )
    click.echo(controller.render(address_range, output_format))


@cli.command()
@click.argument("project")
@click.argument("environment")
@click.pass_obj
@handle_errors
def release(controller, project, environment):
    """Free the recorded range of PROJECT and ENVIRONMENT."""
    controller.release(project, environment)


@cli.command("list")
@click.option("-a", "--all", "include_released", is_flag=True, help="Include released allocations")
@click.pass_obj
@handle_errors
def list_allocations(controller, include_released):
    """List recorded allocations."""
    controller.list_allocations(include_released=include_released)


@cli.command()
@click.argument("project")
@click.argument("environment")
@click.option("-w", "--workload", default="app", help="Workload label for per-instance resources")
@click.option("-i", "--instance", default=1, type=int, help="Instance number")
@click.pass_obj
@handle_errors
def names(controller, project, environment, workload, instance):
    """Show the resource names for PROJECT and ENVIRONMENT."""
    controller.print_names(project, environment, workload=workload, instance=instance)


def _choose(title: str, options: list[tuple[str, str]], default: int | None = None) -> str:
    """Prompt for one of a numbered list of options and return its value."""
    console.print(f"[cyan]{title}[/cyan]")
    for i, (value, label) in enumerate(options, start=1):
        console.print(f"  {i}) {value:<12} - {label}" if label else f"  {i}) {value}")
    choice = click.prompt(
        f"Enter your choice (1-{len(options)})",
        type=click.IntRange(1, len(options)),
        default=default,
    )
    return options[choice - 1][0]


@cli.command()
@click.option("-p", "--project", default=None, help="Project name (3-10 lowercase alphanumerics)")
@click.option("-e", "--environment", default=None, help="Environment profile")
@click.option("-l", "--location", default=None, help="Azure region")
@click.option("--auto-shutdown/--no-auto-shutdown", default=None, help="Shut the VM down daily at 10 PM")
@click.option("--timezone", "shutdown_timezone", default=None, help="Time zone for auto-shutdown")
@click.option("--public-ip/--no-public-ip", default=None, help="Attach a public IP for testing")
@click.option("--ssh-key", default=None, help="SSH public key path (default: ~/.ssh/<project>_azure.pub)")
@click.option("--tenant-id", default=None, help="Azure AD tenant ID for Key Vault access")
@click.option("--vnet-prefix", default=None, help="Explicit virtual network CIDR")
@click.option("--subnet-prefix", default=None, help="Explicit app subnet CIDR")
@click.option("--registry/--no-registry", "use_registry", default=False, help="Record the range in the registry")
@click.option("-d", "--output-dir", default=".", help="Directory for the parameters file")
@click.option("-y", "--yes", is_flag=True, help="Skip the confirmation prompt")
@click.pass_obj
@handle_errors
def plan(controller, project, environment, location, auto_shutdown, shutdown_timezone, public_ip, ssh_key,
         tenant_id, vnet_prefix, subnet_prefix, use_registry, output_dir, yes):
    """Interactively plan a deployment and write its parameters file."""
    settings = controller.settings

    if project is None:
        console.print("Enter a short project/application name (3-10 characters, lowercase)")
        project = click.prompt("Project name", default=settings.project)
    validate_project_name(project)

    if environment is None:
        environment = _choose(
            "Select Environment",
            [(name, profile.description) for name, profile in settings.environments.items()],
        )
        console.print("[dim]IP ranges are auto-assigned based on project name + environment[/dim]")
    profile = settings.profile(environment)

    if profile.allow_auto_shutdown:
        if auto_shutdown is None:
            auto_shutdown = click.confirm("Enable automatic VM shutdown at 10 PM daily?", default=False)
        if auto_shutdown and shutdown_timezone is None:
            shutdown_timezone = _choose("Select timezone for shutdown", [(tz, "") for tz in SHUTDOWN_TIMEZONES],
                                        default=1)
    else:
        auto_shutdown = False
    if shutdown_timezone is None or not auto_shutdown:
        shutdown_timezone = "UTC"
    elif shutdown_timezone not in SHUTDOWN_TIMEZONES:
        raise ConfigError(f"Unknown time zone '{shutdown_timezone}'. Choose from: {', '.join(SHUTDOWN_TIMEZONES)}")

    if public_ip is None:
        console.print("By default, VMs have NO public IP.")
        public_ip = click.confirm("Add a public IP for testing?", default=False)

    if location is None:
        location = _choose("Select Azure Region", [*REGIONS.items(), ("other", "Specify custom region")], default=1)
        if location == "other":
            location = click.prompt("Enter Azure region (e.g., eastus)")

    key_path = Path(ssh_key).expanduser() if ssh_key else Path(f"~/.ssh/{project}_azure.pub").expanduser()

    deployment = controller.build_plan(
        project,
        environment,
        location,
        enable_auto_shutdown=auto_shutdown,
        auto_shutdown_timezone=shutdown_timezone,
        add_public_ip=public_ip,
        ssh_key_path=key_path,
        tenant_id=tenant_id,
        use_registry=use_registry,
        vnet_prefix=vnet_prefix,
        subnet_prefix=subnet_prefix,
    )
    console.print()
    controller.print_summary(deployment)

    if not yes and not click.confirm("Proceed and write the parameters file?", default=False):
        console.print("[bold red]Deployment cancelled.[/bold red]")
        return

    controller.write_plan(deployment, Path(output_dir))


@cli.command()
@click.argument("path")
@handle_errors
def init(path):
    """Scaffold a netforge.yml configuration."""
    target = Path(path)
    if target.exists():
        console.print(f"[bold red]File already exists:[/bold red] {target}")
        raise SystemExit(1)

    scaffold = {
        "settings": {
            "admin_user": "azureadmin",
        },
        "defaults": {
            "project": "cloudpi",
            "location": "eastus2",
            "admin_username": "${admin_user}",
            "scheme": "weighted",
            "policy": "probe",
        },
        "environments": {
            "dev": {
                "vm_size": "Standard_D2s_v3",
                "data_disk_size_gb": 128,
            },
        },
        "registry": {
            "path": "data/registry.yml",
            "lock_timeout": 5,
        },
    }

    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w") as f:
        yaml.dump(scaffold, f, default_flow_style=False, sort_keys=False)

    console.print(f"[bold green]Created config:[/bold green] {target}")
    console.print(f"Edit the file, then run: [bold]netforge --config {path} plan[/bold]")

"""
Command-line interface for PXE test VMs.

    pxevm provision --cpu 2 --memory-gb 2 --disk-gb 20 --switch PXENetwork
    pxevm reclaim --pattern PXE-CLIENT-
    pxevm config show
"""

import json
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.json import JSON
from rich.table import Table

from pxevm.config import Settings
from pxevm.hypervisor import HypervisorBackend, HypervisorError, HyperVClient
from pxevm.mock_hypervisor import MockHypervisor
from pxevm.models import BootOrder, ReclaimReport, ProvisionResult, SecureBoot, StepOutcome, VmSpec
from pxevm.naming import NameExhaustedError
from pxevm.provisioner import Provisioner
from pxevm.reclaimer import Reclaimer
from pxevm.reconciler import ResourceCreationError

# Initialize CLI app and console
app = typer.Typer(
    name="pxevm",
    help="Provision and reclaim disposable PXE-boot test VMs on Hyper-V",
    add_completion=False,
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

OUTCOME_STYLES = {
    StepOutcome.APPLIED: "green",
    StepOutcome.SATISFIED: "cyan",
    StepOutcome.SKIPPED: "yellow",
    StepOutcome.FAILED: "red",
}


def load_settings() -> Settings:
    """Load and validate settings from the environment, exiting on errors."""
    try:
        settings = Settings.from_environment()
        settings.validate()
    except ValueError as e:
        console.print(f"❌ Invalid configuration: {e}")
        raise typer.Exit(1)
    return settings


def build_backend(settings: Settings, mock: bool = False, switch_name: Optional[str] = None) -> HypervisorBackend:
    """Hyper-V client for real runs, in-memory hypervisor for --mock runs."""
    if mock:
        backend = MockHypervisor()
        if switch_name:
            backend.add_switch(switch_name)
        return backend
    return HyperVClient.from_settings(settings)


def print_provision_result(result: ProvisionResult) -> None:
    table = Table(title=f"Provisioning {result.identity.name}")
    table.add_column("Step", style="cyan")
    table.add_column("Outcome")
    table.add_column("Detail")

    for step in result.steps:
        style = OUTCOME_STYLES[step.outcome]
        table.add_row(step.step, f"[{style}]{step.outcome.value}[/{style}]", step.detail)

    console.print(table)
    console.print(f"Name:      {result.identity.name}")
    console.print(f"Disk:      {result.identity.disk_path}")
    console.print(f"Firmware:  {result.firmware_class.name} (generation {result.firmware_class.generation})")


def print_reclaim_report(report: ReclaimReport) -> None:
    if not report.resources:
        console.print(f"ℹ️  No VMs matched {report.pattern}")
    else:
        table = Table(title=f"Reclaimed VMs matching {report.pattern}")
        table.add_column("VM", style="cyan")
        table.add_column("Deleted")
        table.add_column("Snapshots", justify="right")
        table.add_column("Disks deleted")
        table.add_column("Disks kept (outside storage root)", style="yellow")
        table.add_column("Errors", style="red")

        for r in report.resources:
            table.add_row(
                r.name,
                "✅" if r.deleted else "❌",
                str(r.snapshots_removed),
                "\n".join(r.disks_deleted),
                "\n".join(r.disks_protected),
                "\n".join(r.errors),
            )
        console.print(table)

    if report.storage_root_removed:
        console.print(f"🧹 Removed empty storage root {report.storage_root}")
    for error in report.errors:
        console.print(f"⚠️  {error}")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    """Provision and reclaim disposable PXE-boot test VMs."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@app.command("provision")
def provision(
    uefi: bool = typer.Option(True, "--uefi/--legacy", help="UEFI (generation 2) or legacy BIOS (generation 1)"),
    cpu: int = typer.Option(2, "--cpu", min=1, help="Virtual CPU count"),
    memory_gb: int = typer.Option(2, "--memory-gb", min=1, help="Startup memory in GB"),
    disk_gb: int = typer.Option(20, "--disk-gb", min=1, help="Disk capacity in GB"),
    switch: str = typer.Option("PXENetwork", "--switch", help="Virtual switch for the network adapter"),
    secure_boot: SecureBoot = typer.Option(
        SecureBoot.OFF, "--secure-boot", case_sensitive=False, help="Secure Boot (UEFI only)"
    ),
    auto_start: bool = typer.Option(False, "--auto-start", help="Start the VM when done"),
    nested: bool = typer.Option(
        True, "--nested/--no-nested", help="Expose virtualization extensions (UEFI, >= 2 CPUs)"
    ),
    name: Optional[str] = typer.Option(None, "--name", help="Converge an existing VM instead of allocating a name"),
    boot_order: Optional[BootOrder] = typer.Option(
        None, "--boot-order", case_sensitive=False, help="Override the configured boot order"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    mock: bool = typer.Option(False, "--mock", help="Run against an in-memory hypervisor"),
) -> None:
    """Create (or converge) one PXE test VM."""
    settings = load_settings()
    if boot_order is not None:
        settings.boot_order = boot_order

    try:
        spec = VmSpec.from_gigabytes(
            uefi_mode=uefi,
            cpu_count=cpu,
            memory_gb=memory_gb,
            disk_size_gb=disk_gb,
            switch_name=switch,
            secure_boot=secure_boot,
            auto_start=auto_start,
            nested_virtualization=nested,
        )
    except ValueError as e:
        console.print(f"❌ Invalid VM parameters: {e}")
        raise typer.Exit(1)

    if not uefi and secure_boot is SecureBoot.ON:
        console.print("⚠️  Secure Boot is ignored for legacy VMs")

    try:
        backend = build_backend(settings, mock=mock, switch_name=switch)
        result = Provisioner(backend, settings).provision(spec, name=name)
    except (NameExhaustedError, ResourceCreationError, HypervisorError, ValueError) as e:
        console.print(f"❌ Provisioning failed: {e}")
        raise typer.Exit(1)

    if as_json:
        console.print(JSON(json.dumps(result.to_dict())))
    else:
        print_provision_result(result)


@app.command("reclaim")
def reclaim(
    pattern: Optional[str] = typer.Option(None, "--pattern", "-p", help="VM name prefix or wildcard pattern"),
    storage_root: Optional[str] = typer.Option(
        None, "--storage-root", help="Only disk files under this directory are deleted"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    mock: bool = typer.Option(False, "--mock", help="Run against an in-memory hypervisor"),
) -> None:
    """Delete every test VM matching a pattern, plus its disks under the storage root."""
    settings = load_settings()

    try:
        backend = build_backend(settings, mock=mock)
        report = Reclaimer(backend, settings).reclaim(pattern, storage_root)
    except (HypervisorError, ValueError) as e:
        console.print(f"❌ Reclamation failed: {e}")
        raise typer.Exit(1)

    if as_json:
        console.print(JSON(json.dumps(report.to_dict())))
    else:
        print_reclaim_report(report)


# === CONFIGURATION COMMANDS ===

config_app = typer.Typer(help="Configuration commands")
app.add_typer(config_app, name="config")


@config_app.command("show")
def show_config() -> None:
    """Show the effective configuration."""
    settings = Settings.from_environment()
    console.print(JSON(json.dumps(settings.to_dict())))


@config_app.command("validate")
def validate_config() -> None:
    """Validate configuration from the environment."""
    settings = load_settings()
    console.print("✅ Configuration is valid")

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for key, value in settings.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


if __name__ == "__main__":
    app()

"""
Hypervisor capability interface and its Hyper-V binding.

Every capability of the provisioner and reclaimer is one method on
HypervisorBackend. HyperVClient implements them as PowerShell snippets run
either locally or over SSH on the Hyper-V host, reading structured results
back as JSON.
"""

import base64
import json
import logging
import ntpath
import os
import subprocess
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import paramiko

from pxevm.config import Settings
from pxevm.models import (
    AdapterInfo,
    BootDevice,
    FirmwareClass,
    FirmwareInfo,
    ProcessorInfo,
    ResourceInfo,
    SecureBoot,
    SnapshotInfo,
)

logger = logging.getLogger(__name__)

# Prepended to every script so cmdlet errors terminate with a non-zero exit
PREAMBLE = "$ErrorActionPreference = 'Stop'; $ProgressPreference = 'SilentlyContinue'; "

BOOT_TYPES = {"network": BootDevice.NETWORK, "drive": BootDevice.DISK}


def normalize_path(path: str) -> str:
    """Lexically normalize a hypervisor host path for comparison (case-insensitive)."""
    return ntpath.normcase(ntpath.normpath(path))


class HypervisorError(RuntimeError):
    """A hypervisor management call failed."""

    def __init__(self, message: str, command: Optional[str] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class HypervisorBackend(ABC):
    """Capabilities consumed from the hypervisor management interface."""

    # Inventory

    def resource_exists(self, name: str) -> bool:
        return self.get_resource(name) is not None

    @abstractmethod
    def get_resource(self, name: str) -> Optional[ResourceInfo]:
        """Return the VM named ``name`` or None."""

    @abstractmethod
    def list_resources(self, name_pattern: str) -> List[ResourceInfo]:
        """Return every VM whose name matches a wildcard pattern."""

    @abstractmethod
    def create_resource(
        self, name: str, firmware_class: FirmwareClass, memory_bytes: int, switch_name: Optional[str]
    ) -> None:
        """Create a VM with one network adapter, connected to ``switch_name`` if given."""

    @abstractmethod
    def delete_resource(self, name: str) -> None: ...

    # Settings

    @abstractmethod
    def get_checkpoints_enabled(self, name: str) -> bool: ...

    @abstractmethod
    def set_checkpoint_policy(self, name: str, enabled: bool) -> None: ...

    @abstractmethod
    def get_processor(self, name: str) -> ProcessorInfo: ...

    @abstractmethod
    def set_processor(
        self, name: str, count: Optional[int] = None, expose_virtualization_extensions: Optional[bool] = None
    ) -> None: ...

    # Disks

    @abstractmethod
    def create_disk_image(self, path: str, size_bytes: int) -> None:
        """Create a dynamically expanding disk image."""

    @abstractmethod
    def list_attached_disks(self, name: str) -> List[str]: ...

    @abstractmethod
    def attach_disk(self, name: str, path: str) -> None: ...

    # Network

    @abstractmethod
    def switch_exists(self, switch_name: str) -> bool: ...

    @abstractmethod
    def get_primary_adapter(self, name: str) -> Optional[AdapterInfo]: ...

    @abstractmethod
    def connect_adapter(self, name: str, switch_name: str) -> None: ...

    # Firmware

    @abstractmethod
    def get_firmware(self, name: str) -> FirmwareInfo: ...

    @abstractmethod
    def set_firmware(
        self, name: str, secure_boot: SecureBoot, boot_order: List[BootDevice], disk_path: str
    ) -> None:
        """Set Secure Boot and put the disk and primary adapter in ``boot_order``."""

    # Power

    @abstractmethod
    def start_resource(self, name: str) -> None: ...

    @abstractmethod
    def stop_resource(self, name: str, force: bool = True) -> None: ...

    # Snapshots

    @abstractmethod
    def list_snapshots(self, name: str) -> List[SnapshotInfo]: ...

    @abstractmethod
    def delete_snapshot(self, snapshot: SnapshotInfo) -> None: ...

    # Files on the hypervisor host

    @abstractmethod
    def file_exists(self, path: str) -> bool: ...

    @abstractmethod
    def delete_file(self, path: str) -> None: ...

    @abstractmethod
    def directory_exists(self, path: str) -> bool: ...

    @abstractmethod
    def directory_is_empty(self, path: str) -> bool: ...

    @abstractmethod
    def ensure_directory(self, path: str) -> None: ...

    @abstractmethod
    def delete_directory(self, path: str) -> None: ...


def ps_quote(value: Any) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_bool(value: bool) -> str:
    return "$true" if value else "$false"


def encode_command(script: str) -> str:
    """Encode a script for powershell.exe -EncodedCommand (base64 of UTF-16LE)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


class LocalPowerShellRunner:
    """Runs PowerShell on this machine."""

    def __init__(self, executable: str = "powershell.exe") -> None:
        self.executable = executable

    def run(self, script: str) -> str:
        result = subprocess.run(
            [self.executable, "-NoProfile", "-NonInteractive", "-Command", PREAMBLE + script],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            error = result.stderr.strip() or f"exit status {result.returncode}"
            raise HypervisorError(f"PowerShell command failed: {error}", command=script, stderr=result.stderr)
        return result.stdout.strip()


class SSHPowerShellRunner:
    """Runs PowerShell on a remote Hyper-V host through OpenSSH."""

    def __init__(self, host: str, user: str, key_path: str, executable: str = "powershell.exe") -> None:
        self.host = host
        self.user = user
        self.key_path = os.path.expanduser(key_path)
        self.executable = executable

    def run(self, script: str) -> str:
        command = f"{self.executable} -NoProfile -NonInteractive -EncodedCommand {encode_command(PREAMBLE + script)}"

        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(hostname=self.host, username=self.user, key_filename=self.key_path)

        try:
            stdin, stdout, stderr = ssh.exec_command(command)
            output = stdout.read().decode().strip()
            error = stderr.read().decode().strip()
            exit_status = stdout.channel.recv_exit_status()
        finally:
            ssh.close()

        if exit_status != 0:
            logger.error(f"SSH command error on {self.host}: {error}")
            raise HypervisorError(
                f"Command failed on {self.host}: {error or f'exit status {exit_status}'}",
                command=script,
                stderr=error,
            )

        return output


class HyperVClient(HypervisorBackend):
    """Hyper-V management through the Hyper-V PowerShell module."""

    def __init__(self, runner: Any) -> None:
        self.runner = runner

    @classmethod
    def from_settings(cls, settings: Settings) -> "HyperVClient":
        if settings.transport == "ssh":
            if not settings.ssh_host:
                raise ValueError("ssh transport requires an ssh host")
            runner: Any = SSHPowerShellRunner(
                settings.ssh_host, settings.ssh_user, settings.ssh_key_path, settings.powershell
            )
        else:
            runner = LocalPowerShellRunner(settings.powershell)
        return cls(runner)

    def _run(self, script: str) -> str:
        logger.debug(f"PS> {script}")
        return self.runner.run(script)

    def _run_json(self, script: str) -> Any:
        output = self._run(script)
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise HypervisorError(f"Unparseable output from hypervisor: {output[:200]!r}", command=script) from e

    @staticmethod
    def _resource_from_json(data: Any) -> ResourceInfo:
        return ResourceInfo(name=data["Name"], state=str(data["State"]), generation=int(data["Generation"]))

    # Inventory

    def get_resource(self, name: str) -> Optional[ResourceInfo]:
        data = self._run_json(
            f"$vm = Get-VM -Name {ps_quote(name)} -ErrorAction SilentlyContinue | Select-Object -First 1; "
            "if ($vm) { [pscustomobject]@{ Name = $vm.Name; State = [string]$vm.State; "
            "Generation = $vm.Generation } | ConvertTo-Json -Compress }"
        )
        return self._resource_from_json(data) if data else None

    def list_resources(self, name_pattern: str) -> List[ResourceInfo]:
        data = self._run_json(
            f"$vms = @(Get-VM -Name {ps_quote(name_pattern)} -ErrorAction SilentlyContinue | "
            "ForEach-Object { [pscustomobject]@{ Name = $_.Name; State = [string]$_.State; "
            "Generation = $_.Generation } }); "
            "ConvertTo-Json -InputObject $vms -Compress"
        )
        return [self._resource_from_json(item) for item in data or []]

    def create_resource(
        self, name: str, firmware_class: FirmwareClass, memory_bytes: int, switch_name: Optional[str]
    ) -> None:
        script = (
            f"New-VM -Name {ps_quote(name)} -Generation {firmware_class.generation} "
            f"-MemoryStartupBytes {int(memory_bytes)} -NoVHD"
        )
        if switch_name:
            script += f" -SwitchName {ps_quote(switch_name)}"
        self._run(script + " | Out-Null")

    def delete_resource(self, name: str) -> None:
        self._run(f"Remove-VM -Name {ps_quote(name)} -Force")

    # Settings

    def get_checkpoints_enabled(self, name: str) -> bool:
        return bool(self._run_json(f"(Get-VM -Name {ps_quote(name)}).AutomaticCheckpointsEnabled | ConvertTo-Json"))

    def set_checkpoint_policy(self, name: str, enabled: bool) -> None:
        self._run(f"Set-VM -Name {ps_quote(name)} -AutomaticCheckpointsEnabled {ps_bool(enabled)}")

    def get_processor(self, name: str) -> ProcessorInfo:
        data = self._run_json(
            f"Get-VMProcessor -VMName {ps_quote(name)} | "
            "Select-Object Count, ExposeVirtualizationExtensions | ConvertTo-Json -Compress"
        )
        if not data:
            raise HypervisorError(f"No processor settings returned for {name}")
        return ProcessorInfo(
            count=int(data["Count"]),
            expose_virtualization_extensions=bool(data["ExposeVirtualizationExtensions"]),
        )

    def set_processor(
        self, name: str, count: Optional[int] = None, expose_virtualization_extensions: Optional[bool] = None
    ) -> None:
        script = f"Set-VMProcessor -VMName {ps_quote(name)}"
        if count is not None:
            script += f" -Count {int(count)}"
        if expose_virtualization_extensions is not None:
            script += f" -ExposeVirtualizationExtensions {ps_bool(expose_virtualization_extensions)}"
        self._run(script)

    # Disks

    def create_disk_image(self, path: str, size_bytes: int) -> None:
        self._run(f"New-VHD -Path {ps_quote(path)} -SizeBytes {int(size_bytes)} -Dynamic | Out-Null")

    def list_attached_disks(self, name: str) -> List[str]:
        data = self._run_json(
            f"$paths = @(Get-VMHardDiskDrive -VMName {ps_quote(name)} | "
            "Where-Object { $_.Path } | ForEach-Object { [string]$_.Path }); "
            "ConvertTo-Json -InputObject $paths -Compress"
        )
        return [str(p) for p in data or []]

    def attach_disk(self, name: str, path: str) -> None:
        self._run(f"Add-VMHardDiskDrive -VMName {ps_quote(name)} -Path {ps_quote(path)}")

    # Network

    def switch_exists(self, switch_name: str) -> bool:
        return bool(
            self._run_json(
                f"[bool](Get-VMSwitch -Name {ps_quote(switch_name)} -ErrorAction SilentlyContinue) | ConvertTo-Json"
            )
        )

    def get_primary_adapter(self, name: str) -> Optional[AdapterInfo]:
        data = self._run_json(
            f"$nic = Get-VMNetworkAdapter -VMName {ps_quote(name)} | Select-Object -First 1; "
            "if ($nic) { [pscustomobject]@{ Name = $nic.Name; SwitchName = $nic.SwitchName } "
            "| ConvertTo-Json -Compress }"
        )
        if not data:
            return None
        return AdapterInfo(name=data["Name"], switch_name=data.get("SwitchName") or None)

    def connect_adapter(self, name: str, switch_name: str) -> None:
        self._run(
            f"Get-VMNetworkAdapter -VMName {ps_quote(name)} | Select-Object -First 1 | "
            f"Connect-VMNetworkAdapter -SwitchName {ps_quote(switch_name)}"
        )

    # Firmware

    def get_firmware(self, name: str) -> FirmwareInfo:
        data = self._run_json(
            f"$fw = Get-VMFirmware -VMName {ps_quote(name)}; "
            "[pscustomobject]@{ SecureBoot = [string]$fw.SecureBoot; "
            "BootOrder = @($fw.BootOrder | ForEach-Object { [string]$_.BootType }) } | ConvertTo-Json -Compress"
        )
        if not data:
            raise HypervisorError(f"No firmware settings returned for {name}")
        boot_types = data.get("BootOrder") or []
        if isinstance(boot_types, str):
            boot_types = [boot_types]
        order = [BOOT_TYPES[t.lower()] for t in boot_types if t.lower() in BOOT_TYPES]
        return FirmwareInfo(secure_boot=SecureBoot.parse(data["SecureBoot"]), boot_order=order)

    def set_firmware(
        self, name: str, secure_boot: SecureBoot, boot_order: List[BootDevice], disk_path: str
    ) -> None:
        devices = {BootDevice.DISK: "$disk", BootDevice.NETWORK: "$nic"}
        # Same lexical normalization as the attachment check; -eq on strings ignores case
        self._run(
            f"$want = [IO.Path]::GetFullPath({ps_quote(disk_path)}); "
            f"$disk = Get-VMHardDiskDrive -VMName {ps_quote(name)} | "
            "Where-Object { $_.Path -and [IO.Path]::GetFullPath($_.Path) -eq $want } | Select-Object -First 1; "
            f"$nic = Get-VMNetworkAdapter -VMName {ps_quote(name)} | Select-Object -First 1; "
            f"if (-not $disk -or -not $nic) {{ throw {ps_quote(f'Boot devices not found on {name}')} }}; "
            f"Set-VMFirmware -VMName {ps_quote(name)} -EnableSecureBoot {secure_boot.value} "
            f"-BootOrder {', '.join(devices[d] for d in boot_order)}"
        )

    # Power

    def start_resource(self, name: str) -> None:
        self._run(f"Start-VM -Name {ps_quote(name)}")

    def stop_resource(self, name: str, force: bool = True) -> None:
        flags = "-TurnOff -Force" if force else "-Force"
        self._run(f"Stop-VM -Name {ps_quote(name)} {flags}")

    # Snapshots

    def list_snapshots(self, name: str) -> List[SnapshotInfo]:
        data = self._run_json(
            f"$snaps = @(Get-VMSnapshot -VMName {ps_quote(name)} | ForEach-Object "
            "{ [pscustomobject]@{ VMName = $_.VMName; Name = $_.Name; Id = [string]$_.Id } }); "
            "ConvertTo-Json -InputObject $snaps -Compress"
        )
        return [SnapshotInfo(vm_name=s["VMName"], name=s["Name"], id=s["Id"]) for s in data or []]

    def delete_snapshot(self, snapshot: SnapshotInfo) -> None:
        self._run(f"Get-VMSnapshot -Id {ps_quote(snapshot.id)} | Remove-VMSnapshot")

    # Files on the hypervisor host

    def file_exists(self, path: str) -> bool:
        return bool(self._run_json(f"Test-Path -LiteralPath {ps_quote(path)} -PathType Leaf | ConvertTo-Json"))

    def delete_file(self, path: str) -> None:
        self._run(f"Remove-Item -LiteralPath {ps_quote(path)} -Force")

    def directory_exists(self, path: str) -> bool:
        return bool(self._run_json(f"Test-Path -LiteralPath {ps_quote(path)} -PathType Container | ConvertTo-Json"))

    def directory_is_empty(self, path: str) -> bool:
        return bool(
            self._run_json(f"(@(Get-ChildItem -LiteralPath {ps_quote(path)} -Force).Count -eq 0) | ConvertTo-Json")
        )

    def ensure_directory(self, path: str) -> None:
        self._run(f"New-Item -ItemType Directory -Force -Path {ps_quote(path)} | Out-Null")

    def delete_directory(self, path: str) -> None:
        # No -Recurse: a non-empty directory makes this fail
        self._run(f"Remove-Item -LiteralPath {ps_quote(path)} -Force")

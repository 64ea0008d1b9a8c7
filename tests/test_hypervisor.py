"""Tests for hypervisor module (Hyper-V PowerShell binding)."""

import base64
import os
from unittest import mock

import pytest

from pxevm.config import Settings
from pxevm.hypervisor import (
    HypervisorError,
    HyperVClient,
    LocalPowerShellRunner,
    SSHPowerShellRunner,
    encode_command,
    normalize_path,
    ps_quote,
)
from pxevm.models import BootDevice, FirmwareClass, SecureBoot, SnapshotInfo


@pytest.fixture
def runner():
    return mock.MagicMock()


@pytest.fixture
def client(runner):
    return HyperVClient(runner)


def script(runner) -> str:
    return runner.run.call_args.args[0]


def test_ps_quote_doubles_single_quotes():
    assert ps_quote("PXE-CLIENT-A1B") == "'PXE-CLIENT-A1B'"
    assert ps_quote("O'Brien's switch") == "'O''Brien''s switch'"


def test_encode_command_is_utf16le_base64():
    encoded = encode_command("Get-VM")

    assert base64.b64decode(encoded).decode("utf-16-le") == "Get-VM"


def test_normalize_path():
    assert normalize_path("C:/PXE/VMs/../VMs/Disk.VHDX") == "c:\\pxe\\vms\\disk.vhdx"


class TestHyperVClient:
    def test_get_resource_parses_json(self, client, runner):
        runner.run.return_value = '{"Name":"PXE-CLIENT-UEFI-A1B","State":"Running","Generation":2}'

        resource = client.get_resource("PXE-CLIENT-UEFI-A1B")

        assert resource.name == "PXE-CLIENT-UEFI-A1B"
        assert resource.is_running is True
        assert resource.firmware_class is FirmwareClass.UEFI
        assert "Get-VM -Name 'PXE-CLIENT-UEFI-A1B'" in script(runner)

    def test_get_resource_missing(self, client, runner):
        runner.run.return_value = ""

        assert client.get_resource("PXE-CLIENT-ZZZ") is None
        assert client.resource_exists("PXE-CLIENT-ZZZ") is False

    def test_list_resources(self, client, runner):
        runner.run.return_value = (
            '[{"Name":"PXE-CLIENT-AAA","State":"Off","Generation":1},'
            '{"Name":"PXE-CLIENT-UEFI-BBB","State":"Running","Generation":2}]'
        )

        resources = client.list_resources("PXE-CLIENT-*")

        assert [r.name for r in resources] == ["PXE-CLIENT-AAA", "PXE-CLIENT-UEFI-BBB"]
        assert "Get-VM -Name 'PXE-CLIENT-*'" in script(runner)

    def test_list_resources_empty(self, client, runner):
        runner.run.return_value = "[]"

        assert client.list_resources("PXE-CLIENT-*") == []

    def test_create_resource_with_switch(self, client, runner):
        client.create_resource("PXE-CLIENT-UEFI-A1B", FirmwareClass.UEFI, 2 * 1024**3, "PXENetwork")

        cmd = script(runner)
        assert "New-VM -Name 'PXE-CLIENT-UEFI-A1B' -Generation 2 -MemoryStartupBytes 2147483648 -NoVHD" in cmd
        assert "-SwitchName 'PXENetwork'" in cmd

    def test_create_resource_without_switch(self, client, runner):
        client.create_resource("PXE-CLIENT-A1B", FirmwareClass.LEGACY, 1024**3, None)

        cmd = script(runner)
        assert "-Generation 1" in cmd
        assert "-SwitchName" not in cmd

    def test_set_processor_only_passes_given_settings(self, client, runner):
        client.set_processor("vm", count=4)
        assert script(runner) == "Set-VMProcessor -VMName 'vm' -Count 4"

        client.set_processor("vm", expose_virtualization_extensions=True)
        assert script(runner) == "Set-VMProcessor -VMName 'vm' -ExposeVirtualizationExtensions $true"

    def test_get_processor(self, client, runner):
        runner.run.return_value = '{"Count":2,"ExposeVirtualizationExtensions":false}'

        processor = client.get_processor("vm")

        assert processor.count == 2
        assert processor.expose_virtualization_extensions is False

    def test_checkpoints(self, client, runner):
        runner.run.return_value = "true"
        assert client.get_checkpoints_enabled("vm") is True

        client.set_checkpoint_policy("vm", enabled=False)
        assert script(runner) == "Set-VM -Name 'vm' -AutomaticCheckpointsEnabled $false"

    def test_create_disk_image_is_dynamic(self, client, runner):
        client.create_disk_image("C:\\PXE\\VMs\\vm.vhdx", 20 * 1024**3)

        assert "New-VHD -Path 'C:\\PXE\\VMs\\vm.vhdx' -SizeBytes 21474836480 -Dynamic" in script(runner)

    def test_list_attached_disks(self, client, runner):
        runner.run.return_value = '["C:\\\\PXE\\\\VMs\\\\vm.vhdx"]'

        assert client.list_attached_disks("vm") == ["C:\\PXE\\VMs\\vm.vhdx"]

    def test_primary_adapter(self, client, runner):
        runner.run.return_value = '{"Name":"Network Adapter","SwitchName":null}'

        adapter = client.get_primary_adapter("vm")

        assert adapter.name == "Network Adapter"
        assert adapter.switch_name is None

    def test_switch_exists(self, client, runner):
        runner.run.return_value = "false"

        assert client.switch_exists("Missing") is False
        assert "Get-VMSwitch -Name 'Missing'" in script(runner)

    def test_get_firmware_maps_boot_types(self, client, runner):
        runner.run.return_value = '{"SecureBoot":"On","BootOrder":["Network","Drive","File"]}'

        firmware = client.get_firmware("vm")

        assert firmware.secure_boot is SecureBoot.ON
        assert firmware.boot_order == [BootDevice.NETWORK, BootDevice.DISK]

    def test_get_firmware_single_boot_entry(self, client, runner):
        runner.run.return_value = '{"SecureBoot":"Off","BootOrder":"Network"}'

        assert client.get_firmware("vm").boot_order == [BootDevice.NETWORK]

    def test_set_firmware_boot_order(self, client, runner):
        client.set_firmware("vm", SecureBoot.OFF, [BootDevice.NETWORK, BootDevice.DISK], "C:\\PXE\\VMs\\vm.vhdx")

        cmd = script(runner)
        assert "Set-VMFirmware -VMName 'vm' -EnableSecureBoot Off -BootOrder $nic, $disk" in cmd

    def test_set_firmware_matches_disk_by_normalized_path(self, client, runner):
        """The boot disk is found even when Hyper-V reports it with other separators or case."""
        client.set_firmware("vm", SecureBoot.OFF, [BootDevice.DISK, BootDevice.NETWORK], "C:/PXE/VMs/sub/../vm.vhdx")

        cmd = script(runner)
        assert "$want = [IO.Path]::GetFullPath('C:/PXE/VMs/sub/../vm.vhdx')" in cmd
        assert "[IO.Path]::GetFullPath($_.Path) -eq $want" in cmd
        assert "$_.Path -eq 'C:/PXE/VMs/sub/../vm.vhdx'" not in cmd
        assert "-BootOrder $disk, $nic" in cmd

    def test_stop_resource_force_turns_off(self, client, runner):
        client.stop_resource("vm", force=True)

        assert script(runner) == "Stop-VM -Name 'vm' -TurnOff -Force"

    def test_snapshots(self, client, runner):
        runner.run.return_value = '[{"VMName":"vm","Name":"before","Id":"0f6b"}]'

        snapshots = client.list_snapshots("vm")
        client.delete_snapshot(snapshots[0])

        assert snapshots == [SnapshotInfo(vm_name="vm", name="before", id="0f6b")]
        assert script(runner) == "Get-VMSnapshot -Id '0f6b' | Remove-VMSnapshot"

    def test_file_operations(self, client, runner):
        runner.run.return_value = "true"

        assert client.file_exists("C:\\PXE\\VMs\\vm.vhdx") is True
        assert "-PathType Leaf" in script(runner)
        assert client.directory_is_empty("C:\\PXE\\VMs") is True

        client.delete_directory("C:\\PXE\\VMs")
        assert "-Recurse" not in script(runner)

    def test_unparseable_output_raises(self, client, runner):
        runner.run.return_value = "WARNING: something odd"

        with pytest.raises(HypervisorError, match="Unparseable"):
            client.get_processor("vm")

    def test_from_settings_local(self):
        client = HyperVClient.from_settings(Settings(storage_root="C:\\PXE\\VMs", powershell="pwsh"))

        assert isinstance(client.runner, LocalPowerShellRunner)
        assert client.runner.executable == "pwsh"

    def test_from_settings_ssh(self):
        settings = Settings(storage_root="C:\\PXE\\VMs", transport="ssh", ssh_host="hyperv01", ssh_user="admin")

        client = HyperVClient.from_settings(settings)

        assert isinstance(client.runner, SSHPowerShellRunner)
        assert client.runner.host == "hyperv01"


class TestLocalPowerShellRunner:
    @mock.patch("pxevm.hypervisor.subprocess.run")
    def test_run_returns_stdout(self, mock_run):
        mock_run.return_value = mock.MagicMock(returncode=0, stdout="true\n", stderr="")

        output = LocalPowerShellRunner().run("Test-Path 'C:\\'")

        assert output == "true"
        args = mock_run.call_args.args[0]
        assert args[:4] == ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command"]
        assert args[4].endswith("Test-Path 'C:\\'")
        assert "$ErrorActionPreference = 'Stop'" in args[4]

    @mock.patch("pxevm.hypervisor.subprocess.run")
    def test_run_raises_on_failure(self, mock_run):
        mock_run.return_value = mock.MagicMock(returncode=1, stdout="", stderr="New-VM : access denied")

        with pytest.raises(HypervisorError, match="access denied") as exc_info:
            LocalPowerShellRunner().run("New-VM -Name 'x'")

        assert exc_info.value.command == "New-VM -Name 'x'"


class TestSSHPowerShellRunner:
    def test_run_over_ssh(self, mock_ssh_client):
        runner = SSHPowerShellRunner("hyperv01", "admin", "~/.ssh/id_rsa")

        output = runner.run("Get-VM")

        assert output == "command output"
        mock_ssh_client.connect.assert_called_once_with(
            hostname="hyperv01",
            username="admin",
            key_filename=os.path.expanduser("~/.ssh/id_rsa"),
        )
        command = mock_ssh_client.exec_command.call_args.args[0]
        assert command.startswith("powershell.exe -NoProfile -NonInteractive -EncodedCommand ")
        decoded = base64.b64decode(command.split()[-1]).decode("utf-16-le")
        assert decoded.endswith("Get-VM")
        mock_ssh_client.close.assert_called_once()

    def test_run_raises_on_exit_status(self, mock_ssh_client):
        _, stdout, stderr = mock_ssh_client.exec_command.return_value
        stdout.channel.recv_exit_status.return_value = 1
        stderr.read.return_value.decode.return_value = "Remove-VM : not found"

        with pytest.raises(HypervisorError, match="not found"):
            SSHPowerShellRunner("hyperv01", "admin", "~/.ssh/id_rsa").run("Remove-VM -Name 'x'")

        mock_ssh_client.close.assert_called_once()

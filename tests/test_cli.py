"""Tests for the pxevm command-line interface."""

from unittest import mock

import pytest
from typer.testing import CliRunner

from pxevm.cli import app
from pxevm.naming import NameExhaustedError

runner = CliRunner()


@pytest.fixture(autouse=True)
def storage_root(monkeypatch):
    monkeypatch.setenv("PXEVM_STORAGE_ROOT", "C:\\PXE\\VMs")


def test_provision_mock_json():
    result = runner.invoke(app, ["provision", "--mock", "--json"])

    assert result.exit_code == 0, result.output
    assert "PXE-CLIENT-UEFI-" in result.output
    assert '"firmwareClass": "UEFI"' in result.output
    assert '"generation": 2' in result.output


def test_provision_mock_legacy_table():
    result = runner.invoke(app, ["provision", "--mock", "--legacy", "--cpu", "1"])

    assert result.exit_code == 0, result.output
    assert "Firmware:  LEGACY (generation 1)" in result.output


def test_provision_legacy_secure_boot_warning():
    result = runner.invoke(app, ["provision", "--mock", "--legacy", "--secure-boot", "on"])

    assert result.exit_code == 0, result.output
    assert "Secure Boot is ignored" in result.output


def test_provision_invalid_configuration(monkeypatch):
    monkeypatch.setenv("PXEVM_TRANSPORT", "telnet")

    result = runner.invoke(app, ["provision", "--mock"])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_provision_name_exhaustion_exits_nonzero():
    with mock.patch("pxevm.cli.Provisioner.provision", side_effect=NameExhaustedError("no free name")):
        result = runner.invoke(app, ["provision", "--mock"])

    assert result.exit_code == 1
    assert "Provisioning failed: no free name" in result.output


def test_reclaim_mock_nothing_matches():
    result = runner.invoke(app, ["reclaim", "--mock"])

    assert result.exit_code == 0, result.output
    assert "No VMs matched PXE-CLIENT-*" in result.output


def test_reclaim_mock_json():
    result = runner.invoke(app, ["reclaim", "--mock", "--json", "--pattern", "LAB-"])

    assert result.exit_code == 0, result.output
    assert '"pattern": "LAB-*"' in result.output


def test_config_validate():
    result = runner.invoke(app, ["config", "validate"])

    assert result.exit_code == 0, result.output
    assert "Configuration is valid" in result.output


def test_config_validate_rejects_ssh_without_host(monkeypatch):
    monkeypatch.setenv("PXEVM_TRANSPORT", "ssh")

    result = runner.invoke(app, ["config", "validate"])

    assert result.exit_code == 1
    assert "PXEVM_SSH_HOST" in result.output


def test_config_show(mock_env):
    result = runner.invoke(app, ["config", "show"])

    assert result.exit_code == 0, result.output
    assert "LAB-PXE" in result.output
    assert "hyperv01.lab" in result.output

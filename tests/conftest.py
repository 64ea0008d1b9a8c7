"""Shared test fixtures and configuration for pxevm tests."""

from unittest import mock

import pytest

from pxevm.config import Settings
from pxevm.mock_hypervisor import MockHypervisor

STORAGE_ROOT = "C:\\PXE\\VMs"

PXEVM_VARS = [
    "PXEVM_BASE_PREFIX",
    "PXEVM_NAME_ATTEMPTS",
    "PXEVM_SUFFIX_LENGTH",
    "PXEVM_SUFFIX_ALPHABET",
    "PXEVM_RANDOM_SEED",
    "PXEVM_STORAGE_ROOT",
    "PXEVM_DISK_EXTENSION",
    "PXEVM_BOOT_ORDER",
    "PXEVM_TRANSPORT",
    "PXEVM_POWERSHELL",
    "PXEVM_SSH_HOST",
    "PXEVM_SSH_USER",
    "PXEVM_SSH_KEY_PATH",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a developer's .env and PXEVM_* variables out of the tests."""
    for var in PXEVM_VARS:
        monkeypatch.delenv(var, raising=False)
    with mock.patch("pxevm.config.load_dotenv"):
        yield


@pytest.fixture
def settings() -> Settings:
    """Settings with a fixed storage root and a seeded name generator."""
    return Settings(storage_root=STORAGE_ROOT, random_seed=42)


@pytest.fixture
def hypervisor() -> MockHypervisor:
    """In-memory hypervisor with the default PXE switch."""
    hv = MockHypervisor()
    hv.add_switch("PXENetwork")
    return hv


@pytest.fixture
def mock_env(monkeypatch):
    """Set up a complete PXEVM_* environment."""
    env_vars = {
        "PXEVM_BASE_PREFIX": "LAB-PXE",
        "PXEVM_NAME_ATTEMPTS": "5",
        "PXEVM_SUFFIX_LENGTH": "4",
        "PXEVM_RANDOM_SEED": "7",
        "PXEVM_STORAGE_ROOT": "D:\\Lab\\Disks",
        "PXEVM_DISK_EXTENSION": ".vhd",
        "PXEVM_BOOT_ORDER": "disk-first",
        "PXEVM_TRANSPORT": "ssh",
        "PXEVM_SSH_HOST": "hyperv01.lab",
        "PXEVM_SSH_USER": "labadmin",
        "PXEVM_SSH_KEY_PATH": "~/.ssh/lab_ed25519",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def mock_ssh_client():
    """Mock SSH client for testing remote PowerShell execution."""
    with mock.patch("pxevm.hypervisor.paramiko.SSHClient") as mock_ssh:
        client = mock.MagicMock()
        mock_ssh.return_value = client

        # Mock successful command execution
        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value.decode.return_value = "command output"
        stderr.read.return_value.decode.return_value = ""
        stdout.channel.recv_exit_status.return_value = 0

        client.exec_command.return_value = (None, stdout, stderr)

        yield client

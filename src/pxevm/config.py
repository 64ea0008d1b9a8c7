"""
Configuration for PXE test VM provisioning.

Settings are an explicit struct handed to the allocator, reconciler and
reclaimer; nothing here is process-wide state.
"""

import ntpath
import os
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from pxevm.models import BootOrder

TRANSPORTS = ("local", "ssh")

SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def _default_storage_root() -> str:
    return str(Path.cwd() / "VMs")


def is_drive_qualified(path: str) -> bool:
    """True for absolute Windows paths such as D:\\VMs or \\\\nas\\share\\VMs."""
    drive, _ = ntpath.splitdrive(path)
    return bool(drive) and ntpath.isabs(path)


def resolve_storage_root(path: str, transport: str = "local") -> str:
    """Anchor a relative storage root so it compares equal to paths Hyper-V reports.

    Only the local transport can be resolved here; over ssh the remote working
    directory is unknown, so relative roots are left for validate() to reject.
    """
    if transport != "local" or is_drive_qualified(path) or os.path.isabs(path):
        return path
    return os.path.abspath(path)


@dataclass
class Settings:
    """Provisioning and reclamation settings."""

    # Naming
    base_prefix: str = "PXE-CLIENT"
    name_attempts: int = 10
    suffix_length: int = 3
    suffix_alphabet: str = SUFFIX_ALPHABET
    random_seed: Optional[int] = None

    # Storage on the hypervisor host
    storage_root: str = ""
    disk_extension: str = "vhdx"

    # Firmware
    boot_order: BootOrder = BootOrder.NETWORK_FIRST

    # How PowerShell is reached
    transport: str = "local"
    powershell: str = "powershell.exe"
    ssh_host: Optional[str] = None
    ssh_user: str = "Administrator"
    ssh_key_path: str = "~/.ssh/id_rsa"

    def __post_init__(self) -> None:
        if not self.storage_root:
            self.storage_root = _default_storage_root()
        self.storage_root = resolve_storage_root(self.storage_root, self.transport)

    @classmethod
    def from_environment(cls) -> "Settings":
        """Load settings from PXEVM_* environment variables (and .env)."""
        load_dotenv()

        seed = os.getenv("PXEVM_RANDOM_SEED")

        return cls(
            base_prefix=os.getenv("PXEVM_BASE_PREFIX", "PXE-CLIENT"),
            name_attempts=int(os.getenv("PXEVM_NAME_ATTEMPTS", "10")),
            suffix_length=int(os.getenv("PXEVM_SUFFIX_LENGTH", "3")),
            suffix_alphabet=os.getenv("PXEVM_SUFFIX_ALPHABET", SUFFIX_ALPHABET),
            random_seed=int(seed) if seed else None,
            storage_root=os.getenv("PXEVM_STORAGE_ROOT", ""),
            disk_extension=os.getenv("PXEVM_DISK_EXTENSION", "vhdx").lstrip("."),
            boot_order=BootOrder.parse(os.getenv("PXEVM_BOOT_ORDER", "network-first")),
            transport=os.getenv("PXEVM_TRANSPORT", "local").lower(),
            powershell=os.getenv("PXEVM_POWERSHELL", "powershell.exe"),
            ssh_host=os.getenv("PXEVM_SSH_HOST") or None,
            ssh_user=os.getenv("PXEVM_SSH_USER", "Administrator"),
            ssh_key_path=os.getenv("PXEVM_SSH_KEY_PATH", "~/.ssh/id_rsa"),
        )

    def validate(self) -> None:
        """Validate configuration settings."""
        if not self.base_prefix:
            raise ValueError("Base prefix must not be empty")

        if self.name_attempts < 1:
            raise ValueError(f"Invalid name attempts {self.name_attempts}, must be >= 1")

        if self.suffix_length < 1:
            raise ValueError(f"Invalid suffix length {self.suffix_length}, must be >= 1")

        if not self.suffix_alphabet:
            raise ValueError("Suffix alphabet must not be empty")

        if not self.disk_extension:
            raise ValueError("Disk extension must not be empty")

        if self.transport not in TRANSPORTS:
            raise ValueError(f"Invalid transport {self.transport!r}, must be one of {', '.join(TRANSPORTS)}")

        if self.transport == "ssh" and not self.ssh_host:
            raise ValueError("PXEVM_SSH_HOST must be set when using the ssh transport")

        if self.transport == "ssh" and not is_drive_qualified(self.storage_root):
            raise ValueError(
                "PXEVM_STORAGE_ROOT must be a drive-qualified host path such as D:\\VMs "
                f"when using the ssh transport, got {self.storage_root!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display."""
        return {
            "base_prefix": self.base_prefix,
            "name_attempts": self.name_attempts,
            "suffix_length": self.suffix_length,
            "suffix_alphabet": self.suffix_alphabet,
            "random_seed": self.random_seed,
            "storage_root": self.storage_root,
            "disk_extension": self.disk_extension,
            "boot_order": self.boot_order.value,
            "transport": self.transport,
            "powershell": self.powershell,
            "ssh_host": self.ssh_host,
            "ssh_user": self.ssh_user,
        }

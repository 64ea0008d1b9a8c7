"""Data models for PXE test VM provisioning and reclamation."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PureWindowsPath
from typing import Any, Dict, List, Optional

GIB = 1024**3


class FirmwareClass(Enum):
    """Boot firmware emulation, fixed when the VM is created."""

    LEGACY = 1
    UEFI = 2

    @classmethod
    def for_uefi(cls, uefi_mode: bool) -> "FirmwareClass":
        return cls.UEFI if uefi_mode else cls.LEGACY

    @classmethod
    def from_generation(cls, generation: int) -> "FirmwareClass":
        return cls(int(generation))

    @property
    def generation(self) -> int:
        return self.value


class SecureBoot(Enum):
    """Secure Boot template switch."""

    ON = "On"
    OFF = "Off"

    @classmethod
    def parse(cls, value: str) -> "SecureBoot":
        for member in cls:
            if member.value.lower() == value.strip().lower():
                return member
        raise ValueError(f"Invalid secure boot value {value!r}, must be On or Off")


class BootDevice(Enum):
    """Kind of device in a firmware boot order."""

    NETWORK = "network"
    DISK = "disk"


class BootOrder(Enum):
    """Which device the firmware tries first."""

    NETWORK_FIRST = "network-first"
    DISK_FIRST = "disk-first"

    @property
    def devices(self) -> List[BootDevice]:
        if self is BootOrder.NETWORK_FIRST:
            return [BootDevice.NETWORK, BootDevice.DISK]
        return [BootDevice.DISK, BootDevice.NETWORK]

    @classmethod
    def parse(cls, value: str) -> "BootOrder":
        normalized = value.strip().lower().replace("_", "-")
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Invalid boot order {value!r}, must be network-first or disk-first")


@dataclass(frozen=True)
class VmSpec:
    """Desired configuration of one test VM; immutable for a run."""

    uefi_mode: bool = True
    cpu_count: int = 2
    memory_bytes: int = 2 * GIB
    disk_bytes: int = 20 * GIB
    switch_name: str = "PXENetwork"
    secure_boot: SecureBoot = SecureBoot.OFF
    auto_start: bool = False
    nested_virtualization: bool = True

    def __post_init__(self) -> None:
        if self.cpu_count < 1:
            raise ValueError(f"Invalid CPU count {self.cpu_count}, must be >= 1")
        if self.memory_bytes <= 0:
            raise ValueError(f"Invalid memory size {self.memory_bytes}, must be > 0")
        if self.disk_bytes <= 0:
            raise ValueError(f"Invalid disk size {self.disk_bytes}, must be > 0")
        if not self.switch_name:
            raise ValueError("Switch name must not be empty")
        # Secure Boot only exists on UEFI firmware
        if not self.uefi_mode and self.secure_boot is not SecureBoot.OFF:
            object.__setattr__(self, "secure_boot", SecureBoot.OFF)

    @classmethod
    def from_gigabytes(
        cls,
        uefi_mode: bool = True,
        cpu_count: int = 2,
        memory_gb: int = 2,
        disk_size_gb: int = 20,
        switch_name: str = "PXENetwork",
        secure_boot: SecureBoot = SecureBoot.OFF,
        auto_start: bool = False,
        nested_virtualization: bool = True,
    ) -> "VmSpec":
        """Build a spec from the GB-denominated command-line parameters."""
        return cls(
            uefi_mode=uefi_mode,
            cpu_count=cpu_count,
            memory_bytes=memory_gb * GIB,
            disk_bytes=disk_size_gb * GIB,
            switch_name=switch_name,
            secure_boot=secure_boot,
            auto_start=auto_start,
            nested_virtualization=nested_virtualization,
        )

    @property
    def firmware_class(self) -> FirmwareClass:
        return FirmwareClass.for_uefi(self.uefi_mode)

    @property
    def wants_nested_virtualization(self) -> bool:
        return self.nested_virtualization and self.uefi_mode and self.cpu_count >= 2


@dataclass(frozen=True)
class VmIdentity:
    """Name and disk location of a provisioned VM."""

    name: str
    disk_path: str

    @classmethod
    def build(cls, name: str, storage_root: str, disk_extension: str) -> "VmIdentity":
        disk_path = PureWindowsPath(storage_root) / f"{name}.{disk_extension.lstrip('.')}"
        return cls(name=name, disk_path=str(disk_path))


@dataclass
class ResourceInfo:
    """A VM as reported by the hypervisor inventory."""

    name: str
    state: str
    generation: int

    @property
    def is_running(self) -> bool:
        return self.state.lower() == "running"

    @property
    def firmware_class(self) -> FirmwareClass:
        return FirmwareClass.from_generation(self.generation)


@dataclass
class ProcessorInfo:
    count: int
    expose_virtualization_extensions: bool


@dataclass
class AdapterInfo:
    name: str
    switch_name: Optional[str]


@dataclass
class FirmwareInfo:
    secure_boot: SecureBoot
    boot_order: List[BootDevice] = field(default_factory=list)


@dataclass
class SnapshotInfo:
    vm_name: str
    name: str
    id: str


class StepOutcome(Enum):
    """Result of one reconciliation step."""

    APPLIED = "applied"
    SATISFIED = "satisfied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepResult:
    step: str
    outcome: StepOutcome
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"step": self.step, "outcome": self.outcome.value, "detail": self.detail}


@dataclass
class ProvisionResult:
    """Identity and per-step report of a provisioning run."""

    identity: VmIdentity
    uefi_mode: bool
    firmware_class: FirmwareClass
    steps: List[StepResult] = field(default_factory=list)

    @property
    def failed_steps(self) -> List[StepResult]:
        return [s for s in self.steps if s.outcome is StepOutcome.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.identity.name,
            "diskPath": self.identity.disk_path,
            "uefiMode": self.uefi_mode,
            "firmwareClass": self.firmware_class.name,
            "generation": self.firmware_class.generation,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class ResourceReport:
    """What the sweep did to one VM."""

    name: str
    stopped: bool = False
    snapshots_removed: int = 0
    deleted: bool = False
    disks_deleted: List[str] = field(default_factory=list)
    disks_protected: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stopped": self.stopped,
            "snapshotsRemoved": self.snapshots_removed,
            "deleted": self.deleted,
            "disksDeleted": list(self.disks_deleted),
            "disksProtected": list(self.disks_protected),
            "errors": list(self.errors),
        }


@dataclass
class ReclaimReport:
    """Result of one reclamation sweep."""

    pattern: str
    storage_root: str
    resources: List[ResourceReport] = field(default_factory=list)
    storage_root_removed: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors) or any(r.errors for r in self.resources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern,
            "storageRoot": self.storage_root,
            "resources": [r.to_dict() for r in self.resources],
            "storageRootRemoved": self.storage_root_removed,
            "errors": list(self.errors),
        }

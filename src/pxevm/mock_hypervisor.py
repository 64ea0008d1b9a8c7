"""
In-memory Hyper-V stand-in for development and testing.
Implements the full capability interface without a hypervisor host.
"""

import fnmatch
import logging
import ntpath
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from pxevm.hypervisor import HypervisorBackend, HypervisorError, normalize_path
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

MUTATING_OPERATIONS = frozenset(
    {
        "create_resource",
        "delete_resource",
        "set_checkpoint_policy",
        "set_processor",
        "create_disk_image",
        "attach_disk",
        "connect_adapter",
        "set_firmware",
        "start_resource",
        "stop_resource",
        "delete_snapshot",
        "delete_file",
        "ensure_directory",
        "delete_directory",
    }
)


@dataclass
class MockVM:
    """State of one mock VM."""

    name: str
    generation: int
    memory_bytes: int
    state: str = "Off"
    checkpoints_enabled: bool = True
    cpu_count: int = 1
    expose_virtualization_extensions: bool = False
    disks: List[str] = field(default_factory=list)
    adapter_name: Optional[str] = "Network Adapter"
    adapter_switch: Optional[str] = None
    secure_boot: SecureBoot = SecureBoot.OFF
    boot_order: List[BootDevice] = field(default_factory=list)
    snapshots: List[SnapshotInfo] = field(default_factory=list)

    def info(self) -> ResourceInfo:
        return ResourceInfo(name=self.name, state=self.state, generation=self.generation)


class MockHypervisor(HypervisorBackend):
    """Mock implementation of the hypervisor capability set."""

    def __init__(self) -> None:
        self.vms: Dict[str, MockVM] = {}
        self.switches: Set[str] = set()
        self.files: Dict[str, int] = {}
        self.directories: Set[str] = set()
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[Tuple[str, Optional[str]], Exception] = {}

    # Test helpers

    def add_switch(self, switch_name: str) -> None:
        self.switches.add(switch_name.lower())

    def add_vm(
        self,
        name: str,
        generation: int = 2,
        memory_bytes: int = 2 * 1024**3,
        state: str = "Off",
        disks: Optional[List[str]] = None,
        adapter_switch: Optional[str] = None,
    ) -> MockVM:
        vm = MockVM(
            name=name,
            generation=generation,
            memory_bytes=memory_bytes,
            state=state,
            disks=list(disks or []),
            adapter_switch=adapter_switch,
            secure_boot=SecureBoot.ON if generation == 2 else SecureBoot.OFF,
            boot_order=[BootDevice.NETWORK] if generation == 2 else [],
        )
        self.vms[name.lower()] = vm
        return vm

    def add_file(self, path: str, size_bytes: int = 0) -> None:
        key = normalize_path(path)
        self.files[key] = size_bytes
        self.directories.add(ntpath.dirname(key))

    def add_snapshot(self, vm_name: str, snapshot_name: str) -> SnapshotInfo:
        vm = self._vm(vm_name)
        snapshot = SnapshotInfo(vm_name=vm.name, name=snapshot_name, id=str(uuid.uuid4()))
        vm.snapshots.append(snapshot)
        return snapshot

    def fail(self, operation: str, error: Optional[Exception] = None, target: Optional[str] = None) -> None:
        """Make ``operation`` raise, optionally only for one VM name or path."""
        key = target.lower() if target else None
        self.failures[(operation, key)] = error or HypervisorError(f"Injected failure in {operation}")

    def mutating_calls(self) -> List[str]:
        return [op for op, _ in self.calls if op in MUTATING_OPERATIONS]

    def reset_calls(self) -> None:
        self.calls.clear()

    def _record(self, operation: str, target: Optional[str] = None, **kwargs: Any) -> None:
        self.calls.append((operation, dict(kwargs, target=target)))
        error = self.failures.get((operation, target.lower() if target else None)) or self.failures.get(
            (operation, None)
        )
        if error is not None:
            raise error

    def _vm(self, name: str) -> MockVM:
        vm = self.vms.get(name.lower())
        if vm is None:
            raise HypervisorError(f"Hyper-V was unable to find a virtual machine with name \"{name}\"")
        return vm

    # Inventory

    def get_resource(self, name: str) -> Optional[ResourceInfo]:
        self._record("get_resource", name)
        vm = self.vms.get(name.lower())
        return vm.info() if vm else None

    def list_resources(self, name_pattern: str) -> List[ResourceInfo]:
        self._record("list_resources", name_pattern)
        pattern = name_pattern.lower()
        return [vm.info() for key, vm in sorted(self.vms.items()) if fnmatch.fnmatchcase(key, pattern)]

    def create_resource(
        self, name: str, firmware_class: FirmwareClass, memory_bytes: int, switch_name: Optional[str]
    ) -> None:
        self._record(
            "create_resource", name, firmware_class=firmware_class, memory_bytes=memory_bytes, switch_name=switch_name
        )
        if name.lower() in self.vms:
            raise HypervisorError(f"A virtual machine named {name} already exists")
        if switch_name and switch_name.lower() not in self.switches:
            raise HypervisorError(f"No switch named {switch_name}")
        vm = self.add_vm(name, generation=firmware_class.generation, memory_bytes=memory_bytes)
        vm.adapter_switch = switch_name
        logger.debug(f"Created mock VM {name} (generation {firmware_class.generation})")

    def delete_resource(self, name: str) -> None:
        self._record("delete_resource", name)
        vm = self._vm(name)
        del self.vms[vm.name.lower()]

    # Settings

    def get_checkpoints_enabled(self, name: str) -> bool:
        self._record("get_checkpoints_enabled", name)
        return self._vm(name).checkpoints_enabled

    def set_checkpoint_policy(self, name: str, enabled: bool) -> None:
        self._record("set_checkpoint_policy", name, enabled=enabled)
        self._vm(name).checkpoints_enabled = enabled

    def get_processor(self, name: str) -> ProcessorInfo:
        self._record("get_processor", name)
        vm = self._vm(name)
        return ProcessorInfo(count=vm.cpu_count, expose_virtualization_extensions=vm.expose_virtualization_extensions)

    def set_processor(
        self, name: str, count: Optional[int] = None, expose_virtualization_extensions: Optional[bool] = None
    ) -> None:
        self._record(
            "set_processor", name, count=count, expose_virtualization_extensions=expose_virtualization_extensions
        )
        vm = self._vm(name)
        if count is not None:
            vm.cpu_count = count
        if expose_virtualization_extensions is not None:
            vm.expose_virtualization_extensions = expose_virtualization_extensions

    # Disks

    def create_disk_image(self, path: str, size_bytes: int) -> None:
        self._record("create_disk_image", path, size_bytes=size_bytes)
        key = normalize_path(path)
        if key in self.files:
            raise HypervisorError(f"The file {path} already exists")
        if ntpath.dirname(key) not in self.directories:
            raise HypervisorError(f"The directory for {path} does not exist")
        self.files[key] = size_bytes

    def list_attached_disks(self, name: str) -> List[str]:
        self._record("list_attached_disks", name)
        return list(self._vm(name).disks)

    def attach_disk(self, name: str, path: str) -> None:
        self._record("attach_disk", name, path=path)
        vm = self._vm(name)
        if normalize_path(path) not in self.files:
            raise HypervisorError(f"Disk file {path} not found")
        vm.disks.append(path)

    # Network

    def switch_exists(self, switch_name: str) -> bool:
        self._record("switch_exists", switch_name)
        return switch_name.lower() in self.switches

    def get_primary_adapter(self, name: str) -> Optional[AdapterInfo]:
        self._record("get_primary_adapter", name)
        vm = self._vm(name)
        if vm.adapter_name is None:
            return None
        return AdapterInfo(name=vm.adapter_name, switch_name=vm.adapter_switch)

    def connect_adapter(self, name: str, switch_name: str) -> None:
        self._record("connect_adapter", name, switch_name=switch_name)
        vm = self._vm(name)
        if vm.adapter_name is None:
            raise HypervisorError(f"{name} has no network adapter")
        if switch_name.lower() not in self.switches:
            raise HypervisorError(f"No switch named {switch_name}")
        vm.adapter_switch = switch_name

    # Firmware

    def get_firmware(self, name: str) -> FirmwareInfo:
        self._record("get_firmware", name)
        vm = self._vm(name)
        if vm.generation != 2:
            raise HypervisorError(f"{name} is not a generation 2 virtual machine")
        return FirmwareInfo(secure_boot=vm.secure_boot, boot_order=list(vm.boot_order))

    def set_firmware(
        self, name: str, secure_boot: SecureBoot, boot_order: List[BootDevice], disk_path: str
    ) -> None:
        self._record("set_firmware", name, secure_boot=secure_boot, boot_order=list(boot_order), disk_path=disk_path)
        vm = self._vm(name)
        if vm.generation != 2:
            raise HypervisorError(f"{name} is not a generation 2 virtual machine")
        attached = {normalize_path(d) for d in vm.disks}
        if normalize_path(disk_path) not in attached or vm.adapter_name is None:
            raise HypervisorError(f"Boot devices not found on {name}")
        vm.secure_boot = secure_boot
        vm.boot_order = list(boot_order)

    # Power

    def start_resource(self, name: str) -> None:
        self._record("start_resource", name)
        self._vm(name).state = "Running"

    def stop_resource(self, name: str, force: bool = True) -> None:
        self._record("stop_resource", name, force=force)
        self._vm(name).state = "Off"

    # Snapshots

    def list_snapshots(self, name: str) -> List[SnapshotInfo]:
        self._record("list_snapshots", name)
        return list(self._vm(name).snapshots)

    def delete_snapshot(self, snapshot: SnapshotInfo) -> None:
        self._record("delete_snapshot", snapshot.vm_name, snapshot_id=snapshot.id)
        vm = self._vm(snapshot.vm_name)
        vm.snapshots = [s for s in vm.snapshots if s.id != snapshot.id]

    # Files

    def file_exists(self, path: str) -> bool:
        self._record("file_exists", path)
        return normalize_path(path) in self.files

    def delete_file(self, path: str) -> None:
        self._record("delete_file", path)
        key = normalize_path(path)
        if key not in self.files:
            raise HypervisorError(f"Cannot find path {path}")
        del self.files[key]

    def directory_exists(self, path: str) -> bool:
        self._record("directory_exists", path)
        return normalize_path(path) in self.directories

    def directory_is_empty(self, path: str) -> bool:
        self._record("directory_is_empty", path)
        key = normalize_path(path)
        children = [p for p in list(self.files) + list(self.directories) if ntpath.dirname(p) == key and p != key]
        return not children

    def ensure_directory(self, path: str) -> None:
        self._record("ensure_directory", path)
        self.directories.add(normalize_path(path))

    def delete_directory(self, path: str) -> None:
        self._record("delete_directory", path)
        key = normalize_path(path)
        if key not in self.directories:
            raise HypervisorError(f"Cannot find path {path}")
        if not self.directory_is_empty(path):
            raise HypervisorError(f"The directory {path} is not empty")
        self.directories.discard(key)

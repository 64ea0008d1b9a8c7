"""
Step-by-step reconciliation of one VM toward a VmSpec.

Each step is split in two: a pure ``decide_*`` function that compares the
observed state with the desired state and returns an Action, and the
StepExecutor that performs the Action's calls against the hypervisor and
records a StepResult. Only step 1 (existence) is fatal; every other step
failure is logged and reconciliation moves on.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pxevm.config import Settings
from pxevm.hypervisor import HypervisorBackend, normalize_path
from pxevm.models import (
    AdapterInfo,
    BootOrder,
    FirmwareClass,
    FirmwareInfo,
    ProcessorInfo,
    ResourceInfo,
    StepOutcome,
    StepResult,
    VmIdentity,
    VmSpec,
)

logger = logging.getLogger(__name__)

STEP_EXISTENCE = "existence"
STEP_CHECKPOINTS = "checkpoints"
STEP_NESTED = "nested-virtualization"
STEP_PROCESSOR = "processor"
STEP_DISK_IMAGE = "disk-image"
STEP_DISK_ATTACHMENT = "disk-attachment"
STEP_NETWORK = "network"
STEP_FIRMWARE = "firmware"
STEP_POWER_ON = "power-on"

STEPS = [
    STEP_EXISTENCE,
    STEP_CHECKPOINTS,
    STEP_NESTED,
    STEP_PROCESSOR,
    STEP_DISK_IMAGE,
    STEP_DISK_ATTACHMENT,
    STEP_NETWORK,
    STEP_FIRMWARE,
    STEP_POWER_ON,
]


class ResourceCreationError(RuntimeError):
    """The VM could not be found or created; provisioning cannot continue."""


class ActionKind(Enum):
    APPLY = "apply"
    NOOP = "noop"
    SKIP = "skip"


@dataclass
class Call:
    """One hypervisor capability invocation."""

    operation: str
    kwargs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Action:
    """What a step decided to do."""

    kind: ActionKind
    reason: str = ""
    calls: List[Call] = field(default_factory=list)
    warn: bool = False

    @classmethod
    def apply(cls, reason: str, *calls: Call) -> "Action":
        return cls(ActionKind.APPLY, reason, list(calls))

    @classmethod
    def noop(cls, reason: str, warn: bool = False) -> "Action":
        return cls(ActionKind.NOOP, reason, warn=warn)

    @classmethod
    def skip(cls, reason: str, warn: bool = False) -> "Action":
        return cls(ActionKind.SKIP, reason, warn=warn)


# Decisions


def decide_existence(
    observed: Optional[ResourceInfo], name: str, spec: VmSpec, switch_available: bool
) -> Action:
    if observed is None:
        return Action.apply(
            f"Creating {name} (generation {spec.firmware_class.generation})",
            Call(
                "create_resource",
                {
                    "name": name,
                    "firmware_class": spec.firmware_class,
                    "memory_bytes": spec.memory_bytes,
                    "switch_name": spec.switch_name if switch_available else None,
                },
            ),
        )
    if observed.firmware_class is not spec.firmware_class:
        return Action.noop(
            f"{name} already exists as generation {observed.generation} but generation "
            f"{spec.firmware_class.generation} was requested; firmware settings will not apply",
            warn=True,
        )
    return Action.noop(f"{name} already exists")


def decide_checkpoints(enabled: bool, name: str) -> Action:
    if enabled:
        return Action.apply(
            "Disabling automatic checkpoints", Call("set_checkpoint_policy", {"name": name, "enabled": False})
        )
    return Action.noop("Automatic checkpoints already disabled")


def decide_nested_virtualization(
    processor: Optional[ProcessorInfo], name: str, spec: VmSpec, firmware_class: FirmwareClass
) -> Action:
    if not spec.nested_virtualization:
        return Action.skip("Nested virtualization not requested")
    if not spec.uefi_mode or firmware_class is not FirmwareClass.UEFI:
        return Action.skip("Nested virtualization is only configured for UEFI VMs")
    if spec.cpu_count < 2:
        return Action.skip("Nested virtualization needs at least 2 virtual CPUs")
    if processor is not None and processor.expose_virtualization_extensions:
        return Action.noop("Virtualization extensions already exposed")
    return Action.apply(
        "Exposing virtualization extensions",
        Call("set_processor", {"name": name, "expose_virtualization_extensions": True}),
    )


def decide_processor(name: str, spec: VmSpec) -> Action:
    return Action.apply(
        f"Setting {spec.cpu_count} virtual CPUs", Call("set_processor", {"name": name, "count": spec.cpu_count})
    )


def decide_disk_image(
    disk_exists: bool, storage_root_exists: bool, identity: VmIdentity, spec: VmSpec, storage_root: str
) -> Action:
    if disk_exists:
        return Action.noop(f"Disk {identity.disk_path} already exists")
    calls = []
    if not storage_root_exists:
        calls.append(Call("ensure_directory", {"path": storage_root}))
    calls.append(Call("create_disk_image", {"path": identity.disk_path, "size_bytes": spec.disk_bytes}))
    return Action.apply(f"Creating {spec.disk_bytes // 1024**3} GB dynamic disk {identity.disk_path}", *calls)


def decide_disk_attachment(attached: List[str], name: str, disk_path: str) -> Action:
    wanted = normalize_path(disk_path)
    if any(normalize_path(path) == wanted for path in attached):
        return Action.noop(f"Disk {disk_path} already attached")
    return Action.apply(f"Attaching disk {disk_path}", Call("attach_disk", {"name": name, "path": disk_path}))


def decide_network(
    adapter: Optional[AdapterInfo], name: str, switch_name: str, switch_available: bool
) -> Action:
    if adapter is None:
        return Action.skip(f"{name} has no network adapter", warn=True)
    if adapter.switch_name and adapter.switch_name.lower() == switch_name.lower():
        return Action.noop(f"Adapter already connected to {switch_name}")
    if not switch_available:
        return Action.skip(f"Switch {switch_name!r} not found; adapter left as is", warn=True)
    return Action.apply(
        f"Connecting adapter to {switch_name}",
        Call("connect_adapter", {"name": name, "switch_name": switch_name}),
    )


def decide_firmware(
    firmware: Optional[FirmwareInfo],
    name: str,
    spec: VmSpec,
    firmware_class: FirmwareClass,
    boot_order: BootOrder,
    disk_path: str,
    disk_resolved: bool,
    adapter_resolved: bool,
) -> Action:
    if firmware_class is not FirmwareClass.UEFI:
        return Action.skip("Legacy firmware has no configurable boot order")
    if not disk_resolved or not adapter_resolved:
        missing = " and ".join(
            label for label, ok in (("disk", disk_resolved), ("network adapter", adapter_resolved)) if not ok
        )
        return Action.skip(f"Cannot set boot order: {missing} not resolved", warn=True)
    wanted = boot_order.devices
    current_order = firmware.boot_order[: len(wanted)] if firmware is not None else []
    if firmware is not None and firmware.secure_boot is spec.secure_boot and current_order == wanted:
        return Action.noop(f"Firmware already set (Secure Boot {spec.secure_boot.value}, {boot_order.value})")
    return Action.apply(
        f"Setting Secure Boot {spec.secure_boot.value} and boot order {boot_order.value}",
        Call(
            "set_firmware",
            {"name": name, "secure_boot": spec.secure_boot, "boot_order": wanted, "disk_path": disk_path},
        ),
    )


def decide_power_on(resource: Optional[ResourceInfo], name: str, spec: VmSpec) -> Action:
    if not spec.auto_start:
        return Action.skip("Auto start not requested")
    if resource is not None and resource.is_running:
        return Action.noop(f"{name} already running")
    return Action.apply(f"Starting {name}", Call("start_resource", {"name": name}))


# Execution


class StepExecutor:
    """Applies Actions through the hypervisor and records the outcome."""

    def __init__(self, backend: HypervisorBackend) -> None:
        self.backend = backend

    def execute(self, step: str, action: Action) -> StepResult:
        if action.kind is ActionKind.NOOP:
            self._log(action, f"✅ [{step}] {action.reason}")
            return StepResult(step, StepOutcome.SATISFIED, action.reason)

        if action.kind is ActionKind.SKIP:
            self._log(action, f"⏭️  [{step}] {action.reason}")
            return StepResult(step, StepOutcome.SKIPPED, action.reason)

        logger.info(f"🔧 [{step}] {action.reason}")
        for call in action.calls:
            try:
                getattr(self.backend, call.operation)(**call.kwargs)
            except Exception as e:
                logger.warning(f"⚠️  [{step}] {call.operation} failed: {e}")
                return StepResult(step, StepOutcome.FAILED, f"{call.operation} failed: {e}")
        return StepResult(step, StepOutcome.APPLIED, action.reason)

    @staticmethod
    def _log(action: Action, message: str) -> None:
        if action.warn:
            logger.warning(message)
        else:
            logger.info(message)


@dataclass
class ReconcileOutcome:
    firmware_class: FirmwareClass
    steps: List[StepResult] = field(default_factory=list)


class Reconciler:
    """Drives one VM through the ordered reconciliation steps."""

    def __init__(self, backend: HypervisorBackend, settings: Settings) -> None:
        self.backend = backend
        self.settings = settings
        self.executor = StepExecutor(backend)

    def _run_step(self, step: str, decide: Callable[[], Action]) -> StepResult:
        """Probe and decide, then execute; any failure is recorded, never raised."""
        try:
            action = decide()
        except Exception as e:
            logger.warning(f"⚠️  [{step}] probe failed: {e}")
            return StepResult(step, StepOutcome.FAILED, f"probe failed: {e}")
        return self.executor.execute(step, action)

    def _ensure_exists(self, identity: VmIdentity, spec: VmSpec) -> StepResult:
        try:
            switch_available = self.backend.switch_exists(spec.switch_name)
            observed = self.backend.get_resource(identity.name)
        except Exception as e:
            raise ResourceCreationError(f"Could not look up {identity.name}: {e}") from e

        result = self.executor.execute(
            STEP_EXISTENCE, decide_existence(observed, identity.name, spec, switch_available)
        )
        if result.outcome is StepOutcome.FAILED:
            raise ResourceCreationError(f"Could not create {identity.name}: {result.detail}")
        return result

    def reconcile(self, identity: VmIdentity, spec: VmSpec) -> ReconcileOutcome:
        """Bring ``identity`` in line with ``spec``.

        Raises:
            ResourceCreationError: If the VM cannot be found or created
        """
        name = identity.name
        steps = [self._ensure_exists(identity, spec)]

        try:
            resource = self.backend.get_resource(name)
        except Exception as e:
            raise ResourceCreationError(f"Could not read back {name}: {e}") from e
        if resource is None:
            raise ResourceCreationError(f"{name} not found after creation")
        firmware_class = resource.firmware_class

        steps.append(
            self._run_step(
                STEP_CHECKPOINTS, lambda: decide_checkpoints(self.backend.get_checkpoints_enabled(name), name)
            )
        )

        def nested() -> Action:
            processor = None
            if spec.wants_nested_virtualization and firmware_class is FirmwareClass.UEFI:
                processor = self.backend.get_processor(name)
            return decide_nested_virtualization(processor, name, spec, firmware_class)

        steps.append(self._run_step(STEP_NESTED, nested))
        steps.append(self._run_step(STEP_PROCESSOR, lambda: decide_processor(name, spec)))

        storage_root = self.settings.storage_root
        steps.append(
            self._run_step(
                STEP_DISK_IMAGE,
                lambda: decide_disk_image(
                    self.backend.file_exists(identity.disk_path),
                    self.backend.directory_exists(storage_root),
                    identity,
                    spec,
                    storage_root,
                ),
            )
        )

        attachment = self._run_step(
            STEP_DISK_ATTACHMENT,
            lambda: decide_disk_attachment(self.backend.list_attached_disks(name), name, identity.disk_path),
        )
        steps.append(attachment)
        disk_resolved = attachment.outcome in (StepOutcome.APPLIED, StepOutcome.SATISFIED)

        adapters: List[AdapterInfo] = []

        def network() -> Action:
            adapter = self.backend.get_primary_adapter(name)
            if adapter is not None:
                adapters.append(adapter)
            return decide_network(adapter, name, spec.switch_name, self.backend.switch_exists(spec.switch_name))

        steps.append(self._run_step(STEP_NETWORK, network))
        adapter_resolved = bool(adapters)

        def firmware() -> Action:
            current = None
            if firmware_class is FirmwareClass.UEFI and disk_resolved and adapter_resolved:
                current = self.backend.get_firmware(name)
            return decide_firmware(
                current,
                name,
                spec,
                firmware_class,
                self.settings.boot_order,
                identity.disk_path,
                disk_resolved,
                adapter_resolved,
            )

        steps.append(self._run_step(STEP_FIRMWARE, firmware))

        def power_on() -> Action:
            current = self.backend.get_resource(name) if spec.auto_start else None
            return decide_power_on(current, name, spec)

        steps.append(self._run_step(STEP_POWER_ON, power_on))

        return ReconcileOutcome(firmware_class=firmware_class, steps=steps)

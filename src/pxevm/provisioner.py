"""
Provision a disposable PXE test VM.

Allocates a unique name, reconciles the VM toward the requested spec and
reports the resulting identity. Safe to re-run against an existing VM by
passing its name.
"""

import logging
from typing import Optional

from pxevm.config import Settings
from pxevm.hypervisor import HypervisorBackend
from pxevm.models import ProvisionResult, StepOutcome, VmIdentity, VmSpec
from pxevm.naming import NameAllocator, resource_base_name
from pxevm.reconciler import Reconciler

logger = logging.getLogger(__name__)


class Provisioner:
    """Creates or converges one test VM."""

    def __init__(
        self,
        backend: HypervisorBackend,
        settings: Settings,
        allocator: Optional[NameAllocator] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.allocator = allocator or NameAllocator(settings)
        self.reconciler = Reconciler(backend, settings)

    def provision(self, spec: VmSpec, name: Optional[str] = None) -> ProvisionResult:
        """
        Provision a VM matching ``spec``.

        Args:
            spec: Desired VM configuration
            name: Existing VM name to converge instead of allocating a new one

        Returns:
            ProvisionResult with the VM identity and per-step outcomes

        Raises:
            NameExhaustedError: If no free name could be allocated
            ResourceCreationError: If the VM could not be created
        """
        if name is None:
            base = resource_base_name(self.settings, spec.uefi_mode)
            name = self.allocator.allocate(base, self.backend.resource_exists)
            logger.info(f"🆕 Allocated VM name {name}")
        else:
            logger.info(f"🔁 Reconciling existing VM name {name}")

        identity = VmIdentity.build(name, self.settings.storage_root, self.settings.disk_extension)
        outcome = self.reconciler.reconcile(identity, spec)

        result = ProvisionResult(
            identity=identity,
            uefi_mode=spec.uefi_mode,
            firmware_class=outcome.firmware_class,
            steps=outcome.steps,
        )

        failed = result.failed_steps
        if failed:
            logger.warning(
                f"⚠️  {name} provisioned with {len(failed)} failed step(s): "
                + ", ".join(s.step for s in failed)
            )
        else:
            applied = sum(1 for s in result.steps if s.outcome is StepOutcome.APPLIED)
            logger.info(f"✅ {name} provisioned ({applied} change(s) applied)")

        return result

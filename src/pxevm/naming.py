"""Collision-free VM name allocation."""

import logging
import random
from typing import Callable, Optional

from pxevm.config import Settings

logger = logging.getLogger(__name__)


class NameExhaustedError(RuntimeError):
    """Every sampled name collided with an existing resource."""


def resource_base_name(settings: Settings, uefi_mode: bool) -> str:
    """Prefix for VM names, e.g. PXE-CLIENT or PXE-CLIENT-UEFI."""
    return f"{settings.base_prefix}-UEFI" if uefi_mode else settings.base_prefix


class NameAllocator:
    """Samples random suffixes until one misses the live namespace.

    The check is best-effort: another actor can still take the name between
    the probe and the create call.
    """

    def __init__(self, settings: Settings, rng: Optional[random.Random] = None) -> None:
        self.attempts = settings.name_attempts
        self.suffix_length = settings.suffix_length
        self.alphabet = settings.suffix_alphabet
        self.rng = rng or random.Random(settings.random_seed)

    def random_suffix(self) -> str:
        return "".join(self.rng.choice(self.alphabet) for _ in range(self.suffix_length))

    def allocate(self, base_prefix: str, probe_exists: Callable[[str], bool]) -> str:
        """Return an unused name of the form ``{base_prefix}-{suffix}``.

        Raises:
            NameExhaustedError: If every attempt collided
        """
        for attempt in range(1, self.attempts + 1):
            candidate = f"{base_prefix}-{self.random_suffix()}"
            if not probe_exists(candidate):
                logger.debug(f"Allocated {candidate} on attempt {attempt}")
                return candidate
            logger.debug(f"Name {candidate} already taken (attempt {attempt}/{self.attempts})")

        raise NameExhaustedError(
            f"Could not find a free name for prefix {base_prefix!r} after {self.attempts} attempts"
        )

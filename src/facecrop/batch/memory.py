"""Release source rasters of finished images according to a memory policy."""

from __future__ import annotations

import logging
import time
from enum import StrEnum
from typing import TYPE_CHECKING

from facecrop.models import ImageStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from facecrop.models import ImageEntry

logger = logging.getLogger(__name__)

DEFAULT_RELEASE_AGE_SECONDS: float = 300.0


class MemoryPolicy(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"
    AGGRESSIVE = "aggressive"


class MemoryReclaimer:
    """Decides when a processed image's raster may be dropped.

    * ``manual``: never release automatically; :meth:`release` still works.
    * ``auto``: release completed images processed at least ``release_age`` seconds ago.
    * ``aggressive``: release as soon as an image completes.
    """

    def __init__(
        self,
        policy: MemoryPolicy | str = MemoryPolicy.AUTO,
        release_age: float = DEFAULT_RELEASE_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = MemoryPolicy(policy)
        self.release_age = release_age
        self._clock = clock

    def release(self, entry: ImageEntry) -> bool:
        """Drop the entry's raster. Returns False if it was already released."""
        if entry.memory_cleaned_up:
            return False
        entry.release_raster()
        logger.info("Released source raster of %s", entry.source_name)
        return True

    def eligible(self, entry: ImageEntry) -> bool:
        if entry.memory_cleaned_up or entry.status is not ImageStatus.COMPLETED:
            return False
        if self.policy is MemoryPolicy.AGGRESSIVE:
            return True
        if self.policy is MemoryPolicy.AUTO:
            processed_at = entry.processed_at
            return processed_at is not None and self._clock() - processed_at >= self.release_age
        return False

    def sweep(self, entries: Iterable[ImageEntry]) -> int:
        """Apply the policy to every entry; returns how many were released."""
        released = 0
        for entry in entries:
            if self.eligible(entry) and self.release(entry):
                released += 1
        return released

    def after_image(self, entry: ImageEntry, entries: Iterable[ImageEntry] = ()) -> int:
        """Hook run after an image finishes: handle it, then sweep the rest."""
        released = self.sweep([entry])
        return released + self.sweep(e for e in entries if e is not entry)

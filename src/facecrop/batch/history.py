"""Bounded undo/redo history over snapshots of a working set."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HISTORY_LIMIT: int = 50


class HistoryManager(Generic[T]):
    """Undo/redo stacks of opaque snapshots.

    The owner of the working set supplies ``capture`` (build a snapshot of the
    current state) and ``restore`` (make a snapshot the current state). Both
    stacks keep at most ``limit`` entries; the oldest entries are dropped.
    """

    def __init__(
        self,
        capture: Callable[[], T],
        restore: Callable[[T], None],
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self._capture = capture
        self._restore = restore
        self._undo: deque[T] = deque(maxlen=limit)
        self._redo: deque[T] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._undo.maxlen or DEFAULT_HISTORY_LIMIT

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def snapshot(self) -> None:
        """Record the current state before a mutation. Clears the redo stack."""
        self._undo.append(self._capture())
        self._redo.clear()

    def undo(self) -> bool:
        """Restore the most recent snapshot. Returns False if there is none."""
        if not self._undo:
            return False
        previous = self._undo.pop()
        self._redo.append(self._capture())
        self._restore(previous)
        logger.debug("Undo (%d left, %d redoable)", len(self._undo), len(self._redo))
        return True

    def redo(self) -> bool:
        """Re-apply the most recently undone state. Returns False if there is none."""
        if not self._redo:
            return False
        following = self._redo.pop()
        self._undo.append(self._capture())
        self._restore(following)
        logger.debug("Redo (%d undoable, %d left)", len(self._undo), len(self._redo))
        return True

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

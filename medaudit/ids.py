"""
Monotonic ID allocation.

One allocator per ID space. Values are handed out in order; a value is
only handed out again when it was released straight after a failed commit.
"""

import threading


class IdAllocator:
    """Thread-safe monotonic counter."""

    def __init__(self, start: int = 1):
        if start < 1:
            raise ValueError("IDs start at 1")
        self._next = start
        self._lock = threading.Lock()

    def allocate(self) -> int:
        """Return the current value and advance the counter."""
        with self._lock:
            current = self._next
            self._next = current + 1
            return current

    def peek(self) -> int:
        """Value the next `allocate()` will return."""
        with self._lock:
            return self._next

    def release(self, value: int) -> bool:
        """
        Hand back `value` if it is the most recent allocation.

        Used when a commit fails after allocating, so the next successful
        commit reuses the number. Returns False if later values exist.
        """
        with self._lock:
            if self._next != value + 1:
                return False
            self._next = value
            return True

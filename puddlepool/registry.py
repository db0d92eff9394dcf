"""Registry of buffer managers, one per allocator factory.

The registry creates a :class:`~puddlepool.buffers.BufferManager` the first
time an allocator factory is used and routes allocation, release, cleanup and
reporting requests to it. Cleanup and finalization act on every manager the
registry has created, in creation order.
"""

from __future__ import annotations

import sys
import threading
from typing import Any, Callable, Optional, TextIO

from .buffers import BufferManager

__all__ = [
    "BufferRegistry",
    "default_registry",
    "print_buffer_counters",
    "force_buffer_cleanup",
    "unused_buffer_cleanup",
    "finalize",
]


class BufferRegistry:
    """Creates and drives one buffer manager per allocator factory."""

    def __init__(self, number_instances: int = 1, max_number_gpus: int = 1) -> None:
        if number_instances < 1 or max_number_gpus < 1:
            raise ValueError("number_instances and max_number_gpus must be positive")
        self.number_instances = number_instances
        self.max_number_gpus = max_number_gpus
        self._lock = threading.RLock()
        self._managers: dict[Any, BufferManager] = {}

    def manager_for(self, allocator_factory: Callable[[], Any]) -> BufferManager:
        """Return the manager for ``allocator_factory``, creating it on first use.

        A factory may offer a ``select_device`` callable taking a device id;
        it is then used to pick the device before each fresh allocation.
        """
        with self._lock:
            manager = self._managers.get(allocator_factory)
            if manager is None:
                manager = BufferManager(
                    allocator_factory,
                    self.number_instances,
                    self.max_number_gpus,
                    getattr(allocator_factory, "select_device", None),
                )
                # Running out of memory frees unused buffers of every manager.
                manager.out_of_memory_handler = self.clean_unused_buffers
                self._managers[allocator_factory] = manager
            return manager

    def _all_managers(self) -> list[BufferManager]:
        with self._lock:
            return list(self._managers.values())

    def get(
        self,
        allocator_factory: Callable[[], Any],
        number_of_elements: int,
        manage_content_lifetime: bool = False,
        location_hint: Optional[int] = None,
        device_id: Optional[int] = None,
    ) -> Any:
        """Return a buffer from the manager of ``allocator_factory``."""
        return self.manager_for(allocator_factory).get(
            number_of_elements, manage_content_lifetime, location_hint, device_id
        )

    def mark_unused(
        self,
        allocator_factory: Callable[[], Any],
        buffer: Any,
        number_of_elements: int,
        location_hint: Optional[int] = None,
        device_id: Optional[int] = None,
    ) -> None:
        """Hand ``buffer`` back to the manager of ``allocator_factory``."""
        self.manager_for(allocator_factory).mark_unused(
            buffer, number_of_elements, location_hint, device_id
        )

    def clean_all(self) -> None:
        """Deallocate every buffer of every manager, used or not."""
        with self._lock:
            for manager in self._all_managers():
                manager.clean()

    def clean_unused_buffers(self) -> None:
        """Deallocate the unused buffers of every manager."""
        with self._lock:
            for manager in self._all_managers():
                manager.clean_unused_buffers_only()

    def finalize(self) -> None:
        """Deallocate every buffer and refuse further allocations."""
        with self._lock:
            for manager in self._all_managers():
                manager.finalize()

    def print_performance_counters(self, file: Optional[TextIO] = None) -> None:
        """Write the counter report of every manager that saw allocations."""
        out = sys.stdout if file is None else file
        with self._lock:
            for manager in self._all_managers():
                report = manager.format_counters()
                if report:
                    print(report, file=out)


_default: Optional[BufferRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> BufferRegistry:
    """Return the process-wide registry, creating it on first use."""
    global _default
    with _default_lock:
        if _default is None:
            _default = BufferRegistry()
        return _default


def print_buffer_counters(file: Optional[TextIO] = None) -> None:
    """Write the counters of all managers of the default registry."""
    default_registry().print_performance_counters(file)


def force_buffer_cleanup() -> None:
    """Deallocate all buffers of the default registry, even those in use."""
    default_registry().clean_all()


def unused_buffer_cleanup() -> None:
    """Deallocate the unused buffers of the default registry."""
    default_registry().clean_unused_buffers()


def finalize() -> None:
    """Deallocate all buffers of the default registry and disallow further use."""
    default_registry().finalize()
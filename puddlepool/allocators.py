"""Recycling allocators and the aligned host allocator underneath them.

:class:`RecycleAllocator` and :class:`AggressiveRecycleAllocator` take their
buffers from a :class:`~puddlepool.registry.BufferRegistry` instead of
allocating afresh each time. The aggressive variant also keeps the contents
of a buffer between uses: a recycled buffer comes back exactly as its last
owner left it. :class:`AlignedAllocator` is the underlying allocator that
produces buffers whose first element sits on a chosen byte boundary.
"""

from __future__ import annotations

import contextlib
from array import array
from dataclasses import dataclass, field
from typing import Any, Optional

from .registry import BufferRegistry, default_registry

__all__ = [
    "AlignedAllocator",
    "RecycleAllocator",
    "AggressiveRecycleAllocator",
    "recycle_aligned",
    "aggressive_recycle_aligned",
]


def _aligned_offset(address: int, alignment: int) -> int:
    """Return how many bytes past ``address`` the next ``alignment`` boundary lies."""
    return -address % alignment


@dataclass(frozen=True)
class AlignedAllocator:
    """Allocates zero-filled typed buffers aligned to ``alignment`` bytes.

    Buffers are :class:`memoryview` objects of format ``typecode``. The
    effective alignment is never smaller than the element size. An instance
    is its own factory, so equal instances share one buffer manager.
    """

    typecode: str = "d"
    alignment: int = 32

    def __post_init__(self) -> None:
        array(self.typecode)  # raises ValueError for an unknown type code
        if self.alignment <= 0 or self.alignment & (self.alignment - 1):
            raise ValueError("alignment must be a positive power of two")

    @property
    def itemsize(self) -> int:
        return array(self.typecode).itemsize

    def __call__(self) -> "AlignedAllocator":
        return self

    def select_device(self, device_id: int) -> None:
        """Host memory needs no device selection, on any device."""

    def allocate(self, number_of_elements: int) -> memoryview:
        if number_of_elements < 0:
            raise ValueError("number_of_elements must not be negative")
        itemsize = self.itemsize
        align = max(self.alignment, itemsize)
        nbytes = number_of_elements * itemsize
        raw = array("B", bytes(nbytes + align))
        offset = _aligned_offset(raw.buffer_info()[0], align)
        return memoryview(raw)[offset : offset + nbytes].cast(self.typecode)

    def deallocate(self, buffer: Any, number_of_elements: int) -> None:
        # A view still exported elsewhere keeps its memory until the last one goes.
        with contextlib.suppress(BufferError):
            buffer.release()


@dataclass(frozen=True)
class _RecyclingAllocator:
    underlying: Any
    registry: Optional[BufferRegistry] = field(default=None, compare=False, repr=False)
    location_hint: Optional[int] = None
    device_id: Optional[int] = None

    @property
    def _registry(self) -> BufferRegistry:
        return self.registry if self.registry is not None else default_registry()

    def _take(self, number_of_elements: int, manage_content: bool) -> Any:
        return self._registry.get(
            self.underlying,
            number_of_elements,
            manage_content,
            self.location_hint,
            self.device_id,
        )

    def _give_back(self, buffer: Any, number_of_elements: int) -> None:
        self._registry.mark_unused(
            self.underlying,
            buffer,
            number_of_elements,
            self.location_hint,
            self.device_id,
        )


@dataclass(frozen=True)
class RecycleAllocator(_RecyclingAllocator):
    """Recycles allocations; the caller initialises the contents."""

    def allocate(self, number_of_elements: int) -> Any:
        """Return a buffer of ``number_of_elements``, recycled where possible."""
        return self._take(number_of_elements, False)

    def deallocate(self, buffer: Any, number_of_elements: int) -> None:
        """Hand ``buffer`` back for reuse."""
        self._give_back(buffer, number_of_elements)


@dataclass(frozen=True)
class AggressiveRecycleAllocator(_RecyclingAllocator):
    """Recycles allocations together with their contents.

    Fresh buffers are zero-filled; recycled ones keep what was written last.
    """

    def allocate(self, number_of_elements: int) -> Any:
        """Return a buffer of ``number_of_elements``, contents kept when recycled."""
        return self._take(number_of_elements, True)

    def deallocate(self, buffer: Any, number_of_elements: int) -> None:
        """Hand ``buffer`` back for reuse, contents included."""
        self._give_back(buffer, number_of_elements)


def recycle_aligned(typecode: str = "d", alignment: int = 32) -> RecycleAllocator:
    """Return a recycling allocator for aligned buffers of ``typecode``."""
    return RecycleAllocator(AlignedAllocator(typecode, alignment))


def aggressive_recycle_aligned(
    typecode: str = "d", alignment: int = 32
) -> AggressiveRecycleAllocator:
    """Return a content-recycling allocator for aligned buffers of ``typecode``."""
    return AggressiveRecycleAllocator(AlignedAllocator(typecode, alignment))
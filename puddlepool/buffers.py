"""Per-allocator buffer recycling.

A :class:`BufferManager` hands out buffers produced by one kind of allocator
and keeps released buffers around so that later requests of the same size can
reuse them instead of allocating again. Buffers are kept in buckets, one per
(location, device) pair, each guarded by its own lock.
"""

from __future__ import annotations

import logging
import threading
from array import array
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)


class FinalizedError(RuntimeError):
    """Raised when a finalized buffer manager is used again."""


@dataclass
class BufferEntry:
    """Bookkeeping for one buffer owned by a manager."""

    buffer: Any
    number_of_elements: int
    location: int
    content_managed: bool = False


@dataclass(frozen=True)
class ManagerCounters:
    """Snapshot of a manager's cumulative counters and current buffer counts."""

    allocations: int = 0
    recyclings: int = 0
    creations: int = 0
    deallocations: int = 0
    wrong_hints: int = 0
    wrong_device_hints: int = 0
    bad_allocs: int = 0
    in_use: int = 0
    unused: int = 0


@dataclass(frozen=True)
class DefaultAllocator:
    """Allocates zero-filled :class:`array.array` buffers of one type code."""

    typecode: str = "d"

    def allocate(self, number_of_elements: int) -> array:
        if number_of_elements < 0:
            raise ValueError("number_of_elements must not be negative")
        itemsize = array(self.typecode).itemsize
        return array(self.typecode, bytes(itemsize * number_of_elements))

    def deallocate(self, buffer: Any, number_of_elements: int) -> None:
        """Release the storage of ``buffer``, which must hold ``number_of_elements``."""
        if len(buffer) != number_of_elements:
            raise ValueError(
                f"Buffer holds {len(buffer)} elements, not {number_of_elements}"
            )
        del buffer[:]


def _value_construct(buffer: Any) -> None:
    """Reset every element of ``buffer`` to its zero value."""
    try:
        view = memoryview(buffer).cast("B")
    except TypeError:
        buffer[:] = [0] * len(buffer)
    else:
        view[:] = bytes(len(view))


@dataclass
class _Bucket:
    lock: threading.RLock = field(default_factory=threading.RLock)
    in_use: dict = field(default_factory=dict)
    unused: deque = field(default_factory=deque)
    allocations: int = 0
    deallocations: int = 0
    wrong_hints: int = 0
    recyclings: int = 0
    creations: int = 0
    bad_allocs: int = 0

    def is_pristine(self) -> bool:
        return not (
            self.allocations
            or self.recyclings
            or self.bad_allocs
            or self.creations
            or self.unused
            or self.in_use
        )


class BufferManager:
    """Recycles buffers produced by one allocator factory."""

    def __init__(
        self,
        allocator_factory: Callable[[], Any] = DefaultAllocator,
        number_instances: int = 1,
        max_number_gpus: int = 1,
        device_selector: Optional[Callable[[int], None]] = None,
    ) -> None:
        if number_instances < 1 or max_number_gpus < 1:
            raise ValueError("number_instances and max_number_gpus must be positive")
        self.allocator_factory = allocator_factory
        self.number_instances = number_instances
        self.max_number_gpus = max_number_gpus
        self.device_selector = device_selector or self._default_device_selector
        self.out_of_memory_handler: Callable[[], None] = self.clean_unused_buffers_only
        self._buckets = [_Bucket() for _ in range(number_instances * max_number_gpus)]
        self._sum_lock = threading.Lock()
        self._sums = dict.fromkeys(
            (
                "allocations",
                "recyclings",
                "creations",
                "deallocations",
                "wrong_hints",
                "wrong_device_hints",
                "bad_allocs",
            ),
            0,
        )
        self._finalized = False

    def _default_device_selector(self, device_id: int) -> None:
        if self.max_number_gpus > 1:
            raise RuntimeError(
                "Allocators used in Multi-GPU builds need explicit Multi-GPU support "
                "(by providing a device selector)"
            )

    def _bump(self, name: str) -> None:
        with self._sum_lock:
            self._sums[name] += 1

    def _check_alive(self) -> None:
        if self._finalized:
            raise FinalizedError("Buffer manager has been finalized")

    def _new_allocator(self) -> Any:
        return self.allocator_factory()

    def get(
        self,
        number_of_elements: int,
        manage_content_lifetime: bool = False,
        location_hint: Optional[int] = None,
        device_id: Optional[int] = None,
    ) -> Any:
        """Return a recycled buffer of the requested size, or a new one."""
        if self._finalized:
            raise FinalizedError("Tried allocation after finalization")
        location = 0 if location_hint is None else location_hint
        if not 0 <= location < self.number_instances:
            raise ValueError("Tried to create buffer with invalid location_id [get]")
        device = 0 if device_id is None else device_id
        if not 0 <= device < self.max_number_gpus:
            raise ValueError(
                "Tried to create buffer with invalid device id [get]! "
                "Is multigpu support enabled with the correct number of GPUs?"
            )
        index = location + device * self.number_instances
        bucket = self._buckets[index]
        with bucket.lock:
            bucket.allocations += 1
            self._bump("allocations")

            entry = next(
                (e for e in bucket.unused if e.number_of_elements == number_of_elements),
                None,
            )
            if entry is not None:
                bucket.unused.remove(entry)
                if manage_content_lifetime and not entry.content_managed:
                    _value_construct(entry.buffer)
                    entry.content_managed = True
                elif not manage_content_lifetime and entry.content_managed:
                    entry.content_managed = False
                bucket.in_use[id(entry.buffer)] = entry
                bucket.recyclings += 1
                self._bump("recyclings")
                return entry.buffer

            try:
                self.device_selector(device)
                buffer = self._new_allocator().allocate(number_of_elements)
            except MemoryError:
                logger.warning("Not enough memory left. Cleaning up unused buffers now...")
                self.out_of_memory_handler()
                logger.warning("Buffers cleaned! Try allocation again...")
                allocator = self._new_allocator()
                self.device_selector(device)
                buffer = allocator.allocate(number_of_elements)
                bucket.bad_allocs += 1
                self._bump("bad_allocs")
                logger.warning("Second attempt allocation successful!")

            bucket.in_use[id(buffer)] = BufferEntry(
                buffer, number_of_elements, index, manage_content_lifetime
            )
            bucket.creations += 1
            self._bump("creations")
            if manage_content_lifetime:
                _value_construct(buffer)
            return buffer

    def _try_release(self, index: int, buffer: Any, number_of_elements: int) -> bool:
        bucket = self._buckets[index]
        with bucket.lock:
            entry = bucket.in_use.get(id(buffer))
            if entry is None or entry.buffer is not buffer:
                return False
            if entry.number_of_elements != number_of_elements:
                raise ValueError(
                    f"Buffer holds {entry.number_of_elements} elements, "
                    f"not {number_of_elements}"
                )
            bucket.deallocations += 1
            self._bump("deallocations")
            del bucket.in_use[id(buffer)]
            bucket.unused.appendleft(entry)
            return True

    def _device_locations(self, device: int, skip: Optional[int]) -> Iterator[int]:
        start = device * self.number_instances
        for index in range(start, start + self.number_instances):
            if skip is None or index != start + skip:
                yield index

    def mark_unused(
        self,
        buffer: Any,
        number_of_elements: int,
        location_hint: Optional[int] = None,
        device_hint: Optional[int] = None,
    ) -> None:
        """Hand a buffer back so that later requests may reuse it."""
        if self._finalized:
            return
        if location_hint is not None and not 0 <= location_hint < self.number_instances:
            raise ValueError("Buffer recycler received invalid location hint [mark_unused]")
        if device_hint is not None and not 0 <= device_hint < self.max_number_gpus:
            raise ValueError("Buffer recycler received invalid device hint [mark_unused]")
        device = 0 if device_hint is None else device_hint

        if location_hint is not None:
            index = location_hint + device * self.number_instances
            if self._try_release(index, buffer, number_of_elements):
                return
            with self._buckets[index].lock:
                self._buckets[index].wrong_hints += 1
            self._bump("wrong_hints")

        for index in self._device_locations(device, location_hint):
            if self._try_release(index, buffer, number_of_elements):
                return

        if device_hint is not None:
            self._bump("wrong_device_hints")

        for other in range(self.max_number_gpus):
            if other == device:
                continue
            if location_hint is not None:
                index = location_hint + other * self.number_instances
                if self._try_release(index, buffer, number_of_elements):
                    return
            for index in self._device_locations(other, location_hint):
                if self._try_release(index, buffer, number_of_elements):
                    return

        logger.warning("Tried to delete non-existing buffer in the buffer manager!")
        logger.warning("Did you forget to call finalize?")

    def _clean_bucket(self, bucket: _Bucket) -> None:
        if bucket.is_pristine():
            return
        allocator = self._new_allocator()
        for entry in (*bucket.unused, *bucket.in_use.values()):
            allocator.deallocate(entry.buffer, entry.number_of_elements)
        bucket.unused.clear()
        bucket.in_use.clear()
        bucket.allocations = 0
        bucket.recyclings = 0
        bucket.bad_allocs = 0
        bucket.creations = 0
        bucket.wrong_hints = 0

    def clean(self) -> None:
        """Deallocate every buffer, whether in use or not."""
        self._check_alive()
        for bucket in self._buckets:
            with bucket.lock:
                self._clean_bucket(bucket)

    def clean_unused_buffers_only(self) -> None:
        """Deallocate only the buffers that are currently unused."""
        self._check_alive()
        for bucket in self._buckets:
            with bucket.lock:
                if bucket.unused:
                    allocator = self._new_allocator()
                    for entry in bucket.unused:
                        allocator.deallocate(entry.buffer, entry.number_of_elements)
                    bucket.unused.clear()

    def finalize(self) -> None:
        """Deallocate every buffer and refuse further allocations."""
        self._check_alive()
        self._finalized = True
        for bucket in self._buckets:
            with bucket.lock:
                self._clean_bucket(bucket)

    def counters(self) -> ManagerCounters:
        """Return the cumulative counters and current buffer counts."""
        in_use = unused = 0
        for bucket in self._buckets:
            with bucket.lock:
                in_use += len(bucket.in_use)
                unused += len(bucket.unused)
        with self._sum_lock:
            sums = dict(self._sums)
        return ManagerCounters(in_use=in_use, unused=unused, **sums)

    def _allocator_name(self) -> str:
        factory = self.allocator_factory
        return getattr(factory, "__qualname__", None) or repr(factory)

    def format_counters(self) -> str:
        """Return a per-bucket report for every bucket that saw allocations."""
        self._check_alive()
        name = self._allocator_name()
        typecode = getattr(self.allocator_factory, "typecode", None)
        if not isinstance(typecode, str):
            typecode = "unknown"
        reports = []
        for bucket in self._buckets:
            with bucket.lock:
                if bucket.allocations == 0:
                    continue
                cleaned = len(bucket.unused) + len(bucket.in_use)
                rate = bucket.recyclings / bucket.allocations * 100.0
                reports.append(
                    "\n".join(
                        [
                            f"\nBuffer manager destructor for (Alloc: {name}, Type: {typecode}):",
                            "-" * 68,
                            f"--> Number of bad_allocs that triggered garbage collection:       {bucket.bad_allocs}",
                            f"--> Number of buffers that got requested from this manager:       {bucket.allocations}",
                            f"--> Number of times an unused buffer got recycled for a request:  {bucket.recyclings}",
                            f"--> Number of times a new buffer had to be created for a request: {bucket.creations}",
                            f"--> Number cleaned up buffers:                                    {cleaned}",
                            f"--> Number wrong deallocation hints:                              {bucket.wrong_hints}",
                            f"--> Number of buffers that were marked as used upon cleanup:      {len(bucket.in_use)}",
                            f"==> Recycle rate:                                                 {rate:g}%",
                        ]
                    )
                )
        return "\n".join(reports)
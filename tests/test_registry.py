import io

import pytest

from puddlepool.buffers import DefaultAllocator, FinalizedError
from puddlepool.registry import (
    BufferRegistry,
    default_registry,
    force_buffer_cleanup,
    print_buffer_counters,
    unused_buffer_cleanup,
)


class _FloatAllocator(DefaultAllocator):
    pass


class _SingletonProbeAllocator(DefaultAllocator):
    pass


def _float_factory():
    return DefaultAllocator("f")


def test_manager_for_is_cached_per_factory():
    registry = BufferRegistry()
    first = registry.manager_for(DefaultAllocator)
    assert registry.manager_for(DefaultAllocator) is first
    assert registry.manager_for(_float_factory) is not first


def test_buffer_is_recycled():
    registry = BufferRegistry()
    buffer = registry.get(DefaultAllocator, 16)
    assert len(buffer) == 16
    registry.mark_unused(DefaultAllocator, buffer, 16)
    again = registry.get(DefaultAllocator, 16)
    assert again is buffer
    counters = registry.manager_for(DefaultAllocator).counters()
    assert counters.recyclings == 1
    assert counters.creations == 1
    assert counters.allocations == 2


def test_different_size_creates_new_buffer():
    registry = BufferRegistry()
    buffer = registry.get(DefaultAllocator, 8)
    registry.mark_unused(DefaultAllocator, buffer, 8)
    other = registry.get(DefaultAllocator, 9)
    assert other is not buffer
    assert registry.manager_for(DefaultAllocator).counters().creations == 2


def test_clean_unused_buffers_keeps_used_ones():
    registry = BufferRegistry()
    kept = registry.get(DefaultAllocator, 4)
    released = registry.get(_float_factory, 4)
    registry.mark_unused(_float_factory, released, 4)
    registry.clean_unused_buffers()
    assert registry.manager_for(_float_factory).counters().unused == 0
    assert registry.manager_for(DefaultAllocator).counters().in_use == 1
    assert len(kept) == 4


def test_clean_all_removes_everything():
    registry = BufferRegistry()
    registry.get(DefaultAllocator, 4)
    released = registry.get(DefaultAllocator, 5)
    registry.mark_unused(DefaultAllocator, released, 5)
    registry.clean_all()
    counters = registry.manager_for(DefaultAllocator).counters()
    assert (counters.in_use, counters.unused) == (0, 0)


def test_finalize_disallows_allocation():
    registry = BufferRegistry()
    buffer = registry.get(DefaultAllocator, 3)
    registry.finalize()
    registry.mark_unused(DefaultAllocator, buffer, 3)
    with pytest.raises(FinalizedError):
        registry.get(DefaultAllocator, 3)


def test_location_hints_route_to_buckets():
    registry = BufferRegistry(number_instances=2)
    buffer = registry.get(DefaultAllocator, 6, location_hint=1)
    registry.mark_unused(DefaultAllocator, buffer, 6, location_hint=0)
    counters = registry.manager_for(DefaultAllocator).counters()
    assert counters.wrong_hints == 1
    assert counters.unused == 1
    assert registry.get(DefaultAllocator, 6, location_hint=1) is buffer


def test_invalid_location_raises():
    registry = BufferRegistry(number_instances=2)
    with pytest.raises(ValueError):
        registry.get(DefaultAllocator, 6, location_hint=2)


def test_invalid_device_raises():
    registry = BufferRegistry()
    with pytest.raises(ValueError):
        registry.get(DefaultAllocator, 6, device_id=1)


def test_out_of_memory_cleans_all_managers():
    registry = BufferRegistry()
    spare = registry.get(_float_factory, 10)
    registry.mark_unused(_float_factory, spare, 10)

    attempts = []

    class _FlakyAllocator(DefaultAllocator):
        def allocate(self, number_of_elements):
            attempts.append(number_of_elements)
            if len(attempts) == 1:
                raise MemoryError
            return super().allocate(number_of_elements)

    buffer = registry.get(_FlakyAllocator, 7)
    assert len(buffer) == 7
    assert attempts == [7, 7]
    assert registry.manager_for(_float_factory).counters().unused == 0
    assert registry.manager_for(_FlakyAllocator).counters().bad_allocs == 1


def test_print_performance_counters_reports_used_managers():
    registry = BufferRegistry()
    buffer = registry.get(DefaultAllocator, 2)
    registry.mark_unused(DefaultAllocator, buffer, 2)
    registry.manager_for(_float_factory)
    out = io.StringIO()
    registry.print_performance_counters(out)
    text = out.getvalue()
    assert text.count("Buffer manager destructor for") == 1
    assert "Recycle rate" in text


def test_default_registry_is_singleton():
    first = default_registry()
    second = default_registry()
    assert first is second
    buffer = first.get(_SingletonProbeAllocator, 11)
    first.mark_unused(_SingletonProbeAllocator, buffer, 11)
    assert second.get(_SingletonProbeAllocator, 11) is buffer
    assert second.manager_for(_SingletonProbeAllocator).counters().recyclings == 1


def test_force_buffer_cleanup_on_default_registry():
    registry = default_registry()
    registry.get(_FloatAllocator, 12)
    force_buffer_cleanup()
    counters = registry.manager_for(_FloatAllocator).counters()
    assert (counters.in_use, counters.unused) == (0, 0)


def test_unused_buffer_cleanup_on_default_registry():
    registry = default_registry()
    used = registry.get(_FloatAllocator, 13)
    released = registry.get(_FloatAllocator, 14)
    registry.mark_unused(_FloatAllocator, released, 14)
    unused_buffer_cleanup()
    counters = registry.manager_for(_FloatAllocator).counters()
    assert counters.unused == 0
    assert counters.in_use >= 1
    registry.mark_unused(_FloatAllocator, used, 13)
    assert registry.manager_for(_FloatAllocator).counters().unused == 1


def test_print_buffer_counters_on_default_registry():
    registry = default_registry()
    buffer = registry.get(_FloatAllocator, 15)
    registry.mark_unused(_FloatAllocator, buffer, 15)
    out = io.StringIO()
    print_buffer_counters(out)
    assert "_FloatAllocator" in out.getvalue()
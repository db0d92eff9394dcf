import logging
from array import array

import pytest

from puddlepool.buffers import (
    BufferEntry,
    BufferManager,
    DefaultAllocator,
    FinalizedError,
    ManagerCounters,
)


class _Record:
    def __init__(self):
        self.allocated = []
        self.deallocated = []
        self.failures_left = 0


def _tracking_factory(record):
    class TrackingAllocator:
        def allocate(self, number_of_elements):
            if record.failures_left:
                record.failures_left -= 1
                raise MemoryError
            buf = array("d", bytes(8 * number_of_elements))
            record.allocated.append(buf)
            return buf

        def deallocate(self, buffer, number_of_elements):
            record.deallocated.append(buffer)

    return TrackingAllocator


@pytest.fixture
def record():
    return _Record()


@pytest.fixture
def manager(record):
    return BufferManager(_tracking_factory(record), 2, 1, None)


def test_default_allocator_returns_zeroed_array():
    buf = DefaultAllocator().allocate(4)
    assert buf == array("d", [0.0] * 4)


def test_default_allocator_deallocate_empties_buffer():
    alloc = DefaultAllocator("i")
    buf = alloc.allocate(3)
    alloc.deallocate(buf, 3)
    assert len(buf) == 0


def test_released_buffer_is_recycled(manager, record):
    first = manager.get(10)
    manager.mark_unused(first, 10)
    second = manager.get(10)
    assert second is first
    assert len(record.allocated) == 1
    c = manager.counters()
    assert (c.allocations, c.creations, c.recyclings, c.deallocations) == (2, 1, 1, 1)


def test_different_size_creates_new_buffer(manager, record):
    first = manager.get(10)
    manager.mark_unused(first, 10)
    second = manager.get(20)
    assert second is not first
    assert len(second) == 20
    assert manager.counters().unused == 1


def test_buffers_in_use_are_not_shared(manager):
    a = manager.get(5)
    b = manager.get(5)
    assert a is not b
    assert manager.counters().in_use == 2


def test_managed_content_is_zeroed_on_switch(manager):
    buf = manager.get(3)
    buf[:] = array("d", [7.0, 7.0, 7.0])
    manager.mark_unused(buf, 3)
    again = manager.get(3, True)
    assert again is buf
    assert list(again) == [0.0, 0.0, 0.0]


def test_aggressive_reuse_keeps_content(manager):
    buf = manager.get(3, True)
    buf[:] = array("d", [1.5, 2.5, 3.5])
    manager.mark_unused(buf, 3)
    again = manager.get(3, True)
    assert list(again) == [1.5, 2.5, 3.5]


def test_invalid_location_and_device_raise(manager):
    with pytest.raises(ValueError):
        manager.get(4, False, 2)
    with pytest.raises(ValueError):
        manager.get(4, False, 0, 1)
    buf = manager.get(4)
    with pytest.raises(ValueError):
        manager.mark_unused(buf, 4, 5)


def test_size_mismatch_on_release_raises(manager):
    buf = manager.get(4)
    with pytest.raises(ValueError):
        manager.mark_unused(buf, 8)


def test_wrong_hint_is_counted_and_buffer_still_recycled(manager):
    buf = manager.get(6, False, 0)
    manager.mark_unused(buf, 6, 1)
    c = manager.counters()
    assert c.wrong_hints == 1
    assert c.deallocations == 1
    assert manager.get(6, False, 0) is buf


def test_correct_hint_is_not_counted_as_wrong(manager):
    buf = manager.get(6, False, 1)
    manager.mark_unused(buf, 6, 1)
    assert manager.counters().wrong_hints == 0
    assert manager.get(6, False, 1) is buf


def test_unknown_buffer_logs_warning(manager, caplog):
    with caplog.at_level(logging.WARNING, logger="puddlepool.buffers"):
        manager.mark_unused(array("d", [0.0]), 1)
    assert "non-existing buffer" in caplog.text
    assert manager.counters().deallocations == 0


def test_finalize_refuses_further_allocation(manager, record):
    buf = manager.get(2)
    manager.finalize()
    assert record.deallocated == [buf]
    with pytest.raises(FinalizedError):
        manager.get(2)
    manager.mark_unused(buf, 2)
    with pytest.raises(FinalizedError):
        manager.clean()


def test_clean_unused_only_keeps_used(manager, record):
    used = manager.get(3)
    spare = manager.get(4)
    manager.mark_unused(spare, 4)
    manager.clean_unused_buffers_only()
    assert record.deallocated == [spare]
    c = manager.counters()
    assert (c.in_use, c.unused) == (1, 0)
    manager.mark_unused(used, 3)
    assert manager.get(3) is used


def test_clean_deallocates_everything(manager, record):
    used = manager.get(3)
    spare = manager.get(4)
    manager.mark_unused(spare, 4)
    manager.clean()
    assert {id(b) for b in record.deallocated} == {id(used), id(spare)}
    c = manager.counters()
    assert (c.in_use, c.unused) == (0, 0)


def test_memory_error_triggers_cleanup_and_retry(manager, record):
    spare = manager.get(8)
    manager.mark_unused(spare, 8)
    record.failures_left = 1
    buf = manager.get(16)
    assert len(buf) == 16
    assert record.deallocated == [spare]
    assert manager.counters().bad_allocs == 1


def test_multi_gpu_requires_device_selector(record):
    mgr = BufferManager(_tracking_factory(record), 1, 2, None)
    with pytest.raises(RuntimeError):
        mgr.get(4)


def test_device_selector_is_called_and_devices_are_separate(record):
    selected = []
    mgr = BufferManager(_tracking_factory(record), 1, 2, selected.append)
    buf = mgr.get(4, False, 0, 1)
    assert selected == [1]
    mgr.mark_unused(buf, 4, 0, 0)
    c = mgr.counters()
    assert c.wrong_device_hints == 1
    assert c.deallocations == 1
    assert mgr.get(4, False, 0, 1) is buf


def test_format_counters(manager):
    assert manager.format_counters() == ""
    buf = manager.get(2)
    manager.mark_unused(buf, 2)
    manager.get(2)
    text = manager.format_counters()
    assert "Recycle rate" in text
    assert "50%" in text


def test_counters_snapshot_defaults():
    assert ManagerCounters().allocations == 0
    entry = BufferEntry([0], 1, 0)
    assert entry.content_managed is False
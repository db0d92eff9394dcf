# puddlepool

puddlepool keeps buffers and executors so that they can be reused instead of
being created again. It has two parts:

- **Buffer recycling.** When you request a buffer, you get a free buffer of the
  same element count if one exists. A new buffer is allocated only when none
  is free. Buffers are kept in buckets, one for each (location, device) pair.
  Each bucket has its own lock.
- **Executor pooling.** A fixed set of executors is created for each device.
  They are handed out either in turn (`RoundRobinPool`) or least loaded first
  (`PriorityPool`). A context manager gives each executor back when you are
  done with it.

The package is pure Python and has no dependencies outside the standard library.

## Installation

```
pip install puddlepool
```

## Modules

- `puddlepool.buffers` contains `BufferManager`, which recycles the buffers of
  one allocator factory. It also contains `BufferEntry`, `ManagerCounters`,
  `DefaultAllocator` (zero-filled `array.array` buffers) and `FinalizedError`.
- `puddlepool.registry` contains `BufferRegistry`, which holds one manager per
  allocator factory. It also holds the process-wide registry and the functions
  that act on it.
- `puddlepool.allocators` contains `AlignedAllocator`, `RecycleAllocator`,
  `AggressiveRecycleAllocator`, `recycle_aligned` and
  `aggressive_recycle_aligned`.
- `puddlepool.executor_pools` contains `RoundRobinPool`, `PriorityPool`,
  `ExecutorPool`, `ExecutorInterface` and `default_executor_pool`.

## Recycling buffers

`recycle_aligned(typecode, alignment)` and
`aggressive_recycle_aligned(typecode, alignment)` build recycling allocators
on top of an `AlignedAllocator`:

- `typecode` is an `array` type code.
- `alignment` is a power of two, counted in bytes.

The allocators return `memoryview` buffers. By default they use the
process-wide registry. When you deallocate a buffer, it becomes free, and the
next allocation of the same size takes it.

```python
from puddlepool.allocators import recycle_aligned, aggressive_recycle_aligned
from puddlepool.registry import print_buffer_counters, force_buffer_cleanup

alloc = recycle_aligned("d", 32)
for _ in range(100):
    buf = alloc.allocate(5000)
    buf[-1] = 1.0
    alloc.deallocate(buf, 5000)   # the next allocate(5000) reuses this buffer

keep = aggressive_recycle_aligned("d", 32)
a = keep.allocate(8)              # fresh buffers are zero-filled
a[0] = 42.0
keep.deallocate(a, 8)
b = keep.allocate(8)              # the same buffer, still holding 42.0

print_buffer_counters()
force_buffer_cleanup()
```

The two allocators treat the contents of a recycled buffer differently:

- `AggressiveRecycleAllocator` keeps the contents. A recycled buffer comes back
  exactly as its last owner left it. A buffer that was last used through the
  non-aggressive allocator is zeroed before it is handed out.
- `RecycleAllocator` leaves the contents alone. Initialising the buffer is up
  to the caller.

Both allocators are frozen dataclasses with these fields:

- `underlying`: the allocator factory.
- `registry`: `None` means the process-wide registry.
- `location_hint` and `device_id`: passed on to the manager with every request.

### Module-level functions

These functions act on the registry returned by `default_registry()`:

- `print_buffer_counters(file=None)` prints a report for every bucket that has
  seen allocations. By default it prints to standard output.
- `unused_buffer_cleanup()` frees the buffers that are not in use.
- `force_buffer_cleanup()` frees every buffer, including the ones in use.
- `finalize()` frees every buffer and marks each existing manager as finalized.

After `finalize()`, a manager behaves as follows:

- Any `get` raises `FinalizedError`.
- `mark_unused` does nothing.
- Cleanup calls raise `FinalizedError`.

A factory that is used for the first time after `finalize()` gets a new manager.
That manager is not finalized.

### Registries and managers

`BufferRegistry(number_instances=1, max_number_gpus=1)` is a separate registry.
Use `get`, `mark_unused`, `clean_all`, `clean_unused_buffers`, `finalize` and
`print_performance_counters` on it directly. `manager_for(factory)` returns the
`BufferManager` of a factory. `counters()` on that manager returns a
`ManagerCounters` snapshot with these fields:

- `allocations`, `recyclings`, `creations`, `deallocations`
- `wrong_hints`, `wrong_device_hints`, `bad_allocs`
- `in_use`, `unused`

A manager raises `ValueError` in these cases:

- a location or device id is out of range;
- a buffer is released with a different element count than it was allocated with.

A manager behaves as follows in a few other cases:

- **Unknown buffer.** Releasing a buffer the manager does not know logs a
  warning through `logging` and changes nothing.
- **`MemoryError`.** If a fresh allocation raises `MemoryError`, the registry
  frees the unused buffers of all its managers. It then tries the allocation
  once more.
- **Several devices.** With `max_number_gpus > 1`, the allocator factory must
  offer a `select_device(device_id)` callable. `AlignedAllocator` offers one,
  and it does nothing. Without one, a fresh allocation raises `RuntimeError`.

## Pooling executors

Any callable that builds an executor works as a factory. `ExecutorPool` keeps
one list of per-device pools for each (factory, pool type) pair.

```python
from puddlepool.executor_pools import (
    ExecutorInterface, RoundRobinPool, default_executor_pool,
)

class MyExecutor:
    def post(self, f, *args):
        f(*args)

pools = default_executor_pool()
pools.init_executor_pool(MyExecutor, RoundRobinPool, 0, 4)   # device 0, 4 executors

if pools.interface_available(MyExecutor, RoundRobinPool, 5, 0):
    with ExecutorInterface(MyExecutor, RoundRobinPool, 0, pools) as executor:
        executor.post(print, "hello")

pools.cleanup(MyExecutor, RoundRobinPool)
```

### Creating pools

- `init(factory, pool_type, n, *args)` adds a pool for the next device. It does
  not select a device.
- `init_all_executor_pools(factory, pool_type, n, *args)` creates a pool on
  every device.
- `init_executor_pool(factory, pool_type, gpu_id, n, *args)` creates a pool on
  one device.

All three pass `*args` to the factory. A count of zero creates nothing. Having
more pools than `max_number_gpus` raises `RuntimeError`.

### Devices

- `set_device_selector(factory, pool_type, fn)` installs the function that is
  called to switch devices.
- `select_device(factory, pool_type, gpu_id)` switches to a device.

Without a selector, only device 0 can be selected.

### Load and cleanup

- `get_current_load(factory, pool_type, gpu_id)` reports the number of users of
  the least loaded executor.
- `interface_available(factory, pool_type, load_limit, gpu_id)` tells whether
  that number is below `load_limit`.
- `cleanup(factory, pool_type)` drops all pools. It raises `RuntimeError` unless
  there is exactly one pool per device.

### Using an executor

`ExecutorInterface(factory, pool_type, gpu_id=0, executor_pool=None)` draws an
executor when it is constructed. It gives the executor back when the `with`
block ends or when `release()` is called. Releasing more than once has no
effect.

`ExecutorInterface` forwards `post`, `async_execute` and `get_future` to the
executor it holds. `interface` is that executor, and `index` is its position
in the pool.

## What the package does not do

The package contains no program of its own. It has no command-line tool and
runs no services.

It does not allocate device memory and does not drive any accelerator. Device
ids are labels for buckets and pools. A device is "selected" only through the
callables you supply.

The package has no scheduler or futures of its own. `ExecutorInterface` calls
whatever `post`, `async_execute` and `get_future` your executors provide.

## Running the tests

```
pip install -e .[test]
pytest
```
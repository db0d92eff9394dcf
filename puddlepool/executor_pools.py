"""Pools of reusable executors with load tracking.

An executor pool holds a fixed number of executors per device and hands them
out in turn, counting how many users each one currently has. Two strategies
are available: :class:`RoundRobinPool` cycles through its executors, and
:class:`PriorityPool` always hands out the least loaded one.

:class:`ExecutorPool` keeps one list of pools (one per device) for every
combination of executor factory and pool strategy, and
:class:`ExecutorInterface` draws an executor from it for the duration of a
``with`` block.
"""

from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

__all__ = [
    "RoundRobinPool",
    "PriorityPool",
    "ExecutorPool",
    "ExecutorInterface",
    "default_executor_pool",
]


class RoundRobinPool:
    """Hands out its executors in turn, regardless of their load."""

    def __init__(
        self, number_of_executors: int, executor_factory: Callable[..., Any], *args: Any
    ) -> None:
        if number_of_executors < 0:
            raise ValueError("number_of_executors must not be negative")
        self.executors = [executor_factory(*args) for _ in range(number_of_executors)]
        self.ref_counters = [0] * number_of_executors
        self._current = 0

    def get_interface(self) -> tuple[Any, int]:
        """Return the next executor and its index, counting it as in use."""
        if not self.executors:
            raise RuntimeError("Executor pool is empty")
        index = self._current
        self._current = (self._current + 1) % len(self.executors)
        self.ref_counters[index] += 1
        return self.executors[index], index

    def release_interface(self, index: int) -> None:
        """Mark one use of the executor at ``index`` as finished."""
        if self.ref_counters[index] == 0:
            raise ValueError(f"Executor {index} is not in use")
        self.ref_counters[index] -= 1

    def interface_available(self, load_limit: int) -> bool:
        """Tell whether some executor has fewer than ``load_limit`` users."""
        return self.get_current_load() < load_limit

    def get_current_load(self) -> int:
        """Return the number of users of the least loaded executor."""
        if not self.ref_counters:
            raise RuntimeError("Executor pool is empty")
        return min(self.ref_counters)


class PriorityPool:
    """Always hands out the executor with the fewest users."""

    def __init__(
        self, number_of_executors: int, executor_factory: Callable[..., Any], *args: Any
    ) -> None:
        if number_of_executors < 0:
            raise ValueError("number_of_executors must not be negative")
        self.executors = [executor_factory(*args) for _ in range(number_of_executors)]
        self.ref_counters = [0] * number_of_executors
        self._priorities = list(range(number_of_executors))

    def _make_heap(self) -> None:
        """Arrange the priorities so the least loaded executor comes first."""
        heap = self._priorities
        keys = self.ref_counters
        size = len(heap)
        for start in range(size // 2 - 1, -1, -1):
            pos = start
            while True:
                child = 2 * pos + 1
                if child >= size:
                    break
                if child + 1 < size and keys[heap[child + 1]] < keys[heap[child]]:
                    child += 1
                if keys[heap[child]] < keys[heap[pos]]:
                    heap[pos], heap[child] = heap[child], heap[pos]
                    pos = child
                else:
                    break

    def _top(self) -> int:
        if not self._priorities:
            raise RuntimeError("Executor pool is empty")
        return self._priorities[0]

    def get_interface(self) -> tuple[Any, int]:
        """Return the least loaded executor and its index, counting it as in use."""
        index = self._top()
        self.ref_counters[index] += 1
        self._make_heap()
        return self.executors[index], index

    def release_interface(self, index: int) -> None:
        """Mark one use of the executor at ``index`` as finished."""
        if self.ref_counters[index] == 0:
            raise ValueError(f"Executor {index} is not in use")
        self.ref_counters[index] -= 1
        self._make_heap()

    def interface_available(self, load_limit: int) -> bool:
        """Tell whether the least loaded executor has fewer than ``load_limit`` users."""
        return self.get_current_load() < load_limit

    def get_current_load(self) -> int:
        """Return the number of users of the least loaded executor."""
        return self.ref_counters[self._top()]


@dataclass
class _PoolSet:
    max_number_gpus: int
    locks: list = field(init=False)
    pools: list = field(default_factory=list)
    select_gpu_function: Optional[Callable[[int], None]] = None

    def __post_init__(self) -> None:
        self.locks = [threading.RLock() for _ in range(self.max_number_gpus)]

    @contextlib.contextmanager
    def all_locks(self):
        with contextlib.ExitStack() as stack:
            for lock in self.locks:
                stack.enter_context(lock)
            yield

    def select(self, gpu_id: int) -> None:
        if self.select_gpu_function is not None:
            self.select_gpu_function(gpu_id)
            return
        # Without a selector only a single device is supported.
        if not (self.max_number_gpus == 1 or len(self.pools) == 1):
            raise RuntimeError("Multi-GPU pools need an explicit device selector")
        if gpu_id != 0:
            raise RuntimeError(
                f"Cannot select device {gpu_id} without a device selector"
            )

    def check_capacity(self) -> None:
        if len(self.pools) > self.max_number_gpus:
            raise RuntimeError(
                f"More executor pools ({len(self.pools)}) than devices "
                f"({self.max_number_gpus})"
            )

    def pool(self, gpu_id: int) -> Any:
        if not 0 <= gpu_id < len(self.pools):
            raise IndexError(f"No executor pool initialized for device {gpu_id}")
        return self.pools[gpu_id]

    def lock(self, gpu_id: int) -> threading.RLock:
        if not 0 <= gpu_id < self.max_number_gpus:
            raise IndexError(f"Invalid device id {gpu_id}")
        return self.locks[gpu_id]


class ExecutorPool:
    """Per-device executor pools, kept separately for each executor factory and strategy."""

    def __init__(self, max_number_gpus: int = 1) -> None:
        if max_number_gpus < 1:
            raise ValueError("max_number_gpus must be positive")
        self.max_number_gpus = max_number_gpus
        self._lock = threading.Lock()
        self._sets: dict[tuple[Any, Any], _PoolSet] = {}

    def _set(self, executor_factory: Any, pool_type: Any) -> _PoolSet:
        key = (executor_factory, pool_type)
        with self._lock:
            pool_set = self._sets.get(key)
            if pool_set is None:
                pool_set = _PoolSet(self.max_number_gpus)
                self._sets[key] = pool_set
            return pool_set

    def init(
        self, executor_factory: Any, pool_type: Any, number_of_executors: int, *args: Any
    ) -> None:
        """Add one pool for the next device, without selecting a device."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.all_locks():
            pool_set.pools.append(
                pool_type(number_of_executors, executor_factory, *args)
            )
            pool_set.check_capacity()

    def init_all_executor_pools(
        self, executor_factory: Any, pool_type: Any, number_of_executors: int, *args: Any
    ) -> None:
        """Create a pool on every device, all with the same executor arguments."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.all_locks():
            if number_of_executors > 0:
                for gpu_id in range(self.max_number_gpus):
                    pool_set.select(gpu_id)
                    pool_set.pools.append(
                        pool_type(number_of_executors, executor_factory, *args)
                    )
            pool_set.check_capacity()

    def init_executor_pool(
        self,
        executor_factory: Any,
        pool_type: Any,
        gpu_id: int,
        number_of_executors: int,
        *args: Any,
    ) -> None:
        """Create a pool for one device with its own executor arguments."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.all_locks():
            if number_of_executors > 0:
                pool_set.select(gpu_id)
                pool_set.pools.append(
                    pool_type(number_of_executors, executor_factory, *args)
                )
            pool_set.check_capacity()

    def cleanup(self, executor_factory: Any, pool_type: Any) -> None:
        """Drop the pools of every device."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.all_locks():
            if len(pool_set.pools) != self.max_number_gpus:
                raise RuntimeError(
                    f"Expected {self.max_number_gpus} executor pools, "
                    f"found {len(pool_set.pools)}"
                )
            pool_set.pools.clear()

    def get_interface(
        self, executor_factory: Any, pool_type: Any, gpu_id: int = 0
    ) -> tuple[Any, int]:
        """Draw an executor from the pool of ``gpu_id``; return it and its index."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.lock(gpu_id):
            return pool_set.pool(gpu_id).get_interface()

    def release_interface(
        self, executor_factory: Any, pool_type: Any, index: int, gpu_id: int = 0
    ) -> None:
        """Give back the executor at ``index`` on ``gpu_id``."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.lock(gpu_id):
            pool_set.pool(gpu_id).release_interface(index)

    def interface_available(
        self, executor_factory: Any, pool_type: Any, load_limit: int, gpu_id: int = 0
    ) -> bool:
        """Tell whether ``gpu_id`` has an executor below ``load_limit`` users."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.lock(gpu_id):
            return pool_set.pool(gpu_id).interface_available(load_limit)

    def get_current_load(
        self, executor_factory: Any, pool_type: Any, gpu_id: int = 0
    ) -> int:
        """Return the load of the least loaded executor on ``gpu_id``."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.lock(gpu_id):
            return pool_set.pool(gpu_id).get_current_load()

    def get_next_device_id(self, number_gpus: int) -> int:
        """Pick a device for the calling thread among ``number_gpus`` devices."""
        if number_gpus < 1:
            raise ValueError("number_gpus must be positive")
        return threading.get_ident() % number_gpus

    def set_device_selector(
        self,
        executor_factory: Any,
        pool_type: Any,
        select_gpu_function: Callable[[int], None],
    ) -> None:
        """Install the callable used to switch to a device before creating a pool."""
        pool_set = self._set(executor_factory, pool_type)
        with pool_set.all_locks():
            pool_set.select_gpu_function = select_gpu_function

    def select_device(self, executor_factory: Any, pool_type: Any, gpu_id: int) -> None:
        """Switch to ``gpu_id`` with the installed device selector."""
        self._set(executor_factory, pool_type).select(gpu_id)


class ExecutorInterface:
    """Holds an executor drawn from a pool and gives it back when released."""

    def __init__(
        self,
        executor_factory: Any,
        pool_type: Any,
        gpu_id: int = 0,
        executor_pool: Optional[ExecutorPool] = None,
    ) -> None:
        self.executor_factory = executor_factory
        self.pool_type = pool_type
        self.gpu_id = gpu_id
        self.executor_pool = (
            executor_pool if executor_pool is not None else default_executor_pool()
        )
        self.interface, self.index = self.executor_pool.get_interface(
            executor_factory, pool_type, gpu_id
        )
        self._released = False

    def __enter__(self) -> "ExecutorInterface":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def release(self) -> None:
        """Give the executor back to its pool; later calls do nothing."""
        if self._released:
            return
        self._released = True
        self.executor_pool.release_interface(
            self.executor_factory, self.pool_type, self.index, self.gpu_id
        )

    def post(self, f: Callable[..., Any], *args: Any) -> Any:
        """Run ``f`` on the executor without waiting for a result."""
        return self.interface.post(f, *args)

    def async_execute(self, f: Callable[..., Any], *args: Any) -> Any:
        """Run ``f`` on the executor and return its future."""
        return self.interface.async_execute(f, *args)

    def get_future(self) -> Any:
        """Return a future that completes once the executor is idle."""
        return self.interface.get_future()


_default: Optional[ExecutorPool] = None
_default_lock = threading.Lock()


def default_executor_pool() -> ExecutorPool:
    """Return the process-wide executor pool, creating it on first use."""
    global _default
    with _default_lock:
        if _default is None:
            _default = ExecutorPool()
        return _default
"""Buffer recycling with per-allocator managers, aligned recycling allocators, and executor pools."""

__version__ = "0.1.0"
__all__ = ["allocators", "buffers", "executor_pools", "registry"]
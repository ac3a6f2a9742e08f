"""A pool of worker threads sharing interruptible cooperative tasks."""

__version__ = "0.1.1"
__all__ = ["pool", "shared_work"]
"""Work-sharing scheduling of fiber contexts across worker threads.

Each worker thread owns a :class:`SharedWorkScheduler`. Ordinary fibers
go on one ready queue shared by every scheduler of a configuration, so
any idle worker may pick them up. Fibers bound to a thread stay on that
scheduler's private queue. Pinned contexts, such as a thread's main or
dispatcher fiber, stay on its local queue. The thread registered as the
main thread never runs shared fibers. When it is scheduled it wakes the
workers instead.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional


class FiberProperties:
    """Per-fiber flags: bound to a thread, finished, interrupt requested."""

    def __init__(self, priority: int = 0) -> None:
        self.priority = priority
        self._binding = threading.Event()
        self._finished = threading.Event()
        self._interrupted = threading.Event()

    def interrupted(self) -> bool:
        return self._interrupted.is_set()

    def interrupt(self) -> None:
        self._interrupted.set()

    def finished(self) -> bool:
        return self._finished.is_set()

    def finish(self) -> None:
        self._finished.set()

    def bind(self) -> None:
        self._binding.set()

    def binding(self) -> bool:
        return self._binding.is_set()


@dataclass(eq=False)
class Context:
    """A schedulable unit of execution together with its properties.

    ``pinned`` marks contexts that must never leave their thread's local
    queue. ``scheduler`` is the scheduler the context is attached to, or
    ``None`` while it waits on the shared queue.
    """

    target: Optional[Callable[[], object]] = None
    pinned: bool = False
    properties: FiberProperties = field(default_factory=FiberProperties)
    scheduler: Optional["SharedWorkScheduler"] = None
    _ready_queue: Optional[deque] = field(default=None, repr=False)

    def ready_is_linked(self) -> bool:
        """Whether the context sits in a scheduler's local ready queue."""
        return self._ready_queue is not None

    def ready_unlink(self) -> None:
        """Remove the context from the local ready queue that holds it."""
        if self._ready_queue is not None:
            self._ready_queue.remove(self)
            self._ready_queue = None


class SharedWorkConfig:
    """State shared by all schedulers: main thread, instances and shared queue."""

    def __init__(self) -> None:
        self._main_thread_id: Optional[int] = None
        self._lock = threading.Lock()
        self._schedulers: dict[SharedWorkScheduler, None] = {}
        self._ready: deque[Context] = deque()
        self._ready_lock = threading.Lock()

    def set_main_thread(self, thread_id: int) -> None:
        self._main_thread_id = thread_id

    def is_main_thread(self) -> bool:
        if self._main_thread_id is None:
            raise RuntimeError("The main thread has not been set")
        return threading.get_ident() == self._main_thread_id

    def add_instance(self, scheduler: "SharedWorkScheduler") -> None:
        with self._lock:
            self._schedulers[scheduler] = None

    def remove_instance(self, scheduler: "SharedWorkScheduler") -> None:
        with self._lock:
            self._schedulers.pop(scheduler, None)

    def notify_one(self) -> None:
        """Wake the first registered scheduler, if more than one exists."""
        with self._lock:
            if len(self._schedulers) > 1:
                next(iter(self._schedulers)).notify()

    def notify_all(self) -> None:
        """Wake every registered scheduler, if more than one exists."""
        with self._lock:
            if len(self._schedulers) > 1:
                for scheduler in self._schedulers:
                    scheduler.notify()

    def __len__(self) -> int:
        with self._lock:
            return len(self._schedulers)

    def __contains__(self, scheduler: object) -> bool:
        with self._lock:
            return scheduler in self._schedulers


_GLOBAL_CONFIG = SharedWorkConfig()


def global_config() -> SharedWorkConfig:
    """Return the process-wide scheduler configuration."""
    return _GLOBAL_CONFIG


class SharedWorkScheduler:
    """Scheduling algorithm that shares ready fibers between threads."""

    def __init__(self, suspend: bool = True, config: Optional[SharedWorkConfig] = None) -> None:
        self._config = config if config is not None else global_config()
        self._suspend = suspend
        self._bound: deque[Context] = deque()
        self._local: deque[Context] = deque()
        self._cond = threading.Condition()
        self._flag = False
        self._closed = False
        self._config.add_instance(self)

    @property
    def config(self) -> SharedWorkConfig:
        return self._config

    def awakened(self, ctx: Context) -> None:
        """Make ``ctx`` ready to run."""
        if ctx.pinned:
            self._local.append(ctx)
            ctx._ready_queue = self._local
        elif ctx.properties.binding():
            if self._config.is_main_thread():
                raise RuntimeError("The fibers cannot be bind to the main thread")
            self._bound.append(ctx)
            ctx._ready_queue = self._bound
        else:
            ctx.scheduler = None
            with self._config._ready_lock:
                self._config._ready.append(ctx)
            self._config.notify_all()

    def property_change(self, ctx: Context) -> None:
        """Requeue ``ctx`` after its properties changed, if it is queued here."""
        if not ctx.ready_is_linked():
            return
        ctx.ready_unlink()
        self.awakened(ctx)

    def pick_next(self) -> Optional[Context]:
        """Return the next context to run, or ``None`` if nothing is ready."""
        if self._config.is_main_thread():
            self._config.notify_all()
        else:
            if self._bound:
                ctx = self._bound.popleft()
                ctx._ready_queue = None
                return ctx
            with self._config._ready_lock:
                ctx = self._config._ready.popleft() if self._config._ready else None
            if ctx is not None:
                ctx.scheduler = self
                return ctx
        if self._local:
            ctx = self._local.popleft()
            ctx._ready_queue = None
            return ctx
        return None

    def has_ready_fibers(self) -> bool:
        if self._config.is_main_thread():
            return bool(self._local)
        with self._config._ready_lock:
            shared = bool(self._config._ready)
        return bool(self._bound) or shared or bool(self._local)

    def suspend_until(self, deadline: Optional[float]) -> bool:
        """Block until notified or until ``deadline`` (a ``time.monotonic`` value).

        ``None`` waits without limit. Returns whether a notification arrived.
        A scheduler created with ``suspend=False`` never blocks.
        """
        if not self._suspend:
            return False
        with self._cond:
            if deadline is None:
                self._cond.wait_for(lambda: self._flag)
            else:
                self._cond.wait_for(
                    lambda: self._flag, max(0.0, deadline - time.monotonic())
                )
            woken = self._flag
            self._flag = False
        return woken

    def notify(self) -> None:
        """Wake a thread blocked in :meth:`suspend_until`."""
        if self._suspend:
            with self._cond:
                self._flag = True
                self._cond.notify_all()

    def close(self) -> None:
        """Unregister from the configuration."""
        if not self._closed:
            self._closed = True
            self._config.remove_instance(self)

    def __enter__(self) -> "SharedWorkScheduler":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
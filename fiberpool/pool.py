"""A pool of worker threads that share the execution of cooperative fibers.

Every task given to the pool runs as a fiber. A fiber gives up its worker
only when it calls :func:`sleep_for` or finishes, so a few workers can carry
many sleeping tasks. Ready fibers sit on a queue that all workers share, and
an idle worker picks up whichever fiber is next. A fiber that called
:func:`bind_thread` stays with the worker it is running on. Fibers never run
on the thread that created the pool.
"""

from __future__ import annotations

import atexit
import enum
import functools
import heapq
import itertools
import os
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Optional

from .shared_work import Context, SharedWorkConfig, SharedWorkScheduler, global_config

_IDLE_WAIT = 0.1
_JOIN_POLL = 0.1

_tls = threading.local()


def _current_context() -> Optional["_FiberContext"]:
    return getattr(_tls, "context", None)


class PoolState(enum.IntEnum):
    """Stages in the life of a pool."""

    RUNNING = 0
    """Tasks may be posted."""
    WAITING = 1
    """Shutting down after all pending tasks finish; posting raises."""
    CLEANING = 2
    """Shutting down and interrupting pending tasks; posting raises."""
    STOPPED = 3
    """The pool does nothing and cannot run again."""


_OnDone = Callable[[bool, Any, Optional[BaseException]], None]


class _FiberContext(Context):
    """A context whose code runs on its own thread, one hand-off at a time."""

    _serials = itertools.count(1)

    def __init__(self, pool: "Pool", target: Callable[[], Any], on_done: Optional[_OnDone] = None) -> None:
        super().__init__(target=target)
        self.pool = pool
        self.serial = next(self._serials)
        self.on_done = on_done
        self.data: dict[Any, Any] = {}
        self.done = threading.Event()
        self.wake_at = 0.0
        self._thread: Optional[threading.Thread] = None
        self._resume = threading.Semaphore(0)
        self._yield = threading.Semaphore(0)

    def switch_in(self) -> None:
        """Run the fiber from the calling worker until it yields or ends."""
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._main, name=f"fiber-{self.serial}", daemon=True
            )
            self._thread.start()
        else:
            self._resume.release()
        self._yield.acquire()

    def switch_out(self) -> None:
        """Give the worker back and wait to be resumed (fiber side)."""
        self._yield.release()
        self._resume.acquire()

    def _main(self) -> None:
        _tls.context = self
        ran = False
        value: Any = None
        error: Optional[BaseException] = None
        try:
            if not interrupted():
                ran = True
                try:
                    value = self.target()
                except BaseException as exc:  # a task's failure must not kill its worker
                    error = exc
        finally:
            self.pool._fiber_exited()
            self.properties.finish()
            if self.on_done is not None:
                try:
                    self.on_done(ran, value, error)
                except Exception:
                    pass
            self.done.set()
            self._yield.release()


class Fiber:
    """Handle to a task posted to a pool.

    A handle made without a context is empty: it is finished, not joinable,
    and joining it returns at once.
    """

    def __init__(self, context: Optional[_FiberContext] = None) -> None:
        self._context = context
        self._interrupt_on_close = False
        self._joined = False

    @property
    def id(self) -> Optional[int]:
        """Identifier of the fiber, or ``None`` for an empty or joined handle."""
        if self._context is None or self._joined:
            return None
        return self._context.serial

    def finished(self) -> bool:
        """Whether the task ran to completion or was skipped after an interrupt."""
        if self._context is None:
            return True
        return self._context.properties.finished()

    def joinable(self) -> bool:
        """Whether the handle refers to a fiber that has not been joined."""
        return self._context is not None and not self._joined

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the fiber to end; return whether it did within ``timeout``."""
        if self._context is None:
            return True
        if self._context is _current_context():
            raise RuntimeError("A fiber cannot join itself")
        ended = self._context.done.wait(timeout)
        if ended:
            self._joined = True
        return ended

    def interrupt(self) -> None:
        """Ask the fiber to stop; see :func:`interrupted`."""
        if self._context is not None:
            self._context.properties.interrupt()

    def interrupt_on_destruct(self) -> None:
        """Interrupt the fiber when this handle is closed."""
        if self._context is not None:
            self._interrupt_on_close = True

    def close(self) -> None:
        """Detach from the fiber, interrupting it if that was requested."""
        if self._context is not None:
            if self._interrupt_on_close:
                self._context.properties.interrupt()
            self._context = None

    def __enter__(self) -> "Fiber":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Pool:
    """Worker threads that share every fiber posted to the pool.

    ``threads`` is the number of workers; ``-1`` or ``None`` means twice the
    number of logical CPUs, counting at least two. The thread that creates the
    pool becomes the main thread of ``config``.
    """

    def __init__(self, threads: Optional[int] = -1, *, config: Optional[SharedWorkConfig] = None) -> None:
        if threads is None or threads == -1:
            threads = max(os.cpu_count() or 1, 2) * 2
        elif threads < 0:
            raise ValueError("threads must be -1 or a non-negative count")
        self._config = config if config is not None else SharedWorkConfig()
        self._config.set_main_thread(threading.get_ident())
        self._state_lock = threading.Lock()
        self._state = PoolState.RUNNING
        self._count = 0
        self._count_lock = threading.Lock()
        self._dispatcher = SharedWorkScheduler(suspend=False, config=self._config)
        self._schedulers = [SharedWorkScheduler(config=self._config) for _ in range(threads)]
        self._threads = [
            threading.Thread(target=self._work, args=(scheduler,), name=f"fiberpool - {index}", daemon=True)
            for index, scheduler in enumerate(self._schedulers)
        ]
        for thread in self._threads:
            thread.start()

    def state(self) -> PoolState:
        return self._state

    def post(self, fn: Callable[..., Any], *args: Any) -> Fiber:
        """Run ``fn(*args)`` in a fiber; its result and exceptions are dropped."""
        return self._dispatch(functools.partial(fn, *args), None)

    def submit(self, fn: Callable[..., Any], *args: Any) -> "Future[Any]":
        """Run ``fn(*args)`` in a fiber and return a future for its outcome.

        If the pool interrupts the task before it starts, the future is
        cancelled.
        """
        future: Future[Any] = Future()

        def settle(ran: bool, value: Any, error: Optional[BaseException]) -> None:
            if not ran:
                future.cancel()
            elif error is not None:
                future.set_exception(error)
            else:
                future.set_result(value)

        self._dispatch(functools.partial(fn, *args), settle)
        return future

    def fiber_count(self) -> int:
        """Number of tasks posted and not yet ended."""
        with self._count_lock:
            return self._count

    def shutdown(self, wait: bool = False) -> None:
        """Stop taking tasks, end the workers and mark the pool stopped.

        With ``wait`` the pending tasks run to completion first; without it
        they are interrupted and those not yet started are dropped.
        """
        current = _current_context()
        if current is not None and current.pool is self:
            raise RuntimeError("The pool cannot be shut down from one of its own fibers")
        with self._state_lock:
            if self._state == PoolState.STOPPED:
                return
            self._state = max(self._state, PoolState.WAITING if wait else PoolState.CLEANING)
        self._wake_workers()

        for thread in self._threads:
            while True:
                thread.join(_JOIN_POLL)
                if not thread.is_alive():
                    break
                if self.fiber_count() == 0:
                    with self._state_lock:
                        self._state = max(self._state, PoolState.CLEANING)
                    self._wake_workers()

        with self._state_lock:
            self._state = PoolState.STOPPED
        self._dispatcher.close()

    def __enter__(self) -> "Pool":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _dispatch(self, target: Callable[[], Any], on_done: Optional[_OnDone]) -> Fiber:
        with self._state_lock:
            if self._state != PoolState.RUNNING:
                raise RuntimeError("The task cannot be delivered at this time.")
            with self._count_lock:
                self._count += 1
            ctx = _FiberContext(self, target, on_done)
            self._dispatcher.awakened(ctx)
        return Fiber(ctx)

    def _fiber_exited(self) -> None:
        with self._count_lock:
            self._count -= 1

    def _wake_workers(self) -> None:
        for scheduler in self._schedulers:
            scheduler.notify()

    def _work(self, scheduler: SharedWorkScheduler) -> None:
        sleepers: list[tuple[float, int, _FiberContext]] = []
        order = itertools.count()
        try:
            while True:
                cleaning = self._state >= PoolState.CLEANING
                now = time.monotonic()
                while sleepers and (cleaning or sleepers[0][0] <= now):
                    scheduler.awakened(heapq.heappop(sleepers)[2])

                ctx = scheduler.pick_next()
                if ctx is not None:
                    ctx.switch_in()
                    if not ctx.done.is_set():
                        heapq.heappush(sleepers, (ctx.wake_at, next(order), ctx))
                    continue

                if cleaning and not sleepers:
                    break
                deadline = now + _IDLE_WAIT
                if sleepers:
                    deadline = min(deadline, sleepers[0][0])
                scheduler.suspend_until(deadline)
        finally:
            scheduler.close()


_default_pool: Optional[Pool] = None
_default_pool_lock = threading.Lock()


def get_fiber_pool(threads: Optional[int] = -1) -> Pool:
    """Return the process-wide pool, creating it on the first call.

    The first caller's thread becomes the main thread, on which fibers never
    run. ``threads`` matters only on that first call.
    """
    global _default_pool
    with _default_pool_lock:
        if _default_pool is None:
            _default_pool = Pool(threads, config=global_config())
            atexit.register(_default_pool.shutdown)
        return _default_pool


def interrupted() -> bool:
    """Whether the current fiber has been asked to stop.

    True once its pool is cleaning up or stopped, or after
    :meth:`Fiber.interrupt`. Outside a fiber this is always false.
    """
    ctx = _current_context()
    if ctx is None:
        return False
    return ctx.pool.state() > PoolState.WAITING or ctx.properties.interrupted()


def bind_thread() -> None:
    """Keep the current fiber on the worker thread that is running it."""
    ctx = _current_context()
    if ctx is None:
        raise RuntimeError("bind_thread() must be called from inside a fiber")
    ctx.properties.bind()


def data() -> dict:
    """Return the current fiber's user data, a dictionary it keeps for life."""
    ctx = _current_context()
    if ctx is None:
        raise RuntimeError("data() must be called from inside a fiber")
    return ctx.data


def sleep_for(seconds: float) -> None:
    """Suspend the current fiber, freeing its worker, for ``seconds``.

    Outside a fiber this sleeps the calling thread.
    """
    ctx = _current_context()
    if ctx is None:
        time.sleep(max(0.0, seconds))
        return
    ctx.wake_at = time.monotonic() + max(0.0, seconds)
    ctx.switch_out()
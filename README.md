# fiberpool

A pool of worker threads that share one queue of cooperative tasks
("fibers"). A fiber gives up its worker only when it calls `sleep_for()` or
finishes, so a few workers can carry many sleeping tasks. Tasks can be
posted fire-and-forget, submitted for a future result, interrupted
cooperatively, and bound to the worker thread they are running on.

## Installation

```
pip install fiberpool
```

The package has no dependencies outside the standard library.

## Usage

```python
from fiberpool.pool import get_fiber_pool, interrupted, bind_thread, sleep_for

pool = get_fiber_pool()          # created on first call; threads default to 2 x CPUs (at least 4)

# Run a callable and wait for its result.
future = pool.submit(lambda: 6)
assert future.result() == 6

# Fire-and-forget: returns a Fiber handle.
def loop(index):
    bind_thread()                # stay on the current worker thread
    for _ in range(1000):
        if interrupted():
            break
        sleep_for(0.005)         # free the worker for other fibers

handles = [pool.post(loop, i) for i in range(10)]
handles[0].interrupt()           # ask one task to stop
handles[1].join(timeout=5)       # True if it ended within the timeout

print(pool.fiber_count())        # tasks posted and not yet ended

pool.shutdown()                  # interrupt pending work and stop the workers
```

`get_fiber_pool()` returns one process-wide `Pool`; the `threads` argument
matters only on the first call, and the pool is shut down at interpreter
exit. The first thread to call it is the main thread: fibers never run on
it. A separate pool can be made with `Pool(threads)`, which also works as a
context manager that calls `shutdown()` on exit.

### Tasks

- `Pool.post(fn, *args)` runs `fn(*args)` in a fiber and returns a `Fiber`.
  Its return value and any exception it raises are discarded.
- `Pool.submit(fn, *args)` returns a `concurrent.futures.Future` holding the
  result or the exception. If the pool interrupts the task before it starts,
  the future is cancelled.

A `Fiber` handle offers `finished()`, `joinable()`, `join(timeout)`,
`interrupt()`, `interrupt_on_destruct()` and `close()` (also used as a
context manager), plus an `id` property. A fiber cannot join itself.

### Inside a fiber

- `interrupted()` - true once the fiber was interrupted or its pool is
  cleaning up or stopped; always false outside a fiber. A task that is
  already interrupted when it would start is skipped.
- `bind_thread()` - keep the fiber on its current worker thread.
- `data()` - a dictionary kept with the fiber for its lifetime.
- `sleep_for(seconds)` - suspend the fiber and free its worker; outside a
  fiber it sleeps the calling thread.

`bind_thread()` and `data()` raise `RuntimeError` outside a fiber.

### Pool states

`pool.state()` returns a `PoolState`:

- `RUNNING` - tasks may be posted.
- `WAITING` - `shutdown(wait=True)` is waiting for pending tasks.
- `CLEANING` - pending tasks are being interrupted; those not started are dropped.
- `STOPPED` - the pool has shut down and cannot be restarted.

Posting while the pool is not running raises `RuntimeError`, and so does
calling `shutdown()` from one of the pool's own fibers.

### Scheduling

`fiberpool.shared_work` holds the scheduling pieces the pool is built on:
`SharedWorkScheduler` (one per worker), `SharedWorkConfig` (the main thread,
the registered schedulers and the shared ready queue), `Context`,
`FiberProperties` and `global_config()`.

## Limitations

Fibers yield only at `sleep_for()`; a task that blocks in any other way
holds its worker until it returns. Each fiber runs its code on a thread of
its own that is handed control one step at a time, so fibers cost as much
memory as threads.

## Running the tests

```
pip install fiberpool[test]
pytest
```
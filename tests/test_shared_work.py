import threading
import time

import pytest

from fiberpool.shared_work import (
    Context,
    FiberProperties,
    SharedWorkConfig,
    SharedWorkScheduler,
    global_config,
)

OTHER_THREAD = -1


@pytest.fixture
def worker_config():
    config = SharedWorkConfig()
    config.set_main_thread(OTHER_THREAD)
    return config


@pytest.fixture
def main_config():
    config = SharedWorkConfig()
    config.set_main_thread(threading.get_ident())
    return config


def test_properties_flags():
    props = FiberProperties()
    assert (props.interrupted(), props.finished(), props.binding()) == (False, False, False)
    props.interrupt()
    props.finish()
    props.bind()
    assert (props.interrupted(), props.finished(), props.binding()) == (True, True, True)


def test_is_main_thread_requires_setting():
    config = SharedWorkConfig()
    with pytest.raises(RuntimeError):
        config.is_main_thread()


def test_is_main_thread(main_config, worker_config):
    assert main_config.is_main_thread() is True
    assert worker_config.is_main_thread() is False


def test_global_config_is_singleton():
    first = global_config()
    scheduler = SharedWorkScheduler()
    try:
        assert scheduler in first
        assert scheduler in global_config()
    finally:
        scheduler.close()
    assert scheduler not in global_config()


def test_register_and_close(worker_config):
    s = SharedWorkScheduler(config=worker_config)
    assert s in worker_config
    assert len(worker_config) == 1
    s.close()
    s.close()
    assert s not in worker_config
    assert len(worker_config) == 0


def test_context_manager_closes(worker_config):
    with SharedWorkScheduler(config=worker_config) as s:
        assert s in worker_config
    assert s not in worker_config


def test_pick_next_empty(worker_config):
    with SharedWorkScheduler(config=worker_config) as s:
        assert s.pick_next() is None
        assert s.has_ready_fibers() is False


def test_order_bound_shared_local(worker_config):
    with SharedWorkScheduler(config=worker_config) as s:
        local = Context(pinned=True)
        shared = Context()
        bound = Context()
        bound.properties.bind()
        s.awakened(local)
        s.awakened(shared)
        s.awakened(bound)
        assert s.has_ready_fibers() is True
        assert [s.pick_next() for _ in range(4)] == [bound, shared, local, None]


def test_shared_queue_between_schedulers(worker_config):
    with SharedWorkScheduler(config=worker_config) as s1, SharedWorkScheduler(
        config=worker_config
    ) as s2:
        ctx = Context()
        s1.awakened(ctx)
        assert ctx.scheduler is None
        assert s2.has_ready_fibers() is True
        assert s2.pick_next() is ctx
        assert ctx.scheduler is s2
        assert s1.pick_next() is None


def test_shared_awaken_notifies_all(worker_config):
    with SharedWorkScheduler(config=worker_config) as s1, SharedWorkScheduler(
        config=worker_config
    ) as s2:
        s1.awakened(Context())
        assert s1.suspend_until(time.monotonic() + 5) is True
        assert s2.suspend_until(time.monotonic() + 5) is True


def test_notify_all_needs_more_than_one(worker_config):
    with SharedWorkScheduler(config=worker_config) as s:
        worker_config.notify_all()
        worker_config.notify_one()
        assert s.suspend_until(time.monotonic() + 0.05) is False


def test_notify_one_wakes_single_scheduler(worker_config):
    with SharedWorkScheduler(config=worker_config) as s1, SharedWorkScheduler(
        config=worker_config
    ) as s2:
        worker_config.notify_one()
        woken = [s1.suspend_until(time.monotonic()), s2.suspend_until(time.monotonic())]
        assert sorted(woken) == [False, True]


def test_main_thread_skips_shared(main_config):
    with SharedWorkScheduler(config=main_config) as s:
        shared = Context()
        local = Context(pinned=True)
        s.awakened(shared)
        assert s.has_ready_fibers() is False
        s.awakened(local)
        assert s.has_ready_fibers() is True
        assert s.pick_next() is local
        assert s.pick_next() is None


def test_bound_on_main_thread_rejected(main_config):
    with SharedWorkScheduler(config=main_config) as s:
        ctx = Context()
        ctx.properties.bind()
        with pytest.raises(RuntimeError):
            s.awakened(ctx)


def test_property_change_not_queued_is_noop(worker_config):
    with SharedWorkScheduler(config=worker_config) as s:
        ctx = Context(pinned=True)
        s.property_change(ctx)
        assert s.pick_next() is None


def test_property_change_requeues(worker_config):
    with SharedWorkScheduler(config=worker_config) as s1, SharedWorkScheduler(
        config=worker_config
    ) as s2:
        ctx = Context(pinned=True)
        s1.awakened(ctx)
        assert ctx.ready_is_linked() is True
        ctx.pinned = False
        s1.property_change(ctx)
        assert ctx.ready_is_linked() is False
        assert s2.pick_next() is ctx


def test_no_suspend_never_blocks(worker_config):
    with SharedWorkScheduler(suspend=False, config=worker_config) as s:
        s.notify()
        start = time.monotonic()
        assert s.suspend_until(None) is False
        assert time.monotonic() - start < 1


def test_notify_wakes_waiting_thread(worker_config):
    with SharedWorkScheduler(config=worker_config) as s:
        timer = threading.Timer(0.05, s.notify)
        timer.start()
        try:
            woke = s.suspend_until(time.monotonic() + 5)
        finally:
            timer.join(5)
        assert woke is True


def test_flag_consumed_after_wake(worker_config):
    with SharedWorkScheduler(config=worker_config) as s:
        s.notify()
        assert s.suspend_until(time.monotonic() + 1) is True
        assert s.suspend_until(time.monotonic()) is False
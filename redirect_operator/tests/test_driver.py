import asyncio
import threading

import pytest

from redirect_operator.internal.domain.models import ObjectKey
from redirect_operator.internal.reconciler.action import Action
from redirect_operator.internal.reconciler.driver import Controller
from redirect_operator.internal.store.reflector import Store
from redirect_operator.metrics import Metrics
from redirect_operator.tests.factories import make_redirect


class FakeLeader:
    def __init__(self, leading=True):
        self.leading = leading

    def is_leader(self):
        return self.leading


def make_store(*names):
    store = Store()
    store.replace([make_redirect(name=name) for name in names])
    return store


async def start(controller):
    stop = asyncio.Event()
    task = asyncio.create_task(controller.run(stop))
    await asyncio.sleep(0)
    return stop, task


async def finish(stop, task):
    stop.set()
    await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    # Setup
    names = ["a", "b", "c", "d", "e"]
    running = 0
    peak = 0
    seen = []
    all_done = asyncio.Event()

    async def reconcile(redirect):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        seen.append(redirect.name)
        if len(seen) == len(names):
            all_done.set()
        return Action.await_change()

    controller = Controller(make_store(*names), reconcile, FakeLeader(), Metrics(), concurrency=2)
    stop, task = await start(controller)

    await asyncio.wait_for(all_done.wait(), timeout=5)
    await finish(stop, task)

    # Verify
    assert sorted(seen) == names
    assert peak == 2


@pytest.mark.asyncio
async def test_same_key_never_runs_twice_at_once():
    key = ObjectKey("default", "a")
    release = asyncio.Event()
    entered = asyncio.Event()
    second_done = asyncio.Event()
    calls = 0
    running = 0
    peak = 0

    async def reconcile(redirect):
        nonlocal calls, running, peak
        calls += 1
        running += 1
        peak = max(peak, running)
        entered.set()
        if calls == 1:
            await release.wait()
        running -= 1
        if calls == 2:
            second_done.set()
        return Action.await_change()

    controller = Controller(make_store("a"), reconcile, FakeLeader(), Metrics(), concurrency=2)
    stop, task = await start(controller)
    await asyncio.wait_for(entered.wait(), timeout=5)

    # Triggered while in flight: deferred, not run in parallel
    controller.enqueue(key)
    controller.enqueue(key)
    await asyncio.sleep(0.01)
    assert calls == 1

    release.set()
    await asyncio.wait_for(second_done.wait(), timeout=5)
    await finish(stop, task)

    assert calls == 2
    assert peak == 1


@pytest.mark.asyncio
async def test_failure_is_counted_and_retried():
    metrics = Metrics()
    attempts = 0
    succeeded = asyncio.Event()

    async def reconcile(redirect):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("boom")
        succeeded.set()
        return Action.await_change()

    controller = Controller(make_store("a"), reconcile, FakeLeader(), metrics, error_requeue_seconds=0.01)
    stop, task = await start(controller)
    await asyncio.wait_for(succeeded.wait(), timeout=5)
    await finish(stop, task)

    assert attempts == 2
    assert metrics.registry.get_sample_value(
        'redirect_controller_reconcile_failures_total', {'instance': 'default/a', 'error': 'runtimeerror'}) == 1.0
    assert metrics.registry.get_sample_value('redirect_controller_reconcile_runs_total') == 2.0
    assert metrics.registry.get_sample_value('redirect_controller_reconcile_duration_seconds_count') == 2.0


@pytest.mark.asyncio
async def test_requeue_after_schedules_another_run():
    calls = 0
    twice = asyncio.Event()

    async def reconcile(redirect):
        nonlocal calls
        calls += 1
        if calls == 2:
            twice.set()
        return Action.requeue(0.01)

    controller = Controller(make_store("a"), reconcile, FakeLeader(), Metrics())
    stop, task = await start(controller)
    await asyncio.wait_for(twice.wait(), timeout=5)
    await finish(stop, task)

    assert calls >= 2


@pytest.mark.asyncio
async def test_nothing_runs_without_leadership():
    leader = FakeLeader(leading=False)
    reconciled = asyncio.Event()

    async def reconcile(redirect):
        reconciled.set()
        return Action.await_change()

    controller = Controller(make_store("a"), reconcile, leader, Metrics())
    stop, task = await start(controller)
    controller.enqueue(ObjectKey("default", "a"))
    await asyncio.sleep(0.05)
    assert not reconciled.is_set()

    # Gaining leadership queues everything in the store
    leader.leading = True
    controller.resync()
    await asyncio.wait_for(reconciled.wait(), timeout=5)
    await finish(stop, task)


@pytest.mark.asyncio
async def test_notify_from_another_thread():
    store = make_store()
    reconciled = asyncio.Event()

    async def reconcile(redirect):
        reconciled.set()
        return Action.await_change()

    controller = Controller(store, reconcile, FakeLeader(), Metrics())
    stop, task = await start(controller)

    store.apply_event('ADDED', make_redirect(name="late"))
    thread = threading.Thread(target=controller.notify, args=(ObjectKey("default", "late"),))
    thread.start()
    thread.join()

    await asyncio.wait_for(reconciled.wait(), timeout=5)
    await finish(stop, task)


@pytest.mark.asyncio
async def test_missing_object_is_skipped():
    calls = []

    async def reconcile(redirect):
        calls.append(redirect)
        return Action.await_change()

    controller = Controller(make_store(), reconcile, FakeLeader(), Metrics())
    stop, task = await start(controller)
    controller.enqueue(ObjectKey("default", "gone"))
    await asyncio.sleep(0.02)
    await finish(stop, task)

    assert calls == []


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_reconciliation():
    started = asyncio.Event()
    finished = []

    async def reconcile(redirect):
        started.set()
        await asyncio.sleep(0.05)
        finished.append(redirect.name)
        return Action.requeue(300)

    controller = Controller(make_store("a"), reconcile, FakeLeader(), Metrics())
    stop, task = await start(controller)
    await asyncio.wait_for(started.wait(), timeout=5)

    await finish(stop, task)

    assert finished == ["a"]


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        Controller(Store(), None, FakeLeader(), Metrics(), concurrency=0)

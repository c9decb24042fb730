import asyncio
import threading

from doc2md.scheduler import LoopScheduler, ManualScheduler


def test_manual_scheduler_fires_in_deadline_order():
    scheduler = ManualScheduler()
    fired = []
    scheduler.call_later(10, lambda: fired.append("b"))
    scheduler.call_later(5, lambda: fired.append("a"))
    scheduler.call_later(20, lambda: fired.append("c"))

    scheduler.advance(10)

    assert fired == ["a", "b"]
    assert scheduler.now() == 10
    assert scheduler.pending == 1
    assert scheduler.next_deadline() == 20


def test_manual_scheduler_skips_cancelled():
    scheduler = ManualScheduler(start=100)
    fired = []
    handle = scheduler.call_later(1, lambda: fired.append("x"))
    handle.cancel()
    handle.cancel()

    scheduler.advance(5)

    assert fired == []
    assert scheduler.pending == 0
    assert scheduler.next_deadline() is None


def test_callbacks_scheduled_while_advancing_run_if_due():
    scheduler = ManualScheduler()
    fired = []
    scheduler.call_later(1, lambda: scheduler.call_later(1, lambda: fired.append("nested")))

    scheduler.advance(3)

    assert fired == ["nested"]


def test_loop_scheduler_uses_running_loop():
    async def main():
        scheduler = LoopScheduler()
        done = asyncio.Event()
        scheduler.call_later(0.01, done.set)
        await asyncio.wait_for(done.wait(), timeout=1)

    asyncio.run(main())


def test_loop_scheduler_survives_failing_callback():
    async def main():
        scheduler = LoopScheduler()
        done = asyncio.Event()

        def boom():
            raise RuntimeError("boom")

        scheduler.call_later(0, boom)
        scheduler.call_later(0.01, done.set)
        await asyncio.wait_for(done.wait(), timeout=1)

    asyncio.run(main())


def _timer_threads():
    return [t for t in threading.enumerate() if isinstance(t, threading.Timer)]


def test_loop_scheduler_routes_worker_thread_calls_to_the_loop():
    async def main():
        scheduler = LoopScheduler()
        scheduler.attach()
        done = asyncio.Event()
        fired = []

        for _ in range(20):
            await asyncio.to_thread(scheduler.call_later, 60, lambda: fired.append("late"))
        await asyncio.to_thread(scheduler.call_later, 0.01, done.set)

        assert _timer_threads() == []
        await asyncio.wait_for(done.wait(), timeout=1)
        assert fired == []

    asyncio.run(main())


def test_loop_scheduler_cancel_from_worker_thread():
    async def main():
        scheduler = LoopScheduler()
        scheduler.attach()
        fired = []

        handle = await asyncio.to_thread(scheduler.call_later, 0.02, lambda: fired.append("x"))
        await asyncio.to_thread(handle.cancel)
        await asyncio.sleep(0.1)

        assert fired == []
        # cancelling before the loop armed it is also safe
        await asyncio.to_thread(_call_and_cancel, scheduler, fired)
        await asyncio.sleep(0.05)
        assert fired == []

    asyncio.run(main())


def _call_and_cancel(scheduler, fired):
    scheduler.call_later(0, lambda: fired.append("y")).cancel()

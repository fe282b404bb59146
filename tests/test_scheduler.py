import asyncio

import pytest

from callleads.scheduler import AsyncioScheduler, ManualScheduler


class TestManualScheduler:
    def test_fires_due_callbacks_in_deadline_order(self):
        sched = ManualScheduler(start_ms=0)
        fired = []
        sched.call_later(300, lambda: fired.append("b"))
        sched.call_later(100, lambda: fired.append("a"))
        sched.call_later(1000, lambda: fired.append("c"))

        assert sched.advance(500) == 2
        assert fired == ["a", "b"]
        assert sched.now_ms() == 500

    def test_cancelled_timer_never_fires(self):
        sched = ManualScheduler(start_ms=0)
        fired = []
        handle = sched.call_later(100, lambda: fired.append("x"))
        handle.cancel()
        sched.advance(1000)
        assert fired == []

    def test_cancel_after_fire_is_safe(self):
        sched = ManualScheduler(start_ms=0)
        handle = sched.call_later(10, lambda: None)
        sched.advance(10)
        handle.cancel()
        handle.cancel()
        assert handle.fired

    def test_callbacks_scheduled_during_advance_fire_if_due(self):
        sched = ManualScheduler(start_ms=0)
        fired = []

        def first():
            fired.append(("first", sched.now_ms()))
            sched.call_later(50, lambda: fired.append(("second", sched.now_ms())))

        sched.call_later(100, first)
        sched.advance(200)
        assert fired == [("first", 100), ("second", 150)]

    def test_advance_to_never_moves_backwards(self):
        sched = ManualScheduler(start_ms=1000)
        sched.advance_to(500)
        assert sched.now_ms() == 1000

    def test_negative_advance_rejected(self):
        with pytest.raises(ValueError):
            ManualScheduler().advance(-1)

    def test_pending_counts_live_timers(self):
        sched = ManualScheduler(start_ms=0)
        sched.call_later(10, lambda: None)
        handle = sched.call_later(20, lambda: None)
        handle.cancel()
        assert sched.pending == 1


class TestAsyncioScheduler:
    def test_now_is_epoch_ms(self):
        assert AsyncioScheduler().now_ms() > 1_600_000_000_000

    @pytest.mark.asyncio
    async def test_call_later_fires_on_loop(self):
        sched = AsyncioScheduler()
        fired = asyncio.Event()
        sched.call_later(10, fired.set)
        await asyncio.wait_for(fired.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_cancel_prevents_fire(self):
        sched = AsyncioScheduler()
        fired = []
        handle = sched.call_later(10, lambda: fired.append(1))
        handle.cancel()
        await asyncio.sleep(0.05)
        assert fired == []

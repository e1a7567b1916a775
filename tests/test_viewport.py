"""
Tests: viewport proximity observer (forrent/core/viewport.py).
"""

import asyncio

import pytest

from forrent.core.viewport import ViewportMetrics, ViewportObserver


def test_near_bottom_threshold():
    obs = ViewportObserver(threshold_px=1000)
    assert obs.is_near_bottom(ViewportMetrics(4000, 800, 5000)) is True
    assert obs.is_near_bottom(ViewportMetrics(3200, 800, 5000)) is False
    assert obs.is_near_bottom(ViewportMetrics(3201, 800, 5000)) is True


@pytest.mark.asyncio
async def test_debounce_only_last_event_counts():
    obs   = ViewportObserver(threshold_px=100, debounce_s=0.02)
    fired = []
    obs.subscribe(lambda: fired.append(1))

    # near-bottom burst ending far from the bottom → last event wins, no fire
    obs.report(900, 100, 1000)
    obs.report(950, 100, 1000)
    obs.report(0, 100, 1000)
    await asyncio.sleep(0.06)
    assert fired == []

    obs.report(0, 100, 1000)
    obs.report(950, 100, 1000)
    await asyncio.sleep(0.06)
    assert fired == [1]


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited():
    obs  = ViewportObserver(threshold_px=100, debounce_s=0.01)
    done = asyncio.Event()

    async def on_near_bottom():
        done.set()

    obs.subscribe(on_near_bottom)
    obs.report(950, 100, 1000)
    await asyncio.wait_for(done.wait(), timeout=1)


@pytest.mark.asyncio
async def test_cancel_stops_pending_fire_and_is_idempotent():
    obs   = ViewportObserver(threshold_px=100, debounce_s=0.02)
    fired = []
    sub   = obs.subscribe(lambda: fired.append(1))

    obs.report(950, 100, 1000)
    sub.cancel()
    sub.cancel()
    await asyncio.sleep(0.05)

    assert fired == []
    assert obs.subscriber_count == 0


@pytest.mark.asyncio
async def test_subscription_context_managers_unsubscribe():
    obs = ViewportObserver()
    with obs.subscribe(lambda: None):
        assert obs.subscriber_count == 1
    assert obs.subscriber_count == 0

    async with obs.subscribe(lambda: None) as sub:
        assert sub.active
    assert obs.subscriber_count == 0
    assert sub.active is False

"""Unit tests for the change notifier."""

from __future__ import annotations

import asyncio

import pytest

from chatstream.runtime.notifier import ChangeNotifier


def test_bump_increments_version_and_calls_listeners() -> None:
    notifier = ChangeNotifier()
    seen: list[int] = []
    unsubscribe = notifier.subscribe(seen.append)

    notifier.bump()
    notifier.bump()
    unsubscribe()
    notifier.bump()

    assert notifier.version == 3
    assert seen == [1, 2]


def test_failing_listener_does_not_block_others() -> None:
    notifier = ChangeNotifier()
    seen: list[int] = []

    def broken(_: int) -> None:
        raise RuntimeError("listener bug")

    notifier.subscribe(broken)
    notifier.subscribe(seen.append)

    assert notifier.bump() == 1
    assert seen == [1]


@pytest.mark.asyncio
async def test_wait_for_change_wakes_on_bump() -> None:
    notifier = ChangeNotifier()

    waiter = asyncio.create_task(notifier.wait_for_change(0, timeout=1))
    await asyncio.sleep(0)
    notifier.bump()

    assert await waiter == 1


@pytest.mark.asyncio
async def test_wait_for_change_returns_immediately_when_behind() -> None:
    notifier = ChangeNotifier()
    notifier.bump()

    assert await notifier.wait_for_change(0, timeout=0.01) == 1


@pytest.mark.asyncio
async def test_wait_for_change_times_out_with_unchanged_version() -> None:
    notifier = ChangeNotifier()

    assert await notifier.wait_for_change(0, timeout=0.01) == 0

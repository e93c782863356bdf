"""Tests for RequestDeduplicator."""

import asyncio

import pytest

from storefront.services.deduplicator import RequestDeduplicator


class SlowFetch:
    """Fetch that blocks until released."""

    def __init__(self, result: object = "data", error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self) -> object:
        self.calls += 1
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.result


async def test_concurrent_callers_share_one_fetch() -> None:
    dedup = RequestDeduplicator(debug=True)
    fetch = SlowFetch({"items": [1]})

    waiters = [asyncio.create_task(dedup.dedupe("GET:/products:", fetch)) for _ in range(5)]
    await asyncio.sleep(0)
    assert dedup.is_in_flight("GET:/products:")

    fetch.release.set()
    results = await asyncio.gather(*waiters)

    assert fetch.calls == 1
    assert all(r is results[0] for r in results)
    stats = dedup.get_stats()
    assert stats.started == 1
    assert stats.shared == 4
    assert stats.in_flight == 0
    assert stats.to_dict()["dedup_rate"] == "80.00%"


async def test_failure_is_shared_and_entry_removed() -> None:
    dedup = RequestDeduplicator()
    fetch = SlowFetch(error=RuntimeError("server down"))

    waiters = [asyncio.create_task(dedup.dedupe("k", fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    fetch.release.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert fetch.calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)
    assert not dedup.is_in_flight("k")


async def test_settled_key_starts_a_new_fetch() -> None:
    dedup = RequestDeduplicator()
    fetch = SlowFetch()
    fetch.release.set()

    await dedup.dedupe("k", fetch)
    await dedup.dedupe("k", fetch)
    assert fetch.calls == 2


async def test_different_keys_fetch_independently() -> None:
    dedup = RequestDeduplicator()
    first = SlowFetch("a")
    second = SlowFetch("b")
    first.release.set()
    second.release.set()

    assert await asyncio.gather(dedup.dedupe("a", first), dedup.dedupe("b", second)) == ["a", "b"]


async def test_cancelled_waiter_does_not_cancel_shared_fetch() -> None:
    dedup = RequestDeduplicator()
    fetch = SlowFetch("shared")

    impatient = asyncio.create_task(dedup.dedupe("k", fetch))
    patient = asyncio.create_task(dedup.dedupe("k", fetch))
    await asyncio.sleep(0)

    impatient.cancel()
    await asyncio.sleep(0)
    fetch.release.set()

    assert await patient == "shared"
    with pytest.raises(asyncio.CancelledError):
        await impatient


async def test_cancel_all_cancels_waiters() -> None:
    dedup = RequestDeduplicator()
    fetch = SlowFetch()

    waiter = asyncio.create_task(dedup.dedupe("k", fetch))
    await asyncio.sleep(0)
    assert dedup.get_in_flight_keys() == ["k"]

    assert await dedup.cancel_all() == 1
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert dedup.get_in_flight_keys() == []
    assert await dedup.cancel("k") is False


async def test_cancel_all_from_inside_a_fetch_spares_it() -> None:
    dedup = RequestDeduplicator()

    async def fetch() -> str:
        await dedup.cancel_all()
        await asyncio.sleep(0)
        return "finished"

    assert await dedup.dedupe("k", fetch) == "finished"
    assert dedup.get_in_flight_keys() == []

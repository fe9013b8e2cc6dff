"""Tests for queue views, request listings and voter investigations."""

from datetime import timedelta

import pytest

from demand_engine.config import settings

from conftest import BASE_TIME


async def _scan(store, make_event, barcode, count, voter_prefix="v", at=BASE_TIME):
    for i in range(count):
        await store.apply_event(make_event(barcode=barcode, voter_key=f"{voter_prefix}{i}", at=at))


class TestQueue:
    @pytest.mark.asyncio
    async def test_queue_ordered_by_velocity(self, store, queue, make_event):
        await _scan(store, make_event, "111", 1)
        await _scan(store, make_event, "222", 3)
        await _scan(store, make_event, "333", 2)

        records, total = await queue.get_queue()
        assert total == 3
        assert [r.barcode for r in records] == ["222", "333", "111"]

    @pytest.mark.asyncio
    async def test_queue_pagination(self, store, queue, make_event):
        for n, barcode in enumerate(["111", "222", "333"], start=1):
            await _scan(store, make_event, barcode, n)

        page, total = await queue.get_queue(limit=1, offset=1)
        assert total == 3
        assert [r.barcode for r in page] == ["222"]

    @pytest.mark.asyncio
    async def test_excluded_records_leave_queue(self, store, queue, make_event):
        await _scan(store, make_event, "111", 2)
        await _scan(store, make_event, "222", 1)
        await store.set_queue_exclusion("111", True, actor="admin", reason="recalled")

        records, _ = await queue.get_queue()
        assert [r.barcode for r in records] == ["222"]

    @pytest.mark.asyncio
    async def test_refresh_persists_positions(self, store, queue, make_event):
        await _scan(store, make_event, "111", 1)
        await _scan(store, make_event, "222", 2)

        assert await queue.refresh_queue_positions() == 2
        assert (await store.get_record("222")).queue_position == 1
        assert (await store.get_record("111")).queue_position == 2

    @pytest.mark.asyncio
    async def test_refresh_does_not_block_event_writes(self, store, queue, make_event):
        await _scan(store, make_event, "111", 1)
        await queue.refresh_queue_positions()
        summary = await store.apply_event(make_event(barcode="111", voter_key="later"))
        assert summary.weighted_total == 10

    @pytest.mark.asyncio
    async def test_queue_jump_notified(
        self, store, queue, dispatcher, sink, make_event, monkeypatch
    ):
        monkeypatch.setattr(settings, "queue_jump_min_positions", 2)
        for n, barcode in enumerate(["a", "b", "c", "d"]):
            await _scan(store, make_event, barcode, 4 - n, voter_prefix=barcode)
        await queue.refresh_queue_positions()
        assert (await store.get_record("d")).queue_position == 4

        await _scan(store, make_event, "d", 6, voter_prefix="boost")
        await queue.refresh_queue_positions()
        await dispatcher.drain()

        jumps = [e for e in sink.events if e.kind == "queue_position_jumped"]
        assert len(jumps) == 1
        assert jumps[0].barcode == "d"
        assert jumps[0].previous_position == 4
        assert jumps[0].position == 1


class TestRequests:
    @pytest.mark.asyncio
    async def test_sorts(self, store, queue, make_event):
        await _scan(store, make_event, "old-big", 3, at=BASE_TIME)
        await _scan(store, make_event, "new-small", 1, at=BASE_TIME + timedelta(days=1))
        await store.set_funding_threshold("new-small", 6, actor="admin")

        most_voted = await queue.list_requests("most_voted")
        assert [r.barcode for r in most_voted] == ["old-big", "new-small"]

        newest = await queue.list_requests("newest")
        assert [r.barcode for r in newest] == ["new-small", "old-big"]

        almost = await queue.list_requests("almost_funded")
        assert [r.barcode for r in almost] == ["new-small", "old-big"]

    @pytest.mark.asyncio
    async def test_only_collecting_records_listed(self, store, queue, make_event, monkeypatch):
        monkeypatch.setattr(settings, "default_funding_threshold", 10.0)
        await _scan(store, make_event, "funded", 2)
        await _scan(store, make_event, "open", 1)

        assert [r.barcode for r in await queue.list_requests()] == ["open"]

    @pytest.mark.asyncio
    async def test_unknown_sort_rejected(self, queue):
        with pytest.raises(ValueError):
            await queue.list_requests("alphabetical")


class TestInvestigations:
    @pytest.mark.asyncio
    async def test_voter_sees_their_records(self, store, queue, make_event):
        await _scan(store, make_event, "111", 2)
        await store.apply_event(make_event(barcode="222", voter_key="someone"))
        await store.apply_event(
            make_event(barcode="222", voter_key="v0", at=BASE_TIME + timedelta(hours=1))
        )

        investigations = await queue.get_voter_investigations("v0")
        assert [i.record.barcode for i in investigations] == ["222", "111"]
        assert investigations[0].sequence_number == 2
        assert investigations[1].sequence_number == 1
        assert {i.queue_position for i in investigations} == {1, 2}

    @pytest.mark.asyncio
    async def test_unknown_voter_has_none(self, queue):
        assert await queue.get_voter_investigations("nobody") == []

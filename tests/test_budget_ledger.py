from __future__ import annotations

import asyncio
import json
import logging

import pytest
from helpers import FlakyChannel, drain

from inkwall.client.cache import ParticipantCache
from inkwall.client.ledger import BudgetLedger
from inkwall.client.replication import LocalChannel
from inkwall.errors import ReplicationError
from inkwall.protocol.messages import ParticipantRow
from inkwall.store.backend import AuthoritativeStore

MAX_INK = 250


def _ledger(channel, *, regen_amount=1, regen_interval_s=3600.0, cache=None) -> BudgetLedger:
    return BudgetLedger(
        channel,
        max_ink=MAX_INK,
        regen_interval_s=regen_interval_s,
        regen_amount=regen_amount,
        cache=cache,
    )


def _store() -> AuthoritativeStore:
    return AuthoritativeStore(grid_size=150, max_ink=MAX_INK)


def test_initialize_creates_participant_with_full_ink():
    async def main():
        store = _store()
        ledger = _ledger(LocalChannel(store))
        assert ledger.is_loading

        assert await ledger.initialize() is True
        assert not ledger.is_loading
        assert ledger.ink == MAX_INK
        row = store.get_participant(ledger.participant_id)
        assert row is not None
        assert row.ink == MAX_INK
        assert row.joined_at == ledger.joined_at
        assert ledger.scheduler.running
        ledger.destroy()

    asyncio.run(main())


def test_consume_sequence_is_clamped_at_zero():
    async def main():
        ledger = _ledger(LocalChannel(_store()))
        await ledger.initialize("p1")

        ledger.consume(30)
        ledger.consume(50)
        assert ledger.ink == MAX_INK - 80
        ledger.consume(0)
        assert ledger.ink == MAX_INK - 80
        ledger.consume(10_000)
        assert ledger.ink == 0
        ledger.destroy()

    asyncio.run(main())


def test_consume_rejects_negative_amount():
    ledger = _ledger(LocalChannel(_store()))
    with pytest.raises(ValueError):
        ledger.consume(-1)


def test_regeneration_never_exceeds_max():
    async def main():
        ledger = _ledger(LocalChannel(_store()), regen_amount=7)
        await ledger.initialize("p1")

        for _ in range(3):
            ledger.regenerate()
        assert ledger.ink == MAX_INK

        ledger.consume(10)
        ledger.regenerate()
        assert ledger.ink == MAX_INK - 3
        ledger.regenerate()
        assert ledger.ink == MAX_INK
        ledger.destroy()

    asyncio.run(main())


def test_regeneration_persists_new_value():
    async def main():
        store = _store()
        channel = FlakyChannel(store)
        ledger = _ledger(channel, regen_amount=5)
        await ledger.initialize("p1")

        ledger.consume(20)
        ledger.regenerate()
        await drain()

        assert channel.updates == [("p1", MAX_INK - 15)]
        assert store.get_participant("p1").ink == MAX_INK - 15
        ledger.destroy()

    asyncio.run(main())


def test_regeneration_persist_failure_keeps_increment(caplog):
    async def main():
        channel = FlakyChannel(_store())
        ledger = _ledger(channel, regen_amount=5)
        await ledger.initialize("p1")
        channel.fail_update = True

        ledger.consume(20)
        with caplog.at_level(logging.ERROR):
            ledger.regenerate()
            await drain()

        assert ledger.ink == MAX_INK - 15
        ledger.destroy()

    asyncio.run(main())
    assert "update ink for p1 failed" in caplog.text


def test_scheduler_ticks_regenerate_ink():
    async def main():
        ledger = _ledger(LocalChannel(_store()), regen_amount=1, regen_interval_s=0.01)
        await ledger.initialize("p1")
        ledger.consume(100)

        await asyncio.sleep(0.1)

        assert MAX_INK - 100 < ledger.ink <= MAX_INK
        ledger.destroy()
        assert not ledger.scheduler.running

    asyncio.run(main())


def test_spend_regen_then_late_authoritative_value_wins():
    async def main():
        store = _store()
        ledger = _ledger(LocalChannel(store), regen_amount=500)
        await ledger.initialize("p1")

        ledger.consume(100)
        assert ledger.ink == 150
        ledger.regenerate()
        assert ledger.ink == 250
        await drain()

        # Computed before the tick, delivered after it: it still wins.
        ledger.apply_notification(
            {"id": "p1", "ink": 140, "joined_at": ledger.joined_at, "updated_at": "x"}
        )
        assert ledger.ink == 140
        ledger.destroy()

    asyncio.run(main())


def test_authoritative_update_overwrites_unconfirmed_spend():
    async def main():
        store = _store()
        ledger = _ledger(LocalChannel(store))
        await ledger.initialize("p1")

        ledger.consume(10)  # local only, never persisted
        # Another device of the same participant writes a value computed earlier.
        store.update_participant("p1", 245, "2026-01-01T00:00:00+00:00")
        await drain()

        assert ledger.ink == 245
        ledger.destroy()

    asyncio.run(main())


def test_notification_is_clamped_and_malformed_ones_ignored(caplog):
    async def main():
        ledger = _ledger(LocalChannel(_store()))
        await ledger.initialize("p1")
        ledger.consume(50)

        with caplog.at_level(logging.WARNING):
            ledger.apply_notification({"ink": "lots"})
            ledger.apply_notification(None)
            ledger.apply_notification({"id": "p2", "ink": 1, "joined_at": "x"})
        assert ledger.ink == MAX_INK - 50

        ledger.apply_notification({"id": "p1", "ink": 9999, "joined_at": "x"})
        assert ledger.ink == MAX_INK
        ledger.apply_notification({"id": "p1", "ink": -3, "joined_at": "x"})
        assert ledger.ink == 0
        ledger.destroy()

    asyncio.run(main())
    assert "malformed participant notification" in caplog.text


def test_reinitialize_existing_participant_keeps_row():
    async def main():
        store = _store()
        original = store.upsert_participant(
            ParticipantRow(id="p1", ink=42, joined_at="2024-01-01T00:00:00+00:00")
        )

        ledger = _ledger(LocalChannel(store))
        assert await ledger.initialize("p1") is True

        assert ledger.ink == 42
        assert ledger.joined_at == "2024-01-01T00:00:00+00:00"
        assert store.get_participant("p1") == original
        ledger.destroy()

    asyncio.run(main())


def test_initialize_uses_and_rewrites_cache(tmp_path):
    path = tmp_path / "participant.json"
    path.write_text(json.dumps({"id": "p9", "ink": 17, "joinedAt": "2024-05-05T00:00:00+00:00"}))

    async def main():
        store = _store()
        ledger = _ledger(LocalChannel(store), cache=ParticipantCache(path))
        await ledger.initialize()

        assert ledger.participant_id == "p9"
        assert ledger.ink == 17
        assert store.get_participant("p9").joined_at == "2024-05-05T00:00:00+00:00"
        ledger.destroy()

    asyncio.run(main())
    assert json.loads(path.read_text()) == {
        "id": "p9",
        "ink": 17,
        "joinedAt": "2024-05-05T00:00:00+00:00",
    }


def test_cache_for_another_participant_is_ignored(tmp_path):
    path = tmp_path / "participant.json"
    path.write_text(json.dumps({"id": "someone-else", "ink": 3, "joinedAt": "2024-01-01"}))

    async def main():
        ledger = _ledger(LocalChannel(_store()), cache=ParticipantCache(path))
        await ledger.initialize("p1")
        assert ledger.ink == MAX_INK
        ledger.destroy()

    asyncio.run(main())
    assert json.loads(path.read_text())["id"] == "p1"


def test_corrupt_cache_falls_back_to_defaults(tmp_path):
    path = tmp_path / "participant.json"
    path.write_text("{not json")

    async def main():
        ledger = _ledger(LocalChannel(_store()), cache=ParticipantCache(path))
        await ledger.initialize()
        assert ledger.participant_id
        assert ledger.ink == MAX_INK
        ledger.destroy()

    asyncio.run(main())


def test_upsert_failure_falls_back_to_local_values():
    async def main():
        channel = FlakyChannel(_store())
        channel.fail_upsert = True
        ledger = _ledger(channel)

        assert await ledger.initialize("p1") is False
        assert isinstance(ledger.last_error, ReplicationError)
        assert ledger.participant_id == "p1"
        assert ledger.ink == MAX_INK
        assert not ledger.is_loading

        # Still spendable against the local estimate.
        ledger.consume(5)
        assert ledger.ink == MAX_INK - 5
        ledger.destroy()

    asyncio.run(main())


def test_destroy_is_idempotent_and_silences_notifications():
    async def main():
        store = _store()
        ledger = _ledger(LocalChannel(store), regen_amount=5)
        await ledger.initialize("p1")
        ledger.consume(50)

        ledger.destroy()
        ledger.destroy()

        store.update_participant("p1", 10, "2026-01-01T00:00:00+00:00")
        await drain()
        ledger.regenerate()

        assert ledger.ink == MAX_INK - 50
        assert not ledger.scheduler.running
        assert ledger.persist() is None

    asyncio.run(main())


def test_initialize_twice_raises():
    async def main():
        ledger = _ledger(LocalChannel(_store()))
        await ledger.initialize("p1")
        with pytest.raises(RuntimeError):
            await ledger.initialize("p1")
        ledger.destroy()

    asyncio.run(main())

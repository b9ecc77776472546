from __future__ import annotations

import asyncio

from helpers import FlakyChannel, LoopbackWS, drain, loopback_connect

from inkwall.client.painter import Painter
from inkwall.client.replication import LocalChannel
from inkwall.client.ws_channel import WebSocketChannel
from inkwall.config import Settings
from inkwall.store.backend import AuthoritativeStore


def _painter(channel, *, max_ink=250, paint_cost=1) -> Painter:
    return Painter(
        channel,
        grid_size=150,
        max_ink=max_ink,
        regen_interval_s=3600,
        regen_amount=1,
        paint_cost=paint_cost,
        batch_delay_s=0.01,
    )


def _store(max_ink=250) -> AuthoritativeStore:
    return AuthoritativeStore(grid_size=150, max_ink=max_ink)


def test_paint_spends_writes_and_persists():
    async def main():
        store = _store()
        painter = _painter(LocalChannel(store))
        assert await painter.start("p1") is True

        assert painter.paint(3, 4, "#000000") is True
        assert painter.grid.get(3, 4) == "#000000"
        assert painter.ledger.ink == 249

        await asyncio.sleep(0.05)
        assert store.get_canvas() == {"3,4": "#000000"}
        assert store.get_participant("p1").ink == 249
        assert painter.grid.get(3, 4) == "#000000"
        await painter.close()

    asyncio.run(main())


def test_paint_refused_without_ink_or_outside_grid():
    async def main():
        painter = _painter(LocalChannel(_store(max_ink=2)), max_ink=2)
        assert painter.paint(1, 1, "#000000") is False  # not started yet
        await painter.start("p1")

        assert painter.paint(200, 0, "#FF0000") is False
        assert painter.paint(1, 1, "") is False
        assert painter.ledger.ink == 2

        assert painter.paint(1, 1, "#000000") is True
        assert painter.paint(2, 2, "#000000") is True
        assert painter.paint(3, 3, "#000000") is False
        assert painter.ledger.ink == 0
        assert painter.grid.get(3, 3) is None
        await painter.close()

    asyncio.run(main())


def test_non_integer_cell_is_refused_and_batch_still_lands():
    async def main():
        store = _store()
        painter = _painter(LocalChannel(store))
        await painter.start("p1")

        assert painter.paint(10, 10, "#FF0000") is True
        assert painter.paint(1.5, 2, "#00FF00") is False
        assert painter.paint(True, 0, "#00FF00") is False
        assert painter.ledger.ink == 249
        assert dict(painter.grid.cells) == {(10, 10): "#FF0000"}

        await asyncio.sleep(0.05)
        assert store.get_canvas() == {"10,10": "#FF0000"}
        await painter.close()

    asyncio.run(main())


def test_paint_after_close_is_refused():
    async def main():
        store = _store()
        painter = _painter(LocalChannel(store))
        await painter.start("p1")
        await painter.close()

        assert painter.paint(4, 4, "#000000") is False
        assert painter.ledger.ink == 250
        assert painter.writes.pending == {}
        await asyncio.sleep(0.05)
        assert store.get_canvas() == {}
        assert store.get_participant("p1").ink == 250

    asyncio.run(main())


def test_two_painters_converge_on_shared_canvas():
    async def main():
        store = _store()
        alice = _painter(LocalChannel(store))
        bob = _painter(LocalChannel(store))
        await alice.start("alice")
        await bob.start("bob")

        alice.paint(1, 1, "#FF0000")
        bob.paint(2, 2, "#0000FF")
        await asyncio.sleep(0.05)
        await drain()

        expected = {(1, 1): "#FF0000", (2, 2): "#0000FF"}
        assert dict(alice.grid.cells) == expected
        assert dict(bob.grid.cells) == expected
        assert alice.ledger.ink == bob.ledger.ink == 249
        await alice.close()
        await bob.close()

    asyncio.run(main())


def test_start_degraded_when_store_unreachable():
    async def main():
        channel = FlakyChannel(_store())
        channel.fail_fetch = True
        channel.fail_upsert = True
        painter = _painter(channel)

        assert await painter.start("p1") is False
        # Local optimistic state still works.
        assert painter.paint(5, 5, "#000000") is True
        assert painter.ledger.ink == 249
        await painter.close()

    asyncio.run(main())


def test_close_flushes_pending_writes():
    async def main():
        store = _store()
        painter = Painter(
            LocalChannel(store),
            grid_size=150,
            max_ink=10,
            regen_interval_s=3600,
            regen_amount=1,
            batch_delay_s=60,
        )
        await painter.start("p1")
        painter.paint(7, 7, "#00FF00")
        await painter.close()

        assert store.get_canvas() == {"7,7": "#00FF00"}
        assert not painter.grid.subscribed
        assert not painter.ledger.scheduler.running

    asyncio.run(main())


def test_painter_over_websocket_channel():
    async def main():
        store = _store()
        ws = LoopbackWS(store)
        channel = WebSocketChannel("ws://test/ws", connect=loopback_connect(ws))
        await channel.connect()
        painter = _painter(channel)

        assert await painter.start("p1") is True
        painter.paint(9, 9, "#FFFF00")
        await asyncio.sleep(0.05)
        await drain()

        assert store.get_canvas() == {"9,9": "#FFFF00"}
        assert store.get_participant("p1").ink == 249
        assert painter.grid.get(9, 9) == "#FFFF00"

        # Another device spends for the same participant; this process follows.
        store.update_participant("p1", 100, "t9")
        await drain()
        assert painter.ledger.ink == 100

        await painter.close()
        await channel.close()

    asyncio.run(main())


def test_from_settings_wires_constants(tmp_path):
    settings = Settings(
        grid_size=12,
        max_ink=7,
        paint_cost=2,
        regen_interval_s=1.5,
        regen_amount=3,
        batch_delay_s=0.2,
        cache_path=tmp_path / "p.json",
    )
    painter = Painter.from_settings(LocalChannel(_store()), settings)

    assert painter.grid.grid_size == 12
    assert painter.ledger.max_ink == 7
    assert painter.ledger.regen_amount == 3
    assert painter.ledger.scheduler.interval_s == 1.5
    assert painter.paint_cost == 2

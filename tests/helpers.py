"""Shared test doubles.

- FlakyChannel: LocalChannel with switchable failures per operation
- LoopbackWS: client-side websocket double wired straight to the server's
  frame handler, so WebSocketChannel can be exercised without a socket
- drain(): let queued callbacks and spawned tasks run
"""

from __future__ import annotations

import asyncio

from inkwall.client.replication import LocalChannel
from inkwall.errors import ReplicationError
from inkwall.protocol.constants import T_HELLO
from inkwall.protocol.messages import Hello
from inkwall.server.app import handle_frame
from inkwall.server.connections import Connection
from inkwall.store.backend import AuthoritativeStore


async def drain(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FlakyChannel(LocalChannel):
    def __init__(self, store: AuthoritativeStore) -> None:
        super().__init__(store)
        self.fail_fetch = False
        self.fail_write = False
        self.fail_upsert = False
        self.fail_update = False
        self.writes: list[dict] = []
        self.updates: list[tuple[str, int]] = []

    async def fetch_canvas(self):
        if self.fail_fetch:
            raise ReplicationError("fetch failed")
        return await super().fetch_canvas()

    async def write_cells(self, cells):
        self.writes.append(dict(cells))
        if self.fail_write:
            raise ReplicationError("write failed")
        await super().write_cells(cells)

    async def upsert_participant(self, row):
        if self.fail_upsert:
            raise ReplicationError("upsert failed")
        return await super().upsert_participant(row)

    async def update_participant(self, participant_id, ink, updated_at):
        self.updates.append((participant_id, ink))
        if self.fail_update:
            raise ReplicationError("update failed")
        await super().update_participant(participant_id, ink, updated_at)


class LoopbackWS:
    def __init__(self, store: AuthoritativeStore) -> None:
        self.store = store
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.conn = Connection(ws=self)
        self.sender = asyncio.get_running_loop().create_task(self.conn.send_loop())
        self.sent: list[str] = []
        self.conn.push(
            Hello(t=T_HELLO, grid_size=store.grid_size, max_ink=store.max_ink).model_dump()
        )

    # server -> client (used by Connection.send_loop)
    async def send_text(self, data: str) -> None:
        await self.incoming.put(data)

    # client -> server
    async def send(self, data: str) -> None:
        self.sent.append(data)
        self.conn.push(handle_frame(self.store, self.conn, data))

    async def recv(self) -> str:
        return await self.incoming.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.conn.close()
        self.sender.cancel()
        self.incoming.put_nowait(None)

    def drop(self) -> None:
        """Simulate the server going away."""
        self.conn.close()
        self.sender.cancel()
        self.incoming.put_nowait(None)


def loopback_connect(ws: LoopbackWS):
    async def _connect(url, **kwargs):
        return ws

    return _connect

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from inkwall.errors import InkwallError, ReplicationError
from inkwall.protocol.messages import CanvasPixels, ParticipantRow
from inkwall.store.backend import AuthoritativeStore

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Any], None]

_BACKGROUND: set[asyncio.Task] = set()


def spawn(coro: Awaitable[Any], what: str) -> asyncio.Task:
    """
    Fire-and-forget a coroutine on the running loop.

    Keeps a strong reference until it finishes and logs (never raises) its
    failure. There is no retry: the next sync supersedes a lost write.
    """
    task = asyncio.ensure_future(coro)
    _BACKGROUND.add(task)

    def _done(t: asyncio.Task) -> None:
        _BACKGROUND.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("%s failed: %s", what, exc)

    task.add_done_callback(_done)
    return task


class Subscription:
    """
    Handle for a standing change subscription.

    Once closed the callback is never invoked again, including for deliveries
    that were already queued on the loop.
    """

    def __init__(self, callback: SnapshotCallback, release: Callable[[], None] | None = None):
        self._callback = callback
        self._release = release
        self.active = True

    def deliver(self, payload: Any) -> None:
        if not self.active:
            return
        self._callback(payload)

    def close(self) -> None:
        if not self.active:
            return
        self.active = False
        release, self._release = self._release, None
        if release is not None:
            release()


class ReplicationChannel(ABC):
    """
    At-least-once link between one process and the authoritative store.

    Writes are awaited by the channel but fire-and-forget for callers (see
    `spawn`). Notifications always carry a full snapshot of the changed
    aggregate; receivers treat each one as an idempotent replace.
    Every failure surfaces as `ReplicationError`.
    """

    @abstractmethod
    async def fetch_canvas(self) -> CanvasPixels: ...

    @abstractmethod
    async def write_cells(self, cells: CanvasPixels) -> None: ...

    @abstractmethod
    async def upsert_participant(self, row: ParticipantRow) -> ParticipantRow: ...

    @abstractmethod
    async def update_participant(self, participant_id: str, ink: int, updated_at: str) -> None: ...

    @abstractmethod
    def subscribe_canvas(self, callback: SnapshotCallback) -> Subscription: ...

    @abstractmethod
    def subscribe_participant(
        self, participant_id: str, callback: SnapshotCallback
    ) -> Subscription: ...

    async def close(self) -> None:
        return None


class LocalChannel(ReplicationChannel):
    """
    Channel bound to an in-process `AuthoritativeStore`.

    Notifications are handed to the event loop rather than called inline, so
    every delivery is a suspension point just like a network round trip.
    """

    def __init__(self, store: AuthoritativeStore) -> None:
        self.store = store

    async def fetch_canvas(self) -> CanvasPixels:
        await asyncio.sleep(0)
        return self.store.get_canvas()

    async def write_cells(self, cells: CanvasPixels) -> None:
        await asyncio.sleep(0)
        try:
            self.store.write_cells(dict(cells))
        except InkwallError as e:
            raise ReplicationError(f"write_cells rejected: {e}") from e

    async def upsert_participant(self, row: ParticipantRow) -> ParticipantRow:
        await asyncio.sleep(0)
        return self.store.upsert_participant(row)

    async def update_participant(self, participant_id: str, ink: int, updated_at: str) -> None:
        await asyncio.sleep(0)
        try:
            self.store.update_participant(participant_id, ink, updated_at)
        except InkwallError as e:
            raise ReplicationError(f"update_participant rejected: {e!r}") from e

    def subscribe_canvas(self, callback: SnapshotCallback) -> Subscription:
        sub = Subscription(callback)
        sub._release = self.store.listen_canvas(self._deferred(sub))
        return sub

    def subscribe_participant(
        self, participant_id: str, callback: SnapshotCallback
    ) -> Subscription:
        sub = Subscription(callback)
        sub._release = self.store.listen_participant(participant_id, self._deferred(sub))
        return sub

    @staticmethod
    def _deferred(sub: Subscription) -> Callable[[dict], None]:
        loop = asyncio.get_running_loop()

        def _listener(payload: dict) -> None:
            loop.call_soon(sub.deliver, copy.deepcopy(payload))

        return _listener


class CellWriteBuffer:
    """
    Coalesce optimistic cell writes and flush them as one `write_cells` call
    after `delay_s`. Later writes to the same cell within a window win.
    """

    def __init__(self, channel: ReplicationChannel, *, delay_s: float) -> None:
        self._channel = channel
        self._delay_s = delay_s
        self._pending: CanvasPixels = {}
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> CanvasPixels:
        return dict(self._pending)

    def add(self, key: str, color: str) -> None:
        self._pending[key] = color
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self._delay_s, self._flush_now)

    def _flush_now(self) -> None:
        self._timer = None
        if not self._pending:
            return
        cells, self._pending = self._pending, {}
        spawn(self._channel.write_cells(cells), f"write {len(cells)} cells")

    async def flush(self) -> None:
        """Write everything pending now and wait for the result (raises on failure)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._pending:
            return
        cells, self._pending = self._pending, {}
        await self._channel.write_cells(cells)

    def discard(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()

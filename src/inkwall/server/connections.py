from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import WebSocket

from inkwall.protocol.constants import (
    T_CANVAS_CHANGED,
    T_PARTICIPANT_CHANGED,
    TOPIC_CANVAS,
)
from inkwall.store.backend import AuthoritativeStore

logger = logging.getLogger(__name__)

# Frames queued for one client before it is dropped as stalled.
OUTBOX_MAX_FRAMES = 256


@dataclass
class Connection:
    """
    One websocket client.

    Store listeners are synchronous, so everything bound for the socket goes
    through `outbox` and a single sender task keeps frames in order.
    """

    ws: WebSocket
    outbox: asyncio.Queue[dict] = field(
        default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_MAX_FRAMES)
    )
    # (topic, participant id or None) -> store unsubscribe
    releases: dict[tuple[str, Optional[str]], Callable[[], None]] = field(default_factory=dict)
    closed: bool = False

    def push(self, msg: dict) -> None:
        if self.closed:
            return
        try:
            self.outbox.put_nowait(msg)
        except asyncio.QueueFull:
            logger.warning("dropping slow client: %d frames queued", self.outbox.qsize())
            self.close()

    async def send_loop(self) -> None:
        while True:
            msg = await self.outbox.get()
            data = json.dumps(msg, separators=(",", ":"), ensure_ascii=False)
            try:
                await self.ws.send_text(data)
            except Exception as e:
                logger.debug("dropping dead client: %s", e)
                self.close()
                return

    def subscribe(
        self, store: AuthoritativeStore, topic: str, participant_id: Optional[str] = None
    ) -> None:
        key = (topic, participant_id)
        if key in self.releases:
            return
        if topic == TOPIC_CANVAS:
            self.releases[key] = store.listen_canvas(
                lambda payload: self.push({"t": T_CANVAS_CHANGED, "pixels": payload["pixels"]})
            )
        else:
            self.releases[key] = store.listen_participant(
                participant_id, lambda row: self.push({"t": T_PARTICIPANT_CHANGED, "row": row})
            )

    def unsubscribe(self, topic: str, participant_id: Optional[str] = None) -> None:
        release = self.releases.pop((topic, participant_id), None)
        if release is not None:
            release()

    def close(self) -> None:
        self.closed = True
        for release in self.releases.values():
            release()
        self.releases.clear()
        while not self.outbox.empty():
            self.outbox.get_nowait()

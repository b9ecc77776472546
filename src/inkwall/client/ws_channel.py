from __future__ import annotations

import asyncio
import copy
import json
import logging
import uuid
from typing import Any, Callable, Optional

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from inkwall.errors import ReplicationError
from inkwall.protocol.constants import (
    T_CANVAS_CHANGED,
    T_ERROR,
    T_LOAD_CANVAS,
    T_PARTICIPANT_CHANGED,
    T_SUBSCRIBE,
    T_UNSUBSCRIBE,
    T_UPDATE_PARTICIPANT,
    T_UPSERT_PARTICIPANT,
    T_WRITE_CELLS,
    TOPIC_CANVAS,
    TOPIC_PARTICIPANT,
)
from inkwall.protocol.messages import (
    CanvasPixels,
    CanvasReply,
    Hello,
    ParticipantReply,
    ParticipantRow,
)

from .replication import ReplicationChannel, SnapshotCallback, Subscription, spawn

logger = logging.getLogger(__name__)


class WebSocketChannel(ReplicationChannel):
    """
    Replication over the server's `/ws` endpoint.

    Requests carry a short `rid` and wait for the matching reply (bounded by
    `timeout_s`). Change notifications are fanned out to local subscriptions;
    the server only sends topics this connection subscribed to.
    A dropped connection fails every pending request; there is no reconnect.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 10.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self._connect = connect
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._canvas_subs: list[Subscription] = []
        self._participant_subs: dict[str, list[Subscription]] = {}
        self.hello: Optional[Hello] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> Hello:
        if self._ws is not None and self.hello is not None:
            return self.hello
        try:
            ws = await self._connect(self.url, max_size=2**22)
            raw = await asyncio.wait_for(ws.recv(), self.timeout_s)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise ReplicationError(f"cannot connect to {self.url}: {e}") from e
        try:
            self.hello = Hello.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            await ws.close()
            raise ReplicationError(f"bad hello from {self.url}: {e}") from e
        self._ws = ws
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws))
        self._resubscribe()
        return self.hello

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        if ws is not None:
            await ws.close()
        self._fail_pending("channel closed")

    # -- requests -------------------------------------------------------------

    async def _request(self, msg: dict) -> dict:
        if self._ws is None:
            raise ReplicationError(f"{msg.get('t')}: not connected")
        rid = uuid.uuid4().hex[:12]
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[rid] = fut
        try:
            await self._ws.send(json.dumps({**msg, "rid": rid}, separators=(",", ":")))
            reply = await asyncio.wait_for(fut, self.timeout_s)
        except asyncio.TimeoutError as e:
            raise ReplicationError(f"{msg.get('t')} timed out after {self.timeout_s}s") from e
        except ConnectionClosed as e:
            raise ReplicationError(f"{msg.get('t')}: connection closed") from e
        finally:
            self._pending.pop(rid, None)
        if reply.get("t") == T_ERROR:
            raise ReplicationError(f"{msg.get('t')} rejected: {reply.get('error')}")
        return reply

    async def fetch_canvas(self) -> CanvasPixels:
        reply = await self._request({"t": T_LOAD_CANVAS})
        try:
            return CanvasReply.model_validate(reply).pixels
        except ValidationError as e:
            raise ReplicationError(f"bad canvas reply: {e}") from e

    async def write_cells(self, cells: CanvasPixels) -> None:
        await self._request({"t": T_WRITE_CELLS, "cells": dict(cells)})

    async def upsert_participant(self, row: ParticipantRow) -> ParticipantRow:
        reply = await self._request({"t": T_UPSERT_PARTICIPANT, "row": row.model_dump()})
        try:
            return ParticipantReply.model_validate(reply).row
        except ValidationError as e:
            raise ReplicationError(f"bad participant reply: {e}") from e

    async def update_participant(self, participant_id: str, ink: int, updated_at: str) -> None:
        await self._request(
            {"t": T_UPDATE_PARTICIPANT, "id": participant_id, "ink": ink, "updated_at": updated_at}
        )

    # -- subscriptions --------------------------------------------------------

    def subscribe_canvas(self, callback: SnapshotCallback) -> Subscription:
        first = not self._canvas_subs
        sub = Subscription(callback)
        self._canvas_subs.append(sub)
        if first:
            self._send_topic(T_SUBSCRIBE, TOPIC_CANVAS)

        def _release() -> None:
            if sub in self._canvas_subs:
                self._canvas_subs.remove(sub)
            if not self._canvas_subs:
                self._send_topic(T_UNSUBSCRIBE, TOPIC_CANVAS)

        sub._release = _release
        return sub

    def subscribe_participant(
        self, participant_id: str, callback: SnapshotCallback
    ) -> Subscription:
        subs = self._participant_subs.setdefault(participant_id, [])
        first = not subs
        sub = Subscription(callback)
        subs.append(sub)
        if first:
            self._send_topic(T_SUBSCRIBE, TOPIC_PARTICIPANT, participant_id)

        def _release() -> None:
            current = self._participant_subs.get(participant_id, [])
            if sub in current:
                current.remove(sub)
            if not current:
                self._participant_subs.pop(participant_id, None)
                self._send_topic(T_UNSUBSCRIBE, TOPIC_PARTICIPANT, participant_id)

        sub._release = _release
        return sub

    def _resubscribe(self) -> None:
        """Send the topics subscribed to while disconnected."""
        if self._canvas_subs:
            self._send_topic(T_SUBSCRIBE, TOPIC_CANVAS)
        for participant_id in self._participant_subs:
            self._send_topic(T_SUBSCRIBE, TOPIC_PARTICIPANT, participant_id)

    def _send_topic(self, t: str, topic: str, participant_id: Optional[str] = None) -> None:
        if self._ws is None:
            logger.debug("%s %s deferred until connected", t, topic)
            return
        msg: dict = {"t": t, "topic": topic}
        if participant_id is not None:
            msg["id"] = participant_id
        spawn(self._request(msg), f"{t} {topic}")

    # -- inbound --------------------------------------------------------------

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                try:
                    msg = json.loads(raw)
                except ValueError:
                    logger.warning("ignoring non-JSON frame from %s", self.url)
                    continue
                self._dispatch(msg)
        except ConnectionClosed as e:
            logger.warning("connection to %s closed: %s", self.url, e)
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_pending("connection closed")

    def _dispatch(self, msg: Any) -> None:
        if not isinstance(msg, dict):
            logger.warning("ignoring malformed frame: %r", msg)
            return
        rid = msg.get("rid")
        if isinstance(rid, str) and rid in self._pending:
            fut = self._pending[rid]
            if not fut.done():
                fut.set_result(msg)
            return

        t = msg.get("t")
        if t == T_CANVAS_CHANGED:
            payload = {"pixels": msg.get("pixels")}
            for sub in list(self._canvas_subs):
                sub.deliver(copy.deepcopy(payload))
        elif t == T_PARTICIPANT_CHANGED:
            row = msg.get("row")
            pid = row.get("id") if isinstance(row, dict) else None
            if not isinstance(pid, str):
                logger.warning("ignoring participant notification without id")
                return
            for sub in list(self._participant_subs.get(pid, ())):
                sub.deliver(copy.deepcopy(row))
        elif t == T_ERROR:
            logger.warning("server error: %s", msg.get("error"))
        else:
            logger.debug("ignoring frame t=%s", t)

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(ReplicationError(reason))
        self._pending.clear()

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from pydantic import ValidationError

from inkwall.config import Settings, get_settings
from inkwall.errors import InvalidCellError, UnknownParticipantError
from inkwall.protocol.constants import (
    T_CANVAS,
    T_ERROR,
    T_HELLO,
    T_OK,
    T_PARTICIPANT,
    T_SUBSCRIBE,
    TOPIC_PARTICIPANT,
)
from inkwall.protocol.messages import (
    CanvasReply,
    Error,
    Hello,
    LoadCanvas,
    Ok,
    ParticipantReply,
    Subscribe,
    UpdateParticipant,
    UpsertParticipant,
    WriteCells,
    inbound_adapter,
)
from inkwall.store.backend import AuthoritativeStore

from .connections import Connection
from .rendering import render_canvas_png

logger = logging.getLogger(__name__)


def _error(rid: Optional[str], error: str) -> dict:
    return Error(t=T_ERROR, rid=rid, error=error).model_dump()


def handle_frame(store: AuthoritativeStore, conn: Connection, raw: str) -> dict:
    """Apply one inbound frame to the store and return the reply for the sender."""
    try:
        data = json.loads(raw)
    except ValueError:
        return _error(None, "invalid json")
    rid = data.get("rid") if isinstance(data, dict) else None
    rid = rid if isinstance(rid, str) else None
    try:
        msg = inbound_adapter.validate_python(data)
    except ValidationError as e:
        return _error(rid, f"invalid message ({e.error_count()} errors)")

    if isinstance(msg, LoadCanvas):
        return CanvasReply(t=T_CANVAS, rid=msg.rid, pixels=store.get_canvas()).model_dump()

    if isinstance(msg, WriteCells):
        try:
            store.write_cells(msg.cells)
        except InvalidCellError as e:
            return _error(msg.rid, str(e))
        return Ok(t=T_OK, rid=msg.rid).model_dump()

    if isinstance(msg, UpsertParticipant):
        row = store.upsert_participant(msg.row)
        return ParticipantReply(t=T_PARTICIPANT, rid=msg.rid, row=row).model_dump()

    if isinstance(msg, UpdateParticipant):
        try:
            store.update_participant(msg.id, msg.ink, msg.updated_at)
        except UnknownParticipantError:
            return _error(msg.rid, f"unknown participant {msg.id}")
        return Ok(t=T_OK, rid=msg.rid).model_dump()

    if isinstance(msg, Subscribe):
        if msg.topic == TOPIC_PARTICIPANT and not msg.id:
            return _error(msg.rid, "participant topic requires id")
        pid = msg.id if msg.topic == TOPIC_PARTICIPANT else None
        if msg.t == T_SUBSCRIBE:
            conn.subscribe(store, msg.topic, pid)
        else:
            conn.unsubscribe(msg.topic, pid)
        return Ok(t=T_OK, rid=msg.rid).model_dump()

    return _error(rid, "unsupported message")


def create_app(
    store: Optional[AuthoritativeStore] = None, settings: Optional[Settings] = None
) -> FastAPI:
    settings = settings or get_settings()
    if store is None:
        if settings.store_path is not None:
            store = AuthoritativeStore.load(
                settings.store_path, grid_size=settings.grid_size, max_ink=settings.max_ink
            )
        else:
            store = AuthoritativeStore(grid_size=settings.grid_size, max_ink=settings.max_ink)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        if settings.store_path is not None:
            store.save(settings.store_path)
            logger.info("saved store to %s", settings.store_path)

    app = FastAPI(lifespan=lifespan)
    app.state.store = store
    app.state.settings = settings

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/canvas")
    def canvas():
        return {"pixels": store.get_canvas()}

    @app.get("/canvas.png")
    def canvas_png(scale: int = Query(default=settings.scale, ge=1, le=32)):
        png = render_canvas_png(store.get_canvas(), grid_size=store.grid_size, scale=scale)
        return Response(content=png, media_type="image/png")

    @app.get("/participants/{participant_id}")
    def participant(participant_id: str):
        row = store.get_participant(participant_id)
        if row is None:
            raise HTTPException(status_code=404, detail="unknown participant")
        return row.model_dump()

    @app.websocket("/ws")
    async def ws(ws: WebSocket):
        await ws.accept()
        conn = Connection(ws)
        sender = asyncio.create_task(conn.send_loop())
        conn.push(
            Hello(t=T_HELLO, grid_size=store.grid_size, max_ink=store.max_ink).model_dump()
        )
        try:
            while True:
                raw = await ws.receive_text()
                if conn.closed:
                    break
                reply = handle_frame(store, conn, raw)
                if settings.debug_log_msgs:
                    logger.info(
                        "[ws] t=%s reply=%s from=%s",
                        reply.get("t"),
                        reply.get("error") or "ok",
                        getattr(ws.client, "host", None),
                    )
                conn.push(reply)
        except WebSocketDisconnect:
            pass
        finally:
            conn.close()
            sender.cancel()

    return app


app = create_app()


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()

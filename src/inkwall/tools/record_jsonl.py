from __future__ import annotations

import argparse
import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Optional

import websockets

from inkwall.config import get_settings
from inkwall.protocol.constants import T_SUBSCRIBE, TOPIC_CANVAS, TOPIC_PARTICIPANT


def _now_ms() -> int:
    return int(time.time() * 1000)


def subscribe_frames(participant_ids: list[str]) -> list[dict]:
    frames = [{"t": T_SUBSCRIBE, "rid": uuid.uuid4().hex[:12], "topic": TOPIC_CANVAS}]
    for pid in participant_ids:
        frames.append(
            {"t": T_SUBSCRIBE, "rid": uuid.uuid4().hex[:12], "topic": TOPIC_PARTICIPANT, "id": pid}
        )
    return frames


async def record(
    ws_url: str,
    out_path: Path,
    *,
    participant_ids: list[str],
    echo: bool,
    limit: Optional[int] = None,
) -> int:
    """Append every frame the server sends (hello, replies, notifications) as JSONL."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with out_path.open("a", encoding="utf-8") as f:
        async with websockets.connect(ws_url, max_size=2**22) as ws:
            for frame in subscribe_frames(participant_ids):
                await ws.send(json.dumps(frame, separators=(",", ":")))
            while limit is None or n < limit:
                raw = await ws.recv()
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                msg = json.loads(raw)
                if echo:
                    t = msg.get("t") if isinstance(msg, dict) else None
                    print(f"[record] t={t} msg={msg}")
                f.write(json.dumps({"ts": _now_ms(), "msg": msg}, ensure_ascii=False) + "\n")
                f.flush()
                n += 1
    return n


def main() -> None:
    ap = argparse.ArgumentParser(description="Record canvas/ink change notifications to JSONL.")
    ap.add_argument("--ws", default=get_settings().server_url, help="WebSocket URL")
    ap.add_argument("--out", required=True, help="Output JSONL path")
    ap.add_argument(
        "--participant",
        action="append",
        default=[],
        help="Also record ink changes for this participant id (repeatable)",
    )
    ap.add_argument("--limit", type=int, default=None, help="Stop after N frames")
    ap.add_argument("--print", action="store_true", help="Print received messages to stdout")
    args = ap.parse_args()

    asyncio.run(
        record(
            args.ws,
            Path(args.out),
            participant_ids=args.participant,
            echo=args.print,
            limit=args.limit,
        )
    )


if __name__ == "__main__":
    main()

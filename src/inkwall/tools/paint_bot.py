from __future__ import annotations

import argparse
import asyncio
import logging
import random
from typing import Optional

from inkwall.client.cache import ParticipantCache
from inkwall.client.painter import Painter
from inkwall.client.ws_channel import WebSocketChannel
from inkwall.config import Settings, get_settings

logger = logging.getLogger(__name__)


async def run_bot(
    ws_url: str,
    *,
    settings: Settings,
    count: int,
    interval_s: float,
    participant_id: Optional[str] = None,
    use_cache: bool = False,
    seed: Optional[int] = None,
    channel: Optional[WebSocketChannel] = None,
) -> int:
    """
    Paint `count` random cells, one every `interval_s`, as a single participant.
    Returns how many paints the ledger allowed.
    """
    rng = random.Random(seed)
    channel = channel or WebSocketChannel(ws_url, timeout_s=settings.request_timeout_s)
    hello = await channel.connect()
    painter = Painter(
        channel,
        grid_size=hello.grid_size,
        max_ink=hello.max_ink,
        regen_interval_s=settings.regen_interval_s,
        regen_amount=settings.regen_amount,
        paint_cost=settings.paint_cost,
        batch_delay_s=settings.batch_delay_s,
        cache=ParticipantCache(settings.cache_path) if use_cache else None,
    )
    if not await painter.start(participant_id):
        logger.warning("started degraded; painting against local state")
    logger.info("participant %s ink=%d", painter.ledger.participant_id, painter.ledger.ink)

    painted = 0
    try:
        for _ in range(count):
            x = rng.randrange(hello.grid_size)
            y = rng.randrange(hello.grid_size)
            if painter.paint(x, y, rng.choice(settings.palette)):
                painted += 1
            else:
                logger.info("out of ink (ink=%d)", painter.ledger.ink)
            await asyncio.sleep(interval_s)
    finally:
        await painter.close()
        await channel.close()
    logger.info("painted %d/%d cells, ink=%d", painted, count, painter.ledger.ink)
    return painted


def main() -> None:
    settings = get_settings()
    ap = argparse.ArgumentParser(description="Paint random cells on an inkwall server.")
    ap.add_argument("--ws", default=settings.server_url, help="WebSocket URL")
    ap.add_argument("--count", type=int, default=50, help="Number of paint attempts")
    ap.add_argument("--interval", type=float, default=0.05, help="Seconds between attempts")
    ap.add_argument("--participant", default=None, help="Participant id (default: cached or new)")
    ap.add_argument("--cache", action="store_true", help="Use the local participant cache")
    ap.add_argument("--seed", type=int, default=None)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="[bot] %(levelname)s %(message)s")
    asyncio.run(
        run_bot(
            args.ws,
            settings=settings,
            count=args.count,
            interval_s=args.interval,
            participant_id=args.participant,
            use_cache=args.cache,
            seed=args.seed,
        )
    )


if __name__ == "__main__":
    main()

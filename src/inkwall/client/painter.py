from __future__ import annotations

import logging
from typing import Optional

from inkwall.config import Settings, get_settings
from inkwall.errors import ReplicationError
from inkwall.protocol.messages import cell_key, in_grid

from .cache import ParticipantCache
from .grid import GridStore
from .ledger import BudgetLedger
from .replication import CellWriteBuffer, ReplicationChannel

logger = logging.getLogger(__name__)


class Painter:
    """
    One process's view of the wall: a grid, a ledger and the channel they share.

    paint -> ledger authorizes spend -> optimistic grid write -> channel
    persists the cell (batched) and the new ink. Authoritative snapshots flow
    back into both stores through their subscriptions.
    """

    def __init__(
        self,
        channel: ReplicationChannel,
        *,
        grid_size: int,
        max_ink: int,
        regen_interval_s: float,
        regen_amount: int,
        paint_cost: int = 1,
        batch_delay_s: float = 0.1,
        cache: Optional[ParticipantCache] = None,
    ) -> None:
        self.channel = channel
        self.paint_cost = paint_cost
        self.grid = GridStore(channel, grid_size=grid_size)
        self.ledger = BudgetLedger(
            channel,
            max_ink=max_ink,
            regen_interval_s=regen_interval_s,
            regen_amount=regen_amount,
            cache=cache,
        )
        self.writes = CellWriteBuffer(channel, delay_s=batch_delay_s)
        self.closed = False

    @classmethod
    def from_settings(
        cls,
        channel: ReplicationChannel,
        settings: Optional[Settings] = None,
        *,
        use_cache: bool = True,
    ) -> "Painter":
        s = settings or get_settings()
        return cls(
            channel,
            grid_size=s.grid_size,
            max_ink=s.max_ink,
            regen_interval_s=s.regen_interval_s,
            regen_amount=s.regen_amount,
            paint_cost=s.paint_cost,
            batch_delay_s=s.batch_delay_s,
            cache=ParticipantCache(s.cache_path) if use_cache else None,
        )

    async def start(self, participant_id: Optional[str] = None) -> bool:
        """Load + subscribe the grid, then initialize the ledger. False if anything ran degraded."""
        loaded = await self.grid.load()
        self.grid.subscribe_to_changes()
        synced = await self.ledger.initialize(participant_id)
        return loaded and synced

    def paint(self, x: int, y: int, color: str) -> bool:
        if self.closed or self.ledger.is_loading:
            return False
        if not in_grid(x, y, self.grid.grid_size) or not color:
            return False
        if not self.ledger.has_ink(self.paint_cost):
            return False
        self.ledger.consume(self.paint_cost)
        self.grid.set_cell(x, y, color)
        self.writes.add(cell_key(x, y), color)
        self.ledger.persist()
        return True

    async def close(self) -> None:
        self.closed = True
        try:
            await self.writes.flush()
        except ReplicationError as e:
            logger.error("error flushing cell writes: %s", e)
        self.ledger.destroy()
        self.grid.unsubscribe()

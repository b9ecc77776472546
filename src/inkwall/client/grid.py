from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from inkwall.errors import ReplicationError
from inkwall.protocol.messages import (
    CanvasPixels,
    CanvasSnapshot,
    Cell,
    cell_key,
    in_grid,
    parse_cell_key,
)

from .replication import ReplicationChannel, Subscription

logger = logging.getLogger(__name__)


class GridStore:
    """
    Local view of the shared canvas: (x, y) -> color.

    Writes land locally first (optimistic). Every authoritative snapshot
    replaces the whole mapping, so a local cell that the snapshot omits
    reverts to unpainted. Persisting writes is the caller's job.
    """

    def __init__(self, channel: ReplicationChannel, *, grid_size: int) -> None:
        self._channel = channel
        self.grid_size = grid_size
        self._cells: dict[Cell, str] = {}
        self._subscription: Optional[Subscription] = None

    @property
    def cells(self) -> Mapping[Cell, str]:
        return MappingProxyType(self._cells)

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    def get(self, x: int, y: int) -> Optional[str]:
        return self._cells.get((x, y))

    def to_wire(self) -> CanvasPixels:
        return {cell_key(x, y): color for (x, y), color in self._cells.items()}

    async def load(self) -> bool:
        """Replace the local mapping with the authoritative one. False if the fetch failed."""
        try:
            pixels = await self._channel.fetch_canvas()
        except ReplicationError as e:
            logger.error("error loading canvas: %s", e)
            return False
        self._cells = self._parse_pixels(pixels)
        return True

    def subscribe_to_changes(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self._channel.subscribe_canvas(self.apply_snapshot)

    def apply_snapshot(self, payload: Any) -> None:
        """Whole-grid last-writer-wins replace. Malformed payloads are ignored."""
        try:
            snapshot = CanvasSnapshot.model_validate(payload)
        except ValidationError as e:
            logger.warning("ignoring malformed canvas notification: %s", e.errors()[:1])
            return
        self._cells = self._parse_pixels(snapshot.pixels)

    def set_cell(self, x: int, y: int, color: str) -> bool:
        if not in_grid(x, y, self.grid_size):
            logger.debug("rejected out-of-grid cell (%s, %s)", x, y)
            return False
        if not color:
            return False
        self._cells[(x, y)] = color
        return True

    def unsubscribe(self) -> None:
        if self._subscription is None:
            return
        self._subscription.close()
        self._subscription = None

    def _parse_pixels(self, pixels: Mapping[str, Any]) -> dict[Cell, str]:
        cells: dict[Cell, str] = {}
        dropped = 0
        for key, color in pixels.items():
            xy = parse_cell_key(key)
            if xy is None or not in_grid(xy[0], xy[1], self.grid_size):
                dropped += 1
                continue
            if not isinstance(color, str) or not color:
                dropped += 1
                continue
            cells[xy] = color
        if dropped:
            logger.warning("dropped %d invalid cells from canvas snapshot", dropped)
        return cells

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Optional

from inkwall.errors import InvalidCellError, UnknownParticipantError
from inkwall.protocol.messages import (
    CanvasPixels,
    ParticipantRow,
    in_grid,
    parse_cell_key,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

CanvasListener = Callable[[dict], None]
ParticipantListener = Callable[[dict], None]


class AuthoritativeStore:
    """
    The shared backend: one canvas row and one row per participant.

    - No locks, no compare-and-swap: the last accepted write wins.
    - Every change notifies listeners with a full snapshot of the changed
      aggregate (`{"pixels": {...}}` or the participant row as a dict).
    - Participant listeners are scoped to a single id.

    Listeners are plain callables invoked synchronously; transports decide
    how (and when) to hand the snapshot to their clients.
    """

    def __init__(self, *, grid_size: int, max_ink: int) -> None:
        self.grid_size = grid_size
        self.max_ink = max_ink
        self._pixels: CanvasPixels = {}
        self._canvas_updated_at: str = utc_now_iso()
        self._participants: dict[str, ParticipantRow] = {}
        self._canvas_listeners: list[CanvasListener] = []
        self._participant_listeners: dict[str, list[ParticipantListener]] = {}

    # -- canvas ---------------------------------------------------------------

    def get_canvas(self) -> CanvasPixels:
        return dict(self._pixels)

    def write_cells(self, cells: CanvasPixels) -> None:
        """Merge `cells` into the canvas row. Nothing is applied if any entry is invalid."""
        for key, color in cells.items():
            xy = parse_cell_key(key)
            if xy is None or not in_grid(xy[0], xy[1], self.grid_size):
                raise InvalidCellError(
                    f"cell {key!r} outside {self.grid_size}x{self.grid_size} grid"
                )
            if not isinstance(color, str) or not color:
                raise InvalidCellError(f"cell {key!r} has empty color")
        if not cells:
            return
        for key, color in cells.items():
            x, y = parse_cell_key(key)  # normalize "007,1" -> "7,1"
            self._pixels[f"{x},{y}"] = color
        self._canvas_updated_at = utc_now_iso()
        self._notify_canvas()

    def listen_canvas(self, listener: CanvasListener) -> Callable[[], None]:
        self._canvas_listeners.append(listener)

        def _remove() -> None:
            if listener in self._canvas_listeners:
                self._canvas_listeners.remove(listener)

        return _remove

    def _notify_canvas(self) -> None:
        for listener in list(self._canvas_listeners):
            try:
                listener({"pixels": dict(self._pixels)})
            except Exception:
                logger.exception("canvas listener failed")

    # -- participants ---------------------------------------------------------

    def get_participant(self, participant_id: str) -> Optional[ParticipantRow]:
        row = self._participants.get(participant_id)
        return row.model_copy() if row is not None else None

    def upsert_participant(self, row: ParticipantRow) -> ParticipantRow:
        """
        Insert-if-absent. An existing row is returned unchanged so a client's
        stale local defaults never reset `ink` or `joined_at`.
        """
        existing = self._participants.get(row.id)
        if existing is not None:
            return existing.model_copy()
        stored = row.model_copy(
            update={
                "ink": self._clamp(row.ink),
                "updated_at": row.updated_at or row.joined_at,
            }
        )
        self._participants[row.id] = stored
        logger.info("participant %s joined (ink=%d)", row.id, stored.ink)
        return stored.model_copy()

    def update_participant(self, participant_id: str, ink: int, updated_at: str) -> ParticipantRow:
        existing = self._participants.get(participant_id)
        if existing is None:
            raise UnknownParticipantError(participant_id)
        stored = existing.model_copy(update={"ink": self._clamp(ink), "updated_at": updated_at})
        self._participants[participant_id] = stored
        self._notify_participant(stored)
        return stored.model_copy()

    def listen_participant(
        self, participant_id: str, listener: ParticipantListener
    ) -> Callable[[], None]:
        self._participant_listeners.setdefault(participant_id, []).append(listener)

        def _remove() -> None:
            listeners = self._participant_listeners.get(participant_id)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    self._participant_listeners.pop(participant_id, None)

        return _remove

    def _notify_participant(self, row: ParticipantRow) -> None:
        for listener in list(self._participant_listeners.get(row.id, ())):
            try:
                listener(row.model_dump())
            except Exception:
                logger.exception("participant listener failed for %s", row.id)

    def _clamp(self, ink: int) -> int:
        return max(0, min(int(ink), self.max_ink))

    # -- persistence ----------------------------------------------------------

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        doc = {
            "canvas": {"pixels": self._pixels, "updated_at": self._canvas_updated_at},
            "participants": [row.model_dump() for row in self._participants.values()],
        }
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(doc, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    @classmethod
    def load(cls, path: Path, *, grid_size: int, max_ink: int) -> "AuthoritativeStore":
        """Load a snapshot written by `save`; a missing file yields an empty store."""
        store = cls(grid_size=grid_size, max_ink=max_ink)
        if not path.exists():
            return store
        doc = json.loads(path.read_text(encoding="utf-8"))
        canvas = doc.get("canvas") or {}
        pixels = canvas.get("pixels") or {}
        dropped = 0
        for key, color in pixels.items():
            xy = parse_cell_key(key)
            if xy is None or not in_grid(xy[0], xy[1], grid_size) or not color:
                dropped += 1
                continue
            store._pixels[f"{xy[0]},{xy[1]}"] = color
        if dropped:
            logger.warning("dropped %d invalid cells from %s", dropped, path)
        if isinstance(canvas.get("updated_at"), str):
            store._canvas_updated_at = canvas["updated_at"]
        for raw in doc.get("participants") or []:
            row = ParticipantRow.model_validate(raw)
            store._participants[row.id] = row.model_copy(update={"ink": store._clamp(row.ink)})
        return store

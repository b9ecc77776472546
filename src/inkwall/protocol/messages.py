from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, TypeAlias, Union

from pydantic import BaseModel, Field, TypeAdapter

# Canvas pixels on the wire: "x,y" -> color
CanvasPixels: TypeAlias = dict[str, str]
Cell: TypeAlias = tuple[int, int]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def cell_key(x: int, y: int) -> str:
    return f"{x},{y}"


def parse_cell_key(key: object) -> Optional[Cell]:
    """Parse an "x,y" key; None when the key is not two integers."""
    if not isinstance(key, str):
        return None
    parts = key.split(",")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def _is_coord(v: object) -> bool:
    # bool is an int subclass; True would alias cell 1
    return isinstance(v, int) and not isinstance(v, bool)


def in_grid(x: int, y: int, grid_size: int) -> bool:
    if not (_is_coord(x) and _is_coord(y)):
        return False
    return 0 <= x < grid_size and 0 <= y < grid_size


class ParticipantRow(BaseModel):
    id: str = Field(min_length=1)
    ink: int
    joined_at: str
    updated_at: Optional[str] = None


class CanvasSnapshot(BaseModel):
    pixels: CanvasPixels


class Hello(BaseModel):
    t: Literal["hello"]
    grid_size: int
    max_ink: int


class LoadCanvas(BaseModel):
    t: Literal["load_canvas"]
    rid: str


class WriteCells(BaseModel):
    t: Literal["write_cells"]
    rid: str
    cells: CanvasPixels


class UpsertParticipant(BaseModel):
    t: Literal["upsert_participant"]
    rid: str
    row: ParticipantRow


class UpdateParticipant(BaseModel):
    t: Literal["update_participant"]
    rid: str
    id: str
    ink: int
    updated_at: str


class Subscribe(BaseModel):
    t: Literal["subscribe", "unsubscribe"]
    rid: str
    topic: Literal["canvas", "participant"]
    id: Optional[str] = None


class CanvasReply(BaseModel):
    t: Literal["canvas"]
    rid: str
    pixels: CanvasPixels


class ParticipantReply(BaseModel):
    t: Literal["participant"]
    rid: str
    row: ParticipantRow


class Ok(BaseModel):
    t: Literal["ok"]
    rid: str


class Error(BaseModel):
    t: Literal["error"]
    rid: Optional[str] = None
    error: str


class CanvasChanged(BaseModel):
    t: Literal["canvas_changed"]
    pixels: CanvasPixels


class ParticipantChanged(BaseModel):
    t: Literal["participant_changed"]
    row: ParticipantRow


InboundMsg: TypeAlias = Annotated[
    Union[LoadCanvas, WriteCells, UpsertParticipant, UpdateParticipant, Subscribe],
    Field(discriminator="t"),
]
OutboundMsg: TypeAlias = Union[
    Hello,
    CanvasReply,
    ParticipantReply,
    Ok,
    Error,
    CanvasChanged,
    ParticipantChanged,
]

inbound_adapter: TypeAdapter[InboundMsg] = TypeAdapter(InboundMsg)

from __future__ import annotations

import io
import math
from typing import Mapping, Optional

from PIL import Image, ImageColor, ImageDraw

from inkwall.protocol.messages import in_grid, parse_cell_key


def render_canvas_png(pixels: Mapping[str, str], *, grid_size: int, scale: int) -> bytes:
    """
    Render a canvas mapping ("x,y" -> color) as a PNG.

    - Unpainted cells stay white
    - Cells outside the grid or with colors PIL can't parse are skipped
    - Each cell is a `scale` x `scale` block
    """
    side = grid_size * scale
    img = Image.new("RGB", (side, side), (255, 255, 255))
    draw = ImageDraw.Draw(img)

    for key, color in pixels.items():
        xy = parse_cell_key(key)
        if xy is None or not in_grid(xy[0], xy[1], grid_size):
            continue
        try:
            rgb = ImageColor.getrgb(color)
        except ValueError:
            continue
        x0, y0 = xy[0] * scale, xy[1] * scale
        draw.rectangle([x0, y0, x0 + scale - 1, y0 + scale - 1], fill=rgb)

    bio = io.BytesIO()
    img.save(bio, format="PNG", optimize=True)
    return bio.getvalue()


def cell_from_pixel(
    px: float, py: float, *, scale: int, grid_size: int
) -> Optional[tuple[int, int]]:
    """Map a pointer position (relative to the surface origin) to a cell, or None outside."""
    x = math.floor(px / scale)
    y = math.floor(py / scale)
    if not in_grid(x, y, grid_size):
        return None
    return x, y

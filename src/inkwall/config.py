from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime config (server, bots, tools).

    - Loaded from environment variables (`INKWALL_*`)
    - Also reads `.env` if present (via pydantic-settings + python-dotenv)

    Grid and ink knobs are deploy-time constants: every process sharing a
    store must agree on them.
    """

    model_config = SettingsConfigDict(env_file=".env", env_prefix="INKWALL_", extra="ignore")

    # Canvas
    grid_size: int = 100
    scale: int = 5  # px per cell when rendering / translating pointer input
    palette: list[str] = ["#000000", "#FF0000", "#00FF00", "#0000FF", "#FFFF00"]

    # Ink economy
    max_ink: int = 200
    paint_cost: int = 1
    regen_interval_s: float = 5.0
    regen_amount: int = 1

    # Replication
    batch_delay_s: float = 0.1
    request_timeout_s: float = 10.0
    server_url: str = "ws://127.0.0.1:8000/ws"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    store_path: Path | None = None  # JSON snapshot of the authoritative store

    # Client-side participant cache
    cache_path: Path = Path.home() / ".inkwall" / "participant.json"

    # Debugging
    debug_log_msgs: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

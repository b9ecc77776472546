from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class ParticipantCache:
    """
    Single JSON record `{id, ink, joinedAt}` kept outside the process lifetime.

    Read once at ledger initialization, rewritten once it completes.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            obj = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable participant cache %s: %s", self.path, e)
            return {}
        return obj if isinstance(obj, dict) else {}

    def write(self, participant_id: str, ink: int, joined_at: str) -> None:
        record = {"id": participant_id, "ink": ink, "joinedAt": joined_at}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(record), encoding="utf-8")
        except OSError as e:
            logger.error("error writing participant cache %s: %s", self.path, e)

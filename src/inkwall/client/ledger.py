from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from inkwall.errors import ReplicationError
from inkwall.protocol.messages import ParticipantRow, utc_now_iso

from .cache import ParticipantCache
from .replication import ReplicationChannel, Subscription, spawn
from .scheduler import RegenerationScheduler

logger = logging.getLogger(__name__)


class BudgetLedger:
    """
    One participant's ink for the current process.

    - `consume` is a local optimistic decrement, clamped at zero.
    - `regenerate` runs on the scheduler and persists best-effort.
    - Authoritative notifications replace `ink` outright. A notification
      computed before a local spend undoes that spend; this is the accepted
      last-writer-wins policy, not something the ledger tries to repair.

    All arithmetic is integer and clamped to [0, max_ink].
    """

    def __init__(
        self,
        channel: ReplicationChannel,
        *,
        max_ink: int,
        regen_interval_s: float,
        regen_amount: int,
        cache: Optional[ParticipantCache] = None,
    ) -> None:
        if max_ink < 0 or regen_amount < 0:
            raise ValueError("max_ink and regen_amount must be >= 0")
        self._channel = channel
        self._cache = cache
        self.max_ink = max_ink
        self.regen_amount = regen_amount
        self._scheduler = RegenerationScheduler(regen_interval_s, self.regenerate)

        self._id: Optional[str] = None
        self._ink = max_ink
        self._joined_at: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._initialized = False
        self._destroyed = False
        self.is_loading = True
        self.last_error: Optional[Exception] = None

    @property
    def participant_id(self) -> Optional[str]:
        return self._id

    @property
    def ink(self) -> int:
        return self._ink

    @property
    def joined_at(self) -> Optional[str]:
        return self._joined_at

    @property
    def scheduler(self) -> RegenerationScheduler:
        return self._scheduler

    def has_ink(self, amount: int) -> bool:
        return self._ink >= amount

    async def initialize(self, participant_id: Optional[str] = None) -> bool:
        """
        Resolve identity and ink, then start syncing and regenerating.

        Returns False when the authoritative upsert failed; the ledger then
        runs on the locally computed values (see `last_error`).
        """
        if self._initialized:
            raise RuntimeError("ledger already initialized")
        self._initialized = True

        stored = self._cache.read() if self._cache is not None else {}
        if participant_id is not None and stored.get("id") != participant_id:
            stored = {}

        cached_id = stored.get("id")
        pid = participant_id or (cached_id if isinstance(cached_id, str) and cached_id else None)
        pid = pid or str(uuid.uuid4())

        ink = stored.get("ink")
        if not isinstance(ink, int) or isinstance(ink, bool):
            ink = self.max_ink
        joined_at = stored.get("joinedAt")
        if not isinstance(joined_at, str) or not joined_at:
            joined_at = utc_now_iso()

        local = ParticipantRow(
            id=pid, ink=self._clamp(ink), joined_at=joined_at, updated_at=joined_at
        )
        synced = True
        try:
            row = await self._channel.upsert_participant(local)
        except ReplicationError as e:
            logger.error("error upserting participant %s: %s", pid, e)
            self.last_error = e
            row = local
            synced = False

        if self._destroyed:
            return synced

        self._id = row.id
        self._ink = self._clamp(row.ink)
        self._joined_at = row.joined_at
        if self._cache is not None:
            self._cache.write(self._id, self._ink, self._joined_at)
        self.is_loading = False

        self._subscription = self._channel.subscribe_participant(self._id, self.apply_notification)
        self._scheduler.start()
        return synced

    def consume(self, amount: int) -> int:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        self._ink = max(0, self._ink - amount)
        return self._ink

    def regenerate(self) -> None:
        if self._destroyed or self._id is None:
            return
        self._ink = min(self._ink + self.regen_amount, self.max_ink)
        self.persist()

    def persist(self) -> Optional[asyncio.Task]:
        """Push the current ink to the authoritative row (fire-and-forget)."""
        if self._destroyed or self._id is None:
            return None
        return spawn(
            self._channel.update_participant(self._id, self._ink, utc_now_iso()),
            f"update ink for {self._id}",
        )

    def apply_notification(self, payload: Any) -> None:
        if self._destroyed:
            return
        try:
            row = ParticipantRow.model_validate(payload)
        except ValidationError as e:
            logger.warning("ignoring malformed participant notification: %s", e.errors()[:1])
            return
        if row.id != self._id:
            logger.warning("ignoring notification for participant %s", row.id)
            return
        self._ink = self._clamp(row.ink)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._scheduler.stop()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _clamp(self, ink: int) -> int:
        return max(0, min(int(ink), self.max_ink))

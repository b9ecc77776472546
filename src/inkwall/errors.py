from __future__ import annotations


class InkwallError(Exception):
    """Base class for inkwall errors."""


class ReplicationError(InkwallError):
    """A call to the authoritative store failed (transport, timeout or rejection)."""


class InvalidCellError(InkwallError, ValueError):
    """A cell key or color is outside the grid or empty."""


class UnknownParticipantError(InkwallError, KeyError):
    """No authoritative row exists for the participant."""

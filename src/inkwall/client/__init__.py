from .cache import ParticipantCache
from .grid import GridStore
from .ledger import BudgetLedger
from .painter import Painter
from .replication import CellWriteBuffer, LocalChannel, ReplicationChannel, Subscription, spawn
from .scheduler import RegenerationScheduler
from .ws_channel import WebSocketChannel

__all__ = [
    "BudgetLedger",
    "CellWriteBuffer",
    "GridStore",
    "LocalChannel",
    "Painter",
    "ParticipantCache",
    "RegenerationScheduler",
    "ReplicationChannel",
    "Subscription",
    "WebSocketChannel",
    "spawn",
]

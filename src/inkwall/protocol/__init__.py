from .constants import (
    T_CANVAS,
    T_CANVAS_CHANGED,
    T_ERROR,
    T_HELLO,
    T_LOAD_CANVAS,
    T_OK,
    T_PARTICIPANT,
    T_PARTICIPANT_CHANGED,
    T_SUBSCRIBE,
    T_UNSUBSCRIBE,
    T_UPDATE_PARTICIPANT,
    T_UPSERT_PARTICIPANT,
    T_WRITE_CELLS,
    TOPIC_CANVAS,
    TOPIC_PARTICIPANT,
)

__all__ = [
    "T_HELLO",
    "T_LOAD_CANVAS",
    "T_WRITE_CELLS",
    "T_UPSERT_PARTICIPANT",
    "T_UPDATE_PARTICIPANT",
    "T_SUBSCRIBE",
    "T_UNSUBSCRIBE",
    "T_CANVAS",
    "T_PARTICIPANT",
    "T_OK",
    "T_ERROR",
    "T_CANVAS_CHANGED",
    "T_PARTICIPANT_CHANGED",
    "TOPIC_CANVAS",
    "TOPIC_PARTICIPANT",
]

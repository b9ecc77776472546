# Message type constants (stringly-typed protocol; canonical list lives here)

T_HELLO = "hello"

# client -> server requests (all carry "rid")
T_LOAD_CANVAS = "load_canvas"
T_WRITE_CELLS = "write_cells"
T_UPSERT_PARTICIPANT = "upsert_participant"
T_UPDATE_PARTICIPANT = "update_participant"
T_SUBSCRIBE = "subscribe"
T_UNSUBSCRIBE = "unsubscribe"

# server -> client replies (echo "rid")
T_CANVAS = "canvas"
T_PARTICIPANT = "participant"
T_OK = "ok"
T_ERROR = "error"

# server -> client change notifications (full snapshots)
T_CANVAS_CHANGED = "canvas_changed"
T_PARTICIPANT_CHANGED = "participant_changed"

# subscription topics
TOPIC_CANVAS = "canvas"
TOPIC_PARTICIPANT = "participant"

"""Server -> client realtime events.

Every frame pushed over the realtime channel is an envelope:

    {"event": "<name>", "data": {...}}

The channel is push-only; clients act through the HTTP endpoints.
"""
from typing import Any, Dict

CONNECTION_ACK = "connection:ack"
PRESENCE_UPDATE = "presence:update"
PRESENCE_SELF = "presence:self"
GROUP_NEW = "group:new"
GROUP_UPDATED = "group:updated"
MESSAGE_NEW = "message:new"
MESSAGES_READ = "messages:read"
UNREAD_UPDATE = "unread:update"


def envelope(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap an event payload for the wire."""
    return {"event": event, "data": data}

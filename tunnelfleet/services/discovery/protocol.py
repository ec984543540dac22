"""
Broadcast discovery datagrams.

Request:  {"type": "tunnel-discovery", "version": "1.0", "timestamp": ..., "requestId": ...}
Response: {"type": "tunnel-server", "tunnelPort": <int>}
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

DISCOVERY_REQUEST_TYPE = "tunnel-discovery"
DISCOVERY_RESPONSE_TYPE = "tunnel-server"
PROTOCOL_VERSION = "1.0"
MAX_DATAGRAM_BYTES = 2048


def build_discovery_request(request_id: Optional[str] = None) -> bytes:
    message = {
        "type": DISCOVERY_REQUEST_TYPE,
        "version": PROTOCOL_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "requestId": request_id or str(uuid.uuid4()),
    }
    return json.dumps(message).encode("utf-8")


def build_discovery_response(tunnel_port: int) -> bytes:
    message = {"type": DISCOVERY_RESPONSE_TYPE, "tunnelPort": tunnel_port}
    return json.dumps(message).encode("utf-8")


def _decode(data: bytes) -> Optional[Dict[str, Any]]:
    if len(data) > MAX_DATAGRAM_BYTES:
        return None
    try:
        message = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return message if isinstance(message, dict) else None


def parse_discovery_response(data: bytes) -> Optional[int]:
    """Return the advertised tunnel port, or None for anything malformed."""
    message = _decode(data)
    if not message or message.get("type") != DISCOVERY_RESPONSE_TYPE:
        return None

    port = message.get("tunnelPort")
    # bool is an int subclass; reject it explicitly
    if isinstance(port, bool) or not isinstance(port, int):
        return None
    if not 0 < port < 65536:
        return None
    return port


def parse_discovery_request(data: bytes) -> Optional[Dict[str, Any]]:
    """Return the request message when it is a well-formed discovery request."""
    message = _decode(data)
    if not message or message.get("type") != DISCOVERY_REQUEST_TYPE:
        return None
    return message

"""Shared wire messages and error types used by the relay and the engine.

Only lightweight, common definitions should live here. Do not place
transport-specific logic (FastAPI, aiortc) in this package.
"""

from .errors import (
    VoiceLinkError,
    ConnectionError,
    MediaError,
    NegotiationError,
    RelayError,
)
from .messages import (
    EventType,
    Role,
    RELAY_BODY_KEYS,
    SignalEnvelope,
    JoinRoomRequest,
    build_message,
    parse_envelope,
    parse_join_payload,
)

__all__ = [
    # Errors
    "VoiceLinkError",
    "ConnectionError",
    "MediaError",
    "NegotiationError",
    "RelayError",
    # Messages
    "EventType",
    "Role",
    "RELAY_BODY_KEYS",
    "SignalEnvelope",
    "JoinRoomRequest",
    "build_message",
    "parse_envelope",
    "parse_join_payload",
]

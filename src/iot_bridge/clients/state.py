"""Connection lifecycle states shared by the store manager and transport supervisor."""

from enum import Enum


class ConnectionState(Enum):
    UNINITIALIZED = "uninitialized"
    RESOLVING_CREDENTIALS = "resolving_credentials"
    CONNECTING = "connecting"
    READY = "ready"
    SUBSCRIBED = "subscribed"
    RECEIVING = "receiving"
    DISCONNECTED = "disconnected"
    DEGRADED = "degraded"
    FAILED_STUB = "failed_stub"

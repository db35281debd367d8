"""Store and transport connection management."""

from .state import ConnectionState
from .store import StoreConnectionManager
from .transport import (
    MqttTransportHandle,
    StubTransportHandle,
    TransportHandle,
    TransportSupervisor,
)

__all__ = [
    "ConnectionState",
    "StoreConnectionManager",
    "MqttTransportHandle",
    "StubTransportHandle",
    "TransportHandle",
    "TransportSupervisor",
]

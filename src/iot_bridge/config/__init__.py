"""Settings, AWS clients and connection-config resolution."""

from .settings import BridgeSettings, load_settings
from .resolver import (
    ConfigResolver,
    Credential,
    CredentialOrigin,
    ResolveKind,
    SecurityMode,
    StoreConnectionConfig,
    TransportConnectionConfig,
)

__all__ = [
    "BridgeSettings",
    "load_settings",
    "ConfigResolver",
    "Credential",
    "CredentialOrigin",
    "ResolveKind",
    "SecurityMode",
    "StoreConnectionConfig",
    "TransportConnectionConfig",
]

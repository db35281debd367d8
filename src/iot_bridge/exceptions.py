"""Error taxonomy for the bridge. Every error here is recovered locally."""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class CredentialResolutionError(BridgeError):
    """A secret or ambient credential could not be resolved."""


class ConnectionFailure(BridgeError):
    """A store or transport connection could not be established."""


class SubscriptionFailure(BridgeError):
    """The broker rejected or failed the topic subscription."""


class BootstrapError(BridgeError):
    """The messages table could not be created."""


class PersistError(BridgeError):
    """A single message could not be written to the store."""


class StoreNotReadyError(PersistError):
    """Persist was attempted before the store pool exists."""

    def __init__(self, state: str = "uninitialized"):
        super().__init__(f"Database pool not initialized (state={state})")
        self.state = state

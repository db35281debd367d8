"""In-flight message container."""

from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """A message handed from the transport to the pipeline. Never buffered."""
    topic: str
    payload: bytes
    received_at: datetime = field(default_factory=_utcnow)

    def text(self) -> str:
        return self.payload.decode('utf-8', errors='replace')

"""Ingestion pipeline: count every arrival, persist it, count successful inserts."""

import logging
import time
from typing import Any, Dict

from .clients.store import StoreConnectionManager
from .exceptions import PersistError
from .metrics import InstrumentationRegistry
from .models import Message

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Moves each received message into the store exactly once, without retry."""

    def __init__(self, store: StoreConnectionManager, metrics: InstrumentationRegistry):
        self.store = store
        self.metrics = metrics

        self.stats = {
            "received": 0,
            "persisted": 0,
            "failed": 0,
            "last_message_time": None
        }

    async def handle(self, message: Message) -> bool:
        """Returns True if the message was persisted."""
        # Arrival is counted before any store interaction, whatever happens next.
        self.metrics.record_received()
        self.stats["received"] += 1
        self.stats["last_message_time"] = time.time()

        try:
            record_id = await self.store.persist(message.payload)
        except PersistError as e:
            logger.error(f"Dropping message from {message.topic}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error persisting message from {message.topic}: {e}", exc_info=True)
        else:
            self.metrics.record_persisted()
            self.stats["persisted"] += 1
            logger.debug(f"Persisted message {record_id} from {message.topic}")
            return True

        self.stats["failed"] += 1
        return False

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

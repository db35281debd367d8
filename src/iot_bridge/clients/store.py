"""PostgreSQL store connection manager for persisting MQTT messages."""

import asyncio
import logging
import ssl
from datetime import datetime
from typing import Any, Dict, Optional, Union

import asyncpg
from asyncpg import Pool

from ..config.resolver import STATIC_FALLBACK_CREDENTIAL, SecurityMode, StoreConnectionConfig
from ..exceptions import BootstrapError, PersistError, StoreNotReadyError
from .state import ConnectionState


logger = logging.getLogger(__name__)


CREATE_MESSAGES_TABLE = """
    CREATE TABLE IF NOT EXISTS messages (
        id SERIAL PRIMARY KEY,
        payload TEXT NOT NULL,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

INSERT_MESSAGE = "INSERT INTO messages(payload) VALUES($1) RETURNING id"


def build_ssl(security_mode: SecurityMode) -> Union[ssl.SSLContext, bool]:
    """TLS without peer verification for managed databases, plain otherwise."""
    if security_mode is not SecurityMode.ENCRYPTED_UNVERIFIED:
        return False

    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class StoreConnectionManager:
    """Owns the asyncpg pool, the one-time schema bootstrap and ``persist``."""

    def __init__(self):
        self.pool: Optional[Pool] = None
        self.config: Optional[StoreConnectionConfig] = None
        self.state = ConnectionState.UNINITIALIZED
        self._bootstrapped = False
        self._init_lock = asyncio.Lock()
        self._bootstrap_lock = asyncio.Lock()

        self.stats = {
            "inserts": 0,
            "insert_errors": 0,
            "not_ready_rejections": 0,
            "bootstrap_attempts": 0,
            "last_insert_time": None,
            "last_error": None
        }

    @property
    def is_ready(self) -> bool:
        return self.pool is not None

    async def initialize(self, config: StoreConnectionConfig) -> Optional[Pool]:
        """Create the pool and bootstrap the schema. Safe to call repeatedly."""
        async with self._init_lock:
            if self.pool is not None:
                return self.pool

            self.config = config
            self.state = ConnectionState.CONNECTING
            logger.info(f"Initializing database connection pool for {config.host}:{config.port}")

            try:
                self.pool = await self._create_pool(config)
                self.state = ConnectionState.READY
                logger.info(f"Connected to PostgreSQL database at {config.host}:{config.port}")
            except Exception as e:
                logger.error(f"Failed to initialize database pool: {e}")
                self.stats["last_error"] = str(e)
                self.pool = await self._create_fallback_pool(config)

        if self.pool is not None:
            await self.bootstrap()
        return self.pool

    async def _create_pool(self, config: StoreConnectionConfig, min_size: Optional[int] = None) -> Pool:
        return await asyncpg.create_pool(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.credential.value,
            database=config.database,
            ssl=build_ssl(config.security_mode),
            min_size=config.pool_min_size if min_size is None else min_size,
            max_size=config.pool_max_size,
            timeout=config.connect_timeout,
            command_timeout=60
        )

    async def _create_fallback_pool(self, config: StoreConnectionConfig) -> Optional[Pool]:
        """Lazy pool with the static default password; connects on first use."""
        fallback = config.with_credential(STATIC_FALLBACK_CREDENTIAL)
        try:
            pool = await self._create_pool(fallback, min_size=0)
        except Exception as e:
            logger.error(f"Failed to create fallback database pool: {e}")
            self.state = ConnectionState.FAILED_STUB
            return None

        self.config = fallback
        self.state = ConnectionState.DEGRADED
        logger.warning("Using fallback database pool with default credentials")
        return pool

    async def bootstrap(self) -> bool:
        """Create the messages table if it does not exist.

        Returns False instead of raising; a failed bootstrap is retried before
        the next persist.
        """
        if self.pool is None:
            return False

        # Concurrent CREATE TABLE IF NOT EXISTS can still collide in pg_type
        async with self._bootstrap_lock:
            if self._bootstrapped:
                return True

            self.stats["bootstrap_attempts"] += 1
            try:
                async with self.pool.acquire() as conn:
                    await conn.execute(CREATE_MESSAGES_TABLE)
            except Exception as e:
                error = BootstrapError(f"Table creation error: {e}")
                logger.error(str(error))
                self.stats["last_error"] = str(error)
                return False

            self._bootstrapped = True
            if self.state is ConnectionState.DEGRADED:
                self.state = ConnectionState.READY
            logger.info("Messages table ready")
            return True

    async def persist(self, payload: Union[bytes, str]) -> int:
        """Insert one message and return its server-assigned id.

        Raises:
            StoreNotReadyError: the pool has not been created yet
            PersistError: the insert failed
        """
        if self.pool is None:
            self.stats["not_ready_rejections"] += 1
            raise StoreNotReadyError(self.state.value)

        if not self._bootstrapped:
            await self.bootstrap()

        text = payload.decode('utf-8', errors='replace') if isinstance(payload, bytes) else payload

        try:
            async with self.pool.acquire() as conn:
                record_id = await conn.fetchval(INSERT_MESSAGE, text)
        except Exception as e:
            self.stats["insert_errors"] += 1
            self.stats["last_error"] = str(e)
            raise PersistError(f"Database insert error: {e}") from e

        self.stats["inserts"] += 1
        self.stats["last_insert_time"] = datetime.now()
        return record_id

    async def close(self):
        """Close database connection pool."""
        if self.pool:
            logger.info("Closing database connection pool")
            await self.pool.close()
            self.pool = None
            self.state = ConnectionState.UNINITIALIZED

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on database connection."""
        health_status = {
            "status": "healthy",
            "state": self.state.value,
            "timestamp": datetime.now().isoformat(),
            "stats": self.get_stats()
        }

        if self.pool is None:
            health_status["status"] = "unhealthy"
            health_status["error"] = "Database pool not initialized"
            return health_status

        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as e:
            health_status["status"] = "unhealthy"
            health_status["error"] = str(e)
            return health_status

        if not self._bootstrapped or self.state is ConnectionState.DEGRADED:
            health_status["status"] = "degraded"

        return health_status

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats["state"] = self.state.value
        stats["bootstrapped"] = self._bootstrapped

        if self.pool is not None:
            stats["pool_stats"] = {
                "size": self.pool.get_size(),
                "max_size": self.pool.get_max_size(),
                "idle_size": self.pool.get_idle_size()
            }

        return stats

"""Credential and connection-parameter resolution for the store and the transport.

Resolution never raises: every failure collapses into a fallback credential
(store) or a degraded config (transport), so downstream components always
receive something they can attempt a connection with.
"""

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from ..exceptions import CredentialResolutionError
from .aws_config import AWSClientManager, AWSCredentials
from .settings import BridgeSettings

logger = logging.getLogger(__name__)

DEFAULT_DB_PORT = 5432
DEFAULT_DB_PASSWORD = "iotpassword"
AWS_IOT_WSS_PORT = 443

RDS_HOST_MARKER = ".rds.amazonaws.com"


class SecurityMode(Enum):
    PLAIN = "plain"
    ENCRYPTED_UNVERIFIED = "encrypted_unverified"
    AUTHENTICATED_WEBSOCKET = "authenticated_websocket"


class CredentialOrigin(Enum):
    EXTERNAL_SECRET_STORE = "external_secret_store"
    ENVIRONMENT_DEFAULT = "environment_default"
    STATIC_FALLBACK = "static_fallback"


class ResolveKind(Enum):
    STORE = "store"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class Credential:
    """A password plus where it came from."""
    value: str
    origin: CredentialOrigin

    def __repr__(self) -> str:
        return f"Credential(origin={self.origin.value})"


STATIC_FALLBACK_CREDENTIAL = Credential(DEFAULT_DB_PASSWORD, CredentialOrigin.STATIC_FALLBACK)


@dataclass(frozen=True)
class StoreConnectionConfig:
    host: str
    port: int
    user: str
    database: str
    credential: Credential
    security_mode: SecurityMode
    pool_min_size: int = 1
    pool_max_size: int = 10
    connect_timeout: float = 10.0

    def with_credential(self, credential: Credential) -> "StoreConnectionConfig":
        return StoreConnectionConfig(
            host=self.host,
            port=self.port,
            user=self.user,
            database=self.database,
            credential=credential,
            security_mode=self.security_mode,
            pool_min_size=self.pool_min_size,
            pool_max_size=self.pool_max_size,
            connect_timeout=self.connect_timeout,
        )


@dataclass(frozen=True)
class TransportConnectionConfig:
    host: str
    port: int
    topic: str
    client_id: str
    security_mode: SecurityMode
    region: str
    keepalive: int = 60
    credentials: Optional[AWSCredentials] = None
    degraded: bool = False

    @property
    def is_managed(self) -> bool:
        return self.security_mode is SecurityMode.AUTHENTICATED_WEBSOCKET


def is_managed_iot_endpoint(host: str) -> bool:
    """True for AWS IoT Core data endpoints, e.g. abc-ats.iot.eu-west-1.amazonaws.com."""
    return ".iot." in host and ".amazonaws.com" in host


def is_managed_database(hostname: str) -> bool:
    return RDS_HOST_MARKER in hostname


def split_host_port(host: str, default_port: int = DEFAULT_DB_PORT) -> Tuple[str, int]:
    """Split ``host[:port]``; a missing or non-numeric port gives the default."""
    if ':' not in host:
        return host, default_port

    hostname, _, port_text = host.rpartition(':')
    try:
        port = int(port_text)
    except ValueError:
        logger.warning(f"Invalid port in host '{host}', using {default_port}")
        return hostname, default_port
    return hostname, port


def generate_client_id(prefix: str = "iot-backend") -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = ''.join(secrets.choice(alphabet) for _ in range(9))
    return f"{prefix}-{suffix}"


class ConfigResolver:
    """Produces final connection configs for the store and the transport."""

    def __init__(self, settings: BridgeSettings, aws_client_manager: Optional[AWSClientManager] = None):
        self.settings = settings
        self.aws = aws_client_manager or AWSClientManager(settings)
        self.timeout = settings.resolution_timeout_seconds
        self._client_id = generate_client_id()

    async def resolve(self, kind: Union[ResolveKind, str]) -> Union[StoreConnectionConfig, TransportConnectionConfig]:
        kind = ResolveKind(kind)
        if kind is ResolveKind.STORE:
            return await self.resolve_store()
        return await self.resolve_transport()

    async def resolve_store(self) -> StoreConnectionConfig:
        hostname, port = split_host_port(self.settings.db_host)
        security_mode = SecurityMode.ENCRYPTED_UNVERIFIED if is_managed_database(hostname) else SecurityMode.PLAIN
        credential = await self._resolve_store_credential()

        config = StoreConnectionConfig(
            host=hostname,
            port=port,
            user=self.settings.db_user,
            database=self.settings.db_name,
            credential=credential,
            security_mode=security_mode,
            pool_min_size=self.settings.db_pool_min_size,
            pool_max_size=self.settings.db_pool_max_size,
            connect_timeout=self.settings.db_connect_timeout_seconds,
        )
        logger.info(
            f"Resolved store config: {hostname}:{port} db={config.database} "
            f"security={security_mode.value} credential={credential.origin.value}"
        )
        return config

    async def _resolve_store_credential(self) -> Credential:
        secret_arn = self.settings.db_secret_arn
        if secret_arn:
            try:
                password = await asyncio.wait_for(
                    asyncio.to_thread(self.aws.get_secret_password, secret_arn),
                    timeout=self.timeout
                )
                logger.info("Database password retrieved from Secrets Manager")
                return Credential(password, CredentialOrigin.EXTERNAL_SECRET_STORE)
            except asyncio.TimeoutError:
                logger.error(f"Timed out after {self.timeout}s fetching secret from Secrets Manager")
            except Exception as e:
                logger.error(f"Failed to get password from Secrets Manager: {e}")

        return self._default_store_credential()

    def _default_store_credential(self) -> Credential:
        if self.settings.db_password:
            return Credential(self.settings.db_password, CredentialOrigin.ENVIRONMENT_DEFAULT)
        return STATIC_FALLBACK_CREDENTIAL

    async def resolve_transport(self) -> TransportConnectionConfig:
        host = self.settings.mqtt_host

        if not is_managed_iot_endpoint(host):
            return TransportConnectionConfig(
                host=host,
                port=self.settings.mqtt_port,
                topic=self.settings.mqtt_topic,
                client_id=self._client_id,
                security_mode=SecurityMode.PLAIN,
                region=self.settings.aws_region,
                keepalive=self.settings.mqtt_keepalive_seconds,
            )

        credentials = None
        try:
            credentials = await asyncio.wait_for(
                asyncio.to_thread(self.aws.resolve_credentials),
                timeout=self.timeout
            )
            logger.info("AWS credentials resolved successfully")
        except asyncio.TimeoutError:
            logger.error(f"Timed out after {self.timeout}s resolving AWS credentials")
        except CredentialResolutionError as e:
            logger.error(f"Failed to resolve AWS credentials: {e}")
        except Exception as e:
            logger.error(f"Failed to resolve AWS credentials: {e}", exc_info=True)

        return TransportConnectionConfig(
            host=host,
            port=AWS_IOT_WSS_PORT,
            topic=self.settings.mqtt_topic,
            client_id=self._client_id,
            security_mode=SecurityMode.AUTHENTICATED_WEBSOCKET,
            region=self.settings.aws_region,
            keepalive=self.settings.mqtt_keepalive_seconds,
            credentials=credentials,
            degraded=credentials is None,
        )

"""MQTT transport supervision for a local Mosquitto broker or AWS IoT Core."""

import asyncio
import logging
import ssl
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import quote, urlsplit

import aiomqtt
from botocore.auth import EMPTY_SHA256_HASH, SigV4QueryAuth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from ..config.aws_config import AWSCredentials
from ..config.resolver import ConfigResolver, TransportConnectionConfig
from ..config.settings import BridgeSettings
from ..exceptions import ConnectionFailure, SubscriptionFailure
from ..models import Message
from ..utils.retry import backoff_delay
from .state import ConnectionState

logger = logging.getLogger(__name__)

EVENTS = ("connect", "message", "disconnect")

MessageCallback = Callable[[Message], Awaitable[Any]]


class _IotWebsocketQueryAuth(SigV4QueryAuth):
    """SigV4 query signing as AWS IoT expects it: empty-body payload hash."""

    def payload(self, request):
        return EMPTY_SHA256_HASH


def presign_iot_websocket_path(
    host: str,
    region: str,
    credentials: AWSCredentials,
    expires: int = 86400
) -> str:
    """Build the signed ``/mqtt?X-Amz-...`` path for an AWS IoT WebSocket connection.

    The session token is appended after signing; AWS IoT rejects it inside
    the canonical query.
    """
    request = AWSRequest(method="GET", url=f"https://{host}/mqtt")
    signer = _IotWebsocketQueryAuth(
        Credentials(credentials.access_key, credentials.secret_key),
        "iotdevicegateway",
        region,
        expires=expires
    )
    signer.add_auth(request)

    parts = urlsplit(request.url)
    path = f"{parts.path}?{parts.query}"
    if credentials.session_token:
        path += "&X-Amz-Security-Token=" + quote(credentials.session_token, safe="")
    return path


class TransportHandle(ABC):
    """What callers may do with the transport, whether or not it is connected."""

    is_stub: bool = False

    @abstractmethod
    def on(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    @abstractmethod
    async def subscribe(self, topic: str) -> bool:
        ...


class StubTransportHandle(TransportHandle):
    """Placeholder used until a real connection exists. Every operation is a no-op."""

    is_stub = True

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        logger.debug(f"Ignoring '{event}' handler registration on stub transport")

    async def subscribe(self, topic: str) -> bool:
        logger.debug(f"Ignoring subscribe to {topic} on stub transport")
        return False


class MqttTransportHandle(TransportHandle):
    """Wraps a connected aiomqtt client and dispatches lifecycle events."""

    def __init__(self, client: aiomqtt.Client):
        self.client = client
        self.last_error: Optional[SubscriptionFailure] = None
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        if event not in EVENTS:
            logger.warning(f"Ignoring handler for unknown transport event '{event}', expected one of {EVENTS}")
            return
        self._handlers[event].append(handler)

    async def subscribe(self, topic: str) -> bool:
        """Returns False, with ``last_error`` set, if the broker or client refused."""
        try:
            await self.client.subscribe(topic)
        except aiomqtt.MqttError as e:
            self.last_error = SubscriptionFailure(f"MQTT subscription error: {e}")
            logger.error(str(self.last_error))
            return False
        self.last_error = None
        return True

    async def emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers.get(event, []):
            try:
                result = handler(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Handler error for '{event}': {e}", exc_info=True)


class TransportSupervisor:
    """
    Owns the MQTT connection lifecycle.

    ``handle`` is always usable: a stub until a connection is established
    (and again after it drops), the real handle while connected. Failures in
    credential resolution or connecting leave the supervisor degraded and
    trigger a delayed retry; nothing propagates to the caller.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        resolver: ConfigResolver,
        on_message: MessageCallback,
        client_factory: Callable[..., aiomqtt.Client] = aiomqtt.Client
    ):
        self.settings = settings
        self.resolver = resolver
        self.on_message = on_message
        self.client_factory = client_factory

        self.handle: TransportHandle = StubTransportHandle()
        self.state = ConnectionState.UNINITIALIZED
        self.config: Optional[TransportConnectionConfig] = None

        self._running = False
        self._pending: Set[asyncio.Task] = set()

        self.stats = {
            'connection_count': 0,
            'reconnect_attempts': 0,
            'messages_received': 0,
            'subscribed_topic': None,
            'last_message_time': None,
            'last_error': None
        }

    @property
    def is_subscribed(self) -> bool:
        return self.state in (ConnectionState.SUBSCRIBED, ConnectionState.RECEIVING)

    async def run(self) -> None:
        """Connect, receive, and reconnect until ``stop`` is called."""
        self._running = True
        attempt = 0

        while self._running:
            received_before = self.stats['messages_received']
            subscribed = await self.connect_once()

            if not self._running:
                break

            if subscribed or self.stats['messages_received'] > received_before:
                attempt = 0

            delay = backoff_delay(
                attempt,
                initial_delay=self.settings.reconnect_initial_seconds,
                max_delay=self.settings.reconnect_max_seconds
            )
            attempt += 1
            self.stats['reconnect_attempts'] += 1
            logger.info(f"Reconnecting to MQTT broker in {delay:.1f}s (state={self.state.value})")
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        self._running = False
        await self._drain()
        self.handle = StubTransportHandle()

    async def connect_once(self) -> bool:
        """
        One full connection session: resolve, connect, subscribe, receive.

        Returns True if the session reached the subscribed state.
        """
        subscribed = False

        self.state = ConnectionState.RESOLVING_CREDENTIALS
        config = await self.resolver.resolve_transport()
        self.config = config

        if config.degraded:
            self.state = ConnectionState.DEGRADED
            self.handle = StubTransportHandle()
            self.stats['last_error'] = "AWS credentials unavailable"
            logger.warning(f"Transport degraded: no credentials for {config.host}, keeping stub client")
            return False

        self.state = ConnectionState.CONNECTING
        if config.is_managed:
            logger.info(f"Connecting to AWS IoT Core: {config.host}")
        else:
            logger.info(f"Connecting to local MQTT broker: {config.host}")

        handle: Optional[MqttTransportHandle] = None
        try:
            client = self.client_factory(**self._client_kwargs(config))
            async with client:
                handle = MqttTransportHandle(client)
                self._register_handlers(handle, config)
                self.handle = handle
                self.stats['connection_count'] += 1

                logger.info("Connected to MQTT broker")
                await handle.emit("connect")
                subscribed = self.is_subscribed

                async for mqtt_message in client.messages:
                    await handle.emit("message", self._to_message(mqtt_message))

                self._record_connection_loss(ConnectionFailure("MQTT message stream closed"))

        except asyncio.CancelledError:
            raise
        except aiomqtt.MqttError as e:
            self._record_connection_loss(ConnectionFailure(f"MQTT connection error: {e}"))
        except Exception as e:
            self._record_connection_loss(ConnectionFailure(f"Unexpected transport error: {e}"))
            logger.debug("Transport error traceback", exc_info=e)
        finally:
            if handle is not None:
                await handle.emit("disconnect")
            self.handle = StubTransportHandle()
            await self._drain()

        return subscribed

    def _client_kwargs(self, config: TransportConnectionConfig) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            'hostname': config.host,
            'port': config.port,
            'identifier': config.client_id,
            'keepalive': config.keepalive,
        }

        if config.is_managed:
            kwargs.update(
                transport="websockets",
                websocket_path=presign_iot_websocket_path(config.host, config.region, config.credentials),
                tls_context=ssl.create_default_context(),
            )

        return kwargs

    def _register_handlers(self, handle: MqttTransportHandle, config: TransportConnectionConfig) -> None:

        async def handle_connect():
            self.state = ConnectionState.SUBSCRIBED
            if not await handle.subscribe(config.topic):
                self.state = ConnectionState.DEGRADED
                self.stats['last_error'] = str(handle.last_error)
                return
            self.stats['subscribed_topic'] = config.topic
            logger.info(f"Subscribed to topic {config.topic}")

        def handle_message(message: Message):
            if self.state is ConnectionState.SUBSCRIBED:
                self.state = ConnectionState.RECEIVING
            self.stats['messages_received'] += 1
            self.stats['last_message_time'] = time.time()
            logger.debug(f"Received MQTT message on {message.topic}: {message.text()[:200]}")
            self._dispatch(message)

        handle.on("connect", handle_connect)
        handle.on("message", handle_message)

    def _dispatch(self, message: Message) -> None:
        # Each message is handed off on its own task so store latency never
        # slows down reading from the broker.
        task = asyncio.create_task(self._deliver(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, message: Message) -> None:
        try:
            await self.on_message(message)
        except Exception as e:
            logger.error(f"Message handler failed: {e}", exc_info=True)

    async def _drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _record_connection_loss(self, error: ConnectionFailure) -> None:
        if self.is_subscribed:
            self.state = ConnectionState.DISCONNECTED
            logger.warning(f"Disconnected from MQTT broker: {error}")
        else:
            self.state = ConnectionState.DEGRADED
            logger.error(str(error))
        self.stats['last_error'] = str(error)

    @staticmethod
    def _to_message(mqtt_message: aiomqtt.Message) -> Message:
        payload = mqtt_message.payload
        if payload is None:
            payload = b""
        elif not isinstance(payload, (bytes, bytearray)):
            payload = str(payload).encode('utf-8')

        topic = getattr(mqtt_message.topic, 'value', mqtt_message.topic)
        return Message(topic=str(topic), payload=bytes(payload))

    async def health_check(self) -> Dict[str, Any]:
        issues = []
        if self.handle.is_stub:
            issues.append("Not connected to MQTT broker")
        if not self.is_subscribed:
            issues.append(f"Not subscribed (state={self.state.value})")

        return {
            'status': 'healthy' if not issues else 'unhealthy',
            'state': self.state.value,
            'issues': issues,
            'stats': self.get_stats()
        }

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats['state'] = self.state.value
        stats['host'] = self.config.host if self.config else self.settings.mqtt_host
        stats['pending_deliveries'] = len(self._pending)
        return stats

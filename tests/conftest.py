"""Pytest configuration and shared fixtures."""

import asyncio
import itertools
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from iot_bridge.config.aws_config import AWSClientManager, AWSCredentials
from iot_bridge.config.resolver import (
    ConfigResolver,
    Credential,
    CredentialOrigin,
    SecurityMode,
    StoreConnectionConfig,
)
from iot_bridge.config.settings import BridgeSettings
from iot_bridge.metrics import InstrumentationRegistry


class FakeConnection:
    """Just enough of an asyncpg connection for the bridge's queries."""

    def __init__(self, pool: "FakePool"):
        self.pool = pool

    async def execute(self, query: str, *args):
        self.pool.executed.append(query)
        await asyncio.sleep(0)
        if self.pool.fail_execute:
            raise self.pool.fail_execute
        if "CREATE TABLE IF NOT EXISTS messages" in query:
            self.pool.tables.add("messages")
        return "CREATE TABLE"

    async def fetchval(self, query: str, *args):
        if query.startswith("INSERT"):
            if self.pool.fail_insert:
                raise self.pool.fail_insert
            if "messages" not in self.pool.tables:
                raise RuntimeError('relation "messages" does not exist')
            record_id = next(self.pool._ids)
            self.pool.rows.append({"id": record_id, "payload": args[0]})
            return record_id
        return 1


class _Acquire:
    def __init__(self, pool: "FakePool"):
        self.pool = pool

    async def __aenter__(self):
        if self.pool.fail_acquire:
            raise self.pool.fail_acquire
        self.pool.acquired += 1
        return FakeConnection(self.pool)

    async def __aexit__(self, exc_type, exc, tb):
        self.pool.released += 1
        return False


class FakePool:
    """In-memory stand-in for asyncpg.Pool that records rows and checkouts."""

    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.tables = set()
        self.executed: List[str] = []
        self.acquired = 0
        self.released = 0
        self.closed = False
        self.fail_acquire: Optional[Exception] = None
        self.fail_execute: Optional[Exception] = None
        self.fail_insert: Optional[Exception] = None
        self._ids = itertools.count(1)

    def acquire(self):
        return _Acquire(self)

    async def close(self):
        self.closed = True

    def get_size(self):
        return 1

    def get_max_size(self):
        return 10

    def get_idle_size(self):
        return 1


class FakeMqttClient:
    """Async-context-manager MQTT client with scripted behaviour."""

    def __init__(
        self,
        messages=(),
        connect_error: Optional[Exception] = None,
        subscribe_error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        **kwargs
    ):
        self.kwargs = kwargs
        self._messages = list(messages)
        self.connect_error = connect_error
        self.subscribe_error = subscribe_error
        self.stream_error = stream_error
        self.subscriptions: List[str] = []
        self.entered = False
        self.exited = False

    async def __aenter__(self):
        if self.connect_error:
            raise self.connect_error
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.exited = True
        return False

    async def subscribe(self, topic, *args, **kwargs):
        if self.subscribe_error:
            raise self.subscribe_error
        self.subscriptions.append(topic)

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message
        if self.stream_error:
            raise self.stream_error


class FakeMqttClientFactory:
    """Records every client the supervisor creates."""

    def __init__(self, **behaviour):
        self.behaviour = behaviour
        self.clients: List[FakeMqttClient] = []

    def __call__(self, **kwargs):
        client = FakeMqttClient(**self.behaviour, **kwargs)
        self.clients.append(client)
        return client


def mqtt_message(payload: bytes, topic: str = "iot/data"):
    return SimpleNamespace(topic=SimpleNamespace(value=topic), payload=payload)


@pytest.fixture
def test_settings() -> BridgeSettings:
    """Settings for a local broker and database, isolated from the environment."""
    return BridgeSettings(
        _env_file=None,
        service_name="test-bridge",
        environment="local",
        mqtt_host="mqtt",
        mqtt_topic="iot/data",
        db_host="db",
        db_user="iotuser",
        db_name="iotdb",
        db_password=None,
        db_secret_arn=None,
        reconnect_initial_seconds=0.01,
        reconnect_max_seconds=0.05,
        resolution_timeout_seconds=1.0,
        aws_region="eu-west-1",
        port=3000,
    )


@pytest.fixture
def aws_settings(test_settings) -> BridgeSettings:
    return test_settings.model_copy(update={
        "mqtt_host": "abc.iot.eu-west-1.amazonaws.com",
        "aws_region": "eu-west-1",
    })


@pytest.fixture
def mock_aws_client_manager():
    """Mock AWS client manager."""
    manager = Mock(spec=AWSClientManager)
    manager.get_secret_password = Mock(return_value="secret-from-arn")
    manager.resolve_credentials = Mock(return_value=AWSCredentials(
        access_key="AKIAEXAMPLE",
        secret_key="secret",
        session_token="token/with+chars=="
    ))
    return manager


@pytest.fixture
def resolver(test_settings, mock_aws_client_manager) -> ConfigResolver:
    return ConfigResolver(test_settings, mock_aws_client_manager)


@pytest.fixture
def store_config() -> StoreConnectionConfig:
    return StoreConnectionConfig(
        host="db",
        port=5432,
        user="iotuser",
        database="iotdb",
        credential=Credential("envpassword", CredentialOrigin.ENVIRONMENT_DEFAULT),
        security_mode=SecurityMode.PLAIN,
    )


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def instrumentation() -> InstrumentationRegistry:
    return InstrumentationRegistry()


@pytest.fixture
def client_factory():
    """Build a FakeMqttClientFactory with the given scripted behaviour."""
    return FakeMqttClientFactory


@pytest.fixture
def make_message():
    return mqtt_message

"""Tests for the AWS client manager."""

import asyncio
import json
import time
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from iot_bridge.config.aws_config import AWSClientManager, AWSCredentials
from iot_bridge.exceptions import CredentialResolutionError


@pytest.fixture
def manager(test_settings):
    manager = AWSClientManager(test_settings)
    manager._secrets_client = Mock()
    return manager


class TestSecretPassword:

    def test_password_from_json_secret(self, manager):
        manager._secrets_client.get_secret_value.return_value = {
            'SecretString': json.dumps({'username': 'iotuser', 'password': 's3cret'})
        }

        assert manager.get_secret_password("arn:secret") == "s3cret"
        manager._secrets_client.get_secret_value.assert_called_once_with(SecretId="arn:secret")

    @pytest.mark.parametrize("secret_string,match", [
        ("not-json", "not valid JSON"),
        (json.dumps({"username": "iotuser"}), "no password field"),
        ("", "no SecretString"),
    ])
    def test_malformed_secret(self, manager, secret_string, match):
        manager._secrets_client.get_secret_value.return_value = {'SecretString': secret_string}

        with pytest.raises(CredentialResolutionError, match=match):
            manager.get_secret_password("arn:secret")

    def test_localstack_endpoint(self, test_settings):
        settings = test_settings.model_copy(update={"aws_endpoint_url": "http://localstack:4566"})
        manager = AWSClientManager(settings)
        session = Mock()

        with patch("iot_bridge.config.aws_config.boto3.session.Session", return_value=session):
            manager.secrets_client

        assert session.client.call_args.kwargs["endpoint_url"] == "http://localstack:4566"


class TestAmbientCredentials:

    def test_resolves_frozen_credentials(self, test_settings):
        manager = AWSClientManager(test_settings)
        session = Mock()
        session.get_credentials.return_value.get_frozen_credentials.return_value = SimpleNamespace(
            access_key="AKIAEXAMPLE", secret_key="secret", token="session-token"
        )
        manager._session = session

        credentials = manager.resolve_credentials()

        assert credentials == AWSCredentials("AKIAEXAMPLE", "secret", "session-token")
        assert "secret" not in repr(credentials)

    def test_no_provider_raises(self, test_settings):
        manager = AWSClientManager(test_settings)
        manager._session = Mock()
        manager._session.get_credentials.return_value = None

        with pytest.raises(CredentialResolutionError, match="No AWS credentials"):
            manager.resolve_credentials()


class TestSessionSharing:

    @pytest.mark.asyncio
    async def test_session_built_once_across_worker_threads(self, test_settings):
        manager = AWSClientManager(test_settings)

        def build_session(**kwargs):
            time.sleep(0.05)
            session = Mock()
            session.get_credentials.return_value.get_frozen_credentials.return_value = SimpleNamespace(
                access_key="AKIAEXAMPLE", secret_key="secret", token=None
            )
            return session

        with patch("iot_bridge.config.aws_config.boto3.session.Session", side_effect=build_session) as session_cls:
            clients_and_credentials = await asyncio.gather(
                asyncio.to_thread(lambda: manager.secrets_client),
                asyncio.to_thread(manager.resolve_credentials),
            )

        session_cls.assert_called_once_with(region_name="eu-west-1")
        assert clients_and_credentials[1].access_key == "AKIAEXAMPLE"

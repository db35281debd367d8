"""AWS-specific configuration and client setup."""

import json
import logging
import threading
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.config import Config

from ..exceptions import CredentialResolutionError
from .settings import BridgeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AWSCredentials:
    """Short-lived credentials from the ambient provider chain."""
    access_key: str
    secret_key: str
    session_token: Optional[str] = None

    def __repr__(self) -> str:
        return f"AWSCredentials(access_key={self.access_key[:4]}****)"


class AWSClientManager:
    """Manages AWS client instances with proper configuration.

    All methods are blocking boto3 calls; async callers run them in a
    worker thread.
    """

    def __init__(self, settings: BridgeSettings):
        self.settings = settings
        self._session: Optional[boto3.session.Session] = None
        self._secrets_client = None
        # Session and clients are first built from worker threads, possibly two at once
        self._lock = threading.RLock()

        self._boto_config = Config(
            region_name=settings.aws_region,
            retries={
                'max_attempts': 3,
                'mode': 'standard'
            },
            connect_timeout=5,
            read_timeout=10
        )

    @property
    def session(self) -> boto3.session.Session:
        with self._lock:
            if self._session is None:
                self._session = boto3.session.Session(region_name=self.settings.aws_region)
            return self._session

    @property
    def secrets_client(self):
        """Get or create the Secrets Manager client."""
        with self._lock:
            if self._secrets_client is None:
                if self.settings.aws_endpoint_url:
                    self._secrets_client = self.session.client(
                        'secretsmanager',
                        endpoint_url=self.settings.aws_endpoint_url,
                        aws_access_key_id='test',
                        aws_secret_access_key='test',
                        region_name=self.settings.aws_region
                    )
                    logger.info(f"Created LocalStack Secrets Manager client: {self.settings.aws_endpoint_url}")
                else:
                    self._secrets_client = self.session.client(
                        'secretsmanager',
                        config=self._boto_config
                    )
                    logger.info(f"Created AWS Secrets Manager client in region: {self.settings.aws_region}")

            return self._secrets_client

    def get_secret_password(self, secret_id: str) -> str:
        """Fetch a JSON secret and return its ``password`` key.

        Raises botocore errors as-is; a malformed secret raises
        CredentialResolutionError.
        """
        response = self.secrets_client.get_secret_value(SecretId=secret_id)
        secret_string = response.get('SecretString')
        if not secret_string:
            raise CredentialResolutionError(f"Secret {secret_id} has no SecretString")

        try:
            secret = json.loads(secret_string)
        except json.JSONDecodeError as e:
            raise CredentialResolutionError(f"Secret {secret_id} is not valid JSON: {e}") from e

        password = secret.get('password') if isinstance(secret, dict) else None
        if not password:
            raise CredentialResolutionError(f"Secret {secret_id} has no password field")
        return password

    def resolve_credentials(self) -> AWSCredentials:
        """Resolve credentials from the default provider chain (env, IRSA, instance profile)."""
        with self._lock:
            credentials = self.session.get_credentials()
        if credentials is None:
            raise CredentialResolutionError("No AWS credentials found in provider chain")

        frozen = credentials.get_frozen_credentials()
        return AWSCredentials(
            access_key=frozen.access_key,
            secret_key=frozen.secret_key,
            session_token=frozen.token
        )

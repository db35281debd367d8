"""Configuration settings using Pydantic for validation."""

from typing import Any, Dict, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re


LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class BridgeSettings(BaseSettings):
    """Main bridge service settings.

    Field names map one-to-one onto the environment variables the service
    has always been deployed with (MQTT_HOST, DB_HOST, DB_SECRET_ARN, ...).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = Field(default="iot-backend", description="Service name")
    environment: str = Field(default="local", description="Environment: local, dev, prod")
    port: int = Field(default=3000, description="HTTP port for /health and /metrics")
    health_host: str = Field(default="0.0.0.0", description="HTTP bind address")

    # MQTT transport
    mqtt_host: str = Field(default="mqtt", description="Broker host or AWS IoT endpoint")
    mqtt_port: int = Field(default=1883, description="Local broker port")
    mqtt_topic: str = Field(default="iot/data", description="Single topic to subscribe to")
    mqtt_keepalive_seconds: int = Field(default=60, description="MQTT keepalive interval")
    reconnect_initial_seconds: float = Field(default=1.0, description="Initial reconnect delay")
    reconnect_max_seconds: float = Field(default=30.0, description="Maximum reconnect delay")

    # PostgreSQL store
    db_host: str = Field(default="db", description="Database host, optionally host:port")
    db_user: str = Field(default="iotuser", description="Database user")
    db_name: str = Field(default="iotdb", description="Database name")
    db_password: Optional[str] = Field(default=None, description="Database password override")
    db_secret_arn: Optional[str] = Field(default=None, description="Secrets Manager secret holding the password")
    db_pool_min_size: int = Field(default=1, description="Minimum pool connections")
    db_pool_max_size: int = Field(default=10, description="Maximum pool connections")
    db_connect_timeout_seconds: float = Field(default=10.0, description="Connection timeout")

    # AWS
    aws_region: str = Field(default="eu-west-1", description="AWS region")
    resolution_timeout_seconds: float = Field(default=10.0, description="Bound on secret/credential lookups")
    aws_endpoint_url: Optional[str] = Field(default=None, description="LocalStack endpoint URL for local development")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format: json or text")

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['local', 'dev', 'prod']:
            raise ValueError("Environment must be 'local', 'dev', or 'prod'")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of {', '.join(LOG_LEVELS)}")
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        if v.lower() not in ['json', 'text']:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()

    @field_validator('db_password', 'db_secret_arn')
    @classmethod
    def blank_to_none(cls, v):
        # Compose files often export these as empty strings
        if v is not None and not v.strip():
            return None
        return v


_ENV_REF = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')


def expand_env_vars(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Expand ``${VAR}`` and ``${VAR:-default}`` in the string values of a flat
    settings mapping. ``${VAR}`` with VAR unset raises ValueError.
    """
    def lookup(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        value = os.getenv(name, default)
        if value is None:
            raise ValueError(f"Required environment variable '{name}' is not set")
        return value

    return {
        key: _ENV_REF.sub(lookup, value) if isinstance(value, str) else value
        for key, value in config.items()
    }


def load_settings(config_file: Optional[str] = None) -> BridgeSettings:
    """
    Load settings from an optional YAML file and environment variables.

    Values from the file are passed as init arguments, so they take precedence
    over the environment; use ${VAR:-default} inside the file to defer to it.

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = expand_env_vars(raw_config)
        return BridgeSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return BridgeSettings()

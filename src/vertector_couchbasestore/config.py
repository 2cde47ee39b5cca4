"""
Configuration management for CouchbaseStore.

This module provides:
- Pydantic-based configuration validation
- Secrets management integration (environment variables, AWS Secrets Manager)
- Timeout configuration with ISO-8601 or numeric-second durations
- Background bootstrap configuration
"""

import os
import json
import logging
from datetime import timedelta
from typing import Optional, Literal
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from enum import Enum

logger = logging.getLogger(__name__)


# ============================================================================
# Secrets Management
# ============================================================================

class SecretsProvider(str, Enum):
    """Supported secrets management providers."""
    ENV = "env"
    AWS_SECRETS_MANAGER = "aws_secrets_manager"


class SecretsManager:
    """
    Unified interface for retrieving secrets.

    Supports:
    - Environment variables (default)
    - AWS Secrets Manager (requires the ``aws`` extra)
    """

    def __init__(self, provider: SecretsProvider = SecretsProvider.ENV):
        self.provider = provider
        self._aws_client = None

    def get_secret(self, secret_name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Retrieve a secret from the configured provider.

        Args:
            secret_name: Name/key of the secret
            default: Default value if secret not found

        Returns:
            Secret value or default

        Raises:
            ValueError: If secret not found and no default provided
        """
        if self.provider == SecretsProvider.ENV:
            return self._get_from_env(secret_name, default)
        elif self.provider == SecretsProvider.AWS_SECRETS_MANAGER:
            return self._get_from_aws(secret_name, default)
        else:
            raise NotImplementedError(f"Provider {self.provider} not yet implemented")

    def _get_from_env(self, secret_name: str, default: Optional[str] = None) -> Optional[str]:
        """Get secret from environment variable."""
        value = os.getenv(secret_name, default)
        if value is None:
            raise ValueError(f"Secret '{secret_name}' not found in environment variables")
        return value

    def _get_from_aws(self, secret_name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get secret from AWS Secrets Manager.

        Plain string secrets are returned as-is. JSON secrets holding a
        ``password`` field (the layout AWS uses for database credentials)
        yield that field.
        """
        try:
            import boto3
            from botocore.exceptions import ClientError
        except ImportError:
            raise ImportError(
                "AWS Secrets Manager requires boto3. Install with: pip install 'vertector-couchbasestore[aws]'"
            )

        if self._aws_client is None:
            self._aws_client = boto3.client('secretsmanager')

        try:
            response = self._aws_client.get_secret_value(SecretId=secret_name)
        except ClientError as e:
            error_code = e.response['Error']['Code']
            if error_code == 'ResourceNotFoundException':
                if default is not None:
                    logger.warning(f"Secret '{secret_name}' not found in AWS, using default")
                    return default
                raise ValueError(f"Secret '{secret_name}' not found in AWS Secrets Manager")
            raise ValueError(f"Failed to retrieve secret '{secret_name}': {e}")

        secret_value = response.get('SecretString')
        if secret_value is None:
            secret_binary = response.get('SecretBinary')
            if secret_binary is None:
                raise ValueError(f"Secret '{secret_name}' has no value")
            return secret_binary.decode('utf-8')

        try:
            secret_dict = json.loads(secret_value)
        except json.JSONDecodeError:
            return secret_value
        if isinstance(secret_dict, dict) and 'password' in secret_dict:
            return str(secret_dict['password'])
        return secret_value


# ============================================================================
# Configuration Models
# ============================================================================

class AuthConfig(BaseModel):
    """Cluster credentials."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(
        default="",
        description="Cluster username"
    )

    password: str = Field(
        default="",
        description="Cluster password (prefer password_secret_name)"
    )

    password_secret_name: Optional[str] = Field(
        default=None,
        description="Secret name for password (resolved via the secrets manager)"
    )

    @model_validator(mode='after')
    def validate_auth_config(self):
        """Validate authentication configuration."""
        if self.password and self.password_secret_name:
            raise ValueError(
                "Provide either 'password' or 'password_secret_name', not both"
            )
        if self.password_secret_name and not self.username:
            raise ValueError("Password secret requires username")
        return self

    @property
    def has_unresolved_secret(self) -> bool:
        return bool(self.password_secret_name)


class TimeoutConfig(BaseModel):
    """
    Per-service timeouts.

    Values accept timedelta objects, numbers of seconds or ISO-8601
    durations such as "PT30S".
    """

    model_config = ConfigDict(frozen=True)

    connection_timeout: timedelta = Field(
        default=timedelta(seconds=60),
        description="Time allowed to establish the cluster connection"
    )

    kv_timeout: timedelta = Field(
        default=timedelta(seconds=30),
        description="Key-value operation timeout"
    )

    query_timeout: timedelta = Field(
        default=timedelta(seconds=30),
        description="N1QL query timeout"
    )

    search_timeout: timedelta = Field(
        default=timedelta(seconds=30),
        description="Full text search timeout"
    )

    view_timeout: timedelta = Field(
        default=timedelta(seconds=30),
        description="View query timeout"
    )

    @field_validator(
        'connection_timeout', 'kv_timeout', 'query_timeout', 'search_timeout', 'view_timeout'
    )
    @classmethod
    def validate_positive(cls, v):
        """Timeouts must be strictly positive."""
        if v <= timedelta(0):
            raise ValueError(f"Timeout must be positive, got {v}")
        return v


class BootstrapConfig(BaseModel):
    """
    Connection bootstrap behaviour.

    With background_retry disabled (default) a failed connect raises
    immediately. With it enabled the connect is retried on a fixed interval
    from a daemon thread until it succeeds or the store is shut down.
    """

    model_config = ConfigDict(frozen=True)

    background_retry: bool = Field(
        default=False,
        description="Connect in the background, retrying until the cluster is reachable"
    )

    retry_interval_seconds: float = Field(
        default=15.0,
        gt=0.0,
        le=3600.0,
        description="Fixed delay between background connection attempts"
    )


class CouchbaseStoreConfig(BaseModel):
    """
    Complete configuration for CouchbaseStore.

    Immutable once constructed.

    Example usage:
        config = CouchbaseStoreConfig(
            node_set="cb1.example.com,cb2.example.com",
            bucket="users",
            auth=AuthConfig(
                username="cas",
                password_secret_name="COUCHBASE_PASSWORD"
            ),
            timeouts=TimeoutConfig(query_timeout="PT10S"),
        ).resolve_secrets()

        with CouchbaseStore.from_config(config) as store:
            ...
    """

    model_config = ConfigDict(
        use_enum_values=True,
        frozen=True
    )

    node_set: str = Field(
        default="localhost",
        description="Comma-separated seed node addresses"
    )

    bucket: str = Field(
        default="default",
        description="Bucket holding the documents"
    )

    auth: AuthConfig = Field(
        default_factory=AuthConfig,
        description="Authentication configuration"
    )

    timeouts: TimeoutConfig = Field(
        default_factory=TimeoutConfig,
        description="Per-service timeouts"
    )

    max_http_connections: int = Field(
        default=5,
        ge=1,
        le=1000,
        description="Upper bound on concurrent HTTP connections per node"
    )

    scheme: Literal["couchbase", "couchbases"] = Field(
        default="couchbase",
        description="Connection string scheme (couchbases enables TLS)"
    )

    bootstrap: BootstrapConfig = Field(
        default_factory=BootstrapConfig,
        description="Bootstrap configuration"
    )

    enable_tracing: bool = Field(
        default=False,
        description="Emit OpenTelemetry spans for store operations"
    )

    secrets_provider: SecretsProvider = Field(
        default=SecretsProvider.ENV,
        description="Secrets management provider"
    )

    @field_validator('node_set')
    @classmethod
    def validate_node_set(cls, v):
        """Require at least one seed node."""
        if not parse_node_set(v):
            raise ValueError("At least one seed node required")
        return v

    @field_validator('bucket')
    @classmethod
    def validate_bucket(cls, v):
        """Bucket names are quoted with backticks in statements."""
        if not v or not v.strip():
            raise ValueError("Bucket name must not be empty")
        if "`" in v:
            raise ValueError("Bucket name must not contain backticks")
        return v

    @property
    def seed_nodes(self) -> frozenset[str]:
        return parse_node_set(self.node_set)

    def get_secrets_manager(self) -> SecretsManager:
        """Get configured secrets manager instance."""
        return SecretsManager(provider=SecretsProvider(self.secrets_provider))

    def resolve_secrets(self) -> "CouchbaseStoreConfig":
        """
        Resolve secret references using the configured secrets manager.

        Returns a new configuration with the password filled in; the
        configuration itself is immutable.
        """
        if not self.auth.has_unresolved_secret:
            return self

        secrets_manager = self.get_secrets_manager()
        password = secrets_manager.get_secret(self.auth.password_secret_name)
        auth = self.auth.model_copy(update={"password": password, "password_secret_name": None})
        return self.model_copy(update={"auth": auth})


def parse_node_set(node_set: str) -> frozenset[str]:
    """
    Split a comma-delimited node list into a set of seed node addresses.

    Whitespace around entries is dropped, empty entries are ignored and
    duplicates collapse.
    """
    return frozenset(node.strip() for node in node_set.split(",") if node.strip())


def load_config_from_env() -> CouchbaseStoreConfig:
    """
    Load configuration from environment variables.

    Environment variables:
        COUCHBASE_NODE_SET: Comma-separated seed nodes (default: localhost)
        COUCHBASE_BUCKET: Bucket name (default: default)
        COUCHBASE_USERNAME: Cluster username
        COUCHBASE_PASSWORD: Cluster password (not recommended - use secret)
        COUCHBASE_PASSWORD_SECRET: Secret name for password
        COUCHBASE_CONNECTION_TIMEOUT: e.g. PT60S or 60
        COUCHBASE_KV_TIMEOUT, COUCHBASE_QUERY_TIMEOUT,
        COUCHBASE_SEARCH_TIMEOUT, COUCHBASE_VIEW_TIMEOUT: same format
        COUCHBASE_MAX_HTTP_CONNECTIONS: Max HTTP connections (default: 5)
        COUCHBASE_SCHEME: couchbase or couchbases
        COUCHBASE_BACKGROUND_BOOTSTRAP: Connect in the background (true/false)
        COUCHBASE_BOOTSTRAP_INTERVAL: Seconds between background attempts
        SECRETS_PROVIDER: Secrets provider (env, aws_secrets_manager)

    Returns:
        Validated configuration with secrets resolved
    """
    timeouts = {
        field: _parse_duration(value)
        for field, env_name in (
            ("connection_timeout", "COUCHBASE_CONNECTION_TIMEOUT"),
            ("kv_timeout", "COUCHBASE_KV_TIMEOUT"),
            ("query_timeout", "COUCHBASE_QUERY_TIMEOUT"),
            ("search_timeout", "COUCHBASE_SEARCH_TIMEOUT"),
            ("view_timeout", "COUCHBASE_VIEW_TIMEOUT"),
        )
        if (value := os.getenv(env_name))
    }

    config = CouchbaseStoreConfig(
        node_set=os.getenv("COUCHBASE_NODE_SET", "localhost"),
        bucket=os.getenv("COUCHBASE_BUCKET", "default"),
        auth=AuthConfig(
            username=os.getenv("COUCHBASE_USERNAME", ""),
            password=os.getenv("COUCHBASE_PASSWORD", ""),
            password_secret_name=os.getenv("COUCHBASE_PASSWORD_SECRET"),
        ),
        timeouts=TimeoutConfig(**timeouts),
        max_http_connections=int(os.getenv("COUCHBASE_MAX_HTTP_CONNECTIONS", "5")),
        scheme=os.getenv("COUCHBASE_SCHEME", "couchbase"),
        bootstrap=BootstrapConfig(
            background_retry=os.getenv("COUCHBASE_BACKGROUND_BOOTSTRAP", "false").lower() == "true",
            retry_interval_seconds=float(os.getenv("COUCHBASE_BOOTSTRAP_INTERVAL", "15")),
        ),
        secrets_provider=SecretsProvider(
            os.getenv("SECRETS_PROVIDER", "env")
        ),
    )

    return config.resolve_secrets()


def _parse_duration(value: str) -> float | str:
    """Numeric strings are seconds; anything else is handed to pydantic (ISO-8601)."""
    try:
        return float(value)
    except ValueError:
        return value

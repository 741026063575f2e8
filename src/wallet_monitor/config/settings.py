"""Configuration settings using Pydantic for validation."""

from typing import Annotated, List, Optional, Any
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
import os
import re


def _split_keys(value: Any) -> Any:
    """Accept API keys as a list or as a comma-separated string."""
    if isinstance(value, str):
        return [key.strip() for key in value.split(',') if key.strip()]
    return value


class HeliusConfig(BaseModel):
    """Helius provider configuration."""
    ws_url: str = Field(default="wss://atlas-mainnet.helius-rpc.com", description="Helius streaming WebSocket URL")
    rpc_url: str = Field(default="https://mainnet.helius-rpc.com", description="Helius JSON-RPC URL for metadata")
    api_keys: List[str] = Field(default_factory=list, description="Helius API keys used in rotation")
    request_timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")
    rate_limit_requests_per_minute: int = Field(default=50, description="REST rate limit across all keys")

    @field_validator('api_keys', mode='before')
    @classmethod
    def split_api_keys(cls, v):
        return _split_keys(v)


class RotationConfig(BaseModel):
    """API key rotation policy."""
    max_calls_per_rotation: int = Field(default=100, description="Calls served by one key before rotating")
    rotation_interval_seconds: float = Field(default=900.0, description="Maximum time one key stays active")
    cooldown_seconds: float = Field(default=60.0, description="Cooldown for a rate-limited key")

    @field_validator('max_calls_per_rotation')
    @classmethod
    def validate_threshold(cls, v):
        if v < 1:
            raise ValueError("max_calls_per_rotation must be at least 1")
        return v


class ReconnectConfig(BaseModel):
    """Streaming connection lifecycle configuration."""
    max_attempts: int = Field(default=5, description="Failed cycles before the connection terminates")
    initial_backoff_seconds: float = Field(default=1.0, description="Base reconnect delay")
    max_backoff_seconds: float = Field(default=60.0, description="Reconnect delay cap")
    backoff_multiplier: float = Field(default=2.0, description="Reconnect delay multiplier")
    stability_window_seconds: float = Field(default=30.0, description="Connected time that resets the backoff")
    handshake_timeout_seconds: float = Field(default=10.0, description="WebSocket handshake timeout")
    heartbeat_interval_seconds: float = Field(default=30.0, description="Idle time before a ping is sent")
    heartbeat_timeout_seconds: float = Field(default=10.0, description="Time allowed for the pong")


class CacheConfig(BaseModel):
    """Token metadata cache configuration."""
    ttl_seconds: float = Field(default=300.0, description="Metadata entry time to live")
    max_entries: int = Field(default=1000, description="Maximum cached tokens")
    sweep_interval_seconds: float = Field(default=60.0, description="Background purge interval")


class DedupConfig(BaseModel):
    """Signature deduplication configuration."""
    window_seconds: float = Field(default=3600.0, description="How long a signature is remembered")
    max_signatures_per_wallet: int = Field(default=10000, description="Signatures kept per wallet")
    cleanup_interval_seconds: float = Field(default=300.0, description="Interval between window cleanups")


class RetryConfig(BaseModel):
    """Retry configuration for REST calls."""
    max_attempts: int = Field(default=3, description="Maximum retry attempts")
    initial_backoff_seconds: float = Field(default=0.5, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=5.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=True, description="Add jitter to backoff")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")


class MonitorSettings(BaseSettings):
    """Main wallet monitor settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = Field(default="wallet-monitor", description="Service name")
    environment: str = Field(default="local", description="Environment: local, dev, prod")

    # Component configurations
    helius: HeliusConfig = Field(default_factory=HeliusConfig)
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Capacity is owned by the calling layer; None means unbounded
    max_tracked_wallets: Optional[int] = Field(default=None, description="Tracked wallet capacity")
    inactivity_limit_seconds: Optional[float] = Field(default=None, description="Idle time before tracking is reset")
    wallets: Annotated[List[str], NoDecode] = Field(default_factory=list, description="Wallets tracked at service start")

    # Comma-separated key list, e.g. HELIUS_API_KEYS=key1,key2
    helius_api_keys: Optional[str] = Field(default=None, description="Comma-separated Helius API keys")

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['local', 'dev', 'prod', 'test']:
            raise ValueError("Environment must be 'local', 'dev', 'prod' or 'test'")
        return v

    @field_validator('wallets', mode='before')
    @classmethod
    def split_wallets(cls, v):
        return _split_keys(v)

    @model_validator(mode='after')
    def merge_api_keys(self):
        if self.helius_api_keys:
            for key in _split_keys(self.helius_api_keys):
                if key not in self.helius.api_keys:
                    self.helius.api_keys.append(key)
        return self


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Args:
        obj: Configuration object (dict, list, string, or other)

    Returns:
        Object with environment variables substituted

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            # Handle default values: VAR_NAME:-default_value
            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> MonitorSettings:
    """
    Load settings from config file and environment variables.

    The config file supports environment variable substitution using ${VAR_NAME} syntax.

    Args:
        config_file: Path to YAML configuration file

    Returns:
        MonitorSettings: Validated configuration object

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """

    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return MonitorSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    # Load from environment variables only
    return MonitorSettings()

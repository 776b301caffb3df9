"""
Configuration for the Bitwarden secret operator.

Supports loading configuration from:
- Environment variables
- A dictionary (tests, embedding)
- Command line arguments (see main.py)
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from bitwarden_operator.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class OperatorConfig:
    """
    Operator configuration.

    Environment variables:
        BW_CLIENTID / BW_CLIENTSECRET / BW_PASSWORD: Vault credentials
        BW_CLI_PATH: Path to the bw binary
        METRICS_ENDPOINT: host:port for /metrics and /health
        OPENTELEMETRY_ENDPOINT_URL: OTLP collector (tracing off when unset)
        OPERATOR_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR
        OPERATOR_REFRESH_TTL_SECONDS: Minimum age before a secret is refreshed
        OPERATOR_FRESH_REQUEUE_SECONDS: Requeue delay while still fresh
        OPERATOR_SYNC_INTERVAL_SECONDS: Background `bw sync` cadence
        OPERATOR_RETRY_INITIAL_DELAY / _MAX_DELAY / _BACKOFF_MULTIPLIER /
        _JITTER / _MAX_ATTEMPTS: Retry policy for failed passes
        OPERATOR_AUTO_RELOGIN: Unlock again when the session is flagged
        OPERATOR_WORKERS: Concurrent reconciliation workers
        OPERATOR_MAX_CONCURRENT_FETCHES: Concurrent `bw get item` calls
    """

    # Vault credentials
    client_id: str = ""
    client_secret: str = ""
    client_password: str = ""
    bw_cli_path: str = "bw"

    # Observability
    metrics_endpoint: str = "127.0.0.1:3001"
    otlp_endpoint: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Reconciliation
    refresh_ttl: float = 3600.0
    fresh_requeue: float = 60.0
    sync_interval: float = 60.0
    workers: int = 4
    max_concurrent_fetches: int = 1
    auto_relogin: bool = True

    # Retry policy
    retry_initial_delay: float = 5.0
    retry_max_delay: float = 300.0
    retry_backoff_multiplier: float = 1.0
    retry_jitter: float = 0.0
    retry_max_attempts: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperatorConfig":
        """Create configuration from a dictionary."""
        if not isinstance(data, dict):
            raise TypeError(f"Expected dict, got {type(data).__name__}")

        config = cls()

        # Field name -> expected type(s) for validation
        _FIELD_TYPES: Dict[str, Any] = {
            "client_id": str,
            "client_secret": str,
            "client_password": str,
            "bw_cli_path": str,
            "metrics_endpoint": str,
            "otlp_endpoint": str,
            "log_level": str,
            "log_format": str,
            "refresh_ttl": (int, float),
            "fresh_requeue": (int, float),
            "sync_interval": (int, float),
            "workers": int,
            "max_concurrent_fetches": int,
            "auto_relogin": bool,
            "retry_initial_delay": (int, float),
            "retry_max_delay": (int, float),
            "retry_backoff_multiplier": (int, float),
            "retry_jitter": (int, float),
            "retry_max_attempts": int,
        }

        for field_name, expected_type in _FIELD_TYPES.items():
            if field_name in data:
                value = data[field_name]
                if value is not None and not isinstance(value, expected_type):
                    raise TypeError(
                        f"Config field '{field_name}' expected {expected_type}, "
                        f"got {type(value).__name__}"
                    )
                setattr(config, field_name, value)

        return config

    @classmethod
    def from_env(cls) -> "OperatorConfig":
        """Create configuration from environment variables."""
        config = cls()

        env_mapping = {
            "BW_CLIENTID": "client_id",
            "BW_CLIENTSECRET": "client_secret",
            "BW_PASSWORD": "client_password",
            "BW_CLI_PATH": "bw_cli_path",
            "METRICS_ENDPOINT": "metrics_endpoint",
            "OPENTELEMETRY_ENDPOINT_URL": "otlp_endpoint",
            "OPERATOR_LOG_LEVEL": "log_level",
            "OPERATOR_REFRESH_TTL_SECONDS": ("refresh_ttl", float),
            "OPERATOR_FRESH_REQUEUE_SECONDS": ("fresh_requeue", float),
            "OPERATOR_SYNC_INTERVAL_SECONDS": ("sync_interval", float),
            "OPERATOR_WORKERS": ("workers", int),
            "OPERATOR_MAX_CONCURRENT_FETCHES": ("max_concurrent_fetches", int),
            "OPERATOR_AUTO_RELOGIN": ("auto_relogin", _parse_bool),
            "OPERATOR_RETRY_INITIAL_DELAY": ("retry_initial_delay", float),
            "OPERATOR_RETRY_MAX_DELAY": ("retry_max_delay", float),
            "OPERATOR_RETRY_BACKOFF_MULTIPLIER": ("retry_backoff_multiplier", float),
            "OPERATOR_RETRY_JITTER": ("retry_jitter", float),
            "OPERATOR_RETRY_MAX_ATTEMPTS": ("retry_max_attempts", int),
        }

        for env_var, field_info in env_mapping.items():
            value = os.environ.get(env_var)
            if not value:
                continue
            if isinstance(field_info, tuple):
                field_name, converter = field_info
                try:
                    setattr(config, field_name, converter(value))
                except ValueError:
                    logger.warning(f"Ignoring invalid {env_var} value: {value!r}")
            else:
                setattr(config, field_info, value)

        return config

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        for field_name, env_var in (
            ("client_id", "BW_CLIENTID"),
            ("client_secret", "BW_CLIENTSECRET"),
            ("client_password", "BW_PASSWORD"),
        ):
            if not getattr(self, field_name):
                errors.append(f"missing env variable {env_var}")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            errors.append(f"log_level must be DEBUG, INFO, WARNING or ERROR, got '{self.log_level}'")

        try:
            self.metrics_address()
        except ValueError as e:
            errors.append(str(e))

        if self.refresh_ttl < 0:
            errors.append("refresh_ttl must not be negative")

        if self.fresh_requeue <= 0:
            errors.append("fresh_requeue must be positive")

        if self.sync_interval <= 0:
            errors.append("sync_interval must be positive")

        if self.workers < 1:
            errors.append("workers must be at least 1")

        if self.max_concurrent_fetches < 1:
            errors.append("max_concurrent_fetches must be at least 1")

        return errors

    def metrics_address(self) -> Tuple[str, int]:
        """Split METRICS_ENDPOINT into (host, port)."""
        host, sep, port = self.metrics_endpoint.rpartition(":")
        if not sep or not host:
            raise ValueError(f"metrics_endpoint must be host:port, got '{self.metrics_endpoint}'")
        try:
            port_number = int(port)
        except ValueError:
            raise ValueError(f"metrics_endpoint port must be a number, got '{port}'")
        if port_number < 1 or port_number > 65535:
            raise ValueError("metrics_endpoint port must be between 1 and 65535")
        return host.strip("[]"), port_number

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_dict(
            {
                "initial_delay": self.retry_initial_delay,
                "max_delay": self.retry_max_delay,
                "backoff_multiplier": self.retry_backoff_multiplier,
                "jitter": self.retry_jitter,
                "max_attempts": self.retry_max_attempts,
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (excluding credentials)."""
        return {
            "bw_cli_path": self.bw_cli_path,
            "metrics_endpoint": self.metrics_endpoint,
            "tracing_enabled": self.otlp_endpoint is not None,
            "log_level": self.log_level,
            "refresh_ttl": self.refresh_ttl,
            "fresh_requeue": self.fresh_requeue,
            "sync_interval": self.sync_interval,
            "workers": self.workers,
            "max_concurrent_fetches": self.max_concurrent_fetches,
            "auto_relogin": self.auto_relogin,
            "retry_initial_delay": self.retry_initial_delay,
            "retry_max_delay": self.retry_max_delay,
            "retry_backoff_multiplier": self.retry_backoff_multiplier,
            "retry_jitter": self.retry_jitter,
            "retry_max_attempts": self.retry_max_attempts,
        }

"""Configuration management for the CAP service broker."""

import os
from typing import Optional, Tuple
from dataclasses import dataclass, field

from cap_broker.exceptions import ConfigurationError


def _env_bool(name: str, default: bool = False) -> bool:
    """Read a boolean environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'false', 'no', 'off'):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _normalize_base_url(url: str) -> str:
    url = url.strip()
    return url[:-1] if url.endswith('/') else url


@dataclass
class BrokerConfig:
    """OSB protocol behaviour."""
    enable_async: bool = False
    dashboard_base: str = "http://localhost:8080/dashboard"
    operation_timeout_seconds: int = 3600
    supported_api_versions: Tuple[str, ...] = ("2.12", "2.13")


@dataclass
class UpstreamConfig:
    """Upstream provisioning API configuration."""
    api_base: str = "https://api.radware.com"
    api_token: str = ""
    role_id: Optional[str] = None
    timeout: float = 10.0
    retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0


@dataclass
class DatabaseConfig:
    """State store configuration."""
    type: str = "memory"
    cloudant_url: str = ""
    cloudant_database: str = "cap-osb"
    cloudant_api_key: Optional[str] = None
    cloudant_username: Optional[str] = None
    cloudant_password: Optional[str] = None
    cloudant_iam_url: str = "https://iam.cloud.ibm.com/identity/token"
    cloudant_timeout: float = 10.0
    cloudant_retries: int = 3


@dataclass
class AuthConfig:
    """Broker authentication configuration."""
    username: Optional[str] = None
    password: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None
    jwt_issuer: Optional[str] = None
    broker_crn: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool((self.username and self.password) or self.jwt_secret)


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


@dataclass
class APIConfig:
    """API configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    enable_cors: bool = False
    request_timeout: float = 60.0


@dataclass
class Config:
    """Main configuration class."""
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: APIConfig = field(default_factory=APIConfig)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        config = cls()

        # Broker config
        config.broker.enable_async = _env_bool('ENABLE_ASYNC', config.broker.enable_async)
        config.broker.dashboard_base = _normalize_base_url(
            os.getenv('DASHBOARD_BASE', config.broker.dashboard_base)
        )
        config.broker.operation_timeout_seconds = _env_int(
            'OPERATION_TIMEOUT_SECONDS', config.broker.operation_timeout_seconds
        )

        # Upstream config
        config.upstream.api_base = _normalize_base_url(
            os.getenv('UPSTREAM_API_BASE_URL', config.upstream.api_base)
        )
        config.upstream.api_token = os.getenv('UPSTREAM_API_TOKEN', config.upstream.api_token)
        config.upstream.role_id = os.getenv('UPSTREAM_ROLE_ID') or None
        config.upstream.timeout = _env_float('UPSTREAM_TIMEOUT', config.upstream.timeout)
        config.upstream.retries = _env_int('UPSTREAM_RETRIES', config.upstream.retries)
        config.upstream.retry_base_delay = _env_float(
            'UPSTREAM_RETRY_BASE_DELAY', config.upstream.retry_base_delay
        )
        config.upstream.retry_max_delay = _env_float(
            'UPSTREAM_RETRY_MAX_DELAY', config.upstream.retry_max_delay
        )

        # Database config
        config.database.type = os.getenv('DB_TYPE', config.database.type).lower()
        config.database.cloudant_url = _normalize_base_url(os.getenv('CLOUDANT_URL', ''))
        config.database.cloudant_database = os.getenv('CLOUDANT_DB', config.database.cloudant_database)
        config.database.cloudant_api_key = os.getenv('CLOUDANT_APIKEY') or None
        config.database.cloudant_username = os.getenv('CLOUDANT_USERNAME') or None
        config.database.cloudant_password = os.getenv('CLOUDANT_PASSWORD') or None
        config.database.cloudant_iam_url = os.getenv('CLOUDANT_IAM_URL', config.database.cloudant_iam_url)
        config.database.cloudant_retries = _env_int('CLOUDANT_RETRIES', config.database.cloudant_retries)

        # Auth config
        config.auth.username = os.getenv('BROKER_USERNAME') or None
        config.auth.password = os.getenv('BROKER_PASSWORD') or None
        config.auth.jwt_secret = os.getenv('BROKER_JWT_SECRET') or None
        config.auth.jwt_algorithm = os.getenv('BROKER_JWT_ALGORITHM', config.auth.jwt_algorithm)
        config.auth.jwt_audience = os.getenv('BROKER_JWT_AUDIENCE') or None
        config.auth.jwt_issuer = os.getenv('BROKER_JWT_ISSUER') or None
        config.auth.broker_crn = os.getenv('BROKER_CRN') or None

        # API config
        config.api.host = os.getenv('API_HOST', config.api.host)
        config.api.port = _env_int('API_PORT', config.api.port)
        config.api.debug = _env_bool('API_DEBUG', False)
        config.api.enable_cors = _env_bool('ENABLE_CORS', False)
        config.api.request_timeout = _env_float('REQUEST_TIMEOUT', config.api.request_timeout)

        # Logging config
        config.logging.level = os.getenv('LOG_LEVEL', config.logging.level)
        config.logging.file_path = os.getenv('LOG_FILE_PATH')

        return config

    def validate(self) -> None:
        """Reject configurations the broker cannot start with."""
        if self.database.type not in ('memory', 'cloudant'):
            raise ConfigurationError(
                f"Unsupported database type: {self.database.type}", config_key='DB_TYPE'
            )
        if self.database.type == 'cloudant' and not self.database.cloudant_url:
            raise ConfigurationError(
                "CLOUDANT_URL is required when DB_TYPE=cloudant", config_key='CLOUDANT_URL'
            )
        if not self.broker.dashboard_base:
            raise ConfigurationError("DASHBOARD_BASE must not be empty", config_key='DASHBOARD_BASE')


# Global configuration instance
config = Config.from_env()

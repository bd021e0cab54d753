"""Configuration management for nodeflow."""

import json
import os
from enum import Enum
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .core.providers import PROVIDER_TYPES


ENV_PREFIX = "NODEFLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Application configuration settings."""

    app_name: str = Field(default="nodeflow", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database
    database_url: str = Field(default="sqlite:///./nodeflow.db", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Engine
    max_step_count: int = Field(default=50, description="Maximum node executions per run")
    max_active_runs: int = Field(default=10, description="Maximum number of runs executing at once")
    default_node_delay_ms: int = Field(default=500, description="Delay of default/legacy nodes in ms")
    request_timeout: float = Field(default=30.0, description="Timeout for outbound HTTP and model calls in seconds")
    run_history_retention_hours: int = Field(default=24 * 7, description="Age after which stored runs are removed")

    # Model providers
    default_provider: Optional[str] = Field(default=None, description="Provider used for bare model ids")
    default_model: Optional[str] = Field(default=None, description="Model used when a node selects none")
    providers: List[Dict[str, Any]] = Field(default_factory=list, description="Configured model providers")

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # HTTP
    slow_request_threshold: float = Field(default=5.0, description="Slow request threshold in seconds")
    enable_performance_monitoring: bool = Field(default=True, description="Enable performance monitoring middleware")
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    cors_methods: list = Field(default=["GET", "POST", "PUT", "DELETE"], description="CORS allowed methods")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split('://')[0].split('+')[0].lower()
        supported_schemes = [t.value for t in DatabaseType]
        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_step_count', 'max_active_runs')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('default_node_delay_ms')
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError("Delay cannot be negative")
        return v

    @field_validator('providers')
    @classmethod
    def validate_providers(cls, providers):
        """Each provider needs an id and a supported type."""
        seen = set()
        for provider in providers:
            provider_id = provider.get("id")
            if not provider_id:
                raise ValueError("Every provider needs an 'id'")
            if provider_id in seen:
                raise ValueError(f"Duplicate provider id: {provider_id}")
            seen.add(provider_id)
            provider_type = provider.get("type", "openai-compatible")
            if provider_type not in PROVIDER_TYPES:
                raise ValueError(f"Unsupported provider type '{provider_type}'. Supported: {list(PROVIDER_TYPES)}")
        return providers

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        return DatabaseType(self.database_url.split('://')[0].split('+')[0].lower())

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    def redacted(self) -> Dict[str, Any]:
        """Configuration as a dict with provider API keys masked."""
        data = self.model_dump(mode="json")
        data["providers"] = [
            {**provider, "api_key": "***"} if provider.get("api_key") else dict(provider)
            for provider in data["providers"]
        ]
        return data

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from NODEFLOW_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            elif type_func == json.loads:
                return json.loads(value) if value.strip() else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "nodeflow"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "127.0.0.1"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./nodeflow.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_step_count=get_env("MAX_STEP_COUNT", 50, int),
            max_active_runs=get_env("MAX_ACTIVE_RUNS", 10, int),
            default_node_delay_ms=get_env("DEFAULT_NODE_DELAY_MS", 500, int),
            request_timeout=get_env("REQUEST_TIMEOUT", 30.0, float),
            run_history_retention_hours=get_env("RUN_HISTORY_RETENTION_HOURS", 24 * 7, int),
            default_provider=get_env("DEFAULT_PROVIDER", None),
            default_model=get_env("DEFAULT_MODEL", None),
            providers=get_env("PROVIDERS", [], json.loads),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
        )


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (when present) and the environment."""
    global _config

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()
    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> List[str]:
    """
    Check settings that depend on the environment.

    Returns:
        List of warnings that do not prevent startup

    Raises:
        ValueError: If a setting makes startup impossible
    """
    errors = []
    warnings = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.split(":///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    provider_ids = {p["id"] for p in config.providers}
    if config.default_provider and config.default_provider not in provider_ids:
        errors.append(f"Default provider '{config.default_provider}' is not configured")

    if not config.providers:
        warnings.append("No model providers configured; agent and image-gen nodes will fail")
    if config.max_step_count > 1000:
        warnings.append("High step ceiling; cyclic graphs will run for a long time before halting")
    if config.max_active_runs > 100:
        warnings.append("High active run limit may impact performance")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")
    return warnings


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        host="0.0.0.0",
        log_level=LogLevel.INFO,
        log_structured=True,
        cors_origins=[]
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_active_runs=2,
        default_node_delay_ms=0,
        enable_performance_monitoring=False,
    )

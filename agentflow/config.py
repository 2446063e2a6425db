"""Configuration management for the agentflow service."""

import os
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Agentflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./agentflow.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Step interpreter settings
    delay_hard_cap_ms: int = Field(
        default=10000,
        description="Upper bound for delay steps in milliseconds"
    )
    default_model: str = Field(
        default="llama-3.3-70b-versatile",
        description="Model used by prompt steps that do not name one"
    )
    default_max_tokens: int = Field(default=2000, description="Token ceiling for prompt steps")
    token_cost_per_1k: float = Field(
        default=0.002,
        description="Cost charged per 1000 tokens when a model has no explicit price"
    )
    pricing_per_model: Dict[str, float] = Field(
        default_factory=dict,
        description="Per-model cost per 1000 tokens"
    )
    step_retry_delay: float = Field(
        default=0.0,
        description="Seconds to wait between retries of a step with the retry policy"
    )
    retry_reresolve_params: bool = Field(
        default=False,
        description="Re-resolve placeholders before each retry instead of reusing the first resolution"
    )
    webhook_timeout: float = Field(default=30.0, description="Webhook request timeout in seconds")

    # Collaborator settings
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API base URL")
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    groq_base_url: str = Field(default="https://api.groq.com/openai/v1", description="Groq API base URL")
    groq_api_key: Optional[str] = Field(default=None, description="Groq API key")
    llm_timeout: float = Field(default=120.0, description="Language model request timeout in seconds")
    mcp_broker_url: Optional[str] = Field(default=None, description="Base URL of the MCP tool broker")
    mcp_api_key: Optional[str] = Field(default=None, description="API key for the MCP tool broker")
    mcp_transport: str = Field(default="sse", description="MCP transport: sse or streamable-http")
    mcp_timeout: float = Field(default=30.0, description="MCP tool call timeout in seconds")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(context)s%(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log records")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # HTTP settings
    slow_request_threshold: float = Field(default=5.0, description="Slow request threshold in seconds")
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    # Retention settings
    retention_days: int = Field(default=90, description="Days to keep terminal executions")

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('delay_hard_cap_ms', 'default_max_tokens')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('mcp_transport')
    @classmethod
    def validate_mcp_transport(cls, v):
        if v not in ("sse", "streamable-http"):
            raise ValueError("MCP transport must be 'sse' or 'streamable-http'")
        return v

    @field_validator('token_cost_per_1k', 'step_retry_delay')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.startswith("sqlite")

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    def price_for(self, model: str) -> float:
        """Cost per 1000 tokens for the given model."""
        return self.pricing_per_model.get(model, self.token_cost_per_1k)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"AGENTFLOW_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            elif type_func == dict:
                pairs = [item.split('=', 1) for item in value.split(',') if '=' in item]
                return {name.strip(): float(price) for name, price in pairs}
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Agentflow"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./agentflow.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            delay_hard_cap_ms=get_env("DELAY_HARD_CAP_MS", 10000, int),
            default_model=get_env("DEFAULT_MODEL", "llama-3.3-70b-versatile"),
            default_max_tokens=get_env("DEFAULT_MAX_TOKENS", 2000, int),
            token_cost_per_1k=get_env("TOKEN_COST_PER_1K", 0.002, float),
            pricing_per_model=get_env("PRICING_PER_MODEL", {}, dict),
            step_retry_delay=get_env("STEP_RETRY_DELAY", 0.0, float),
            retry_reresolve_params=get_env("RETRY_RERESOLVE_PARAMS", False, bool),
            webhook_timeout=get_env("WEBHOOK_TIMEOUT", 30.0, float),
            openai_base_url=get_env("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            openai_api_key=get_env("OPENAI_API_KEY", os.getenv("OPENAI_API_KEY")),
            groq_base_url=get_env("GROQ_BASE_URL", "https://api.groq.com/openai/v1"),
            groq_api_key=get_env("GROQ_API_KEY", os.getenv("GROQ_API_KEY")),
            llm_timeout=get_env("LLM_TIMEOUT", 120.0, float),
            mcp_broker_url=get_env("MCP_BROKER_URL", None),
            mcp_api_key=get_env("MCP_API_KEY", None),
            mcp_transport=get_env("MCP_TRANSPORT", "sse"),
            mcp_timeout=get_env("MCP_TIMEOUT", 30.0, float),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(context)s%(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
            retention_days=get_env("RETENTION_DAYS", 90, int)
        )


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if any) and the environment."""
    global _config
    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()
    return _config


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the filesystem."""
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.replace("sqlite:///", "")
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

    if config.retention_days < 1:
        errors.append("Retention must be at least one day")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
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
        delay_hard_cap_ms=200,
        webhook_timeout=5.0
    )

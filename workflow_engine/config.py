"""Configuration management for the workflow engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


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

    # Application settings
    app_name: str = Field(default="Workflow Execution Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Storage settings
    database_url: str = Field(
        default="sqlite:///./workflow_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    use_in_memory_store: bool = Field(
        default=False,
        description="Keep definitions and executions in process memory instead of the database"
    )

    # Execution engine settings
    worker_pool_size: int = Field(default=8, description="Worker threads shared by all executions")
    max_parallel_nodes_per_execution: Optional[int] = Field(
        default=None,
        description="Cap on concurrently running nodes of one execution"
    )
    max_active_executions: int = Field(
        default=1000,
        description="Active executions accepted before new starts are refused"
    )
    execution_timeout: Optional[float] = Field(
        default=None,
        description="Default execution deadline in seconds for workflows without one"
    )
    node_timeout: Optional[float] = Field(
        default=None,
        description="Default node timeout in seconds for nodes without max_duration"
    )
    dispatcher_tick_interval: float = Field(
        default=0.05,
        description="Longest the dispatcher sleeps between timer and deadline checks"
    )

    # Trigger settings
    enable_schedule_triggers: bool = Field(default=True, description="Poll schedule triggers")
    schedule_poll_interval: float = Field(default=30.0, description="Schedule trigger poll interval in seconds")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Health check settings
    health_check_timeout: float = Field(
        default=5.0,
        description="Health check timeout in seconds"
    )

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

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
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('worker_pool_size', 'max_active_executions')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('max_parallel_nodes_per_execution')
    @classmethod
    def validate_parallel_cap(cls, v):
        if v is not None and v < 1:
            raise ValueError("Parallel node cap must be at least 1")
        return v

    @field_validator('execution_timeout', 'node_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v is not None and v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator('dispatcher_tick_interval', 'schedule_poll_interval')
    @classmethod
    def validate_intervals(cls, v):
        if v <= 0:
            raise ValueError("Interval must be positive")
        return v

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme.startswith('sqlite'):
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    def get_engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for WorkflowEngine."""
        return {
            "worker_pool_size": self.worker_pool_size,
            "max_parallel_nodes_per_execution": self.max_parallel_nodes_per_execution,
            "max_active_executions": self.max_active_executions,
            "execution_timeout": self.execution_timeout,
            "node_timeout": self.node_timeout,
            "tick_interval": self.dispatcher_tick_interval,
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from WORKFLOW_ENGINE_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"WORKFLOW_ENGINE_{key}")
            if value is None or value == "":
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Workflow Execution Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./workflow_engine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            use_in_memory_store=get_env("USE_IN_MEMORY_STORE", False, bool),
            worker_pool_size=get_env("WORKER_POOL_SIZE", 8, int),
            max_parallel_nodes_per_execution=get_env("MAX_PARALLEL_NODES_PER_EXECUTION", None, int),
            max_active_executions=get_env("MAX_ACTIVE_EXECUTIONS", 1000, int),
            execution_timeout=get_env("EXECUTION_TIMEOUT", None, float),
            node_timeout=get_env("NODE_TIMEOUT", None, float),
            dispatcher_tick_interval=get_env("DISPATCHER_TICK_INTERVAL", 0.05, float),
            enable_schedule_triggers=get_env("ENABLE_SCHEDULE_TRIGGERS", True, bool),
            schedule_poll_interval=get_env("SCHEDULE_POLL_INTERVAL", 30.0, float),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            health_check_timeout=get_env("HEALTH_CHECK_TIMEOUT", 5.0, float),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and the environment."""
    global _config
    from dotenv import load_dotenv

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


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that need the filesystem."""
    errors = []

    if config.is_sqlite and not config.use_in_memory_store and ":memory:" not in config.database_url:
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

    if config.max_parallel_nodes_per_execution and config.max_parallel_nodes_per_execution > config.worker_pool_size:
        errors.append(
            f"max_parallel_nodes_per_execution ({config.max_parallel_nodes_per_execution}) "
            f"exceeds worker_pool_size ({config.worker_pool_size})"
        )

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        database_echo=False,
        enable_performance_monitoring=True,
        execution_timeout=3600,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        worker_pool_size=4,
        max_active_executions=50,
        dispatcher_tick_interval=0.01,
        enable_schedule_triggers=False,
        execution_timeout=30,
        node_timeout=10
    )

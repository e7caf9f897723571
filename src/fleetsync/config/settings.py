# config/settings.py
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from enum import Enum
from dotenv import load_dotenv

# Load .env file explicitly
load_dotenv()


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    FILE = "file"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class SchedulerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    max_concurrent: int = Field(5, ge=1, description="Maximum discovery jobs running at once")
    default_interval: str = Field("1h", description="Poll interval for connectors without their own")
    job_timeout_seconds: float = Field(300, gt=0, description="Time a job may hold a concurrency slot")
    shutdown_grace_seconds: float = Field(30, ge=0, description="Wait for in-flight jobs on shutdown")
    history_size: int = Field(20, ge=1, description="Run records kept per connector")
    run_on_start: bool = Field(True, description="Run every connector immediately on start")


class DiscoverySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DISCOVERY_")

    request_timeout_seconds: float = Field(30, gt=0, description="Upper bound for any single SDK call")
    max_scope_failure_ratio: float = Field(
        0.5, ge=0, le=1,
        description="Failed-scope fraction above which a discovery fails outright"
    )
    retry_attempts: int = Field(3, ge=1, description="Attempts for transient per-call failures")
    retry_backoff_factor: float = Field(1.5, ge=0, description="Backoff factor for retries")


class StorageSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    backend: StorageBackend = Field(StorageBackend.MEMORY, description="Storage backend type")
    base_path: str = Field("./data", description="Base path for file storage")

    @field_validator('backend', mode='before')
    @classmethod
    def validate_backend(cls, v):
        if isinstance(v, str):
            return StorageBackend(v.lower())
        return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True
    )

    environment: Environment = Field(Environment.DEVELOPMENT, description="Environment")
    debug: bool = Field(False, description="Debug mode")
    log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
    log_format: str = Field("json", description="Log format (json or text)")
    connectors_file: str = Field(
        "connectors.yaml",
        validation_alias="FLEETSYNC_CONNECTORS_FILE",
        description="YAML file with connector definitions"
    )

    scheduler: SchedulerSettings = Field(default_factory=lambda: SchedulerSettings())
    discovery: DiscoverySettings = Field(default_factory=lambda: DiscoverySettings())
    storage: StorageSettings = Field(default_factory=lambda: StorageSettings())

    @field_validator('environment', mode='before')
    @classmethod
    def validate_environment(cls, v):
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @field_validator('log_level', mode='before')
    @classmethod
    def validate_log_level(cls, v):
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @classmethod
    def create_from_env(cls) -> "Settings":
        """Create settings instance from environment variables."""
        return cls()

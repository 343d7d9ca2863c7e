"""Application configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file and override existing env vars
load_dotenv(override=True)

PACKAGE_ROOT = Path(__file__).resolve().parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # AWS
    aws_region: str = "us-east-1"
    aws_profile: str | None = None
    aws_endpoint_url: str | None = None
    cloud_backend: Literal["aws", "fake"] = "fake"  # Set to "aws" for real deployments

    # Templates and build directories
    templates_path: str = Field(default=str(PACKAGE_ROOT / "templates"))
    deployments_workdir: str = ".deployments/work"

    # Deployment record store
    record_store_backend: Literal["file", "memory"] = "file"
    record_store_path: str = ".deployments/records"
    status_refresh_seconds: int = 30

    # Long-running operations
    stack_apply_timeout_seconds: int = 1800
    waiter_delay_seconds: int = 15
    waiter_max_attempts: int = 120

    # Lambda Web Adapter layer used for startup-script backends
    web_adapter_layer_version: int = 25

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_directory: str = "logs"
    log_file_name: str = "webdeploy.log"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()

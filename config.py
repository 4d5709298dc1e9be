"""
Configuration management using Pydantic Settings

Every field can be set from the environment with the ``OPCUA_`` prefix
(``OPCUA_ENDPOINT``, ``OPCUA_SECURITY_MODE`` ...) or from a ``.env`` file.
"""
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="OPCUA_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = "Telemetry OPC UA Exporter"
    version: str = "1.0.0"

    # HTTP server settings
    host: str = "0.0.0.0"
    port: int = 4242

    # OPC UA server
    endpoint: str = Field(default="", description="OPC UA endpoint URL, e.g. opc.tcp://plc:4840")
    cert_path: Optional[str] = Field(default=None, description="Client certificate (PEM or DER)")
    key_path: Optional[str] = Field(default=None, description="Client private key (PEM or DER)")
    security_mode: str = Field(default="auto", description="auto, None, Sign or SignAndEncrypt")
    security_policy: str = Field(
        default="None",
        description="auto, a policy URI, or one of None, Basic128Rsa15, Basic256, Basic256Sha256"
    )
    auth_mode: str = Field(default="Anonymous", description="Anonymous, UserName or Certificate")
    username: Optional[str] = None
    password: Optional[str] = None

    # Metric configuration
    metrics_config_path: str = "opcua.yaml"
    watch_config: bool = True
    watch_interval_seconds: int = 10

    # Reconnect circuit breaker
    reconnect_failure_threshold: int = 3
    reconnect_recovery_timeout: int = 30

    # Scrapes taking at least this long are logged as warnings
    slow_scrape_seconds: float = 8.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"
    log_dir: Optional[str] = None
    log_file_max_bytes: int = 10485760
    log_file_backup_count: int = 10

    @model_validator(mode="after")
    def validate_settings(self):
        """Validate critical settings on startup"""
        errors = []

        if not 0 < self.port < 65536:
            errors.append(f"Invalid port: {self.port}")

        if self.log_format not in ("text", "json"):
            errors.append(f"Invalid log format: {self.log_format}. Valid options: text, json")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "WARN", "ERROR", "CRITICAL"):
            errors.append(f"Invalid log level: {self.log_level}")

        if self.watch_interval_seconds <= 0:
            errors.append("Config watch interval must be positive")

        if self.reconnect_failure_threshold <= 0:
            errors.append("Reconnect failure threshold must be positive")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")

        return self


settings = Settings()

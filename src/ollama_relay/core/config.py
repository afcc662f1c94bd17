"""Configuration management for ollama-relay."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Fixed parameters of the tunnel chain.

    Everything here has a sensible default and can be overridden through
    ``OLLAMA_RELAY_*`` environment variables or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="OLLAMA_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ports and addresses
    service_port: int = Field(11434, description="Local Ollama port")
    remote_port: int = Field(11434, description="Port the tunnel opens on the remote host")
    relay_bind_address: str = Field("10.0.0.1", description="Remote internal address the relay listens on")

    # External tools
    ollama_binary: str = Field("ollama", description="Ollama executable")
    ssh_binary: str = Field("ssh", description="SSH client executable")
    ssh_connect_timeout: int = Field(10, description="SSH ConnectTimeout in seconds")
    keepalive_interval: int = Field(60, description="ServerAliveInterval for the tunnel")
    keepalive_max_missed: int = Field(3, description="ServerAliveCountMax for the tunnel")

    # Settle delays and polling
    stop_settle_seconds: float = Field(2.0, description="Pause after stopping a previous Ollama")
    local_settle_seconds: float = Field(3.0, description="Pause before checking the local service")
    tunnel_settle_seconds: float = Field(3.0, description="Pause before checking the tunnel")
    relay_settle_seconds: float = Field(2.0, description="Pause before probing the relay")
    poll_interval_seconds: float = Field(10.0, description="Monitoring loop interval")
    probe_timeout_seconds: float = Field(5.0, description="Timeout of a single health probe")
    terminate_grace_seconds: float = Field(10.0, description="Wait after SIGTERM before SIGKILL")
    remote_command_timeout_seconds: float = Field(30.0, description="Timeout for synchronous remote commands")

    # Diagnostic logs of the managed processes
    service_log_path: str = Field("/tmp/ollama.log", description="Ollama server output")
    tunnel_log_path: str = Field("/tmp/ssh-tunnel.log", description="SSH tunnel output")
    relay_log_path: str = Field("/tmp/socat.log", description="Remote socat output")

    # Observability
    log_level: str = Field("INFO", description="Log level")
    log_format: str = Field("console", description="console or json")

    @field_validator("service_port", "remote_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Ports must be usable TCP ports."""
        if v < 1 or v > 65535:
            raise ValueError(f"port must be between 1 and 65535, got: {v}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("console", "json"):
            raise ValueError(f"log_format must be 'console' or 'json', got: {v}")
        return v

    @property
    def local_health_url(self) -> str:
        """Status endpoint of the local service."""
        return f"http://localhost:{self.service_port}/api/tags"

    @property
    def relay_url(self) -> str:
        """Base URL of the service as seen from the remote internal network."""
        return f"http://{self.relay_bind_address}:{self.remote_port}"

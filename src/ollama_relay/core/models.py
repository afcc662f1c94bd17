"""Core data models for ollama-relay."""

import getpass

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MODEL = "gemma3:4b"
DEFAULT_TIMEOUT_MINUTES = 120


def current_user() -> str:
    return getpass.getuser()


class SessionConfig(BaseModel):
    """Resolved configuration of one supervised session. Never mutated."""

    model_config = ConfigDict(frozen=True)

    remote_user: str = Field(default_factory=current_user, description="Remote username")
    remote_host: str = Field(..., description="Remote server hostname or IP")
    service_model: str = Field(DEFAULT_MODEL, description="Ollama model to serve")
    timeout_minutes: float = Field(DEFAULT_TIMEOUT_MINUTES, gt=0, description="Auto-timeout in minutes")

    @field_validator("remote_host", "remote_user", "service_model")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only values."""
        if not v or not v.strip():
            raise ValueError("value cannot be empty or whitespace-only")
        return v.strip()

    @property
    def destination(self) -> str:
        """SSH destination in user@host form."""
        return f"{self.remote_user}@{self.remote_host}"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60

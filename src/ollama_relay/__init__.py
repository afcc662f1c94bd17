"""ollama-relay - expose a local Ollama to a remote host over an SSH reverse tunnel."""

__version__ = "0.1.0"

from ollama_relay.core.config import Settings
from ollama_relay.core.models import SessionConfig

__all__ = ["Settings", "SessionConfig", "__version__"]

"""Allow ``python -m ollama_relay``."""

from ollama_relay.main import run

if __name__ == "__main__":
    run()

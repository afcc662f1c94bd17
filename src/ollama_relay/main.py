"""Command line entry point for ollama-relay."""

import argparse
import asyncio
import sys
from typing import Callable, List, Optional

import structlog
from pydantic import ValidationError

from ollama_relay import __version__
from ollama_relay.core.config import Settings
from ollama_relay.core.exceptions import ConfigurationError
from ollama_relay.core.models import DEFAULT_MODEL, DEFAULT_TIMEOUT_MINUTES, SessionConfig, current_user
from ollama_relay.supervisor import Supervisor
from ollama_relay.supervisor.models import SessionOutcome
from ollama_relay.utils.logging import bind_session_context, setup_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollama-relay",
        description="Expose a local Ollama to a remote host through an SSH reverse tunnel and a socat relay",
        epilog="Example: ollama-relay -u admin -s 192.168.1.100 -m llama3:8b",
    )
    parser.add_argument("-u", "--user", default=None, help="Remote username (default: current user)")
    parser.add_argument("-s", "--server", default=None, help="Remote server hostname or IP (required)")
    parser.add_argument("-m", "--model", default=DEFAULT_MODEL, help=f"Ollama model to use (default: {DEFAULT_MODEL})")
    parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT_MINUTES,
        help=f"Timeout in minutes (default: {DEFAULT_TIMEOUT_MINUTES})",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: from settings)")
    parser.add_argument("--log-format", choices=["console", "json"], default=None, help="Log output format")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def prompt_for_host(input_fn: Callable[[str], str] = input) -> str:
    """Ask for the server interactively. Returns an empty string on EOF."""
    print("No server specified.")
    try:
        return input_fn("Enter remote server hostname or IP: ").strip()
    except EOFError:
        return ""


def resolve_config(args: argparse.Namespace, input_fn: Callable[[str], str] = input) -> SessionConfig:
    """Turn parsed arguments into the fixed session configuration.

    Raises:
        ConfigurationError: if no server is given or a value is invalid
    """
    host = args.server or prompt_for_host(input_fn)
    if not host:
        raise ConfigurationError("Server is required.")

    try:
        return SessionConfig(
            remote_user=args.user or current_user(),
            remote_host=host,
            service_model=args.model,
            timeout_minutes=args.timeout,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


async def run_session(config: SessionConfig, settings: Settings) -> SessionOutcome:
    supervisor = Supervisor(config, settings)
    return await supervisor.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        return 1

    setup_logging(args.log_level or settings.log_level, args.log_format or settings.log_format)

    try:
        config = resolve_config(args)
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    bind_session_context(remote_host=config.remote_host, model=config.service_model)
    logger.info(
        "Starting Ollama SSH tunnel",
        user=config.remote_user,
        server=config.remote_host,
        model=config.service_model,
    )

    outcome = asyncio.run(run_session(config, settings))
    return outcome.exit_code


def run():
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()

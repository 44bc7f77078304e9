"""Command-line interface for publishing to and listening on Spire channels."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import traceback
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Literal

from dotenv import find_dotenv, load_dotenv
from pydantic import ValidationError

from .client import SpireClient, SpireClientDependencies
from .config import (
    Credentials,
    ErrorPolicy,
    HttpClientConfig,
    ListenerConfig,
    load_credentials_from_environment,
)
from .errors import SessionCreationError, SpireError
from .models import Message, Subscription

LOG_LEVELS: Final[dict[str, int]] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

Command = Literal["publish", "listen"]


@dataclass(frozen=True, slots=True)
class CliOptions:
    """Parsed command-line options for the Spire CLI."""

    command: Command
    channel: str
    content: object
    timeout: float | None
    error_policy: ErrorPolicy
    base_url: str | None
    dotenv_path: Path | None
    log_level: int


async def run_async(options: CliOptions) -> int:
    """Execute the CLI workflow and return the process exit code."""
    logger = _setup_logging(options.log_level)

    dotenv_file = (
        str(options.dotenv_path) if options.dotenv_path is not None else find_dotenv(usecwd=True)
    )
    if dotenv_file:
        load_dotenv(dotenv_file, override=True)
        logger.info("Loaded environment from %s (override=True)", dotenv_file)
    else:
        logger.debug("No .env file found; relying on process environment only")

    try:
        credentials = _resolve_credentials()
        client = _build_client(options, credentials)
    except (ValueError, ValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        if options.command == "publish":
            message = await client.publish(options.channel, options.content)
            print(format_message(message), flush=True)
        else:
            await _listen(client, options, logger)
    except SessionCreationError as exc:
        logger.error("Session creation failed: %s", exc)
        print("Session creation failed. Check your account key or secret.", file=sys.stderr)
        return 1
    except SpireError as exc:
        logger.error("Spire client error: %s", exc)
        print(f"Spire client error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as exc:  # pragma: no cover - defensive path
        logger.exception("Unexpected error in CLI execution")
        print(f"Unexpected error: {exc}", file=sys.stderr)
        return 1
    finally:
        await client.shutdown()
    return 0


def _setup_logging(log_level: int) -> logging.Logger:
    """Configure logging and return the CLI logger.

    Reduces noise from network libraries at non-DEBUG levels.
    """
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    return logging.getLogger("spire_client.cli")


def parse_cli_args(argv: Sequence[str] | None = None) -> CliOptions:
    """Parse command-line arguments into :class:`CliOptions`."""
    parser = argparse.ArgumentParser(
        prog="spire_client",
        description="Publish to or listen on Spire channels.",
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file containing SPIRE_KEY or SPIRE_SECRET",
    )
    parser.add_argument(
        "--log-level",
        choices=tuple(LOG_LEVELS.keys()),
        default="INFO",
        help="Log level for diagnostic output",
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=None,
        help="Root URL of the service discovery document (default: http://api.spire.io)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    publish = commands.add_parser("publish", help="Publish one message to a channel")
    publish.add_argument("--channel", required=True, help="Channel name (created on demand)")
    publish.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        help="Parse CONTENT as JSON instead of sending it as a string",
    )
    publish.add_argument("content", help="Message content")

    listen = commands.add_parser("listen", help="Print messages from a channel until interrupted")
    listen.add_argument("--channel", required=True, help="Channel name (created on demand)")
    listen.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Long-poll window in seconds (default: 30)",
    )
    listen.add_argument(
        "--error-policy",
        choices=("pause", "retry"),
        default="retry",
        help="Reaction to poll failures; 'pause' stops polling until restarted",
    )

    namespace = parser.parse_args(argv)
    command: Command = namespace.command
    content: object = None
    timeout: float | None = None
    error_policy: ErrorPolicy = "pause"
    if command == "publish":
        content = namespace.content
        if namespace.as_json:
            try:
                content = json.loads(namespace.content)
            except json.JSONDecodeError as exc:
                parser.error(f"CONTENT is not valid JSON: {exc}")
    else:
        timeout = namespace.timeout
        if timeout is not None and timeout <= 0:
            parser.error("--timeout must be greater than zero")
        error_policy = namespace.error_policy
    if not namespace.channel:
        parser.error("--channel must not be empty")

    return CliOptions(
        command=command,
        channel=namespace.channel,
        content=content,
        timeout=timeout,
        error_policy=error_policy,
        base_url=namespace.base_url,
        dotenv_path=namespace.dotenv,
        log_level=LOG_LEVELS[namespace.log_level],
    )


def format_message(message: Message) -> str:
    """Return a single-line summary of *message*."""
    components = [
        _format_timestamp(message.timestamp),
        message.key,
        _format_content(message.content),
    ]
    return " | ".join(components)


def _format_timestamp(value: float | None) -> str:
    if value is None:
        return "-"
    if float(value).is_integer():
        return f"{int(value)}"
    return f"{value:.3f}"


def _format_content(content: object) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, separators=(",", ":"), sort_keys=True)


def _resolve_credentials() -> Credentials:
    return load_credentials_from_environment()


def _build_client(options: CliOptions, credentials: Credentials) -> SpireClient:
    http_config = (
        HttpClientConfig()
        if options.base_url is None
        else HttpClientConfig.model_validate({"base_url": options.base_url})
    )
    listener_settings: dict[str, object] = {"error_policy": options.error_policy}
    if options.timeout is not None:
        listener_settings["timeout"] = options.timeout
    listener_config = ListenerConfig.model_validate(listener_settings)
    return SpireClient(
        credentials,
        dependencies=SpireClientDependencies(
            http_config=http_config, listener_config=listener_config
        ),
    )


async def _listen(client: SpireClient, options: CliOptions, logger: logging.Logger) -> None:
    print_lock = asyncio.Lock()

    async def _printer(messages: Sequence[Message]) -> None:
        async with print_lock:
            for message in messages:
                print(format_message(message), flush=True)

    def _announce(subscription: Subscription) -> None:
        logger.info("Listening on channel %s; press Ctrl+C to stop", options.channel)

    await client.subscribe(options.channel, _printer, _announce)
    await _wait_for_shutdown_signal()
    logger.info("Shutdown signal received; stopping client")


async def _wait_for_shutdown_signal() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    registered: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            continue
        registered.append(signum)
    try:
        await stop_event.wait()
    finally:
        for signum in registered:
            loop.remove_signal_handler(signum)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for the ``spire_client`` console script."""
    options = parse_cli_args(argv)
    try:
        exit_code = asyncio.run(run_async(options))
    except KeyboardInterrupt:
        exit_code = 130
    except Exception:  # noqa: BLE001
        traceback.print_exc(limit=1)
        exit_code = 1
    raise SystemExit(exit_code)

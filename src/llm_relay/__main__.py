"""CLI entry point for llm-relay."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from llm_relay.app import NoBotsError, RelayApp
from llm_relay.config import AppConfig, load_config
from llm_relay.log import get_logger, setup_logging

logger = get_logger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="llm-relay",
        description="Discord bots that relay conversations to an LLM inference endpoint",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (
        ("start", "Start every configured bot"),
        ("config-check", "Validate configuration"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "-c", "--config", default="config.yaml", help="Path to runtime config file"
        )
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args()

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    if args.command == "config-check":
        _check_config(args.config, args.env)
    elif args.command == "start":
        _run(args.config, args.env)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    config = _load(config_path, env_path)
    print(f"Bots configured: {len(config.bots)}")
    for bot in config.bots:
        history = "single message" if bot.message_limit == 0 else f"{bot.message_limit} messages"
        print(
            f"    - {bot.id} [respond_to={bot.respond_to}, "
            f"as_reply={bot.respond_as_reply}, context={history}] -> {bot.infer_url}"
        )
    for bot_id, reason in config.rejected.items():
        print(f"    ! {bot_id}: {reason}")
    runtime = config.runtime
    print(f"  HTTP timeout: {runtime.http_timeout_seconds}s")
    print(f"  Conversation cache: {runtime.conversation_cache_seconds}s")
    if not config.bots:
        sys.exit(1)


def _run(config_path: str, env_path: str) -> None:
    """Load config and start the application."""
    config = _load(config_path, env_path)
    setup_logging(config.runtime.log_level, config.runtime.log_format)

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _signal_handler() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(_signal_handler))

        app = RelayApp(config)
        try:
            await app.start()
        except NoBotsError as e:
            logger.error("startup_failed", error=str(e))
            await app.stop()
            sys.exit(1)

        await stop_event.wait()
        logger.info("shutdown_signal_received")
        await app.stop()

    try:
        asyncio.run(_async_main())
    except Exception as e:
        print(f"Unhandled error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

"""RDM Agent entry point.

Usage:
    python -m rdm_agent [--config CONFIG_PATH] [--server URL] [--device-id ID]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .agent import RemoteAgent
from .config import AgentConfig, ConfigError

CONFIG_CANDIDATES = [
    Path("/etc/rdm-agent/config.json"),
    Path.home() / ".rdm-agent" / "config.json",
]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="RDM remote management agent")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: auto-detect)",
    )
    parser.add_argument(
        "--server",
        default=None,
        help="Control server URL (overrides config)",
    )
    parser.add_argument(
        "--device-id",
        default=None,
        help="Device identifier (overrides config)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def load_config(args: argparse.Namespace) -> AgentConfig:
    """Resolve config file → environment → CLI flags, later wins."""
    log = logging.getLogger(__name__)
    config_path = args.config
    if config_path is None:
        for candidate in CONFIG_CANDIDATES:
            if candidate.exists():
                config_path = str(candidate)
                break

    if config_path:
        config = AgentConfig.load(config_path)
        log.info("Loaded config from %s", config_path)
    else:
        config = AgentConfig()
        log.warning("No config file found, using defaults")

    config.apply_env()
    if args.server:
        config.server_url = args.server
    if args.device_id:
        config.device_id = args.device_id
    if not config.device_id:
        config.device_id = config.generate_id()
    return config


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = load_config(args)
    except ConfigError as exc:
        logging.getLogger(__name__).error("%s", exc)
        sys.exit(2)

    agent = RemoteAgent(config)
    loop = asyncio.new_event_loop()

    def _shutdown(sig: int) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", sig)
        loop.create_task(agent.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    try:
        loop.run_until_complete(agent.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(agent.stop())
        loop.close()


if __name__ == "__main__":
    main()

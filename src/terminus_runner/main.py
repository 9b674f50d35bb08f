#!/usr/bin/env python3
"""
Terminus runner - Main Entry Point

Renders plugins to images and publishes them to a Terminus server, timed so
that each device fetch picks up freshly rendered screens.

Usage:
    terminus-runner
    python -m terminus_runner
    terminus-runner --device-id 2 --plugins-dir ./plugins --log-level DEBUG

Settings come from the environment or a .env file (TERMINUS_URL is required).
"""

import argparse
import logging
import signal
import sys
from logging.handlers import QueueListener
from typing import List, Optional

from pydantic import ValidationError

from terminus_runner.core import CoordinatorError, EnvSettings, Kernel, StartupError, SystemConfig
from terminus_runner.core.sandbox import ExecutionMode, process_context, set_log_queue

log = logging.getLogger("terminus_runner")


def setup_logging(level: str) -> None:
    """Configure console logging."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s : %(levelname)-8s : (%(name)s) %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    # Suppress noisy third-party loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def setup_process_logging() -> QueueListener:
    """Forward log records from render processes to the console handlers."""
    log_queue = process_context().Queue()
    set_log_queue(log_queue)

    queue_listener = QueueListener(
        log_queue,
        *logging.getLogger().handlers,
        respect_handler_level=True,
    )
    queue_listener.start()
    return queue_listener


def install_signal_handlers(kernel: Kernel) -> None:
    """Stop the kernel gracefully on SIGINT and SIGTERM."""

    def handler(signum, frame):
        log.info(f"Received {signal.Signals(signum).name}, shutting down...")
        kernel.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Terminus runner - device-synchronized plugin screens"
    )
    parser.add_argument(
        "--device-id",
        type=int,
        default=None,
        help="Device to manage (default: DEVICE_ID or 1)",
    )
    parser.add_argument(
        "--plugins-dir",
        default=None,
        help="Plugin root directory (default: PLUGINS_DIR or the bundled plugins)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Log level (default: LOG_LEVEL or INFO)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level or "INFO")

    try:
        env = EnvSettings()
    except ValidationError as e:
        log.error(f"Invalid settings: {e}")
        return 1

    setup_logging(args.log_level or env.log_level)

    config = SystemConfig.from_env(env)
    if args.device_id is not None:
        config.device_id = args.device_id
    if args.plugins_dir is not None:
        config.plugins_dir = args.plugins_dir

    log.info("=" * 50)
    log.info(f"Terminus runner starting (server {config.client.base_url})")
    log.info("=" * 50)

    queue_listener = None
    try:
        if config.sandbox.execution_mode == ExecutionMode.PROCESS.value:
            queue_listener = setup_process_logging()

        kernel = Kernel(config)
        install_signal_handlers(kernel)
        kernel.run()
    except StartupError as e:
        log.error(f"Startup failed: {e}")
        return 1
    except CoordinatorError as e:
        log.error(f"Refresh coordinator failed: {e}")
        return 1
    finally:
        if queue_listener is not None:
            queue_listener.stop()
            set_log_queue(None)

    log.info("Terminus runner shutdown complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

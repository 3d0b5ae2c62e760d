"""Process entry point: ``python -m av1_link``."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from .app import create_app

LOG = logging.getLogger(__name__)

CONFIG_ENV = "AV1LINK_CONFIG"
DEFAULT_CONFIG_PATH = Path("data/config.json")
DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO, format: Optional[str] = None) -> None:
    """Configure the root logger once, leaving existing handlers alone."""

    if logging.getLogger().handlers:
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def resolve_config_path(value: str | None = None) -> Path:
    if value:
        return Path(value)
    env_value = os.environ.get(CONFIG_ENV)
    if env_value:
        return Path(env_value)
    return DEFAULT_CONFIG_PATH


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AV1Link peer-to-peer call endpoint")
    parser.add_argument(
        "--config",
        default=None,
        help=f"configuration file (default: ${CONFIG_ENV} or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the control API")
    parser.add_argument("--port", type=int, default=8080, help="bind port for the control API")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    import uvicorn

    app = create_app(resolve_config_path(args.config))
    try:
        uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")


if __name__ == "__main__":
    run()

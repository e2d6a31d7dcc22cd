from __future__ import annotations

import argparse
import os
import sys
from typing import Optional

import uvicorn

from .app import create_app
from .config import ConfigError, default_config_path, load_config


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="radiomonitor server")
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=os.environ.get("RADIOMONITOR_CONFIG", default_config_path()),
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--bind",
        type=str,
        default=None,
        help="Override bind address (e.g., 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override port (e.g., 8087)",
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help="Override registry data directory",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    if args.bind is not None:
        cfg.server.bind_address = args.bind
    if args.port is not None:
        cfg.server.port = args.port
    if args.data_dir is not None:
        cfg.registry.data_dir = args.data_dir

    app = create_app(cfg, config_path=args.config)

    # Long keep-alive for stream subscribers
    uvicorn.run(
        app,
        host=cfg.server.bind_address,
        port=cfg.server.port,
        log_level="info",
        timeout_keep_alive=300,
        timeout_graceful_shutdown=10,
    )


if __name__ == "__main__":
    main(sys.argv[1:])

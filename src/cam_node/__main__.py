"""Command line entry point: ``python -m cam_node``."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

import uvicorn

from .app import create_app
from .config import DEFAULT_CONFIG_PATH, DEFAULT_FFMPEG_BINARY, DEFAULT_RECORDINGS_DIR

_LOG_LEVELS = ("debug", "info", "warning", "error")


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the CamNode server."""

    parser = argparse.ArgumentParser(
        prog="python -m cam_node",
        description="Camera fleet supervisor with event-triggered recording",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Camera and pipeline configuration file (JSON).",
    )
    parser.add_argument(
        "--recordings-dir",
        type=Path,
        default=DEFAULT_RECORDINGS_DIR,
        help="Root directory for live segments and recordings.",
    )
    parser.add_argument("--ffmpeg", default=DEFAULT_FFMPEG_BINARY, help="Path to the ffmpeg binary.")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default="info",
        help="Logging verbosity.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        app = create_app(args.config, recordings_dir=args.recordings_dir, binary=args.ffmpeg)
    except ValueError as exc:
        logging.getLogger(__name__).error("Invalid configuration in %s: %s", args.config, exc)
        return 2
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())

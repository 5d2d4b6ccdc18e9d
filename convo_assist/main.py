"""Main entry point for the conversation assistant.

This module provides the main entry point for running the system in either:
1. Server mode (FastAPI REST routes plus the ``/ws`` session hub)
2. Terminal mode (record or observe a session from the CLI)
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from convo_assist.config.config import load_config


def run_api_mode(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """
    Run the system in server mode.

    Args:
        host: Host address to bind to
        port: Port number to listen on
        reload: Enable auto-reload for development
    """
    import uvicorn

    logger = logging.getLogger(__name__)
    logger.info("Starting API server on %s:%d", host, port)
    logger.info(
        "API documentation available at: http://%s:%d/docs",
        host if host != "0.0.0.0" else "localhost",
        port,
    )

    uvicorn.run(
        "convo_assist.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


def run_terminal_mode(args: argparse.Namespace) -> int:
    """Run the system in terminal mode (CLI interface)."""
    from convo_assist.terminal_interface import run_terminal

    return run_terminal(
        load_config(args.config),
        server=args.server,
        input_device=args.device,
        compute_device=args.compute_device,
        session_id=args.session,
        output_path=args.output,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Live conversation assistant: capture, transcription and shared sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run API server (default mode)
  python -m convo_assist.main

  # Run API server on custom port with auto-reload (development)
  python -m convo_assist.main --port 8080 --reload

  # Record a conversation from the terminal
  python -m convo_assist.main --terminal --server http://localhost:8000

  # Observe an existing session
  python -m convo_assist.main --terminal --session 42
        """,
    )

    # Mode selection
    parser.add_argument(
        "--terminal",
        action="store_true",
        help="Run in terminal mode (CLI interface)",
    )

    # Server mode arguments
    parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Host address for API server (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port number for API server (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (server mode only)",
    )

    # Terminal mode arguments
    parser.add_argument(
        "--server",
        type=str,
        help="Server root URL, e.g. http://localhost:8000 (terminal mode only)",
    )
    parser.add_argument(
        "--device",
        type=str,
        help="Input device id to record from (terminal mode only)",
    )
    parser.add_argument(
        "--compute-device",
        type=str,
        choices=["cpu", "cuda", "mps"],
        help="Force the speech model device (cpu, cuda, mps)",
    )
    parser.add_argument(
        "--session",
        type=int,
        help="Observe an existing session instead of recording (terminal mode only)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Save the finished recording as WAV (terminal mode only)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to configuration file (default: convo_assist.json)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with argument parsing."""
    args = build_parser().parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )

    # Run in appropriate mode
    if args.terminal:
        return run_terminal_mode(args)
    run_api_mode(host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())

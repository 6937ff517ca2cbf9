"""
Command line entry point.

    python -m payrecon serve [--host HOST] [--port PORT]
    python -m payrecon process-queue [--batch-size N]

``process-queue`` runs one scheduler pass and exits, for cron-style triggers.
"""

import argparse
import json
import sys
from typing import List, Optional

import structlog
import uvicorn

from .config import get_settings
from .logging_config import setup_logging

logger = structlog.get_logger()


def _serve(args: argparse.Namespace) -> int:
    settings = get_settings()
    uvicorn.run(
        "payrecon.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.app_log_level.lower(),
    )
    return 0


def _process_queue(args: argparse.Namespace) -> int:
    from .main import get_service

    result = get_service().run_scheduler(batch_size=args.batch_size)
    print(json.dumps(result.to_dict()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="payrecon", description="Payment reconciliation engine")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(handler=_serve)

    process = commands.add_parser("process-queue", help="Run one queue scheduler pass")
    process.add_argument("--batch-size", type=int, default=None)
    process.set_defaults(handler=_process_queue)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(get_settings().app_log_level)
    try:
        return args.handler(args)
    except Exception:
        logger.exception("Command failed", command=args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())

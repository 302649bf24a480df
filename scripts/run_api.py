#!/usr/bin/env python3
"""Run the order book aggregation API server.

This script loads `.env`, configures logging and starts uvicorn. The venue
feeds start with the application and stop on shutdown.

Usage:
    python scripts/run_api.py [--host HOST] [--port PORT]

Environment:
    DFLOW_API_KEY - Optional. Enables the DFlow feed.

Examples:
    python scripts/run_api.py
    python scripts/run_api.py --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    """Run the API server."""
    parser = argparse.ArgumentParser(description="Run the cross-venue order book API server.")
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8080")),
        help="Port to bind to (default: $PORT or 8080)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    from dotenv import load_dotenv

    load_dotenv(_REPO_ROOT / ".env")

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not os.environ.get("DFLOW_API_KEY"):
        print("Warning: DFLOW_API_KEY is not set; only the Polymarket feed will run", file=sys.stderr)

    print(f"Starting API server on {args.host}:{args.port}")
    print("Endpoints:")
    print(f"  - WS   ws://{args.host}:{args.port}/ws")
    print(f"  - GET  http://{args.host}:{args.port}/book")
    print(f"  - POST http://{args.host}:{args.port}/quote")
    print(f"  - GET  http://{args.host}:{args.port}/health")
    print()

    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""CLI: Run the diagram API server."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

import uvicorn

from mermaidsmith import config


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve the Mermaid diagram API")
    parser.add_argument("--host", type=str, default=config.HOST, help=f"Bind address (default: {config.HOST})")
    parser.add_argument("--port", type=int, default=config.PORT, help=f"Port (default: {config.PORT})")
    parser.add_argument("--reload", action="store_true", help="Reload on source changes")
    args = parser.parse_args()

    uvicorn.run(
        "mermaidsmith.api.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""CLI: Generate a Mermaid diagram (or a revision of one) from a prompt."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from mermaidsmith import config
from mermaidsmith.errors import DiagramError
from mermaidsmith.pipeline import create_pipeline
from mermaidsmith.storage.sqlite_store import Owner


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a Mermaid diagram from text")
    parser.add_argument("prompt", type=str, help="Text to visualize, or the requested change")
    parser.add_argument(
        "--parent",
        type=str,
        default=None,
        help="Diagram ID to revise (creates a follow-up in the parent's thread)",
    )
    parser.add_argument(
        "--change",
        type=str,
        default=None,
        help="Short description of the change (follow-ups only)",
    )
    parser.add_argument(
        "--complex",
        action="store_true",
        help="Request a comprehensive diagram (costs 2 credits instead of 1)",
    )
    who = parser.add_mutually_exclusive_group()
    who.add_argument("--user", type=str, default=None, help="Authenticated user ID")
    who.add_argument(
        "--anonymous",
        type=str,
        default="cli",
        help="Anonymous ID (default: cli)",
    )
    parser.add_argument(
        "--validator",
        choices=["mmdc", "header"],
        default=None,
        help=f"Render check to use (default: {config.VALIDATOR})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if not config.GEMINI_API_KEY:
        print("Error: GEMINI_API_KEY is not set. Add it to .env.", file=sys.stderr)
        sys.exit(1)
    if args.validator:
        config.VALIDATOR = args.validator

    owner = Owner(user_id=args.user) if args.user else Owner(anonymous_id=args.anonymous)
    pipeline = create_pipeline()

    try:
        if args.parent:
            result = pipeline.generate_follow_up(
                args.parent, args.prompt, args.complex, args.change, owner,
            )
        else:
            result = pipeline.generate_root(args.prompt, args.complex, owner)
    except DiagramError as e:
        print(f"Error ({e.code}): {e}", file=sys.stderr)
        sys.exit(1)

    d = result.diagram
    print(f"Diagram: {d.id} ({d.diagram_type}, {result.attempts} attempt(s))", file=sys.stderr)
    if result.thread:
        print(f"Thread: {result.thread.id} \"{result.thread.name}\"", file=sys.stderr)
    if result.credits_remaining is not None:
        print(f"Credits remaining: {result.credits_remaining}", file=sys.stderr)
    print(d.code)


if __name__ == "__main__":
    main()

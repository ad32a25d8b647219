#!/usr/bin/env python3
"""Ask one question against a content source and print the streamed answer.

Usage:
    # Using environment variables:
    SOURCE_API_KEY=blt123 GROQ_API_KEY=gsk_... python scripts/ask_content.py "show me the blog posts"

    # Or with command line args:
    python scripts/ask_content.py --source-key blt123 --provider gemini "what products do you have?"

    # List the read-only tools a source exposes:
    python scripts/ask_content.py --source-key blt123 --list-tools

Environment Variables:
    SOURCE_API_KEY: Content source API key
    TENANT_ID: Tenant identifier (default: cli)
    GROQ_API_KEY / GEMINI_API_KEY / OPENROUTER_API_KEY: generation providers
    CACHE_BACKEND: redis, memory or none (default here: memory)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def ask(args: argparse.Namespace) -> int:
    # Import here so env defaults below are applied before settings load
    from contentrelay.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.startup()
    try:
        if args.list_tools:
            tools = await runtime.pipeline.get_tool_catalog(
                args.tenant, args.source_key, project_id=args.project_id
            )
            print(json.dumps(tools, indent=2))
            return 0

        def status(phase: str) -> None:
            print(f"[{phase}]", file=sys.stderr)

        async for chunk in runtime.pipeline.query(
            args.question,
            args.tenant,
            args.source_key,
            project_id=args.project_id,
            session_id=args.session,
            provider=args.provider,
            model=args.model,
            on_status=status if not args.quiet else None,
        ):
            print(chunk, end="", flush=True)
        print()
        return 0
    finally:
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Ask a content question through the retrieval pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("question", nargs="?", help="Question to ask")
    parser.add_argument(
        "--source-key",
        default=os.environ.get("SOURCE_API_KEY"),
        help="Content source API key (or set SOURCE_API_KEY env var)",
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("TENANT_ID", "cli"),
        help="Tenant id (or set TENANT_ID env var)",
    )
    parser.add_argument("--project-id", default=None, help="Optional project scope")
    parser.add_argument("--session", default=None, help="Session id for conversation memory")
    parser.add_argument("--provider", default=None, help="groq, gemini or openrouter")
    parser.add_argument("--model", default=None, help="Model name for the chosen provider")
    parser.add_argument("--list-tools", action="store_true", help="Print the safe tool catalog and exit")
    parser.add_argument("--quiet", action="store_true", help="Do not print status phases")

    args = parser.parse_args()

    if not args.source_key:
        print("Error: --source-key or SOURCE_API_KEY environment variable required")
        sys.exit(1)

    if not args.list_tools and not args.question:
        print("Error: a question is required unless --list-tools is given")
        sys.exit(1)

    os.environ.setdefault("CACHE_BACKEND", "memory")

    try:
        sys.exit(asyncio.run(ask(args)))
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

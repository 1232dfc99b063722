"""
Entry point for kv-offload.

Usage:
    python -m kv_offload serve   # HTTP ingestion and retrieval
    python -m kv_offload sweep   # background offload sweeper
    kv-offload-server / kv-offload-sweeper  # If installed via pip
"""

import asyncio
import sys

USAGE = "usage: python -m kv_offload [serve|sweep]"


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = sys.argv[1:] if argv is None else argv
    command = args[0] if args else "serve"

    from kv_offload.server import run_server, run_sweeper

    try:
        if command == "serve":
            asyncio.run(run_server())
            return 0
        if command == "sweep":
            return asyncio.run(run_sweeper())
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(USAGE, file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main())

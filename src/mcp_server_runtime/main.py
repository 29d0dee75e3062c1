#!/usr/bin/env python3
"""
Diagnostic entry point for the MCP server runtime.

Prints the runtime status summary as JSON after one cluster refresh. Server
IDs given on the command line are reported even when they have no
deployment yet.
"""

import argparse
import asyncio
import logging
import os

from mcp_server_runtime import manager as runtime
from mcp_server_runtime._version import __version__
from mcp_server_runtime.models import ServerRecord

logger = logging.getLogger(__name__)


async def _report(server_ids: list[str]) -> str:
    manager = runtime.configure()
    try:
        manager.register_servers(
            ServerRecord(id=server_id, catalogId="") for server_id in server_ids
        )
        await manager.initialize()
        return manager.status_summary.model_dump_json(indent=2)
    finally:
        await runtime.shutdown()


def main() -> None:
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(prog="mcp-server-runtime", description=__doc__)
    parser.add_argument("server_ids", nargs="*", help="MCP server IDs to report on")
    parser.add_argument("--version", action="version", version=__version__)
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    print(asyncio.run(_report(args.server_ids)))


if __name__ == "__main__":
    main()

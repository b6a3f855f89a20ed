import asyncio
import logging

from mcp.server.stdio import stdio_server

from caserouter.db.database import close_db
from caserouter.mcp_server import server


async def run() -> None:
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )
    finally:
        await close_db()


def main() -> None:
    # Keep stdout clean for MCP JSON-RPC
    logging.getLogger().setLevel(logging.CRITICAL)
    asyncio.run(run())


if __name__ == "__main__":
    main()

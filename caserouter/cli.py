import argparse
import asyncio
import json

import uvicorn

from caserouter.config import DB_PATH, HOST, PORT
from caserouter.db.database import close_db, get_db
from caserouter.sweeper import sweep_expired


def _serve(args: argparse.Namespace) -> None:
    uvicorn.run(
        "caserouter.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


def _stdio(args: argparse.Namespace) -> None:
    from caserouter.stdio_main import main as stdio_main
    stdio_main()


async def _sweep_once() -> list[str]:
    try:
        return await sweep_expired(await get_db())
    finally:
        await close_db()


def _sweep(args: argparse.Namespace) -> None:
    expired = asyncio.run(_sweep_once())
    print(json.dumps({"expired": expired}))


async def _init_db() -> None:
    try:
        await get_db()
    finally:
        await close_db()


def _init(args: argparse.Namespace) -> None:
    asyncio.run(_init_db())
    print(f"Schema ready at {DB_PATH}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CaseRouter query routing server")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP/SSE server (default)")
    serve.add_argument("--host", default=HOST, help="Bind host")
    serve.add_argument("--port", type=int, default=PORT, help="Bind port")
    serve.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    serve.set_defaults(func=_serve)

    sub.add_parser("stdio", help="Run the MCP server over stdio").set_defaults(func=_stdio)
    sub.add_parser("sweep", help="Expire idle queries once and exit").set_defaults(func=_sweep)
    sub.add_parser("init-db", help="Create or migrate the database schema").set_defaults(func=_init)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(["serve"])
    args.func(args)


if __name__ == "__main__":
    main()

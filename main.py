"""Sharad — terminal launcher. Plays one session, optionally serving the admin API."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from sharad.app import SessionRegistry, create_app
from sharad.config import Config, load_config
from sharad.errors import SharadError
from sharad.llm import EchoTransport, HttpTransport
from sharad.orchestrator import Session
from sharad.player_io import TerminalIO
from sharad.storage import Storage

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "127.0.0.1")

logger = logging.getLogger("sharad")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sharad interactive fiction")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON config file (SHARAD_* env vars override it)")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--session", default=None,
                        help="Session name to continue or start")
    parser.add_argument("--admin-port", type=int, default=None,
                        help="Serve the admin API on this port while playing")
    parser.add_argument("--echo", action="store_true",
                        help="Use the echo transport instead of a model backend")
    parser.add_argument("--debug", action="store_true",
                        help="Verbose logging")
    return parser


def resolve_config(args: argparse.Namespace) -> Config:
    config = load_config(args.config)
    overrides: dict = {}
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.debug:
        overrides["debug"] = True
    return config.model_copy(update=overrides)


def choose_session(storage: Storage, name: str | None) -> str:
    if name:
        return storage.create_session(name)
    saves = storage.list_sessions()
    if saves:
        print("Saved sessions: " + ", ".join(saves))
        print("Use --session NAME to continue one.")
    return storage.create_session(datetime.now().strftime("session-%Y%m%d-%H%M%S"))


async def play(args: argparse.Namespace, config: Config) -> None:
    storage = Storage(config.data_dir)
    session_id = choose_session(storage, args.session)
    transport = EchoTransport() if args.echo else HttpTransport(
        provider_url=config.provider_url,
        api_key=config.api_key,
        provider_format=config.provider_format,
        model=config.model,
        timeout=config.request_timeout,
    )
    session = Session.resume(storage, session_id, transport=transport, config=config, io=TerminalIO())
    print(f"Session '{session_id}' at turn {session.store.snapshot().turn}. Type 'exit' to quit.")

    server: uvicorn.Server | None = None
    server_task: asyncio.Task | None = None
    if args.admin_port:
        registry = SessionRegistry()
        registry.add(session)
        server = uvicorn.Server(uvicorn.Config(
            create_app(registry), host=HOST, port=args.admin_port, log_level="warning",
        ))
        server_task = asyncio.create_task(server.serve())
        print(f"Admin API on http://{HOST}:{args.admin_port}/api")

    run_task = asyncio.create_task(session.run())

    def interrupt() -> None:
        # first Ctrl-C aborts a pending request; otherwise quit
        if session.cancel_pending():
            return
        session.end()
        run_task.cancel()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, interrupt)
    loop.add_signal_handler(signal.SIGTERM, interrupt)

    try:
        await run_task
    except asyncio.CancelledError:
        print("\nShutting down...")
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task


def main():
    args = build_parser().parse_args()
    try:
        config = resolve_config(args)
    except SharadError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(play(args, config))
    except SharadError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

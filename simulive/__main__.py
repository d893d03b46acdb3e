"""Command line entry point for simulive."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from simulive import __version__
from simulive.daemon import SimuliveWatcher, WatchConfig
from simulive.presence import generate_viewer_id
from simulive.serve.server import DEFAULT_PORT, ServeConfig, run_server
from simulive.settings import DEFAULT_CONFIG_DIR, get_serve_settings, get_watch_settings

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="simulive", description="Watch and serve scheduled pre-recorded sessions"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config-dir", help=f"Settings directory (default: {DEFAULT_CONFIG_DIR})")
    common.add_argument("--log-level", choices=LOG_LEVELS, type=str.upper, help="Log level")

    watch = sub.add_parser("watch", parents=[common], help="Follow a session")
    watch.add_argument("session_id", help="Session to watch")
    watch.add_argument("--url", help="Backend base URL (default: last used, then mDNS)")
    watch.add_argument("--hook", dest="hook_command", help="Command run on each state change")
    watch.add_argument(
        "--drift-rate",
        type=float,
        default=1.0,
        help="Playback rate of the simulated primary surface (default: 1.0)",
    )
    watch.add_argument(
        "--media-duration",
        type=float,
        help="Natural length of the simulated media in seconds",
    )

    serve = sub.add_parser("serve", parents=[common], help="Run the reference backend")
    serve.add_argument("--port", type=int, help=f"Listen port (default: {DEFAULT_PORT})")
    serve.add_argument("--catalog", help="JSON file describing the sessions")
    serve.add_argument("--name", help="Name advertised over mDNS")
    serve.add_argument(
        "--no-advertise", action="store_true", help="Do not advertise over mDNS"
    )
    return parser


def _configure_logging(level: str | None) -> None:
    logging.basicConfig(
        level=getattr(logging, level or "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _watch(args: argparse.Namespace) -> int:
    settings = await get_watch_settings(args.config_dir)
    _configure_logging(args.log_level or settings.log_level)

    settings.update(
        last_server_url=args.url,
        hook_command=args.hook_command,
        log_level=args.log_level,
    )
    if settings.viewer_id is None:
        settings.update(viewer_id=generate_viewer_id())

    watcher = SimuliveWatcher(
        WatchConfig(
            session_id=args.session_id,
            url=args.url or settings.last_server_url,
            viewer_id=settings.viewer_id,
            hook_command=args.hook_command or settings.hook_command,
            drift_rate=args.drift_rate,
            media_duration=args.media_duration,
        )
    )
    try:
        return await watcher.run()
    finally:
        settings.update(last_server_url=watcher.server_url)
        await settings.flush()


async def _serve(args: argparse.Namespace) -> int:
    settings = await get_serve_settings(args.config_dir)
    _configure_logging(args.log_level or settings.log_level)

    settings.update(
        name=args.name,
        listen_port=args.port,
        catalog_path=args.catalog,
        log_level=args.log_level,
    )
    await settings.flush()

    if settings.catalog_path is None:
        logger.error("No session catalog given, use --catalog")
        return 1

    config_dir = Path(args.config_dir) if args.config_dir else DEFAULT_CONFIG_DIR
    return await run_server(
        ServeConfig(
            catalog_path=Path(settings.catalog_path),
            data_dir=config_dir,
            port=settings.listen_port or DEFAULT_PORT,
            name=settings.name,
            advertise=not args.no_advertise,
        )
    )


def main(argv: list[str] | None = None) -> int:
    args = make_parser().parse_args(argv)
    handler = _watch if args.cmd == "watch" else _serve
    try:
        return asyncio.run(handler(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())

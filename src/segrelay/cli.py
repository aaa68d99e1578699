# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Segment Relay CLI: serve, fetch commands.

Usage:
    segrelay serve [--mode proxy|route] [--origin URL] [--host HOST] [--port PORT] [--db PATH]
    segrelay fetch URL [--headers] [--user-agent UA]

Configuration comes from ``SEGRELAY_*`` environment variables; flags
override individual fields.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys

from .config import RelayConfig, RelayMode


def _config_from_args(args: argparse.Namespace) -> RelayConfig:
    """Environment config with CLI flags layered on top."""
    config = RelayConfig.from_env()
    overrides: dict = {}
    if getattr(args, "mode", None):
        overrides["mode"] = RelayMode(args.mode)
    if getattr(args, "origin", None):
        overrides["origin"] = args.origin.rstrip("/")
    if getattr(args, "host", None):
        overrides["host"] = args.host
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if getattr(args, "db", None):
        overrides["db_path"] = args.db
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    if args.json_logs:
        overrides["log_json"] = True
    return dataclasses.replace(config, **overrides) if overrides else config


def cmd_serve(args: argparse.Namespace, config: RelayConfig) -> None:
    """Run the relay under uvicorn."""
    import uvicorn

    from .app import create_app

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        log_config=None,
    )


async def _fetch_once(url: str, config: RelayConfig, *, user_agent: str) -> tuple[int, list[tuple[str, str]], bytes]:
    from .app import build_runtime, default_client
    from .orchestrator import RelayRequest
    from .store import open_store

    store = await open_store(config.db_path, max_entries=config.max_memory_entries)
    try:
        async with default_client() as client:
            runtime = build_runtime(config, store=store, client=client)
            headers = {"user-agent": user_agent, "accept": "text/html"}
            relayed = await runtime.orchestrator.handle(RelayRequest(method="GET", url=url, headers=headers))
            await relayed.run_deferred()
            return relayed.status, relayed.headers, relayed.body
    finally:
        await store.close()


def cmd_fetch(args: argparse.Namespace, config: RelayConfig) -> None:
    """Relay one URL through the full pipeline and print the result."""
    from .urls import normalize_target_url

    url = normalize_target_url(args.url)
    status, headers, body = asyncio.run(_fetch_once(url, config, user_agent=args.user_agent))
    if args.headers:
        print(f"HTTP {status}")
        for name, value in headers:
            print(f"{name}: {value}")
        return
    sys.stdout.buffer.write(body)
    sys.stdout.flush()
    if status >= 400:
        sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Segment Relay", prog="segrelay")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_serve = subparsers.add_parser(
        "serve",
        help="Start the relay HTTP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  %(prog)s                                          Proxy mode on 127.0.0.1:8787
  %(prog)s --mode route --origin https://example.com Relay every path to one origin
  %(prog)s --db /var/cache/segrelay.db              Persist caches in SQLite""",
    )
    p_serve.add_argument("--mode", choices=[m.value for m in RelayMode])
    p_serve.add_argument("--origin", type=str, metavar="URL", help="Origin for route mode")
    p_serve.add_argument("--host", type=str)
    p_serve.add_argument("--port", type=int)
    p_serve.add_argument("--db", type=str, metavar="PATH", help="SQLite cache path (default: in-memory)")

    p_fetch = subparsers.add_parser("fetch", help="Relay a single URL and print the rewritten page")
    p_fetch.add_argument("url", metavar="URL")
    p_fetch.add_argument("--headers", action="store_true", help="Print status and headers instead of the body")
    p_fetch.add_argument("--user-agent", default="Mozilla/5.0 (segrelay fetch)", metavar="UA")

    commands = {"serve": cmd_serve, "fetch": cmd_fetch}

    args = parser.parse_args(argv)

    try:
        config = _config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    from .logging_config import configure

    configure(json_output=config.log_json, level=config.log_level)

    try:
        commands[args.command](args, config)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        from .problem_details import from_exception

        print(from_exception(e).to_cli_text(), file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

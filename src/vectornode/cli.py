from __future__ import annotations

import argparse
import asyncio
import logging

from .settings import LOG_FORMAT, Settings, load_settings


def _configure_logging(settings: Settings) -> None:
    level = (settings.log_level or "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _settings(**fields) -> Settings:
    s = load_settings()
    updates = {k: v for k, v in fields.items() if v is not None}
    return s.model_copy(update=updates) if updates else s


def cmd_version() -> int:
    from . import __version__

    print(__version__)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from .service.server import main as serve

    settings = _settings(
        bind_host=args.host,
        bind_port=args.port,
        worker_in_process=False if args.no_worker else None,
    )
    _configure_logging(settings)
    serve(settings)
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    from .worker import run_worker

    settings = _settings(worker_pool_size=args.pool_size)
    _configure_logging(settings)
    asyncio.run(run_worker(settings, recover=args.recover))
    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    from .store.schema import apply_schema

    settings = _settings(embedding_dim=args.dim, database_url=args.dsn)
    _configure_logging(settings)
    asyncio.run(apply_schema(settings.database_url, settings.embedding_dim))
    print(f"schema ready (dim={settings.embedding_dim})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="vectornode")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("version").set_defaults(func=lambda _a: cmd_version())

    serve = sub.add_parser("serve", help="Run the HTTP API (and, by default, the worker pool)")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--no-worker", action="store_true", help="Do not run the worker pool in-process")
    serve.set_defaults(func=cmd_serve)

    worker = sub.add_parser("worker", help="Run a standalone ingestion worker pool")
    worker.add_argument("--pool-size", type=int, default=None)
    worker.add_argument(
        "--recover",
        action="store_true",
        help="Requeue events left in-flight by a crashed worker (only when no other worker runs)",
    )
    worker.set_defaults(func=cmd_worker)

    init_db = sub.add_parser("init-db", help="Create tables, triggers and vector indexes")
    init_db.add_argument("--dim", type=int, default=None, help="Embedding dimension (default EMBEDDING_DIM)")
    init_db.add_argument("--dsn", default=None, help="Postgres DSN (default DATABASE_URL)")
    init_db.set_defaults(func=cmd_init_db)

    return p


def app() -> None:
    parser = build_parser()
    args = parser.parse_args()
    rc = args.func(args)
    raise SystemExit(rc)


if __name__ == "__main__":
    app()

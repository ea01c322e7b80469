from __future__ import annotations

import asyncio
import logging

import uvicorn

from ..container import Container
from ..settings import LOG_FORMAT, Settings, load_settings
from .app import create_app


async def _main(settings: Settings) -> None:
    container = await Container.build(settings)
    app = create_app(container)

    config = uvicorn.Config(
        app,
        host=settings.bind_host,
        port=settings.bind_port,
        log_level=(settings.log_level or "info").lower(),
        loop="uvloop",
        http="httptools",
    )
    server = uvicorn.Server(config)
    # container shutdown runs in the app lifespan
    await server.serve()


def main(settings: Settings | None = None) -> None:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
    asyncio.run(_main(settings))


if __name__ == "__main__":
    main()

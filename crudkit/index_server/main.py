"""
crudkit index server - Main entry point.

This module starts the index server with all components:
- Change feed connection (in-memory or Kafka)
- Index registry, with indexes from INDEX_SPEC_PATH
- HTTP query surface (FastAPI served by uvicorn)

Usage:
    crudkit-indexd
    python -m crudkit.index_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The feed is connected before any index is registered
    - HTTP starts only after the startup indexes are registered
    - Shutdown stops HTTP, then every worker, then closes the feed

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

import json_log_formatter
import uvicorn

from .api import create_app
from .config import ServerConfig
from .engine import EngineContext

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """Index server orchestrator.

    Attributes:
        config: Server configuration
        context: Engine context (feed, store, registry, bridge)
        http_server: uvicorn server, when HTTP is enabled

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self.context = EngineContext(self.config)
        self.http_server: uvicorn.Server | None = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and wait for a shutdown request."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting crudkit index server")
        self.config.log_config()

        try:
            await self.context.init()
            logger.info(
                "Index engine started",
                extra={"indexes": self.context.registry.names()},
            )

            if self.config.http.enabled:
                app = create_app(self.context)
                self.http_server = uvicorn.Server(
                    uvicorn.Config(
                        app,
                        host=self.config.http.host,
                        port=self.config.http.port,
                        log_config=None,
                    )
                )
                # SIGINT/SIGTERM are handled by main(), not uvicorn
                self.http_server.capture_signals = contextlib.nullcontext
                self._tasks.append(asyncio.create_task(self.http_server.serve()))
                logger.info(
                    f"HTTP server listening on {self.config.http.host}:{self.config.http.port}"
                )

            self._running = True
            logger.info("crudkit index server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping crudkit index server")

        if self.http_server is not None:
            self.http_server.should_exit = True
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

        await self.context.shutdown()

        self._running = False
        logger.info("crudkit index server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()

"""Running the in-enclave HTTP API as a background task."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from enclaver.api import ApiHandler
from enclaver.http_util import HttpServer
from enclaver.nsm import AttestationProvider
from enclaver.odyn.config import Configuration

logger = logging.getLogger(__name__)


class ApiService:
    """The API server task, if the manifest asks for one."""

    def __init__(self, task: asyncio.Task[None] | None = None, port: int | None = None) -> None:
        self._task = task
        self.port = port

    @classmethod
    def start(cls, config: Configuration, attester: AttestationProvider) -> ApiService:
        """Start serving the API on the manifest's port; do nothing if none is set."""
        port = config.api_port()
        if port is None:
            return cls()

        logger.info("Starting API on port %d", port)
        server = HttpServer.bind(port)
        handler = ApiHandler(attester)
        task = asyncio.ensure_future(cls._run(server, handler))
        return cls(task, server.port)

    @staticmethod
    async def _run(server: HttpServer, handler: ApiHandler) -> None:
        try:
            await server.serve(handler)
        except Exception as err:  # noqa: BLE001 - the service simply stops
            logger.debug("API server stopped: %s", err)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
"""A small HTTP server on the loopback interface and common responses."""

from __future__ import annotations

import abc
import asyncio
import socket
from dataclasses import dataclass, field
from http import HTTPStatus

from aiohttp import web


@dataclass
class HttpRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class HttpResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


class HttpHandler(abc.ABC):
    """Turns requests into responses."""

    @abc.abstractmethod
    async def handle(self, req: HttpRequest) -> HttpResponse:
        """Handle one request; an exception becomes a 500 response."""


class HttpServer:
    """An HTTP server bound to 127.0.0.1."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self.port: int = sock.getsockname()[1]

    @classmethod
    def bind(cls, listen_port: int) -> HttpServer:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", listen_port))
            sock.listen()
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return cls(sock)

    async def serve(self, handler: HttpHandler) -> None:
        """Serve requests until cancelled."""

        async def dispatch(request: web.BaseRequest) -> web.StreamResponse:
            req = HttpRequest(
                method=request.method,
                path=request.path,
                headers={key.lower(): value for key, value in request.headers.items()},
                body=await request.read(),
            )
            try:
                resp = await handler.handle(req)
            except Exception as err:  # noqa: BLE001 - every failure becomes a 500
                resp = internal_srv_err(str(err))
            return web.Response(status=resp.status, headers=resp.headers, body=resp.body)

        runner = web.ServerRunner(web.Server(dispatch))
        await runner.setup()
        try:
            site = web.SockSite(runner, self._sock)
            await site.start()
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()
            self._sock.close()


def internal_srv_err(msg: str) -> HttpResponse:
    return HttpResponse(HTTPStatus.INTERNAL_SERVER_ERROR, body=msg.encode())


def bad_request(msg: str) -> HttpResponse:
    return HttpResponse(HTTPStatus.BAD_REQUEST, body=msg.encode())


def method_not_allowed() -> HttpResponse:
    return HttpResponse(HTTPStatus.METHOD_NOT_ALLOWED)


def not_found() -> HttpResponse:
    return HttpResponse(HTTPStatus.NOT_FOUND)
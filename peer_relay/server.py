"""HTTP/WebSocket transport for the signaling relay.

This module exposes the relay over aiohttp:
- WebSocket signaling endpoint at /ws
- Health/introspection endpoint at /health
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from aiohttp import WSMsgType, web
from loguru import logger

from peer_relay.errors import HandleClosed
from peer_relay.handle import ConnectionHandle
from peer_relay.relay import SignalingRelay
from peer_relay.session import DEFAULT_MAX_PENDING_CANDIDATES


class WebSocketHandle(ConnectionHandle):
    """Connection handle backed by an aiohttp WebSocket.

    ``send`` only puts the message on an outbound queue; a writer task drains
    the queue onto the socket so the relay never waits on network I/O.
    """

    def __init__(self, ws: web.WebSocketResponse, remote: str = ""):
        super().__init__(remote)
        self.ws = ws
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, message: Dict[str, Any]) -> None:
        if self.closed or self.ws.closed:
            raise HandleClosed(f"{self!r} is closed")
        self.queue.put_nowait(message)

    def close(self) -> None:
        """Stop accepting messages; already queued ones are still written."""
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    async def run_writer(self, on_failure: Callable[["WebSocketHandle"], Any]) -> None:
        """Write queued messages until closed or the socket fails."""
        while True:
            message = await self.queue.get()
            if message is None:
                break
            try:
                await self.ws.send_json(message)
            except (ConnectionError, RuntimeError) as e:
                logger.warning(f"Write to {self!r} failed: {e}")
                self.closed = True
                on_failure(self)
                break


class RelayServer:
    """aiohttp server hosting a ``SignalingRelay``.

    Attributes:
        relay: The relay core shared by all connections.
        app: aiohttp application (created by ``create_app``).
        port: Port actually bound after ``start``.
    """

    def __init__(
        self,
        relay: Optional[SignalingRelay] = None,
        max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES,
    ):
        self.relay = relay or SignalingRelay(max_pending_candidates)
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.port: Optional[int] = None
        self.handles: set = set()

    def create_app(self) -> web.Application:
        """Build the aiohttp application with the relay routes."""
        self.app = web.Application()
        self.app.router.add_get("/ws", self._handle_websocket)
        self.app.router.add_get("/health", self._handle_health)
        self.app.on_shutdown.append(self._on_shutdown)
        return self.app

    async def start(self, host: str, port: int) -> None:
        """Start serving on ``host``:``port`` (port 0 picks a free port)."""
        self.runner = web.AppRunner(self.create_app())
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host, port)
        await self.site.start()

        addresses = self.runner.addresses
        self.port = addresses[0][1] if addresses else port
        logger.info(f"Signaling server running on ws://{host}:{self.port}/ws")

    async def stop(self) -> None:
        """Stop the server and close all connections."""
        if self.runner:
            await self.runner.cleanup()
        logger.info("Signaling server stopped")

    async def _on_shutdown(self, app: web.Application) -> None:
        for handle in list(self.handles):
            await handle.ws.close()

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health - report registered identities."""
        return web.json_response(self.relay.health())

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Handle one participant connection at /ws."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        handle = WebSocketHandle(ws, remote=request.remote or "")
        self.handles.add(handle)
        writer = asyncio.create_task(handle.run_writer(self.relay.disconnect))
        logger.info(f"Connection opened: {handle!r} (total: {len(self.handles)})")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    if not self.relay.handle_text(handle, msg.data):
                        break
                elif msg.type == WSMsgType.BINARY:
                    self.relay.reject_frame(handle, "Binary frames are not supported")
                elif msg.type == WSMsgType.ERROR:
                    logger.error(f"WebSocket error on {handle!r}: {ws.exception()}")
        finally:
            self.relay.disconnect(handle)
            handle.close()
            await writer
            self.handles.discard(handle)
            await ws.close()
            logger.info(f"Connection closed: {handle!r} (remaining: {len(self.handles)})")

        return ws


async def run_server(
    host: str,
    port: int,
    max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES,
) -> None:
    """Start the signaling server and run forever."""
    server = RelayServer(max_pending_candidates=max_pending_candidates)
    await server.start(host, port)
    try:
        await asyncio.Future()  # Run forever
    finally:
        await server.stop()

"""WebSocket client for talking to a peer-relay signaling server.

Wraps the JSON message protocol in ``peer_relay.protocol`` so callers can join,
send negotiation envelopes and read what the relay forwards to them.
"""

import asyncio
import json
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import websockets
from loguru import logger

from peer_relay import errors
from peer_relay.protocol import (
    MSG_ERROR,
    MSG_JOIN,
    MSG_JOINED,
    MSG_LEAVE,
    MSG_PEERS,
    MSG_QUERY,
    EnvelopeKind,
)

ERROR_CLASSES = {
    cls.code: cls
    for cls in (
        errors.AlreadyRegistered,
        errors.TargetNotFound,
        errors.NoActiveOffer,
        errors.NoActiveSession,
        errors.CandidateBufferFull,
        errors.NotJoined,
        errors.InvalidMessage,
    )
}


def error_from_reply(reply: Dict[str, Any]) -> errors.RelayError:
    """Rebuild the relay exception described by an ``error`` reply."""
    cls = ERROR_CLASSES.get(reply.get("code"), errors.RelayError)
    target = reply.get("target")
    if cls is errors.TargetNotFound:
        return cls(target or "")
    return cls(reply.get("message", ""), target=target)


class SignalingClient:
    """A single participant connection to the relay.

    Messages that arrive while waiting for a specific reply (e.g. during
    ``join`` or ``query``) are kept and returned by later ``recv`` calls in
    arrival order.

    Attributes:
        url: WebSocket URL of the relay, e.g. ``ws://localhost:3000/ws``.
        identity: Identity joined with, once ``join`` succeeded.
    """

    def __init__(self, url: str):
        self.url = url
        self.identity: Optional[str] = None
        self.websocket = None
        self._backlog: Deque[Dict[str, Any]] = deque()

    async def connect(self) -> "SignalingClient":
        self.websocket = await websockets.connect(self.url)
        logger.debug(f"Connected to signaling server {self.url}")
        return self

    async def close(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None

    async def __aenter__(self) -> "SignalingClient":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send(self, message: Dict[str, Any]) -> None:
        if self.websocket is None:
            raise RuntimeError("Not connected")
        await self.websocket.send(json.dumps(message))

    async def recv(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Return the next message from the relay.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first.
            websockets.exceptions.ConnectionClosed: If the relay closed the socket.
        """
        if self._backlog:
            return self._backlog.popleft()
        return await self._read(timeout)

    async def _read(self, timeout: Optional[float]) -> Dict[str, Any]:
        if self.websocket is None:
            raise RuntimeError("Not connected")
        raw = await asyncio.wait_for(self.websocket.recv(), timeout)
        return json.loads(raw)

    async def _await_reply(
        self, request: str, *types: str, timeout: Optional[float] = 10.0
    ) -> Dict[str, Any]:
        """Read until a reply to ``request`` arrives.

        The reply is a message of one of ``types`` or an error whose
        ``request`` field names ``request``. Everything else, including errors
        for earlier requests, is kept for ``recv``.
        """
        while True:
            message = await self._read(timeout)
            msg_type = message.get("type")
            if msg_type in types:
                return message
            if msg_type == MSG_ERROR and message.get("request") == request:
                return message
            self._backlog.append(message)

    async def join(self, identity: str, timeout: Optional[float] = 10.0) -> None:
        """Register under ``identity``.

        Raises:
            AlreadyRegistered: If the identity is taken by another connection.
        """
        await self.send({"type": MSG_JOIN, "identity": identity})
        reply = await self._await_reply(MSG_JOIN, MSG_JOINED, timeout=timeout)
        if reply["type"] == MSG_ERROR:
            raise error_from_reply(reply)
        self.identity = identity
        logger.info(f"Joined signaling server as {identity}")

    async def query(self, timeout: Optional[float] = 10.0) -> List[str]:
        """Return the identities of the other registered participants."""
        await self.send({"type": MSG_QUERY})
        reply = await self._await_reply(MSG_QUERY, MSG_PEERS, timeout=timeout)
        if reply["type"] == MSG_ERROR:
            raise error_from_reply(reply)
        return reply["identities"]

    async def send_offer(self, target: str, payload: Any) -> None:
        await self.send({"type": EnvelopeKind.OFFER.value, "target": target, "payload": payload})

    async def send_answer(self, target: str, payload: Any) -> None:
        await self.send({"type": EnvelopeKind.ANSWER.value, "target": target, "payload": payload})

    async def send_candidate(self, target: str, payload: Any) -> None:
        await self.send(
            {"type": EnvelopeKind.CANDIDATE.value, "target": target, "payload": payload}
        )

    async def end_call(self, target: str) -> None:
        await self.send({"type": EnvelopeKind.END_OF_CALL.value, "target": target})

    async def leave(self) -> None:
        await self.send({"type": MSG_LEAVE})
        self.identity = None

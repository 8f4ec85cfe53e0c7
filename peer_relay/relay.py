"""Signaling relay: turns inbound wire messages into registry and routing operations."""

from typing import Any, Dict, List, Optional

from loguru import logger

from peer_relay.errors import (
    HandleClosed,
    InvalidMessage,
    NotJoined,
    RelayError,
)
from peer_relay.handle import ConnectionHandle
from peer_relay.protocol import (
    MSG_JOIN,
    MSG_LEAVE,
    MSG_QUERY,
    Envelope,
    decode,
    error_message,
    extract_payload,
    joined_message,
    parse_kind,
    peers_message,
)
from peer_relay.reconciler import DisconnectReconciler
from peer_relay.registry import IdentityRegistry
from peer_relay.router import MessageRouter
from peer_relay.session import DEFAULT_MAX_PENDING_CANDIDATES, SessionTable


class SignalingRelay:
    """The relay core wired together.

    Transport code creates one ``ConnectionHandle`` per participant
    connection, feeds every received frame to ``handle_text`` (or an already
    decoded dict to ``handle_message``) and calls ``disconnect`` when the
    connection closes. Failures are reported to the sending handle as
    ``error`` messages and never affect other participants.

    Attributes:
        registry: Identity registry.
        sessions: Per-pair session table.
        router: Envelope router.
        reconciler: Disconnect cleanup.
    """

    def __init__(self, max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES):
        self.registry = IdentityRegistry()
        self.sessions = SessionTable(max_pending_candidates)
        self.router = MessageRouter(self.registry, self.sessions)
        self.reconciler = DisconnectReconciler(self.registry, self.router)
        self.router.on_delivery_failure = self.reconciler.disconnect

    def join(self, handle: ConnectionHandle, identity: str) -> None:
        """Register ``handle`` under ``identity``.

        Raises:
            InvalidMessage: If ``identity`` is not a non-empty string.
            AlreadyRegistered: On an identity or handle collision.
        """
        if not isinstance(identity, str) or not identity:
            raise InvalidMessage("join requires a non-empty identity")
        self.registry.register(identity, handle)

    def send_envelope(self, handle: ConnectionHandle, data: Dict[str, Any]) -> None:
        """Route a negotiation envelope received on ``handle``.

        The sender identity comes from the registry, not from the message.

        Raises:
            NotJoined: The handle has not joined yet.
            InvalidMessage: Unknown type or missing target.
            RelayError: Any routing or session refusal.
        """
        kind = parse_kind(data.get("type"))
        if kind is None:
            raise InvalidMessage(f"Unknown message type: {data.get('type')}")

        sender = self.registry.identity_of(handle)
        if sender is None:
            raise NotJoined("Join before sending negotiation messages")

        target = data.get("target")
        if not isinstance(target, str) or not target:
            raise InvalidMessage(f"{kind.value} requires a target")

        claimed = data.get("from")
        if claimed is not None and claimed != sender:
            logger.warning(f"Ignoring claimed sender {claimed!r} on {handle!r} ({sender})")

        self.router.route(Envelope(kind, sender, target, extract_payload(kind, data)))

    def handle_message(self, handle: ConnectionHandle, data: Dict[str, Any]) -> bool:
        """Process one decoded message from ``handle``.

        Returns:
            False if the participant asked to leave and the connection should
            be closed, True otherwise.
        """
        msg_type = data.get("type")
        if not isinstance(msg_type, str):
            msg_type = None
        try:
            if msg_type is None:
                raise InvalidMessage(f"Message type must be a string: {data.get('type')!r}")
            if msg_type == MSG_JOIN:
                identity = data.get("identity")
                self.join(handle, identity)
                self._reply(handle, joined_message(identity))
            elif msg_type == MSG_QUERY:
                me = self.registry.identity_of(handle)
                self._reply(
                    handle,
                    peers_message(i for i in self.registry.identities() if i != me),
                )
            elif msg_type == MSG_LEAVE:
                self.disconnect(handle)
                return False
            else:
                self.send_envelope(handle, data)
        except RelayError as e:
            logger.warning(f"Refused {msg_type} from {handle!r}: {e.code} {e}")
            self._reply(
                handle,
                error_message(e.code, str(e), request=msg_type, target=e.target),
            )
        return True

    def handle_text(self, handle: ConnectionHandle, text: str) -> bool:
        """Decode a JSON text frame and process it. See ``handle_message``."""
        try:
            data = decode(text)
        except ValueError as e:
            logger.warning(f"Invalid JSON from {handle!r}: {text[:100]}")
            self._reply(handle, error_message(InvalidMessage.code, f"Invalid JSON: {e}"))
            return True
        return self.handle_message(handle, data)

    def reject_frame(self, handle: ConnectionHandle, reason: str) -> None:
        """Answer a frame the transport could not hand to ``handle_text``."""
        logger.warning(f"Rejected frame from {handle!r}: {reason}")
        self._reply(handle, error_message(InvalidMessage.code, reason))

    def disconnect(self, handle: ConnectionHandle) -> Optional[str]:
        """The connection behind ``handle`` is gone (or leaving)."""
        return self.reconciler.disconnect(handle)

    def identities(self) -> List[str]:
        """Currently registered identities. Reads only the registry."""
        return self.registry.identities()

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "identities": self.identities(),
            "sessions": len(self.sessions),
        }

    def _reply(self, handle: ConnectionHandle, message: Dict[str, Any]) -> None:
        try:
            handle.send(message)
        except HandleClosed:
            logger.warning(f"Reply to {handle!r} failed: handle closed")
            self.disconnect(handle)

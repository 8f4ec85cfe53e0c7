"""Message router: resolve the target of an envelope and deliver it."""

from collections import deque
from typing import Callable, Deque, Optional

from loguru import logger

from peer_relay.errors import HandleClosed, InvalidMessage, TargetNotFound
from peer_relay.handle import ConnectionHandle
from peer_relay.protocol import Envelope, EnvelopeKind
from peer_relay.registry import IdentityRegistry
from peer_relay.session import SessionTable


class MessageRouter:
    """Routes negotiation envelopes between registered participants.

    Every envelope passes through the session table, which decides whether it
    is forwarded now, held back, or refused. Delivery itself only enqueues on
    the recipient's handle. A handle that turns out to be closed is queued and
    reported through ``on_delivery_failure`` once the session lock has been
    released.

    Attributes:
        registry: Identity registry used to resolve recipients.
        sessions: Session table that owns per-pair negotiation state.
        on_delivery_failure: Called with each handle whose ``send`` failed.
    """

    def __init__(self, registry: IdentityRegistry, sessions: SessionTable):
        self.registry = registry
        self.sessions = sessions
        self.on_delivery_failure: Optional[Callable[[ConnectionHandle], None]] = None
        self._failed: Deque[ConnectionHandle] = deque()

    def route(self, envelope: Envelope) -> None:
        """Validate and route one envelope.

        Raises:
            InvalidMessage: The envelope is addressed to its own sender.
            TargetNotFound: Nobody is registered under ``envelope.target``.
            RelayError: Any refusal raised by the session table.
        """
        if envelope.target == envelope.sender:
            raise InvalidMessage("Cannot send to yourself", target=envelope.target)

        if self.registry.lookup(envelope.target) is None:
            if envelope.kind is not EnvelopeKind.END_OF_CALL:
                logger.warning(
                    f"Target not found for {envelope.kind.value} from "
                    f"{envelope.sender}: {envelope.target}"
                )
                raise TargetNotFound(envelope.target)
            # Hanging up on someone who already left still clears the pair

        try:
            self.sessions.on_envelope(envelope, self.deliver)
        finally:
            self.flush_failures()

    def deliver(self, identity: str, envelope: Envelope) -> bool:
        """Enqueue ``envelope`` on the handle currently registered for ``identity``.

        Returns:
            True if the message was handed to a live handle.
        """
        handle = self.registry.lookup(identity)
        if handle is None:
            logger.debug(f"Dropping {envelope.kind.value} for {identity}: not registered")
            return False

        try:
            handle.send(envelope.outbound())
        except HandleClosed:
            logger.warning(
                f"Delivery of {envelope.kind.value} to {identity} failed: handle closed"
            )
            self._failed.append(handle)
            return False

        logger.debug(
            f"Forwarded {envelope.kind.value} from {envelope.sender} to {identity}"
        )
        return True

    def flush_failures(self) -> None:
        """Report handles whose delivery failed since the last flush."""
        while self._failed:
            try:
                handle = self._failed.popleft()
            except IndexError:
                break
            if self.on_delivery_failure is not None:
                self.on_delivery_failure(handle)

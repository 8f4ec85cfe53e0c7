"""Cleanup after a participant's connection goes away."""

from typing import Optional

from loguru import logger

from peer_relay.handle import ConnectionHandle
from peer_relay.registry import IdentityRegistry
from peer_relay.router import MessageRouter


class DisconnectReconciler:
    """Frees the identity of a lost handle and ends its sessions.

    Ending a session here takes the same path as an explicit end-of-call, so
    the remaining peer sees an identical notification whether the call was
    hung up or the connection dropped. Safe to call more than once for the
    same handle and concurrently with routing.
    """

    def __init__(self, registry: IdentityRegistry, router: MessageRouter):
        self.registry = registry
        self.router = router

    def disconnect(self, handle: ConnectionHandle) -> Optional[str]:
        """Reconcile the loss of ``handle``.

        Returns:
            The identity that was freed, or None if the handle was not registered.
        """
        identity = self.registry.unregister(handle)
        if identity is None:
            return None

        ended = self.router.sessions.terminate(identity, self.router.deliver)
        logger.info(f"User {identity} disconnected, ended {len(ended)} session(s)")

        # Peers whose notification failed are themselves gone
        self.router.flush_failures()
        return identity

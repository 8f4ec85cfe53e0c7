"""Identity registry: which connection is reachable under which identity."""

import threading
from typing import Dict, List, Optional

from loguru import logger

from peer_relay.errors import AlreadyRegistered
from peer_relay.handle import ConnectionHandle


class IdentityRegistry:
    """Bidirectional index between identities and connection handles.

    The forward map (identity -> handle) and reverse map (handle -> identity)
    are always mutated together under one lock, so an identity maps to at most
    one live handle and a handle is registered under at most one identity.
    The registry holds references only; it never closes a handle.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_identity: Dict[str, ConnectionHandle] = {}
        self._by_handle: Dict[ConnectionHandle, str] = {}

    def register(self, identity: str, handle: ConnectionHandle) -> None:
        """Register ``handle`` under ``identity``.

        Re-registering the same handle under the same identity is a no-op.

        Raises:
            AlreadyRegistered: If the identity belongs to another handle, or
                the handle is already registered under another identity.
        """
        with self._lock:
            current = self._by_identity.get(identity)
            if current is handle:
                return
            if current is not None:
                raise AlreadyRegistered(f"Identity already registered: {identity}")
            bound = self._by_handle.get(handle)
            if bound is not None:
                raise AlreadyRegistered(
                    f"Connection already registered as {bound}, cannot join as {identity}"
                )
            self._by_identity[identity] = handle
            self._by_handle[handle] = identity
            total = len(self._by_identity)
        logger.info(f"Registered {identity} on {handle!r} (total: {total})")

    def lookup(self, identity: str) -> Optional[ConnectionHandle]:
        with self._lock:
            return self._by_identity.get(identity)

    def identity_of(self, handle: ConnectionHandle) -> Optional[str]:
        with self._lock:
            return self._by_handle.get(handle)

    def unregister(self, handle: ConnectionHandle) -> Optional[str]:
        """Remove ``handle`` and return the identity it freed.

        Returns None if the handle was not (or no longer) registered.
        """
        with self._lock:
            identity = self._by_handle.pop(handle, None)
            if identity is None:
                return None
            del self._by_identity[identity]
            remaining = len(self._by_identity)
        logger.info(f"Unregistered {identity} (remaining: {remaining})")
        return identity

    def identities(self) -> List[str]:
        """Snapshot of the registered identities, sorted."""
        with self._lock:
            return sorted(self._by_identity)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_identity)

    def __contains__(self, identity: str) -> bool:
        with self._lock:
            return identity in self._by_identity

"""Shared fixtures for relay tests."""

import pytest

from peer_relay.errors import HandleClosed
from peer_relay.handle import ConnectionHandle
from peer_relay.relay import SignalingRelay


class RecordingHandle(ConnectionHandle):
    """In-memory handle that records everything sent to it."""

    def __init__(self, remote: str = "test"):
        super().__init__(remote)
        self.messages = []
        self.closed = False

    def send(self, message):
        if self.closed:
            raise HandleClosed(f"{self!r} is closed")
        self.messages.append(message)

    def of_type(self, msg_type):
        return [m for m in self.messages if m["type"] == msg_type]

    def take(self):
        """Return and forget everything received so far."""
        messages, self.messages = self.messages, []
        return messages


@pytest.fixture
def relay():
    return SignalingRelay()


@pytest.fixture
def connect(relay):
    """Factory: open a handle and join it under an identity."""

    def _connect(identity, target_relay=None):
        r = target_relay or relay
        handle = RecordingHandle(remote=identity)
        r.handle_message(handle, {"type": "join", "identity": identity})
        assert handle.take() == [{"type": "joined", "identity": identity}]
        return handle

    return _connect

"""peer-relay: signaling relay for two-party WebRTC calls."""

from peer_relay.relay import SignalingRelay

__version__ = "0.1.0"

__all__ = ["SignalingRelay"]

"""Wire protocol for the peer-relay signaling server.

Participants talk to the relay over a WebSocket using JSON text frames. Each
frame is an object with a ``type`` field.

Message Types
-------------

### Participant -> Relay

**join**
    Purpose: Register the connection under a logical identity
    Format: {"type": "join", "identity": "alice"}
    Reply: {"type": "joined", "identity": "alice"} or an ``error``

**offer** / **answer** / **candidate**
    Purpose: Negotiation envelope addressed to another participant
    Format: {"type": "offer", "target": "bob", "payload": {...}}
    Note: ``payload`` is opaque to the relay. The field may also be named after
    the envelope kind ("offer", "answer", "candidate"), and "ice-candidate" is
    accepted as an alias of "candidate".

**end-of-call**
    Purpose: Tear down the call with ``target``
    Format: {"type": "end-of-call", "target": "bob"}
    Note: "call-ended" is accepted as an alias. Repeating it is a no-op.

**query**
    Purpose: List the other registered identities
    Reply: {"type": "peers", "identities": ["bob", "carol"]}

**leave**
    Purpose: Graceful disconnect; same cleanup as losing the connection

### Relay -> Participant

Forwarded envelopes keep their kind and carry the true sender identity. The
``target`` field is stripped:

    {"type": "offer", "from": "alice", "payload": {...}}
    {"type": "end-of-call", "from": "alice"}

Errors are only ever sent to the participant whose request failed:

    {"type": "error", "code": "TARGET_NOT_FOUND", "message": "...",
     "request": "offer", "target": "carol"}

Message Flow
------------

1. alice -> relay: join alice          relay -> alice: joined
2. bob -> relay: join bob              relay -> bob: joined
3. alice -> relay: offer(target=bob)   relay -> bob: offer(from=alice)
4. alice -> relay: candidate x N       (held by the relay until the answer)
5. bob -> relay: answer(target=alice)  relay -> alice: answer(from=bob)
                                       relay -> bob: candidate(from=alice) x N
6. either side: end-of-call            relay -> peer: end-of-call
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

# Participant -> Relay control messages
MSG_JOIN = "join"
MSG_LEAVE = "leave"
MSG_QUERY = "query"

# Relay -> Participant control messages
MSG_JOINED = "joined"
MSG_PEERS = "peers"
MSG_ERROR = "error"

# Error codes
ERR_ALREADY_REGISTERED = "ALREADY_REGISTERED"
ERR_TARGET_NOT_FOUND = "TARGET_NOT_FOUND"
ERR_NO_ACTIVE_OFFER = "NO_ACTIVE_OFFER"
ERR_NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
ERR_CANDIDATE_BUFFER_FULL = "CANDIDATE_BUFFER_FULL"
ERR_NOT_JOINED = "NOT_JOINED"
ERR_INVALID_MESSAGE = "INVALID_MESSAGE"


class EnvelopeKind(str, Enum):
    """The four negotiation envelope kinds relayed between participants."""

    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    END_OF_CALL = "end-of-call"


# Alternate type names used by older browser clients
KIND_ALIASES = {
    "ice-candidate": EnvelopeKind.CANDIDATE,
    "call-ended": EnvelopeKind.END_OF_CALL,
}


def parse_kind(msg_type: Optional[str]) -> Optional[EnvelopeKind]:
    """Map a wire ``type`` to an envelope kind, or None for control messages."""
    if not isinstance(msg_type, str):
        return None
    if msg_type in KIND_ALIASES:
        return KIND_ALIASES[msg_type]
    try:
        return EnvelopeKind(msg_type)
    except ValueError:
        return None


@dataclass(frozen=True)
class Envelope:
    """A negotiation message in flight between two identities.

    Attributes:
        kind: Offer, answer, candidate or end-of-call.
        sender: Identity of the participant that sent it (``from`` on the wire).
        target: Identity of the intended recipient.
        payload: Opaque negotiation data; None for end-of-call.
    """

    kind: EnvelopeKind
    sender: str
    target: str
    payload: Any = None

    @property
    def pair(self) -> frozenset:
        return frozenset((self.sender, self.target))

    def outbound(self) -> Dict[str, Any]:
        """Build the message delivered to the target (no ``target`` field)."""
        message: Dict[str, Any] = {"type": self.kind.value, "from": self.sender}
        if self.kind is not EnvelopeKind.END_OF_CALL:
            message["payload"] = self.payload
        return message


def extract_payload(kind: EnvelopeKind, data: Dict[str, Any]) -> Any:
    """Pull the opaque payload out of an inbound message.

    Accepts either ``payload`` or a field named after the kind, e.g.
    {"type": "offer", "offer": {...}}.
    """
    if "payload" in data:
        return data["payload"]
    return data.get(kind.value)


def joined_message(identity: str) -> Dict[str, Any]:
    return {"type": MSG_JOINED, "identity": identity}


def peers_message(identities) -> Dict[str, Any]:
    return {"type": MSG_PEERS, "identities": list(identities)}


def error_message(
    code: str,
    message: str,
    request: Optional[str] = None,
    target: Optional[str] = None,
) -> Dict[str, Any]:
    """Build an error reply for the participant whose request failed."""
    reply: Dict[str, Any] = {"type": MSG_ERROR, "code": code, "message": message}
    if request is not None:
        reply["request"] = request
    if target is not None:
        reply["target"] = target
    return reply


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message)


def decode(text: str) -> Dict[str, Any]:
    """Decode one JSON text frame.

    Raises:
        ValueError: If the frame is not JSON or not a JSON object.
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Message must be a JSON object")
    return data

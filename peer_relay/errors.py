"""Error taxonomy for the signaling relay.

Every error raised by the relay core is scoped to a single envelope or a single
pair of identities. The relay facade catches ``RelayError`` per inbound message
and turns it into an ``error`` reply for the sender; nothing here is fatal to
the process.
"""

from typing import Optional

from peer_relay.protocol import (
    ERR_ALREADY_REGISTERED,
    ERR_CANDIDATE_BUFFER_FULL,
    ERR_INVALID_MESSAGE,
    ERR_NO_ACTIVE_OFFER,
    ERR_NO_ACTIVE_SESSION,
    ERR_NOT_JOINED,
    ERR_TARGET_NOT_FOUND,
)


class RelayError(Exception):
    """Base class for errors reported back to the sending participant.

    Attributes:
        code: Wire error code sent in the ``error`` reply.
        target: Identity the failed request was addressed to, if any.
    """

    code = ERR_INVALID_MESSAGE

    def __init__(self, message: str, target: Optional[str] = None):
        super().__init__(message)
        self.target = target


class AlreadyRegistered(RelayError):
    """Identity is bound to a different connection (or the connection to a different identity)."""

    code = ERR_ALREADY_REGISTERED


class TargetNotFound(RelayError):
    """No participant is currently registered under the target identity."""

    code = ERR_TARGET_NOT_FOUND

    def __init__(self, target: str):
        super().__init__(f"Target user not found: {target}", target=target)


class NoActiveOffer(RelayError):
    """An answer arrived for a pair with no outstanding offer from the peer."""

    code = ERR_NO_ACTIVE_OFFER


class NoActiveSession(RelayError):
    """A candidate arrived for a pair with no session."""

    code = ERR_NO_ACTIVE_SESSION


class CandidateBufferFull(RelayError):
    code = ERR_CANDIDATE_BUFFER_FULL


class NotJoined(RelayError):
    code = ERR_NOT_JOINED


class InvalidMessage(RelayError):
    code = ERR_INVALID_MESSAGE


class HandleClosed(Exception):
    """Raised by a connection handle when its transport channel is gone."""

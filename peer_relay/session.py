"""Per-pair negotiation state machine.

A session tracks one call attempt between an unordered pair of identities.
Absence of a session is the idle phase; a session that ends is removed from
the table rather than kept around in an ended state.

Transitions (pair = {sender, target}):

    offer        no session            -> create, OFFERED, forward
    offer        OFFERED / CONNECTED   -> glare tie-break, smaller identity wins
    answer       OFFERED, non-initiator -> forward, CONNECTED, flush candidates
    answer       anything else         -> NoActiveOffer
    candidate    OFFERED               -> buffer per direction
    candidate    CONNECTED             -> forward
    candidate    no session            -> NoActiveSession
    end-of-call  any session           -> forward, remove
    end-of-call  no session            -> no-op
"""

import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, FrozenSet, Iterator, List, Optional, Set

from loguru import logger

from peer_relay.errors import (
    CandidateBufferFull,
    NoActiveOffer,
    NoActiveSession,
    TargetNotFound,
)
from peer_relay.protocol import Envelope, EnvelopeKind

DEFAULT_MAX_PENDING_CANDIDATES = 256

PairKey = FrozenSet[str]

# deliver(recipient_identity, envelope) -> True if handed to a live handle
Deliver = Callable[[str, Envelope], bool]


class Phase(Enum):
    OFFERED = "offered"
    CONNECTED = "connected"


class CandidateQueue:
    """Bounded FIFO of candidate payloads for one direction of a pair.

    Candidates are held here until the answer for the pair has been applied,
    then drained in arrival order. Pushing onto a full queue refuses the
    candidate instead of dropping an older one.
    """

    def __init__(self, limit: int = DEFAULT_MAX_PENDING_CANDIDATES):
        self.limit = limit
        self._items: Deque = deque()

    def push(self, payload) -> None:
        """Append a candidate payload.

        Raises:
            CandidateBufferFull: If ``limit`` payloads are already held.
        """
        if len(self._items) >= self.limit:
            raise CandidateBufferFull(
                f"Too many pending candidates (limit {self.limit})"
            )
        self._items.append(payload)

    def drain(self) -> List:
        """Remove and return all held payloads in arrival order."""
        items = list(self._items)
        self._items.clear()
        return items

    def clear(self) -> int:
        """Discard all held payloads, returning how many were dropped."""
        count = len(self._items)
        self._items.clear()
        return count

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class Session:
    """Negotiation state for one unordered pair of identities.

    Attributes:
        pair: The two identities in the call.
        initiator: Identity whose offer is the live one.
        phase: OFFERED until the non-initiator answers, then CONNECTED.
        pending: Candidate queue per sending identity (sender -> peer).
    """

    pair: PairKey
    initiator: str
    phase: Phase = Phase.OFFERED
    max_pending: int = DEFAULT_MAX_PENDING_CANDIDATES
    pending: Dict[str, CandidateQueue] = field(default_factory=dict)

    def __post_init__(self):
        for identity in self.pair:
            self.pending[identity] = CandidateQueue(self.max_pending)

    def peer_of(self, identity: str) -> str:
        (peer,) = self.pair - {identity}
        return peer

    def queue_from(self, identity: str) -> CandidateQueue:
        return self.pending[identity]

    def describe(self) -> str:
        first, second = sorted(self.pair)
        return f"{first}<->{second}"


class _PairLocks:
    """One lock per pair key, created on demand and freed when unused.

    Entries are reference counted so a key's lock is never replaced while a
    caller is waiting on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[PairKey, list] = {}

    @contextmanager
    def hold(self, key: PairKey) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.Lock(), 0]
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]


class SessionTable:
    """All live sessions, with one serialization domain per pair.

    Every transition for a pair runs while holding that pair's lock, so
    envelopes touching the same pair are applied in arrival order while
    unrelated pairs never wait on each other. The table lock only guards
    dictionary mutation. Delivery goes through the ``deliver`` callable
    supplied by the router, which only enqueues.
    """

    def __init__(self, max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES):
        self.max_pending_candidates = max_pending_candidates
        self._table_lock = threading.Lock()
        self._sessions: Dict[PairKey, Session] = {}
        self._by_identity: Dict[str, Set[PairKey]] = {}
        self._locks = _PairLocks()
        self._transitions = {
            EnvelopeKind.OFFER: self._on_offer,
            EnvelopeKind.ANSWER: self._on_answer,
            EnvelopeKind.CANDIDATE: self._on_candidate,
            EnvelopeKind.END_OF_CALL: self._on_end_of_call,
        }

    # ------------------------------------------------------------------
    # Table bookkeeping
    # ------------------------------------------------------------------

    def _get(self, key: PairKey) -> Optional[Session]:
        with self._table_lock:
            return self._sessions.get(key)

    def _put(self, session: Session) -> None:
        with self._table_lock:
            self._sessions[session.pair] = session
            for identity in session.pair:
                self._by_identity.setdefault(identity, set()).add(session.pair)

    def _pop(self, key: PairKey) -> Optional[Session]:
        with self._table_lock:
            session = self._sessions.pop(key, None)
            if session is None:
                return None
            for identity in session.pair:
                keys = self._by_identity.get(identity)
                if keys is not None:
                    keys.discard(key)
                    if not keys:
                        del self._by_identity[identity]
            return session

    def get(self, a: str, b: str) -> Optional[Session]:
        """Return the live session between ``a`` and ``b``, if any."""
        return self._get(frozenset((a, b)))

    def sessions_for(self, identity: str) -> List[PairKey]:
        with self._table_lock:
            return list(self._by_identity.get(identity, ()))

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def on_envelope(self, envelope: Envelope, deliver: Deliver) -> None:
        """Apply one envelope to its pair's session.

        Raises:
            NoActiveOffer: Answer without a matching outstanding offer.
            NoActiveSession: Candidate for a pair with no session.
            CandidateBufferFull: Candidate queue for the direction is full.
            TargetNotFound: The target vanished before the offer was delivered.
        """
        transition = self._transitions[envelope.kind]
        with self._locks.hold(envelope.pair):
            transition(envelope, deliver)

    def _on_offer(self, envelope: Envelope, deliver: Deliver) -> None:
        session = self._get(envelope.pair)

        if session is None:
            session = Session(
                pair=envelope.pair,
                initiator=envelope.sender,
                max_pending=self.max_pending_candidates,
            )
            self._put(session)
            if not deliver(envelope.target, envelope):
                # Target left between lookup and delivery
                self._pop(envelope.pair)
                raise TargetNotFound(envelope.target)
            logger.info(f"Session {session.describe()} offered by {envelope.sender}")
            return

        if envelope.sender == session.initiator:
            logger.debug(f"Re-offer from {envelope.sender} on {session.describe()}")
        elif envelope.sender < session.initiator:
            dropped = session.queue_from(session.initiator).clear()
            logger.info(
                f"Glare on {session.describe()}: offer from {envelope.sender} "
                f"supersedes {session.initiator} ({dropped} pending candidates dropped)"
            )
            session.initiator = envelope.sender
        else:
            logger.info(
                f"Glare on {session.describe()}: offer from {envelope.sender} "
                f"discarded, {session.initiator} keeps the call"
            )
            return

        session.phase = Phase.OFFERED
        deliver(envelope.target, envelope)

    def _on_answer(self, envelope: Envelope, deliver: Deliver) -> None:
        session = self._get(envelope.pair)
        if (
            session is None
            or session.phase is not Phase.OFFERED
            or envelope.sender == session.initiator
        ):
            raise NoActiveOffer(
                f"No active offer from {envelope.target} to answer",
                target=envelope.target,
            )

        deliver(envelope.target, envelope)
        session.phase = Phase.CONNECTED
        logger.info(f"Session {session.describe()} connected")

        # Initiator's candidates first, then the answerer's; each in arrival order
        for sender in (session.initiator, envelope.sender):
            recipient = session.peer_of(sender)
            for payload in session.queue_from(sender).drain():
                deliver(
                    recipient,
                    Envelope(EnvelopeKind.CANDIDATE, sender, recipient, payload),
                )

    def _on_candidate(self, envelope: Envelope, deliver: Deliver) -> None:
        session = self._get(envelope.pair)
        if session is None:
            raise NoActiveSession(
                f"No active session with {envelope.target}",
                target=envelope.target,
            )

        if session.phase is Phase.OFFERED:
            session.queue_from(envelope.sender).push(envelope.payload)
            logger.debug(
                f"Buffered candidate {envelope.sender}->{envelope.target} "
                f"({len(session.queue_from(envelope.sender))} pending)"
            )
        else:
            deliver(envelope.target, envelope)

    def _on_end_of_call(self, envelope: Envelope, deliver: Deliver) -> None:
        session = self._pop(envelope.pair)
        if session is None:
            logger.debug(
                f"end-of-call from {envelope.sender} to {envelope.target}: no session"
            )
            return
        logger.info(f"Session {session.describe()} ended by {envelope.sender}")
        deliver(envelope.target, envelope)

    # ------------------------------------------------------------------
    # Teardown on disconnect
    # ------------------------------------------------------------------

    def terminate(self, identity: str, deliver: Deliver) -> List[PairKey]:
        """End every session involving ``identity``.

        The remaining peer of each session receives an end-of-call from
        ``identity``, exactly as if it had been sent explicitly. Only the
        sessions that existed when this was called are ended; a new session
        started for the same pair in the meantime is left alone.

        Returns:
            Pair keys of the sessions that were ended.
        """
        with self._table_lock:
            snapshot = [
                self._sessions[key] for key in self._by_identity.get(identity, ())
            ]

        ended = []
        for session in snapshot:
            with self._locks.hold(session.pair):
                if self._get(session.pair) is not session:
                    continue
                self._pop(session.pair)
                peer = session.peer_of(identity)
                logger.info(
                    f"Session {session.describe()} ended: {identity} disconnected"
                )
                deliver(peer, Envelope(EnvelopeKind.END_OF_CALL, identity, peer))
                ended.append(session.pair)
        return ended

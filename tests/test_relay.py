"""End-to-end tests of the relay core through its wire message interface."""

import json

import pytest

from peer_relay.relay import SignalingRelay
from peer_relay.session import Phase

from conftest import RecordingHandle


def send(relay, handle, msg_type, target=None, **fields):
    message = {"type": msg_type, **fields}
    if target is not None:
        message["target"] = target
    return relay.handle_message(handle, message)


class TestJoin:
    def test_join_replies_joined(self, relay):
        handle = RecordingHandle()
        assert relay.handle_message(handle, {"type": "join", "identity": "alice"})
        assert handle.messages == [{"type": "joined", "identity": "alice"}]
        assert relay.identities() == ["alice"]

    def test_duplicate_identity_rejected(self, relay, connect):
        connect("alice")
        intruder = RecordingHandle()
        relay.handle_message(intruder, {"type": "join", "identity": "alice"})

        [error] = intruder.messages
        assert error["type"] == "error"
        assert error["code"] == "ALREADY_REGISTERED"
        assert error["request"] == "join"

    def test_rejoin_same_connection_is_idempotent(self, relay, connect):
        alice = connect("alice")
        relay.handle_message(alice, {"type": "join", "identity": "alice"})
        assert alice.messages == [{"type": "joined", "identity": "alice"}]

    @pytest.mark.parametrize("identity", [None, "", 42])
    def test_invalid_identity(self, relay, identity):
        handle = RecordingHandle()
        relay.handle_message(handle, {"type": "join", "identity": identity})
        assert handle.messages[0]["code"] == "INVALID_MESSAGE"
        assert relay.identities() == []


class TestCallScenarios:
    """Full offer/answer/candidate flows between two participants."""

    def test_offer_answer_connects(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")

        send(relay, alice, "offer", "bob", payload="P1")
        assert bob.take() == [{"type": "offer", "from": "alice", "payload": "P1"}]

        send(relay, bob, "answer", "alice", payload="P2")
        assert alice.take() == [{"type": "answer", "from": "bob", "payload": "P2"}]

        assert relay.sessions.get("alice", "bob").phase is Phase.CONNECTED

    def test_offer_to_unknown_target(self, relay, connect):
        alice = connect("alice")
        send(relay, alice, "offer", "carol", payload="P1")

        assert alice.take() == [
            {
                "type": "error",
                "code": "TARGET_NOT_FOUND",
                "message": "Target user not found: carol",
                "request": "offer",
                "target": "carol",
            }
        ]
        assert len(relay.sessions) == 0

    def test_only_target_receives(self, relay, connect):
        alice, bob, carol = connect("alice"), connect("bob"), connect("carol")
        send(relay, alice, "offer", "bob", payload="P1")
        send(relay, alice, "candidate", "bob", payload="c1")
        send(relay, bob, "answer", "alice", payload="P2")

        assert carol.messages == []
        assert [m["type"] for m in bob.messages] == ["offer", "candidate"]
        assert all(m["from"] == "alice" and "target" not in m for m in bob.messages)

    def test_candidate_order_preserved_across_answer(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")
        for i in range(10):
            send(relay, alice, "candidate", "bob", payload={"n": i})
        assert bob.of_type("candidate") == []

        send(relay, bob, "answer", "alice", payload="a")
        send(relay, alice, "candidate", "bob", payload={"n": 10})

        received = [m["payload"]["n"] for m in bob.of_type("candidate")]
        assert received == list(range(11))

    def test_claimed_sender_is_ignored(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o", **{"from": "mallory"})
        assert bob.messages[0]["from"] == "alice"

    def test_glare_one_session(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, bob, "offer", "alice", payload="from-bob")
        send(relay, alice, "offer", "bob", payload="from-alice")

        assert len(relay.sessions) == 1
        assert relay.sessions.get("alice", "bob").initiator == "alice"

        send(relay, bob, "answer", "alice", payload="ans")
        assert alice.of_type("answer") == [{"type": "answer", "from": "bob", "payload": "ans"}]
        assert bob.of_type("error") == []

    def test_stray_answer_and_candidate(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, bob, "answer", "alice", payload="a")
        send(relay, bob, "candidate", "alice", payload="c")

        codes = [m["code"] for m in bob.of_type("error")]
        assert codes == ["NO_ACTIVE_OFFER", "NO_ACTIVE_SESSION"]
        assert alice.messages == []

    def test_errors_do_not_disturb_other_pairs(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        carol, dave = connect("carol"), connect("dave")
        send(relay, alice, "offer", "bob", payload="o")
        send(relay, carol, "answer", "dave", payload="bogus")
        send(relay, bob, "answer", "alice", payload="a")

        assert relay.sessions.get("alice", "bob").phase is Phase.CONNECTED
        assert carol.of_type("error")[0]["code"] == "NO_ACTIVE_OFFER"


class TestTeardown:
    def test_end_of_call_twice_notifies_once(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")
        send(relay, bob, "answer", "alice", payload="a")

        send(relay, bob, "end-of-call", "alice")
        send(relay, bob, "end-of-call", "alice")
        relay.disconnect(bob)

        assert alice.of_type("end-of-call") == [{"type": "end-of-call", "from": "bob"}]
        assert bob.of_type("error") == []
        assert len(relay.sessions) == 0

    def test_disconnect_while_connected(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")
        send(relay, bob, "answer", "alice", payload="a")
        alice.take()

        assert relay.disconnect(bob) == "bob"

        assert alice.messages == [{"type": "end-of-call", "from": "bob"}]
        assert relay.sessions.get("alice", "bob") is None
        connect("bob")
        assert relay.identities() == ["alice", "bob"]

    def test_disconnect_while_offered(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")
        relay.disconnect(alice)
        assert bob.of_type("end-of-call") == [{"type": "end-of-call", "from": "alice"}]

    def test_disconnect_is_idempotent(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")
        relay.disconnect(alice)
        assert relay.disconnect(alice) is None
        assert len(bob.of_type("end-of-call")) == 1

    def test_end_of_call_to_departed_peer_is_silent(self, relay, connect):
        alice = connect("alice")
        send(relay, alice, "end-of-call", "ghost")
        assert alice.messages == []

    def test_leave(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")

        assert relay.handle_message(alice, {"type": "leave"}) is False
        assert relay.identities() == ["bob"]
        assert bob.of_type("end-of-call") == [{"type": "end-of-call", "from": "alice"}]


class TestDeliveryFailure:
    """A closed target handle is treated like a disconnect."""

    def test_offer_to_closed_handle(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        bob.closed = True

        send(relay, alice, "offer", "bob", payload="o")

        assert alice.messages[0]["code"] == "TARGET_NOT_FOUND"
        assert relay.identities() == ["alice"]
        assert len(relay.sessions) == 0

    def test_candidate_to_closed_handle_ends_call(self, relay, connect):
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")
        send(relay, bob, "answer", "alice", payload="a")
        bob.take()
        alice.closed = True

        send(relay, bob, "candidate", "alice", payload="c")

        assert bob.messages == [{"type": "end-of-call", "from": "alice"}]
        assert relay.identities() == ["bob"]
        assert len(relay.sessions) == 0


class TestWireHandling:
    def test_not_joined(self, relay):
        handle = RecordingHandle()
        send(relay, handle, "offer", "bob", payload="o")
        assert handle.messages[0]["code"] == "NOT_JOINED"

    def test_invalid_json(self, relay):
        handle = RecordingHandle()
        assert relay.handle_text(handle, "{not json")
        assert handle.messages[0]["code"] == "INVALID_MESSAGE"

    def test_non_object_json(self, relay):
        handle = RecordingHandle()
        relay.handle_text(handle, "[1, 2]")
        assert handle.messages[0]["code"] == "INVALID_MESSAGE"

    def test_unknown_type(self, relay, connect):
        alice = connect("alice")
        send(relay, alice, "dance", "bob")
        assert alice.messages[0]["code"] == "INVALID_MESSAGE"

    def test_non_string_type(self, relay, connect):
        alice = connect("alice")
        connect("bob")
        assert send(relay, alice, ["offer"], "bob", payload="o")
        assert send(relay, alice, {"kind": "join"})
        assert [m["code"] for m in alice.messages] == ["INVALID_MESSAGE"] * 2
        assert len(relay.sessions) == 0
        assert relay.identities() == ["alice", "bob"]

    def test_reject_frame(self, relay, connect):
        alice = connect("alice")
        relay.reject_frame(alice, "Binary frames are not supported")
        assert alice.messages == [
            {
                "type": "error",
                "code": "INVALID_MESSAGE",
                "message": "Binary frames are not supported",
            }
        ]

    def test_missing_target(self, relay, connect):
        alice = connect("alice")
        send(relay, alice, "offer", payload="o")
        assert alice.messages[0]["code"] == "INVALID_MESSAGE"

    def test_send_to_self(self, relay, connect):
        alice = connect("alice")
        send(relay, alice, "offer", "alice", payload="o")
        assert alice.messages[0]["code"] == "INVALID_MESSAGE"
        assert len(relay.sessions) == 0

    def test_text_frames(self, relay):
        alice, bob = RecordingHandle(), RecordingHandle()
        relay.handle_text(alice, json.dumps({"type": "join", "identity": "alice"}))
        relay.handle_text(bob, json.dumps({"type": "join", "identity": "bob"}))
        relay.handle_text(alice, json.dumps({"type": "offer", "target": "bob", "payload": "o"}))
        assert bob.messages[-1] == {"type": "offer", "from": "alice", "payload": "o"}

    def test_legacy_field_names(self, relay, connect):
        """Older clients name the payload after the kind and use other type names."""
        alice, bob = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", offer={"sdp": "o"})
        send(relay, alice, "ice-candidate", "bob", candidate={"c": 1})
        send(relay, bob, "answer", "alice", answer={"sdp": "a"})
        send(relay, bob, "call-ended", "alice")

        assert bob.messages == [
            {"type": "offer", "from": "alice", "payload": {"sdp": "o"}},
            {"type": "candidate", "from": "alice", "payload": {"c": 1}},
        ]
        assert alice.messages == [
            {"type": "answer", "from": "bob", "payload": {"sdp": "a"}},
            {"type": "end-of-call", "from": "bob"},
        ]

    def test_query_lists_other_peers(self, relay, connect):
        alice = connect("alice")
        connect("bob")
        connect("carol")
        relay.handle_message(alice, {"type": "query"})
        assert alice.messages == [{"type": "peers", "identities": ["bob", "carol"]}]


class TestHealth:
    def test_health_snapshot(self, connect, relay):
        alice, _ = connect("alice"), connect("bob")
        send(relay, alice, "offer", "bob", payload="o")
        assert relay.health() == {
            "status": "ok",
            "identities": ["alice", "bob"],
            "sessions": 1,
        }

    def test_custom_buffer_limit(self):
        relay = SignalingRelay(max_pending_candidates=1)
        alice, bob = RecordingHandle(), RecordingHandle()
        relay.handle_message(alice, {"type": "join", "identity": "alice"})
        relay.handle_message(bob, {"type": "join", "identity": "bob"})
        send(relay, alice, "offer", "bob", payload="o")
        send(relay, alice, "candidate", "bob", payload="c0")
        send(relay, alice, "candidate", "bob", payload="c1")
        assert alice.of_type("error")[0]["code"] == "CANDIDATE_BUFFER_FULL"

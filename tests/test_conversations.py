import pytest
from sqlalchemy import select

from rendezvous.core.config import MESSAGE_MAX_LENGTH
from rendezvous.core.db import transaction
from rendezvous.core.errors import Blocked, NotFound, SelfBlock, UserNotFound, ValidationError
from rendezvous.modules.connections import service as connections
from rendezvous.modules.connections.models import BlockedUser
from rendezvous.modules.conversations import service as conversations
from rendezvous.modules.conversations.models import Conversation, Message

from .conftest import ALICE, BOB, CAROL, FakeChannel, as_user


def test_create_or_get_is_idempotent_for_the_pair(session, users):
    first = conversations.create_or_get_conversation(session, ALICE, BOB)
    second = conversations.create_or_get_conversation(session, BOB, ALICE)

    assert first.id == second.id
    assert (first.participant_1, first.participant_2) == (ALICE, BOB)
    assert len(session.execute(select(Conversation)).scalars().all()) == 1


def test_losing_creator_reads_the_winners_row(session, users, monkeypatch):
    winner = conversations.create_or_get_conversation(session, ALICE, BOB)

    real_find = conversations.find_conversation
    calls = []

    def stale_first_read(db, a, b):
        calls.append((a, b))
        return None if len(calls) == 1 else real_find(db, a, b)

    monkeypatch.setattr(conversations, "find_conversation", stale_first_read)

    loser = conversations.create_or_get_conversation(session, BOB, ALICE)
    assert loser.id == winner.id
    assert len(calls) == 2


def test_conversation_with_self_rejected(session, users):
    with pytest.raises(ValidationError):
        conversations.create_or_get_conversation(session, ALICE, ALICE)


def test_insert_updates_summary_atomically(session, users):
    convo = conversations.create_or_get_conversation(session, ALICE, BOB)

    message = conversations.insert_message_tx(session, convo.id, BOB, "On my way")

    session.expire_all()
    stored = session.get(Conversation, convo.id)
    assert stored.last_message == "On my way"
    assert stored.last_message_time == message.created_at
    assert message.sender_id == BOB


def test_caller_owned_transaction_rolls_back_everything(session, users):
    convo = conversations.create_or_get_conversation(session, ALICE, BOB)

    with pytest.raises(RuntimeError):
        with transaction(session) as tx:
            conversations.insert_message_tx(session, convo.id, ALICE, "never lands", tx=tx)
            raise RuntimeError("later write failed")

    session.expire_all()
    assert session.execute(select(Message)).scalars().all() == []
    stored = session.get(Conversation, convo.id)
    assert stored.last_message is None
    assert stored.last_message_time is None


def test_non_member_cannot_insert(session, users):
    convo = conversations.create_or_get_conversation(session, ALICE, BOB)

    with pytest.raises(NotFound):
        conversations.insert_message_tx(session, convo.id, CAROL, "let me in")
    with pytest.raises(NotFound):
        conversations.insert_message_tx(session, 9999, ALICE, "nowhere")


def test_send_message_validation(session, users):
    convo = conversations.create_or_get_conversation(session, ALICE, BOB)

    with pytest.raises(ValidationError):
        conversations.send_message(session, convo.id, ALICE, "   ")
    with pytest.raises(ValidationError):
        conversations.send_message(session, convo.id, ALICE, "x" * 2001)
    with pytest.raises(ValidationError):
        conversations.send_message(session, convo.id, ALICE, "hi", "hologram")
    with pytest.raises(ValidationError):
        conversations.send_message(session, convo.id, ALICE, "hi", "system")
    with pytest.raises(NotFound):
        conversations.send_message(session, convo.id, CAROL, "hi")


def test_messages_ordered_and_marked_read(session, users):
    convo = conversations.create_or_get_conversation(session, ALICE, BOB)
    conversations.send_message(session, convo.id, ALICE, "one")
    conversations.send_message(session, convo.id, BOB, "two")
    conversations.send_message(session, convo.id, ALICE, "three", "location", {"lat": 1.5, "lng": 2.5})

    history = conversations.get_messages(session, convo.id, BOB)
    assert [m["content"] for m in history] == ["one", "two", "three"]
    assert [m["isOwn"] for m in history] == [False, True, False]
    assert history[2]["metadata"] == {"lat": 1.5, "lng": 2.5}

    assert conversations.mark_conversation_read(session, convo.id, BOB) == 2
    assert conversations.mark_conversation_read(session, convo.id, BOB) == 0

    with pytest.raises(NotFound):
        conversations.get_messages(session, convo.id, CAROL)


def test_conversation_list_ordered_by_activity(session, users, directory):
    with_bob = conversations.create_or_get_conversation(session, ALICE, BOB)
    with_carol = conversations.create_or_get_conversation(session, ALICE, CAROL)
    conversations.send_message(session, with_carol.id, CAROL, "first")
    conversations.send_message(session, with_bob.id, BOB, "latest")

    listed = conversations.get_user_conversations(session, ALICE, directory)
    assert [c["id"] for c in listed] == [with_bob.id, with_carol.id]
    assert listed[0]["otherUser"]["username"] == "Bob"
    assert listed[0]["lastMessage"] == "latest"


# ---------- blocking ----------

def test_block_keeps_history_but_refuses_new_messages(session, users):
    convo = conversations.create_or_get_conversation(session, ALICE, BOB)
    conversations.send_message(session, convo.id, ALICE, "before the block")

    result = conversations.block_user(session, BOB, ALICE, "rude")
    assert result == {"success": True, "message": "User blocked successfully"}

    with pytest.raises(Blocked):
        conversations.send_message(session, convo.id, ALICE, "after")
    with pytest.raises(Blocked):
        conversations.insert_message_tx(session, convo.id, BOB, "after")

    history = conversations.get_messages(session, convo.id, ALICE)
    assert [m["content"] for m in history] == ["before the block"]
    assert session.get(Conversation, convo.id) is not None


def test_block_rejects_pending_connection(session, users, directory, emitter):
    connections.send_contact_request(session, ALICE, BOB, directory, emitter)

    conversations.block_user(session, BOB, ALICE)

    session.expire_all()
    assert connections.check_connection_status(session, ALICE, BOB)["status"] == "rejected"


def test_block_is_idempotent(session, users):
    conversations.block_user(session, ALICE, BOB)
    conversations.block_user(session, ALICE, BOB)

    rows = session.execute(select(BlockedUser)).scalars().all()
    assert [(r.blocker_id, r.blocked_id) for r in rows] == [(ALICE, BOB)]
    assert conversations.is_blocked_between(session, BOB, ALICE)


def test_self_block_rejected(session, users):
    with pytest.raises(SelfBlock):
        conversations.block_user(session, ALICE, ALICE)


# ---------- HTTP surface ----------

def test_chat_routes(client, users, gateway):
    opened = client.post("/v1/chat/conversations", json={"otherUserId": BOB}, headers=as_user(ALICE))
    assert opened.status_code == 200
    conversation_id = opened.json()["conversationId"]

    # bob is live in the room; the REST send is relayed after commit
    bob_live = FakeChannel("bob")
    gateway.connect(BOB, bob_live)
    gateway.registry.join_room(f"conversation_{conversation_id}", bob_live)

    sent = client.post(
        "/v1/chat/messages",
        json={"conversationId": conversation_id, "content": "Hello Bob"},
        headers=as_user(ALICE),
    )
    assert sent.status_code == 200, sent.text
    data = sent.json()["data"]
    assert data["senderId"] == ALICE
    assert bob_live.last("new_message")["id"] == data["id"]

    history = client.get(f"/v1/chat/conversations/{conversation_id}/messages", headers=as_user(BOB))
    assert [m["content"] for m in history.json()["messages"]] == ["Hello Bob"]

    stranger = client.get(f"/v1/chat/conversations/{conversation_id}/messages", headers=as_user(CAROL))
    assert stranger.status_code == 404

    read = client.post(f"/v1/chat/conversations/{conversation_id}/read", headers=as_user(BOB))
    assert read.json()["updated"] == 1

    listed = client.get("/v1/chat/conversations", headers=as_user(BOB)).json()["conversations"]
    assert listed[0]["otherUser"]["id"] == ALICE

    too_long = client.post(
        "/v1/chat/messages",
        json={"conversationId": conversation_id, "content": "x" * 2001},
        headers=as_user(ALICE),
    )
    assert too_long.status_code == 400


def test_open_conversation_requires_existing_unblocked_user(client, session, users):
    ghost = client.post("/v1/chat/conversations", json={"otherUserId": "ghost"}, headers=as_user(ALICE))
    assert ghost.status_code == 404
    assert ghost.json()["error"] == "not_found"

    conversations.block_user(session, ALICE, CAROL)
    blocked = client.post("/v1/chat/conversations", json={"otherUserId": CAROL}, headers=as_user(ALICE))
    assert blocked.status_code == 403
    assert blocked.json()["error"] == "blocked"

    reverse = client.post("/v1/chat/conversations", json={"otherUserId": ALICE}, headers=as_user(CAROL))
    assert reverse.status_code == 403

    session.expire_all()
    assert session.execute(select(Conversation)).scalars().all() == []


def test_open_conversation_service_checks(session, users, directory):
    with pytest.raises(UserNotFound):
        conversations.open_conversation(session, ALICE, "ghost", directory)
    with pytest.raises(ValidationError):
        conversations.open_conversation(session, ALICE, ALICE, directory)

    convo = conversations.open_conversation(session, ALICE, BOB, directory)
    assert conversations.open_conversation(session, BOB, ALICE, directory).id == convo.id


def test_message_length_limit_follows_config(client, users):
    convo = client.post("/v1/chat/conversations", json={"otherUserId": BOB}, headers=as_user(ALICE)).json()

    at_limit = client.post(
        "/v1/chat/messages",
        json={"conversationId": convo["conversationId"], "content": "x" * MESSAGE_MAX_LENGTH},
        headers=as_user(ALICE),
    )
    assert at_limit.status_code == 200

    over = client.post(
        "/v1/chat/messages",
        json={"conversationId": convo["conversationId"], "content": "x" * (MESSAGE_MAX_LENGTH + 1)},
        headers=as_user(ALICE),
    )
    assert over.status_code == 400

"""Message store ordering, cursors and deletion."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from huddle_chat.domain.errors import Forbidden, InvalidRequest, NotFound
from huddle_chat.domain.models import EventKind, Table
from huddle_chat.repositories import messages as message_module


@pytest.mark.asyncio
async def test_same_instant_messages_keep_append_order(core, make_group, monkeypatch):
    chat = await make_group("alice", "bob")
    instant = datetime(2024, 3, 21, 12, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(message_module, "utcnow", lambda: instant)

    sent = []
    for i in range(5):
        sender = "alice" if i % 2 == 0 else "bob"
        sent.append(await core.messages.append(chat.id, sender, f"message {i}"))

    listed = await core.messages.list_since(chat.id, 0, "bob")
    assert [m.id for m in listed] == [m.id for m in sent]
    assert [m.seq for m in listed] == [1, 2, 3, 4, 5]
    assert {m.created_at for m in listed} == {instant}


@pytest.mark.asyncio
async def test_created_at_never_moves_backwards(core, make_group, monkeypatch):
    chat = await make_group("alice")
    start = datetime(2024, 3, 21, 12, 0, tzinfo=timezone.utc)
    readings = iter([start, start - timedelta(seconds=5), start + timedelta(seconds=1)])
    monkeypatch.setattr(message_module, "utcnow", lambda: next(readings))

    first = await core.messages.append(chat.id, "alice", "one")
    second = await core.messages.append(chat.id, "alice", "two")
    third = await core.messages.append(chat.id, "alice", "three")

    assert first.created_at == second.created_at == start
    assert third.created_at > second.created_at


@pytest.mark.asyncio
async def test_list_since_is_repeatable_and_monotonic(core, make_group):
    chat = await make_group("alice", "bob")
    for i in range(6):
        await core.messages.append(chat.id, "alice", f"m{i}")

    first = await core.messages.list_since(chat.id, 2, "bob")
    second = await core.messages.list_since(chat.id, 2, "bob")
    assert [m.id for m in first] == [m.id for m in second]
    assert [m.seq for m in first] == [3, 4, 5, 6]

    later = await core.messages.list_since(chat.id, 4, "bob")
    assert all(m.seq > 4 for m in later)
    assert [m.id for m in later] == [m.id for m in first[2:]]

    page = await core.messages.list_since(chat.id, 0, "bob", limit=2)
    assert [m.seq for m in page] == [1, 2]
    assert await core.messages.list_since(chat.id, 6, "bob") == []


@pytest.mark.asyncio
async def test_list_since_rejects_negative_cursor(core, make_group):
    chat = await make_group("alice")
    with pytest.raises(InvalidRequest):
        await core.messages.list_since(chat.id, -1, "alice")


@pytest.mark.asyncio
async def test_iter_since_walks_every_page(core, make_group):
    chat = await make_group("alice")
    for i in range(7):
        await core.messages.append(chat.id, "alice", f"m{i}")

    seqs = [m.seq async for m in core.messages.iter_since(chat.id, 0, "alice", page_size=3)]
    assert seqs == [1, 2, 3, 4, 5, 6, 7]


@pytest.mark.asyncio
async def test_non_member_cannot_read_or_write(core, make_group):
    chat = await make_group("alice")
    with pytest.raises(Forbidden):
        await core.messages.append(chat.id, "mallory", "hi")
    with pytest.raises(Forbidden):
        await core.messages.list_since(chat.id, 0, "mallory")


@pytest.mark.asyncio
async def test_append_validates_input(core, make_group):
    chat = await make_group("alice")
    with pytest.raises(NotFound):
        await core.messages.append(uuid4(), "alice", "hi")
    with pytest.raises(InvalidRequest):
        await core.messages.append(chat.id, "alice", "   ")
    with pytest.raises(InvalidRequest):
        await core.messages.append(chat.id, "alice", "x" * (message_module.MAX_CONTENT_LENGTH + 1))

    message = await core.messages.append(chat.id, "alice", "  padded  ")
    assert message.content == "padded"


@pytest.mark.asyncio
async def test_reply_must_target_same_chat(core, make_group):
    chat = await make_group("alice")
    other = await make_group("alice", name="other")
    elsewhere = await core.messages.append(other.id, "alice", "over here")
    parent = await core.messages.append(chat.id, "alice", "parent")

    with pytest.raises(NotFound):
        await core.messages.append(chat.id, "alice", "reply", reply_to=elsewhere.id)
    reply = await core.messages.append(chat.id, "alice", "reply", reply_to=parent.id)
    assert reply.reply_to == parent.id


@pytest.mark.asyncio
async def test_only_sender_deletes(core, make_group, events):
    chat = await make_group("alice", "bob")
    message = await core.messages.append(chat.id, "alice", "mine")

    with pytest.raises(Forbidden) as exc:
        await core.messages.delete(message.id, "bob")
    assert exc.value.error_code == "NOT_SENDER"

    events.clear()
    await core.messages.delete(message.id, "alice")
    assert await core.messages.list_since(chat.id, 0, "alice") == []
    assert [(e.table, e.kind) for e in events] == [(Table.MESSAGES, EventKind.DELETE)]
    assert events[0].record["id"] == str(message.id)

    with pytest.raises(NotFound):
        await core.messages.delete(message.id, "alice")


@pytest.mark.asyncio
async def test_delete_all_by_sender_keeps_others(core, make_group):
    chat = await make_group("alice", "bob")
    for i in range(3):
        await core.messages.append(chat.id, "alice", f"a{i}")
        await core.messages.append(chat.id, "bob", f"b{i}")

    with pytest.raises(Forbidden):
        await core.messages.delete_all_by_sender(chat.id, "alice", "bob")

    removed = await core.messages.delete_all_by_sender(chat.id, "alice", "alice")
    assert len(removed) == 3
    remaining = await core.messages.list_since(chat.id, 0, "bob")
    assert [m.sender_id for m in remaining] == ["bob", "bob", "bob"]
    assert [m.seq for m in remaining] == [2, 4, 6]


@pytest.mark.asyncio
async def test_sending_bumps_chat_activity(core, make_group):
    chat = await make_group("alice")
    before = chat.updated_at
    message = await core.messages.append(chat.id, "alice", "hello")
    assert (await core.memberships.get_chat(chat.id)).updated_at >= max(before, message.created_at)

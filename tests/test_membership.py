"""Membership store: chats, members, roles and direct pairs."""

from uuid import uuid4

import pytest

from huddle_chat.domain.errors import CapacityExceeded, Conflict, Forbidden, InvalidRequest, NotFound
from huddle_chat.domain.models import ChatKind, EventKind, Role, Table


@pytest.mark.asyncio
async def test_direct_chat_created_once_per_pair(core):
    chat, created = await core.memberships.get_or_create_direct_chat("alice", "bob")
    again, created_again = await core.memberships.get_or_create_direct_chat("bob", "alice")

    assert created is True
    assert created_again is False
    assert again.id == chat.id
    assert chat.kind == ChatKind.DIRECT
    assert core.memberships.current_member_ids(chat.id) == frozenset({"alice", "bob"})


@pytest.mark.asyncio
async def test_direct_chat_needs_two_users(core):
    with pytest.raises(InvalidRequest):
        await core.memberships.get_or_create_direct_chat("alice", "alice")


@pytest.mark.asyncio
async def test_direct_chat_admits_nobody_else(core):
    chat, _ = await core.memberships.get_or_create_direct_chat("alice", "bob")
    with pytest.raises(CapacityExceeded):
        await core.memberships.add_member(chat.id, "carol")

    await core.memberships.remove_member(chat.id, "bob")
    with pytest.raises(Forbidden):
        await core.memberships.add_member(chat.id, "carol")


@pytest.mark.asyncio
async def test_direct_chat_restores_participant_who_left(core):
    chat, _ = await core.memberships.get_or_create_direct_chat("alice", "bob")
    await core.memberships.remove_member(chat.id, "bob")
    assert core.memberships.current_member_ids(chat.id) == frozenset({"alice"})

    restored, created = await core.memberships.get_or_create_direct_chat("alice", "bob")
    assert not created
    assert restored.id == chat.id
    assert core.memberships.current_member_ids(chat.id) == frozenset({"alice", "bob"})


@pytest.mark.asyncio
async def test_duplicate_membership_conflicts(core, make_group):
    chat = await make_group("alice", "bob")
    with pytest.raises(Conflict):
        await core.memberships.add_member(chat.id, "bob")


@pytest.mark.asyncio
async def test_group_capacity_enforced(core, make_group):
    chat = await make_group("alice", "bob")
    with pytest.raises(CapacityExceeded):
        await core.memberships.add_member(chat.id, "carol", capacity=2)


@pytest.mark.asyncio
async def test_unknown_chat_not_found(core):
    with pytest.raises(NotFound):
        await core.memberships.get_chat(uuid4())
    with pytest.raises(NotFound):
        await core.memberships.add_member(uuid4(), "alice")


@pytest.mark.asyncio
async def test_removing_non_member_not_found(core, make_group):
    chat = await make_group("alice")
    with pytest.raises(NotFound):
        await core.memberships.remove_member(chat.id, "mallory")


@pytest.mark.asyncio
async def test_last_admin_leaving_promotes_oldest_member(core, make_group, events):
    chat = await make_group("alice", "bob", "carol")
    events.clear()

    await core.memberships.remove_member(chat.id, "alice")

    members = {m.user_id: m.role for m in await core.memberships.list_members(chat.id)}
    assert members == {"bob": Role.ADMIN, "carol": Role.MEMBER}
    kinds = [(e.table, e.kind, e.record["user_id"]) for e in events]
    assert kinds == [
        (Table.CHAT_MEMBERS, EventKind.DELETE, "alice"),
        (Table.CHAT_MEMBERS, EventKind.UPDATE, "bob"),
    ]


@pytest.mark.asyncio
async def test_cannot_demote_last_admin(core, make_group):
    chat = await make_group("alice", "bob")
    with pytest.raises(Conflict):
        await core.memberships.set_role(chat.id, "alice", Role.MEMBER)

    await core.memberships.set_role(chat.id, "bob", Role.ADMIN)
    demoted = await core.memberships.set_role(chat.id, "alice", Role.MEMBER)
    assert demoted.role == Role.MEMBER


@pytest.mark.asyncio
async def test_roles_do_not_apply_to_direct_chats(core):
    chat, _ = await core.memberships.get_or_create_direct_chat("alice", "bob")
    with pytest.raises(InvalidRequest):
        await core.memberships.set_role(chat.id, "bob", Role.ADMIN)


@pytest.mark.asyncio
async def test_removal_event_names_departing_user(core, make_group, events):
    chat = await make_group("alice", "bob")
    events.clear()

    await core.memberships.remove_member(chat.id, "bob")

    removal = events[0]
    assert removal.kind == EventKind.DELETE
    assert removal.extra_recipients == ["bob"]
    assert removal.audience == ["bob"]


@pytest.mark.asyncio
async def test_purge_user_leaves_every_chat(core, make_group):
    group = await make_group("alice", "bob")
    direct, _ = await core.memberships.get_or_create_direct_chat("bob", "carol")

    removed = await core.memberships.purge_user("bob")

    assert removed == 2
    assert "bob" not in core.memberships.current_member_ids(group.id)
    assert "bob" not in core.memberships.current_member_ids(direct.id)
    assert await core.memberships.list_chats("bob") == []

"""Friend requests, friendships and the direct chat they open."""

import asyncio

import pytest

from huddle_chat.domain.errors import Conflict, Forbidden, InvalidRequest, NotFound
from huddle_chat.domain.models import RequestStatus


async def make_profiles(core, *user_ids):
    for user_id in user_ids:
        await core.accounts.create(user_id, user_id, user_id.title())


@pytest.mark.asyncio
async def test_accepting_creates_friendship_and_direct_chat(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")

    outcome = await core.friends.respond(request.id, "bob", accept=True)

    assert outcome.request.status == RequestStatus.ACCEPTED
    assert {outcome.friendship.user1_id, outcome.friendship.user2_id} == {"alice", "bob"}
    assert core.memberships.current_member_ids(outcome.chat_id) == frozenset({"alice", "bob"})
    chat, created = await core.chats.get_or_create_direct_chat("bob", "alice")
    assert not created
    assert chat.id == outcome.chat_id


@pytest.mark.asyncio
async def test_accept_is_idempotent(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")

    first = await core.friends.respond(request.id, "bob", accept=True)
    second = await core.friends.respond(request.id, "bob", accept=True)

    assert first.friendship.id == second.friendship.id
    assert first.chat_id == second.chat_id
    assert len(await core.friends.list_friends("alice")) == 1
    assert len(await core.chats.list_chats("alice")) == 1


@pytest.mark.asyncio
async def test_concurrent_accepts_make_one_friendship(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")

    outcomes = await asyncio.gather(*[core.friends.respond(request.id, "bob", accept=True) for _ in range(5)])

    assert len({o.friendship.id for o in outcomes}) == 1
    assert len({o.chat_id for o in outcomes}) == 1
    assert len(await core.friends.list_friends("bob")) == 1


@pytest.mark.asyncio
async def test_only_receiver_answers(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")
    with pytest.raises(Forbidden):
        await core.friends.respond(request.id, "alice", accept=True)


@pytest.mark.asyncio
async def test_settled_answer_cannot_change(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")
    await core.friends.respond(request.id, "bob", accept=False)

    with pytest.raises(Conflict):
        await core.friends.respond(request.id, "bob", accept=True)
    assert await core.friends.list_friends("bob") == []


@pytest.mark.asyncio
async def test_declined_request_can_be_sent_again(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")
    await core.friends.respond(request.id, "bob", accept=False)

    reopened = await core.friends.send_request("alice", "bob")

    assert reopened.id == request.id
    assert reopened.status == RequestStatus.PENDING
    assert [r.id for r in await core.friends.list_requests("bob")] == [request.id]


@pytest.mark.asyncio
async def test_duplicate_requests_conflict(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")

    with pytest.raises(Conflict):
        await core.friends.send_request("alice", "bob")
    with pytest.raises(Conflict) as exc:
        await core.friends.send_request("bob", "alice")
    assert exc.value.details["request_id"] == str(request.id)

    await core.friends.respond(request.id, "bob", accept=True)
    with pytest.raises(Conflict) as exc:
        await core.friends.send_request("bob", "alice")
    assert exc.value.error_code == "ALREADY_FRIENDS"


@pytest.mark.asyncio
async def test_request_validation(core):
    await make_profiles(core, "alice")
    with pytest.raises(InvalidRequest):
        await core.friends.send_request("alice", "alice")
    with pytest.raises(NotFound):
        await core.friends.send_request("alice", "ghost")


@pytest.mark.asyncio
async def test_cancel_request(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")

    with pytest.raises(Forbidden):
        await core.friends.cancel_request(request.id, "bob")
    await core.friends.cancel_request(request.id, "alice")

    assert await core.friends.list_requests("bob") == []
    with pytest.raises(NotFound):
        await core.friends.respond(request.id, "bob", accept=True)


@pytest.mark.asyncio
async def test_removed_friend_can_be_befriended_again(core):
    await make_profiles(core, "alice", "bob")
    request = await core.friends.send_request("alice", "bob")
    await core.friends.respond(request.id, "bob", accept=True)

    await core.friends.remove_friend("bob", "alice")
    assert await core.friends.list_friends("alice") == []
    with pytest.raises(NotFound):
        await core.friends.remove_friend("bob", "alice")

    again = await core.friends.send_request("bob", "alice")
    assert again.status == RequestStatus.PENDING


@pytest.mark.asyncio
async def test_both_parties_see_request_events(core):
    await make_profiles(core, "alice", "bob")
    alice = core.dispatcher.connect("alice")
    bob = core.dispatcher.connect("bob")
    core.dispatcher.subscribe_inbox(alice)
    core.dispatcher.subscribe_inbox(bob)

    request = await core.friends.send_request("alice", "bob")

    for subscriber in (alice, bob):
        received = subscriber.drain()
        assert [e.record["id"] for e in received] == [str(request.id)]

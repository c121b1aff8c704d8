"""Test suite for concurrent operations."""

import asyncio
from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient

from huddle_chat.api.app import create_app
from huddle_chat.config import Settings
from huddle_chat.domain.errors import CapacityExceeded
from huddle_chat.domain.models import Role


@asynccontextmanager
async def running():
    app = create_app(Settings(rate_limit=10_000, log_json=False, log_level="WARNING"))
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client


@pytest.mark.asyncio
async def test_concurrent_direct_chat_creation(core):
    """Many callers racing for the same pair all get one chat."""
    results = await asyncio.gather(
        *[
            core.chats.get_or_create_direct_chat(*(("alice", "bob") if i % 2 else ("bob", "alice")))
            for i in range(20)
        ]
    )

    assert len({chat.id for chat, _ in results}) == 1
    assert sum(created for _, created in results) == 1
    assert len(await core.chats.list_chats("alice")) == 1
    assert len(await core.chats.list_members("bob", results[0][0].id)) == 2


@pytest.mark.asyncio
async def test_concurrent_joins_respect_capacity(core, make_group):
    chat = await make_group("alice")
    results = await asyncio.gather(
        *[
            core.memberships.add_member(chat.id, f"user{i}", Role.MEMBER, capacity=20)
            for i in range(30)
        ],
        return_exceptions=True,
    )

    joined = [r for r in results if not isinstance(r, Exception)]
    assert len(joined) == 19
    assert all(isinstance(r, CapacityExceeded) for r in results if isinstance(r, Exception))
    assert len(core.memberships.current_member_ids(chat.id)) == 20


@pytest.mark.asyncio
async def test_concurrent_messages():
    """Test sending messages concurrently to the same chat."""
    async with running() as client:
        response = await client.post("/chats/direct", json={"user_id": "bob"}, headers={"X-User-Id": "alice"})
        chat_id = response.json()["chat"]["id"]

        responses = await asyncio.gather(
            *[
                client.post(
                    f"/chats/{chat_id}/messages",
                    json={"content": f"message {i}"},
                    headers={"X-User-Id": "alice" if i % 2 else "bob"},
                )
                for i in range(30)
            ]
        )

        assert all(r.status_code == 200 for r in responses)
        assert sorted(r.json()["seq"] for r in responses) == list(range(1, 31))

        response = await client.get(f"/chats/{chat_id}/messages", headers={"X-User-Id": "alice"})
        all_messages = response.json()
        assert [m["seq"] for m in all_messages] == list(range(1, 31))
        timestamps = [m["created_at"] for m in all_messages]
        assert timestamps == sorted(timestamps)


@pytest.mark.asyncio
async def test_concurrent_chats_progress_independently():
    """Writes to different chats are serialized per chat only."""
    async with running() as client:
        chat_ids = []
        for friend in ("bob", "carol", "dave", "erin", "frank"):
            response = await client.post("/chats/direct", json={"user_id": friend}, headers={"X-User-Id": "alice"})
            chat_ids.append(response.json()["chat"]["id"])

        async def burst(chat_id: str):
            for i in range(10):
                response = await client.post(
                    f"/chats/{chat_id}/messages", json={"content": f"m{i}"}, headers={"X-User-Id": "alice"}
                )
                assert response.status_code == 200

        await asyncio.gather(*[burst(chat_id) for chat_id in chat_ids])

        for chat_id in chat_ids:
            response = await client.get(f"/chats/{chat_id}/messages", headers={"X-User-Id": "alice"})
            assert [m["content"] for m in response.json()] == [f"m{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_concurrent_error_handling():
    """Test error handling under concurrent load."""
    async with running() as client:
        bad_ids = [f"00000000-0000-0000-0000-{i:012d}" for i in range(5)]
        responses = await asyncio.gather(
            *[client.get(f"/chats/{chat_id}", headers={"X-User-Id": "alice"}) for chat_id in bad_ids]
        )
        assert all(r.status_code == 404 for r in responses)


@pytest.mark.asyncio
async def test_membership_changes_during_fanout(core, make_group):
    """Members leaving while messages flow never see later messages."""
    chat = await make_group("alice", *[f"user{i}" for i in range(10)])
    subscribers = {}
    for i in range(10):
        subscribers[f"user{i}"] = core.dispatcher.connect(f"user{i}")
        core.dispatcher.subscribe_chat(subscribers[f"user{i}"], chat.id)

    async def leave(user_id: str):
        await asyncio.sleep(0)
        await core.chats.leave_chat(user_id, chat.id)

    async def chatter():
        for i in range(20):
            await core.chats.send_message(chat.id, "alice", f"m{i}")
            await asyncio.sleep(0)

    await asyncio.gather(chatter(), *[leave(f"user{i}") for i in range(0, 10, 2)])

    for user_id, subscriber in subscribers.items():
        received = subscriber.drain()
        tables = [e.table.value for e in received]
        if user_id in core.memberships.current_member_ids(chat.id):
            assert tables.count("messages") == 20
        else:
            own_removal = [
                i
                for i, e in enumerate(received)
                if e.table.value == "chat_members" and e.record["user_id"] == user_id
            ]
            assert len(own_removal) == 1
            assert own_removal[0] == len(received) - 1

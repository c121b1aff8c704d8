"""Test suite for the API endpoints."""

from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient

from huddle_chat.api.app import create_app
from huddle_chat.config import Settings


@asynccontextmanager
async def running(settings: Settings = None):
    """Start an app with its lifespan and yield a client bound to it."""
    app = create_app(settings or Settings(log_json=False, log_level="WARNING"))
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


async def befriend(client: AsyncClient, sender: str, receiver: str) -> str:
    """Make two profiled users friends and return their direct chat id."""
    for user_id in (sender, receiver):
        response = await client.put(
            "/profiles/me", json={"username": user_id, "full_name": user_id.title()}, headers=as_user(user_id)
        )
        assert response.status_code == 200
    response = await client.post("/friend-requests", json={"receiver_id": receiver}, headers=as_user(sender))
    assert response.status_code == 200
    request_id = response.json()["id"]
    response = await client.post(f"/friend-requests/{request_id}/accept", headers=as_user(receiver))
    assert response.status_code == 200
    return response.json()["chat_id"]


@pytest.mark.asyncio
async def test_friend_flow_opens_direct_chat():
    """Test the accept scenario end to end."""
    async with running() as client:
        chat_id = await befriend(client, "alice", "bob")

        response = await client.get("/chats", headers=as_user("alice"))
        assert [c["id"] for c in response.json()] == [chat_id]

        response = await client.post("/chats/direct", json={"user_id": "alice"}, headers=as_user("bob"))
        assert response.json()["created"] is False
        assert response.json()["chat"]["id"] == chat_id

        response = await client.get("/friends", headers=as_user("bob"))
        assert len(response.json()) == 1


@pytest.mark.asyncio
async def test_messages_with_cursor():
    """Test sending and listing messages with a cursor."""
    async with running() as client:
        chat_id = await befriend(client, "alice", "bob")

        sent = []
        for i, sender in enumerate(["alice", "bob", "alice"]):
            response = await client.post(
                f"/chats/{chat_id}/messages", json={"content": f"hello {i}"}, headers=as_user(sender)
            )
            assert response.status_code == 200
            sent.append(response.json())
        assert [m["seq"] for m in sent] == [1, 2, 3]

        response = await client.get(f"/chats/{chat_id}/messages", headers=as_user("bob"))
        assert [m["content"] for m in response.json()] == ["hello 0", "hello 1", "hello 2"]

        response = await client.get(f"/chats/{chat_id}/messages?cursor=1&limit=1", headers=as_user("bob"))
        assert [m["seq"] for m in response.json()] == [2]

        response = await client.post(
            f"/chats/{chat_id}/messages",
            json={"content": "re", "reply_to": sent[0]["id"]},
            headers=as_user("bob"),
        )
        assert response.json()["reply_to"] == sent[0]["id"]


@pytest.mark.asyncio
async def test_error_handling():
    """Test error handling in various scenarios."""
    async with running() as client:
        chat_id = await befriend(client, "alice", "bob")

        # Missing identity
        response = await client.get("/chats")
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHENTICATED"

        # Outsider
        response = await client.get(f"/chats/{chat_id}/messages", headers=as_user("mallory"))
        assert response.status_code == 403
        assert response.json()["error_code"] == "NOT_MEMBER"

        # Unknown chat
        response = await client.get(
            "/chats/00000000-0000-0000-0000-000000000000", headers=as_user("alice")
        )
        assert response.status_code == 404

        # Invalid chat ID format
        response = await client.get("/chats/invalid-uuid", headers=as_user("alice"))
        assert response.status_code == 422

        # Missing content
        response = await client.post(f"/chats/{chat_id}/messages", json={}, headers=as_user("alice"))
        assert response.status_code == 422

        # Blank content
        response = await client.post(f"/chats/{chat_id}/messages", json={"content": "  "}, headers=as_user("alice"))
        assert response.status_code == 400

        # Duplicate request
        response = await client.post("/friend-requests", json={"receiver_id": "bob"}, headers=as_user("alice"))
        assert response.status_code == 409
        assert response.json()["error_code"] == "ALREADY_FRIENDS"

        # Negative cursor
        response = await client.get(f"/chats/{chat_id}/messages?cursor=-1", headers=as_user("alice"))
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_delete_messages():
    async with running() as client:
        chat_id = await befriend(client, "alice", "bob")
        ids = []
        for sender in ("alice", "bob", "alice"):
            response = await client.post(f"/chats/{chat_id}/messages", json={"content": "x"}, headers=as_user(sender))
            ids.append(response.json()["id"])

        response = await client.delete(f"/messages/{ids[0]}", headers=as_user("bob"))
        assert response.status_code == 403

        response = await client.delete(f"/messages/{ids[0]}", headers=as_user("alice"))
        assert response.status_code == 200

        response = await client.delete(f"/chats/{chat_id}/messages/mine", headers=as_user("alice"))
        assert [m["id"] for m in response.json()] == [ids[2]]

        response = await client.get(f"/chats/{chat_id}/messages", headers=as_user("alice"))
        assert [m["id"] for m in response.json()] == [ids[1]]


@pytest.mark.asyncio
async def test_group_management():
    async with running() as client:
        await client.put("/profiles/me", json={"username": "bob", "full_name": "Bob"}, headers=as_user("bob"))
        response = await client.post(
            "/chats/groups", json={"name": "team", "invitees": ["nobody"]}, headers=as_user("alice")
        )
        assert response.status_code == 404

        response = await client.post(
            "/chats/groups", json={"name": "team", "invitees": ["bob"]}, headers=as_user("alice")
        )
        assert response.status_code == 200
        chat_id = response.json()["chat"]["id"]
        invitation_id = response.json()["invitations"][0]["id"]

        response = await client.get("/invitations", headers=as_user("bob"))
        assert [i["id"] for i in response.json()] == [invitation_id]

        response = await client.post(f"/invitations/{invitation_id}/accept", headers=as_user("bob"))
        assert response.json()["status"] == "accepted"

        response = await client.post(f"/chats/{chat_id}/members", json={"user_id": "carol"}, headers=as_user("bob"))
        assert response.status_code == 403

        response = await client.put(
            f"/chats/{chat_id}/members/bob/role", json={"role": "admin"}, headers=as_user("alice")
        )
        assert response.json()["role"] == "admin"

        response = await client.patch(f"/chats/{chat_id}", json={"name": "renamed"}, headers=as_user("bob"))
        assert response.json()["name"] == "renamed"

        response = await client.post(f"/chats/{chat_id}/leave", headers=as_user("alice"))
        assert response.status_code == 200

        response = await client.get(f"/chats/{chat_id}/members", headers=as_user("bob"))
        assert [(m["user_id"], m["role"]) for m in response.json()] == [("bob", "admin")]


@pytest.mark.asyncio
async def test_media_upload_and_download():
    async with running() as client:
        chat_id = await befriend(client, "alice", "bob")

        response = await client.post(
            f"/chats/{chat_id}/media?file_name=notes.txt",
            content=b"some notes",
            headers={**as_user("alice"), "Content-Type": "text/plain"},
        )
        assert response.status_code == 200
        message = response.json()
        assert message["message_type"] == "file"
        assert message["file_size"] == 10

        response = await client.get(message["content"])
        assert response.status_code == 200
        assert response.content == b"some notes"
        assert response.headers["content-type"].startswith("text/plain")

        response = await client.get("/media/missing")
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_typing_endpoints():
    async with running() as client:
        chat_id = await befriend(client, "alice", "bob")

        response = await client.put(f"/chats/{chat_id}/typing", json={"is_typing": True}, headers=as_user("alice"))
        assert response.json()["user_ids"] == []

        response = await client.get(f"/chats/{chat_id}/typing", headers=as_user("bob"))
        assert response.json()["user_ids"] == ["alice"]

        response = await client.get(f"/chats/{chat_id}/typing", headers=as_user("mallory"))
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_profiles():
    async with running() as client:
        await client.put("/profiles/me", json={"username": "alice", "full_name": "Alice"}, headers=as_user("u1"))
        await client.put("/profiles/me", json={"username": "alicia", "full_name": "Alicia"}, headers=as_user("u2"))

        response = await client.put("/profiles/me", json={"username": "ALICE", "full_name": "X"}, headers=as_user("u3"))
        assert response.status_code == 409

        response = await client.get("/profiles?q=ali", headers=as_user("u1"))
        assert [p["id"] for p in response.json()] == ["u2"]

        response = await client.patch("/profiles/me", json={"bio": "hi"}, headers=as_user("u1"))
        assert response.json()["bio"] == "hi"

        response = await client.delete("/profiles/me", headers=as_user("u2"))
        assert response.status_code == 200
        response = await client.get("/profiles/u2", headers=as_user("u1"))
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_rate_limiting():
    async with running(Settings(rate_limit=3, log_json=False, log_level="WARNING")) as client:
        responses = [await client.get("/chats", headers=as_user("alice")) for _ in range(4)]
        assert [r.status_code for r in responses] == [200, 200, 200, 429]
        assert [r.headers.get("x-ratelimit-remaining") for r in responses[:3]] == ["2", "1", "0"]

        response = await client.get("/chats", headers=as_user("alice"))
        assert response.json()["error_code"] == "RATE_LIMITED"
        assert "retry-after" in response.headers

        # limits are per caller
        response = await client.get("/chats", headers=as_user("bob"))
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_health_and_metrics():
    async with running() as client:
        response = await client.get("/health")
        assert response.json()["status"] == "ok"

        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "requests_total" in response.text

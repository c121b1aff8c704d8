"""Async HTTP client for the chat API."""

import asyncio
import random
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

import httpx
from structlog import get_logger

from ..domain.errors import ChatError, TransientIO, error_from_dict
from ..domain.models import Chat, FriendRequest, FriendRequestOutcome, GroupInvitation, Membership, Message, Profile

logger = get_logger()

RETRYABLE_STATUS = frozenset({502, 503, 504})


class ChatClient:
    """Thin wrapper over ``httpx.AsyncClient`` speaking the chat API.

    Transport failures, 502/503/504 responses and any error whose rebuilt
    ``ChatError`` is ``retryable`` are retried with capped exponential backoff
    and jitter, then surface as ``TransientIO``. Every other error response is
    rebuilt into the matching ``ChatError`` subclass.

    Retried writes can be applied twice if the first attempt committed before
    its response was lost; ``MessageSync`` dedupes by message id.
    """

    def __init__(
        self,
        user_id: str,
        base_url: str = "http://localhost:8000",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 3,
        backoff: float = 0.2,
        backoff_max: float = 5.0,
        timeout: float = 10.0,
    ) -> None:
        self.user_id = user_id
        self.max_retries = max_retries
        self.backoff = backoff
        self.backoff_max = backoff_max
        self._http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
            headers={"X-User-Id": user_id},
        )

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _delay(self, attempt: int) -> float:
        delay = min(self.backoff_max, self.backoff * (2 ** attempt))
        return delay * (0.5 + random.random() / 2)

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request, retrying transient failures. Returns decoded JSON."""
        attempt = 0
        while True:
            try:
                response = await self._http.request(method, path, **kwargs)
            except httpx.TransportError as e:
                failure: Union[str, int] = type(e).__name__
            else:
                try:
                    return self._decode(response)
                except ChatError as e:
                    if response.status_code not in RETRYABLE_STATUS and not e.retryable:
                        raise
                failure = response.status_code

            if attempt >= self.max_retries:
                logger.error("chat_request_failed", method=method, path=path, failure=failure, attempts=attempt + 1)
                raise TransientIO(
                    f"{method} {path} failed after {attempt + 1} attempts",
                    details={"failure": failure},
                )
            delay = self._delay(attempt)
            logger.warning("chat_request_retry", method=method, path=path, failure=failure, delay=delay)
            await asyncio.sleep(delay)
            attempt += 1

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.is_success:
            return response.json() if response.content else None
        try:
            body = response.json()
        except ValueError:
            raise ChatError(f"HTTP {response.status_code}: {response.text}")
        if isinstance(body, dict) and "error" in body:
            raise error_from_dict(body)
        raise ChatError(f"HTTP {response.status_code}", details={"body": body})

    # Profiles

    async def create_profile(self, username: str, full_name: str, **fields: Any) -> Profile:
        body = {"username": username, "full_name": full_name, **fields}
        return Profile.model_validate(await self.request("PUT", "/profiles/me", json=body))

    async def search_profiles(self, query: str) -> List[Profile]:
        return [Profile.model_validate(p) for p in await self.request("GET", "/profiles", params={"q": query})]

    # Friends

    async def send_friend_request(self, receiver_id: str) -> FriendRequest:
        data = await self.request("POST", "/friend-requests", json={"receiver_id": receiver_id})
        return FriendRequest.model_validate(data)

    async def respond_to_friend_request(self, request_id: UUID, accept: bool) -> FriendRequestOutcome:
        action = "accept" if accept else "decline"
        data = await self.request("POST", f"/friend-requests/{request_id}/{action}")
        return FriendRequestOutcome.model_validate(data)

    async def list_friend_requests(self) -> List[FriendRequest]:
        return [FriendRequest.model_validate(r) for r in await self.request("GET", "/friend-requests")]

    # Chats

    async def list_chats(self) -> List[Chat]:
        return [Chat.model_validate(c) for c in await self.request("GET", "/chats")]

    async def get_or_create_direct_chat(self, user_id: str) -> Chat:
        data = await self.request("POST", "/chats/direct", json={"user_id": user_id})
        return Chat.model_validate(data["chat"])

    async def create_group(self, name: str, invitees: Optional[List[str]] = None, **fields: Any) -> Chat:
        body: Dict[str, Any] = {"name": name, "invitees": invitees or [], **fields}
        data = await self.request("POST", "/chats/groups", json=body)
        return Chat.model_validate(data["chat"])

    async def list_members(self, chat_id: UUID) -> List[Membership]:
        return [Membership.model_validate(m) for m in await self.request("GET", f"/chats/{chat_id}/members")]

    async def leave_chat(self, chat_id: UUID) -> Membership:
        return Membership.model_validate(await self.request("POST", f"/chats/{chat_id}/leave"))

    async def list_invitations(self) -> List[GroupInvitation]:
        return [GroupInvitation.model_validate(i) for i in await self.request("GET", "/invitations")]

    async def respond_to_invitation(self, invitation_id: UUID, accept: bool) -> GroupInvitation:
        action = "accept" if accept else "decline"
        return GroupInvitation.model_validate(await self.request("POST", f"/invitations/{invitation_id}/{action}"))

    # Messages

    async def send_message(self, chat_id: UUID, content: str, reply_to: Optional[UUID] = None) -> Message:
        body: Dict[str, Any] = {"content": content}
        if reply_to is not None:
            body["reply_to"] = str(reply_to)
        return Message.model_validate(await self.request("POST", f"/chats/{chat_id}/messages", json=body))

    async def send_media(
        self, chat_id: UUID, data: bytes, content_type: str, file_name: Optional[str] = None
    ) -> Message:
        params = {"file_name": file_name} if file_name else None
        response = await self.request(
            "POST",
            f"/chats/{chat_id}/media",
            content=data,
            params=params,
            headers={"Content-Type": content_type},
        )
        return Message.model_validate(response)

    async def list_messages(self, chat_id: UUID, cursor: int = 0, limit: Optional[int] = None) -> List[Message]:
        params: Dict[str, Any] = {"cursor": cursor}
        if limit is not None:
            params["limit"] = limit
        return [
            Message.model_validate(m)
            for m in await self.request("GET", f"/chats/{chat_id}/messages", params=params)
        ]

    async def delete_message(self, message_id: UUID) -> Message:
        return Message.model_validate(await self.request("DELETE", f"/messages/{message_id}"))

    async def delete_my_messages(self, chat_id: UUID) -> List[Message]:
        return [Message.model_validate(m) for m in await self.request("DELETE", f"/chats/{chat_id}/messages/mine")]

    # Typing

    async def set_typing(self, chat_id: UUID, is_typing: bool) -> List[str]:
        data = await self.request("PUT", f"/chats/{chat_id}/typing", json={"is_typing": is_typing})
        return data["user_ids"]

    async def list_typing(self, chat_id: UUID) -> List[str]:
        return (await self.request("GET", f"/chats/{chat_id}/typing"))["user_ids"]

"""In-memory membership and profile stores."""

import asyncio
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple
from uuid import UUID

import structlog

from ..domain.errors import CapacityExceeded, Conflict, Forbidden, InvalidRequest, NotFound
from ..domain.models import (
    ChangeEvent,
    Chat,
    ChatKind,
    EventKind,
    Membership,
    Profile,
    Role,
    Table,
    utcnow,
)
from .base import MembershipStore, ProfileStore

logger = structlog.get_logger()


def pair_key(user_a: str, user_b: str) -> Tuple[str, str]:
    """Order-independent key for a user pair."""
    return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


class InMemoryMembershipStore(MembershipStore):
    """Chats and memberships held in process memory.

    The per-user chat index and the direct-pair index are maintained inside the
    same critical section as the membership rows, so no reader ever sees them
    disagree with ``_members``.
    """

    def __init__(self) -> None:
        super().__init__()
        self._chats: Dict[UUID, Chat] = {}
        # chat id -> user id -> membership, in join order
        self._members: Dict[UUID, Dict[str, Membership]] = {}
        self._chats_by_user: Dict[str, Set[UUID]] = {}
        self._direct_pairs: Dict[Tuple[str, str], UUID] = {}
        self._pair_by_chat: Dict[UUID, Tuple[str, str]] = {}
        self._lock = asyncio.Lock()
        logger.info("membership_store_initialized")

    def lookup_chat(self, chat_id: UUID) -> Optional[Chat]:
        """Get a chat without taking the lock."""
        return self._chats.get(chat_id)

    def lookup_membership(self, chat_id: UUID, user_id: str) -> Optional[Membership]:
        """Get a membership without taking the lock."""
        return self._members.get(chat_id, {}).get(user_id)

    def current_member_ids(self, chat_id: UUID) -> FrozenSet[str]:
        """Ids of the chat's current members."""
        return frozenset(self._members.get(chat_id, {}))

    def record_activity(self, chat_id: UUID, when: datetime) -> None:
        """Bump the chat's ``updated_at``."""
        chat = self._chats.get(chat_id)
        if chat is not None and when > chat.updated_at:
            chat.updated_at = when

    def _require_chat(self, chat_id: UUID) -> Chat:
        chat = self._chats.get(chat_id)
        if chat is None:
            raise NotFound(f"Chat {chat_id} not found", details={"chat_id": str(chat_id)})
        return chat

    def _emit_membership(self, kind: EventKind, membership: Membership, **extra) -> None:
        self._emit(
            ChangeEvent(
                table=Table.CHAT_MEMBERS,
                kind=kind,
                chat_id=membership.chat_id,
                audience=[membership.user_id],
                record=membership.model_dump(mode="json"),
                **extra,
            )
        )

    def _new_chat_locked(
        self, kind: ChatKind, created_by: str, audience: Sequence[str] = (), **fields
    ) -> Chat:
        """Register a chat and announce it to its initial members."""
        chat = Chat(kind=kind, created_by=created_by, **fields)
        self._chats[chat.id] = chat
        self._members[chat.id] = {}
        self._emit(
            ChangeEvent(
                table=Table.CHATS,
                kind=EventKind.INSERT,
                chat_id=chat.id,
                audience=list(audience or [created_by]),
                record=chat.model_dump(mode="json"),
            )
        )
        return chat

    def _add_locked(self, chat: Chat, user_id: str, role: Role) -> Membership:
        membership = Membership(chat_id=chat.id, user_id=user_id, role=role)
        self._members[chat.id][user_id] = membership
        self._chats_by_user.setdefault(user_id, set()).add(chat.id)
        self._emit_membership(EventKind.INSERT, membership)
        return membership

    def _remove_locked(self, chat: Chat, user_id: str) -> Membership:
        members = self._members[chat.id]
        membership = members.pop(user_id)
        user_chats = self._chats_by_user.get(user_id)
        if user_chats is not None:
            user_chats.discard(chat.id)
            if not user_chats:
                del self._chats_by_user[user_id]

        # The departing user gets this one event even though they are no longer a member.
        self._emit_membership(EventKind.DELETE, membership, extra_recipients=[user_id])

        if chat.kind == ChatKind.GROUP and membership.role == Role.ADMIN and members:
            if not any(m.role == Role.ADMIN for m in members.values()):
                successor = next(iter(members.values()))
                successor.role = Role.ADMIN
                logger.info(
                    "admin_promoted",
                    chat_id=str(chat.id),
                    user_id=successor.user_id,
                    previous_admin=user_id,
                )
                self._emit_membership(EventKind.UPDATE, successor)

        if not members:
            logger.info("chat_orphaned", chat_id=str(chat.id), kind=chat.kind.value)
        return membership

    async def create_chat(
        self,
        kind: ChatKind,
        created_by: str,
        name: Optional[str] = None,
        description: str = "",
        avatar_url: Optional[str] = None,
    ) -> Chat:
        """Create a chat with no members."""
        async with self._lock:
            chat = self._new_chat_locked(
                kind, created_by, name=name, description=description, avatar_url=avatar_url
            )
            logger.info("chat_created", chat_id=str(chat.id), kind=kind.value, created_by=created_by)
            return chat

    async def get_chat(self, chat_id: UUID) -> Chat:
        """Get a chat or raise NotFound."""
        async with self._lock:
            return self._require_chat(chat_id)

    async def update_chat(
        self,
        chat_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Chat:
        """Update a group's details."""
        async with self._lock:
            chat = self._require_chat(chat_id)
            if chat.kind != ChatKind.GROUP:
                raise InvalidRequest("Only group chats have editable details")
            if name is not None:
                chat.name = name
            if description is not None:
                chat.description = description
            if avatar_url is not None:
                chat.avatar_url = avatar_url
            chat.updated_at = utcnow()
            self._emit(
                ChangeEvent(
                    table=Table.CHATS,
                    kind=EventKind.UPDATE,
                    chat_id=chat.id,
                    record=chat.model_dump(mode="json"),
                )
            )
            return chat

    async def add_member(
        self, chat_id: UUID, user_id: str, role: Role = Role.MEMBER, capacity: Optional[int] = None
    ) -> Membership:
        """Add a user to a chat.

        Raises Conflict for an existing membership and CapacityExceeded when a
        direct chat already has two members or a group is at ``capacity``.
        """
        async with self._lock:
            chat = self._require_chat(chat_id)
            members = self._members[chat_id]
            if user_id in members:
                raise Conflict(
                    f"User {user_id} is already a member of chat {chat_id}",
                    details={"chat_id": str(chat_id), "user_id": user_id},
                )
            if chat.kind == ChatKind.DIRECT:
                if len(members) >= 2:
                    raise CapacityExceeded("Direct chats hold exactly two members")
                if user_id not in self._pair_by_chat.get(chat_id, ()):
                    raise Forbidden("Direct chats only admit their two participants")
            elif capacity is not None and len(members) >= capacity:
                raise CapacityExceeded(
                    f"Group is full ({capacity} members)", details={"capacity": capacity}
                )

            membership = self._add_locked(chat, user_id, role)
            logger.info("member_added", chat_id=str(chat_id), user_id=user_id, role=role.value)
            return membership

    async def remove_member(self, chat_id: UUID, user_id: str) -> Membership:
        """Remove a member, promoting a new admin when needed."""
        async with self._lock:
            chat = self._require_chat(chat_id)
            if user_id not in self._members[chat_id]:
                raise NotFound(
                    f"User {user_id} is not a member of chat {chat_id}",
                    details={"chat_id": str(chat_id), "user_id": user_id},
                )
            membership = self._remove_locked(chat, user_id)
            logger.info("member_removed", chat_id=str(chat_id), user_id=user_id)
            return membership

    async def set_role(self, chat_id: UUID, user_id: str, role: Role) -> Membership:
        """Change a member's role."""
        async with self._lock:
            chat = self._require_chat(chat_id)
            if chat.kind != ChatKind.GROUP:
                raise InvalidRequest("Roles only apply to group chats")
            members = self._members[chat_id]
            membership = members.get(user_id)
            if membership is None:
                raise NotFound(f"User {user_id} is not a member of chat {chat_id}")
            if membership.role == role:
                return membership
            if membership.role == Role.ADMIN:
                admins = sum(1 for m in members.values() if m.role == Role.ADMIN)
                if admins == 1:
                    raise Conflict("A group must keep at least one admin")
            membership.role = role
            self._emit_membership(EventKind.UPDATE, membership)
            logger.info("member_role_changed", chat_id=str(chat_id), user_id=user_id, role=role.value)
            return membership

    async def list_members(self, chat_id: UUID) -> List[Membership]:
        """Members of a chat, oldest first."""
        async with self._lock:
            self._require_chat(chat_id)
            return list(self._members[chat_id].values())

    async def list_chats(self, user_id: str) -> List[Chat]:
        """Chats a user belongs to, most recently active first."""
        async with self._lock:
            chats = [self._chats[chat_id] for chat_id in self._chats_by_user.get(user_id, ())]
            return sorted(chats, key=lambda c: c.updated_at, reverse=True)

    async def get_or_create_direct_chat(self, user_a: str, user_b: str) -> Tuple[Chat, bool]:
        """Return the direct chat for a pair, creating it on first request.

        Lookup and creation happen in one critical section keyed on the sorted
        pair, so concurrent callers all receive the same chat. A participant who
        had left is restored.
        """
        if user_a == user_b:
            raise InvalidRequest("A direct chat needs two different users")

        key = pair_key(user_a, user_b)
        async with self._lock:
            chat_id = self._direct_pairs.get(key)
            if chat_id is not None:
                chat = self._chats[chat_id]
                for user_id in key:
                    if user_id not in self._members[chat_id]:
                        self._add_locked(chat, user_id, Role.MEMBER)
                        logger.info("direct_member_restored", chat_id=str(chat_id), user_id=user_id)
                return chat, False

            chat = self._new_chat_locked(ChatKind.DIRECT, user_a, audience=key)
            self._direct_pairs[key] = chat.id
            self._pair_by_chat[chat.id] = key
            for user_id in key:
                self._add_locked(chat, user_id, Role.MEMBER)
            logger.info("direct_chat_created", chat_id=str(chat.id), users=list(key))
            return chat, True

    async def purge_user(self, user_id: str) -> int:
        """Remove a user from every chat."""
        async with self._lock:
            chat_ids = list(self._chats_by_user.get(user_id, ()))
            for chat_id in chat_ids:
                self._remove_locked(self._chats[chat_id], user_id)
            logger.info("user_memberships_purged", user_id=user_id, count=len(chat_ids))
            return len(chat_ids)


class InMemoryProfileStore(ProfileStore):
    """Profiles held in process memory; usernames are unique case-insensitively."""

    def __init__(self) -> None:
        self._profiles: Dict[str, Profile] = {}
        self._usernames: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _require(self, user_id: str) -> Profile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise NotFound(f"Profile {user_id} not found", details={"user_id": user_id})
        return profile

    def _claim_username(self, username: str, user_id: str) -> None:
        key = username.strip().lower()
        if not key:
            raise InvalidRequest("Username must not be empty")
        owner = self._usernames.get(key)
        if owner is not None and owner != user_id:
            raise Conflict(f"Username {username} is taken", details={"username": username})
        self._usernames[key] = user_id

    async def create(
        self,
        user_id: str,
        username: str,
        full_name: str,
        bio: str = "",
        avatar_url: Optional[str] = None,
    ) -> Profile:
        """Create a profile; usernames are unique ignoring case."""
        async with self._lock:
            if user_id in self._profiles:
                raise Conflict(f"Profile {user_id} already exists")
            self._claim_username(username, user_id)
            profile = Profile(
                id=user_id,
                username=username.strip(),
                full_name=full_name,
                bio=bio,
                avatar_url=avatar_url,
            )
            self._profiles[user_id] = profile
            logger.info("profile_created", user_id=user_id)
            return profile

    async def get(self, user_id: str) -> Profile:
        """Get a profile or raise NotFound."""
        async with self._lock:
            return self._require(user_id)

    async def exists(self, user_id: str) -> bool:
        """True if the user has a profile."""
        async with self._lock:
            return user_id in self._profiles

    async def update(self, requester: str, user_id: str, **fields) -> Profile:
        """Update a profile. Owners only."""
        if requester != user_id:
            raise Forbidden("Profiles can only be changed by their owner")
        async with self._lock:
            profile = self._require(user_id)
            username = fields.pop("username", None)
            if username is not None and username.strip().lower() != profile.username.lower():
                self._claim_username(username, user_id)
                self._usernames.pop(profile.username.lower(), None)
                profile.username = username.strip()
            for name in ("full_name", "bio", "avatar_url"):
                if fields.get(name) is not None:
                    setattr(profile, name, fields[name])
            profile.updated_at = utcnow()
            logger.info("profile_updated", user_id=user_id)
            return profile

    async def search(self, query: str, exclude: Optional[str] = None, limit: int = 10) -> List[Profile]:
        """Search usernames and full names."""
        needle = query.strip().lower()
        if len(needle) < 3:
            return []
        async with self._lock:
            matches = [
                p
                for p in self._profiles.values()
                if p.id != exclude
                and (needle in p.username.lower() or needle in p.full_name.lower())
            ]
        matches.sort(key=lambda p: p.username.lower())
        return matches[:limit]

    async def set_online(self, user_id: str, is_online: bool) -> Optional[Profile]:
        async with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return None
            profile.is_online = is_online
            if not is_online:
                profile.last_seen = utcnow()
            return profile

    async def delete(self, user_id: str) -> Profile:
        async with self._lock:
            profile = self._require(user_id)
            del self._profiles[user_id]
            self._usernames.pop(profile.username.lower(), None)
            logger.info("profile_deleted", user_id=user_id)
            return profile

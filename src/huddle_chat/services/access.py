"""
Access control for chat data.

Every predicate resolves to a single direct lookup in the membership store's
primary index. None of them consults another predicate, so checking whether a
membership exists never itself requires authorization over memberships.
"""

from uuid import UUID

from ..domain.errors import Forbidden
from ..domain.models import Message, Role
from ..repositories.base import MembershipStore


class AccessControlGuard:
    """Stateless authorization predicates over a membership store."""

    def __init__(self, memberships: MembershipStore) -> None:
        self._memberships = memberships

    def can_read(self, user_id: str, chat_id: UUID) -> bool:
        """True if the user is a current member of the chat."""
        return self._memberships.lookup_membership(chat_id, user_id) is not None

    def can_write(self, user_id: str, chat_id: UUID) -> bool:
        """Writing needs the same membership as reading."""
        # Messages have no separate write role.
        return self.can_read(user_id, chat_id)

    def can_manage(self, user_id: str, chat_id: UUID) -> bool:
        """True if the user is an admin of the chat."""
        membership = self._memberships.lookup_membership(chat_id, user_id)
        return membership is not None and membership.role == Role.ADMIN

    def can_delete_message(self, user_id: str, message: Message) -> bool:
        """True if the user sent the message."""
        return user_id == message.sender_id

    def require_read(self, user_id: str, chat_id: UUID) -> None:
        """Raise Forbidden unless the user can read the chat."""
        if not self.can_read(user_id, chat_id):
            raise Forbidden(
                "You are not a member of this chat",
                error_code="NOT_MEMBER",
                details={"chat_id": str(chat_id)},
            )

    def require_write(self, user_id: str, chat_id: UUID) -> None:
        """Raise Forbidden unless the user can post to the chat."""
        if not self.can_write(user_id, chat_id):
            raise Forbidden(
                "You are not a member of this chat",
                error_code="NOT_MEMBER",
                details={"chat_id": str(chat_id)},
            )

    def require_manage(self, user_id: str, chat_id: UUID) -> None:
        """Raise Forbidden unless the user administers the chat."""
        if not self.can_manage(user_id, chat_id):
            raise Forbidden(
                "Only chat admins can do this",
                error_code="NOT_ADMIN",
                details={"chat_id": str(chat_id)},
            )

    def require_delete_message(self, user_id: str, message: Message) -> None:
        """Raise Forbidden unless the user sent the message."""
        if not self.can_delete_message(user_id, message):
            raise Forbidden(
                "Only the sender can delete a message",
                error_code="NOT_SENDER",
                details={"message_id": str(message.id)},
            )

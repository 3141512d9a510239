"""Room membership resolution and authorization."""
import logging
from typing import Set

from messaging.errors import ConversationNotFound, Forbidden
from messaging.store import StoreGateway
from messaging.store.schemas import Conversation, MemberRole

logger = logging.getLogger(__name__)


class RoomMembershipResolver:
    """Answers "which rooms is this user in" and "may this user act here".

    A conversation's member list in the store is the sole authority.
    """

    def __init__(self, store: StoreGateway) -> None:
        self._store = store

    async def rooms_for(self, user_id: str) -> Set[str]:
        """Ids of every direct conversation and group room *user_id* belongs to."""
        return await self._store.conversation_ids_for(user_id)

    async def peers_of(self, user_id: str) -> Set[str]:
        return await self._store.peers_of(user_id)

    async def require_member(self, conversation_id: str, user_id: str) -> Conversation:
        """Load a conversation and check that *user_id* is a member.

        Raises:
            ConversationNotFound: The id does not resolve.
            Forbidden: The user is not a member.
        """
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        if not conversation.is_member(user_id):
            logger.warning(
                "[Membership] %s is not a member of %s", user_id, conversation_id
            )
            raise Forbidden("You are not a member of this conversation")
        return conversation

    async def require_moderator(self, room_id: str, user_id: str) -> Conversation:
        """Like :meth:`require_member`, but the user must be admin or moderator."""
        conversation = await self.require_member(room_id, user_id)
        if conversation.role_of(user_id) not in (MemberRole.ADMIN, MemberRole.MODERATOR):
            raise Forbidden("Only admins and moderators can manage members")
        return conversation

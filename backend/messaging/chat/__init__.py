"""Real-time messaging over WebSockets.

Components:
    - PresenceTracker: who is online, on which connections
    - RoomMembershipResolver: conversation membership and authorization
    - MessageDispatcher: validate, persist and fan out messages
    - DeliveryTracker: sent -> delivered -> read transitions
    - MissedMessageSynchronizer: replay of undelivered messages on reconnect
    - TypingRelay: ephemeral typing indicators with auto-expiry
    - MessagingHub: wires the above and routes socket events
"""
from .hub import MessagingHub
from .rest_router import router as rest_router
from .router import router as ws_router

__all__ = ["MessagingHub", "rest_router", "ws_router"]

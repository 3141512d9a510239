"""Reconnecting client for the messaging socket."""
from .reconnect import Backoff, ConnectionState, MessagingClient

__all__ = ["Backoff", "ConnectionState", "MessagingClient"]

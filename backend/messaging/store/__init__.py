"""Durable messaging state (DuckDB) and its async gateway.

Services:
    - MessageStore: synchronous DuckDB persistence.
    - StoreGateway: runs store calls off the event loop with a timeout.
"""
from .gateway import StoreGateway
from .service import MessageStore

__all__ = ["MessageStore", "StoreGateway"]

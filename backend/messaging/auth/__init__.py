"""Bearer-token authentication for socket handshakes and REST calls.

Services:
    - TokenAuthenticator: verifies JWTs issued by the marketplace auth service.
"""
from .service import TokenAuthenticator

__all__ = ["TokenAuthenticator"]

"""Repository layer for data persistence.

Provides the ClientStore protocol the identity core depends on and its
libSQL-backed implementation.
"""

from client_identity.repositories.base import ClientStore
from client_identity.repositories.client_repo import ClientRepository

__all__ = [
    "ClientRepository",
    "ClientStore",
]

"""Storage protocol the identity core depends on.

Search, planning and the merge executor only see this narrow interface, so
any relational backend with read-after-write consistency can implement it.
"""

from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime
from typing import Protocol, runtime_checkable

from client_identity.identity.schemas import (
    ClientProfile,
    DependentType,
    PartialClientProfile,
)


@runtime_checkable
class ClientStore(Protocol):
    """Typed client repository used by the identity core.

    Implementations raise StorageError for driver or connectivity failures.
    """

    async def get_client(self, client_id: str) -> ClientProfile | None:
        """Fetch one client, None if it does not exist (or was merged away)."""
        ...

    async def get_clients(self, client_ids: Iterable[str]) -> list[ClientProfile]:
        """Fetch every existing client among client_ids."""
        ...

    async def find_clients(
        self,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        email: str | None = None,
        phone_digits: str | None = None,
        rank: PartialClientProfile | None = None,
        weights: Mapping[str, int] | None = None,
        exclude_ids: Iterable[str] = (),
        limit: int = 200,
    ) -> list[ClientProfile]:
        """Broad lookup: clients loosely matching any of the given fields.

        Rows are ordered by how well they match rank under weights before
        limit applies, so a strong match is never cut by newer weak ones.
        """
        ...

    async def update_client_fields(
        self,
        client_id: str,
        fields: dict[str, str | None],
        preserved_created_at: datetime | None = None,
    ) -> bool:
        """Overwrite identity fields on a client. False if it does not exist."""
        ...

    async def reassign_dependents(
        self,
        from_client_id: str,
        to_client_id: str,
        batch_size: int,
        on_batch: Callable[[], Awaitable[None]] | None = None,
    ) -> dict[DependentType, int]:
        """Repoint every dependent row from one client to another."""
        ...

    async def count_dependents(self, client_id: str) -> dict[DependentType, int]:
        """Count dependent rows referencing a client, per type."""
        ...

    async def delete_client(self, client_id: str) -> bool:
        """Delete a client row. False if it was already gone."""
        ...

    async def acquire_merge_locks(
        self,
        client_ids: Iterable[str],
        lock_token: str,
        ttl_seconds: int,
    ) -> str | None:
        """Lock every id or none. Returns the first id held elsewhere."""
        ...

    async def refresh_merge_locks(
        self,
        client_ids: Iterable[str],
        lock_token: str,
        ttl_seconds: int,
    ) -> bool:
        """Extend locks held by lock_token. False if any was taken over."""
        ...

    async def release_merge_locks(
        self,
        client_ids: Iterable[str],
        lock_token: str,
    ) -> None:
        """Drop locks held by lock_token."""
        ...

    async def record_merge(
        self,
        merged_from_client_id: str,
        merged_into_client_id: str,
        merged_by: str | None,
        details: dict,
    ) -> None:
        """Write the audit row for a merged-away client.

        Repeat writes for the same primary keep the first row. A client that
        still exists and is merged into another primary gets a new row.
        """
        ...

    async def get_merge_record(self, client_id: str) -> dict | None:
        """Audit row for a merged-away client, None if it was never merged."""
        ...

"""Repository for client records and the records that depend on them.

Owns the relational schema for clients, their dependent records (interactions,
assistance requests, disbursements, public intake submissions, alerts and
relationships), merge locks and the merge audit trail.
Uses SQLite/libSQL (via TursoClient) for persistence.
"""

import functools
import json
import logging
import re
import sqlite3
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime
from uuid import uuid4

from libsql_client import LibsqlError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from client_identity.config import settings
from client_identity.db.turso import TursoClient
from client_identity.identity.errors import StorageError, ValidationError
from client_identity.identity.schemas import (
    CLIENT_FIELDS,
    ClientProfile,
    DependentType,
    PartialClientProfile,
)

logger = logging.getLogger(__name__)

# Exceptions that are retriable (transient failures)
RETRIABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
)

# Driver failures surfaced to callers as StorageError
STORAGE_EXCEPTIONS = (
    LibsqlError,
    sqlite3.Error,
    OSError,
)

# Foreign key columns pointing at clients(id), grouped by dependent type
DEPENDENT_COLUMNS: dict[DependentType, tuple[tuple[str, str], ...]] = {
    DependentType.INTERACTION: (("interactions", "client_id"),),
    DependentType.ASSISTANCE_REQUEST: (("assistance_requests", "client_id"),),
    DependentType.DISBURSEMENT: (("disbursements", "client_id"),),
    DependentType.PUBLIC_INTAKE: (("public_intake", "client_id"),),
    DependentType.CLIENT_ALERT: (("client_alerts", "client_id"),),
    DependentType.CLIENT_RELATIONSHIP: (
        ("client_relationships", "client_id"),
        ("client_relationships", "related_client_id"),
    ),
}

_CLIENT_COLUMNS = ("id", *CLIENT_FIELDS, "created_at")

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        phone_digits TEXT,
        address TEXT,
        city TEXT,
        state TEXT,
        zip_code TEXT,
        county TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_clients_last_name ON clients(last_name)",
    "CREATE INDEX IF NOT EXISTS idx_clients_email ON clients(email)",
    "CREATE INDEX IF NOT EXISTS idx_clients_phone_digits ON clients(phone_digits)",
    """
    CREATE TABLE IF NOT EXISTS interactions (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id),
        contact_type TEXT NOT NULL DEFAULT 'phone',
        summary TEXT,
        occurred_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assistance_requests (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id),
        interaction_id TEXT REFERENCES interactions(id),
        help_requested TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS disbursements (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id),
        interaction_id TEXT REFERENCES interactions(id),
        amount_cents INTEGER NOT NULL,
        recipient_name TEXT,
        disbursed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS public_intake (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id),
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        phone TEXT,
        submitted_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_alerts (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id),
        alert_type TEXT NOT NULL,
        message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_relationships (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL REFERENCES clients(id),
        related_client_id TEXT NOT NULL REFERENCES clients(id),
        relationship_type TEXT NOT NULL DEFAULT 'family',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_merge_locks (
        client_id TEXT PRIMARY KEY,
        lock_token TEXT NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS client_merges (
        merged_from_client_id TEXT PRIMARY KEY,
        merged_into_client_id TEXT NOT NULL,
        merged_by TEXT,
        details TEXT,
        merged_at TEXT NOT NULL
    )
    """,
    *(
        f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table}({column})"
        for columns in DEPENDENT_COLUMNS.values()
        for table, column in columns
    ),
]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _phone_digits(phone: str | None) -> str | None:
    if not phone:
        return None
    return re.sub(r"\D", "", phone) or None


def _like(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _relevance(
    rank: PartialClientProfile,
    weights: Mapping[str, int],
) -> tuple[str, list]:
    """SQL expression scoring a row against rank, with its parameters.

    Mirrors MatchScorer: exact case-insensitive text, phone on digits,
    address contained either way.
    """
    unknown = set(weights) - set(CLIENT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown client fields: {sorted(unknown)}")

    parts: list[str] = []
    params: list = []
    for field, weight in weights.items():
        if field == "phone":
            digits = _phone_digits(rank.phone)
            if digits:
                parts.append("CASE WHEN phone_digits = ? THEN ? ELSE 0 END")
                params.extend([digits, weight])
            continue

        value = (getattr(rank, field) or "").strip().lower()
        if not value:
            continue
        if field == "address":
            parts.append(
                """
                CASE WHEN trim(address) <> '' AND (
                    instr(lower(trim(address)), ?) > 0
                    OR instr(?, lower(trim(address))) > 0
                ) THEN ? ELSE 0 END
                """
            )
            params.extend([value, value, weight])
        else:
            parts.append(f"CASE WHEN lower(trim({field})) = ? THEN ? ELSE 0 END")
            params.extend([value, weight])
    return " + ".join(parts) or "0", params


def _row_to_profile(row) -> ClientProfile:
    values = {name: row[index] for index, name in enumerate(_CLIENT_COLUMNS)}
    values["created_at"] = datetime.fromisoformat(values["created_at"])
    return ClientProfile(**values)


def storage_call(*, retry: bool = False):
    """Translate driver failures into StorageError.

    With retry=True the call is retried with exponential backoff on
    transient connection/timeout failures first. Only read-only calls
    use retry; mutations are resumed by resubmitting the merge plan.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                if not retry:
                    return await func(self, *args, **kwargs)
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self._retry_attempts),
                    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
                    retry=retry_if_exception_type(RETRIABLE_EXCEPTIONS),
                    before_sleep=before_sleep_log(logger, log_level=logging.INFO),
                    reraise=True,
                ):
                    with attempt:
                        return await func(self, *args, **kwargs)
            except STORAGE_EXCEPTIONS as e:
                logger.error(f"Storage call {func.__name__} failed: {e}")
                raise StorageError(
                    f"Storage call {func.__name__} failed: {e}",
                    operation=func.__name__,
                ) from e

        return wrapper

    return decorator


class ClientRepository:
    """Repository for client records, their dependents and merge bookkeeping.

    Implements the ClientStore protocol over TursoClient.
    """

    def __init__(
        self,
        db_client: TursoClient,
        retry_attempts: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize repository with database client.

        Args:
            db_client: TursoClient instance for database operations
            retry_attempts: Attempts for read-only calls (default from settings)
            clock: Source of epoch seconds for lock expiry
        """
        self._db = db_client
        self._retry_attempts = retry_attempts or settings.storage_retry_attempts
        self._clock = clock

    async def initialize(self) -> None:
        """Enable foreign keys and create tables if not exists."""
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.execute_batch(_SCHEMA)
        logger.info("Client repository schema initialized")

    # Clients

    @storage_call()
    async def create_client(
        self,
        profile: PartialClientProfile,
        client_id: str | None = None,
        created_at: datetime | None = None,
    ) -> ClientProfile:
        """Insert a new client record.

        Args:
            profile: Identity attributes; first and last name are required
            client_id: Optional explicit id (default: new UUID)
            created_at: Optional creation time (default: now)

        Returns:
            The persisted ClientProfile

        Raises:
            ValidationError: If first or last name is missing
        """
        if not profile.first_name or not profile.last_name:
            raise ValidationError("First name and last name are required.")

        client = ClientProfile(
            id=client_id or str(uuid4()),
            created_at=created_at or datetime.now(UTC),
            **profile.populated_fields(),
        )
        await self._db.execute(
            f"""
            INSERT INTO clients
                ({", ".join(_CLIENT_COLUMNS)}, phone_digits, updated_at)
            VALUES ({_placeholders(len(_CLIENT_COLUMNS) + 2)})
            """,
            [
                client.id,
                *(getattr(client, name) for name in CLIENT_FIELDS),
                _to_iso(client.created_at),
                _phone_digits(client.phone),
                _now_iso(),
            ],
        )
        return client

    @storage_call(retry=True)
    async def get_client(self, client_id: str) -> ClientProfile | None:
        """Get a client by id.

        Returns:
            ClientProfile or None if not found (including merged-away ids)
        """
        result = await self._db.execute(
            f"SELECT {', '.join(_CLIENT_COLUMNS)} FROM clients WHERE id = ?",
            [client_id],
        )
        if result.rows:
            return _row_to_profile(result.rows[0])
        return None

    @storage_call(retry=True)
    async def get_clients(self, client_ids: Iterable[str]) -> list[ClientProfile]:
        """Get every existing client among client_ids, in the order given."""
        ids = list(dict.fromkeys(client_ids))
        if not ids:
            return []
        result = await self._db.execute(
            f"""
            SELECT {", ".join(_CLIENT_COLUMNS)}
            FROM clients
            WHERE id IN ({_placeholders(len(ids))})
            """,
            ids,
        )
        by_id = {row[0]: _row_to_profile(row) for row in result.rows}
        return [by_id[client_id] for client_id in ids if client_id in by_id]

    @storage_call(retry=True)
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
        """Broad case-insensitive lookup over name, email and phone.

        A client is returned when any given field is contained in the stored
        value. Rows are ordered by relevance to rank before limit applies,
        then newest first, so older exact matches are never crowded out.

        Args:
            first_name: Substring of the stored first name
            last_name: Substring of the stored last name
            email: Substring of the stored email
            phone_digits: Substring of the stored phone digits
            rank: Profile to order by (default: the lookup terms)
            weights: Field -> weight for ordering (default: 1 per term)
            exclude_ids: Clients never returned
            limit: Maximum rows

        Returns:
            Up to limit matching clients, empty if no field was given
        """
        terms = {
            "first_name": first_name,
            "last_name": last_name,
            "email": email,
            "phone_digits": phone_digits,
        }
        conditions: list[str] = []
        params: list = []
        for column, value in terms.items():
            if value:
                conditions.append(f"{column} LIKE ? ESCAPE '\\'")
                params.append(_like(value))

        if not conditions:
            return []

        if rank is None:
            rank = PartialClientProfile(
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone=phone_digits,
            )
        if weights is None:
            weights = {
                ("phone" if column == "phone_digits" else column): 1
                for column, value in terms.items()
                if value
            }
        relevance, relevance_params = _relevance(rank, weights)

        excluded = list(dict.fromkeys(exclude_ids))
        exclusion = (
            f"AND id NOT IN ({_placeholders(len(excluded))})" if excluded else ""
        )

        result = await self._db.execute(
            f"""
            SELECT {", ".join(_CLIENT_COLUMNS)}
            FROM clients
            WHERE ({" OR ".join(conditions)}) {exclusion}
            ORDER BY ({relevance}) DESC, created_at DESC, id DESC
            LIMIT ?
            """,
            [*params, *excluded, *relevance_params, limit],
        )
        return [_row_to_profile(row) for row in result.rows]

    @storage_call()
    async def update_client_fields(
        self,
        client_id: str,
        fields: dict[str, str | None],
        preserved_created_at: datetime | None = None,
    ) -> bool:
        """Overwrite identity fields on a client.

        Re-running with the same arguments leaves the row unchanged.
        preserved_created_at only ever moves created_at earlier.

        Returns:
            True if the client exists, False otherwise
        """
        unknown = set(fields) - set(CLIENT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown client fields: {sorted(unknown)}")

        assignments = [f"{name} = ?" for name in fields]
        params: list = list(fields.values())
        if "phone" in fields:
            assignments.append("phone_digits = ?")
            params.append(_phone_digits(fields["phone"]))
        if preserved_created_at is not None:
            preserved = _to_iso(preserved_created_at)
            assignments.append(
                "created_at = CASE WHEN ? < created_at THEN ? ELSE created_at END"
            )
            params.extend([preserved, preserved])
        assignments.append("updated_at = ?")
        params.append(_now_iso())

        result = await self._db.execute(
            f"UPDATE clients SET {', '.join(assignments)} WHERE id = ?",
            [*params, client_id],
        )
        return result.rows_affected > 0

    @storage_call()
    async def delete_client(self, client_id: str) -> bool:
        """Delete a client row.

        Returns:
            True if a row was deleted, False if it was already gone
        """
        result = await self._db.execute(
            "DELETE FROM clients WHERE id = ?",
            [client_id],
        )
        return result.rows_affected > 0

    # Dependents

    @storage_call()
    async def reassign_dependents(
        self,
        from_client_id: str,
        to_client_id: str,
        batch_size: int,
        on_batch: Callable[[], Awaitable[None]] | None = None,
    ) -> dict[DependentType, int]:
        """Repoint every dependent row from one client to another.

        Rows move in batches of at most batch_size. Rows already pointing at
        to_client_id are never touched, so re-running is a no-op.

        Args:
            from_client_id: Client being merged away
            to_client_id: Surviving client
            batch_size: Maximum rows updated per statement
            on_batch: Awaited before every batch (used to refresh locks);
                whatever it raises stops the reassignment

        Returns:
            Rows repointed per dependent type
        """
        counts: dict[DependentType, int] = {}
        for dependent_type, columns in DEPENDENT_COLUMNS.items():
            moved = 0
            for table, column in columns:
                while True:
                    if on_batch is not None:
                        await on_batch()
                    result = await self._db.execute(
                        f"""
                        UPDATE {table} SET {column} = ?
                        WHERE rowid IN (
                            SELECT rowid FROM {table} WHERE {column} = ? LIMIT ?
                        )
                        """,
                        [to_client_id, from_client_id, batch_size],
                    )
                    moved += result.rows_affected
                    if result.rows_affected < batch_size:
                        break
            counts[dependent_type] = moved
        logger.debug(f"Reassigned dependents {from_client_id} -> {to_client_id}")
        return counts

    @storage_call(retry=True)
    async def count_dependents(self, client_id: str) -> dict[DependentType, int]:
        """Count dependent rows referencing a client, per type."""
        counts: dict[DependentType, int] = {}
        for dependent_type, columns in DEPENDENT_COLUMNS.items():
            total = 0
            for table, column in columns:
                result = await self._db.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE {column} = ?",
                    [client_id],
                )
                total += result.rows[0][0]
            counts[dependent_type] = total
        return counts

    @storage_call(retry=True)
    async def list_dependent_ids(
        self,
        dependent_type: DependentType,
        client_id: str,
    ) -> list[str]:
        """Ids of dependent rows of one type referencing a client."""
        ids: list[str] = []
        for table, column in DEPENDENT_COLUMNS[dependent_type]:
            result = await self._db.execute(
                f"SELECT id FROM {table} WHERE {column} = ? ORDER BY id",
                [client_id],
            )
            ids.extend(row[0] for row in result.rows)
        return ids

    @storage_call()
    async def create_interaction(
        self,
        client_id: str | None,
        contact_type: str = "phone",
        summary: str | None = None,
        occurred_at: datetime | None = None,
    ) -> str:
        """Record a contact event. Returns the new interaction id."""
        interaction_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO interactions (id, client_id, contact_type, summary, occurred_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                interaction_id,
                client_id,
                contact_type,
                summary,
                _to_iso(occurred_at) if occurred_at else _now_iso(),
            ],
        )
        return interaction_id

    @storage_call()
    async def create_assistance_request(
        self,
        client_id: str | None,
        interaction_id: str | None = None,
        help_requested: str | None = None,
    ) -> str:
        """Record a help request, optionally tied to an interaction."""
        request_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO assistance_requests
                (id, client_id, interaction_id, help_requested, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [request_id, client_id, interaction_id, help_requested, _now_iso()],
        )
        return request_id

    @storage_call()
    async def create_disbursement(
        self,
        client_id: str | None,
        amount_cents: int,
        interaction_id: str | None = None,
        recipient_name: str | None = None,
    ) -> str:
        """Record money paid out on a client's behalf."""
        disbursement_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO disbursements
                (id, client_id, interaction_id, amount_cents, recipient_name,
                 disbursed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                disbursement_id,
                client_id,
                interaction_id,
                amount_cents,
                recipient_name,
                _now_iso(),
            ],
        )
        return disbursement_id

    @storage_call()
    async def create_public_intake(
        self,
        client_id: str | None,
        profile: PartialClientProfile,
    ) -> str:
        """Record a self-service intake submission."""
        intake_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO public_intake
                (id, client_id, first_name, last_name, email, phone, submitted_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                intake_id,
                client_id,
                profile.first_name,
                profile.last_name,
                profile.email,
                profile.phone,
                _now_iso(),
            ],
        )
        return intake_id

    @storage_call()
    async def create_client_alert(
        self,
        client_id: str,
        alert_type: str,
        message: str | None = None,
    ) -> str:
        """Flag a client for staff attention."""
        alert_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO client_alerts (id, client_id, alert_type, message, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [alert_id, client_id, alert_type, message, _now_iso()],
        )
        return alert_id

    @storage_call()
    async def create_client_relationship(
        self,
        client_id: str,
        related_client_id: str,
        relationship_type: str = "family",
    ) -> str:
        """Link two clients (household member, guardian, ...)."""
        relationship_id = str(uuid4())
        await self._db.execute(
            """
            INSERT INTO client_relationships
                (id, client_id, related_client_id, relationship_type, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [relationship_id, client_id, related_client_id, relationship_type, _now_iso()],
        )
        return relationship_id

    # Merge locks

    @storage_call()
    async def acquire_merge_locks(
        self,
        client_ids: Iterable[str],
        lock_token: str,
        ttl_seconds: int,
    ) -> str | None:
        """Lock every id for lock_token, or none of them.

        Ids are locked in sorted order so overlapping requests always meet on
        the same first contested id. An expired lock is taken over.

        Returns:
            None on success, else the id already locked by someone else

        Raises:
            StorageError: If storage fails; locks taken so far are released
        """
        acquired: list[str] = []
        try:
            for client_id in sorted(set(client_ids)):
                now = self._clock()
                result = await self._db.execute(
                    """
                    INSERT INTO client_merge_locks (client_id, lock_token, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(client_id) DO UPDATE SET
                        lock_token = excluded.lock_token,
                        expires_at = excluded.expires_at
                    WHERE client_merge_locks.expires_at < ?
                       OR client_merge_locks.lock_token = excluded.lock_token
                    """,
                    [client_id, lock_token, now + ttl_seconds, now],
                )
                if result.rows_affected == 0:
                    await self._release_acquired(acquired, lock_token)
                    return client_id
                acquired.append(client_id)
        except STORAGE_EXCEPTIONS:
            await self._release_acquired(acquired, lock_token)
            raise
        return None

    async def _release_acquired(self, client_ids: list[str], lock_token: str) -> None:
        try:
            await self.release_merge_locks(client_ids, lock_token)
        except StorageError as e:
            # Left to expire after their ttl
            logger.warning(f"Could not release merge locks {client_ids}: {e}")

    @storage_call()
    async def refresh_merge_locks(
        self,
        client_ids: Iterable[str],
        lock_token: str,
        ttl_seconds: int,
    ) -> bool:
        """Push back the expiry of locks held by lock_token.

        Returns:
            True if lock_token still holds every id, False if any lock was
            taken over after expiring
        """
        ids = list(dict.fromkeys(client_ids))
        if not ids:
            return True
        result = await self._db.execute(
            f"""
            UPDATE client_merge_locks SET expires_at = ?
            WHERE lock_token = ? AND client_id IN ({_placeholders(len(ids))})
            """,
            [self._clock() + ttl_seconds, lock_token, *ids],
        )
        return result.rows_affected == len(ids)

    @storage_call()
    async def release_merge_locks(
        self,
        client_ids: Iterable[str],
        lock_token: str,
    ) -> None:
        """Delete locks held by lock_token; locks held by others are kept."""
        ids = list(client_ids)
        if not ids:
            return
        await self._db.execute(
            f"""
            DELETE FROM client_merge_locks
            WHERE lock_token = ? AND client_id IN ({_placeholders(len(ids))})
            """,
            [lock_token, *ids],
        )

    # Merge audit

    @storage_call()
    async def record_merge(
        self,
        merged_from_client_id: str,
        merged_into_client_id: str,
        merged_by: str | None,
        details: dict,
    ) -> None:
        """Write the audit row for a merged-away client.

        A resumed merge into the same primary keeps its original record. If
        the client still exists and is now merged into a different primary
        (an earlier merge stopped before deleting it), the row is replaced.
        """
        await self._db.execute(
            """
            INSERT INTO client_merges
                (merged_from_client_id, merged_into_client_id, merged_by,
                 details, merged_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(merged_from_client_id) DO UPDATE SET
                merged_into_client_id = excluded.merged_into_client_id,
                merged_by = excluded.merged_by,
                details = excluded.details,
                merged_at = excluded.merged_at
            WHERE client_merges.merged_into_client_id
                    <> excluded.merged_into_client_id
              AND EXISTS (
                  SELECT 1 FROM clients
                  WHERE clients.id = excluded.merged_from_client_id
              )
            """,
            [
                merged_from_client_id,
                merged_into_client_id,
                merged_by,
                json.dumps(details, default=str),
                _now_iso(),
            ],
        )

    @storage_call(retry=True)
    async def get_merge_record(self, client_id: str) -> dict | None:
        """Get the audit row for a merged-away client.

        Returns:
            Dict with merged_from_client_id, merged_into_client_id,
            merged_by, details and merged_at, or None
        """
        result = await self._db.execute(
            """
            SELECT merged_from_client_id, merged_into_client_id, merged_by,
                   details, merged_at
            FROM client_merges
            WHERE merged_from_client_id = ?
            """,
            [client_id],
        )
        if not result.rows:
            return None
        row = result.rows[0]
        return {
            "merged_from_client_id": row[0],
            "merged_into_client_id": row[1],
            "merged_by": row[2],
            "details": json.loads(row[3]) if row[3] else {},
            "merged_at": row[4],
        }

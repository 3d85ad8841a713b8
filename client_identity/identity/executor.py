"""MergeExecutor applies a merge plan against storage as a resumable saga.

Steps, each safe to repeat:
1. Validate plan shape, then the stored state of every id under lock
2. Lock every id in the plan (ConflictError if another merge holds one)
3. Write canonical fields onto the primary
4. Repoint every dependent record of each duplicate to the primary,
   extending the locks before each batch
5. Re-read and verify no dependent still references a duplicate
6. Confirm the locks are still held, write the audit row, then delete
   each duplicate
7. Release the locks

Deletion is the only irreversible step and runs last. A failure anywhere
before it leaves duplicates in place (possibly childless), and resubmitting
the identical plan finishes the job without touching rows already moved.
"""

from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from client_identity.config import settings
from client_identity.identity.errors import (
    ConflictError,
    PartialFailureError,
    StorageError,
    ValidationError,
)
from client_identity.identity.schemas import (
    CLIENT_FIELDS,
    REQUIRED_FIELDS,
    DependentType,
    MergePlan,
    MergeResult,
)

if TYPE_CHECKING:
    from client_identity.repositories.base import ClientStore

logger = structlog.get_logger()


def validate_plan_shape(plan: MergePlan) -> None:
    """Check a plan is well formed without touching storage.

    Raises:
        ValidationError: If the plan cannot be executed as given
    """
    if not plan.primary_id:
        raise ValidationError("Merge plan has no primary client.")
    if not plan.duplicate_ids:
        raise ValidationError("Merge plan has no duplicate clients.")
    if len(set(plan.duplicate_ids)) != len(plan.duplicate_ids):
        raise ValidationError("Merge plan lists a duplicate client twice.")
    if plan.primary_id in plan.duplicate_ids:
        raise ValidationError("Primary client cannot also be a duplicate.")

    unknown = set(plan.canonical_fields) - set(CLIENT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown client fields: {sorted(unknown)}")
    missing = [f for f in REQUIRED_FIELDS if not plan.canonical_fields.get(f)]
    if missing:
        raise ValidationError(
            "First name and last name are required.", missing=missing
        )


def _empty_counts() -> dict[DependentType, int]:
    return {dependent_type: 0 for dependent_type in DependentType}


class MergeExecutor:
    """Executes merge plans with locking, verification and idempotent resume."""

    def __init__(
        self,
        store: "ClientStore",
        lock_ttl_seconds: int | None = None,
        batch_size: int | None = None,
    ):
        """Initialize executor with its storage collaborator.

        Args:
            store: Client storage to mutate
            lock_ttl_seconds: Merge lock lifetime (settings.merge_lock_ttl_seconds)
            batch_size: Dependents moved per statement (settings.reassign_batch_size)
        """
        self._store = store
        self._lock_ttl = lock_ttl_seconds or settings.merge_lock_ttl_seconds
        self._batch_size = batch_size or settings.reassign_batch_size

    async def execute(
        self,
        plan: MergePlan,
        merged_by: str | None = None,
    ) -> MergeResult:
        """Apply a merge plan.

        Args:
            plan: Plan produced by MergePlanner (optionally edited)
            merged_by: Staff identifier recorded in the audit trail

        Returns:
            MergeResult. already_merged is True when an earlier run of the
            same plan had completed, in which case nothing was changed.

        Raises:
            ValidationError: Malformed plan or unknown client ids
            ConflictError: Another merge holds a lock, or the plan is stale
            PartialFailureError: Storage failed mid-sequence; resubmit the plan
            StorageError: Storage failed before any mutation
        """
        validate_plan_shape(plan)

        lock_token = uuid4().hex
        log = logger.bind(
            primary_id=plan.primary_id,
            duplicate_ids=list(plan.duplicate_ids),
            lock_token=lock_token[:8],
        )

        contested = await self._store.acquire_merge_locks(
            plan.client_ids, lock_token, self._lock_ttl
        )
        if contested is not None:
            log.info("merge lock contested", client_id=contested)
            raise ConflictError(
                f"Client {contested} is being merged by another request. "
                "Reload the records and propose the merge again.",
                client_id=contested,
            )

        log.info("merge started")
        try:
            result = await self._run(plan, lock_token, merged_by, log)
        finally:
            await self._release(plan, lock_token, log)

        log.info(
            "merge finished",
            already_merged=result.already_merged,
            merged=len(result.merged_ids),
            counts={t.value: n for t, n in result.reassigned_counts.items() if n},
        )
        return result

    async def _run(
        self,
        plan: MergePlan,
        lock_token: str,
        merged_by: str | None,
        log,
    ) -> MergeResult:
        mutated = False
        try:
            pending = await self._pending_duplicates(plan)
            if not pending:
                return MergeResult(
                    primary_id=plan.primary_id,
                    reassigned_counts=_empty_counts(),
                    already_merged=True,
                )

            mutated = True
            if not await self._store.update_client_fields(
                plan.primary_id,
                dict(plan.canonical_fields),
                plan.preserved_created_at,
            ):
                raise PartialFailureError(
                    f"Primary client {plan.primary_id} disappeared during merge.",
                    step="update_primary",
                )
            log.debug("canonical fields written", step="update_primary")

            counts = await self._reassign(plan, pending, lock_token, log)
            await self._verify(plan, pending)
            await self._hold_locks(plan, lock_token, log)

            for duplicate_id in pending:
                await self._store.record_merge(
                    duplicate_id,
                    plan.primary_id,
                    merged_by,
                    {
                        "canonical_fields": sorted(plan.canonical_fields),
                        "duplicate_ids": list(plan.duplicate_ids),
                        "reassigned_counts": {t.value: n for t, n in counts.items()},
                    },
                )
                await self._store.delete_client(duplicate_id)
                log.debug("duplicate deleted", step="delete", client_id=duplicate_id)

            return MergeResult(
                primary_id=plan.primary_id,
                merged_ids=pending,
                reassigned_counts=counts,
            )
        except StorageError as e:
            if not mutated:
                raise
            log.warning("merge interrupted", error=e.message)
            raise PartialFailureError(
                "Merge was partially applied. No duplicate with remaining "
                "records was deleted; resubmit the same plan to finish.",
                cause=e.message,
            ) from e

    async def _pending_duplicates(self, plan: MergePlan) -> list[str]:
        """Duplicates still present, after checking the plan is not stale.

        Runs under lock. A missing duplicate is fine only if the audit trail
        shows it was already merged into this plan's primary.
        """
        found = {
            client.id
            for client in await self._store.get_clients(plan.client_ids)
        }

        if plan.primary_id not in found:
            record = await self._store.get_merge_record(plan.primary_id)
            if record is not None:
                raise ConflictError(
                    f"Primary client {plan.primary_id} was already merged into "
                    f"{record['merged_into_client_id']}. Propose the merge again.",
                    client_id=plan.primary_id,
                )
            raise ValidationError(f"Primary client {plan.primary_id} does not exist.")

        pending: list[str] = []
        for duplicate_id in plan.duplicate_ids:
            if duplicate_id in found:
                pending.append(duplicate_id)
                continue
            record = await self._store.get_merge_record(duplicate_id)
            if record is None:
                raise ValidationError(f"Client {duplicate_id} does not exist.")
            if record["merged_into_client_id"] != plan.primary_id:
                raise ConflictError(
                    f"Client {duplicate_id} was already merged into "
                    f"{record['merged_into_client_id']}. Propose the merge again.",
                    client_id=duplicate_id,
                )
        return pending

    async def _reassign(
        self,
        plan: MergePlan,
        pending: list[str],
        lock_token: str,
        log,
    ) -> dict[DependentType, int]:
        async def refresh_locks() -> None:
            await self._hold_locks(plan, lock_token, log)

        counts = _empty_counts()
        for duplicate_id in pending:
            moved = await self._store.reassign_dependents(
                duplicate_id,
                plan.primary_id,
                self._batch_size,
                on_batch=refresh_locks,
            )
            for dependent_type, count in moved.items():
                counts[dependent_type] += count
            log.debug(
                "dependents reassigned",
                step="reassign",
                client_id=duplicate_id,
                moved=sum(moved.values()),
            )
        return counts

    async def _hold_locks(self, plan: MergePlan, lock_token: str, log) -> None:
        """Extend this run's locks, stopping if any lapsed and was taken.

        Raises:
            PartialFailureError: If another merge now holds one of the ids
        """
        if await self._store.refresh_merge_locks(
            plan.client_ids, lock_token, self._lock_ttl
        ):
            return
        log.warning("merge lock lost", ttl_seconds=self._lock_ttl)
        raise PartialFailureError(
            "Merge lock expired and was taken by another request before this "
            "merge finished. No duplicate was deleted by this run; reload the "
            "records before merging again.",
            step="refresh_locks",
        )

    async def _verify(self, plan: MergePlan, pending: list[str]) -> None:
        for duplicate_id in pending:
            remaining = await self._store.count_dependents(duplicate_id)
            leftover = {t.value: n for t, n in remaining.items() if n}
            if leftover:
                raise PartialFailureError(
                    f"Client {duplicate_id} still has dependent records; "
                    "resubmit the same plan to finish.",
                    client_id=duplicate_id,
                    remaining=leftover,
                )

    async def _release(self, plan: MergePlan, lock_token: str, log) -> None:
        try:
            await self._store.release_merge_locks(plan.client_ids, lock_token)
        except StorageError as e:
            # Locks lapse on their own after the TTL
            log.warning("merge lock release failed", error=e.message)

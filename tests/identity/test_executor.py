"""Tests for MergeExecutor against a real database."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from client_identity.db.turso import TursoClient
from client_identity.identity.errors import (
    ConflictError,
    PartialFailureError,
    StorageError,
    ValidationError,
)
from client_identity.identity.executor import MergeExecutor, validate_plan_shape
from client_identity.identity.planner import MergePlanner
from client_identity.identity.schemas import (
    DependentType,
    MergePlan,
    PartialClientProfile,
)
from client_identity.repositories.client_repo import ClientRepository

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


class FailingDeleteRepository(ClientRepository):
    """Repository whose delete fails for selected ids."""

    def __init__(self, *args, fail_ids: set[str], **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_ids = fail_ids

    async def delete_client(self, client_id: str) -> bool:
        if client_id in self.fail_ids:
            raise StorageError(f"Storage call delete_client failed for {client_id}")
        return await super().delete_client(client_id)


class FailingBatchRepository(ClientRepository):
    """Repository whose reassignment fails at the nth batch."""

    def __init__(self, *args, fail_on_batch: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on_batch = fail_on_batch
        self.batches = 0

    async def reassign_dependents(
        self, from_client_id, to_client_id, batch_size, on_batch=None
    ):
        async def counting_batch():
            self.batches += 1
            if self.batches == self.fail_on_batch:
                raise StorageError("Storage call reassign_dependents failed")
            if on_batch is not None:
                await on_batch()

        return await super().reassign_dependents(
            from_client_id, to_client_id, batch_size, on_batch=counting_batch
        )


class PausingRepository(ClientRepository):
    """Repository that pauses inside reassignment until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reassigning = asyncio.Event()
        self.proceed = asyncio.Event()

    async def reassign_dependents(self, *args, **kwargs):
        self.reassigning.set()
        await self.proceed.wait()
        return await super().reassign_dependents(*args, **kwargs)


@pytest.fixture
async def clients(make_client, repo: ClientRepository):
    """Clients A, B and C of one person with two interactions each."""
    records = [
        await make_client("Dana", "Reed", days=2, email="dana@example.org"),
        await make_client("Dana", "Reed", days=0, phone="478-555-0199"),
        await make_client("Danielle", "Reed", days=1, city="Macon"),
    ]
    for record in records:
        for _ in range(2):
            await repo.create_interaction(record.id)
    return records


@pytest.fixture
def plan(clients) -> MergePlan:
    """Plan keeping A and merging B and C into it."""
    return MergePlanner().plan(clients, primary_id=clients[0].id)


@pytest.fixture
def executor(repo: ClientRepository) -> MergeExecutor:
    """Executor with small batches to exercise batching."""
    return MergeExecutor(repo, lock_ttl_seconds=60, batch_size=1)


async def _snapshot(repo: ClientRepository, client_ids):
    """Every client row and its dependent counts, for state comparison."""
    return {
        client_id: (
            await repo.get_client(client_id),
            await repo.count_dependents(client_id),
        )
        for client_id in client_ids
    }


async def _seed(repo: ClientRepository) -> MergePlan:
    """Fixed-id clients A, B and C with two interactions each; plan into A."""
    for client_id, days, fields in (
        ("client-a", 2, {"email": "dana@example.org"}),
        ("client-b", 0, {"phone": "478-555-0199"}),
        ("client-c", 1, {"city": "Macon"}),
    ):
        await repo.create_client(
            PartialClientProfile(first_name="Dana", last_name="Reed", **fields),
            client_id=client_id,
            created_at=BASE_TIME + timedelta(days=days),
        )
        for _ in range(2):
            await repo.create_interaction(client_id)
    records = await repo.get_clients(["client-a", "client-b", "client-c"])
    return MergePlanner().plan(records, primary_id="client-a")


async def _final_state(repo: ClientRepository, client_ids):
    """Comparable end state: profiles, dependent counts and audit targets."""
    state = {}
    for client_id in client_ids:
        client = await repo.get_client(client_id)
        record = await repo.get_merge_record(client_id)
        state[client_id] = (
            client.model_dump() if client else None,
            await repo.count_dependents(client_id),
            record["merged_into_client_id"] if record else None,
        )
    return state


@pytest.mark.asyncio
async def test_merge_moves_everything_to_primary(executor, repo, clients, plan):
    """A keeps all six interactions; B and C are gone."""
    a, b, c = clients

    result = await executor.execute(plan, merged_by="staff-7")

    assert result.primary_id == a.id
    assert result.merged_ids == [b.id, c.id]
    assert result.reassigned_counts[DependentType.INTERACTION] == 4
    assert not result.already_merged

    assert (await repo.count_dependents(a.id))[DependentType.INTERACTION] == 6
    assert await repo.get_client(b.id) is None
    assert await repo.get_client(c.id) is None

    primary = await repo.get_client(a.id)
    assert primary.email == "dana@example.org"
    assert primary.phone == "478-555-0199"
    assert primary.city == "Macon"
    assert primary.created_at == BASE_TIME


@pytest.mark.asyncio
async def test_merge_writes_audit_trail(executor, repo, clients, plan):
    """Every merged-away id points at the primary in the audit table."""
    a, b, c = clients

    await executor.execute(plan, merged_by="staff-7")

    for duplicate in (b, c):
        record = await repo.get_merge_record(duplicate.id)
        assert record["merged_into_client_id"] == a.id
        assert record["merged_by"] == "staff-7"
    assert await repo.get_merge_record(a.id) is None


@pytest.mark.asyncio
async def test_counts_cover_every_dependent_type(executor, repo, clients):
    """Requests, disbursements and both relationship ends move too."""
    a, b, c = clients
    interaction = await repo.create_interaction(b.id)
    await repo.create_assistance_request(b.id, interaction, "utilities")
    await repo.create_disbursement(b.id, 5000, interaction)
    await repo.create_client_relationship(c.id, b.id, "spouse")
    plan = MergePlanner().plan([a, b], primary_id=a.id)

    result = await executor.execute(plan)

    assert result.reassigned_counts[DependentType.INTERACTION] == 3
    assert result.reassigned_counts[DependentType.ASSISTANCE_REQUEST] == 1
    assert result.reassigned_counts[DependentType.DISBURSEMENT] == 1
    assert result.reassigned_counts[DependentType.CLIENT_RELATIONSHIP] == 1
    assert await repo.list_dependent_ids(DependentType.DISBURSEMENT, a.id)


@pytest.mark.asyncio
async def test_resubmitting_completed_plan_is_a_no_op(executor, repo, clients, plan):
    """A second run reports already_merged and changes nothing."""
    await executor.execute(plan)
    before = await _snapshot(repo, plan.client_ids)

    again = await executor.execute(plan)

    assert again.already_merged
    assert again.merged_ids == []
    assert sum(again.reassigned_counts.values()) == 0
    assert await _snapshot(repo, plan.client_ids) == before


@pytest.mark.asyncio
async def test_two_records_without_dependents(executor, make_client, repo):
    """Smallest merge: one duplicate, nothing to move."""
    a = await make_client("Lee", "Park")
    b = await make_client("Lee", "Park", days=3)
    plan = MergePlanner().plan([a, b], primary_id=a.id)

    result = await executor.execute(plan)

    assert result.merged_ids == [b.id]
    assert sum(result.reassigned_counts.values()) == 0
    assert await repo.get_client(b.id) is None


class TestPartialFailure:
    """Tests for interrupted merges and resubmission."""

    @pytest.mark.asyncio
    async def test_interrupted_merge_resumes_to_same_state(
        self, db_client, repo, clients, plan
    ):
        """Resubmitting after a failed delete ends where a clean run would."""
        a, b, c = clients
        failing = FailingDeleteRepository(db_client, fail_ids={b.id})

        with pytest.raises(PartialFailureError) as exc_info:
            await MergeExecutor(failing, batch_size=1).execute(plan)

        assert exc_info.value.retry == "resubmit_same_plan"
        # B survives but owns nothing
        assert await repo.get_client(b.id) is not None
        assert sum((await repo.count_dependents(b.id)).values()) == 0
        assert (await repo.count_dependents(a.id))[DependentType.INTERACTION] == 6

        result = await MergeExecutor(repo, batch_size=1).execute(plan)

        assert result.merged_ids == [b.id, c.id]
        assert not result.already_merged
        assert await repo.get_client(b.id) is None
        assert await repo.get_client(c.id) is None
        assert (await repo.count_dependents(a.id))[DependentType.INTERACTION] == 6

    @pytest.mark.asyncio
    async def test_failed_merge_releases_locks(self, db_client, repo, clients, plan):
        """Locks do not outlive a failed run."""
        failing = FailingDeleteRepository(db_client, fail_ids={clients[1].id})

        with pytest.raises(PartialFailureError):
            await MergeExecutor(failing).execute(plan)

        assert await repo.acquire_merge_locks(plan.client_ids, "next", 60) is None

    @pytest.mark.asyncio
    async def test_failure_mid_reassignment_deletes_nothing(
        self, db_client, repo, clients, plan
    ):
        """A batch failing halfway leaves every duplicate in place."""
        a, b, c = clients
        failing = FailingBatchRepository(db_client, fail_on_batch=2)

        with pytest.raises(PartialFailureError):
            await MergeExecutor(failing, batch_size=1).execute(plan)

        assert await repo.get_client(b.id) is not None
        assert await repo.get_client(c.id) is not None
        assert (await repo.count_dependents(a.id))[DependentType.INTERACTION] == 3
        assert (await repo.count_dependents(b.id))[DependentType.INTERACTION] == 1
        assert await repo.get_merge_record(b.id) is None

        result = await MergeExecutor(repo, batch_size=1).execute(plan)

        assert result.merged_ids == [b.id, c.id]
        assert (await repo.count_dependents(a.id))[DependentType.INTERACTION] == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", ["reassign", "delete"])
    async def test_resumed_merge_matches_clean_run(
        self, db_client, repo, tmp_path, failure
    ):
        """Fail, resubmit, and end exactly where an uninterrupted merge ends."""
        plan = await _seed(repo)
        if failure == "reassign":
            failing = FailingBatchRepository(db_client, fail_on_batch=2)
        else:
            failing = FailingDeleteRepository(db_client, fail_ids={"client-c"})

        with pytest.raises(PartialFailureError):
            await MergeExecutor(failing, batch_size=1).execute(plan)
        assert await repo.get_client("client-c") is not None
        await MergeExecutor(repo, batch_size=1).execute(plan)

        clean_db = TursoClient(url=f"file:{tmp_path / 'clean.db'}")
        await clean_db.connect()
        try:
            clean_repo = ClientRepository(clean_db)
            await clean_repo.initialize()
            clean_plan = await _seed(clean_repo)
            await MergeExecutor(clean_repo, batch_size=1).execute(clean_plan)
            expected = await _final_state(clean_repo, clean_plan.client_ids)
        finally:
            await clean_db.close()

        assert clean_plan == plan
        assert await _final_state(repo, plan.client_ids) == expected

    @pytest.mark.asyncio
    async def test_leftover_duplicate_merged_elsewhere_updates_audit(
        self, db_client, repo, clients
    ):
        """The audit row follows a surviving duplicate to its new primary."""
        a, b, c = clients
        failing = FailingDeleteRepository(db_client, fail_ids={b.id})

        with pytest.raises(PartialFailureError):
            await MergeExecutor(failing).execute(
                MergePlanner().plan([a, b], primary_id=a.id)
            )
        assert (await repo.get_merge_record(b.id))["merged_into_client_id"] == a.id

        leftover = await repo.get_client(b.id)
        result = await MergeExecutor(repo).execute(
            MergePlanner().plan([c, leftover], primary_id=c.id)
        )

        assert result.merged_ids == [b.id]
        assert await repo.get_client(b.id) is None
        assert (await repo.get_merge_record(b.id))["merged_into_client_id"] == c.id


class TestConcurrency:
    """Tests for overlapping merges."""

    @pytest.mark.asyncio
    async def test_overlapping_merge_conflicts(self, db_client, clients):
        """Two merges sharing B: one completes, the other conflicts."""
        a, b, c = clients
        pausing = PausingRepository(db_client)
        first = MergePlanner().plan([a, b], primary_id=a.id)
        second = MergePlanner().plan([c, b], primary_id=c.id)

        running = asyncio.create_task(MergeExecutor(pausing).execute(first))
        await pausing.reassigning.wait()

        with pytest.raises(ConflictError) as exc_info:
            await MergeExecutor(pausing).execute(second)

        pausing.proceed.set()
        result = await running

        assert exc_info.value.retry == "repropose"
        assert result.merged_ids == [b.id]
        assert await pausing.get_client(c.id) is not None
        assert (await pausing.count_dependents(c.id))[DependentType.INTERACTION] == 2

    @pytest.mark.asyncio
    async def test_lapsed_lock_taken_over_stops_first_merge(self, db_client, clients):
        """A merge that outlives its locks stops instead of racing the new holder."""
        a, b, c = clients
        clock = [1_000.0]
        pausing = PausingRepository(db_client, clock=lambda: clock[0])
        other = ClientRepository(db_client, clock=lambda: clock[0])
        first = MergePlanner().plan([a, b], primary_id=a.id)
        second = MergePlanner().plan([c, b], primary_id=c.id)

        running = asyncio.create_task(
            MergeExecutor(pausing, lock_ttl_seconds=60).execute(first)
        )
        await pausing.reassigning.wait()
        clock[0] += 61

        result = await MergeExecutor(other, lock_ttl_seconds=60).execute(second)
        pausing.proceed.set()
        with pytest.raises(PartialFailureError) as exc_info:
            await running

        assert result.merged_ids == [b.id]
        assert exc_info.value.context["step"] == "refresh_locks"
        assert (await other.get_merge_record(b.id))["merged_into_client_id"] == c.id
        assert (await other.count_dependents(a.id))[DependentType.INTERACTION] == 2
        assert (await other.count_dependents(c.id))[DependentType.INTERACTION] == 4
        assert await other.acquire_merge_locks(first.client_ids, "next", 60) is None

    @pytest.mark.asyncio
    async def test_stale_plan_after_other_merge_conflicts(
        self, executor, repo, clients
    ):
        """B already went into A, so a plan merging B into C is stale."""
        a, b, c = clients
        stale = MergePlanner().plan([c, b], primary_id=c.id)
        await executor.execute(MergePlanner().plan([a, b], primary_id=a.id))

        with pytest.raises(ConflictError):
            await executor.execute(stale)

        assert (await repo.count_dependents(c.id))[DependentType.INTERACTION] == 2
        assert await repo.acquire_merge_locks(stale.client_ids, "next", 60) is None

    @pytest.mark.asyncio
    async def test_merged_away_primary_conflicts(self, executor, clients):
        """A plan keeping a record that was merged away is stale."""
        a, b, c = clients
        stale = MergePlanner().plan([b, c], primary_id=b.id)
        await executor.execute(MergePlanner().plan([a, b], primary_id=a.id))

        with pytest.raises(ConflictError):
            await executor.execute(stale)


class TestValidation:
    """Tests for plans rejected before anything is written."""

    @pytest.mark.asyncio
    async def test_unknown_duplicate_rejected(self, executor, repo, clients):
        """An id that never existed is a validation error; A is untouched."""
        a = clients[0]
        plan = MergePlan(
            primary_id=a.id,
            duplicate_ids=("ghost",),
            canonical_fields={"first_name": "X", "last_name": "Y"},
        )

        with pytest.raises(ValidationError):
            await executor.execute(plan)

        assert (await repo.get_client(a.id)).first_name == "Dana"

    @pytest.mark.asyncio
    async def test_unknown_primary_rejected(self, executor, clients):
        """Primary must exist."""
        plan = MergePlan(
            primary_id="ghost",
            duplicate_ids=(clients[1].id,),
            canonical_fields={"first_name": "X", "last_name": "Y"},
        )

        with pytest.raises(ValidationError):
            await executor.execute(plan)

    @pytest.mark.parametrize(
        "primary_id, duplicate_ids, fields",
        [
            ("a", (), {"first_name": "X", "last_name": "Y"}),
            ("a", ("a",), {"first_name": "X", "last_name": "Y"}),
            ("a", ("b", "b"), {"first_name": "X", "last_name": "Y"}),
            ("a", ("b",), {"first_name": "X", "last_name": None}),
            ("a", ("b",), {"first_name": "X", "last_name": "Y", "ssn": "1"}),
        ],
    )
    def test_malformed_plans(self, primary_id, duplicate_ids, fields):
        """Shape errors are caught without storage."""
        plan = MergePlan(
            primary_id=primary_id,
            duplicate_ids=duplicate_ids,
            canonical_fields=fields,
        )

        with pytest.raises(ValidationError):
            validate_plan_shape(plan)

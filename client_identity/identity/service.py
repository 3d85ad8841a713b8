"""IdentityResolutionService is the facade used by the calling flows.

Intake triage, new-client creation and the client-search merge all go
through here instead of filtering and merging on their own.

Merge workflow states:

    Proposed -> Reviewing -> Executing -> Completed
                                       -> Failed -> Executing (same plan)

Nothing moves from Proposed to Executing without a reviewer action.
"""

from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from client_identity.config import settings
from client_identity.identity.candidate_search import CandidateSearch
from client_identity.identity.errors import (
    ConflictError,
    MergeError,
    PartialFailureError,
    ValidationError,
    WorkflowStateError,
)
from client_identity.identity.executor import MergeExecutor
from client_identity.identity.planner import MergePlanner
from client_identity.identity.schemas import (
    ClientProfile,
    MergePlan,
    MergeResult,
    MergeWorkflow,
    PartialClientProfile,
    SearchOutcome,
    WorkflowState,
)

if TYPE_CHECKING:
    from client_identity.repositories.base import ClientStore

logger = structlog.get_logger()


class WorkflowNotFoundError(WorkflowStateError):
    """Raised when a workflow id is unknown to this service."""

    code = "workflow_not_found"


class IdentityResolutionService:
    """Facade over candidate search, merge planning and merge execution.

    Holds in-memory merge workflows, bounded in age and number; the search,
    planner and executor themselves stay stateless.
    """

    def __init__(
        self,
        store: "ClientStore",
        search: CandidateSearch | None = None,
        planner: MergePlanner | None = None,
        executor: MergeExecutor | None = None,
        workflow_ttl_seconds: int | None = None,
        max_workflows: int | None = None,
    ):
        """Initialize service with its components.

        Args:
            store: Client storage (used to load records for workflows)
            search: Candidate search (built on store if omitted)
            planner: Merge planner (default if omitted)
            executor: Merge executor (built on store if omitted)
            workflow_ttl_seconds: Idle time after which a workflow is
                dropped (settings.workflow_ttl_seconds)
            max_workflows: Workflows kept at once (settings.max_workflows)
        """
        self._store = store
        self._search = search or CandidateSearch(store)
        self._planner = planner or MergePlanner()
        self._executor = executor or MergeExecutor(store)
        self._workflow_ttl = timedelta(
            seconds=workflow_ttl_seconds or settings.workflow_ttl_seconds
        )
        self._max_workflows = max_workflows or settings.max_workflows
        self._workflows: dict[UUID, MergeWorkflow] = {}

    # Stateless operations

    async def propose_matches(
        self,
        profile: PartialClientProfile,
        exclude_ids: Iterable[str] = (),
        threshold: int | None = None,
        limit: int | None = None,
    ) -> SearchOutcome:
        """Rank existing clients that may be the same person as profile.

        Never raises on storage failure; check SearchOutcome.status.
        """
        return await self._search.search(
            profile, exclude_ids=exclude_ids, threshold=threshold, limit=limit
        )

    def create_merge_plan(
        self,
        records: Sequence[ClientProfile],
        primary_id: str,
        overrides: Mapping[str, str | None] | None = None,
    ) -> MergePlan:
        """Build a merge plan from records already loaded by the caller.

        Raises:
            ValidationError: If the records cannot be merged as requested
        """
        return self._planner.plan(records, primary_id, overrides)

    async def execute_merge(
        self,
        plan: MergePlan,
        merged_by: str | None = None,
    ) -> MergeResult:
        """Execute a reviewed merge plan.

        Raises:
            MergeError: One of ValidationError, ConflictError,
                PartialFailureError or StorageError
        """
        return await self._executor.execute(plan, merged_by=merged_by)

    # Workflows

    async def start_workflow(self, client_ids: Sequence[str]) -> MergeWorkflow:
        """Open a merge workflow for clients picked from search results.

        Args:
            client_ids: Candidate ids chosen by staff, in priority order

        Returns:
            MergeWorkflow in state Proposed

        Raises:
            ValidationError: Fewer than two distinct existing clients
        """
        ids = list(dict.fromkeys(client_ids))
        records = await self._load_records(ids)
        workflow = MergeWorkflow(client_ids=ids, records=records)
        workflow.transition(WorkflowState.PROPOSED)
        self._prune()
        self._workflows[workflow.id] = workflow
        logger.info(
            "merge workflow proposed",
            workflow_id=str(workflow.id),
            client_ids=ids,
        )
        return workflow

    def get_workflow(self, workflow_id: UUID) -> MergeWorkflow:
        """Look up a workflow.

        Raises:
            WorkflowNotFoundError: If the id is unknown
        """
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Merge workflow {workflow_id} not found.")
        return workflow

    async def review(
        self,
        workflow_id: UUID,
        primary_id: str,
        overrides: Mapping[str, str | None] | None = None,
    ) -> MergeWorkflow:
        """Choose the primary and edit canonical fields, producing a plan.

        Records are reloaded from storage each time so the plan reflects
        fresh data.

        Raises:
            WorkflowStateError: Unless the workflow is Proposed or Reviewing
            ValidationError: If the plan is invalid (workflow unchanged)
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.state not in (WorkflowState.PROPOSED, WorkflowState.REVIEWING):
            raise WorkflowStateError(
                f"Cannot review a merge workflow that is {workflow.state.value}."
            )

        records = await self._load_records(workflow.client_ids)
        plan = self._planner.plan(records, primary_id, overrides)

        workflow.records = records
        workflow.plan = plan
        workflow.last_error = None
        workflow.transition(WorkflowState.REVIEWING)
        return workflow

    async def execute_workflow(
        self,
        workflow_id: UUID,
        merged_by: str | None = None,
    ) -> MergeWorkflow:
        """Execute the reviewed plan of a workflow.

        From Failed the stored plan is resubmitted unchanged.

        Raises:
            WorkflowStateError: Unless the workflow is Reviewing or Failed
            MergeError: Re-raised after the workflow state is updated
        """
        workflow = self.get_workflow(workflow_id)
        if workflow.state not in (WorkflowState.REVIEWING, WorkflowState.FAILED):
            raise WorkflowStateError(
                f"Cannot execute a merge workflow that is {workflow.state.value}."
            )
        if workflow.plan is None:
            raise WorkflowStateError("Merge workflow has no reviewed plan.")

        workflow.transition(WorkflowState.EXECUTING)
        log = logger.bind(workflow_id=str(workflow.id))
        try:
            result = await self._executor.execute(workflow.plan, merged_by=merged_by)
        except PartialFailureError as e:
            self._fail(workflow, e, WorkflowState.FAILED)
            log.warning("merge workflow failed", error=e.code)
            raise
        except ConflictError as e:
            # Stale data: the reviewer must start again from fresh records
            workflow.plan = None
            self._fail(workflow, e, WorkflowState.PROPOSED)
            log.info("merge workflow conflicted", error=e.code)
            raise
        except MergeError as e:
            # Nothing was written
            self._fail(workflow, e, WorkflowState.REVIEWING)
            log.info("merge workflow not executed", error=e.code)
            raise

        workflow.result = result
        workflow.last_error = None
        workflow.transition(WorkflowState.COMPLETED)
        log.info("merge workflow completed", already_merged=result.already_merged)
        return workflow

    def _fail(
        self,
        workflow: MergeWorkflow,
        error: MergeError,
        state: WorkflowState,
    ) -> None:
        workflow.last_error = error.to_dict()
        workflow.transition(state, reason=error.code)

    def _prune(self) -> None:
        """Drop idle workflows, then the oldest ones while at capacity.

        Executing workflows are never dropped.
        """
        cutoff = datetime.now(UTC) - self._workflow_ttl
        idle = sorted(
            (
                w
                for w in self._workflows.values()
                if w.state is not WorkflowState.EXECUTING
            ),
            key=lambda w: w.updated_at,
        )
        expired = [w for w in idle if w.updated_at < cutoff]
        overflow = len(self._workflows) - len(expired) - self._max_workflows + 1
        evicted = expired + idle[len(expired) : len(expired) + max(overflow, 0)]
        for workflow in evicted:
            del self._workflows[workflow.id]
        if evicted:
            logger.info(
                "merge workflows evicted",
                expired=len(expired),
                evicted=len(evicted),
                remaining=len(self._workflows),
            )

    async def _load_records(self, client_ids: Sequence[str]) -> list[ClientProfile]:
        records = await self._store.get_clients(client_ids)
        if len(records) < 2:
            raise ValidationError(
                "A merge needs at least two existing client records.",
                found=[r.id for r in records],
            )
        return records

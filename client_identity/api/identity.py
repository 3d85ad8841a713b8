"""Identity resolution API endpoints.

Provides candidate matching for intake triage and new-client creation,
merge planning and execution for the client-search merge flow, and the
reviewed merge workflow used by all three.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from client_identity.identity.errors import (
    ConflictError,
    IdentityError,
    PartialFailureError,
    StorageError,
    ValidationError,
    WorkflowStateError,
)
from client_identity.identity.schemas import (
    ClientProfile,
    MergePlan,
    MergeResult,
    MergeWorkflow,
    PartialClientProfile,
    SearchOutcome,
)
from client_identity.identity.service import (
    IdentityResolutionService,
    WorkflowNotFoundError,
)

router = APIRouter(prefix="/identity", tags=["identity"])

# Most specific first
_STATUS_CODES: tuple[tuple[type[IdentityError], int], ...] = (
    (WorkflowNotFoundError, 404),
    (WorkflowStateError, 409),
    (ValidationError, 422),
    (ConflictError, 409),
    (PartialFailureError, 500),
    (StorageError, 503),
)


class MatchRequest(BaseModel):
    """Request to find existing clients matching a profile."""

    profile: PartialClientProfile | None = Field(
        default=None, description="Profile typed by staff"
    )
    barcode_fields: dict[str, str] | None = Field(
        default=None,
        description="Decoded licence elements (DAC, DCS, DAG, ...) if scanned",
    )
    exclude_ids: list[str] = Field(
        default_factory=list,
        description="Client ids already known to be unrelated",
    )
    threshold: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, ge=1, le=100)


class MergePlanRequest(BaseModel):
    """Request to plan a merge of records the caller already holds."""

    records: list[ClientProfile] = Field(description="Records to merge, in order")
    primary_id: str = Field(description="Id of the surviving record")
    overrides: dict[str, str | None] = Field(
        default_factory=dict, description="Reviewer edits to canonical fields"
    )


class MergeRequest(BaseModel):
    """Request to execute a reviewed merge plan."""

    plan: MergePlan
    merged_by: str | None = Field(default=None, description="Staff identifier")


class StartWorkflowRequest(BaseModel):
    """Request to open a merge workflow from selected candidates."""

    client_ids: list[str] = Field(min_length=2, description="Selected client ids")


class ReviewRequest(BaseModel):
    """Reviewer's choice of primary record and field edits."""

    primary_id: str
    overrides: dict[str, str | None] = Field(default_factory=dict)


class ExecuteRequest(BaseModel):
    """Request to execute a workflow's reviewed plan."""

    merged_by: str | None = None


def get_identity_service(request: Request) -> IdentityResolutionService:
    """Dependency to get IdentityResolutionService from app state."""
    if not hasattr(request.app.state, "identity_service"):
        raise HTTPException(
            status_code=503, detail="IdentityResolutionService not initialized"
        )
    return request.app.state.identity_service


def to_http_exception(error: IdentityError) -> HTTPException:
    """Map an identity error to an HTTP error with a retry hint.

    The body always names the error and the retry policy so the UI can
    tell "nothing happened" from "partially applied".
    """
    status_code = next(
        (code for error_type, code in _STATUS_CODES if isinstance(error, error_type)),
        500,
    )
    return HTTPException(status_code=status_code, detail=error.to_dict())


@router.post("/matches", response_model=SearchOutcome)
async def propose_matches(
    request: MatchRequest,
    service: IdentityResolutionService = Depends(get_identity_service),
) -> SearchOutcome:
    """Rank existing clients that may be the same person.

    Accepts either a typed profile or decoded barcode fields. A storage
    failure is reported in the body (status "failed"), not as an HTTP error.
    """
    if request.barcode_fields:
        profile = PartialClientProfile.from_barcode_fields(request.barcode_fields)
    elif request.profile is not None:
        profile = request.profile
    else:
        raise HTTPException(
            status_code=422,
            detail=ValidationError("Provide a profile or barcode fields.").to_dict(),
        )

    return await service.propose_matches(
        profile,
        exclude_ids=request.exclude_ids,
        threshold=request.threshold,
        limit=request.limit,
    )


@router.post("/merge-plans", response_model=MergePlan)
async def create_merge_plan(
    request: MergePlanRequest,
    service: IdentityResolutionService = Depends(get_identity_service),
) -> MergePlan:
    """Resolve canonical fields for records the caller is reviewing."""
    try:
        return service.create_merge_plan(
            request.records, request.primary_id, request.overrides
        )
    except IdentityError as e:
        raise to_http_exception(e) from e


@router.post("/merges", response_model=MergeResult)
async def execute_merge(
    request: MergeRequest,
    service: IdentityResolutionService = Depends(get_identity_service),
) -> MergeResult:
    """Execute a reviewed merge plan.

    Resubmitting a plan that already completed returns already_merged=true.
    """
    try:
        return await service.execute_merge(request.plan, merged_by=request.merged_by)
    except IdentityError as e:
        raise to_http_exception(e) from e


@router.post("/workflows", response_model=MergeWorkflow, status_code=201)
async def start_workflow(
    request: StartWorkflowRequest,
    service: IdentityResolutionService = Depends(get_identity_service),
) -> MergeWorkflow:
    """Open a merge workflow for clients selected from search results."""
    try:
        return await service.start_workflow(request.client_ids)
    except IdentityError as e:
        raise to_http_exception(e) from e


@router.get("/workflows/{workflow_id}", response_model=MergeWorkflow)
async def get_workflow(
    workflow_id: UUID,
    service: IdentityResolutionService = Depends(get_identity_service),
) -> MergeWorkflow:
    """Get a merge workflow's state, plan and history."""
    try:
        return service.get_workflow(workflow_id)
    except IdentityError as e:
        raise to_http_exception(e) from e


@router.post("/workflows/{workflow_id}/review", response_model=MergeWorkflow)
async def review_workflow(
    workflow_id: UUID,
    request: ReviewRequest,
    service: IdentityResolutionService = Depends(get_identity_service),
) -> MergeWorkflow:
    """Pick the primary record and edit canonical fields."""
    try:
        return await service.review(
            workflow_id, request.primary_id, request.overrides
        )
    except IdentityError as e:
        raise to_http_exception(e) from e


@router.post("/workflows/{workflow_id}/execute", response_model=MergeWorkflow)
async def execute_workflow(
    workflow_id: UUID,
    request: ExecuteRequest,
    service: IdentityResolutionService = Depends(get_identity_service),
) -> MergeWorkflow:
    """Execute the reviewed plan (or resubmit it after a partial failure)."""
    try:
        return await service.execute_workflow(workflow_id, merged_by=request.merged_by)
    except IdentityError as e:
        raise to_http_exception(e) from e

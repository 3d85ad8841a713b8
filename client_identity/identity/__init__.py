"""Client identity resolution and merge.

This module provides:
- MatchScorer: Field-weighted, deterministic similarity scores
- CandidateSearch: Storage lookup plus ranking of possible duplicates
- MergePlanner: Canonical field resolution into a MergePlan (pure)
- MergeExecutor: Locked, verified, resumable merge saga
- IdentityResolutionService: Facade and merge workflow state machine
"""

from client_identity.identity.candidate_search import CandidateSearch
from client_identity.identity.errors import (
    ConflictError,
    IdentityError,
    MergeError,
    PartialFailureError,
    StorageError,
    ValidationError,
    WorkflowStateError,
)
from client_identity.identity.executor import MergeExecutor
from client_identity.identity.planner import MergePlanner
from client_identity.identity.schemas import (
    ClientProfile,
    DependentType,
    MatchCandidate,
    MergePlan,
    MergeResult,
    MergeWorkflow,
    PartialClientProfile,
    SearchOutcome,
    SearchStatus,
    WorkflowState,
)
from client_identity.identity.scorer import MatchScorer
from client_identity.identity.service import IdentityResolutionService

__all__ = [
    "CandidateSearch",
    "ClientProfile",
    "ConflictError",
    "DependentType",
    "IdentityError",
    "IdentityResolutionService",
    "MatchCandidate",
    "MatchScorer",
    "MergeError",
    "MergeExecutor",
    "MergePlan",
    "MergePlanner",
    "MergeResult",
    "MergeWorkflow",
    "PartialClientProfile",
    "PartialFailureError",
    "SearchOutcome",
    "SearchStatus",
    "StorageError",
    "ValidationError",
    "WorkflowState",
    "WorkflowStateError",
]

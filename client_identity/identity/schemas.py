"""Identity resolution schemas.

Defines the client profile models, scored candidates, merge plans and the
merge workflow record shared by search, planning and execution.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Identity attributes in display order. Merge resolution walks this tuple.
CLIENT_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "zip_code",
    "county",
)

REQUIRED_FIELDS: tuple[str, ...] = ("first_name", "last_name")

# AAMVA PDF417 element ids -> profile field
_BARCODE_ELEMENTS: tuple[tuple[str, str], ...] = (
    ("DAC", "first_name"),
    ("DCT", "first_name"),
    ("DCS", "last_name"),
    ("DAG", "address"),
    ("DAI", "city"),
    ("DAJ", "state"),
    ("DAK", "zip_code"),
)


class PartialClientProfile(BaseModel):
    """Identity attributes as typed by staff or decoded from a barcode.

    Every field is optional; blank strings are treated as missing.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    county: str | None = None

    @field_validator(*CLIENT_FIELDS, mode="after")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    @classmethod
    def from_barcode_fields(cls, fields: Mapping[str, str]) -> "PartialClientProfile":
        """Build a query profile from decoded driver licence elements.

        Expected keys are AAMVA element ids (DAC/DCT first name, DCS last
        name, DAG street, DAI city, DAJ state, DAK postal code). Unknown
        keys are ignored. ZIP+4 postal codes are trimmed to five digits.

        Args:
            fields: Mapping of element id -> raw decoded value

        Returns:
            PartialClientProfile populated from the scanned values
        """
        values: dict[str, str] = {}
        for element, field_name in _BARCODE_ELEMENTS:
            raw = (fields.get(element) or "").strip()
            if raw and field_name not in values:
                values[field_name] = raw
        if zip_code := values.get("zip_code"):
            digits = "".join(ch for ch in zip_code if ch.isdigit())
            values["zip_code"] = digits[:5] or zip_code
        return cls(**values)

    def populated_fields(self) -> dict[str, str]:
        """Return only the fields that carry a value."""
        return {
            name: value
            for name in CLIENT_FIELDS
            if (value := getattr(self, name)) is not None
        }


class ClientProfile(PartialClientProfile):
    """A persisted client record, identified by an opaque stable id."""

    id: str = Field(description="Opaque stable client id")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the client record was created",
    )


class MatchCandidate(BaseModel):
    """An existing client proposed as a possible duplicate of a query."""

    model_config = ConfigDict(frozen=True)

    client: ClientProfile
    score: int = Field(ge=0, description="Additive rule score")
    percent: int = Field(
        ge=0,
        le=100,
        description="Score relative to the maximum reachable for the query",
    )
    matched_fields: list[str] = Field(
        default_factory=list,
        description="Rules that contributed to the score",
    )


class SearchStatus(str, Enum):
    """Outcome of a candidate search."""

    MATCHES = "matches"
    NO_MATCHES = "no_matches"
    SKIPPED = "skipped"
    FAILED = "failed"


class SearchOutcome(BaseModel):
    """Ranked candidates plus whether the search actually ran."""

    status: SearchStatus
    candidates: list[MatchCandidate] = Field(default_factory=list)
    error: str | None = Field(
        default=None, description="Storage error message when status is failed"
    )

    @property
    def failed(self) -> bool:
        return self.status is SearchStatus.FAILED


class MergePlan(BaseModel):
    """Declarative description of a merge about to be executed."""

    model_config = ConfigDict(frozen=True)

    primary_id: str = Field(description="Surviving client id")
    duplicate_ids: tuple[str, ...] = Field(description="Client ids merged away")
    canonical_fields: dict[str, str | None] = Field(
        description="Resolved attribute values written onto the primary"
    )
    preserved_created_at: datetime | None = Field(
        default=None,
        description="Oldest creation time among the source records",
    )

    @property
    def client_ids(self) -> tuple[str, ...]:
        """Every id the plan touches, primary first."""
        return (self.primary_id, *self.duplicate_ids)


class DependentType(str, Enum):
    """Record types that reference a client by foreign key."""

    INTERACTION = "interaction"
    ASSISTANCE_REQUEST = "assistance_request"
    DISBURSEMENT = "disbursement"
    PUBLIC_INTAKE = "public_intake"
    CLIENT_ALERT = "client_alert"
    CLIENT_RELATIONSHIP = "client_relationship"


class MergeResult(BaseModel):
    """Outcome of a successful (or already completed) merge."""

    primary_id: str
    merged_ids: list[str] = Field(
        default_factory=list, description="Duplicates deleted by this run"
    )
    reassigned_counts: dict[DependentType, int] = Field(default_factory=dict)
    already_merged: bool = Field(
        default=False,
        description="True when a previous run had already completed the plan",
    )


class WorkflowState(str, Enum):
    """Lifecycle of a single merge workflow."""

    PROPOSED = "proposed"
    REVIEWING = "reviewing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowTransition(BaseModel):
    """One recorded state change."""

    state: WorkflowState
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reason: str | None = None


class MergeWorkflow(BaseModel):
    """Mutable state of one human-driven merge, held by the service."""

    id: UUID = Field(default_factory=uuid4)
    client_ids: list[str]
    state: WorkflowState = WorkflowState.PROPOSED
    records: list[ClientProfile] = Field(default_factory=list)
    plan: MergePlan | None = None
    result: MergeResult | None = None
    last_error: dict | None = None
    history: list[WorkflowTransition] = Field(default_factory=list)

    @property
    def updated_at(self) -> datetime | None:
        """Time of the latest transition, None before the first."""
        return self.history[-1].at if self.history else None

    def transition(self, state: WorkflowState, reason: str | None = None) -> None:
        """Move to a new state and record it."""
        self.state = state
        self.history.append(WorkflowTransition(state=state, reason=reason))

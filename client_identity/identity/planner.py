"""MergePlanner builds a merge plan from duplicate client records.

Pure: no storage access, safe to recompute every time the reviewer edits.
"""

from collections.abc import Mapping, Sequence

from client_identity.identity.errors import ValidationError
from client_identity.identity.schemas import (
    CLIENT_FIELDS,
    REQUIRED_FIELDS,
    ClientProfile,
    MergePlan,
)


def resolve_fields(records: Sequence[ClientProfile]) -> dict[str, str | None]:
    """Default resolution: first non-empty value per field, in record order."""
    resolved: dict[str, str | None] = {}
    for field in CLIENT_FIELDS:
        resolved[field] = next(
            (value for record in records if (value := getattr(record, field))),
            None,
        )
    return resolved


class MergePlanner:
    """Produces a MergePlan from two or more records of the same person."""

    def plan(
        self,
        records: Sequence[ClientProfile],
        primary_id: str,
        overrides: Mapping[str, str | None] | None = None,
    ) -> MergePlan:
        """Resolve canonical fields and split primary from duplicates.

        Args:
            records: Source client records, in reviewer's priority order
            primary_id: Id of the record that survives the merge
            overrides: Field values the reviewer edited by hand; a blank
                value clears the field

        Returns:
            MergePlan with duplicate_ids in the order of records

        Raises:
            ValidationError: Fewer than two records, repeated ids, primary
                not among records, unknown override fields, or missing
                first/last name after resolution
        """
        overrides = dict(overrides or {})

        if len(records) < 2:
            raise ValidationError("A merge needs at least two client records.")

        ids = [record.id for record in records]
        if len(set(ids)) != len(ids):
            raise ValidationError("The same client record was selected twice.")

        if primary_id not in ids:
            raise ValidationError(
                f"Primary client {primary_id} is not among the selected records."
            )

        unknown = set(overrides) - set(CLIENT_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown client fields: {sorted(unknown)}")

        canonical = resolve_fields(records)
        for field, value in overrides.items():
            canonical[field] = (value or "").strip() or None

        missing = [field for field in REQUIRED_FIELDS if not canonical.get(field)]
        if missing:
            raise ValidationError(
                "First name and last name are required.", missing=missing
            )

        return MergePlan(
            primary_id=primary_id,
            duplicate_ids=tuple(i for i in ids if i != primary_id),
            canonical_fields=canonical,
            preserved_created_at=min(record.created_at for record in records),
        )

"""Candidate search for possible duplicate clients.

Pulls loosely matching clients from storage, scores them with MatchScorer
and returns the best ones. Shared by the intake triage, new-client and
client-search merge flows so all three rank candidates the same way.
"""

from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog

from client_identity.config import settings
from client_identity.identity.errors import StorageError
from client_identity.identity.schemas import (
    MatchCandidate,
    PartialClientProfile,
    SearchOutcome,
    SearchStatus,
)
from client_identity.identity.scorer import MatchScorer, normalize_phone

if TYPE_CHECKING:
    from client_identity.repositories.base import ClientStore

logger = structlog.get_logger()

# A field only drives the storage lookup once it is longer than this
MIN_NAME_LENGTH = 2
MIN_EMAIL_LENGTH = 5
MIN_PHONE_DIGITS = 9


def lookup_terms(query: PartialClientProfile) -> dict[str, str]:
    """Query fields long enough to justify a storage lookup.

    Short input would match most of the table, so it is left out.

    Returns:
        Keyword arguments for ClientStore.find_clients (may be empty)
    """
    terms: dict[str, str] = {}
    if query.first_name and len(query.first_name) > MIN_NAME_LENGTH:
        terms["first_name"] = query.first_name
    if query.last_name and len(query.last_name) > MIN_NAME_LENGTH:
        terms["last_name"] = query.last_name
    if query.email and len(query.email) > MIN_EMAIL_LENGTH:
        terms["email"] = query.email
    digits = normalize_phone(query.phone)
    if len(digits) > MIN_PHONE_DIGITS:
        terms["phone_digits"] = digits
    return terms


class CandidateSearch:
    """Finds and ranks existing clients that may be the same person.

    Read-only; safe to run concurrently for any number of callers.
    """

    def __init__(
        self,
        store: "ClientStore",
        scorer: MatchScorer | None = None,
        threshold: int | None = None,
        limit: int | None = None,
        fetch_limit: int | None = None,
    ):
        """Initialize search with its storage collaborator.

        Args:
            store: Client storage to query
            scorer: Scorer for ranking (default rule set if omitted)
            threshold: Default minimum score, exclusive (settings.match_threshold)
            limit: Default maximum results (settings.match_limit)
            fetch_limit: Cap on rows pulled by the broad lookup
        """
        self._store = store
        self._scorer = scorer or MatchScorer()
        self._threshold = (
            threshold if threshold is not None else settings.match_threshold
        )
        self._limit = limit if limit is not None else settings.match_limit
        self._fetch_limit = (
            fetch_limit if fetch_limit is not None else settings.search_fetch_limit
        )

    async def search(
        self,
        query: PartialClientProfile,
        exclude_ids: Iterable[str] = (),
        threshold: int | None = None,
        limit: int | None = None,
    ) -> SearchOutcome:
        """Find clients scoring above threshold against query.

        Args:
            query: Profile typed or scanned by staff
            exclude_ids: Ids known to be unrelated (the querying client,
                clients already linked to the interaction, ...)
            threshold: Minimum score, exclusive
            limit: Maximum candidates returned

        Returns:
            SearchOutcome. Status is skipped when no field is long enough to
            search on and failed when storage errored; neither raises.
        """
        threshold = self._threshold if threshold is None else threshold
        limit = self._limit if limit is None else limit

        terms = lookup_terms(query)
        if not terms:
            return SearchOutcome(status=SearchStatus.SKIPPED)
        if limit <= 0:
            return SearchOutcome(status=SearchStatus.NO_MATCHES)

        excluded = set(exclude_ids)
        try:
            rows = await self._store.find_clients(
                **terms,
                rank=query,
                weights=self._scorer.field_weights(),
                exclude_ids=sorted(excluded),
                limit=max(self._fetch_limit, limit),
            )
        except StorageError as e:
            logger.warning(
                "candidate search failed",
                fields=sorted(terms),
                error=str(e),
            )
            return SearchOutcome(status=SearchStatus.FAILED, error=e.message)

        candidates = [
            MatchCandidate(
                client=client,
                score=self._scorer.score(query, client),
                percent=self._scorer.percent(query, client),
                matched_fields=self._scorer.matched_fields(query, client),
            )
            for client in rows
            if client.id not in excluded
        ]
        ranked = sorted(
            (c for c in candidates if c.score > threshold),
            key=lambda c: (c.score, c.client.created_at, c.client.id),
            reverse=True,
        )[:limit]

        logger.info(
            "candidate search completed",
            fields=sorted(terms),
            fetched=len(rows),
            excluded=len(excluded),
            returned=len(ranked),
        )

        if not ranked:
            return SearchOutcome(status=SearchStatus.NO_MATCHES)
        return SearchOutcome(status=SearchStatus.MATCHES, candidates=ranked)

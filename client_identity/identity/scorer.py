"""Field-weighted similarity scoring between a query and a client record.

Scores are additive, deterministic integers so the percentage shown to staff
is stable and explainable:

    first name exact   +30
    last name exact    +30
    email exact        +25
    phone digits exact +20
    address contained  +10
    city exact         +5

All string comparisons ignore case. Phones compare on digits only. A field
missing on either side contributes nothing.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from client_identity.identity.schemas import ClientProfile, PartialClientProfile

_NON_DIGITS = re.compile(r"\D")


def normalize_text(value: str | None) -> str:
    """Lower-case and trim a string field; None becomes empty."""
    if value is None:
        return ""
    return value.strip().lower()


def normalize_phone(value: str | None) -> str:
    """Strip formatting punctuation, keeping only digits."""
    if value is None:
        return ""
    return _NON_DIGITS.sub("", value)


def _exact(left: str, right: str) -> bool:
    return left == right


def _contained(left: str, right: str) -> bool:
    return left in right or right in left


@dataclass(frozen=True)
class MatchRule:
    """One weighted field comparison."""

    field: str
    weight: int
    normalize: Callable[[str | None], str] = normalize_text
    compare: Callable[[str, str], bool] = _exact

    def applies_to(self, query: PartialClientProfile) -> bool:
        return bool(self.normalize(getattr(query, self.field)))

    def matches(self, query: PartialClientProfile, candidate: ClientProfile) -> bool:
        left = self.normalize(getattr(query, self.field))
        right = self.normalize(getattr(candidate, self.field))
        if not left or not right:
            return False
        return self.compare(left, right)


DEFAULT_RULES: tuple[MatchRule, ...] = (
    MatchRule("first_name", 30),
    MatchRule("last_name", 30),
    MatchRule("email", 25),
    MatchRule("phone", 20, normalize=normalize_phone),
    MatchRule("address", 10, compare=_contained),
    MatchRule("city", 5),
)


class MatchScorer:
    """Scores a query profile against one candidate client record.

    Pure and stateless apart from its rule set; safe to share across
    concurrent searches.
    """

    def __init__(self, rules: tuple[MatchRule, ...] = DEFAULT_RULES):
        self._rules = rules

    def score(self, query: PartialClientProfile, candidate: ClientProfile) -> int:
        """Sum the weights of every rule that matches."""
        return sum(
            rule.weight for rule in self._rules if rule.matches(query, candidate)
        )

    def matched_fields(
        self, query: PartialClientProfile, candidate: ClientProfile
    ) -> list[str]:
        """Names of the fields whose rule fired, in rule order."""
        return [rule.field for rule in self._rules if rule.matches(query, candidate)]

    def max_score(self, query: PartialClientProfile) -> int:
        """Highest score reachable given the query's populated fields."""
        return sum(rule.weight for rule in self._rules if rule.applies_to(query))

    def field_weights(self) -> dict[str, int]:
        """Total rule weight per field, for ordering storage lookups."""
        weights: dict[str, int] = {}
        for rule in self._rules:
            weights[rule.field] = weights.get(rule.field, 0) + rule.weight
        return weights

    def percent(self, query: PartialClientProfile, candidate: ClientProfile) -> int:
        """Score as a whole percentage of max_score (0 when nothing applies)."""
        reachable = self.max_score(query)
        if reachable == 0:
            return 0
        return round(self.score(query, candidate) * 100 / reachable)

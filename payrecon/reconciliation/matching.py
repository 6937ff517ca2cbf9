"""
Matching Engine - scores one external transaction against a candidate pool.

Tiers, in order of precedence:
1. Reference match (confidence 100): normalized references are equal or one
   contains the other. The first such candidate wins immediately.
2. Amount + same calendar day (confidence 95).
3. Amount + within ``date_window_days`` (confidence 80 - 5 * days).

Amounts match when they differ by at most ``amount_tolerance_minor_units``.
Among tier 2/3 candidates the highest confidence wins; ties keep the first
candidate in pool order.

The engine is a pure function of its inputs; it reads nothing and writes
nothing.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from ..config import Settings, get_settings
from ..models import (
    CandidatePayment,
    ExternalTransaction,
    MatchDecision,
    MatchResult,
    MatchType,
    ScoredCandidate,
)
from ..utils.money import normalize_reference

logger = structlog.get_logger()


class MatchingEngine:
    """Deterministic best-match selection with confidence scoring."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.tolerance = self.settings.amount_tolerance_minor_units
        self.window_days = self.settings.date_window_days

    def match(
        self,
        txn: ExternalTransaction,
        pool: Iterable[CandidatePayment],
    ) -> MatchResult:
        """
        Return the single best match for ``txn``.

        Args:
            txn: External transaction to reconcile
            pool: Claimable candidates, in the order used for tie-breaks

        Returns:
            MatchResult (candidate_id None and confidence 0 if nothing matched)
        """
        reference = normalize_reference(txn.external_reference)
        best: Optional[Tuple[CandidatePayment, int]] = None

        for candidate in pool:
            if reference and self._references_match(reference, candidate):
                return self._result(
                    txn, candidate, self.settings.reference_confidence, MatchType.REFERENCE
                )

            confidence = self._amount_date_confidence(txn, candidate)
            if confidence > 0 and (best is None or confidence > best[1]):
                best = (candidate, confidence)

        if best is None:
            return self._result(txn, None, 0, MatchType.NONE)

        return self._result(txn, best[0], best[1], MatchType.AMOUNT_DATE)

    def score(
        self,
        txn: ExternalTransaction,
        candidate: CandidatePayment,
    ) -> Tuple[int, MatchType]:
        """Score one candidate on its own."""
        reference = normalize_reference(txn.external_reference)
        if reference and self._references_match(reference, candidate):
            return self.settings.reference_confidence, MatchType.REFERENCE

        confidence = self._amount_date_confidence(txn, candidate)
        if confidence > 0:
            return confidence, MatchType.AMOUNT_DATE
        return 0, MatchType.NONE

    def rank(
        self,
        txn: ExternalTransaction,
        pool: Sequence[CandidatePayment],
        limit: Optional[int] = None,
    ) -> List[ScoredCandidate]:
        """
        Suggestion list for manual review.

        Candidates that score above zero, plus candidates whose amount is
        within ``suggestion_amount_ratio`` of the transaction's, ordered by
        confidence (pool order among equals).
        """
        limit = limit if limit is not None else self.settings.suggestion_limit
        window = abs(txn.amount_cents) * self.settings.suggestion_amount_ratio

        scored = []
        for candidate in pool:
            confidence, match_type = self.score(txn, candidate)
            if confidence > 0 or abs(candidate.amount_cents - txn.amount_cents) <= window:
                scored.append(ScoredCandidate(candidate, confidence, match_type))

        scored.sort(key=lambda s: s.confidence, reverse=True)
        return scored[:limit]

    def _references_match(self, reference: str, candidate: CandidatePayment) -> bool:
        other = normalize_reference(candidate.external_reference)
        if not other:
            return False
        return reference == other or reference in other or other in reference

    def _amount_date_confidence(
        self,
        txn: ExternalTransaction,
        candidate: CandidatePayment,
    ) -> int:
        if abs(txn.amount_cents - candidate.amount_cents) > self.tolerance:
            return 0

        days_apart = abs((txn.effective_date - candidate.date).days)
        if days_apart == 0:
            return self.settings.same_day_confidence
        if days_apart <= self.window_days:
            return max(self.settings.near_date_confidence(days_apart), 0)
        return 0

    def _result(
        self,
        txn: ExternalTransaction,
        candidate: Optional[CandidatePayment],
        confidence: int,
        match_type: MatchType,
    ) -> MatchResult:
        return MatchResult(
            transaction_id=txn.id,
            candidate_id=candidate.id if candidate else None,
            confidence=confidence,
            match_type=match_type,
            external_reference=txn.external_reference or "",
            amount_cents=txn.amount_cents,
            reported_date=txn.effective_date,
        )


class DecisionPolicy:
    """Maps a confidence to auto-match, manual review, or no match."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.threshold = self.settings.auto_match_threshold

    def decide(self, result: MatchResult) -> MatchDecision:
        if not result.has_candidate:
            return MatchDecision.NO_MATCH
        return self.classify(result.confidence)

    def classify(self, confidence: int) -> MatchDecision:
        """Decision for a bare confidence (also used for payer resolution)."""
        if confidence >= self.threshold:
            return MatchDecision.AUTO_MATCH
        if confidence > 0:
            return MatchDecision.REVIEW
        return MatchDecision.NO_MATCH

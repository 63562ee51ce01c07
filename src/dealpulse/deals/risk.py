"""Deterministic deal risk scoring.

Computes a 0-100 risk score (higher = riskier) from four weighted indicators:
1. Amount: deal amount at or above the policy's high-value threshold
2. Stage: deal stage in the policy's risky stages (case-insensitive)
3. Inactivity: days since last modification at or above the stalled threshold
4. Notes keywords: summed keyword weights for keywords found in the notes,
   clamped to [0, 1]

score = round(100 * (amount*wA + stage*wS + inactivity*wI + keywords*wN)),
clamped to [0, 100]. Weights are used exactly as given; callers that accept
policy edits validate that they sum to 1.0.

Levels: score >= 70 is high, score >= 40 is medium, anything lower is low.
These two cutoffs are the only thresholds used anywhere in the service.

Exports:
    RiskScorer: Scoring engine with configurable level cutoffs.
    score_deal: Module-level scorer using the default cutoffs.
"""

from __future__ import annotations

import math

from src.dealpulse.deals.schemas import RiskLevel, RiskPolicy, RiskResult, ScorableDeal

HIGH_RISK_THRESHOLD = 70
MEDIUM_RISK_THRESHOLD = 40

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "CAD": "CA$",
    "AUD": "A$",
    "JPY": "¥",
}


def format_currency(amount: float, currency: str | None = "USD") -> str:
    """Format an amount with no decimals and thousands separators."""
    code = (currency or "USD").upper()
    sign = "-" if amount < 0 else ""
    number = f"{_round_half_up(abs(amount)):,}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{sign}{code} {number}"
    return f"{sign}{symbol}{number}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class RiskScorer:
    """Score deals against a RiskPolicy.

    Pure and side-effect free: the same (deal, policy) always yields an
    equal RiskResult, factors included. Factor order is amount, stage,
    inactivity, then keyword matches in policy order.

    Args:
        high_threshold: Score at or above this is HIGH.
        medium_threshold: Score at or above this (and below high) is MEDIUM.
    """

    def __init__(
        self,
        *,
        high_threshold: int = HIGH_RISK_THRESHOLD,
        medium_threshold: int = MEDIUM_RISK_THRESHOLD,
    ) -> None:
        if medium_threshold > high_threshold:
            raise ValueError("medium_threshold must not exceed high_threshold")
        self._high_threshold = high_threshold
        self._medium_threshold = medium_threshold

    def level_for(self, score: int) -> RiskLevel:
        if score >= self._high_threshold:
            return RiskLevel.HIGH
        if score >= self._medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def score(self, deal: ScorableDeal, policy: RiskPolicy) -> RiskResult:
        """Compute score, level and ordered factors for one deal.

        Args:
            deal: Amount, currency, stage, days inactive and notes.
            policy: The owning user's risk policy.

        Returns:
            RiskResult with score in [0, 100].
        """
        factors: list[str] = []

        # Amount
        amount_indicator = 0
        if deal.amount is not None and deal.amount >= policy.high_value_threshold:
            amount_indicator = 1
            factors.append(
                f"High-value deal: {format_currency(deal.amount, deal.currency)} "
                f"exceeds your threshold of "
                f"{format_currency(policy.high_value_threshold, deal.currency)}"
            )

        # Stage
        stage_indicator = 0
        if deal.stage and deal.stage.strip().lower() in policy.risky_stage_set():
            stage_indicator = 1
            factors.append(f"Deal currently in a risky stage: {deal.stage}")

        # Inactivity
        inactivity_indicator = 0
        if deal.days_inactive >= policy.stalled_threshold_days:
            inactivity_indicator = 1
            factors.append(f"Inactive for {deal.days_inactive} days")

        # Notes keywords
        keyword_total = 0.0
        notes = (deal.notes or "").lower()
        for keyword in policy.risk_keywords:
            if keyword.word and keyword.word.lower() in notes:
                keyword_total += keyword.weight
                factors.append(f'Keyword detected: "{keyword.word}"')
        keyword_total = min(1.0, max(0.0, keyword_total))

        weighted = (
            amount_indicator * policy.weight_amount
            + stage_indicator * policy.weight_stage
            + inactivity_indicator * policy.weight_inactivity
            + keyword_total * policy.weight_notes
        )
        score = max(0, min(100, _round_half_up(weighted * 100)))

        return RiskResult(score=score, level=self.level_for(score), factors=tuple(factors))


_default_scorer = RiskScorer()


def score_deal(deal: ScorableDeal, policy: RiskPolicy) -> RiskResult:
    """Score a deal with the default level cutoffs."""
    return _default_scorer.score(deal, policy)


def level_for_score(score: int) -> RiskLevel:
    return _default_scorer.level_for(score)

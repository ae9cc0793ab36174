"""Deterministic reciprocity filtering and ranking for exchange matching."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import BaseModel

from changematch.config import config
from changematch.models.exchange import (
    CandidateScore,
    ExchangeRequest,
    RequestStatus,
)
from changematch.utils.geo import distance_km
from changematch.utils.logging_config import logger


class ScoringWeights(BaseModel):
    """Ranking policy. Defaults keep distance dominant at realistic ranges,
    then verification, then rating, then freshness."""

    distance_base: float = 100.0
    distance_penalty_per_km: float = 20.0
    verified_bonus: float = 50.0
    rating_weight: float = 10.0
    freshness_hours: float = 20.0
    prioritize_verified: bool = True
    prioritize_high_rated: bool = True

    @classmethod
    def from_config(cls) -> "ScoringWeights":
        return cls(
            distance_base=config.DISTANCE_BASE,
            distance_penalty_per_km=config.DISTANCE_PENALTY_PER_KM,
            verified_bonus=config.VERIFIED_BONUS,
            rating_weight=config.RATING_WEIGHT,
            freshness_hours=config.FRESHNESS_HOURS,
            prioritize_verified=config.PRIORITIZE_VERIFIED,
            prioritize_high_rated=config.PRIORITIZE_HIGH_RATED,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_reciprocal(request: ExchangeRequest, candidate: ExchangeRequest) -> bool:
    """True if ``candidate`` is an open post from someone else that exactly
    mirrors ``request``: it offers what the request needs and needs what the
    request offers, in both amount and denomination.

    Distance is not considered here.
    """

    return (
        candidate.owner_id != request.owner_id
        and candidate.status == RequestStatus.OPEN
        and candidate.offer_amount == request.need_amount
        and candidate.offer_denomination == request.need_denomination
        and candidate.need_amount == request.offer_amount
        and candidate.need_denomination == request.offer_denomination
    )


def filter_reciprocal(
    request: ExchangeRequest,
    candidates: Iterable[ExchangeRequest],
    max_distance_km: float,
) -> list[ExchangeRequest]:
    """Keep candidates that are exact reciprocal matches within range.

    Cheap field comparisons run before the haversine call. Input order is
    preserved. Correct on any pool; narrowing the pool by spatial key is
    only an optimization left to the caller.
    """

    kept: list[ExchangeRequest] = []
    for candidate in candidates:
        if not is_reciprocal(request, candidate):
            continue
        if distance_km(request.location, candidate.location) > max_distance_km:
            continue
        kept.append(candidate)

    logger.debug("filter_reciprocal request=%s kept=%s", request.id, len(kept))
    return kept


def score_candidate(
    request: ExchangeRequest,
    candidate: ExchangeRequest,
    now: datetime,
    weights: Optional[ScoringWeights] = None,
) -> CandidateScore:
    """Composite score for one candidate.

    score = max(0, base - km * penalty)
          + verified bonus
          + rating * weight
          + max(0, freshness_hours - hours since posted)
    """

    weights = weights or ScoringWeights()
    dist = distance_km(request.location, candidate.location)
    signals = candidate.trust_signals

    score = max(0.0, weights.distance_base - dist * weights.distance_penalty_per_km)

    if weights.prioritize_verified and signals.verified:
        score += weights.verified_bonus

    if weights.prioritize_high_rated:
        score += signals.rating * weights.rating_weight

    hours_since_posted = (
        _as_utc(now) - _as_utc(candidate.created_at)
    ).total_seconds() / 3600.0
    score += max(0.0, weights.freshness_hours - hours_since_posted)

    return CandidateScore(request_id=candidate.id, distance_km=dist, score=score)


def rank(
    request: ExchangeRequest,
    candidates: Iterable[ExchangeRequest],
    now: Optional[datetime] = None,
    weights: Optional[ScoringWeights] = None,
) -> list[CandidateScore]:
    """Score candidates and order them best first.

    Equal scores fall back to the earliest ``created_at``; when that is equal
    too, the sort is stable and input order wins.
    """

    now = now or datetime.now(timezone.utc)
    weights = weights or ScoringWeights()

    scored = [
        (score_candidate(request, candidate, now, weights), _as_utc(candidate.created_at))
        for candidate in candidates
    ]
    scored.sort(key=lambda item: (-item[0].score, item[1]))

    ranked = [item[0] for item in scored]
    if ranked:
        logger.debug(
            "rank request=%s candidates=%s best=%.2f",
            request.id,
            len(ranked),
            ranked[0].score,
        )
    return ranked

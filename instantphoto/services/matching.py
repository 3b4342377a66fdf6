"""Nearby photographer search and multi-factor ranking"""

import logging
import time
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from instantphoto.config import settings
from instantphoto.db.models import PhotographerAvailability
from instantphoto.schemas.matching import Candidate, CandidateScores, CandidateSearch
from instantphoto.services.locations import LocationRegistry
from instantphoto.utils.clock import ensure_utc, utcnow
from instantphoto.utils.geographic import haversine_distance

logger = logging.getLogger(__name__)

# Sorts never-idle photographers ahead of anyone with a recorded idle time
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def price_fit(rate: int, budget: int) -> float:
    """1.0 when the rate fits the budget, falling to 0 at twice the budget"""
    if budget <= 0:
        return 0.5  # No budget stated
    if rate <= budget:
        return 1.0
    return max(0.0, 1.0 - (rate - budget) / budget)


def response_score(avg_response_seconds: float | None) -> float:
    if avg_response_seconds is None:
        return 0.5  # Neutral score without history
    return 1.0 / (1.0 + max(avg_response_seconds, 0.0) / 60.0)


class NearbyCandidateFinder:
    """Finds and ranks photographers who can take a request"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.locations = LocationRegistry(db)

    async def find_candidates(
        self,
        search: CandidateSearch,
        limit: int | None = None,
        current_time: datetime | None = None,
    ) -> list[Candidate]:
        """Eligible photographers for a request, best first"""
        start_time = time.time()
        limit = limit or settings.candidate_limit

        rows = await self.locations.list_eligible(
            search.latitude,
            search.longitude,
            settings.max_response_radius_m,
            current_time=current_time or utcnow(),
        )

        in_range: list[tuple[PhotographerAvailability, float, int]] = []
        for row in rows:
            if row.photographer_id in search.exclude_ids:
                continue
            rate = row.rate_for(search.request_type, search.duration)
            if rate is None:
                continue
            distance = haversine_distance(
                search.latitude, search.longitude, row.latitude, row.longitude
            )
            if distance > row.response_radius_m:
                continue
            in_range.append((row, distance, rate))

        candidates = self.rank(in_range, search.budget)[:limit]

        logger.info(
            f"Candidate search found {len(candidates)} of {len(rows)} nearby photographers "
            f"in {(time.time() - start_time) * 1000:.2f}ms"
        )
        return candidates

    def rank(
        self,
        in_range: list[tuple[PhotographerAvailability, float, int]],
        budget: int,
    ) -> list[Candidate]:
        """Score candidates and order them by score, then longest idle"""
        if not in_range:
            return []

        # Common normaliser so distance ordering never depends on individual radii
        max_radius = max(max(row.response_radius_m for row, _, _ in in_range), 1)

        candidates = []
        for row, distance, rate in in_range:
            distance_score = max(0.0, 1.0 - distance / max_radius)
            rating_score = min(max(row.rating / 5.0, 0.0), 1.0)
            latency_score = response_score(row.avg_response_seconds)
            fit_score = price_fit(rate, budget)

            final_score = (
                settings.distance_weight * distance_score +
                settings.rating_weight * rating_score +
                settings.response_time_weight * latency_score +
                settings.price_fit_weight * fit_score
            )
            final_score = min(1.0, max(0.0, final_score))

            scores = CandidateScores(
                distance_score=distance_score,
                rating_score=rating_score,
                response_score=latency_score,
                price_fit_score=fit_score,
                final_score=final_score,
            )
            candidates.append(
                Candidate(
                    photographer_id=row.photographer_id,
                    display_name=row.display_name,
                    distance_meters=round(distance, 1),
                    rate=rate,
                    rating=row.rating,
                    avg_response_seconds=row.avg_response_seconds,
                    idle_since=ensure_utc(row.idle_since),
                    scores=scores,
                    match_reasons=self._generate_match_reasons(scores, distance),
                )
            )

        return sorted(
            candidates,
            key=lambda c: (-round(c.scores.final_score, 9), c.idle_since or _EPOCH),
        )

    def _generate_match_reasons(self, scores: CandidateScores, distance: float) -> list[str]:
        """Generate human-readable reasons for the match"""
        reasons = []

        if distance < 200:
            reasons.append("Very close by")
        elif distance < 600:
            reasons.append("Short walk away")

        if scores.rating_score >= 0.9:
            reasons.append("Highly rated")
        if scores.response_score > 0.8:
            reasons.append("Fast responder")
        if scores.price_fit_score == 1.0:
            reasons.append("Within budget")

        if not reasons:
            reasons.append("Available nearby")

        return reasons

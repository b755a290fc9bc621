"""Deterministic grant-to-profile match scoring.

Four factors with nominal weights (topics 40, funding 20, agency 20,
deadline 20). Only factors where both sides carry usable data count toward
the denominator, so a sparse grant is not punished for what it omits.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime

from common.utils import days_until, now_utc, parse_iso_datetime

from grantfinder.errors import DataQualityError
from grantfinder.models import GrantItem, PreferenceProfile, ScoredGrant

LOGGER = logging.getLogger("grantfinder.scoring")

TOPIC_WEIGHT = 40.0
FUNDING_WEIGHT = 20.0
AGENCY_WEIGHT = 20.0
DEADLINE_WEIGHT = 20.0

# Returned when no factor is applicable; a policy default, not a derived value.
BASELINE_SCORE = 50.0

PARTIAL_FUNDING_RATIO = 0.5
DEADLINE_GRACE_FACTOR = 1.5


def _checked_amount(grant: GrantItem, name: str, value: float | None) -> float | None:
    if value is None:
        return None
    if math.isnan(value) or math.isinf(value) or value < 0:
        raise DataQualityError(grant.id, f"{name} is not a usable amount: {value!r}")
    return value


def _topic_factor(grant: GrantItem, profile: PreferenceProfile) -> tuple[float, float]:
    topics = set(profile.topics)
    categories = set(grant.categories)
    if not topics or not categories:
        return 0.0, 0.0
    matching = categories.intersection(topics)
    return TOPIC_WEIGHT * len(matching) / min(len(topics), len(categories)), TOPIC_WEIGHT


def _funding_factor(grant: GrantItem, profile: PreferenceProfile) -> tuple[float, float]:
    ceiling = _checked_amount(grant, "award_ceiling", grant.award_ceiling)
    if ceiling is None:
        if profile.accept_unspecified_funding:
            return FUNDING_WEIGHT / 2, FUNDING_WEIGHT
        return 0.0, 0.0

    if profile.funding_min <= ceiling <= profile.funding_max:
        return FUNDING_WEIGHT, FUNDING_WEIGHT
    if ceiling > profile.funding_max:
        ratio = profile.funding_max / ceiling
    else:
        ratio = ceiling / profile.funding_min
    if ratio >= PARTIAL_FUNDING_RATIO:
        return FUNDING_WEIGHT * ratio, FUNDING_WEIGHT
    return 0.0, FUNDING_WEIGHT


def _agency_factor(grant: GrantItem, profile: PreferenceProfile) -> tuple[float, float]:
    if not profile.agencies:
        return 0.0, 0.0
    if grant.agency_name and grant.agency_name in profile.agencies:
        return AGENCY_WEIGHT, AGENCY_WEIGHT
    return 0.0, AGENCY_WEIGHT


def _deadline_factor(
    grant: GrantItem,
    profile: PreferenceProfile,
    now: datetime,
) -> tuple[float, float]:
    close_date = None
    if grant.close_date:
        close_date = parse_iso_datetime(grant.close_date)
        if close_date is None:
            raise DataQualityError(grant.id, f"close_date is not ISO-8601: {grant.close_date!r}")

    tolerance = profile.deadline_days
    if tolerance == 0:
        return DEADLINE_WEIGHT, DEADLINE_WEIGHT
    if close_date is None:
        if profile.accept_unspecified_deadline:
            return DEADLINE_WEIGHT / 2, DEADLINE_WEIGHT
        return 0.0, 0.0

    remaining = days_until(close_date, now)
    if remaining <= tolerance:
        return DEADLINE_WEIGHT, DEADLINE_WEIGHT
    if remaining <= tolerance * DEADLINE_GRACE_FACTOR:
        return DEADLINE_WEIGHT / 2, DEADLINE_WEIGHT
    return 0.0, DEADLINE_WEIGHT


def score_grant(
    grant: GrantItem,
    profile: PreferenceProfile,
    *,
    now: datetime | None = None,
) -> float:
    """Score ``grant`` against ``profile`` on a 0-100 scale.

    Raises ``DataQualityError`` when the grant's funding or deadline
    attributes cannot be interpreted.
    """
    reference = now or now_utc()
    factors = [
        _topic_factor(grant, profile),
        _funding_factor(grant, profile),
        _agency_factor(grant, profile),
        _deadline_factor(grant, profile, reference),
    ]
    applicable = sum(weight for _, weight in factors)
    if applicable == 0:
        return BASELINE_SCORE
    earned = sum(points for points, _ in factors)
    return min(100.0, max(0.0, earned / applicable * 100))


def score_candidates(
    grants: list[GrantItem],
    profile: PreferenceProfile,
    *,
    now: datetime | None = None,
) -> list[ScoredGrant]:
    reference = now or now_utc()
    scored: list[ScoredGrant] = []
    for grant in grants:
        try:
            score = score_grant(grant, profile, now=reference)
        except DataQualityError as exc:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "candidate_skipped",
                        "grant_id": exc.grant_id,
                        "reason": exc.reason,
                    }
                )
            )
            score = 0.0
        scored.append(ScoredGrant(grant=grant, score=round(score, 4)))
    return scored


def rank_candidates(scored: list[ScoredGrant]) -> list[ScoredGrant]:
    return sorted(scored, key=lambda item: (-item.score, item.grant.id))

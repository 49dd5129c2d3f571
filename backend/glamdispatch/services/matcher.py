import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from glamdispatch import config
from glamdispatch.errors import NoEligibleProviders
from glamdispatch.models import (
    DeliveryMode,
    EligibleProvider,
    Provider,
    ProviderAvailability,
    ProviderTier,
)
from glamdispatch.services.booking_store import BookingStore, booking_store, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

SKILL_WEIGHT = 100
TIER_WEIGHT = 10
MAX_IDLE_BONUS = 9

TIER_RANK = {
    ProviderTier.SENIOR: 3,
    ProviderTier.INTERMEDIATE: 2,
    ProviderTier.JUNIOR: 1,
}


@dataclass(frozen=True)
class Candidate:
    provider: Provider
    score: float
    matched_skills: List[str] = field(default_factory=list)
    match_type: str = "General"

    def to_eligible(self) -> EligibleProvider:
        return EligibleProvider(
            provider_id=self.provider.id,
            name=self.provider.name,
            kind=self.provider.kind,
            tier=self.provider.tier,
            skills=self.provider.skills,
            completed_count=self.provider.completed_count,
            score=self.score,
            matched_skills=self.matched_skills,
            match_type=self.match_type,
        )


def normalize_skill(value: str) -> str:
    return " ".join(value.lower().split())


def parse_skill_text(text: Optional[str]) -> List[str]:
    return [part.strip() for part in (text or "").split(",") if part.strip()]


def match_skills(requested: Iterable[str], offered: Iterable[str]) -> Tuple[int, List[str]]:
    """Count requested tags covered by at least one offered skill.

    "hair" matches "Hair Cut" and "Hair Cut" matches "hair cut & styling".
    """
    offered_norm = [normalize_skill(skill) for skill in offered if skill and skill.strip()]
    matched: List[str] = []
    for tag in requested:
        needle = normalize_skill(tag)
        if not needle:
            continue
        if any(needle in skill or skill in needle for skill in offered_norm):
            matched.append(tag)
    return len(matched), matched


class EligibilityMatcher:
    def __init__(
        self,
        store: BookingStore,
        clock: Callable[[], datetime] = utc_now,
        idle_cap_hours: int = config.MATCHER_IDLE_CAP_HOURS,
    ):
        self._store = store
        self._clock = clock
        self._idle_cap_hours = idle_cap_hours

    def idle_bonus(self, provider: Provider, now: datetime) -> int:
        if not provider.last_assigned_at:
            return MAX_IDLE_BONUS
        idle_hours = (now - parse_timestamp(provider.last_assigned_at)).total_seconds() / 3600
        idle_hours = min(max(idle_hours, 0.0), float(self._idle_cap_hours))
        return int(idle_hours / self._idle_cap_hours * MAX_IDLE_BONUS)

    def score_provider(self, provider: Provider, requested: List[str], now: Optional[datetime] = None) -> Candidate:
        now = now or self._clock()
        overlap, matched = match_skills(requested, provider.skills)
        if overlap == 0:
            return Candidate(provider=provider, score=0.0, matched_skills=[], match_type="General")
        score = overlap * SKILL_WEIGHT + TIER_RANK[provider.tier] * TIER_WEIGHT + self.idle_bonus(provider, now)
        match_type = "Skill Match" if overlap == len([t for t in requested if t.strip()]) else "Partial Match"
        return Candidate(provider=provider, score=float(score), matched_skills=matched, match_type=match_type)

    def rank(
        self,
        required_skills: List[str],
        delivery_mode: Optional[DeliveryMode] = None,
        window: Optional[Tuple[str, str]] = None,
        skill_override: Optional[str] = None,
    ) -> List[Candidate]:
        requested = parse_skill_text(skill_override) if skill_override and skill_override.strip() else required_skills
        providers = self._store.list_providers(availability=ProviderAvailability.ACTIVE)
        if not providers:
            raise NoEligibleProviders("No active providers are available")
        # Mode and window are recorded for triage context; ranking does not filter on them.
        logger.debug(
            "Ranking %s providers for skills=%s mode=%s window=%s",
            len(providers),
            requested,
            delivery_mode.value if delivery_mode else None,
            window,
        )
        now = self._clock()
        candidates = [self.score_provider(provider, requested, now) for provider in providers]
        candidates.sort(key=lambda c: (-c.score, c.provider.id))
        return candidates

    def rank_for_booking(self, booking_id: str, skill_override: Optional[str] = None) -> List[Candidate]:
        booking = self._store.get_booking(booking_id)
        return self.rank(
            booking.required_skills,
            delivery_mode=booking.delivery_mode,
            window=(booking.slot_start, booking.slot_end),
            skill_override=skill_override,
        )


matcher = EligibilityMatcher(store=booking_store)

"""
Static challenge and badge tables.

Four challenge types exist per deployment; each one maps to exactly one
badge in the per-user catalog. The "newcomer" badge is granted at sign-up
and has no challenge behind it.
"""
from datetime import datetime
from typing import Dict, List

from schemas import Badge, ChallengeDefinition, ChallengeProgress

CHALLENGE_DEFINITIONS: Dict[str, ChallengeDefinition] = {
    "zero_waste": ChallengeDefinition(
        type="zero_waste",
        title="Zero Waste Week",
        subtitle="Share 5 items this week",
        goal=5,
        color_hex="FF6B6B",
        badge_id="zero_waste_challenge",
    ),
    "sharing": ChallengeDefinition(
        type="sharing",
        title="分享達人挑戰",
        subtitle="分享10項食材",
        goal=10,
        color_hex="4ECDC4",
        badge_id="sharing_challenge",
    ),
    "fridge_cleaning": ChallengeDefinition(
        type="fridge_cleaning",
        title="冰箱清潔週",
        subtitle="整理3次家中冰箱",
        goal=3,
        color_hex="34C759",
        badge_id="fridge_challenge",
    ),
    "eco_container": ChallengeDefinition(
        type="eco_container",
        title="環保小尖兵",
        subtitle="使用環保容器分享5次",
        goal=5,
        color_hex="AF52DE",
        badge_id="eco_challenge",
    ),
}

BADGE_CATALOG: List[Badge] = [
    Badge(id="newcomer", name="新手上路", icon="star.fill"),
    Badge(id="sharing_challenge", name="分享達人挑戰", icon="gift.fill"),
    Badge(id="eco_challenge", name="環保小尖兵", icon="leaf.fill"),
    Badge(id="fridge_challenge", name="冰箱清潔週", icon="archivebox.fill"),
    Badge(id="zero_waste_challenge", name="Zero Waste Week", icon="arrow.3.trianglepath"),
]

_BADGE_POSITION = {badge.id: i for i, badge in enumerate(BADGE_CATALOG)}


def badge_order(badge_id: str) -> int:
    return _BADGE_POSITION.get(badge_id, len(_BADGE_POSITION))


def catalog_badge(badge_id: str) -> Badge:
    return BADGE_CATALOG[_BADGE_POSITION[badge_id]]


def default_badges(now: datetime) -> Dict[str, dict]:
    badges = {b.id: b.model_dump() for b in BADGE_CATALOG}
    badges["newcomer"].update(active=True, earned_at=now)
    return badges


def default_challenges(now: datetime) -> Dict[str, dict]:
    return {
        key: ChallengeProgress(challenge_type=key, progress=0, goal=d.goal, updated_at=now).model_dump()
        for key, d in CHALLENGE_DEFINITIONS.items()
    }

"""
Plan-based listing quota.

The count and the insert that follows are separate store calls, so two
concurrent creations by the same user can both pass the check and leave them
one listing over their limit. The limit is only enforced at creation time;
downgrading a plan keeps existing listings.
"""

from typing import Any, Dict

from errors import QuotaExceeded

PLAN_LIMITS: Dict[str, int] = {
    "Standard": 1,
    "Gold": 3,
    "Platinum": 10,
}


def plan_limit(plan: str) -> int:
    return PLAN_LIMITS.get(plan, 0)


def can_create_listing(actor: Dict[str, Any], businesses) -> bool:
    owned = businesses.count_owned_by(actor["id"])
    return owned < plan_limit(actor.get("plan", "Standard"))


def ensure_can_create_listing(actor: Dict[str, Any], businesses) -> None:
    if not can_create_listing(actor, businesses):
        raise QuotaExceeded(
            f"You have reached the business limit for your {actor.get('plan', 'Standard')} plan"
        )

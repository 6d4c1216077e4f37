"""
Access decisions for businesses and their reviews.

`decide` is a pure function over plain documents: the actor is a sanitized user
dict (or None when anonymous), the business and review are sanitized documents
as returned by the stores. It never touches the database.
"""

from enum import Enum
from typing import Any, Dict, Optional

from errors import Conflict, Forbidden, Unauthenticated


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    REVIEW_CREATE = "review-create"
    REVIEW_DELETE = "review-delete"


class Decision(str, Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"


_MESSAGES = {
    (Action.UPDATE, Decision.FORBIDDEN): "Not authorized",
    (Action.DELETE, Decision.FORBIDDEN): "Not authorized",
    (Action.SUBSCRIBE, Decision.FORBIDDEN): "Cannot subscribe to your own business",
    (Action.SUBSCRIBE, Decision.CONFLICT): "Already subscribed",
    (Action.UNSUBSCRIBE, Decision.FORBIDDEN): "Cannot unsubscribe from your own business",
    (Action.UNSUBSCRIBE, Decision.CONFLICT): "Not subscribed",
    (Action.REVIEW_CREATE, Decision.FORBIDDEN): "Cannot review your own business",
    (Action.REVIEW_DELETE, Decision.FORBIDDEN): "Not authorized",
}


def is_owner(actor: Dict[str, Any], business: Dict[str, Any]) -> bool:
    return str(business.get("owner_id")) == str(actor.get("id"))


def is_admin(actor: Dict[str, Any]) -> bool:
    return actor.get("role") == "admin"


def is_subscriber(actor: Dict[str, Any], business: Dict[str, Any]) -> bool:
    return str(actor.get("id")) in {str(s) for s in business.get("subscriber_ids", [])}


def decide(
    actor: Optional[Dict[str, Any]],
    action: Action,
    business: Optional[Dict[str, Any]] = None,
    review: Optional[Dict[str, Any]] = None,
) -> Decision:
    # Rules are ordered; the first one that applies wins.
    if action == Action.READ:
        return Decision.ALLOW
    if not actor:
        return Decision.UNAUTHENTICATED
    if action == Action.CREATE:
        return Decision.ALLOW
    if business is None:
        return Decision.FORBIDDEN

    if action == Action.UPDATE:
        return Decision.ALLOW if is_owner(actor, business) else Decision.FORBIDDEN
    if action == Action.DELETE:
        return Decision.ALLOW if is_owner(actor, business) or is_admin(actor) else Decision.FORBIDDEN

    if action == Action.SUBSCRIBE:
        if is_owner(actor, business):
            return Decision.FORBIDDEN
        return Decision.CONFLICT if is_subscriber(actor, business) else Decision.ALLOW
    if action == Action.UNSUBSCRIBE:
        if is_owner(actor, business):
            return Decision.FORBIDDEN
        return Decision.ALLOW if is_subscriber(actor, business) else Decision.CONFLICT

    if action == Action.REVIEW_CREATE:
        return Decision.FORBIDDEN if is_owner(actor, business) else Decision.ALLOW
    if action == Action.REVIEW_DELETE:
        if review is None:
            return Decision.FORBIDDEN
        is_author = str(review.get("user_id")) == str(actor.get("id"))
        if is_author or is_owner(actor, business) or is_admin(actor):
            return Decision.ALLOW
        return Decision.FORBIDDEN

    return Decision.FORBIDDEN


def authorize(
    actor: Optional[Dict[str, Any]],
    action: Action,
    business: Optional[Dict[str, Any]] = None,
    review: Optional[Dict[str, Any]] = None,
) -> None:
    """Raise the error matching a non-ALLOW decision."""
    decision = decide(actor, action, business, review)
    if decision == Decision.ALLOW:
        return
    message = _MESSAGES.get((action, decision))
    if decision == Decision.UNAUTHENTICATED:
        raise Unauthenticated("Authentication required")
    if decision == Decision.CONFLICT:
        raise Conflict(message)
    raise Forbidden(message)

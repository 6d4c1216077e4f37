from typing import Any, Dict, List, Optional

import structlog
from starlette.concurrency import run_in_threadpool

from access import Action, authorize, is_admin
from errors import Conflict, Forbidden, NotFound, Unauthenticated, UnknownUser
from notifications import NotificationHub, business_event
from quota import ensure_can_create_listing
from schemas import (
    AdminReviewOut,
    BusinessOut,
    CreateBusinessRequest,
    ReviewOut,
    SignupRequest,
    UpdateBusinessRequest,
    UserOut,
)
from security import TokenIssuer
from stores import BusinessStore, UserStore

logger = structlog.get_logger(__name__)


def public_user(user: Dict[str, Any]) -> UserOut:
    return UserOut(
        id=user["id"],
        name=user["name"],
        email=user["email"],
        plan=user.get("plan", "Standard"),
        role=user.get("role", "user"),
        saved_business_ids=user.get("saved_business_ids", []),
    )


class DirectoryService:
    """Business and review operations: access check, quota, persist, notify."""

    def __init__(self, users: UserStore, businesses: BusinessStore, hub: NotificationHub):
        self.users = users
        self.businesses = businesses
        self.hub = hub

    def _load(self, business_id: str) -> Dict[str, Any]:
        business = self.businesses.get(business_id)
        if not business:
            raise NotFound("Business not found")
        return business

    def list_businesses(
        self,
        actor: Optional[Dict[str, Any]],
        search: Optional[str] = None,
        category: Optional[str] = None,
        only_owned: bool = False,
    ) -> List[BusinessOut]:
        owner_id = actor["id"] if only_owned and actor else None
        docs = self.businesses.find(search=search, category=category, owner_id=owner_id)
        return self.businesses.resolve_many(docs)

    def get_business(self, business_id: str) -> BusinessOut:
        return self.businesses.resolve(self._load(business_id))

    def create_business(self, actor: Optional[Dict[str, Any]], data: CreateBusinessRequest) -> BusinessOut:
        authorize(actor, Action.CREATE)
        ensure_can_create_listing(actor, self.businesses)
        doc = self.businesses.create(actor["id"], data.name, data.description, data.category)
        logger.info("business_created", business_id=doc["id"], owner_id=actor["id"], plan=actor.get("plan"))
        return self.businesses.resolve(doc)

    async def update_business(
        self, actor: Optional[Dict[str, Any]], business_id: str, data: UpdateBusinessRequest
    ) -> BusinessOut:
        business = await run_in_threadpool(self._load, business_id)
        authorize(actor, Action.UPDATE, business)
        fields = data.model_dump(exclude_none=True)
        if not fields:
            # nothing to change, so nothing to announce
            return await run_in_threadpool(self.businesses.resolve, business)
        updated = await run_in_threadpool(self.businesses.update, business_id, fields)
        if not updated:
            raise NotFound("Business not found")
        logger.info("business_updated", business_id=business_id, actor_id=actor["id"])
        await self._notify("update", business)
        return await run_in_threadpool(self.businesses.resolve, updated)

    async def delete_business(self, actor: Optional[Dict[str, Any]], business_id: str) -> None:
        business = await run_in_threadpool(self._load, business_id)
        authorize(actor, Action.DELETE, business)
        deleted = await run_in_threadpool(self.businesses.delete, business_id)
        if not deleted:
            raise NotFound("Business not found")
        logger.info("business_deleted", business_id=business_id, actor_id=actor["id"])
        await self._notify("delete", business)

    async def _notify(self, kind: str, business: Dict[str, Any]) -> None:
        # The mutation is already committed; delivery problems must not surface.
        try:
            await self.hub.publish(business_event(kind, business))
        except Exception:
            logger.exception("socket_notification_failed", business_id=business["id"], type=kind)

    def subscribe(self, actor: Optional[Dict[str, Any]], business_id: str) -> None:
        business = self._load(business_id)
        authorize(actor, Action.SUBSCRIBE, business)
        if not self.businesses.add_subscriber(business_id, actor["id"]):
            raise Conflict("Already subscribed")
        logger.info("business_subscribed", business_id=business_id, user_id=actor["id"])

    def unsubscribe(self, actor: Optional[Dict[str, Any]], business_id: str) -> None:
        business = self._load(business_id)
        authorize(actor, Action.UNSUBSCRIBE, business)
        if not self.businesses.remove_subscriber(business_id, actor["id"]):
            raise Conflict("Not subscribed")
        logger.info("business_unsubscribed", business_id=business_id, user_id=actor["id"])

    def list_reviews(self, business_id: str) -> List[ReviewOut]:
        return self.get_business(business_id).reviews

    def add_review(self, actor: Optional[Dict[str, Any]], business_id: str, comment: str) -> ReviewOut:
        business = self._load(business_id)
        authorize(actor, Action.REVIEW_CREATE, business)
        review = self.businesses.add_review(business_id, actor["id"], comment)
        if review is None:
            # vanished between the read and the push
            raise NotFound("Business not found")
        logger.info("review_added", business_id=business_id, review_id=review["id"], user_id=actor["id"])
        return self.businesses.resolve_review(review)

    def delete_review(self, actor: Optional[Dict[str, Any]], business_id: str, review_id: str) -> None:
        if not actor:
            raise Unauthenticated("Authentication required")
        business = self._load(business_id)
        review = self.businesses.find_review(business, review_id)
        if review is None:
            raise NotFound("Review not found")
        authorize(actor, Action.REVIEW_DELETE, business, review)
        if not self.businesses.remove_review(business_id, review_id):
            raise NotFound("Review not found")
        logger.info("review_deleted", business_id=business_id, review_id=review_id, actor_id=actor["id"])

    def admin_reviews(self, actor: Optional[Dict[str, Any]], search: Optional[str] = None) -> List[AdminReviewOut]:
        if not actor:
            raise Unauthenticated("Authentication required")
        if not is_admin(actor):
            raise Forbidden("Insufficient permissions")
        return self.businesses.reviews_matching(search)


class AccountService:
    """Signup, login, plan changes and token resolution."""

    def __init__(self, users: UserStore, businesses: BusinessStore, tokens: TokenIssuer):
        self.users = users
        self.businesses = businesses
        self.tokens = tokens

    def _session(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {"token": self.tokens.issue(user["id"]), "user": public_user(user)}

    def signup(self, data: SignupRequest) -> Dict[str, Any]:
        user = self.users.create(data.name, data.email, data.password, plan=data.plan)
        return self._session(user)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.users.authenticate(email, password)
        if not user:
            logger.info("login_failed")
            raise Unauthenticated("Invalid credentials")
        logger.info("login_succeeded", user_id=user["id"])
        return self._session(user)

    def resolve_token(self, token: Optional[str]) -> Dict[str, Any]:
        """Map a bearer token to its user; InvalidCredential or UnknownUser otherwise."""
        user_id = self.tokens.decode(token)
        user = self.users.get(user_id)
        if not user:
            raise UnknownUser("User not found")
        return user

    def change_plan(self, actor: Dict[str, Any], plan: str) -> UserOut:
        user = self.users.update(actor["id"], {"plan": plan})
        if not user:
            raise NotFound("User not found")
        logger.info("plan_changed", user_id=actor["id"], previous=actor.get("plan"), plan=plan)
        return public_user(user)

    def saved_businesses(self, actor: Dict[str, Any]) -> List[BusinessOut]:
        docs = [self.businesses.get(b) for b in actor.get("saved_business_ids", [])]
        return self.businesses.resolve_many([d for d in docs if d])

    def bootstrap_admin(self, name: str, email: str, password: str) -> UserOut:
        if self.users.count({"role": "admin"}) > 0:
            raise Conflict("Admin already exists")
        user = self.users.create(name, email, password, plan="Platinum", role="admin")
        return public_user(user)

import re
from typing import Any, Dict, Iterable, List, Optional

import structlog
from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from errors import Conflict
from schemas import (
    AdminReviewOut,
    Business as BusinessSchema,
    BusinessOut,
    Review as ReviewSchema,
    ReviewOut,
    User as UserSchema,
    UserRef,
    UserSummary,
    utcnow,
)
from security import hash_password, verify_password

logger = structlog.get_logger(__name__)

BUSINESS_FIELDS = ("name", "description", "category")


# Helpers

def to_obj_id(id_str: Any) -> Optional[ObjectId]:
    if isinstance(id_str, ObjectId):
        return id_str
    if not id_str or not ObjectId.is_valid(str(id_str)):
        return None
    return ObjectId(str(id_str))


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def contains(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


class UserStore:
    def __init__(self, database: Database):
        self.collection = database["user"]

    def _prepare(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Pre-persist step shared by every write: hash plain passwords, stamp updates."""
        prepared = {k: v for k, v in fields.items() if k not in ("_id", "id")}
        if "password" in prepared:
            prepared["password_hash"] = hash_password(prepared.pop("password"))
        prepared["updated_at"] = utcnow()
        return prepared

    def get(self, user_id: Any) -> Optional[Dict]:
        _id = to_obj_id(user_id)
        if _id is None:
            return None
        return sanitize(self.collection.find_one({"_id": _id}))

    def get_by_email(self, email: str) -> Optional[Dict]:
        return sanitize(self.collection.find_one({"email": email.lower()}))

    def get_many(self, user_ids: Iterable[Any]) -> Dict[str, Dict]:
        ids = [i for i in (to_obj_id(u) for u in set(user_ids)) if i is not None]
        if not ids:
            return {}
        return {str(u["_id"]): sanitize(u) for u in self.collection.find({"_id": {"$in": ids}})}

    def create(self, name: str, email: str, password: str, plan: str = "Standard", role: str = "user") -> Dict:
        email = email.lower()
        if self.collection.find_one({"email": email}):
            raise Conflict("Email already exists")
        fields = self._prepare({"password": password})
        user_doc = UserSchema(
            name=name,
            email=email,
            password_hash=fields["password_hash"],
            plan=plan,
            role=role,
        ).model_dump()
        try:
            res = self.collection.insert_one(user_doc)
        except DuplicateKeyError:
            raise Conflict("Email already exists")
        user_doc["_id"] = res.inserted_id
        logger.info("user_created", user_id=str(res.inserted_id), plan=plan, role=role)
        return sanitize(user_doc)

    def update(self, user_id: Any, fields: Dict[str, Any]) -> Optional[Dict]:
        _id = to_obj_id(user_id)
        if _id is None:
            return None
        doc = self.collection.find_one_and_update(
            {"_id": _id},
            {"$set": self._prepare(fields)},
            return_document=ReturnDocument.AFTER,
        )
        return sanitize(doc)

    def authenticate(self, email: str, password: str) -> Optional[Dict]:
        user = self.get_by_email(email)
        if not user or not verify_password(password, user.get("password_hash", "")):
            return None
        return user

    def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        return self.collection.count_documents(filter or {})


class BusinessStore:
    def __init__(self, database: Database, users: UserStore):
        self.collection = database["business"]
        self.users = users

    def find(
        self,
        search: Optional[str] = None,
        category: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[Dict]:
        q: Dict[str, Any] = {}
        if search:
            q["$or"] = [{"name": contains(search)}, {"description": contains(search)}]
        if category:
            q["category"] = category
        if owner_id:
            q["owner_id"] = owner_id
        return [sanitize(b) for b in self.collection.find(q).sort([("created_at", DESCENDING)])]

    def get(self, business_id: Any) -> Optional[Dict]:
        _id = to_obj_id(business_id)
        if _id is None:
            return None
        return sanitize(self.collection.find_one({"_id": _id}))

    def count_owned_by(self, owner_id: str) -> int:
        return self.collection.count_documents({"owner_id": owner_id})

    def create(self, owner_id: str, name: str, description: str, category: str) -> Dict:
        doc = BusinessSchema(owner_id=owner_id, name=name, description=description, category=category).model_dump()
        res = self.collection.insert_one(doc)
        doc["_id"] = res.inserted_id
        return sanitize(doc)

    def update(self, business_id: Any, fields: Dict[str, Any]) -> Optional[Dict]:
        _id = to_obj_id(business_id)
        if _id is None:
            return None
        changes = {k: v for k, v in fields.items() if k in BUSINESS_FIELDS and v is not None}
        if not changes:
            return self.get(_id)
        changes["updated_at"] = utcnow()
        doc = self.collection.find_one_and_update(
            {"_id": _id},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return sanitize(doc)

    def delete(self, business_id: Any) -> bool:
        _id = to_obj_id(business_id)
        if _id is None:
            return False
        return self.collection.delete_one({"_id": _id}).deleted_count == 1

    # Subscribers

    def add_subscriber(self, business_id: Any, user_id: str) -> bool:
        res = self.collection.update_one(
            {"_id": to_obj_id(business_id), "owner_id": {"$ne": user_id}, "subscriber_ids": {"$ne": user_id}},
            {"$addToSet": {"subscriber_ids": user_id}, "$set": {"updated_at": utcnow()}},
        )
        return res.modified_count == 1

    def remove_subscriber(self, business_id: Any, user_id: str) -> bool:
        res = self.collection.update_one(
            {"_id": to_obj_id(business_id), "subscriber_ids": user_id},
            {"$pull": {"subscriber_ids": user_id}, "$set": {"updated_at": utcnow()}},
        )
        return res.modified_count == 1

    # Reviews

    def find_review(self, business: Dict[str, Any], review_id: str) -> Optional[Dict]:
        for review in business.get("reviews", []):
            if review.get("id") == review_id:
                return review
        return None

    def add_review(self, business_id: Any, user_id: str, comment: str) -> Optional[Dict]:
        review = ReviewSchema(user_id=user_id, comment=comment).model_dump()
        res = self.collection.update_one(
            {"_id": to_obj_id(business_id), "owner_id": {"$ne": user_id}},
            {"$push": {"reviews": review}},
        )
        return review if res.modified_count == 1 else None

    def remove_review(self, business_id: Any, review_id: str) -> bool:
        res = self.collection.update_one(
            {"_id": to_obj_id(business_id), "reviews.id": review_id},
            {"$pull": {"reviews": {"id": review_id}}},
        )
        return res.modified_count == 1

    def reviews_matching(self, search: Optional[str] = None) -> List[AdminReviewOut]:
        q: Dict[str, Any] = {"reviews.comment": contains(search)} if search else {}
        needle = search.lower() if search else None
        pairs = []
        for business in self.collection.find(q).sort([("created_at", DESCENDING)]):
            for review in business.get("reviews", []):
                if needle is None or needle in review.get("comment", "").lower():
                    pairs.append((sanitize(business), review))
        authors = self.users.get_many(r["user_id"] for _, r in pairs)
        result = [
            AdminReviewOut(
                id=r["id"],
                user=self._link(r["user_id"], authors),
                comment=r["comment"],
                created_at=r["created_at"],
                business_id=b["id"],
                business_name=b["name"],
            )
            for b, r in pairs
        ]
        result.sort(key=lambda r: r.created_at, reverse=True)
        return result

    # Resolution

    @staticmethod
    def _link(user_id: str, users: Dict[str, Dict]):
        user = users.get(str(user_id))
        if user is None:
            return UserRef(id=str(user_id))
        return UserSummary(id=user["id"], name=user["name"])

    def resolve_many(self, docs: List[Dict]) -> List[BusinessOut]:
        ids = set()
        for d in docs:
            ids.add(d["owner_id"])
            ids.update(d.get("subscriber_ids", []))
            ids.update(r["user_id"] for r in d.get("reviews", []))
        users = self.users.get_many(ids)
        return [
            BusinessOut(
                id=d["id"],
                name=d["name"],
                description=d["description"],
                category=d["category"],
                owner=self._link(d["owner_id"], users),
                subscribers=[self._link(s, users) for s in d.get("subscriber_ids", [])],
                reviews=[self.resolve_review(r, users) for r in d.get("reviews", [])],
                created_at=d["created_at"],
                updated_at=d["updated_at"],
            )
            for d in docs
        ]

    def resolve(self, doc: Dict) -> BusinessOut:
        return self.resolve_many([doc])[0]

    def resolve_review(self, review: Dict, users: Optional[Dict[str, Dict]] = None) -> ReviewOut:
        if users is None:
            users = self.users.get_many([review["user_id"]])
        return ReviewOut(
            id=review["id"],
            user=self._link(review["user_id"], users),
            comment=review["comment"],
            created_at=review["created_at"],
        )

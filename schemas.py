"""
Database Schemas for the Business Directory

MongoDB collections are defined below using Pydantic models. Each document class
name is converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: platform users (plan tier, role, saved businesses)
- business: business listings with their subscribers and embedded reviews

The *Out models are the data-transfer shapes. Owner, subscriber and review
author fields are UserLink values: either a bare reference or a resolved
summary, tagged by `kind`.
"""

from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

Plan = Literal["Standard", "Gold", "Platinum"]
Role = Literal["user", "admin"]
EventType = Literal["update", "delete"]


def utcnow() -> datetime:
    # BSON dates keep milliseconds only
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def new_id() -> str:
    return str(ObjectId())


# Documents

class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    plan: Plan = Field("Standard")
    role: Role = Field("user")
    saved_business_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Review(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str = Field(..., description="Reference to user _id (author)")
    comment: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)


class Business(BaseModel):
    owner_id: str = Field(..., description="Reference to user _id (owner)")
    name: str = Field(..., min_length=1, max_length=120)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=80)
    subscriber_ids: List[str] = Field(default_factory=list)
    reviews: List[Review] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# User links

class UserRef(BaseModel):
    kind: Literal["reference"] = "reference"
    id: str


class UserSummary(BaseModel):
    kind: Literal["resolved"] = "resolved"
    id: str
    name: str


UserLink = Annotated[Union[UserRef, UserSummary], Field(discriminator="kind")]


# Transfer models

class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    plan: Plan
    role: Role
    saved_business_ids: List[str] = Field(default_factory=list)


class ReviewOut(BaseModel):
    id: str
    user: UserLink
    comment: str
    created_at: datetime


class AdminReviewOut(ReviewOut):
    business_id: str
    business_name: str


class BusinessOut(BaseModel):
    id: str
    name: str
    description: str
    category: str
    owner: UserLink
    subscribers: List[UserLink] = Field(default_factory=list)
    reviews: List[ReviewOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class BusinessEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: EventType
    business_id: str = Field(..., alias="businessId")
    business_name: str = Field(..., alias="businessName")
    message: str


# Request bodies

class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    plan: Plan = "Standard"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class CreateBusinessRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=80)


class UpdateBusinessRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1, max_length=80)


class ReviewRequest(BaseModel):
    comment: str = Field(..., min_length=1, max_length=2000)


class UpgradePlanRequest(BaseModel):
    plan: Plan

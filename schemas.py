"""
Document Schemas for FoodLoop

Each Pydantic model corresponds to a document (or an embedded part of one)
in the remote document store:

- Listing -> "food_items"
- UserProfile -> "users" (badges and active challenges are embedded maps)
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from geo import encode_geohash

ShareKind = Literal["free", "discounted", "donation"]
ChallengeType = Literal["sharing", "eco_container", "fridge_cleaning", "zero_waste"]
SortCriterion = Literal["distance", "category", "price", "expiry"]

LISTINGS = "food_items"
USERS = "users"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LatLon(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class UploaderInfo(BaseModel):
    display_name: str
    rating_score: float = Field(5.0, ge=0, le=5)
    share_count: int = Field(0, ge=0)


class RecipeSuggestion(BaseModel):
    emoji: str
    title: str
    description: str


class Listing(BaseModel):
    id: str = Field(default_factory=lambda: f"local-{uuid4().hex}", description="Temporary until the store assigns one")
    name: str
    category: str
    quantity: str = "1份"
    expiry: datetime
    share_kind: ShareKind = "free"
    location_text: str = ""
    freeform_note: str = ""
    uploader_id: Optional[str] = None
    uploader: UploaderInfo
    ai_storage_hint: str = ""
    recipe_suggestions: List[RecipeSuggestion] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list, description="Display order preserved")
    price: Optional[str] = Field(None, description="Monetary string, e.g. '$30'; null for free listings")
    image_refs: List[str] = Field(default_factory=list)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_active: bool = True
    distance: Optional[str] = Field(None, description="Display distance from the viewer, never persisted")

    @computed_field
    @property
    def geohash(self) -> str:
        return encode_geohash(self.latitude, self.longitude)

    @field_validator("expiry", "created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id", "distance"})


class ListingCreate(BaseModel):
    """Upload form as submitted by the client."""
    name: str
    category: str
    quantity: str = ""
    expiry: datetime
    share_kind: ShareKind = "free"
    price_amount: Optional[str] = Field(None, description="Bare amount without currency sign")
    location_text: str = ""
    freeform_note: str = ""
    tags: List[str] = Field(default_factory=list)
    image_refs: List[str] = Field(default_factory=list)
    position: Optional[LatLon] = None


class ChallengeDefinition(BaseModel):
    type: ChallengeType
    title: str
    subtitle: str
    goal: int = Field(..., gt=0)
    color_hex: str
    badge_id: str


class ChallengeProgress(BaseModel):
    challenge_type: str
    progress: int = Field(0, ge=0)
    goal: int = Field(..., gt=0)
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _progress_within_goal(self):
        if self.progress > self.goal:
            raise ValueError("progress cannot exceed goal")
        return self

    @property
    def at_goal(self) -> bool:
        return self.progress >= self.goal


class Badge(BaseModel):
    id: str
    name: str
    icon: str
    active: bool = False
    earned_at: Optional[datetime] = None


class Identity(BaseModel):
    """What the identity provider hands back after sign-in."""
    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    photo_url: Optional[str] = None


class UserProfile(BaseModel):
    id: str
    display_name: str = "訪客"
    initials: str = "V"
    email: Optional[str] = None
    photo_url: Optional[str] = None
    member_since: Optional[datetime] = None
    points: int = Field(0, ge=0)
    share_count: int = Field(0, ge=0)
    receive_count: int = Field(0, ge=0)
    is_premium: bool = False
    badges: List[Badge] = Field(default_factory=list)
    uploads: List[str] = Field(default_factory=list)
    favorites: List[str] = Field(default_factory=list)
    active_challenges: List[ChallengeProgress] = Field(default_factory=list)

    @field_validator("badges", mode="before")
    @classmethod
    def _badges_in_catalog_order(cls, value):
        if isinstance(value, dict):
            from catalog import badge_order
            return sorted(value.values(), key=lambda b: badge_order(b.get("id", "")))
        return value

    @field_validator("active_challenges", mode="before")
    @classmethod
    def _challenges_from_map(cls, value):
        if isinstance(value, dict):
            return list(value.values())
        return value

    @classmethod
    def guest(cls) -> "UserProfile":
        return cls(id="")

    @property
    def is_guest(self) -> bool:
        return not self.id

    def badge(self, badge_id: str) -> Optional[Badge]:
        return next((b for b in self.badges if b.id == badge_id), None)

    def challenge(self, challenge_type: str) -> Optional[ChallengeProgress]:
        return next((c for c in self.active_challenges if c.challenge_type == challenge_type), None)

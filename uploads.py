from dataclasses import dataclass, field
from typing import List

from challenges import ChallengeEngine, IncrementOutcome
from errors import ValidationError
from listings import ListingRepository
from schemas import LatLon, Listing, ListingCreate, UploaderInfo, UserProfile, utcnow
from suggestions import recipe_suggestions, storage_hint

# Taipei 101, used when the uploader shares no position
DEFAULT_POSITION = LatLon(lat=25.0330, lon=121.5654)
NEW_UPLOADER_RATING = 5.0


@dataclass
class UploadResult:
    listing_id: str
    challenges: List[IncrementOutcome] = field(default_factory=list)


def build_listing(form: ListingCreate, uploader: UserProfile, now=None) -> Listing:
    now = now or utcnow()
    if not form.name.strip():
        raise ValidationError("請輸入食物名稱")
    if not form.category.strip():
        raise ValidationError("請選擇食物分類")
    price = f"${form.price_amount.strip()}" if form.price_amount and form.price_amount.strip() else None
    position = form.position or DEFAULT_POSITION
    listing = Listing(
        name=form.name.strip(),
        category=form.category,
        quantity=form.quantity or "1份",
        expiry=form.expiry,
        share_kind=form.share_kind,
        location_text=form.location_text or "用戶位置",
        freeform_note=form.freeform_note or "歡迎索取！",
        uploader=UploaderInfo(
            display_name=uploader.display_name,
            rating_score=NEW_UPLOADER_RATING,
            share_count=uploader.share_count,
        ),
        tags=form.tags or [form.category],
        price=None if form.share_kind == "free" else price,
        image_refs=form.image_refs,
        latitude=position.lat,
        longitude=position.lon,
    )
    return listing.model_copy(update={
        "ai_storage_hint": storage_hint(form.category, listing.expiry, now),
        "recipe_suggestions": recipe_suggestions(form.category),
    })


class UploadService:
    """Upload -> listing write -> uploader stats -> challenge triggers."""

    def __init__(self, listings: ListingRepository, engine: ChallengeEngine, clock=utcnow):
        self._listings = listings
        self._engine = engine
        self._clock = clock

    async def share(self, form: ListingCreate, uploader: UserProfile) -> UploadResult:
        if uploader.is_guest:
            raise ValidationError("請先登入")
        listing = build_listing(form, uploader, self._clock())
        listing_id = await self._listings.create(listing, uploader.id)
        outcomes = await self._engine.on_listing_uploaded(uploader.id, listing.tags)
        return UploadResult(listing_id, outcomes)

    async def fridge_cleaned(self, user: UserProfile) -> List[IncrementOutcome]:
        if user.is_guest:
            raise ValidationError("請先登入")
        return await self._engine.on_fridge_cleaned(user.id)

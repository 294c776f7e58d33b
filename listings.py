import logging
from typing import Callable, List, Optional

from database import ArrayUnion, DocumentStore, Increment, Query, Subscription
from errors import FoodLoopError, IndexRequired, StoreError, ValidationError
from geo import format_distance_km, haversine_m
from geo_index import GeoIndex, parse_listings
from schemas import LISTINGS, USERS, LatLon, Listing, ShareKind, utcnow

logger = logging.getLogger(__name__)

UPLOAD_BONUS_POINTS = 10
FEED_WINDOW = 50
DEFAULT_LIMIT = 50
DEFAULT_RADIUS_KM = 10.0


def _newest_first(listings: List[Listing]) -> List[Listing]:
    return sorted(listings, key=lambda l: l.created_at or utcnow(), reverse=True)


class ListingRepository:
    """Owns the currently visible listing set.

    Discovery reads (``list_all``, ``list_by_share_kind``, ``list_near`` and
    subscription pushes) replace ``listings`` wholesale. A failed read leaves
    ``listings`` as it was and records the error on ``error``.
    """

    def __init__(self, store: DocumentStore, geo_index: Optional[GeoIndex] = None, clock=utcnow):
        self._store = store
        self._geo = geo_index or GeoIndex(store)
        self._clock = clock
        self._subscription: Optional[Subscription] = None
        self.listings: List[Listing] = []
        self.error: Optional[FoodLoopError] = None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    def _active(self) -> Query:
        return Query(LISTINGS).where("is_active", "==", True)

    async def _read(self, fetch, replace_cache: bool = True) -> List[Listing]:
        try:
            result = await fetch()
        except StoreError as e:
            self.error = e
            logger.warning("Listing read failed, keeping %d cached: %s", len(self.listings), e)
            raise
        self.error = None
        if replace_cache:
            self.listings = result
        return result

    # Writes

    async def create(self, listing: Listing, uploader_id: str) -> str:
        if not listing.name.strip():
            raise ValidationError("name is required")
        if not listing.category.strip():
            raise ValidationError("category is required")
        if listing.share_kind == "free":
            listing = listing.model_copy(update={"price": None})
        elif not listing.price:
            raise ValidationError(f"price is required for {listing.share_kind} listings")

        now = self._clock()
        stored = listing.model_copy(update={
            "uploader_id": uploader_id,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        })
        listing_id = await self._store.add(LISTINGS, stored.to_document())
        logger.info("Listing %s created by %s (was %s)", listing_id, uploader_id, listing.id)

        try:
            await self._store.update(USERS, uploader_id, {
                "share_count": Increment(1),
                "points": Increment(UPLOAD_BONUS_POINTS),
                "uploads": ArrayUnion(listing_id),
                "updated_at": now,
            })
        except StoreError as e:
            # the listing itself is valid; stats are the tolerated casualty
            self.error = e
            logger.warning("Listing %s created but uploader stats not updated: %s", listing_id, e)
        return listing_id

    async def soft_delete(self, listing_id: str) -> None:
        await self._store.update(LISTINGS, listing_id, {"is_active": False, "updated_at": self._clock()})
        self.listings = [l for l in self.listings if l.id != listing_id]

    # Reads

    async def list_all(self, limit: int = DEFAULT_LIMIT) -> List[Listing]:
        query = self._active().order_by("created_at", descending=True).limit(limit)

        async def fetch():
            return parse_listings(await self._store.query(query))

        return await self._read(fetch)

    async def list_by_share_kind(self, kind: ShareKind, limit: int = DEFAULT_LIMIT) -> List[Listing]:
        query = self._active().where("share_kind", "==", kind).order_by("created_at", descending=True).limit(limit)

        async def fetch():
            try:
                return parse_listings(await self._store.query(query))
            except IndexRequired:
                logger.info("No composite index for share_kind ordering, sorting client-side")
                return _newest_first(parse_listings(await self._store.query(query.unordered())))

        return await self._read(fetch)

    async def list_by_uploader(self, uploader_id: str, limit: int = DEFAULT_LIMIT,
                               include_inactive: bool = False) -> List[Listing]:
        query = Query(LISTINGS).where("uploader_id", "==", uploader_id)
        if not include_inactive:
            query = query.where("is_active", "==", True)
        query = query.limit(limit)

        async def fetch():
            return _newest_first(parse_listings(await self._store.query(query)))

        return await self._read(fetch, replace_cache=False)

    async def list_near(self, lat: float, lon: float, radius_km: float = DEFAULT_RADIUS_KM,
                        viewer: Optional[LatLon] = None) -> List[Listing]:
        viewer = viewer or LatLon(lat=lat, lon=lon)

        async def fetch():
            found = await self._geo.query_near(lat, lon, radius_km)
            return [with_distance(l, viewer) for l in found]

        return await self._read(fetch)

    # Realtime

    def subscribe(self, on_update: Callable[[List[Listing]], None]) -> Subscription:
        self.close()
        query = self._active().order_by("created_at", descending=True).limit(FEED_WINDOW)

        def deliver(docs):
            self.listings = parse_listings(docs)
            self.error = None
            on_update(list(self.listings))

        def failed(e: StoreError):
            self.error = e

        self._subscription = self._store.watch_query(query, deliver, failed)
        return self._subscription

    def close(self) -> None:
        if self._subscription is not None:
            logger.debug("Closing listing feed subscription")
            self._subscription.close()
            self._subscription = None


def with_distance(listing: Listing, viewer: LatLon) -> Listing:
    meters = haversine_m(viewer.lat, viewer.lon, listing.latitude, listing.longitude)
    return listing.model_copy(update={"distance": format_distance_km(meters)})

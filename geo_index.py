import asyncio
import logging
from typing import Dict, List, Tuple

from pydantic import ValidationError as SchemaError

from database import DocumentStore, Query
from errors import ValidationError
from geo import haversine_m, query_bounds
from schemas import LISTINGS, Listing

logger = logging.getLogger(__name__)

RANGE_LIMIT = 50


def parse_listings(docs) -> List[Listing]:
    listings: List[Listing] = []
    for d in docs:
        try:
            listings.append(Listing.model_validate(d))
        except SchemaError as e:
            logger.warning("Skipping malformed listing %s: %s", d.get("id"), e)
    return listings


class GeoIndex:
    """Proximity search over geohash-keyed listings.

    One range query per covering geohash interval, each limited to
    ``range_limit`` active documents. Results are merged by id and then
    filtered by exact great-circle distance.
    """

    def __init__(self, store: DocumentStore, collection: str = LISTINGS, range_limit: int = RANGE_LIMIT):
        self._store = store
        self._collection = collection
        self._range_limit = range_limit

    def _range_query(self, start: str, end: str) -> Query:
        return (
            Query(self._collection)
            .where("is_active", "==", True)
            .where("geohash", ">=", start)
            .where("geohash", "<", end)
            .order_by("geohash")
            .limit(self._range_limit)
        )

    async def query_near(self, lat: float, lon: float, radius_km: float) -> List[Listing]:
        if radius_km <= 0:
            raise ValidationError("radius_km must be positive")
        radius_m = radius_km * 1000
        bounds = query_bounds(lat, lon, radius_m)
        # any failing range aborts the whole call
        pages = await asyncio.gather(*(self._store.query(self._range_query(s, e)) for s, e in bounds))

        unique: Dict[str, Listing] = {}
        for page in pages:
            for listing in parse_listings(page):
                unique.setdefault(listing.id, listing)

        hits: List[Tuple[float, Listing]] = []
        for listing in unique.values():
            d = haversine_m(lat, lon, listing.latitude, listing.longitude)
            if d <= radius_m:
                hits.append((d, listing))
        hits.sort(key=lambda h: h[0])
        logger.debug("query_near(%s, %s, %skm): %d ranges, %d candidates, %d hits",
                     lat, lon, radius_km, len(bounds), len(unique), len(hits))
        return [listing for _, listing in hits]

"""
Client-side search and ordering over a listing snapshot.

Everything here is pure and synchronous. Every sort relies on Python's
stable ``sorted`` so listings with equal keys keep their input order.
"""
from datetime import datetime, timedelta, timezone
from math import inf, isfinite
from typing import Callable, Dict, Iterable, List, Optional

from errors import ValidationError
from geo import parse_distance_km
from schemas import Listing, ShareKind, SortCriterion


def filter_listings(listings: Iterable[Listing], search_text: str = "",
                    tag: Optional[str] = None, share_kind: Optional[ShareKind] = None) -> List[Listing]:
    """Free-text match on name or any tag, AND at most one categorical filter."""
    if tag is not None and share_kind is not None:
        raise ValidationError("filter by tag or by share kind, not both")
    needle = search_text.casefold()
    result = []
    for listing in listings:
        if needle and needle not in listing.name.casefold() \
                and not any(needle in t.casefold() for t in listing.tags):
            continue
        if tag is not None and tag not in listing.tags:
            continue
        if share_kind is not None and listing.share_kind != share_kind:
            continue
        result.append(listing)
    return result


def distance_key(listing: Listing) -> float:
    km = parse_distance_km(listing.distance)
    return inf if km is None else km


def category_key(listing: Listing) -> str:
    return listing.tags[0] if listing.tags else ""


def price_key(listing: Listing) -> float:
    # free and unparseable both land on 0
    if listing.share_kind == "free" or not listing.price:
        return 0.0
    try:
        value = float(listing.price.replace("$", "").replace(",", "").strip())
    except ValueError:
        return 0.0
    return value if isfinite(value) else 0.0


def expiry_bucket(expiry: datetime, now: datetime) -> int:
    """0 = expires today, 1 = tomorrow, 2 = any other day (including past)."""
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    day = expiry.astimezone(now.tzinfo).date()
    today = now.date()
    if day == today:
        return 0
    if day == today + timedelta(days=1):
        return 1
    return 2


def sort_listings(listings: Iterable[Listing], criterion: SortCriterion,
                  now: Optional[datetime] = None) -> List[Listing]:
    if criterion == "expiry":
        now = now or datetime.now().astimezone()
        return sorted(listings, key=lambda l: (expiry_bucket(l.expiry, now), l.expiry))
    try:
        key = _KEYS[criterion]
    except KeyError:
        raise ValidationError(f"unknown sort criterion '{criterion}'") from None
    return sorted(listings, key=key)


_KEYS: Dict[str, Callable[[Listing], object]] = {
    "distance": distance_key,
    "category": category_key,
    "price": price_key,
}


def search(listings: Iterable[Listing], search_text: str = "", criterion: SortCriterion = "distance",
           tag: Optional[str] = None, share_kind: Optional[ShareKind] = None,
           now: Optional[datetime] = None) -> List[Listing]:
    return sort_listings(filter_listings(listings, search_text, tag, share_kind), criterion, now)

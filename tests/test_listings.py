from datetime import timedelta

import pytest

from errors import StoreQueryError, StoreUnavailable, ValidationError
from geo import encode_geohash
from listings import FEED_WINDOW, UPLOAD_BONUS_POINTS, ListingRepository
from schemas import LISTINGS, USERS

from conftest import FIXED_NOW, MemoryDocumentStore


def seed_listings(store, make_listing, count, **fields):
    for i in range(count):
        listing = make_listing(f"item{i}", created_at=FIXED_NOW - timedelta(hours=i), **fields)
        store.seed(LISTINGS, f"item{i}", listing.to_document())


@pytest.mark.parametrize("fields", [{"name": "  "}, {"category": ""}])
async def test_create_rejects_missing_fields_before_io(repo, store, make_listing, fields):
    with pytest.raises(ValidationError):
        await repo.create(make_listing(**fields), "u1")
    assert store.calls == []


async def test_create_requires_price_for_non_free(repo, store, make_listing):
    with pytest.raises(ValidationError):
        await repo.create(make_listing(share_kind="discounted"), "u1")
    assert store.calls == []


async def test_create_clears_price_on_free_listing(repo, store, user, make_listing):
    listing_id = await repo.create(make_listing(share_kind="free", price="$5"), user.id)
    assert store.raw(LISTINGS, listing_id)["price"] is None


async def test_create_writes_listing_then_credits_uploader(repo, store, user, make_listing):
    listing_id = await repo.create(make_listing(), user.id)

    doc = store.raw(LISTINGS, listing_id)
    assert doc["is_active"] is True
    assert doc["created_at"] == FIXED_NOW
    assert doc["uploader_id"] == user.id
    assert doc["geohash"] == encode_geohash(25.0330, 121.5654)

    profile = store.raw(USERS, user.id)
    assert profile["share_count"] == 1
    assert profile["points"] == UPLOAD_BONUS_POINTS
    assert profile["uploads"] == [listing_id]
    ops = [c[0] for c in store.calls if c[0] in ("add", "update")]
    assert ops == ["add", "update"]


async def test_failed_listing_write_grants_nothing(repo, store, user, make_listing):
    store.fail("add", StoreUnavailable("offline"))
    with pytest.raises(StoreUnavailable):
        await repo.create(make_listing(), user.id)
    profile = store.raw(USERS, user.id)
    assert profile["points"] == 0
    assert profile["share_count"] == 0
    assert store.calls_to("update") == []


async def test_failed_stats_update_is_tolerated(repo, store, user, make_listing):
    store.fail("update", StoreQueryError("rejected"), when=lambda coll, *_: coll == USERS)
    listing_id = await repo.create(make_listing(), user.id)
    assert store.raw(LISTINGS, listing_id) is not None
    assert store.raw(USERS, user.id)["points"] == 0
    assert isinstance(repo.error, StoreQueryError)
    assert repo.retryable


async def test_list_all_newest_first_and_capped(repo, store, make_listing):
    seed_listings(store, make_listing, 5)
    store.seed(LISTINGS, "inactive", make_listing("inactive", created_at=FIXED_NOW, is_active=False).to_document())

    listings = await repo.list_all(limit=3)

    assert [l.id for l in listings] == ["item0", "item1", "item2"]
    assert repo.listings == listings


async def test_list_by_share_kind_sorts_client_side_without_index(make_listing, clock):
    store = MemoryDocumentStore(require_index=True)
    repo = ListingRepository(store, clock=clock)
    for i, kind in enumerate(["free", "donation", "free", "free"]):
        listing = make_listing(f"item{i}", share_kind=kind, price=None if kind == "free" else "$1",
                               created_at=FIXED_NOW - timedelta(hours=3 - i))
        store.seed(LISTINGS, f"item{i}", listing.to_document())

    listings = await repo.list_by_share_kind("free")

    assert [l.id for l in listings] == ["item3", "item2", "item0"]
    assert repo.error is None


async def test_failed_read_keeps_cached_listings(repo, store, make_listing):
    seed_listings(store, make_listing, 2)
    cached = await repo.list_all()
    store.fail("query", StoreUnavailable("offline"))

    with pytest.raises(StoreUnavailable):
        await repo.list_all()

    assert repo.listings == cached
    assert repo.retryable


async def test_list_by_uploader_keeps_history_of_deleted(repo, store, make_listing):
    seed_listings(store, make_listing, 3, uploader_id="u1")
    store.seed(LISTINGS, "other", make_listing("other", uploader_id="u2").to_document())
    await repo.soft_delete("item1")

    assert [l.id for l in await repo.list_by_uploader("u1")] == ["item0", "item2"]
    history = await repo.list_by_uploader("u1", include_inactive=True)
    assert [l.id for l in history] == ["item0", "item1", "item2"]
    assert repo.listings == []


async def test_soft_delete_hides_listing_from_discovery(repo, store, make_listing):
    seed_listings(store, make_listing, 2)
    await repo.list_all()
    await repo.soft_delete("item0")

    assert store.raw(LISTINGS, "item0")["is_active"] is False
    assert [l.id for l in repo.listings] == ["item1"]
    assert [l.id for l in await repo.list_all()] == ["item1"]


async def test_list_near_attaches_display_distance(repo, store, make_listing):
    store.seed(LISTINGS, "a", make_listing("a", 25.0330, 121.5654).to_document())
    store.seed(LISTINGS, "b", make_listing("b", 25.0420, 121.5654).to_document())

    listings = await repo.list_near(25.0330, 121.5654, 5)

    assert [(l.id, l.distance) for l in listings] == [("a", "0.0km"), ("b", "1.0km")]


async def test_subscription_pushes_full_window(repo, store, user, make_listing):
    pushes = []
    repo.subscribe(pushes.append)
    assert pushes == [[]]

    await repo.create(make_listing("first"), user.id)
    await repo.create(make_listing("second"), user.id)

    assert [len(p) for p in pushes] == [0, 1, 2]
    assert {l.name for l in pushes[-1]} == {"first", "second"}
    assert repo.listings == pushes[-1]


async def test_subscription_window_is_capped(repo, store, make_listing):
    seed_listings(store, make_listing, FEED_WINDOW + 5)
    pushes = []
    repo.subscribe(pushes.append)
    assert len(pushes[0]) == FEED_WINDOW


async def test_resubscribe_replaces_previous_subscription(repo, store, user, make_listing):
    first, second = [], []
    old = repo.subscribe(first.append)
    repo.subscribe(second.append)

    assert old.closed
    assert store.watcher_count == 1
    await repo.create(make_listing(), user.id)
    assert len(first) == 1
    assert len(second) == 2

    repo.close()
    assert store.watcher_count == 0

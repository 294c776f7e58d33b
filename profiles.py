import logging
from typing import Callable, List, Optional

from catalog import BADGE_CATALOG, default_badges, default_challenges
from challenges import ChallengeEngine
from database import ArrayRemove, ArrayUnion, DocumentStore, Increment, Subscription
from errors import FoodLoopError, StoreError, ValidationError
from schemas import USERS, Identity, UserProfile, utcnow

logger = logging.getLogger(__name__)

ProfileListener = Callable[[UserProfile], None]


class ProfileRepository:
    """Keyed reads and writes on user documents."""

    def __init__(self, store: DocumentStore, clock=utcnow):
        self._store = store
        self._clock = clock

    async def get(self, user_id: str) -> Optional[UserProfile]:
        doc = await self._store.get(USERS, user_id)
        return UserProfile.model_validate(doc) if doc is not None else None

    async def create_or_update(self, identity: Identity) -> UserProfile:
        """Provision a new profile, or refresh identity fields of an existing one.

        Points, badges, challenges and history of an existing profile are
        never touched.
        """
        now = self._clock()
        name = identity.display_name or "Unknown User"
        existing = await self._store.get(USERS, identity.uid)
        if existing is None:
            await self._store.set(USERS, identity.uid, {
                "display_name": name,
                "initials": name[:1] or "U",
                "email": identity.email or "",
                "photo_url": identity.photo_url,
                "member_since": now,
                "points": 0,
                "share_count": 0,
                "receive_count": 0,
                "is_premium": False,
                "badges": default_badges(now),
                "uploads": [],
                "favorites": [],
                "active_challenges": default_challenges(now),
                "created_at": now,
                "updated_at": now,
                "is_active": True,
            })
            logger.info("Provisioned profile for %s", identity.uid)
        else:
            await self._store.update(USERS, identity.uid, {
                "display_name": name,
                "email": identity.email or "",
                "photo_url": identity.photo_url,
                "updated_at": now,
            })
        return await self.get(identity.uid)

    async def ensure_badge_catalog(self, user_id: str) -> List[str]:
        """Add catalog badges missing from an existing profile, inactive."""
        doc = await self._store.get(USERS, user_id)
        if doc is None:
            return []
        present = doc.get("badges") or {}
        if isinstance(present, list):
            present = {b.get("id"): b for b in present}
        missing = [b for b in BADGE_CATALOG if b.id not in present]
        if missing:
            fields = {f"badges.{b.id}": b.model_dump() for b in missing}
            if isinstance(doc.get("badges"), list):
                # legacy list layout: rewrite as a map, keeping every existing badge as is
                fields = {"badges": {**present, **{b.id: b.model_dump() for b in missing}}}
            fields["updated_at"] = self._clock()
            await self._store.update(USERS, user_id, fields)
            logger.info("Added badges %s to %s", [b.id for b in missing], user_id)
        return [b.id for b in missing]

    async def add_favorite(self, user_id: str, listing_id: str) -> None:
        await self._store.update(USERS, user_id, {"favorites": ArrayUnion(listing_id), "updated_at": self._clock()})

    async def remove_favorite(self, user_id: str, listing_id: str) -> None:
        await self._store.update(USERS, user_id, {"favorites": ArrayRemove(listing_id), "updated_at": self._clock()})

    async def add_points(self, user_id: str, points: int) -> None:
        if points < 0:
            raise ValidationError("points can only be added")
        await self._store.update(USERS, user_id, {"points": Increment(points), "updated_at": self._clock()})

    async def update_stats(self, user_id: str, share_count: Optional[int] = None,
                           receive_count: Optional[int] = None) -> None:
        fields = {"updated_at": self._clock()}
        if share_count is not None:
            fields["share_count"] = Increment(share_count)
        if receive_count is not None:
            fields["receive_count"] = Increment(receive_count)
        await self._store.update(USERS, user_id, fields)


class ProfileAggregate:
    """The signed-in user's profile as last pushed by the store.

    Each push replaces ``profile`` in one assignment. With nobody signed in
    the profile is the guest default. This is a read model: writes go through
    ``ProfileRepository`` and come back via the subscription.
    """

    def __init__(self, store: DocumentStore, engine: ChallengeEngine, repository: Optional[ProfileRepository] = None):
        self._store = store
        self._engine = engine
        self.repository = repository or ProfileRepository(store)
        self._subscription: Optional[Subscription] = None
        self._listeners: List[ProfileListener] = []
        self.user_id: Optional[str] = None
        self.profile: UserProfile = UserProfile.guest()
        self.error: Optional[FoodLoopError] = None

    def add_listener(self, listener: ProfileListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self, profile: UserProfile) -> None:
        self.profile = profile
        for listener in list(self._listeners):
            listener(profile)

    async def load(self, user_id: str) -> Subscription:
        self._close()
        self.user_id = user_id
        try:
            await self.repository.ensure_badge_catalog(user_id)
            await self._engine.repair(user_id)
        except StoreError as e:
            # retried on the next load
            self.error = e
            logger.warning("Profile repair for %s deferred: %s", user_id, e)

        def deliver(doc):
            if self.user_id != user_id:
                return
            if doc is None:
                self._publish(UserProfile.guest())
                return
            profile = UserProfile.model_validate(doc)
            self._engine.absorb(profile)
            self.error = None
            self._publish(profile)

        def failed(e: StoreError):
            self.error = e

        self._subscription = self._store.watch_document(USERS, user_id, deliver, failed)
        return self._subscription

    async def sign_in(self, identity: Identity) -> Subscription:
        await self.repository.create_or_update(identity)
        return await self.load(identity.uid)

    def sign_out(self) -> None:
        if self.user_id is not None:
            self._engine.forget(self.user_id)
        self._close()
        self.user_id = None
        self.error = None
        self._publish(UserProfile.guest())

    def _close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _require_user(self) -> str:
        if self.user_id is None:
            raise ValidationError("no signed-in user")
        return self.user_id

    async def add_favorite(self, listing_id: str) -> None:
        await self.repository.add_favorite(self._require_user(), listing_id)

    async def remove_favorite(self, listing_id: str) -> None:
        await self.repository.remove_favorite(self._require_user(), listing_id)

    def is_favorited(self, listing_id: str) -> bool:
        return listing_id in self.profile.favorites

"""
Challenge progress tracking and badge awarding.

Per (user, challenge type) the state machine is::

    NotStarted (no record) -> InProgress (0 < progress < goal) -> Completed

Completed is terminal: the badge mapped to the type is active, the bonus
points were granted and the active record is gone. The user document keeps
active challenges as a map keyed by type, so a user can never hold two
records for the same type.

Incrementing is two-phase: the new progress is applied to the local view
first, then persisted. A failed persist rolls the local view back. A failed
completion leaves "progress at goal, badge inactive" behind, which
``ChallengeEngine.repair`` finishes later.

Several engines may share one store. Progress writes only land if the stored
progress is unchanged since it was read, and completion only lands while
the badge is still inactive, so the bonus is granted once.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from catalog import CHALLENGE_DEFINITIONS, catalog_badge
from database import DELETE_FIELD, DocumentStore, Increment
from errors import (
    BadgeActivationInconsistency,
    ChallengeNotFound,
    DocumentNotFound,
    FoodLoopError,
    StoreError,
    WriteConflict,
)
from schemas import USERS, ChallengeDefinition, ChallengeProgress, UserProfile, utcnow

logger = logging.getLogger(__name__)

COMPLETION_BONUS_POINTS = 50
ECO_CONTAINER_TAGS = frozenset({"環保", "自製"})
WRITE_ATTEMPTS = 3


@dataclass
class IncrementOutcome:
    challenge_type: str
    progress: int = 0
    goal: int = 0
    changed: bool = False
    completed: bool = False
    error: Optional[FoodLoopError] = None


class ChallengeEngine:
    def __init__(self, store: DocumentStore, definitions: Optional[Dict[str, ChallengeDefinition]] = None,
                 clock=utcnow):
        self._store = store
        self._definitions = definitions if definitions is not None else CHALLENGE_DEFINITIONS
        self._clock = clock
        self._active: Dict[str, Dict[str, ChallengeProgress]] = {}
        self._completed: Dict[str, Set[str]] = {}
        # (user, type) -> [lock, holders]; dropped when the last holder leaves
        self._locks: Dict[Tuple[str, str], list] = {}

    def definition(self, challenge_type: str) -> ChallengeDefinition:
        try:
            return self._definitions[challenge_type]
        except KeyError:
            raise ChallengeNotFound(challenge_type) from None

    @asynccontextmanager
    async def _hold(self, user_id: str, challenge_type: str):
        key = (user_id, challenge_type)
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def _in_flight(self, user_id: str, challenge_type: str) -> bool:
        return (user_id, challenge_type) in self._locks

    # Local view

    def active_challenges(self, user_id: str) -> List[ChallengeProgress]:
        return list(self._active.get(user_id, {}).values())

    def is_completed(self, user_id: str, challenge_type: str) -> bool:
        return challenge_type in self._completed.get(user_id, set())

    def absorb(self, profile: UserProfile) -> None:
        """Refresh the local view from a pushed profile.

        Types with a write in flight keep their local value.
        """
        for key in self._definitions:
            if not self._in_flight(profile.id, key):
                self._apply(profile, key)

    def _apply(self, profile: UserProfile, challenge_type: str) -> None:
        active = self._active.setdefault(profile.id, {})
        completed = self._completed.setdefault(profile.id, set())
        definition = self._definitions[challenge_type]
        badge = profile.badge(definition.badge_id)
        record = profile.challenge(challenge_type)
        if badge is not None and badge.active:
            completed.add(challenge_type)
            active.pop(challenge_type, None)
        else:
            completed.discard(challenge_type)
            if record is not None:
                active[challenge_type] = record
            else:
                active.pop(challenge_type, None)

    def forget(self, user_id: str) -> None:
        self._active.pop(user_id, None)
        self._completed.pop(user_id, None)

    async def _refresh(self, user_id: str, challenge_type: str) -> None:
        doc = await self._store.get(USERS, user_id)
        if doc is None:
            raise DocumentNotFound(USERS, user_id)
        self._apply(UserProfile.model_validate(doc), challenge_type)

    # Transitions

    async def increment(self, user_id: str, challenge_type: str) -> IncrementOutcome:
        """Advance one challenge by one step.

        Every attempt starts from the stored document and writes only if the
        stored progress is still the one it started from, so increments made
        by other processes are never overwritten.
        """
        definition = self.definition(challenge_type)
        async with self._hold(user_id, challenge_type):
            for attempt in range(1, WRITE_ATTEMPTS + 1):
                await self._refresh(user_id, challenge_type)
                try:
                    return await self._advance(user_id, definition)
                except WriteConflict:
                    if attempt == WRITE_ATTEMPTS:
                        raise
                    logger.info("Challenge %s for %s changed concurrently, retrying", challenge_type, user_id)

    async def _advance(self, user_id: str, definition: ChallengeDefinition) -> IncrementOutcome:
        challenge_type = definition.type
        if self.is_completed(user_id, challenge_type):
            return IncrementOutcome(challenge_type, definition.goal, definition.goal, completed=True)

        active = self._active[user_id]
        previous = active.get(challenge_type)
        current = previous or ChallengeProgress(challenge_type=challenge_type, progress=0, goal=definition.goal)
        if current.at_goal:
            # completion pending repair
            return IncrementOutcome(challenge_type, current.progress, current.goal)

        advanced = ChallengeProgress(challenge_type=challenge_type, progress=current.progress + 1,
                                     goal=current.goal, updated_at=self._clock())
        active[challenge_type] = advanced
        path = f"active_challenges.{challenge_type}"
        try:
            await self._store.update(USERS, user_id, {
                path: advanced.model_dump(),
                "updated_at": advanced.updated_at,
            }, precondition=[
                (f"{path}.progress", "==", previous.progress if previous else None),
                (f"badges.{definition.badge_id}.active", "!=", True),
            ])
        except StoreError:
            if previous is None:
                active.pop(challenge_type, None)
            else:
                active[challenge_type] = previous
            raise
        logger.debug("Challenge %s for %s at %d/%d", challenge_type, user_id, advanced.progress, advanced.goal)

        outcome = IncrementOutcome(challenge_type, advanced.progress, advanced.goal, changed=True)
        if advanced.at_goal:
            try:
                await self._complete(user_id, definition)
                outcome.completed = True
            except StoreError as e:
                outcome.error = BadgeActivationInconsistency(user_id, challenge_type, e)
                logger.warning("%s", outcome.error)
        return outcome

    async def _complete(self, user_id: str, definition: ChallengeDefinition) -> bool:
        """Activate the badge, grant the bonus and drop the record in one write.

        Returns False when the badge was already active, in which case only
        the stale record is removed.
        """
        now = self._clock()
        badge = catalog_badge(definition.badge_id).model_copy(update={"active": True, "earned_at": now})
        record = f"active_challenges.{definition.type}"
        try:
            await self._store.update(USERS, user_id, {
                f"badges.{badge.id}": badge.model_dump(),
                "points": Increment(COMPLETION_BONUS_POINTS),
                record: DELETE_FIELD,
                "updated_at": now,
            }, precondition=[(f"badges.{badge.id}.active", "!=", True)])
            awarded = True
            logger.info("User %s completed %s, badge %s activated", user_id, definition.type, badge.id)
        except WriteConflict:
            await self._store.update(USERS, user_id, {record: DELETE_FIELD})
            awarded = False
            logger.info("Badge %s of %s was already active", badge.id, user_id)
        self._active.setdefault(user_id, {}).pop(definition.type, None)
        self._completed.setdefault(user_id, set()).add(definition.type)
        return awarded

    async def repair(self, user_id: str) -> List[str]:
        """Finish completions that stopped between progress and badge activation."""
        doc = await self._store.get(USERS, user_id)
        if doc is None:
            return []
        profile = UserProfile.model_validate(doc)
        repaired = []
        for progress in profile.active_challenges:
            definition = self._definitions.get(progress.challenge_type)
            if definition is None or not progress.at_goal:
                continue
            async with self._hold(user_id, definition.type):
                await self._complete(user_id, definition)
            repaired.append(definition.type)
        if repaired:
            logger.info("Repaired challenge completions for %s: %s", user_id, ", ".join(repaired))
            profile = UserProfile.model_validate(await self._store.get(USERS, user_id))
        self.absorb(profile)
        return repaired

    # Triggers

    async def trigger(self, user_id: str, challenge_types: Iterable[str]) -> List[IncrementOutcome]:
        """Advance each type independently; one failure never blocks the rest."""
        outcomes = []
        for challenge_type in challenge_types:
            try:
                outcomes.append(await self.increment(user_id, challenge_type))
            except ChallengeNotFound as e:
                logger.warning("Ignoring trigger: %s", e)
            except StoreError as e:
                logger.warning("Challenge %s for %s not advanced: %s", challenge_type, user_id, e)
                outcomes.append(IncrementOutcome(challenge_type, error=e))
        return outcomes

    async def on_listing_uploaded(self, user_id: str, tags: Iterable[str] = ()) -> List[IncrementOutcome]:
        types = ["sharing", "zero_waste"]
        if ECO_CONTAINER_TAGS.intersection(tags):
            types.append("eco_container")
        return await self.trigger(user_id, types)

    async def on_fridge_cleaned(self, user_id: str) -> List[IncrementOutcome]:
        return await self.trigger(user_id, ["fridge_cleaning"])

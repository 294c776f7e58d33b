import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from catalog import CHALLENGE_DEFINITIONS
from challenges import ChallengeEngine, IncrementOutcome
from database import DocumentStore, MongoDocumentStore
from errors import (
    ChallengeNotFound,
    DocumentNotFound,
    FoodLoopError,
    StoreError,
    StoreUnavailable,
    ValidationError,
)
from listings import DEFAULT_LIMIT, DEFAULT_RADIUS_KM, ListingRepository
from profiles import ProfileRepository
from ranking import search
from schemas import ChallengeDefinition, Identity, LatLon, Listing, ListingCreate, ShareKind, SortCriterion, UserProfile
from uploads import UploadService

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("foodloop")


@dataclass
class Services:
    store: DocumentStore
    listings: ListingRepository
    engine: ChallengeEngine
    profiles: ProfileRepository
    uploads: UploadService


def build_services(store: DocumentStore) -> Services:
    listings = ListingRepository(store)
    engine = ChallengeEngine(store)
    return Services(
        store=store,
        listings=listings,
        engine=engine,
        profiles=ProfileRepository(store),
        uploads=UploadService(listings, engine),
    )


def services(request: Request) -> Services:
    return request.app.state.services


# -----------------------------
# Models (requests/responses)
# -----------------------------
class UploadRequest(BaseModel):
    uploader_id: str
    listing: ListingCreate


class OutcomeResponse(BaseModel):
    challenge_type: str
    progress: int
    goal: int
    changed: bool
    completed: bool
    error: Optional[str] = None
    retryable: bool = False


class UploadResponse(BaseModel):
    listing_id: str
    challenges: List[OutcomeResponse]


class RepairResponse(BaseModel):
    repaired: List[str]
    badges_added: List[str]


def outcome_response(outcome: IncrementOutcome) -> OutcomeResponse:
    return OutcomeResponse(
        challenge_type=outcome.challenge_type,
        progress=outcome.progress,
        goal=outcome.goal,
        changed=outcome.changed,
        completed=outcome.completed,
        error=str(outcome.error) if outcome.error else None,
        retryable=bool(outcome.error and outcome.error.retryable),
    )


async def require_profile(svc: Services, user_id: str) -> UserProfile:
    profile = await svc.profiles.get(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return profile


# -----------------------------
# Routes
# -----------------------------
router = APIRouter()


@router.get("/")
def read_root():
    return {"message": "FoodLoop API running"}


@router.get("/test")
async def test_database(svc: Services = Depends(services)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        await svc.store.ping()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
        if isinstance(svc.store, MongoDocumentStore):
            response["database_name"] = svc.store.name
            response["collections"] = (await svc.store.list_collection_names())[:10]
    except StoreError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# Listings
@router.post("/api/listings", response_model=UploadResponse)
async def upload_listing(body: UploadRequest, svc: Services = Depends(services)):
    uploader = await require_profile(svc, body.uploader_id)
    result = await svc.uploads.share(body.listing, uploader)
    return UploadResponse(listing_id=result.listing_id, challenges=[outcome_response(o) for o in result.challenges])


@router.get("/api/listings", response_model=List[Listing])
async def list_listings(
    q: str = "",
    sort: SortCriterion = "distance",
    tag: Optional[str] = None,
    share_kind: Optional[ShareKind] = None,
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lon: Optional[float] = Query(None, ge=-180, le=180),
    radius_km: float = Query(DEFAULT_RADIUS_KM, gt=0),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=200),
    svc: Services = Depends(services),
):
    if share_kind is not None:
        items = await svc.listings.list_by_share_kind(share_kind, limit)
    elif lat is not None and lon is not None:
        items = await svc.listings.list_near(lat, lon, radius_km, viewer=LatLon(lat=lat, lon=lon))
    else:
        items = await svc.listings.list_all(limit)
    return search(items, q, sort, tag=tag, share_kind=share_kind)


@router.delete("/api/listings/{listing_id}")
async def delete_listing(listing_id: str, svc: Services = Depends(services)):
    await svc.listings.soft_delete(listing_id)
    return {"status": "deleted", "listing_id": listing_id}


@router.get("/api/users/{user_id}/listings", response_model=List[Listing])
async def uploader_history(user_id: str, include_inactive: bool = False, limit: int = Query(DEFAULT_LIMIT, ge=1, le=200),
                           svc: Services = Depends(services)):
    return await svc.listings.list_by_uploader(user_id, limit, include_inactive=include_inactive)


# Profiles
@router.post("/api/users", response_model=UserProfile)
async def sign_in(identity: Identity, svc: Services = Depends(services)):
    return await svc.profiles.create_or_update(identity)


@router.get("/api/users/{user_id}", response_model=UserProfile)
async def get_profile(user_id: str, svc: Services = Depends(services)):
    return await require_profile(svc, user_id)


@router.post("/api/users/{user_id}/favorites/{listing_id}")
async def add_favorite(user_id: str, listing_id: str, svc: Services = Depends(services)):
    await svc.profiles.add_favorite(user_id, listing_id)
    return {"status": "ok"}


@router.delete("/api/users/{user_id}/favorites/{listing_id}")
async def remove_favorite(user_id: str, listing_id: str, svc: Services = Depends(services)):
    await svc.profiles.remove_favorite(user_id, listing_id)
    return {"status": "ok"}


@router.post("/api/users/{user_id}/repair", response_model=RepairResponse)
async def repair_profile(user_id: str, svc: Services = Depends(services)):
    await require_profile(svc, user_id)
    badges_added = await svc.profiles.ensure_badge_catalog(user_id)
    repaired = await svc.engine.repair(user_id)
    return RepairResponse(repaired=repaired, badges_added=badges_added)


# Challenges
@router.get("/api/challenges", response_model=List[ChallengeDefinition])
def list_challenges():
    return list(CHALLENGE_DEFINITIONS.values())


@router.post("/api/users/{user_id}/challenges/fridge-cleaning", response_model=List[OutcomeResponse])
async def fridge_cleaned(user_id: str, svc: Services = Depends(services)):
    user = await require_profile(svc, user_id)
    return [outcome_response(o) for o in await svc.uploads.fridge_cleaned(user)]


@router.post("/api/users/{user_id}/challenges/{challenge_type}", response_model=OutcomeResponse)
async def increment_challenge(user_id: str, challenge_type: str, svc: Services = Depends(services)):
    await require_profile(svc, user_id)
    return outcome_response(await svc.engine.increment(user_id, challenge_type))


# Realtime feed
def offer_latest(queue: asyncio.Queue, item) -> None:
    """Queue ``item``, dropping the oldest pending snapshot when full."""
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


@router.websocket("/ws/listings")
async def listing_feed(websocket: WebSocket):
    await websocket.accept()
    # each push is a full window, only the newest one matters
    queue: asyncio.Queue = asyncio.Queue(maxsize=1)
    repo = ListingRepository(websocket.app.state.services.store)
    repo.subscribe(lambda listings: offer_latest(queue, listings))

    async def pump():
        while True:
            listings = await queue.get()
            await websocket.send_json([l.model_dump(mode="json") for l in listings])

    sender = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        repo.close()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Listing feed sender failed: %s", e)


# -----------------------------
# App
# -----------------------------
_STATUS = [
    (ValidationError, 400),
    (DocumentNotFound, 404),
    (ChallengeNotFound, 404),
    (StoreUnavailable, 503),
    (StoreError, 502),
]


async def handle_domain_error(request: Request, exc: FoodLoopError):
    status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status, content={"detail": str(exc), "retryable": exc.retryable})


def create_app(store: Optional[DocumentStore] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backing = store or MongoDocumentStore()
        if store is None:
            try:
                await backing.ensure_indexes()
            except StoreError as e:
                logger.warning("Could not ensure indexes: %s", e)
        app.state.services = build_services(backing)
        yield
        if store is None:
            await backing.close()

    app = FastAPI(title="FoodLoop API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(FoodLoopError, handle_domain_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

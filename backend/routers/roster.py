"""
Roster router: the provider's optimistic patient list over HTTP.

Mutating endpoints answer 202 as soon as the speculative write is applied.
The Supabase call keeps running in the background; the client polls
GET /roster to see the row settle (pending=false) or fail (error set), and
GET /roster/toasts for the notifications raised along the way.

One PatientRoster is kept per organization in the RosterRegistry stored on
app.state. It is built on the admin client with explicit organization_id
filters, so it does not depend on any single request's token.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from config import get_settings
from middleware.auth import get_provider_context, ProviderContext
from services.notifier import SupabaseNotifier
from services.optimistic import NotFoundError
from services.patient_roster import PatientRoster
from services.patient_store import PatientStore

log = logging.getLogger("carepanel.roster")

router = APIRouter(prefix="/roster", tags=["roster"])

RosterFactory = Callable[[ProviderContext], Awaitable[PatientRoster]]


async def build_roster(ctx: ProviderContext) -> PatientRoster:
    """Default factory: Supabase-backed store, toasts optionally persisted."""
    from services.supabase_client import get_admin_client

    settings = get_settings()
    db = get_admin_client()
    notifier = SupabaseNotifier(ctx.user_id, db) if settings.persist_notifications else None
    return await PatientRoster.load(PatientStore(db, ctx.organization_id), notifier=notifier)


class RosterRegistry:
    """Lazily loaded roster per organization."""

    def __init__(self, factory: RosterFactory = build_roster):
        self.factory = factory
        self._rosters: dict[str, PatientRoster] = {}
        self._lock = asyncio.Lock()

    async def get(self, ctx: ProviderContext) -> PatientRoster:
        roster = self._rosters.get(ctx.organization_id)
        if roster is not None:
            return roster
        async with self._lock:
            roster = self._rosters.get(ctx.organization_id)
            if roster is None:
                roster = await self.factory(ctx)
                self._rosters[ctx.organization_id] = roster
        return roster

    def drop(self, organization_id: str) -> None:
        self._rosters.pop(organization_id, None)


def get_registry(request: Request) -> RosterRegistry:
    return request.app.state.roster_registry


async def get_roster(
    ctx: ProviderContext = Depends(get_provider_context),
    registry: RosterRegistry = Depends(get_registry),
) -> PatientRoster:
    try:
        return await registry.get(ctx)
    except HTTPException:
        raise
    except Exception as exc:
        log.exception("roster: failed to load roster for %s", ctx.organization_id)
        raise HTTPException(status_code=500, detail=str(exc))


# ── Models ────────────────────────────────────────────────────────────────────

class PatientCreate(BaseModel):
    first_name: str
    last_name: str
    date_of_birth: str
    risk_level: str = "low"


class RiskUpdate(BaseModel):
    risk_level: str


# ── Endpoints ─────────────────────────────────────────────────────────────────

@router.get("/")
async def get_roster_snapshot(roster: PatientRoster = Depends(get_roster)):
    """Current rows with pending/error flags."""
    return roster.snapshot()


@router.get("/toasts")
async def drain_toasts(roster: PatientRoster = Depends(get_roster)):
    """Return and clear the toasts raised since the last poll."""
    return {"toasts": [t.model_dump() for t in roster.toasts.drain()]}


@router.post("/", status_code=status.HTTP_202_ACCEPTED)
async def add_patient(
    body: PatientCreate,
    roster: PatientRoster = Depends(get_roster),
):
    """Show the new patient immediately under a temporary id."""
    try:
        mutation = roster.add_patient(
            body.first_name, body.last_name, body.date_of_birth, body.risk_level
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"id": mutation.id, "pending": True}


@router.patch("/{patient_id}", status_code=status.HTTP_202_ACCEPTED)
async def update_risk(
    patient_id: str,
    body: RiskUpdate,
    roster: PatientRoster = Depends(get_roster),
):
    try:
        mutation = roster.update_risk(patient_id, body.risk_level)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Patient not found.")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"id": mutation.id, "pending": True}


@router.delete("/{patient_id}", status_code=status.HTTP_202_ACCEPTED)
async def remove_patient(
    patient_id: str,
    roster: PatientRoster = Depends(get_roster),
):
    try:
        mutation = roster.remove_patient(patient_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Patient not found.")
    return {"id": mutation.id, "pending": True}


@router.post("/{patient_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_mutation(
    patient_id: str,
    roster: PatientRoster = Depends(get_roster),
):
    """Replay the failed store call for this row."""
    task: Optional[asyncio.Task] = roster.retry(patient_id)
    if task is None:
        raise HTTPException(status_code=409, detail="Nothing to retry for this patient.")
    task.add_done_callback(_consume_result)
    return {"id": patient_id, "pending": True}


@router.delete("/{patient_id}/error", status_code=status.HTTP_204_NO_CONTENT)
async def clear_error(
    patient_id: str,
    roster: PatientRoster = Depends(get_roster),
):
    roster.clear_error(patient_id)


def _consume_result(task: asyncio.Task) -> None:
    # The coordinator has already recorded the failure.
    if not task.cancelled():
        task.exception()

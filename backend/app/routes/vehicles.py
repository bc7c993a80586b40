"""Vehicle and expense routes.

Creates accept a client-generated ``id`` so an offline client can replay
a queued mutation safely: a second create with the same id is rejected
with 409 DUPLICATE_RECORD and the client treats that as acknowledged.
Every successful write bumps the user's change marker and re-arms the
inactivity auto-sync timer.
"""

import asyncio

from fastapi import APIRouter, HTTPException, Request, status

from ..auth import CurrentUser
from ..config import get_settings
from ..database import Activity, Orchestrator, Storage
from ..logging_config import get_logger
from ..models import ExpenseCreate, VehicleCreate, to_record
from ..rate_limit import limiter

logger = get_logger("vroom.vehicles")
router = APIRouter(prefix="/vehicles", tags=["vehicles"])


async def _after_write(user_id: str, storage, orchestrator, activity) -> None:
    await asyncio.to_thread(orchestrator.tracker.mark_data_changed, user_id)
    if not get_settings().auto_sync_enabled:
        return
    settings = await asyncio.to_thread(storage.get_settings, user_id) or {}
    if settings.get("sync_on_inactivity"):
        minutes = settings.get("sync_inactivity_minutes")
        activity.record_activity(user_id, minutes * 60 if minutes else None)


async def _owned_vehicle(storage, user_id: str, vehicle_id: str) -> dict:
    vehicle = await asyncio.to_thread(storage.get_vehicle, vehicle_id)
    # Someone else's vehicle looks exactly like a missing one
    if vehicle is None or vehicle["user_id"] != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found")
    return vehicle


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("120/minute")
async def create_vehicle(
    request: Request,
    vehicle: VehicleCreate,
    auth: CurrentUser,
    storage: Storage,
    orchestrator: Orchestrator,
    activity: Activity,
):
    record = await asyncio.to_thread(storage.create_vehicle, auth.user_id, to_record(vehicle))
    logger.info(f"CREATE | vehicles | {auth.user_id} | {record['id']}")
    await _after_write(auth.user_id, storage, orchestrator, activity)
    return {"success": True, "data": record}


@router.get("")
async def list_vehicles(auth: CurrentUser, storage: Storage):
    vehicles = await asyncio.to_thread(storage.list_vehicles, auth.user_id)
    return {"success": True, "data": vehicles}


@router.post("/{vehicle_id}/expenses", status_code=status.HTTP_201_CREATED)
@limiter.limit("120/minute")
async def create_expense(
    request: Request,
    vehicle_id: str,
    expense: ExpenseCreate,
    auth: CurrentUser,
    storage: Storage,
    orchestrator: Orchestrator,
    activity: Activity,
):
    await _owned_vehicle(storage, auth.user_id, vehicle_id)
    record = await asyncio.to_thread(storage.create_expense, vehicle_id, to_record(expense))
    logger.info(f"CREATE | expenses | {auth.user_id} | {record['id']}")
    await _after_write(auth.user_id, storage, orchestrator, activity)
    return {"success": True, "data": record}


@router.get("/{vehicle_id}/expenses")
async def list_expenses(vehicle_id: str, auth: CurrentUser, storage: Storage):
    await _owned_vehicle(storage, auth.user_id, vehicle_id)
    expenses = await asyncio.to_thread(storage.list_expenses, auth.user_id, vehicle_id)
    return {"success": True, "data": expenses}

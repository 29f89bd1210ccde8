from fastapi import APIRouter, Query

from app.core.config import get_settings
from app.schemas.appointment import AppointmentsResponse
from app.schemas.coach import CoachProfileRequest, CoachRecord
from app.services.coach_service import CoachService

router = APIRouter(prefix="/coaches", tags=["coaches"])


@router.get("/{coach_id}", response_model=CoachRecord)
def get_coach(coach_id: str) -> CoachRecord:
    service = CoachService(get_settings())
    return service.get_coach(coach_id)


@router.put("/{coach_id}", response_model=CoachRecord)
def upsert_coach_profile(coach_id: str, payload: CoachProfileRequest) -> CoachRecord:
    service = CoachService(get_settings())
    return service.upsert_profile(coach_id, payload)


@router.get("/{coach_id}/appointments", response_model=AppointmentsResponse)
def list_coach_appointments(
    coach_id: str,
    limit: int = Query(default=200, ge=1, le=1000),
) -> AppointmentsResponse:
    service = CoachService(get_settings())
    return service.list_appointments(coach_id, limit=limit)

"""
Participant endpoints - token-based access, no accounts
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from pydantic import BaseModel, Field

from a2mp.agents.orchestrator import MeetingOrchestrator, get_orchestrator
from a2mp.api.meetings import http_error
from a2mp.database import get_db
from a2mp.services import meeting_service
from a2mp.services.errors import MeetingError
from a2mp.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


class SubmitInput(BaseModel):
    token: str
    content: str = Field(min_length=10)
    name: Optional[str] = None


@router.get("")
async def get_participant(token: str = Query(...), db: AsyncSession = Depends(get_db)):
    """Resolve an access link to the participant and the meeting brief"""
    try:
        participant = await meeting_service.get_participant_by_token(db, token)
        meeting = await meeting_service.get_meeting(db, participant.meeting_id)
    except MeetingError as e:
        raise http_error(e)

    return {
        "participant": {
            "id": participant.id,
            "email": participant.email,
            "display_name": participant.display_name,
            "has_submitted": participant.has_submitted,
        },
        "meeting": {
            "id": meeting.id,
            "subject": meeting.subject,
            "details": meeting.details,
            "status": meeting.status.value,
        },
    }


@router.post("/submit")
async def submit_input(
    payload: SubmitInput,
    db: AsyncSession = Depends(get_db),
    orchestrator: MeetingOrchestrator = Depends(get_orchestrator),
):
    """Submit the participant's one contribution; the last one starts the meeting"""
    try:
        participant, participant_input, started = await meeting_service.submit_participant_input(
            db, payload.token, payload.content.strip(), payload.name
        )
        meeting_id = participant.meeting_id
        participant_ids = []
        if started:
            participant_ids = [p.id for p in await meeting_service.list_participants(db, meeting_id)]
        await db.commit()
    except MeetingError as e:
        raise http_error(e)

    if started:
        logger.info(f"Meeting {meeting_id} started after final submission")
        orchestrator.on_meeting_started(meeting_id, participant_ids)

    return {
        "ok": True,
        "input_id": participant_input.id,
        "meeting_id": meeting_id,
        "meeting_started": started,
    }

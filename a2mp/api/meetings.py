"""
Meeting management endpoints
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from a2mp.agents.orchestrator import MeetingOrchestrator, get_orchestrator
from a2mp.config import get_settings
from a2mp.database import get_db
from a2mp.models.meeting import MeetingStatus
from a2mp.services import meeting_service
from a2mp.services.errors import (
    InvalidTransitionError,
    MeetingError,
    MeetingNotFoundError,
    ParticipantNotFoundError,
    ReportNotAllowedError,
)
from a2mp.services.notifications import send_invitations
from a2mp.services.realtime import event_stream
from a2mp.utils.helpers import create_participant_url

router = APIRouter()
settings = get_settings()


def http_error(error: MeetingError) -> HTTPException:
    """Map a domain error onto an HTTP status"""
    if isinstance(error, (MeetingNotFoundError, ParticipantNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidTransitionError, ReportNotAllowedError)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# --- Pydantic Schemas ---

class MeetingCreate(BaseModel):
    subject: str = Field(min_length=3)
    details: str = Field(min_length=3)
    participants: List[str] = Field(min_length=1)


class ParticipantLink(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    has_submitted: bool
    url: str


class MeetingResponse(BaseModel):
    id: str
    subject: str
    details: str
    status: MeetingStatus
    created_at: Optional[datetime]
    participants: List[ParticipantLink] = []


class MeetingListItem(BaseModel):
    id: str
    subject: str
    status: MeetingStatus
    created_at: Optional[datetime]
    participant_count: int


class InjectRequest(BaseModel):
    author: str = "Host"
    message: str = Field(min_length=1)


def _participant_link(participant) -> ParticipantLink:
    return ParticipantLink(
        id=participant.id,
        email=participant.email,
        display_name=participant.display_name,
        has_submitted=participant.has_submitted,
        url=create_participant_url(settings.PARTICIPANT_BASE_URL, participant.token),
    )


# ===================== MEETINGS =====================

@router.post("/", response_model=MeetingResponse)
async def create_meeting(
    meeting_data: MeetingCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """Create a meeting and invite participants (cancels any live meeting)"""
    emails = [e.strip() for e in meeting_data.participants if e.strip()]
    if not emails:
        raise HTTPException(status_code=400, detail="At least one participant is required")

    meeting = await meeting_service.create_meeting(
        db, meeting_data.subject.strip(), meeting_data.details.strip(), emails
    )
    participants = await meeting_service.list_participants(db, meeting.id)
    await db.commit()

    links = [_participant_link(p) for p in participants]
    background_tasks.add_task(
        send_invitations, [(link.email, link.url) for link in links], meeting.subject
    )

    return MeetingResponse(
        id=meeting.id,
        subject=meeting.subject,
        details=meeting.details,
        status=meeting.status,
        created_at=meeting.created_at,
        participants=links,
    )


@router.get("/", response_model=List[MeetingListItem])
async def list_meetings(db: AsyncSession = Depends(get_db)):
    """List meetings, newest first"""
    rows = await meeting_service.list_meetings(db)
    return [
        MeetingListItem(
            id=meeting.id,
            subject=meeting.subject,
            status=meeting.status,
            created_at=meeting.created_at,
            participant_count=count,
        )
        for meeting, count in rows
    ]


@router.get("/{meeting_id}/participants", response_model=List[ParticipantLink])
async def list_participants(meeting_id: str, db: AsyncSession = Depends(get_db)):
    try:
        await meeting_service.get_meeting(db, meeting_id)
    except MeetingError as e:
        raise http_error(e)
    participants = await meeting_service.list_participants(db, meeting_id)
    return [_participant_link(p) for p in participants]


@router.get("/{meeting_id}/status")
async def get_meeting_status(meeting_id: str, db: AsyncSession = Depends(get_db)):
    """Status, whiteboard and full transcript"""
    try:
        meeting = await meeting_service.get_meeting(db, meeting_id)
    except MeetingError as e:
        raise http_error(e)

    history = await meeting_service.get_history(db, meeting_id)
    participants = await meeting_service.list_participants(db, meeting_id)
    return {
        "id": meeting.id,
        "subject": meeting.subject,
        "details": meeting.details,
        "status": meeting.status.value,
        "whiteboard": meeting.whiteboard,
        "history": [t.to_dict() for t in history],
        "participants": [
            {"id": p.id, "email": p.email, "display_name": p.display_name, "has_submitted": p.has_submitted}
            for p in participants
        ],
    }


# ===================== CONTROLS =====================

@router.post("/{meeting_id}/pause")
async def pause_meeting(
    meeting_id: str,
    orchestrator: MeetingOrchestrator = Depends(get_orchestrator),
):
    try:
        status = await orchestrator.engine.change_status(meeting_id, MeetingStatus.PAUSED)
    except MeetingError as e:
        raise http_error(e)
    return {"id": meeting_id, "status": status.value}


@router.post("/{meeting_id}/resume")
async def resume_meeting(
    meeting_id: str,
    orchestrator: MeetingOrchestrator = Depends(get_orchestrator),
):
    try:
        status = await orchestrator.engine.change_status(meeting_id, MeetingStatus.RUNNING)
    except MeetingError as e:
        raise http_error(e)
    return {"id": meeting_id, "status": status.value}


@router.post("/{meeting_id}/inject")
async def inject_message(
    meeting_id: str,
    payload: InjectRequest,
    orchestrator: MeetingOrchestrator = Depends(get_orchestrator),
):
    """Add a human message to the transcript; resumes a paused meeting"""
    try:
        turn, resumed = await orchestrator.engine.inject_human_message(
            meeting_id, payload.author, payload.message.strip()
        )
    except MeetingError as e:
        raise http_error(e)
    return {"turn": turn, "resumed": resumed}


@router.post("/{meeting_id}/advance")
async def advance_meeting(
    meeting_id: str,
    orchestrator: MeetingOrchestrator = Depends(get_orchestrator),
):
    """Run one lifecycle step now instead of waiting for the next tick"""
    try:
        return await orchestrator.driver.process_meeting(meeting_id)
    except MeetingError as e:
        raise http_error(e)


@router.get("/{meeting_id}/report")
async def get_report(meeting_id: str, db: AsyncSession = Depends(get_db)):
    try:
        await meeting_service.get_meeting(db, meeting_id)
    except MeetingError as e:
        raise http_error(e)

    report = await meeting_service.get_report(db, meeting_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not ready")
    return report.to_dict()


@router.get("/{meeting_id}/events")
async def meeting_events(
    meeting_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: MeetingOrchestrator = Depends(get_orchestrator),
):
    """Server-sent events: turn, whiteboard, status"""
    try:
        meeting = await meeting_service.get_meeting(db, meeting_id)
    except MeetingError as e:
        raise http_error(e)

    return StreamingResponse(
        event_stream(orchestrator.broadcaster, meeting_id, initial={"status": meeting.status.value}),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )

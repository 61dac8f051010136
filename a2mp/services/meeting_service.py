"""
Meeting store operations.

Plain async functions over an AsyncSession; callers own the transaction.
Turn appends must be serialized per meeting by the caller (TurnEngine holds
the append lock).
"""
from datetime import timedelta
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from a2mp.agents.moderator.prompts import MODERATOR_MCP, MODERATOR_NAME
from a2mp.llm.schemas import WHITEBOARD_CATEGORIES, WhiteboardUpdate
from a2mp.models.conversation_turn import ConversationTurn
from a2mp.models.meeting import ALLOWED_TRANSITIONS, Meeting, MeetingStatus, empty_whiteboard
from a2mp.models.participant import Participant, ParticipantInput
from a2mp.models.persona import Persona, PersonaRole
from a2mp.models.report import Report
from a2mp.services.errors import (
    DuplicateSubmissionError,
    InvalidTransitionError,
    MeetingNotFoundError,
    ParticipantNotFoundError,
)
from a2mp.utils.helpers import generate_id, generate_token, utcnow
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = {MeetingStatus.COMPLETED, MeetingStatus.CANCELLED}


# ===================== MEETINGS =====================


async def create_meeting(
    db: AsyncSession,
    subject: str,
    details: str,
    participant_emails: Iterable[str],
) -> Meeting:
    """
    Create a meeting with one participant (and access token) per contact.

    Every prior meeting that is still live is cancelled: one active meeting
    at a time.
    """
    result = await db.execute(
        select(Meeting).where(Meeting.status.notin_(list(TERMINAL_STATUSES)))
    )
    for previous in result.scalars().all():
        logger.info(f"Cancelling meeting {previous.id} ({previous.status.value}) - superseded")
        previous.status = MeetingStatus.CANCELLED

    meeting = Meeting(
        id=generate_id("mtg"),
        subject=subject,
        details=details,
        status=MeetingStatus.AWAITING_INPUTS,
        whiteboard=empty_whiteboard(),
    )
    db.add(meeting)

    # Invitation order is kept through created_at
    created_at = utcnow()
    seen = set()
    for email in participant_emails:
        email = email.strip()
        if not email or email.lower() in seen:
            continue
        seen.add(email.lower())
        db.add(Participant(
            id=generate_id("prt"),
            meeting_id=meeting.id,
            email=email,
            token=generate_token(),
            has_submitted=False,
            created_at=created_at + timedelta(microseconds=len(seen)),
        ))

    await db.flush()
    logger.info(f"Created meeting {meeting.id} with {len(seen)} participants")
    return meeting


async def get_meeting(db: AsyncSession, meeting_id: str) -> Meeting:
    meeting = await db.get(Meeting, meeting_id)
    if meeting is None:
        raise MeetingNotFoundError(meeting_id)
    return meeting


async def list_meetings(db: AsyncSession) -> List[tuple]:
    """(meeting, participant_count) pairs, newest first"""
    query = (
        select(Meeting, func.count(Participant.id))
        .outerjoin(Participant, Participant.meeting_id == Meeting.id)
        .group_by(Meeting.id)
        .order_by(Meeting.created_at.desc())
    )
    result = await db.execute(query)
    return [(row[0], row[1]) for row in result.all()]


async def get_running_meeting_ids(db: AsyncSession) -> List[str]:
    result = await db.execute(
        select(Meeting.id).where(Meeting.status == MeetingStatus.RUNNING).order_by(Meeting.created_at)
    )
    return list(result.scalars().all())


async def set_status(db: AsyncSession, meeting: Meeting, target: MeetingStatus) -> bool:
    """
    Move `meeting` to `target` along an allowed edge.

    Returns False when already there; raises InvalidTransitionError otherwise.
    """
    target = MeetingStatus(target)
    if meeting.status == target:
        return False
    if target not in ALLOWED_TRANSITIONS[meeting.status]:
        raise InvalidTransitionError(meeting.id, meeting.status.value, target.value)
    logger.info(f"Meeting {meeting.id}: {meeting.status.value} -> {target.value}")
    meeting.status = target
    meeting.updated_at = utcnow()
    await db.flush()
    return True


async def refresh_status(db: AsyncSession, meeting_id: str) -> Optional[MeetingStatus]:
    """Current status straight from the store, bypassing the identity map"""
    result = await db.execute(
        select(Meeting.status).where(Meeting.id == meeting_id)
    )
    return result.scalar_one_or_none()


def _append_new(existing: List[str], incoming: List[str]) -> List[str]:
    seen = {item.casefold() for item in existing}
    merged = list(existing)
    for item in incoming:
        if item.casefold() not in seen:
            seen.add(item.casefold())
            merged.append(item)
    return merged


def apply_whiteboard_update(meeting: Meeting, update: WhiteboardUpdate, policy: str = "append") -> dict:
    """
    Merge a moderator update into the meeting's whiteboard.

    "append" adds items not already listed (compared case-insensitively;
    categories named in `update.replace` are overwritten instead); "replace"
    overwrites every category the update provides. The column is reassigned
    whole, never mutated in place.
    """
    current = dict(empty_whiteboard(), **(meeting.whiteboard or {}))
    updated = {}
    for category in WHITEBOARD_CATEGORIES:
        existing = list(current.get(category) or [])
        incoming = getattr(update, category)
        if incoming is None:
            updated[category] = existing
        elif policy == "replace" or category in update.replace:
            updated[category] = list(incoming)
        else:
            updated[category] = _append_new(existing, incoming)

    meeting.whiteboard = updated
    meeting.updated_at = utcnow()
    return updated


# ===================== PARTICIPANTS =====================


async def get_participant_by_token(db: AsyncSession, token: str) -> Participant:
    result = await db.execute(select(Participant).where(Participant.token == token))
    participant = result.scalar_one_or_none()
    if participant is None:
        raise ParticipantNotFoundError("Invalid link")
    return participant


async def list_participants(db: AsyncSession, meeting_id: str) -> List[Participant]:
    result = await db.execute(
        select(Participant).where(Participant.meeting_id == meeting_id).order_by(Participant.created_at, Participant.id)
    )
    return list(result.scalars().all())


async def get_inputs(db: AsyncSession, meeting_id: str) -> dict:
    """participant_id -> submitted content"""
    result = await db.execute(
        select(ParticipantInput.participant_id, ParticipantInput.content)
        .join(Participant, Participant.id == ParticipantInput.participant_id)
        .where(Participant.meeting_id == meeting_id)
    )
    return {row[0]: row[1] for row in result.all()}


async def submit_participant_input(
    db: AsyncSession,
    token: str,
    content: str,
    display_name: Optional[str] = None,
) -> tuple:
    """
    Record a participant's single contribution.

    Returns (participant, input, started) where `started` is True when this
    was the last outstanding submission and the meeting moved to running.
    """
    participant = await get_participant_by_token(db, token)
    if participant.has_submitted:
        raise DuplicateSubmissionError(participant.id)

    meeting = await get_meeting(db, participant.meeting_id)
    if meeting.status != MeetingStatus.AWAITING_INPUTS:
        raise InvalidTransitionError(meeting.id, meeting.status.value, "accepting inputs")

    if display_name and display_name.strip():
        participant.display_name = display_name.strip()

    participant_input = ParticipantInput(
        id=generate_id("inp"),
        participant_id=participant.id,
        content=content,
    )
    db.add(participant_input)
    participant.has_submitted = True
    await db.flush()

    participants = await list_participants(db, meeting.id)
    started = False
    if all(p.has_submitted for p in participants):
        await ensure_moderator(db, meeting.id)
        started = await set_status(db, meeting, MeetingStatus.RUNNING)
        logger.info(f"All {len(participants)} participants submitted - meeting {meeting.id} running")

    return participant, participant_input, started


# ===================== PERSONAS =====================


async def get_personas(db: AsyncSession, meeting_id: str) -> List[Persona]:
    result = await db.execute(
        select(Persona).where(Persona.meeting_id == meeting_id).order_by(Persona.created_at)
    )
    return list(result.scalars().all())


async def get_moderator(db: AsyncSession, meeting_id: str) -> Optional[Persona]:
    result = await db.execute(
        select(Persona).where(Persona.meeting_id == meeting_id, Persona.role == PersonaRole.MODERATOR)
    )
    return result.scalars().first()


async def ensure_moderator(db: AsyncSession, meeting_id: str) -> Persona:
    """The meeting's single moderator, created from the fixed profile if missing"""
    moderator = await get_moderator(db, meeting_id)
    if moderator is not None:
        return moderator
    moderator = Persona(
        id=generate_id("mod"),
        meeting_id=meeting_id,
        participant_id=None,
        role=PersonaRole.MODERATOR,
        name=MODERATOR_NAME,
        mcp=dict(MODERATOR_MCP),
    )
    db.add(moderator)
    await db.flush()
    return moderator


async def get_persona_for_participant(
    db: AsyncSession, meeting_id: str, participant_id: str
) -> Optional[Persona]:
    result = await db.execute(
        select(Persona).where(
            Persona.meeting_id == meeting_id,
            Persona.participant_id == participant_id,
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def add_persona(
    db: AsyncSession, meeting_id: str, participant_id: str, name: str, mcp: dict
) -> Persona:
    persona = Persona(
        id=generate_id("prs"),
        meeting_id=meeting_id,
        participant_id=participant_id,
        role=PersonaRole.PERSONA,
        name=name,
        mcp=mcp,
    )
    db.add(persona)
    await db.flush()
    return persona


# ===================== TURNS =====================


async def get_history(db: AsyncSession, meeting_id: str) -> List[ConversationTurn]:
    result = await db.execute(
        select(ConversationTurn)
        .where(ConversationTurn.meeting_id == meeting_id)
        .order_by(ConversationTurn.sequence)
    )
    return list(result.scalars().all())


async def append_turn(
    db: AsyncSession,
    meeting_id: str,
    speaker: str,
    message: str,
    metadata: Optional[dict] = None,
) -> ConversationTurn:
    """Add the next turn; sequence and timestamp are strictly increasing"""
    result = await db.execute(
        select(ConversationTurn.sequence, ConversationTurn.created_at)
        .where(ConversationTurn.meeting_id == meeting_id)
        .order_by(ConversationTurn.sequence.desc())
        .limit(1)
    )
    last = result.first()

    created_at = utcnow()
    if last is not None and created_at <= last.created_at:
        created_at = last.created_at + timedelta(microseconds=1)

    turn = ConversationTurn(
        id=generate_id("trn"),
        meeting_id=meeting_id,
        sequence=(last.sequence if last is not None else 0) + 1,
        speaker=speaker,
        message=message,
        turn_metadata=metadata,
        created_at=created_at,
    )
    db.add(turn)
    await db.flush()
    return turn


# ===================== REPORTS =====================


async def get_report(db: AsyncSession, meeting_id: str) -> Optional[Report]:
    result = await db.execute(select(Report).where(Report.meeting_id == meeting_id))
    return result.scalar_one_or_none()

"""
Meeting model
"""
from sqlalchemy import Column, String, DateTime, Text, JSON, Enum
from sqlalchemy.orm import relationship
from a2mp.database import Base
from a2mp.utils.helpers import utcnow
import enum


class MeetingStatus(str, enum.Enum):
    AWAITING_INPUTS = "awaiting_inputs"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Allowed lifecycle edges; completed and cancelled are terminal
ALLOWED_TRANSITIONS = {
    MeetingStatus.AWAITING_INPUTS: {MeetingStatus.RUNNING, MeetingStatus.CANCELLED},
    MeetingStatus.RUNNING: {MeetingStatus.PAUSED, MeetingStatus.COMPLETED, MeetingStatus.CANCELLED},
    MeetingStatus.PAUSED: {MeetingStatus.RUNNING, MeetingStatus.CANCELLED},
    MeetingStatus.COMPLETED: set(),
    MeetingStatus.CANCELLED: set(),
}


def empty_whiteboard() -> dict:
    return {"key_facts": [], "decisions": [], "action_items": []}


class Meeting(Base):
    __tablename__ = "meetings"

    id = Column(String, primary_key=True, index=True)
    subject = Column(String, nullable=False)
    details = Column(Text, nullable=False)
    status = Column(
        Enum(MeetingStatus, native_enum=False),
        nullable=False,
        default=MeetingStatus.AWAITING_INPUTS,
        index=True,
    )

    # Shared whiteboard: {"key_facts": [...], "decisions": [...], "action_items": [...]}
    whiteboard = Column(JSON, nullable=False, default=empty_whiteboard)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    participants = relationship(
        "Participant", back_populates="meeting", cascade="all, delete-orphan"
    )
    personas = relationship(
        "Persona", back_populates="meeting", cascade="all, delete-orphan"
    )
    turns = relationship(
        "ConversationTurn", back_populates="meeting", cascade="all, delete-orphan"
    )
    report = relationship(
        "Report", back_populates="meeting", uselist=False, cascade="all, delete-orphan"
    )

"""
Conversation turns - append-only meeting transcript
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from a2mp.database import Base
from a2mp.utils.helpers import utcnow

MODERATOR_SPEAKER = "Moderator"
AI_PREFIX = "AI:"
HUMAN_PREFIX = "Human:"


def ai_speaker(persona_name: str) -> str:
    return f"{AI_PREFIX}{persona_name}"


def human_speaker(author: str) -> str:
    return f"{HUMAN_PREFIX}{author}"


def is_ai_speaker(speaker: str) -> bool:
    return speaker.startswith(AI_PREFIX)


def is_human_speaker(speaker: str) -> bool:
    return speaker.startswith(HUMAN_PREFIX)


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"
    __table_args__ = (
        UniqueConstraint("meeting_id", "sequence", name="uq_turn_meeting_sequence"),
        Index("ix_turns_meeting_sequence", "meeting_id", "sequence"),
    )

    id = Column(String, primary_key=True, index=True)
    meeting_id = Column(String, ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False)

    # Position within the meeting, 1-based
    sequence = Column(Integer, nullable=False)

    # "Moderator", "AI:<persona name>" or "Human:<author>"
    speaker = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    turn_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    meeting = relationship("Meeting", back_populates="turns")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "meeting_id": self.meeting_id,
            "sequence": self.sequence,
            "speaker": self.speaker,
            "message": self.message,
            "metadata": self.turn_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

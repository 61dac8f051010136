"""
Participant and participant input models
"""
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Boolean
from sqlalchemy.orm import relationship
from a2mp.database import Base
from a2mp.utils.helpers import utcnow


class Participant(Base):
    """A human invited to the meeting; one persona speaks for them"""
    __tablename__ = "participants"

    id = Column(String, primary_key=True, index=True)
    meeting_id = Column(String, ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False, index=True)

    # Contact handle (email) and optional display name given on submission
    email = Column(String, nullable=False)
    display_name = Column(String, nullable=True)

    # Opaque single-use access token, never rotated
    token = Column(String, nullable=False, unique=True, index=True)
    has_submitted = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    meeting = relationship("Meeting", back_populates="participants")
    input = relationship(
        "ParticipantInput", back_populates="participant", uselist=False,
        cascade="all, delete-orphan"
    )

    @property
    def handle(self) -> str:
        """Name used for this participant in prompts and speaker tags"""
        return self.display_name or self.email


class ParticipantInput(Base):
    """The single free-text contribution a participant makes before the conversation"""
    __tablename__ = "participant_inputs"

    id = Column(String, primary_key=True, index=True)
    participant_id = Column(
        String, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    participant = relationship("Participant", back_populates="input")

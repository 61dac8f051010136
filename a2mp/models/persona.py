"""
Persona model - the moderator or an AI stand-in for one participant
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from a2mp.database import Base
from a2mp.utils.helpers import utcnow
import enum


class PersonaRole(str, enum.Enum):
    MODERATOR = "moderator"
    PERSONA = "persona"


class Persona(Base):
    __tablename__ = "personas"
    __table_args__ = (
        UniqueConstraint("meeting_id", "participant_id", name="uq_persona_meeting_participant"),
    )

    id = Column(String, primary_key=True, index=True)
    meeting_id = Column(String, ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_id = Column(String, ForeignKey("participants.id", ondelete="CASCADE"), nullable=True)
    role = Column(Enum(PersonaRole, native_enum=False), nullable=False)
    name = Column(String, nullable=False)

    # Model-Context-Profile: identity, objectives, rules, output_format, tools
    mcp = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    meeting = relationship("Meeting", back_populates="personas")

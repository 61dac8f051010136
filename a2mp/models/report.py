"""
Final meeting report
"""
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from a2mp.database import Base
from a2mp.utils.helpers import utcnow


class Report(Base):
    __tablename__ = "reports"

    id = Column(String, primary_key=True, index=True)
    meeting_id = Column(
        String, ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )

    summary = Column(Text, nullable=False)
    highlights = Column(JSON, nullable=False, default=list)
    decisions = Column(JSON, nullable=False, default=list)
    action_items = Column(JSON, nullable=False, default=list)

    # {"nodes": [{id, label, turns}], "edges": [{source, target, weight}]}
    visual_map = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    meeting = relationship("Meeting", back_populates="report")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "meeting_id": self.meeting_id,
            "summary": self.summary,
            "highlights": self.highlights or [],
            "decisions": self.decisions or [],
            "action_items": self.action_items or [],
            "visual_map": self.visual_map or {"nodes": [], "edges": []},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

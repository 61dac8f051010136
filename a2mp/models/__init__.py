from a2mp.models.meeting import Meeting, MeetingStatus
from a2mp.models.participant import Participant, ParticipantInput
from a2mp.models.persona import Persona, PersonaRole
from a2mp.models.conversation_turn import ConversationTurn
from a2mp.models.report import Report

__all__ = [
    "Meeting",
    "MeetingStatus",
    "Participant",
    "ParticipantInput",
    "Persona",
    "PersonaRole",
    "ConversationTurn",
    "Report",
]

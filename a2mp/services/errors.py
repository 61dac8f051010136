"""
Domain errors raised by meeting operations
"""


class MeetingError(ValueError):
    """Base class for rejected meeting operations"""


class MeetingNotFoundError(MeetingError):
    def __init__(self, meeting_id: str):
        self.meeting_id = meeting_id
        super().__init__(f"Meeting not found: {meeting_id}")


class ParticipantNotFoundError(MeetingError):
    def __init__(self, detail: str = "Invalid token"):
        super().__init__(detail)


class DuplicateSubmissionError(MeetingError):
    def __init__(self, participant_id: str):
        self.participant_id = participant_id
        super().__init__("You have already submitted input for this meeting")


class InvalidTransitionError(MeetingError):
    def __init__(self, meeting_id: str, current: str, target: str):
        self.meeting_id = meeting_id
        self.current = current
        self.target = target
        super().__init__(f"Meeting {meeting_id} cannot go from {current} to {target}")


class ReportNotAllowedError(MeetingError):
    def __init__(self, meeting_id: str, status: str):
        self.meeting_id = meeting_id
        self.status = status
        super().__init__(f"Meeting {meeting_id} is {status} - cannot generate final report")

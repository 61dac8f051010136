"""
Persona generation queue.

Background jobs run one at a time so N simultaneous submissions do not turn
into N parallel model calls. Jobs are keyed by (meeting, participant): a
second request for the same key shares the first one's future, and an
already-persisted persona short-circuits generation. The inline path used by
the turn engine (`generate_now`) goes through the same bookkeeping.
"""
import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from a2mp.agents.persona.agent import PersonaAgent
from a2mp.models.participant import Participant, ParticipantInput
from a2mp.models.persona import Persona
from a2mp.services import meeting_service
from a2mp.services.errors import MeetingError, ParticipantNotFoundError
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

JobKey = Tuple[str, str]


@dataclass
class _PersonaJob:
    meeting_id: str
    participant_id: str
    future: asyncio.Future


def unique_persona_name(generated: str, display_name: str, taken: set) -> str:
    """
    Persona name that differs from the participant's own name and from every
    other persona in the meeting.
    """
    name = generated.strip() or display_name
    if name.lower() == display_name.lower():
        name = f"{display_name} (persona)"
    elif display_name.lower() not in name.lower():
        name = f"{name} ({display_name})"

    candidate = name
    suffix = 2
    lowered = {t.lower() for t in taken}
    while candidate.lower() in lowered:
        candidate = f"{name} {suffix}"
        suffix += 1
    return candidate


def _consume_exception(future: asyncio.Future) -> None:
    # Fire-and-forget callers never read the result
    if not future.cancelled():
        future.exception()


class PersonaQueue:
    def __init__(self, session_factory, persona_agent: PersonaAgent):
        self.session_factory = session_factory
        self.persona_agent = persona_agent
        self._queue: "asyncio.Queue[_PersonaJob]" = asyncio.Queue()
        self._active: Dict[JobKey, asyncio.Future] = {}
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[JobKey] = None
        self.processed = 0
        self.failed = 0

    def enqueue(self, meeting_id: str, participant_id: str) -> asyncio.Future:
        """Queue generation; returns a future resolving to the Persona"""
        key = (meeting_id, participant_id)
        existing = self._active.get(key)
        if existing is not None:
            logger.debug(f"[PersonaQueue] Job already queued for participant {participant_id}")
            return existing

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._active[key] = future
        self._queue.put_nowait(_PersonaJob(meeting_id, participant_id, future))
        logger.info(
            f"[PersonaQueue] Enqueued persona for participant {participant_id} "
            f"(queue length: {self._queue.qsize()})"
        )

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process())
        return future

    async def generate_now(self, meeting_id: str, participant_id: str) -> Persona:
        """Inline generation that joins an in-flight job instead of duplicating it"""
        key = (meeting_id, participant_id)
        existing = self._active.get(key)
        if existing is not None:
            logger.info(f"[PersonaQueue] Waiting on queued persona for participant {participant_id}")
            return await asyncio.shield(existing)

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._active[key] = future
        try:
            persona = await self._create(meeting_id, participant_id)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(persona)
            return persona
        finally:
            self._active.pop(key, None)

    async def _process(self) -> None:
        while not self._queue.empty():
            job = self._queue.get_nowait()
            key = (job.meeting_id, job.participant_id)
            self._current = key
            try:
                persona = await self._create(job.meeting_id, job.participant_id)
            except Exception as e:
                self.failed += 1
                logger.error(f"[PersonaQueue] Persona generation failed for participant {job.participant_id}: {e}")
                if not job.future.done():
                    job.future.set_exception(e)
            else:
                self.processed += 1
                if not job.future.done():
                    job.future.set_result(persona)
            finally:
                self._current = None
                self._active.pop(key, None)
                self._queue.task_done()
        self._worker = None

    async def _create(self, meeting_id: str, participant_id: str) -> Persona:
        async with self.session_factory() as db:
            existing = await meeting_service.get_persona_for_participant(db, meeting_id, participant_id)
            if existing is not None:
                logger.info(f"[PersonaQueue] Persona already exists for participant {participant_id}")
                return existing

            participant = await db.get(Participant, participant_id)
            if participant is None or participant.meeting_id != meeting_id:
                raise ParticipantNotFoundError(f"Participant {participant_id} not in meeting {meeting_id}")
            result = await db.execute(
                select(ParticipantInput.content).where(ParticipantInput.participant_id == participant_id)
            )
            content = result.scalar_one_or_none()
            if content is None:
                raise MeetingError(f"No input found for participant {participant_id}")
            meeting = await meeting_service.get_meeting(db, meeting_id)
            subject = meeting.subject
            display_name = participant.handle

        # No session is held across the model call
        generated = await self.persona_agent.generate_persona(content, subject, display_name)

        async with self.session_factory() as db:
            existing = await meeting_service.get_persona_for_participant(db, meeting_id, participant_id)
            if existing is not None:
                return existing

            taken = {p.name for p in await meeting_service.get_personas(db, meeting_id)}
            name = unique_persona_name(generated.name, display_name, taken)
            try:
                persona = await meeting_service.add_persona(
                    db, meeting_id, participant_id, name, generated.mcp.model_dump()
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await meeting_service.get_persona_for_participant(db, meeting_id, participant_id)
                if existing is None:
                    raise
                return existing

        logger.info(f"[PersonaQueue] Created persona {name!r} for participant {participant_id}")
        return persona

    def status(self) -> dict:
        return {
            "queue_length": self._queue.qsize(),
            "processing": self._current is not None,
            "current": list(self._current) if self._current else None,
            "pending_keys": len(self._active),
            "processed": self.processed,
            "failed": self.failed,
        }

    async def aclose(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        for future in self._active.values():
            if not future.done():
                future.cancel()
        self._active.clear()

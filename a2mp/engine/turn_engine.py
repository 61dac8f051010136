"""
Turn engine - executes one meeting turn at a time.

run_one_turn:
  lock -> re-check status -> turn ceiling -> deadlock check -> moderator picks
  next speaker -> ("none": conclusion check + escape hatches) -> fairness
  guard -> persona (generated on demand) -> persona response -> re-check
  status -> whiteboard update + turn append in one transaction -> broadcast

Sessions are never held across model calls; every write re-reads the
meeting in a fresh session and aborts if it is no longer running.
"""
import asyncio
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from a2mp.agents.moderator.agent import ModeratorAgent, SpeakerOption
from a2mp.agents.persona.agent import PersonaAgent
from a2mp.engine.deadlock import detect_repetition
from a2mp.engine.fairness import apply_fairness
from a2mp.engine.policy import TurnPolicy
from a2mp.llm.errors import MODEL_CALL_ERRORS
from a2mp.llm.schemas import ConclusionCheck, ConversationGraph, GraphEdge, GraphNode, WhiteboardUpdate
from a2mp.models.conversation_turn import (
    AI_PREFIX,
    HUMAN_PREFIX,
    MODERATOR_SPEAKER,
    ai_speaker,
    human_speaker,
)
from a2mp.models.meeting import MeetingStatus
from a2mp.models.report import Report
from a2mp.services import meeting_service
from a2mp.services.errors import InvalidTransitionError, ReportNotAllowedError
from a2mp.services.persona_queue import PersonaQueue
from a2mp.services.realtime import Broadcaster
from a2mp.utils.helpers import generate_id
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

PAUSE_MESSAGE = (
    "The meeting is paused: {reason}. "
    "Human input is requested to move the discussion forward."
)
GENERATION_PAUSE_REASON = "{count} consecutive generation failures ({error})"


@dataclass
class TurnResult:
    concluded: bool = False
    notes: str = ""
    waiting: bool = False
    paused: bool = False
    turn: Optional[dict] = None
    conclusion_checked: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class MeetingLocks:
    """
    Per-meeting in-process locks (single-instance deployment).

    turn: one run_one_turn in flight per meeting
    append: one transcript write at a time (engine turns, injected messages)
    report: one report generation at a time
    """

    def __init__(self):
        self._turn: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._append: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._report: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def turn_lock(self, meeting_id: str) -> asyncio.Lock:
        return self._turn[meeting_id]

    def append_lock(self, meeting_id: str) -> asyncio.Lock:
        return self._append[meeting_id]

    def report_lock(self, meeting_id: str) -> asyncio.Lock:
        return self._report[meeting_id]

    def is_processing(self, meeting_id: str) -> bool:
        lock = self._turn.get(meeting_id)
        return lock is not None and lock.locked()


def build_conversation_graph(history: Sequence[Any]) -> dict:
    """Speakers as nodes, consecutive distinct speakers as weighted edges"""
    counts: Counter = Counter()
    order: List[str] = []
    edges: Dict[tuple, int] = {}

    previous = None
    for turn in history:
        speaker = turn.speaker
        if speaker not in counts:
            order.append(speaker)
        counts[speaker] += 1
        if previous is not None and previous != speaker:
            edges[(previous, speaker)] = edges.get((previous, speaker), 0) + 1
        previous = speaker

    def label(speaker: str) -> str:
        for prefix in (AI_PREFIX, HUMAN_PREFIX):
            if speaker.startswith(prefix):
                return speaker[len(prefix):]
        return speaker

    graph = ConversationGraph(
        nodes=[GraphNode(id=s, label=label(s), turns=counts[s]) for s in order],
        edges=[GraphEdge(source=a, target=b, weight=w) for (a, b), w in edges.items()],
    )
    return graph.model_dump()


class TurnEngine:
    def __init__(
        self,
        session_factory,
        moderator: ModeratorAgent,
        persona_agent: PersonaAgent,
        persona_queue: PersonaQueue,
        broadcaster: Broadcaster,
        locks: Optional[MeetingLocks] = None,
        policy: Optional[TurnPolicy] = None,
    ):
        self.session_factory = session_factory
        self.moderator = moderator
        self.persona_agent = persona_agent
        self.persona_queue = persona_queue
        self.broadcaster = broadcaster
        self.locks = locks or MeetingLocks()
        self.policy = policy or TurnPolicy()
        self._failures: Dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # One turn
    # ------------------------------------------------------------------

    async def run_one_turn(self, meeting_id: str) -> TurnResult:
        if self.locks.is_processing(meeting_id):
            logger.info(f"[TurnEngine] Meeting {meeting_id} is already processing a turn - skipping")
            return TurnResult(notes="Already processing", waiting=True)

        async with self.locks.turn_lock(meeting_id):
            return await self._run_turn(meeting_id)

    async def _run_turn(self, meeting_id: str) -> TurnResult:
        policy = self.policy

        async with self.session_factory() as db:
            meeting = await meeting_service.get_meeting(db, meeting_id)
            if meeting.status != MeetingStatus.RUNNING:
                logger.info(f"[TurnEngine] Skipping turn for {meeting_id} - status is {meeting.status.value}")
                return TurnResult(notes=f"Meeting status is {meeting.status.value}", waiting=True)

            history = await meeting_service.get_history(db, meeting_id)
            if len(history) >= policy.max_turns:
                logger.info(f"[TurnEngine] Meeting {meeting_id} reached {policy.max_turns} turns - concluding")
                return TurnResult(concluded=True, notes="Max turns reached")

            repetition = detect_repetition(history, policy)
            if not repetition.is_repetitive:
                moderator = await meeting_service.ensure_moderator(db, meeting_id)
                participants = await meeting_service.list_participants(db, meeting_id)
                personas = await meeting_service.get_personas(db, meeting_id)
                inputs = await meeting_service.get_inputs(db, meeting_id)
                whiteboard = dict(meeting.whiteboard or {})
                moderator_mcp = dict(moderator.mcp)
                await db.commit()

        if repetition.is_repetitive:
            logger.warning(f"[TurnEngine] Repetition detected in {meeting_id}: {repetition.reason}")
            await self.pause_with_message(meeting_id, repetition.reason, kind="deadlock")
            return TurnResult(paused=True, notes=repetition.reason)

        persona_names = {p.participant_id: p.name for p in personas if p.participant_id}
        spoken = {t.speaker for t in history}
        options = [
            SpeakerOption(
                participant_id=p.id,
                email=p.email,
                handle=p.handle,
                has_spoken=p.id in persona_names and ai_speaker(persona_names[p.id]) in spoken,
            )
            for p in participants
            if p.id in inputs
        ]

        try:
            decision = await self.moderator.decide_next_speaker(moderator_mcp, whiteboard, history, options)
        except MODEL_CALL_ERRORS as e:
            return await self._generation_failed(meeting_id, None, "decide_next_speaker", e)

        update = decision.whiteboard_update

        if decision.is_none:
            return await self._handle_none(meeting_id, decision.moderator_notes, update, len(history))

        selected = self._resolve_option(decision.next_speaker, options, persona_names)
        if selected is None:
            logger.warning(f"[TurnEngine] Moderator selected unknown speaker: {decision.next_speaker!r}")
            await self._commit(meeting_id, update)
            return TurnResult(notes="Unknown speaker selected", waiting=True)

        chosen = apply_fairness(selected, options, persona_names, history, policy)
        if chosen.participant_id != selected.participant_id:
            logger.warning(
                f"[TurnEngine] {selected.handle} spoke too often in the last {policy.fairness_window} turns "
                f"- switching to {chosen.handle}"
            )
        selected = chosen

        name = persona_names.get(selected.participant_id)
        mcp = next((p.mcp for p in personas if p.participant_id == selected.participant_id), None)
        if name is None:
            logger.info(f"[TurnEngine] Generating persona on demand for {selected.handle}")
            try:
                persona = await self.persona_queue.generate_now(meeting_id, selected.participant_id)
            except MODEL_CALL_ERRORS as e:
                return await self._generation_failed(meeting_id, update, "generate_persona", e)
            name, mcp = persona.name, persona.mcp

        try:
            message = await self.persona_agent.respond(
                name, mcp, whiteboard, history, inputs.get(selected.participant_id)
            )
        except MODEL_CALL_ERRORS as e:
            return await self._generation_failed(meeting_id, update, "persona_respond", e)

        if len(message.strip()) < policy.min_response_chars:
            return await self._generation_failed(meeting_id, update, "persona_respond", "response too short")

        turn, _, aborted = await self._commit(
            meeting_id,
            update,
            speaker=ai_speaker(name),
            message=message.strip(),
            metadata={"moderator_notes": decision.moderator_notes, "participant_id": selected.participant_id},
        )
        if aborted:
            return TurnResult(notes="Meeting status changed - turn discarded", waiting=True)

        self._failures.pop(meeting_id, None)
        logger.info(f"[TurnEngine] Turn {turn['sequence']} in {meeting_id} by {turn['speaker']}")
        return TurnResult(notes=decision.moderator_notes, turn=turn)

    async def _handle_none(
        self,
        meeting_id: str,
        notes: str,
        update: Optional[WhiteboardUpdate],
        turn_count: int,
    ) -> TurnResult:
        policy = self.policy
        _, _, aborted = await self._commit(meeting_id, update)
        if aborted:
            return TurnResult(notes="Meeting status changed - turn discarded", waiting=True)

        logger.info(f"[TurnEngine] Moderator selected none in {meeting_id} - checking for conclusion")
        check = await self.attempt_conclusion(meeting_id)
        if check.conclude:
            return TurnResult(concluded=True, notes=notes or check.reason, conclusion_checked=True)

        if turn_count < policy.none_force_below_turns:
            logger.info(f"[TurnEngine] Only {turn_count} turns and nobody to call on - forcing conclusion")
            return TurnResult(concluded=True, notes="Insufficient information to proceed", conclusion_checked=True)

        if turn_count >= policy.none_force_from_turns:
            logger.info(f"[TurnEngine] {turn_count} turns and moderator stalled - forcing conclusion")
            return TurnResult(concluded=True, notes="Conversation concluded by moderator", conclusion_checked=True)

        logger.info(f"[TurnEngine] Not ready to conclude ({check.reason}) - retrying next cycle")
        return TurnResult(notes=notes or check.reason, conclusion_checked=True)

    def _resolve_option(
        self,
        choice: str,
        options: Sequence[SpeakerOption],
        persona_names: Dict[str, str],
    ) -> Optional[SpeakerOption]:
        for option in options:
            if option.email == choice:
                return option

        lowered = choice.strip().lower()
        if lowered.startswith(AI_PREFIX.lower()):
            lowered = lowered[len(AI_PREFIX):].strip()
        for option in options:
            candidates = {option.email.lower(), option.handle.lower()}
            name = persona_names.get(option.participant_id)
            if name:
                candidates.add(name.lower())
            if lowered in candidates:
                return option
        return None

    async def _generation_failed(
        self,
        meeting_id: str,
        update: Optional[WhiteboardUpdate],
        operation: str,
        error: Any,
    ) -> TurnResult:
        self._failures[meeting_id] += 1
        count = self._failures[meeting_id]
        logger.warning(f"[TurnEngine] {operation} failed for {meeting_id} ({count} in a row): {error}")

        await self._commit(meeting_id, update)

        if count >= self.policy.max_consecutive_failures:
            reason = GENERATION_PAUSE_REASON.format(count=count, error=operation)
            paused = await self.pause_with_message(meeting_id, reason, kind="generation_failure")
            self._failures.pop(meeting_id, None)
            if paused:
                return TurnResult(paused=True, notes=reason)

        return TurnResult(notes="Generation error - skipping turn", waiting=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _commit(
        self,
        meeting_id: str,
        update: Optional[WhiteboardUpdate],
        speaker: Optional[str] = None,
        message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> tuple:
        """
        Whiteboard update and turn append as one transaction, only while the
        meeting is still running. Returns (turn, whiteboard, aborted).
        """
        has_update = update is not None and not update.is_empty()
        if not has_update and speaker is None:
            return None, None, False

        async with self.locks.append_lock(meeting_id):
            async with self.session_factory() as db:
                meeting = await meeting_service.get_meeting(db, meeting_id)
                if meeting.status != MeetingStatus.RUNNING:
                    logger.warning(
                        f"[TurnEngine] Meeting {meeting_id} became {meeting.status.value} mid-turn - discarding"
                    )
                    return None, None, True

                whiteboard = None
                if has_update:
                    whiteboard = meeting_service.apply_whiteboard_update(
                        meeting, update, self.policy.whiteboard_policy
                    )
                turn = None
                if speaker is not None:
                    turn = await meeting_service.append_turn(db, meeting_id, speaker, message, metadata)
                await db.commit()
                turn_data = turn.to_dict() if turn is not None else None

        if whiteboard is not None:
            self.broadcaster.broadcast_whiteboard(meeting_id, whiteboard)
        if turn_data is not None:
            self.broadcaster.broadcast_turn(meeting_id, turn_data)
        return turn_data, whiteboard, False

    async def pause_with_message(self, meeting_id: str, reason: str, kind: str = "pause") -> bool:
        """Pause a running meeting and explain why in the transcript"""
        async with self.locks.append_lock(meeting_id):
            async with self.session_factory() as db:
                meeting = await meeting_service.get_meeting(db, meeting_id)
                if meeting.status != MeetingStatus.RUNNING:
                    return False
                await meeting_service.set_status(db, meeting, MeetingStatus.PAUSED)
                turn = await meeting_service.append_turn(
                    db,
                    meeting_id,
                    MODERATOR_SPEAKER,
                    PAUSE_MESSAGE.format(reason=reason),
                    {"type": kind, "reason": reason},
                )
                await db.commit()
                turn_data = turn.to_dict()

        logger.warning(f"[TurnEngine] Meeting {meeting_id} paused: {reason}")
        self.broadcaster.broadcast_turn(meeting_id, turn_data)
        self.broadcaster.broadcast_status(meeting_id, MeetingStatus.PAUSED.value)
        return True

    async def inject_human_message(self, meeting_id: str, author: str, message: str) -> tuple:
        """
        Append a human turn. Unknown authors are tagged as the host. A paused
        meeting resumes. Returns (turn, resumed).
        """
        async with self.locks.append_lock(meeting_id):
            async with self.session_factory() as db:
                meeting = await meeting_service.get_meeting(db, meeting_id)
                if meeting.status in meeting_service.TERMINAL_STATUSES:
                    raise InvalidTransitionError(meeting_id, meeting.status.value, "accepting messages")

                participants = await meeting_service.list_participants(db, meeting_id)
                wanted = (author or "").strip().lower()
                known = wanted and any(
                    wanted in {p.email.lower(), (p.display_name or "").lower()} for p in participants
                )
                speaker = human_speaker(author.strip() if known else "Host")

                turn = await meeting_service.append_turn(db, meeting_id, speaker, message, {"type": "human"})
                resumed = False
                if meeting.status == MeetingStatus.PAUSED:
                    resumed = await meeting_service.set_status(db, meeting, MeetingStatus.RUNNING)
                await db.commit()
                turn_data = turn.to_dict()

        if resumed:
            self._failures.pop(meeting_id, None)
            logger.info(f"[TurnEngine] Meeting {meeting_id} resumed after human input")
        self.broadcaster.broadcast_turn(meeting_id, turn_data)
        if resumed:
            self.broadcaster.broadcast_status(meeting_id, MeetingStatus.RUNNING.value)
        return turn_data, resumed

    async def change_status(self, meeting_id: str, target: MeetingStatus) -> MeetingStatus:
        """Host pause/resume; no-op when already in `target`"""
        async with self.session_factory() as db:
            meeting = await meeting_service.get_meeting(db, meeting_id)
            if target == MeetingStatus.RUNNING and meeting.status == MeetingStatus.AWAITING_INPUTS:
                # Only the last submission starts a meeting
                raise InvalidTransitionError(meeting_id, meeting.status.value, target.value)
            changed = await meeting_service.set_status(db, meeting, target)
            await db.commit()
            status = meeting.status

        if changed:
            if status == MeetingStatus.RUNNING:
                self._failures.pop(meeting_id, None)
            self.broadcaster.broadcast_status(meeting_id, status.value)
        return status

    # ------------------------------------------------------------------
    # Conclusion and report
    # ------------------------------------------------------------------

    async def attempt_conclusion(self, meeting_id: str) -> ConclusionCheck:
        async with self.session_factory() as db:
            meeting = await meeting_service.get_meeting(db, meeting_id)
            if meeting.status != MeetingStatus.RUNNING:
                logger.info(f"[TurnEngine] Skipping conclusion check - {meeting_id} is {meeting.status.value}")
                return ConclusionCheck(conclude=False, reason=f"Meeting is {meeting.status.value}, not running")

            moderator = await meeting_service.get_moderator(db, meeting_id)
            if moderator is None:
                return ConclusionCheck(conclude=False, reason="Moderator missing")

            history = await meeting_service.get_history(db, meeting_id)
            whiteboard = dict(meeting.whiteboard or {})
            mcp = dict(moderator.mcp)

        recent = history[-5:]
        empty = sum(1 for t in recent if len((t.message or "").strip()) < self.policy.min_response_chars)
        if empty > 2:
            logger.warning(f"[TurnEngine] {empty} empty messages in last 5 turns - skipping conclusion check")
            return ConclusionCheck(conclude=False, reason="Generation errors detected")

        check = await self.moderator.check_for_conclusion(mcp, whiteboard, history)
        logger.info(f"[TurnEngine] Conclusion check for {meeting_id}: {check.conclude} ({check.reason})")
        return check

    async def generate_final_report(self, meeting_id: str) -> dict:
        """
        Summarize the meeting and mark it completed. Idempotent: an existing
        report is returned as-is.
        """
        async with self.locks.report_lock(meeting_id):
            async with self.session_factory() as db:
                meeting = await meeting_service.get_meeting(db, meeting_id)
                existing = await meeting_service.get_report(db, meeting_id)
                if existing is not None:
                    logger.info(f"[TurnEngine] Report already exists for {meeting_id}")
                    return existing.to_dict()
                if meeting.status not in (MeetingStatus.RUNNING, MeetingStatus.COMPLETED):
                    raise ReportNotAllowedError(meeting_id, meeting.status.value)

                history = await meeting_service.get_history(db, meeting_id)
                whiteboard = dict(meeting.whiteboard or {})

            logger.info(f"[TurnEngine] Generating final report for {meeting_id} ({len(history)} turns)")
            summary = await self.moderator.summarize_conversation(whiteboard, history)
            graph = build_conversation_graph(history)

            async with self.session_factory() as db:
                meeting = await meeting_service.get_meeting(db, meeting_id)
                if meeting.status not in (MeetingStatus.RUNNING, MeetingStatus.COMPLETED):
                    raise ReportNotAllowedError(meeting_id, meeting.status.value)

                report = Report(
                    id=generate_id("rpt"),
                    meeting_id=meeting_id,
                    summary=summary.summary,
                    highlights=summary.highlights,
                    decisions=summary.decisions,
                    action_items=summary.action_items,
                    visual_map=graph,
                )
                db.add(report)
                changed = await meeting_service.set_status(db, meeting, MeetingStatus.COMPLETED)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    existing = await meeting_service.get_report(db, meeting_id)
                    if existing is None:
                        raise
                    return existing.to_dict()
                data = report.to_dict()

        self._failures.pop(meeting_id, None)
        if changed:
            self.broadcaster.broadcast_status(meeting_id, MeetingStatus.COMPLETED.value)
        logger.info(f"[TurnEngine] Final report {data['id']} generated for {meeting_id}")
        return data

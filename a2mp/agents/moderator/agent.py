"""
Moderator Agent - picks speakers, keeps the whiteboard, decides when to stop
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from a2mp.agents.base_agent import BaseAgent
from a2mp.agents.moderator.prompts import (
    CONCLUSION_PROMPT,
    CONCLUSION_RESPONSE_FORMAT,
    CONCLUSION_SYSTEM_PROMPT,
    FALLBACK_SUMMARY,
    HUMAN_CONTEXT,
    INSTRUCTION_ADDRESSED,
    INSTRUCTION_ALTERNATE,
    INSTRUCTION_ANY,
    INSTRUCTION_NOBODY,
    INSTRUCTION_NOT_SPOKEN,
    MODERATOR_NAME,
    NO_DISCUSSION_HIGHLIGHT,
    NO_DISCUSSION_SUMMARY,
    SELECTION_PROMPT,
    SELECTION_SYSTEM_PROMPT,
    SPEAKER_DECISION_RESPONSE_FORMAT,
    SUMMARY_PROMPT,
    SUMMARY_RESPONSE_FORMAT,
    SUMMARY_SYSTEM_PROMPT,
)
from a2mp.llm.errors import MODEL_CALL_ERRORS
from a2mp.llm.gateway import ModelGateway
from a2mp.llm.rate_limiter import LimiterIdentity, Priority
from a2mp.llm.schemas import ConclusionCheck, MeetingSummary, SpeakerDecision, Whiteboard
from a2mp.llm.token_estimator import ResponseSize
from a2mp.models.conversation_turn import AI_PREFIX, is_human_speaker
from a2mp.utils.helpers import truncate
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

_DIRECT_ADDRESS = re.compile(
    r"\b(\w+),?\s+(what|how|why|do you|can you|would you|could you|should we)\b", re.IGNORECASE
)
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass
class SpeakerOption:
    """A participant the moderator may pick"""
    participant_id: str
    email: str
    handle: str
    has_spoken: bool = False


def _format_turns(turns: Sequence[Any], limit: int) -> str:
    if not turns:
        return "(no turns yet)"
    return "\n".join(f"{t.speaker}: {truncate(t.message, limit)}" for t in turns)


def _human_context(turns: Sequence[Any]) -> str:
    humans = [t for t in turns if is_human_speaker(t.speaker)]
    if not humans:
        return ""
    messages = " | ".join(f'{t.speaker}: "{truncate(t.message, 100)}"' for t in humans)
    return HUMAN_CONTEXT.format(messages=messages)


def _name_words(option: SpeakerOption) -> set:
    local_part = option.email.split("@", 1)[0]
    return {w for w in _WORD_SPLIT.split(f"{option.handle} {local_part}".lower()) if w}


def find_addressed(message: str, options: Sequence[SpeakerOption]) -> Optional[SpeakerOption]:
    """
    Participant named right before a question in `message`, if any.

    Only participants who have spoken can be addressed, and the name must
    match a whole word of their display name or email local part.
    """
    spoken = [o for o in options if o.has_spoken]
    for match in _DIRECT_ADDRESS.finditer(message or ""):
        word = match.group(1).lower()
        for option in spoken:
            if word in _name_words(option):
                return option
    return None


class ModeratorAgent(BaseAgent):
    """
    Runs every moderator-side model call on the moderator rate limiter
    """

    identity = LimiterIdentity.MODERATOR

    def __init__(self, gateway: ModelGateway, selection_window: int = 5):
        super().__init__(name=MODERATOR_NAME, gateway=gateway)
        self.selection_window = selection_window

    def build_instruction(self, recent: Sequence[Any], options: Sequence[SpeakerOption]) -> str:
        """Encode the selection precedence for the model"""
        last_speaker = recent[-1].speaker if recent else "none"
        last_message = recent[-1].message if recent else ""
        last_name = last_speaker[len(AI_PREFIX):] if last_speaker.startswith(AI_PREFIX) else last_speaker

        addressed = find_addressed(last_message, options)
        not_spoken = [o.email for o in options if not o.has_spoken]
        spoken = [o for o in options if o.has_spoken]
        others = [
            o.email for o in spoken
            if o.handle.lower() not in last_name.lower() and o.email.lower() not in last_name.lower()
        ]

        if addressed is not None:
            return INSTRUCTION_ADDRESSED.format(speaker=addressed.email)
        if not_spoken:
            return INSTRUCTION_NOT_SPOKEN.format(speakers=", ".join(not_spoken))
        if others:
            return INSTRUCTION_ALTERNATE.format(last_speaker=last_name, speakers=", ".join(others))
        if spoken:
            return INSTRUCTION_ANY.format(speakers=", ".join(o.email for o in spoken))
        return INSTRUCTION_NOBODY

    async def decide_next_speaker(
        self,
        mcp: Dict[str, Any],
        whiteboard: Dict[str, List[str]],
        history: Sequence[Any],
        options: Sequence[SpeakerOption],
    ) -> SpeakerDecision:
        """
        Pick the next speaker (or "none") and propose a whiteboard update.

        Malformed output raises MalformedOutputError; there is no fallback.
        """
        board = Whiteboard.model_validate(whiteboard or {})
        recent = list(history)[-self.selection_window:]
        last = recent[-1] if recent else None

        system_prompt = SELECTION_SYSTEM_PROMPT.format(
            identity=mcp.get("identity", ""),
            objectives="; ".join(mcp.get("objectives", [])),
            rules="; ".join(mcp.get("rules", [])),
        )
        prompt = SELECTION_PROMPT.format(
            key_facts=json.dumps(board.key_facts, ensure_ascii=False),
            decisions=json.dumps(board.decisions, ensure_ascii=False),
            action_items=json.dumps(board.action_items, ensure_ascii=False),
            recent_turns=_format_turns(recent, 200),
            last_speaker=last.speaker if last else "none",
            last_message=truncate(last.message, 150) if last else "",
            human_context=_human_context(recent),
            instruction=self.build_instruction(recent, options),
            response_format=json.dumps(SPEAKER_DECISION_RESPONSE_FORMAT, indent=2),
        )

        decision = await self.generate_structured_response(
            operation="decide_next_speaker",
            prompt=prompt,
            schema=SpeakerDecision,
            system_prompt=system_prompt,
            size=ResponseSize.JSON,
            priority=Priority.TURN,
            temperature=0.5,
        )
        logger.info(f"[Moderator] Next speaker: {decision.next_speaker!r} ({decision.moderator_notes})")
        return decision

    async def check_for_conclusion(
        self,
        mcp: Dict[str, Any],
        whiteboard: Dict[str, List[str]],
        history: Sequence[Any],
    ) -> ConclusionCheck:
        """Ask whether objectives are met; failures mean "not yet" """
        board = Whiteboard.model_validate(whiteboard or {})
        recent = list(history)[-3:]

        prompt = CONCLUSION_PROMPT.format(
            objectives=json.dumps(mcp.get("objectives", []), ensure_ascii=False),
            key_facts=json.dumps(board.key_facts[:5], ensure_ascii=False),
            decisions=json.dumps(board.decisions[:5], ensure_ascii=False),
            turn_count=len(recent),
            recent_turns=_format_turns(recent, 150),
            response_format=json.dumps(CONCLUSION_RESPONSE_FORMAT, indent=2),
        )

        try:
            return await self.generate_structured_response(
                operation="check_for_conclusion",
                prompt=prompt,
                schema=ConclusionCheck,
                system_prompt=CONCLUSION_SYSTEM_PROMPT,
                size=ResponseSize.SHORT,
                priority=Priority.CONCLUSION,
                temperature=0.3,
            )
        except MODEL_CALL_ERRORS as e:
            logger.warning(f"[Moderator] Conclusion check failed, continuing meeting: {e}")
            return ConclusionCheck(conclude=False, reason=f"Conclusion check failed: {e}")

    async def summarize_conversation(
        self,
        whiteboard: Dict[str, List[str]],
        history: Sequence[Any],
    ) -> MeetingSummary:
        """Final summary; an empty transcript never reaches the model"""
        board = Whiteboard.model_validate(whiteboard or {})
        history = list(history)

        if not history:
            return MeetingSummary(
                summary=NO_DISCUSSION_SUMMARY,
                highlights=[NO_DISCUSSION_HIGHLIGHT],
            )

        turns = [{"speaker": t.speaker, "msg": truncate(t.message, 150)} for t in history[-10:]]
        prompt = SUMMARY_PROMPT.format(
            key_facts=json.dumps(board.key_facts, ensure_ascii=False),
            decisions=json.dumps(board.decisions, ensure_ascii=False),
            action_items=json.dumps(board.action_items, ensure_ascii=False),
            turns=json.dumps(turns, ensure_ascii=False),
            response_format=json.dumps(SUMMARY_RESPONSE_FORMAT, indent=2),
        )

        try:
            summary = await self.generate_structured_response(
                operation="summarize_conversation",
                prompt=prompt,
                schema=MeetingSummary,
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                size=ResponseSize.LONG,
                priority=Priority.REPORT,
                temperature=0.6,
            )
        except MODEL_CALL_ERRORS as e:
            logger.warning(f"[Moderator] Using fallback summary: {e}")
            return self._fallback_summary(board, history)

        # Missing lists fall back to the whiteboard
        if "decisions" not in summary.model_fields_set:
            summary.decisions = list(board.decisions)
        if "action_items" not in summary.model_fields_set:
            summary.action_items = list(board.action_items)
        return summary

    def _fallback_summary(self, board: Whiteboard, history: list) -> MeetingSummary:
        return MeetingSummary(
            summary=FALLBACK_SUMMARY.format(turn_count=len(history)),
            highlights=[f"{t.speaker}: {truncate(t.message, 50)}..." for t in history[-5:]],
            decisions=list(board.decisions),
            action_items=list(board.action_items),
        )

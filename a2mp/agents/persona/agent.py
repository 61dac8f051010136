"""
Persona Agent - creates participant personas and speaks for them
"""
import json
from typing import Any, Dict, List, Optional, Sequence

from a2mp.agents.base_agent import BaseAgent
from a2mp.agents.persona.prompts import (
    HUMAN_INPUT,
    NAME_HINT,
    NAME_INSTRUCTION_FREE,
    NAME_INSTRUCTION_GIVEN,
    ORIGINAL_INPUT,
    OWN_HISTORY,
    PERSONA_PROMPT,
    PERSONA_RESPONSE_FORMAT,
    PERSONA_SYSTEM_PROMPT,
    RESPONSE_PROMPT,
    RESPONSE_SYSTEM_PROMPT,
)
from a2mp.llm.gateway import ModelGateway
from a2mp.llm.rate_limiter import LimiterIdentity, Priority
from a2mp.llm.schemas import NO_PLEASANTRIES_RULE, GeneratedPersona, Whiteboard
from a2mp.llm.token_estimator import ResponseSize
from a2mp.models.conversation_turn import ai_speaker, is_human_speaker
from a2mp.utils.helpers import truncate
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

MAX_RESPONSE_WORDS = 70


class PersonaAgent(BaseAgent):
    """
    Persona synthesis and persona responses, on the participant rate limiter
    """

    identity = LimiterIdentity.PARTICIPANT

    def __init__(self, gateway: ModelGateway, response_window: int = 8, min_response_chars: int = 10):
        super().__init__(name="PersonaAgent", gateway=gateway)
        self.response_window = response_window
        self.min_response_chars = min_response_chars

    async def generate_persona(
        self,
        input_text: str,
        subject: str,
        participant_name: Optional[str] = None,
    ) -> GeneratedPersona:
        """
        Build a persona from a participant's submission.

        Responses missing name or profile fields raise MalformedOutputError.
        """
        prompt = PERSONA_PROMPT.format(
            subject=subject,
            input=input_text,
            name_hint=NAME_HINT.format(name=participant_name) if participant_name else "",
            first_rule=NO_PLEASANTRIES_RULE,
            name_instruction=(
                NAME_INSTRUCTION_GIVEN.format(name=participant_name)
                if participant_name else NAME_INSTRUCTION_FREE
            ),
            response_format=json.dumps(PERSONA_RESPONSE_FORMAT, indent=2),
        )

        persona = await self.generate_structured_response(
            operation="generate_persona",
            prompt=prompt,
            schema=GeneratedPersona,
            system_prompt=PERSONA_SYSTEM_PROMPT,
            size=ResponseSize.JSON,
            priority=Priority.PERSONA,
            temperature=0.7,
        )
        logger.info(f"[Persona] Generated persona {persona.name!r}")
        return persona

    async def respond(
        self,
        name: str,
        mcp: Dict[str, Any],
        whiteboard: Dict[str, List[str]],
        history: Sequence[Any],
        participant_input: Optional[str] = None,
    ) -> str:
        """
        One free-text contribution from persona `name`.

        Output under the minimum length raises TransientModelError (retried,
        then surfaced to the caller).
        """
        board = Whiteboard.model_validate(whiteboard or {})
        recent = list(history)[-self.response_window:]

        own = [truncate(t.message, 80) for t in recent if t.speaker == ai_speaker(name)]
        humans = [t for t in recent if is_human_speaker(t.speaker)]

        prompt = RESPONSE_PROMPT.format(
            name=name,
            identity=truncate(mcp.get("identity", ""), 120),
            original_input=ORIGINAL_INPUT.format(input=truncate(participant_input, 150)) if participant_input else "",
            own_history=OWN_HISTORY.format(messages=" | ".join(own)) if own else "",
            human_context=(
                HUMAN_INPUT.format(
                    messages=" | ".join(f'{t.speaker}: "{truncate(t.message, 100)}"' for t in humans)
                )
                if humans else ""
            ),
            decisions=json.dumps(board.decisions[-5:], ensure_ascii=False),
            recent=" | ".join(f"{t.speaker}: {truncate(t.message, 60)}" for t in recent) or "(none yet)",
            max_words=MAX_RESPONSE_WORDS,
        )
        system_prompt = RESPONSE_SYSTEM_PROMPT.format(
            rules="; ".join(mcp.get("rules", [])),
            output_format=mcp.get("output_format", "Concise and direct"),
        )

        return await self.generate_response(
            operation="persona_respond",
            prompt=prompt,
            system_prompt=system_prompt,
            size=ResponseSize.MEDIUM,
            priority=Priority.TURN,
            temperature=0.9,
            min_chars=self.min_response_chars,
        )

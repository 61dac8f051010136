"""
Base class for all AI agents
"""
from typing import Optional, Type, TypeVar

from pydantic import BaseModel

from a2mp.llm.errors import TransientModelError
from a2mp.llm.gateway import ModelGateway
from a2mp.llm.parsing import decode
from a2mp.llm.rate_limiter import LimiterIdentity, Priority
from a2mp.llm.token_estimator import ResponseSize
from a2mp.services.claude_service import ModelResponse

M = TypeVar("M", bound=BaseModel)

# Anything shorter is treated as an empty generation
MIN_OUTPUT_CHARS = 10


class BaseAgent:
    """
    Base class for the moderator and persona agents.

    Each agent draws from one rate limiter identity through the shared gateway.
    """

    identity: LimiterIdentity = LimiterIdentity.PARTICIPANT

    def __init__(self, name: str, gateway: ModelGateway):
        self.name = name
        self.gateway = gateway

    async def generate_response(
        self,
        operation: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        size: ResponseSize = ResponseSize.MEDIUM,
        priority: int = Priority.TURN,
        temperature: float = 0.7,
        min_chars: int = MIN_OUTPUT_CHARS,
    ) -> str:
        """Free-text generation; too-short output is retried"""

        def validate(response: ModelResponse) -> str:
            text = (response.text or "").strip()
            if len(text) < min_chars:
                raise TransientModelError(
                    f"{operation}: response too short or empty ({len(text)} chars)"
                )
            return text

        return await self.gateway.invoke(
            identity=self.identity,
            operation=operation,
            prompt=prompt,
            system_prompt=system_prompt,
            size=size,
            priority=priority,
            temperature=temperature,
            validate=validate,
        )

    async def generate_structured_response(
        self,
        operation: str,
        prompt: str,
        schema: Type[M],
        system_prompt: Optional[str] = None,
        size: ResponseSize = ResponseSize.JSON,
        priority: int = Priority.TURN,
        temperature: float = 0.7,
    ) -> M:
        """JSON generation decoded into `schema`; malformed output is not retried"""

        def validate(response: ModelResponse) -> M:
            text = (response.text or "").strip()
            if len(text) < MIN_OUTPUT_CHARS:
                raise TransientModelError(
                    f"{operation}: response too short or empty ({len(text)} chars)"
                )
            return decode(text, schema).unwrap(operation)

        return await self.gateway.invoke(
            identity=self.identity,
            operation=operation,
            prompt=prompt,
            system_prompt=system_prompt,
            size=size,
            priority=priority,
            temperature=temperature,
            json_mode=True,
            validate=validate,
        )

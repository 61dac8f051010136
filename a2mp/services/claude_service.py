"""
Claude API service wrapper
"""
import enum
from dataclasses import dataclass
from typing import Optional

from anthropic import AsyncAnthropic

from a2mp.config import get_settings
from a2mp.llm.errors import ModelNotConfiguredError

JSON_INSTRUCTION = """

IMPORTANT: Respond with ONLY a valid JSON object.
Do not include any markdown formatting, code blocks, or explanatory text.
Just return the raw JSON."""


class FinishReason(str, enum.Enum):
    STOP = "stop"
    SAFETY = "safety"
    RECITATION = "recitation"
    MAX_TOKENS = "max_tokens"
    OTHER = "other"


_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.MAX_TOKENS,
    "refusal": FinishReason.SAFETY,
}


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ModelResponse:
    text: str
    finish_reason: FinishReason = FinishReason.STOP
    usage: Optional[TokenUsage] = None


class ClaudeService:
    """One client per rate limiter identity (moderator or participants)"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        settings = get_settings()
        self.model = model or settings.CLAUDE_MODEL
        self.max_tokens = max_tokens or settings.CLAUDE_MAX_TOKENS
        self._available = bool(api_key)
        if self._available:
            self.client = AsyncAnthropic(api_key=api_key, max_retries=0)
        else:
            self.client = None

    @property
    def is_available(self) -> bool:
        return self._available

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 1.0,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> ModelResponse:
        """
        Generate one completion from Claude
        """
        if not self._available or self.client is None:
            raise ModelNotConfiguredError("AI service not configured: ANTHROPIC_API_KEY is not set")

        if json_mode:
            prompt = f"{prompt}{JSON_INSTRUCTION}"

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens or self.max_tokens,
            temperature=temperature,
            system=system_prompt if system_prompt else "",
            messages=[{"role": "user", "content": prompt}],
        )

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                input_tokens=response.usage.input_tokens or 0,
                output_tokens=response.usage.output_tokens or 0,
            )

        return ModelResponse(
            text=text,
            finish_reason=_STOP_REASONS.get(response.stop_reason, FinishReason.OTHER),
            usage=usage,
        )


def build_claude_services(settings=None) -> dict:
    """Clients keyed by rate limiter identity value"""
    settings = settings or get_settings()
    participant_key = settings.ANTHROPIC_API_KEY or None
    moderator_key = settings.ANTHROPIC_MODERATOR_API_KEY or participant_key
    return {
        "moderator": ClaudeService(api_key=moderator_key),
        "participant": ClaudeService(api_key=participant_key),
    }

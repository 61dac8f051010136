"""
Token estimation for model calls.

Estimates feed the rate limiter's tokens-per-minute budget before a call is
admitted; actual usage reported by the provider is reconciled afterwards.
"""
import enum
import re
from typing import Optional

CHARS_PER_TOKEN = 4


class ResponseSize(str, enum.Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"
    JSON = "json"


# Expected output tokens per verbosity class
_OUTPUT_ESTIMATES = {
    ResponseSize.SHORT: 200,
    ResponseSize.MEDIUM: 400,
    ResponseSize.LONG: 800,
    ResponseSize.JSON: 600,
}

# Hard output caps sent to the model
_OUTPUT_CAPS = {
    ResponseSize.SHORT: 300,
    ResponseSize.MEDIUM: 500,
    ResponseSize.LONG: 1000,
    ResponseSize.JSON: 800,
}

_WHITESPACE = re.compile(r"\s+")


def estimate_tokens(text: Optional[str]) -> int:
    """~4 characters per token over whitespace-normalized text"""
    if not text:
        return 0
    normalized = _WHITESPACE.sub(" ", text).strip()
    return -(-len(normalized) // CHARS_PER_TOKEN)


def estimate_input_tokens(system_prompt: Optional[str], user_prompt: str) -> int:
    return estimate_tokens(system_prompt) + estimate_tokens(user_prompt)


def estimate_output_tokens(size: ResponseSize) -> int:
    return _OUTPUT_ESTIMATES.get(ResponseSize(size), 400)


def max_output_tokens(size: ResponseSize) -> int:
    return _OUTPUT_CAPS.get(ResponseSize(size), 500)

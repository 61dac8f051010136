"""
Model gateway - the single path every model call takes.

estimate tokens -> rate limiter admission (per identity, by priority)
-> retry policy -> Claude -> finish-reason check -> validation -> reconcile
"""
from typing import Callable, Optional, TypeVar

from a2mp.llm.errors import ContentPolicyError, ModelNotConfiguredError
from a2mp.llm.rate_limiter import LimiterIdentity, Priority, RateLimiter
from a2mp.llm.retry import RetryConfig, with_retry
from a2mp.llm.token_estimator import (
    ResponseSize,
    estimate_input_tokens,
    estimate_output_tokens,
    max_output_tokens,
)
from a2mp.services.claude_service import ClaudeService, FinishReason, ModelResponse
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_BLOCKING_FINISH_REASONS = {FinishReason.SAFETY, FinishReason.RECITATION, FinishReason.OTHER}


class ModelGateway:
    def __init__(
        self,
        clients: dict[LimiterIdentity, ClaudeService],
        limiters: dict[LimiterIdentity, RateLimiter],
        retry_config: Optional[RetryConfig] = None,
    ):
        self.clients = {LimiterIdentity(k): v for k, v in clients.items()}
        self.limiters = {LimiterIdentity(k): v for k, v in limiters.items()}
        self.retry_config = retry_config or RetryConfig()

    async def invoke(
        self,
        identity: LimiterIdentity,
        operation: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        size: ResponseSize = ResponseSize.MEDIUM,
        priority: int = Priority.TURN,
        temperature: float = 0.7,
        json_mode: bool = False,
        validate: Optional[Callable[[ModelResponse], T]] = None,
    ):
        """
        Run one model call.

        `validate` receives the raw response inside the retry loop: raising
        TransientModelError retries, any other ModelError fails the call.
        Returns the validated value, or the ModelResponse when no validator
        is given.
        """
        identity = LimiterIdentity(identity)
        client = self.clients[identity]
        limiter = self.limiters[identity]

        if not client.is_available:
            raise ModelNotConfiguredError(f"No API key configured for {identity.value} calls")

        estimated_input = estimate_input_tokens(system_prompt, prompt)
        estimated_output = estimate_output_tokens(size)
        estimated_total = estimated_input + estimated_output

        async def attempt():
            response = await client.generate(
                prompt=prompt,
                system_prompt=system_prompt,
                temperature=temperature,
                max_tokens=max_output_tokens(size),
                json_mode=json_mode,
            )

            if response.finish_reason in _BLOCKING_FINISH_REASONS:
                raise ContentPolicyError(response.finish_reason.value, operation)
            if response.finish_reason == FinishReason.MAX_TOKENS:
                logger.warning(f"[Gateway] {operation} response truncated at max tokens")

            result = validate(response) if validate is not None else response

            if response.usage is not None:
                limiter.reconcile(estimated_total, response.usage.total_tokens)
                logger.debug(
                    f"[Gateway] {operation} tokens - estimated: {estimated_total} "
                    f"(in {estimated_input} / out {estimated_output}), "
                    f"actual: {response.usage.total_tokens}"
                )
            return result

        return await limiter.schedule(
            lambda: with_retry(attempt, self.retry_config, operation),
            estimated_total,
            priority,
        )

    def status(self) -> dict:
        return {identity.value: limiter.status() for identity, limiter in self.limiters.items()}

    async def aclose(self) -> None:
        for limiter in self.limiters.values():
            await limiter.aclose()

"""
Meeting orchestrator - owns every process-wide collaborator.

Rate limiters (one per identity), model gateway, agents, persona queue,
broadcaster, per-meeting locks, turn engine and lifecycle driver are built
once here and shared through app.state.
"""
from typing import Iterable, Optional

from fastapi import Request

from a2mp.agents.moderator.agent import ModeratorAgent
from a2mp.agents.persona.agent import PersonaAgent
from a2mp.config import get_settings
from a2mp.database import AsyncSessionLocal
from a2mp.engine.lifecycle import LifecycleDriver
from a2mp.engine.policy import TurnPolicy
from a2mp.engine.turn_engine import MeetingLocks, TurnEngine
from a2mp.llm.gateway import ModelGateway
from a2mp.llm.rate_limiter import LimiterIdentity, RateLimiter, RateLimits
from a2mp.llm.retry import RetryConfig
from a2mp.services.claude_service import build_claude_services
from a2mp.services.persona_queue import PersonaQueue
from a2mp.services.realtime import Broadcaster
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)


def build_rate_limiters(settings) -> dict:
    return {
        LimiterIdentity.MODERATOR: RateLimiter(
            LimiterIdentity.MODERATOR,
            RateLimits(
                requests_per_minute=settings.MODERATOR_REQUESTS_PER_MINUTE,
                tokens_per_minute=settings.MODERATOR_TOKENS_PER_MINUTE,
                requests_per_day=settings.MODERATOR_REQUESTS_PER_DAY,
            ),
            min_interval=settings.MIN_REQUEST_INTERVAL_SECONDS,
        ),
        LimiterIdentity.PARTICIPANT: RateLimiter(
            LimiterIdentity.PARTICIPANT,
            RateLimits(
                requests_per_minute=settings.PARTICIPANT_REQUESTS_PER_MINUTE,
                tokens_per_minute=settings.PARTICIPANT_TOKENS_PER_MINUTE,
                requests_per_day=settings.PARTICIPANT_REQUESTS_PER_DAY,
            ),
            min_interval=settings.MIN_REQUEST_INTERVAL_SECONDS,
        ),
    }


class MeetingOrchestrator:
    """
    Wires the meeting engine together.

    `clients` and `limiters` may be injected (tests use a scripted client and
    zero-spacing limiters); otherwise they are built from settings.
    """

    def __init__(
        self,
        settings=None,
        session_factory=None,
        clients: Optional[dict] = None,
        limiters: Optional[dict] = None,
        policy: Optional[TurnPolicy] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or AsyncSessionLocal
        self.policy = policy or TurnPolicy.from_settings(self.settings)

        self.gateway = ModelGateway(
            clients if clients is not None else build_claude_services(self.settings),
            limiters if limiters is not None else build_rate_limiters(self.settings),
            RetryConfig.from_settings(self.settings),
        )
        self.moderator = ModeratorAgent(self.gateway, selection_window=self.policy.selection_window)
        self.persona_agent = PersonaAgent(
            self.gateway,
            response_window=self.policy.response_window,
            min_response_chars=self.policy.min_response_chars,
        )
        self.persona_queue = PersonaQueue(self.session_factory, self.persona_agent)
        self.broadcaster = Broadcaster()
        self.locks = MeetingLocks()
        self.engine = TurnEngine(
            self.session_factory,
            self.moderator,
            self.persona_agent,
            self.persona_queue,
            self.broadcaster,
            locks=self.locks,
            policy=self.policy,
        )
        self.driver = LifecycleDriver(
            self.session_factory, self.engine, interval=self.settings.ENGINE_TICK_SECONDS
        )

    def start(self) -> None:
        if not self.settings.ENGINE_ENABLED:
            logger.info("Lifecycle driver disabled - meetings advance only through the advance endpoint")
            return
        self.driver.start()

    def on_meeting_started(self, meeting_id: str, participant_ids: Iterable[str]) -> None:
        """Called once every participant has submitted"""
        self.broadcaster.broadcast_status(meeting_id, "running")
        if self.settings.PERSONA_GENERATION_MODE == "eager":
            for participant_id in participant_ids:
                self.persona_queue.enqueue(meeting_id, participant_id)
            logger.info(f"Queued eager persona generation for meeting {meeting_id}")

    def status(self) -> dict:
        return {
            "rate_limiter": self.gateway.status(),
            "persona_queue": self.persona_queue.status(),
            "engine": {
                "enabled": self.settings.ENGINE_ENABLED,
                "running": self.driver.running,
                "ticks": self.driver.ticks,
                "tick_seconds": self.driver.interval,
            },
        }

    async def aclose(self) -> None:
        await self.driver.stop()
        await self.persona_queue.aclose()
        await self.gateway.aclose()


def get_orchestrator(request: Request) -> MeetingOrchestrator:
    """FastAPI dependency"""
    return request.app.state.orchestrator

"""
Test fixtures - temp-file SQLite database, scripted model client, HTTP client
"""
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from a2mp.agents.orchestrator import MeetingOrchestrator
from a2mp.config import Settings
from a2mp.database import Base, build_engine, build_session_factory, get_db
from a2mp.llm.rate_limiter import LimiterIdentity, RateLimiter
from a2mp.main import app
from a2mp.models.meeting import MeetingStatus
from a2mp.services import meeting_service
from a2mp.services.claude_service import FinishReason, ModelResponse, TokenUsage
from a2mp.services.realtime import Broadcaster


@dataclass
class RecordedCall:
    prompt: str
    system_prompt: Optional[str]
    temperature: float
    max_tokens: Optional[int]
    json_mode: bool


Scripted = Union[str, ModelResponse, BaseException, Callable[[RecordedCall], Union[str, ModelResponse]]]


class FakeModelClient:
    """
    Stands in for ClaudeService. Each call consumes the next scripted item:
    a string (returned as text), a ModelResponse, an exception (raised), or a
    callable producing either.
    """

    def __init__(self, script: Optional[List[Scripted]] = None, available: bool = True, default: str = ""):
        self.script = list(script or [])
        self.available = available
        self.default = default
        self.calls: List[RecordedCall] = []

    @property
    def is_available(self) -> bool:
        return self.available

    def push(self, *items: Scripted) -> None:
        self.script.extend(items)

    async def generate(self, prompt, system_prompt=None, temperature=0.7, max_tokens=None, json_mode=False):
        call = RecordedCall(prompt, system_prompt, temperature, max_tokens, json_mode)
        self.calls.append(call)
        item = self.script.pop(0) if self.script else self.default
        if callable(item) and not isinstance(item, BaseException):
            item = item(call)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, ModelResponse):
            return item
        return ModelResponse(
            text=item,
            finish_reason=FinishReason.STOP,
            usage=TokenUsage(input_tokens=len(prompt) // 4, output_tokens=len(item) // 4),
        )


class RecordingBroadcaster(Broadcaster):
    def __init__(self):
        super().__init__()
        self.events: list = []

    def publish(self, meeting_id, event, data):
        self.events.append((meeting_id, event, data))
        super().publish(meeting_id, event, data)

    def of(self, event: str) -> list:
        return [data for _, name, data in self.events if name == event]


def fast_limiters() -> dict:
    return {
        LimiterIdentity.MODERATOR: RateLimiter(LimiterIdentity.MODERATOR, min_interval=0.0),
        LimiterIdentity.PARTICIPANT: RateLimiter(LimiterIdentity.PARTICIPANT, min_interval=0.0),
    }


def make_settings(**overrides) -> Settings:
    values = dict(
        ENGINE_ENABLED=False,
        RETRY_INITIAL_DELAY_SECONDS=0.0,
        MIN_REQUEST_INTERVAL_SECONDS=0.0,
        SMTP_HOST="",
    )
    values.update(overrides)
    return Settings(**values)


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """Fresh SQLite file per test; engine and API share it through separate sessions"""
    engine = build_engine(f"sqlite:///{tmp_path / 'a2mp_test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def moderator_client():
    return FakeModelClient()


@pytest_asyncio.fixture()
async def participant_client():
    return FakeModelClient()


@pytest_asyncio.fixture()
async def orchestrator(session_factory, moderator_client, participant_client):
    orch = MeetingOrchestrator(
        settings=make_settings(),
        session_factory=session_factory,
        clients={"moderator": moderator_client, "participant": participant_client},
        limiters=fast_limiters(),
    )
    orch.broadcaster = RecordingBroadcaster()
    orch.engine.broadcaster = orch.broadcaster
    yield orch
    await orch.aclose()


@pytest_asyncio.fixture()
async def client(session_factory, orchestrator):
    """httpx AsyncClient bound to the FastAPI app"""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.orchestrator = orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def running_meeting(session_factory):
    """A running meeting: two participants (Alice, Bob) with inputs and a moderator"""
    async with session_factory() as db:
        meeting = await meeting_service.create_meeting(
            db, "Office move", "Pick a date and a budget for the move", ["alice@example.com", "bob@example.com"]
        )
        participants = await meeting_service.list_participants(db, meeting.id)
        await db.commit()
        tokens = [p.token for p in participants]

    async with session_factory() as db:
        await meeting_service.submit_participant_input(
            db, tokens[0], "We should move in March, the lease ends then.", "Alice"
        )
        _, _, started = await meeting_service.submit_participant_input(
            db, tokens[1], "Budget must stay under 20k, movers are expensive.", "Bob"
        )
        await db.commit()

    assert started
    async with session_factory() as db:
        meeting = await meeting_service.get_meeting(db, meeting.id)
        assert meeting.status == MeetingStatus.RUNNING
        participants = await meeting_service.list_participants(db, meeting.id)

    return {"meeting_id": meeting.id, "participants": participants, "tokens": tokens}

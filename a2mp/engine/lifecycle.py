"""
Lifecycle driver - periodically advances every running meeting by one turn.

Each tick: running meetings -> one turn each -> conclusion check -> final
report (once) when the meeting concluded. A failure in one meeting is logged
and never stops the others.
"""
import asyncio
from typing import Optional

from a2mp.engine.turn_engine import TurnEngine
from a2mp.models.meeting import MeetingStatus
from a2mp.services import meeting_service
from a2mp.services.errors import MeetingError, MeetingNotFoundError, ReportNotAllowedError
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)


class LifecycleDriver:
    def __init__(self, session_factory, engine: TurnEngine, interval: float = 8.0):
        self.session_factory = session_factory
        self.engine = engine
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    async def _current_status(self, meeting_id: str) -> MeetingStatus:
        async with self.session_factory() as db:
            status = await meeting_service.refresh_status(db, meeting_id)
        if status is None:
            raise MeetingNotFoundError(meeting_id)
        return status

    async def process_meeting(self, meeting_id: str) -> dict:
        """One lifecycle step for a single meeting"""
        status = await self._current_status(meeting_id)
        if status != MeetingStatus.RUNNING:
            logger.info(f"[Lifecycle] Skipping {meeting_id} - status is {status.value}")
            return {"skipped": True, "reason": f"Meeting is {status.value}", "status": status.value}

        result = await self.engine.run_one_turn(meeting_id)

        status = await self._current_status(meeting_id)
        if status != MeetingStatus.RUNNING:
            logger.info(f"[Lifecycle] {meeting_id} became {status.value} during the turn")
            return {"skipped": False, "result": result.to_dict(), "concluded": False, "status": status.value}

        concluded = result.concluded
        reason = result.notes
        if not concluded and result.turn is not None and not result.conclusion_checked:
            check = await self.engine.attempt_conclusion(meeting_id)
            concluded, reason = check.conclude, check.reason

        report = None
        if concluded:
            logger.info(f"[Lifecycle] Concluding {meeting_id}: {reason}")
            try:
                report = await self.engine.generate_final_report(meeting_id)
            except ReportNotAllowedError as e:
                logger.warning(f"[Lifecycle] Report skipped for {meeting_id}: {e}")
                concluded = False

        status = await self._current_status(meeting_id)
        return {
            "skipped": False,
            "result": result.to_dict(),
            "concluded": concluded,
            "reason": reason,
            "report": report,
            "status": status.value,
        }

    async def tick(self) -> int:
        """Advance every running meeting once; returns how many were processed"""
        self.ticks += 1
        async with self.session_factory() as db:
            meeting_ids = await meeting_service.get_running_meeting_ids(db)

        if meeting_ids:
            logger.debug(f"[Lifecycle] Tick {self.ticks}: {len(meeting_ids)} running meeting(s)")

        processed = 0
        for meeting_id in meeting_ids:
            try:
                await self.process_meeting(meeting_id)
                processed += 1
            except MeetingError as e:
                logger.warning(f"[Lifecycle] Meeting {meeting_id} skipped: {e}")
            except Exception as e:
                logger.error(f"[Lifecycle] Error processing meeting {meeting_id}: {e}", exc_info=True)
        return processed

    async def run(self) -> None:
        """Background loop; runs until cancelled"""
        logger.info(f"[Lifecycle] Driver started: tick every {self.interval}s")
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"[Lifecycle] Tick error: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Lifecycle] Driver stopped")

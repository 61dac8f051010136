"""
System introspection endpoints
"""
from fastapi import APIRouter, Depends

from a2mp.agents.orchestrator import MeetingOrchestrator, get_orchestrator

router = APIRouter()


@router.get("/status")
async def system_status(orchestrator: MeetingOrchestrator = Depends(get_orchestrator)):
    """Rate limiter buckets and usage per identity, persona queue, driver state"""
    return orchestrator.status()
